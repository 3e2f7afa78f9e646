from __future__ import annotations

import argparse
import asyncio
import sys

from tenantgate.core.errors import OnboardingError
from tenantgate.persistence.db import dispose_engine
from tenantgate.services.runtime import build_runtime


def _build_parser() -> argparse.ArgumentParser:
    # Setup tokens grant tenant creation, so every field is explicit.
    parser = argparse.ArgumentParser(description="Issue a one-time setup token for a new tenant")
    parser.add_argument("--tenant-name", required=True, help="Organization display name")
    parser.add_argument("--subdomain", required=True, help="Requested tenant subdomain")
    parser.add_argument("--admin-email", required=True, help="Email of the first administrator")
    parser.add_argument("--hours", type=int, default=None, help="Override the token lifetime in hours")
    parser.add_argument("--issued-by", default="create_setup_token", help="Operator label for auditing")
    return parser


async def _create_token(args: argparse.Namespace) -> int:
    runtime = build_runtime()
    try:
        result = await runtime.setup.create_setup_token(
            tenant_name=args.tenant_name,
            subdomain=args.subdomain,
            admin_email=args.admin_email,
            expiration_hours=args.hours,
            issued_by=args.issued_by,
        )
    finally:
        await runtime.stop()
        await dispose_engine()

    base_url = runtime.settings.public_base_url.rstrip("/")
    print("Setup token created:")
    print(f"  setup_token_id: {result.setup_token.id}")
    print(f"  expires_at: {result.setup_token.expires_at.isoformat()}")
    print("  setup_url: ")
    print(f"    {base_url}/setup/{result.token}")
    return 0


def main() -> int:
    parser = _build_parser()
    args = parser.parse_args()
    try:
        return asyncio.run(_create_token(args))
    except OnboardingError as exc:
        print(f"create_setup_token rejected: {exc.code} {exc.message}", file=sys.stderr)
        return 2
    except Exception as exc:  # noqa: BLE001 - surface provisioning failures clearly
        print(f"create_setup_token failed: {exc}", file=sys.stderr)
        return 1


if __name__ == "__main__":
    raise SystemExit(main())
