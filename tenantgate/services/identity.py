from __future__ import annotations

from dataclasses import dataclass, field
import logging
from typing import Any, Protocol

import httpx

from tenantgate.core.config import Settings, get_settings
from tenantgate.core.errors import IdentityProviderError


logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class IdentityUser:
    id: str
    email: str | None
    metadata: dict[str, Any] = field(default_factory=dict)


@dataclass(frozen=True)
class IdentitySession:
    access_token: str
    refresh_token: str | None
    expires_in: int | None
    user: IdentityUser


class IdentityProvider(Protocol):
    async def create_identity(
        self, *, email: str, password: str, metadata: dict[str, Any]
    ) -> IdentityUser:
        ...

    async def sign_in(self, *, email: str, password: str) -> IdentitySession:
        ...

    async def get_current_identity(self, access_token: str) -> IdentityUser | None:
        ...


def _parse_user(payload: dict[str, Any]) -> IdentityUser:
    # Sign-up responses either are the user or wrap it under "user".
    user = payload.get("user") if isinstance(payload.get("user"), dict) else payload
    user_id = user.get("id")
    if not isinstance(user_id, str) or not user_id:
        raise IdentityProviderError("Identity provider returned no user id")
    metadata = user.get("user_metadata")
    return IdentityUser(
        id=user_id,
        email=user.get("email"),
        metadata=metadata if isinstance(metadata, dict) else {},
    )


def _error_message(response: httpx.Response) -> str:
    # Prefer provider messages so "already registered" reaches the caller.
    try:
        payload = response.json()
    except ValueError:
        payload = {}
    if isinstance(payload, dict):
        for key in ("msg", "message", "error_description", "error"):
            value = payload.get(key)
            if isinstance(value, str) and value.strip():
                return value.strip()
    return f"http_{int(response.status_code)}"


class GoTrueIdentityProvider:
    """Identity provider client for GoTrue-compatible auth servers."""

    def __init__(
        self,
        *,
        base_url: str,
        api_key: str | None,
        timeout_s: float = 10.0,
        client: httpx.AsyncClient | None = None,
    ) -> None:
        self._base_url = base_url.rstrip("/")
        self._api_key = api_key
        self._timeout_s = timeout_s
        self._client = client

    def _get_client(self) -> httpx.AsyncClient:
        # Reuse a single client per provider for connection pooling.
        if self._client is None:
            self._client = httpx.AsyncClient(timeout=self._timeout_s)
        return self._client

    def _headers(self, access_token: str | None = None) -> dict[str, str]:
        headers: dict[str, str] = {}
        if self._api_key:
            headers["apikey"] = self._api_key
        bearer = access_token or self._api_key
        if bearer:
            headers["Authorization"] = f"Bearer {bearer}"
        return headers

    async def _post(self, path: str, payload: dict[str, Any], *, params: dict[str, str] | None = None) -> dict[str, Any]:
        try:
            response = await self._get_client().post(
                f"{self._base_url}{path}",
                json=payload,
                params=params,
                headers=self._headers(),
            )
        except httpx.HTTPError as exc:
            logger.warning("identity_provider_unreachable path=%s error=%s", path, exc.__class__.__name__)
            raise IdentityProviderError("Identity provider is unavailable") from exc
        if response.status_code >= 400:
            raise IdentityProviderError(_error_message(response))
        body = response.json()
        if not isinstance(body, dict):
            raise IdentityProviderError("Identity provider returned an invalid response")
        return body

    async def create_identity(
        self, *, email: str, password: str, metadata: dict[str, Any]
    ) -> IdentityUser:
        body = await self._post("/signup", {"email": email, "password": password, "data": metadata})
        return _parse_user(body)

    async def sign_in(self, *, email: str, password: str) -> IdentitySession:
        body = await self._post(
            "/token",
            {"email": email, "password": password},
            params={"grant_type": "password"},
        )
        access_token = body.get("access_token")
        if not isinstance(access_token, str):
            raise IdentityProviderError("Identity provider returned no session")
        expires_in = body.get("expires_in")
        return IdentitySession(
            access_token=access_token,
            refresh_token=body.get("refresh_token"),
            expires_in=int(expires_in) if isinstance(expires_in, (int, float)) else None,
            user=_parse_user(body),
        )

    async def get_current_identity(self, access_token: str) -> IdentityUser | None:
        # Unknown or expired access tokens resolve to None, not an error.
        try:
            response = await self._get_client().get(
                f"{self._base_url}/user",
                headers=self._headers(access_token),
            )
        except httpx.HTTPError as exc:
            raise IdentityProviderError("Identity provider is unavailable") from exc
        if response.status_code in (401, 403, 404):
            return None
        if response.status_code >= 400:
            raise IdentityProviderError(_error_message(response))
        return _parse_user(response.json())

    async def aclose(self) -> None:
        if self._client is not None:
            await self._client.aclose()
            self._client = None


def build_identity_provider(settings: Settings | None = None) -> GoTrueIdentityProvider:
    settings = settings or get_settings()
    return GoTrueIdentityProvider(
        base_url=settings.identity_base_url,
        api_key=settings.identity_api_key,
        timeout_s=max(0.2, settings.identity_timeout_ms / 1000.0),
    )
