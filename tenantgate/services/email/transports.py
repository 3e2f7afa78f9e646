from __future__ import annotations

from dataclasses import dataclass
import logging
from typing import Protocol
from uuid import uuid4

import httpx

from tenantgate.core.config import Settings, get_settings
from tenantgate.core.errors import EmailTransportError


logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class SendResult:
    success: bool
    provider_message_id: str | None = None
    error: str | None = None


class EmailTransport(Protocol):
    async def send(self, *, to: str, subject: str, html: str, text: str) -> SendResult:
        ...


class LogEmailTransport:
    # Development transport: log the envelope only. Bodies carry one-time links.
    async def send(self, *, to: str, subject: str, html: str, text: str) -> SendResult:
        message_id = f"dev-{uuid4().hex[:12]}"
        logger.info("email_dev_send message_id=%s to=%s subject=%s", message_id, to, subject)
        return SendResult(success=True, provider_message_id=message_id)


class HttpEmailTransport:
    def __init__(
        self,
        *,
        url: str,
        api_key: str | None,
        from_address: str,
        timeout_s: float = 10.0,
        client: httpx.AsyncClient | None = None,
    ) -> None:
        self._url = url
        self._api_key = api_key
        self._from_address = from_address
        self._timeout_s = timeout_s
        self._client = client

    def _get_client(self) -> httpx.AsyncClient:
        # Reuse a single client per transport for connection pooling.
        if self._client is None:
            self._client = httpx.AsyncClient(timeout=self._timeout_s)
        return self._client

    async def send(self, *, to: str, subject: str, html: str, text: str) -> SendResult:
        payload = {
            "from": self._from_address,
            "to": [to],
            "subject": subject,
            "html": html,
            "text": text,
        }
        headers = {"Authorization": f"Bearer {self._api_key}"} if self._api_key else {}
        try:
            response = await self._get_client().post(self._url, json=payload, headers=headers)
        except httpx.HTTPError as exc:
            return SendResult(success=False, error=f"transport_error: {exc.__class__.__name__}")
        if response.status_code >= 400:
            return SendResult(success=False, error=f"http_{int(response.status_code)}")
        provider_id: str | None = None
        try:
            body = response.json()
        except ValueError:
            body = {}
        if isinstance(body, dict) and isinstance(body.get("id"), str):
            provider_id = body["id"]
        return SendResult(success=True, provider_message_id=provider_id)

    async def aclose(self) -> None:
        if self._client is not None:
            await self._client.aclose()
            self._client = None


def build_email_transport(settings: Settings | None = None) -> EmailTransport:
    settings = settings or get_settings()
    if settings.email_transport == "http":
        if not settings.email_http_url:
            raise EmailTransportError("EMAIL_HTTP_URL is required for the http email transport")
        return HttpEmailTransport(
            url=settings.email_http_url,
            api_key=settings.email_http_api_key,
            from_address=settings.email_from_address,
            timeout_s=max(0.2, settings.email_timeout_ms / 1000.0),
        )
    return LogEmailTransport()
