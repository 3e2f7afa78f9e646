from __future__ import annotations

import json

import httpx
import pytest

from tenantgate.core.errors import IdentityProviderError
from tenantgate.services.email.transports import HttpEmailTransport
from tenantgate.services.identity import GoTrueIdentityProvider


def _provider(handler) -> GoTrueIdentityProvider:
    client = httpx.AsyncClient(transport=httpx.MockTransport(handler))
    return GoTrueIdentityProvider(base_url="https://auth.example.test/", api_key="anon", client=client)


@pytest.mark.asyncio
async def test_create_identity_posts_signup_with_metadata() -> None:
    seen: list[httpx.Request] = []

    def handler(request: httpx.Request) -> httpx.Response:
        seen.append(request)
        return httpx.Response(200, json={"user": {"id": "u-1", "email": "a@example.test", "user_metadata": {"role": "ADMIN"}}})

    provider = _provider(handler)
    user = await provider.create_identity(email="a@example.test", password="secret-pass", metadata={"role": "ADMIN"})

    assert user.id == "u-1"
    assert user.metadata == {"role": "ADMIN"}
    assert str(seen[0].url) == "https://auth.example.test/signup"
    assert seen[0].headers["apikey"] == "anon"
    assert json.loads(seen[0].content)["data"] == {"role": "ADMIN"}


@pytest.mark.asyncio
async def test_provider_errors_surface_provider_message() -> None:
    provider = _provider(lambda request: httpx.Response(422, json={"msg": "User already registered"}))

    with pytest.raises(IdentityProviderError) as exc:
        await provider.create_identity(email="a@example.test", password="secret-pass", metadata={})

    assert exc.value.message == "User already registered"


@pytest.mark.asyncio
async def test_sign_in_uses_password_grant() -> None:
    def handler(request: httpx.Request) -> httpx.Response:
        assert request.url.params["grant_type"] == "password"
        return httpx.Response(
            200,
            json={"access_token": "at", "refresh_token": "rt", "expires_in": 3600, "user": {"id": "u-1"}},
        )

    session = await _provider(handler).sign_in(email="a@example.test", password="secret-pass")

    assert session.access_token == "at"
    assert session.expires_in == 3600
    assert session.user.id == "u-1"


@pytest.mark.asyncio
async def test_get_current_identity_maps_unauthorized_to_none() -> None:
    def handler(request: httpx.Request) -> httpx.Response:
        if request.headers["Authorization"] == "Bearer good":
            return httpx.Response(200, json={"id": "u-1", "email": "a@example.test"})
        return httpx.Response(401, json={"msg": "invalid JWT"})

    provider = _provider(handler)

    assert (await provider.get_current_identity("good")).id == "u-1"
    assert await provider.get_current_identity("bad") is None


@pytest.mark.asyncio
async def test_unreachable_provider_raises_identity_error() -> None:
    def handler(request: httpx.Request) -> httpx.Response:
        raise httpx.ConnectError("refused", request=request)

    with pytest.raises(IdentityProviderError):
        await _provider(handler).get_current_identity("token-value")


@pytest.mark.asyncio
async def test_http_email_transport_reports_outcomes() -> None:
    payloads: list[dict] = []

    def handler(request: httpx.Request) -> httpx.Response:
        body = json.loads(request.content)
        payloads.append(body)
        if body["to"] == ["bounce@example.test"]:
            return httpx.Response(503)
        return httpx.Response(200, json={"id": "msg-1"})

    transport = HttpEmailTransport(
        url="https://mail.example.test/send",
        api_key="mail-key",
        from_address="noreply@example.test",
        client=httpx.AsyncClient(transport=httpx.MockTransport(handler)),
    )

    ok = await transport.send(to="a@example.test", subject="s", html="<p>h</p>", text="h")
    failed = await transport.send(to="bounce@example.test", subject="s", html="<p>h</p>", text="h")

    assert ok.success
    assert ok.provider_message_id == "msg-1"
    assert payloads[0]["from"] == "noreply@example.test"
    assert not failed.success
    assert failed.error == "http_503"
