from __future__ import annotations

import asyncio
from datetime import datetime, timedelta, timezone
import logging
import random

import pytest

from tenantgate.services.email import (
    INVITATION_TEMPLATE,
    SETUP_CONFIRMATION_TEMPLATE,
    EmailDeliveryQueue,
    EmailQueueConfig,
    EmailTemplate,
    LogEmailTransport,
    MessageStatus,
    backoff_delay_ms,
    format_expiration,
    queue_invitation_email,
    render_template,
    retry_delay_ms,
)
from tenantgate.services.tokens import generate_token
from tenantgate.tests.utils.fakes import FailingTransport, FakeClock, RecordingTransport


_SIMPLE = EmailTemplate(
    name="simple",
    subject="Hello {{name}}",
    html_body="<p>{{name}} joined {{tenantName}}</p>",
    text_body="{{name}} joined {{tenantName}}",
)


def test_render_escapes_html_body_only() -> None:
    rendered = render_template(_SIMPLE, {"name": "<b>Eve</b>", "tenantName": "A & B"})
    assert rendered.subject == "Hello <b>Eve</b>"
    assert rendered.html_body == "<p>&lt;b&gt;Eve&lt;/b&gt; joined A &amp; B</p>"
    assert rendered.text_body == "<b>Eve</b> joined A & B"


def test_render_leaves_missing_placeholders_verbatim() -> None:
    rendered = render_template(_SIMPLE, {"name": "Eve", "tenantName": None})
    assert rendered.text_body == "Eve joined {{tenantName}}"


def test_invitation_template_renders_every_placeholder() -> None:
    rendered = render_template(
        INVITATION_TEMPLATE,
        {
            "tenantName": "Lincoln High",
            "inviterName": "Ada Park",
            "role": "COUNSELOR",
            "invitationUrl": "https://app.example.test/invite/abc",
            "expirationDate": "March 14, 2026",
            "adminEmail": "principal@lincoln.example",
            "recipientEmail": "new@lincoln.example",
            "appName": "School Counselor Ledger",
            "currentYear": 2026,
        },
    )
    assert rendered.subject == "You're invited to join Lincoln High on School Counselor Ledger"
    for body in (rendered.html_body, rendered.text_body):
        assert "{{" not in body
        assert "https://app.example.test/invite/abc" in body


def test_setup_confirmation_subject() -> None:
    rendered = render_template(
        SETUP_CONFIRMATION_TEMPLATE,
        {"appName": "School Counselor Ledger", "tenantName": "Lincoln High"},
    )
    assert rendered.subject == "Welcome to School Counselor Ledger - Your Lincoln High account is ready!"


def test_format_expiration() -> None:
    assert format_expiration(datetime(2026, 3, 7, tzinfo=timezone.utc)) == "March 7, 2026"


def test_backoff_doubles_and_caps() -> None:
    config = EmailQueueConfig(base_delay_ms=1000, max_delay_ms=5000)
    assert [backoff_delay_ms(attempt, config=config) for attempt in (1, 2, 3, 4)] == [1000, 2000, 4000, 5000]


@pytest.mark.parametrize("seed", [0, 7, 42, 2026])
def test_retry_jitter_stays_within_ratio_and_keeps_growing(seed: int) -> None:
    config = EmailQueueConfig(base_delay_ms=1000, max_delay_ms=30000, jitter_ratio=0.1)
    rng = random.Random(seed)

    delays = [retry_delay_ms(attempt, config=config, rng=rng) for attempt in (1, 2, 3, 4)]

    for attempt, delay in zip((1, 2, 3, 4), delays):
        base = backoff_delay_ms(attempt, config=config)
        assert base <= delay <= base * 1.1
    assert delays == sorted(delays)


@pytest.mark.asyncio
async def test_successful_delivery_removes_message() -> None:
    transport = RecordingTransport()
    queue = EmailDeliveryQueue(transport)
    message_id = queue.enqueue("a@example.test", _SIMPLE, {"name": "A", "tenantName": "T"})

    assert queue.status().pending == 1
    tick = await queue.process_due()

    assert tick.sent == 1
    assert queue.get(message_id) is None
    assert queue.status().total == 0
    assert transport.sent[0]["subject"] == "Hello A"


@pytest.mark.asyncio
async def test_retry_waits_for_backoff_then_fails_permanently() -> None:
    clock = FakeClock()
    transport = FailingTransport()
    queue = EmailDeliveryQueue(
        transport,
        config=EmailQueueConfig(max_attempts=3, base_delay_ms=1000, max_delay_ms=30000, jitter_ratio=0.0),
        time_source=clock.now,
        rng=random.Random(0),
    )
    message_id = queue.enqueue("a@example.test", _SIMPLE, {"name": "A"})

    first = await queue.process_due()
    assert first.retried == 1
    message = queue.get(message_id)
    assert message is not None
    assert message.status == MessageStatus.PENDING
    assert message.next_retry_at == clock.now() + timedelta(milliseconds=1000)

    # Not yet due: nothing is attempted.
    assert (await queue.process_due()).retried == 0
    assert transport.calls == 1

    clock.advance(seconds=1)
    assert (await queue.process_due()).retried == 1
    clock.advance(seconds=2)
    final = await queue.process_due()

    assert final.failed == 1
    assert transport.calls == 3
    assert queue.get(message_id) is None
    failed = queue.failed_messages()
    assert [item.id for item in failed] == [message_id]
    assert failed[0].status == MessageStatus.FAILED
    assert failed[0].last_error == "provider unavailable"


@pytest.mark.asyncio
async def test_transport_exceptions_count_as_failed_attempts() -> None:
    transport = FailingTransport("boom", raise_error=True)
    queue = EmailDeliveryQueue(transport, config=EmailQueueConfig(max_attempts=1))
    queue.enqueue("a@example.test", _SIMPLE, {"name": "A"})

    tick = await queue.process_due()

    assert tick.failed == 1
    assert queue.failed_messages()[0].last_error == "ConnectionError: boom"


@pytest.mark.asyncio
async def test_overlapping_ticks_are_skipped() -> None:
    release = asyncio.Event()

    class _SlowTransport(RecordingTransport):
        async def send(self, **kwargs):  # type: ignore[override]
            await release.wait()
            return await super().send(**kwargs)

    queue = EmailDeliveryQueue(_SlowTransport())
    queue.enqueue("a@example.test", _SIMPLE, {"name": "A"})

    running = asyncio.create_task(queue.process_due())
    await asyncio.sleep(0)
    assert queue.status().sending == 1
    assert (await queue.process_due()).skipped

    release.set()
    assert (await running).sent == 1


@pytest.mark.asyncio
async def test_queue_invitation_email_fills_variables() -> None:
    transport = RecordingTransport()
    queue = EmailDeliveryQueue(transport)
    queue_invitation_email(
        queue,
        to="new@lincoln.example",
        tenant_name="Lincoln High",
        inviter_name="Ada Park",
        role="COUNSELOR",
        invitation_url="https://app.example.test/invite/tok",
        expires_at=datetime(2026, 3, 14, tzinfo=timezone.utc),
        admin_email="principal@lincoln.example",
        app_name="School Counselor Ledger",
        now=datetime(2026, 3, 7, tzinfo=timezone.utc),
    )
    await queue.process_due()

    sent = transport.sent[0]
    assert sent["to"] == "new@lincoln.example"
    assert "March 14, 2026" in sent["text"]
    assert "Ada Park" in sent["html"]


@pytest.mark.asyncio
async def test_log_transport_never_logs_invitation_links(caplog: pytest.LogCaptureFixture) -> None:
    token, _ = generate_token()
    queue = EmailDeliveryQueue(LogEmailTransport())
    queue.enqueue(
        "new@lincoln.example",
        INVITATION_TEMPLATE,
        {
            "tenantName": "Lincoln High",
            "inviterName": "Ada Park",
            "role": "COUNSELOR",
            "invitationUrl": f"https://app.example.test/invite/{token}",
            "expirationDate": "March 14, 2026",
            "adminEmail": "principal@lincoln.example",
            "recipientEmail": "new@lincoln.example",
            "appName": "School Counselor Ledger",
            "currentYear": 2026,
        },
    )

    with caplog.at_level(logging.DEBUG):
        tick = await queue.process_due()

    assert tick.sent == 1
    assert any("email_dev_send" in record.getMessage() for record in caplog.records)
    assert all(token not in record.getMessage() for record in caplog.records)
