from __future__ import annotations

from collections import deque
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from enum import Enum
import logging
import random
import threading
from typing import Any, Callable, Mapping
from uuid import uuid4

from tenantgate.core.config import Settings, get_settings
from tenantgate.services.email.templates import EmailTemplate, render_template
from tenantgate.services.email.transports import EmailTransport, SendResult


logger = logging.getLogger(__name__)


class MessageStatus(str, Enum):
    PENDING = "pending"
    SENDING = "sending"
    SENT = "sent"
    FAILED = "failed"


@dataclass
class QueuedMessage:
    id: str
    to: str
    template_name: str
    subject: str
    html_body: str
    text_body: str
    attempts: int
    max_attempts: int
    created_at: datetime
    next_retry_at: datetime
    status: MessageStatus = MessageStatus.PENDING
    last_error: str | None = None


@dataclass(frozen=True)
class EmailQueueConfig:
    max_attempts: int = 3
    base_delay_ms: int = 1000
    max_delay_ms: int = 30000
    jitter_ratio: float = 0.1
    failed_history: int = 100

    @classmethod
    def from_settings(cls, settings: Settings | None = None) -> "EmailQueueConfig":
        settings = settings or get_settings()
        return cls(
            max_attempts=max(1, int(settings.email_max_attempts)),
            base_delay_ms=max(1, int(settings.email_base_delay_ms)),
            max_delay_ms=max(1, int(settings.email_max_delay_ms)),
            jitter_ratio=max(0.0, float(settings.email_jitter_ratio)),
            failed_history=max(1, int(settings.email_failed_history)),
        )


@dataclass(frozen=True)
class QueueStatus:
    pending: int
    sending: int
    total: int


@dataclass(frozen=True)
class TickResult:
    sent: int = 0
    retried: int = 0
    failed: int = 0
    skipped: bool = False


def _utc_now() -> datetime:
    return datetime.now(timezone.utc)


def backoff_delay_ms(attempts: int, *, config: EmailQueueConfig) -> int:
    # Exponential growth capped at max_delay_ms; attempts counts completed tries.
    exponent = max(0, int(attempts) - 1)
    return min(config.base_delay_ms * (2**exponent), config.max_delay_ms)


def retry_delay_ms(attempts: int, *, config: EmailQueueConfig, rng: random.Random) -> float:
    # Add up to jitter_ratio of the delay to avoid synchronized retries.
    delay = backoff_delay_ms(attempts, config=config)
    return delay + rng.random() * config.jitter_ratio * delay


class EmailDeliveryQueue:
    """In-process queue for transactional email with bounded retries.

    ``enqueue`` never blocks on delivery. ``process_due`` performs one tick and is
    driven by :class:`tenantgate.workers.background.QueueProcessor`. The message
    table is guarded by a lock that is never held across an ``await``.
    """

    def __init__(
        self,
        transport: EmailTransport,
        *,
        config: EmailQueueConfig | None = None,
        time_source: Callable[[], datetime] | None = None,
        rng: random.Random | None = None,
    ) -> None:
        self._transport = transport
        self._config = config or EmailQueueConfig()
        self._time_source = time_source or _utc_now
        self._rng = rng or random.Random()
        self._messages: dict[str, QueuedMessage] = {}
        self._failed: deque[QueuedMessage] = deque(maxlen=self._config.failed_history)
        self._lock = threading.Lock()
        self._processing = False

    @property
    def config(self) -> EmailQueueConfig:
        return self._config

    def enqueue(self, to: str, template: EmailTemplate, variables: Mapping[str, Any]) -> str:
        rendered = render_template(template, variables)
        now = self._time_source()
        message = QueuedMessage(
            id=uuid4().hex,
            to=to,
            template_name=template.name,
            subject=rendered.subject,
            html_body=rendered.html_body,
            text_body=rendered.text_body,
            attempts=0,
            max_attempts=self._config.max_attempts,
            created_at=now,
            next_retry_at=now,
        )
        with self._lock:
            self._messages[message.id] = message
        logger.info("email_enqueued message_id=%s template=%s", message.id, template.name)
        return message.id

    def get(self, message_id: str) -> QueuedMessage | None:
        with self._lock:
            return self._messages.get(message_id)

    def status(self) -> QueueStatus:
        with self._lock:
            statuses = [message.status for message in self._messages.values()]
        return QueueStatus(
            pending=sum(1 for status in statuses if status == MessageStatus.PENDING),
            sending=sum(1 for status in statuses if status == MessageStatus.SENDING),
            total=len(statuses),
        )

    def failed_messages(self) -> list[QueuedMessage]:
        with self._lock:
            return list(self._failed)

    def _claim_due(self) -> list[QueuedMessage]:
        # Move due messages to SENDING and count the attempt before any I/O.
        now = self._time_source()
        with self._lock:
            due = [
                message
                for message in self._messages.values()
                if message.status == MessageStatus.PENDING and message.next_retry_at <= now
            ]
            for message in due:
                message.status = MessageStatus.SENDING
                message.attempts += 1
        return due

    async def _send(self, message: QueuedMessage) -> SendResult:
        try:
            return await self._transport.send(
                to=message.to,
                subject=message.subject,
                html=message.html_body,
                text=message.text_body,
            )
        except Exception as exc:  # noqa: BLE001 - transport failures feed the retry policy
            return SendResult(success=False, error=f"{exc.__class__.__name__}: {exc}")

    def _settle(self, message: QueuedMessage, result: SendResult) -> str:
        # Apply the send outcome; returns sent, retried or failed.
        with self._lock:
            if result.success:
                message.status = MessageStatus.SENT
                self._messages.pop(message.id, None)
                return "sent"
            message.last_error = result.error or "unknown_error"
            if message.attempts >= message.max_attempts:
                message.status = MessageStatus.FAILED
                self._messages.pop(message.id, None)
                self._failed.append(message)
                return "failed"
            delay_ms = retry_delay_ms(message.attempts, config=self._config, rng=self._rng)
            message.next_retry_at = self._time_source() + timedelta(milliseconds=delay_ms)
            message.status = MessageStatus.PENDING
            return "retried"

    async def process_due(self) -> TickResult:
        # Skip re-entrant ticks so a slow send never overlaps the next one.
        if self._processing:
            return TickResult(skipped=True)
        self._processing = True
        counts = {"sent": 0, "retried": 0, "failed": 0}
        try:
            for message in self._claim_due():
                outcome = self._settle(message, await self._send(message))
                counts[outcome] += 1
                if outcome == "sent":
                    logger.info(
                        "email_delivered message_id=%s attempts=%s", message.id, message.attempts
                    )
                elif outcome == "failed":
                    logger.error(
                        "email_delivery_failed message_id=%s template=%s attempts=%s error=%s",
                        message.id,
                        message.template_name,
                        message.attempts,
                        message.last_error,
                    )
                else:
                    logger.warning(
                        "email_delivery_retry message_id=%s attempt=%s next_retry_at=%s error=%s",
                        message.id,
                        message.attempts,
                        message.next_retry_at.isoformat(),
                        message.last_error,
                    )
        finally:
            self._processing = False
        return TickResult(**counts)
