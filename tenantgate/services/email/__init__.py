from tenantgate.services.email.messages import (
    format_expiration,
    queue_invitation_email,
    queue_setup_confirmation_email,
)
from tenantgate.services.email.queue import (
    EmailDeliveryQueue,
    EmailQueueConfig,
    MessageStatus,
    QueuedMessage,
    QueueStatus,
    TickResult,
    backoff_delay_ms,
    retry_delay_ms,
)
from tenantgate.services.email.templates import (
    INVITATION_TEMPLATE,
    SETUP_CONFIRMATION_TEMPLATE,
    EmailTemplate,
    RenderedEmail,
    render_template,
)
from tenantgate.services.email.transports import (
    EmailTransport,
    HttpEmailTransport,
    LogEmailTransport,
    SendResult,
    build_email_transport,
)

__all__ = [
    "EmailDeliveryQueue",
    "EmailQueueConfig",
    "MessageStatus",
    "QueuedMessage",
    "QueueStatus",
    "TickResult",
    "backoff_delay_ms",
    "retry_delay_ms",
    "EmailTemplate",
    "RenderedEmail",
    "INVITATION_TEMPLATE",
    "SETUP_CONFIRMATION_TEMPLATE",
    "render_template",
    "EmailTransport",
    "HttpEmailTransport",
    "LogEmailTransport",
    "SendResult",
    "build_email_transport",
    "format_expiration",
    "queue_invitation_email",
    "queue_setup_confirmation_email",
]
