from __future__ import annotations

from datetime import datetime

from tenantgate.services.email.queue import EmailDeliveryQueue
from tenantgate.services.email.templates import INVITATION_TEMPLATE, SETUP_CONFIRMATION_TEMPLATE


def format_expiration(value: datetime) -> str:
    # Human-readable date without locale dependencies, e.g. "March 7, 2026".
    return f"{value:%B} {value.day}, {value.year}"


def queue_invitation_email(
    queue: EmailDeliveryQueue,
    *,
    to: str,
    tenant_name: str,
    inviter_name: str,
    role: str,
    invitation_url: str,
    expires_at: datetime,
    admin_email: str,
    app_name: str,
    now: datetime,
) -> str:
    return queue.enqueue(
        to,
        INVITATION_TEMPLATE,
        {
            "tenantName": tenant_name,
            "inviterName": inviter_name,
            "role": role,
            "invitationUrl": invitation_url,
            "expirationDate": format_expiration(expires_at),
            "adminEmail": admin_email,
            "recipientEmail": to,
            "appName": app_name,
            "currentYear": now.year,
        },
    )


def queue_setup_confirmation_email(
    queue: EmailDeliveryQueue,
    *,
    to: str,
    tenant_name: str,
    admin_name: str,
    dashboard_url: str,
    app_name: str,
    now: datetime,
) -> str:
    return queue.enqueue(
        to,
        SETUP_CONFIRMATION_TEMPLATE,
        {
            "tenantName": tenant_name,
            "adminName": admin_name,
            "dashboardUrl": dashboard_url,
            "appName": app_name,
            "adminEmail": to,
            "currentYear": now.year,
        },
    )
