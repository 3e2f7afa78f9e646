from __future__ import annotations

from dataclasses import dataclass
import html
import re
from typing import Any, Mapping


_PLACEHOLDER = re.compile(r"\{\{(\w+)\}\}")


@dataclass(frozen=True)
class EmailTemplate:
    name: str
    subject: str
    html_body: str
    text_body: str


@dataclass(frozen=True)
class RenderedEmail:
    subject: str
    html_body: str
    text_body: str


def _substitute(text: str, variables: Mapping[str, Any], *, escape: bool) -> str:
    # Unknown or null placeholders stay verbatim so a missing variable is visible, not fatal.
    def _replace(match: re.Match[str]) -> str:
        value = variables.get(match.group(1))
        if value is None:
            return match.group(0)
        rendered = str(value)
        return html.escape(rendered) if escape else rendered

    return _PLACEHOLDER.sub(_replace, text)


def render_template(template: EmailTemplate, variables: Mapping[str, Any]) -> RenderedEmail:
    # Escape values only where they land inside markup.
    return RenderedEmail(
        subject=_substitute(template.subject, variables, escape=False),
        html_body=_substitute(template.html_body, variables, escape=True),
        text_body=_substitute(template.text_body, variables, escape=False),
    )


INVITATION_TEMPLATE = EmailTemplate(
    name="invitation",
    subject="You're invited to join {{tenantName}} on {{appName}}",
    html_body="""<!DOCTYPE html>
<html>
<head>
  <meta charset="utf-8">
  <title>Invitation to {{tenantName}}</title>
</head>
<body style="font-family: Arial, sans-serif; color: #333; max-width: 600px; margin: 0 auto;">
  <h1 style="color: #1d4ed8;">Welcome to {{appName}}</h1>
  <p>You've been invited to join <strong>{{tenantName}}</strong>.</p>
  <p>Hello,</p>
  <p>{{inviterName}} has invited you to join <strong>{{tenantName}}</strong> on {{appName}}
     as a <strong>{{role}}</strong>.</p>
  <p style="text-align: center; margin: 32px 0;">
    <a href="{{invitationUrl}}"
       style="background: #1d4ed8; color: #fff; padding: 12px 24px; border-radius: 6px; text-decoration: none;">
      Accept invitation
    </a>
  </p>
  <p>If the button does not work, copy this link into your browser:<br>{{invitationUrl}}</p>
  <p><strong>This invitation expires on {{expirationDate}}.</strong></p>
  <p>Questions? Contact your administrator at {{adminEmail}}.</p>
  <hr>
  <p style="font-size: 12px; color: #666;">
    This invitation was sent to {{recipientEmail}}. If you were not expecting it, you can ignore this email.<br>
    &copy; {{currentYear}} {{appName}}
  </p>
</body>
</html>
""",
    text_body="""Welcome to {{appName}}

You've been invited to join {{tenantName}}.

Hello,

{{inviterName}} has invited you to join {{tenantName}} on {{appName}} as a {{role}}.

Accept the invitation and set up your account:
{{invitationUrl}}

This invitation expires on {{expirationDate}}.

Questions? Contact your administrator at {{adminEmail}}.

This invitation was sent to {{recipientEmail}}. If you were not expecting it, you can ignore this email.

(c) {{currentYear}} {{appName}}
""",
)


SETUP_CONFIRMATION_TEMPLATE = EmailTemplate(
    name="setup_confirmation",
    subject="Welcome to {{appName}} - Your {{tenantName}} account is ready!",
    html_body="""<!DOCTYPE html>
<html>
<head>
  <meta charset="utf-8">
  <title>Welcome to {{appName}}</title>
</head>
<body style="font-family: Arial, sans-serif; color: #333; max-width: 600px; margin: 0 auto;">
  <h1 style="color: #15803d;">Welcome to {{appName}}!</h1>
  <p>Hello {{adminName}},</p>
  <p>Your organization <strong>{{tenantName}}</strong> is set up on {{appName}}.</p>
  <p>From your dashboard you can invite counselors and administrators, track interactions,
     manage contacts and run reports.</p>
  <p style="text-align: center; margin: 32px 0;">
    <a href="{{dashboardUrl}}"
       style="background: #15803d; color: #fff; padding: 12px 24px; border-radius: 6px; text-decoration: none;">
      Open dashboard
    </a>
  </p>
  <hr>
  <p style="font-size: 12px; color: #666;">
    This email was sent to {{adminEmail}} as the administrator of {{tenantName}}.<br>
    &copy; {{currentYear}} {{appName}}
  </p>
</body>
</html>
""",
    text_body="""Welcome to {{appName}}!

Hello {{adminName}},

Your organization {{tenantName}} is set up on {{appName}}.

From your dashboard you can invite counselors and administrators, track interactions,
manage contacts and run reports:
{{dashboardUrl}}

This email was sent to {{adminEmail}} as the administrator of {{tenantName}}.

(c) {{currentYear}} {{appName}}
""",
)
