"""Email service using MailerSend."""
import logging
from html import escape
from typing import Optional

import httpx

from ...config import Settings, get_settings

logger = logging.getLogger(__name__)


class EmailService:
    """Service for sending onboarding emails via the MailerSend API."""

    def __init__(self, settings: Optional[Settings] = None):
        self.settings = settings or get_settings()
        self.api_key = self.settings.mailersend_api_key
        self.from_email = self.settings.mailersend_from_email
        self.from_name = self.settings.mailersend_from_name
        self.base_url = "https://api.mailersend.com/v1"

    def is_configured(self) -> bool:
        """Check if email service is properly configured."""
        return bool(self.api_key)

    async def send_email(
        self,
        to_email: str,
        to_name: Optional[str],
        subject: str,
        html_content: str,
        text_content: Optional[str] = None,
    ) -> bool:
        """Send a single email. Returns False instead of raising on delivery failure."""
        if not self.is_configured():
            logger.info("[Email] MailerSend not configured, skipping email to %s", to_email)
            return False

        payload = {
            "from": {
                "email": self.from_email,
                "name": self.from_name,
            },
            "to": [
                {
                    "email": to_email,
                    "name": to_name or to_email,
                }
            ],
            "subject": subject,
            "html": html_content,
        }
        if text_content:
            payload["text"] = text_content

        try:
            async with httpx.AsyncClient() as client:
                response = await client.post(
                    f"{self.base_url}/email",
                    json=payload,
                    headers={
                        "Authorization": f"Bearer {self.api_key}",
                        "Content-Type": "application/json",
                    },
                    timeout=30.0,
                )
        except httpx.HTTPError as e:
            logger.warning("[Email] Error sending to %s: %s", to_email, e)
            return False

        if response.status_code in (200, 201, 202):
            logger.info("[Email] Sent '%s' to %s", subject, to_email)
            return True
        logger.warning(
            "[Email] Failed to send to %s: %s - %s", to_email, response.status_code, response.text
        )
        return False

    def _wrap(self, heading: str, body_html: str, action_url: Optional[str] = None, action_label: str = "") -> str:
        button = ""
        if action_url:
            button = f'<p><a class="btn" href="{escape(action_url)}">{escape(action_label)}</a></p>'
        return f"""
<!DOCTYPE html>
<html>
<head>
    <style>
        body {{ font-family: -apple-system, BlinkMacSystemFont, 'Segoe UI', Roboto, sans-serif; line-height: 1.6; color: #333; }}
        .container {{ max-width: 600px; margin: 0 auto; padding: 20px; }}
        .header {{ text-align: center; padding: 20px 0; border-bottom: 2px solid #1e3a5f; }}
        .logo {{ color: #1e3a5f; font-size: 22px; font-weight: bold; letter-spacing: 1px; }}
        .content {{ padding: 30px 0; }}
        .btn {{ display: inline-block; background: #1e3a5f; color: white; padding: 14px 28px; text-decoration: none; border-radius: 6px; font-weight: 600; }}
        .footer {{ text-align: center; padding-top: 20px; border-top: 1px solid #e5e7eb; color: #6b7280; font-size: 12px; }}
    </style>
</head>
<body>
    <div class="container">
        <div class="header"><div class="logo">{escape(self.from_name)}</div></div>
        <div class="content">
            <h2>{escape(heading)}</h2>
            {body_html}
            {button}
        </div>
        <div class="footer">This message was sent by {escape(self.from_name)}.</div>
    </div>
</body>
</html>
"""

    async def send_onboarding_access(
        self,
        to_email: str,
        to_name: Optional[str],
        position: str,
        token: str,
        token_kind: str,
        expires_at_display: str,
    ) -> bool:
        """Deliver the applicant's onboarding link (remote) or access code (walk-in)."""
        if token_kind == "access_code":
            body = (
                f"<p>Welcome aboard! Use the access code below on the front desk tablet "
                f"to start your onboarding for <strong>{escape(position)}</strong>.</p>"
                f'<p style="font-size: 28px; letter-spacing: 6px;"><strong>{escape(token)}</strong></p>'
                f"<p>The code expires {escape(expires_at_display)}.</p>"
            )
            html = self._wrap("Your onboarding access code", body)
            text = f"Your onboarding access code is {token}. It expires {expires_at_display}."
        else:
            url = f"{self.settings.app_base_url}/onboarding/{token}"
            body = (
                f"<p>Congratulations on your offer for <strong>{escape(position)}</strong>! "
                f"Complete your new-hire paperwork online before your first day.</p>"
                f"<p>The link expires {escape(expires_at_display)}.</p>"
            )
            html = self._wrap("Start your onboarding", body, url, "Begin Onboarding")
            text = f"Start your onboarding: {url} (expires {expires_at_display})"

        return await self.send_email(to_email, to_name, "Your onboarding is ready", html, text)

    async def send_status_update(
        self,
        to_email: str,
        to_name: Optional[str],
        subject: str,
        heading: str,
        lines: list[str],
        action_url: Optional[str] = None,
        action_label: str = "Open",
    ) -> bool:
        """Generic workflow update: approvals, edit requests, alerts to reviewers."""
        body = "".join(f"<p>{escape(line)}</p>" for line in lines)
        html = self._wrap(heading, body, action_url, action_label)
        text = "\n".join(lines + ([action_url] if action_url else []))
        return await self.send_email(to_email, to_name, subject, html, text)


_email_service: Optional[EmailService] = None


def get_email_service() -> EmailService:
    global _email_service
    if _email_service is None:
        _email_service = EmailService()
    return _email_service
