"""Deliver workflow notifications to applicants, managers and HR.

Delivery is best effort. A failed notification is logged and never undoes the
state change that triggered it.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from enum import Enum
from typing import Any, Optional, Protocol
from uuid import UUID

from ...config import Settings
from ...core.services.email import EmailService
from ...core.services.notification_manager import NotificationManager
from ..models.session import OnboardingSession

logger = logging.getLogger(__name__)


class NotificationKind(str, Enum):
    NEW_HIRE_ALERT = "new-hire-alert"
    ACCESS_CODE_DELIVERY = "access-code-delivery"
    EDIT_REQUEST = "edit-request"
    APPROVAL = "approval"
    REJECTION = "rejection"
    RESUBMISSION = "resubmission"
    MATERIALIZATION_FAILED = "materialization-failed"


@dataclass(frozen=True)
class Recipient:
    role: str
    organization_id: UUID
    user_id: Optional[UUID] = None
    email: Optional[str] = None
    name: Optional[str] = None

    def channel(self) -> str:
        if self.user_id:
            return f"user:{self.user_id}"
        return f"org:{self.organization_id}:{self.role}"


class NotificationRelay(Protocol):
    async def notify(self, recipient: Recipient, kind: NotificationKind, payload: dict[str, Any]) -> None:
        ...


def applicant_recipient(session: OnboardingSession) -> Recipient:
    return Recipient(
        role="applicant",
        organization_id=session.organization_id,
        email=session.candidate_email,
        name=f"{session.subject.first_name} {session.subject.last_name}".strip(),
    )


def manager_recipient(session: OnboardingSession) -> Recipient:
    # Without an assigned manager the alert goes to every manager in the org.
    return Recipient(role="manager", organization_id=session.organization_id, user_id=session.manager_id)


def hr_recipient(session: OnboardingSession) -> Recipient:
    return Recipient(role="hr", organization_id=session.organization_id)


_EMAIL_COPY: dict[NotificationKind, tuple[str, str]] = {
    NotificationKind.NEW_HIRE_ALERT: ("New hire paperwork ready for review", "Onboarding ready for review"),
    NotificationKind.EDIT_REQUEST: ("Changes requested on your onboarding", "A few things need your attention"),
    NotificationKind.APPROVAL: ("Onboarding update", "Your onboarding was approved"),
    NotificationKind.REJECTION: ("Onboarding update", "Your onboarding was not approved"),
    NotificationKind.RESUBMISSION: ("Onboarding resubmitted", "Updated paperwork ready for review"),
    NotificationKind.MATERIALIZATION_FAILED: (
        "Action needed: employee record not created",
        "Employee record creation failed",
    ),
}


class PubSubEmailRelay:
    """Publishes on Redis for in-app delivery and emails recipients with an address."""

    def __init__(
        self,
        settings: Settings,
        manager: Optional[NotificationManager] = None,
        email_service: Optional[EmailService] = None,
    ):
        self.settings = settings
        self.manager = manager
        self.email_service = email_service

    async def notify(self, recipient: Recipient, kind: NotificationKind, payload: dict[str, Any]) -> None:
        message = {"type": "onboarding", "kind": kind.value, "payload": payload}
        if self.manager is not None:
            await self.manager.publish(recipient.channel(), message)

        if self.email_service is None:
            return
        for address in self._email_addresses(recipient):
            await self._send_email(address, recipient, kind, payload)

    def _email_addresses(self, recipient: Recipient) -> list[str]:
        if recipient.email:
            return [recipient.email]
        if recipient.role == "hr":
            return list(self.settings.hr_notification_emails)
        return []

    async def _send_email(
        self,
        address: str,
        recipient: Recipient,
        kind: NotificationKind,
        payload: dict[str, Any],
    ) -> None:
        if kind == NotificationKind.ACCESS_CODE_DELIVERY:
            await self.email_service.send_onboarding_access(
                to_email=address,
                to_name=recipient.name,
                position=payload.get("position", ""),
                token=payload["token"],
                token_kind=payload["token_kind"],
                expires_at_display=payload.get("expires_at", ""),
            )
            return

        subject, heading = _EMAIL_COPY[kind]
        lines = [payload.get("message") or heading]
        if payload.get("notes"):
            lines.append(f"Notes: {payload['notes']}")
        for request in payload.get("edit_requests", []):
            lines.append(f"{request['section']} / {request['field']}: {request['requested_change']}")

        action_url = None
        if recipient.role != "applicant" and payload.get("session_id"):
            action_url = f"{self.settings.app_base_url}/onboarding/review/{payload['session_id']}"
        await self.email_service.send_status_update(
            to_email=address,
            to_name=recipient.name,
            subject=subject,
            heading=heading,
            lines=lines,
            action_url=action_url,
            action_label="Review Onboarding",
        )


async def notify_safely(
    relay: NotificationRelay,
    recipient: Recipient,
    kind: NotificationKind,
    payload: dict[str, Any],
) -> None:
    try:
        await relay.notify(recipient, kind, payload)
    except Exception:
        logger.exception(
            "[Onboarding] Failed to deliver %s notification to %s", kind.value, recipient.channel()
        )
