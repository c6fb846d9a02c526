"""
Notification delivery with a tiered fallback.

Every transactional email ends in exactly one of three places:
1. sent directly through the email provider,
2. queued in ``mail_queue`` for the retry worker,
3. escalated as an urgent manual-processing record for operations.

Escalations are also emitted as structured events so they stay observable
when the database itself is the thing that failed.
"""
from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Any, Dict, Mapping, Optional

from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from bookmarket.config import Config
from bookmarket.models import MailPriority, MailQueue, MailStatus, utcnow
from bookmarket.observability import increment_counter, record_event
from bookmarket.services import email_templates
from bookmarket.services.email_client import EmailClient
from bookmarket.services.errors import EmailDeliveryError
from bookmarket.services.notification_service import NotificationService

SENT = "sent"
QUEUED = "queued"
FAILED = "failed"

MANUAL_PROCESSING_EMAIL_TYPE = "manual_processing_required"


@dataclass
class OutboundEmail:
    to: str
    subject: str
    html: str
    email_type: str
    priority: MailPriority = MailPriority.NORMAL


class NotificationDispatcher:
    """Single entry point for email and in-app notifications."""

    def __init__(
        self,
        db_session: Session,
        email_client: Optional[EmailClient] = None,
        notification_service: Optional[NotificationService] = None,
    ) -> None:
        self.db = db_session
        self.logger = logging.getLogger(__name__)
        self.email_client = email_client or EmailClient()
        self.notification_service = notification_service or NotificationService(db_session)

    def deliver(self, message: OutboundEmail) -> str:
        """
        Send directly, falling back to the mail queue.

        Returns:
            ``"sent"`` or ``"queued"``

        Raises:
            EmailDeliveryError: when both the direct send and the queue insert failed
        """
        try:
            self.email_client.send(message.to, message.subject, message.html)
            increment_counter("notification_deliveries_total", labels={"outcome": SENT, "type": message.email_type})
            return SENT
        except Exception as send_exc:
            self.logger.warning(
                "Direct email send failed; queueing for retry",
                extra={"to": message.to, "email_type": message.email_type, "error": str(send_exc)},
            )
            try:
                queued = self.enqueue(message, error_message=str(send_exc))
            except Exception as queue_exc:
                increment_counter("notification_deliveries_total", labels={"outcome": FAILED, "type": message.email_type})
                raise EmailDeliveryError(
                    f"Direct send and queue both failed for {message.email_type} to {message.to}"
                ) from queue_exc

        increment_counter("notification_deliveries_total", labels={"outcome": QUEUED, "type": message.email_type})
        record_event(
            "email_queued_for_retry",
            {
                "mail_queue_id": queued.id,
                "to": message.to,
                "email_type": message.email_type,
                "priority": message.priority.value,
            },
        )
        return QUEUED

    def deliver_all(self, messages: Mapping[str, OutboundEmail]) -> Dict[str, str]:
        """Deliver each message independently; one failure never skips another."""
        outcomes: Dict[str, str] = {}
        for role, message in messages.items():
            try:
                outcomes[role] = self.deliver(message)
            except EmailDeliveryError as exc:
                self.logger.error(
                    "Email could not be sent or queued",
                    extra={"role": role, "email_type": message.email_type, "error": str(exc)},
                )
                outcomes[role] = FAILED
        return outcomes

    def enqueue(self, message: OutboundEmail, error_message: Optional[str] = None) -> MailQueue:
        entry = MailQueue(
            to_email=message.to,
            subject=message.subject,
            html_content=message.html,
            status=MailStatus.PENDING,
            priority=message.priority,
            email_type=message.email_type,
            error_message=error_message,
        )
        try:
            self.db.add(entry)
            self.db.commit()
        except SQLAlchemyError:
            self.db.rollback()
            raise
        return entry

    def queue_verification(self, kind: str, context: Dict[str, Any]) -> bool:
        """Queue the low-priority audit record for ``kind`` (purchase, commit, decline)."""
        subject, html = email_templates.verification_record(kind, context)
        try:
            self.enqueue(
                OutboundEmail(
                    to=Config.SYSTEM_EMAIL,
                    subject=subject,
                    html=html,
                    email_type=f"{kind}_verification",
                    priority=MailPriority.LOW,
                )
            )
        except Exception as exc:
            self.logger.warning(
                "Verification record could not be queued",
                extra={"kind": kind, "order_id": context.get("order_id"), "error": str(exc)},
            )
            return False
        return True

    def escalate(self, kind: str, context: Dict[str, Any]) -> bool:
        """
        Last line of defence: record a structured event, then queue an urgent
        manual-processing email to operations. Returns True if the queue
        insert succeeded. Never raises.
        """
        payload = {
            "kind": kind,
            "order_id": context.get("order_id"),
            "seller_id": context.get("seller_id"),
            "timestamp": utcnow().isoformat(),
            **{key: value for key, value in context.items() if key not in {"order_id", "seller_id"}},
        }
        record_event(MANUAL_PROCESSING_EMAIL_TYPE, payload)
        increment_counter("manual_processing_escalations_total", labels={"kind": kind})
        self.logger.error("Escalating %s for manual processing", kind, extra={"order_id": payload["order_id"]})

        subject, html = email_templates.manual_processing_required(kind, payload)
        try:
            self.enqueue(
                OutboundEmail(
                    to=Config.OPERATIONS_EMAIL,
                    subject=subject,
                    html=html,
                    email_type=MANUAL_PROCESSING_EMAIL_TYPE,
                    priority=MailPriority.URGENT,
                )
            )
        except Exception as exc:
            self.logger.critical(
                "Manual processing record could not be queued",
                extra={"kind": kind, "order_id": payload["order_id"], "error": str(exc)},
            )
            return False
        return True

    def notify_in_app(
        self,
        user_id: Optional[str],
        notification_type: str,
        title: str,
        message: str,
        order_id: Optional[str] = None,
        action_required: bool = False,
    ) -> bool:
        if not user_id:
            return False
        try:
            self.notification_service.add_notification(
                user_id=user_id,
                notification_type=notification_type,
                title=title,
                message=message,
                order_id=order_id,
                action_required=action_required,
            )
        except Exception as exc:
            self.db.rollback()
            self.logger.warning(
                "In-app notification failed",
                extra={"recipient_id": user_id, "order_id": order_id, "error": str(exc)},
            )
            return False
        return True
