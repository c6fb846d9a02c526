from __future__ import annotations

import logging
from typing import Any, Dict, Optional

from sqlalchemy.orm import Session

from bookmarket.models import MailPriority
from bookmarket.observability import record_event
from bookmarket.services import email_templates
from bookmarket.services.notification_dispatcher import FAILED, NotificationDispatcher, OutboundEmail


class PurchaseEmailService:
    """Purchase emails for both parties through the dispatcher's fallback ladder."""

    def __init__(self, db_session: Session, dispatcher: Optional[NotificationDispatcher] = None) -> None:
        self.db = db_session
        self.logger = logging.getLogger(__name__)
        self.dispatcher = dispatcher or NotificationDispatcher(db_session)

    def send_purchase_emails_with_fallback(
        self,
        data: Dict[str, Any],
        include_notifications: bool = True,
    ) -> Dict[str, Any]:
        """
        Args:
            data: order context (see ``build_order_context``)
            include_notifications: also create in-app notifications; the
                purchase processor creates its own and passes False

        Returns:
            Per-recipient outcomes plus whether the verification record was
            queued and whether the order was escalated.
        """
        try:
            outcomes = self.dispatcher.deliver_all(self._messages(data))

            notifications: Dict[str, bool] = {}
            if include_notifications:
                notifications["seller"] = self.dispatcher.notify_in_app(
                    data["seller_id"],
                    "info",
                    "New Order - Action Required",
                    f"You have a new order for {', '.join(data['book_titles'])}. Please commit within 48 hours.",
                    order_id=data["order_id"],
                    action_required=True,
                )
                notifications["buyer"] = self.dispatcher.notify_in_app(
                    data["buyer_id"],
                    "success",
                    "Purchase Confirmed",
                    "Your purchase was successful. The seller has 48 hours to commit.",
                    order_id=data["order_id"],
                )

            verification_queued = self.dispatcher.queue_verification(
                "purchase",
                {
                    "order_id": data["order_id"],
                    "seller_id": data["seller_id"],
                    "buyer_id": data["buyer_id"],
                    "seller_email": outcomes.get("seller"),
                    "buyer_email": outcomes.get("buyer"),
                },
            )

            escalated = False
            failed = [role for role, outcome in outcomes.items() if outcome == FAILED]
            if failed:
                escalated = self.dispatcher.escalate(
                    "purchase",
                    {"order_id": data["order_id"], "seller_id": data["seller_id"], "failed_recipients": failed},
                )

            record_event("purchase_emails_processed", {"order_id": data["order_id"], **outcomes})
            return {
                "success": not failed,
                "seller": outcomes.get("seller"),
                "buyer": outcomes.get("buyer"),
                "notifications": notifications,
                "verification_queued": verification_queued,
                "escalated": escalated,
            }
        except Exception as exc:
            self.logger.exception("Purchase email pipeline failed", extra={"order_id": data.get("order_id")})
            escalated = self.dispatcher.escalate(
                "purchase",
                {"order_id": data.get("order_id"), "seller_id": data.get("seller_id"), "error": str(exc)},
            )
            return {
                "success": False,
                "seller": None,
                "buyer": None,
                "notifications": {},
                "verification_queued": False,
                "escalated": escalated,
                "error": str(exc),
            }

    @staticmethod
    def _messages(data: Dict[str, Any]) -> Dict[str, OutboundEmail]:
        seller_subject, seller_html = email_templates.seller_new_order(data)
        buyer_subject, buyer_html = email_templates.buyer_receipt(data)
        return {
            "seller": OutboundEmail(
                to=data["seller_email"],
                subject=seller_subject,
                html=seller_html,
                email_type="seller_purchase_notification",
                priority=MailPriority.URGENT,
            ),
            "buyer": OutboundEmail(
                to=data["buyer_email"],
                subject=buyer_subject,
                html=buyer_html,
                email_type="buyer_purchase_receipt",
                priority=MailPriority.HIGH,
            ),
        }
