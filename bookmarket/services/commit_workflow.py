from __future__ import annotations

import logging
from typing import Any, Callable, Dict, Optional

from sqlalchemy.orm import Session

from bookmarket.models import Order, OrderStatus, utcnow
from bookmarket.observability import increment_counter, record_event
from bookmarket.services.commit_service import CommitService, commit_emails, decline_emails
from bookmarket.services.notification_dispatcher import FAILED, SENT, NotificationDispatcher, OutboundEmail
from bookmarket.services.order_context import load_order_context
from bookmarket.services.results import OperationResult


class ManualProcessingError(Exception):
    """The fallback path could not apply the seller's action either."""


class CommitWorkflow:
    """
    Seller commit/decline with guaranteed degradation.

    1. Try the primary ``CommitService`` path.
    2. If it raised, apply the status change directly (still a compare-and-set).
    3. Re-send only the emails the primary path did not get out, via the
       dispatcher (direct send, then mail queue).
    4. Always create in-app notifications for both parties.
    5. Always queue a low-priority verification record.
    6. If anything above raises, escalate for manual processing.

    A business refusal from the primary path (wrong seller, deadline passed,
    order no longer pending) is returned as-is and never retried.
    """

    def __init__(
        self,
        db_session: Session,
        commit_service: Optional[CommitService] = None,
        dispatcher: Optional[NotificationDispatcher] = None,
    ) -> None:
        self.db = db_session
        self.logger = logging.getLogger(__name__)
        self.dispatcher = dispatcher or (commit_service.dispatcher if commit_service else NotificationDispatcher(db_session))
        self.commit_service = commit_service or CommitService(db_session, dispatcher=self.dispatcher)

    def commit_with_email_fallback(self, order_id: str, seller_id: str) -> OperationResult:
        return self._run(
            kind="commit",
            order_id=order_id,
            seller_id=seller_id,
            primary=lambda: self.commit_service.commit_to_sale(order_id, seller_id),
            manual=lambda: self._manual_commit(order_id, seller_id),
            build_messages=commit_emails,
            notify=self._notify_committed,
            success_message="Order committed successfully",
        )

    def decline_with_email_fallback(
        self,
        order_id: str,
        seller_id: str,
        reason: Optional[str] = None,
    ) -> OperationResult:
        return self._run(
            kind="decline",
            order_id=order_id,
            seller_id=seller_id,
            primary=lambda: self.commit_service.decline_order(order_id, seller_id, reason),
            manual=lambda: self._manual_decline(order_id, seller_id, reason),
            build_messages=decline_emails,
            notify=self._notify_declined,
            success_message="Order declined successfully",
            extra_context={"reason": reason},
        )

    def _run(
        self,
        kind: str,
        order_id: str,
        seller_id: str,
        primary: Callable[[], OperationResult],
        manual: Callable[[], None],
        build_messages: Callable[[Dict[str, Any]], Dict[str, OutboundEmail]],
        notify: Callable[[Dict[str, Any]], Dict[str, bool]],
        success_message: str,
        extra_context: Optional[Dict[str, Any]] = None,
    ) -> OperationResult:
        try:
            primary_result: Optional[OperationResult]
            try:
                primary_result = primary()
            except Exception:
                self.db.rollback()
                self.logger.exception("Primary %s path failed; using fallback", kind, extra={"order_id": order_id})
                primary_result = None

            if primary_result is not None and not primary_result.success:
                return primary_result

            fallback_used = primary_result is None
            if fallback_used:
                increment_counter("commit_workflow_fallbacks_total", labels={"kind": kind})
                manual()

            context = load_order_context(self.db, order_id)
            if context is None:
                raise ManualProcessingError(f"Order {order_id} disappeared during {kind}")
            context.update(extra_context or {})
            if primary_result is not None:
                context["tracking_number"] = primary_result.data.get("tracking_number")

            already_sent = primary_result.data.get("emails_sent", {}) if primary_result else {}
            messages = build_messages(context)
            outcomes = {role: SENT for role in messages if already_sent.get(role)}
            outcomes.update(
                self.dispatcher.deliver_all(
                    {role: message for role, message in messages.items() if not already_sent.get(role)}
                )
            )

            notifications = notify(context)
            verification_queued = self.dispatcher.queue_verification(
                kind,
                {
                    "order_id": order_id,
                    "seller_id": seller_id,
                    "fallback_used": fallback_used,
                    "seller_email": outcomes.get("seller"),
                    "buyer_email": outcomes.get("buyer"),
                },
            )

            failed = [role for role, outcome in outcomes.items() if outcome == FAILED]
            escalated = False
            if failed:
                escalated = self.dispatcher.escalate(
                    kind, {"order_id": order_id, "seller_id": seller_id, "failed_recipients": failed}
                )

            record_event(
                f"order_{kind}_processed",
                {"order_id": order_id, "fallback_used": fallback_used, **outcomes},
            )
            data: Dict[str, Any] = dict(primary_result.data) if primary_result else {}
            data.update(
                {
                    "order_id": order_id,
                    "status": self._current_status(order_id),
                    "fallback_used": fallback_used,
                    "email_outcomes": outcomes,
                    "email_sent": not failed,
                    "notifications": notifications,
                    "verification_queued": verification_queued,
                    "escalated": escalated,
                }
            )
            return OperationResult.ok(success_message, **data)
        except Exception as exc:
            self.db.rollback()
            self.logger.exception("%s workflow failed for order %s", kind.title(), order_id)
            queued = self.dispatcher.escalate(
                kind, {"order_id": order_id, "seller_id": seller_id, "error": str(exc)}
            )
            return OperationResult.fail(
                f"{kind.upper()}_PROCESSING_FAILED",
                f"Order {kind} could not be completed automatically; operations have been alerted",
                status_code=500,
                emails_sent=queued,
                order_id=order_id,
            )

    def _manual_commit(self, order_id: str, seller_id: str) -> None:
        order = self._owned_order(order_id, seller_id)
        if order.status == OrderStatus.COMMITTED:
            return
        if order.is_past_deadline():
            raise ManualProcessingError(f"Commit window for order {order_id} has closed")
        if not Order.compare_and_set_status(
            self.db, order_id, OrderStatus.PENDING_COMMIT, OrderStatus.COMMITTED, committed_at=utcnow()
        ):
            self.db.rollback()
            raise ManualProcessingError(f"Order {order_id} could not be committed manually")
        self.db.commit()
        self.logger.warning("Order %s committed through fallback path", order_id)

    def _manual_decline(self, order_id: str, seller_id: str, reason: Optional[str]) -> None:
        order = self._owned_order(order_id, seller_id)
        if order.status == OrderStatus.REFUNDED:
            return
        if order.status == OrderStatus.DECLINED:
            # The primary path may have declined and then failed before the refund landed
            if order.refund_status != "success":
                self.logger.warning("Completing refund for declined order %s", order_id)
                self.commit_service.refund_order(order, OrderStatus.DECLINED, reason="Seller declined the order")
            return
        if not Order.compare_and_set_status(
            self.db,
            order_id,
            OrderStatus.PENDING_COMMIT,
            OrderStatus.DECLINED,
            declined_at=utcnow(),
            decline_reason=reason or "No reason provided",
        ):
            self.db.rollback()
            raise ManualProcessingError(f"Order {order_id} could not be declined manually")
        self.commit_service.relist_books(order)
        self.db.commit()
        self.db.refresh(order)
        self.logger.warning("Order %s declined through fallback path", order_id)
        self.commit_service.refund_order(order, OrderStatus.DECLINED, reason="Seller declined the order")

    def _owned_order(self, order_id: str, seller_id: str) -> Order:
        order = self.db.get(Order, order_id, populate_existing=True)
        if order is None:
            raise ManualProcessingError(f"Order {order_id} not found")
        if order.seller_id != seller_id:
            raise ManualProcessingError(f"Seller {seller_id} does not own order {order_id}")
        return order

    def _current_status(self, order_id: str) -> Optional[str]:
        order = self.db.get(Order, order_id, populate_existing=True)
        return OrderStatus(order.status).value if order else None

    def _notify_committed(self, context: Dict[str, Any]) -> Dict[str, bool]:
        tracking = context.get("tracking_number") or "TBA"
        return {
            "buyer": self.dispatcher.notify_in_app(
                context["buyer_id"],
                "success",
                "Order Confirmed",
                f"The seller has committed to your order. Tracking: {tracking}",
                order_id=context["order_id"],
            ),
            "seller": self.dispatcher.notify_in_app(
                context["seller_id"],
                "success",
                "Order Committed",
                f"You have successfully committed to the order. Tracking: {tracking}",
                order_id=context["order_id"],
            ),
        }

    def _notify_declined(self, context: Dict[str, Any]) -> Dict[str, bool]:
        return {
            "buyer": self.dispatcher.notify_in_app(
                context["buyer_id"],
                "warning",
                "Order Declined",
                "The seller declined your order. A full refund has been initiated.",
                order_id=context["order_id"],
            ),
            "seller": self.dispatcher.notify_in_app(
                context["seller_id"],
                "info",
                "Order Declined",
                "You declined the order. Your book is available for sale again.",
                order_id=context["order_id"],
            ),
        }
