from __future__ import annotations

import logging
from datetime import datetime, timedelta
from typing import Any, Dict, List, Optional

from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from bookmarket.config import Config
from bookmarket.models import (
    Book,
    DeliveryStatus,
    MailPriority,
    Order,
    OrderActivityLog,
    OrderStatus,
    PaymentStatus,
    Profile,
    as_utc,
    utcnow,
)
from bookmarket.observability import increment_counter, record_event, set_gauge
from bookmarket.services import email_templates
from bookmarket.services.courier_client import CourierClient
from bookmarket.services.errors import CourierError, EmailDeliveryError
from bookmarket.services.notification_dispatcher import FAILED, NotificationDispatcher, OutboundEmail
from bookmarket.services.order_context import build_order_context
from bookmarket.services.payment_service import PaymentService
from bookmarket.services.results import OperationResult

CANCELLABLE_STATUSES = (OrderStatus.PENDING_COMMIT, OrderStatus.COMMITTED)
# Past this point the courier holds the book
SHIPMENT_IN_PROGRESS = frozenset(
    status.value
    for status in (
        DeliveryStatus.COLLECTED,
        DeliveryStatus.IN_TRANSIT,
        DeliveryStatus.OUT_FOR_DELIVERY,
        DeliveryStatus.DELIVERED,
    )
)


class CommitService:
    """
    Seller commit/decline, buyer cancellation, and the expiry and reminder
    sweeps.

    Every status change goes through ``Order.compare_and_set_status`` so a
    concurrent commit, decline or expiry can only win once.
    """

    def __init__(
        self,
        db_session: Session,
        dispatcher: Optional[NotificationDispatcher] = None,
        courier_client: Optional[CourierClient] = None,
        payment_service: Optional[PaymentService] = None,
    ) -> None:
        self.db = db_session
        self.logger = logging.getLogger(__name__)
        self.dispatcher = dispatcher or NotificationDispatcher(db_session)
        self.courier_client = courier_client or CourierClient()
        self.payment_service = payment_service or PaymentService()

    def check_seller_action(self, order_id: str, seller_id: str, now: Optional[datetime] = None) -> OperationResult:
        """Ownership, status and deadline checks shared by commit and decline."""
        order = self.db.get(Order, order_id)
        if order is None:
            return OperationResult.fail("ORDER_NOT_FOUND", "Order not found", status_code=404, order_id=order_id)
        if order.seller_id != seller_id:
            return OperationResult.fail(
                "NOT_ORDER_SELLER", "Only the seller can act on this order", status_code=403, order_id=order_id
            )
        if order.status != OrderStatus.PENDING_COMMIT:
            return OperationResult.fail(
                "INVALID_ORDER_STATUS",
                f"Order cannot be changed in status: {OrderStatus(order.status).value}",
                status_code=409,
                current_status=OrderStatus(order.status).value,
            )
        if order.is_past_deadline(now):
            return OperationResult.fail(
                "COMMIT_DEADLINE_PASSED",
                "The commit window for this order has closed",
                status_code=409,
                commit_deadline=as_utc(order.commit_deadline).isoformat(),
            )
        return OperationResult.ok(order=order)

    def commit_to_sale(self, order_id: str, seller_id: str) -> OperationResult:
        """
        Commit a pending order, schedule pickup and email both parties.

        The ``emails_sent`` map in the result reports which direct sends
        succeeded; callers fall back for the rest.
        """
        check = self.check_seller_action(order_id, seller_id)
        if not check.success:
            return check
        order: Order = check.data["order"]

        now = utcnow()
        if not Order.compare_and_set_status(
            self.db, order_id, OrderStatus.PENDING_COMMIT, OrderStatus.COMMITTED, committed_at=now
        ):
            self.db.rollback()
            return OperationResult.fail(
                "INVALID_ORDER_STATUS", "Order is no longer pending commitment", status_code=409
            )
        self._log_activity(order_id, seller_id, "seller_committed", OrderStatus.PENDING_COMMIT, OrderStatus.COMMITTED)
        self.db.commit()
        self.db.refresh(order)
        increment_counter("orders_committed_total")
        self.logger.info("Order %s committed by seller %s", order_id, seller_id)

        seller = self.db.get(Profile, order.seller_id)
        buyer = self.db.get(Profile, order.buyer_id)
        shipment = self._schedule_delivery(order, seller, buyer)

        context = build_order_context(order, seller, buyer)
        context["tracking_number"] = shipment.get("tracking_number") if shipment else None
        emails_sent = self._send_direct(commit_emails(context))

        return OperationResult.ok(
            "Order committed successfully",
            order_id=order_id,
            status=OrderStatus.COMMITTED.value,
            delivery_scheduled=shipment is not None,
            tracking_number=context["tracking_number"],
            waybill_url=shipment.get("waybill_url") if shipment else None,
            emails_sent=emails_sent,
            email_sent=all(emails_sent.values()),
        )

    def decline_order(self, order_id: str, seller_id: str, reason: Optional[str] = None) -> OperationResult:
        check = self.check_seller_action(order_id, seller_id)
        if not check.success:
            return check
        order: Order = check.data["order"]

        if not Order.compare_and_set_status(
            self.db,
            order_id,
            OrderStatus.PENDING_COMMIT,
            OrderStatus.DECLINED,
            declined_at=utcnow(),
            decline_reason=reason or "No reason provided",
        ):
            self.db.rollback()
            return OperationResult.fail(
                "INVALID_ORDER_STATUS", "Order is no longer pending commitment", status_code=409
            )
        self.relist_books(order)
        self._log_activity(
            order_id, seller_id, "seller_declined", OrderStatus.PENDING_COMMIT, OrderStatus.DECLINED, {"reason": reason}
        )
        self.db.commit()
        self.db.refresh(order)
        increment_counter("orders_declined_total")
        self.logger.info("Order %s declined by seller %s", order_id, seller_id, extra={"reason": reason})

        refund = self.refund_order(order, OrderStatus.DECLINED, reason="Seller declined the order")

        context = build_order_context(order, self.db.get(Profile, order.seller_id), self.db.get(Profile, order.buyer_id))
        context["reason"] = reason
        emails_sent = self._send_direct(decline_emails(context))

        return OperationResult.ok(
            "Order declined successfully",
            order_id=order_id,
            status=OrderStatus(order.status).value,
            refund=refund,
            emails_sent=emails_sent,
            email_sent=all(emails_sent.values()),
        )

    def cancel_order(
        self,
        order_id: str,
        actor_id: Optional[str],
        reason: Optional[str] = None,
        is_admin: bool = False,
    ) -> OperationResult:
        """
        Buyer or operator cancellation before the book ships.

        The order is claimed with a compare-and-set to ``cancelled`` first, so
        a concurrent commit, decline or expiry wins or loses cleanly. Any
        booked shipment is then cancelled, the books relisted and the buyer
        refunded. A failed refund leaves ``refund_status = failed`` for the
        sweep to retry.
        """
        order = self.db.get(Order, order_id)
        if order is None:
            return OperationResult.fail("ORDER_NOT_FOUND", "Order not found", status_code=404, order_id=order_id)
        if not is_admin and order.buyer_id != actor_id:
            return OperationResult.fail(
                "NOT_ORDER_BUYER", "Only the buyer can cancel this order", status_code=403, order_id=order_id
            )
        current = OrderStatus(order.status)
        if current not in CANCELLABLE_STATUSES:
            return OperationResult.fail(
                "INVALID_ORDER_STATUS",
                f"Order cannot be cancelled in status: {current.value}",
                status_code=409,
                current_status=current.value,
            )
        if order.delivery_status in SHIPMENT_IN_PROGRESS:
            return OperationResult.fail(
                "DELIVERY_IN_PROGRESS",
                "The book is already with the courier and can no longer be cancelled",
                status_code=409,
                delivery_status=order.delivery_status,
            )

        reason = reason or ("Cancelled by administrator" if is_admin else "Cancelled by buyer")
        if not Order.compare_and_set_status(
            self.db,
            order_id,
            CANCELLABLE_STATUSES,
            OrderStatus.CANCELLED,
            cancelled_at=utcnow(),
            cancellation_reason=reason,
        ):
            self.db.rollback()
            return OperationResult.fail(
                "INVALID_ORDER_STATUS", "Order changed while it was being cancelled", status_code=409
            )
        self.relist_books(order)
        self._log_activity(
            order_id, actor_id, "order_cancelled", current, OrderStatus.CANCELLED, {"reason": reason, "by_admin": is_admin}
        )
        self.db.commit()
        self.db.refresh(order)
        increment_counter("orders_cancelled_total", labels={"from_status": current.value})
        self.logger.info("Order %s cancelled", order_id, extra={"reason": reason, "by_admin": is_admin})

        shipment_cancelled = self._cancel_shipment(order, reason) if current == OrderStatus.COMMITTED else False
        refund = self._refund_cancelled(order, reason)

        context = build_order_context(order, self.db.get(Profile, order.seller_id), self.db.get(Profile, order.buyer_id))
        context.update(reason=reason, refunded=refund["success"])
        outcomes = self.dispatcher.deliver_all(cancellation_emails(context))
        self.dispatcher.notify_in_app(
            order.buyer_id,
            "info",
            "Order Cancelled",
            "Your order was cancelled." + (" A full refund has been processed." if refund["success"] else ""),
            order_id=order_id,
        )
        self.dispatcher.notify_in_app(
            order.seller_id,
            "warning",
            "Order Cancelled",
            "An order for your book was cancelled. The book is listed for sale again.",
            order_id=order_id,
        )
        failed = [role for role, outcome in outcomes.items() if outcome == FAILED]
        if failed or not refund["success"]:
            self.dispatcher.escalate(
                "cancel",
                {
                    "order_id": order_id,
                    "seller_id": order.seller_id,
                    "failed_recipients": failed,
                    "refund_success": refund["success"],
                },
            )

        return OperationResult.ok(
            "Order cancelled and refund processed" if refund["success"] else "Order cancelled; refund pending",
            order_id=order_id,
            status=OrderStatus.CANCELLED.value,
            refund=refund,
            shipment_cancelled=shipment_cancelled,
            email_outcomes=outcomes,
        )

    def relist_books(self, order: Order) -> List[str]:
        """Compensating write: put the order's books back on sale."""
        book_ids = {item.get("book_id") for item in (order.items or []) if item.get("book_id")}
        if order.book_id:
            book_ids.add(order.book_id)
        return [book_id for book_id in sorted(book_ids) if Book.relist(self.db, book_id)]

    def refund_order(self, order: Order, from_status: OrderStatus, reason: str = "") -> Dict[str, Any]:
        """
        Refund the buyer in full. On success the order moves to ``refunded``;
        on failure ``refund_status`` is set to ``failed`` for the sweep to retry.
        """
        success, message, reference = self.payment_service.refund(order, reason=reason)
        if success:
            moved = Order.compare_and_set_status(
                self.db,
                order.id,
                from_status,
                OrderStatus.REFUNDED,
                payment_status=PaymentStatus.REFUNDED,
                refund_status="success",
                refund_reference=reference,
                refunded_at=utcnow(),
            )
            self._log_activity(order.id, None, "refund_processed", from_status, OrderStatus.REFUNDED, {"reference": reference})
            self.db.commit()
            self.db.refresh(order)
            increment_counter("refunds_completed_total")
            record_event("refund_completed", {"order_id": order.id, "amount": order.amount, "reference": reference})
            return {"success": True, "status_updated": moved, "reference": reference, "message": message}

        self.db.query(Order).filter(Order.id == order.id).update(
            {"refund_status": "failed", "updated_at": utcnow()}, synchronize_session=False
        )
        self.db.commit()
        self.db.refresh(order)
        increment_counter("refunds_failed_total")
        record_event("refund_failed", {"order_id": order.id, "reason": message})
        self.logger.warning("Refund failed for order %s", order.id, extra={"reason": message})
        return {"success": False, "status_updated": False, "reference": None, "message": message}

    def expire_overdue_orders(self, now: Optional[datetime] = None) -> OperationResult:
        """
        Background sweep: expire pending orders past their deadline, relist
        their books, refund buyers, notify both parties, retry failed refunds
        and send operations a summary.
        """
        now = now or utcnow()
        overdue = (
            self.db.query(Order)
            .filter(Order.status == OrderStatus.PENDING_COMMIT, Order.commit_deadline <= now)
            .order_by(Order.commit_deadline)
            .all()
        )
        expired: List[str] = []
        refunded: List[str] = []
        errors: List[Dict[str, str]] = []

        for order in overdue:
            try:
                if not Order.compare_and_set_status(
                    self.db, order.id, OrderStatus.PENDING_COMMIT, OrderStatus.EXPIRED
                ):
                    self.db.rollback()
                    continue
                self.relist_books(order)
                self._log_activity(order.id, None, "auto_expired", OrderStatus.PENDING_COMMIT, OrderStatus.EXPIRED)
                self.db.commit()
                self.db.refresh(order)
                expired.append(order.id)

                refund = self.refund_order(order, OrderStatus.EXPIRED, reason="Seller did not commit in time")
                if refund["success"]:
                    refunded.append(order.id)
                self._notify_expired(order)
            except Exception as exc:
                self.db.rollback()
                self.logger.exception("Failed to expire order %s", order.id)
                errors.append({"order_id": order.id, "error": str(exc)})

        retried = self._retry_failed_refunds()
        refunded.extend(retried)

        increment_counter("orders_expired_total", amount=len(expired))
        set_gauge("orders_expired_last_run", len(expired))
        summary = {
            "processed": len(overdue),
            "expired": len(expired),
            "refunded": len(refunded),
            "refund_retries_succeeded": len(retried),
            "errors": len(errors),
            "timestamp": now.isoformat(),
        }
        if overdue or retried:
            subject, html = email_templates.expiry_summary(summary)
            try:
                self.dispatcher.deliver(
                    OutboundEmail(
                        to=Config.OPERATIONS_EMAIL,
                        subject=subject,
                        html=html,
                        email_type="auto_expire_summary",
                        priority=MailPriority.NORMAL,
                    )
                )
            except Exception as exc:
                self.logger.error("Expiry summary could not be sent or queued", extra={"error": str(exc)})

        self.logger.info("Expiry sweep finished", extra=summary)
        return OperationResult.ok(
            f"Processed {len(overdue)} overdue orders",
            expired_order_ids=expired,
            refunded_order_ids=refunded,
            errors=errors,
            summary=summary,
        )

    def _retry_failed_refunds(self) -> List[str]:
        pending = (
            self.db.query(Order)
            .filter(
                Order.status.in_([OrderStatus.DECLINED, OrderStatus.EXPIRED, OrderStatus.CANCELLED]),
                Order.refund_status == "failed",
            )
            .all()
        )
        succeeded: List[str] = []
        for order in pending:
            if order.status == OrderStatus.CANCELLED:
                refund = self._refund_cancelled(order, "Refund retry")
            else:
                refund = self.refund_order(order, OrderStatus(order.status), reason="Refund retry")
            if refund["success"]:
                succeeded.append(order.id)
        return succeeded

    def send_commit_reminders(self, now: Optional[datetime] = None) -> OperationResult:
        """
        Remind sellers once about pending orders whose commit deadline is
        within ``COMMIT_REMINDER_HOURS``. The reminder is claimed with a guarded
        update on ``reminder_sent_at`` before sending, and released again if
        the email could neither be sent nor queued, so concurrent sweeps
        never double-send.
        """
        now = now or utcnow()
        due = (
            self.db.query(Order)
            .filter(
                Order.status == OrderStatus.PENDING_COMMIT,
                Order.commit_deadline > now,
                Order.commit_deadline <= now + timedelta(hours=Config.COMMIT_REMINDER_HOURS),
                Order.reminder_sent_at.is_(None),
            )
            .order_by(Order.commit_deadline)
            .all()
        )
        reminders: List[Dict[str, Any]] = []
        errors: List[Dict[str, str]] = []

        for order in due:
            claimed = (
                self.db.query(Order)
                .filter(
                    Order.id == order.id,
                    Order.status == OrderStatus.PENDING_COMMIT,
                    Order.reminder_sent_at.is_(None),
                )
                .update({"reminder_sent_at": now}, synchronize_session=False)
                == 1
            )
            self.db.commit()
            if not claimed:
                continue

            hours_left = max(0, int((as_utc(order.commit_deadline) - now).total_seconds() // 3600))
            urgent = hours_left <= Config.COMMIT_REMINDER_URGENT_HOURS
            context = build_order_context(order, self.db.get(Profile, order.seller_id), self.db.get(Profile, order.buyer_id))
            subject, html = email_templates.seller_commit_reminder(context, hours_left, urgent)
            try:
                if not context["seller_email"]:
                    raise EmailDeliveryError("Seller has no email address")
                outcome = self.dispatcher.deliver(
                    OutboundEmail(
                        context["seller_email"],
                        subject,
                        html,
                        "commit_reminder",
                        MailPriority.URGENT if urgent else MailPriority.HIGH,
                    )
                )
            except EmailDeliveryError as exc:
                self.db.query(Order).filter(Order.id == order.id).update(
                    {"reminder_sent_at": None}, synchronize_session=False
                )
                self.db.commit()
                self.logger.warning("Commit reminder failed for order %s", order.id, extra={"error": str(exc)})
                errors.append({"order_id": order.id, "error": str(exc)})
                continue

            self.dispatcher.notify_in_app(
                order.seller_id,
                "warning",
                "Commit Reminder",
                f"You have {hours_left} hours left to commit to an order before it is cancelled.",
                order_id=order.id,
                action_required=True,
            )
            reminders.append(
                {
                    "order_id": order.id,
                    "seller_email": context["seller_email"],
                    "time_left_hours": hours_left,
                    "urgent": urgent,
                    "status": outcome,
                }
            )

        increment_counter("commit_reminders_sent_total", amount=len(reminders))
        summary = {
            "sent": len(reminders),
            "urgent": sum(1 for reminder in reminders if reminder["urgent"]),
            "errors": len(errors),
            "timestamp": now.isoformat(),
        }
        if reminders:
            subject, html = email_templates.reminder_summary(summary)
            try:
                self.dispatcher.deliver(
                    OutboundEmail(Config.OPERATIONS_EMAIL, subject, html, "commit_reminder_summary", MailPriority.LOW)
                )
            except EmailDeliveryError as exc:
                self.logger.error("Reminder summary could not be sent or queued", extra={"error": str(exc)})

        self.logger.info("Reminder sweep finished", extra=summary)
        return OperationResult.ok(
            f"Sent {len(reminders)} reminders with {len(errors)} errors",
            reminders=reminders,
            errors=errors,
            summary=summary,
        )

    def _refund_cancelled(self, order: Order, reason: str) -> Dict[str, Any]:
        """Refund a cancelled order. Only the refund fields change; ``cancelled`` is terminal."""
        success, message, reference = self.payment_service.refund(order, reason=reason)
        if success:
            values: Dict[str, Any] = {
                "payment_status": PaymentStatus.REFUNDED,
                "refund_status": "success",
                "refund_reference": reference,
                "refunded_at": utcnow(),
            }
        else:
            values = {"refund_status": "failed"}
        self.db.query(Order).filter(Order.id == order.id, Order.status == OrderStatus.CANCELLED).update(
            {**values, "updated_at": utcnow()}, synchronize_session=False
        )
        self.db.commit()
        self.db.refresh(order)
        if success:
            increment_counter("refunds_completed_total")
            record_event("refund_completed", {"order_id": order.id, "amount": order.amount, "reference": reference})
        else:
            increment_counter("refunds_failed_total")
            record_event("refund_failed", {"order_id": order.id, "reason": message})
            self.logger.warning("Refund failed for cancelled order %s", order.id, extra={"reason": message})
        return {"success": success, "reference": reference, "message": message}

    def _cancel_shipment(self, order: Order, reason: str) -> bool:
        shipment_id = (order.delivery_data or {}).get("shipment_id")
        if not shipment_id:
            return False
        try:
            self.courier_client.cancel_shipment(shipment_id, reason)
        except CourierError as exc:
            self.logger.warning("Shipment cancellation failed for order %s", order.id, extra={"error": str(exc)})
            record_event("shipment_cancel_failed", {"order_id": order.id, "shipment_id": shipment_id, "error": str(exc)})
            return False
        return True

    def _notify_expired(self, order: Order) -> None:
        seller = self.db.get(Profile, order.seller_id)
        buyer = self.db.get(Profile, order.buyer_id)
        context = build_order_context(order, seller, buyer)
        self.dispatcher.notify_in_app(
            order.buyer_id,
            "warning",
            "Order Expired",
            "The seller did not commit in time. Your payment has been refunded.",
            order_id=order.id,
        )
        self.dispatcher.notify_in_app(
            order.seller_id,
            "warning",
            "Order Expired",
            "You did not commit within 48 hours, so the order was cancelled and the buyer refunded.",
            order_id=order.id,
        )
        buyer_subject, buyer_html = email_templates.buyer_order_expired(context)
        seller_subject, seller_html = email_templates.seller_order_expired(context)
        outcomes = self.dispatcher.deliver_all(
            {
                "buyer": OutboundEmail(context["buyer_email"], buyer_subject, buyer_html, "order_expired_buyer", MailPriority.HIGH),
                "seller": OutboundEmail(context["seller_email"], seller_subject, seller_html, "order_expired_seller", MailPriority.NORMAL),
            }
        )
        failed = [role for role, outcome in outcomes.items() if outcome == FAILED]
        if failed:
            self.dispatcher.escalate(
                "expiry", {"order_id": order.id, "seller_id": order.seller_id, "failed_recipients": failed}
            )

    def _schedule_delivery(self, order: Order, seller: Optional[Profile], buyer: Optional[Profile]) -> Optional[Dict[str, Any]]:
        """Pickup failure does not undo the commit; the order keeps delivery_status pending."""
        try:
            if seller is None or buyer is None:
                raise CourierError("Buyer or seller profile missing")
            shipment = self.courier_client.create_shipment(
                self.courier_client.build_shipment_request(order, seller, buyer)
            )
        except CourierError as exc:
            self.logger.warning("Delivery scheduling failed for order %s", order.id, extra={"error": str(exc)})
            record_event("delivery_scheduling_failed", {"order_id": order.id, "error": str(exc)})
            return None

        delivery_data = dict(order.delivery_data or {})
        delivery_data.update(
            {
                "shipment_id": shipment.get("shipment_id"),
                "tracking_number": shipment.get("tracking_number"),
                "waybill_url": shipment.get("waybill_url"),
                "pickup_scheduled_at": utcnow().isoformat(),
            }
        )
        try:
            self.db.query(Order).filter(
                Order.id == order.id, Order.status == OrderStatus.COMMITTED
            ).update(
                {
                    "delivery_status": DeliveryStatus.PICKUP_SCHEDULED.value,
                    "delivery_data": delivery_data,
                    "updated_at": utcnow(),
                },
                synchronize_session=False,
            )
            self.db.commit()
            self.db.refresh(order)
        except SQLAlchemyError as exc:
            self.db.rollback()
            self.logger.error("Could not store shipment for order %s", order.id, extra={"error": str(exc)})
            record_event("delivery_scheduling_failed", {"order_id": order.id, "error": str(exc)})
        return shipment

    def _send_direct(self, messages: Dict[str, OutboundEmail]) -> Dict[str, bool]:
        sent: Dict[str, bool] = {}
        for role, message in messages.items():
            try:
                self.dispatcher.email_client.send(message.to, message.subject, message.html)
                sent[role] = True
            except Exception as exc:
                self.logger.warning(
                    "Direct %s email failed", message.email_type, extra={"to": message.to, "error": str(exc)}
                )
                sent[role] = False
        return sent

    def _log_activity(
        self,
        order_id: str,
        user_id: Optional[str],
        action: str,
        old_status: OrderStatus,
        new_status: OrderStatus,
        metadata: Optional[Dict[str, Any]] = None,
    ) -> None:
        self.db.add(
            OrderActivityLog(
                order_id=order_id,
                user_id=user_id,
                action=action,
                old_status=old_status.value,
                new_status=new_status.value,
                activity_metadata=metadata,
            )
        )


def commit_emails(context: Dict[str, Any]) -> Dict[str, OutboundEmail]:
    seller_subject, seller_html = email_templates.seller_commit_confirmation(context)
    buyer_subject, buyer_html = email_templates.buyer_commit_confirmation(context)
    return {
        "seller": OutboundEmail(
            context["seller_email"], seller_subject, seller_html, "seller_commit_confirmation", MailPriority.HIGH
        ),
        "buyer": OutboundEmail(
            context["buyer_email"], buyer_subject, buyer_html, "buyer_commit_confirmation", MailPriority.HIGH
        ),
    }


def decline_emails(context: Dict[str, Any]) -> Dict[str, OutboundEmail]:
    buyer_subject, buyer_html = email_templates.buyer_order_declined(context)
    seller_subject, seller_html = email_templates.seller_decline_confirmation(context)
    return {
        "seller": OutboundEmail(
            context["seller_email"], seller_subject, seller_html, "seller_decline_confirmation", MailPriority.NORMAL
        ),
        "buyer": OutboundEmail(
            context["buyer_email"], buyer_subject, buyer_html, "buyer_order_declined", MailPriority.HIGH
        ),
    }


def cancellation_emails(context: Dict[str, Any]) -> Dict[str, OutboundEmail]:
    buyer_subject, buyer_html = email_templates.buyer_order_cancelled(context)
    seller_subject, seller_html = email_templates.seller_order_cancelled(context)
    return {
        "seller": OutboundEmail(
            context["seller_email"], seller_subject, seller_html, "seller_order_cancelled", MailPriority.NORMAL
        ),
        "buyer": OutboundEmail(
            context["buyer_email"], buyer_subject, buyer_html, "buyer_order_cancelled", MailPriority.HIGH
        ),
    }
