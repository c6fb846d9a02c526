from __future__ import annotations

import logging
from typing import Any, Dict, Optional

from sqlalchemy.orm import Session

from bookmarket.models import (
    DeliveryStatus,
    Order,
    OrderActivityLog,
    OrderStatus,
    normalize_delivery_data,
    utcnow,
)
from bookmarket.observability import increment_counter
from bookmarket.services.notification_dispatcher import NotificationDispatcher
from bookmarket.services.results import OperationResult

_BUYER_MESSAGES = {
    DeliveryStatus.COLLECTED: ("Book Collected", "Your book has been collected by the courier and is on its way."),
    DeliveryStatus.OUT_FOR_DELIVERY: ("Out for Delivery", "Your book is out for delivery today."),
    DeliveryStatus.DELIVERED: ("Order Delivered", "Your order has been delivered. Enjoy your book!"),
    DeliveryStatus.FAILED: ("Delivery Problem", "The courier reported a delivery problem. We are looking into it."),
}


class DeliveryService:
    """Applies courier tracking events to committed orders."""

    def __init__(self, db_session: Session, dispatcher: Optional[NotificationDispatcher] = None) -> None:
        self.db = db_session
        self.logger = logging.getLogger(__name__)
        self.dispatcher = dispatcher or NotificationDispatcher(db_session)

    def update_delivery_status(
        self,
        order_id: str,
        status: str,
        data: Optional[Dict[str, Any]] = None,
    ) -> OperationResult:
        try:
            delivery_status = DeliveryStatus(status)
        except ValueError:
            delivery_status = None
        if delivery_status is None or delivery_status == DeliveryStatus.PENDING:
            return OperationResult.fail(
                "INVALID_DELIVERY_STATUS",
                f"Unsupported delivery status: {status}",
                allowed=[s.value for s in DeliveryStatus if s != DeliveryStatus.PENDING],
            )

        if data is not None:
            try:
                data = normalize_delivery_data(data)
            except ValueError as exc:
                return OperationResult.fail("INVALID_DELIVERY_DATA", str(exc))

        order = self.db.get(Order, order_id)
        if order is None:
            return OperationResult.fail("ORDER_NOT_FOUND", "Order not found", status_code=404, order_id=order_id)

        if order.status == OrderStatus.DELIVERED and delivery_status == DeliveryStatus.DELIVERED:
            return OperationResult.ok("Order already delivered", order_id=order_id, status=OrderStatus.DELIVERED.value)
        if order.status != OrderStatus.COMMITTED:
            return OperationResult.fail(
                "INVALID_ORDER_STATUS",
                "Delivery updates are only accepted for committed orders",
                status_code=409,
                current_status=OrderStatus(order.status).value,
            )

        now = utcnow()
        delivery_data = dict(order.delivery_data or {})
        delivery_data.update(data or {})
        delivery_data[f"{delivery_status.value}_at"] = now.isoformat()
        values = {"delivery_status": delivery_status.value, "delivery_data": delivery_data}

        if delivery_status == DeliveryStatus.DELIVERED:
            applied = Order.compare_and_set_status(
                self.db, order_id, OrderStatus.COMMITTED, OrderStatus.DELIVERED, **values
            )
        else:
            applied = (
                self.db.query(Order)
                .filter(Order.id == order_id, Order.status == OrderStatus.COMMITTED)
                .update({**values, "updated_at": now}, synchronize_session=False)
                == 1
            )
        if not applied:
            self.db.rollback()
            return OperationResult.fail(
                "INVALID_ORDER_STATUS", "Order changed while applying the delivery update", status_code=409
            )

        self.db.add(
            OrderActivityLog(
                order_id=order_id,
                action=f"delivery_{delivery_status.value}",
                old_status=OrderStatus.COMMITTED.value,
                new_status=(
                    OrderStatus.DELIVERED.value
                    if delivery_status == DeliveryStatus.DELIVERED
                    else OrderStatus.COMMITTED.value
                ),
                activity_metadata=data,
            )
        )
        self.db.commit()
        self.db.refresh(order)
        increment_counter("delivery_updates_total", labels={"status": delivery_status.value})
        self.logger.info("Order %s delivery status -> %s", order_id, delivery_status.value)

        buyer_message = _BUYER_MESSAGES.get(delivery_status)
        if buyer_message:
            title, message = buyer_message
            self.dispatcher.notify_in_app(order.buyer_id, "info", title, message, order_id=order_id)
        if delivery_status == DeliveryStatus.DELIVERED:
            self.dispatcher.notify_in_app(
                order.seller_id,
                "success",
                "Order Delivered",
                "Your book was delivered. Your payout will be processed shortly.",
                order_id=order_id,
            )

        return OperationResult.ok(
            "Delivery status updated",
            order_id=order_id,
            status=OrderStatus(order.status).value,
            delivery_status=delivery_status.value,
        )
