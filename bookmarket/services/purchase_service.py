from __future__ import annotations

import logging
import math
import time
from datetime import timedelta
from decimal import Decimal
from typing import Any, Dict, Optional

from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from bookmarket.config import Config
from bookmarket.models import (
    Book,
    Order,
    OrderActivityLog,
    OrderStatus,
    PaymentStatus,
    Profile,
    as_utc,
    normalize_delivery_data,
    utcnow,
)
from bookmarket.observability import increment_counter, observe_latency, record_event
from bookmarket.services.errors import PaymentProviderError
from bookmarket.services.notification_dispatcher import NotificationDispatcher
from bookmarket.services.order_context import build_order_context
from bookmarket.services.payment_service import PaymentService
from bookmarket.services.purchase_email_service import PurchaseEmailService
from bookmarket.services.results import OperationResult

REQUIRED_FIELDS = ("book_id", "buyer_id", "seller_id", "amount", "payment_reference")


class PurchaseService:
    """
    Turns a confirmed payment into an order.

    The book is claimed with a conditional update (``sold`` false -> true)
    and the order is inserted in the same transaction; if the insert fails
    the rollback returns the book to sale.
    """

    def __init__(
        self,
        db_session: Session,
        dispatcher: Optional[NotificationDispatcher] = None,
        purchase_email_service: Optional[PurchaseEmailService] = None,
        payment_service: Optional[PaymentService] = None,
        verify_payments: Optional[bool] = None,
    ) -> None:
        self.db = db_session
        self.logger = logging.getLogger(__name__)
        self.dispatcher = dispatcher or NotificationDispatcher(db_session)
        self.purchase_email_service = purchase_email_service or PurchaseEmailService(
            db_session, dispatcher=self.dispatcher
        )
        self.payment_service = payment_service or PaymentService()
        self.verify_payments = Config.PAYSTACK_VERIFY_PURCHASES if verify_payments is None else verify_payments

    def process_purchase(
        self,
        payload: Any,
        payment_verified: bool = False,
        created_from: str = "single_book_purchase",
    ) -> OperationResult:
        started = time.perf_counter()
        result = self._process(payload, payment_verified, created_from)
        observe_latency("purchase_processing_seconds", time.perf_counter() - started)
        increment_counter("purchases_total", labels={"outcome": "success" if result.success else result.error})
        return result

    def _process(self, payload: Any, payment_verified: bool, created_from: str) -> OperationResult:
        if not isinstance(payload, dict):
            return OperationResult.fail("INVALID_JSON", "Request body must be a JSON object")

        missing = [name for name in REQUIRED_FIELDS if payload.get(name) in (None, "")]
        if missing:
            return OperationResult.fail(
                "MISSING_REQUIRED_FIELDS",
                f"Missing required fields: {', '.join(missing)}",
                missing_fields=missing,
                provided_fields=sorted(payload.keys()),
            )

        amount = payload["amount"]
        if (
            isinstance(amount, bool)
            or not isinstance(amount, (int, float))
            or not math.isfinite(amount)
            or amount <= 0
        ):
            return OperationResult.fail(
                "INVALID_AMOUNT_FORMAT",
                "Amount must be a positive number",
                provided_amount=amount,
                amount_type=type(amount).__name__,
            )

        delivery_data = payload.get("delivery_data")
        if delivery_data is not None:
            try:
                delivery_data = normalize_delivery_data(delivery_data)
            except ValueError as exc:
                return OperationResult.fail("INVALID_DELIVERY_DATA", str(exc), provided=payload.get("delivery_data"))

        book_id = str(payload["book_id"])
        buyer_id = str(payload["buyer_id"])
        seller_id = str(payload["seller_id"])
        reference = str(payload["payment_reference"])

        book = (
            self.db.query(Book)
            .filter(Book.id == book_id, Book.seller_id == seller_id, Book.sold.is_(False))
            .first()
        )
        if book is None:
            return OperationResult.fail(
                "BOOK_NOT_AVAILABLE",
                "Book is not available for purchase",
                status_code=404,
                book_id=book_id,
                seller_id=seller_id,
                possible_causes=["Book already sold", "Book does not exist", "Seller does not own this book"],
            )

        paid = Decimal(str(amount))
        price = Decimal(str(book.price))
        if abs(paid - price) > Decimal(str(Config.PRICE_TOLERANCE)):
            return OperationResult.fail(
                "AMOUNT_MISMATCH",
                "Payment amount does not match the book price",
                book_price=float(price),
                payment_amount=float(paid),
                difference=float(abs(paid - price)),
            )

        buyer = self.db.get(Profile, buyer_id)
        if buyer is None:
            return OperationResult.fail("BUYER_NOT_FOUND", "Buyer profile not found", status_code=404, buyer_id=buyer_id)
        seller = self.db.get(Profile, seller_id)
        if seller is None:
            return OperationResult.fail(
                "SELLER_NOT_FOUND", "Seller profile not found", status_code=404, seller_id=seller_id
            )

        if buyer_id == seller_id:
            return OperationResult.fail(
                "SELF_PURCHASE_NOT_ALLOWED", "You cannot purchase your own book", buyer_id=buyer_id
            )

        if self.verify_payments and not payment_verified:
            verification_error = self._verify_payment(reference, paid)
            if verification_error:
                return verification_error

        if not Book.mark_sold(self.db, book_id):
            self.db.rollback()
            self.logger.warning("Lost race for book %s", book_id, extra={"payment_reference": reference})
            return OperationResult.fail(
                "BOOK_UPDATE_FAILED",
                "Book was purchased by another buyer",
                status_code=409,
                book_id=book_id,
            )

        now = utcnow()
        order = Order(
            buyer_id=buyer_id,
            seller_id=seller_id,
            book_id=book_id,
            buyer_email=payload.get("buyer_email") or buyer.email,
            items=[
                {
                    "book_id": book.id,
                    "title": book.title,
                    "author": book.author,
                    "price": float(price),
                    "condition": book.condition,
                    "seller_id": seller_id,
                }
            ],
            amount=int((paid * 100).to_integral_value()),
            total_amount=paid,
            status=OrderStatus.PENDING_COMMIT,
            payment_status=PaymentStatus.PAID,
            payment_reference=reference,
            shipping_address=payload.get("shipping_address"),
            delivery_data=delivery_data,
            commit_deadline=now + timedelta(hours=Config.COMMIT_WINDOW_HOURS),
            paid_at=now,
            order_metadata={"created_from": created_from, "item_count": 1, "book_id": book_id},
        )
        try:
            self.db.add(order)
            self.db.commit()
        except SQLAlchemyError as exc:
            # The book claim shares the transaction, so rolling back releases it.
            self.db.rollback()
            rolled_back = not self.db.get(Book, book_id, populate_existing=True).sold
            self.logger.error(
                "Order creation failed; book sale rolled back",
                extra={"book_id": book_id, "payment_reference": reference, "error": str(exc)},
            )
            record_event(
                "order_creation_failed",
                {"book_id": book_id, "payment_reference": reference, "rollback_performed": rolled_back},
            )
            return OperationResult.fail(
                "ORDER_CREATION_FAILED",
                "Failed to create order",
                status_code=500,
                rollback_performed=rolled_back,
                book_id=book_id,
            )

        self.logger.info(
            "Order %s created for book %s",
            order.id,
            book_id,
            extra={"buyer_id": buyer_id, "seller_id": seller_id, "payment_reference": reference},
        )
        self._after_order_created(order, book, buyer, seller, created_from)

        deadline = as_utc(order.commit_deadline)
        return OperationResult.ok(
            "Book purchase processed successfully",
            order={
                "id": order.id,
                "book_id": book.id,
                "book_title": book.title,
                "book_author": book.author,
                "amount": float(paid),
                "status": OrderStatus.PENDING_COMMIT.value,
                "commit_deadline": deadline.isoformat(),
                "payment_reference": reference,
                "seller_name": seller.display_name,
                "buyer_name": buyer.display_name,
            },
        )

    def _verify_payment(self, reference: str, paid: Decimal) -> Optional[OperationResult]:
        try:
            transaction = self.payment_service.verify_transaction(reference)
        except PaymentProviderError as exc:
            self.logger.warning("Payment verification failed", extra={"reference": reference, "error": str(exc)})
            return OperationResult.fail(
                "PAYMENT_NOT_VERIFIED", "Payment could not be verified", status_code=402, reason=str(exc)
            )
        expected_minor = int((paid * 100).to_integral_value())
        if transaction.get("status") != "success" or int(transaction.get("amount") or 0) != expected_minor:
            return OperationResult.fail(
                "PAYMENT_NOT_VERIFIED",
                "Payment could not be verified",
                status_code=402,
                provider_status=transaction.get("status"),
                provider_amount=transaction.get("amount"),
            )
        return None

    def _after_order_created(
        self,
        order: Order,
        book: Book,
        buyer: Profile,
        seller: Profile,
        created_from: str,
    ) -> None:
        """Notifications, activity log and emails. Failures here never undo the order."""
        self.dispatcher.notify_in_app(
            buyer.id,
            "success",
            "Purchase Confirmed",
            f"Your purchase of '{book.title}' was successful. The seller has 48 hours to commit.",
            order_id=order.id,
        )
        self.dispatcher.notify_in_app(
            seller.id,
            "info",
            "New Sale - Action Required",
            f"'{book.title}' has been purchased. Please commit to the sale within 48 hours.",
            order_id=order.id,
            action_required=True,
        )

        try:
            self.db.add(
                OrderActivityLog(
                    order_id=order.id,
                    user_id=buyer.id,
                    action=created_from,
                    new_status=OrderStatus.PENDING_COMMIT.value,
                    activity_metadata={
                        "book_id": book.id,
                        "amount": float(order.total_amount),
                        "payment_reference": order.payment_reference,
                    },
                )
            )
            self.db.commit()
        except SQLAlchemyError as exc:
            self.db.rollback()
            self.logger.warning("Activity log write failed", extra={"order_id": order.id, "error": str(exc)})

        self.purchase_email_service.send_purchase_emails_with_fallback(
            build_order_context(order, seller, buyer),
            include_notifications=False,
        )
