from __future__ import annotations

import json
import logging
from typing import Any, Callable, Dict, List, Optional

from sqlalchemy.orm import Session

from bookmarket.config import Config
from bookmarket.models import (
    Order,
    PaymentTransaction,
    SellerPayment,
    TransactionStatus,
    WebhookLog,
    utcnow,
)
from bookmarket.observability import increment_counter, record_event
from bookmarket.services.errors import WebhookProcessingError
from bookmarket.services.payment_service import PaymentService
from bookmarket.services.purchase_service import PurchaseService
from bookmarket.services.results import OperationResult


def is_test_payload(event: str, data: Dict[str, Any]) -> bool:
    reference = str(data.get("reference") or "").lower()
    return "test" in event.lower() or "test" in reference or "mock" in reference


class WebhookService:
    """
    Ingests Paystack webhooks.

    Every accepted delivery is written to ``webhook_logs`` before it is
    handled. Success events short-circuit when the target record already
    has the same status and a ``webhook_processed_at`` stamp, which makes
    provider retries safe. The check is read-then-write, so two truly
    concurrent deliveries of one event can still race; order creation is
    additionally protected by the unique ``payment_reference``.
    """

    def __init__(
        self,
        db_session: Session,
        payment_service: Optional[PaymentService] = None,
        purchase_service: Optional[PurchaseService] = None,
        allow_test_webhooks: Optional[bool] = None,
    ) -> None:
        self.db = db_session
        self.logger = logging.getLogger(__name__)
        self.payment_service = payment_service or PaymentService()
        self.purchase_service = purchase_service or PurchaseService(db_session, payment_service=self.payment_service)
        self.allow_test_webhooks = (
            Config.PAYSTACK_ALLOW_TEST_WEBHOOKS if allow_test_webhooks is None else allow_test_webhooks
        )
        self._handlers: Dict[str, Callable[[Dict[str, Any]], OperationResult]] = {
            "charge.success": self._handle_successful_payment,
            "transaction.success": self._handle_successful_payment,
            "charge.failed": self._handle_failed_payment,
            "transaction.failed": self._handle_failed_payment,
            "transfer.success": self._handle_successful_transfer,
            "transfer.failed": self._handle_failed_transfer,
        }

    def handle(self, raw_body: bytes, signature: Optional[str]) -> OperationResult:
        try:
            payload = json.loads(raw_body)
        except ValueError as exc:
            return OperationResult.fail("INVALID_JSON_PAYLOAD", "Webhook body is not valid JSON", reason=str(exc))

        if not isinstance(payload, dict) or not payload.get("event") or not isinstance(payload.get("data"), dict):
            return OperationResult.fail(
                "MISSING_WEBHOOK_DATA", "Webhook must contain event and data fields"
            )

        event = str(payload["event"])
        data = payload["data"]
        reference = data.get("reference")
        increment_counter("webhooks_received_total", labels={"event": event})

        if not self._signature_accepted(event, data, raw_body, signature):
            self._log_webhook(event, reference, "rejected", payload)
            increment_counter("webhooks_rejected_total")
            record_event("webhook_signature_rejected", {"event": event, "reference": reference})
            self.logger.warning("Rejected webhook with invalid signature", extra={"event": event, "reference": reference})
            return OperationResult.fail(
                "INVALID_WEBHOOK_SIGNATURE", "Webhook signature verification failed", status_code=401
            )

        self._log_webhook(event, reference, data.get("status"), payload)
        self.logger.info("Processing Paystack webhook %s", event, extra={"reference": reference})

        handler = self._handlers.get(event)
        if handler is None:
            self.logger.info("Unhandled webhook event %s", event)
            return OperationResult.fail(
                "UNHANDLED_EVENT",
                f"Event type '{event}' is not supported by this webhook handler",
                event=event,
            )

        try:
            return handler(data)
        except Exception as exc:
            self.db.rollback()
            increment_counter("webhooks_failed_total", labels={"event": event})
            self.logger.exception("Webhook processing failed", extra={"event": event, "reference": reference})
            return OperationResult.fail(
                "WEBHOOK_PROCESSING_ERROR",
                "Webhook processing error occurred",
                status_code=500,
                error_message=str(exc),
                error_type=type(exc).__name__,
                timestamp=utcnow().isoformat(),
            )

    def _signature_accepted(
        self,
        event: str,
        data: Dict[str, Any],
        raw_body: bytes,
        signature: Optional[str],
    ) -> bool:
        if self.allow_test_webhooks and is_test_payload(event, data):
            return True
        return self.payment_service.verify_signature(raw_body, signature)

    def _log_webhook(self, event: str, reference: Optional[str], status: Optional[str], payload: Dict[str, Any]) -> None:
        # Committed on its own so the audit row survives a failed handler.
        self.db.add(WebhookLog(event=event, reference=reference, status=status, webhook_data=payload))
        self.db.commit()

    def _log_duplicate(self, reference: Optional[str], message: str, data: Dict[str, Any]) -> None:
        self.logger.info("Duplicate webhook detected for reference %s, skipping", reference)
        increment_counter("webhooks_duplicate_total")
        self._log_webhook(
            "duplicate_webhook_detected",
            reference,
            "skipped",
            {"message": message, "original_data": data},
        )

    @staticmethod
    def _processed(event: str, reference: Optional[str], duplicate: bool = False) -> OperationResult:
        message = "Duplicate webhook ignored" if duplicate else f"Webhook {event} processed successfully"
        return OperationResult.ok(message, event=event, reference=reference, duplicate=duplicate)

    def _handle_successful_payment(self, data: Dict[str, Any]) -> OperationResult:
        reference = data.get("reference")
        if not reference:
            raise WebhookProcessingError("Payment webhook is missing a reference")

        transaction = self.db.query(PaymentTransaction).filter_by(reference=reference).first()
        if (
            transaction is not None
            and transaction.status == TransactionStatus.SUCCESS
            and transaction.webhook_processed_at is not None
        ):
            self._log_duplicate(reference, "Duplicate successful payment webhook", data)
            return self._processed("charge.success", reference, duplicate=True)

        if transaction is None:
            self.logger.warning("No payment transaction for reference %s; creating one from webhook", reference)
            metadata = data.get("metadata") or {}
            transaction = PaymentTransaction(
                reference=reference,
                user_id=metadata.get("user_id"),
                items=metadata.get("items"),
                shipping_address=metadata.get("shipping_address"),
            )
            self.db.add(transaction)

        transaction.status = TransactionStatus.SUCCESS
        transaction.amount = data.get("amount")
        transaction.provider_webhook_data = data
        self.db.commit()

        order_ids = self._create_orders(transaction, data)

        # Stamped last so a failed order creation leaves the webhook retryable
        transaction.webhook_processed_at = utcnow()
        self.db.commit()

        record_event("payment_confirmed", {"reference": reference, "order_ids": order_ids})
        return OperationResult.ok(
            "Webhook charge.success processed successfully",
            event="charge.success",
            reference=reference,
            duplicate=False,
            order_ids=order_ids,
        )

    def _create_orders(self, transaction: PaymentTransaction, data: Dict[str, Any]) -> List[str]:
        items = transaction.items or []
        if not items:
            self.logger.info("Payment %s has no cart items; no orders created", transaction.reference)
            return []
        if not transaction.user_id:
            raise WebhookProcessingError(f"Payment {transaction.reference} has no buyer")

        customer = data.get("customer") or {}
        order_ids: List[str] = []
        for item in items:
            order_reference = (
                transaction.reference if len(items) == 1 else f"{transaction.reference}_{item.get('book_id')}"
            )
            existing = self.db.query(Order).filter_by(payment_reference=order_reference).first()
            if existing is not None:
                order_ids.append(existing.id)
                continue

            result = self.purchase_service.process_purchase(
                {
                    "book_id": item.get("book_id"),
                    "buyer_id": transaction.user_id,
                    "seller_id": item.get("seller_id"),
                    "amount": item.get("price"),
                    "payment_reference": order_reference,
                    "buyer_email": customer.get("email"),
                    "shipping_address": transaction.shipping_address,
                    "delivery_data": item.get("delivery_data"),
                },
                payment_verified=True,
                created_from="paystack_webhook",
            )
            if not result.success:
                raise WebhookProcessingError(
                    f"Order creation failed for {order_reference}: {result.error}"
                )
            order_ids.append(result.data["order"]["id"])
        return order_ids

    def _handle_failed_payment(self, data: Dict[str, Any]) -> OperationResult:
        reference = data.get("reference")
        transaction = self.db.query(PaymentTransaction).filter_by(reference=reference).first()
        if transaction is None:
            self.logger.warning("Failed-payment webhook for unknown reference %s", reference)
            return self._processed("charge.failed", reference)
        if transaction.status == TransactionStatus.FAILED and transaction.webhook_processed_at is not None:
            self._log_duplicate(reference, "Duplicate failed payment webhook", data)
            return self._processed("charge.failed", reference, duplicate=True)

        transaction.status = TransactionStatus.FAILED
        transaction.webhook_processed_at = utcnow()
        transaction.provider_webhook_data = data
        self.db.commit()
        increment_counter("payments_failed_total")
        return self._processed("charge.failed", reference)

    def _handle_successful_transfer(self, data: Dict[str, Any]) -> OperationResult:
        return self._apply_transfer(data, TransactionStatus.SUCCESS, "transfer.success")

    def _handle_failed_transfer(self, data: Dict[str, Any]) -> OperationResult:
        return self._apply_transfer(data, TransactionStatus.FAILED, "transfer.failed")

    def _apply_transfer(self, data: Dict[str, Any], status: TransactionStatus, event: str) -> OperationResult:
        transfer_code = data.get("transfer_code")
        reference = data.get("reference")
        payment = self.db.query(SellerPayment).filter_by(transfer_code=transfer_code).first()
        if payment is None:
            self.logger.warning("Transfer webhook for unknown transfer %s", transfer_code)
            return self._processed(event, reference)
        if payment.status == status and payment.webhook_processed_at is not None:
            self._log_duplicate(reference or transfer_code, f"Duplicate {event} webhook", data)
            return self._processed(event, reference, duplicate=True)

        payment.status = status
        payment.webhook_processed_at = utcnow()
        payment.provider_webhook_data = data
        self.db.commit()
        increment_counter("seller_transfers_total", labels={"status": status.value})
        if status == TransactionStatus.FAILED:
            record_event(
                "seller_transfer_failed",
                {"transfer_code": transfer_code, "seller_id": payment.seller_id, "reason": data.get("reason")},
            )
        return self._processed(event, reference)
