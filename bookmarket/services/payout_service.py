from __future__ import annotations

import logging
import secrets
import time
from decimal import ROUND_HALF_UP, Decimal
from typing import Any, Dict, List, Optional, Tuple

from sqlalchemy.orm import Session

from bookmarket.config import Config
from bookmarket.models import BankingSubaccount, DeliveryStatus, Order, OrderStatus, Profile, as_utc, utcnow
from bookmarket.observability import increment_counter, record_event
from bookmarket.services.banking_crypto import BankingCrypto
from bookmarket.services.errors import BankingDecryptionError, PaymentProviderError
from bookmarket.services.payment_service import PaymentService
from bookmarket.services.results import OperationResult


def mask_account_number(account_number: Optional[str]) -> str:
    """Keep the last four digits, star out the rest."""
    if not account_number:
        return "****"
    visible = account_number[-4:]
    return "*" * (len(account_number) - len(visible)) + visible


def _iso(value: Any) -> Optional[str]:
    value = as_utc(value) if hasattr(value, "tzinfo") else value
    return value.isoformat() if hasattr(value, "isoformat") else value


class PayoutService:
    """
    Prepares a seller for manual payout.

    Aggregates the seller's delivered orders into a commission breakdown and
    makes sure exactly one Paystack transfer recipient exists for their
    banking record. Amounts are minor units throughout.
    """

    def __init__(
        self,
        db_session: Session,
        payment_service: Optional[PaymentService] = None,
        crypto: Optional[BankingCrypto] = None,
        commission_rate: Optional[float] = None,
        delivery_fee_share: Optional[float] = None,
    ) -> None:
        self.db = db_session
        self.logger = logging.getLogger(__name__)
        self.payment_service = payment_service or PaymentService()
        self.crypto = crypto or BankingCrypto()
        rate = Config.PLATFORM_BOOK_COMMISSION_RATE if commission_rate is None else commission_rate
        share = Config.PLATFORM_DELIVERY_FEE_SHARE if delivery_fee_share is None else delivery_fee_share
        self.commission_rate = Decimal(str(rate))
        self.delivery_fee_share = Decimal(str(share))

    def create_recipient(self, seller_id: Optional[str]) -> OperationResult:
        if not seller_id:
            return OperationResult.fail("MISSING_SELLER_ID", "sellerId is required")

        orders = self._completed_orders(seller_id)
        if not orders:
            return OperationResult.fail(
                "NO_COMPLETED_ORDERS",
                "No completed orders found",
                reason="Recipient can only be created when seller has delivered orders",
                orders_found=0,
            )

        banking = self.db.query(BankingSubaccount).filter(BankingSubaccount.user_id == seller_id).one_or_none()
        if banking is None:
            return OperationResult.fail(
                "BANKING_DETAILS_NOT_FOUND", "Seller banking subaccount not found", status_code=404
            )

        try:
            account_number, bank_code = self._banking_details(banking)
        except BankingDecryptionError as exc:
            self.logger.error("Banking details could not be decrypted", extra={"seller_id": seller_id, "error": str(exc)})
            return OperationResult.fail(
                "BANKING_DECRYPTION_FAILED", "Failed to decrypt banking details", status_code=500
            )

        breakdown = self.build_payment_breakdown(orders)
        seller_info = {
            "name": banking.business_name,
            "email": banking.email,
            "account_number": mask_account_number(account_number),
            "bank_name": banking.bank_name,
        }

        if banking.recipient_code:
            self.logger.info("Recipient already exists for seller %s", seller_id)
            return OperationResult.ok(
                "Recipient already exists - Ready for manual payment",
                recipient_code=banking.recipient_code,
                already_existed=True,
                payment_breakdown=breakdown,
                seller_info=seller_info,
            )

        development_mode = self.payment_service.development_mode
        if development_mode:
            recipient_code = f"RCP_{int(time.time() * 1000)}_{secrets.token_hex(5)}"
            provider_response: Dict[str, Any] = {"mock": True, "recipient_code": recipient_code}
        else:
            if not account_number or not bank_code:
                return OperationResult.fail(
                    "BANKING_DETAILS_INCOMPLETE", "Account number and bank code are required", status_code=400
                )
            try:
                provider_response = self.payment_service.create_transfer_recipient(
                    banking.business_name or seller_id, account_number, bank_code
                )
            except PaymentProviderError as exc:
                increment_counter("payout_recipients_total", labels={"outcome": "failed"})
                self.logger.error("Recipient creation failed", extra={"seller_id": seller_id, "error": str(exc)})
                status_code = 400 if exc.status_code and 400 <= exc.status_code < 500 else 500
                return OperationResult.fail(
                    "RECIPIENT_CREATION_FAILED", str(exc), status_code=status_code, provider=exc.payload
                )
            recipient_code = provider_response["recipient_code"]

        stored_code, created = self._store_recipient(banking, recipient_code, provider_response)
        if not created:
            return OperationResult.ok(
                "Recipient already exists - Ready for manual payment",
                recipient_code=stored_code,
                already_existed=True,
                payment_breakdown=breakdown,
                seller_info=seller_info,
            )

        increment_counter("payout_recipients_total", labels={"outcome": "created"})
        record_event(
            "payout_recipient_created",
            {"seller_id": seller_id, "recipient_code": stored_code, "development_mode": development_mode},
        )
        data: Dict[str, Any] = {
            "recipient_code": stored_code,
            "payment_breakdown": breakdown,
            "seller_info": seller_info,
        }
        if development_mode:
            data["development_mode"] = True
            message = "Mock recipient created - Ready for manual payment (Development Mode)"
        else:
            message = "Recipient created successfully - Ready for manual payment"
        return OperationResult.ok(message, **data)

    def build_payment_breakdown(self, orders: List[Order]) -> Dict[str, Any]:
        total_book_sales = sum(int(order.amount or 0) for order in orders)
        total_delivery_fees = sum(order.delivery_fee for order in orders)
        book_commission = self._commission(total_book_sales)
        platform_delivery_fees = int(
            (Decimal(total_delivery_fees) * self.delivery_fee_share).quantize(Decimal("1"), rounding=ROUND_HALF_UP)
        )
        buyers = self._buyers(orders)
        return {
            "total_orders": len(orders),
            "total_book_sales": total_book_sales,
            "total_delivery_fees": total_delivery_fees,
            "platform_earnings": {
                "book_commission": book_commission,
                "delivery_fees": platform_delivery_fees,
                "total": book_commission + platform_delivery_fees,
            },
            "seller_amount": total_book_sales - book_commission,
            "commission_structure": {
                "book_commission_rate": f"{(self.commission_rate * 100).normalize():f}%",
                "delivery_fee_share": f"{(self.delivery_fee_share * 100).normalize():f}% to platform",
            },
            "order_details": [self._order_detail(order, buyers.get(order.buyer_id)) for order in orders],
        }

    def _commission(self, amount: int) -> int:
        return int((Decimal(amount) * self.commission_rate).quantize(Decimal("1"), rounding=ROUND_HALF_UP))

    def _completed_orders(self, seller_id: str) -> List[Order]:
        return (
            self.db.query(Order)
            .filter(
                Order.seller_id == seller_id,
                Order.delivery_status == DeliveryStatus.DELIVERED.value,
                Order.status == OrderStatus.DELIVERED,
            )
            .order_by(Order.created_at.desc())
            .all()
        )

    def _buyers(self, orders: List[Order]) -> Dict[str, Profile]:
        buyer_ids = {order.buyer_id for order in orders if order.buyer_id}
        if not buyer_ids:
            return {}
        return {profile.id: profile for profile in self.db.query(Profile).filter(Profile.id.in_(buyer_ids))}

    def _banking_details(self, banking: BankingSubaccount) -> Tuple[Optional[str], Optional[str]]:
        if banking.is_encrypted:
            return self.crypto.decrypt(banking.encrypted_account_number), self.crypto.decrypt(banking.encrypted_bank_code)
        return banking.account_number, banking.bank_code

    def _store_recipient(
        self, banking: BankingSubaccount, recipient_code: str, provider_response: Dict[str, Any]
    ) -> Tuple[str, bool]:
        """Persist the code unless another request got there first."""
        updated = (
            self.db.query(BankingSubaccount)
            .filter(BankingSubaccount.id == banking.id, BankingSubaccount.recipient_code.is_(None))
            .update(
                {
                    "recipient_code": recipient_code,
                    "status": "active",
                    "provider_response": provider_response,
                    "updated_at": utcnow(),
                },
                synchronize_session=False,
            )
        )
        self.db.commit()
        self.db.refresh(banking)
        if updated != 1:
            self.logger.warning(
                "Recipient for seller %s was created concurrently; keeping %s",
                banking.user_id,
                banking.recipient_code,
            )
            return banking.recipient_code, False
        return recipient_code, True

    def _order_detail(self, order: Order, buyer: Optional[Profile]) -> Dict[str, Any]:
        delivery = order.delivery_data or {}
        amount = int(order.amount or 0)
        commission = self._commission(amount)
        titles = order.book_titles or ([order.book.title] if order.book else [])
        return {
            "order_id": order.id,
            "paystack_reference": order.payment_reference,
            "book": {
                "title": ", ".join(titles) if titles else "Unknown Book",
                "price": amount,
            },
            "buyer": {
                "name": buyer.display_name if buyer else "Anonymous Buyer",
                "email": order.buyer_email or (buyer.email if buyer else None),
                "buyer_id": order.buyer_id,
            },
            "timeline": {
                "order_created": _iso(order.created_at),
                "payment_received": _iso(order.paid_at),
                "seller_committed": _iso(order.committed_at),
                "pickup_scheduled": delivery.get("pickup_scheduled_at"),
                "book_collected": delivery.get("collected_at"),
                "in_transit": delivery.get("in_transit_at"),
                "out_for_delivery": delivery.get("out_for_delivery_at"),
                "delivered": delivery.get("delivered_at"),
            },
            "delivery_details": {
                "courier_service": delivery.get("courier_service", "N/A"),
                "tracking_number": delivery.get("tracking_number", "N/A"),
                "delivery_status": order.delivery_status,
                "delivery_fee": order.delivery_fee,
            },
            "amounts": {
                "book_price": amount,
                "delivery_fee": order.delivery_fee,
                "platform_commission": commission,
                "seller_earnings": amount - commission,
            },
        }
