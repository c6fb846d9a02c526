# bookmarket/models.py
from __future__ import annotations

from datetime import datetime, timezone
from decimal import ROUND_HALF_UP, Decimal, InvalidOperation
from enum import Enum
from typing import Any, Iterable, List, Optional
from uuid import uuid4

from sqlalchemy import (
    JSON,
    Boolean,
    Column,
    DateTime,
    Enum as SAEnum,
    ForeignKey,
    Integer,
    Numeric,
    String,
    Text,
)
from sqlalchemy.orm import Session, relationship

# Use a single, shared Base for all models
from bookmarket.database import Base


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def as_utc(value: Optional[datetime]) -> Optional[datetime]:
    """SQLite hands back naive datetimes; treat them as UTC."""
    if value is None:
        return None
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


def parse_minor_units(value: Any) -> int:
    """
    Whole minor units (cents) from a stored or client-supplied amount.
    Missing values count as zero; fractions round half-up. Raises ValueError
    for negative or non-numeric values.
    """
    if value is None or value == "":
        return 0
    if isinstance(value, bool):
        raise ValueError("Amount must be a number of minor units")
    try:
        amount = Decimal(str(value).strip())
    except InvalidOperation as exc:
        raise ValueError(f"Amount is not numeric: {value!r}") from exc
    if not amount.is_finite() or amount < 0:
        raise ValueError(f"Amount must be a non-negative number: {value!r}")
    return int(amount.quantize(Decimal("1"), rounding=ROUND_HALF_UP))


def normalize_delivery_data(data: Any) -> dict:
    """Copy of courier/delivery data with ``delivery_fee`` as whole minor units."""
    if not isinstance(data, dict):
        raise ValueError("delivery_data must be an object")
    normalized = dict(data)
    if "delivery_fee" in normalized:
        raw = normalized["delivery_fee"]
        fee = parse_minor_units(raw)
        if raw not in (None, "") and Decimal(str(raw).strip()) != fee:
            raise ValueError("delivery_fee must be a whole number of minor units")
        normalized["delivery_fee"] = fee
    return normalized


def _uuid() -> str:
    return str(uuid4())


def _enum_column(enum_cls: type[Enum], name: str, **kwargs: Any) -> Column:
    return Column(
        SAEnum(
            enum_cls,
            name=name,
            native_enum=False,
            validate_strings=True,
            values_callable=lambda members: [member.value for member in members],
        ),
        **kwargs,
    )


class OrderStatus(str, Enum):
    PENDING_COMMIT = "pending_commit"
    COMMITTED = "committed"
    DECLINED = "declined"
    EXPIRED = "expired"
    DELIVERED = "delivered"
    REFUNDED = "refunded"
    CANCELLED = "cancelled"


class PaymentStatus(str, Enum):
    PENDING = "pending"
    PAID = "paid"
    RELEASED = "released"
    REFUNDED = "refunded"


class DeliveryStatus(str, Enum):
    PENDING = "pending"
    PICKUP_SCHEDULED = "pickup_scheduled"
    COLLECTED = "collected"
    IN_TRANSIT = "in_transit"
    OUT_FOR_DELIVERY = "out_for_delivery"
    DELIVERED = "delivered"
    FAILED = "failed"


class TransactionStatus(str, Enum):
    PENDING = "pending"
    SUCCESS = "success"
    FAILED = "failed"


class MailStatus(str, Enum):
    PENDING = "pending"
    SENT = "sent"
    FAILED = "failed"


class MailPriority(str, Enum):
    LOW = "low"
    NORMAL = "normal"
    HIGH = "high"
    URGENT = "urgent"


class CommitmentStatus(str, Enum):
    PENDING = "pending"
    COMMITTED = "committed"
    DECLINED = "declined"
    EXPIRED = "expired"
    COMPLETED = "completed"
    REFUNDED = "refunded"


class Profile(Base):
    __tablename__ = "profiles"

    id = Column(String(36), primary_key=True, default=_uuid)
    name = Column(String(255))
    email = Column(String(255), unique=True, nullable=False)
    phone_number = Column(String(50))
    pickup_address = Column(JSON)
    role = Column(String(50), default="user", nullable=False)
    created_at = Column(DateTime(timezone=True), default=utcnow)

    books = relationship("Book", back_populates="seller")

    @property
    def display_name(self) -> str:
        return self.name or self.email

    @property
    def is_admin(self) -> bool:
        return (self.role or "").lower() == "admin"


class Book(Base):
    __tablename__ = "books"

    id = Column(String(36), primary_key=True, default=_uuid)
    title = Column(String(255), nullable=False)
    author = Column(String(255))
    price = Column(Numeric(10, 2), nullable=False)
    seller_id = Column(String(36), ForeignKey("profiles.id"), nullable=False)
    sold = Column(Boolean, default=False, nullable=False)
    condition = Column(String(50))
    category = Column(String(100))
    created_at = Column(DateTime(timezone=True), default=utcnow)
    updated_at = Column(DateTime(timezone=True), default=utcnow, onupdate=utcnow)

    seller = relationship("Profile", back_populates="books")

    @classmethod
    def mark_sold(cls, session: Session, book_id: str) -> bool:
        """Flip sold false -> true; False means another purchase got there first."""
        updated = (
            session.query(cls)
            .filter(cls.id == book_id, cls.sold.is_(False))
            .update({"sold": True, "updated_at": utcnow()}, synchronize_session=False)
        )
        return updated == 1

    @classmethod
    def relist(cls, session: Session, book_id: str) -> bool:
        updated = (
            session.query(cls)
            .filter(cls.id == book_id, cls.sold.is_(True))
            .update({"sold": False, "updated_at": utcnow()}, synchronize_session=False)
        )
        return updated == 1


class Order(Base):
    __tablename__ = "orders"

    id = Column(String(36), primary_key=True, default=_uuid)
    buyer_id = Column(String(36), ForeignKey("profiles.id"), nullable=False)
    seller_id = Column(String(36), ForeignKey("profiles.id"), nullable=False)
    book_id = Column(String(36), ForeignKey("books.id"))
    buyer_email = Column(String(255))
    items = Column(JSON, nullable=False, default=list)
    amount = Column(Integer, nullable=False)  # minor units
    total_amount = Column(Numeric(10, 2), nullable=False)
    status = _enum_column(OrderStatus, "order_status", default=OrderStatus.PENDING_COMMIT, nullable=False)
    payment_status = _enum_column(PaymentStatus, "payment_status", default=PaymentStatus.PENDING, nullable=False)
    payment_reference = Column(String(255), unique=True, nullable=False)
    shipping_address = Column(JSON)
    commit_deadline = Column(DateTime(timezone=True), nullable=False)
    paid_at = Column(DateTime(timezone=True))
    committed_at = Column(DateTime(timezone=True))
    declined_at = Column(DateTime(timezone=True))
    decline_reason = Column(Text)
    cancelled_at = Column(DateTime(timezone=True))
    cancellation_reason = Column(Text)
    reminder_sent_at = Column(DateTime(timezone=True))
    refunded_at = Column(DateTime(timezone=True))
    refund_status = Column(String(50))
    refund_reference = Column(String(255))
    delivery_status = Column(String(50), default=DeliveryStatus.PENDING.value)
    delivery_data = Column(JSON)
    order_metadata = Column("metadata", JSON)
    created_at = Column(DateTime(timezone=True), default=utcnow)
    updated_at = Column(DateTime(timezone=True), default=utcnow, onupdate=utcnow)

    buyer = relationship("Profile", foreign_keys=[buyer_id])
    seller = relationship("Profile", foreign_keys=[seller_id])
    book = relationship("Book")
    activity = relationship("OrderActivityLog", back_populates="order", cascade="all, delete-orphan")

    _VALID_TRANSITIONS = {
        OrderStatus.PENDING_COMMIT: {
            OrderStatus.COMMITTED,
            OrderStatus.DECLINED,
            OrderStatus.EXPIRED,
            OrderStatus.CANCELLED,
        },
        OrderStatus.COMMITTED: {OrderStatus.DELIVERED, OrderStatus.CANCELLED},
        OrderStatus.DECLINED: {OrderStatus.REFUNDED},
        OrderStatus.EXPIRED: {OrderStatus.REFUNDED},
    }
    TERMINAL_STATUSES = frozenset({OrderStatus.DELIVERED, OrderStatus.REFUNDED, OrderStatus.CANCELLED})

    @classmethod
    def is_transition_allowed(cls, current: OrderStatus | str, new_status: OrderStatus | str) -> bool:
        allowed = cls._VALID_TRANSITIONS.get(OrderStatus(current), set())
        return OrderStatus(new_status) in allowed

    def can_transition(self, new_status: OrderStatus | str) -> bool:
        return self.is_transition_allowed(self.status, new_status)

    @classmethod
    def compare_and_set_status(
        cls,
        session: Session,
        order_id: str,
        expected: OrderStatus | Iterable[OrderStatus],
        new_status: OrderStatus,
        **values: Any,
    ) -> bool:
        """
        Move an order to ``new_status`` only if it is still in one of the
        ``expected`` states. Returns True when exactly one row changed.
        Callers must refresh any loaded Order instance afterwards.
        """
        expected_statuses = (
            [OrderStatus(expected)]
            if isinstance(expected, (OrderStatus, str))
            else [OrderStatus(status) for status in expected]
        )
        for status in expected_statuses:
            if not cls.is_transition_allowed(status, new_status):
                raise ValueError(f"Invalid order status transition from {status.value} to {new_status.value}")

        values["status"] = new_status
        values.setdefault("updated_at", utcnow())
        updated = (
            session.query(cls)
            .filter(cls.id == order_id, cls.status.in_(expected_statuses))
            .update(values, synchronize_session=False)
        )
        return updated == 1

    def is_past_deadline(self, now: Optional[datetime] = None) -> bool:
        now = now or utcnow()
        deadline = as_utc(self.commit_deadline)
        return deadline is not None and now >= deadline

    @property
    def book_titles(self) -> List[str]:
        return [item.get("title") or "Book" for item in (self.items or [])]

    @property
    def delivery_fee(self) -> int:
        return parse_minor_units((self.delivery_data or {}).get("delivery_fee"))


class OrderActivityLog(Base):
    __tablename__ = "order_activity_log"

    id = Column(Integer, primary_key=True, autoincrement=True)
    order_id = Column(String(36), ForeignKey("orders.id"), nullable=False)
    user_id = Column(String(36), ForeignKey("profiles.id"))
    action = Column(String(100), nullable=False)
    old_status = Column(String(50))
    new_status = Column(String(50))
    activity_metadata = Column("metadata", JSON)
    created_at = Column(DateTime(timezone=True), default=utcnow)

    order = relationship("Order", back_populates="activity")


class Notification(Base):
    __tablename__ = "notifications"

    id = Column(Integer, primary_key=True, autoincrement=True)
    user_id = Column(String(36), ForeignKey("profiles.id"), nullable=False)
    order_id = Column(String(36), ForeignKey("orders.id"))
    type = Column(String(50), nullable=False, default="info")
    title = Column(String(255), nullable=False)
    message = Column(Text, nullable=False)
    action_required = Column(Boolean, default=False)
    read = Column(Boolean, default=False, nullable=False)
    read_at = Column(DateTime(timezone=True))
    created_at = Column(DateTime(timezone=True), default=utcnow)

    def to_dict(self) -> dict:
        created_at = as_utc(self.created_at)
        read_at = as_utc(self.read_at)
        return {
            "id": self.id,
            "user_id": self.user_id,
            "order_id": self.order_id,
            "type": self.type,
            "title": self.title,
            "message": self.message,
            "action_required": bool(self.action_required),
            "read": bool(self.read),
            "created_at": created_at.isoformat() if created_at else None,
            "read_at": read_at.isoformat() if read_at else None,
        }


class PaymentTransaction(Base):
    __tablename__ = "payment_transactions"

    id = Column(Integer, primary_key=True, autoincrement=True)
    reference = Column(String(255), unique=True, nullable=False)
    status = _enum_column(TransactionStatus, "transaction_status", default=TransactionStatus.PENDING, nullable=False)
    user_id = Column(String(36), ForeignKey("profiles.id"))
    amount = Column(Integer)  # minor units
    items = Column(JSON)
    shipping_address = Column(JSON)
    webhook_processed_at = Column(DateTime(timezone=True))
    provider_webhook_data = Column(JSON)
    created_at = Column(DateTime(timezone=True), default=utcnow)

    @property
    def already_processed_as(self) -> Optional[str]:
        if self.webhook_processed_at is None:
            return None
        return TransactionStatus(self.status).value


class SellerPayment(Base):
    __tablename__ = "seller_payments"

    id = Column(Integer, primary_key=True, autoincrement=True)
    seller_id = Column(String(36), ForeignKey("profiles.id"))
    transfer_code = Column(String(255), unique=True, nullable=False)
    reference = Column(String(255))
    amount = Column(Integer)
    status = _enum_column(TransactionStatus, "seller_payment_status", default=TransactionStatus.PENDING, nullable=False)
    webhook_processed_at = Column(DateTime(timezone=True))
    provider_webhook_data = Column(JSON)
    created_at = Column(DateTime(timezone=True), default=utcnow)


class WebhookLog(Base):
    __tablename__ = "webhook_logs"

    id = Column(Integer, primary_key=True, autoincrement=True)
    event = Column(String(100), nullable=False)
    reference = Column(String(255))
    status = Column(String(50))
    webhook_data = Column(JSON)
    received_at = Column(DateTime(timezone=True), default=utcnow)


class BankingSubaccount(Base):
    __tablename__ = "banking_subaccounts"

    id = Column(Integer, primary_key=True, autoincrement=True)
    user_id = Column(String(36), ForeignKey("profiles.id"), unique=True, nullable=False)
    business_name = Column(String(255))
    email = Column(String(255))
    bank_name = Column(String(255))
    account_number = Column(String(64))  # legacy plaintext
    bank_code = Column(String(32))  # legacy plaintext
    encrypted_account_number = Column(Text)
    encrypted_bank_code = Column(Text)
    recipient_code = Column(String(100))
    status = Column(String(20), default="pending", nullable=False)
    provider_response = Column(JSON)
    created_at = Column(DateTime(timezone=True), default=utcnow)
    updated_at = Column(DateTime(timezone=True), default=utcnow, onupdate=utcnow)

    @property
    def is_encrypted(self) -> bool:
        return bool(self.encrypted_account_number and self.encrypted_bank_code)


class MailQueue(Base):
    __tablename__ = "mail_queue"

    id = Column(Integer, primary_key=True, autoincrement=True)
    to_email = Column(String(255), nullable=False)
    subject = Column(String(500), nullable=False)
    html_content = Column(Text, nullable=False)
    status = _enum_column(MailStatus, "mail_status", default=MailStatus.PENDING, nullable=False)
    priority = _enum_column(MailPriority, "mail_priority", default=MailPriority.NORMAL, nullable=False)
    retry_count = Column(Integer, default=0, nullable=False)
    email_type = Column(String(100))
    created_at = Column(DateTime(timezone=True), default=utcnow)
    sent_at = Column(DateTime(timezone=True))
    error_message = Column(Text)


class SaleCommitment(Base):
    __tablename__ = "sale_commitments"

    id = Column(String(36), primary_key=True, default=_uuid)
    book_id = Column(String(36), ForeignKey("books.id"), nullable=False)
    seller_id = Column(String(36), ForeignKey("profiles.id"), nullable=False)
    buyer_id = Column(String(36), ForeignKey("profiles.id"), nullable=False)
    purchase_amount = Column(Numeric(10, 2), nullable=False)
    delivery_fee = Column(Numeric(10, 2), default=0)
    total_amount = Column(Numeric(10, 2), nullable=False)
    status = _enum_column(CommitmentStatus, "commitment_status", default=CommitmentStatus.PENDING, nullable=False)
    committed_at = Column(DateTime(timezone=True))
    expires_at = Column(DateTime(timezone=True), nullable=False)
    payment_reference = Column(String(255))
    payment_status = _enum_column(PaymentStatus, "commitment_payment_status", default=PaymentStatus.PENDING, nullable=False)
    delivery_confirmed_at = Column(DateTime(timezone=True))
    created_at = Column(DateTime(timezone=True), default=utcnow)
    updated_at = Column(DateTime(timezone=True), default=utcnow, onupdate=utcnow)

    book = relationship("Book")
    seller = relationship("Profile", foreign_keys=[seller_id])
    buyer = relationship("Profile", foreign_keys=[buyer_id])
