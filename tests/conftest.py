# tests/conftest.py
"""
Pytest configuration and shared fixtures.

The environment is pinned before anything from ``bookmarket`` is imported,
because Config reads it once at import time.
"""

import os
import sys
import tempfile
from datetime import timedelta
from decimal import Decimal

import pytest

_DB_DIR = tempfile.mkdtemp(prefix="bookmarket-tests-")
os.environ["DATABASE_URL"] = f"sqlite:///{os.path.join(_DB_DIR, 'test.db')}"
os.environ["PAYSTACK_SECRET_KEY"] = "sk_unit_secret"
os.environ["PAYSTACK_ALLOW_TEST_WEBHOOKS"] = "false"
os.environ["PAYSTACK_VERIFY_PURCHASES"] = "false"
os.environ["ADMIN_API_TOKEN"] = "admin-token-for-tests"
os.environ["BANKING_ENCRYPTION_KEY"] = "unit-banking-key"
os.environ["STRUCTURED_LOGS_ENABLED"] = "false"
os.environ["EMAIL_API_URL"] = ""
os.environ["COURIER_API_URL"] = ""
os.environ["FEATURE_SALE_COMMITMENTS_ENABLED"] = "false"

sys.path.insert(0, os.path.join(os.path.dirname(__file__), ".."))

from bookmarket.database import Base, SessionLocal, engine  # noqa: E402
from bookmarket.models import Book, Order, OrderStatus, PaymentStatus, Profile, utcnow  # noqa: E402
from bookmarket.observability import reset_metrics  # noqa: E402
from bookmarket.services.errors import CourierError, EmailDeliveryError, PaymentProviderError  # noqa: E402
from bookmarket.services.notification_dispatcher import NotificationDispatcher  # noqa: E402
from bookmarket.tactics import reset_circuit_breakers  # noqa: E402

ADMIN_HEADERS = {"X-Admin-Token": "admin-token-for-tests"}


class StubEmailClient:
    """Records sends; fails for listed addresses or for everything."""

    configured = True

    def __init__(self, fail_for=None, fail_all=False):
        self.fail_for = set(fail_for or [])
        self.fail_all = fail_all
        self.sent = []

    def send(self, to, subject, html, text=None):
        if self.fail_all or to in self.fail_for:
            raise EmailDeliveryError(f"provider rejected {to}")
        self.sent.append({"to": to, "subject": subject, "html": html})
        return {"id": f"msg-{len(self.sent)}"}

    def recipients(self):
        return [message["to"] for message in self.sent]


class StubPaymentService:
    def __init__(
        self,
        refund_ok=True,
        development_mode=False,
        recipient_code="RCP_live_001",
        recipient_error=None,
        transaction=None,
        signature_ok=True,
    ):
        self.refund_ok = refund_ok
        self.development_mode = development_mode
        self.recipient_code = recipient_code
        self.recipient_error = recipient_error
        self.transaction = transaction
        self.signature_ok = signature_ok
        self.refunds = []
        self.recipients = []
        self.verified = []

    def verify_signature(self, raw_body, signature):
        return self.signature_ok

    def verify_transaction(self, reference):
        self.verified.append(reference)
        if self.transaction is None:
            raise PaymentProviderError("transaction not found", status_code=404)
        return self.transaction

    def refund(self, order, amount=None, reason=""):
        self.refunds.append({"order_id": order.id, "amount": order.amount, "reason": reason})
        if self.refund_ok:
            return True, "Refund processed successfully", f"RF_{len(self.refunds)}"
        return False, "Paystack unavailable", None

    def create_transfer_recipient(self, name, account_number, bank_code):
        self.recipients.append({"name": name, "account_number": account_number, "bank_code": bank_code})
        if self.recipient_error:
            raise self.recipient_error
        return {"recipient_code": self.recipient_code, "active": True}


class StubCourierClient:
    def __init__(self, fail=False):
        self.fail = fail
        self.requests = []
        self.cancelled = []

    def build_shipment_request(self, order, seller, buyer):
        return {"order_id": order.id}

    def create_shipment(self, shipment_request):
        self.requests.append(shipment_request)
        if self.fail:
            raise CourierError("courier down")
        return {"shipment_id": "SHP-1", "tracking_number": "TRK-1001", "waybill_url": "https://courier.example/w/1"}

    def cancel_shipment(self, shipment_id, reason=""):
        self.cancelled.append(shipment_id)
        if self.fail:
            raise CourierError("courier down")
        return {"shipment_id": shipment_id, "cancelled": True}


@pytest.fixture
def db_session():
    """Fresh schema and session per test."""
    reset_metrics()
    reset_circuit_breakers()
    Base.metadata.create_all(bind=engine)
    session = SessionLocal()
    try:
        yield session
    finally:
        session.close()
        Base.metadata.drop_all(bind=engine)


@pytest.fixture
def email_client():
    return StubEmailClient()


@pytest.fixture
def payment_service():
    return StubPaymentService()


@pytest.fixture
def courier_client():
    return StubCourierClient()


@pytest.fixture
def dispatcher(db_session, email_client):
    return NotificationDispatcher(db_session, email_client=email_client)


@pytest.fixture
def app_client(db_session):
    from bookmarket.main import app

    with app.test_client() as client:
        with client.session_transaction() as sess:
            sess.clear()
        yield client


def login(client, user_id, is_admin=False):
    with client.session_transaction() as sess:
        sess["user_id"] = user_id
        if is_admin:
            sess["is_admin"] = True


def make_profile(db, name, email, **fields):
    profile = Profile(name=name, email=email, **fields)
    db.add(profile)
    db.commit()
    return profile


def make_book(db, seller, title="Calculus: Early Transcendentals", price="450.00", author="James Stewart", **fields):
    book = Book(title=title, author=author, price=Decimal(price), seller_id=seller.id, **fields)
    db.add(book)
    db.commit()
    return book


def make_order(
    db,
    buyer,
    seller,
    book,
    status=OrderStatus.PENDING_COMMIT,
    reference=None,
    deadline=None,
    **fields,
):
    price = Decimal(str(book.price))
    keep_listed = fields.pop("keep_listed", False)
    if status == OrderStatus.PENDING_COMMIT and not keep_listed:
        book.sold = True
    order = Order(
        buyer_id=buyer.id,
        seller_id=seller.id,
        book_id=book.id,
        buyer_email=buyer.email,
        items=[{"book_id": book.id, "title": book.title, "price": float(price), "seller_id": seller.id}],
        amount=fields.pop("amount", int(price * 100)),
        total_amount=price,
        status=status,
        payment_status=fields.pop("payment_status", PaymentStatus.PAID),
        payment_reference=reference or f"PSK_{book.id[:8]}",
        commit_deadline=deadline or utcnow() + timedelta(hours=48),
        paid_at=utcnow(),
        **fields,
    )
    db.add(order)
    db.commit()
    return order


@pytest.fixture
def marketplace(db_session):
    """A seller with a pickup address and one listed book, plus a buyer."""
    seller = make_profile(
        db_session,
        "Thandi Seller",
        "seller@campus.example",
        phone_number="0820000001",
        pickup_address={"streetAddress": "1 Residence Rd", "city": "Cape Town", "postalCode": "7700"},
    )
    buyer = make_profile(db_session, "Sipho Buyer", "buyer@campus.example", phone_number="0820000002")
    book = make_book(db_session, seller)
    return {"seller": seller, "buyer": buyer, "book": book}
