from __future__ import annotations

from decimal import Decimal

import pytest

from bookmarket.database import SessionLocal
from bookmarket.models import (
    Book,
    MailPriority,
    MailQueue,
    Notification,
    Order,
    OrderActivityLog,
    OrderStatus,
    PaymentStatus,
    as_utc,
)
from bookmarket.observability import get_counter_value
from bookmarket.services.notification_dispatcher import NotificationDispatcher
from bookmarket.services.order_context import load_order_context
from bookmarket.services.purchase_email_service import PurchaseEmailService
from bookmarket.services.purchase_service import PurchaseService

from conftest import StubEmailClient, StubPaymentService, make_book, make_order


def _payload(marketplace, **overrides):
    payload = {
        "book_id": marketplace["book"].id,
        "buyer_id": marketplace["buyer"].id,
        "seller_id": marketplace["seller"].id,
        "amount": 450.00,
        "payment_reference": "PSK_REF_0001",
        "buyer_email": "buyer@campus.example",
        "shipping_address": {"streetAddress": "12 Main Rd", "city": "Stellenbosch", "postalCode": "7600"},
    }
    payload.update(overrides)
    return payload


@pytest.fixture
def purchase_service(db_session, dispatcher, payment_service):
    return PurchaseService(db_session, dispatcher=dispatcher, payment_service=payment_service, verify_payments=False)


def test_purchase_creates_pending_order_and_claims_book(db_session, marketplace, purchase_service, email_client):
    result = purchase_service.process_purchase(_payload(marketplace))

    assert result.success, result.to_response()
    body = result.to_response()
    assert body["order"]["status"] == "pending_commit"
    assert body["order"]["book_title"] == "Calculus: Early Transcendentals"
    assert body["order"]["seller_name"] == "Thandi Seller"
    assert body["order"]["amount"] == 450.0

    db_session.expire_all()
    order = db_session.get(Order, body["order"]["id"])
    assert order.payment_status == PaymentStatus.PAID
    assert order.amount == 45000
    assert order.total_amount == Decimal("450.00")
    hours = (as_utc(order.commit_deadline) - as_utc(order.paid_at)).total_seconds() / 3600
    assert hours == pytest.approx(48, abs=0.01)
    assert db_session.get(Book, marketplace["book"].id).sold is True

    titles = {n.title for n in db_session.query(Notification).all()}
    assert titles == {"Purchase Confirmed", "New Sale - Action Required"}
    log = db_session.query(OrderActivityLog).filter_by(order_id=order.id).one()
    assert log.action == "single_book_purchase"
    assert set(email_client.recipients()) == {"seller@campus.example", "buyer@campus.example"}
    assert get_counter_value("purchases_total", {"outcome": "success"}) == 1


def test_amount_within_tolerance_is_accepted(marketplace, purchase_service):
    result = purchase_service.process_purchase(_payload(marketplace, amount=450.009))
    assert result.success


def test_amount_mismatch_is_rejected_without_side_effects(db_session, marketplace, purchase_service):
    result = purchase_service.process_purchase(_payload(marketplace, amount=449.50))

    assert not result.success
    assert result.error == "AMOUNT_MISMATCH"
    assert result.status_code == 400
    assert result.details["book_price"] == 450.0
    db_session.expire_all()
    assert db_session.get(Book, marketplace["book"].id).sold is False
    assert db_session.query(Order).count() == 0


@pytest.mark.parametrize(
    "payload, error",
    [
        (None, "INVALID_JSON"),
        ("not-an-object", "INVALID_JSON"),
        ({"book_id": "x"}, "MISSING_REQUIRED_FIELDS"),
    ],
)
def test_malformed_requests_are_rejected(purchase_service, payload, error):
    result = purchase_service.process_purchase(payload)
    assert result.error == error
    assert result.status_code == 400


@pytest.mark.parametrize("amount", ["450.00", True, float("nan"), -10, 0])
def test_amount_must_be_a_positive_number(marketplace, purchase_service, amount):
    result = purchase_service.process_purchase(_payload(marketplace, amount=amount))
    assert result.error == "INVALID_AMOUNT_FORMAT"


@pytest.mark.parametrize("delivery_data", [{"delivery_fee": "95.50"}, {"delivery_fee": 95.5}, {"delivery_fee": -100}, "Courier Guy"])
def test_delivery_data_must_carry_whole_minor_units(db_session, marketplace, purchase_service, delivery_data):
    result = purchase_service.process_purchase(_payload(marketplace, delivery_data=delivery_data))

    assert result.error == "INVALID_DELIVERY_DATA"
    assert result.status_code == 400
    db_session.expire_all()
    assert db_session.get(Book, marketplace["book"].id).sold is False


def test_delivery_fee_is_stored_as_integer(db_session, marketplace, purchase_service):
    result = purchase_service.process_purchase(
        _payload(marketplace, delivery_data={"delivery_fee": "6500", "provider_slug": "courier-guy"})
    )

    assert result.success
    db_session.expire_all()
    order = db_session.get(Order, result.data["order"]["id"])
    assert order.delivery_data == {"delivery_fee": 6500, "provider_slug": "courier-guy"}
    assert order.delivery_fee == 6500


def test_missing_fields_are_listed(marketplace, purchase_service):
    payload = _payload(marketplace)
    del payload["payment_reference"]
    result = purchase_service.process_purchase(payload)
    assert result.details["missing_fields"] == ["payment_reference"]


def test_sold_book_is_not_available(db_session, marketplace, purchase_service):
    marketplace["book"].sold = True
    db_session.commit()

    result = purchase_service.process_purchase(_payload(marketplace))
    assert result.error == "BOOK_NOT_AVAILABLE"
    assert result.status_code == 404


def test_seller_must_own_the_book(db_session, marketplace, purchase_service):
    result = purchase_service.process_purchase(_payload(marketplace, seller_id=marketplace["buyer"].id))
    assert result.error == "BOOK_NOT_AVAILABLE"


def test_unknown_buyer_is_rejected(marketplace, purchase_service):
    result = purchase_service.process_purchase(_payload(marketplace, buyer_id="no-such-buyer"))
    assert result.error == "BUYER_NOT_FOUND"
    assert result.status_code == 404


def test_self_purchase_is_rejected(db_session, marketplace, purchase_service):
    result = purchase_service.process_purchase(_payload(marketplace, buyer_id=marketplace["seller"].id))
    assert result.error == "SELF_PURCHASE_NOT_ALLOWED"
    db_session.expire_all()
    assert db_session.get(Book, marketplace["book"].id).sold is False


def test_concurrent_buyer_wins_the_book(db_session, marketplace, dispatcher):
    """Another buyer claims the book while this purchase is being verified with Paystack."""
    book_id = marketplace["book"].id

    class _RacingPayments(StubPaymentService):
        def verify_transaction(self, reference):
            other = SessionLocal()
            try:
                assert Book.mark_sold(other, book_id)
                other.commit()
            finally:
                other.close()
            return {"status": "success", "amount": 45000}

    service = PurchaseService(db_session, dispatcher=dispatcher, payment_service=_RacingPayments(), verify_payments=True)
    result = service.process_purchase(_payload(marketplace))

    assert result.error == "BOOK_UPDATE_FAILED"
    assert result.status_code == 409
    assert db_session.query(Order).count() == 0


def test_book_can_only_be_marked_sold_once(db_session, marketplace):
    first, second = SessionLocal(), SessionLocal()
    try:
        assert Book.mark_sold(first, marketplace["book"].id) is True
        first.commit()
        assert Book.mark_sold(second, marketplace["book"].id) is False
        second.rollback()
    finally:
        first.close()
        second.close()


def test_failed_order_insert_returns_book_to_sale(db_session, marketplace, purchase_service):
    other_book = make_book(db_session, marketplace["seller"], title="Organic Chemistry", price="300.00")
    make_order(db_session, marketplace["buyer"], marketplace["seller"], other_book, reference="PSK_REF_0001")

    result = purchase_service.process_purchase(_payload(marketplace))

    assert result.error == "ORDER_CREATION_FAILED"
    assert result.status_code == 500
    assert result.details["rollback_performed"] is True
    db_session.expire_all()
    assert db_session.get(Book, marketplace["book"].id).sold is False


def test_payment_verification_rejects_unpaid_reference(db_session, marketplace, dispatcher):
    payments = StubPaymentService(transaction={"status": "abandoned", "amount": 45000})
    service = PurchaseService(db_session, dispatcher=dispatcher, payment_service=payments, verify_payments=True)

    result = service.process_purchase(_payload(marketplace))

    assert result.error == "PAYMENT_NOT_VERIFIED"
    assert result.status_code == 402
    assert payments.verified == ["PSK_REF_0001"]
    db_session.expire_all()
    assert db_session.get(Book, marketplace["book"].id).sold is False


def test_verified_flag_skips_provider_lookup(db_session, marketplace, dispatcher):
    payments = StubPaymentService()
    service = PurchaseService(db_session, dispatcher=dispatcher, payment_service=payments, verify_payments=True)

    result = service.process_purchase(_payload(marketplace), payment_verified=True, created_from="paystack_webhook")

    assert result.success
    assert payments.verified == []


def test_email_outage_does_not_fail_the_purchase(db_session, marketplace, payment_service):
    dispatcher = NotificationDispatcher(db_session, email_client=StubEmailClient(fail_all=True))
    service = PurchaseService(db_session, dispatcher=dispatcher, payment_service=payment_service, verify_payments=False)

    result = service.process_purchase(_payload(marketplace))

    assert result.success
    queued = {row.email_type: row for row in db_session.query(MailQueue).all()}
    assert queued["seller_purchase_notification"].priority == MailPriority.URGENT
    assert queued["buyer_purchase_receipt"].priority == MailPriority.HIGH
    assert queued["purchase_verification"].priority == MailPriority.LOW


def test_purchase_email_service_creates_notifications_when_asked(db_session, marketplace, dispatcher):
    order = make_order(db_session, marketplace["buyer"], marketplace["seller"], marketplace["book"])

    outcome = PurchaseEmailService(db_session, dispatcher=dispatcher).send_purchase_emails_with_fallback(
        load_order_context(db_session, order.id)
    )

    assert outcome["success"] is True
    assert outcome["seller"] == "sent" and outcome["buyer"] == "sent"
    assert outcome["notifications"] == {"seller": True, "buyer": True}
    assert outcome["verification_queued"] is True
    assert outcome["escalated"] is False
    assert db_session.query(Order).filter_by(status=OrderStatus.PENDING_COMMIT).count() == 1
