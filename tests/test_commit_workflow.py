from __future__ import annotations

from datetime import timedelta

import pytest
from sqlalchemy.exc import OperationalError

from bookmarket.config import Config
from bookmarket.models import (
    Book,
    DeliveryStatus,
    MailPriority,
    MailQueue,
    Notification,
    Order,
    OrderActivityLog,
    OrderStatus,
    PaymentStatus,
    utcnow,
)
from bookmarket.observability import get_counter_value, get_events
from bookmarket.services.commit_service import CommitService
from bookmarket.services.commit_workflow import CommitWorkflow
from bookmarket.services.notification_dispatcher import NotificationDispatcher

from conftest import StubCourierClient, StubEmailClient, StubPaymentService, make_order


class _ExplodingCommitService(CommitService):
    """Primary path that fails before touching the order."""

    def commit_to_sale(self, order_id, seller_id):
        raise RuntimeError("edge function timed out")

    def decline_order(self, order_id, seller_id, reason=None):
        raise RuntimeError("edge function timed out")


def _build(db_session, email_client=None, payments=None, courier=None, service_cls=CommitService):
    dispatcher = NotificationDispatcher(db_session, email_client=email_client or StubEmailClient())
    service = service_cls(
        db_session,
        dispatcher=dispatcher,
        courier_client=courier or StubCourierClient(),
        payment_service=payments or StubPaymentService(),
    )
    return CommitWorkflow(db_session, commit_service=service, dispatcher=dispatcher), service, dispatcher


@pytest.fixture
def pending_order(db_session, marketplace):
    return make_order(
        db_session,
        marketplace["buyer"],
        marketplace["seller"],
        marketplace["book"],
        shipping_address={"streetAddress": "12 Main Rd", "city": "Stellenbosch", "postalCode": "7600"},
        delivery_data={"delivery_fee": 6500},
    )


def _queued_types(db_session):
    return {row.email_type for row in db_session.query(MailQueue).all()}


def test_commit_primary_path(db_session, marketplace, pending_order):
    emails = StubEmailClient()
    courier = StubCourierClient()
    workflow, _, _ = _build(db_session, email_client=emails, courier=courier)

    result = workflow.commit_with_email_fallback(pending_order.id, marketplace["seller"].id)

    assert result.success, result.to_response()
    assert result.data["status"] == "committed"
    assert result.data["fallback_used"] is False
    assert result.data["email_outcomes"] == {"seller": "sent", "buyer": "sent"}
    assert result.data["notifications"] == {"buyer": True, "seller": True}
    assert result.data["verification_queued"] is True
    assert result.data["escalated"] is False
    assert result.data["tracking_number"] == "TRK-1001"

    db_session.expire_all()
    order = db_session.get(Order, pending_order.id)
    assert order.status == OrderStatus.COMMITTED
    assert order.committed_at is not None
    assert order.delivery_status == DeliveryStatus.PICKUP_SCHEDULED.value
    assert order.delivery_data["tracking_number"] == "TRK-1001"
    assert order.delivery_data["delivery_fee"] == 6500
    # Emails already sent by the primary path are not sent twice
    assert sorted(emails.recipients()) == ["buyer@campus.example", "seller@campus.example"]
    assert _queued_types(db_session) == {"commit_verification"}
    assert db_session.query(OrderActivityLog).filter_by(action="seller_committed").count() == 1


def test_courier_failure_does_not_undo_commit(db_session, marketplace, pending_order):
    workflow, _, _ = _build(db_session, courier=StubCourierClient(fail=True))

    result = workflow.commit_with_email_fallback(pending_order.id, marketplace["seller"].id)

    assert result.success
    assert result.data["delivery_scheduled"] is False
    db_session.expire_all()
    order = db_session.get(Order, pending_order.id)
    assert order.status == OrderStatus.COMMITTED
    assert order.delivery_status == DeliveryStatus.PENDING.value
    assert get_events("delivery_scheduling_failed")


def test_business_refusal_is_returned_without_fallback(db_session, marketplace, pending_order):
    workflow, _, _ = _build(db_session)

    result = workflow.commit_with_email_fallback(pending_order.id, marketplace["buyer"].id)

    assert result.error == "NOT_ORDER_SELLER"
    assert result.status_code == 403
    assert db_session.query(Notification).count() == 0
    assert db_session.query(MailQueue).count() == 0
    assert get_counter_value("commit_workflow_fallbacks_total") == 0


def test_commit_after_deadline_is_refused(db_session, marketplace):
    order = make_order(
        db_session,
        marketplace["buyer"],
        marketplace["seller"],
        marketplace["book"],
        deadline=utcnow() - timedelta(minutes=1),
    )
    workflow, _, _ = _build(db_session)

    result = workflow.commit_with_email_fallback(order.id, marketplace["seller"].id)

    assert result.error == "COMMIT_DEADLINE_PASSED"
    db_session.expire_all()
    assert db_session.get(Order, order.id).status == OrderStatus.PENDING_COMMIT


def test_commit_twice_is_refused(db_session, marketplace, pending_order):
    workflow, _, _ = _build(db_session)
    assert workflow.commit_with_email_fallback(pending_order.id, marketplace["seller"].id).success

    second = workflow.commit_with_email_fallback(pending_order.id, marketplace["seller"].id)

    assert second.error == "INVALID_ORDER_STATUS"
    assert second.status_code == 409


def test_failed_primary_email_is_queued_by_fallback(db_session, marketplace, pending_order):
    emails = StubEmailClient(fail_for={"buyer@campus.example"})
    workflow, _, _ = _build(db_session, email_client=emails)

    result = workflow.commit_with_email_fallback(pending_order.id, marketplace["seller"].id)

    assert result.success
    assert result.data["email_outcomes"] == {"seller": "sent", "buyer": "queued"}
    queued = db_session.query(MailQueue).filter_by(email_type="buyer_commit_confirmation").one()
    assert queued.to_email == "buyer@campus.example"
    assert queued.priority == MailPriority.HIGH
    assert get_events("email_queued_for_retry")


def test_primary_exception_falls_back_to_direct_commit(db_session, marketplace, pending_order):
    emails = StubEmailClient()
    workflow, _, _ = _build(db_session, email_client=emails, service_cls=_ExplodingCommitService)

    result = workflow.commit_with_email_fallback(pending_order.id, marketplace["seller"].id)

    assert result.success
    assert result.data["fallback_used"] is True
    assert result.data["status"] == "committed"
    assert result.data["email_outcomes"] == {"seller": "sent", "buyer": "sent"}
    assert {n.user_id for n in db_session.query(Notification).all()} == {
        marketplace["buyer"].id,
        marketplace["seller"].id,
    }
    assert get_counter_value("commit_workflow_fallbacks_total", {"kind": "commit"}) == 1
    db_session.expire_all()
    assert db_session.get(Order, pending_order.id).status == OrderStatus.COMMITTED


def test_fallback_never_commits_an_expired_order(db_session, marketplace):
    order = make_order(
        db_session,
        marketplace["buyer"],
        marketplace["seller"],
        marketplace["book"],
        deadline=utcnow() - timedelta(hours=1),
    )
    workflow, _, _ = _build(db_session, service_cls=_ExplodingCommitService)

    result = workflow.commit_with_email_fallback(order.id, marketplace["seller"].id)

    assert result.error == "COMMIT_PROCESSING_FAILED"
    assert result.status_code == 500
    assert result.details["emails_sent"] is True
    db_session.expire_all()
    assert db_session.get(Order, order.id).status == OrderStatus.PENDING_COMMIT
    alert = db_session.query(MailQueue).filter_by(email_type="manual_processing_required").one()
    assert alert.to_email == Config.OPERATIONS_EMAIL
    assert alert.priority == MailPriority.URGENT
    assert order.id in alert.subject


def test_unreachable_email_and_queue_escalates(db_session, marketplace, pending_order, monkeypatch):
    workflow, _, dispatcher = _build(db_session, email_client=StubEmailClient(fail_all=True))
    original_enqueue = dispatcher.enqueue

    def _enqueue_only_urgent(message, error_message=None):
        if message.priority != MailPriority.URGENT:
            raise OperationalError("INSERT INTO mail_queue", {}, Exception("disk I/O error"))
        return original_enqueue(message, error_message)

    monkeypatch.setattr(dispatcher, "enqueue", _enqueue_only_urgent)

    result = workflow.commit_with_email_fallback(pending_order.id, marketplace["seller"].id)

    assert result.success
    assert result.data["email_outcomes"] == {"seller": "failed", "buyer": "failed"}
    assert result.data["email_sent"] is False
    assert result.data["verification_queued"] is False
    assert result.data["escalated"] is True
    escalation = get_events("manual_processing_required")[0]["payload"]
    assert escalation["order_id"] == pending_order.id
    assert escalation["seller_id"] == marketplace["seller"].id
    assert escalation["failed_recipients"] == ["seller", "buyer"]
    assert "timestamp" in escalation


def test_decline_refunds_and_relists(db_session, marketplace, pending_order):
    payments = StubPaymentService()
    workflow, _, _ = _build(db_session, payments=payments)

    result = workflow.decline_with_email_fallback(pending_order.id, marketplace["seller"].id, "Book damaged")

    assert result.success
    assert result.data["status"] == "refunded"
    assert payments.refunds == [{"order_id": pending_order.id, "amount": 45000, "reason": "Seller declined the order"}]
    db_session.expire_all()
    order = db_session.get(Order, pending_order.id)
    assert order.status == OrderStatus.REFUNDED
    assert order.payment_status == PaymentStatus.REFUNDED
    assert order.refund_reference == "RF_1"
    assert order.decline_reason == "Book damaged"
    assert db_session.get(Book, marketplace["book"].id).sold is False
    titles = {(n.user_id, n.title) for n in db_session.query(Notification).all()}
    assert (marketplace["buyer"].id, "Order Declined") in titles


def test_decline_with_failed_refund_stays_declined(db_session, marketplace, pending_order):
    workflow, _, _ = _build(db_session, payments=StubPaymentService(refund_ok=False))

    result = workflow.decline_with_email_fallback(pending_order.id, marketplace["seller"].id)

    assert result.success
    assert result.data["status"] == "declined"
    db_session.expire_all()
    order = db_session.get(Order, pending_order.id)
    assert order.refund_status == "failed"
    assert order.decline_reason == "No reason provided"
    assert get_events("refund_failed")


def test_decline_fallback_after_primary_exception(db_session, marketplace, pending_order):
    payments = StubPaymentService()
    workflow, _, _ = _build(db_session, payments=payments, service_cls=_ExplodingCommitService)

    result = workflow.decline_with_email_fallback(pending_order.id, marketplace["seller"].id, "Lost the book")

    assert result.success
    assert result.data["fallback_used"] is True
    assert len(payments.refunds) == 1
    db_session.expire_all()
    assert db_session.get(Order, pending_order.id).status == OrderStatus.REFUNDED
    assert db_session.get(Book, marketplace["book"].id).sold is False
    assert "decline_verification" in _queued_types(db_session)


class _RefundCommitFailsOnce(CommitService):
    """Primary decline commits ``declined`` and then dies writing the refund."""

    def __init__(self, *args, **kwargs):
        super().__init__(*args, **kwargs)
        self.refund_attempts = 0

    def refund_order(self, order, from_status, reason=""):
        self.refund_attempts += 1
        if self.refund_attempts == 1:
            raise OperationalError("COMMIT", {}, Exception("database is locked"))
        return super().refund_order(order, from_status, reason=reason)


def test_decline_fallback_completes_interrupted_refund(db_session, marketplace, pending_order):
    payments = StubPaymentService()
    workflow, service, _ = _build(db_session, payments=payments, service_cls=_RefundCommitFailsOnce)

    result = workflow.decline_with_email_fallback(pending_order.id, marketplace["seller"].id, "Lost the book")

    assert result.success
    assert result.data["fallback_used"] is True
    assert result.data["status"] == "refunded"
    assert service.refund_attempts == 2
    db_session.expire_all()
    order = db_session.get(Order, pending_order.id)
    assert order.status == OrderStatus.REFUNDED
    assert order.refund_status == "success"
    assert order.decline_reason == "Lost the book"
    assert db_session.get(Book, marketplace["book"].id).sold is False
