from __future__ import annotations

from datetime import datetime, timedelta, timezone

import pytest

from bookmarket.models import Book, CommitmentStatus, Order, OrderStatus, SaleCommitment, utcnow
from bookmarket.services.commit_service import CommitService
from bookmarket.services.commit_workflow import CommitWorkflow
from bookmarket.services.commitment_service import CommitmentService, calculate_time_remaining
from bookmarket.services.errors import FeatureUnavailableError
from bookmarket.services.notification_dispatcher import NotificationDispatcher

from conftest import StubCourierClient, StubEmailClient, StubPaymentService, make_order


@pytest.fixture
def workflow(db_session):
    dispatcher = NotificationDispatcher(db_session, email_client=StubEmailClient())
    service = CommitService(
        db_session,
        dispatcher=dispatcher,
        courier_client=StubCourierClient(),
        payment_service=StubPaymentService(),
    )
    return CommitWorkflow(db_session, commit_service=service, dispatcher=dispatcher)


@pytest.fixture
def commitments(db_session, workflow):
    return CommitmentService(db_session, available=True, workflow=workflow)


def test_disabled_capability_raises(db_session, marketplace):
    service = CommitmentService(db_session, available=False)

    with pytest.raises(FeatureUnavailableError):
        service.get_pending_commitments(marketplace["seller"].id)
    with pytest.raises(FeatureUnavailableError):
        service.commit_to_sale("any", marketplace["seller"].id)


def test_time_remaining_formats():
    now = datetime(2026, 10, 18, 12, 0, tzinfo=timezone.utc)
    assert calculate_time_remaining(now + timedelta(hours=5, minutes=30), now) == "5h 30m remaining"
    assert calculate_time_remaining(now + timedelta(minutes=42), now) == "42m remaining"
    assert calculate_time_remaining(now - timedelta(seconds=1), now) == "Expired"
    assert calculate_time_remaining(now.replace(tzinfo=None), now) == "Expired"


def test_create_and_list_pending(db_session, marketplace, commitments):
    commitment_id = commitments.create_sale_commitment(
        marketplace["book"].id, marketplace["buyer"].id, 450.00, delivery_fee=65.00
    )

    pending = commitments.get_pending_commitments(marketplace["seller"].id)

    assert [c["id"] for c in pending] == [commitment_id]
    entry = pending[0]
    assert entry["book_title"] == "Calculus: Early Transcendentals"
    assert entry["seller_name"] == "Thandi Seller"
    assert entry["buyer_name"] == "Sipho Buyer"
    assert entry["total_amount"] == 515.0
    assert entry["time_remaining"].startswith("47h") or entry["time_remaining"].startswith("48h")
    assert commitments.get_all_commitments(marketplace["buyer"].id)[0]["id"] == commitment_id


def test_unknown_book_is_rejected(commitments, marketplace):
    with pytest.raises(ValueError):
        commitments.create_sale_commitment("missing-book", marketplace["buyer"].id, 100)


def test_commit_requires_owner_and_pending_status(db_session, marketplace, commitments):
    commitment_id = commitments.create_sale_commitment(marketplace["book"].id, marketplace["buyer"].id, 450)

    assert commitments.commit_to_sale(commitment_id, marketplace["buyer"].id) is False
    assert commitments.commit_to_sale(commitment_id, marketplace["seller"].id) is True
    assert commitments.commit_to_sale(commitment_id, marketplace["seller"].id) is False
    assert commitments.decline_sale(commitment_id, marketplace["seller"].id) is False
    db_session.expire_all()
    assert db_session.get(SaleCommitment, commitment_id).status == CommitmentStatus.COMMITTED


def test_expired_commitment_cannot_be_committed(db_session, marketplace, commitments):
    commitment_id = commitments.create_sale_commitment(marketplace["book"].id, marketplace["buyer"].id, 450)
    db_session.query(SaleCommitment).filter_by(id=commitment_id).update(
        {"expires_at": utcnow() - timedelta(minutes=1)}, synchronize_session=False
    )
    db_session.commit()

    assert commitments.commit_to_sale(commitment_id, marketplace["seller"].id) is False
    assert commitments.expire_old_commitments() == 1
    db_session.expire_all()
    assert db_session.get(SaleCommitment, commitment_id).status == CommitmentStatus.EXPIRED


def test_decline_without_order_relists_book(db_session, marketplace, commitments):
    marketplace["book"].sold = True
    db_session.commit()
    commitment_id = commitments.create_sale_commitment(marketplace["book"].id, marketplace["buyer"].id, 450)

    assert commitments.decline_sale(commitment_id, marketplace["seller"].id) is True
    db_session.expire_all()
    assert db_session.get(Book, marketplace["book"].id).sold is False


def test_commit_is_applied_to_linked_order(db_session, marketplace, commitments):
    order = make_order(
        db_session, marketplace["buyer"], marketplace["seller"], marketplace["book"], reference="PSK_LINKED"
    )
    commitment_id = commitments.create_sale_commitment(
        marketplace["book"].id, marketplace["buyer"].id, 450, payment_reference="PSK_LINKED"
    )

    assert commitments.commit_to_sale(commitment_id, marketplace["seller"].id) is True
    db_session.expire_all()
    assert db_session.get(Order, order.id).status == OrderStatus.COMMITTED


def test_linked_order_refusal_leaves_commitment_pending(db_session, marketplace, commitments):
    make_order(
        db_session,
        marketplace["buyer"],
        marketplace["seller"],
        marketplace["book"],
        status=OrderStatus.EXPIRED,
        reference="PSK_LATE",
    )
    commitment_id = commitments.create_sale_commitment(
        marketplace["book"].id, marketplace["buyer"].id, 450, payment_reference="PSK_LATE"
    )

    assert commitments.commit_to_sale(commitment_id, marketplace["seller"].id) is False
    db_session.expire_all()
    assert db_session.get(SaleCommitment, commitment_id).status == CommitmentStatus.PENDING


def test_commitment_stats(db_session, marketplace, commitments):
    seller, buyer, book = marketplace["seller"], marketplace["buyer"], marketplace["book"]
    committed = commitments.create_sale_commitment(book.id, buyer.id, 450)
    declined = commitments.create_sale_commitment(book.id, buyer.id, 450)
    commitments.create_sale_commitment(book.id, buyer.id, 450)
    commitments.commit_to_sale(committed, seller.id)
    commitments.decline_sale(declined, seller.id)

    stats = commitments.get_commitment_stats(seller.id)

    assert stats["total_commitments"] == 3
    assert stats["committed_count"] == 1
    assert stats["declined_count"] == 1
    assert stats["expired_count"] == 0
    assert stats["reliability_score"] == 50
    assert stats["average_response_time_hours"] >= 0
