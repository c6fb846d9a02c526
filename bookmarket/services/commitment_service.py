"""
Deprecated sale-commitment API.

``sale_commitments`` predates the Order state machine. The adapter keeps the
old calls working for existing clients: where a commitment has a matching
order (same payment reference) the seller's action is applied to the order
through ``CommitWorkflow`` and the commitment row only mirrors the outcome.

Availability is decided once at startup by ``sale_commitments_available``.
When the capability is off every call raises ``FeatureUnavailableError``.
"""
from __future__ import annotations

import logging
from datetime import datetime, timedelta
from decimal import Decimal
from typing import Any, Dict, List, Optional

from sqlalchemy import or_
from sqlalchemy.orm import Session

from bookmarket.config import Config
from bookmarket.models import Book, CommitmentStatus, Order, Profile, SaleCommitment, as_utc, utcnow
from bookmarket.observability import increment_counter
from bookmarket.observability.health import table_exists
from bookmarket.services.commit_workflow import CommitWorkflow
from bookmarket.services.errors import FeatureUnavailableError


def sale_commitments_available() -> bool:
    return Config.FEATURE_SALE_COMMITMENTS_ENABLED and table_exists(SaleCommitment.__tablename__)


def calculate_time_remaining(expires_at: datetime, now: Optional[datetime] = None) -> str:
    remaining = as_utc(expires_at) - (now or utcnow())
    total_seconds = int(remaining.total_seconds())
    if total_seconds <= 0:
        return "Expired"
    hours, rest = divmod(total_seconds, 3600)
    minutes = rest // 60
    if hours > 0:
        return f"{hours}h {minutes}m remaining"
    return f"{minutes}m remaining"


class CommitmentService:
    def __init__(
        self,
        db_session: Session,
        available: Optional[bool] = None,
        workflow: Optional[CommitWorkflow] = None,
    ) -> None:
        self.db = db_session
        self.logger = logging.getLogger(__name__)
        self.available = sale_commitments_available() if available is None else available
        self._workflow = workflow

    @property
    def workflow(self) -> CommitWorkflow:
        if self._workflow is None:
            self._workflow = CommitWorkflow(self.db)
        return self._workflow

    def _require_available(self) -> None:
        if not self.available:
            raise FeatureUnavailableError("Sale commitments are not enabled on this deployment")

    def create_sale_commitment(
        self,
        book_id: str,
        buyer_id: str,
        purchase_amount: Decimal | float,
        delivery_fee: Decimal | float = 0,
        payment_reference: Optional[str] = None,
    ) -> str:
        self._require_available()
        book = self.db.get(Book, book_id)
        if book is None:
            raise ValueError(f"Book {book_id} not found")

        purchase = Decimal(str(purchase_amount))
        fee = Decimal(str(delivery_fee))
        now = utcnow()
        commitment = SaleCommitment(
            book_id=book_id,
            seller_id=book.seller_id,
            buyer_id=buyer_id,
            purchase_amount=purchase,
            delivery_fee=fee,
            total_amount=purchase + fee,
            status=CommitmentStatus.PENDING,
            expires_at=now + timedelta(hours=Config.COMMIT_WINDOW_HOURS),
            payment_reference=payment_reference,
        )
        self.db.add(commitment)
        self.db.commit()
        increment_counter("sale_commitments_total", labels={"action": "created"})
        return commitment.id

    def commit_to_sale(self, commitment_id: str, seller_id: str) -> bool:
        self._require_available()
        commitment = self._pending_commitment(commitment_id, seller_id)
        if commitment is None:
            return False
        if as_utc(commitment.expires_at) <= utcnow():
            self.logger.info("Commitment %s has already expired", commitment_id)
            return False

        order = self._linked_order(commitment)
        if order is not None:
            result = self.workflow.commit_with_email_fallback(order.id, seller_id)
            if not result.success:
                self.logger.warning(
                    "Linked order refused commit", extra={"order_id": order.id, "error": result.error}
                )
                return False

        return self._transition(commitment_id, CommitmentStatus.COMMITTED, committed_at=utcnow())

    def decline_sale(self, commitment_id: str, seller_id: str) -> bool:
        self._require_available()
        commitment = self._pending_commitment(commitment_id, seller_id)
        if commitment is None:
            return False

        order = self._linked_order(commitment)
        if order is not None:
            result = self.workflow.decline_with_email_fallback(order.id, seller_id, "Declined via sale commitment")
            if not result.success:
                return False

        declined = self._transition(commitment_id, CommitmentStatus.DECLINED)
        if declined and order is None:
            Book.relist(self.db, commitment.book_id)
            self.db.commit()
        return declined

    def get_pending_commitments(self, seller_id: str) -> List[Dict[str, Any]]:
        self._require_available()
        commitments = (
            self.db.query(SaleCommitment)
            .filter(SaleCommitment.seller_id == seller_id, SaleCommitment.status == CommitmentStatus.PENDING)
            .order_by(SaleCommitment.created_at.desc())
            .all()
        )
        return self._with_details(commitments)

    def get_all_commitments(self, user_id: str) -> List[Dict[str, Any]]:
        self._require_available()
        commitments = (
            self.db.query(SaleCommitment)
            .filter(or_(SaleCommitment.seller_id == user_id, SaleCommitment.buyer_id == user_id))
            .order_by(SaleCommitment.created_at.desc())
            .all()
        )
        return self._with_details(commitments)

    def expire_old_commitments(self, now: Optional[datetime] = None) -> int:
        self._require_available()
        now = now or utcnow()
        expired = (
            self.db.query(SaleCommitment)
            .filter(SaleCommitment.status == CommitmentStatus.PENDING, SaleCommitment.expires_at <= now)
            .update({"status": CommitmentStatus.EXPIRED, "updated_at": now}, synchronize_session=False)
        )
        self.db.commit()
        if expired:
            increment_counter("sale_commitments_total", amount=expired, labels={"action": "expired"})
            self.logger.info("Expired %d sale commitments", expired)
        return expired

    def get_commitment_stats(self, seller_id: str) -> Dict[str, Any]:
        self._require_available()
        rows = self.db.query(SaleCommitment).filter(SaleCommitment.seller_id == seller_id).all()
        counts = {status: 0 for status in CommitmentStatus}
        response_hours: List[float] = []
        for row in rows:
            status = CommitmentStatus(row.status)
            counts[status] += 1
            if status == CommitmentStatus.COMMITTED and row.committed_at and row.created_at:
                delta = as_utc(row.committed_at) - as_utc(row.created_at)
                response_hours.append(delta.total_seconds() / 3600)

        committed = counts[CommitmentStatus.COMMITTED]
        responded = committed + counts[CommitmentStatus.DECLINED] + counts[CommitmentStatus.EXPIRED]
        return {
            "total_commitments": len(rows),
            "committed_count": committed,
            "declined_count": counts[CommitmentStatus.DECLINED],
            "expired_count": counts[CommitmentStatus.EXPIRED],
            "average_response_time_hours": sum(response_hours) / len(response_hours) if response_hours else 0,
            "reliability_score": round(committed / responded * 100) if responded else 0,
        }

    def _pending_commitment(self, commitment_id: str, seller_id: str) -> Optional[SaleCommitment]:
        commitment = self.db.get(SaleCommitment, commitment_id)
        if commitment is None or commitment.seller_id != seller_id:
            return None
        if commitment.status != CommitmentStatus.PENDING:
            return None
        return commitment

    def _linked_order(self, commitment: SaleCommitment) -> Optional[Order]:
        if not commitment.payment_reference:
            return None
        return self.db.query(Order).filter(Order.payment_reference == commitment.payment_reference).one_or_none()

    def _transition(self, commitment_id: str, new_status: CommitmentStatus, **values: Any) -> bool:
        values.update({"status": new_status, "updated_at": utcnow()})
        updated = (
            self.db.query(SaleCommitment)
            .filter(SaleCommitment.id == commitment_id, SaleCommitment.status == CommitmentStatus.PENDING)
            .update(values, synchronize_session=False)
        )
        self.db.commit()
        if updated == 1:
            increment_counter("sale_commitments_total", labels={"action": new_status.value})
        return updated == 1

    def _with_details(self, commitments: List[SaleCommitment]) -> List[Dict[str, Any]]:
        profile_ids = {c.seller_id for c in commitments} | {c.buyer_id for c in commitments}
        profiles = {p.id: p for p in self.db.query(Profile).filter(Profile.id.in_(profile_ids))} if profile_ids else {}
        now = utcnow()
        details = []
        for commitment in commitments:
            seller = profiles.get(commitment.seller_id)
            buyer = profiles.get(commitment.buyer_id)
            status = CommitmentStatus(commitment.status)
            details.append(
                {
                    "id": commitment.id,
                    "book_id": commitment.book_id,
                    "book_title": commitment.book.title if commitment.book else "Unknown Book",
                    "seller_id": commitment.seller_id,
                    "buyer_id": commitment.buyer_id,
                    "seller_name": seller.display_name if seller else "Unknown Seller",
                    "buyer_name": buyer.display_name if buyer else "Unknown Buyer",
                    "purchase_amount": float(commitment.purchase_amount),
                    "delivery_fee": float(commitment.delivery_fee or 0),
                    "total_amount": float(commitment.total_amount),
                    "status": status.value,
                    "payment_reference": commitment.payment_reference,
                    "expires_at": as_utc(commitment.expires_at).isoformat(),
                    "time_remaining": (
                        calculate_time_remaining(commitment.expires_at, now)
                        if status == CommitmentStatus.PENDING
                        else None
                    ),
                }
            )
        return details
