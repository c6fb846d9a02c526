from __future__ import annotations

import logging
import time
from typing import Any, Dict, List, Optional

from sqlalchemy import case
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from bookmarket.config import Config
from bookmarket.models import MailPriority, MailQueue, MailStatus, utcnow
from bookmarket.observability import increment_counter, observe_latency, record_event, set_gauge
from bookmarket.services.email_client import EmailClient, html_to_text

_PRIORITY_ORDER = case(
    (MailQueue.priority == MailPriority.URGENT, 0),
    (MailQueue.priority == MailPriority.HIGH, 1),
    (MailQueue.priority == MailPriority.NORMAL, 2),
    else_=3,
)


class MailQueueProcessor:
    """
    Consumer for ``mail_queue``.

    Rows are marked ``sent`` with an update guarded on ``status='pending'``,
    so a second worker racing on the same row cannot flip it back or count
    it twice.
    """

    def __init__(
        self,
        db_session: Session,
        email_client: Optional[EmailClient] = None,
        max_retries: Optional[int] = None,
        batch_size: Optional[int] = None,
    ) -> None:
        self.db = db_session
        self.logger = logging.getLogger(__name__)
        self.email_client = email_client or EmailClient()
        self.max_retries = max_retries or Config.MAIL_QUEUE_MAX_RETRIES
        self.batch_size = batch_size or Config.MAIL_QUEUE_BATCH_SIZE

    def process_pending(self) -> Dict[str, Any]:
        started = time.perf_counter()
        batch: List[MailQueue] = (
            self.db.query(MailQueue)
            .filter(MailQueue.status == MailStatus.PENDING, MailQueue.retry_count < self.max_retries)
            .order_by(_PRIORITY_ORDER, MailQueue.created_at, MailQueue.id)
            .limit(self.batch_size)
            .all()
        )
        if not batch:
            self.logger.info("No pending emails to process")
            return {"processed": 0, "successful": 0, "failed": 0, "results": []}

        results: List[Dict[str, Any]] = []
        for entry in batch:
            results.append(self._process_entry(entry))

        successful = sum(1 for result in results if result["status"] == MailStatus.SENT.value)
        summary = {
            "processed": len(results),
            "successful": successful,
            "failed": len(results) - successful,
            "results": results,
        }
        observe_latency("mail_queue_batch_seconds", time.perf_counter() - started)
        set_gauge("mail_queue_pending", self.pending_count())
        self.logger.info(
            "Mail queue batch processed",
            extra={"processed": summary["processed"], "successful": successful, "failed": summary["failed"]},
        )
        return summary

    def pending_count(self) -> int:
        return self.db.query(MailQueue).filter(MailQueue.status == MailStatus.PENDING).count()

    def _process_entry(self, entry: MailQueue) -> Dict[str, Any]:
        entry_id = entry.id
        try:
            self.email_client.send(entry.to_email, entry.subject, entry.html_content, text=html_to_text(entry.html_content))
        except Exception as exc:
            return self._record_failure(entry, str(exc))

        try:
            updated = (
                self.db.query(MailQueue)
                .filter(MailQueue.id == entry_id, MailQueue.status == MailStatus.PENDING)
                .update(
                    {"status": MailStatus.SENT, "sent_at": utcnow(), "error_message": None},
                    synchronize_session=False,
                )
            )
            self.db.commit()
        except SQLAlchemyError as exc:
            # Sent but not recorded; the next run may send it again.
            self.db.rollback()
            self.logger.error("Could not mark email %s as sent", entry_id, extra={"error": str(exc)})
            return {"id": entry_id, "status": "unrecorded", "error": str(exc)}

        if updated != 1:
            self.logger.warning("Email %s was already handled by another worker", entry_id)
        increment_counter("mail_queue_sent_total")
        return {"id": entry_id, "status": MailStatus.SENT.value}

    def _record_failure(self, entry: MailQueue, error: str) -> Dict[str, Any]:
        retry_count = (entry.retry_count or 0) + 1
        status = MailStatus.FAILED if retry_count >= self.max_retries else MailStatus.PENDING
        self.db.query(MailQueue).filter(MailQueue.id == entry.id, MailQueue.status == MailStatus.PENDING).update(
            {"status": status, "retry_count": retry_count, "error_message": error},
            synchronize_session=False,
        )
        self.db.commit()
        increment_counter("mail_queue_failures_total", labels={"final": str(status == MailStatus.FAILED).lower()})
        if status == MailStatus.FAILED:
            record_event(
                "mail_queue_gave_up",
                {"mail_queue_id": entry.id, "to": entry.to_email, "email_type": entry.email_type, "error": error},
            )
        self.logger.warning(
            "Queued email %s failed (attempt %d/%d)",
            entry.id,
            retry_count,
            self.max_retries,
            extra={"error": error},
        )
        return {"id": entry.id, "status": status.value, "retry_count": retry_count, "error": error}
