from __future__ import annotations

from bookmarket.models import MailPriority, MailQueue, MailStatus
from bookmarket.observability import get_counter_value, get_events
from bookmarket.services.mail_queue_service import MailQueueProcessor

from conftest import StubEmailClient


def _queue(db_session, to, priority, subject=None, retry_count=0, status=MailStatus.PENDING):
    row = MailQueue(
        to_email=to,
        subject=subject or f"{priority.value} mail",
        html_content="<p>Your order <strong>changed</strong></p>",
        priority=priority,
        retry_count=retry_count,
        status=status,
        email_type="buyer_commit_confirmation",
    )
    db_session.add(row)
    db_session.commit()
    return row


def test_batch_is_sent_in_priority_order(db_session):
    for priority in (MailPriority.LOW, MailPriority.URGENT, MailPriority.NORMAL, MailPriority.HIGH):
        _queue(db_session, f"{priority.value}@campus.example", priority)
    emails = StubEmailClient()

    summary = MailQueueProcessor(db_session, email_client=emails).process_pending()

    assert summary["processed"] == 4
    assert summary["successful"] == 4
    assert emails.recipients() == [
        "urgent@campus.example",
        "high@campus.example",
        "normal@campus.example",
        "low@campus.example",
    ]
    db_session.expire_all()
    assert {row.status for row in db_session.query(MailQueue).all()} == {MailStatus.SENT}
    assert all(row.sent_at is not None for row in db_session.query(MailQueue).all())
    assert get_counter_value("mail_queue_sent_total") == 4


def test_batch_size_limits_each_run(db_session):
    for index in range(3):
        _queue(db_session, f"reader{index}@campus.example", MailPriority.NORMAL)

    summary = MailQueueProcessor(db_session, email_client=StubEmailClient(), batch_size=2).process_pending()

    assert summary["processed"] == 2
    assert MailQueueProcessor(db_session, email_client=StubEmailClient()).pending_count() == 1


def test_failed_send_increments_retry_count(db_session):
    row = _queue(db_session, "flaky@campus.example", MailPriority.HIGH)
    emails = StubEmailClient(fail_for={"flaky@campus.example"})

    summary = MailQueueProcessor(db_session, email_client=emails, max_retries=3).process_pending()

    assert summary["failed"] == 1
    assert summary["results"][0]["retry_count"] == 1
    db_session.expire_all()
    stored = db_session.get(MailQueue, row.id)
    assert stored.status == MailStatus.PENDING
    assert stored.retry_count == 1
    assert "flaky@campus.example" in stored.error_message


def test_last_retry_marks_failed_and_reports(db_session):
    row = _queue(db_session, "gone@campus.example", MailPriority.URGENT, retry_count=2)
    emails = StubEmailClient(fail_all=True)

    MailQueueProcessor(db_session, email_client=emails, max_retries=3).process_pending()

    db_session.expire_all()
    assert db_session.get(MailQueue, row.id).status == MailStatus.FAILED
    gave_up = get_events("mail_queue_gave_up")
    assert gave_up[0]["payload"]["mail_queue_id"] == row.id
    assert get_counter_value("mail_queue_failures_total", {"final": "true"}) == 1


def test_exhausted_and_sent_rows_are_skipped(db_session):
    _queue(db_session, "done@campus.example", MailPriority.NORMAL, status=MailStatus.SENT)
    _queue(db_session, "spent@campus.example", MailPriority.NORMAL, retry_count=3)
    emails = StubEmailClient()

    summary = MailQueueProcessor(db_session, email_client=emails, max_retries=3).process_pending()

    assert summary == {"processed": 0, "successful": 0, "failed": 0, "results": []}
    assert emails.sent == []
