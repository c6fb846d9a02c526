"""Minimal transactional email bodies. Each builder returns (subject, html)."""
from __future__ import annotations

from html import escape
from typing import Any, Dict, Iterable, Tuple

Email = Tuple[str, str]

_FOOTER = (
    "<p style=\"font-size:12px\">This is an automated message from ReBooked Solutions. "
    "Please do not reply to this email.</p>"
)


def _wrap(title: str, body: str) -> str:
    return (
        "<!DOCTYPE html><html><head><meta charset=\"utf-8\">"
        f"<title>{escape(title)}</title></head><body>"
        f"<h1>{escape(title)}</h1>{body}{_FOOTER}</body></html>"
    )


def _rows(rows: Iterable[Tuple[str, Any]]) -> str:
    return "".join(f"<p><strong>{escape(label)}:</strong> {escape(str(value))}</p>" for label, value in rows)


def _books(titles: Iterable[str]) -> str:
    return ", ".join(titles) or "Book"


def seller_new_order(ctx: Dict[str, Any]) -> Email:
    subject = "New Order - Action Required (48 hours)"
    body = (
        f"<p>Hi {escape(ctx['seller_name'])}, you have a new order.</p>"
        + _rows(
            [
                ("Order ID", ctx["order_id"]),
                ("Book(s)", _books(ctx["book_titles"])),
                ("Buyer", ctx["buyer_name"]),
                ("Total", f"R{ctx['total_amount']:.2f}"),
                ("Commit by", ctx["commit_deadline"]),
            ]
        )
        + "<p>Please commit to this sale within 48 hours or it will be cancelled automatically.</p>"
    )
    return subject, _wrap(subject, body)


def buyer_receipt(ctx: Dict[str, Any]) -> Email:
    subject = "Purchase Confirmed - Awaiting Seller Response"
    body = (
        f"<p>Hi {escape(ctx['buyer_name'])}, thank you for your purchase.</p>"
        + _rows(
            [
                ("Order ID", ctx["order_id"]),
                ("Book(s)", _books(ctx["book_titles"])),
                ("Seller", ctx["seller_name"]),
                ("Total paid", f"R{ctx['total_amount']:.2f}"),
                ("Payment reference", ctx["payment_reference"]),
            ]
        )
        + "<p>The seller has 48 hours to commit. If they do not, you will be refunded in full.</p>"
    )
    return subject, _wrap(subject, body)


def seller_commit_confirmation(ctx: Dict[str, Any]) -> Email:
    subject = "Order Commitment Confirmed - Prepare for Pickup"
    body = (
        f"<p>Thank you, {escape(ctx['seller_name'])}! The buyer has been notified and pickup has been scheduled.</p>"
        + _rows([("Order ID", ctx["order_id"]), ("Book(s)", _books(ctx["book_titles"])), ("Buyer", ctx["buyer_name"])])
        + "<p>A courier will contact you within 24 hours to arrange pickup.</p>"
    )
    return subject, _wrap(subject, body)


def buyer_commit_confirmation(ctx: Dict[str, Any]) -> Email:
    subject = "Order Confirmed - Pickup Scheduled"
    body = (
        f"<p>Great news, {escape(ctx['buyer_name'])}! {escape(ctx['seller_name'])} has confirmed your order.</p>"
        + _rows(
            [
                ("Order ID", ctx["order_id"]),
                ("Book(s)", _books(ctx["book_titles"])),
                ("Tracking number", ctx.get("tracking_number") or "TBA"),
                ("Estimated delivery", "2-3 business days"),
            ]
        )
    )
    return subject, _wrap(subject, body)


def buyer_order_declined(ctx: Dict[str, Any]) -> Email:
    subject = "Order Declined - Refund Processed"
    body = (
        f"<p>Hi {escape(ctx['buyer_name'])}, unfortunately the seller declined your order.</p>"
        + _rows(
            [
                ("Order ID", ctx["order_id"]),
                ("Book(s)", _books(ctx["book_titles"])),
                ("Reason", ctx.get("reason") or "No reason provided"),
                ("Refund amount", f"R{ctx['total_amount']:.2f}"),
            ]
        )
        + "<p>Refunds usually reflect within 3-5 business days.</p>"
    )
    return subject, _wrap(subject, body)


def seller_decline_confirmation(ctx: Dict[str, Any]) -> Email:
    subject = "Order Decline Confirmation"
    body = (
        f"<p>Hi {escape(ctx['seller_name'])}, you declined order {escape(ctx['order_id'])}.</p>"
        + _rows([("Book(s)", _books(ctx["book_titles"])), ("Reason", ctx.get("reason") or "No reason provided")])
        + "<p>Your listing is available for sale again and the buyer has been refunded.</p>"
    )
    return subject, _wrap(subject, body)


def buyer_order_expired(ctx: Dict[str, Any]) -> Email:
    subject = "Order Expired - Refund Processed"
    body = (
        f"<p>Hi {escape(ctx['buyer_name'])}, the seller did not commit to your order in time.</p>"
        + _rows([("Order ID", ctx["order_id"]), ("Refund amount", f"R{ctx['total_amount']:.2f}")])
    )
    return subject, _wrap(subject, body)


def seller_order_expired(ctx: Dict[str, Any]) -> Email:
    subject = "Order Expired - Commitment Window Missed"
    body = (
        f"<p>Hi {escape(ctx['seller_name'])}, order {escape(ctx['order_id'])} expired because it was not "
        "committed within 48 hours. The buyer has been refunded and your book is listed again.</p>"
    )
    return subject, _wrap(subject, body)


def buyer_order_cancelled(ctx: Dict[str, Any]) -> Email:
    subject = "Order Cancelled"
    if ctx.get("refunded"):
        refund_line = f"R{ctx['total_amount']:.2f} has been refunded to your original payment method."
    else:
        refund_line = "Your refund is being processed. Our team will follow up if it is delayed."
    body = (
        f"<p>Hi {escape(ctx['buyer_name'])}, order {escape(ctx['order_id'])} has been cancelled.</p>"
        + _rows([("Book(s)", _books(ctx["book_titles"])), ("Reason", ctx.get("reason") or "Cancelled by buyer")])
        + f"<p>{escape(refund_line)}</p>"
    )
    return subject, _wrap(subject, body)


def seller_order_cancelled(ctx: Dict[str, Any]) -> Email:
    subject = "Order Cancelled - Book Relisted"
    body = (
        f"<p>Hi {escape(ctx['seller_name'])}, order {escape(ctx['order_id'])} was cancelled.</p>"
        + _rows([("Book(s)", _books(ctx["book_titles"])), ("Reason", ctx.get("reason") or "Cancelled by buyer")])
        + "<p>Your book is listed for sale again. No further action is needed.</p>"
    )
    return subject, _wrap(subject, body)


def seller_commit_reminder(ctx: Dict[str, Any], hours_left: int, urgent: bool) -> Email:
    if urgent:
        subject = f"URGENT: Order expires in {hours_left} hours - Action Required"
    else:
        subject = f"Reminder: Order expires in {hours_left} hours - Please commit"
    body = (
        f"<p>Hi {escape(ctx['seller_name'])}, you have a pending order that needs your attention.</p>"
        + _rows(
            [
                ("Order ID", ctx["order_id"]),
                ("Book(s)", _books(ctx["book_titles"])),
                ("Buyer", ctx["buyer_name"]),
                ("Total", f"R{ctx['total_amount']:.2f}"),
                ("Time remaining", f"{hours_left} hours"),
                ("Commit by", ctx["commit_deadline"]),
            ]
        )
        + "<p>If you do not commit in time the order is cancelled and the buyer refunded.</p>"
    )
    return subject, _wrap(subject, body)


def verification_record(kind: str, ctx: Dict[str, Any]) -> Email:
    subject = f"{kind.title()} Verification - Order {ctx['order_id']}"
    body = _rows(sorted(ctx.items()))
    return subject, _wrap(subject, body)


def manual_processing_required(kind: str, ctx: Dict[str, Any]) -> Email:
    subject = f"URGENT: Manual {kind.title()} Processing Required - Order {ctx['order_id']}"
    body = (
        "<p>The automated workflow failed and this order needs manual processing.</p>"
        + _rows(sorted(ctx.items()))
    )
    return subject, _wrap(subject, body)


def expiry_summary(ctx: Dict[str, Any]) -> Email:
    subject = f"Auto-Expire Summary - {ctx['expired']} orders processed"
    body = _rows(sorted(ctx.items()))
    return subject, _wrap(subject, body)


def reminder_summary(ctx: Dict[str, Any]) -> Email:
    subject = f"Order Reminders Sent: {ctx['sent']} reminders, {ctx['errors']} errors"
    body = _rows(sorted(ctx.items()))
    return subject, _wrap(subject, body)
