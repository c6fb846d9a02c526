from __future__ import annotations

from typing import Any, Dict, Optional

from sqlalchemy.orm import Session

from bookmarket.models import Order, Profile, as_utc


def load_order_context(db: Session, order_id: str) -> Optional[Dict[str, Any]]:
    """Minimal order, buyer and seller details needed to compose emails."""
    order = db.get(Order, order_id)
    if order is None:
        return None
    return build_order_context(order, db.get(Profile, order.seller_id), db.get(Profile, order.buyer_id))


def build_order_context(order: Order, seller: Optional[Profile], buyer: Optional[Profile]) -> Dict[str, Any]:
    deadline = as_utc(order.commit_deadline)
    return {
        "order_id": order.id,
        "seller_id": order.seller_id,
        "buyer_id": order.buyer_id,
        "seller_name": seller.display_name if seller else "Seller",
        "seller_email": seller.email if seller else None,
        "buyer_name": buyer.display_name if buyer else "Customer",
        "buyer_email": order.buyer_email or (buyer.email if buyer else None),
        "book_titles": order.book_titles,
        "total_amount": float(order.total_amount or 0),
        "payment_reference": order.payment_reference,
        "commit_deadline": deadline.isoformat() if deadline else None,
    }
