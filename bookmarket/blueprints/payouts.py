from __future__ import annotations

from flask import Blueprint, session

from bookmarket.blueprints.common import current_user_id, error_response, json_body, json_result, require_login
from bookmarket.database import get_db
from bookmarket.services.payout_service import PayoutService

payouts_bp = Blueprint("payouts", __name__)


def _get_payout_service() -> PayoutService:
    return PayoutService(get_db())


@payouts_bp.route("/api/payouts/recipient", methods=["POST"])
@require_login
def create_payout_recipient():
    payload = json_body()
    seller_id = payload.get("sellerId") if isinstance(payload, dict) else None
    if not seller_id:
        return error_response("MISSING_SELLER_ID", "sellerId is required", 400)
    if seller_id != current_user_id() and not session.get("is_admin"):
        return error_response("FORBIDDEN", "You can only prepare payouts for your own account", 403)
    return json_result(_get_payout_service().create_recipient(seller_id))
