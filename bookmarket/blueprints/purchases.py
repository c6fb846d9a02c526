from __future__ import annotations

import logging

from flask import Blueprint, session

from bookmarket.blueprints.common import (
    current_user_id,
    error_response,
    json_body,
    json_result,
    require_login,
)
from bookmarket.database import get_db
from bookmarket.services.purchase_service import PurchaseService

purchases_bp = Blueprint("purchases", __name__)
logger = logging.getLogger(__name__)


def _get_purchase_service() -> PurchaseService:
    return PurchaseService(get_db())


@purchases_bp.route("/api/purchases", methods=["POST"])
@require_login
def api_process_purchase():
    payload = json_body()
    # Buyers may only purchase for themselves; operators can record on behalf of anyone
    if isinstance(payload, dict) and payload.get("buyer_id") not in (None, ""):
        if str(payload["buyer_id"]) != current_user_id() and not session.get("is_admin"):
            return error_response("BUYER_MISMATCH", "You can only purchase books for your own account", 403)
    try:
        result = _get_purchase_service().process_purchase(payload)
    except Exception:
        logger.exception("Unhandled error while processing purchase")
        get_db().rollback()
        return error_response("INTERNAL_SERVER_ERROR", "Purchase could not be processed", 500)
    return json_result(result)
