from __future__ import annotations

from flask import Blueprint, session

from bookmarket.blueprints.common import (
    admin_token_valid,
    current_user_id,
    error_response,
    json_body,
    json_result,
    require_admin,
    require_login,
)
from bookmarket.database import get_db
from bookmarket.services.commit_service import CommitService
from bookmarket.services.commit_workflow import CommitWorkflow
from bookmarket.services.delivery_service import DeliveryService

orders_bp = Blueprint("orders", __name__)


def _get_commit_workflow() -> CommitWorkflow:
    return CommitWorkflow(get_db())


def _get_commit_service() -> CommitService:
    return CommitService(get_db())


def _get_delivery_service() -> DeliveryService:
    return DeliveryService(get_db())


def _reason() -> str | None:
    payload = json_body()
    return payload.get("reason") if isinstance(payload, dict) else None


@orders_bp.route("/api/orders/<order_id>/commit", methods=["POST"])
@require_login
def commit_order(order_id: str):
    result = _get_commit_workflow().commit_with_email_fallback(order_id, current_user_id())
    return json_result(result)


@orders_bp.route("/api/orders/<order_id>/decline", methods=["POST"])
@require_login
def decline_order(order_id: str):
    result = _get_commit_workflow().decline_with_email_fallback(order_id, current_user_id(), _reason())
    return json_result(result)


@orders_bp.route("/api/orders/<order_id>/cancel", methods=["POST"])
def cancel_order(order_id: str):
    is_admin = admin_token_valid() or bool(session.get("is_admin"))
    if not is_admin and not current_user_id():
        return error_response("NOT_AUTHENTICATED", "Not authenticated", 401)
    result = _get_commit_service().cancel_order(order_id, current_user_id(), _reason(), is_admin=is_admin)
    return json_result(result)


@orders_bp.route("/api/orders/<order_id>/delivery", methods=["POST"])
@require_admin
def update_delivery(order_id: str):
    payload = json_body()
    if not isinstance(payload, dict) or not payload.get("status"):
        return error_response("MISSING_DELIVERY_STATUS", "A delivery status is required", 400)
    data = payload.get("data") if isinstance(payload.get("data"), dict) else None
    return json_result(_get_delivery_service().update_delivery_status(order_id, payload["status"], data))
