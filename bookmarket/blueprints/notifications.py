from __future__ import annotations

from flask import Blueprint, jsonify, request

from bookmarket.blueprints.common import current_user_id, error_response, require_login
from bookmarket.database import get_db
from bookmarket.services.notification_service import NotificationService

notifications_bp = Blueprint("notifications", __name__, url_prefix="/api/notifications")


def _get_notification_service() -> NotificationService:
    return NotificationService(get_db())


@notifications_bp.route("", methods=["GET"])
@require_login
def list_notifications():
    unread_only = request.args.get("unread_only", "false").lower() in {"1", "true", "yes"}
    try:
        limit = min(max(int(request.args.get("limit", 50)), 1), 200)
    except ValueError:
        return error_response("INVALID_LIMIT", "limit must be an integer", 400)

    service = _get_notification_service()
    user_id = current_user_id()
    notifications = service.get_notifications(user_id, unread_only=unread_only, limit=limit)
    return jsonify(
        {
            "notifications": notifications,
            "unread_count": service.get_unread_count(user_id),
        }
    )


@notifications_bp.route("/<int:notification_id>/read", methods=["POST"])
@require_login
def mark_notification_read(notification_id: int):
    if not _get_notification_service().mark_as_read(current_user_id(), notification_id):
        return error_response("NOTIFICATION_NOT_FOUND", "Notification not found", 404)
    return jsonify({"success": True})


@notifications_bp.route("/mark-all-read", methods=["POST"])
@require_login
def mark_all_notifications_read():
    updated = _get_notification_service().mark_all_as_read(current_user_id())
    return jsonify({"success": True, "updated": updated})
