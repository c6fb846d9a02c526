from __future__ import annotations

from flask import Blueprint, jsonify

from bookmarket.blueprints.common import json_result, require_admin
from bookmarket.database import get_db
from bookmarket.services.commit_service import CommitService
from bookmarket.services.mail_queue_service import MailQueueProcessor

admin_bp = Blueprint("admin", __name__, url_prefix="/api/admin")


def _get_commit_service() -> CommitService:
    return CommitService(get_db())


def _get_mail_queue_processor() -> MailQueueProcessor:
    return MailQueueProcessor(get_db())


@admin_bp.route("/orders/expire", methods=["POST"])
@require_admin
def expire_orders():
    return json_result(_get_commit_service().expire_overdue_orders())


@admin_bp.route("/mail-queue/process", methods=["POST"])
@require_admin
def process_mail_queue():
    summary = _get_mail_queue_processor().process_pending()
    return jsonify({"success": True, **summary})


@admin_bp.route("/orders/reminders", methods=["POST"])
@require_admin
def send_commit_reminders():
    return json_result(_get_commit_service().send_commit_reminders())
