from __future__ import annotations

from flask import Blueprint, current_app, jsonify

from bookmarket.blueprints.common import current_user_id, error_response, require_admin, require_login
from bookmarket.database import get_db
from bookmarket.services.commitment_service import CommitmentService
from bookmarket.services.errors import FeatureUnavailableError

commitments_bp = Blueprint("commitments", __name__, url_prefix="/api/commitments")


def _get_commitment_service() -> CommitmentService:
    return CommitmentService(get_db(), available=current_app.config.get("SALE_COMMITMENTS_AVAILABLE", False))


@commitments_bp.errorhandler(FeatureUnavailableError)
def feature_unavailable(exc: FeatureUnavailableError):
    return error_response("FEATURE_UNAVAILABLE", str(exc), 503)


@commitments_bp.route("", methods=["GET"])
@require_login
def list_commitments():
    return jsonify({"commitments": _get_commitment_service().get_all_commitments(current_user_id())})


@commitments_bp.route("/pending", methods=["GET"])
@require_login
def pending_commitments():
    return jsonify({"commitments": _get_commitment_service().get_pending_commitments(current_user_id())})


@commitments_bp.route("/stats", methods=["GET"])
@require_login
def commitment_stats():
    return jsonify(_get_commitment_service().get_commitment_stats(current_user_id()))


@commitments_bp.route("/<commitment_id>/commit", methods=["POST"])
@require_login
def commit_commitment(commitment_id: str):
    if not _get_commitment_service().commit_to_sale(commitment_id, current_user_id()):
        return error_response("COMMIT_FAILED", "Commitment could not be committed", 409)
    return jsonify({"success": True})


@commitments_bp.route("/<commitment_id>/decline", methods=["POST"])
@require_login
def decline_commitment(commitment_id: str):
    if not _get_commitment_service().decline_sale(commitment_id, current_user_id()):
        return error_response("DECLINE_FAILED", "Commitment could not be declined", 409)
    return jsonify({"success": True})


@commitments_bp.route("/expire", methods=["POST"])
@require_admin
def expire_commitments():
    return jsonify({"success": True, "expired": _get_commitment_service().expire_old_commitments()})
