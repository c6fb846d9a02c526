from __future__ import annotations

from flask import Blueprint, request

from bookmarket.blueprints.common import json_result
from bookmarket.config import Config
from bookmarket.database import get_db
from bookmarket.services.webhook_service import WebhookService

webhooks_bp = Blueprint("webhooks", __name__)


def _get_webhook_service() -> WebhookService:
    return WebhookService(get_db())


@webhooks_bp.route("/api/webhooks/paystack", methods=["POST"])
def paystack_webhook():
    # Signature is computed over the exact bytes Paystack sent
    raw_body = request.get_data(cache=False)
    signature = request.headers.get(Config.PAYSTACK_SIGNATURE_HEADER)
    return json_result(_get_webhook_service().handle(raw_body, signature))
