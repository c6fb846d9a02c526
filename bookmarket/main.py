# bookmarket/main.py
import logging
import time

from flask import Flask, g, jsonify, request

from bookmarket.blueprints.admin import admin_bp
from bookmarket.blueprints.commitments import commitments_bp
from bookmarket.blueprints.common import require_admin
from bookmarket.blueprints.notifications import notifications_bp
from bookmarket.blueprints.orders import orders_bp
from bookmarket.blueprints.payouts import payouts_bp
from bookmarket.blueprints.purchases import purchases_bp
from bookmarket.blueprints.webhooks import webhooks_bp
from bookmarket.config import Config
from bookmarket.database import Base, close_db, engine
from bookmarket.observability import (
    check_database_health,
    configure_logging,
    ensure_request_id,
    get_metrics_snapshot,
    increment_counter,
    observe_latency,
)
from bookmarket.services.commitment_service import sale_commitments_available

app = Flask(__name__)
Config.configure_app(app)
configure_logging(app)

for blueprint in (purchases_bp, webhooks_bp, orders_bp, payouts_bp, notifications_bp, commitments_bp, admin_bp):
    app.register_blueprint(blueprint)

logger = logging.getLogger(__name__)


def init_database():
    """Initialize database tables"""
    try:
        Base.metadata.create_all(bind=engine)
        logger.info("Database tables initialized successfully")
    except Exception as e:
        logger.exception("Error initializing database: %s", e)


def check_capabilities():
    """Optional features are switched on or off once, at startup."""
    available = sale_commitments_available()
    app.config["SALE_COMMITMENTS_AVAILABLE"] = available
    logger.info("Sale commitments %s", "enabled" if available else "disabled")


init_database()
check_capabilities()


@app.before_request
def before_request_logging():
    g.request_started_at = time.perf_counter()
    g.request_id = ensure_request_id()
    increment_counter(
        "http_requests_total",
        labels={
            "method": request.method,
            "endpoint": request.endpoint or request.path,
        },
    )


@app.after_request
def after_request_logging(response):
    started = getattr(g, "request_started_at", None)
    if started is not None:
        duration_ms = (time.perf_counter() - started) * 1000
        observe_latency(
            "http_request_latency_ms",
            duration_ms,
            labels={
                "method": request.method,
                "endpoint": request.endpoint or request.path,
                "status": str(response.status_code),
            },
        )
    response.headers[Config.REQUEST_ID_HEADER] = g.get("request_id", "")
    if response.status_code >= 500:
        increment_counter(
            "http_errors_total",
            labels={
                "method": request.method,
                "endpoint": request.endpoint or request.path,
                "status": str(response.status_code),
            },
        )
        logger.error("Request finished with error status %s", response.status_code)
    else:
        logger.info("Request finished", extra={"status_code": response.status_code})
    return response


@app.teardown_appcontext
def teardown_db(exception):
    close_db(exception)


@app.route("/health", methods=["GET"])
def health():
    db_status = check_database_health()
    overall = "UP" if db_status.get("status") == "UP" else "DEGRADED"
    status_code = 200 if overall == "UP" else 503
    return jsonify({
        "status": overall,
        "components": {
            "database": db_status,
            "sale_commitments": "enabled" if app.config.get("SALE_COMMITMENTS_AVAILABLE") else "disabled",
        }
    }), status_code


@app.route("/admin/metrics", methods=["GET"])
@require_admin
def admin_metrics():
    return jsonify(get_metrics_snapshot())
