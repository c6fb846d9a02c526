from __future__ import annotations

import hmac
from functools import wraps
from typing import Any, Callable, Optional

from flask import jsonify, request, session

from bookmarket.config import Config
from bookmarket.services.results import OperationResult


def json_result(result: OperationResult):
    return jsonify(result.to_response()), result.status_code


def error_response(error: str, message: str, status_code: int):
    return jsonify({"success": False, "error": error, "message": message}), status_code


def current_user_id() -> Optional[str]:
    return session.get("user_id")


def require_login(view: Callable[..., Any]) -> Callable[..., Any]:
    @wraps(view)
    def wrapper(*args: Any, **kwargs: Any):
        if not current_user_id():
            return error_response("NOT_AUTHENTICATED", "Not authenticated", 401)
        return view(*args, **kwargs)

    return wrapper


def admin_token_valid() -> bool:
    supplied = request.headers.get(Config.ADMIN_TOKEN_HEADER, "")
    return bool(Config.ADMIN_API_TOKEN) and hmac.compare_digest(supplied, Config.ADMIN_API_TOKEN)


def require_admin(view: Callable[..., Any]) -> Callable[..., Any]:
    """Cron jobs send the admin token header; operators may use an admin session."""

    @wraps(view)
    def wrapper(*args: Any, **kwargs: Any):
        if not (admin_token_valid() or session.get("is_admin")):
            return error_response("FORBIDDEN", "Admin access required", 403)
        return view(*args, **kwargs)

    return wrapper


def json_body() -> Any:
    """Parsed JSON body, or None when the body is missing or malformed."""
    return request.get_json(silent=True)
