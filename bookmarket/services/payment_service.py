from __future__ import annotations

import hashlib
import hmac
import logging
import secrets
import time
from typing import Any, Dict, Optional, Tuple

import requests

from bookmarket.config import Config
from bookmarket.models import Order
from bookmarket.observability import increment_counter, observe_latency
from bookmarket.services.errors import PaymentProviderError
from bookmarket.tactics import get_circuit_breaker


class PaymentService:
    """
    Wrapper around outbound Paystack operations (verification, refunds,
    transfer recipients). Calls go through the shared ``paystack`` circuit
    breaker. Without a secret key the service runs in development mode and
    issues mock references instead of calling the provider.
    """

    def __init__(
        self,
        secret_key: Optional[str] = None,
        base_url: Optional[str] = None,
        timeout: Optional[float] = None,
        http: Optional[requests.Session] = None,
        circuit_breaker_config: Optional[Dict[str, Any]] = None,
    ) -> None:
        self.secret_key = Config.PAYSTACK_SECRET_KEY if secret_key is None else secret_key
        self.base_url = (base_url or Config.PAYSTACK_BASE_URL).rstrip("/")
        self.timeout = timeout or Config.HTTP_TIMEOUT_SECONDS
        self.http = http or requests.Session()
        self.logger = logging.getLogger(__name__)
        self.circuit_breaker = get_circuit_breaker("paystack", circuit_breaker_config)

    @property
    def development_mode(self) -> bool:
        return not self.secret_key

    def verify_signature(self, raw_body: bytes, signature: Optional[str]) -> bool:
        """HMAC-SHA512 hex digest of the raw body, compared in constant time."""
        if not self.secret_key or not signature:
            return False
        expected = hmac.new(self.secret_key.encode("utf-8"), raw_body, hashlib.sha512).hexdigest()
        return hmac.compare_digest(expected, signature.strip().lower())

    def verify_transaction(self, reference: str) -> Dict[str, Any]:
        """Return the provider's transaction record; raises PaymentProviderError."""
        if self.development_mode:
            raise PaymentProviderError("Paystack secret key not configured")
        data = self._request("GET", f"/transaction/verify/{reference}")
        return data or {}

    def refund(self, order: Order, amount: Optional[int] = None, reason: str = "") -> Tuple[bool, str, Optional[str]]:
        """
        Refund an order's payment. ``amount`` is in minor units and defaults
        to the full order amount.
        Returns (success flag, message, provider refund reference or None).
        """
        if order is None:
            return False, "Order is required for refunds", None
        amount = order.amount if amount is None else amount
        if amount is None or amount <= 0:
            return False, "Refund amount must be positive", None
        if amount > order.amount:
            return False, "Refund amount exceeds original payment", None

        if self.development_mode:
            reference = f"RF_DEV_{int(time.time())}_{secrets.token_hex(4)}"
            self.logger.info(
                "Development mode refund issued",
                extra={"order_id": order.id, "amount": amount, "reference": reference},
            )
            return True, "Refund processed (development mode)", reference

        def _perform_refund() -> str:
            data = self._request(
                "POST",
                "/refund",
                {
                    "transaction": order.payment_reference,
                    "amount": amount,
                    "currency": Config.PAYSTACK_CURRENCY,
                    "customer_note": reason or "Order refund",
                    "merchant_note": f"Refund processed for transaction {order.payment_reference}",
                },
            )
            return str((data or {}).get("id") or (data or {}).get("reference") or "")

        success, result = self.circuit_breaker.execute(_perform_refund)
        if success:
            increment_counter("paystack_refunds_total", labels={"outcome": "success"})
            self.logger.info(
                "Refund processed",
                extra={"order_id": order.id, "amount": amount, "reference": result},
            )
            return True, "Refund processed successfully", result

        increment_counter("paystack_refunds_total", labels={"outcome": "failed"})
        self.logger.warning(
            "Refund attempt failed via circuit breaker",
            extra={"order_id": order.id, "reason": result},
        )
        return False, result, None

    def create_transfer_recipient(self, name: str, account_number: str, bank_code: str) -> Dict[str, Any]:
        """Create a NUBAN transfer recipient; raises PaymentProviderError."""
        payload = {
            "type": "nuban",
            "name": name,
            "account_number": account_number,
            "bank_code": bank_code,
            "currency": Config.PAYSTACK_CURRENCY,
        }
        if not self.circuit_breaker.allow_request():
            raise PaymentProviderError("Paystack temporarily unavailable (circuit open)")
        try:
            result = self._request("POST", "/transferrecipient", payload)
        except PaymentProviderError:
            # Propagates with the provider's HTTP status
            self.circuit_breaker.record_failure()
            raise
        self.circuit_breaker.record_success()
        if not result or not result.get("recipient_code"):
            raise PaymentProviderError("Paystack response missing recipient_code", payload=result or {})
        return result

    def _request(self, method: str, path: str, payload: Optional[Dict[str, Any]] = None) -> Dict[str, Any]:
        started = time.perf_counter()
        try:
            response = self.http.request(
                method,
                f"{self.base_url}{path}",
                json=payload,
                headers={
                    "Authorization": f"Bearer {self.secret_key}",
                    "Content-Type": "application/json",
                },
                timeout=self.timeout,
            )
        except requests.Timeout as exc:
            raise PaymentProviderError(f"Paystack timeout on {path}") from exc
        except requests.RequestException as exc:
            raise PaymentProviderError(f"Paystack request failed: {exc}") from exc
        finally:
            observe_latency("paystack_request_seconds", time.perf_counter() - started, labels={"path": path.split("/")[1]})

        try:
            body = response.json()
        except ValueError:
            body = {}
        if response.status_code >= 400 or not body.get("status"):
            raise PaymentProviderError(
                body.get("message") or f"Paystack returned HTTP {response.status_code}",
                status_code=response.status_code,
                payload=body,
            )
        return body.get("data") or {}
