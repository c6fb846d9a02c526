from __future__ import annotations

import logging
import time
from typing import Any, Dict, Optional

import bleach
import requests

from bookmarket.config import Config
from bookmarket.observability import increment_counter, observe_latency
from bookmarket.services.errors import EmailDeliveryError


def html_to_text(html: str) -> str:
    """Plain-text alternative body for providers that want one."""
    text = bleach.clean(html or "", tags=[], strip=True)
    return " ".join(text.split())


class EmailClient:
    """
    Thin transport for the transactional email provider.
    Raises EmailDeliveryError on any failure, including a missing provider
    configuration, so callers can queue the message instead of losing it.
    """

    def __init__(
        self,
        api_url: Optional[str] = None,
        api_key: Optional[str] = None,
        sender: Optional[str] = None,
        timeout: Optional[float] = None,
        http: Optional[requests.Session] = None,
    ) -> None:
        self.api_url = Config.EMAIL_API_URL if api_url is None else api_url
        self.api_key = Config.EMAIL_API_KEY if api_key is None else api_key
        self.sender = sender or Config.EMAIL_FROM
        self.timeout = timeout or Config.HTTP_TIMEOUT_SECONDS
        self.http = http or requests.Session()
        self.logger = logging.getLogger(__name__)

    @property
    def configured(self) -> bool:
        return bool(self.api_url)

    def send(self, to: str, subject: str, html: str, text: Optional[str] = None) -> Dict[str, Any]:
        if not to:
            raise EmailDeliveryError("Recipient address is required")
        if not self.configured:
            raise EmailDeliveryError("Email provider is not configured")

        payload = {
            "from": self.sender,
            "to": to,
            "subject": subject,
            "html": html,
            "text": text or html_to_text(html),
        }
        headers = {"Content-Type": "application/json"}
        if self.api_key:
            headers["Authorization"] = f"Bearer {self.api_key}"

        started = time.perf_counter()
        try:
            response = self.http.post(self.api_url, json=payload, headers=headers, timeout=self.timeout)
        except requests.Timeout as exc:
            increment_counter("emails_failed_total", labels={"reason": "timeout"})
            raise EmailDeliveryError(f"Email provider timed out sending to {to}") from exc
        except requests.RequestException as exc:
            increment_counter("emails_failed_total", labels={"reason": "transport"})
            raise EmailDeliveryError(f"Email provider request failed: {exc}") from exc
        finally:
            observe_latency("email_send_seconds", time.perf_counter() - started)

        if response.status_code >= 400:
            increment_counter("emails_failed_total", labels={"reason": f"http_{response.status_code}"})
            raise EmailDeliveryError(
                f"Email provider returned HTTP {response.status_code}",
                status_code=response.status_code,
            )

        increment_counter("emails_sent_total")
        try:
            return response.json()
        except ValueError:
            return {}
