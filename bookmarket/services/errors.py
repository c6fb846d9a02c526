"""Exceptions raised by integration clients and optional features."""
from __future__ import annotations

from typing import Any, Dict, Optional


class IntegrationError(Exception):
    """Base class for failures talking to an external provider."""

    retryable = True

    def __init__(self, message: str, status_code: Optional[int] = None, payload: Optional[Dict[str, Any]] = None):
        super().__init__(message)
        self.status_code = status_code
        self.payload = payload or {}


class PaymentProviderError(IntegrationError):
    pass


class EmailDeliveryError(IntegrationError):
    pass


class CourierError(IntegrationError):
    pass


class BankingDecryptionError(Exception):
    pass


class FeatureUnavailableError(Exception):
    """Raised when a capability disabled at startup is invoked."""


class WebhookProcessingError(Exception):
    """A webhook could not be applied; the provider should redeliver it."""
