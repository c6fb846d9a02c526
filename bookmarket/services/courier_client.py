from __future__ import annotations

import logging
import secrets
import time
from typing import Any, Dict, List, Optional

import requests

from bookmarket.config import Config
from bookmarket.models import Order, Profile
from bookmarket.observability import increment_counter
from bookmarket.services.errors import CourierError


def _normalise_address(address: Dict[str, Any]) -> Dict[str, str]:
    return {
        "streetAddress": address.get("streetAddress") or address.get("street_address") or "",
        "suburb": address.get("local_area") or address.get("suburb") or address.get("city") or "",
        "city": address.get("city") or address.get("local_area") or address.get("suburb") or "",
        "province": address.get("province") or address.get("zone") or "",
        "postalCode": address.get("postalCode") or address.get("postal_code") or address.get("code") or "",
    }


class CourierClient:
    """Courier aggregator shipment API. Issues mock shipments when no API URL is configured."""

    def __init__(
        self,
        api_url: Optional[str] = None,
        api_key: Optional[str] = None,
        timeout: Optional[float] = None,
        http: Optional[requests.Session] = None,
    ) -> None:
        self.api_url = Config.COURIER_API_URL if api_url is None else api_url
        self.api_key = Config.COURIER_API_KEY if api_key is None else api_key
        self.timeout = timeout or Config.HTTP_TIMEOUT_SECONDS
        self.http = http or requests.Session()
        self.logger = logging.getLogger(__name__)

    def build_shipment_request(self, order: Order, seller: Profile, buyer: Profile) -> Dict[str, Any]:
        if not seller.pickup_address:
            raise CourierError("Seller pickup address not found")
        if not order.shipping_address:
            raise CourierError("Buyer shipping address not found")

        parcels: List[Dict[str, Any]] = [
            {
                "description": item.get("title") or "Book",
                "weight": 1,
                "length": 25,
                "width": 20,
                "height": 3,
                "value": float(item.get("price") or 100),
            }
            for item in (order.items or [])
        ]
        delivery_data = order.delivery_data or {}
        return {
            "order_id": order.id,
            "provider_slug": delivery_data.get("provider_slug"),
            "service_level_code": delivery_data.get("service_level_code"),
            "pickup_address": {
                **_normalise_address(seller.pickup_address),
                "contact_name": seller.display_name,
                "contact_phone": seller.phone_number or "",
                "contact_email": seller.email,
            },
            "delivery_address": {
                **_normalise_address(order.shipping_address),
                "contact_name": buyer.display_name,
                "contact_phone": buyer.phone_number or "",
                "contact_email": order.buyer_email or buyer.email,
            },
            "parcels": parcels,
            "reference": f"ORDER-{order.id}",
        }

    def create_shipment(self, shipment_request: Dict[str, Any]) -> Dict[str, Any]:
        """Returns {shipment_id, tracking_number, waybill_url}; raises CourierError."""
        if not self.api_url:
            tracking = f"MOCK-{int(time.time())}-{secrets.token_hex(3).upper()}"
            self.logger.info(
                "Courier API not configured; issuing mock shipment",
                extra={"order_id": shipment_request.get("order_id"), "tracking_number": tracking},
            )
            return {"shipment_id": tracking, "tracking_number": tracking, "waybill_url": None, "mock": True}

        headers = {"Content-Type": "application/json"}
        if self.api_key:
            headers["Authorization"] = f"Bearer {self.api_key}"
        try:
            response = self.http.post(
                f"{self.api_url.rstrip('/')}/shipments",
                json=shipment_request,
                headers=headers,
                timeout=self.timeout,
            )
        except requests.RequestException as exc:
            increment_counter("courier_shipments_failed_total")
            raise CourierError(f"Courier request failed: {exc}") from exc

        if response.status_code >= 400:
            increment_counter("courier_shipments_failed_total")
            raise CourierError(f"Courier returned HTTP {response.status_code}", status_code=response.status_code)

        try:
            data = response.json()
        except ValueError as exc:
            raise CourierError("Courier returned a non-JSON response") from exc
        increment_counter("courier_shipments_created_total")
        return {
            "shipment_id": data.get("shipment_id") or data.get("id"),
            "tracking_number": data.get("tracking_number"),
            "waybill_url": data.get("waybill_url"),
        }

    def cancel_shipment(self, shipment_id: str, reason: str = "") -> Dict[str, Any]:
        """Cancel a booked shipment before collection; raises CourierError."""
        if not self.api_url:
            self.logger.info("Courier API not configured; mock shipment %s cancelled", shipment_id)
            return {"shipment_id": shipment_id, "cancelled": True, "mock": True}

        headers = {"Content-Type": "application/json"}
        if self.api_key:
            headers["Authorization"] = f"Bearer {self.api_key}"
        try:
            response = self.http.post(
                f"{self.api_url.rstrip('/')}/shipments/{shipment_id}/cancel",
                json={"reason": reason or "Order cancelled"},
                headers=headers,
                timeout=self.timeout,
            )
        except requests.RequestException as exc:
            raise CourierError(f"Courier cancel request failed: {exc}") from exc
        if response.status_code >= 400:
            raise CourierError(f"Courier returned HTTP {response.status_code}", status_code=response.status_code)
        increment_counter("courier_shipments_cancelled_total")
        return {"shipment_id": shipment_id, "cancelled": True}
