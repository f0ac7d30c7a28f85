"""
Razorpay Orders API client (httpx, basic auth).
"""

from typing import Any, Dict, Optional

import httpx
import structlog

from config import RazorpaySettings
from pipeline.errors import ProviderAuthError, ProviderError

logger = structlog.get_logger().bind(component="razorpay_client")

RAZORPAY_API_URL = "https://api.razorpay.com/v1"


class RazorpayClient:
    def __init__(self, settings: RazorpaySettings, client: Optional[httpx.AsyncClient] = None):
        self.settings = settings
        self._client = client or httpx.AsyncClient(
            base_url=RAZORPAY_API_URL, timeout=settings.timeout_seconds
        )

    async def close(self):
        await self._client.aclose()

    async def create_order(
        self,
        amount_minor_units: int,
        currency: str,
        receipt: str,
        notes: Optional[Dict[str, str]] = None,
    ) -> Dict[str, Any]:
        payload: Dict[str, Any] = {
            "amount": amount_minor_units,
            "currency": currency,
            "receipt": receipt,
        }
        if notes:
            payload["notes"] = notes

        order = await self._request("POST", "/orders", "Razorpay order creation failed", json=payload)
        logger.info("razorpay_order_created", order_id=order.get("id"), amount=amount_minor_units)
        return order

    async def fetch_order(self, order_id: str) -> Dict[str, Any]:
        """Order as Razorpay holds it: amount, currency, status and notes."""
        order = await self._request("GET", f"/orders/{order_id}", "Razorpay order lookup failed")
        logger.info("razorpay_order_fetched", order_id=order_id, status=order.get("status"))
        return order

    async def _request(self, method: str, path: str, failure_message: str, **kwargs) -> Dict[str, Any]:
        try:
            response = await self._client.request(
                method,
                path,
                auth=(self.settings.key_id, self.settings.key_secret),
                **kwargs,
            )
        except httpx.RequestError as e:
            logger.error("razorpay_request_error", path=path, error=str(e))
            raise ProviderError(f"Razorpay request failed: {e}") from e

        if response.status_code in (401, 403):
            raise ProviderAuthError("Razorpay rejected the API key", provider_status=response.status_code)
        if response.status_code >= 400:
            try:
                error = response.json().get("error", {})
            except ValueError:
                error = {}
            logger.error("razorpay_request_failed", path=path, status=response.status_code, error=error)
            raise ProviderError(
                error.get("description") or failure_message,
                provider_status=response.status_code,
                status_code=400 if response.status_code == 400 else 502,
            )
        return response.json()
