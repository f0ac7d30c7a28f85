# services/phonepe_client.py
# ============================================================================
# PORTFOLIO PAYMENTS — PHONEPE CLIENT
# ============================================================================
# Standard Checkout v2 over httpx:
# - OAuth client-credentials token, cached until shortly before expiry
# - POST /checkout/v2/pay to create an order
# - GET  /checkout/v2/order/{merchantOrderId}/status to read it back
#
# FAILURE MAPPING:
# - 404 / *_NOT_FOUND  -> ProviderTransientError (retried by the poller)
# - 401 / 403          -> ProviderAuthError (token dropped, never retried)
# - anything else      -> ProviderError
# ============================================================================

import asyncio
import time
from typing import Any, Dict, Optional

import httpx
import structlog

from config import PhonePeSettings, mask_secret
from pipeline.errors import ProviderAuthError, ProviderError, ProviderTransientError
from schemas.payment_definitions import ProviderStatus

logger = structlog.get_logger().bind(component="phonepe_client")


# ============================================================================
# SECTION 1: ENDPOINTS
# ============================================================================

SANDBOX_PG_URL = "https://api-preprod.phonepe.com/apis/pg-sandbox"
SANDBOX_OAUTH_URL = "https://api-preprod.phonepe.com/apis/pg-sandbox/v1/oauth/token"
PRODUCTION_PG_URL = "https://api.phonepe.com/apis/pg"
PRODUCTION_OAUTH_URL = "https://api.phonepe.com/apis/identity-manager/v1/oauth/token"

TOKEN_REFRESH_MARGIN_SECONDS = 60


# ============================================================================
# SECTION 2: CLIENT
# ============================================================================

class PhonePeClient:
    """Thin async client for PhonePe Standard Checkout v2."""

    def __init__(self, settings: PhonePeSettings, client: Optional[httpx.AsyncClient] = None):
        self.settings = settings
        self._client = client or httpx.AsyncClient(timeout=settings.timeout_seconds)
        self._token: Optional[str] = None
        self._token_expires_at: float = 0.0
        self._token_lock = asyncio.Lock()

    @property
    def pg_url(self) -> str:
        return PRODUCTION_PG_URL if self.settings.is_production else SANDBOX_PG_URL

    @property
    def oauth_url(self) -> str:
        return PRODUCTION_OAUTH_URL if self.settings.is_production else SANDBOX_OAUTH_URL

    async def close(self):
        await self._client.aclose()

    # ------------------------------------------------------------------ auth

    async def get_access_token(self) -> str:
        async with self._token_lock:
            if self._token and time.time() < self._token_expires_at - TOKEN_REFRESH_MARGIN_SECONDS:
                return self._token

            logger.info("phonepe_token_requested",
                        environment=self.settings.environment_label,
                        client_id=mask_secret(self.settings.client_id))
            response = await self._request(
                "POST",
                self.oauth_url,
                data={
                    "client_id": self.settings.client_id,
                    "client_version": self.settings.client_version,
                    "client_secret": self.settings.client_secret,
                    "grant_type": "client_credentials",
                },
                headers={"Content-Type": "application/x-www-form-urlencoded"},
                authenticated=False,
            )
            body = response.json()
            token = body.get("access_token")
            if not token:
                raise ProviderAuthError("PhonePe token response carried no access_token")

            self._token = token
            self._token_expires_at = float(body.get("expires_at") or time.time() + 3600)
            return token

    def _drop_token(self):
        self._token = None
        self._token_expires_at = 0.0

    # ------------------------------------------------------------- transport

    async def _request(
        self,
        method: str,
        url: str,
        *,
        authenticated: bool = True,
        headers: Optional[Dict[str, str]] = None,
        **kwargs: Any,
    ) -> httpx.Response:
        request_headers = dict(headers or {})
        if authenticated:
            token = await self.get_access_token()
            request_headers["Authorization"] = f"O-Bearer {token}"

        try:
            response = await self._client.request(method, url, headers=request_headers, **kwargs)
        except httpx.TimeoutException as e:
            logger.error("phonepe_timeout", url=url)
            raise ProviderError("PhonePe request timed out", status_code=504) from e
        except httpx.RequestError as e:
            logger.error("phonepe_request_error", url=url, error=str(e))
            raise ProviderError(f"PhonePe request failed: {e}") from e

        if response.status_code < 400:
            return response

        detail = self._error_detail(response)
        code = str(detail.get("code") or detail.get("errorCode") or "")
        message = detail.get("message") or response.text or "PhonePe request failed"
        logger.warning("phonepe_error_response",
                       url=url,
                       status=response.status_code,
                       code=code)

        if response.status_code == 404 or code.endswith("NOT_FOUND"):
            raise ProviderTransientError(message, provider_status=response.status_code, details=detail)
        if response.status_code in (401, 403):
            self._drop_token()
            raise ProviderAuthError(
                "PhonePe authentication failed. Check PHONEPE_CLIENT_ID, "
                "PHONEPE_CLIENT_SECRET and PHONEPE_ENVIRONMENT.",
                provider_status=response.status_code,
                details=detail,
            )
        raise ProviderError(
            message,
            provider_status=response.status_code,
            status_code=response.status_code if response.status_code < 500 else 502,
            details=detail,
        )

    @staticmethod
    def _error_detail(response: httpx.Response) -> Dict[str, Any]:
        try:
            body = response.json()
        except ValueError:
            return {}
        return body if isinstance(body, dict) else {}

    # ------------------------------------------------------------ operations

    async def create_payment(
        self,
        merchant_order_id: str,
        amount_minor_units: int,
        redirect_url: str,
        meta_info: Optional[Dict[str, str]] = None,
        message: Optional[str] = None,
    ) -> Dict[str, Any]:
        payload: Dict[str, Any] = {
            "merchantOrderId": merchant_order_id,
            "amount": amount_minor_units,
            "paymentFlow": {
                "type": "PG_CHECKOUT",
                "message": message or "Payment",
                "merchantUrls": {"redirectUrl": redirect_url},
            },
        }
        if meta_info:
            payload["metaInfo"] = meta_info

        response = await self._request("POST", f"{self.pg_url}/checkout/v2/pay", json=payload)
        body = response.json()
        logger.info("phonepe_order_created",
                    merchant_order_id=merchant_order_id,
                    order_id=body.get("orderId"),
                    state=body.get("state"))
        return body

    async def get_order_status(self, merchant_transaction_id: str) -> ProviderStatus:
        response = await self._request(
            "GET",
            f"{self.pg_url}/checkout/v2/order/{merchant_transaction_id}/status",
            params={"details": "false"},
        )
        return ProviderStatus.model_validate(response.json())
