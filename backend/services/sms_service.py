"""
Twilio SMS service integration for payment alerts.
"""

from typing import Optional

import httpx
import structlog

from config import SmsSettings
from pipeline.errors import NotificationError
from schemas.payment_definitions import PaymentRecord, format_amount
from services.phone_numbers import normalize_phone

logger = structlog.get_logger().bind(component="sms_service")

TWILIO_API_URL = "https://api.twilio.com/2010-04-01"


def admin_sms_text(record: PaymentRecord) -> str:
    contact = record.customer.email or record.customer.phone or "N/A"
    return (
        "New Payment Received!\n\n"
        f"Customer: {record.customer.name or 'N/A'}\n"
        f"Service: {record.service_name or 'N/A'}\n"
        f"Amount: Rs. {format_amount(record.amount_minor_units)}\n"
        f"Transaction ID: {record.provider_transaction_id or record.merchant_transaction_id}\n\n"
        f"Contact: {contact}"
    )


def customer_sms_text(record: PaymentRecord) -> str:
    return (
        "Payment Successful!\n\n"
        f"Dear {record.customer.name or 'Customer'},\n\n"
        f"Your payment of Rs. {format_amount(record.amount_minor_units)} "
        f"for {record.service_name or 'your service'} has been received.\n\n"
        f"Transaction ID: {record.provider_transaction_id or record.merchant_transaction_id}\n\n"
        "Thank you for your payment!"
    )


class SmsService:
    """Service for the Twilio Messages API"""

    def __init__(self, settings: SmsSettings, client: Optional[httpx.AsyncClient] = None):
        self.settings = settings
        self._client = client or httpx.AsyncClient(
            base_url=TWILIO_API_URL, timeout=settings.timeout_seconds
        )

    @property
    def configured(self) -> bool:
        return self.settings.configured

    @property
    def from_number(self) -> Optional[str]:
        return normalize_phone(self.settings.from_number, self.settings.default_country_code)

    @property
    def admin_number(self) -> Optional[str]:
        return normalize_phone(self.settings.admin_number, self.settings.default_country_code)

    async def close(self):
        await self._client.aclose()

    async def send_sms(self, to: str, body: str) -> str:
        """Send one message to an E.164 number. Returns the message SID."""
        if not self.configured:
            raise NotificationError("SMS is not configured")
        sender = self.from_number
        if not sender:
            raise NotificationError("TWILIO_PHONE_NUMBER is not a valid E.164 number")

        try:
            response = await self._client.post(
                f"/Accounts/{self.settings.account_sid}/Messages.json",
                data={"To": to, "From": sender, "Body": body},
                auth=(self.settings.account_sid, self.settings.auth_token),
            )
        except httpx.RequestError as e:
            logger.error("sms_request_error", error=str(e))
            raise NotificationError(f"Twilio request failed: {e}") from e

        if response.status_code >= 400:
            try:
                detail = response.json().get("message", response.text)
            except ValueError:
                detail = response.text
            logger.error("sms_rejected", status=response.status_code, detail=detail)
            raise NotificationError(f"Twilio rejected message: {detail}")

        sid = response.json().get("sid", "")
        logger.info("sms_sent", sid=sid)
        return sid
