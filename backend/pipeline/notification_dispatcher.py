"""
Notification Dispatcher
=======================
Sends the customer receipt, operator alerts and SMS for a completed payment.

The caller must already hold the notification claim for the record; nothing
here locks or checks notifications_sent. Each step fails on its own: errors
are logged and never reach the webhook or poll response.
"""

import asyncio
import os
from typing import Callable, Optional, Protocol

import structlog

from schemas.payment_definitions import DispatchReport, PaymentRecord
from services.phone_numbers import normalize_phone
from services.receipt_pdf import ReceiptData, write_receipt_tempfile
from services.sms_service import admin_sms_text, customer_sms_text

logger = structlog.get_logger().bind(component="notification_dispatcher")


class EmailSender(Protocol):
    configured: bool

    async def send_customer_receipt(self, record: PaymentRecord, receipt_path: str) -> str: ...

    async def send_admin_notification(
        self, record: PaymentRecord, receipt_path: Optional[str] = None
    ) -> str: ...

    async def send_payment_failed(self, record: PaymentRecord) -> str: ...


class SmsSender(Protocol):
    configured: bool
    admin_number: Optional[str]

    async def send_sms(self, to: str, body: str) -> str: ...


class NotificationDispatcher:
    def __init__(
        self,
        email: EmailSender,
        sms: Optional[SmsSender] = None,
        receipt_writer: Callable[[ReceiptData], str] = write_receipt_tempfile,
        default_country_code: str = "+91",
    ):
        self.email = email
        self.sms = sms
        self.receipt_writer = receipt_writer
        self.default_country_code = default_country_code

    async def dispatch(self, record: PaymentRecord) -> DispatchReport:
        log = logger.bind(merchant_transaction_id=record.merchant_transaction_id)
        report = DispatchReport()

        receipt_path = None
        try:
            receipt_path = await self._write_receipt(record, log)
            if self.email.configured:
                report.customer_email_sent = await self._send_customer_email(record, receipt_path, log)
                report.admin_email_sent = await self._send_admin_email(record, receipt_path, log)
            else:
                log.warning("email_not_configured")
        finally:
            self._cleanup(receipt_path, log)

        if self.sms is not None and self.sms.configured:
            report.admin_sms_sent = await self._send_admin_sms(record, log)
            report.customer_sms_sent = await self._send_customer_sms(record, log)
        else:
            log.info("sms_not_configured")

        log.info("notifications_dispatched", **report.model_dump())
        return report

    async def dispatch_failure(self, record: PaymentRecord) -> bool:
        """Tell the customer their payment failed. False when nothing was sent."""
        log = logger.bind(merchant_transaction_id=record.merchant_transaction_id)
        if not self.email.configured or not record.customer.email:
            log.info("payment_failed_email_skipped",
                     email_configured=self.email.configured,
                     has_customer_email=bool(record.customer.email))
            return False
        try:
            await self.email.send_payment_failed(record)
        except Exception as e:
            log.error("payment_failed_email_error", error=str(e))
            return False
        log.info("payment_failed_email_sent")
        return True

    # =========================================================================
    # STEPS
    # =========================================================================

    async def _write_receipt(self, record: PaymentRecord, log) -> Optional[str]:
        # PDF rendering and the file write are blocking.
        try:
            return await asyncio.to_thread(self.receipt_writer, ReceiptData.from_record(record))
        except Exception as e:
            log.error("receipt_generation_failed", error=str(e))
            return None

    async def _send_customer_email(self, record: PaymentRecord, receipt_path: Optional[str], log) -> bool:
        if not record.customer.email:
            log.info("customer_email_skipped", reason="no_email")
            return False
        if not receipt_path:
            log.warning("customer_email_skipped", reason="no_receipt")
            return False
        try:
            await self.email.send_customer_receipt(record, receipt_path)
        except Exception as e:
            log.error("customer_email_failed", error=str(e))
            return False
        return True

    async def _send_admin_email(self, record: PaymentRecord, receipt_path: Optional[str], log) -> bool:
        try:
            await self.email.send_admin_notification(record, receipt_path)
        except Exception as e:
            log.error("admin_email_failed", error=str(e))
            return False
        return True

    def _cleanup(self, receipt_path: Optional[str], log):
        if not receipt_path:
            return
        try:
            os.remove(receipt_path)
        except OSError as e:
            log.debug("receipt_cleanup_failed", path=receipt_path, error=str(e))

    async def _send_admin_sms(self, record: PaymentRecord, log) -> bool:
        to = self.sms.admin_number
        if not to:
            log.info("admin_sms_skipped", reason="no_valid_admin_number")
            return False
        try:
            await self.sms.send_sms(to, admin_sms_text(record))
        except Exception as e:
            log.error("admin_sms_failed", error=str(e))
            return False
        return True

    async def _send_customer_sms(self, record: PaymentRecord, log) -> bool:
        to = normalize_phone(record.customer.phone, self.default_country_code)
        if not to:
            log.info("customer_sms_skipped",
                     reason="invalid_phone" if record.customer.phone else "no_phone")
            return False
        try:
            await self.sms.send_sms(to, customer_sms_text(record))
        except Exception as e:
            log.error("customer_sms_failed", error=str(e))
            return False
        return True
