# services/email_service.py
# ============================================================================
# PORTFOLIO PAYMENTS — EMAIL SERVICE
# ============================================================================
# SMTP delivery of receipts, operator alerts and payment-failed notices.
# smtplib is blocking, so each send runs in a worker thread. Bodies are
# rendered from Jinja2 templates next to this module.
# ============================================================================

import asyncio
import os
import smtplib
import ssl
from email.message import EmailMessage
from email.utils import formataddr, formatdate, make_msgid
from typing import Dict, List, Optional, Sequence, Tuple

import certifi
import structlog
from jinja2 import Environment, FileSystemLoader, select_autoescape

from config import EmailSettings
from pipeline.errors import NotificationError
from schemas.payment_definitions import ContactRequest, PaymentRecord, format_amount
from services.receipt_pdf import format_payment_date

logger = structlog.get_logger().bind(component="email_service")

TEMPLATE_DIR = os.path.join(os.path.dirname(__file__), "templates")

Attachment = Tuple[str, bytes]

CUSTOMER_RECEIPT_SUBJECT = "Payment Successful - Pre-Registration Confirmed"
PAYMENT_FAILED_SUBJECT = "Payment Failed - Pre-Registration"
CONTACT_SUBJECT_PREFIX = "New Contact Form Submission"


def _template_context(record: PaymentRecord) -> Dict[str, str]:
    return {
        "customer_name": record.customer.name or "Customer",
        "customer_email": record.customer.email or "N/A",
        "customer_phone": record.customer.phone or "N/A",
        "message": record.customer.message or "",
        "service_name": record.service_name or "N/A",
        "transaction_id": record.provider_transaction_id or record.merchant_transaction_id,
        "merchant_transaction_id": record.merchant_transaction_id,
        "amount": format_amount(record.amount_minor_units),
        "payment_mode": record.payment_mode or "N/A",
        "payment_date": format_payment_date(record.updated_at),
        "environment": record.environment.value,
        "provider": record.provider.value,
    }


class EmailService:
    """SMTP sender with templated bodies"""

    def __init__(self, settings: EmailSettings):
        self.settings = settings
        self.jinja_env = Environment(
            loader=FileSystemLoader(TEMPLATE_DIR),
            autoescape=select_autoescape(enabled_extensions=("html",), default=False),
        )

    @property
    def configured(self) -> bool:
        return self.settings.configured

    def render(self, template_name: str, **context) -> Tuple[str, str]:
        """Render the (html, text) pair for a template stem."""
        html_body = self.jinja_env.get_template(f"{template_name}.html").render(**context)
        text_body = self.jinja_env.get_template(f"{template_name}.txt").render(**context)
        return html_body, text_body

    def build_message(
        self,
        to: Sequence[str],
        subject: str,
        html_body: str,
        text_body: str,
        attachments: Optional[List[Attachment]] = None,
    ) -> EmailMessage:
        msg = EmailMessage()
        msg["From"] = formataddr((self.settings.from_name, self.settings.user))
        msg["To"] = ", ".join(to)
        msg["Subject"] = subject
        msg["Date"] = formatdate(localtime=True)
        domain = self.settings.user.split("@")[-1] if "@" in self.settings.user else "localhost"
        msg["Message-ID"] = make_msgid(domain=domain)

        msg.set_content(text_body)
        msg.add_alternative(html_body, subtype="html")
        for filename, content in attachments or []:
            msg.add_attachment(
                content, maintype="application", subtype="pdf", filename=filename
            )
        return msg

    def _send_sync(self, msg: EmailMessage) -> str:
        context = ssl.create_default_context(cafile=certifi.where())
        timeout = self.settings.timeout_seconds
        if self.settings.use_ssl:
            with smtplib.SMTP_SSL(
                self.settings.host, self.settings.port, context=context, timeout=timeout
            ) as server:
                server.login(self.settings.user, self.settings.password)
                server.send_message(msg)
        else:
            with smtplib.SMTP(self.settings.host, self.settings.port, timeout=timeout) as server:
                server.starttls(context=context)
                server.login(self.settings.user, self.settings.password)
                server.send_message(msg)
        return msg["Message-ID"]

    async def send(
        self,
        to: Sequence[str],
        subject: str,
        html_body: str,
        text_body: str,
        attachments: Optional[List[Attachment]] = None,
    ) -> str:
        """Send one message. Raises NotificationError on any delivery failure."""
        if not self.configured:
            raise NotificationError("Email is not configured (EMAIL_USER / EMAIL_PASS)")
        recipients = [address for address in to if address]
        if not recipients:
            raise NotificationError("No email recipients")

        msg = self.build_message(recipients, subject, html_body, text_body, attachments)
        try:
            message_id = await asyncio.to_thread(self._send_sync, msg)
        except (smtplib.SMTPException, OSError) as e:
            logger.error("email_send_failed", subject=subject, error=str(e))
            raise NotificationError(f"SMTP delivery failed: {e}") from e

        logger.info("email_sent", subject=subject, recipients=len(recipients), message_id=message_id)
        return message_id

    # =========================================================================
    # PAYMENT EMAILS
    # =========================================================================

    async def send_customer_receipt(self, record: PaymentRecord, receipt_path: str) -> str:
        if not record.customer.email:
            raise NotificationError("Customer email missing")
        with open(receipt_path, "rb") as handle:
            pdf_bytes = handle.read()
        html_body, text_body = self.render("receipt_customer", **_template_context(record))
        return await self.send(
            [record.customer.email],
            CUSTOMER_RECEIPT_SUBJECT,
            html_body,
            text_body,
            attachments=[(f"Payment_Receipt_{record.merchant_transaction_id}.pdf", pdf_bytes)],
        )

    async def send_admin_notification(
        self,
        record: PaymentRecord,
        receipt_path: Optional[str] = None,
    ) -> str:
        context = _template_context(record)
        attachments = None
        if receipt_path and self.settings.attach_receipt_for_admin:
            with open(receipt_path, "rb") as handle:
                attachments = [(f"Payment_Receipt_{record.merchant_transaction_id}.pdf", handle.read())]
        html_body, text_body = self.render("admin_payment", **context)
        return await self.send(
            self.settings.operator_addresses,
            f"New Pre-Registration Payment Received - Rs. {context['amount']}",
            html_body,
            text_body,
            attachments=attachments,
        )

    async def send_payment_failed(self, record: PaymentRecord) -> str:
        if not record.customer.email:
            raise NotificationError("Customer email missing")
        context = _template_context(record)
        context["reason"] = record.failure_reason or record.error_code or ""
        html_body, text_body = self.render("payment_failed", **context)
        return await self.send(
            [record.customer.email], PAYMENT_FAILED_SUBJECT, html_body, text_body
        )

    # =========================================================================
    # CONTACT FORM
    # =========================================================================

    async def send_contact_message(self, request: ContactRequest) -> str:
        """Forward a contact form submission to the mailbox owner."""
        context = {
            "name": request.name or "",
            "email": request.email or "",
            "subject": request.subject or "",
            "message": request.message or "",
        }
        html_body, text_body = self.render("contact_message", **context)
        return await self.send(
            [self.settings.user],
            f"{CONTACT_SUBJECT_PREFIX}: {context['subject']}",
            html_body,
            text_body,
        )
