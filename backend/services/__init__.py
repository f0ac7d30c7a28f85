# services/__init__.py
# ============================================================================
# PORTFOLIO PAYMENTS — SERVICES MODULE
# ============================================================================
# Provider clients, notification channels and receipt rendering
# ============================================================================

from services.email_service import EmailService
from services.phone_numbers import is_valid_e164, normalize_phone
from services.phonepe_client import PhonePeClient
from services.razorpay_client import RazorpayClient
from services.receipt_pdf import ReceiptData, generate_receipt_pdf, write_receipt_tempfile
from services.sms_service import SmsService

__all__ = [
    # Providers
    "PhonePeClient",
    "RazorpayClient",
    # Notifications
    "EmailService",
    "SmsService",
    "normalize_phone",
    "is_valid_e164",
    # Receipts
    "ReceiptData",
    "generate_receipt_pdf",
    "write_receipt_tempfile",
]
