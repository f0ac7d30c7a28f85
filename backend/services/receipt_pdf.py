"""
Receipt PDF
===========
Payment receipts rendered with ReportLab on A4. The free-text project message
is wrapped to the printable width and may run onto further pages.
"""

import os
import tempfile
from dataclasses import dataclass
from datetime import datetime, timezone
from io import BytesIO
from typing import List, Optional
from zoneinfo import ZoneInfo

import structlog
from reportlab.lib.pagesizes import A4
from reportlab.pdfbase import pdfmetrics
from reportlab.pdfgen import canvas

from schemas.payment_definitions import PaymentRecord, format_amount

logger = structlog.get_logger().bind(component="receipt_pdf")

DISPLAY_TZ = ZoneInfo("Asia/Kolkata")
MARGIN = 50
FONT = "Helvetica"
FONT_BOLD = "Helvetica-Bold"


@dataclass
class ReceiptData:
    transaction_id: str
    merchant_transaction_id: str
    amount_minor_units: int = 0
    customer_name: str = "N/A"
    service_name: str = "N/A"
    payment_date: str = ""
    message: str = ""
    status: str = "COMPLETED"

    @classmethod
    def from_record(cls, record: PaymentRecord) -> "ReceiptData":
        return cls(
            transaction_id=record.provider_transaction_id or record.merchant_transaction_id,
            merchant_transaction_id=record.merchant_transaction_id,
            amount_minor_units=record.amount_minor_units,
            customer_name=record.customer.name or "N/A",
            service_name=record.service_name or "N/A",
            payment_date=format_payment_date(record.updated_at),
            message=record.customer.message or "",
            status=record.status.value.upper(),
        )


def format_payment_date(moment: Optional[datetime] = None) -> str:
    """Long date and short time in India Standard Time, e.g. '5 March 2025, 02:30 PM'."""
    moment = moment or datetime.now(timezone.utc)
    if moment.tzinfo is None:
        moment = moment.replace(tzinfo=timezone.utc)
    local = moment.astimezone(DISPLAY_TZ)
    return f"{local.day} {local.strftime('%B %Y, %I:%M %p')}"


def wrap_text(text: str, font_name: str, font_size: float, max_width: float) -> List[str]:
    """Greedy word wrap by rendered width. Words wider than a line are split."""
    lines: List[str] = []
    for paragraph in text.splitlines() or [""]:
        current = ""
        for word in paragraph.split():
            while pdfmetrics.stringWidth(word, font_name, font_size) > max_width:
                cut = len(word)
                while cut > 1 and pdfmetrics.stringWidth(word[:cut], font_name, font_size) > max_width:
                    cut -= 1
                if current:
                    lines.append(current)
                    current = ""
                lines.append(word[:cut])
                word = word[cut:]
            candidate = f"{current} {word}" if current else word
            if pdfmetrics.stringWidth(candidate, font_name, font_size) <= max_width:
                current = candidate
            else:
                lines.append(current)
                current = word
        lines.append(current)
    return lines


def generate_receipt_pdf(data: ReceiptData) -> bytes:
    buffer = BytesIO()
    c = canvas.Canvas(buffer, pagesize=A4)
    width, height = A4
    text_width = width - 2 * MARGIN
    y = height - MARGIN

    def ensure_space(needed: float):
        nonlocal y
        if y - needed < MARGIN:
            c.showPage()
            y = height - MARGIN

    def draw_row(label: str, value: str):
        nonlocal y
        ensure_space(20)
        c.setFont(FONT_BOLD, 11)
        c.drawString(MARGIN, y, f"{label}:")
        c.setFont(FONT, 11)
        c.drawString(MARGIN + 140, y, value)
        y -= 20

    c.setTitle(f"Payment Receipt {data.merchant_transaction_id}")

    c.setFont(FONT_BOLD, 22)
    c.drawCentredString(width / 2, y, "PAYMENT RECEIPT")
    y -= 24
    c.setFont(FONT, 11)
    c.setFillColorRGB(0.4, 0.4, 0.4)
    c.drawCentredString(width / 2, y, "Pre-Registration Payment Confirmation")
    c.setFillColorRGB(0, 0, 0)
    y -= 20
    c.setStrokeColorRGB(0.7, 0.7, 0.7)
    c.line(MARGIN, y, width - MARGIN, y)
    y -= 30

    draw_row("Customer Name", data.customer_name)
    draw_row("Service", data.service_name)
    draw_row("Transaction ID", data.transaction_id)
    draw_row("Merchant Order ID", data.merchant_transaction_id)
    draw_row("Payment Date", data.payment_date or format_payment_date())
    draw_row("Payment Status", data.status)

    y -= 10
    c.line(MARGIN, y, width - MARGIN, y)
    y -= 24
    c.setFont(FONT_BOLD, 14)
    c.drawString(MARGIN, y, f"Total Amount Paid: Rs. {format_amount(data.amount_minor_units)}")
    y -= 36

    if data.message:
        ensure_space(40)
        c.setFont(FONT_BOLD, 12)
        c.drawString(MARGIN, y, "Project Details")
        y -= 18
        c.setFont(FONT, 10)
        for line in wrap_text(data.message, FONT, 10, text_width):
            ensure_space(14)
            c.setFont(FONT, 10)
            c.drawString(MARGIN, y, line)
            y -= 14
        y -= 10

    c.setFont(FONT, 9)
    c.setFillColorRGB(0.4, 0.4, 0.4)
    c.drawCentredString(width / 2, MARGIN / 2, "This is a computer-generated receipt.")

    c.showPage()
    c.save()
    pdf_bytes = buffer.getvalue()
    buffer.close()
    return pdf_bytes


def write_receipt_tempfile(data: ReceiptData) -> str:
    """Render to a temporary file and return its path. Caller deletes it."""
    pdf_bytes = generate_receipt_pdf(data)
    fd, path = tempfile.mkstemp(prefix="receipt_", suffix=".pdf")
    with os.fdopen(fd, "wb") as handle:
        handle.write(pdf_bytes)
    logger.debug("receipt_written", path=path, size=len(pdf_bytes))
    return path
