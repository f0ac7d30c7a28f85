"""
Shared fixtures: settings, fake collaborators and a wired gateway.
"""

from typing import Any, Dict, List, Optional, Union

import pytest

from config import EmailSettings, PhonePeSettings, RazorpaySettings, Settings, SmsSettings
from pipeline.errors import NotificationError
from pipeline.notification_dispatcher import NotificationDispatcher
from pipeline.payment_gateway import PaymentGateway
from pipeline.status_poller import StatusPoller
from schemas.payment_definitions import PaymentRecord, ProviderStatus
from storage.payment_store import InMemoryPaymentStore

WEBHOOK_SECRET = "test-client-secret"


class FakeEmail:
    def __init__(self, configured: bool = True, fail: bool = False):
        self.configured = configured
        self.fail = fail
        self.customer_receipts: List[PaymentRecord] = []
        self.admin_notifications: List[PaymentRecord] = []
        self.failure_notices: List[PaymentRecord] = []
        self.contact_messages: List[Any] = []

    async def send_customer_receipt(self, record, receipt_path):
        if self.fail:
            raise RuntimeError("smtp down")
        self.customer_receipts.append(record)
        return "<customer@test>"

    async def send_admin_notification(self, record, receipt_path=None):
        if self.fail:
            raise RuntimeError("smtp down")
        self.admin_notifications.append(record)
        return "<admin@test>"

    async def send_payment_failed(self, record):
        self.failure_notices.append(record)
        return "<failed@test>"

    async def send_contact_message(self, request):
        if self.fail:
            raise NotificationError("SMTP delivery failed: smtp down")
        self.contact_messages.append(request)
        return "<contact@test>"


class FakeSms:
    def __init__(self, configured: bool = True, admin_number: Optional[str] = "+919999900000"):
        self.configured = configured
        self.admin_number = admin_number
        self.sent: List[tuple] = []

    async def send_sms(self, to, body):
        self.sent.append((to, body))
        return f"SM{len(self.sent)}"


class FakePhonePe:
    """Replays queued status replies; an exception in the queue is raised."""

    def __init__(self, replies: Optional[List[Union[ProviderStatus, Exception]]] = None):
        self.replies = list(replies or [])
        self.status_calls: List[str] = []
        self.created: List[Dict[str, Any]] = []

    async def get_order_status(self, merchant_transaction_id):
        self.status_calls.append(merchant_transaction_id)
        reply = self.replies.pop(0) if len(self.replies) > 1 else self.replies[0]
        if isinstance(reply, Exception):
            raise reply
        return reply

    async def create_payment(self, merchant_order_id, amount_minor_units, redirect_url,
                             meta_info=None, message=None):
        self.created.append({
            "merchant_order_id": merchant_order_id,
            "amount": amount_minor_units,
            "redirect_url": redirect_url,
            "meta_info": meta_info,
        })
        return {
            "orderId": "OMO123",
            "state": "PENDING",
            "expireAt": 1735689600000,
            "redirectUrl": "https://mercury.phonepe.com/transact/pg?token=abc",
        }

    async def close(self):
        pass


class FakeRazorpay:
    def __init__(self):
        self.orders: List[Dict[str, Any]] = []
        self.fetched: Dict[str, Dict[str, Any]] = {}
        self.fetch_error: Optional[Exception] = None

    async def create_order(self, amount_minor_units, currency, receipt, notes=None):
        self.orders.append({"amount": amount_minor_units, "receipt": receipt, "notes": notes})
        return {"id": "order_TEST123", "amount": amount_minor_units, "currency": currency, "status": "created"}

    async def fetch_order(self, order_id):
        if self.fetch_error is not None:
            raise self.fetch_error
        return self.fetched.get(order_id, {"id": order_id, "notes": []})

    async def close(self):
        pass


async def no_sleep(seconds):
    return None


@pytest.fixture
def settings():
    return Settings(
        public_base_url="https://portfolio.test",
        phonepe=PhonePeSettings(
            client_id="client-id",
            client_secret=WEBHOOK_SECRET,
            environment="SANDBOX",
            status_retry_delay=0,
        ),
        razorpay=RazorpaySettings(key_id="rzp_test_key", key_secret="rzp-secret"),
        email=EmailSettings(user="owner@test.com", password="pw"),
        sms=SmsSettings(account_sid="AC1", auth_token="tok", from_number="+15550001111",
                        admin_number="9999900000"),
    )


@pytest.fixture
def store():
    return InMemoryPaymentStore()


@pytest.fixture
def email():
    return FakeEmail()


@pytest.fixture
def sms():
    return FakeSms()


@pytest.fixture
def phonepe():
    return FakePhonePe([ProviderStatus(state="PENDING")])


@pytest.fixture
def razorpay():
    return FakeRazorpay()


@pytest.fixture
def receipt_writer(tmp_path):
    def write(data):
        path = tmp_path / f"{data.merchant_transaction_id}.pdf"
        path.write_bytes(b"%PDF-1.4 test")
        return str(path)
    return write


@pytest.fixture
def dispatcher(email, sms, receipt_writer):
    return NotificationDispatcher(email, sms, receipt_writer=receipt_writer)


@pytest.fixture
def gateway(store, phonepe, razorpay, dispatcher, settings):
    poller = StatusPoller(phonepe, max_attempts=3, backoff_seconds=2.0, sleep=no_sleep)
    return PaymentGateway(store, phonepe, razorpay, dispatcher, settings, poller=poller)
