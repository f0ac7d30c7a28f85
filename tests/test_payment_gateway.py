import asyncio
import base64
import hashlib
import json

import pytest

from pipeline.errors import (
    ConfigurationError,
    ProviderError,
    ProviderTransientError,
    RetryExhaustedError,
    SignatureInvalid,
    StoreUnavailableError,
    ValidationError,
)
from pipeline.payment_gateway import build_meta_info, parse_meta_info
from pipeline.signature_verifier import callback_signature, razorpay_signature
from schemas.payment_definitions import (
    CreatePhonePeOrderRequest,
    CreateRazorpayOrderRequest,
    CustomerDetails,
    Environment,
    PaymentAttempt,
    PaymentProvider,
    PaymentRecord,
    PaymentStatus,
    ProviderStatus,
    ReceiptRequest,
    VerifyPhonePeRequest,
    VerifyRazorpayRequest,
)
from storage.payment_store import InMemoryPaymentStore

from conftest import WEBHOOK_SECRET

CUSTOMER = CustomerDetails(name="Asha", email="asha@example.com", phone="9876543210", message="Dark theme")


def sign(body: bytes, secret: str = WEBHOOK_SECRET) -> str:
    digest = hashlib.sha256(body + f"/pg/v1/webhook/{secret}1".encode()).hexdigest()
    return f"{digest}###1"


def success_event(merchant_transaction_id="TXN1", event="checkout.order.completed"):
    return json.dumps({
        "event": event,
        "payload": {
            "merchantOrderId": merchant_transaction_id,
            "orderId": "OMO1",
            "state": "COMPLETED",
            "amount": 15000,
            "metaInfo": build_meta_info(CUSTOMER, "web", "Portfolio Website"),
            "paymentDetails": [{"transactionId": "T-1", "paymentMode": "UPI_QR", "state": "COMPLETED"}],
        },
    }).encode()


async def seed(store, merchant_transaction_id="TXN1", **overrides):
    data = dict(
        merchant_transaction_id=merchant_transaction_id,
        amount_minor_units=15000,
        customer=CUSTOMER,
        service_name="Portfolio Website",
    )
    data.update(overrides)
    return await store.create(PaymentRecord(**data))


# =============================================================================
# META INFO
# =============================================================================

def test_meta_info_round_trip():
    meta = build_meta_info(CUSTOMER, "web", "Portfolio Website")
    customer, service_id, service_name = parse_meta_info(meta)

    assert meta["udf5"].startswith("web|")
    assert customer == CUSTOMER
    assert (service_id, service_name) == ("web", "Portfolio Website")


def test_parse_meta_info_tolerates_garbage():
    customer, service_id, service_name = parse_meta_info({"udf5": "svc|not-base64!!"})
    assert customer.message is None
    assert service_id == "svc"
    assert parse_meta_info(None)[0] == CustomerDetails()


# =============================================================================
# ORDER CREATION
# =============================================================================

@pytest.mark.asyncio
@pytest.mark.parametrize("amount", [None, 0, 0.5])
async def test_create_phonepe_order_rejects_bad_amount(gateway, amount):
    with pytest.raises(ValidationError):
        await gateway.create_phonepe_order(CreatePhonePeOrderRequest(amount=amount))


@pytest.mark.asyncio
async def test_create_phonepe_order_reports_missing_credentials(gateway, settings):
    settings.phonepe.client_id = ""
    settings.phonepe.client_secret = ""

    with pytest.raises(ConfigurationError) as info:
        await gateway.create_phonepe_order(CreatePhonePeOrderRequest(amount=500))

    assert info.value.missing_keys == ["PHONEPE_CLIENT_ID", "PHONEPE_CLIENT_SECRET"]
    assert info.value.status_code == 500


@pytest.mark.asyncio
async def test_create_phonepe_order_records_pending_payment(gateway, store, phonepe):
    created = await gateway.create_phonepe_order(CreatePhonePeOrderRequest(
        amount=500, service_id="web", service_name="Portfolio Website", customer_details=CUSTOMER,
    ))

    assert created.merchant_transaction_id.startswith("TXN")
    assert created.merchant_transaction_id.endswith("_web")
    assert created.amount == 50000
    assert created.redirect_url.startswith("https://mercury.phonepe.com")

    sent = phonepe.created[0]
    assert sent["amount"] == 50000
    assert sent["redirect_url"] == (
        f"https://portfolio.test/payment/status?merchantTransactionId={created.merchant_transaction_id}"
    )
    assert parse_meta_info(sent["meta_info"])[0] == CUSTOMER

    record = await store.get(created.merchant_transaction_id)
    assert record.status == PaymentStatus.PENDING
    assert record.amount_minor_units == 50000
    assert record.environment == Environment.SANDBOX
    assert record.payment_state == "PENDING"


@pytest.mark.asyncio
async def test_create_phonepe_order_defaults_service_suffix(gateway):
    created = await gateway.create_phonepe_order(CreatePhonePeOrderRequest(amount=1))
    assert created.merchant_transaction_id.endswith("_SERVICE")


# =============================================================================
# VERIFICATION POLL
# =============================================================================

@pytest.mark.asyncio
async def test_verify_requires_transaction_id(gateway):
    with pytest.raises(ValidationError):
        await gateway.verify_phonepe_payment(VerifyPhonePeRequest(merchant_transaction_id="  "))


@pytest.mark.asyncio
async def test_verify_completed_dispatches_once(gateway, store, phonepe, email, sms):
    await seed(store)
    phonepe.replies = [ProviderStatus(
        order_id="OMO1", state="PENDING", amount=15000,
        attempts=[PaymentAttempt(transaction_id="T-1", state="COMPLETED", payment_mode="UPI_QR")],
    )]

    first = await gateway.verify_phonepe_payment(VerifyPhonePeRequest(merchant_transaction_id="TXN1"))
    second = await gateway.verify_phonepe_payment(VerifyPhonePeRequest(merchant_transaction_id="TXN1"))

    assert first.success and first.is_completed
    assert first.payment_status == PaymentStatus.COMPLETED
    assert first.transaction_id == "T-1"
    assert first.notifications_sent and second.notifications_sent
    assert len(email.customer_receipts) == 1
    assert len(email.admin_notifications) == 1
    assert len(sms.sent) == 2

    record = await store.get("TXN1")
    assert record.status == PaymentStatus.COMPLETED
    assert record.provider_transaction_id == "T-1"
    assert record.notifications_sent


@pytest.mark.asyncio
async def test_verify_pending_does_not_notify(gateway, store, phonepe, email):
    await seed(store)
    phonepe.replies = [ProviderStatus(order_id="OMO1", state="PENDING")]

    result = await gateway.verify_phonepe_payment(VerifyPhonePeRequest(merchant_transaction_id="TXN1"))

    assert not result.success
    assert result.is_pending
    assert not result.notifications_sent
    assert email.customer_receipts == []


@pytest.mark.asyncio
async def test_verify_keeps_completed_record_on_stale_pending_reading(gateway, store, phonepe, email):
    await seed(store, status=PaymentStatus.COMPLETED, provider_transaction_id="T-1", payment_mode="UPI_QR")
    phonepe.replies = [ProviderStatus(order_id="OMO1", state="PENDING")]

    result = await gateway.verify_phonepe_payment(VerifyPhonePeRequest(merchant_transaction_id="TXN1"))

    assert result.success and result.is_completed
    assert result.payment_status == PaymentStatus.COMPLETED
    assert not result.is_pending and not result.is_failed
    assert result.transaction_id == "T-1"
    assert (await store.get("TXN1")).status == PaymentStatus.COMPLETED
    assert len(email.customer_receipts) == 1


@pytest.mark.asyncio
async def test_verify_reports_refund_over_provider_completion(gateway, store, phonepe, email):
    await seed(store, status=PaymentStatus.REFUNDED, notifications_sent=True)
    phonepe.replies = [ProviderStatus(order_id="OMO1", state="COMPLETED")]

    result = await gateway.verify_phonepe_payment(VerifyPhonePeRequest(merchant_transaction_id="TXN1"))

    assert result.payment_status == PaymentStatus.REFUNDED
    assert not result.success and not result.is_completed
    assert email.customer_receipts == []


@pytest.mark.asyncio
async def test_verify_not_found_falls_back_to_local_record(gateway, store, phonepe):
    await seed(store)
    phonepe.replies = [ProviderTransientError("ORDER_NOT_FOUND")]

    result = await gateway.verify_phonepe_payment(VerifyPhonePeRequest(merchant_transaction_id="TXN1"))

    assert len(phonepe.status_calls) == 3
    assert result.warning == "PhonePe verification temporarily unavailable. Using local payment record."
    assert result.is_pending
    assert result.payment_status == PaymentStatus.PENDING
    assert (await store.get("TXN1")).status == PaymentStatus.PENDING


@pytest.mark.asyncio
async def test_verify_not_found_without_local_record(gateway, phonepe):
    phonepe.replies = [ProviderTransientError("ORDER_NOT_FOUND")]

    with pytest.raises(RetryExhaustedError) as info:
        await gateway.verify_phonepe_payment(VerifyPhonePeRequest(merchant_transaction_id="TXN404"))

    assert info.value.status_code == 404
    assert info.value.attempts == 3


@pytest.mark.asyncio
async def test_verify_completed_without_local_record_rebuilds_from_meta(gateway, store, phonepe, email):
    phonepe.replies = [ProviderStatus(
        order_id="OMO9", state="COMPLETED", amount=25000,
        meta_info=build_meta_info(CUSTOMER, "web", "Portfolio Website"),
    )]

    result = await gateway.verify_phonepe_payment(VerifyPhonePeRequest(merchant_transaction_id="TXN9"))

    record = await store.get("TXN9")
    assert result.is_completed
    assert record.status == PaymentStatus.COMPLETED
    assert record.customer.email == "asha@example.com"
    assert record.amount_minor_units == 25000
    assert email.customer_receipts[0].merchant_transaction_id == "TXN9"


# =============================================================================
# WEBHOOKS
# =============================================================================

@pytest.mark.asyncio
async def test_webhook_then_poll_notifies_once(gateway, store, phonepe, email):
    await seed(store)
    body = success_event()

    ack = await gateway.handle_phonepe_webhook(body, {"X-VERIFY": sign(body)}, Environment.SANDBOX)
    assert ack.success and ack.signature_verified
    assert ack.recipe == "sha256_body_webhook_path"
    assert ack.merchant_transaction_id == "TXN1"

    phonepe.replies = [ProviderStatus(order_id="OMO1", state="COMPLETED")]
    result = await gateway.verify_phonepe_payment(VerifyPhonePeRequest(merchant_transaction_id="TXN1"))

    assert result.is_completed
    assert result.notifications_sent
    assert len(email.customer_receipts) == 1
    record = await store.get("TXN1")
    assert record.notifications_sent
    assert record.payment_mode == "UPI_QR"
    assert record.provider_transaction_id == "OMO1"


@pytest.mark.asyncio
async def test_concurrent_webhook_and_poll_notify_once(gateway, store, phonepe, email):
    await seed(store)
    body = success_event()
    phonepe.replies = [ProviderStatus(order_id="OMO1", state="COMPLETED")]

    await asyncio.gather(
        gateway.handle_phonepe_webhook(body, {"x-verify": sign(body)}, Environment.SANDBOX),
        gateway.verify_phonepe_payment(VerifyPhonePeRequest(merchant_transaction_id="TXN1")),
        gateway.handle_phonepe_webhook(body, {"x-verify": sign(body)}, Environment.SANDBOX),
    )

    assert len(email.customer_receipts) == 1
    assert len(email.admin_notifications) == 1


@pytest.mark.asyncio
async def test_webhook_for_unseen_order_uses_meta_info(gateway, store, email):
    body = success_event("TXN-NEW", event="PAYMENT_SUCCESS")

    ack = await gateway.handle_phonepe_webhook(body, {"x-verify": sign(body)}, Environment.SANDBOX)

    record = await store.get("TXN-NEW")
    assert ack.success
    assert record.status == PaymentStatus.COMPLETED
    assert record.customer.message == "Dark theme"
    assert record.service_id == "web"
    assert record.amount_minor_units == 15000
    assert len(email.customer_receipts) == 1


@pytest.mark.asyncio
async def test_sandbox_accepts_bad_signature(gateway, store):
    await seed(store)
    body = success_event()

    ack = await gateway.handle_phonepe_webhook(body, {"x-verify": sign(body, "wrong")}, Environment.SANDBOX)

    assert ack.success
    assert ack.signature_verified is False
    assert (await store.get("TXN1")).status == PaymentStatus.COMPLETED


@pytest.mark.asyncio
async def test_production_rejects_bad_signature(gateway, store, settings, email):
    settings.phonepe.environment = "PRODUCTION"
    await seed(store)
    body = success_event()

    with pytest.raises(SignatureInvalid) as info:
        await gateway.handle_phonepe_webhook(body, {"x-verify": sign(body, "wrong")}, Environment.PRODUCTION)

    assert info.value.status_code == 401
    assert (await store.get("TXN1")).status == PaymentStatus.PENDING
    assert email.customer_receipts == []


@pytest.mark.asyncio
async def test_production_accepts_good_signature(gateway, store, settings):
    settings.phonepe.environment = "PRODUCTION"
    await seed(store)
    body = success_event()

    ack = await gateway.handle_phonepe_webhook(body, {"x-verify": sign(body)}, Environment.PRODUCTION)

    assert ack.success
    assert (await store.get("TXN1")).environment == Environment.PRODUCTION


@pytest.mark.asyncio
async def test_production_requires_production_environment(gateway):
    body = success_event()
    with pytest.raises(ConfigurationError) as info:
        await gateway.handle_phonepe_webhook(body, {"x-verify": sign(body)}, Environment.PRODUCTION)
    assert info.value.missing_keys == ["PHONEPE_ENVIRONMENT"]


@pytest.mark.asyncio
async def test_production_requires_secret(gateway, settings):
    settings.phonepe.environment = "PRODUCTION"
    settings.phonepe.client_secret = ""
    with pytest.raises(ConfigurationError) as info:
        await gateway.handle_phonepe_webhook(success_event(), {}, Environment.PRODUCTION)
    assert info.value.missing_keys == ["PHONEPE_CLIENT_SECRET"]


@pytest.mark.asyncio
async def test_failed_webhook_emails_customer_once(gateway, store, email):
    await seed(store)
    body = json.dumps({
        "event": "PAYMENT_FAILED",
        "data": {"merchantTransactionId": "TXN1", "errorCode": "PAYMENT_DECLINED", "reason": "Card declined"},
    }).encode()

    await gateway.handle_phonepe_webhook(body, {"x-verify": sign(body)}, Environment.SANDBOX)
    await gateway.handle_phonepe_webhook(body, {"x-verify": sign(body)}, Environment.SANDBOX)

    record = await store.get("TXN1")
    assert record.status == PaymentStatus.FAILED
    assert record.error_code == "PAYMENT_DECLINED"
    assert record.failure_reason == "Card declined"
    assert len(email.failure_notices) == 1


@pytest.mark.asyncio
async def test_failed_webhook_cannot_undo_completion(gateway, store, email):
    await seed(store, status=PaymentStatus.COMPLETED)
    body = json.dumps({"event": "payment.failed", "data": {"merchantTransactionId": "TXN1"}}).encode()

    ack = await gateway.handle_phonepe_webhook(body, {"x-verify": sign(body)}, Environment.SANDBOX)

    assert ack.success
    assert (await store.get("TXN1")).status == PaymentStatus.COMPLETED
    assert email.failure_notices == []


class InterleavingStore(InMemoryPaymentStore):
    """Yields before every read and write so concurrent handlers interleave."""

    async def get(self, merchant_transaction_id):
        await asyncio.sleep(0)
        return await super().get(merchant_transaction_id)

    async def transition(self, merchant_transaction_id, status, patch=None):
        await asyncio.sleep(0)
        return await super().transition(merchant_transaction_id, status, patch)


@pytest.mark.asyncio
async def test_concurrent_failed_webhooks_email_once(phonepe, razorpay, dispatcher, settings, email):
    from pipeline.payment_gateway import PaymentGateway

    store = InterleavingStore()
    await seed(store)
    gateway = PaymentGateway(store, phonepe, razorpay, dispatcher, settings)
    body = json.dumps({
        "event": "PAYMENT_FAILED",
        "data": {"merchantTransactionId": "TXN1", "errorCode": "PAYMENT_DECLINED"},
    }).encode()

    acks = await asyncio.gather(*[
        gateway.handle_phonepe_webhook(body, {"x-verify": sign(body)}, Environment.SANDBOX)
        for _ in range(3)
    ])

    assert all(ack.success for ack in acks)
    assert (await store.get("TXN1")).status == PaymentStatus.FAILED
    assert len(email.failure_notices) == 1


@pytest.mark.asyncio
async def test_pending_and_refund_webhooks(gateway, store):
    await seed(store, status=PaymentStatus.COMPLETED)
    pending = json.dumps({"event": "PAYMENT_PENDING", "data": {"merchantTransactionId": "TXN1"}}).encode()
    refund = json.dumps({
        "type": "REFUND_SUCCESS",
        "payload": {"merchantTransactionId": "TXN1", "refundId": "RF1", "refundAmount": 15000},
    }).encode()

    await gateway.handle_phonepe_webhook(pending, {}, Environment.SANDBOX)
    assert (await store.get("TXN1")).status == PaymentStatus.COMPLETED

    await gateway.handle_phonepe_webhook(refund, {}, Environment.SANDBOX)
    record = await store.get("TXN1")
    assert record.status == PaymentStatus.REFUNDED
    assert record.refund_id == "RF1"
    assert record.refund_amount_minor_units == 15000
    assert record.refunded_at is not None


@pytest.mark.asyncio
async def test_unknown_event_is_acknowledged(gateway):
    body = json.dumps({"event": "settlement.created", "data": {}}).encode()
    ack = await gateway.handle_phonepe_webhook(body, {}, Environment.SANDBOX)
    assert ack.success
    assert ack.event == "settlement.created"
    assert ack.merchant_transaction_id is None


@pytest.mark.asyncio
async def test_malformed_body_is_acknowledged_with_error(gateway):
    ack = await gateway.handle_phonepe_webhook(b"not json", {}, Environment.SANDBOX)
    assert ack.success is False
    assert ack.error


class ClaimOutageStore(InMemoryPaymentStore):
    async def try_claim_notification(self, merchant_transaction_id):
        raise StoreUnavailableError("database down")


@pytest.mark.asyncio
async def test_claim_outage_skips_notifications(phonepe, razorpay, dispatcher, settings, email):
    from pipeline.payment_gateway import PaymentGateway

    store = ClaimOutageStore()
    await seed(store)
    gateway = PaymentGateway(store, phonepe, razorpay, dispatcher, settings)
    body = success_event()

    ack = await gateway.handle_phonepe_webhook(body, {"x-verify": sign(body)}, Environment.SANDBOX)

    assert ack.success
    assert email.customer_receipts == []


def test_webhook_status(gateway, settings):
    sandbox = gateway.webhook_status(Environment.SANDBOX)
    production = gateway.webhook_status(Environment.PRODUCTION)

    assert sandbox["endpoint"] == "/api/phonepe-webhook-sandbox"
    assert sandbox["configured"] is True
    assert production["configured"] is False
    assert "checkout.order.completed" in sandbox["supportedEvents"]


# =============================================================================
# SERVER CALLBACK
# =============================================================================

@pytest.mark.asyncio
async def test_callback_reconciles_encoded_response(gateway, store, settings, email):
    settings.phonepe.salt_key = "salt"
    settings.phonepe.merchant_id = "MERCHANT"
    await seed(store)
    inner = {"success": True, "code": "PAYMENT_SUCCESS",
             "data": {"merchantTransactionId": "TXN1", "transactionId": "T-77", "amount": 15000,
                      "state": "COMPLETED", "paymentInstrument": {"type": "UPI"}}}
    body = json.dumps({"response": base64.b64encode(json.dumps(inner).encode()).decode()}).encode()
    headers = {"X-VERIFY": callback_signature(body, "MERCHANT", "salt", "1")}

    result = await gateway.handle_phonepe_callback(body, headers)

    record = await store.get("TXN1")
    assert result["success"] and result["status"] == "completed"
    assert record.status == PaymentStatus.COMPLETED
    assert record.provider_transaction_id == "T-77"
    assert record.payment_mode == "UPI"
    assert len(email.customer_receipts) == 1


@pytest.mark.asyncio
async def test_callback_rejects_bad_signature(gateway, settings):
    settings.phonepe.salt_key = "salt"
    with pytest.raises(SignatureInvalid):
        await gateway.handle_phonepe_callback(b"{}", {"x-verify": "nope###1"})


# =============================================================================
# RAZORPAY
# =============================================================================

@pytest.mark.asyncio
async def test_razorpay_order_and_verification(gateway, store, razorpay, email):
    created = await gateway.create_razorpay_order(CreateRazorpayOrderRequest(
        amount=199.99, service_name="Consultation", customer_details=CUSTOMER,
    ))

    assert created.order_id == "order_TEST123"
    assert created.amount == 19999
    assert created.key_id == "rzp_test_key"
    assert razorpay.orders[0]["receipt"].startswith("receipt_")

    signature = razorpay_signature("order_TEST123", "pay_1", "rzp-secret")
    result = await gateway.verify_razorpay_payment(VerifyRazorpayRequest(
        razorpay_order_id="order_TEST123", razorpay_payment_id="pay_1", razorpay_signature=signature,
    ))

    record = await store.get("order_TEST123")
    assert result.is_completed and result.notifications_sent
    assert record.status == PaymentStatus.COMPLETED
    assert record.provider_transaction_id == "pay_1"
    assert len(email.customer_receipts) == 1


@pytest.mark.asyncio
async def test_razorpay_bad_signature(gateway, store):
    await seed(store, "order_X")
    with pytest.raises(ValidationError) as info:
        await gateway.verify_razorpay_payment(VerifyRazorpayRequest(
            razorpay_order_id="order_X", razorpay_payment_id="pay_1", razorpay_signature="forged",
        ))
    assert info.value.code == "invalid_signature"
    assert (await store.get("order_X")).status == PaymentStatus.PENDING


@pytest.mark.asyncio
async def test_razorpay_missing_fields(gateway):
    with pytest.raises(ValidationError):
        await gateway.verify_razorpay_payment(VerifyRazorpayRequest(razorpay_order_id="order_X"))


def _razorpay_verify(order_id, payment_id="pay_1"):
    return VerifyRazorpayRequest(
        razorpay_order_id=order_id,
        razorpay_payment_id=payment_id,
        razorpay_signature=razorpay_signature(order_id, payment_id, "rzp-secret"),
    )


@pytest.mark.asyncio
async def test_razorpay_verify_reports_refunded_record(gateway, store, email):
    await seed(store, "order_R", status=PaymentStatus.REFUNDED, provider=PaymentProvider.RAZORPAY)

    result = await gateway.verify_razorpay_payment(_razorpay_verify("order_R"))

    assert result.payment_status == PaymentStatus.REFUNDED
    assert not result.success and not result.is_completed
    assert (await store.get("order_R")).status == PaymentStatus.REFUNDED
    assert email.customer_receipts == []


@pytest.mark.asyncio
async def test_razorpay_verify_unseen_order_uses_fetched_order(gateway, store, razorpay, email):
    razorpay.fetched["order_NEW"] = {
        "id": "order_NEW", "amount": 19999, "status": "paid",
        "notes": {"serviceName": "Consultation", "customerEmail": "asha@example.com"},
    }

    result = await gateway.verify_razorpay_payment(_razorpay_verify("order_NEW"))

    record = await store.get("order_NEW")
    assert result.is_completed and result.notifications_sent
    assert result.amount == 19999
    assert record.amount_minor_units == 19999
    assert record.service_name == "Consultation"
    assert record.customer.email == "asha@example.com"
    assert record.provider == PaymentProvider.RAZORPAY
    assert len(email.customer_receipts) == 1


@pytest.mark.asyncio
async def test_razorpay_verify_unknown_amount_skips_notifications(gateway, store, razorpay, email):
    razorpay.fetch_error = ProviderError("Razorpay request failed")

    result = await gateway.verify_razorpay_payment(_razorpay_verify("order_LOST"))

    assert result.is_completed
    assert not result.notifications_sent
    assert (await store.get("order_LOST")).notifications_sent is False
    assert email.customer_receipts == [] and email.admin_notifications == []


# =============================================================================
# RECEIPTS & OPERATOR VIEWS
# =============================================================================

@pytest.mark.asyncio
async def test_receipt_requires_an_id(gateway):
    with pytest.raises(ValidationError):
        await gateway.generate_receipt(ReceiptRequest())


@pytest.mark.asyncio
async def test_receipt_from_stored_record(gateway, store):
    await seed(store, status=PaymentStatus.COMPLETED)

    pdf, filename = await gateway.generate_receipt(ReceiptRequest(merchant_transaction_id="TXN1"))

    assert pdf.startswith(b"%PDF")
    assert filename == "receipt_TXN1.pdf"


@pytest.mark.asyncio
async def test_stats_and_listing(gateway, store):
    await seed(store, "A", status=PaymentStatus.COMPLETED)
    await seed(store, "B")

    stats = await gateway.payment_stats()
    pending = await gateway.list_payments(status=PaymentStatus.PENDING)

    assert stats.total == 2 and stats.successful == 1
    assert [r.merchant_transaction_id for r in pending] == ["B"]
