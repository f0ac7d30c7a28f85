"""
Payment Gateway
===============
Orchestrates order creation, verification polls, provider webhooks and
receipts on top of the store, the provider clients and the notification
dispatcher.

- Webhook Router: event families map to one handler each
- At-most-once notifications: every success path goes through the store claim
- Webhooks always acknowledge; only configuration and production signature
  failures surface as errors

Example:
    gateway = PaymentGateway(store, phonepe, razorpay, dispatcher, settings)
    created = await gateway.create_phonepe_order(request)
    # Browser returns from PhonePe, then polls:
    result = await gateway.verify_phonepe_payment(VerifyPhonePeRequest(...))
"""

import asyncio
import base64
import binascii
import json
import time
import uuid
from typing import Any, Dict, List, Mapping, Optional, Tuple

import structlog

from config import Settings
from pipeline import signature_verifier
from pipeline.errors import (
    ConfigurationError,
    ProviderError,
    RetryExhaustedError,
    SignatureInvalid,
    StoreUnavailableError,
    ValidationError,
)
from pipeline.notification_dispatcher import NotificationDispatcher
from pipeline.status_poller import StatusPoller
from pipeline.status_reconciler import StatusReconciler, reconcile
from pipeline.webhook_router import (
    WebhookContext,
    WebhookRouter,
    extract_event_type,
)
from schemas.payment_definitions import (
    CreatePhonePeOrderRequest,
    CreateRazorpayOrderRequest,
    CustomerDetails,
    Environment,
    OrderCreated,
    PaymentAttempt,
    PaymentProvider,
    PaymentRecord,
    PaymentStats,
    PaymentStatus,
    ProviderStatus,
    ReceiptRequest,
    VerificationResponse,
    VerifyPhonePeRequest,
    VerifyRazorpayRequest,
    WebhookAck,
    format_amount,
    utcnow,
)
from services.phonepe_client import PhonePeClient
from services.razorpay_client import RazorpayClient
from services.receipt_pdf import ReceiptData, format_payment_date, generate_receipt_pdf
from storage.payment_store import IPaymentStore

SUCCESS_EVENTS = (
    "checkout.order.completed",
    "PAYMENT_SUCCESS",
    "payment.success",
    "subscription.redemption.order.completed",
)
FAILED_EVENTS = ("PAYMENT_FAILED", "payment.failed", "checkout.order.failed")
PENDING_EVENTS = ("PAYMENT_PENDING", "payment.pending")
REFUND_EVENTS = ("REFUND_SUCCESS", "refund.success")

WEBHOOK_PATHS = {
    Environment.PRODUCTION: "/api/phonepe-webhook-production",
    Environment.SANDBOX: "/api/phonepe-webhook-sandbox",
}

LOCAL_RECORD_WARNING = "PhonePe verification temporarily unavailable. Using local payment record."
LOCAL_RECORD_NOTE = "If payment was successful on PhonePe, it will be updated via webhook shortly."


def _now_millis() -> int:
    return int(time.time() * 1000)


def _rupees_to_paise(amount: float) -> int:
    return int(round(amount * 100))


# =============================================================================
# META INFO
# =============================================================================
# PhonePe echoes metaInfo back on status reads and webhooks; it is the only
# place customer details survive a round trip through the provider.

def build_meta_info(
    customer: CustomerDetails,
    service_id: Optional[str],
    service_name: Optional[str],
) -> Dict[str, str]:
    message = customer.message or ""
    encoded = base64.b64encode(message.encode("utf-8")).decode("ascii") if message else ""
    return {
        "udf1": customer.name or "",
        "udf2": customer.email or "",
        "udf3": customer.phone or "",
        "udf4": service_name or "",
        "udf5": f"{service_id or ''}|{encoded}",
    }


def parse_meta_info(
    meta_info: Optional[Mapping[str, Any]],
) -> Tuple[CustomerDetails, Optional[str], Optional[str]]:
    """Inverse of build_meta_info: (customer, service_id, service_name)."""
    meta_info = meta_info or {}
    service_id, _, encoded = str(meta_info.get("udf5") or "").partition("|")
    message = None
    if encoded:
        try:
            message = base64.b64decode(encoded, validate=True).decode("utf-8")
        except (binascii.Error, UnicodeDecodeError):
            message = None
    customer = CustomerDetails(
        name=meta_info.get("udf1") or None,
        email=meta_info.get("udf2") or None,
        phone=meta_info.get("udf3") or None,
        message=message or None,
    )
    return customer, service_id or None, meta_info.get("udf4") or None


def _first_attempt(data: Mapping[str, Any]) -> Dict[str, Any]:
    attempts = data.get("paymentDetails") or data.get("payment_details") or []
    if attempts and isinstance(attempts[0], dict):
        return attempts[0]
    return {}


# =============================================================================
# GATEWAY
# =============================================================================

class PaymentGateway:
    """
    Payment orchestration for PhonePe and Razorpay.

    Collaborators are injected so tests can swap the store, the HTTP clients
    and the notification senders.
    """

    def __init__(
        self,
        store: IPaymentStore,
        phonepe: PhonePeClient,
        razorpay: RazorpayClient,
        dispatcher: NotificationDispatcher,
        settings: Settings,
        poller: Optional[StatusPoller] = None,
        reconciler: Optional[StatusReconciler] = None,
    ):
        self.store = store
        self.phonepe = phonepe
        self.razorpay = razorpay
        self.dispatcher = dispatcher
        self.settings = settings
        self.poller = poller or StatusPoller(
            phonepe,
            max_attempts=settings.phonepe.status_max_attempts,
            backoff_seconds=settings.phonepe.status_retry_delay,
        )
        self.reconciler = reconciler or StatusReconciler(store)

        self.router = WebhookRouter()
        self._register_handlers()

        self._base_logger = structlog.get_logger()

    def _get_logger(self, correlation_id: str = None):
        """Get logger bound with correlation context"""
        return self._base_logger.bind(
            component="payment_gateway",
            correlation_id=correlation_id or str(uuid.uuid4()),
        )

    @property
    def environment(self) -> Environment:
        return Environment(self.settings.phonepe.environment_label)

    # =========================================================================
    # STORE ACCESS
    # =========================================================================
    # Store outages never fail a provider-facing request; reads degrade to
    # "unknown" and writes are logged and skipped.

    async def _safe_get(self, merchant_transaction_id: str, log) -> Optional[PaymentRecord]:
        try:
            return await self.store.get(merchant_transaction_id)
        except StoreUnavailableError as e:
            log.error("store_read_failed", merchant_transaction_id=merchant_transaction_id, error=str(e))
            return None

    async def _safe_create(self, record: PaymentRecord, log) -> Optional[PaymentRecord]:
        try:
            return await self.store.create(record)
        except StoreUnavailableError as e:
            log.error("store_write_failed",
                      merchant_transaction_id=record.merchant_transaction_id,
                      error=str(e))
            return None

    async def _safe_update(
        self,
        merchant_transaction_id: str,
        status: PaymentStatus,
        patch: Dict[str, Any],
        log,
    ) -> Optional[PaymentRecord]:
        try:
            return await self.store.update(merchant_transaction_id, status, patch)
        except StoreUnavailableError as e:
            log.error("store_write_failed",
                      merchant_transaction_id=merchant_transaction_id,
                      error=str(e))
            return None

    async def _safe_transition(
        self,
        merchant_transaction_id: str,
        status: PaymentStatus,
        patch: Dict[str, Any],
        log,
    ) -> Tuple[Optional[PaymentStatus], Optional[PaymentRecord]]:
        try:
            return await self.store.transition(merchant_transaction_id, status, patch)
        except StoreUnavailableError as e:
            log.error("store_write_failed",
                      merchant_transaction_id=merchant_transaction_id,
                      error=str(e))
            return None, None

    async def _notify_once(self, merchant_transaction_id: str, log) -> bool:
        """
        Claim and dispatch. True when this caller (or an earlier one) owns
        the notifications for the record.
        """
        try:
            claimed = await self.store.try_claim_notification(merchant_transaction_id)
        except StoreUnavailableError as e:
            # Skipping is safer than risking a duplicate send.
            log.error("notification_claim_failed",
                      merchant_transaction_id=merchant_transaction_id,
                      error=str(e))
            return False

        if not claimed:
            log.info("notifications_already_claimed", merchant_transaction_id=merchant_transaction_id)
            return True

        record = await self._safe_get(merchant_transaction_id, log)
        if record is None:
            log.warning("notification_record_missing", merchant_transaction_id=merchant_transaction_id)
            return True
        await self.dispatcher.dispatch(record)
        return True

    # =========================================================================
    # ORDER CREATION
    # =========================================================================

    async def create_phonepe_order(self, request: CreatePhonePeOrderRequest) -> OrderCreated:
        log = self._get_logger()
        if request.amount is None or request.amount < 1:
            raise ValidationError("Invalid amount")
        missing = self.settings.phonepe.missing_credentials()
        if missing:
            raise ConfigurationError("PhonePe credentials are not configured", missing)

        merchant_transaction_id = f"TXN{_now_millis()}_{request.service_id or 'SERVICE'}"
        amount_minor_units = _rupees_to_paise(request.amount)
        customer = request.customer_details or CustomerDetails()
        redirect_url = (
            f"{self.settings.public_base_url}/payment/status"
            f"?merchantTransactionId={merchant_transaction_id}"
        )

        log.info("phonepe_order_initiated",
                 merchant_transaction_id=merchant_transaction_id,
                 amount=amount_minor_units,
                 service_id=request.service_id,
                 environment=self.environment.value)

        await self._safe_create(PaymentRecord(
            merchant_transaction_id=merchant_transaction_id,
            amount_minor_units=amount_minor_units,
            customer=customer,
            service_id=request.service_id,
            service_name=request.service_name,
            provider=PaymentProvider.PHONEPE,
            environment=self.environment,
        ), log)

        body = await self.phonepe.create_payment(
            merchant_transaction_id,
            amount_minor_units,
            redirect_url,
            meta_info=build_meta_info(customer, request.service_id, request.service_name),
            message=f"Payment for {request.service_name or 'service'}",
        )

        if body.get("state"):
            await self._safe_update(
                merchant_transaction_id,
                PaymentStatus.PENDING,
                {"payment_state": body["state"]},
                log,
            )

        return OrderCreated(
            merchant_transaction_id=merchant_transaction_id,
            order_id=body.get("orderId"),
            redirect_url=body.get("redirectUrl"),
            state=body.get("state"),
            expire_at=body.get("expireAt"),
            amount=amount_minor_units,
        )

    async def create_razorpay_order(self, request: CreateRazorpayOrderRequest) -> OrderCreated:
        log = self._get_logger()
        if request.amount is None or request.amount < 1:
            raise ValidationError("Invalid amount")
        missing = self.settings.razorpay.missing_credentials()
        if missing:
            raise ConfigurationError("Razorpay keys are not configured", missing)

        amount_minor_units = _rupees_to_paise(request.amount)
        customer = request.customer_details or CustomerDetails()
        notes = {
            key: value for key, value in {
                "serviceId": request.service_id,
                "serviceName": request.service_name,
                "customerEmail": customer.email,
            }.items() if value
        }
        order = await self.razorpay.create_order(
            amount_minor_units, request.currency, f"receipt_{_now_millis()}", notes=notes
        )
        order_id = order["id"]

        await self._safe_create(PaymentRecord(
            merchant_transaction_id=order_id,
            amount_minor_units=int(order.get("amount") or amount_minor_units),
            customer=customer,
            service_id=request.service_id,
            service_name=request.service_name,
            provider=PaymentProvider.RAZORPAY,
            environment=self._razorpay_environment(),
        ), log)

        log.info("razorpay_order_recorded", merchant_transaction_id=order_id, amount=amount_minor_units)
        return OrderCreated(
            merchant_transaction_id=order_id,
            order_id=order_id,
            state=order.get("status"),
            amount=int(order.get("amount") or amount_minor_units),
            currency=order.get("currency") or request.currency,
            key_id=self.settings.razorpay.key_id,
        )

    # =========================================================================
    # VERIFICATION
    # =========================================================================

    async def verify_razorpay_payment(self, request: VerifyRazorpayRequest) -> VerificationResponse:
        log = self._get_logger()
        if not (request.razorpay_order_id and request.razorpay_payment_id and request.razorpay_signature):
            raise ValidationError("Missing payment verification fields")
        if not self.settings.razorpay.key_secret:
            raise ConfigurationError("Razorpay keys are not configured", ["RAZORPAY_KEY_SECRET"])

        if not signature_verifier.verify_razorpay_signature(
            request.razorpay_order_id,
            request.razorpay_payment_id,
            request.razorpay_signature,
            self.settings.razorpay.key_secret,
        ):
            log.warning("razorpay_signature_invalid", order_id=request.razorpay_order_id)
            raise ValidationError("Invalid payment signature", code="invalid_signature")

        order_id = request.razorpay_order_id
        patch = {
            "provider_transaction_id": request.razorpay_payment_id,
            "payment_state": "COMPLETED",
        }
        stored = await self._safe_update(order_id, PaymentStatus.COMPLETED, patch, log)
        if stored is None:
            stored = await self._record_from_razorpay_order(order_id, request.razorpay_payment_id, log)

        # A refunded or otherwise settled record keeps its status.
        final = stored.status if stored is not None else PaymentStatus.COMPLETED
        notifications_sent = bool(stored and stored.notifications_sent)
        if stored is not None and final == PaymentStatus.COMPLETED:
            if stored.amount_minor_units > 0:
                notifications_sent = await self._notify_once(order_id, log)
            else:
                log.warning("razorpay_notifications_skipped", order_id=order_id, reason="unknown_amount")

        log.info("razorpay_payment_verified",
                 order_id=order_id,
                 payment_id=request.razorpay_payment_id,
                 status=final.value)
        return VerificationResponse(
            success=final == PaymentStatus.COMPLETED,
            payment_status=final,
            order_id=order_id,
            merchant_transaction_id=order_id,
            transaction_id=stored.provider_transaction_id if stored else request.razorpay_payment_id,
            amount=stored.amount_minor_units if stored else None,
            payment_state=stored.payment_state if stored else "COMPLETED",
            is_pending=final == PaymentStatus.PENDING,
            is_failed=final == PaymentStatus.FAILED,
            is_completed=final == PaymentStatus.COMPLETED,
            notifications_sent=notifications_sent,
        )

    async def _record_from_razorpay_order(self, order_id: str, payment_id: str, log) -> Optional[PaymentRecord]:
        """A verified payment for an order this process never recorded."""
        try:
            order = await self.razorpay.fetch_order(order_id)
        except ProviderError as e:
            log.warning("razorpay_order_lookup_failed", order_id=order_id, error=e.message)
            order = {}
        # Razorpay sends an empty list when an order has no notes.
        notes = order.get("notes") if isinstance(order.get("notes"), dict) else {}

        return await self._safe_create(PaymentRecord(
            merchant_transaction_id=order_id,
            provider_transaction_id=payment_id,
            status=PaymentStatus.COMPLETED,
            amount_minor_units=int(order.get("amount") or 0),
            customer=CustomerDetails(email=notes.get("customerEmail") or None),
            service_id=notes.get("serviceId") or None,
            service_name=notes.get("serviceName") or None,
            payment_state="COMPLETED",
            provider=PaymentProvider.RAZORPAY,
            environment=self._razorpay_environment(),
        ), log)

    def _razorpay_environment(self) -> Environment:
        if self.settings.razorpay.key_id.startswith("rzp_live_"):
            return Environment.PRODUCTION
        return Environment.SANDBOX

    async def verify_phonepe_payment(self, request: VerifyPhonePeRequest) -> VerificationResponse:
        merchant_transaction_id = (request.merchant_transaction_id or "").strip()
        if not merchant_transaction_id:
            raise ValidationError("Merchant transaction ID is required")
        missing = self.settings.phonepe.missing_credentials()
        if missing:
            raise ConfigurationError("PhonePe credentials are not configured", missing)

        log = self._get_logger(merchant_transaction_id)
        local = await self._safe_get(merchant_transaction_id, log)
        poll = await self.poller.query_with_retry(merchant_transaction_id)

        if poll.exhausted:
            if local is not None:
                log.warning("verification_using_local_record",
                            status=local.status.value,
                            attempts=poll.attempts)
                return self._local_record_response(local)
            raise RetryExhaustedError(
                "Payment not found at PhonePe yet. Please retry shortly.", poll.attempts
            )

        signal = poll.status
        try:
            reconciled, stored = await self.reconciler.apply(merchant_transaction_id, signal, local)
        except StoreUnavailableError as e:
            log.error("reconcile_write_failed", error=str(e))
            reconciled, stored = reconcile(local, signal, merchant_transaction_id), None

        if stored is None and local is None and reconciled.is_success:
            stored = await self._record_from_signal(merchant_transaction_id, signal, reconciled, log)

        # The store decides: a write it rejected leaves the earlier status in place.
        final = stored.status if stored is not None else reconciled.status
        if final != reconciled.status:
            log.info("verification_kept_stored_status",
                     stored_status=final.value,
                     provider_status=reconciled.status.value)

        notifications_sent = bool(stored and stored.notifications_sent)
        if final == PaymentStatus.COMPLETED and stored is not None:
            notifications_sent = await self._notify_once(merchant_transaction_id, log)

        return VerificationResponse(
            success=final == PaymentStatus.COMPLETED,
            payment_status=final,
            order_id=reconciled.order_id,
            merchant_transaction_id=merchant_transaction_id,
            transaction_id=reconciled.provider_transaction_id,
            amount=reconciled.amount,
            expire_at=reconciled.expire_at,
            meta_info=signal.meta_info,
            payment_mode=reconciled.payment_mode,
            payment_state=reconciled.payment_state,
            payment_timestamp=reconciled.payment_timestamp,
            error_code=reconciled.error_code,
            detailed_error_code=reconciled.detailed_error_code,
            is_pending=final == PaymentStatus.PENDING,
            is_failed=final == PaymentStatus.FAILED,
            is_completed=final == PaymentStatus.COMPLETED,
            notifications_sent=notifications_sent,
        )

    async def _record_from_signal(self, merchant_transaction_id, signal, reconciled, log):
        """A completed order this process never saw created (another instance, restart)."""
        customer, service_id, service_name = parse_meta_info(signal.meta_info)
        return await self._safe_create(PaymentRecord(
            merchant_transaction_id=merchant_transaction_id,
            provider_transaction_id=reconciled.provider_transaction_id,
            status=reconciled.status,
            amount_minor_units=reconciled.amount or 0,
            customer=customer,
            service_id=service_id,
            service_name=service_name,
            payment_mode=reconciled.payment_mode,
            payment_state=reconciled.payment_state,
            environment=self.environment,
        ), log)

    @staticmethod
    def _local_record_response(local: PaymentRecord) -> VerificationResponse:
        is_completed = local.status == PaymentStatus.COMPLETED
        return VerificationResponse(
            success=is_completed,
            payment_status=local.status,
            order_id=local.provider_transaction_id or local.merchant_transaction_id,
            merchant_transaction_id=local.merchant_transaction_id,
            transaction_id=local.provider_transaction_id or local.merchant_transaction_id,
            amount=local.amount_minor_units,
            payment_mode=local.payment_mode,
            payment_state=local.payment_state or local.status.value.upper(),
            error_code=local.error_code,
            is_pending=local.status == PaymentStatus.PENDING,
            is_failed=local.status == PaymentStatus.FAILED,
            is_completed=is_completed,
            notifications_sent=local.notifications_sent,
            warning=LOCAL_RECORD_WARNING,
            note=LOCAL_RECORD_NOTE,
        )

    # =========================================================================
    # WEBHOOK PROCESSING
    # =========================================================================

    def _tier(self, tier: Optional[Environment]) -> Environment:
        return tier or self.environment

    async def handle_phonepe_webhook(
        self,
        raw_body: bytes,
        headers: Mapping[str, str],
        tier: Optional[Environment] = None,
    ) -> WebhookAck:
        """
        Verify, route and acknowledge one webhook delivery.

        Raises ConfigurationError when the production tier is misconfigured
        and SignatureInvalid when a production signature does not match.
        Everything else is acknowledged, including internal failures.
        """
        tier = self._tier(tier)
        phonepe = self.settings.phonepe
        headers = {key.lower(): value for key, value in headers.items()}
        log = self._get_logger().bind(tier=tier.value)

        if tier == Environment.PRODUCTION:
            if not phonepe.is_production:
                log.error("webhook_environment_mismatch", configured=phonepe.environment)
                raise ConfigurationError(
                    "PHONEPE_ENVIRONMENT must be set to PRODUCTION for production webhooks",
                    ["PHONEPE_ENVIRONMENT"],
                )
            if not phonepe.client_secret:
                log.error("webhook_secret_missing")
                raise ConfigurationError("Webhook configuration error", ["PHONEPE_CLIENT_SECRET"])

        recipe = None
        if phonepe.client_secret:
            recipe = signature_verifier.match_recipe(
                raw_body, headers.get("x-verify"), phonepe.client_secret, phonepe.client_index
            )
        else:
            log.warning("webhook_signature_check_disabled")

        if recipe is None and tier == Environment.PRODUCTION:
            log.error("webhook_signature_rejected", merchant_id=headers.get("x-merchant-id"))
            raise SignatureInvalid("Webhook signature verification failed")
        if recipe is None:
            log.warning("webhook_signature_unverified_continuing")

        event_type = None
        try:
            payload = json.loads(raw_body)
            if not isinstance(payload, dict):
                raise ValueError("Webhook body must be a JSON object")
            event_type = extract_event_type(payload)
            log.info("webhook_received", event_type=event_type, signature_verified=recipe is not None)

            context = WebhookContext(event_type, tier.value, recipe is not None, recipe)
            merchant_transaction_id = await self.router.route(payload, context)
        except Exception as e:
            log.error("webhook_processing_failed", event_type=event_type, error=str(e))
            return WebhookAck(
                success=False,
                message="Webhook processing failed",
                event=event_type,
                signature_verified=recipe is not None,
                recipe=recipe,
                error=str(e),
            )

        return WebhookAck(
            message=f"{tier.value.capitalize()} webhook received and processed",
            event=event_type,
            merchant_transaction_id=merchant_transaction_id,
            signature_verified=recipe is not None,
            recipe=recipe,
        )

    def webhook_status(self, tier: Optional[Environment] = None) -> Dict[str, Any]:
        tier = self._tier(tier)
        phonepe = self.settings.phonepe
        configured = bool(phonepe.client_secret)
        if tier == Environment.PRODUCTION:
            configured = configured and phonepe.is_production
        return {
            "status": "active",
            "endpoint": WEBHOOK_PATHS[tier],
            "environment": tier.value,
            "configured": configured,
            "supportedEvents": self.router.supported_events,
        }

    # =========================================================================
    # WEBHOOK HANDLERS (Registered with Router)
    # =========================================================================

    def _register_handlers(self):
        """Register all webhook handlers"""

        @self.router.register(*SUCCESS_EVENTS)
        async def handle_success(data: Dict[str, Any], context: WebhookContext):
            return await self._on_payment_success(data, context)

        @self.router.register(*FAILED_EVENTS)
        async def handle_failed(data: Dict[str, Any], context: WebhookContext):
            return await self._on_payment_failed(data, context)

        @self.router.register(*PENDING_EVENTS)
        async def handle_pending(data: Dict[str, Any], context: WebhookContext):
            return await self._on_payment_pending(data, context)

        @self.router.register(*REFUND_EVENTS)
        async def handle_refund(data: Dict[str, Any], context: WebhookContext):
            return await self._on_refund(data, context)

    async def _on_payment_success(self, data: Dict[str, Any], context: WebhookContext) -> Optional[str]:
        merchant_transaction_id = (
            data.get("merchantOrderId") or data.get("merchantTransactionId") or data.get("orderId")
        )
        log = self._get_logger(merchant_transaction_id)
        if not merchant_transaction_id:
            log.warning("webhook_missing_transaction_id", event_type=context.event_type)
            return None

        attempt = _first_attempt(data)
        existing = await self._safe_get(merchant_transaction_id, log)
        customer, service_id, service_name = parse_meta_info(data.get("metaInfo"))
        if existing is not None:
            customer = customer.merged_over(existing.customer)
            service_id = service_id or existing.service_id
            service_name = service_name or existing.service_name

        amount = data.get("amount") or data.get("amountPaid")
        if existing is not None and existing.amount_minor_units:
            amount = existing.amount_minor_units

        record = PaymentRecord(
            merchant_transaction_id=merchant_transaction_id,
            provider_transaction_id=(
                data.get("orderId")
                or attempt.get("transactionId")
                or data.get("transactionId")
                or merchant_transaction_id
            ),
            status=PaymentStatus.COMPLETED,
            amount_minor_units=int(amount or 0),
            customer=customer,
            service_id=service_id,
            service_name=service_name,
            payment_mode=attempt.get("paymentMode") or data.get("paymentMode"),
            payment_state=data.get("state") or "COMPLETED",
            provider=PaymentProvider.PHONEPE,
            environment=context.environment,
        )
        stored = await self._safe_create(record, log)
        log.info("webhook_payment_completed",
                 amount=format_amount(record.amount_minor_units),
                 stored=stored is not None)

        if stored is not None and stored.status == PaymentStatus.COMPLETED:
            await self._notify_once(merchant_transaction_id, log)
        return merchant_transaction_id

    async def _on_payment_failed(self, data: Dict[str, Any], context: WebhookContext) -> Optional[str]:
        merchant_transaction_id = (
            data.get("merchantTransactionId") or data.get("merchantOrderId") or data.get("orderId")
        )
        log = self._get_logger(merchant_transaction_id)
        if not merchant_transaction_id:
            log.warning("webhook_missing_transaction_id", event_type=context.event_type)
            return None

        attempt = _first_attempt(data)
        error_code = (
            data.get("errorCode") or data.get("detailedErrorCode")
            or attempt.get("errorCode") or attempt.get("detailedErrorCode")
        )
        reason = data.get("reason") or data.get("failureReason") or error_code or "Payment failed"

        previous, stored = await self._safe_transition(
            merchant_transaction_id,
            PaymentStatus.FAILED,
            {"error_code": error_code, "failure_reason": reason, "payment_state": "FAILED"},
            log,
        )
        if stored is None:
            log.info("webhook_failed_unknown_transaction")
            return merchant_transaction_id

        log.info("webhook_payment_failed", reason=reason, stored_status=stored.status.value)
        # Only the delivery that moved the record into failed sends the notice.
        if previous != PaymentStatus.FAILED and stored.status == PaymentStatus.FAILED:
            await self.dispatcher.dispatch_failure(stored)
        return merchant_transaction_id

    async def _on_payment_pending(self, data: Dict[str, Any], context: WebhookContext) -> Optional[str]:
        merchant_transaction_id = (
            data.get("merchantTransactionId") or data.get("merchantOrderId") or data.get("orderId")
        )
        log = self._get_logger(merchant_transaction_id)
        if not merchant_transaction_id:
            log.warning("webhook_missing_transaction_id", event_type=context.event_type)
            return None

        stored = await self._safe_update(
            merchant_transaction_id, PaymentStatus.PENDING, {"payment_state": "PENDING"}, log
        )
        log.info("webhook_payment_pending", stored_status=stored.status.value if stored else None)
        return merchant_transaction_id

    async def _on_refund(self, data: Dict[str, Any], context: WebhookContext) -> Optional[str]:
        merchant_transaction_id = (
            data.get("merchantTransactionId")
            or data.get("originalMerchantOrderId")
            or data.get("merchantOrderId")
            or data.get("orderId")
        )
        log = self._get_logger(merchant_transaction_id)
        if not merchant_transaction_id:
            log.warning("webhook_missing_transaction_id", event_type=context.event_type)
            return None

        refund_amount = data.get("refundAmount") or data.get("amount")
        stored = await self._safe_update(
            merchant_transaction_id,
            PaymentStatus.REFUNDED,
            {
                "refund_id": data.get("refundId") or data.get("merchantRefundId"),
                "refund_amount_minor_units": int(refund_amount) if refund_amount else None,
                "refunded_at": utcnow(),
                "payment_state": "REFUNDED",
            },
            log,
        )
        log.info("webhook_refund_processed",
                 refund_id=data.get("refundId"),
                 stored_status=stored.status.value if stored else None)
        return merchant_transaction_id

    # =========================================================================
    # SERVER CALLBACK
    # =========================================================================

    async def handle_phonepe_callback(self, raw_body: bytes, headers: Mapping[str, str]) -> Dict[str, Any]:
        phonepe = self.settings.phonepe
        headers = {key.lower(): value for key, value in headers.items()}
        log = self._get_logger()

        if phonepe.salt_key:
            merchant_id = headers.get("x-merchant-id") or phonepe.merchant_id
            if not signature_verifier.verify_callback_signature(
                raw_body, headers.get("x-verify"), merchant_id, phonepe.salt_key, phonepe.salt_index
            ):
                log.warning("callback_signature_invalid", merchant_id=merchant_id)
                raise SignatureInvalid("Invalid signature")

        try:
            payload = json.loads(raw_body)
            if isinstance(payload.get("response"), str):
                payload = json.loads(base64.b64decode(payload["response"]))
            data = payload.get("data") or {}

            merchant_transaction_id = data.get("merchantTransactionId") or data.get("merchantOrderId")
            if not merchant_transaction_id:
                log.info("callback_without_transaction_id", code=payload.get("code"))
                return {"success": True, "message": "Callback received"}

            state = data.get("state")
            if not state and payload.get("code") == "PAYMENT_SUCCESS":
                state = "COMPLETED"
            instrument = data.get("paymentInstrument") or {}
            signal = ProviderStatus(
                order_id=data.get("transactionId"),
                state=state,
                amount=data.get("amount"),
                attempts=[PaymentAttempt(
                    transaction_id=data.get("transactionId"),
                    state=state,
                    payment_mode=instrument.get("type"),
                )],
            )

            log = log.bind(merchant_transaction_id=merchant_transaction_id)
            reconciled, stored = await self.reconciler.apply(merchant_transaction_id, signal)
            if stored is not None and stored.status == PaymentStatus.COMPLETED:
                await self._notify_once(merchant_transaction_id, log)
        except Exception as e:
            log.error("callback_processing_failed", error=str(e))
            return {"success": False, "error": str(e)}

        log.info("callback_processed", status=reconciled.status.value, code=payload.get("code"))
        return {
            "success": True,
            "message": "Callback received",
            "merchantTransactionId": merchant_transaction_id,
            "status": reconciled.status.value,
        }

    # =========================================================================
    # RECEIPTS & OPERATOR VIEWS
    # =========================================================================

    async def generate_receipt(self, request: ReceiptRequest) -> Tuple[bytes, str]:
        """Render a receipt PDF. Returns (pdf bytes, download filename)."""
        if not (request.transaction_id or request.merchant_transaction_id):
            raise ValidationError("Transaction ID is required")
        log = self._get_logger(request.merchant_transaction_id or request.transaction_id)

        record = None
        for key in (request.merchant_transaction_id, request.transaction_id):
            if key and record is None:
                record = await self._safe_get(key, log)

        if record is not None:
            data = ReceiptData.from_record(record)
        else:
            data = ReceiptData(
                transaction_id=request.transaction_id or request.merchant_transaction_id,
                merchant_transaction_id=request.merchant_transaction_id or request.transaction_id,
                payment_date=format_payment_date(),
            )

        if request.transaction_id:
            data.transaction_id = request.transaction_id
        if request.customer_name:
            data.customer_name = request.customer_name
        if request.service_name:
            data.service_name = request.service_name
        if request.amount is not None:
            data.amount_minor_units = request.amount
        if request.payment_date:
            data.payment_date = request.payment_date
        if request.message:
            data.message = request.message

        pdf_bytes = await asyncio.to_thread(generate_receipt_pdf, data)
        filename = f"receipt_{request.transaction_id or request.merchant_transaction_id}.pdf"
        log.info("receipt_generated", size=len(pdf_bytes), from_record=record is not None)
        return pdf_bytes, filename

    async def list_payments(
        self,
        status: Optional[PaymentStatus] = None,
        environment: Optional[Environment] = None,
        customer_email: Optional[str] = None,
    ) -> List[PaymentRecord]:
        return await self.store.list_payments(status, environment, customer_email)

    async def payment_stats(self) -> PaymentStats:
        return await self.store.stats()
