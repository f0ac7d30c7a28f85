# schemas/payment_definitions.py
# ============================================================================
# PORTFOLIO PAYMENTS — PAYMENT DEFINITIONS
# ============================================================================
# Pydantic models shared by the store, the reconciliation pipeline and the
# HTTP surface. Field names are snake_case in Python and camelCase on the wire.
# ============================================================================

from datetime import datetime, timezone
from enum import Enum
from typing import Any, Dict, List, Optional

from pydantic import AliasChoices, BaseModel, ConfigDict, Field, computed_field
from pydantic.alias_generators import to_camel


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


class CamelModel(BaseModel):
    """Base model that reads and writes camelCase JSON."""

    model_config = ConfigDict(
        alias_generator=to_camel,
        populate_by_name=True,
        extra="ignore",
    )


# ============================================================================
# SECTION 1: ENUMS
# ============================================================================

class PaymentStatus(str, Enum):
    PENDING = "pending"
    COMPLETED = "completed"
    FAILED = "failed"
    REFUNDED = "refunded"


class Environment(str, Enum):
    SANDBOX = "sandbox"
    PRODUCTION = "production"


class PaymentProvider(str, Enum):
    PHONEPE = "phonepe"
    RAZORPAY = "razorpay"


class ProviderState(str, Enum):
    """Order and attempt states reported by PhonePe."""
    PENDING = "PENDING"
    COMPLETED = "COMPLETED"
    FAILED = "FAILED"


# Forward-only lifecycle. Success may supersede failure; refunded is final.
ALLOWED_TRANSITIONS: Dict[PaymentStatus, frozenset] = {
    PaymentStatus.PENDING: frozenset({
        PaymentStatus.PENDING, PaymentStatus.COMPLETED, PaymentStatus.FAILED,
    }),
    PaymentStatus.FAILED: frozenset({PaymentStatus.FAILED, PaymentStatus.COMPLETED}),
    PaymentStatus.COMPLETED: frozenset({PaymentStatus.COMPLETED, PaymentStatus.REFUNDED}),
    PaymentStatus.REFUNDED: frozenset({PaymentStatus.REFUNDED}),
}


def is_transition_allowed(current: PaymentStatus, requested: PaymentStatus) -> bool:
    return requested in ALLOWED_TRANSITIONS[current]


# ============================================================================
# SECTION 2: PAYMENT RECORD
# ============================================================================

class CustomerDetails(CamelModel):
    name: Optional[str] = None
    email: Optional[str] = None
    phone: Optional[str] = None
    message: Optional[str] = None

    def merged_over(self, fallback: Optional["CustomerDetails"]) -> "CustomerDetails":
        """Fill blank fields from an older copy of the same customer."""
        if fallback is None:
            return self
        return CustomerDetails(
            name=self.name or fallback.name,
            email=self.email or fallback.email,
            phone=self.phone or fallback.phone,
            message=self.message or fallback.message,
        )


class PaymentRecord(CamelModel):
    """Canonical view of one payment attempt, keyed by merchant transaction id."""

    merchant_transaction_id: str
    provider_transaction_id: Optional[str] = None
    status: PaymentStatus = PaymentStatus.PENDING
    amount_minor_units: int = 0
    customer: CustomerDetails = Field(default_factory=CustomerDetails)
    service_id: Optional[str] = None
    service_name: Optional[str] = None
    payment_mode: Optional[str] = None
    payment_state: Optional[str] = None
    error_code: Optional[str] = None
    failure_reason: Optional[str] = None
    refund_id: Optional[str] = None
    refund_amount_minor_units: Optional[int] = None
    refunded_at: Optional[datetime] = None
    notifications_sent: bool = False
    provider: PaymentProvider = PaymentProvider.PHONEPE
    environment: Environment = Environment.SANDBOX
    created_at: datetime = Field(default_factory=utcnow)
    updated_at: datetime = Field(default_factory=utcnow)

    @computed_field
    @property
    def amount_display(self) -> str:
        return format_amount(self.amount_minor_units)


# Fields update() is never allowed to touch.
IMMUTABLE_FIELDS = frozenset({
    "merchant_transaction_id",
    "amount_minor_units",
    "notifications_sent",
    "created_at",
})


def format_amount(minor_units: Optional[int]) -> str:
    """Paise to a two-decimal rupee string."""
    return f"{(minor_units or 0) / 100:.2f}"


# ============================================================================
# SECTION 3: PROVIDER STATUS
# ============================================================================

class PaymentAttempt(CamelModel):
    """One entry of a PhonePe order's paymentDetails list."""
    transaction_id: Optional[str] = None
    state: Optional[str] = None
    payment_mode: Optional[str] = None
    timestamp: Optional[int] = None
    amount: Optional[int] = None
    error_code: Optional[str] = None
    detailed_error_code: Optional[str] = None


class ProviderStatus(CamelModel):
    """Order status as reported by the provider's status API."""
    order_id: Optional[str] = None
    state: Optional[str] = None
    amount: Optional[int] = None
    expire_at: Optional[int] = None
    meta_info: Dict[str, Any] = Field(default_factory=dict)
    error_code: Optional[str] = None
    detailed_error_code: Optional[str] = None
    attempts: List[PaymentAttempt] = Field(
        default_factory=list,
        validation_alias=AliasChoices("paymentDetails", "payment_details", "attempts"),
    )

    @property
    def latest_attempt(self) -> Optional[PaymentAttempt]:
        return self.attempts[-1] if self.attempts else None


class ReconciledStatus(CamelModel):
    """Single authoritative reading merged from every provider signal."""
    status: PaymentStatus
    is_success: bool = False
    is_pending: bool = False
    is_failed: bool = False
    provider_transaction_id: str
    order_id: Optional[str] = None
    amount: Optional[int] = None
    expire_at: Optional[int] = None
    payment_mode: Optional[str] = None
    payment_state: Optional[str] = None
    payment_timestamp: Optional[int] = None
    error_code: Optional[str] = None
    detailed_error_code: Optional[str] = None


class PollResult(BaseModel):
    """Outcome of a bounded status query loop."""
    status: Optional[ProviderStatus] = None
    attempts: int = 0
    exhausted: bool = False
    last_error: Optional[str] = None

    @computed_field
    @property
    def found(self) -> bool:
        return self.status is not None


class DispatchReport(CamelModel):
    customer_email_sent: bool = False
    admin_email_sent: bool = False
    customer_sms_sent: bool = False
    admin_sms_sent: bool = False

    @computed_field
    @property
    def sms_sent(self) -> bool:
        return self.customer_sms_sent or self.admin_sms_sent


# ============================================================================
# SECTION 4: API REQUESTS
# ============================================================================

class CreatePhonePeOrderRequest(CamelModel):
    amount: Optional[float] = None
    service_id: Optional[str] = None
    service_name: Optional[str] = None
    customer_details: Optional[CustomerDetails] = None


class CreateRazorpayOrderRequest(CamelModel):
    amount: Optional[float] = None
    currency: str = "INR"
    service_id: Optional[str] = None
    service_name: Optional[str] = None
    customer_details: Optional[CustomerDetails] = None


class VerifyPhonePeRequest(CamelModel):
    merchant_transaction_id: Optional[str] = None


class VerifyRazorpayRequest(BaseModel):
    razorpay_order_id: Optional[str] = None
    razorpay_payment_id: Optional[str] = None
    razorpay_signature: Optional[str] = None


class ReceiptRequest(CamelModel):
    """Receipt fields; amount is in paise. Stored record fields fill the gaps."""
    transaction_id: Optional[str] = None
    merchant_transaction_id: Optional[str] = None
    customer_name: Optional[str] = None
    service_name: Optional[str] = None
    amount: Optional[int] = None
    payment_date: Optional[str] = None
    message: Optional[str] = Field(
        default=None,
        validation_alias=AliasChoices("message", "customerMessage", "customer_message"),
    )


class ContactRequest(CamelModel):
    """Portfolio contact form submission, forwarded to the site owner."""
    name: Optional[str] = None
    email: Optional[str] = None
    subject: Optional[str] = None
    message: Optional[str] = None


# ============================================================================
# SECTION 5: API RESPONSES
# ============================================================================

class OrderCreated(CamelModel):
    success: bool = True
    merchant_transaction_id: str
    order_id: Optional[str] = None
    redirect_url: Optional[str] = None
    state: Optional[str] = None
    expire_at: Optional[int] = None
    amount: int
    currency: str = "INR"
    key_id: Optional[str] = None


class VerificationResponse(CamelModel):
    """What the browser sees after polling a PhonePe payment."""
    success: bool = True
    payment_status: PaymentStatus
    order_id: Optional[str] = None
    merchant_transaction_id: str
    transaction_id: Optional[str] = None
    amount: Optional[int] = None
    expire_at: Optional[int] = None
    meta_info: Dict[str, Any] = Field(default_factory=dict)
    payment_mode: Optional[str] = None
    payment_state: Optional[str] = None
    payment_timestamp: Optional[int] = None
    error_code: Optional[str] = None
    detailed_error_code: Optional[str] = None
    is_pending: bool = False
    is_failed: bool = False
    is_completed: bool = False
    notifications_sent: bool = False
    warning: Optional[str] = None
    note: Optional[str] = None


class WebhookAck(CamelModel):
    success: bool = True
    message: str = "Webhook received"
    event: Optional[str] = None
    merchant_transaction_id: Optional[str] = None
    signature_verified: Optional[bool] = None
    recipe: Optional[str] = None
    error: Optional[str] = None


class PaymentStats(CamelModel):
    total: int = 0
    successful: int = 0
    failed: int = 0
    pending: int = 0
    refunded: int = 0
    total_amount_minor_units: int = 0
    by_environment: Dict[str, int] = Field(default_factory=dict)
