"""
Payment Errors
==============
One exception hierarchy for the payments pipeline. Every error carries the
HTTP status and machine-readable code the API layer renders.
"""

from typing import Any, Dict, List, Optional


class PaymentError(Exception):
    """Base class for all payment pipeline failures."""

    status_code: int = 500
    code: str = "payment_error"

    def __init__(
        self,
        message: str,
        *,
        status_code: Optional[int] = None,
        code: Optional[str] = None,
        details: Optional[Dict[str, Any]] = None,
    ):
        super().__init__(message)
        self.message = message
        if status_code is not None:
            self.status_code = status_code
        if code is not None:
            self.code = code
        self.details = details or {}

    def to_dict(self) -> Dict[str, Any]:
        body: Dict[str, Any] = {
            "success": False,
            "error": self.message,
            "errorCode": self.code,
        }
        if self.details:
            body["details"] = self.details
        return body


class ValidationError(PaymentError):
    """Bad or missing request input. Never retried."""

    status_code = 400
    code = "validation_error"


class ConfigurationError(PaymentError):
    """Required credentials or secrets are absent."""

    status_code = 500
    code = "configuration_error"

    def __init__(self, message: str, missing_keys: Optional[List[str]] = None):
        self.missing_keys = list(missing_keys or [])
        super().__init__(message, details={"missingVariables": self.missing_keys})


class ProviderError(PaymentError):
    """The payment provider answered with an error or could not be reached."""

    status_code = 502
    code = "provider_error"

    def __init__(
        self,
        message: str,
        *,
        provider_status: Optional[int] = None,
        status_code: Optional[int] = None,
        details: Optional[Dict[str, Any]] = None,
    ):
        self.provider_status = provider_status
        merged = dict(details or {})
        if provider_status is not None:
            merged.setdefault("providerStatus", provider_status)
        super().__init__(message, status_code=status_code, details=merged)


class ProviderTransientError(ProviderError):
    """Provider does not know the transaction yet (eventual consistency)."""

    status_code = 404
    code = "provider_not_found"


class ProviderAuthError(ProviderError):
    """Provider rejected our credentials."""

    status_code = 401
    code = "provider_auth_error"


class RetryExhaustedError(ProviderError):
    """Every status query attempt came back not-found."""

    status_code = 404
    code = "verification_pending"

    def __init__(self, message: str, attempts: int):
        self.attempts = attempts
        super().__init__(message, details={"attempts": attempts})


class NotificationError(PaymentError):
    """An email or SMS could not be delivered."""

    code = "notification_error"


class SignatureInvalid(PaymentError):
    """Webhook or callback signature did not match any accepted recipe."""

    status_code = 401
    code = "invalid_signature"


class StoreUnavailableError(PaymentError):
    """The payment record store could not be reached."""

    status_code = 503
    code = "store_unavailable"
