# config.py
# ============================================================================
# PORTFOLIO PAYMENTS — SETTINGS
# ============================================================================
# Environment-driven configuration. Components receive the slice they need
# from a single Settings instance built at startup.
# ============================================================================

import os
from dataclasses import dataclass, field
from functools import lru_cache
from typing import List, Optional


def _env_bool(name: str, default: bool = False) -> bool:
    raw = os.getenv(name)
    if raw is None:
        return default
    return raw.strip().lower() in ("1", "true", "yes", "y", "on")


def _env_list(name: str) -> List[str]:
    raw = os.getenv(name, "")
    return [item.strip() for item in raw.split(",") if item.strip()]


def mask_secret(value: Optional[str]) -> str:
    """Render a credential for logs without leaking it."""
    if not value:
        return "<unset>"
    if len(value) <= 6:
        return "***"
    return f"{value[:3]}***{value[-2:]}"


# ============================================================================
# SECTION 1: PROVIDER SETTINGS
# ============================================================================

@dataclass
class PhonePeSettings:
    """PhonePe Standard Checkout credentials and behaviour."""
    client_id: str = ""
    client_secret: str = ""
    client_version: str = "1"
    client_index: str = "1"
    environment: str = "SANDBOX"
    merchant_id: str = ""
    salt_key: str = ""
    salt_index: str = "1"
    status_max_attempts: int = 3
    status_retry_delay: float = 2.0
    timeout_seconds: float = 15.0

    @property
    def is_production(self) -> bool:
        return self.environment.upper() == "PRODUCTION"

    @property
    def environment_label(self) -> str:
        return "production" if self.is_production else "sandbox"

    def missing_credentials(self) -> List[str]:
        missing = []
        if not self.client_id:
            missing.append("PHONEPE_CLIENT_ID")
        if not self.client_secret:
            missing.append("PHONEPE_CLIENT_SECRET")
        return missing

    @classmethod
    def from_env(cls) -> "PhonePeSettings":
        return cls(
            client_id=os.getenv("PHONEPE_CLIENT_ID", ""),
            client_secret=os.getenv("PHONEPE_CLIENT_SECRET", ""),
            client_version=os.getenv("PHONEPE_CLIENT_VERSION", "1"),
            client_index=os.getenv("PHONEPE_CLIENT_INDEX", "1") or "1",
            environment=os.getenv("PHONEPE_ENVIRONMENT", "SANDBOX").upper(),
            merchant_id=os.getenv("PHONEPE_MERCHANT_ID", ""),
            salt_key=os.getenv("PHONEPE_SALT_KEY", ""),
            salt_index=os.getenv("PHONEPE_SALT_INDEX", "1") or "1",
            status_max_attempts=int(os.getenv("PHONEPE_STATUS_MAX_ATTEMPTS", "3")),
            status_retry_delay=float(os.getenv("PHONEPE_STATUS_RETRY_DELAY", "2.0")),
            timeout_seconds=float(os.getenv("PHONEPE_TIMEOUT", "15.0")),
        )


@dataclass
class RazorpaySettings:
    """Razorpay Orders API credentials."""
    key_id: str = ""
    key_secret: str = ""
    timeout_seconds: float = 15.0

    def missing_credentials(self) -> List[str]:
        missing = []
        if not self.key_id:
            missing.append("RAZORPAY_KEY_ID")
        if not self.key_secret:
            missing.append("RAZORPAY_KEY_SECRET")
        return missing

    @classmethod
    def from_env(cls) -> "RazorpaySettings":
        return cls(
            key_id=os.getenv("RAZORPAY_KEY_ID", ""),
            key_secret=os.getenv("RAZORPAY_KEY_SECRET", ""),
        )


# ============================================================================
# SECTION 2: NOTIFICATION SETTINGS
# ============================================================================

@dataclass
class EmailSettings:
    """SMTP mailbox used for receipts and operator alerts."""
    user: str = ""
    password: str = ""
    host: str = "smtpout.secureserver.net"
    port: int = 465
    use_ssl: bool = True
    timeout_seconds: int = 30
    from_name: str = "Payments"
    admin_emails: List[str] = field(default_factory=list)
    attach_receipt_for_admin: bool = True

    @property
    def configured(self) -> bool:
        return bool(self.user and self.password)

    @property
    def operator_addresses(self) -> List[str]:
        """The mailbox owner plus any extra operator addresses, deduplicated."""
        addresses: List[str] = []
        for address in [self.user, *self.admin_emails]:
            if address and address not in addresses:
                addresses.append(address)
        return addresses

    @classmethod
    def from_env(cls) -> "EmailSettings":
        return cls(
            user=os.getenv("EMAIL_USER", ""),
            password=os.getenv("EMAIL_PASS", ""),
            host=os.getenv("SMTP_HOST", "smtpout.secureserver.net"),
            port=int(os.getenv("SMTP_PORT", "465")),
            use_ssl=_env_bool("SMTP_USE_SSL", True),
            from_name=os.getenv("EMAIL_FROM_NAME", "Payments"),
            admin_emails=_env_list("ADMIN_EMAILS"),
            attach_receipt_for_admin=_env_bool("ADMIN_ATTACH_RECEIPT", True),
        )


@dataclass
class SmsSettings:
    """Twilio credentials for operator and customer text messages."""
    account_sid: str = ""
    auth_token: str = ""
    from_number: str = ""
    admin_number: str = ""
    default_country_code: str = "+91"
    timeout_seconds: float = 15.0

    @property
    def configured(self) -> bool:
        return bool(self.account_sid and self.auth_token and self.from_number)

    @classmethod
    def from_env(cls) -> "SmsSettings":
        return cls(
            account_sid=os.getenv("TWILIO_ACCOUNT_SID", ""),
            auth_token=os.getenv("TWILIO_AUTH_TOKEN", ""),
            from_number=os.getenv("TWILIO_PHONE_NUMBER", ""),
            admin_number=os.getenv("MY_PHONE_NUMBER", ""),
            default_country_code=os.getenv("DEFAULT_COUNTRY_CODE", "+91"),
        )


# ============================================================================
# SECTION 3: APPLICATION SETTINGS
# ============================================================================

@dataclass
class Settings:
    """Top-level settings for the payments service."""
    env: str = "development"
    port: int = 8000
    log_level: str = "INFO"
    log_format: str = "console"
    cors_origins: List[str] = field(default_factory=lambda: ["*"])
    public_base_url: str = "http://localhost:3000"
    database_url: str = ""
    db_min_pool_size: int = 1
    db_max_pool_size: int = 10
    phonepe: PhonePeSettings = field(default_factory=PhonePeSettings)
    razorpay: RazorpaySettings = field(default_factory=RazorpaySettings)
    email: EmailSettings = field(default_factory=EmailSettings)
    sms: SmsSettings = field(default_factory=SmsSettings)

    @property
    def is_development(self) -> bool:
        return self.env == "development"

    @classmethod
    def from_env(cls) -> "Settings":
        env = os.getenv("ENV", "development")
        return cls(
            env=env,
            port=int(os.getenv("PORT", "8000")),
            log_level=os.getenv("LOG_LEVEL", "INFO").upper(),
            log_format=os.getenv("LOG_FORMAT", "console" if env == "development" else "json"),
            cors_origins=_env_list("CORS_ORIGINS") or ["*"],
            public_base_url=os.getenv("PUBLIC_BASE_URL", "http://localhost:3000").rstrip("/"),
            database_url=os.getenv("DATABASE_URL", ""),
            db_min_pool_size=int(os.getenv("DB_MIN_POOL_SIZE", "1")),
            db_max_pool_size=int(os.getenv("DB_MAX_POOL_SIZE", "10")),
            phonepe=PhonePeSettings.from_env(),
            razorpay=RazorpaySettings.from_env(),
            email=EmailSettings.from_env(),
            sms=SmsSettings.from_env(),
        )


@lru_cache(maxsize=1)
def get_settings() -> Settings:
    """Process-wide settings, read once from the environment."""
    return Settings.from_env()
