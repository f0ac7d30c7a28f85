# pipeline/signature_verifier.py
# ============================================================================
# PORTFOLIO PAYMENTS — SIGNATURE VERIFIER
# ============================================================================
# Webhook signatures arrive as "{digest}###{index}". The provider's exact
# canonical form is not pinned down, so an ordered list of named recipes is
# tried and the first match wins. Every recipe needs the shared secret.
# ============================================================================

import base64
import hashlib
import hmac
from dataclasses import dataclass
from typing import Callable, List, Optional, Tuple

import structlog

logger = structlog.get_logger().bind(component="signature_verifier")

SIGNATURE_SEPARATOR = "###"
WEBHOOK_PATH = "/pg/v1/webhook/"
STATUS_PATH = "/pg/v1/status/"


def _sha256_hex(data: bytes) -> str:
    return hashlib.sha256(data).hexdigest()


# ============================================================================
# SECTION 1: RECIPES
# ============================================================================

@dataclass(frozen=True)
class SignatureRecipe:
    name: str
    compute: Callable[[bytes, str, str], str]


def _body_webhook_path(body: bytes, secret: str, index: str) -> str:
    return _sha256_hex(body + f"{WEBHOOK_PATH}{secret}{index}".encode())


def _base64_body_webhook_path(body: bytes, secret: str, index: str) -> str:
    encoded = base64.b64encode(body)
    return _sha256_hex(encoded + f"{WEBHOOK_PATH}{secret}{index}".encode())


def _hmac_body(body: bytes, secret: str, index: str) -> str:
    return hmac.new(secret.encode(), body, hashlib.sha256).hexdigest()


def _body_secret_index(body: bytes, secret: str, index: str) -> str:
    return _sha256_hex(body + f"{secret}{index}".encode())


WEBHOOK_RECIPES: List[SignatureRecipe] = [
    SignatureRecipe("sha256_body_webhook_path", _body_webhook_path),
    SignatureRecipe("sha256_base64_body_webhook_path", _base64_body_webhook_path),
    SignatureRecipe("hmac_sha256_body", _hmac_body),
    SignatureRecipe("sha256_body_secret_index", _body_secret_index),
]


# ============================================================================
# SECTION 2: WEBHOOK VERIFICATION
# ============================================================================

def split_signature(received_signature: str, default_index: str) -> Tuple[str, str]:
    """Split "{digest}###{index}"; a missing index falls back to the default."""
    digest, _, index = received_signature.strip().partition(SIGNATURE_SEPARATOR)
    return digest.strip().lower(), (index.strip() or default_index)


def match_recipe(
    raw_body: bytes,
    received_signature: Optional[str],
    shared_secret: Optional[str],
    key_index: str = "1",
) -> Optional[str]:
    """Name of the first recipe that reproduces the digest, or None."""
    if not received_signature or not shared_secret:
        logger.warning("signature_inputs_missing",
                       has_signature=bool(received_signature),
                       has_secret=bool(shared_secret))
        return None

    digest, index = split_signature(received_signature, key_index)
    for recipe in WEBHOOK_RECIPES:
        candidate = recipe.compute(raw_body, shared_secret, index)
        if hmac.compare_digest(candidate.encode(), digest.encode()):
            logger.info("signature_verified", recipe=recipe.name, key_index=index)
            return recipe.name

    logger.warning("signature_mismatch",
                   key_index=index,
                   recipes_tried=len(WEBHOOK_RECIPES))
    return None


def verify(
    raw_body: bytes,
    received_signature: Optional[str],
    shared_secret: Optional[str],
    key_index: str = "1",
) -> bool:
    return match_recipe(raw_body, received_signature, shared_secret, key_index) is not None


# ============================================================================
# SECTION 3: CALLBACK AND CHECKOUT SIGNATURES
# ============================================================================

def callback_signature(raw_body: bytes, merchant_id: str, salt_key: str, salt_index: str) -> str:
    """X-VERIFY value PhonePe attaches to server callbacks."""
    encoded = base64.b64encode(raw_body)
    digest = _sha256_hex(encoded + f"{STATUS_PATH}{merchant_id}{salt_key}".encode())
    return f"{digest}{SIGNATURE_SEPARATOR}{salt_index}"


def verify_callback_signature(
    raw_body: bytes,
    received_signature: Optional[str],
    merchant_id: str,
    salt_key: str,
    salt_index: str,
) -> bool:
    if not received_signature:
        return False
    expected = callback_signature(raw_body, merchant_id, salt_key, salt_index)
    return hmac.compare_digest(expected.encode(), received_signature.strip().encode())


def razorpay_signature(order_id: str, payment_id: str, key_secret: str) -> str:
    return hmac.new(
        key_secret.encode(),
        f"{order_id}|{payment_id}".encode(),
        hashlib.sha256,
    ).hexdigest()


def verify_razorpay_signature(
    order_id: str,
    payment_id: str,
    received_signature: str,
    key_secret: str,
) -> bool:
    expected = razorpay_signature(order_id, payment_id, key_secret)
    return hmac.compare_digest(expected.encode(), received_signature.encode())
