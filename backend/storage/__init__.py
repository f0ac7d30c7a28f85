# storage/__init__.py
# ============================================================================
# PORTFOLIO PAYMENTS — STORAGE MODULE
# ============================================================================
# Payment record persistence (in-memory or PostgreSQL)
# ============================================================================

from storage.payment_store import (
    IPaymentStore,
    InMemoryPaymentStore,
    PostgresPaymentStore,
    create_payment_store,
)

__all__ = [
    "IPaymentStore",
    "InMemoryPaymentStore",
    "PostgresPaymentStore",
    "create_payment_store",
]
