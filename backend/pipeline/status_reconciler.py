"""
Status Reconciler
=================
Merges a provider status reading with the local record into one status.

The provider reports order-level and attempt-level state inconsistently, so
success is a disjunction over every signal and, once seen, overrides any
pending or failed reading.
"""

from typing import Optional, Tuple

import structlog

from schemas.payment_definitions import (
    PaymentRecord,
    PaymentStatus,
    ProviderState,
    ProviderStatus,
    ReconciledStatus,
)
from storage.payment_store import IPaymentStore

logger = structlog.get_logger().bind(component="status_reconciler")


def _is(state: Optional[str], expected: ProviderState) -> bool:
    return (state or "").upper() == expected.value


def reconcile(
    local: Optional[PaymentRecord],
    signal: ProviderStatus,
    merchant_transaction_id: Optional[str] = None,
) -> ReconciledStatus:
    """Pure merge of a provider signal with the locally known record."""
    merchant_id = merchant_transaction_id or (local.merchant_transaction_id if local else None)
    latest = signal.latest_attempt
    completed_attempt = next(
        (a for a in signal.attempts if _is(a.state, ProviderState.COMPLETED)), None
    )

    signal_success = (
        _is(signal.state, ProviderState.COMPLETED)
        or completed_attempt is not None
        or (latest is not None and _is(latest.state, ProviderState.COMPLETED))
    )
    # A completed payment never moves back to pending or failed.
    settled = not signal_success and local is not None and local.status == PaymentStatus.COMPLETED
    is_success = signal_success or settled
    is_pending = (
        _is(signal.state, ProviderState.PENDING)
        or (latest is not None and _is(latest.state, ProviderState.PENDING))
    ) and not is_success
    is_failed = (
        _is(signal.state, ProviderState.FAILED)
        or (latest is not None and _is(latest.state, ProviderState.FAILED))
    ) and not is_success

    if is_success:
        status = PaymentStatus.COMPLETED
    elif is_pending:
        # Order still open at the provider; a failed attempt can be retried.
        status = PaymentStatus.PENDING
    elif is_failed:
        status = PaymentStatus.FAILED
    else:
        status = local.status if local else PaymentStatus.PENDING

    provider_transaction_id = (
        (completed_attempt.transaction_id if completed_attempt else None)
        or signal.order_id
        or (latest.transaction_id if latest else None)
        or merchant_id
        or ""
    )

    # Mode and timestamp come from the attempt that decided the outcome.
    deciding = completed_attempt or latest
    payment_mode = deciding.payment_mode if deciding else None
    payment_state = signal.state or (latest.state if latest else None)
    if settled:
        payment_mode = local.payment_mode or payment_mode
        payment_state = local.payment_state or ProviderState.COMPLETED.value
        provider_transaction_id = local.provider_transaction_id or provider_transaction_id
    return ReconciledStatus(
        status=status,
        is_success=is_success,
        is_pending=is_pending,
        is_failed=is_failed,
        provider_transaction_id=provider_transaction_id,
        order_id=signal.order_id,
        amount=signal.amount,
        expire_at=signal.expire_at,
        payment_mode=payment_mode,
        payment_state=payment_state,
        payment_timestamp=deciding.timestamp if deciding else None,
        error_code=(latest.error_code if latest else None) or signal.error_code,
        detailed_error_code=(
            (latest.detailed_error_code if latest else None) or signal.detailed_error_code
        ),
    )


class StatusReconciler:
    """Applies reconciled readings to the store."""

    def __init__(self, store: IPaymentStore):
        self.store = store

    async def apply(
        self,
        merchant_transaction_id: str,
        signal: ProviderStatus,
        local: Optional[PaymentRecord] = None,
    ) -> Tuple[ReconciledStatus, Optional[PaymentRecord]]:
        """Reconcile and write back. Returns (reconciled, stored record or None)."""
        if local is None:
            local = await self.store.get(merchant_transaction_id)
        reconciled = reconcile(local, signal, merchant_transaction_id)

        patch = {
            "provider_transaction_id": reconciled.provider_transaction_id,
            "payment_mode": reconciled.payment_mode,
            "payment_state": reconciled.payment_state,
        }
        if reconciled.is_failed:
            patch["error_code"] = reconciled.error_code
            patch["failure_reason"] = reconciled.detailed_error_code or reconciled.error_code
        patch = {k: v for k, v in patch.items() if v is not None}

        stored = await self.store.update(merchant_transaction_id, reconciled.status, patch)
        logger.info("status_reconciled",
                    merchant_transaction_id=merchant_transaction_id,
                    status=reconciled.status.value,
                    stored_status=stored.status.value if stored else None,
                    provider_state=signal.state,
                    attempts=len(signal.attempts))
        return reconciled, stored
