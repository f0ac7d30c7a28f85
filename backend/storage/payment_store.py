"""
Payment Record Store
====================
Persistence for PaymentRecord keyed by merchant transaction id.

- IPaymentStore: the narrow contract the pipeline depends on
- InMemoryPaymentStore: per-key asyncio locks, used when no database is set
- PostgresPaymentStore: asyncpg; the notification claim is one conditional UPDATE

Both implementations apply the status transition table inside their own
critical section, so a late or duplicate signal can never move a record
backwards.
"""

import asyncio
from abc import ABC, abstractmethod
from collections import defaultdict
from contextlib import asynccontextmanager
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional, Tuple

import asyncpg
import structlog

from database import Database
from pipeline.errors import StoreUnavailableError
from schemas.payment_definitions import (
    IMMUTABLE_FIELDS,
    CustomerDetails,
    Environment,
    PaymentRecord,
    PaymentStats,
    PaymentStatus,
    is_transition_allowed,
)

logger = structlog.get_logger().bind(component="payment_store")


# =============================================================================
# MERGE RULES
# =============================================================================

def _now() -> datetime:
    return datetime.now(timezone.utc)


def merge_upsert(existing: Optional[PaymentRecord], incoming: PaymentRecord) -> PaymentRecord:
    """
    Overlay ``incoming`` onto ``existing``.

    created_at and notifications_sent always come from the stored copy. The
    incoming status is kept only when the transition table allows it.
    """
    if existing is None:
        return incoming.model_copy(update={"updated_at": _now()}, deep=True)

    status = incoming.status
    if not is_transition_allowed(existing.status, incoming.status):
        logger.warning("status_transition_rejected",
                       merchant_transaction_id=existing.merchant_transaction_id,
                       current=existing.status.value,
                       requested=incoming.status.value,
                       operation="create")
        status = existing.status

    data = incoming.model_dump()
    data.update(
        status=status,
        created_at=existing.created_at,
        notifications_sent=existing.notifications_sent,
        updated_at=_now(),
    )
    return PaymentRecord.model_validate(data)


def apply_patch(
    existing: PaymentRecord,
    status: PaymentStatus,
    patch: Optional[Dict[str, Any]] = None,
) -> Optional[PaymentRecord]:
    """Return the patched record, or None when the transition is not allowed."""
    if not is_transition_allowed(existing.status, status):
        logger.warning("status_transition_rejected",
                       merchant_transaction_id=existing.merchant_transaction_id,
                       current=existing.status.value,
                       requested=status.value,
                       operation="update")
        return None

    data = existing.model_dump()
    for key, value in (patch or {}).items():
        if key in IMMUTABLE_FIELDS or key not in PaymentRecord.model_fields:
            continue
        if key == "customer":
            incoming = (
                value if isinstance(value, CustomerDetails)
                else CustomerDetails.model_validate(value or {})
            )
            data["customer"] = incoming.merged_over(existing.customer).model_dump()
            continue
        data[key] = value

    data.update(status=status, updated_at=_now())
    return PaymentRecord.model_validate(data)


def compute_stats(records: List[PaymentRecord]) -> PaymentStats:
    stats = PaymentStats(total=len(records))
    for record in records:
        if record.status == PaymentStatus.COMPLETED:
            stats.successful += 1
            stats.total_amount_minor_units += record.amount_minor_units
        elif record.status == PaymentStatus.FAILED:
            stats.failed += 1
        elif record.status == PaymentStatus.PENDING:
            stats.pending += 1
        elif record.status == PaymentStatus.REFUNDED:
            stats.refunded += 1
        env = record.environment.value
        stats.by_environment[env] = stats.by_environment.get(env, 0) + 1
    return stats


# =============================================================================
# INTERFACE
# =============================================================================

class IPaymentStore(ABC):
    """Payment record store contract"""

    backend_name: str = "abstract"

    @abstractmethod
    async def create(self, record: PaymentRecord) -> PaymentRecord:
        """Insert, or overlay onto the existing record with the same key."""
        pass

    @abstractmethod
    async def get(self, merchant_transaction_id: str) -> Optional[PaymentRecord]:
        pass

    @abstractmethod
    async def transition(
        self,
        merchant_transaction_id: str,
        status: PaymentStatus,
        patch: Optional[Dict[str, Any]] = None,
    ) -> Tuple[Optional[PaymentStatus], Optional[PaymentRecord]]:
        """
        Merge patch and set status under the key's critical section.

        Returns (status before the write, stored record). Both are None for
        unknown keys. A rejected transition returns the record unchanged, so
        callers compare the two statuses to learn whether this write moved it.
        """
        pass

    async def update(
        self,
        merchant_transaction_id: str,
        status: PaymentStatus,
        patch: Optional[Dict[str, Any]] = None,
    ) -> Optional[PaymentRecord]:
        """Merge patch and set status. None for unknown keys."""
        _, stored = await self.transition(merchant_transaction_id, status, patch)
        return stored

    @abstractmethod
    async def try_claim_notification(self, merchant_transaction_id: str) -> bool:
        """Atomic false -> true on notifications_sent. True only for the winner."""
        pass

    @abstractmethod
    async def list_payments(
        self,
        status: Optional[PaymentStatus] = None,
        environment: Optional[Environment] = None,
        customer_email: Optional[str] = None,
    ) -> List[PaymentRecord]:
        """Matching records, newest first."""
        pass

    @abstractmethod
    async def stats(self) -> PaymentStats:
        pass

    async def close(self) -> None:
        return None


# =============================================================================
# IN-MEMORY IMPLEMENTATION
# =============================================================================

class InMemoryPaymentStore(IPaymentStore):
    """In-process store. Every mutation of a key runs under that key's lock."""

    backend_name = "memory"

    def __init__(self):
        self._records: Dict[str, PaymentRecord] = {}
        self._locks: Dict[str, asyncio.Lock] = defaultdict(asyncio.Lock)
        self._locks_mutex = asyncio.Lock()

    async def _get_lock(self, key: str) -> asyncio.Lock:
        async with self._locks_mutex:
            return self._locks[key]

    async def create(self, record: PaymentRecord) -> PaymentRecord:
        lock = await self._get_lock(record.merchant_transaction_id)
        async with lock:
            existing = self._records.get(record.merchant_transaction_id)
            merged = merge_upsert(existing, record)
            self._records[merged.merchant_transaction_id] = merged
            logger.debug("payment_saved",
                         merchant_transaction_id=merged.merchant_transaction_id,
                         status=merged.status.value,
                         inserted=existing is None)
            return merged.model_copy(deep=True)

    async def get(self, merchant_transaction_id: str) -> Optional[PaymentRecord]:
        record = self._records.get(merchant_transaction_id)
        return record.model_copy(deep=True) if record else None

    async def transition(
        self,
        merchant_transaction_id: str,
        status: PaymentStatus,
        patch: Optional[Dict[str, Any]] = None,
    ) -> Tuple[Optional[PaymentStatus], Optional[PaymentRecord]]:
        lock = await self._get_lock(merchant_transaction_id)
        async with lock:
            existing = self._records.get(merchant_transaction_id)
            if existing is None:
                logger.info("payment_update_unknown",
                            merchant_transaction_id=merchant_transaction_id)
                return None, None
            patched = apply_patch(existing, status, patch)
            if patched is None:
                return existing.status, existing.model_copy(deep=True)
            self._records[merchant_transaction_id] = patched
            return existing.status, patched.model_copy(deep=True)

    async def try_claim_notification(self, merchant_transaction_id: str) -> bool:
        lock = await self._get_lock(merchant_transaction_id)
        async with lock:
            existing = self._records.get(merchant_transaction_id)
            if existing is None or existing.notifications_sent:
                return False
            self._records[merchant_transaction_id] = existing.model_copy(
                update={"notifications_sent": True, "updated_at": _now()}
            )
            return True

    async def list_payments(
        self,
        status: Optional[PaymentStatus] = None,
        environment: Optional[Environment] = None,
        customer_email: Optional[str] = None,
    ) -> List[PaymentRecord]:
        records = [
            r for r in list(self._records.values())
            if (status is None or r.status == status)
            and (environment is None or r.environment == environment)
            and (customer_email is None or r.customer.email == customer_email)
        ]
        records.sort(key=lambda r: r.created_at, reverse=True)
        return [r.model_copy(deep=True) for r in records]

    async def stats(self) -> PaymentStats:
        return compute_stats(list(self._records.values()))


# =============================================================================
# POSTGRES IMPLEMENTATION
# =============================================================================

_COLUMNS = [
    "merchant_transaction_id",
    "provider_transaction_id",
    "status",
    "amount_minor_units",
    "customer_name",
    "customer_email",
    "customer_phone",
    "customer_message",
    "service_id",
    "service_name",
    "payment_mode",
    "payment_state",
    "error_code",
    "failure_reason",
    "refund_id",
    "refund_amount_minor_units",
    "refunded_at",
    "notifications_sent",
    "provider",
    "environment",
    "created_at",
    "updated_at",
]

# Never taken from the incoming row on conflict.
_PRESERVED_ON_CONFLICT = {"merchant_transaction_id", "created_at", "notifications_sent"}

_UPSERT_SQL = """
    INSERT INTO payments ({columns})
    VALUES ({placeholders})
    ON CONFLICT (merchant_transaction_id) DO UPDATE SET {assignments}
""".format(
    columns=", ".join(_COLUMNS),
    placeholders=", ".join(f"${i}" for i in range(1, len(_COLUMNS) + 1)),
    assignments=", ".join(
        f"{c} = EXCLUDED.{c}" for c in _COLUMNS if c not in _PRESERVED_ON_CONFLICT
    ),
)


def _record_to_params(record: PaymentRecord) -> List[Any]:
    return [
        record.merchant_transaction_id,
        record.provider_transaction_id,
        record.status.value,
        record.amount_minor_units,
        record.customer.name,
        record.customer.email,
        record.customer.phone,
        record.customer.message,
        record.service_id,
        record.service_name,
        record.payment_mode,
        record.payment_state,
        record.error_code,
        record.failure_reason,
        record.refund_id,
        record.refund_amount_minor_units,
        record.refunded_at,
        record.notifications_sent,
        record.provider.value,
        record.environment.value,
        record.created_at,
        record.updated_at,
    ]


def _row_to_record(row: asyncpg.Record) -> PaymentRecord:
    data = dict(row)
    data["customer"] = {
        "name": data.pop("customer_name", None),
        "email": data.pop("customer_email", None),
        "phone": data.pop("customer_phone", None),
        "message": data.pop("customer_message", None),
    }
    return PaymentRecord.model_validate(data)


class PostgresPaymentStore(IPaymentStore):
    """Durable store on asyncpg. Row locks serialise writers per key."""

    backend_name = "postgres"

    def __init__(self, db: Database):
        self.db = db

    @asynccontextmanager
    async def _guard(self, operation: str, merchant_transaction_id: Optional[str] = None):
        try:
            yield
        except (asyncpg.PostgresError, asyncpg.InterfaceError, OSError) as e:
            logger.error("payment_store_unavailable",
                         operation=operation,
                         merchant_transaction_id=merchant_transaction_id,
                         error=str(e))
            raise StoreUnavailableError(f"Payment store unavailable during {operation}") from e

    async def create(self, record: PaymentRecord) -> PaymentRecord:
        key = record.merchant_transaction_id
        async with self._guard("create", key):
            async with self.db.acquire() as conn:
                async with conn.transaction():
                    row = await conn.fetchrow(
                        "SELECT * FROM payments WHERE merchant_transaction_id = $1 FOR UPDATE",
                        key,
                    )
                    merged = merge_upsert(_row_to_record(row) if row else None, record)
                    await conn.execute(_UPSERT_SQL, *_record_to_params(merged))
                    stored = await conn.fetchrow(
                        "SELECT * FROM payments WHERE merchant_transaction_id = $1", key
                    )
        return _row_to_record(stored)

    async def get(self, merchant_transaction_id: str) -> Optional[PaymentRecord]:
        async with self._guard("get", merchant_transaction_id):
            row = await self.db.fetch_one(
                "SELECT * FROM payments WHERE merchant_transaction_id = $1",
                merchant_transaction_id,
            )
        return _row_to_record(row) if row else None

    async def transition(
        self,
        merchant_transaction_id: str,
        status: PaymentStatus,
        patch: Optional[Dict[str, Any]] = None,
    ) -> Tuple[Optional[PaymentStatus], Optional[PaymentRecord]]:
        async with self._guard("update", merchant_transaction_id):
            async with self.db.acquire() as conn:
                async with conn.transaction():
                    row = await conn.fetchrow(
                        "SELECT * FROM payments WHERE merchant_transaction_id = $1 FOR UPDATE",
                        merchant_transaction_id,
                    )
                    if row is None:
                        logger.info("payment_update_unknown",
                                    merchant_transaction_id=merchant_transaction_id)
                        return None, None
                    existing = _row_to_record(row)
                    patched = apply_patch(existing, status, patch)
                    if patched is None:
                        return existing.status, existing
                    await conn.execute(_UPSERT_SQL, *_record_to_params(patched))
                    return existing.status, patched

    async def try_claim_notification(self, merchant_transaction_id: str) -> bool:
        async with self._guard("claim", merchant_transaction_id):
            row = await self.db.fetch_one(
                """
                UPDATE payments
                SET notifications_sent = TRUE, updated_at = NOW()
                WHERE merchant_transaction_id = $1 AND notifications_sent = FALSE
                RETURNING merchant_transaction_id
                """,
                merchant_transaction_id,
            )
        return row is not None

    async def list_payments(
        self,
        status: Optional[PaymentStatus] = None,
        environment: Optional[Environment] = None,
        customer_email: Optional[str] = None,
    ) -> List[PaymentRecord]:
        conditions = []
        params: List[Any] = []

        if status is not None:
            params.append(status.value)
            conditions.append(f"status = ${len(params)}")
        if environment is not None:
            params.append(environment.value)
            conditions.append(f"environment = ${len(params)}")
        if customer_email:
            params.append(customer_email)
            conditions.append(f"customer_email = ${len(params)}")

        where_clause = f"WHERE {' AND '.join(conditions)}" if conditions else ""
        query = f"SELECT * FROM payments {where_clause} ORDER BY created_at DESC"

        async with self._guard("list"):
            rows = await self.db.fetch_all(query, *params)
        return [_row_to_record(row) for row in rows]

    async def stats(self) -> PaymentStats:
        async with self._guard("stats"):
            totals = await self.db.fetch_one(
                """
                SELECT
                    COUNT(*) AS total,
                    COUNT(*) FILTER (WHERE status = 'completed') AS successful,
                    COUNT(*) FILTER (WHERE status = 'failed') AS failed,
                    COUNT(*) FILTER (WHERE status = 'pending') AS pending,
                    COUNT(*) FILTER (WHERE status = 'refunded') AS refunded,
                    COALESCE(SUM(amount_minor_units) FILTER (WHERE status = 'completed'), 0)
                        AS total_amount_minor_units
                FROM payments
                """
            )
            by_env = await self.db.fetch_all(
                "SELECT environment, COUNT(*) AS count FROM payments GROUP BY environment"
            )
        stats = PaymentStats.model_validate(dict(totals)) if totals else PaymentStats()
        stats.by_environment = {row["environment"]: row["count"] for row in by_env}
        return stats

    async def close(self) -> None:
        await self.db.close()


# =============================================================================
# FACTORY
# =============================================================================

async def create_payment_store(
    database_url: str = "",
    min_pool_size: int = 1,
    max_pool_size: int = 10,
) -> IPaymentStore:
    """Postgres when a database URL is configured, in-memory otherwise."""
    if not database_url:
        logger.info("payment_store_selected", backend=InMemoryPaymentStore.backend_name)
        return InMemoryPaymentStore()

    db = Database(database_url, min_pool_size=min_pool_size, max_pool_size=max_pool_size)
    await db.initialize()
    logger.info("payment_store_selected", backend=PostgresPaymentStore.backend_name)
    return PostgresPaymentStore(db)
