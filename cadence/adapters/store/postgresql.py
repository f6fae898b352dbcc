"""PostgreSQL billing store adapter.

Implements BillingStorePort using PostgreSQL with asyncpg for async access.
Provides ACID guarantees for billing state with scalability for production use.
Claimed order items are locked with FOR UPDATE SKIP LOCKED, so two runs
racing for the same owner never both bill the same items.
"""

import asyncio
import logging
from collections.abc import Mapping
from datetime import datetime
from typing import Any

import asyncpg

from cadence.core.errors import (
    ConcurrentProcessingConflict,
    CouponLimitReached,
    DuplicateCouponApplication,
)
from cadence.core.models import (
    AppliedCoupon,
    ChangeSet,
    Order,
    OrderItem,
    OrderItemCollection,
    OrderItemKind,
    Owner,
    RedeemedCoupon,
    RedeemedCouponStatus,
    Subscription,
    SubscriptionStatus,
)
from cadence.core.ports import BillingStorePort

logger = logging.getLogger(__name__)

_SCHEMA = (
    """
    CREATE TABLE IF NOT EXISTS owners (
        id TEXT PRIMARY KEY,
        tax_percentage NUMERIC NOT NULL DEFAULT 0,
        currency TEXT NOT NULL,
        mandate_id TEXT,
        customer_id TEXT,
        trial_ends_at TIMESTAMPTZ
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS subscriptions (
        seq BIGSERIAL,
        id TEXT PRIMARY KEY,
        owner_id TEXT NOT NULL REFERENCES owners(id),
        name TEXT NOT NULL,
        plan TEXT NOT NULL,
        quantity INTEGER NOT NULL CHECK (quantity >= 1),
        cycle_started_at TIMESTAMPTZ NOT NULL,
        cycle_ends_at TIMESTAMPTZ NOT NULL,
        status TEXT NOT NULL,
        trial_ends_at TIMESTAMPTZ,
        ends_at TIMESTAMPTZ,
        scheduled_order_item_id TEXT,
        version INTEGER NOT NULL DEFAULT 0,
        CHECK (cycle_started_at <= cycle_ends_at)
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS orders (
        seq BIGSERIAL,
        id TEXT PRIMARY KEY,
        owner_id TEXT NOT NULL REFERENCES owners(id),
        currency TEXT NOT NULL,
        subtotal BIGINT NOT NULL,
        tax BIGINT NOT NULL,
        total BIGINT NOT NULL,
        created_at TIMESTAMPTZ NOT NULL,
        item_ids TEXT[] NOT NULL DEFAULT ARRAY[]::TEXT[]
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS order_items (
        seq BIGSERIAL,
        id TEXT PRIMARY KEY,
        owner_id TEXT NOT NULL REFERENCES owners(id),
        subscription_id TEXT,
        currency TEXT NOT NULL,
        unit_price BIGINT NOT NULL,
        quantity INTEGER NOT NULL CHECK (quantity >= 1),
        tax_percentage NUMERIC NOT NULL,
        process_at TIMESTAMPTZ NOT NULL,
        description TEXT NOT NULL DEFAULT '',
        kind TEXT NOT NULL,
        order_id TEXT REFERENCES orders(id),
        applied_coupon_id TEXT
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS redeemed_coupons (
        seq BIGSERIAL,
        id TEXT PRIMARY KEY,
        name TEXT NOT NULL,
        owner_id TEXT NOT NULL,
        subscription_id TEXT,
        times_left INTEGER NOT NULL CHECK (times_left >= 0),
        status TEXT NOT NULL,
        redeemed_at TIMESTAMPTZ NOT NULL
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS applied_coupons (
        seq BIGSERIAL,
        id TEXT PRIMARY KEY,
        redeemed_coupon_id TEXT NOT NULL,
        owner_id TEXT NOT NULL,
        subscription_id TEXT NOT NULL,
        cycle_key TIMESTAMPTZ NOT NULL,
        order_item_id TEXT NOT NULL,
        amount BIGINT NOT NULL,
        applied_at TIMESTAMPTZ NOT NULL,
        UNIQUE (redeemed_coupon_id, cycle_key)
    )
    """,
    "CREATE INDEX IF NOT EXISTS idx_items_owner ON order_items(owner_id)",
    "CREATE INDEX IF NOT EXISTS idx_items_due ON order_items(process_at) WHERE order_id IS NULL",
    "CREATE INDEX IF NOT EXISTS idx_items_subscription ON order_items(subscription_id)",
    "CREATE INDEX IF NOT EXISTS idx_subscriptions_owner ON subscriptions(owner_id, name)",
    "CREATE INDEX IF NOT EXISTS idx_redeemed_owner ON redeemed_coupons(owner_id)",
)

_OWNER_COLUMNS = "id, tax_percentage, currency, mandate_id, customer_id, trial_ends_at"
_SUBSCRIPTION_COLUMNS = (
    "id, owner_id, name, plan, quantity, cycle_started_at, cycle_ends_at, "
    "status, trial_ends_at, ends_at, scheduled_order_item_id, version"
)
_ORDER_COLUMNS = "id, owner_id, currency, subtotal, tax, total, created_at, item_ids"
_ITEM_COLUMNS = (
    "id, owner_id, subscription_id, currency, unit_price, quantity, "
    "tax_percentage, process_at, description, kind, order_id, applied_coupon_id"
)
_REDEEMED_COLUMNS = "id, name, owner_id, subscription_id, times_left, status, redeemed_at"
_APPLIED_COLUMNS = (
    "id, redeemed_coupon_id, owner_id, subscription_id, cycle_key, "
    "order_item_id, amount, applied_at"
)


def _rowcount(status: str) -> int:
    """Rows affected, from a command status such as ``"UPDATE 1"``."""
    return int(status.split()[-1])


class PostgreSQLBillingStore(BillingStorePort):
    """PostgreSQL-backed billing store with connection pooling and async access."""

    def __init__(
        self,
        host: str = "localhost",
        port: int = 5432,
        database: str = "cadence",
        user: str = "cadence",
        password: str = "",
        pool_size: int = 10,
    ):
        """Initialize PostgreSQL store with connection pooling.

        Args:
            host: PostgreSQL server hostname.
            port: PostgreSQL server port.
            database: Database name.
            user: Database user.
            password: Database password.
            pool_size: Number of connections to maintain in the pool.
        """
        self.host = host
        self.port = port
        self.database = database
        self.user = user
        self.password = password
        self._pool: asyncpg.Pool | None = None
        self._pool_size = pool_size
        self._schema_lock = asyncio.Lock()
        self._schema_initialized = False

    async def _init_pool(self) -> None:
        """Initialize the connection pool on first use."""
        if self._pool is not None:
            return

        self._pool = await asyncpg.create_pool(
            host=self.host,
            port=self.port,
            database=self.database,
            user=self.user,
            password=self.password,
            min_size=1,
            max_size=self._pool_size,
        )

    async def close_pool(self) -> None:
        """Close all pooled connections."""
        if self._pool is not None:
            await self._pool.close()
            self._pool = None

    async def _init_schema(self) -> None:
        """Initialize database schema on first use.

        Only runs once per instance. Subsequent calls are no-ops.
        Uses dedicated _schema_lock to avoid contention with pool operations.
        """
        if self._schema_initialized:
            return

        async with self._schema_lock:
            # Check again after acquiring lock to prevent race
            if self._schema_initialized:
                return

            await self._init_pool()
            assert self._pool is not None

            async with self._pool.acquire() as conn:
                for statement in _SCHEMA:
                    await conn.execute(statement)
                self._schema_initialized = True

    async def _ready_pool(self) -> asyncpg.Pool:
        await self._init_schema()
        await self._init_pool()
        assert self._pool is not None
        return self._pool

    async def get_owner(self, owner_id: str) -> Owner | None:
        pool = await self._ready_pool()
        async with pool.acquire() as conn:
            row = await conn.fetchrow(
                f"SELECT {_OWNER_COLUMNS} FROM owners WHERE id = $1", owner_id
            )
            return self._row_to_owner(row) if row else None

    async def save_owner(self, owner: Owner) -> None:
        pool = await self._ready_pool()
        async with pool.acquire() as conn:
            await self._upsert_owner(conn, owner)

    async def get_subscription(self, subscription_id: str) -> Subscription | None:
        pool = await self._ready_pool()
        async with pool.acquire() as conn:
            row = await conn.fetchrow(
                f"SELECT {_SUBSCRIPTION_COLUMNS} FROM subscriptions WHERE id = $1",
                subscription_id,
            )
            return self._row_to_subscription(row) if row else None

    async def get_subscription_by_name(
        self, owner_id: str, name: str
    ) -> Subscription | None:
        pool = await self._ready_pool()
        async with pool.acquire() as conn:
            row = await conn.fetchrow(
                f"""
                SELECT {_SUBSCRIPTION_COLUMNS} FROM subscriptions
                WHERE owner_id = $1 AND name = $2
                ORDER BY seq DESC
                LIMIT 1
                """,
                owner_id,
                name,
            )
            return self._row_to_subscription(row) if row else None

    async def get_subscriptions(self, owner_id: str) -> list[Subscription]:
        pool = await self._ready_pool()
        async with pool.acquire() as conn:
            rows = await conn.fetch(
                f"SELECT {_SUBSCRIPTION_COLUMNS} FROM subscriptions "
                "WHERE owner_id = $1 ORDER BY seq",
                owner_id,
            )
            return [self._row_to_subscription(row) for row in rows]

    async def get_order_item(self, item_id: str) -> OrderItem | None:
        pool = await self._ready_pool()
        async with pool.acquire() as conn:
            row = await conn.fetchrow(
                f"SELECT {_ITEM_COLUMNS} FROM order_items WHERE id = $1", item_id
            )
            return self._row_to_item(row) if row else None

    async def get_order_items(
        self,
        owner_id: str | None = None,
        subscription_id: str | None = None,
        order_id: str | None = None,
    ) -> OrderItemCollection:
        clauses = []
        params: list[Any] = []
        for column, value in (
            ("owner_id", owner_id),
            ("subscription_id", subscription_id),
            ("order_id", order_id),
        ):
            if value is not None:
                params.append(value)
                clauses.append(f"{column} = ${len(params)}")
        where = f"WHERE {' AND '.join(clauses)}" if clauses else ""

        pool = await self._ready_pool()
        async with pool.acquire() as conn:
            rows = await conn.fetch(
                f"SELECT {_ITEM_COLUMNS} FROM order_items {where} ORDER BY process_at, seq",
                *params,
            )
            return OrderItemCollection(self._row_to_item(row) for row in rows)

    async def get_owner_ids_with_due_items(self, now: datetime) -> list[str]:
        pool = await self._ready_pool()
        async with pool.acquire() as conn:
            rows = await conn.fetch(
                """
                SELECT DISTINCT owner_id FROM order_items
                WHERE order_id IS NULL AND process_at <= $1
                ORDER BY owner_id
                """,
                now,
            )
            return [row["owner_id"] for row in rows]

    async def get_order(self, order_id: str) -> Order | None:
        pool = await self._ready_pool()
        async with pool.acquire() as conn:
            row = await conn.fetchrow(
                f"SELECT {_ORDER_COLUMNS} FROM orders WHERE id = $1", order_id
            )
            return self._row_to_order(row) if row else None

    async def get_orders(self, owner_id: str) -> list[Order]:
        pool = await self._ready_pool()
        async with pool.acquire() as conn:
            rows = await conn.fetch(
                f"SELECT {_ORDER_COLUMNS} FROM orders WHERE owner_id = $1 "
                "ORDER BY created_at, seq",
                owner_id,
            )
            return [self._row_to_order(row) for row in rows]

    async def get_redeemed_coupons(
        self, owner_id: str, subscription_id: str | None = None
    ) -> list[RedeemedCoupon]:
        pool = await self._ready_pool()
        async with pool.acquire() as conn:
            if subscription_id is None:
                rows = await conn.fetch(
                    f"SELECT {_REDEEMED_COLUMNS} FROM redeemed_coupons "
                    "WHERE owner_id = $1 ORDER BY redeemed_at, seq",
                    owner_id,
                )
            else:
                rows = await conn.fetch(
                    f"SELECT {_REDEEMED_COLUMNS} FROM redeemed_coupons "
                    "WHERE owner_id = $1 AND subscription_id = $2 "
                    "ORDER BY redeemed_at, seq",
                    owner_id,
                    subscription_id,
                )
            return [self._row_to_redeemed(row) for row in rows]

    async def count_redemptions(self, coupon_name: str) -> int:
        pool = await self._ready_pool()
        async with pool.acquire() as conn:
            return await conn.fetchval(
                "SELECT COUNT(*) FROM redeemed_coupons WHERE name = $1", coupon_name
            )

    async def has_applied_coupon(
        self, redeemed_coupon_id: str, cycle_key: datetime
    ) -> bool:
        pool = await self._ready_pool()
        async with pool.acquire() as conn:
            row = await conn.fetchrow(
                "SELECT 1 FROM applied_coupons WHERE redeemed_coupon_id = $1 AND cycle_key = $2",
                redeemed_coupon_id,
                cycle_key,
            )
            return row is not None

    async def get_applied_coupons(self, subscription_id: str) -> list[AppliedCoupon]:
        pool = await self._ready_pool()
        async with pool.acquire() as conn:
            rows = await conn.fetch(
                f"SELECT {_APPLIED_COLUMNS} FROM applied_coupons "
                "WHERE subscription_id = $1 ORDER BY cycle_key, seq",
                subscription_id,
            )
            return [self._row_to_applied(row) for row in rows]

    async def apply(self, changes: ChangeSet) -> None:
        """Commit a ChangeSet in one transaction, locking the claimed items."""
        pool = await self._ready_pool()
        async with pool.acquire() as conn:
            async with conn.transaction():
                await self._write_changes(conn, changes)
        for subscription in changes.unique_subscriptions():
            subscription.version += 1

    async def _write_changes(self, conn: asyncpg.Connection, changes: ChangeSet) -> None:
        for owner in changes.owners:
            await self._upsert_owner(conn, owner)
        for subscription in changes.unique_subscriptions():
            await self._upsert_subscription(conn, subscription)
        if changes.deleted_item_ids:
            deleted_ids = sorted(set(changes.deleted_item_ids))
            status = await conn.execute(
                "DELETE FROM order_items WHERE id = ANY($1::text[]) AND order_id IS NULL",
                deleted_ids,
            )
            if _rowcount(status) != len(deleted_ids):
                raise ConcurrentProcessingConflict(
                    f"Deleted {_rowcount(status)} of {len(deleted_ids)} order items; "
                    "the rest are gone or already processed"
                )

        if changes.order is not None:
            order = changes.order
            await conn.execute(
                f"INSERT INTO orders ({_ORDER_COLUMNS}) VALUES ($1, $2, $3, $4, $5, $6, $7, $8)",
                order.id,
                order.owner_id,
                order.currency,
                order.subtotal,
                order.tax,
                order.total,
                order.created_at,
                list(order.item_ids),
            )
            if changes.claim_item_ids:
                locked = await conn.fetch(
                    """
                    SELECT id FROM order_items
                    WHERE id = ANY($1::text[]) AND order_id IS NULL
                    FOR UPDATE SKIP LOCKED
                    """,
                    changes.claim_item_ids,
                )
                if len(locked) != len(changes.claim_item_ids):
                    raise ConcurrentProcessingConflict(
                        f"Locked {len(locked)} of {len(changes.claim_item_ids)} "
                        f"order items for order {order.id}"
                    )
                await conn.execute(
                    "UPDATE order_items SET order_id = $1 WHERE id = ANY($2::text[])",
                    order.id,
                    changes.claim_item_ids,
                )
        elif changes.claim_item_ids:
            raise ValueError("Claiming order items requires an order")

        if changes.new_items:
            await conn.executemany(
                f"INSERT INTO order_items ({_ITEM_COLUMNS}) "
                "VALUES ($1, $2, $3, $4, $5, $6, $7, $8, $9, $10, $11, $12)",
                [self._item_params(item) for item in changes.new_items],
            )
        for item in changes.updated_items:
            status = await conn.execute(
                """
                UPDATE order_items SET
                    owner_id = $2, subscription_id = $3, currency = $4, unit_price = $5,
                    quantity = $6, tax_percentage = $7, process_at = $8, description = $9,
                    kind = $10, order_id = $11, applied_coupon_id = $12
                WHERE id = $1 AND order_id IS NULL
                """,
                *self._item_params(item),
            )
            if _rowcount(status) == 0:
                raise ConcurrentProcessingConflict(
                    f"Order item {item.id} is gone or already processed"
                )

        for redeemed in changes.redeemed_coupons:
            await conn.execute(
                f"""
                INSERT INTO redeemed_coupons ({_REDEEMED_COLUMNS})
                VALUES ($1, $2, $3, $4, $5, $6, $7)
                ON CONFLICT (id) DO UPDATE SET
                    times_left = EXCLUDED.times_left,
                    status = EXCLUDED.status,
                    subscription_id = EXCLUDED.subscription_id
                """,
                redeemed.id,
                redeemed.name,
                redeemed.owner_id,
                redeemed.subscription_id,
                redeemed.times_left,
                redeemed.status.value,
                redeemed.redeemed_at,
            )
        for name, limit in changes.redemption_limits.items():
            # serializes concurrent redemptions of the same coupon
            await conn.execute("SELECT pg_advisory_xact_lock(hashtext($1))", name)
            count = await conn.fetchval(
                "SELECT COUNT(*) FROM redeemed_coupons WHERE name = $1", name
            )
            if count > limit:
                raise CouponLimitReached(
                    f"Coupon {name} reached its limit of {limit} redemptions"
                )
        for applied in changes.applied_coupons:
            try:
                await conn.execute(
                    f"INSERT INTO applied_coupons ({_APPLIED_COLUMNS}) "
                    "VALUES ($1, $2, $3, $4, $5, $6, $7, $8)",
                    applied.id,
                    applied.redeemed_coupon_id,
                    applied.owner_id,
                    applied.subscription_id,
                    applied.cycle_key,
                    applied.order_item_id,
                    applied.amount,
                    applied.applied_at,
                )
            except asyncpg.UniqueViolationError as e:
                raise DuplicateCouponApplication(
                    f"Coupon {applied.redeemed_coupon_id} already applied to cycle "
                    f"{applied.cycle_key.isoformat()}"
                ) from e

    @staticmethod
    async def _upsert_owner(conn: asyncpg.Connection, owner: Owner) -> None:
        await conn.execute(
            f"""
            INSERT INTO owners ({_OWNER_COLUMNS}) VALUES ($1, $2, $3, $4, $5, $6)
            ON CONFLICT (id) DO UPDATE SET
                tax_percentage = EXCLUDED.tax_percentage,
                currency = EXCLUDED.currency,
                mandate_id = EXCLUDED.mandate_id,
                customer_id = EXCLUDED.customer_id,
                trial_ends_at = EXCLUDED.trial_ends_at
            """,
            owner.id,
            owner.tax_percentage,
            owner.currency,
            owner.mandate_id,
            owner.customer_id,
            owner.trial_ends_at,
        )

    @staticmethod
    async def _upsert_subscription(conn: asyncpg.Connection, subscription: Subscription) -> None:
        """Insert, or update only if the row still has the loaded version."""
        status = await conn.execute(
            f"""
            INSERT INTO subscriptions ({_SUBSCRIPTION_COLUMNS})
            VALUES ($1, $2, $3, $4, $5, $6, $7, $8, $9, $10, $11, $12)
            ON CONFLICT (id) DO UPDATE SET
                plan = EXCLUDED.plan,
                quantity = EXCLUDED.quantity,
                cycle_started_at = EXCLUDED.cycle_started_at,
                cycle_ends_at = EXCLUDED.cycle_ends_at,
                status = EXCLUDED.status,
                trial_ends_at = EXCLUDED.trial_ends_at,
                ends_at = EXCLUDED.ends_at,
                scheduled_order_item_id = EXCLUDED.scheduled_order_item_id,
                version = EXCLUDED.version
            WHERE subscriptions.version = $13
            """,
            subscription.id,
            subscription.owner_id,
            subscription.name,
            subscription.plan,
            subscription.quantity,
            subscription.cycle_started_at,
            subscription.cycle_ends_at,
            subscription.status.value,
            subscription.trial_ends_at,
            subscription.ends_at,
            subscription.scheduled_order_item_id,
            subscription.version + 1,
            subscription.version,
        )
        if _rowcount(status) == 0:
            raise ConcurrentProcessingConflict(
                f"Subscription {subscription.id} changed since it was loaded"
            )

    @staticmethod
    def _item_params(item: OrderItem) -> tuple[Any, ...]:
        return (
            item.id,
            item.owner_id,
            item.subscription_id,
            item.currency,
            item.unit_price,
            item.quantity,
            item.tax_percentage,
            item.process_at,
            item.description,
            item.kind.value,
            item.order_id,
            item.applied_coupon_id,
        )

    @staticmethod
    def _row_to_owner(row: Mapping[str, Any]) -> Owner:
        return Owner(
            id=row["id"],
            tax_percentage=row["tax_percentage"],
            currency=row["currency"],
            mandate_id=row["mandate_id"],
            customer_id=row["customer_id"],
            trial_ends_at=row["trial_ends_at"],
        )

    @staticmethod
    def _row_to_subscription(row: Mapping[str, Any]) -> Subscription:
        return Subscription(
            id=row["id"],
            owner_id=row["owner_id"],
            name=row["name"],
            plan=row["plan"],
            quantity=row["quantity"],
            cycle_started_at=row["cycle_started_at"],
            cycle_ends_at=row["cycle_ends_at"],
            status=SubscriptionStatus(row["status"]),
            trial_ends_at=row["trial_ends_at"],
            ends_at=row["ends_at"],
            scheduled_order_item_id=row["scheduled_order_item_id"],
            version=row["version"],
        )

    @staticmethod
    def _row_to_order(row: Mapping[str, Any]) -> Order:
        return Order(
            id=row["id"],
            owner_id=row["owner_id"],
            currency=row["currency"],
            subtotal=row["subtotal"],
            tax=row["tax"],
            total=row["total"],
            created_at=row["created_at"],
            item_ids=tuple(row["item_ids"] or ()),
        )

    @staticmethod
    def _row_to_item(row: Mapping[str, Any]) -> OrderItem:
        return OrderItem(
            id=row["id"],
            owner_id=row["owner_id"],
            subscription_id=row["subscription_id"],
            currency=row["currency"],
            unit_price=row["unit_price"],
            quantity=row["quantity"],
            tax_percentage=row["tax_percentage"],
            process_at=row["process_at"],
            description=row["description"],
            kind=OrderItemKind(row["kind"]),
            order_id=row["order_id"],
            applied_coupon_id=row["applied_coupon_id"],
        )

    @staticmethod
    def _row_to_redeemed(row: Mapping[str, Any]) -> RedeemedCoupon:
        return RedeemedCoupon(
            id=row["id"],
            name=row["name"],
            owner_id=row["owner_id"],
            subscription_id=row["subscription_id"],
            times_left=row["times_left"],
            status=RedeemedCouponStatus(row["status"]),
            redeemed_at=row["redeemed_at"],
        )

    @staticmethod
    def _row_to_applied(row: Mapping[str, Any]) -> AppliedCoupon:
        return AppliedCoupon(
            id=row["id"],
            redeemed_coupon_id=row["redeemed_coupon_id"],
            owner_id=row["owner_id"],
            subscription_id=row["subscription_id"],
            cycle_key=row["cycle_key"],
            order_item_id=row["order_item_id"],
            amount=row["amount"],
            applied_at=row["applied_at"],
        )
