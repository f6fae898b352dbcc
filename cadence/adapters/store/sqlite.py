"""SQLite billing store adapter.

Implements BillingStorePort using SQLite with aiosqlite for async access.
Provides ACID guarantees for billing state with zero operational overhead.
Timestamps are stored as UTC ISO-8601 text with fixed precision so that
string comparison orders them; tax percentages are stored as text so no
float ever touches them.
"""

import asyncio
import json
import logging
import sqlite3
from datetime import datetime, timezone
from decimal import Decimal
from pathlib import Path
from typing import Any

import aiosqlite

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
        tax_percentage TEXT NOT NULL DEFAULT '0',
        currency TEXT NOT NULL,
        mandate_id TEXT,
        customer_id TEXT,
        trial_ends_at TEXT
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS subscriptions (
        id TEXT PRIMARY KEY,
        owner_id TEXT NOT NULL,
        name TEXT NOT NULL,
        plan TEXT NOT NULL,
        quantity INTEGER NOT NULL,
        cycle_started_at TEXT NOT NULL,
        cycle_ends_at TEXT NOT NULL,
        status TEXT NOT NULL,
        trial_ends_at TEXT,
        ends_at TEXT,
        scheduled_order_item_id TEXT,
        version INTEGER NOT NULL DEFAULT 0
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS orders (
        id TEXT PRIMARY KEY,
        owner_id TEXT NOT NULL,
        currency TEXT NOT NULL,
        subtotal INTEGER NOT NULL,
        tax INTEGER NOT NULL,
        total INTEGER NOT NULL,
        created_at TEXT NOT NULL,
        item_ids TEXT NOT NULL DEFAULT '[]'
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS order_items (
        id TEXT PRIMARY KEY,
        owner_id TEXT NOT NULL,
        subscription_id TEXT,
        currency TEXT NOT NULL,
        unit_price INTEGER NOT NULL,
        quantity INTEGER NOT NULL,
        tax_percentage TEXT NOT NULL,
        process_at TEXT NOT NULL,
        description TEXT NOT NULL DEFAULT '',
        kind TEXT NOT NULL,
        order_id TEXT,
        applied_coupon_id TEXT
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS redeemed_coupons (
        id TEXT PRIMARY KEY,
        name TEXT NOT NULL,
        owner_id TEXT NOT NULL,
        subscription_id TEXT,
        times_left INTEGER NOT NULL,
        status TEXT NOT NULL,
        redeemed_at TEXT NOT NULL
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS applied_coupons (
        id TEXT PRIMARY KEY,
        redeemed_coupon_id TEXT NOT NULL,
        owner_id TEXT NOT NULL,
        subscription_id TEXT NOT NULL,
        cycle_key TEXT NOT NULL,
        order_item_id TEXT NOT NULL,
        amount INTEGER NOT NULL,
        applied_at TEXT NOT NULL,
        UNIQUE (redeemed_coupon_id, cycle_key)
    )
    """,
    "CREATE INDEX IF NOT EXISTS idx_items_owner ON order_items(owner_id)",
    "CREATE INDEX IF NOT EXISTS idx_items_due ON order_items(order_id, process_at)",
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


def _ts(value: datetime | None) -> str | None:
    """Serialize a timestamp as sortable UTC text."""
    if value is None:
        return None
    if value.tzinfo is None:
        value = value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc).isoformat(timespec="microseconds")


def _parse_ts(value: str | None) -> datetime | None:
    if value is None:
        return None
    return datetime.fromisoformat(value)


class SQLiteBillingStore(BillingStorePort):
    """SQLite-backed billing store with connection pooling and async access."""

    def __init__(self, db_path: str, pool_size: int = 5):
        """Initialize SQLite store with connection pooling.

        Args:
            db_path: Path to SQLite database file.
            pool_size: Number of connections to maintain in the pool.
        """
        self.db_path = Path(db_path)
        self.db_path.parent.mkdir(parents=True, exist_ok=True)
        self._pool: list[aiosqlite.Connection] = []
        self._pool_lock = asyncio.Lock()
        self._schema_lock = asyncio.Lock()
        self._pool_size = pool_size
        self._schema_initialized = False

    async def _get_connection(self) -> aiosqlite.Connection:
        """Get a connection from the pool or create a new one."""
        async with self._pool_lock:
            if self._pool:
                return self._pool.pop()
        # Autocommit mode; apply() manages its own transaction
        conn = await aiosqlite.connect(str(self.db_path), isolation_level=None)
        await conn.execute("PRAGMA busy_timeout = 5000")
        return conn

    async def _return_connection(self, conn: aiosqlite.Connection) -> None:
        """Return a connection to the pool."""
        async with self._pool_lock:
            if len(self._pool) < self._pool_size:
                self._pool.append(conn)
                return
        await conn.close()

    async def close_pool(self) -> None:
        """Close all pooled connections."""
        async with self._pool_lock:
            for conn in self._pool:
                await conn.close()
            self._pool.clear()

    async def _init_schema(self) -> None:
        """Initialize database schema on first use.

        Only runs once per instance. Subsequent calls are no-ops.
        """
        if self._schema_initialized:
            return

        async with self._schema_lock:
            # Check again after acquiring lock to prevent race
            if self._schema_initialized:
                return

            conn = await self._get_connection()
            try:
                for statement in _SCHEMA:
                    await conn.execute(statement)
                self._schema_initialized = True
            finally:
                await self._return_connection(conn)

    async def _fetchone(self, sql: str, params: tuple[Any, ...]) -> tuple[Any, ...] | None:
        await self._init_schema()
        conn = await self._get_connection()
        try:
            cursor = await conn.execute(sql, params)
            return await cursor.fetchone()
        finally:
            await self._return_connection(conn)

    async def _fetchall(self, sql: str, params: tuple[Any, ...] = ()) -> list[tuple[Any, ...]]:
        await self._init_schema()
        conn = await self._get_connection()
        try:
            cursor = await conn.execute(sql, params)
            return list(await cursor.fetchall())
        finally:
            await self._return_connection(conn)

    # ------------------------------------------------------------------
    # Reads
    # ------------------------------------------------------------------

    async def get_owner(self, owner_id: str) -> Owner | None:
        row = await self._fetchone(
            f"SELECT {_OWNER_COLUMNS} FROM owners WHERE id = ?", (owner_id,)
        )
        return self._row_to_owner(row) if row else None

    async def save_owner(self, owner: Owner) -> None:
        await self._init_schema()
        conn = await self._get_connection()
        try:
            await self._upsert_owner(conn, owner)
        finally:
            await self._return_connection(conn)

    async def get_subscription(self, subscription_id: str) -> Subscription | None:
        row = await self._fetchone(
            f"SELECT {_SUBSCRIPTION_COLUMNS} FROM subscriptions WHERE id = ?",
            (subscription_id,),
        )
        return self._row_to_subscription(row) if row else None

    async def get_subscription_by_name(
        self, owner_id: str, name: str
    ) -> Subscription | None:
        row = await self._fetchone(
            f"""
            SELECT {_SUBSCRIPTION_COLUMNS} FROM subscriptions
            WHERE owner_id = ? AND name = ?
            ORDER BY rowid DESC
            LIMIT 1
            """,
            (owner_id, name),
        )
        return self._row_to_subscription(row) if row else None

    async def get_subscriptions(self, owner_id: str) -> list[Subscription]:
        rows = await self._fetchall(
            f"SELECT {_SUBSCRIPTION_COLUMNS} FROM subscriptions "
            "WHERE owner_id = ? ORDER BY rowid",
            (owner_id,),
        )
        return [self._row_to_subscription(row) for row in rows]

    async def get_order_item(self, item_id: str) -> OrderItem | None:
        row = await self._fetchone(
            f"SELECT {_ITEM_COLUMNS} FROM order_items WHERE id = ?", (item_id,)
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
                clauses.append(f"{column} = ?")
                params.append(value)
        where = f"WHERE {' AND '.join(clauses)}" if clauses else ""
        rows = await self._fetchall(
            f"SELECT {_ITEM_COLUMNS} FROM order_items {where} ORDER BY process_at, rowid",
            tuple(params),
        )
        return OrderItemCollection(self._row_to_item(row) for row in rows)

    async def get_owner_ids_with_due_items(self, now: datetime) -> list[str]:
        rows = await self._fetchall(
            """
            SELECT DISTINCT owner_id FROM order_items
            WHERE order_id IS NULL AND process_at <= ?
            ORDER BY owner_id
            """,
            (_ts(now),),
        )
        return [row[0] for row in rows]

    async def get_order(self, order_id: str) -> Order | None:
        row = await self._fetchone(
            f"SELECT {_ORDER_COLUMNS} FROM orders WHERE id = ?", (order_id,)
        )
        return self._row_to_order(row) if row else None

    async def get_orders(self, owner_id: str) -> list[Order]:
        rows = await self._fetchall(
            f"SELECT {_ORDER_COLUMNS} FROM orders WHERE owner_id = ? "
            "ORDER BY created_at, rowid",
            (owner_id,),
        )
        return [self._row_to_order(row) for row in rows]

    async def get_redeemed_coupons(
        self, owner_id: str, subscription_id: str | None = None
    ) -> list[RedeemedCoupon]:
        if subscription_id is None:
            rows = await self._fetchall(
                f"SELECT {_REDEEMED_COLUMNS} FROM redeemed_coupons "
                "WHERE owner_id = ? ORDER BY redeemed_at, rowid",
                (owner_id,),
            )
        else:
            rows = await self._fetchall(
                f"SELECT {_REDEEMED_COLUMNS} FROM redeemed_coupons "
                "WHERE owner_id = ? AND subscription_id = ? ORDER BY redeemed_at, rowid",
                (owner_id, subscription_id),
            )
        return [self._row_to_redeemed(row) for row in rows]

    async def count_redemptions(self, coupon_name: str) -> int:
        row = await self._fetchone(
            "SELECT COUNT(*) FROM redeemed_coupons WHERE name = ?", (coupon_name,)
        )
        return row[0] if row else 0

    async def has_applied_coupon(
        self, redeemed_coupon_id: str, cycle_key: datetime
    ) -> bool:
        row = await self._fetchone(
            "SELECT 1 FROM applied_coupons WHERE redeemed_coupon_id = ? AND cycle_key = ?",
            (redeemed_coupon_id, _ts(cycle_key)),
        )
        return row is not None

    async def get_applied_coupons(self, subscription_id: str) -> list[AppliedCoupon]:
        rows = await self._fetchall(
            f"SELECT {_APPLIED_COLUMNS} FROM applied_coupons "
            "WHERE subscription_id = ? ORDER BY cycle_key, rowid",
            (subscription_id,),
        )
        return [self._row_to_applied(row) for row in rows]

    # ------------------------------------------------------------------
    # Unit of work
    # ------------------------------------------------------------------

    async def apply(self, changes: ChangeSet) -> None:
        """Commit a ChangeSet in one IMMEDIATE transaction."""
        await self._init_schema()
        conn = await self._get_connection()
        try:
            await conn.execute("BEGIN IMMEDIATE")
            try:
                await self._write_changes(conn, changes)
            except BaseException:
                await conn.execute("ROLLBACK")
                raise
            await conn.execute("COMMIT")
        finally:
            await self._return_connection(conn)
        for subscription in changes.unique_subscriptions():
            subscription.version += 1

    async def _write_changes(self, conn: aiosqlite.Connection, changes: ChangeSet) -> None:
        for owner in changes.owners:
            await self._upsert_owner(conn, owner)
        for subscription in changes.unique_subscriptions():
            await self._upsert_subscription(conn, subscription)
        for item_id in changes.deleted_item_ids:
            cursor = await conn.execute(
                "DELETE FROM order_items WHERE id = ? AND order_id IS NULL", (item_id,)
            )
            if cursor.rowcount == 0:
                raise ConcurrentProcessingConflict(
                    f"Order item {item_id} is gone or already processed"
                )

        if changes.order is not None:
            order = changes.order
            await conn.execute(
                f"INSERT INTO orders ({_ORDER_COLUMNS}) VALUES (?, ?, ?, ?, ?, ?, ?, ?)",
                (
                    order.id,
                    order.owner_id,
                    order.currency,
                    order.subtotal,
                    order.tax,
                    order.total,
                    _ts(order.created_at),
                    json.dumps(list(order.item_ids)),
                ),
            )
            if changes.claim_item_ids:
                placeholders = ", ".join("?" for _ in changes.claim_item_ids)
                cursor = await conn.execute(
                    f"""
                    UPDATE order_items SET order_id = ?
                    WHERE id IN ({placeholders}) AND order_id IS NULL
                    """,
                    (order.id, *changes.claim_item_ids),
                )
                if cursor.rowcount != len(changes.claim_item_ids):
                    raise ConcurrentProcessingConflict(
                        f"Claimed {cursor.rowcount} of {len(changes.claim_item_ids)} "
                        f"order items for order {order.id}"
                    )
        elif changes.claim_item_ids:
            raise ValueError("Claiming order items requires an order")

        for item in changes.new_items:
            await conn.execute(
                f"INSERT INTO order_items ({_ITEM_COLUMNS}) "
                "VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)",
                self._item_params(item),
            )
        for item in changes.updated_items:
            cursor = await conn.execute(
                """
                UPDATE order_items SET
                    owner_id = ?, subscription_id = ?, currency = ?, unit_price = ?,
                    quantity = ?, tax_percentage = ?, process_at = ?, description = ?,
                    kind = ?, order_id = ?, applied_coupon_id = ?
                WHERE id = ? AND order_id IS NULL
                """,
                (*self._item_params(item)[1:], item.id),
            )
            if cursor.rowcount == 0:
                raise ConcurrentProcessingConflict(
                    f"Order item {item.id} is gone or already processed"
                )

        for redeemed in changes.redeemed_coupons:
            await conn.execute(
                f"""
                INSERT INTO redeemed_coupons ({_REDEEMED_COLUMNS})
                VALUES (?, ?, ?, ?, ?, ?, ?)
                ON CONFLICT(id) DO UPDATE SET
                    times_left = excluded.times_left,
                    status = excluded.status,
                    subscription_id = excluded.subscription_id
                """,
                (
                    redeemed.id,
                    redeemed.name,
                    redeemed.owner_id,
                    redeemed.subscription_id,
                    redeemed.times_left,
                    redeemed.status.value,
                    _ts(redeemed.redeemed_at),
                ),
            )
        for name, limit in changes.redemption_limits.items():
            cursor = await conn.execute(
                "SELECT COUNT(*) FROM redeemed_coupons WHERE name = ?", (name,)
            )
            (count,) = await cursor.fetchone()
            if count > limit:
                raise CouponLimitReached(
                    f"Coupon {name} reached its limit of {limit} redemptions"
                )
        for applied in changes.applied_coupons:
            try:
                await conn.execute(
                    f"INSERT INTO applied_coupons ({_APPLIED_COLUMNS}) "
                    "VALUES (?, ?, ?, ?, ?, ?, ?, ?)",
                    (
                        applied.id,
                        applied.redeemed_coupon_id,
                        applied.owner_id,
                        applied.subscription_id,
                        _ts(applied.cycle_key),
                        applied.order_item_id,
                        applied.amount,
                        _ts(applied.applied_at),
                    ),
                )
            except sqlite3.IntegrityError as e:
                raise DuplicateCouponApplication(
                    f"Coupon {applied.redeemed_coupon_id} already applied to cycle "
                    f"{applied.cycle_key.isoformat()}"
                ) from e

    async def _upsert_owner(self, conn: aiosqlite.Connection, owner: Owner) -> None:
        await conn.execute(
            f"""
            INSERT INTO owners ({_OWNER_COLUMNS}) VALUES (?, ?, ?, ?, ?, ?)
            ON CONFLICT(id) DO UPDATE SET
                tax_percentage = excluded.tax_percentage,
                currency = excluded.currency,
                mandate_id = excluded.mandate_id,
                customer_id = excluded.customer_id,
                trial_ends_at = excluded.trial_ends_at
            """,
            (
                owner.id,
                str(owner.tax_percentage),
                owner.currency,
                owner.mandate_id,
                owner.customer_id,
                _ts(owner.trial_ends_at),
            ),
        )

    async def _upsert_subscription(
        self, conn: aiosqlite.Connection, subscription: Subscription
    ) -> None:
        """Insert, or update only if the row still has the loaded version."""
        cursor = await conn.execute(
            f"""
            INSERT INTO subscriptions ({_SUBSCRIPTION_COLUMNS})
            VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
            ON CONFLICT(id) DO UPDATE SET
                plan = excluded.plan,
                quantity = excluded.quantity,
                cycle_started_at = excluded.cycle_started_at,
                cycle_ends_at = excluded.cycle_ends_at,
                status = excluded.status,
                trial_ends_at = excluded.trial_ends_at,
                ends_at = excluded.ends_at,
                scheduled_order_item_id = excluded.scheduled_order_item_id,
                version = excluded.version
            WHERE subscriptions.version = ?
            """,
            (
                subscription.id,
                subscription.owner_id,
                subscription.name,
                subscription.plan,
                subscription.quantity,
                _ts(subscription.cycle_started_at),
                _ts(subscription.cycle_ends_at),
                subscription.status.value,
                _ts(subscription.trial_ends_at),
                _ts(subscription.ends_at),
                subscription.scheduled_order_item_id,
                subscription.version + 1,
                subscription.version,
            ),
        )
        if cursor.rowcount == 0:
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
            str(item.tax_percentage),
            _ts(item.process_at),
            item.description,
            item.kind.value,
            item.order_id,
            item.applied_coupon_id,
        )

    # ------------------------------------------------------------------
    # Row mapping
    # ------------------------------------------------------------------

    @staticmethod
    def _row_to_owner(row: tuple[Any, ...]) -> Owner:
        owner_id, tax_percentage, currency, mandate_id, customer_id, trial_ends_at = row
        return Owner(
            id=owner_id,
            tax_percentage=Decimal(tax_percentage),
            currency=currency,
            mandate_id=mandate_id,
            customer_id=customer_id,
            trial_ends_at=_parse_ts(trial_ends_at),
        )

    @staticmethod
    def _row_to_subscription(row: tuple[Any, ...]) -> Subscription:
        (
            subscription_id,
            owner_id,
            name,
            plan,
            quantity,
            cycle_started_at,
            cycle_ends_at,
            status,
            trial_ends_at,
            ends_at,
            scheduled_order_item_id,
            version,
        ) = row
        return Subscription(
            id=subscription_id,
            owner_id=owner_id,
            name=name,
            plan=plan,
            quantity=quantity,
            cycle_started_at=_parse_ts(cycle_started_at),
            cycle_ends_at=_parse_ts(cycle_ends_at),
            status=SubscriptionStatus(status),
            trial_ends_at=_parse_ts(trial_ends_at),
            ends_at=_parse_ts(ends_at),
            scheduled_order_item_id=scheduled_order_item_id,
            version=version,
        )

    @staticmethod
    def _row_to_order(row: tuple[Any, ...]) -> Order:
        order_id, owner_id, currency, subtotal, tax, total, created_at, item_ids = row
        return Order(
            id=order_id,
            owner_id=owner_id,
            currency=currency,
            subtotal=subtotal,
            tax=tax,
            total=total,
            created_at=_parse_ts(created_at),
            item_ids=tuple(json.loads(item_ids)),
        )

    @staticmethod
    def _row_to_item(row: tuple[Any, ...]) -> OrderItem:
        (
            item_id,
            owner_id,
            subscription_id,
            currency,
            unit_price,
            quantity,
            tax_percentage,
            process_at,
            description,
            kind,
            order_id,
            applied_coupon_id,
        ) = row
        return OrderItem(
            id=item_id,
            owner_id=owner_id,
            subscription_id=subscription_id,
            currency=currency,
            unit_price=unit_price,
            quantity=quantity,
            tax_percentage=Decimal(tax_percentage),
            process_at=_parse_ts(process_at),
            description=description,
            kind=OrderItemKind(kind),
            order_id=order_id,
            applied_coupon_id=applied_coupon_id,
        )

    @staticmethod
    def _row_to_redeemed(row: tuple[Any, ...]) -> RedeemedCoupon:
        redeemed_id, name, owner_id, subscription_id, times_left, status, redeemed_at = row
        return RedeemedCoupon(
            id=redeemed_id,
            name=name,
            owner_id=owner_id,
            subscription_id=subscription_id,
            times_left=times_left,
            status=RedeemedCouponStatus(status),
            redeemed_at=_parse_ts(redeemed_at),
        )

    @staticmethod
    def _row_to_applied(row: tuple[Any, ...]) -> AppliedCoupon:
        (
            applied_id,
            redeemed_coupon_id,
            owner_id,
            subscription_id,
            cycle_key,
            order_item_id,
            amount,
            applied_at,
        ) = row
        return AppliedCoupon(
            id=applied_id,
            redeemed_coupon_id=redeemed_coupon_id,
            owner_id=owner_id,
            subscription_id=subscription_id,
            cycle_key=_parse_ts(cycle_key),
            order_item_id=order_item_id,
            amount=amount,
            applied_at=_parse_ts(applied_at),
        )
