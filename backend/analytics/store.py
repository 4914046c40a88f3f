"""
Consumption Store — the analytics core's only window onto the database.

Reads consumption history and the item catalog, writes computed profiles
back onto items, and keeps exactly one item_correlations row per unordered
pair. Every pair lookup and write goes through canonical_pair first.

Correlation writes are a single INSERT .. ON CONFLICT DO UPDATE on
PostgreSQL and SQLite. Other dialects insert inside a SAVEPOINT and, if a
concurrent writer created the row first, retry once as an update.
"""

import uuid
from collections import defaultdict
from collections.abc import Iterable
from datetime import date, datetime
from typing import Any

import structlog
from sqlalchemy import Row, func, or_, select, update
from sqlalchemy.dialects.postgresql import insert as pg_insert
from sqlalchemy.dialects.sqlite import insert as sqlite_insert
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession

from analytics.correlation import canonical_pair
from analytics.errors import ItemNotFoundError
from analytics.profiler import ItemProfile
from analytics.staleness import ActivityWindow
from db.models import ConsumptionRecord, Item, ItemCorrelation

logger = structlog.get_logger()

_UPSERT_INSERTS = {
    "postgresql": pg_insert,
    "sqlite": sqlite_insert,
}

# Columns overwritten when an existing pair is recomputed
_CORRELATION_UPDATE_COLUMNS = (
    "correlation_coefficient",
    "correlation_type",
    "confidence_level",
    "data_points",
    "co_consumption_count",
    "average_time_gap_days",
    "last_calculated",
    "is_active",
    "category_id",
    "updated_at",
)


class ConsumptionStore:
    """Async repository over items, consumption_records and item_correlations."""

    def __init__(self, db: AsyncSession):
        self.db = db

    # ── Consumption records ───────────────────────────────────────────

    async def fetch_consumption_records(
        self,
        item_id: uuid.UUID,
        start_date: date,
        end_date: date,
    ) -> list[ConsumptionRecord]:
        result = await self.db.execute(
            select(ConsumptionRecord)
            .where(
                ConsumptionRecord.item_id == item_id,
                ConsumptionRecord.consumption_date >= start_date,
                ConsumptionRecord.consumption_date <= end_date,
            )
            .order_by(ConsumptionRecord.consumption_date)
        )
        return list(result.scalars().all())

    async def fetch_records_for_items(
        self,
        item_ids: Iterable[uuid.UUID],
        start_date: date,
        end_date: date,
    ) -> dict[uuid.UUID, list[Row]]:
        """
        Plain (item_id, consumption_date, consumed_quantity) rows per item.

        Rows are not tracked by the session, so a batch can keep using them
        after a rollback.
        """
        ids = list(item_ids)
        grouped: dict[uuid.UUID, list[Row]] = defaultdict(list)
        if not ids:
            return grouped
        result = await self.db.execute(
            select(
                ConsumptionRecord.item_id,
                ConsumptionRecord.consumption_date,
                ConsumptionRecord.consumed_quantity,
            )
            .where(
                ConsumptionRecord.item_id.in_(ids),
                ConsumptionRecord.consumption_date >= start_date,
                ConsumptionRecord.consumption_date <= end_date,
            )
            .order_by(ConsumptionRecord.item_id, ConsumptionRecord.consumption_date)
        )
        for row in result.all():
            grouped[row.item_id].append(row)
        return grouped

    async def record_consumption(
        self,
        item_id: uuid.UUID,
        consumption_date: date,
        consumed_quantity: float,
        opening_quantity: float = 0.0,
        received_quantity: float = 0.0,
        now: datetime | None = None,
        **extra: Any,
    ) -> ConsumptionRecord:
        """
        Insert or replace the (item, date) record and mark the item dirty.

        extra: department, cost_center, employee_count, notes.
        """
        now = now or datetime.utcnow()
        result = await self.db.execute(
            select(ConsumptionRecord).where(
                ConsumptionRecord.item_id == item_id,
                ConsumptionRecord.consumption_date == consumption_date,
            )
        )
        record = result.scalar_one_or_none()
        if record is None:
            record = ConsumptionRecord(item_id=item_id, consumption_date=consumption_date)
            self.db.add(record)

        record.opening_quantity = opening_quantity
        record.received_quantity = received_quantity
        record.consumed_quantity = consumed_quantity
        for field_name, value in extra.items():
            setattr(record, field_name, value)
        record.recalculate()

        await self.db.flush()
        await self.mark_items_dirty([item_id], now)
        return record

    async def mark_items_dirty(self, item_ids: Iterable[uuid.UUID], when: datetime) -> int:
        """Stamp consumption_modified_at so dependent correlations go stale."""
        ids = list(item_ids)
        if not ids:
            return 0
        result = await self.db.execute(
            update(Item)
            .where(Item.item_id.in_(ids))
            .values(consumption_modified_at=when)
            .execution_options(synchronize_session="fetch")
        )
        return result.rowcount or 0

    async def activity_windows(
        self,
        start_date: date,
        end_date: date,
        category_id: uuid.UUID | None = None,
    ) -> list[ActivityWindow]:
        """First/last positive-consumption date per active item inside the window."""
        query = (
            select(
                ConsumptionRecord.item_id,
                Item.category_id,
                func.min(ConsumptionRecord.consumption_date).label("first_date"),
                func.max(ConsumptionRecord.consumption_date).label("last_date"),
            )
            .join(Item, Item.item_id == ConsumptionRecord.item_id)
            .where(
                Item.is_active.is_(True),
                ConsumptionRecord.consumed_quantity > 0,
                ConsumptionRecord.consumption_date >= start_date,
                ConsumptionRecord.consumption_date <= end_date,
            )
            .group_by(ConsumptionRecord.item_id, Item.category_id)
        )
        if category_id is not None:
            query = query.where(Item.category_id == category_id)
        result = await self.db.execute(query)
        return [
            ActivityWindow(
                item_id=row.item_id,
                category_id=row.category_id,
                first_date=row.first_date,
                last_date=row.last_date,
            )
            for row in result.all()
        ]

    # ── Item catalog ──────────────────────────────────────────────────

    async def fetch_item(self, item_id: uuid.UUID) -> Item | None:
        return await self.db.get(Item, item_id)

    async def require_item(self, item_id: uuid.UUID) -> Item:
        item = await self.fetch_item(item_id)
        if item is None:
            raise ItemNotFoundError(item_id)
        return item

    async def list_active_items(self, category_id: uuid.UUID | None = None) -> list[Item]:
        query = select(Item).where(Item.is_active.is_(True)).order_by(Item.item_id)
        if category_id is not None:
            query = query.where(Item.category_id == category_id)
        result = await self.db.execute(query)
        return list(result.scalars().all())

    async def update_item_profile(self, item_id: uuid.UUID, profile: ItemProfile, now: datetime) -> Item:
        item = await self.require_item(item_id)
        for column, value in profile.as_item_fields().items():
            setattr(item, column, value)
        item.last_statistics_update = now
        await self.db.flush()
        return item

    # ── Correlations ──────────────────────────────────────────────────

    async def fetch_correlation(self, item_a: uuid.UUID, item_b: uuid.UUID) -> ItemCorrelation | None:
        low, high = canonical_pair(item_a, item_b)
        result = await self.db.execute(
            select(ItemCorrelation)
            .where(ItemCorrelation.item_low_id == low, ItemCorrelation.item_high_id == high)
            .execution_options(populate_existing=True)
        )
        return result.scalar_one_or_none()

    async def upsert_correlation(
        self,
        item_a: uuid.UUID,
        item_b: uuid.UUID,
        fields: dict[str, Any],
        now: datetime,
        category_id: uuid.UUID | None = None,
    ) -> ItemCorrelation:
        """Insert or overwrite the single row for this unordered pair."""
        low, high = canonical_pair(item_a, item_b)
        values = {**fields, "last_calculated": now, "is_active": True, "updated_at": now}

        insert_fn = _UPSERT_INSERTS.get(self.db.get_bind().dialect.name)
        if insert_fn is not None:
            stmt = insert_fn(ItemCorrelation).values(
                correlation_id=uuid.uuid4(),
                item_low_id=low,
                item_high_id=high,
                category_id=category_id,
                created_at=now,
                **values,
            )
            stmt = stmt.on_conflict_do_update(
                index_elements=[ItemCorrelation.item_low_id, ItemCorrelation.item_high_id],
                set_={column: stmt.excluded[column] for column in _CORRELATION_UPDATE_COLUMNS},
            )
            await self.db.execute(stmt)
        else:
            await self._insert_or_update(low, high, values, category_id, now)

        correlation = await self.fetch_correlation(low, high)
        if correlation is None:
            raise RuntimeError(f"Correlation row missing after upsert: {low}/{high}")
        return correlation

    async def _insert_or_update(
        self,
        low: uuid.UUID,
        high: uuid.UUID,
        values: dict[str, Any],
        category_id: uuid.UUID | None,
        now: datetime,
    ) -> None:
        existing = await self.fetch_correlation(low, high)
        if existing is None:
            try:
                async with self.db.begin_nested():
                    self.db.add(
                        ItemCorrelation(
                            item_low_id=low,
                            item_high_id=high,
                            category_id=category_id,
                            created_at=now,
                            **values,
                        )
                    )
                return
            except IntegrityError:
                logger.warning("correlation.duplicate_insert_retried", item_low_id=str(low), item_high_id=str(high))
                existing = await self.fetch_correlation(low, high)
                if existing is None:
                    raise

        for column, value in values.items():
            setattr(existing, column, value)
        existing.category_id = category_id
        await self.db.flush()

    async def list_active_correlations(self, item_id: uuid.UUID) -> list[ItemCorrelation]:
        result = await self.db.execute(
            select(ItemCorrelation).where(
                ItemCorrelation.is_active.is_(True),
                or_(ItemCorrelation.item_low_id == item_id, ItemCorrelation.item_high_id == item_id),
            )
        )
        return list(result.scalars().all())

    async def list_correlations(self, active_only: bool = True) -> list[ItemCorrelation]:
        query = select(ItemCorrelation)
        if active_only:
            query = query.where(ItemCorrelation.is_active.is_(True))
        result = await self.db.execute(query)
        return list(result.scalars().all())

    async def deactivate_correlations_for_item(self, item_id: uuid.UUID) -> int:
        """Logical delete of every pair touching a removed item."""
        result = await self.db.execute(
            update(ItemCorrelation)
            .where(
                ItemCorrelation.is_active.is_(True),
                or_(ItemCorrelation.item_low_id == item_id, ItemCorrelation.item_high_id == item_id),
            )
            .values(is_active=False, updated_at=datetime.utcnow())
            .execution_options(synchronize_session="fetch")
        )
        return result.rowcount or 0
