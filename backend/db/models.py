"""
StockSense Database Models

Tables:
  1. categories           - Item grouping (also bounds correlation pair enumeration)
  2. items                - Item catalog (+ statistical profile fields)
  3. consumption_records  - Daily consumption ledger, one row per (item, date)
  4. item_correlations    - Pairwise consumption correlation, one row per unordered pair

Item correlations are stored under a canonical key: item_low_id < item_high_id.
"""

import uuid
from datetime import datetime
from decimal import ROUND_HALF_UP, Decimal

from sqlalchemy import (
    Boolean,
    CheckConstraint,
    Column,
    Date,
    DateTime,
    Float,
    ForeignKey,
    Index,
    Integer,
    String,
    Text,
    TypeDecorator,
    UniqueConstraint,
    event,
    types,
)
from sqlalchemy.dialects.postgresql import UUID as PG_UUID
from sqlalchemy.orm import relationship

from db.session import Base


class GUID(TypeDecorator):
    """Platform-independent UUID type.

    Uses PostgreSQL UUID when available, stores as CHAR(36) on SQLite.
    """

    impl = types.String(36)
    cache_ok = True

    def load_dialect_impl(self, dialect):
        if dialect.name == "postgresql":
            return dialect.type_descriptor(PG_UUID(as_uuid=True))
        return dialect.type_descriptor(types.String(36))

    def process_bind_param(self, value, dialect):
        if value is None:
            return value
        if dialect.name == "postgresql":
            return value if isinstance(value, uuid.UUID) else uuid.UUID(str(value))
        return str(value) if isinstance(value, uuid.UUID) else str(uuid.UUID(str(value)))

    def process_result_value(self, value, dialect):
        if value is None:
            return value
        if isinstance(value, uuid.UUID):
            return value
        return uuid.UUID(str(value))


VOLATILITY_CHECK = "volatility_classification IN ('LOW', 'MEDIUM', 'HIGH', 'VERY_HIGH')"
CORRELATION_TYPE_CHECK = (
    "correlation_type IN ('STRONG_POSITIVE', 'MODERATE_POSITIVE', 'WEAK_POSITIVE', 'NO_CORRELATION', "
    "'WEAK_NEGATIVE', 'MODERATE_NEGATIVE', 'STRONG_NEGATIVE')"
)

# ─── 1. Categories ─────────────────────────────────────────────────────────


class Category(Base):
    __tablename__ = "categories"

    category_id = Column(GUID(), primary_key=True, default=uuid.uuid4)
    name = Column(String(100), nullable=False, unique=True)
    description = Column(String(500))
    created_at = Column(DateTime, nullable=False, default=datetime.utcnow)

    items = relationship("Item", back_populates="category")


# ─── 2. Items ──────────────────────────────────────────────────────────────


class Item(Base):
    __tablename__ = "items"

    item_id = Column(GUID(), primary_key=True, default=uuid.uuid4)
    item_code = Column(String(50), unique=True)
    name = Column(String(100), nullable=False)
    category_id = Column(GUID(), ForeignKey("categories.category_id"), nullable=True)
    unit_of_measurement = Column(String(50), nullable=False, default="pcs")
    current_quantity = Column(Float, nullable=False, default=0.0)
    reorder_level = Column(Float)
    is_active = Column(Boolean, nullable=False, default=True)

    # Statistical profile, written only by analytics.service
    avg_daily_consumption = Column(Float)
    consumption_std_dev = Column(Float)
    coefficient_of_variation = Column(Float)
    volatility_classification = Column(String(20))
    is_highly_volatile = Column(Boolean, nullable=False, default=False)
    coverage_days = Column(Integer)
    expected_stockout_date = Column(Date)
    last_statistics_update = Column(DateTime)

    # Stamped by ingestion whenever this item's consumption rows change
    consumption_modified_at = Column(DateTime)

    created_at = Column(DateTime, nullable=False, default=datetime.utcnow)
    updated_at = Column(DateTime, nullable=False, default=datetime.utcnow, onupdate=datetime.utcnow)

    __table_args__ = (
        Index("ix_items_category", "category_id"),
        Index("ix_items_statistics_update", "last_statistics_update"),
        CheckConstraint(f"volatility_classification IS NULL OR {VOLATILITY_CHECK}", name="ck_item_volatility"),
        CheckConstraint("coverage_days IS NULL OR coverage_days >= 0", name="ck_item_coverage_days"),
    )

    category = relationship("Category", back_populates="items")
    consumption_records = relationship("ConsumptionRecord", back_populates="item", cascade="all, delete-orphan")

    def needs_reorder(self) -> bool:
        if self.current_quantity is None or self.reorder_level is None:
            return False
        return self.current_quantity <= self.reorder_level


# ─── 3. Consumption Records ────────────────────────────────────────────────


class ConsumptionRecord(Base):
    __tablename__ = "consumption_records"

    record_id = Column(GUID(), primary_key=True, default=uuid.uuid4)
    item_id = Column(GUID(), ForeignKey("items.item_id", ondelete="CASCADE"), nullable=False)
    consumption_date = Column(Date, nullable=False)
    opening_quantity = Column(Float, nullable=False, default=0.0)
    received_quantity = Column(Float, nullable=False, default=0.0)
    consumed_quantity = Column(Float, nullable=False, default=0.0)
    closing_quantity = Column(Float, nullable=False, default=0.0)
    department = Column(String(100))
    cost_center = Column(String(50))
    employee_count = Column(Integer)
    consumption_per_capita = Column(Float)
    notes = Column(Text)
    created_at = Column(DateTime, nullable=False, default=datetime.utcnow)
    updated_at = Column(DateTime, nullable=False, default=datetime.utcnow, onupdate=datetime.utcnow)

    __table_args__ = (
        UniqueConstraint("item_id", "consumption_date", name="uq_consumption_item_date"),
        Index("ix_consumption_item_date", "item_id", "consumption_date"),
        Index("ix_consumption_date", "consumption_date"),
    )

    item = relationship("Item", back_populates="consumption_records")

    def recalculate(self) -> None:
        """Derive closing quantity and per-capita consumption from the raw columns."""
        opening = self.opening_quantity or 0.0
        received = self.received_quantity or 0.0
        consumed = self.consumed_quantity or 0.0
        self.closing_quantity = opening + received - consumed
        if self.employee_count and self.employee_count > 0:
            per_capita = Decimal(str(consumed)) / Decimal(self.employee_count)
            self.consumption_per_capita = float(per_capita.quantize(Decimal("0.0001"), rounding=ROUND_HALF_UP))
        else:
            self.consumption_per_capita = None


@event.listens_for(ConsumptionRecord, "before_insert")
@event.listens_for(ConsumptionRecord, "before_update")
def _derive_consumption_fields(mapper, connection, target: ConsumptionRecord) -> None:
    target.recalculate()


# ─── 4. Item Correlations ──────────────────────────────────────────────────


class ItemCorrelation(Base):
    __tablename__ = "item_correlations"

    correlation_id = Column(GUID(), primary_key=True, default=uuid.uuid4)
    item_low_id = Column(GUID(), ForeignKey("items.item_id", ondelete="CASCADE"), nullable=False)
    item_high_id = Column(GUID(), ForeignKey("items.item_id", ondelete="CASCADE"), nullable=False)
    category_id = Column(GUID(), ForeignKey("categories.category_id"), nullable=True)
    correlation_coefficient = Column(Float, nullable=False)
    correlation_type = Column(String(20), nullable=False)
    confidence_level = Column(Float)
    data_points = Column(Integer, nullable=False, default=0)
    co_consumption_count = Column(Integer, nullable=False, default=0)
    average_time_gap_days = Column(Float)
    last_calculated = Column(DateTime)
    is_active = Column(Boolean, nullable=False, default=True)
    notes = Column(Text)
    created_at = Column(DateTime, nullable=False, default=datetime.utcnow)
    updated_at = Column(DateTime, nullable=False, default=datetime.utcnow, onupdate=datetime.utcnow)

    __table_args__ = (
        UniqueConstraint("item_low_id", "item_high_id", name="uq_correlation_pair"),
        CheckConstraint("item_low_id < item_high_id", name="ck_correlation_canonical_pair"),
        CheckConstraint(
            "correlation_coefficient >= -1 AND correlation_coefficient <= 1",
            name="ck_correlation_coefficient_range",
        ),
        CheckConstraint(CORRELATION_TYPE_CHECK, name="ck_correlation_type"),
        Index("ix_correlation_low", "item_low_id", "correlation_coefficient"),
        Index("ix_correlation_high", "item_high_id", "correlation_coefficient"),
        Index("ix_correlation_type", "correlation_type"),
        Index("ix_correlation_last_calculated", "last_calculated"),
    )

    item_low = relationship("Item", foreign_keys=[item_low_id])
    item_high = relationship("Item", foreign_keys=[item_high_id])
