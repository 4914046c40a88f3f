"""
Initial schema - catalog, consumption ledger and item correlations

Revision ID: 001
Revises: None
Create Date: 2026-10-19
"""

from collections.abc import Sequence

import sqlalchemy as sa
from alembic import op
from sqlalchemy.dialects.postgresql import UUID

revision: str = "001"
down_revision: str | None = None
branch_labels: str | Sequence[str] | None = None
depends_on: str | Sequence[str] | None = None

VOLATILITY_CHECK = "volatility_classification IN ('LOW', 'MEDIUM', 'HIGH', 'VERY_HIGH')"
CORRELATION_TYPE_CHECK = (
    "correlation_type IN ('STRONG_POSITIVE', 'MODERATE_POSITIVE', 'WEAK_POSITIVE', 'NO_CORRELATION', "
    "'WEAK_NEGATIVE', 'MODERATE_NEGATIVE', 'STRONG_NEGATIVE')"
)


def upgrade() -> None:
    # 1. Categories
    op.create_table(
        "categories",
        sa.Column("category_id", UUID(as_uuid=True), primary_key=True, server_default=sa.text("gen_random_uuid()")),
        sa.Column("name", sa.String(100), nullable=False, unique=True),
        sa.Column("description", sa.String(500)),
        sa.Column("created_at", sa.DateTime, nullable=False, server_default=sa.func.now()),
    )

    # 2. Items (+ statistical profile)
    op.create_table(
        "items",
        sa.Column("item_id", UUID(as_uuid=True), primary_key=True, server_default=sa.text("gen_random_uuid()")),
        sa.Column("item_code", sa.String(50), unique=True),
        sa.Column("name", sa.String(100), nullable=False),
        sa.Column("category_id", UUID(as_uuid=True), sa.ForeignKey("categories.category_id")),
        sa.Column("unit_of_measurement", sa.String(50), nullable=False, server_default="pcs"),
        sa.Column("current_quantity", sa.Float, nullable=False, server_default="0"),
        sa.Column("reorder_level", sa.Float),
        sa.Column("is_active", sa.Boolean, nullable=False, server_default=sa.true()),
        sa.Column("avg_daily_consumption", sa.Float),
        sa.Column("consumption_std_dev", sa.Float),
        sa.Column("coefficient_of_variation", sa.Float),
        sa.Column("volatility_classification", sa.String(20)),
        sa.Column("is_highly_volatile", sa.Boolean, nullable=False, server_default=sa.false()),
        sa.Column("coverage_days", sa.Integer),
        sa.Column("expected_stockout_date", sa.Date),
        sa.Column("last_statistics_update", sa.DateTime),
        sa.Column("consumption_modified_at", sa.DateTime),
        sa.Column("created_at", sa.DateTime, nullable=False, server_default=sa.func.now()),
        sa.Column("updated_at", sa.DateTime, nullable=False, server_default=sa.func.now()),
        sa.CheckConstraint(f"volatility_classification IS NULL OR {VOLATILITY_CHECK}", name="ck_item_volatility"),
        sa.CheckConstraint("coverage_days IS NULL OR coverage_days >= 0", name="ck_item_coverage_days"),
    )
    op.create_index("ix_items_category", "items", ["category_id"])
    op.create_index("ix_items_statistics_update", "items", ["last_statistics_update"])

    # 3. Consumption Records
    op.create_table(
        "consumption_records",
        sa.Column("record_id", UUID(as_uuid=True), primary_key=True, server_default=sa.text("gen_random_uuid()")),
        sa.Column(
            "item_id",
            UUID(as_uuid=True),
            sa.ForeignKey("items.item_id", ondelete="CASCADE"),
            nullable=False,
        ),
        sa.Column("consumption_date", sa.Date, nullable=False),
        sa.Column("opening_quantity", sa.Float, nullable=False, server_default="0"),
        sa.Column("received_quantity", sa.Float, nullable=False, server_default="0"),
        sa.Column("consumed_quantity", sa.Float, nullable=False, server_default="0"),
        sa.Column("closing_quantity", sa.Float, nullable=False, server_default="0"),
        sa.Column("department", sa.String(100)),
        sa.Column("cost_center", sa.String(50)),
        sa.Column("employee_count", sa.Integer),
        sa.Column("consumption_per_capita", sa.Float),
        sa.Column("notes", sa.Text),
        sa.Column("created_at", sa.DateTime, nullable=False, server_default=sa.func.now()),
        sa.Column("updated_at", sa.DateTime, nullable=False, server_default=sa.func.now()),
        sa.UniqueConstraint("item_id", "consumption_date", name="uq_consumption_item_date"),
    )
    op.create_index("ix_consumption_item_date", "consumption_records", ["item_id", "consumption_date"])
    op.create_index("ix_consumption_date", "consumption_records", ["consumption_date"])

    # 4. Item Correlations (canonical pair: item_low_id < item_high_id)
    op.create_table(
        "item_correlations",
        sa.Column(
            "correlation_id", UUID(as_uuid=True), primary_key=True, server_default=sa.text("gen_random_uuid()")
        ),
        sa.Column(
            "item_low_id",
            UUID(as_uuid=True),
            sa.ForeignKey("items.item_id", ondelete="CASCADE"),
            nullable=False,
        ),
        sa.Column(
            "item_high_id",
            UUID(as_uuid=True),
            sa.ForeignKey("items.item_id", ondelete="CASCADE"),
            nullable=False,
        ),
        sa.Column("category_id", UUID(as_uuid=True), sa.ForeignKey("categories.category_id")),
        sa.Column("correlation_coefficient", sa.Float, nullable=False),
        sa.Column("correlation_type", sa.String(20), nullable=False),
        sa.Column("confidence_level", sa.Float),
        sa.Column("data_points", sa.Integer, nullable=False, server_default="0"),
        sa.Column("co_consumption_count", sa.Integer, nullable=False, server_default="0"),
        sa.Column("average_time_gap_days", sa.Float),
        sa.Column("last_calculated", sa.DateTime),
        sa.Column("is_active", sa.Boolean, nullable=False, server_default=sa.true()),
        sa.Column("notes", sa.Text),
        sa.Column("created_at", sa.DateTime, nullable=False, server_default=sa.func.now()),
        sa.Column("updated_at", sa.DateTime, nullable=False, server_default=sa.func.now()),
        sa.UniqueConstraint("item_low_id", "item_high_id", name="uq_correlation_pair"),
        sa.CheckConstraint("item_low_id < item_high_id", name="ck_correlation_canonical_pair"),
        sa.CheckConstraint(
            "correlation_coefficient >= -1 AND correlation_coefficient <= 1",
            name="ck_correlation_coefficient_range",
        ),
        sa.CheckConstraint(CORRELATION_TYPE_CHECK, name="ck_correlation_type"),
    )
    op.create_index("ix_correlation_low", "item_correlations", ["item_low_id", "correlation_coefficient"])
    op.create_index("ix_correlation_high", "item_correlations", ["item_high_id", "correlation_coefficient"])
    op.create_index("ix_correlation_type", "item_correlations", ["correlation_type"])
    op.create_index("ix_correlation_last_calculated", "item_correlations", ["last_calculated"])


def downgrade() -> None:
    tables = [
        "item_correlations",
        "consumption_records",
        "items",
        "categories",
    ]
    for table in tables:
        op.drop_table(table)
