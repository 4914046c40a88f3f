"""
Test Configuration — Fixtures for async DB, test client, and seeded ledger.

Each test gets its own in-memory SQLite database. The session joins an
outer transaction in "create_savepoint" mode, so commits made by app code
(refresh_all commits per unit) only release SAVEPOINTs and everything is
rolled back when the test ends.
"""

import uuid
from dataclasses import dataclass
from datetime import date, datetime, timedelta

import pytest
from httpx import ASGITransport, AsyncClient
from sqlalchemy import event
from sqlalchemy.ext.asyncio import AsyncSession, create_async_engine

from api.deps import get_db
from api.main import app
from core.config import AnalyticsThresholds
from db.models import Category, ConsumptionRecord, Item
from db.session import Base

TEST_DATABASE_URL = "sqlite+aiosqlite:///:memory:"

# Seeded daily consumption, oldest first, ending today
COFFEE_SERIES = [10, 12, 9, 11, 10, 13, 8]
SUGAR_SERIES = [2 * v for v in COFFEE_SERIES]
TEA_SERIES = [20 - v for v in COFFEE_SERIES]
BLEACH_SERIES = [5] * 7


@pytest.fixture
async def test_engine():
    """Create a test database engine and build all tables."""
    engine = create_async_engine(TEST_DATABASE_URL, echo=False)

    # Let SQLAlchemy own BEGIN/SAVEPOINT instead of the sqlite3 driver
    @event.listens_for(engine.sync_engine, "connect")
    def _no_driver_transactions(dbapi_connection, connection_record):
        dbapi_connection.isolation_level = None

    @event.listens_for(engine.sync_engine, "begin")
    def _emit_begin(conn):
        conn.exec_driver_sql("BEGIN")

    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
    yield engine
    await engine.dispose()


@pytest.fixture
async def test_db(test_engine):
    """Create a test session wrapped in a transaction that rolls back after each test."""
    async with test_engine.connect() as conn:
        trans = await conn.begin()
        session = AsyncSession(
            bind=conn,
            expire_on_commit=False,
            join_transaction_mode="create_savepoint",
        )

        yield session

        await session.close()
        await trans.rollback()


@pytest.fixture
def thresholds():
    """Default analytics thresholds (independent of any .env overrides)."""
    return AnalyticsThresholds()


@pytest.fixture
async def client(test_db):
    """Create an async test client with dependency overrides."""

    async def override_get_db():
        yield test_db

    app.dependency_overrides[get_db] = override_get_db

    async with AsyncClient(
        transport=ASGITransport(app=app),
        base_url="http://test",
    ) as ac:
        yield ac

    app.dependency_overrides.clear()


@dataclass
class SeededLedger:
    today: date
    pantry: Category
    cleaning: Category
    coffee: Item
    sugar: Item
    tea: Item
    bleach: Item
    sponge: Item
    gloves: Item

    @property
    def items(self) -> list[Item]:
        return [self.coffee, self.sugar, self.tea, self.bleach, self.sponge, self.gloves]


def add_series(db: AsyncSession, item: Item, series: list[float], end: date) -> None:
    """Add one record per value, the last value landing on `end`."""
    start = end - timedelta(days=len(series) - 1)
    for offset, consumed in enumerate(series):
        db.add(
            ConsumptionRecord(
                item_id=item.item_id,
                consumption_date=start + timedelta(days=offset),
                opening_quantity=100.0,
                consumed_quantity=float(consumed),
            )
        )


@pytest.fixture
async def seeded_db(test_db):
    """
    Seed two categories and six items with a week of consumption.

      pantry:   coffee [10,12,9,11,10,13,8], sugar = 2 × coffee, tea = 20 − coffee
      cleaning: bleach constant 5, sponge one record, gloves two records
    """
    today = datetime.utcnow().date()

    pantry = Category(name="Pantry")
    cleaning = Category(name="Cleaning")
    test_db.add_all([pantry, cleaning])
    await test_db.flush()

    def _item(code: str, name: str, category: Category, qty: float, reorder: float | None = None) -> Item:
        return Item(
            item_id=uuid.uuid4(),
            item_code=code,
            name=name,
            category_id=category.category_id,
            current_quantity=qty,
            reorder_level=reorder,
        )

    coffee = _item("PAN-001", "Coffee Beans", pantry, 50.0, reorder=20.0)
    sugar = _item("PAN-002", "Sugar Sachets", pantry, 15.0, reorder=40.0)
    tea = _item("PAN-003", "Tea Bags", pantry, 100.0)
    bleach = _item("CLN-001", "Bleach", cleaning, 30.0)
    sponge = _item("CLN-002", "Sponges", cleaning, 0.0)
    gloves = _item("CLN-003", "Gloves", cleaning, 12.0)
    test_db.add_all([coffee, sugar, tea, bleach, sponge, gloves])
    await test_db.flush()

    add_series(test_db, coffee, COFFEE_SERIES, today)
    add_series(test_db, sugar, SUGAR_SERIES, today)
    add_series(test_db, tea, TEA_SERIES, today)
    add_series(test_db, bleach, BLEACH_SERIES, today)
    add_series(test_db, sponge, [4], today)
    add_series(test_db, gloves, [3, 6], today)
    await test_db.flush()

    await test_db.commit()

    return SeededLedger(
        today=today,
        pantry=pantry,
        cleaning=cleaning,
        coffee=coffee,
        sugar=sugar,
        tea=tea,
        bleach=bleach,
        sponge=sponge,
        gloves=gloves,
    )
