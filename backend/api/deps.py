"""
StockSense API Dependencies

Dependency injection for DB sessions and the analytics service.
"""

from collections.abc import AsyncGenerator

from fastapi import Depends
from sqlalchemy.ext.asyncio import AsyncSession

from analytics.service import ConsumptionAnalyticsService
from core.config import get_settings
from db.session import AsyncSessionLocal


async def get_db() -> AsyncGenerator[AsyncSession, None]:
    """Yield an async database session."""
    async with AsyncSessionLocal() as session:
        try:
            yield session
        finally:
            await session.close()


async def get_analytics_service(db: AsyncSession = Depends(get_db)) -> ConsumptionAnalyticsService:
    """Analytics service bound to the request's session and configured thresholds."""
    return ConsumptionAnalyticsService(db, settings=get_settings())
