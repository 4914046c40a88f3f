"""
Statistics Router — item profiles, correlations and recommendations.
"""

from datetime import date, datetime, timedelta
from uuid import UUID

from fastapi import APIRouter, Depends, HTTPException, Query
from pydantic import BaseModel, Field

from analytics.correlation import CorrelationSkip, CorrelationType
from analytics.errors import CategoryNotFoundError, ItemNotFoundError
from analytics.profiler import VolatilityClass
from analytics.service import ConsumptionAnalyticsService
from analytics.staleness import RefreshScope
from api.deps import get_analytics_service

router = APIRouter(prefix="/api/v1/statistics", tags=["statistics"])


# ─── Schemas ────────────────────────────────────────────────────────────────


class ProfileResponse(BaseModel):
    item_id: UUID
    window_days: int
    data_points: int
    sufficient_data: bool
    mean: float | None
    std_dev: float | None
    coefficient_of_variation: float | None
    volatility: VolatilityClass | None
    is_highly_volatile: bool
    coverage_days: int | None
    expected_stockout_date: date | None

    model_config = {"from_attributes": True}


class StoredProfileResponse(BaseModel):
    item_id: UUID
    name: str
    current_quantity: float
    reorder_level: float | None
    avg_daily_consumption: float | None
    consumption_std_dev: float | None
    coefficient_of_variation: float | None
    volatility_classification: str | None
    is_highly_volatile: bool
    coverage_days: int | None
    expected_stockout_date: date | None
    last_statistics_update: datetime | None

    model_config = {"from_attributes": True}


class ConsumptionSummaryResponse(BaseModel):
    window_days: int
    total_records: int
    total_consumption: float
    median: float | None
    minimum: float | None
    maximum: float | None
    value_range: float | None
    percentile_25: float | None
    percentile_75: float | None
    percentile_90: float | None
    trend: str
    consumption_pattern: str
    days_with_activity: int
    activity_rate: float | None
    day_of_week_averages: dict[str, float]
    weekday_average: float | None
    weekend_average: float | None
    forecast_next_period: float | None

    model_config = {"from_attributes": True}


class ItemStatisticsResponse(BaseModel):
    item_id: UUID
    name: str
    profile: ProfileResponse
    summary: ConsumptionSummaryResponse
    abnormal_dates: list[date]

    model_config = {"from_attributes": True}


class ItemConsumptionStatResponse(BaseModel):
    item_id: UUID
    total_consumption: float
    average_consumption: float
    coefficient_of_variation: float | None

    model_config = {"from_attributes": True}


class CategoryStatisticsResponse(BaseModel):
    category_id: UUID
    window_days: int
    total_items: int
    total_records: int
    total_consumption: float
    category_cv: float | None
    category_volatility: VolatilityClass | None
    top_consuming_items: list[ItemConsumptionStatResponse]


class CorrelationRefreshRequest(BaseModel):
    item_a: UUID
    item_b: UUID
    window_days: int | None = Field(None, ge=1, le=365)


class CorrelationRefreshResponse(BaseModel):
    item_low_id: UUID
    item_high_id: UUID
    status: str  # updated | skipped
    reason: str | None = None
    data_points: int
    coefficient: float | None = None
    correlation_type: CorrelationType | None = None
    confidence_level: float | None = None
    co_consumption_count: int | None = None
    average_time_gap_days: float | None = None


class RefreshRequest(BaseModel):
    scope: RefreshScope = RefreshScope.STALE
    category_id: UUID | None = None
    cutoff_hours: int | None = Field(None, ge=0)


class RefreshSummaryResponse(BaseModel):
    scope: str
    started_at: datetime
    completed_at: datetime | None
    profiles_updated: int
    profiles_insufficient_data: int
    correlations_updated: int
    correlations_insufficient_data: int
    correlations_undefined_variance: int
    correlations_not_found: int
    skipped: int
    failures: dict[str, str]
    aborted: bool


class RecommendationResponse(BaseModel):
    item_id: UUID
    name: str
    coefficient: float
    correlation_type: CorrelationType
    last_calculated: datetime | None
    current_quantity: float | None
    reorder_level: float | None
    needs_reorder: bool

    model_config = {"from_attributes": True}


class CorrelationStatisticsResponse(BaseModel):
    total_correlations: int
    average_coefficient: float | None
    max_coefficient: float | None
    min_coefficient: float | None
    strong_positive_count: int
    strong_negative_count: int
    significant_count: int
    by_type: dict[str, int]
    last_calculated: datetime | None

    model_config = {"from_attributes": True}


# ─── Helpers ────────────────────────────────────────────────────────────────


def _profile_response(profile) -> ProfileResponse:
    return ProfileResponse(
        item_id=profile.item_id,
        window_days=profile.window_days,
        data_points=profile.data_points,
        sufficient_data=profile.sufficient_data,
        mean=profile.mean,
        std_dev=profile.std_dev,
        coefficient_of_variation=profile.coefficient_of_variation,
        volatility=profile.volatility,
        is_highly_volatile=profile.is_highly_volatile,
        coverage_days=profile.coverage_days,
        expected_stockout_date=profile.expected_stockout_date,
    )


# ─── Item Profiles ──────────────────────────────────────────────────────────


@router.post("/items/{item_id}/profile", response_model=ProfileResponse)
async def refresh_item_profile(
    item_id: UUID,
    window_days: int | None = Query(None, ge=1, le=365),
    service: ConsumptionAnalyticsService = Depends(get_analytics_service),
):
    """Recompute and store an item's volatility / coverage profile."""
    try:
        profile = await service.refresh_profile(item_id, window_days)
    except ItemNotFoundError:
        raise HTTPException(status_code=404, detail="Item not found")
    await service.db.commit()
    return _profile_response(profile)


@router.get("/items/{item_id}/profile", response_model=StoredProfileResponse)
async def get_item_profile(
    item_id: UUID,
    service: ConsumptionAnalyticsService = Depends(get_analytics_service),
):
    """Last stored profile, as written by the most recent refresh."""
    item = await service.store.fetch_item(item_id)
    if not item:
        raise HTTPException(status_code=404, detail="Item not found")
    return item


@router.get("/items/{item_id}/summary", response_model=ItemStatisticsResponse)
async def get_item_statistics(
    item_id: UUID,
    days: int = Query(30, ge=1, le=365),
    service: ConsumptionAnalyticsService = Depends(get_analytics_service),
):
    """Descriptive statistics, trend and abnormal days (nothing is persisted)."""
    try:
        stats = await service.summarize_item(item_id, days)
    except ItemNotFoundError:
        raise HTTPException(status_code=404, detail="Item not found")
    return ItemStatisticsResponse(
        item_id=stats.item_id,
        name=stats.name,
        profile=_profile_response(stats.profile),
        summary=ConsumptionSummaryResponse.model_validate(stats.summary),
        abnormal_dates=stats.abnormal_dates,
    )


@router.get("/categories/{category_id}", response_model=CategoryStatisticsResponse)
async def get_category_statistics(
    category_id: UUID,
    days: int = Query(30, ge=1, le=365),
    service: ConsumptionAnalyticsService = Depends(get_analytics_service),
):
    try:
        stats = await service.category_statistics(category_id, days)
    except CategoryNotFoundError:
        raise HTTPException(status_code=404, detail="Category not found")
    return CategoryStatisticsResponse(
        category_id=category_id,
        window_days=stats.window_days,
        total_items=stats.total_items,
        total_records=stats.total_records,
        total_consumption=stats.total_consumption,
        category_cv=stats.category_cv,
        category_volatility=stats.category_volatility,
        top_consuming_items=[ItemConsumptionStatResponse.model_validate(s) for s in stats.top_consuming_items],
    )


# ─── Correlations ───────────────────────────────────────────────────────────


@router.post("/correlations/refresh", response_model=CorrelationRefreshResponse)
async def refresh_pair_correlation(
    body: CorrelationRefreshRequest,
    service: ConsumptionAnalyticsService = Depends(get_analytics_service),
):
    """
    Recompute one pair. Order of item_a / item_b does not matter.

    Sparse or constant series come back as status=skipped with a reason.
    """
    if body.item_a == body.item_b:
        raise HTTPException(status_code=400, detail="Cannot correlate an item with itself")
    try:
        outcome = await service.refresh_correlation(body.item_a, body.item_b, body.window_days)
    except ItemNotFoundError as exc:
        raise HTTPException(status_code=404, detail=f"Item not found: {exc.item_id}")

    if isinstance(outcome, CorrelationSkip):
        return CorrelationRefreshResponse(
            item_low_id=outcome.item_low_id,
            item_high_id=outcome.item_high_id,
            status="skipped",
            reason=outcome.reason.value,
            data_points=outcome.data_points,
        )

    await service.db.commit()
    return CorrelationRefreshResponse(
        item_low_id=outcome.item_low_id,
        item_high_id=outcome.item_high_id,
        status="updated",
        data_points=outcome.data_points,
        coefficient=outcome.coefficient,
        correlation_type=outcome.correlation_type,
        confidence_level=outcome.confidence_level,
        co_consumption_count=outcome.co_consumption_count,
        average_time_gap_days=outcome.average_time_gap_days,
    )


@router.post("/items/{item_id}/correlations/refresh", response_model=RefreshSummaryResponse)
async def refresh_item_correlations(
    item_id: UUID,
    window_days: int | None = Query(None, ge=1, le=365),
    service: ConsumptionAnalyticsService = Depends(get_analytics_service),
):
    """Recompute every pair of one item against its candidate partners."""
    try:
        summary = await service.refresh_item_correlations(item_id, window_days)
    except ItemNotFoundError:
        raise HTTPException(status_code=404, detail="Item not found")
    return RefreshSummaryResponse(**summary.as_dict())


@router.post("/refresh", response_model=RefreshSummaryResponse)
async def refresh_analytics(
    body: RefreshRequest,
    service: ConsumptionAnalyticsService = Depends(get_analytics_service),
):
    """
    Run a refresh pass inline. Scheduled passes run in Celery
    (workers.analytics.refresh_analytics); this is the on-demand variant.
    """
    if body.scope is RefreshScope.CATEGORY and body.category_id is None:
        raise HTTPException(status_code=422, detail="category_id required for scope=category")
    cutoff = timedelta(hours=body.cutoff_hours) if body.cutoff_hours is not None else None
    summary = await service.refresh_all(body.scope, body.category_id, cutoff=cutoff)
    return RefreshSummaryResponse(**summary.as_dict())


@router.get("/correlations/recommendations/{item_id}", response_model=list[RecommendationResponse])
async def get_correlated_recommendations(
    item_id: UUID,
    limit: int = Query(5, ge=1, le=50),
    service: ConsumptionAnalyticsService = Depends(get_analytics_service),
):
    """Items frequently consumed together with this one, strongest first."""
    try:
        return await service.get_recommendations(item_id, limit)
    except ItemNotFoundError:
        raise HTTPException(status_code=404, detail="Item not found")


@router.get("/correlations/summary", response_model=CorrelationStatisticsResponse)
async def get_correlation_statistics(
    service: ConsumptionAnalyticsService = Depends(get_analytics_service),
):
    return await service.correlation_statistics()


@router.delete("/correlations/items/{item_id}")
async def deactivate_item_correlations(
    item_id: UUID,
    service: ConsumptionAnalyticsService = Depends(get_analytics_service),
):
    """Logically delete every correlation of a removed item."""
    deactivated = await service.on_item_deleted(item_id)
    await service.db.commit()
    return {"item_id": str(item_id), "deactivated": deactivated}
