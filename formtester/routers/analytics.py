from fastapi import APIRouter, Depends, Query
from typing import Any, Optional

from formtester.dependencies import get_analytics_service
from formtester.services import AnalyticsService

router = APIRouter(prefix="/analytics")

@router.get("/overview")
def get_overview(
    time_range: Optional[str] = Query(default=None, alias="timeRange"),
    service: AnalyticsService = Depends(get_analytics_service),
) -> dict[str, Any]:
    """Success/failure totals, daily series and error breakdown over a time range.

    Args:
        time_range: ``24h``, ``7days`` (default), ``30days`` or ``all``.
        service: Injected AnalyticsService.
    """
    return service.overview(time_range)

@router.get("/url")
def get_url_report(
    url: Optional[str] = None,
    time_range: Optional[str] = Query(default=None, alias="timeRange"),
    service: AnalyticsService = Depends(get_analytics_service),
) -> dict[str, Any]:
    return service.url_report(url, time_range)
