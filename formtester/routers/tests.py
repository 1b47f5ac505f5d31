from fastapi import APIRouter, Depends, Query
from typing import Any, Optional
from datetime import datetime

from formtester.dependencies import get_history_service, get_runner
from formtester.schemas import RunTestRequest, RunTestResponse, TestRunSummary
from formtester.services import FormTestRunner, HistoryService
from formtester.utils.time import parse_iso

router = APIRouter()

@router.post("/tests")
@router.post("/run-test")
async def run_test(
    request: RunTestRequest,
    runner: FormTestRunner = Depends(get_runner),
) -> dict[str, Any]:
    """Runs a form test on demand and returns once it reaches a terminal state.

    Browser-side failures come back as a ``failed`` run, never as an HTTP
    error.

    Args:
        request: Url, form configuration and fill values.
        runner: Injected FormTestRunner.

    Returns:
        Test id, terminal status, screenshot keys and error count.
    """
    test_run = await runner.run(
        request.url,
        request.form_config,
        request.user_data,
        name=request.name,
        description=request.description,
    )
    return RunTestResponse(
        test_id=test_run.id,
        status=test_run.status,
        url=test_run.url,
        screenshots=dict(test_run.screenshots or {}),
        error_count=len(test_run.errors or []),
    ).model_dump(by_alias=True)

@router.get("/tests")
@router.get("/test-results")
def list_test_results(
    url: Optional[str] = None,
    status: Optional[str] = None,
    start_date: Optional[datetime] = Query(default=None, alias="startDate"),
    end_date: Optional[datetime] = Query(default=None, alias="endDate"),
    limit: int = Query(default=50, ge=1, le=500),
    start_key: Optional[str] = Query(default=None, alias="startKey"),
    sort_by_date: str = Query(default="desc", alias="sortByDate"),
    service: HistoryService = Depends(get_history_service),
) -> dict[str, Any]:
    """Paginated test results; the summary covers the returned page only."""
    items, summary, next_token = service.list_runs(
        url=url,
        status=status,
        start_date=parse_iso(start_date.isoformat()) if start_date else None,
        end_date=parse_iso(end_date.isoformat()) if end_date else None,
        limit=limit,
        start_key=start_key,
        sort_by_date=sort_by_date,
    )
    return {
        "items": [TestRunSummary.from_model(r).model_dump(by_alias=True, mode="json") for r in items],
        "summary": summary,
        "nextToken": next_token,
    }

@router.get("/tests/{test_id}")
@router.get("/test-results/{test_id}")
def get_test_result(
    test_id: str,
    service: HistoryService = Depends(get_history_service),
) -> dict[str, Any]:
    """Full run record with signed screenshot URLs and, for scheduled runs, its schedule."""
    return service.get_run_detail(test_id)
