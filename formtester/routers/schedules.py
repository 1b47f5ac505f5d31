from fastapi import APIRouter, Body, Depends, Query
from typing import Any, Optional

from formtester.dependencies import get_schedule_service
from formtester.schemas import ActiveToggle, ScheduleRead, ScheduleUpdate, TestRunSummary
from formtester.services import ScheduleService

router = APIRouter()


def _dump(schedule) -> dict[str, Any]:
    return ScheduleRead.from_model(schedule).model_dump(by_alias=True, mode="json")

@router.post("/schedules", status_code=201)
@router.post("/schedule-test", status_code=201)
def create_schedule(
    payload: dict[str, Any] = Body(...),
    service: ScheduleService = Depends(get_schedule_service),
) -> dict[str, Any]:
    """Creates a recurring form test and, when active, its timer rule.

    Args:
        payload: camelCase schedule definition. Required: name, url,
            formConfig, userData, frequency.
        service: Injected ScheduleService.

    Returns:
        Summary fields plus the stored schedule.
    """
    schedule = service.create_schedule(payload)
    return {
        "message": "Test schedule created successfully",
        "scheduleId": schedule.id,
        "name": schedule.name,
        "frequency": schedule.frequency,
        "cronExpression": schedule.cron_expression,
        "active": schedule.active,
        "schedule": _dump(schedule),
    }

@router.get("/schedules")
def list_schedules(
    active: Optional[bool] = None,
    limit: int = Query(default=50, ge=1, le=500),
    start_key: Optional[str] = Query(default=None, alias="startKey"),
    service: ScheduleService = Depends(get_schedule_service),
) -> dict[str, Any]:
    items, next_token = service.list_schedules(active=active, limit=limit, start_key=start_key)
    return {"items": [_dump(s) for s in items], "count": len(items), "nextToken": next_token}

@router.get("/schedules/{schedule_id}")
def get_schedule(
    schedule_id: str,
    service: ScheduleService = Depends(get_schedule_service),
) -> dict[str, Any]:
    return _dump(service.get_schedule(schedule_id))

@router.patch("/schedules/{schedule_id}")
def update_schedule(
    schedule_id: str,
    changes: ScheduleUpdate,
    service: ScheduleService = Depends(get_schedule_service),
) -> dict[str, Any]:
    """Partial update; send ``expectedVersion`` to guard against concurrent edits.

    An update that changes nothing still succeeds, with ``changed`` false.
    """
    schedule, changed = service.update_schedule(schedule_id, changes)
    return {
        "message": "Schedule updated successfully" if changed else "No changes to apply",
        "changed": changed,
        "schedule": _dump(schedule),
    }

@router.patch("/schedules/{schedule_id}/active")
def set_schedule_active(
    schedule_id: str,
    toggle: ActiveToggle,
    service: ScheduleService = Depends(get_schedule_service),
) -> dict[str, Any]:
    schedule, changed = service.set_active(schedule_id, toggle.active)
    state = "activated" if schedule.active else "deactivated"
    return {
        "message": f"Schedule {state} successfully" if changed else f"Schedule is already {state}",
        "scheduleId": schedule.id,
        "active": schedule.active,
        "changed": changed,
        "nextRunTime": _dump(schedule)["nextRunTime"],
    }

@router.delete("/schedules/{schedule_id}")
def delete_schedule(
    schedule_id: str,
    service: ScheduleService = Depends(get_schedule_service),
) -> dict[str, Any]:
    service.delete_schedule(schedule_id)
    return {"message": "Schedule deleted successfully", "scheduleId": schedule_id}

@router.get("/schedules/{schedule_id}/runs")
def get_schedule_runs(
    schedule_id: str,
    limit: int = Query(default=50, ge=1, le=500),
    start_key: Optional[str] = Query(default=None, alias="startKey"),
    service: ScheduleService = Depends(get_schedule_service),
) -> dict[str, Any]:
    """Runs produced by a schedule, newest first."""
    items, next_token, total = service.get_schedule_runs(schedule_id, limit=limit, start_key=start_key)
    return {
        "items": [TestRunSummary.from_model(r).model_dump(by_alias=True, mode="json") for r in items],
        "count": len(items),
        "scheduleId": schedule_id,
        "nextToken": next_token,
        "totalRuns": total,
    }
