from datetime import datetime
from typing import Any, Optional
import logging

from sqlalchemy import and_, or_
from sqlmodel import Session, asc, desc, select

from formtester.core.config import get_settings
from formtester.core.exceptions import NotFoundError, ValidationError
from formtester.models import Schedule, TestRun
from formtester.models.test_run import FAILED, SUCCESS
from formtester.schemas.schedule import ScheduleSummary
from formtester.schemas.test_run import TestRunRead
from formtester.services.screenshots import ScreenshotStore
from formtester.utils.pagination import decode_token, encode_token
from formtester.utils.time import parse_iso

logger = logging.getLogger(__name__)

ERROR_CATEGORIES = ("field", "navigation", "timeout", "validation", "submission", "other")
_CATEGORY_KEYWORDS = (
    ("field", ("field",)),
    ("navigation", ("navigation", "navigate")),
    ("timeout", ("timeout", "timed out")),
    ("validation", ("validation", "invalid")),
    ("submission", ("submission", "submit")),
)
_FIELD_ERROR_MARKERS = ("Error processing field", "Missing required field")


def categorize_error(error: str) -> str:
    """First matching keyword bucket for an error message, else ``other``."""
    text = error.lower()
    for category, keywords in _CATEGORY_KEYWORDS:
        if any(keyword in text for keyword in keywords):
            return category
    return "other"


def categorize_errors(errors: list[str]) -> dict[str, int]:
    counts = {category: 0 for category in ERROR_CATEGORIES}
    for error in errors:
        counts[categorize_error(error)] += 1
    return counts


def form_completion_rate(test_run: TestRun) -> int:
    """Percentage of configured fields that were filled without a field error."""
    fields = (test_run.form_config or {}).get("fields") or []
    if not fields:
        return 0
    field_errors = sum(1 for e in (test_run.errors or []) if any(m in e for m in _FIELD_ERROR_MARKERS))
    return round(max(len(fields) - field_errors, 0) / len(fields) * 100)


def page_summary(runs: list[TestRun]) -> dict[str, Any]:
    """Aggregates over one page of results, not the whole filtered set."""
    durations = [(r.metrics or {}).get("duration") or 0 for r in runs]
    return {
        "total": len(runs),
        "successful": sum(1 for r in runs if r.status == SUCCESS),
        "failed": sum(1 for r in runs if r.status == FAILED),
        "avgDuration": round(sum(durations) / len(durations)) if durations else 0,
    }


class HistoryService:
    """Read side of test runs: filtered listing and enriched detail views.

    Attributes:
        db: SQLModel session.
        screenshots: Store used to sign screenshot URLs.
    """

    def __init__(self, db: Session, screenshots: ScreenshotStore, settings=None):
        self.db = db
        self.screenshots = screenshots
        self.settings = settings or get_settings()

    def get_run(self, test_id: str) -> TestRun:
        test_run = self.db.get(TestRun, test_id)
        if not test_run:
            raise NotFoundError("Test result not found")
        return test_run

    def list_runs(
        self,
        url: Optional[str] = None,
        status: Optional[str] = None,
        start_date: Optional[datetime] = None,
        end_date: Optional[datetime] = None,
        limit: int = 50,
        start_key: Optional[str] = None,
        sort_by_date: str = "desc",
    ) -> tuple[list[TestRun], dict[str, Any], Optional[str]]:
        """Retrieves one page of test runs matching the filters.

        Args:
            url: Exact url filter.
            status: Exact status filter; ``all`` disables it.
            start_date: Lower bound on ``created_at`` (inclusive).
            end_date: Upper bound on ``created_at`` (inclusive).
            limit: Page size.
            start_key: Opaque token returned by the previous page.
            sort_by_date: ``desc`` (newest first) or ``asc``.

        Returns:
            A tuple of (runs, page summary, next token or None).

        Raises:
            ValidationError: malformed continuation token or sort order.
        """
        if sort_by_date not in ("asc", "desc"):
            raise ValidationError("sortByDate must be 'asc' or 'desc'")
        newest_first = sort_by_date == "desc"
        order = desc if newest_first else asc

        query = select(TestRun).order_by(order(TestRun.created_at), order(TestRun.id))
        if url:
            query = query.where(TestRun.url == url)
        if status and status != "all":
            query = query.where(TestRun.status == status)
        if start_date:
            query = query.where(TestRun.created_at >= start_date)
        if end_date:
            query = query.where(TestRun.created_at <= end_date)

        key = decode_token(start_key)
        if key:
            try:
                created_at, last_id = parse_iso(key["createdAt"]), key["id"]
            except (KeyError, TypeError, ValueError):
                raise ValidationError("Invalid pagination token")
            if newest_first:
                query = query.where(or_(
                    TestRun.created_at < created_at,
                    and_(TestRun.created_at == created_at, TestRun.id < last_id),
                ))
            else:
                query = query.where(or_(
                    TestRun.created_at > created_at,
                    and_(TestRun.created_at == created_at, TestRun.id > last_id),
                ))

        rows = self.db.exec(query.limit(limit + 1)).all()
        items = list(rows[:limit])
        next_token = None
        if len(rows) > limit:
            last = items[-1]
            next_token = encode_token({"createdAt": last.created_at.isoformat(), "id": last.id})
        return items, page_summary(items), next_token

    def screenshot_urls(self, test_run: TestRun) -> dict[str, Optional[str]]:
        urls = {}
        for stage, key in (test_run.screenshots or {}).items():
            if not key:
                continue
            try:
                urls[stage] = self.screenshots.signed_url(key, self.settings.SCREENSHOT_URL_EXPIRES)
            except Exception as e:
                logger.error(f"Error generating signed URL for {key}: {e}")
                urls[stage] = None
        return urls

    def get_run_detail(self, test_id: str) -> dict[str, Any]:
        """Full run record plus signed screenshot URLs, schedule summary and analytics."""
        test_run = self.get_run(test_id)
        detail = TestRunRead.from_model(test_run).model_dump(by_alias=True, mode="json")
        detail["screenshotUrls"] = self.screenshot_urls(test_run)

        if test_run.schedule_id:
            schedule = self.db.get(Schedule, test_run.schedule_id)
            if schedule:
                detail["schedule"] = ScheduleSummary(
                    id=schedule.id,
                    name=schedule.name,
                    frequency=schedule.frequency,
                    active=schedule.active,
                    last_run_time=schedule.last_run_time,
                    next_run_time=schedule.next_run_time,
                ).model_dump(by_alias=True, mode="json")
            else:
                logger.warning(f"Schedule {test_run.schedule_id} of test {test_id} no longer exists")

        metrics = dict(test_run.metrics or {})
        detail["analytics"] = {
            **metrics,
            "successRate": 100 if test_run.status == SUCCESS else 0,
            "formCompletionRate": form_completion_rate(test_run),
            "errorBreakdown": categorize_errors(list(test_run.errors or [])),
            "performanceMetrics": {
                "loadTime": metrics.get("loadTime"),
                "processingTime": metrics.get("duration"),
                "submissionTime": metrics.get("submissionTime"),
            },
        }
        return detail
