from collections import Counter
from datetime import datetime, timedelta
from typing import Any, Optional
import logging

from sqlmodel import Session, desc, func, select

from formtester.core.config import get_settings
from formtester.core.exceptions import ValidationError
from formtester.models import Schedule, TestRun
from formtester.models.test_run import COMPLETED, FAILED, TERMINAL_STATUSES, counts_as_success
from formtester.services.history import categorize_error
from formtester.utils.time import isoformat_utc, utcnow

logger = logging.getLogger(__name__)

TIME_RANGES = {
    "24h": timedelta(hours=24),
    "7days": timedelta(days=7),
    "30days": timedelta(days=30),
    # "all" is capped at one year
    "all": timedelta(days=365),
}
DEFAULT_TIME_RANGE = "7days"


def range_start(time_range: Optional[str], now: Optional[datetime] = None) -> datetime:
    if time_range and time_range not in TIME_RANGES:
        raise ValidationError(f"Unknown timeRange: {time_range}. Expected one of {', '.join(TIME_RANGES)}")
    return (now or utcnow()) - TIME_RANGES[time_range or DEFAULT_TIME_RANGE]


def _percent(part: int, whole: int) -> float:
    return round(part / whole * 100, 1) if whole else 0.0


class AnalyticsService:
    """Dashboard aggregates over terminal test runs within a time range.

    ``completed`` runs are tallied as successes or failures according to
    ``COMPLETED_RUN_OUTCOME``, the same policy the schedule stats use.
    """

    def __init__(self, db: Session, settings=None):
        self.db = db
        self.settings = settings or get_settings()

    def _is_success(self, test_run: TestRun) -> bool:
        return counts_as_success(test_run.status, self.settings.COMPLETED_RUN_OUTCOME)

    def _runs_since(self, start: datetime, url: Optional[str] = None) -> list[TestRun]:
        query = (
            select(TestRun)
            .where(TestRun.created_at >= start)
            .where(TestRun.status.in_(TERMINAL_STATUSES))
            .order_by(TestRun.created_at)
        )
        if url:
            query = query.where(TestRun.url == url)
        return list(self.db.exec(query).all())

    def calculate_metrics(self, runs: list[TestRun]) -> dict[str, Any]:
        total = len(runs)
        successful = sum(1 for r in runs if self._is_success(r))
        failed = total - successful

        durations = [((r.metrics or {}).get("duration") or 0) / 1000 for r in runs]
        avg_duration = round(sum(durations) / total, 1) if total else 0.0

        by_url = Counter(r.url for r in runs)
        most_tested = [{"name": url, "value": count} for url, count in by_url.most_common(5)]

        failures = [r for r in runs if not self._is_success(r)]
        failures.sort(key=lambda r: r.created_at, reverse=True)
        recent_failures = [
            {
                "id": r.id,
                "url": r.url,
                "status": r.status,
                "createdAt": isoformat_utc(r.created_at),
                "errorCount": len(r.errors or []),
            }
            for r in failures[:5]
        ]

        by_day: dict[str, dict[str, int]] = {}
        for r in runs:
            bucket = by_day.setdefault(r.created_at.strftime("%Y-%m-%d"), {"successful": 0, "failed": 0})
            bucket["successful" if self._is_success(r) else "failed"] += 1
        tests_over_time = [{"date": day, **counts} for day, counts in sorted(by_day.items())]

        error_counts: Counter = Counter()
        for r in failures:
            for error in r.errors or []:
                error_counts[categorize_error(error)] += 1
        error_distribution = [{"name": name, "value": value} for name, value in error_counts.most_common()]

        return {
            "totalTests": total,
            "successRate": _percent(successful, total),
            "failureRate": _percent(failed, total),
            "avgDuration": avg_duration,
            "mostTestedForms": most_tested,
            "recentFailures": recent_failures,
            "testsOverTime": tests_over_time,
            "errorDistribution": error_distribution,
        }

    def schedule_info(self) -> dict[str, Any]:
        total = self.db.exec(select(func.count()).select_from(Schedule)).one()
        active = self.db.exec(
            select(func.count()).select_from(Schedule).where(Schedule.active == True)  # noqa: E712
        ).one()
        upcoming = self.db.exec(
            select(Schedule)
            .where(Schedule.active == True)  # noqa: E712
            .where(Schedule.next_run_time != None)  # noqa: E711
            .order_by(Schedule.next_run_time)
            .limit(3)
        ).all()
        return {
            "activeSchedules": active,
            "totalSchedules": total,
            "upcomingScheduledTests": [
                {"id": s.id, "name": s.name, "url": s.url, "nextRun": isoformat_utc(s.next_run_time)}
                for s in upcoming
            ],
        }

    def overview(self, time_range: Optional[str] = None) -> dict[str, Any]:
        runs = self._runs_since(range_start(time_range))
        return {**self.calculate_metrics(runs), **self.schedule_info()}

    def url_report(self, url: str, time_range: Optional[str] = None) -> dict[str, Any]:
        """Same metrics as ``overview`` restricted to a single form url."""
        if not url:
            raise ValidationError("Missing required parameter: url")
        runs = self._runs_since(range_start(time_range), url=url)
        metrics = self.calculate_metrics(runs)
        latest = self.db.exec(
            select(TestRun).where(TestRun.url == url).order_by(desc(TestRun.created_at)).limit(1)
        ).first()
        metrics["url"] = url
        metrics["timeRange"] = time_range or DEFAULT_TIME_RANGE
        metrics["lastTest"] = (
            {"id": latest.id, "status": latest.status, "createdAt": isoformat_utc(latest.created_at)}
            if latest else None
        )
        metrics["completedRuns"] = sum(1 for r in runs if r.status == COMPLETED)
        metrics["failedRuns"] = sum(1 for r in runs if r.status == FAILED)
        return metrics
