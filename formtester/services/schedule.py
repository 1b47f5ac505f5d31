from datetime import datetime
from typing import Any, Optional, Union
import logging

from pydantic import ValidationError as PydanticValidationError
from sqlalchemy import and_, or_, update
from sqlmodel import Session, desc, select

from formtester.core.config import get_settings
from formtester.core.exceptions import ConflictError, NotFoundError, ValidationError
from formtester.models import Schedule, TestRun
from formtester.models.test_run import TERMINAL_STATUSES, counts_as_success
from formtester.schemas.form import FormConfig
from formtester.schemas.schedule import ScheduleCreate, ScheduleUpdate
from formtester.services.cron import derive_cron_expression, next_run_time, validate_frequency
from formtester.services.timer_rules import TimerRuleAdapter
from formtester.utils.pagination import decode_token, encode_token
from formtester.utils.time import parse_iso, utcnow

logger = logging.getLogger(__name__)

INVALID_FREQUENCY = "Invalid frequency or custom cron expression"
_PAYLOAD_FIELDS = ("name", "url", "form_config", "user_data")


class ScheduleService:
    """Owns the schedule lifecycle and keeps each schedule's timer rule in step.

    Every write to a schedule row bumps ``version`` through a conditional
    UPDATE, so concurrent writers never silently overwrite each other.
    Run completions retry on conflict; user edits surface it as a 409.

    Attributes:
        db: SQLModel session.
        timer: Adapter holding one rule per active schedule.
        settings: Application settings (rule prefix, next-run mode, outcome
            policy, retry budget).
    """

    def __init__(self, db: Session, timer: TimerRuleAdapter, settings=None):
        self.db = db
        self.timer = timer
        self.settings = settings or get_settings()

    # ------------------------------------------------------------------ helpers

    def rule_name(self, schedule_id: str) -> str:
        return f"{self.settings.RULE_NAME_PREFIX}-{schedule_id}"

    @staticmethod
    def run_payload(schedule: Schedule) -> dict[str, Any]:
        """Invocation input attached to a schedule's timer rule."""
        return {
            "scheduleId": schedule.id,
            "name": schedule.name,
            "url": schedule.url,
            "formConfig": dict(schedule.form_config or {}),
            "userData": dict(schedule.user_data or {}),
        }

    def _next_run(self, cron_expression: str, frequency: str, now: Optional[datetime] = None) -> datetime:
        return next_run_time(cron_expression, frequency, now or utcnow(), mode=self.settings.NEXT_RUN_MODE)

    def _derive_cron(self, frequency: str, custom: Optional[str], specific_time: Optional[str]) -> str:
        if not validate_frequency(frequency, custom):
            raise ValidationError(INVALID_FREQUENCY)
        cron_expression = derive_cron_expression(frequency, custom, specific_time)
        if not self.timer.supports(cron_expression):
            raise ValidationError(f"Cron expression is not supported by the timer backend: {cron_expression}")
        return cron_expression

    def _compare_and_swap(self, schedule_id: str, expected_version: int, values: dict[str, Any]) -> bool:
        """Writes ``values`` only if the row is still at ``expected_version``."""
        statement = (
            update(Schedule)
            .where(Schedule.id == schedule_id, Schedule.version == expected_version)
            .values(version=expected_version + 1, **values)
        )
        result = self.db.exec(statement)
        if result.rowcount != 1:
            self.db.rollback()
            return False
        self.db.commit()
        return True

    def _reload(self, schedule_id: str) -> Schedule:
        schedule = self.db.get(Schedule, schedule_id, populate_existing=True)
        if not schedule:
            raise NotFoundError("Schedule not found")
        return schedule

    def _sync_rule(
        self,
        schedule: Schedule,
        active: bool,
        cron_expression: str,
        payload: dict[str, Any],
        rewrite: bool = False,
    ) -> Optional[str]:
        """Brings the timer rule to the target state and returns its reference.

        Activation enables the existing rule or creates a missing one;
        deactivation only disables it. ``rewrite`` re-puts the rule when its
        expression or payload changed.
        """
        name = self.rule_name(schedule.id)
        description = f"Form test schedule: {payload['name']}"
        if active:
            if not schedule.rule_arn or rewrite:
                return self.timer.put_rule(name, cron_expression, description, payload, enabled=True)
            self.timer.enable_rule(name)
        elif schedule.rule_arn:
            if rewrite:
                return self.timer.put_rule(name, cron_expression, description, payload, enabled=False)
            self.timer.disable_rule(name)
        return schedule.rule_arn

    # ---------------------------------------------------------------- lifecycle

    def create_schedule(self, data: Union[ScheduleCreate, dict[str, Any]]) -> Schedule:
        """Persists a schedule, then links a timer rule when it starts active.

        A timer failure after the record is stored is logged and leaves the
        schedule without a rule; the record is not rolled back.

        Raises:
            ValidationError: required fields missing, or the frequency / custom
                cron expression is invalid.
        """
        if not isinstance(data, ScheduleCreate):
            try:
                data = ScheduleCreate.model_validate(data)
            except PydanticValidationError as e:
                raise ValidationError(
                    "Missing required parameters: name, url, formConfig, userData, or frequency",
                    details=e.errors(include_url=False, include_context=False, include_input=False),
                )

        cron_expression = self._derive_cron(data.frequency, data.custom_cron_expression, data.specific_time)
        schedule = Schedule(
            name=data.name,
            description=data.description,
            url=data.url,
            form_config=data.form_config.to_store(),
            user_data=dict(data.user_data),
            frequency=data.frequency,
            custom_cron_expression=data.custom_cron_expression if data.frequency == "custom" else None,
            specific_time=data.specific_time,
            cron_expression=cron_expression,
            active=data.active,
        )
        self.db.add(schedule)
        self.db.commit()
        self.db.refresh(schedule)
        logger.info(f"Schedule {schedule.id} created ({schedule.frequency}, {cron_expression})")

        if not schedule.active:
            return schedule

        try:
            rule_arn = self._sync_rule(schedule, True, cron_expression, self.run_payload(schedule))
        except Exception as e:
            logger.error(f"Schedule {schedule.id} was saved but its timer rule could not be created: {e}")
            return schedule

        values = {"rule_arn": rule_arn, "next_run_time": self._next_run(cron_expression, schedule.frequency), "updated_at": utcnow()}
        if not self._compare_and_swap(schedule.id, schedule.version, values):
            logger.error(f"Schedule {schedule.id} changed while its timer rule was being linked")
            self._restore_rule(schedule.id, had_rule=False)
        return self._reload(schedule.id)

    def get_schedule(self, schedule_id: str) -> Schedule:
        schedule = self.db.get(Schedule, schedule_id)
        if not schedule:
            raise NotFoundError("Schedule not found")
        return schedule

    def list_schedules(
        self,
        active: Optional[bool] = None,
        limit: int = 50,
        start_key: Optional[str] = None,
    ) -> tuple[list[Schedule], Optional[str]]:
        """Newest-first page of schedules with an opaque continuation token."""
        query = select(Schedule).order_by(desc(Schedule.created_at), desc(Schedule.id))
        if active is not None:
            query = query.where(Schedule.active == active)

        key = decode_token(start_key)
        if key:
            try:
                created_at, last_id = parse_iso(key["createdAt"]), key["id"]
            except (KeyError, TypeError, ValueError):
                raise ValidationError("Invalid pagination token")
            query = query.where(
                or_(
                    Schedule.created_at < created_at,
                    and_(Schedule.created_at == created_at, Schedule.id < last_id),
                )
            )

        rows = self.db.exec(query.limit(limit + 1)).all()
        items = list(rows[:limit])
        next_token = None
        if len(rows) > limit:
            last = items[-1]
            next_token = encode_token({"createdAt": last.created_at.isoformat(), "id": last.id})
        return items, next_token

    def update_schedule(
        self,
        schedule_id: str,
        changes: Union[ScheduleUpdate, dict[str, Any]],
        expected_version: Optional[int] = None,
    ) -> tuple[Schedule, bool]:
        """Applies a partial update and re-syncs the timer rule.

        Only fields present in ``changes`` are considered. A frequency,
        custom expression or time-of-day change re-derives the cron expression
        and next run; activation recomputes the next run; deactivation only
        disables the rule.

        Args:
            schedule_id: Schedule to change.
            changes: ``ScheduleUpdate`` or a snake_case dict of supplied fields.
            expected_version: Optional optimistic-concurrency guard.

        Returns:
            Tuple of (schedule, changed). ``changed`` is False when nothing in
            the input differed from the stored values.

        Raises:
            NotFoundError: unknown id.
            ValidationError: invalid frequency or custom cron expression.
            ConflictError: the stored version differs from ``expected_version``,
                or another writer got in first.
        """
        if isinstance(changes, ScheduleUpdate):
            if expected_version is None:
                expected_version = changes.expected_version
            changes = changes.model_dump(exclude_unset=True, exclude={"expected_version"})
        else:
            changes = dict(changes)
            changes.pop("expected_version", None)
        if isinstance(changes.get("form_config"), FormConfig):
            changes["form_config"] = changes["form_config"].to_store()
        elif isinstance(changes.get("form_config"), dict):
            try:
                changes["form_config"] = FormConfig.model_validate(changes["form_config"]).to_store()
            except PydanticValidationError as e:
                raise ValidationError("Invalid formConfig", details=e.errors(include_url=False, include_context=False, include_input=False))

        schedule = self.get_schedule(schedule_id)
        if expected_version is not None and expected_version != schedule.version:
            raise ConflictError(
                f"Schedule {schedule_id} is at version {schedule.version}, expected {expected_version}"
            )

        values: dict[str, Any] = {}
        for key in ("name", "description", "url", "form_config", "user_data"):
            if key in changes and changes[key] is not None and changes[key] != getattr(schedule, key):
                values[key] = changes[key]

        frequency = changes.get("frequency") or schedule.frequency
        specific_time = changes["specific_time"] if changes.get("specific_time") else schedule.specific_time
        custom = changes["custom_cron_expression"] if changes.get("custom_cron_expression") else schedule.custom_cron_expression
        if frequency != "custom":
            custom = None
        timing_supplied = any(changes.get(key) for key in ("frequency", "specific_time", "custom_cron_expression"))

        cron_changed = False
        if timing_supplied:
            cron_expression = self._derive_cron(frequency, custom, specific_time)
            for key, value in (("frequency", frequency), ("specific_time", specific_time), ("custom_cron_expression", custom)):
                if value != getattr(schedule, key):
                    values[key] = value
            if cron_expression != schedule.cron_expression:
                values["cron_expression"] = cron_expression
                cron_changed = True
        else:
            cron_expression = schedule.cron_expression

        active = schedule.active
        activated = False
        if changes.get("active") is not None and changes["active"] != schedule.active:
            active = changes["active"]
            activated = active
            values["active"] = active

        if not values:
            logger.info(f"Schedule {schedule_id}: no changes to apply")
            return schedule, False

        if cron_changed or activated or "frequency" in values:
            values["next_run_time"] = self._next_run(cron_expression, frequency)
        values["updated_at"] = utcnow()

        payload_changed = any(key in values for key in _PAYLOAD_FIELDS)
        version, had_rule = schedule.version, bool(schedule.rule_arn)
        rule_touched = False
        if payload_changed or cron_changed or "active" in values:
            preview = Schedule.model_validate({**schedule.model_dump(), **values})
            values["rule_arn"] = self._sync_rule(
                schedule,
                active,
                cron_expression,
                self.run_payload(preview),
                rewrite=cron_changed or payload_changed,
            )
            rule_touched = True

        if not self._compare_and_swap(schedule_id, version, values):
            if rule_touched:
                self._restore_rule(schedule_id, had_rule)
            raise ConflictError(f"Schedule {schedule_id} was modified concurrently")
        logger.info(f"Schedule {schedule_id} updated: {sorted(values)}")
        return self._reload(schedule_id), True

    def set_active(self, schedule_id: str, active: bool) -> tuple[Schedule, bool]:
        """Activates or deactivates a schedule.

        Re-applying the current state is a no-op reported with ``changed``
        False, not an error.
        """
        schedule, changed = self.update_schedule(schedule_id, {"active": active})
        return schedule, changed

    def delete_schedule(self, schedule_id: str) -> None:
        """Deletes the schedule record, removing its timer rule first.

        Rule cleanup failures are logged and do not stop the deletion.
        """
        schedule = self.get_schedule(schedule_id)
        if schedule.rule_arn:
            name = self.rule_name(schedule_id)
            try:
                self.timer.delete_rule(name)
            except Exception as e:
                logger.error(f"Failed to delete timer rule {name} for schedule {schedule_id}: {e}")
        self.db.delete(schedule)
        self.db.commit()
        logger.info(f"Schedule {schedule_id} deleted")

    # ------------------------------------------------------------- run results

    def record_run_completion(
        self,
        schedule_id: str,
        run_id: str,
        status: str,
        run_start: Optional[datetime] = None,
    ) -> Schedule:
        """Folds a finished run into the schedule's stats and history.

        The write is a version-checked compare-and-swap retried up to
        ``STATS_WRITE_RETRIES`` times. A run id already in ``runs`` is
        ignored, so redelivered completions never double count. The next
        run time is only recomputed while the schedule is still active.

        Raises:
            NotFoundError: the schedule no longer exists.
            ValidationError: ``status`` is not a terminal status.
            ConflictError: every retry lost the race.
        """
        if status not in TERMINAL_STATUSES:
            raise ValidationError(f"Run {run_id} is not finished (status {status})")
        success = counts_as_success(status, self.settings.COMPLETED_RUN_OUTCOME)

        for attempt in range(1, self.settings.STATS_WRITE_RETRIES + 1):
            schedule = self._reload(schedule_id)
            runs = list(schedule.runs or [])
            if run_id in runs:
                logger.info(f"Run {run_id} already recorded on schedule {schedule_id}, skipping")
                return schedule

            now = utcnow()
            values = {
                "stats_total": schedule.stats_total + 1,
                "stats_success": schedule.stats_success + (1 if success else 0),
                "stats_failed": schedule.stats_failed + (0 if success else 1),
                "runs": runs + [run_id],
                "last_run_time": run_start or now,
                "last_test_id": run_id,
                "last_test_status": status,
                "updated_at": now,
            }
            if schedule.active:
                values["next_run_time"] = self._next_run(schedule.cron_expression, schedule.frequency, now)

            if self._compare_and_swap(schedule_id, schedule.version, values):
                logger.info(f"Recorded run {run_id} ({status}) on schedule {schedule_id}")
                return self._reload(schedule_id)
            logger.warning(f"Version conflict recording run {run_id} on schedule {schedule_id} (attempt {attempt})")

        raise ConflictError(f"Could not record run {run_id} on schedule {schedule_id}: too many concurrent updates")

    def get_schedule_runs(
        self,
        schedule_id: str,
        limit: int = 50,
        start_key: Optional[str] = None,
    ) -> tuple[list[TestRun], Optional[str], int]:
        """Pages through the schedule's runs, newest first.

        The continuation token is the id of the last run returned.

        Returns:
            Tuple of (runs, next_token, total_runs).
        """
        schedule = self.get_schedule(schedule_id)
        ordered = list(reversed(schedule.runs or []))
        start = 0
        if start_key:
            if start_key not in ordered:
                raise ValidationError("Invalid pagination token")
            start = ordered.index(start_key) + 1

        page_ids = ordered[start:start + limit]
        if not page_ids:
            return [], None, len(ordered)

        rows = self.db.exec(select(TestRun).where(TestRun.id.in_(page_ids))).all()
        items = sorted(rows, key=lambda r: r.created_at, reverse=True)
        next_token = page_ids[-1] if start + limit < len(ordered) else None
        return items, next_token, len(ordered)

    def due_schedules(self, now: Optional[datetime] = None) -> list[Schedule]:
        """Active schedules whose next run time has passed."""
        now = now or utcnow()
        query = (
            select(Schedule)
            .where(Schedule.active == True)  # noqa: E712
            .where(Schedule.next_run_time != None)  # noqa: E711
            .where(Schedule.next_run_time <= now)
            .order_by(Schedule.next_run_time)
        )
        return list(self.db.exec(query).all())
