from typing import Any, Optional
from pydantic import Field

from formtester.models import Schedule
from formtester.schemas.common import CamelModel, UtcDatetime
from formtester.schemas.form import FormConfig, FieldValue

TIME_PATTERN = r"^([01]?\d|2[0-3]):[0-5]\d$"


class ScheduleCreate(CamelModel):
    name: str = Field(min_length=1)
    description: Optional[str] = None
    url: str = Field(min_length=1)
    form_config: FormConfig
    user_data: dict[str, Optional[FieldValue]]
    frequency: str = Field(min_length=1)
    custom_cron_expression: Optional[str] = None
    specific_time: Optional[str] = Field(default=None, pattern=TIME_PATTERN)
    active: bool = True


class ScheduleUpdate(CamelModel):
    """Partial update; only the fields present in the request are applied."""
    name: Optional[str] = Field(default=None, min_length=1)
    description: Optional[str] = None
    url: Optional[str] = Field(default=None, min_length=1)
    form_config: Optional[FormConfig] = None
    user_data: Optional[dict[str, Optional[FieldValue]]] = None
    frequency: Optional[str] = None
    custom_cron_expression: Optional[str] = None
    specific_time: Optional[str] = Field(default=None, pattern=TIME_PATTERN)
    active: Optional[bool] = None
    expected_version: Optional[int] = None


class ActiveToggle(CamelModel):
    active: bool


class ScheduleStats(CamelModel):
    total: int = 0
    success: int = 0
    failed: int = 0


class ScheduleRead(CamelModel):
    id: str
    name: str
    description: Optional[str] = None
    url: str
    form_config: dict[str, Any]
    user_data: dict[str, Any]
    frequency: str
    custom_cron_expression: Optional[str] = None
    specific_time: Optional[str] = None
    cron_expression: str
    active: bool
    created_at: UtcDatetime
    updated_at: UtcDatetime
    last_run_time: Optional[UtcDatetime] = None
    next_run_time: Optional[UtcDatetime] = None
    runs: list[str] = Field(default_factory=list)
    stats: ScheduleStats
    last_test_id: Optional[str] = None
    last_test_status: Optional[str] = None
    rule_arn: Optional[str] = None
    version: int
    type: str = "schedule"

    @classmethod
    def from_model(cls, schedule: Schedule) -> "ScheduleRead":
        return cls(
            id=schedule.id,
            name=schedule.name,
            description=schedule.description,
            url=schedule.url,
            form_config=dict(schedule.form_config or {}),
            user_data=dict(schedule.user_data or {}),
            frequency=schedule.frequency,
            custom_cron_expression=schedule.custom_cron_expression,
            specific_time=schedule.specific_time,
            cron_expression=schedule.cron_expression,
            active=schedule.active,
            created_at=schedule.created_at,
            updated_at=schedule.updated_at,
            last_run_time=schedule.last_run_time,
            next_run_time=schedule.next_run_time,
            runs=list(schedule.runs or []),
            stats=ScheduleStats(
                total=schedule.stats_total,
                success=schedule.stats_success,
                failed=schedule.stats_failed,
            ),
            last_test_id=schedule.last_test_id,
            last_test_status=schedule.last_test_status,
            rule_arn=schedule.rule_arn,
            version=schedule.version,
        )


class ScheduleSummary(CamelModel):
    """Subset embedded into a test-result detail."""
    id: str
    name: str
    frequency: str
    active: bool
    last_run_time: Optional[UtcDatetime] = None
    next_run_time: Optional[UtcDatetime] = None
