from abc import ABC, abstractmethod
from typing import Any, Optional
import json
import logging

from apscheduler.jobstores.base import JobLookupError
from apscheduler.schedulers.base import BaseScheduler

from formtester.core.config import get_settings
from formtester.core.exceptions import ExternalServiceError
from formtester.services.cron import to_cron_trigger, unwrap

logger = logging.getLogger(__name__)

RUN_SCHEDULED_TEST_REF = "formtester.services.scheduler:run_scheduled_test"


class TimerRuleAdapter(ABC):
    """One cron-triggered rule per schedule, addressed by a deterministic name.

    Implementations raise ``ExternalServiceError`` when the timer service
    rejects a call.
    """

    def supports(self, cron_expression: str) -> bool:
        """Whether this backend can fire on the given expression."""
        return True

    @abstractmethod
    def put_rule(
        self,
        name: str,
        cron_expression: str,
        description: str,
        payload: dict[str, Any],
        enabled: bool = True,
    ) -> str:
        """Creates or replaces a rule and its invocation payload.

        Returns:
            The external identifier of the rule.
        """

    @abstractmethod
    def enable_rule(self, name: str) -> None: ...

    @abstractmethod
    def disable_rule(self, name: str) -> None: ...

    @abstractmethod
    def delete_rule(self, name: str) -> None:
        """Removes the rule's targets, then the rule itself."""


class APSchedulerRuleAdapter(TimerRuleAdapter):
    """Keeps timer rules as jobs of the in-process APScheduler instance.

    Disabling pauses the job; enabling resumes it. Each job calls
    ``run_scheduled_test`` with the schedule's run payload.
    """

    def __init__(self, scheduler: BaseScheduler, timezone: Any = "UTC", job_ref: str = RUN_SCHEDULED_TEST_REF):
        self.scheduler = scheduler
        self.timezone = timezone
        self.job_ref = job_ref

    def supports(self, cron_expression: str) -> bool:
        try:
            to_cron_trigger(cron_expression, self.timezone)
            return True
        except ValueError:
            return False

    def put_rule(self, name, cron_expression, description, payload, enabled=True):
        try:
            trigger = to_cron_trigger(cron_expression, self.timezone)
        except ValueError as e:
            raise ExternalServiceError(f"Cannot schedule rule {name}: {e}")
        self.scheduler.add_job(
            self.job_ref,
            trigger,
            id=name,
            name=description,
            kwargs=payload,
            replace_existing=True,
        )
        if not enabled:
            self.scheduler.pause_job(name)
        logger.info(f"Timer rule {name} scheduled ({cron_expression}, enabled={enabled})")
        return f"apscheduler:{name}"

    def enable_rule(self, name: str) -> None:
        try:
            self.scheduler.resume_job(name)
        except JobLookupError:
            raise ExternalServiceError(f"Timer rule {name} does not exist")

    def disable_rule(self, name: str) -> None:
        try:
            self.scheduler.pause_job(name)
        except JobLookupError:
            raise ExternalServiceError(f"Timer rule {name} does not exist")

    def delete_rule(self, name: str) -> None:
        try:
            self.scheduler.remove_job(name)
        except JobLookupError:
            raise ExternalServiceError(f"Timer rule {name} does not exist")

    def rule_state(self, name: str) -> Optional[str]:
        job = self.scheduler.get_job(name)
        if not job:
            return None
        # Jobs added before the scheduler starts have no next_run_time yet
        return "DISABLED" if getattr(job, "next_run_time", "pending") is None else "ENABLED"


class EventBridgeRuleAdapter(TimerRuleAdapter):
    """Timer rules as AWS EventBridge scheduled rules, targeting the run function."""

    def __init__(
        self,
        target_arn: Optional[str],
        client: Any = None,
        region: str = "us-east-1",
        endpoint_url: Optional[str] = None,
    ):
        self.target_arn = target_arn
        if client is None:
            import boto3
            client_kwargs = {"service_name": "events", "region_name": region}
            if endpoint_url:
                client_kwargs["endpoint_url"] = endpoint_url
            client = boto3.client(**client_kwargs)
        self.client = client

    @staticmethod
    def _schedule_expression(cron_expression: str) -> str:
        return f"cron({unwrap(cron_expression)})"

    def _call(self, operation: str, **kwargs) -> dict[str, Any]:
        from botocore.exceptions import BotoCoreError, ClientError
        try:
            return getattr(self.client, operation)(**kwargs)
        except (BotoCoreError, ClientError) as e:
            raise ExternalServiceError(f"EventBridge {operation} failed: {e}")

    def put_rule(self, name, cron_expression, description, payload, enabled=True):
        if not self.target_arn:
            raise ExternalServiceError("RUN_SCHEDULED_TEST_TARGET_ARN is not configured")
        result = self._call(
            "put_rule",
            Name=name,
            ScheduleExpression=self._schedule_expression(cron_expression),
            State="ENABLED" if enabled else "DISABLED",
            Description=description,
        )
        target_id = f"form-test-target-{payload.get('scheduleId', name)}"
        self._call(
            "put_targets",
            Rule=name,
            Targets=[{"Id": target_id, "Arn": self.target_arn, "Input": json.dumps(payload)}],
        )
        logger.info(f"EventBridge rule {name} put with target {target_id}")
        return result["RuleArn"]

    def enable_rule(self, name: str) -> None:
        self._call("enable_rule", Name=name)

    def disable_rule(self, name: str) -> None:
        self._call("disable_rule", Name=name)

    def delete_rule(self, name: str) -> None:
        targets = self._call("list_targets_by_rule", Rule=name).get("Targets", [])
        if targets:
            self._call("remove_targets", Rule=name, Ids=[t["Id"] for t in targets])
        self._call("delete_rule", Name=name)
        logger.info(f"EventBridge rule {name} deleted")


def get_timer_adapter(settings=None) -> TimerRuleAdapter:
    settings = settings or get_settings()
    if settings.TIMER_BACKEND == "eventbridge":
        return EventBridgeRuleAdapter(
            target_arn=settings.RUN_SCHEDULED_TEST_TARGET_ARN,
            region=settings.AWS_REGION,
            endpoint_url=settings.AWS_ENDPOINT_URL,
        )
    from formtester.services.scheduler import scheduler
    return APSchedulerRuleAdapter(scheduler, timezone=settings.TIMEZONE)
