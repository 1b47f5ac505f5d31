"""Frequency → cron mapping and next-run computation for test schedules.

Cron expressions use the six-field dialect of the AWS timer service:
``minute hour day-of-month month day-of-week year``, optionally wrapped as
``cron(...)``. Exactly one of day-of-month and day-of-week must be ``?``.
"""
from apscheduler.triggers.cron import CronTrigger
from datetime import datetime, timedelta, timezone
from typing import Any, Optional
import logging
import re

logger = logging.getLogger(__name__)

FREQUENCIES = ("hourly", "daily", "weekly", "monthly", "custom")

_WRAPPER = re.compile(r"^\s*cron\((.*)\)\s*$")
_FIELD_PATTERNS = [
    re.compile(r"^[0-9\-,/*]+$"),                                          # minute
    re.compile(r"^[0-9\-,/*]+$"),                                          # hour
    re.compile(r"^[0-9\-,/*?LW]+$"),                                       # day-of-month
    re.compile(r"^[0-9\-,/*]+$"),                                          # month
    re.compile(r"^[0-9\-,/*?L#]+$|^(MON|TUE|WED|THU|FRI|SAT|SUN)$"),       # day-of-week
    re.compile(r"^[0-9\-,/*]+$"),                                          # year
]

# AWS numbers weekdays 1-7 starting on Sunday
_AWS_WEEKDAYS = ["sun", "mon", "tue", "wed", "thu", "fri", "sat"]
_ORDINALS = {"1": "1st", "2": "2nd", "3": "3rd", "4": "4th", "5": "5th"}


def unwrap(cron_expression: str) -> str:
    """Strips an optional ``cron(...)`` wrapper."""
    match = _WRAPPER.match(cron_expression)
    return match.group(1).strip() if match else cron_expression.strip()


def cron_fields(cron_expression: str) -> list[str]:
    return unwrap(cron_expression).split()


def is_valid_cron_expression(cron_expression: Optional[str]) -> bool:
    """Checks a six-field cron expression against the per-position rules.

    Args:
        cron_expression: Expression with or without the ``cron(...)`` wrapper.

    Returns:
        True when there are exactly six fields, each matches its character
        class, and exactly one of day-of-month / day-of-week is ``?``.
    """
    if not cron_expression or not isinstance(cron_expression, str):
        return False
    parts = cron_fields(cron_expression)
    if len(parts) != 6:
        return False
    for pattern, part in zip(_FIELD_PATTERNS, parts):
        if not pattern.match(part):
            return False
    return (parts[2] == "?") != (parts[4] == "?")


def validate_frequency(frequency: Optional[str], custom_cron_expression: Optional[str] = None) -> bool:
    if frequency not in FREQUENCIES:
        return False
    if frequency == "custom" and not is_valid_cron_expression(custom_cron_expression):
        return False
    return True


def parse_specific_time(specific_time: Optional[str]) -> tuple[int, int]:
    hour, minute = (specific_time or "00:00").split(":")
    return int(hour), int(minute)


def derive_cron_expression(
    frequency: str,
    custom_cron_expression: Optional[str] = None,
    specific_time: Optional[str] = None,
) -> str:
    """Maps a frequency selection onto a cron expression.

    Weekly always fires on Monday and monthly always on the 1st; only the
    time of day is configurable. Custom expressions are used verbatim and
    must already have passed ``validate_frequency``.
    """
    hour, minute = parse_specific_time(specific_time)
    if frequency == "hourly":
        return "cron(0 * * * ? *)"
    if frequency == "daily":
        return f"cron({minute} {hour} * * ? *)"
    if frequency == "weekly":
        return f"cron({minute} {hour} ? * MON *)"
    if frequency == "monthly":
        return f"cron({minute} {hour} 1 * ? *)"
    if frequency == "custom":
        return custom_cron_expression
    raise ValueError(f"Unknown frequency: {frequency}")


def estimate_next_run_time(
    cron_expression: str,
    frequency: str,
    reference_now: Optional[datetime] = None,
) -> datetime:
    """Approximates the next firing time from the frequency category.

    This is not a cron evaluator. Daily, weekly and monthly read the hour and
    minute back out of the expression and place them on today, the next
    Monday (a Monday always moves a full week ahead) or the 1st of next
    month. Custom expressions and any parsing failure yield now + 24h.
    The result keeps the timezone awareness of ``reference_now``.
    """
    now = reference_now or datetime.now(timezone.utc).replace(tzinfo=None)
    try:
        if frequency == "hourly":
            return now.replace(minute=0, second=0, microsecond=0) + timedelta(hours=1)

        if frequency in ("daily", "weekly", "monthly"):
            fields = cron_fields(cron_expression)
            minute, hour = int(fields[0]), int(fields[1])
            at_time = dict(hour=hour, minute=minute, second=0, microsecond=0)

            if frequency == "daily":
                candidate = now.replace(**at_time)
                if candidate <= now:
                    candidate += timedelta(days=1)
                return candidate

            if frequency == "weekly":
                # Sunday-based weekday number, Monday == 1
                sunday_based = (now.weekday() + 1) % 7
                days_until_monday = 1 - sunday_based
                if days_until_monday <= 0:
                    days_until_monday += 7
                return (now + timedelta(days=days_until_monday)).replace(**at_time)

            if now.month == 12:
                return now.replace(year=now.year + 1, month=1, day=1, **at_time)
            return now.replace(month=now.month + 1, day=1, **at_time)

        return now + timedelta(hours=24)
    except (ValueError, IndexError, TypeError, AttributeError) as e:
        logger.error(f"Error estimating next run time for {cron_expression!r} ({frequency}): {e}")
        return now + timedelta(hours=24)


def _translate_weekday_token(token: str) -> str:
    if token.isdigit():
        number = int(token)
        if not 1 <= number <= 7:
            raise ValueError(f"Day-of-week out of range: {token}")
        return _AWS_WEEKDAYS[number - 1]
    if token.lower() in _AWS_WEEKDAYS:
        return token.lower()
    raise ValueError(f"Unsupported day-of-week token: {token}")


def _translate_day_of_week(field: str) -> tuple[Optional[str], Optional[str]]:
    """Returns (day_of_week, day) expressions for APScheduler."""
    if field in ("?", "*"):
        return None, None
    if field == "L":
        return "sat", None

    weekday_parts, positional_parts = [], []
    for part in field.split(","):
        if "/" in part:
            raise ValueError(f"Day-of-week steps are not supported: {part}")
        if "#" in part:
            day, nth = part.split("#", 1)
            if nth not in _ORDINALS:
                raise ValueError(f"Unsupported weekday position: {part}")
            positional_parts.append(f"{_ORDINALS[nth]} {_translate_weekday_token(day)}")
        elif part.endswith("L"):
            positional_parts.append(f"last {_translate_weekday_token(part[:-1])}")
        elif "-" in part:
            start, end = part.split("-", 1)
            weekday_parts.append(f"{_translate_weekday_token(start)}-{_translate_weekday_token(end)}")
        else:
            weekday_parts.append(_translate_weekday_token(part))

    if weekday_parts and positional_parts:
        raise ValueError(f"Cannot mix plain and positional weekdays: {field}")
    if positional_parts:
        return None, ",".join(positional_parts)
    return ",".join(weekday_parts), None


def _translate_day_of_month(field: str) -> Optional[str]:
    if field in ("?", "*"):
        return None
    if "W" in field:
        raise ValueError(f"Nearest-weekday (W) is not supported: {field}")
    if field == "L":
        return "last"
    if "L" in field:
        raise ValueError(f"Unsupported last-day offset: {field}")
    return field


def to_cron_trigger(cron_expression: str, tz: Any = "UTC") -> CronTrigger:
    """Builds an APScheduler ``CronTrigger`` from a six-field AWS expression.

    Raises:
        ValueError: if the expression is malformed or uses a construct the
            local scheduler cannot express (``W``, day-of-week steps).
    """
    if not is_valid_cron_expression(cron_expression):
        raise ValueError(f"Invalid cron expression: {cron_expression}")
    minute, hour, dom, month, dow, year = cron_fields(cron_expression)

    day_of_week, positional_day = _translate_day_of_week(dow)
    day = positional_day or _translate_day_of_month(dom)

    kwargs = {"minute": minute, "hour": hour, "month": month}
    if day is not None:
        kwargs["day"] = day
    if day_of_week is not None:
        kwargs["day_of_week"] = day_of_week
    if year != "*":
        kwargs["year"] = year
    return CronTrigger(timezone=tz, **kwargs)


def next_run_time(
    cron_expression: str,
    frequency: str,
    reference_now: Optional[datetime] = None,
    mode: str = "estimate",
) -> datetime:
    """Next firing time using the configured strategy.

    ``estimate`` applies ``estimate_next_run_time``. ``cron`` evaluates the
    expression with APScheduler and falls back to now + 24h when the
    expression cannot be evaluated locally.
    """
    now = reference_now or datetime.now(timezone.utc).replace(tzinfo=None)
    if mode != "cron":
        return estimate_next_run_time(cron_expression, frequency, now)

    aware_now = now if now.tzinfo else now.replace(tzinfo=timezone.utc)
    try:
        # Strictly after now, like the estimate
        fire_time = to_cron_trigger(cron_expression, timezone.utc).get_next_fire_time(
            None, aware_now + timedelta(microseconds=1)
        )
    except ValueError as e:
        logger.error(f"Cron evaluation failed for {cron_expression!r}: {e}")
        fire_time = None
    if fire_time is None:
        return now + timedelta(hours=24)
    fire_time = fire_time.astimezone(timezone.utc)
    return fire_time if now.tzinfo else fire_time.replace(tzinfo=None)
