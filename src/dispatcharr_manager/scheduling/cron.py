from datetime import datetime, timezone
from typing import Dict, Optional
from zoneinfo import ZoneInfo

from croniter import croniter

from dispatcharr_manager.domain.schedule import Schedule, SchedulePreset
from dispatcharr_manager.errors import ValidationError

PRESET_EXPRESSIONS: Dict[SchedulePreset, str] = {
    SchedulePreset.HOURLY: "0 * * * *",
    SchedulePreset.DAILY: "0 2 * * *",
    SchedulePreset.WEEKLY: "0 2 * * 0",
    SchedulePreset.MONTHLY: "0 2 1 * *",
}

PRESET_DESCRIPTIONS: Dict[SchedulePreset, str] = {
    SchedulePreset.HOURLY: "Every hour at minute 0",
    SchedulePreset.DAILY: "Daily at 2:00 AM",
    SchedulePreset.WEEKLY: "Every Sunday at 2:00 AM",
    SchedulePreset.MONTHLY: "On the 1st of each month at 2:00 AM",
    SchedulePreset.CUSTOM: "Custom schedule",
}


def validate_expression(expression: Optional[str]) -> bool:
    """
    Accept only five-field expressions (minute, hour, day-of-month, month, day-of-week).
    """
    if not expression or len(expression.split()) != 5:
        return False
    return croniter.is_valid(expression)


def resolve_expression(preset: SchedulePreset, cron_expression: Optional[str] = None) -> str:
    """
    An explicit expression always wins; presets are the fallback.

    Raises:
        ValidationError: custom preset without an expression, or a malformed expression.
    """
    if cron_expression:
        expression = cron_expression.strip()
    elif preset == SchedulePreset.CUSTOM:
        raise ValidationError("cron_expression is required for custom schedules")
    else:
        expression = PRESET_EXPRESSIONS[preset]

    if not validate_expression(expression):
        raise ValidationError(f"Invalid cron expression: {expression}")
    return expression


def schedule_expression(schedule: Schedule) -> str:
    return resolve_expression(schedule.preset, schedule.cron_expression)


def next_run_time(expression: str, tz: str, after: Optional[datetime] = None) -> datetime:
    """
    Next fire time of `expression` evaluated in timezone `tz`, returned in UTC.
    """
    after = after or datetime.now(timezone.utc)
    if after.tzinfo is None:
        after = after.replace(tzinfo=timezone.utc)
    local_start = after.astimezone(ZoneInfo(tz))
    fire_at: datetime = croniter(expression, local_start).get_next(datetime)
    return fire_at.astimezone(timezone.utc)
