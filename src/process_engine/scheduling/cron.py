"""
Cron expressions

Standard 5-field cron (minute hour day-of-month month day-of-week) evaluated
in an IANA timezone through APScheduler's CronTrigger. Stored and returned
datetimes are naive UTC like the rest of the engine.
"""
import logging
from datetime import datetime, timedelta, timezone
from typing import Any, Dict, List, Optional, Tuple, Union

from apscheduler.triggers.cron import CronTrigger

from ..exceptions import ValidationError
from ..models import to_iso, utcnow


logger = logging.getLogger(__name__)

DEFAULT_PREVIEW_COUNT = 5

DAY_NAMES = ["sun", "mon", "tue", "wed", "thu", "fri", "sat"]
DAY_TITLES = ["Sunday", "Monday", "Tuesday", "Wednesday", "Thursday", "Friday", "Saturday"]

PRESETS: Dict[str, Dict[str, str]] = {
    "every_minute": {"name": "Every minute", "cron": "* * * * *", "category": "frequent"},
    "every_5_minutes": {"name": "Every 5 minutes", "cron": "*/5 * * * *", "category": "frequent"},
    "every_15_minutes": {"name": "Every 15 minutes", "cron": "*/15 * * * *", "category": "frequent"},
    "every_30_minutes": {"name": "Every 30 minutes", "cron": "*/30 * * * *", "category": "frequent"},
    "hourly": {"name": "Every hour", "cron": "0 * * * *", "category": "hourly"},
    "every_2_hours": {"name": "Every 2 hours", "cron": "0 */2 * * *", "category": "hourly"},
    "every_6_hours": {"name": "Every 6 hours", "cron": "0 */6 * * *", "category": "hourly"},
    "every_12_hours": {"name": "Every 12 hours", "cron": "0 */12 * * *", "category": "hourly"},
    "daily_midnight": {"name": "Daily at midnight", "cron": "0 0 * * *", "category": "daily"},
    "daily_9am": {"name": "Daily at 9 AM", "cron": "0 9 * * *", "category": "daily"},
    "daily_noon": {"name": "Daily at noon", "cron": "0 12 * * *", "category": "daily"},
    "daily_6pm": {"name": "Daily at 6 PM", "cron": "0 18 * * *", "category": "daily"},
    "weekdays_9am": {"name": "Weekdays at 9 AM", "cron": "0 9 * * 1-5", "category": "daily"},
    "weekly_monday": {"name": "Every Monday at 9 AM", "cron": "0 9 * * 1", "category": "weekly"},
    "weekly_friday": {"name": "Every Friday at 5 PM", "cron": "0 17 * * 5", "category": "weekly"},
    "weekly_sunday": {"name": "Every Sunday at midnight", "cron": "0 0 * * 0", "category": "weekly"},
    "monthly_first": {"name": "First day of the month", "cron": "0 0 1 * *", "category": "monthly"},
    "monthly_15th": {"name": "15th of the month at 9 AM", "cron": "0 9 15 * *", "category": "monthly"},
}


def list_presets(category: Optional[str] = None) -> List[Dict[str, str]]:
    return [
        {"id": preset_id, **preset}
        for preset_id, preset in PRESETS.items()
        if category is None or preset["category"] == category
    ]


def _parse_time(value: Any) -> Tuple[int, int]:
    try:
        hour, minute = (int(part) for part in str(value or "00:00").split(":", 1))
    except ValueError:
        raise ValidationError(f"Invalid time of day: {value!r}")
    if not (0 <= hour < 24 and 0 <= minute < 60):
        raise ValidationError(f"Invalid time of day: {value!r}")
    return hour, minute


def _day_of_week(value: Any) -> int:
    if isinstance(value, int) or str(value).isdigit():
        return int(value) % 7
    name = str(value).strip().lower()[:3]
    if name not in DAY_NAMES:
        raise ValidationError(f"Invalid day of week: {value!r}")
    return DAY_NAMES.index(name)


def preset_to_cron(preset: Union[str, Dict[str, Any]]) -> str:
    """
    Translate a preset into a cron expression

    ``preset`` is either a preset id from PRESETS or a parametrised preset:
    ``{"type": "every_n_minutes", "n": 10}``, ``{"type": "every_n_hours", "n": 3}``,
    ``{"type": "daily", "time": "09:30"}``,
    ``{"type": "weekly", "day": "mon", "time": "08:00"}`` or
    ``{"type": "monthly", "day": 1, "time": "00:00"}``.
    """
    if isinstance(preset, str):
        if preset not in PRESETS:
            raise ValidationError(f"Unknown schedule preset: {preset}")
        return PRESETS[preset]["cron"]

    kind = preset.get("type")
    if kind == "every_n_minutes":
        n = int(preset.get("n", 0))
        if not 1 <= n <= 59:
            raise ValidationError("Minute interval must be between 1 and 59")
        return "* * * * *" if n == 1 else f"*/{n} * * * *"
    if kind == "every_n_hours":
        n = int(preset.get("n", 0))
        if not 1 <= n <= 23:
            raise ValidationError("Hour interval must be between 1 and 23")
        return "0 * * * *" if n == 1 else f"0 */{n} * * *"
    hour, minute = _parse_time(preset.get("time"))
    if kind == "daily":
        return f"{minute} {hour} * * *"
    if kind == "weekly":
        return f"{minute} {hour} * * {_day_of_week(preset.get('day', 1))}"
    if kind == "monthly":
        day = int(preset.get("day", 1))
        if not 1 <= day <= 31:
            raise ValidationError("Day of month must be between 1 and 31")
        return f"{minute} {hour} {day} * *"
    raise ValidationError(f"Unknown schedule preset type: {kind}")


def _expand_day_of_week(field: str) -> str:
    """Rewrite numeric days (0 or 7 = Sunday) as names, which CronTrigger reads unambiguously"""
    if field == "*" or field == "?":
        return "*"
    days = set()
    for part in field.lower().split(","):
        base, _, step_text = part.partition("/")
        step = int(step_text) if step_text else 1
        if step < 1:
            raise ValueError(f"Invalid step in day of week: {part}")
        if base in ("*", "?"):
            first, last = 0, 6
        elif "-" in base:
            start, end = base.split("-", 1)
            first, last = _day_number(start), _day_number(end, upper=True)
        else:
            first = _day_number(base)
            last = 6 if step_text else first
        if first > last:
            raise ValueError(f"Invalid day of week range: {part}")
        days.update(day % 7 for day in range(first, last + 1, step))
    return ",".join(DAY_NAMES[day] for day in sorted(days))


def _day_number(token: str, upper: bool = False) -> int:
    if token.isdigit():
        value = int(token)
        if value > 7:
            raise ValueError(f"Invalid day of week: {token}")
        # 7 closes a range as Sunday; elsewhere it is 0
        return value if upper else value % 7
    if token[:3] in DAY_NAMES:
        return DAY_NAMES.index(token[:3])
    raise ValueError(f"Invalid day of week: {token}")


def build_trigger(cron_expr: str, tz: str = "UTC") -> CronTrigger:
    """CronTrigger for a 5-field expression; ValidationError for anything unusable"""
    fields = (cron_expr or "").split()
    if len(fields) != 5:
        raise ValidationError(f"Cron expression must have 5 fields: {cron_expr!r}")
    minute, hour, day, month, day_of_week = fields
    try:
        return CronTrigger(
            second="0",
            minute=minute,
            hour=hour,
            day=day,
            month=month,
            day_of_week=_expand_day_of_week(day_of_week),
            timezone=tz or "UTC",
        )
    except (ValueError, KeyError) as e:
        # ZoneInfoNotFoundError is a KeyError
        raise ValidationError(f"Invalid cron expression {cron_expr!r} ({tz}): {e}")


def compute_next(cron_expr: str, tz: str = "UTC", after: Optional[datetime] = None,
                 trigger: Optional[CronTrigger] = None) -> Optional[datetime]:
    """First firing strictly after ``after`` (naive UTC in, naive UTC out)"""
    trigger = trigger or build_trigger(cron_expr, tz)
    after = after or utcnow()
    start = (after + timedelta(microseconds=1)).replace(tzinfo=timezone.utc)
    fire = trigger.get_next_fire_time(None, start.astimezone(trigger.timezone))
    if fire is None:
        return None
    return fire.astimezone(timezone.utc).replace(tzinfo=None)


def next_fire_times(cron_expr: str, tz: str = "UTC", count: int = DEFAULT_PREVIEW_COUNT,
                    after: Optional[datetime] = None) -> List[datetime]:
    trigger = build_trigger(cron_expr, tz)
    fires = []
    cursor = after or utcnow()
    for _ in range(count):
        cursor = compute_next(cron_expr, tz, cursor, trigger=trigger)
        if cursor is None:
            break
        fires.append(cursor)
    return fires


def validate_schedule(cron_expr: str, tz: str = "UTC", count: int = DEFAULT_PREVIEW_COUNT,
                      now: Optional[datetime] = None) -> Dict[str, Any]:
    """Preview for editors: never raises, reports ``valid`` and the next firings"""
    try:
        fires = next_fire_times(cron_expr, tz, count, now)
    except ValidationError as e:
        return {"valid": False, "error": e.message, "nextFires": []}
    return {
        "valid": True,
        "description": describe_cron(cron_expr),
        "nextFires": [to_iso(fire) for fire in fires],
    }


def _ordinal(n: int) -> str:
    if 10 <= n % 100 <= 20:
        suffix = "th"
    else:
        suffix = {1: "st", 2: "nd", 3: "rd"}.get(n % 10, "th")
    return f"{n}{suffix}"


def describe_cron(cron_expr: str) -> str:
    """Human readable text for the common patterns"""
    fields = (cron_expr or "").split()
    if len(fields) != 5:
        return cron_expr
    minute, hour, day, month, dow = fields

    if fields == ["*"] * 5:
        return "Every minute"
    if minute.startswith("*/") and hour == day == month == dow == "*":
        return f"Every {minute[2:]} minutes"
    if minute == "0" and hour == "*" and day == month == dow == "*":
        return "Every hour"
    if minute == "0" and hour.startswith("*/") and day == month == dow == "*":
        return f"Every {hour[2:]} hours"

    if minute.isdigit() and hour.isdigit():
        at = f"{int(hour):02d}:{int(minute):02d}"
        if day == month == dow == "*":
            return "Daily at midnight" if at == "00:00" else f"Daily at {at}"
        if day == month == "*" and dow == "1-5":
            return f"Weekdays at {at}"
        if day == month == "*" and dow.isdigit() and int(dow) <= 7:
            return f"Weekly on {DAY_TITLES[int(dow) % 7]} at {at}"
        if day.isdigit() and month == dow == "*":
            return f"Monthly on the {_ordinal(int(day))} at {at}"

    return (f"At minute {minute}, hour {hour}, day of month {day}, "
            f"month {month}, day of week {dow}")
