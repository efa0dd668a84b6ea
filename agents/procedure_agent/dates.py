from dataclasses import dataclass, field, replace
from datetime import date, timedelta
from typing import Any, Dict, Optional

from agents.procedure_agent.text import strip_accents


SUNDAY = 6

WEEKDAY_OFFSETS: Dict[str, int] = {
    "monday": 0,
    "tuesday": 1,
    "wednesday": 2,
    "thursday": 3,
    "friday": 4,
    "saturday": 5,
    "sunday": 6,
}

# Portuguese spellings seen in the patient sheets, already stripped of accents.
WEEKDAY_ALIASES: Dict[str, str] = {
    "segunda": "monday",
    "segunta": "monday",
    "terca": "tuesday",
    "quarta": "wednesday",
    "quinta": "thursday",
    "sexta": "friday",
    "sabado": "saturday",
    "domingo": "sunday",
}

INVALID_DAY_FOR_MONTH = "invalid_day_for_month"
PAST_MONTH = "past_month"
FUTURE_MONTH = "future_month"
FUTURE_DATE = "future_date"
INVALID_WEEKDAY = "invalid_weekday"
INVALID_DAY_NUMBER = "invalid_day_number"


class InvalidWeekday(ValueError):
    """Raised when a slot name does not map to any weekday."""


@dataclass(frozen=True)
class ExecutionWindow:
    today: date
    month: int
    year: int
    week_start: date

    @classmethod
    def for_day(cls, today: date) -> "ExecutionWindow":
        # date.weekday() is 6 on Sunday, so a Sunday run anchors on the Monday
        # that just passed.
        week_start = today - timedelta(days=today.weekday())
        return cls(today=today, month=today.month, year=today.year, week_start=week_start)

    @property
    def week_end(self) -> date:
        return self.week_start + timedelta(days=6)

    def contains(self, target: date) -> bool:
        return self.week_start <= target <= self.week_end


@dataclass(frozen=True)
class DateResolution:
    valid: bool
    slot: str
    date: Optional[date] = None
    reason: str = ""
    message: str = ""
    offsets: Dict[str, int] = field(default_factory=dict)

    @property
    def date_text(self) -> str:
        if self.date is None:
            return ""
        return self.date.strftime("%d/%m/%Y")

    def invalidate(self, reason: str, message: str) -> "DateResolution":
        return replace(self, valid=False, reason=reason, message=message)


def normalize_weekday(name: Any) -> str:
    """Map any accepted spelling to the English weekday key."""
    raw = strip_accents(name).strip().lower()
    raw = raw.replace("-feira", "").replace(" feira", "").strip()
    if raw in WEEKDAY_OFFSETS:
        return raw
    if raw in WEEKDAY_ALIASES:
        return WEEKDAY_ALIASES[raw]
    raise InvalidWeekday(f"Invalid weekday: {name}")


def resolve_weekday(name: Any, today: date) -> DateResolution:
    weekday = normalize_weekday(name)
    window = ExecutionWindow.for_day(today)
    target = window.week_start + timedelta(days=WEEKDAY_OFFSETS[weekday])
    return DateResolution(
        valid=True,
        slot=weekday,
        date=target,
        offsets=dict(WEEKDAY_OFFSETS),
    )


def resolve_monthly_day(day_number: int, today: date) -> DateResolution:
    day_number = int(day_number)
    if day_number < 1 or day_number > 31:
        raise ValueError(f"Invalid day number: {day_number}")
    slot = str(day_number)
    try:
        target = date(today.year, today.month, day_number)
    except ValueError:
        return DateResolution(
            valid=False,
            slot=slot,
            reason=INVALID_DAY_FOR_MONTH,
            message=f"Day {day_number} does not exist in current month",
        )
    return DateResolution(valid=True, slot=slot, date=target)


def resolve_slot(slot: Any, today: date) -> DateResolution:
    if isinstance(slot, int) or str(slot).strip().isdigit():
        return resolve_monthly_day(int(slot), today)
    return resolve_weekday(slot, today)


def validate(resolution: DateResolution, today: date, catch_up_weekday: int = SUNDAY) -> DateResolution:
    """Check that a resolved slot date may be executed on ``today``.

    Only already-elapsed dates of the current month are accepted. On the
    catch-up weekday (Sunday by default) the whole resolved week is accepted,
    since that run processes a completed week.
    """
    if not resolution.valid:
        return resolution
    target = resolution.date
    if target is None:
        return resolution.invalidate("invalid_date", "Invalid date information")

    if (target.year, target.month) != (today.year, today.month):
        reason = PAST_MONTH if (target.year, target.month) < (today.year, today.month) else FUTURE_MONTH
        return resolution.invalidate(
            reason,
            f"Date must be in current month ({today.strftime('%m/%Y')}): {resolution.date_text}",
        )

    if today.weekday() == catch_up_weekday and ExecutionWindow.for_day(today).contains(target):
        return resolution

    if target > today:
        return resolution.invalidate(
            FUTURE_DATE,
            f"Date is in the future ({today.strftime('%d/%m/%Y')}): {resolution.date_text}",
        )
    return resolution


def check_slot(slot: Any, today: date, catch_up_weekday: int = SUNDAY) -> DateResolution:
    """Resolve and validate a slot; unusable slots come back invalid instead of raising."""
    try:
        resolution = resolve_slot(slot, today)
    except InvalidWeekday as err:
        return DateResolution(valid=False, slot=str(slot), reason=INVALID_WEEKDAY, message=str(err))
    except ValueError as err:
        return DateResolution(valid=False, slot=str(slot), reason=INVALID_DAY_NUMBER, message=str(err))
    return validate(resolution, today, catch_up_weekday)


def parse_run_date(value: Any) -> date:
    raw = str(value or "").strip()
    if not raw:
        return date.today()
    try:
        return date.fromisoformat(raw)
    except ValueError as exc:
        raise RuntimeError("Invalid run date format. Use YYYY-MM-DD") from exc
