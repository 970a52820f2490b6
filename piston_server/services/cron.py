# piston_server/services/cron.py
"""
Cron evaluation for schedules.

Schedules carry Quartz-style expressions with six or seven fields:

    second minute hour day-of-month month day-of-week [year]

e.g. "0 0 8 * * ?" (every day at 08:00:00) or "0 30 6 ? * MON-FRI".
They are compiled into APScheduler CronTriggers, which is also what the
scheduler engine registers, so validation and firing agree on every
expression. The rest of the code only talks to the CronEvaluator interface.
"""

from    abc                             import ABC, abstractmethod
from    datetime                        import datetime, timedelta, timezone
from    typing                          import List, Optional, Tuple

from    apscheduler.triggers.cron       import CronTrigger

# Quartz numbers days 1..7 starting on Sunday
QUARTZ_DAYS = ["sun", "mon", "tue", "wed", "thu", "fri", "sat"]
ORDINALS    = {1: "1st", 2: "2nd", 3: "3rd", 4: "4th", 5: "5th"}


class CronEvaluator(ABC):
    """Narrow interface the schedule repository and the engine depend on."""

    @abstractmethod
    def build_trigger(self, expression: str):
        """Return a scheduler trigger, raise ValueError on bad syntax."""

    def is_valid(self, expression: str) -> bool:
        try:
            self.build_trigger(expression)
        except ValueError:
            return False
        return True

    @abstractmethod
    def next_fire_after(self, expression: str, now: datetime) -> Optional[datetime]:
        """First fire time strictly after `now`, or None if the expression never fires again."""


class QuartzCronEvaluator(CronEvaluator):

    def __init__(self, tz: str = "UTC"):
        self.timezone = tz

    def build_trigger(self, expression: str) -> CronTrigger:
        if not isinstance(expression, str):
            raise ValueError("cron expression must be a string")
        fields = expression.split()
        if len(fields) not in (6, 7):
            raise ValueError(f"expected 6 or 7 fields, got {len(fields)}")

        second, minute, hour, day_of_month, month, day_of_week = fields[:6]
        year = fields[6] if len(fields) == 7 else None

        if (day_of_month == "?") == (day_of_week == "?"):
            raise ValueError("exactly one of day-of-month and day-of-week must be '?'")

        if day_of_week == "?":
            day, dow = _convert_day_of_month(day_of_month), None
        else:
            day, dow = _convert_day_of_week(day_of_week)

        try:
            return CronTrigger(
                second      = second,
                minute      = minute,
                hour        = hour,
                day         = day,
                month       = month,
                day_of_week = dow,
                year        = year,
                timezone    = self.timezone,
            )
        except (TypeError, KeyError) as e:
            raise ValueError(str(e)) from e

    def next_fire_after(self, expression: str, now: datetime) -> Optional[datetime]:
        trigger = self.build_trigger(expression)
        if now.tzinfo is None:
            now = now.replace(tzinfo=timezone.utc)
        # CronTrigger may return `now` itself when it lands on a match
        return trigger.get_next_fire_time(None, now + timedelta(microseconds=1))


def _convert_day_of_month(field: str) -> str:
    if field == "L":
        return "last"
    if "W" in field or field.startswith("L"):
        raise ValueError(f"unsupported day-of-month expression '{field}'")
    return field


def _day_index(token: str) -> int:
    if token.isdigit():
        number = int(token)
        if not 1 <= number <= 7:
            raise ValueError(f"day-of-week {number} out of range 1-7")
        return number - 1
    name = token.lower()
    if name not in QUARTZ_DAYS:
        raise ValueError(f"unknown day-of-week '{token}'")
    return QUARTZ_DAYS.index(name)


def _convert_day_of_week(field: str) -> Tuple[Optional[str], Optional[str]]:
    """Translate a Quartz day-of-week field to APScheduler (day, day_of_week) fields."""
    terms = field.split(",")

    positional = [t for t in terms if "#" in t or (t.endswith("L") and len(t) > 1)]
    if positional:
        if len(terms) != 1:
            raise ValueError("'#' and 'L' day-of-week terms cannot be combined with others")
        term = terms[0]
        if "#" in term:
            name, _, nth = term.partition("#")
            if not nth.isdigit() or int(nth) not in ORDINALS:
                raise ValueError(f"bad nth weekday '{term}'")
            return f"{ORDINALS[int(nth)]} {QUARTZ_DAYS[_day_index(name)]}", None
        return f"last {QUARTZ_DAYS[_day_index(term[:-1])]}", None

    days: List[int] = []
    for term in terms:
        days.extend(_expand_day_term(term))
    return None, ",".join(QUARTZ_DAYS[i] for i in sorted(set(days)))


def _expand_day_term(term: str) -> List[int]:
    base, _, step_text = term.partition("/")
    step = 1
    if step_text:
        if not step_text.isdigit() or int(step_text) < 1:
            raise ValueError(f"bad step in '{term}'")
        step = int(step_text)

    if base == "*":
        sequence = list(range(7))
    elif base == "L":
        sequence = [6]
    elif "-" in base:
        first, _, last = base.partition("-")
        start, end = _day_index(first), _day_index(last)
        length = (end - start) % 7 + 1
        sequence = [(start + i) % 7 for i in range(length)]
    elif base:
        start = _day_index(base)
        sequence = list(range(start, 7)) if step_text else [start]
    else:
        raise ValueError(f"empty day-of-week term in '{term}'")

    return sequence[::step]
