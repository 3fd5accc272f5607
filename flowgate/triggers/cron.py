"""Cron expression parsing for scheduled triggers."""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from typing import List

# 10 years of day skips is enough to find any valid date (e.g. Feb 29 on a Monday)
_MAX_DAYS = 366 * 10


@dataclass
class CronExpression:
    """Cron expression parser and evaluator.

    Accepts the standard five fields ``minute hour day_of_month month
    day_of_week`` or six fields with a leading ``second``. Day of week uses
    cron numbering (0 or 7 is Sunday). When both day fields are restricted a
    time matches if either one does, as in classic cron.
    """

    expression: str

    second: List[int] = field(default_factory=list, init=False)
    minute: List[int] = field(default_factory=list, init=False)
    hour: List[int] = field(default_factory=list, init=False)
    day_of_month: List[int] = field(default_factory=list, init=False)
    month: List[int] = field(default_factory=list, init=False)
    day_of_week: List[int] = field(default_factory=list, init=False)
    has_seconds: bool = field(default=False, init=False)
    _dom_any: bool = field(default=True, init=False, repr=False)
    _dow_any: bool = field(default=True, init=False, repr=False)

    def __post_init__(self) -> None:
        self._parse()

    def _parse(self) -> None:
        parts = self.expression.split()
        if len(parts) == 6:
            self.has_seconds = True
            self.second = self._parse_field(parts[0], 0, 59)
            parts = parts[1:]
        elif len(parts) == 5:
            self.second = [0]
        else:
            raise ValueError(
                f"Invalid cron expression {self.expression!r}: expected 5 or 6 fields"
            )
        self.minute = self._parse_field(parts[0], 0, 59)
        self.hour = self._parse_field(parts[1], 0, 23)
        self.day_of_month = self._parse_field(parts[2], 1, 31)
        self.month = self._parse_field(parts[3], 1, 12)
        dow = self._parse_field(parts[4], 0, 7)
        self.day_of_week = sorted({0 if d == 7 else d for d in dow})
        self._dom_any = parts[2] in ("*", "?")
        self._dow_any = parts[4] in ("*", "?")

    def _parse_field(self, text: str, min_val: int, max_val: int) -> List[int]:
        values: set[int] = set()
        for part in text.split(","):
            if not part:
                raise ValueError(f"Empty cron field in {self.expression!r}")
            step = 1
            if "/" in part:
                part, step_text = part.split("/", 1)
                step = int(step_text)
                if step <= 0:
                    raise ValueError(f"Cron step must be positive in {self.expression!r}")
            if part in ("*", "?"):
                start, end = min_val, max_val
            elif "-" in part:
                lo, hi = part.split("-", 1)
                start, end = int(lo), int(hi)
            else:
                start = int(part)
                end = max_val if step != 1 else start
            if start < min_val or end > max_val or start > end:
                raise ValueError(
                    f"Cron value {part!r} out of range {min_val}-{max_val} "
                    f"in {self.expression!r}"
                )
            values.update(range(start, end + 1, step))
        return sorted(values)

    # ------------------------------------------------------------------
    def _day_matches(self, dt: datetime) -> bool:
        if dt.month not in self.month:
            return False
        dom = dt.day in self.day_of_month
        dow = (dt.weekday() + 1) % 7 in self.day_of_week
        if self._dom_any and self._dow_any:
            return True
        if self._dom_any:
            return dow
        if self._dow_any:
            return dom
        return dom or dow

    def matches(self, dt: datetime) -> bool:
        """Check if ``dt`` (to the second) matches the expression."""
        return (
            self._day_matches(dt)
            and dt.hour in self.hour
            and dt.minute in self.minute
            and dt.second in self.second
        )

    def next_after(self, after: datetime) -> datetime:
        """Return the first matching time strictly after ``after``.

        The timezone of ``after`` is preserved.
        """
        start = after.replace(microsecond=0) + timedelta(seconds=1)
        day = start.replace(hour=0, minute=0, second=0)
        for _ in range(_MAX_DAYS):
            if self._day_matches(day):
                for hour in self.hour:
                    for minute in self.minute:
                        for second in self.second:
                            candidate = day.replace(hour=hour, minute=minute, second=second)
                            if candidate >= start:
                                return candidate
            day += timedelta(days=1)
        raise ValueError(f"Cron expression {self.expression!r} never matches")

    def schedule(self, after: datetime, count: int = 10) -> List[datetime]:
        """Next ``count`` matching times after ``after``."""
        times: List[datetime] = []
        current = after
        for _ in range(count):
            current = self.next_after(current)
            times.append(current)
        return times

    @classmethod
    def validate(cls, expression: str) -> List[str]:
        """Return problems for ``expression`` (empty when valid).

        Expressions that parse but can never fire (``0 0 31 2 *``) are
        reported too.
        """
        try:
            cls(expression).next_after(datetime.now(timezone.utc))
        except ValueError as exc:
            return [str(exc)]
        return []
