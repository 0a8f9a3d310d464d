"""Recurrence expressions for scheduled jobs.

Accepted forms:

* standard five-field cron (minute resolution), e.g. ``*/5 * * * *``;
* six-field cron with the seconds field first, e.g. ``0 */5 * * * *``;
* named shortcuts such as ``@hourly`` or ``@daily``;
* ``@every <duration>``, e.g. ``@every 90s`` or ``@every 2h``.
"""

from datetime import datetime, timedelta

from croniter import croniter

from .units import parse_time

NAMED_SCHEDULES = {
    "@yearly": "0 0 1 1 *",
    "@annually": "0 0 1 1 *",
    "@monthly": "0 0 1 * *",
    "@weekly": "0 0 * * 0",
    "@daily": "0 0 * * *",
    "@midnight": "0 0 * * *",
    "@hourly": "0 * * * *",
}

EVERY_PREFIX = "@every "


class Trigger:
    """Computes fire times for one recurrence expression.

    Attributes:
        expression (str): The expression as configured.
        interval (timedelta | None): Fixed interval for '@every' expressions.
    """

    def __init__(
        self,
        expression: str,
        cron: str | None = None,
        seconds_first: bool = False,
        interval: timedelta | None = None,
    ):
        self.expression = expression
        self.interval = interval
        self._cron = cron
        self._seconds_first = seconds_first

    @classmethod
    def parse(cls, expression: str) -> "Trigger":
        """Builds a trigger from a recurrence expression.

        Args:
            expression (str): The configured schedule.

        Returns:
            Trigger: A trigger ready to compute fire times.

        Raises:
            ValueError: If the expression is empty or malformed.
        """
        expr = (expression or "").strip()
        if not expr:
            raise ValueError("Schedule expression is empty")

        if expr.startswith(EVERY_PREFIX):
            seconds = parse_time(expr[len(EVERY_PREFIX) :].strip())
            if seconds <= 0:
                raise ValueError(
                    f"Invalid schedule '{expression}': interval must be positive"
                )
            return cls(expression, interval=timedelta(seconds=seconds))

        if expr.startswith("@"):
            if expr not in NAMED_SCHEDULES:
                raise ValueError(f"Invalid schedule '{expression}': unknown shortcut")
            expr = NAMED_SCHEDULES[expr]

        fields = len(expr.split())
        if fields not in (5, 6):
            raise ValueError(
                f"Invalid schedule '{expression}': expected 5 or 6 fields, got {fields}"
            )

        trigger = cls(expression, cron=expr, seconds_first=fields == 6)
        try:
            trigger.next_after(datetime.now().astimezone())
        except (ValueError, KeyError) as e:
            raise ValueError(f"Invalid schedule '{expression}': {e}") from e
        return trigger

    def next_after(self, moment: datetime) -> datetime:
        """Returns the first fire time strictly after `moment`."""
        if self.interval is not None:
            return moment + self.interval
        itr = croniter(self._cron, moment, second_at_beginning=self._seconds_first)
        return itr.get_next(datetime)

    def __repr__(self) -> str:
        return f"Trigger({self.expression!r})"
