import threading
import time


class JobCancelled(RuntimeError):
    """Raised when a run passes its deadline or the scheduler is stopping."""


class RunContext:
    """Deadline and stop signal shared by every step of one job run.

    The sync engine calls `check()` between repositories, branches and
    targets; git commands poll `cancelled()` while they wait.

    Attributes:
        deadline (float | None): Monotonic expiry time, or None for no deadline.
    """

    def __init__(
        self, timeout: float | None = None, stop_event: threading.Event | None = None
    ):
        """Initializes the context.

        Args:
            timeout (float | None): Seconds until the run expires. Zero or None
                                    disables the deadline.
            stop_event (threading.Event | None): Event set when the owning
                                                 scheduler stops.
        """
        self.deadline = time.monotonic() + timeout if timeout else None
        self._stop = stop_event or threading.Event()

    def remaining(self) -> float | None:
        """Seconds left before the deadline, or None when there is none."""
        if self.deadline is None:
            return None
        return max(self.deadline - time.monotonic(), 0.0)

    def expired(self) -> bool:
        return self.deadline is not None and time.monotonic() >= self.deadline

    def cancelled(self) -> bool:
        return self._stop.is_set() or self.expired()

    def reason(self) -> str:
        if self._stop.is_set():
            return "scheduler stopping"
        if self.expired():
            return "deadline exceeded"
        return ""

    def check(self) -> None:
        """Raises JobCancelled if the run must not continue."""
        if self.cancelled():
            raise JobCancelled(f"Run cancelled: {self.reason()}")
