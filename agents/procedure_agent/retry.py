import time
from typing import Callable, TypeVar


T = TypeVar("T")


class RetryPolicy:
    """Re-runs a whole unit of work a bounded number of times."""

    def __init__(
        self,
        attempts: int = 3,
        delay_seconds: float = 5.0,
        logger=None,
        sleep: Callable[[float], None] = time.sleep,
    ) -> None:
        if int(attempts) < 1:
            raise ValueError("attempts must be >= 1")
        self.attempts = int(attempts)
        self.delay_seconds = max(0.0, float(delay_seconds))
        self.logger = logger
        self._sleep = sleep

    def run(self, fn: Callable[[], T], label: str = "unit") -> T:
        attempt = 1
        while True:
            try:
                return fn()
            except Exception as err:
                if self.logger is not None:
                    self.logger.warning(
                        "Attempt %s/%s failed for %s: %s",
                        attempt,
                        self.attempts,
                        label,
                        err,
                    )
                if attempt >= self.attempts:
                    raise
            self._sleep(self.delay_seconds)
            attempt += 1
