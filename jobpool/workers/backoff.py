from dataclasses import dataclass


@dataclass(frozen=True)
class RetryPolicy:
    """Exponential backoff between attempts of a failing job.

    ``delay(attempts)`` is ``base_delay * multiplier ** (attempts - 1)`` capped
    at ``max_delay``, so the first retry waits ``base_delay`` seconds.
    """

    base_delay: float = 2.0
    multiplier: float = 2.0
    max_delay: float = 1440.0

    def __post_init__(self):
        if self.base_delay < 0:
            raise ValueError("base_delay must be >= 0")
        if self.multiplier < 1:
            raise ValueError("multiplier must be >= 1")
        if self.max_delay < self.base_delay:
            raise ValueError("max_delay must be >= base_delay")

    def delay(self, attempts: int) -> float:
        exponent = max(attempts, 1) - 1
        try:
            delay = self.base_delay * self.multiplier ** exponent
        except OverflowError:
            return self.max_delay
        return min(delay, self.max_delay)


DEFAULT_POLICY = RetryPolicy()


def backoff(attempts: int, policy: RetryPolicy = DEFAULT_POLICY) -> float:
    return policy.delay(attempts)
