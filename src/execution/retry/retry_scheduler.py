import random
from dataclasses import dataclass


@dataclass(frozen=True)
class RetryPolicy:
    max_attempts: int = 4
    base_delay_seconds: float = 0.5
    factor: float = 2.0
    max_delay_seconds: float = 10.0
    jitter_ratio: float = 0.2


class RetryScheduler:
    """
    Backoff for backend writes that must eventually land,
    e.g. moving a claimed command to its terminal state.
    """

    def __init__(self, policy: RetryPolicy = RetryPolicy()):
        self.policy = policy

    def should_retry(self, attempt_count: int) -> bool:
        return attempt_count < self.policy.max_attempts

    def delay_seconds(self, attempt_count: int) -> float:
        base = self.policy.base_delay_seconds * (self.policy.factor ** max(0, attempt_count - 1))
        capped = min(base, self.policy.max_delay_seconds)
        spread = capped * self.policy.jitter_ratio
        delay = capped + random.uniform(-spread, spread)
        return max(0.0, delay)
