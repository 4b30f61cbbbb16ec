from abc import ABC, abstractmethod
from datetime import datetime, timedelta, timezone


class TimeSource(ABC):
    """
    Abstract source of time.
    Every timestamp written to a command or event row comes from here.
    """

    @abstractmethod
    def now(self) -> datetime:
        pass

    def iso_now(self) -> str:
        return self.now().isoformat()


class SystemTimeSource(TimeSource):
    """
    Production time source using the system clock. Always UTC-aware.
    """

    def now(self) -> datetime:
        return datetime.now(timezone.utc)


class FrozenTimeSource(TimeSource):
    """
    Test time source with manual progression.
    """

    def __init__(self, start_time: datetime):
        if start_time.tzinfo is None:
            raise ValueError("FrozenTimeSource requires timezone-aware datetime")
        self._current_time = start_time

    def now(self) -> datetime:
        return self._current_time

    def advance(self, delta: timedelta) -> None:
        self._current_time += delta
