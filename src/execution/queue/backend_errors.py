from dataclasses import dataclass
from typing import Optional


class BackendError(Exception):
    """Base class for queue/storage backend failures."""
    pass


class BackendUnavailable(BackendError):
    """Network or connection level failure."""
    pass


@dataclass
class BackendRequestError(BackendError):
    """The backend answered but rejected the request."""
    status_code: int
    description: str
    details: Optional[dict] = None

    def __str__(self) -> str:
        return f"{self.status_code}: {self.description}"
