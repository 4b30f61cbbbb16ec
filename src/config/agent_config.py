import os
from dataclasses import dataclass
from typing import Tuple

from src.config.settings import Settings


@dataclass(frozen=True)
class AgentConfig:
    """
    Immutable worker configuration, built once at startup and handed to
    every component. sandbox_root is always the canonical (symlink-free) path.
    """

    signing_secret: str
    project_id: str
    node_id: str
    sandbox_root: str
    shell_allowlist: Tuple[str, ...] = ("ls", "whoami")
    shell_timeout_seconds: float = 60.0
    max_output_bytes: int = 65536
    file_head_max_bytes: int = 65536
    max_dir_entries: int = 500
    poll_interval_seconds: float = 2.0
    batch_size: int = 5
    heartbeat_interval_seconds: float = 30.0

    def __post_init__(self):
        if not self.signing_secret:
            raise ValueError("signing_secret must not be empty")
        if not os.path.isabs(self.sandbox_root):
            raise ValueError("sandbox_root must be an absolute path")
        if self.shell_timeout_seconds <= 0:
            raise ValueError("shell_timeout_seconds must be positive")
        for name in ("max_output_bytes", "file_head_max_bytes", "max_dir_entries", "batch_size"):
            if getattr(self, name) <= 0:
                raise ValueError(f"{name} must be positive")

    @classmethod
    def from_settings(cls, settings: Settings) -> "AgentConfig":
        return cls(
            signing_secret=settings.COMMAND_HMAC_SECRET,
            project_id=settings.PROJECT_ID,
            node_id=settings.NODE_ID,
            sandbox_root=prepare_sandbox_root(settings.SANDBOX_ROOT),
            shell_allowlist=parse_allowlist(settings.SHELL_ALLOWLIST),
            shell_timeout_seconds=settings.SHELL_TIMEOUT_SECONDS,
            max_output_bytes=settings.MAX_OUTPUT_BYTES,
            file_head_max_bytes=settings.FILE_HEAD_MAX_BYTES,
            max_dir_entries=settings.MAX_DIR_ENTRIES,
            poll_interval_seconds=settings.POLL_INTERVAL_SECONDS,
            batch_size=settings.BATCH_SIZE,
            heartbeat_interval_seconds=settings.HEARTBEAT_INTERVAL_SECONDS,
        )


def parse_allowlist(raw: str) -> Tuple[str, ...]:
    items = []
    for part in raw.split(","):
        name = part.strip()
        if name and name not in items:
            items.append(name)
    return tuple(items)


def prepare_sandbox_root(path: str) -> str:
    os.makedirs(path, exist_ok=True)
    return os.path.realpath(path)
