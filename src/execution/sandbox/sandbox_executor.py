import logging
import os
import platform
import shlex
import socket
import stat
import tempfile
import time
from datetime import datetime, timezone
from fnmatch import fnmatchcase
from typing import Any, Callable, Dict, List, Mapping, Optional, Union

import psutil

from src.config.agent_config import AgentConfig
from src.core.time.time_source import SystemTimeSource, TimeSource
from src.execution.domain.command import CommandKind, Controls
from src.execution.domain.exceptions import (
    CommandError,
    CommandNotAllowed,
    ExecutionFailed,
    ExecutionTimeout,
    PathTraversal,
)
from src.execution.governance.governance_gate import GovernanceGate
from src.execution.sandbox.path_guard import SandboxPathGuard
from src.execution.sandbox.shell_runner import ShellRunResult, run_bounded

logger = logging.getLogger(__name__)


STDERR_TAIL_CHARS = 500
SHELL_PATH = "/usr/local/bin:/usr/bin:/bin"

Handler = Callable[[Dict[str, Any], Controls], Dict[str, Any]]


def parse_kind(name: Union[str, CommandKind]) -> CommandKind:
    if isinstance(name, CommandKind):
        return name
    try:
        return CommandKind(name)
    except ValueError:
        raise CommandNotAllowed(f"Unknown command: {name}", {"command": str(name)}) from None


def _iso_mtime(st: os.stat_result) -> str:
    return datetime.fromtimestamp(st.st_mtime, tz=timezone.utc).isoformat()


def _decode(data: bytes) -> str:
    return data.decode("utf-8", errors="replace")


def _current_umask() -> int:
    mask = os.umask(0)
    os.umask(mask)
    return mask


# mkstemp creates 0600 files; new targets get what open() would have given them.
NEW_FILE_MODE = 0o666 & ~_current_umask()


class SandboxExecutor:
    """
    Executes one command kind against the sandbox root.

    Filesystem kinds go through SandboxPathGuard. Write and shell kinds are
    gated by the controls read just before dispatch; shell tokens are also
    checked against the configured allowlist.
    """

    def __init__(
        self,
        config: AgentConfig,
        time_source: Optional[TimeSource] = None,
        path_guard: Optional[SandboxPathGuard] = None,
        runner: Callable[..., ShellRunResult] = run_bounded,
    ):
        self.config = config
        self.time_source = time_source or SystemTimeSource()
        self.path_guard = path_guard or SandboxPathGuard(config.sandbox_root)
        self._runner = runner
        self._started_monotonic = time.monotonic()

        self._handlers: Dict[CommandKind, Handler] = {
            CommandKind.PING: self._ping,
            CommandKind.STATUS: self._status,
            CommandKind.READ_DIR: self._read_dir,
            CommandKind.READ_FILE_HEAD: self._read_file_head,
            CommandKind.FS_WRITE: self._fs_write,
            CommandKind.SHELL_EXEC: self._shell_exec,
        }
        missing = [kind.value for kind in CommandKind if kind not in self._handlers]
        if missing:
            raise RuntimeError(f"No handler for command kinds: {', '.join(missing)}")

    def execute(self, kind: Union[str, CommandKind], payload: Any, controls: Controls) -> Dict[str, Any]:
        command_kind = parse_kind(kind)
        handler = self._handlers[command_kind]
        args = self._payload_dict(payload)
        try:
            return handler(args, controls)
        except PathTraversal as exc:
            logger.error(f"Security: {command_kind.value} rejected: {exc.message}")
            raise
        except CommandError:
            raise
        except OSError as exc:
            raise ExecutionFailed(f"{command_kind.value} failed: {exc.strerror or exc}") from exc
        except Exception as exc:
            logger.exception(f"Unexpected failure in {command_kind.value}")
            raise ExecutionFailed(f"{command_kind.value} failed: {exc}") from exc

    @staticmethod
    def _payload_dict(payload: Any) -> Dict[str, Any]:
        if payload is None:
            return {}
        if not isinstance(payload, Mapping):
            raise ExecutionFailed("payload must be an object", {"payload_type": type(payload).__name__})
        return dict(payload)

    # ---- always permitted ----

    def _ping(self, payload: Dict[str, Any], controls: Controls) -> Dict[str, Any]:
        return {
            "message": "pong",
            "timestamp": self.time_source.iso_now(),
            "node_id": self.config.node_id,
        }

    def _status(self, payload: Dict[str, Any], controls: Controls) -> Dict[str, Any]:
        try:
            load_average = list(psutil.getloadavg())
        except (AttributeError, OSError):
            load_average = None

        memory = psutil.virtual_memory()
        disk = psutil.disk_usage(self.config.sandbox_root)
        return {
            "timestamp": self.time_source.iso_now(),
            "node_id": self.config.node_id,
            "project_id": self.config.project_id,
            "hostname": socket.gethostname(),
            "platform": platform.platform(),
            "python": platform.python_version(),
            "cpu_count": psutil.cpu_count(),
            # Non-blocking: usage since the previous call.
            "cpu_percent": psutil.cpu_percent(interval=None),
            "load_average": load_average,
            "memory": {"total": memory.total, "available": memory.available, "percent": memory.percent},
            "boot_time": datetime.fromtimestamp(psutil.boot_time(), tz=timezone.utc).isoformat(),
            "uptime_seconds": round(time.monotonic() - self._started_monotonic, 3),
            "sandbox_root": self.config.sandbox_root,
            "disk": {"total": disk.total, "used": disk.used, "free": disk.free, "percent": disk.percent},
            "controls": controls.as_dict(),
        }

    # ---- filesystem ----

    def _read_dir(self, payload: Dict[str, Any], controls: Controls) -> Dict[str, Any]:
        target = self.path_guard.resolve(payload.get("path", "."))
        if not os.path.isdir(target):
            raise ExecutionFailed(f"Not a directory: {self.path_guard.relative(target)}")

        limit = self.config.max_dir_entries
        with os.scandir(target) as it:
            children = sorted(it, key=lambda entry: entry.name)

        entries = []
        for entry in children[:limit]:
            st = entry.stat(follow_symlinks=False)
            if entry.is_symlink():
                kind = "other"
            elif entry.is_dir(follow_symlinks=False):
                kind = "directory"
            elif entry.is_file(follow_symlinks=False):
                kind = "file"
            else:
                kind = "other"
            entries.append(
                {
                    "name": entry.name,
                    "kind": kind,
                    "size": st.st_size,
                    "modified_at": _iso_mtime(st),
                }
            )

        return {
            "path": self.path_guard.relative(target),
            "entries": entries,
            "count": len(entries),
            "truncated": len(children) > limit,
        }

    def _read_file_head(self, payload: Dict[str, Any], controls: Controls) -> Dict[str, Any]:
        target = self.path_guard.resolve(payload.get("path"))
        cap = self.config.file_head_max_bytes
        requested = payload.get("max_bytes", cap)
        if isinstance(requested, bool) or not isinstance(requested, int) or requested < 0:
            raise ExecutionFailed("max_bytes must be a non-negative integer", {"max_bytes": repr(requested)})

        if not stat.S_ISREG(os.lstat(target).st_mode):
            raise ExecutionFailed(f"Not a regular file: {self.path_guard.relative(target)}")

        fd = os.open(target, os.O_RDONLY | getattr(os, "O_NOFOLLOW", 0))
        with os.fdopen(fd, "rb") as handle:
            size = os.fstat(handle.fileno()).st_size
            limit = min(requested, cap, size)
            data = handle.read(limit)

        return {
            "path": self.path_guard.relative(target),
            "bytes": len(data),
            "size": size,
            "truncated": size > len(data),
            "text": _decode(data),
        }

    def _fs_write(self, payload: Dict[str, Any], controls: Controls) -> Dict[str, Any]:
        GovernanceGate.require_capability(controls, "allow_write")

        content = payload.get("content")
        if not isinstance(content, str):
            raise ExecutionFailed("content must be a string")

        target = self.path_guard.resolve(payload.get("path"), for_write=True)
        if target == self.path_guard.root or os.path.isdir(target):
            raise ExecutionFailed(f"Cannot write to a directory: {self.path_guard.relative(target)}")

        parent = os.path.dirname(target)
        os.makedirs(parent, exist_ok=True)

        try:
            mode = stat.S_IMODE(os.stat(target).st_mode)
        except FileNotFoundError:
            mode = NEW_FILE_MODE

        data = content.encode("utf-8")
        fd, tmp_path = tempfile.mkstemp(dir=parent, prefix=".write-", suffix=".tmp")
        try:
            with os.fdopen(fd, "wb") as handle:
                handle.write(data)
                handle.flush()
                os.fsync(handle.fileno())
            os.chmod(tmp_path, mode)
            os.replace(tmp_path, target)
        except BaseException:
            if os.path.exists(tmp_path):
                os.unlink(tmp_path)
            raise

        logger.info(f"Wrote {len(data)} bytes to {self.path_guard.relative(target)}")
        return {"path": self.path_guard.relative(target), "bytes_written": len(data)}

    # ---- shell ----

    def _shell_exec(self, payload: Dict[str, Any], controls: Controls) -> Dict[str, Any]:
        GovernanceGate.require_capability(controls, "allow_shell")

        argv = self._shell_argv(payload)
        if not self.is_allowlisted(argv[0]):
            raise CommandNotAllowed(f"Command not allowlisted: {argv[0]}", {"token": argv[0]})

        timeout = self._shell_timeout(payload.get("timeout"))
        try:
            run = self._runner(
                argv,
                cwd=self.config.sandbox_root,
                timeout_seconds=timeout,
                max_output_bytes=self.config.max_output_bytes,
                env=self._shell_env(),
            )
        except OSError as exc:
            raise ExecutionFailed(f"Could not start {argv[0]}: {exc.strerror or exc}", {"token": argv[0]}) from exc

        if run.timed_out:
            raise ExecutionTimeout(
                f"{argv[0]} timed out after {timeout:g}s",
                {"timeout_seconds": timeout, "duration_ms": run.duration_ms},
            )

        stderr = _decode(run.stderr)
        if run.exit_code != 0:
            tail = stderr[-STDERR_TAIL_CHARS:].strip()
            message = f"{argv[0]} exited with code {run.exit_code}"
            if tail:
                message = f"{message}: {tail}"
            raise ExecutionFailed(message, {"exit_code": run.exit_code, "stderr_tail": tail})

        return {
            "exit_code": run.exit_code,
            "stdout": _decode(run.stdout),
            "stderr": stderr,
            "stdout_truncated": run.stdout_truncated,
            "stderr_truncated": run.stderr_truncated,
            "duration_ms": run.duration_ms,
        }

    def is_allowlisted(self, token: str) -> bool:
        for entry in self.config.shell_allowlist:
            if token == entry or fnmatchcase(token, entry):
                return True
        return False

    @staticmethod
    def _shell_argv(payload: Dict[str, Any]) -> List[str]:
        script = payload.get("script")
        cmd = payload.get("cmd")

        if isinstance(cmd, str) and cmd.strip():
            args = payload.get("args") or []
            if not isinstance(args, list) or not all(isinstance(a, str) for a in args):
                raise ExecutionFailed("args must be a list of strings")
            return [cmd.strip()] + list(args)

        if isinstance(script, str) and script.strip():
            try:
                argv = shlex.split(script)
            except ValueError as exc:
                raise ExecutionFailed(f"Unparseable script: {exc}") from exc
            if argv:
                return argv

        raise ExecutionFailed("shell.exec requires cmd or script")

    def _shell_timeout(self, requested: Any) -> float:
        limit = self.config.shell_timeout_seconds
        if requested is None:
            return limit
        if isinstance(requested, bool) or not isinstance(requested, (int, float)) or requested <= 0:
            raise ExecutionFailed("timeout must be a positive number", {"timeout": repr(requested)})
        return min(float(requested), limit)

    def _shell_env(self) -> Dict[str, str]:
        return {
            "PATH": SHELL_PATH,
            "HOME": self.config.sandbox_root,
            "LANG": "C.UTF-8",
        }
