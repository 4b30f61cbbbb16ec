import logging
import os
import signal
import subprocess
import threading
import time
from dataclasses import dataclass
from typing import Dict, IO, List, Optional

logger = logging.getLogger(__name__)


READ_CHUNK_BYTES = 8192


@dataclass(frozen=True)
class ShellRunResult:
    exit_code: Optional[int]
    stdout: bytes
    stderr: bytes
    stdout_truncated: bool
    stderr_truncated: bool
    timed_out: bool
    duration_ms: int


class _CappedReader(threading.Thread):
    """
    Drains one pipe to EOF, keeping at most `cap` bytes.
    Draining past the cap keeps the child from blocking on a full pipe.
    """

    def __init__(self, stream: IO[bytes], cap: int):
        super().__init__(daemon=True)
        self.stream = stream
        self.cap = cap
        self.buffer = bytearray()
        self.truncated = False

    def run(self) -> None:
        try:
            while True:
                chunk = self.stream.read(READ_CHUNK_BYTES)
                if not chunk:
                    break
                room = self.cap - len(self.buffer)
                if room > 0:
                    self.buffer.extend(chunk[:room])
                if len(chunk) > room:
                    self.truncated = True
        except (OSError, ValueError):
            # Pipe closed underneath us after the group was killed.
            pass
        finally:
            try:
                self.stream.close()
            except OSError:
                pass


def _kill_group(process: subprocess.Popen) -> None:
    try:
        os.killpg(process.pid, signal.SIGKILL)
    except ProcessLookupError:
        pass
    except PermissionError:
        process.kill()


def run_bounded(
    argv: List[str],
    cwd: str,
    timeout_seconds: float,
    max_output_bytes: int,
    env: Optional[Dict[str, str]] = None,
) -> ShellRunResult:
    """
    Run argv without a shell in its own process group.

    The group is SIGKILLed when the wall-clock timeout expires and the
    child is always reaped before returning. Raises OSError when the
    executable cannot be spawned.
    """
    started = time.monotonic()
    process = subprocess.Popen(
        argv,
        cwd=cwd,
        env=env,
        stdin=subprocess.DEVNULL,
        stdout=subprocess.PIPE,
        stderr=subprocess.PIPE,
        start_new_session=True,
        close_fds=True,
    )
    out_reader = _CappedReader(process.stdout, max_output_bytes)
    err_reader = _CappedReader(process.stderr, max_output_bytes)
    out_reader.start()
    err_reader.start()

    timed_out = False
    try:
        process.wait(timeout=timeout_seconds)
    except subprocess.TimeoutExpired:
        timed_out = True
        logger.warning(f"Process {process.pid} exceeded {timeout_seconds:.1f}s, killing its process group")
        _kill_group(process)
        process.wait()
    finally:
        if process.poll() is None:
            _kill_group(process)
            process.wait()

    # Grandchildren that escaped the group could hold the pipes open.
    out_reader.join(timeout=2.0)
    err_reader.join(timeout=2.0)

    return ShellRunResult(
        exit_code=None if timed_out else process.returncode,
        stdout=bytes(out_reader.buffer),
        stderr=bytes(err_reader.buffer),
        stdout_truncated=out_reader.truncated,
        stderr_truncated=err_reader.truncated,
        timed_out=timed_out,
        duration_ms=int((time.monotonic() - started) * 1000),
    )
