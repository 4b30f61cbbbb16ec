import os
from typing import Any, List

from src.execution.domain.exceptions import ExecutionFailed, PathTraversal


class SandboxPathGuard:
    """
    Confines user-supplied relative paths to a single sandbox root.

    Every filesystem command goes through resolve(). The check runs on the
    real (symlink-free) path, and any symlink met on the way is rejected
    before resolution so a link cannot be swapped in between check and use.
    """

    def __init__(self, root: str):
        real_root = os.path.realpath(root)
        if not os.path.isdir(real_root):
            raise ValueError(f"Sandbox root is not a directory: {root}")
        self.root = real_root

    def resolve(self, raw_path: Any, for_write: bool = False) -> str:
        parts = self._split(raw_path)

        current = self.root
        missing_from = None
        for index, part in enumerate(parts):
            current = os.path.join(current, part)
            if os.path.islink(current):
                raise PathTraversal(
                    f"Symbolic link in path: {self._display(parts[: index + 1])}",
                    {"path": str(raw_path)},
                )
            if not os.path.lexists(current):
                missing_from = index
                break

        target = os.path.join(self.root, *parts) if parts else self.root

        if missing_from is not None and not for_write:
            raise ExecutionFailed(f"Path not found: {self._display(parts)}", {"path": str(raw_path)})

        if missing_from is None:
            anchor = target
        else:
            # Nearest existing ancestor; the remainder is created under it.
            anchor = os.path.join(self.root, *parts[:missing_from]) if missing_from else self.root

        real_anchor = os.path.realpath(anchor)
        if not self.contains(real_anchor):
            raise PathTraversal(f"Path escapes sandbox root: {self._display(parts)}", {"path": str(raw_path)})
        return target

    def contains(self, real_path: str) -> bool:
        if real_path == self.root:
            return True
        prefix = self.root if self.root.endswith(os.sep) else self.root + os.sep
        return real_path.startswith(prefix)

    def relative(self, path: str) -> str:
        rel = os.path.relpath(path, self.root)
        return "." if rel == os.curdir else rel

    def _split(self, raw_path: Any) -> List[str]:
        if raw_path is None:
            raw_path = "."
        if not isinstance(raw_path, str):
            raise ExecutionFailed("path must be a string", {"path": repr(raw_path)})
        if "\x00" in raw_path:
            raise PathTraversal("Path contains a NUL byte", {"path": repr(raw_path)})

        normalized = raw_path.replace("\\", "/")
        if normalized.startswith("/") or os.path.isabs(raw_path):
            raise PathTraversal(f"Absolute paths are not allowed: {raw_path}", {"path": raw_path})

        parts = []
        for segment in normalized.split("/"):
            if segment in ("", "."):
                continue
            if segment == "..":
                raise PathTraversal(f"Parent segments are not allowed: {raw_path}", {"path": raw_path})
            parts.append(segment)
        return parts

    @staticmethod
    def _display(parts: List[str]) -> str:
        return "/".join(parts) or "."
