"""Working tree file access for change sets."""

import os
import tempfile
from pathlib import Path
from typing import Any

from .base import BaseTool, ToolResult, ToolStatus


class FilesystemTool(BaseTool):
    """Reads and rewrites files in the repository checkout.

    Operations: ``read``, ``write``, ``delete`` and ``exists``. Every
    write lands through a sibling temp file and ``os.replace``, so a
    reader never observes half a file. The gateway's policy guard has
    already vetted each path by the time ``execute`` runs.
    """

    name = "filesystem"
    description = "Repository file access for generated changes"

    def __init__(self, base_path: Path | str | None = None) -> None:
        """Initialize filesystem tool.

        Args:
            base_path: Repository root relative paths are taken from
                (default: current directory)
        """
        self.base_path = Path(base_path) if base_path else Path.cwd()

    def execute(self, operation: str, **kwargs: Any) -> ToolResult:
        handlers = {
            "read": self._read,
            "write": self._write,
            "delete": self._delete,
            "exists": self._exists,
        }
        handler = handlers.get(operation)
        if handler is None:
            return ToolResult(
                status=ToolStatus.FAILURE,
                error=f"Unsupported filesystem operation {operation!r} (expected one of {sorted(handlers)})",
            )

        try:
            return handler(**kwargs)
        except OSError as e:
            return ToolResult(status=ToolStatus.FAILURE, error=str(e))

    def _resolve(self, path: str) -> Path:
        p = Path(path)
        return p if p.is_absolute() else self.base_path / p

    def _read(self, path: str, encoding: str = "utf-8") -> ToolResult:
        file_path = self._resolve(path)
        if not file_path.is_file():
            return ToolResult(status=ToolStatus.FAILURE, error=f"No such file in the checkout: {path}")

        content = file_path.read_text(encoding=encoding)
        return ToolResult(status=ToolStatus.SUCCESS, output=content, metadata={"bytes": len(content)})

    def _write(self, path: str, content: str, encoding: str = "utf-8") -> ToolResult:
        file_path = self._resolve(path)
        file_path.parent.mkdir(parents=True, exist_ok=True)
        fd, tmp_path = tempfile.mkstemp(
            dir=str(file_path.parent),
            prefix=f".{file_path.name}.",
            suffix=".tmp",
        )
        try:
            with os.fdopen(fd, "w", encoding=encoding) as handle:
                handle.write(content)
                handle.flush()
                os.fsync(handle.fileno())
            os.replace(tmp_path, file_path)
        except BaseException:
            Path(tmp_path).unlink(missing_ok=True)
            raise
        return ToolResult(status=ToolStatus.SUCCESS, output=str(file_path), metadata={"bytes": len(content)})

    def _delete(self, path: str) -> ToolResult:
        file_path = self._resolve(path)
        if not file_path.is_file():
            return ToolResult(status=ToolStatus.FAILURE, error=f"Cannot delete {path}: not a file")

        file_path.unlink()
        return ToolResult(status=ToolStatus.SUCCESS, output=str(file_path))

    def _exists(self, path: str) -> ToolResult:
        return ToolResult(status=ToolStatus.SUCCESS, output=self._resolve(path).exists())
