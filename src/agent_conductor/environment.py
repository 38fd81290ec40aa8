"""Local execution environment rooted at a workspace directory."""

from __future__ import annotations

import logging
import os
import subprocess
import time
from pathlib import Path

from .models import CommandResult

logger = logging.getLogger(__name__)

_KEEP_ENV_VARS = ("PATH", "HOME", "USER", "LANG", "PYTHONPATH", "VIRTUAL_ENV")
_TIMEOUT_EXIT_CODE = 124


class LocalExecutionEnvironment:
    """Runs shell commands and file operations inside ``workspace_root``.

    Paths are resolved relative to the workspace and may not escape it.
    """

    def __init__(self, workspace_root: Path, *, default_timeout: float = 120.0) -> None:
        self.workspace_root = Path(workspace_root).resolve()
        self.default_timeout = default_timeout

    def _resolve_path(self, path: str) -> Path:
        candidate = Path(path)
        resolved = (candidate if candidate.is_absolute() else self.workspace_root / candidate).resolve()
        try:
            resolved.relative_to(self.workspace_root)
        except ValueError as exc:
            raise PermissionError(f"path escapes workspace: {path}") from exc
        return resolved

    def _prepare_env(self) -> dict[str, str]:
        return {name: os.environ[name] for name in _KEEP_ENV_VARS if name in os.environ}

    def execute(self, command: str, *, workdir: str | None = None, timeout: float | None = None) -> CommandResult:
        cwd = self._resolve_path(workdir) if workdir else self.workspace_root
        limit = timeout if timeout is not None else self.default_timeout
        started = time.monotonic()
        process = subprocess.Popen(
            command,
            shell=True,
            cwd=str(cwd),
            env=self._prepare_env(),
            stdout=subprocess.PIPE,
            stderr=subprocess.PIPE,
            text=True,
        )
        try:
            stdout, stderr = process.communicate(timeout=limit)
        except subprocess.TimeoutExpired:
            process.kill()
            stdout, stderr = process.communicate()
            logger.warning("command timed out after %.1fs: %s", limit, command)
            return CommandResult(
                stdout=stdout or "",
                stderr=(stderr or "") + f"\ncommand timed out after {limit:.1f}s",
                exit_code=_TIMEOUT_EXIT_CODE,
            )
        logger.debug(
            "command exit=%d in %dms: %s",
            process.returncode,
            int((time.monotonic() - started) * 1000),
            command,
        )
        return CommandResult(stdout=stdout, stderr=stderr, exit_code=process.returncode)

    def read_file(self, path: str, line_range: tuple[int, int] | None = None) -> bytes:
        data = self._resolve_path(path).read_bytes()
        if line_range is None:
            return data
        start, end = _checked_range(line_range)
        return b"".join(data.splitlines(keepends=True)[start - 1 : end])

    def write_file(self, path: str, data: bytes, line_range: tuple[int, int] | None = None) -> None:
        """Write ``data`` to ``path``; with ``line_range`` only those lines are replaced."""
        target = self._resolve_path(path)
        target.parent.mkdir(parents=True, exist_ok=True)
        if line_range is None:
            target.write_bytes(data)
            return
        start, end = _checked_range(line_range)
        lines = target.read_bytes().splitlines(keepends=True) if target.is_file() else []
        if start > len(lines) + 1:
            raise ValueError(f"line range {line_range} starts past the end of {path}")
        lines[start - 1 : end] = [data]
        target.write_bytes(b"".join(lines))

    def list_dir(self, path: str = ".") -> list[str]:
        directory = self._resolve_path(path)
        return sorted(entry.name + ("/" if entry.is_dir() else "") for entry in directory.iterdir())


def _checked_range(line_range: tuple[int, int]) -> tuple[int, int]:
    start, end = line_range
    if start < 1 or end < start:
        raise ValueError(f"invalid line range: {line_range}")
    return start, end
