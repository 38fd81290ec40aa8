from __future__ import annotations

import os
from dataclasses import dataclass, replace
from pathlib import Path

from .errors import ConfigurationError

_TRUE_VALUES = frozenset({"1", "true", "yes", "on"})
_FALSE_VALUES = frozenset({"0", "false", "no", "off"})


@dataclass(frozen=True)
class RuntimeSettings:
    """Runtime settings loaded from environment with fail-fast validation.

    ``force_approve_on_exhaustion`` has no default: it stays ``None`` until the
    operator sets ``CONDUCTOR_FORCE_APPROVE_ON_EXHAUSTION`` (or passes it
    explicitly), and the quality gate refuses to build while it is unset.
    """

    state_store_root: str = "state_store"
    workspace_root: str = ""
    coordinator_workers: int = 8
    tool_workers: int = 16
    tool_timeout_seconds: float = 120.0
    tool_max_attempts: int = 3
    tool_backoff_seconds: float = 1.0
    tool_backoff_max_seconds: float = 30.0
    min_searches: int = 1
    min_views: int = 1
    max_plan_attempts: int = 3
    max_retries: int = 3
    max_doc_lookups: int = 2
    max_review_iterations: int = 2
    force_approve_on_exhaustion: bool | None = None
    quality_threshold: float = 7.0
    lint_command: str = "ruff check ."
    test_command: str = "pytest -q"
    commit_command: str = "git add -- {path} && git commit -m {message}"
    compaction_keep_messages: int = 40
    compaction_max_chars: int = 60_000
    model_name: str = "gpt-4o"
    base_branch: str = "main"

    @classmethod
    def from_env(cls) -> "RuntimeSettings":
        return cls(
            state_store_root=os.getenv("CONDUCTOR_STATE_STORE_ROOT", "state_store"),
            workspace_root=os.getenv("CONDUCTOR_WORKSPACE_ROOT", ""),
            coordinator_workers=_get_env_int("CONDUCTOR_COORDINATOR_WORKERS", default=8, minimum=1),
            tool_workers=_get_env_int("CONDUCTOR_TOOL_WORKERS", default=16, minimum=1),
            tool_timeout_seconds=_get_env_float("CONDUCTOR_TOOL_TIMEOUT_SECONDS", default=120.0, minimum=0.01),
            tool_max_attempts=_get_env_int("CONDUCTOR_TOOL_MAX_ATTEMPTS", default=3, minimum=1, maximum=20),
            tool_backoff_seconds=_get_env_float("CONDUCTOR_TOOL_BACKOFF_SECONDS", default=1.0, minimum=0.0),
            tool_backoff_max_seconds=_get_env_float("CONDUCTOR_TOOL_BACKOFF_MAX_SECONDS", default=30.0, minimum=0.0),
            min_searches=_get_env_int("CONDUCTOR_MIN_SEARCHES", default=1, minimum=0),
            min_views=_get_env_int("CONDUCTOR_MIN_VIEWS", default=1, minimum=0),
            max_plan_attempts=_get_env_int("CONDUCTOR_MAX_PLAN_ATTEMPTS", default=3, minimum=1),
            max_retries=_get_env_int("CONDUCTOR_MAX_RETRIES", default=3, minimum=1),
            max_doc_lookups=_get_env_int("CONDUCTOR_MAX_DOC_LOOKUPS", default=2, minimum=0),
            max_review_iterations=_get_env_int("CONDUCTOR_MAX_REVIEW_ITERATIONS", default=2, minimum=0),
            force_approve_on_exhaustion=_get_env_bool("CONDUCTOR_FORCE_APPROVE_ON_EXHAUSTION"),
            quality_threshold=_get_env_float("CONDUCTOR_QUALITY_THRESHOLD", default=7.0, minimum=0.0),
            lint_command=os.getenv("CONDUCTOR_LINT_COMMAND", "ruff check ."),
            test_command=os.getenv("CONDUCTOR_TEST_COMMAND", "pytest -q"),
            commit_command=os.getenv(
                "CONDUCTOR_COMMIT_COMMAND", "git add -- {path} && git commit -m {message}"
            ),
            compaction_keep_messages=_get_env_int("CONDUCTOR_COMPACTION_KEEP_MESSAGES", default=40, minimum=2),
            compaction_max_chars=_get_env_int("CONDUCTOR_COMPACTION_MAX_CHARS", default=60_000, minimum=1_000),
            model_name=os.getenv("CONDUCTOR_MODEL", "gpt-4o"),
            base_branch=os.getenv("CONDUCTOR_BASE_BRANCH", "main"),
        ).normalized()

    @property
    def workspace_root_path(self) -> Path:
        """Return the workspace root as a Path, defaulting to cwd if unset."""
        return Path(self.workspace_root) if self.workspace_root else Path.cwd()

    def state_store_path(self, repo_root: Path | None = None) -> Path:
        path = Path(self.state_store_root)
        if path.is_absolute() or repo_root is None:
            return path
        return repo_root / path

    def with_overrides(self, **changes: object) -> "RuntimeSettings":
        return replace(self, **changes).normalized()

    def normalized(self) -> "RuntimeSettings":
        """Validate and normalize all fields. Raises ConfigurationError on invalid configuration."""
        if not self.state_store_root.strip():
            raise ConfigurationError("CONDUCTOR_STATE_STORE_ROOT must be non-empty")
        if not self.model_name.strip():
            raise ConfigurationError("CONDUCTOR_MODEL must be non-empty")
        if self.max_retries < 1:
            raise ConfigurationError(f"CONDUCTOR_MAX_RETRIES must be >= 1, got: {self.max_retries}")
        if self.max_review_iterations < 0:
            raise ConfigurationError(
                f"CONDUCTOR_MAX_REVIEW_ITERATIONS must be >= 0, got: {self.max_review_iterations}"
            )
        if self.tool_max_attempts < 1:
            raise ConfigurationError(f"CONDUCTOR_TOOL_MAX_ATTEMPTS must be >= 1, got: {self.tool_max_attempts}")
        if not 0.0 <= self.quality_threshold <= 10.0:
            raise ConfigurationError(
                f"CONDUCTOR_QUALITY_THRESHOLD must be within [0, 10], got: {self.quality_threshold}"
            )
        if self.compaction_keep_messages < 2:
            raise ConfigurationError("CONDUCTOR_COMPACTION_KEEP_MESSAGES must be >= 2")
        if "{path}" not in self.commit_command:
            raise ConfigurationError("CONDUCTOR_COMMIT_COMMAND must reference {path}")
        return replace(
            self,
            model_name=self.model_name.strip(),
            lint_command=self.lint_command.strip(),
            test_command=self.test_command.strip(),
            base_branch=self.base_branch.strip() or "main",
            tool_backoff_max_seconds=max(self.tool_backoff_max_seconds, self.tool_backoff_seconds),
        )

    def require_exhaustion_policy(self) -> bool:
        if self.force_approve_on_exhaustion is None:
            raise ConfigurationError(
                "force_approve_on_exhaustion must be set explicitly "
                "(CONDUCTOR_FORCE_APPROVE_ON_EXHAUSTION=true|false)"
            )
        return self.force_approve_on_exhaustion


def _get_env_int(name: str, default: int, minimum: int, maximum: int = 10_000_000) -> int:
    """Parse an integer from an environment variable with bounds checking.

    Args:
        name: Environment variable name.
        default: Value to return if the variable is unset.
        minimum: Inclusive lower bound.
        maximum: Inclusive upper bound.

    Returns:
        The parsed integer, guaranteed to be within [minimum, maximum].

    Raises:
        ConfigurationError: If the value is not an integer or is outside bounds.
    """
    raw = os.getenv(name)
    if raw is None:
        return default
    try:
        parsed = int(raw)
    except ValueError as exc:
        raise ConfigurationError(f"{name} must be an integer, got: {raw!r}") from exc
    if parsed < minimum:
        raise ConfigurationError(f"{name} must be >= {minimum}, got: {parsed}")
    if parsed > maximum:
        raise ConfigurationError(f"{name} must be <= {maximum}, got: {parsed}")
    return parsed


def _get_env_float(name: str, default: float, minimum: float) -> float:
    raw = os.getenv(name)
    if raw is None:
        return default
    try:
        parsed = float(raw)
    except ValueError as exc:
        raise ConfigurationError(f"{name} must be a number, got: {raw!r}") from exc
    if parsed < minimum:
        raise ConfigurationError(f"{name} must be >= {minimum}, got: {parsed}")
    return parsed


def _get_env_bool(name: str) -> bool | None:
    raw = os.getenv(name)
    if raw is None or not raw.strip():
        return None
    lowered = raw.strip().lower()
    if lowered in _TRUE_VALUES:
        return True
    if lowered in _FALSE_VALUES:
        return False
    raise ConfigurationError(f"{name} must be a boolean (true/false), got: {raw!r}")
