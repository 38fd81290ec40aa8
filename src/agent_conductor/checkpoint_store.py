from __future__ import annotations

import fcntl
import logging
import os
import re
import tempfile
import uuid
from collections.abc import Iterator
from contextlib import contextmanager
from pathlib import Path
from typing import Any

from pydantic import ValidationError

from .canonical import state_digest
from .errors import CheckpointNotFound, StaleParent, StateCorruption
from .models import Checkpoint, CheckpointEvent, RunStatus, ThreadRecord, utc_now

logger = logging.getLogger(__name__)

# ---------------------------------------------------------------------------
# File locking helpers
# ---------------------------------------------------------------------------

_LOCK_SUFFIX = ".lock"
_SAFE_ID_RE = re.compile(r"^[A-Za-z0-9_.-]+$")


@contextmanager
def _locked_file(path: Path) -> Iterator[None]:
    """Acquire an exclusive file lock for the duration of the context.

    Uses a separate .lock sidecar file so the actual data file can be
    atomically replaced via ``os.replace`` without disturbing the lock
    handle.  Each caller opens its own handle, so the lock also excludes
    other threads of the same process.
    """
    lock_path = path.with_suffix(path.suffix + _LOCK_SUFFIX)
    lock_path.parent.mkdir(parents=True, exist_ok=True)
    with lock_path.open("a+", encoding="utf-8") as lock_handle:
        fcntl.flock(lock_handle.fileno(), fcntl.LOCK_EX)
        try:
            yield
        finally:
            fcntl.flock(lock_handle.fileno(), fcntl.LOCK_UN)


def _atomic_write_text(path: Path, content: str) -> None:
    """Write *content* to *path* atomically and durably.

    Writes to a temporary file in the same directory, fsyncs it, then
    renames (``os.replace``) into place.  The rename is followed by an
    fsync of the directory so a crash after return cannot lose the entry.
    """
    path.parent.mkdir(parents=True, exist_ok=True)
    fd, tmp_path = tempfile.mkstemp(
        dir=str(path.parent),
        prefix=f".{path.name}.",
        suffix=".tmp",
    )
    try:
        with os.fdopen(fd, "w", encoding="utf-8") as tmp_handle:
            tmp_handle.write(content)
            tmp_handle.flush()
            os.fsync(tmp_handle.fileno())
        os.replace(tmp_path, str(path))
    except BaseException:
        try:
            os.unlink(tmp_path)
        except OSError:
            pass
        raise
    dir_fd = os.open(str(path.parent), os.O_RDONLY)
    try:
        os.fsync(dir_fd)
    finally:
        os.close(dir_fd)


def _safe_read_text(path: Path, label: str) -> str:
    """Read a file and raise a clear error if missing or unreadable.

    Raises:
        CheckpointNotFound: If the file does not exist.
        StateCorruption: If the file is empty or contains non-UTF-8 data.
    """
    if not path.is_file():
        raise CheckpointNotFound(f"{label} not found: {path}")
    try:
        text = path.read_text(encoding="utf-8")
    except UnicodeDecodeError as exc:
        raise StateCorruption(f"{label} at {path} contains invalid UTF-8 data") from exc
    if not text.strip():
        raise StateCorruption(f"{label} at {path} is empty")
    return text


def _checked_id(value: str, label: str) -> str:
    if not _SAFE_ID_RE.match(value):
        raise ValueError(f"{label} must contain only filesystem-safe characters, got: {value!r}")
    return value


# ---------------------------------------------------------------------------
# Checkpoint chain (read-side iterable)
# ---------------------------------------------------------------------------


class CheckpointChain:
    """Lazy, restartable view of a thread's checkpoints from root to head.

    Every iteration re-reads the head pointer and follows parent ids back to
    the root, so files left past the head by an interrupted append are never
    part of the chain, and a chain object can be iterated again after the
    thread has grown.
    """

    __slots__ = ("_store", "thread_id")

    def __init__(self, store: "CheckpointStore", thread_id: str) -> None:
        self._store = store
        self.thread_id = thread_id

    def __iter__(self) -> Iterator[Checkpoint]:
        head = self._store._read_head(self.thread_id)
        if head is None:
            return
        sequence, checkpoint_id = head
        newest_first: list[Checkpoint] = []
        while checkpoint_id is not None:
            if sequence < 0:
                raise StateCorruption(f"checkpoint chain of thread {self.thread_id} does not end at a root")
            path = self._store._checkpoint_path(self.thread_id, sequence, checkpoint_id)
            try:
                checkpoint = self._store._read_checkpoint(path, self.thread_id)
            except CheckpointNotFound as exc:
                raise StateCorruption(
                    f"checkpoint chain of thread {self.thread_id} is broken at sequence {sequence}"
                ) from exc
            if checkpoint.id != checkpoint_id or checkpoint.sequence != sequence:
                raise StateCorruption(
                    f"checkpoint chain of thread {self.thread_id} is broken at sequence {sequence}"
                )
            newest_first.append(checkpoint)
            checkpoint_id = checkpoint.parent_id
            sequence -= 1
        if sequence != -1:
            raise StateCorruption(f"root of thread {self.thread_id} is not at sequence 0")
        yield from reversed(newest_first)

    def to_list(self) -> list[Checkpoint]:
        return list(self)


# ---------------------------------------------------------------------------
# CheckpointStore
# ---------------------------------------------------------------------------


class CheckpointStore:
    """Filesystem store of append-only, causally chained checkpoints per thread.

    Layout::

        <root>/threads/<thread_id>/thread.json
        <root>/threads/<thread_id>/HEAD
        <root>/threads/<thread_id>/checkpoints/<sequence>-<checkpoint_id>.json

    ``append`` is guarded by an exclusive ``fcntl`` lock per thread and
    performs an optimistic parent check, so two writers can never fork a
    thread's history.  The head pointer moves only after the checkpoint file
    is durable.
    """

    def __init__(self, root: Path) -> None:
        self.root = Path(root)
        self.threads_dir = self.root / "threads"
        self.threads_dir.mkdir(parents=True, exist_ok=True)

    # ------------------------------------------------------------------
    # Paths
    # ------------------------------------------------------------------

    def _thread_dir(self, thread_id: str) -> Path:
        return self.threads_dir / _checked_id(thread_id, "thread_id")

    def _head_path(self, thread_id: str) -> Path:
        return self._thread_dir(thread_id) / "HEAD"

    def _record_path(self, thread_id: str) -> Path:
        return self._thread_dir(thread_id) / "thread.json"

    def _checkpoints_dir(self, thread_id: str) -> Path:
        return self._thread_dir(thread_id) / "checkpoints"

    def _checkpoint_paths(self, thread_id: str) -> list[Path]:
        directory = self._checkpoints_dir(thread_id)
        if not directory.is_dir():
            return []
        return sorted(directory.glob("*.json"))

    @staticmethod
    def _sequence_of(path: Path) -> int:
        return int(path.name.split("-", 1)[0])

    # ------------------------------------------------------------------
    # Thread records
    # ------------------------------------------------------------------

    def has_thread(self, thread_id: str) -> bool:
        return self._record_path(thread_id).is_file()

    def create_thread(self, record: ThreadRecord) -> ThreadRecord:
        """Persist a new thread record.

        Raises:
            ValueError: If a thread with the same id already exists.
        """
        path = self._record_path(record.thread_id)
        with _locked_file(path):
            if path.is_file():
                raise ValueError(f"thread already exists: {record.thread_id}")
            self._checkpoints_dir(record.thread_id).mkdir(parents=True, exist_ok=True)
            _atomic_write_text(path, record.model_dump_json(indent=2))
        logger.debug("created thread %s (graph=%s)", record.thread_id, record.graph_name)
        return record

    def read_thread(self, thread_id: str) -> ThreadRecord:
        path = self._record_path(thread_id)
        text = _safe_read_text(path, "thread record")
        try:
            return ThreadRecord.model_validate_json(text)
        except ValidationError as exc:
            raise StateCorruption(f"thread record at {path} failed validation: {exc}") from exc

    def update_thread(self, thread_id: str, **changes: Any) -> ThreadRecord:
        """Read-modify-write a thread record under its lock."""
        path = self._record_path(thread_id)
        with _locked_file(path):
            record = self.read_thread(thread_id)
            updated = record.model_copy(update={**changes, "updated_at": utc_now()})
            _atomic_write_text(path, updated.model_dump_json(indent=2))
        return updated

    def archive_thread(self, thread_id: str) -> ThreadRecord:
        return self.update_thread(thread_id, archived=True)

    def list_threads(self, *, include_archived: bool = True) -> list[ThreadRecord]:
        records: list[ThreadRecord] = []
        for path in sorted(self.threads_dir.glob("*/thread.json")):
            record = self.read_thread(path.parent.name)
            if record.archived and not include_archived:
                continue
            records.append(record)
        return records

    # ------------------------------------------------------------------
    # Checkpoints
    # ------------------------------------------------------------------

    def _read_head(self, thread_id: str) -> tuple[int, str] | None:
        path = self._head_path(thread_id)
        if not path.is_file():
            if not self.has_thread(thread_id):
                raise CheckpointNotFound(f"thread not found: {thread_id}")
            return None
        raw = path.read_text(encoding="utf-8").strip()
        try:
            sequence_text, checkpoint_id = raw.split(" ", 1)
            return int(sequence_text), checkpoint_id
        except ValueError as exc:
            raise StateCorruption(f"head pointer of thread {thread_id} is unreadable: {raw!r}") from exc

    def _checkpoint_path(self, thread_id: str, sequence: int, checkpoint_id: str) -> Path:
        return self._checkpoints_dir(thread_id) / f"{sequence:08d}-{checkpoint_id}.json"

    def _read_checkpoint(self, path: Path, thread_id: str) -> Checkpoint:
        text = _safe_read_text(path, "checkpoint")
        try:
            checkpoint = Checkpoint.model_validate_json(text)
        except ValidationError as exc:
            raise StateCorruption(f"checkpoint at {path} failed validation: {exc}") from exc
        if checkpoint.thread_id != thread_id:
            raise StateCorruption(f"checkpoint at {path} belongs to thread {checkpoint.thread_id}")
        if state_digest(checkpoint.state) != checkpoint.digest:
            raise StateCorruption(f"checkpoint at {path} failed its digest check")
        return checkpoint

    def append(
        self,
        thread_id: str,
        parent_id: str | None,
        *,
        node_id: str,
        state: dict[str, Any],
        next_node: str | None,
        event: CheckpointEvent,
        status: RunStatus,
        updates: list[dict[str, Any]] | None = None,
        awaiting_input: bool = False,
        metadata: dict[str, Any] | None = None,
    ) -> Checkpoint:
        """Append a checkpoint whose parent must be the thread's current head.

        Raises:
            StaleParent: If ``parent_id`` is not the current head (``None`` for root).
            CheckpointNotFound: If the thread does not exist.
        """
        head_path = self._head_path(thread_id)
        with _locked_file(head_path):
            head = self._read_head(thread_id)
            actual = head[1] if head is not None else None
            if parent_id != actual:
                raise StaleParent(thread_id, parent_id, actual)
            sequence = head[0] + 1 if head is not None else 0
            checkpoint = Checkpoint(
                id=uuid.uuid4().hex,
                thread_id=thread_id,
                parent_id=parent_id,
                sequence=sequence,
                node_id=node_id,
                next_node=next_node,
                event=event,
                status=status,
                awaiting_input=awaiting_input,
                updates=list(updates or []),
                state=state,
                digest=state_digest(state),
                metadata=dict(metadata or {}),
            )
            for stray in self._checkpoint_paths(thread_id):
                if self._sequence_of(stray) >= sequence:
                    logger.warning("discarding checkpoint %s of thread %s left past its head", stray.name, thread_id)
                    stray.unlink()
            path = self._checkpoint_path(thread_id, sequence, checkpoint.id)
            _atomic_write_text(path, checkpoint.model_dump_json())
            _atomic_write_text(head_path, f"{sequence} {checkpoint.id}\n")
        logger.debug(
            "thread %s checkpoint %d node=%s event=%s status=%s",
            thread_id,
            sequence,
            node_id,
            event.value,
            status.value,
        )
        return checkpoint

    def load_latest(self, thread_id: str) -> Checkpoint:
        head = self._read_head(thread_id)
        if head is None:
            raise CheckpointNotFound(f"thread {thread_id} has no checkpoints")
        sequence, checkpoint_id = head
        return self._read_checkpoint(self._checkpoint_path(thread_id, sequence, checkpoint_id), thread_id)

    def load(self, thread_id: str, checkpoint_id: str) -> Checkpoint:
        _checked_id(checkpoint_id, "checkpoint_id")
        head = self._read_head(thread_id)
        matches = [
            path
            for path in self._checkpoints_dir(thread_id).glob(f"*-{checkpoint_id}.json")
            if head is not None and self._sequence_of(path) <= head[0]
        ]
        if not matches:
            raise CheckpointNotFound(f"checkpoint {checkpoint_id} not found in thread {thread_id}")
        return self._read_checkpoint(matches[0], thread_id)

    def load_chain(self, thread_id: str) -> CheckpointChain:
        if not self.has_thread(thread_id):
            raise CheckpointNotFound(f"thread not found: {thread_id}")
        return CheckpointChain(self, thread_id)
