from __future__ import annotations

import logging
from collections.abc import Mapping
from dataclasses import dataclass
from typing import TYPE_CHECKING, Any

from .canonical import to_json_primitive
from .errors import NotSuspended
from .models import Checkpoint, CheckpointEvent, RunStatus

if TYPE_CHECKING:
    from .engine import GraphEngine

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class PendingInterrupt:
    """The innermost thread awaiting input under a top-level run."""

    thread_id: str
    node: str
    checkpoint_id: str
    state: dict[str, Any]


class InterruptController:
    """Suspends runs at interrupt nodes and resumes them with external input.

    A suspension is an ordinary checkpoint tagged ``awaiting_input``; nothing
    is held in memory, so a suspended run survives process restarts and can be
    resumed by any process that shares the store.
    """

    def __init__(self, engine: "GraphEngine") -> None:
        self.engine = engine

    def suspend(
        self,
        thread_id: str,
        parent: Checkpoint,
        node: str,
        state: dict[str, Any],
        updates: list[dict[str, Any]],
    ) -> Checkpoint:
        checkpoint = self.engine._append(
            thread_id,
            parent,
            node_id=node,
            state=state,
            next_node=node,
            event=CheckpointEvent.INTERRUPT,
            status=RunStatus.SUSPENDED,
            updates=updates,
            awaiting_input=True,
        )
        self.engine.store.update_thread(thread_id, status=RunStatus.SUSPENDED)
        logger.info("thread %s suspended at %s awaiting input", thread_id, node)
        return checkpoint

    def _suspended_leaf(self, thread_id: str) -> Checkpoint | None:
        latest = self.engine.store.load_latest(thread_id)
        if latest.awaiting_input and latest.status is RunStatus.SUSPENDED:
            return latest
        if latest.event is CheckpointEvent.SUBRUN_PENDING and not latest.status.is_terminal:
            return self._suspended_leaf(str(latest.metadata["child_thread_id"]))
        return None

    def pending(self, thread_id: str) -> PendingInterrupt | None:
        """Describe what the run (or one of its nested runs) is waiting on."""
        leaf = self._suspended_leaf(thread_id)
        if leaf is None:
            return None
        return PendingInterrupt(
            thread_id=leaf.thread_id,
            node=leaf.node_id,
            checkpoint_id=leaf.id,
            state=dict(leaf.state),
        )

    def is_suspended(self, thread_id: str) -> bool:
        return self._suspended_leaf(thread_id) is not None

    def resume(self, thread_id: str, update: Mapping[str, Any], *, run: bool = True) -> RunStatus:
        """Merge ``update`` into the suspended run and continue from the same node.

        ``thread_id`` may name the top-level thread; the innermost suspended
        child is located by following pending sub-run markers.

        Raises:
            NotSuspended: If no thread under ``thread_id`` is awaiting input.
        """
        leaf = self._suspended_leaf(thread_id)
        if leaf is None:
            raise NotSuspended(f"thread {thread_id} is not awaiting input")
        leaf_id = leaf.thread_id
        with self.engine.thread_lock(leaf_id):
            latest = self.engine.store.load_latest(leaf_id)
            if not latest.awaiting_input:
                raise NotSuspended(f"thread {leaf_id} was resumed concurrently")
            graph = self.engine.graph_for(leaf_id)
            payload = to_json_primitive(dict(update))
            state = graph.schema.apply(latest.state, payload)
            self.engine._append(
                leaf_id,
                latest,
                node_id=latest.node_id,
                state=state,
                next_node=latest.next_node,
                event=CheckpointEvent.RESUME,
                status=RunStatus.RUNNING,
                updates=[payload],
                awaiting_input=False,
            )
        self._mark_running(leaf_id)
        logger.info("thread %s resumed at %s", leaf_id, latest.next_node)
        if not run:
            return RunStatus.RUNNING
        return self.engine.run(thread_id)

    def _mark_running(self, thread_id: str) -> None:
        current: str | None = thread_id
        while current is not None:
            record = self.engine.store.update_thread(current, status=RunStatus.RUNNING)
            current = record.parent_thread_id
