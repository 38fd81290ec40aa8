"""Checkpointing executor for ``GraphDefinition`` runs.

Every dispatch is recorded as an immutable checkpoint holding the partial
updates that were applied and the resulting snapshot, so a run can resume
from its head after a crash and any thread can be replayed from its root.
"""

from __future__ import annotations

import logging
import threading
import uuid
from collections.abc import Callable, Mapping, Sequence
from typing import Any

from .canonical import to_json_primitive
from .checkpoint_store import CheckpointStore
from .compaction import MessageCompactor
from .errors import (
    CheckpointNotFound,
    ConductorError,
    GraphDefinitionError,
    RunNotActive,
    StaleParent,
    StateCorruption,
    ToolInvocationError,
)
from .graph import END, FAIL, START, GraphDefinition, NodeContext, NodeOutput, NodeSpec, SubgraphRef
from .interrupts import InterruptController
from .models import Checkpoint, CheckpointEvent, RunStatus, ThreadRecord

logger = logging.getLogger(__name__)

CheckpointListener = Callable[[Checkpoint], None]

CANCELLED_REASON = "cancelled"


def _normalize_output(output: NodeOutput) -> list[dict[str, Any]]:
    if output is None:
        return []
    if isinstance(output, Mapping):
        return [dict(output)] if output else []
    return [dict(update) for update in output if update]


def _failure_reason(state: Mapping[str, Any]) -> str:
    reason = state.get("failure_reason")
    return str(reason) if reason else "routed_to_failure"


class GraphEngine:
    """Runs graph definitions one node at a time against a ``CheckpointStore``.

    Node dispatch within a thread is serialized by a per-thread lock and by
    the store's optimistic parent check; different threads can be stepped
    concurrently from different OS threads.
    """

    def __init__(self, store: CheckpointStore, *, compactor: MessageCompactor | None = None) -> None:
        self.store = store
        self.compactor = compactor
        self.interrupts = InterruptController(self)
        self._graphs: dict[str, GraphDefinition] = {}
        self._locks: dict[str, threading.Lock] = {}
        self._cancel_events: dict[str, threading.Event] = {}
        self._inbox: dict[str, list[dict[str, Any]]] = {}
        self._guard = threading.Lock()
        self._listeners: list[CheckpointListener] = []

    # ------------------------------------------------------------------
    # Registration and bookkeeping
    # ------------------------------------------------------------------

    def register(self, graph: GraphDefinition) -> None:
        with self._guard:
            existing = self._graphs.get(graph.name)
            if existing is not None and existing is not graph:
                logger.debug("replacing registered graph %s", graph.name)
            self._graphs[graph.name] = graph
        for spec in graph.nodes.values():
            if spec.subgraph is not None and self._graphs.get(spec.subgraph.graph.name) is not spec.subgraph.graph:
                self.register(spec.subgraph.graph)

    def add_listener(self, listener: CheckpointListener) -> None:
        self._listeners.append(listener)

    def graph_for(self, thread_id: str) -> GraphDefinition:
        record = self.store.read_thread(thread_id)
        graph = self._graphs.get(record.graph_name)
        if graph is None:
            raise GraphDefinitionError(f"graph {record.graph_name!r} of thread {thread_id} is not registered")
        return graph

    def thread_lock(self, thread_id: str) -> threading.Lock:
        with self._guard:
            return self._locks.setdefault(thread_id, threading.Lock())

    def _cancel_event(self, thread_id: str) -> threading.Event:
        with self._guard:
            return self._cancel_events.setdefault(thread_id, threading.Event())

    def _notify(self, checkpoint: Checkpoint) -> None:
        for listener in list(self._listeners):
            try:
                listener(checkpoint)
            except Exception:  # noqa: BLE001
                logger.exception("checkpoint listener failed for thread %s", checkpoint.thread_id)

    def _append(self, thread_id: str, parent: Checkpoint | None, **fields: Any) -> Checkpoint:
        checkpoint = self.store.append(thread_id, parent.id if parent is not None else None, **fields)
        self._notify(checkpoint)
        return checkpoint

    def _release(self, thread_id: str) -> None:
        with self._guard:
            self._locks.pop(thread_id, None)
            self._cancel_events.pop(thread_id, None)
            undelivered = self._inbox.pop(thread_id, [])
        if undelivered:
            logger.warning("thread %s finished with %d undelivered injected update(s)", thread_id, len(undelivered))

    def _finish(self, thread_id: str, status: RunStatus, reason: str | None = None) -> None:
        self.store.update_thread(thread_id, status=status, reason=reason, archived=True)
        self._release(thread_id)
        logger.info("thread %s finished status=%s reason=%s", thread_id, status.value, reason or "-")

    # ------------------------------------------------------------------
    # Run lifecycle
    # ------------------------------------------------------------------

    def start(
        self,
        graph: GraphDefinition,
        initial_values: Mapping[str, Any] | None = None,
        *,
        thread_id: str | None = None,
        parent_thread_id: str | None = None,
        parent_node: str | None = None,
        request: str | None = None,
    ) -> str:
        """Create a thread and its root checkpoint; the run is then ``running``."""
        self.register(graph)
        thread_id = thread_id or uuid.uuid4().hex
        state = graph.schema.initial_state(initial_values)
        self.store.create_thread(
            ThreadRecord(
                thread_id=thread_id,
                graph_name=graph.name,
                parent_thread_id=parent_thread_id,
                parent_node=parent_node,
                status=RunStatus.RUNNING,
                request=request,
            )
        )
        self._write_root(graph, thread_id, state)
        logger.info("started thread %s graph=%s parent=%s", thread_id, graph.name, parent_thread_id or "-")
        return thread_id

    def _write_root(self, graph: GraphDefinition, thread_id: str, state: dict[str, Any]) -> None:
        self._append(
            thread_id,
            None,
            node_id=START,
            state=state,
            next_node=graph.entry,
            event=CheckpointEvent.START,
            status=RunStatus.RUNNING,
        )

    def status(self, thread_id: str) -> RunStatus:
        return self.store.load_latest(thread_id).status

    def state(self, thread_id: str) -> dict[str, Any]:
        return dict(self.store.load_latest(thread_id).state)

    def run(self, thread_id: str) -> RunStatus:
        """Step until the thread is no longer running."""
        status = self.step(thread_id)
        while status is RunStatus.RUNNING:
            status = self.step(thread_id)
        return status

    def step(self, thread_id: str) -> RunStatus:
        """Dispatch the thread's next node and append the resulting checkpoint."""
        with self.thread_lock(thread_id):
            latest = self.store.load_latest(thread_id)
            if latest.status is not RunStatus.RUNNING:
                if latest.status.is_terminal:
                    self._release(thread_id)
                return latest.status
            graph = self.graph_for(thread_id)
            missing = graph.schema.missing_required(latest.state)
            if missing:
                raise StateCorruption(f"thread {thread_id} checkpoint {latest.id} lacks required fields {missing}")
            if self._cancel_event(thread_id).is_set():
                return self._write_cancelled(thread_id, latest)

            resumed = latest.event is CheckpointEvent.RESUME or bool(latest.metadata.get("resumed"))
            latest = self._drain_inbox(thread_id, graph, latest, resumed=resumed)
            node_name = latest.next_node
            if node_name is None:
                raise StateCorruption(f"running thread {thread_id} has no next node at {latest.id}")
            spec = graph.node(node_name)
            if spec.subgraph is not None:
                return self._step_subgraph(thread_id, graph, latest, spec)
            return self._step_node(thread_id, graph, latest, spec, resumed=resumed)

    def _drain_inbox(
        self,
        thread_id: str,
        graph: GraphDefinition,
        latest: Checkpoint,
        *,
        resumed: bool,
    ) -> Checkpoint:
        with self._guard:
            injected = self._inbox.pop(thread_id, [])
        if not injected:
            return latest
        state = graph.schema.apply_all(latest.state, injected)
        logger.info("thread %s merged %d injected update(s) before %s", thread_id, len(injected), latest.next_node)
        return self._append(
            thread_id,
            latest,
            node_id=latest.node_id,
            state=state,
            next_node=latest.next_node,
            event=CheckpointEvent.INJECT,
            status=RunStatus.RUNNING,
            updates=injected,
            metadata={"resumed": True} if resumed else {},
        )

    def _step_node(
        self,
        thread_id: str,
        graph: GraphDefinition,
        latest: Checkpoint,
        spec: NodeSpec,
        *,
        resumed: bool,
    ) -> RunStatus:
        assert spec.fn is not None
        cancel_event = self._cancel_event(thread_id)
        context = NodeContext(thread_id=thread_id, node=spec.name, resumed=resumed, cancel_event=cancel_event)
        logger.debug("thread %s dispatching %s", thread_id, spec.name)
        try:
            output = spec.fn(latest.state, context)
        except (StateCorruption, GraphDefinitionError, StaleParent, CheckpointNotFound, OSError):
            raise
        except Exception as exc:  # noqa: BLE001
            logger.exception("node %s of thread %s raised", spec.name, thread_id)
            if cancel_event.is_set():
                return self._write_cancelled(thread_id, latest)
            return self._write_terminal(
                thread_id, latest, RunStatus.FAILED, f"{spec.name}: {type(exc).__name__}: {exc}"
            )
        if cancel_event.is_set():
            return self._write_cancelled(thread_id, latest)

        updates = _normalize_output(output)
        for update in updates:
            graph.check_output(spec.name, update)
        updates = [to_json_primitive(update) for update in updates]
        state = graph.schema.apply_all(latest.state, updates)

        if spec.interrupt and not resumed:
            self.interrupts.suspend(thread_id, latest, spec.name, state, updates)
            return RunStatus.SUSPENDED
        return self._advance(thread_id, graph, latest, spec.name, state, updates)

    def _advance(
        self,
        thread_id: str,
        graph: GraphDefinition,
        latest: Checkpoint,
        node_name: str,
        state: dict[str, Any],
        updates: Sequence[dict[str, Any]],
        metadata: dict[str, Any] | None = None,
    ) -> RunStatus:
        target = graph.resolve_next(node_name, state)
        if target == END:
            status, next_node, event = RunStatus.COMPLETED, None, CheckpointEvent.TERMINAL
        elif target == FAIL:
            status, next_node, event = RunStatus.FAILED, None, CheckpointEvent.TERMINAL
        else:
            status, next_node, event = RunStatus.RUNNING, target, CheckpointEvent.NODE
        metadata = dict(metadata or {})
        reason = _failure_reason(state) if status is RunStatus.FAILED else None
        if reason is not None:
            metadata["reason"] = reason
        self._append(
            thread_id,
            latest,
            node_id=node_name,
            state=state,
            next_node=next_node,
            event=event,
            status=status,
            updates=list(updates),
            metadata=metadata,
        )
        if status.is_terminal:
            self._finish(thread_id, status, reason)
        return status

    def _step_subgraph(
        self,
        thread_id: str,
        graph: GraphDefinition,
        latest: Checkpoint,
        spec: NodeSpec,
    ) -> RunStatus:
        ref = spec.subgraph
        assert ref is not None
        child_id = latest.metadata.get("child_thread_id") if latest.event is CheckpointEvent.SUBRUN_PENDING else None
        if child_id is None:
            child_id = f"{thread_id}-{spec.name}-{latest.sequence + 1}"
            if self.store.has_thread(child_id):
                self._adopt_child(thread_id, spec, child_id, latest.state)
            else:
                self.start(
                    ref.graph,
                    self._child_values(ref, latest.state),
                    thread_id=child_id,
                    parent_thread_id=thread_id,
                    parent_node=spec.name,
                )
            latest = self._append(
                thread_id,
                latest,
                node_id=spec.name,
                state=latest.state,
                next_node=spec.name,
                event=CheckpointEvent.SUBRUN_PENDING,
                status=RunStatus.RUNNING,
                metadata={"child_thread_id": child_id},
            )

        child_status = self.run(child_id)
        if child_status is RunStatus.SUSPENDED:
            self.store.update_thread(thread_id, status=RunStatus.SUSPENDED)
            return RunStatus.SUSPENDED
        if self._cancel_event(thread_id).is_set():
            return self._write_cancelled(thread_id, latest)

        child_state = self.store.load_latest(child_id).state
        update = to_json_primitive(dict(ref.output_mapper(child_state, child_status)))
        graph.check_output(spec.name, update)
        updates = [update] if update else []
        state = graph.schema.apply_all(latest.state, updates)
        return self._advance(
            thread_id,
            graph,
            latest,
            spec.name,
            state,
            updates,
            metadata={"child_thread_id": child_id, "child_status": child_status.value},
        )

    def _child_values(self, ref: SubgraphRef, state: Mapping[str, Any]) -> dict[str, Any]:
        child_values = dict(ref.input_mapper(state))
        if self.compactor is not None and "messages" in child_values:
            try:
                child_values["messages"] = self.compactor.compact(list(child_values["messages"]))
            except ToolInvocationError as exc:
                logger.warning("message compaction failed, handing off the full log: %s", exc)
        return child_values

    def _adopt_child(self, thread_id: str, spec: NodeSpec, child_id: str, state: Mapping[str, Any]) -> None:
        """Take over a child thread started by a hand-off that never wrote its marker."""
        record = self.store.read_thread(child_id)
        if record.parent_thread_id != thread_id or record.parent_node != spec.name:
            raise StateCorruption(f"thread {child_id} exists but was not started by {thread_id} at {spec.name}")
        ref = spec.subgraph
        assert ref is not None
        self.register(ref.graph)
        try:
            self.store.load_latest(child_id)
        except CheckpointNotFound:
            child_state = ref.graph.schema.initial_state(self._child_values(ref, state))
            self._write_root(ref.graph, child_id, child_state)
        logger.warning("thread %s adopted child %s left by an interrupted hand-off", thread_id, child_id)

    def _write_terminal(self, thread_id: str, latest: Checkpoint, status: RunStatus, reason: str) -> RunStatus:
        self._append(
            thread_id,
            latest,
            node_id=latest.node_id,
            state=latest.state,
            next_node=None,
            event=CheckpointEvent.TERMINAL,
            status=status,
            metadata={"reason": reason},
        )
        self._finish(thread_id, status, reason)
        return status

    def _write_cancelled(self, thread_id: str, latest: Checkpoint) -> RunStatus:
        return self._write_terminal(thread_id, latest, RunStatus.FAILED, CANCELLED_REASON)

    # ------------------------------------------------------------------
    # Side channel, cancellation, audit
    # ------------------------------------------------------------------

    def inject(self, thread_id: str, update: Mapping[str, Any]) -> None:
        """Queue an update merged at the thread's next node boundary."""
        graph = self.graph_for(thread_id)
        graph.schema.check_fields(update, owner="injected update")
        payload = to_json_primitive(dict(update))
        # Holding the thread lock means no dispatch is in flight, so a thread
        # that is not terminal here has a next boundary that drains the inbox.
        with self.thread_lock(thread_id):
            if self.status(thread_id).is_terminal:
                self._release(thread_id)
                raise RunNotActive(f"thread {thread_id} has already finished")
            with self._guard:
                self._inbox.setdefault(thread_id, []).append(payload)
        logger.info("queued injected update for thread %s fields=%s", thread_id, sorted(update))

    def cancel(self, thread_id: str) -> RunStatus:
        """Record a terminal ``failed``/``cancelled`` checkpoint for the thread and its pending child."""
        latest = self.store.load_latest(thread_id)
        if latest.status.is_terminal:
            return latest.status
        self._cancel_event(thread_id).set()
        if latest.event is CheckpointEvent.SUBRUN_PENDING:
            self.cancel(str(latest.metadata["child_thread_id"]))
        lock = self.thread_lock(thread_id)
        if lock.acquire(blocking=False):
            try:
                latest = self.store.load_latest(thread_id)
                if latest.status.is_terminal:
                    self._release(thread_id)
                else:
                    self._write_cancelled(thread_id, latest)
            finally:
                lock.release()
        else:
            logger.info("thread %s is dispatching; cancellation recorded at the node boundary", thread_id)
        return RunStatus.FAILED

    def is_cancel_requested(self, thread_id: str) -> bool:
        with self._guard:
            event = self._cancel_events.get(thread_id)
        if event is not None:
            return event.is_set()
        latest = self.store.load_latest(thread_id)
        return latest.status.is_terminal and latest.metadata.get("reason") == CANCELLED_REASON

    def replay(self, thread_id: str, upto: str | None = None) -> dict[str, Any]:
        """Rebuild state from the root by re-applying every recorded update."""
        graph = self.graph_for(thread_id)
        state: dict[str, Any] | None = None
        for checkpoint in self.store.load_chain(thread_id):
            state = dict(checkpoint.state) if state is None else graph.schema.apply_all(state, checkpoint.updates)
            if checkpoint.id == upto:
                break
        if state is None:
            raise CheckpointNotFound(f"thread {thread_id} has no checkpoints")
        return state

    def verify(self, thread_id: str) -> None:
        """Raise ``StateCorruption`` unless replay reproduces the head snapshot."""
        latest = self.store.load_latest(thread_id)
        if self.replay(thread_id, upto=latest.id) != latest.state:
            raise StateCorruption(f"replay of thread {thread_id} diverges from checkpoint {latest.id}")

    def fork(self, thread_id: str, checkpoint_id: str) -> str:
        """Start a new thread whose root is an existing checkpoint's state and next node."""
        source = self.store.load(thread_id, checkpoint_id)
        if source.next_node is None:
            raise RunNotActive(f"checkpoint {checkpoint_id} is terminal and cannot be forked")
        graph = self.graph_for(thread_id)
        new_id = uuid.uuid4().hex
        record = self.store.read_thread(thread_id)
        suspended = source.awaiting_input
        self.store.create_thread(
            ThreadRecord(
                thread_id=new_id,
                graph_name=graph.name,
                status=RunStatus.SUSPENDED if suspended else RunStatus.RUNNING,
                request=record.request,
            )
        )
        self._append(
            new_id,
            None,
            node_id=START,
            state=source.state,
            next_node=source.next_node,
            event=CheckpointEvent.INTERRUPT if suspended else CheckpointEvent.START,
            status=RunStatus.SUSPENDED if suspended else RunStatus.RUNNING,
            awaiting_input=suspended,
            metadata={"forked_from": f"{thread_id}:{checkpoint_id}"},
        )
        logger.info("forked thread %s from %s@%s", new_id, thread_id, checkpoint_id)
        return new_id

    def recover(self) -> list[str]:
        """Return top-level threads left running by a previous process."""
        recovered: list[str] = []
        for record in self.store.list_threads(include_archived=False):
            if record.parent_thread_id is not None or record.status is not RunStatus.RUNNING:
                continue
            if record.graph_name not in self._graphs:
                logger.warning("thread %s uses unregistered graph %s; skipping", record.thread_id, record.graph_name)
                continue
            try:
                latest = self.store.load_latest(record.thread_id)
            except ConductorError:
                logger.exception("thread %s cannot be recovered", record.thread_id)
                continue
            if latest.status is RunStatus.RUNNING:
                recovered.append(record.thread_id)
        return recovered
