"""Multiplexes many task sessions and routes out-of-band messages into them."""

from __future__ import annotations

import logging
import threading
import uuid
from collections.abc import Callable, Mapping
from concurrent.futures import Future, ThreadPoolExecutor
from dataclasses import dataclass
from typing import Any

from .engine import CANCELLED_REASON, GraphEngine
from .errors import CheckpointNotFound, ConductorError, NotSuspended, RunNotActive
from .models import (
    Checkpoint,
    CheckpointEvent,
    InboundMessage,
    RunHandle,
    RunMode,
    RunResult,
    RunStatus,
    ThreadPhase,
    ThreadRecord,
)
from .session import EXECUTE_NODE, TaskSession
from .settings import RuntimeSettings

logger = logging.getLogger(__name__)

RelevanceClassifier = Callable[[InboundMessage, ThreadRecord], bool]


@dataclass(frozen=True)
class RoutingContext:
    """``thread_id`` is the session currently answering the message's thread id."""

    message: InboundMessage
    record: ThreadRecord | None
    active: bool
    thread_id: str


@dataclass(frozen=True)
class RouteOutcome:
    route: str
    thread_id: str | None = None


@dataclass(frozen=True)
class Route:
    name: str
    predicate: Callable[[RoutingContext], bool]
    action: Callable[[RoutingContext], RouteOutcome]


def message_is_unrelated(message: InboundMessage, record: ThreadRecord) -> bool:
    """Default classifier: only messages explicitly flagged unrelated start side tasks."""
    return message.related is False


class OrchestrationCoordinator:
    """Runs each thread's task session on a worker pool.

    Inbound messages are matched against an ordered route table; the first
    matching route wins and overlapping matches are logged as ambiguous.
    """

    def __init__(
        self,
        engine: GraphEngine,
        session: TaskSession,
        settings: RuntimeSettings,
        *,
        classifier: RelevanceClassifier = message_is_unrelated,
        default_mode: RunMode = RunMode.MANUAL,
    ) -> None:
        self.engine = engine
        self.session = session
        self.settings = settings
        self.classifier = classifier
        self.default_mode = default_mode
        self.engine.register(session.graph)
        self.engine.add_listener(self._on_checkpoint)
        self._pool = ThreadPoolExecutor(max_workers=settings.coordinator_workers, thread_name_prefix="conductor-run")
        self._futures: dict[str, Future[RunStatus]] = {}
        self._lock = threading.Lock()
        self.routes: list[Route] = [
            Route("plan_feedback", self._awaits_plan_feedback, self._forward_plan_feedback),
            Route("instructions", self._accepts_instructions, self._forward_instructions),
            Route("new_session", self._opens_session, self._start_session),
            Route("side_task", self._is_unrelated, self._start_side_task),
        ]

    # ------------------------------------------------------------------
    # Run lifecycle
    # ------------------------------------------------------------------

    def start_run(self, request: Mapping[str, Any]) -> RunHandle:
        """Start a task session from ``{thread_id?, initial_message, mode?}``."""
        message = str(request.get("initial_message", "")).strip()
        if not message:
            raise ValueError("initial_message must be non-empty")
        mode = RunMode(request.get("mode") or self.default_mode.value)
        thread_id = request.get("thread_id") or uuid.uuid4().hex
        if self.engine.store.has_thread(thread_id):
            raise ValueError(f"thread already exists: {thread_id}")
        self.engine.start(
            self.session.graph,
            {"request": message, "mode": mode.value},
            thread_id=thread_id,
            request=message,
        )
        logger.info("started run %s mode=%s", thread_id, mode.value)
        self._dispatch(thread_id)
        return RunHandle(thread_id=thread_id, status=RunStatus.RUNNING)

    def resume_run(self, thread_id: str, resume_input: Mapping[str, Any]) -> RunHandle:
        """Resume a suspended run; raises ``NotSuspended`` otherwise."""
        self.engine.interrupts.resume(thread_id, resume_input, run=False)
        self._dispatch(thread_id)
        return RunHandle(thread_id=thread_id, status=RunStatus.RUNNING)

    def cancel(self, thread_id: str) -> RunResult:
        self.engine.cancel(thread_id)
        future = self._future(thread_id)
        if future is not None:
            future.result()
        return self.result(thread_id)

    def wait(self, thread_id: str, timeout: float | None = None) -> RunHandle:
        """Block until the thread's current dispatch returns (terminal or suspended)."""
        future = self._future(thread_id)
        if future is not None:
            future.result(timeout=timeout)
        return self.status(thread_id)

    def status(self, thread_id: str) -> RunHandle:
        pending = self.engine.interrupts.pending(thread_id)
        status = self.engine.status(thread_id)
        if pending is not None and not status.is_terminal:
            status = RunStatus.SUSPENDED
        return RunHandle(thread_id=thread_id, status=status, awaiting_input=pending is not None)

    def result(self, thread_id: str) -> RunResult:
        latest = self.engine.store.load_latest(thread_id)
        if not latest.status.is_terminal:
            raise RunNotActive(f"thread {thread_id} has not finished (status={latest.status.value})")
        result_ref = latest.state.get("result_ref")
        if latest.status is RunStatus.COMPLETED:
            return RunResult(status="completed", result_ref=result_ref)
        reason = latest.metadata.get("reason") or latest.state.get("failure_reason")
        if reason == CANCELLED_REASON:
            return RunResult(status="cancelled", reason=reason)
        return RunResult(status="failed", result_ref=result_ref, reason=reason)

    def recover(self) -> list[str]:
        """Re-dispatch top-level runs left running by a previous process."""
        recovered = self.engine.recover()
        for thread_id in recovered:
            logger.info("recovering run %s", thread_id)
            self._dispatch(thread_id)
        return recovered

    def shutdown(self, *, wait: bool = True) -> None:
        self._pool.shutdown(wait=wait)

    def _future(self, thread_id: str) -> Future[RunStatus] | None:
        with self._lock:
            return self._futures.get(thread_id)

    def _dispatch(self, thread_id: str) -> None:
        with self._lock:
            future = self._pool.submit(self._drive, thread_id)
            self._futures[thread_id] = future
        future.add_done_callback(lambda done: self._forget(thread_id, done))

    def _forget(self, thread_id: str, future: Future[RunStatus]) -> None:
        with self._lock:
            if self._futures.get(thread_id) is future:
                del self._futures[thread_id]

    def _drive(self, thread_id: str) -> RunStatus:
        try:
            status = self.engine.run(thread_id)
        except ConductorError:
            logger.exception("run %s aborted", thread_id)
            raise
        logger.info("run %s returned status=%s", thread_id, status.value)
        return status

    # ------------------------------------------------------------------
    # Phase tracking
    # ------------------------------------------------------------------

    def _root_record(self, thread_id: str) -> ThreadRecord:
        record = self.engine.store.read_thread(thread_id)
        while record.parent_thread_id is not None:
            record = self.engine.store.read_thread(record.parent_thread_id)
        return record

    def _on_checkpoint(self, checkpoint: Checkpoint) -> None:
        root = self._root_record(checkpoint.thread_id)
        phase: ThreadPhase | None = None
        if checkpoint.event is CheckpointEvent.INTERRUPT:
            phase = ThreadPhase.AWAITING_PLAN_FEEDBACK
        elif checkpoint.event is CheckpointEvent.RESUME:
            phase = ThreadPhase.IDLE
        elif checkpoint.thread_id == root.thread_id:
            if checkpoint.event is CheckpointEvent.SUBRUN_PENDING and checkpoint.node_id == EXECUTE_NODE:
                phase = ThreadPhase.PROGRAMMER_RUNNING
            elif checkpoint.event is CheckpointEvent.TERMINAL or checkpoint.node_id == EXECUTE_NODE:
                phase = ThreadPhase.IDLE
        if phase is not None and phase is not root.phase:
            self.engine.store.update_thread(root.thread_id, phase=phase)
            logger.debug("thread %s phase -> %s", root.thread_id, phase.value)

    # ------------------------------------------------------------------
    # Message routing
    # ------------------------------------------------------------------

    def _current_record(self, thread_id: str) -> ThreadRecord:
        record = self.engine.store.read_thread(thread_id)
        seen = {record.thread_id}
        while record.current_session is not None and record.current_session not in seen:
            record = self.engine.store.read_thread(record.current_session)
            seen.add(record.thread_id)
        return record

    def _context(self, message: InboundMessage) -> RoutingContext:
        if not self.engine.store.has_thread(message.thread_id):
            return RoutingContext(message=message, record=None, active=False, thread_id=message.thread_id)
        record = self._current_record(message.thread_id)
        try:
            active = not self.engine.status(record.thread_id).is_terminal
        except CheckpointNotFound:
            active = False
        return RoutingContext(message=message, record=record, active=active, thread_id=record.thread_id)

    def handle_message(self, message: InboundMessage) -> RouteOutcome:
        ctx = self._context(message)
        matched = [route for route in self.routes if route.predicate(ctx)]
        if not matched:
            logger.info("message for thread %s acknowledged without action", message.thread_id)
            return RouteOutcome(route="noop", thread_id=message.thread_id)
        if len(matched) > 1:
            logger.warning(
                "routing ambiguity for thread %s: %s match; taking %s",
                message.thread_id,
                [route.name for route in matched],
                matched[0].name,
            )
        route = matched[0]
        logger.info("routing message for thread %s via %s", message.thread_id, route.name)
        return route.action(ctx)

    @staticmethod
    def _awaits_plan_feedback(ctx: RoutingContext) -> bool:
        return (
            ctx.active
            and ctx.record is not None
            and ctx.record.phase is ThreadPhase.AWAITING_PLAN_FEEDBACK
            and ctx.message.plan_feedback is not None
        )

    @staticmethod
    def _accepts_instructions(ctx: RoutingContext) -> bool:
        return (
            ctx.active
            and ctx.record is not None
            and ctx.record.phase is ThreadPhase.PROGRAMMER_RUNNING
            and bool(ctx.message.instructions)
        )

    @staticmethod
    def _opens_session(ctx: RoutingContext) -> bool:
        return not ctx.active and bool(ctx.message.content.strip())

    def _is_unrelated(self, ctx: RoutingContext) -> bool:
        return ctx.active and ctx.record is not None and self.classifier(ctx.message, ctx.record)

    def _forward_plan_feedback(self, ctx: RoutingContext) -> RouteOutcome:
        try:
            self.resume_run(ctx.thread_id, {"approval": ctx.message.plan_feedback})
        except NotSuspended:
            logger.warning("thread %s is no longer awaiting plan feedback", ctx.thread_id)
            return RouteOutcome(route="noop", thread_id=ctx.thread_id)
        return RouteOutcome(route="plan_feedback", thread_id=ctx.thread_id)

    def execution_thread(self, thread_id: str) -> str | None:
        latest = self.engine.store.load_latest(thread_id)
        if latest.event is CheckpointEvent.SUBRUN_PENDING and latest.node_id == EXECUTE_NODE:
            return str(latest.metadata["child_thread_id"])
        return None

    def _forward_instructions(self, ctx: RoutingContext) -> RouteOutcome:
        child = self.execution_thread(ctx.thread_id)
        if child is None:
            logger.warning("thread %s has no running execution session", ctx.thread_id)
            return RouteOutcome(route="noop", thread_id=ctx.thread_id)
        try:
            self.engine.inject(child, {"instructions": ctx.message.instructions})
        except RunNotActive:
            logger.warning("execution session %s finished before instructions arrived", child)
            return RouteOutcome(route="noop", thread_id=ctx.thread_id)
        return RouteOutcome(route="instructions", thread_id=child)

    def _start_session(self, ctx: RoutingContext) -> RouteOutcome:
        thread_id = ctx.message.thread_id if ctx.record is None else uuid.uuid4().hex
        handle = self.start_run({"thread_id": thread_id, "initial_message": ctx.message.content})
        if ctx.record is not None:
            self.engine.store.update_thread(ctx.message.thread_id, current_session=handle.thread_id)
            logger.info("thread %s continues in session %s", ctx.message.thread_id, handle.thread_id)
        return RouteOutcome(route="new_session", thread_id=handle.thread_id)

    def _start_side_task(self, ctx: RoutingContext) -> RouteOutcome:
        handle = self.start_run({"initial_message": ctx.message.content})
        logger.info("side task %s started beside thread %s", handle.thread_id, ctx.message.thread_id)
        return RouteOutcome(route="side_task", thread_id=handle.thread_id)
