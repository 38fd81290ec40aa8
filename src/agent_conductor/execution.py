"""Implementation session graph.

selecting -> writing <-> testing -> {committing -> selecting | writing (retry)}
-> handoff_to_review, with the side edge writing -> searching_docs -> writing.
"""

from __future__ import annotations

import logging
import shlex
from collections.abc import Mapping
from concurrent.futures import ThreadPoolExecutor, as_completed
from typing import Any

from .errors import ErrorKind, ToolInvocationError
from .gateway import ToolGateway
from .graph import END, FAIL, GraphBuilder, GraphDefinition, NodeContext, SubgraphRef
from .models import (
    FailureRecord,
    Message,
    Plan,
    ReviewDecision,
    RunStatus,
    Step,
    StepResult,
    StepStatus,
)
from .reducers import FieldSpec, Reducer, StateSchema
from .review import QualityGate
from .settings import RuntimeSettings
from .utils import extract_code_block

logger = logging.getLogger(__name__)

EXECUTION_GRAPH = "execution"

WRITE_PROMPT = "Write the complete contents of the target file."

SEARCH_DOCS_TOOL = {
    "type": "function",
    "function": {
        "name": "search_docs",
        "description": "Look up library or API documentation before writing.",
        "parameters": {"type": "object", "properties": {"query": {"type": "string"}}, "required": ["query"]},
    },
}

EXECUTION_SCHEMA = StateSchema.build(
    EXECUTION_GRAPH,
    [
        FieldSpec("request", default=""),
        FieldSpec("plan", required=True),
        FieldSpec("messages", Reducer.APPEND),
        FieldSpec("instructions", Reducer.APPEND),
        FieldSpec("step_status", default={}),
        FieldSpec("batch", default=[]),
        FieldSpec("step_results", Reducer.APPEND),
        FieldSpec("write_failures", default={}),
        FieldSpec("doc_requests", default=[]),
        FieldSpec("doc_lookups", default={}),
        FieldSpec("doc_notes", Reducer.APPEND),
        FieldSpec("retry_counts", default={}),
        FieldSpec("step_failures", default={}),
        FieldSpec("ready_to_commit", default=[]),
        FieldSpec("exhausted", default=[]),
        FieldSpec("completed_steps", Reducer.UNION),
        FieldSpec("commits", Reducer.APPEND),
        FieldSpec("review_iterations", default=0),
        FieldSpec("review_verdict"),
        FieldSpec("reworked_iteration", default=0),
        FieldSpec("gate_status"),
        FieldSpec("plan_error"),
        FieldSpec("failures", Reducer.APPEND),
        FieldSpec("failure_reason"),
    ],
)


def select_batch(plan: Plan, statuses: Mapping[str, str]) -> list[Step]:
    """Eligible pending steps with pairwise-disjoint target paths, in plan order."""
    batch: list[Step] = []
    claimed: set[str] = set()
    for step in plan.steps:
        if statuses.get(step.id, StepStatus.PENDING.value) != StepStatus.PENDING.value:
            continue
        if any(statuses.get(dep) != StepStatus.COMPLETED.value for dep in step.depends_on):
            continue
        if step.target_path in claimed:
            continue
        claimed.add(step.target_path)
        batch.append(step)
    return batch


class ExecutionSession:
    """Implements a frozen plan step by step, then hands off to the quality gate."""

    def __init__(self, gateway: ToolGateway, settings: RuntimeSettings, *, quality_gate: QualityGate | None = None) -> None:
        self.gateway = gateway
        self.settings = settings
        self.quality_gate = quality_gate or QualityGate(gateway, settings)
        self.graph = self._build_graph()

    def _build_graph(self) -> GraphDefinition:
        graph = GraphBuilder(EXECUTION_GRAPH, EXECUTION_SCHEMA)
        graph.add_node(
            "selecting",
            self._selecting,
            writes={"batch", "step_status", "retry_counts", "doc_lookups", "reworked_iteration", "plan_error",
                    "failures", "failure_reason", "messages"},
        )
        graph.add_node(
            "writing",
            self._writing,
            writes={"step_results", "write_failures", "doc_requests"},
        )
        graph.add_node("searching_docs", self._searching_docs, writes={"doc_notes", "doc_lookups", "doc_requests"})
        graph.add_node(
            "testing",
            self._testing,
            writes={"step_results", "step_failures", "retry_counts", "batch", "ready_to_commit", "exhausted"},
        )
        graph.add_node(
            "committing",
            self._committing,
            writes={"step_status", "completed_steps", "commits", "failures", "ready_to_commit", "exhausted", "batch"},
        )
        graph.add_subgraph(
            "handoff_to_review",
            SubgraphRef(
                graph=self.quality_gate.graph,
                input_mapper=self._review_input,
                output_mapper=self._review_output,
            ),
            writes={"review_verdict", "review_iterations", "gate_status", "failure_reason", "messages"},
        )

        graph.set_entry_point("selecting")
        graph.add_conditional_edges(
            "selecting",
            self._route_selection,
            {"writing": "writing", "handoff_to_review": "handoff_to_review", "failed": FAIL},
        )
        graph.add_conditional_edges(
            "writing",
            lambda state: "searching_docs" if state["doc_requests"] else "testing",
            {"searching_docs": "searching_docs", "testing": "testing"},
        )
        graph.add_edge("searching_docs", "writing")
        graph.add_conditional_edges(
            "testing",
            lambda state: "writing" if state["batch"] else "committing",
            {"writing": "writing", "committing": "committing"},
        )
        graph.add_conditional_edges(
            "committing",
            lambda state: "handoff_to_review" if state["exhausted"] else "selecting",
            {"selecting": "selecting", "handoff_to_review": "handoff_to_review"},
        )
        graph.add_conditional_edges(
            "handoff_to_review",
            self._route_review,
            {"approved": END, "rework": "selecting", "failed": FAIL},
        )
        return graph.compile()

    # ------------------------------------------------------------------
    # Helpers
    # ------------------------------------------------------------------

    @staticmethod
    def _plan(state: Mapping[str, Any]) -> Plan:
        return Plan.model_validate(state["plan"])

    @staticmethod
    def _statuses(state: Mapping[str, Any], plan: Plan) -> dict[str, str]:
        statuses = {step.id: step.status.value for step in plan.steps}
        statuses.update(state["step_status"])
        return statuses

    def _fan_out(self, items: list[Any], fn: Any) -> list[Any]:
        """Run ``fn`` over ``items`` concurrently; results in completion order."""
        if not items:
            return []
        results: list[Any] = []
        with ThreadPoolExecutor(max_workers=min(len(items), self.settings.tool_workers)) as pool:
            futures = [pool.submit(fn, item) for item in items]
            for future in as_completed(futures):
                results.append(future.result())
        return results

    # ------------------------------------------------------------------
    # Routers
    # ------------------------------------------------------------------

    @staticmethod
    def _route_selection(state: Mapping[str, Any]) -> str:
        if state.get("plan_error"):
            return "failed"
        return "writing" if state["batch"] else "handoff_to_review"

    @staticmethod
    def _route_review(state: Mapping[str, Any]) -> str:
        if state.get("gate_status") != RunStatus.COMPLETED.value:
            return "failed"
        verdict = state.get("review_verdict") or {}
        return "approved" if verdict.get("decision") == ReviewDecision.APPROVE.value else "rework"

    # ------------------------------------------------------------------
    # Nodes
    # ------------------------------------------------------------------

    def _selecting(self, state: Mapping[str, Any], context: NodeContext) -> dict[str, Any]:
        try:
            plan = self._plan(state)
            plan.validate_structure()
        except ValueError as exc:
            failure = FailureRecord(kind=ErrorKind.VALIDATION_FAILURE, node="selecting", detail=str(exc))
            return {
                "plan_error": str(exc),
                "failures": [failure],
                "failure_reason": f"{ErrorKind.VALIDATION_FAILURE.value}: {exc}",
            }

        statuses = self._statuses(state, plan)
        retry_counts = dict(state["retry_counts"])
        doc_lookups = dict(state["doc_lookups"])
        update: dict[str, Any] = {}

        verdict = state.get("review_verdict") or {}
        if (
            verdict.get("decision") == ReviewDecision.REQUEST_CHANGES.value
            and verdict.get("iteration", 0) > state["reworked_iteration"]
        ):
            reopen = [step_id for step_id, status in statuses.items() if status == StepStatus.FAILED.value]
            if not reopen:
                reopen = [step.id for step in plan.steps]
            for step_id in reopen:
                statuses[step_id] = StepStatus.PENDING.value
                retry_counts[step_id] = 0
                doc_lookups[step_id] = 0
            logger.info("review iteration %d reopened steps %s", verdict["iteration"], reopen)
            update.update(
                reworked_iteration=verdict["iteration"],
                retry_counts=retry_counts,
                doc_lookups=doc_lookups,
                messages=[Message(role="user", content=f"Review feedback: {verdict.get('feedback', '')}")],
            )

        batch = select_batch(plan, statuses)
        for step in batch:
            statuses[step.id] = StepStatus.IN_PROGRESS.value
        update.update(batch=[step.id for step in batch], step_status=statuses)
        return update

    def _write_prompt(self, state: Mapping[str, Any], step: Step) -> list[Message]:
        lines = [
            f"{WRITE_PROMPT} Reply with a single fenced code block.",
            f"Target path: {step.target_path}",
            f"Step {step.id}: {step.description}",
        ]
        previous = state["step_failures"].get(step.id)
        if previous:
            lines.append(f"The previous attempt failed:\n{previous}")
        for note in state["doc_notes"]:
            if note.get("step_id") == step.id:
                snippets = "\n".join(result.get("snippet", "") for result in note.get("results", []))
                lines.append(f"Documentation for {note.get('query')!r}:\n{snippets}")
        if state["instructions"]:
            lines.append("Additional instructions:\n" + "\n".join(str(item) for item in state["instructions"]))
        verdict = state.get("review_verdict") or {}
        if verdict.get("decision") == ReviewDecision.REQUEST_CHANGES.value:
            lines.append(f"Reviewer feedback: {verdict.get('feedback', '')}")
        return [
            Message(role="system", content=f"Task: {state['request']}"),
            Message(role="user", content="\n\n".join(lines)),
        ]

    def _writing(self, state: Mapping[str, Any], context: NodeContext) -> list[dict[str, Any]]:
        plan = self._plan(state)
        lookups = state["doc_lookups"]

        def _write(step: Step) -> tuple[Step, StepResult, dict[str, Any] | None]:
            can_lookup = self.gateway.docs is not None and lookups.get(step.id, 0) < self.settings.max_doc_lookups
            attempt = state["retry_counts"].get(step.id, 0) + 1
            try:
                reply = self.gateway.invoke_model(
                    self._write_prompt(state, step),
                    tools=[SEARCH_DOCS_TOOL] if can_lookup else None,
                    context=context,
                )
                lookup = reply.tool_call("search_docs") if can_lookup else None
                if lookup is not None:
                    query = str(lookup.arguments.get("query", "")).strip() or step.description
                    detail = f"documentation lookup: {query}"
                    return step, StepResult(step_id=step.id, phase="writing", ok=True, detail=detail, attempt=attempt), {
                        "step_id": step.id,
                        "query": query,
                    }
                self.gateway.write_file(step.target_path, extract_code_block(reply.content), context=context)
            except ToolInvocationError as exc:
                return step, StepResult(step_id=step.id, phase="writing", ok=False, detail=str(exc), attempt=attempt), None
            return step, StepResult(step_id=step.id, phase="writing", ok=True, attempt=attempt), None

        steps = [plan.step(step_id) for step_id in state["batch"]]
        outcomes = self._fan_out(steps, _write)
        updates: list[dict[str, Any]] = [{"step_results": [result]} for _, result, _ in outcomes]
        write_failures = {result.step_id: result.detail for _, result, _ in outcomes if not result.ok}
        doc_requests = [request for _, _, request in outcomes if request is not None]
        updates.append({"write_failures": write_failures, "doc_requests": doc_requests})
        return updates

    def _searching_docs(self, state: Mapping[str, Any], context: NodeContext) -> dict[str, Any]:
        lookups = dict(state["doc_lookups"])
        notes: list[dict[str, Any]] = []
        for request in state["doc_requests"]:
            step_id = request["step_id"]
            lookups[step_id] = lookups.get(step_id, 0) + 1
            try:
                results = self.gateway.search_docs(request["query"], context=context)
            except ToolInvocationError as exc:
                logger.warning("documentation lookup for step %s failed: %s", step_id, exc)
                results = []
            notes.append({"step_id": step_id, "query": request["query"], "results": results})
        return {"doc_notes": notes, "doc_lookups": lookups, "doc_requests": []}

    def _testing(self, state: Mapping[str, Any], context: NodeContext) -> list[dict[str, Any]]:
        plan = self._plan(state)
        write_failures = state["write_failures"]

        def _test(step: Step) -> StepResult:
            attempt = state["retry_counts"].get(step.id, 0) + 1
            if step.id in write_failures:
                detail = f"write failed: {write_failures[step.id]}"
                return StepResult(step_id=step.id, phase="testing", ok=False, detail=detail, attempt=attempt)
            command = step.test_command or self.settings.test_command
            try:
                result = self.gateway.execute(command, context=context)
            except ToolInvocationError as exc:
                return StepResult(step_id=step.id, phase="testing", ok=False, detail=str(exc), attempt=attempt)
            detail = "" if result.ok else (result.stdout + result.stderr).strip()[-2000:] or f"exit code {result.exit_code}"
            return StepResult(step_id=step.id, phase="testing", ok=result.ok, detail=detail, attempt=attempt)

        results: list[StepResult] = self._fan_out([plan.step(step_id) for step_id in state["batch"]], _test)
        step_failures = dict(state["step_failures"])
        retry_counts = dict(state["retry_counts"])
        ready = list(state["ready_to_commit"])
        exhausted = list(state["exhausted"])
        retry_batch: list[str] = []
        for result in results:
            if result.ok:
                step_failures.pop(result.step_id, None)
                ready.append(result.step_id)
                continue
            step_failures[result.step_id] = result.detail
            retry_counts[result.step_id] = retry_counts.get(result.step_id, 0) + 1
            if retry_counts[result.step_id] < self.settings.max_retries:
                retry_batch.append(result.step_id)
            else:
                logger.warning(
                    "step %s exhausted %d retries: %s",
                    result.step_id,
                    self.settings.max_retries,
                    result.detail[:200],
                )
                exhausted.append(result.step_id)
        updates: list[dict[str, Any]] = [{"step_results": [result]} for result in results]
        order = {step.id: index for index, step in enumerate(plan.steps)}
        updates.append(
            {
                "step_failures": step_failures,
                "retry_counts": retry_counts,
                "batch": sorted(retry_batch, key=order.__getitem__),
                "ready_to_commit": ready,
                "exhausted": exhausted,
            }
        )
        return updates

    def _committing(self, state: Mapping[str, Any], context: NodeContext) -> dict[str, Any]:
        plan = self._plan(state)
        statuses = self._statuses(state, plan)
        completed: list[str] = []
        commits: list[dict[str, Any]] = []
        failures: list[FailureRecord] = []
        for step_id in state["ready_to_commit"]:
            step = plan.step(step_id)
            command = self.settings.commit_command.format(
                path=shlex.quote(step.target_path),
                message=shlex.quote(f"{step.id}: {step.description}"),
            )
            try:
                result = self.gateway.execute(command, context=context)
            except ToolInvocationError as exc:
                statuses[step_id] = StepStatus.FAILED.value
                failures.append(
                    FailureRecord(kind=ErrorKind.TOOL_INVOCATION, node="committing", detail=str(exc), step_id=step_id)
                )
                continue
            if not result.ok:
                statuses[step_id] = StepStatus.FAILED.value
                detail = (result.stderr or result.stdout).strip() or f"exit code {result.exit_code}"
                failures.append(
                    FailureRecord(kind=ErrorKind.TOOL_INVOCATION, node="committing", detail=detail, step_id=step_id)
                )
                continue
            statuses[step_id] = StepStatus.COMPLETED.value
            completed.append(step_id)
            commits.append({"step_id": step_id, "path": step.target_path})
        for step_id in state["exhausted"]:
            statuses[step_id] = StepStatus.FAILED.value
            failures.append(
                FailureRecord(
                    kind=ErrorKind.VALIDATION_FAILURE,
                    node="testing",
                    detail=state["step_failures"].get(step_id, "tests failed"),
                    step_id=step_id,
                )
            )
        if completed:
            logger.info("committed steps %s", completed)
        return {
            "step_status": statuses,
            "completed_steps": completed,
            "commits": commits,
            "failures": failures,
            "ready_to_commit": [],
            "exhausted": [],
            "batch": [],
        }

    # ------------------------------------------------------------------
    # Quality gate hand-off
    # ------------------------------------------------------------------

    def _review_input(self, state: Mapping[str, Any]) -> dict[str, Any]:
        plan = self._plan(state)
        statuses = self._statuses(state, plan)
        open_failures = [
            failure
            for failure in state["failures"]
            if failure.get("step_id") is None or statuses.get(failure["step_id"]) == StepStatus.FAILED.value
        ]
        return {
            "request": state["request"],
            "plan": state["plan"],
            "step_status": statuses,
            "step_failures": open_failures,
            "review_iterations": state["review_iterations"],
            "messages": list(state["messages"]),
            "instructions": list(state["instructions"]),
        }

    @staticmethod
    def _review_output(child: Mapping[str, Any], status: RunStatus) -> dict[str, Any]:
        update: dict[str, Any] = {
            "gate_status": status.value,
            "review_verdict": child.get("verdict"),
            "review_iterations": child.get("review_iterations", 0),
        }
        if status is not RunStatus.COMPLETED:
            update["failure_reason"] = child.get("failure_reason") or "quality gate failed"
        return update
