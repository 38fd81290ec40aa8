"""Top-level graph run for each coordinator thread: plan, execute, publish."""

from __future__ import annotations

import logging
from collections.abc import Mapping
from typing import Any

from .errors import ErrorKind, ToolInvocationError
from .execution import ExecutionSession
from .gateway import ToolGateway
from .graph import END, FAIL, GraphBuilder, GraphDefinition, NodeContext, SubgraphRef
from .models import FailureRecord, Message, Plan, RunMode, RunStatus
from .planning import PlanningSession
from .reducers import FieldSpec, Reducer, StateSchema
from .settings import RuntimeSettings
from .utils import slugify_name

logger = logging.getLogger(__name__)

TASK_GRAPH = "task"
PLAN_NODE = "plan"
EXECUTE_NODE = "execute"

TASK_SCHEMA = StateSchema.build(
    TASK_GRAPH,
    [
        FieldSpec("request", required=True),
        FieldSpec("mode", default=RunMode.MANUAL.value),
        FieldSpec("messages", Reducer.APPEND),
        FieldSpec("plan"),
        FieldSpec("execution"),
        FieldSpec("review_verdict"),
        FieldSpec("result_ref"),
        FieldSpec("failures", Reducer.APPEND),
        FieldSpec("failure_reason"),
    ],
)


def _child_failure(child: Mapping[str, Any], stage: str) -> dict[str, Any]:
    reason = child.get("failure_reason") or f"{stage} failed"
    return {"failures": list(child.get("failures") or []), "failure_reason": reason}


class TaskSession:
    """Chains the planning and execution sessions and publishes the result."""

    def __init__(
        self,
        gateway: ToolGateway,
        settings: RuntimeSettings,
        *,
        planning: PlanningSession | None = None,
        execution: ExecutionSession | None = None,
    ) -> None:
        self.gateway = gateway
        self.settings = settings
        self.planning = planning or PlanningSession(gateway, settings)
        self.execution = execution or ExecutionSession(gateway, settings)
        self.graph = self._build_graph()

    def _build_graph(self) -> GraphDefinition:
        graph = GraphBuilder(TASK_GRAPH, TASK_SCHEMA)
        graph.add_subgraph(
            PLAN_NODE,
            SubgraphRef(self.planning.graph, self._planning_input, self._planning_output),
            writes={"plan", "messages", "failures", "failure_reason"},
        )
        graph.add_subgraph(
            EXECUTE_NODE,
            SubgraphRef(self.execution.graph, self._execution_input, self._execution_output),
            writes={"execution", "review_verdict", "messages", "failures", "failure_reason"},
        )
        graph.add_node("publish", self._publish, writes={"result_ref", "messages", "failures", "failure_reason"})
        graph.add_node("report", self._report, writes={"result_ref", "messages"})

        graph.set_entry_point(PLAN_NODE)
        graph.add_conditional_edges(
            PLAN_NODE,
            lambda state: "report" if state.get("failure_reason") else EXECUTE_NODE,
            {EXECUTE_NODE: EXECUTE_NODE, "report": "report"},
        )
        graph.add_conditional_edges(
            EXECUTE_NODE,
            lambda state: "report" if state.get("failure_reason") else "publish",
            {"publish": "publish", "report": "report"},
        )
        graph.add_conditional_edges(
            "publish",
            lambda state: "report" if state.get("failure_reason") else "done",
            {"done": END, "report": "report"},
        )
        graph.add_edge("report", FAIL)
        return graph.compile()

    # ------------------------------------------------------------------
    # Subgraph mappers
    # ------------------------------------------------------------------

    @staticmethod
    def _planning_input(state: Mapping[str, Any]) -> dict[str, Any]:
        return {"request": state["request"], "mode": state["mode"], "messages": list(state["messages"])}

    @staticmethod
    def _planning_output(child: Mapping[str, Any], status: RunStatus) -> dict[str, Any]:
        if status is not RunStatus.COMPLETED:
            return _child_failure(child, "planning")
        plan = Plan.model_validate(child["plan"])
        note = Message(role="system", content=f"Plan {plan.title!r} revision {plan.revision} finalized.")
        return {"plan": plan, "messages": [note]}

    @staticmethod
    def _execution_input(state: Mapping[str, Any]) -> dict[str, Any]:
        return {"request": state["request"], "plan": state["plan"], "messages": list(state["messages"])}

    @staticmethod
    def _execution_output(child: Mapping[str, Any], status: RunStatus) -> dict[str, Any]:
        if status is not RunStatus.COMPLETED:
            update = _child_failure(child, "execution")
            update["review_verdict"] = child.get("review_verdict")
            return update
        summary = {
            "completed_steps": list(child.get("completed_steps") or []),
            "commits": list(child.get("commits") or []),
            "step_status": dict(child.get("step_status") or {}),
        }
        return {"execution": summary, "review_verdict": child.get("review_verdict")}

    # ------------------------------------------------------------------
    # Nodes
    # ------------------------------------------------------------------

    def branch_name(self, plan: Plan) -> str:
        return f"conductor/{slugify_name(plan.title) or 'task'}"

    def _publish(self, state: Mapping[str, Any], context: NodeContext) -> dict[str, Any]:
        plan = Plan.model_validate(state["plan"])
        if self.gateway.hosting is None:
            logger.info("no source hosting configured; skipping pull request for %r", plan.title)
            return {"messages": [Message(role="system", content="Completed without publishing a pull request.")]}
        verdict = state.get("review_verdict") or {}
        lines = [plan.summary or plan.title, "", "Steps:"]
        lines.extend(f"- {step.id}: {step.description} ({step.target_path})" for step in plan.steps)
        if verdict.get("forced"):
            lines.extend(["", "Force-approved with open review findings:", verdict.get("feedback", "")])
        try:
            url = self.gateway.create_pull_request(
                plan.title,
                "\n".join(lines),
                head=self.branch_name(plan),
                context=context,
            )
        except ToolInvocationError as exc:
            failure = FailureRecord(kind=ErrorKind.TOOL_INVOCATION, node="publish", detail=str(exc))
            return {"failures": [failure], "failure_reason": f"{ErrorKind.TOOL_INVOCATION.value}: {exc}"}
        logger.info("published pull request %s", url)
        return {"result_ref": url, "messages": [Message(role="system", content=f"Opened pull request {url}")]}

    def _report(self, state: Mapping[str, Any], context: NodeContext) -> dict[str, Any]:
        reason = state.get("failure_reason") or "unknown failure"
        if self.gateway.hosting is None:
            return {"messages": [Message(role="system", content=f"Task failed: {reason}")]}
        body = "\n".join(
            [f"Request: {state['request']}", "", f"Reason: {reason}", "", "Failures:"]
            + [f"- [{item.get('kind')}] {item.get('node')}: {item.get('detail')}" for item in state["failures"]]
        )
        try:
            url = self.gateway.create_issue(f"Task failed: {state['request'][:60]}", body, context=context)
        except ToolInvocationError as exc:
            logger.error("failure report could not be filed: %s", exc)
            return {"messages": [Message(role="system", content=f"Task failed: {reason}")]}
        return {"result_ref": url, "messages": [Message(role="system", content=f"Filed failure report {url}")]}
