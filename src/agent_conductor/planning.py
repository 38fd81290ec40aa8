"""Research-and-plan session graph.

analyzing -> researching <-> {searching, viewing} -> generating
-> awaiting_approval -> {finalized | researching | awaiting_approval}
"""

from __future__ import annotations

import logging
from collections.abc import Mapping
from typing import Any

from pydantic import BaseModel

from .errors import ErrorKind, ToolInvocationError
from .gateway import ToolGateway
from .graph import END, FAIL, GraphBuilder, GraphDefinition, NodeContext
from .models import ApprovalAction, FailureRecord, Message, Plan, RunMode, as_messages
from .reducers import FieldSpec, Reducer, StateSchema
from .settings import RuntimeSettings
from .utils import extract_json_payload

logger = logging.getLogger(__name__)

PLANNING_GRAPH = "planning"

SYSTEM_PROMPT = "You plan software changes. Research the workspace before proposing a plan."
RESEARCH_PROMPT = "Decide the next research action."
GENERATE_PROMPT = "Produce the implementation plan as JSON."

_PLAN_FORMAT = (
    'Respond with one JSON object: {"title": str, "summary": str, "steps": [{"id": str, '
    '"description": str, "target_path": str, "depends_on": [str], "test_command": str | null}]}'
)
_VIEW_PREVIEW_CHARS = 4000


def _tool(name: str, description: str, properties: dict[str, Any] | None = None) -> dict[str, Any]:
    return {
        "type": "function",
        "function": {
            "name": name,
            "description": description,
            "parameters": {"type": "object", "properties": properties or {}, "required": sorted(properties or {})},
        },
    }


RESEARCH_TOOLS = [
    _tool("search", "Search the web for background information.", {"query": {"type": "string"}}),
    _tool("view", "Read a workspace file or list a directory.", {"path": {"type": "string"}}),
    _tool("finish_research", "Signal that enough context has been gathered."),
]

PLANNING_SCHEMA = StateSchema.build(
    PLANNING_GRAPH,
    [
        FieldSpec("request", required=True),
        FieldSpec("mode", default=RunMode.MANUAL.value),
        FieldSpec("messages", Reducer.APPEND),
        FieldSpec("research_notes", Reducer.APPEND),
        FieldSpec("searches", default=0),
        FieldSpec("views", default=0),
        FieldSpec("enough_context", default=False),
        FieldSpec("next_action"),
        FieldSpec("plan"),
        FieldSpec("plan_valid", default=False),
        FieldSpec("plan_attempts", default=0),
        FieldSpec("plan_errors", Reducer.APPEND),
        FieldSpec("revision", default=1),
        FieldSpec("approval"),
        FieldSpec("last_action"),
        FieldSpec("failures", Reducer.APPEND),
        FieldSpec("failure_reason"),
    ],
)


class ApprovalInput(BaseModel):
    action: ApprovalAction
    feedback: str = ""


def _parse_approval(raw: Any) -> ApprovalInput:
    if isinstance(raw, Mapping):
        return ApprovalInput.model_validate(raw)
    if isinstance(raw, str) and raw.strip():
        return ApprovalInput(action=ApprovalAction.FEEDBACK, feedback=raw.strip())
    raise ValueError(f"resume input must carry an approval decision, got: {raw!r}")


class PlanningSession:
    """Turns a request into a validated, frozen ``Plan``."""

    def __init__(self, gateway: ToolGateway, settings: RuntimeSettings) -> None:
        self.gateway = gateway
        self.settings = settings
        self.graph = self._build_graph()

    def _build_graph(self) -> GraphDefinition:
        graph = GraphBuilder(PLANNING_GRAPH, PLANNING_SCHEMA)
        graph.add_node("analyzing", self._analyzing, writes={"messages"})
        graph.add_node(
            "researching",
            self._researching,
            writes={"messages", "enough_context", "next_action", "failures"},
        )
        graph.add_node("searching", self._searching, writes={"messages", "research_notes", "searches", "failures"})
        graph.add_node("viewing", self._viewing, writes={"messages", "research_notes", "views", "failures"})
        graph.add_node(
            "generating",
            self._generating,
            writes={"messages", "plan", "plan_valid", "plan_attempts", "plan_errors", "failures", "failure_reason"},
        )
        graph.add_node(
            "awaiting_approval",
            self._awaiting_approval,
            writes={"messages", "approval", "last_action", "revision", "enough_context", "plan_valid", "failures"},
            interrupt=True,
        )
        graph.add_node("finalized", self._finalized, writes={"plan"})

        graph.add_edge("analyzing", "researching")
        graph.add_conditional_edges(
            "researching",
            self._route_research,
            {"searching": "searching", "viewing": "viewing", "generating": "generating"},
        )
        graph.add_edge("searching", "researching")
        graph.add_edge("viewing", "researching")
        graph.add_conditional_edges(
            "generating",
            self._route_generation,
            {
                "generating": "generating",
                "awaiting_approval": "awaiting_approval",
                "finalized": "finalized",
                "failed": FAIL,
            },
        )
        graph.add_conditional_edges(
            "awaiting_approval",
            self._route_approval,
            {"finalized": "finalized", "researching": "researching", "awaiting_approval": "awaiting_approval"},
        )
        graph.add_edge("finalized", END)
        graph.set_entry_point("analyzing")
        return graph.compile()

    # ------------------------------------------------------------------
    # Predicates and routers
    # ------------------------------------------------------------------

    def has_enough_context(self, state: Mapping[str, Any]) -> bool:
        if state.get("enough_context"):
            return True
        return state["searches"] >= self.settings.min_searches and state["views"] >= self.settings.min_views

    def _route_research(self, state: Mapping[str, Any]) -> str:
        if self.has_enough_context(state):
            return "generating"
        action = state.get("next_action") or {}
        return "viewing" if action.get("kind") == "view" else "searching"

    def _route_generation(self, state: Mapping[str, Any]) -> str:
        if state["plan_valid"]:
            return "finalized" if state["mode"] == RunMode.AUTO.value else "awaiting_approval"
        if state["plan_attempts"] >= self.settings.max_plan_attempts:
            return "failed"
        return "generating"

    @staticmethod
    def _route_approval(state: Mapping[str, Any]) -> str:
        last_action = state.get("last_action")
        if last_action is None:
            return "awaiting_approval"
        return "finalized" if last_action == ApprovalAction.ACCEPTED.value else "researching"

    # ------------------------------------------------------------------
    # Nodes
    # ------------------------------------------------------------------

    def _analyzing(self, state: Mapping[str, Any], context: NodeContext) -> dict[str, Any]:
        messages = [Message(role="system", content=SYSTEM_PROMPT), Message(role="user", content=state["request"])]
        try:
            entries = self.gateway.list_dir(".", context=context)
        except ToolInvocationError as exc:
            logger.warning("workspace listing failed: %s", exc)
            entries = []
        if entries:
            messages.append(Message(role="system", content="Workspace entries: " + ", ".join(entries)))
        return {"messages": messages}

    def _default_action(self, state: Mapping[str, Any]) -> dict[str, Any]:
        if state["searches"] < self.settings.min_searches:
            return {"kind": "search", "argument": state["request"], "call_id": None}
        return {"kind": "view", "argument": ".", "call_id": None}

    def _researching(self, state: Mapping[str, Any], context: NodeContext) -> dict[str, Any] | None:
        if self.has_enough_context(state):
            return None
        prompt = Message(
            role="system",
            content=f"{RESEARCH_PROMPT} searches={state['searches']} views={state['views']}",
        )
        try:
            reply = self.gateway.invoke_model(
                [*as_messages(state["messages"]), prompt],
                tools=RESEARCH_TOOLS,
                context=context,
            )
        except ToolInvocationError as exc:
            failure = FailureRecord(kind=ErrorKind.TOOL_INVOCATION, node="researching", detail=str(exc))
            return {"next_action": self._default_action(state), "failures": [failure]}

        update: dict[str, Any] = {"messages": [reply]}
        if reply.tool_call("finish_research") is not None:
            update["enough_context"] = True
            return update
        for name, key, kind in (("search", "query", "search"), ("view", "path", "view")):
            ref = reply.tool_call(name)
            if ref is not None and str(ref.arguments.get(key, "")).strip():
                update["next_action"] = {"kind": kind, "argument": str(ref.arguments[key]), "call_id": ref.id}
                return update
        update["next_action"] = self._default_action(state)
        return update

    @staticmethod
    def _result_message(action: Mapping[str, Any], content: str) -> Message:
        if action.get("call_id"):
            return Message(
                role="tool",
                content=content,
                tool_call_refs=[{"id": action["call_id"], "name": action["kind"], "arguments": {}}],
            )
        return Message(role="system", content=content)

    def _searching(self, state: Mapping[str, Any], context: NodeContext) -> dict[str, Any]:
        action = state.get("next_action") or self._default_action(state)
        query = action["argument"] if action.get("kind") == "search" else state["request"]
        update: dict[str, Any] = {"searches": state["searches"] + 1}
        try:
            results = self.gateway.search(query, context=context)
        except ToolInvocationError as exc:
            update["failures"] = [FailureRecord(kind=ErrorKind.TOOL_INVOCATION, node="searching", detail=str(exc))]
            update["messages"] = [self._result_message(action, f"Search for {query!r} failed: {exc}")]
            return update
        lines = [f"- {result.title} {result.url}: {result.snippet}" for result in results]
        update["research_notes"] = [{"kind": "search", "query": query, "results": results}]
        update["messages"] = [
            self._result_message(action, f"Search results for {query!r}:\n" + ("\n".join(lines) or "(none)"))
        ]
        return update

    def _viewing(self, state: Mapping[str, Any], context: NodeContext) -> dict[str, Any]:
        action = state.get("next_action") or {"kind": "view", "argument": "."}
        path = str(action["argument"])
        update: dict[str, Any] = {"views": state["views"] + 1}
        try:
            if path in ("", ".") or path.endswith("/"):
                content = "\n".join(self.gateway.list_dir(path or ".", context=context))
            else:
                content = self.gateway.read_text(path, context=context)[:_VIEW_PREVIEW_CHARS]
        except FileNotFoundError:
            content = "(file not found)"
        except ToolInvocationError as exc:
            update["failures"] = [FailureRecord(kind=ErrorKind.TOOL_INVOCATION, node="viewing", detail=str(exc))]
            content = f"(view failed: {exc})"
        update["research_notes"] = [{"kind": "view", "path": path}]
        update["messages"] = [self._result_message(action, f"Contents of {path}:\n{content}")]
        return update

    def _generating(self, state: Mapping[str, Any], context: NodeContext) -> dict[str, Any]:
        attempt = state["plan_attempts"] + 1
        prompt = Message(role="system", content=f"{GENERATE_PROMPT}\n{_PLAN_FORMAT}")
        try:
            reply = self.gateway.invoke_model([*as_messages(state["messages"]), prompt], context=context)
            payload = extract_json_payload(reply.content)
            payload.update(revision=state["revision"], frozen=False)
            plan = Plan.model_validate(payload)
            plan.validate_structure()
        except (ToolInvocationError, ValueError) as exc:
            logger.warning("plan attempt %d/%d rejected: %s", attempt, self.settings.max_plan_attempts, exc)
            update: dict[str, Any] = {
                "plan_valid": False,
                "plan_attempts": attempt,
                "plan_errors": [str(exc)],
                "messages": [Message(role="system", content=f"Plan attempt {attempt} was invalid: {exc}")],
            }
            if attempt >= self.settings.max_plan_attempts:
                detail = f"no valid plan after {attempt} attempt(s)"
                update["failures"] = [FailureRecord(kind=ErrorKind.QUOTA_EXCEEDED, node="generating", detail=detail)]
                update["failure_reason"] = f"{ErrorKind.QUOTA_EXCEEDED.value}: {detail}"
            return update
        logger.info("generated plan revision %d with %d step(s)", plan.revision, len(plan.steps))
        return {"plan": plan, "plan_valid": True, "plan_attempts": 0, "messages": [reply]}

    def _awaiting_approval(self, state: Mapping[str, Any], context: NodeContext) -> dict[str, Any]:
        if not context.resumed:
            note = Message(role="system", content=f"Plan revision {state['revision']} is awaiting approval.")
            return {"approval": None, "last_action": None, "messages": [note]}
        try:
            decision = _parse_approval(state.get("approval"))
        except ValueError as exc:
            logger.warning("approval reply for plan revision %d not understood: %s", state["revision"], exc)
            detail = f"approval reply not understood: {state.get('approval')!r}"
            choices = ", ".join(action.value for action in ApprovalAction)
            note = f"The approval reply {state.get('approval')!r} was not understood; expected an action of {choices}."
            return {
                "last_action": None,
                "failures": [FailureRecord(kind=ErrorKind.VALIDATION_FAILURE, node="awaiting_approval", detail=detail)],
                "messages": [Message(role="system", content=note)],
            }
        if decision.action is ApprovalAction.ACCEPTED:
            return {"last_action": decision.action.value}
        feedback = decision.feedback or "(no details given)"
        logger.info("plan revision %d %s", state["revision"], decision.action.value)
        return {
            "last_action": decision.action.value,
            "revision": state["revision"] + 1,
            "enough_context": False,
            "plan_valid": False,
            "messages": [Message(role="user", content=f"Plan {decision.action.value}: {feedback}")],
        }

    @staticmethod
    def _finalized(state: Mapping[str, Any], context: NodeContext) -> dict[str, Any]:
        plan = Plan.model_validate(state["plan"]).frozen_copy()
        return {"plan": plan}
