"""Quality gate evaluated after implementation.

analyzing -> linting -> testing -> checking_completeness
-> {approved | feedback_given | FAIL}
"""

from __future__ import annotations

import logging
from collections.abc import Mapping
from typing import Any

from .errors import ErrorKind, ToolInvocationError
from .gateway import ToolGateway
from .graph import END, FAIL, GraphBuilder, GraphDefinition, NodeContext
from .models import FailureRecord, Message, Plan, ReviewDecision, ReviewVerdict, StepStatus
from .reducers import FieldSpec, Reducer, StateSchema
from .settings import RuntimeSettings
from .utils import extract_json_payload

logger = logging.getLogger(__name__)

REVIEW_GRAPH = "quality_gate"

QUALITY_PROMPT = "Score the quality of the change from 0 to 10."
ANALYZE_COMMAND = "git log --oneline --stat -n 20"

_OUTPUT_TAIL_CHARS = 2000

REVIEW_SCHEMA = StateSchema.build(
    REVIEW_GRAPH,
    [
        FieldSpec("request", default=""),
        FieldSpec("plan", required=True),
        FieldSpec("step_status", default={}),
        FieldSpec("step_failures", Reducer.APPEND),
        FieldSpec("review_iterations", default=0),
        FieldSpec("messages", Reducer.APPEND),
        FieldSpec("instructions", Reducer.APPEND),
        FieldSpec("change_summary", default=""),
        FieldSpec("review_failures", default={}),
        FieldSpec("quality_score"),
        FieldSpec("verdict"),
        FieldSpec("failures", Reducer.APPEND),
        FieldSpec("failure_reason"),
    ],
)


def _tail(text: str) -> str:
    return text.strip()[-_OUTPUT_TAIL_CHARS:]


class QualityGate:
    """One evaluation of the implemented change against lint, tests, completeness and quality.

    The iteration counter lives in the caller's state and is passed in on
    every hand-off, so repeated evaluations converge: after
    ``max_review_iterations`` rounds of feedback the explicit
    ``force_approve_on_exhaustion`` policy decides.
    """

    def __init__(self, gateway: ToolGateway, settings: RuntimeSettings) -> None:
        self.gateway = gateway
        self.settings = settings
        self.force_approve = settings.require_exhaustion_policy()
        self.graph = self._build_graph()

    def _build_graph(self) -> GraphDefinition:
        graph = GraphBuilder(REVIEW_GRAPH, REVIEW_SCHEMA)
        graph.add_node("analyzing", self._analyzing, writes={"change_summary", "review_failures"})
        graph.add_node("linting", self._linting, writes={"review_failures"})
        graph.add_node("testing", self._testing, writes={"review_failures"})
        graph.add_node(
            "checking_completeness",
            self._checking_completeness,
            writes={"review_failures", "quality_score", "failures", "failure_reason", "verdict"},
        )
        graph.add_node("approved", self._approved, writes={"verdict", "messages"})
        graph.add_node("feedback_given", self._feedback_given, writes={"verdict", "review_iterations", "messages"})

        graph.set_entry_point("analyzing")
        graph.add_edge("analyzing", "linting")
        graph.add_edge("linting", "testing")
        graph.add_edge("testing", "checking_completeness")
        graph.add_conditional_edges(
            "checking_completeness",
            self.decide,
            {"approved": "approved", "feedback_given": "feedback_given", "failed": FAIL},
        )
        graph.add_edge("approved", END)
        graph.add_edge("feedback_given", END)
        return graph.compile()

    def decide(self, state: Mapping[str, Any]) -> str:
        if not state["review_failures"]:
            return "approved"
        if state["review_iterations"] < self.settings.max_review_iterations:
            return "feedback_given"
        return "approved" if self.force_approve else "failed"

    # ------------------------------------------------------------------
    # Nodes
    # ------------------------------------------------------------------

    def _run_check(self, category: str, command: str, context: NodeContext) -> dict[str, str]:
        try:
            result = self.gateway.execute(command, context=context)
        except ToolInvocationError as exc:
            return {category: str(exc)}
        if result.ok:
            return {}
        return {category: _tail(result.stdout + "\n" + result.stderr) or f"exit code {result.exit_code}"}

    def _analyzing(self, state: Mapping[str, Any], context: NodeContext) -> dict[str, Any]:
        try:
            result = self.gateway.execute(ANALYZE_COMMAND, context=context)
            summary = _tail(result.stdout) if result.ok else ""
        except ToolInvocationError as exc:
            logger.warning("change summary unavailable: %s", exc)
            summary = ""
        return {"change_summary": summary, "review_failures": {}}

    def _linting(self, state: Mapping[str, Any], context: NodeContext) -> dict[str, Any]:
        if not self.settings.lint_command:
            return {}
        return {"review_failures": {**state["review_failures"], **self._run_check("lint", self.settings.lint_command, context)}}

    def _testing(self, state: Mapping[str, Any], context: NodeContext) -> dict[str, Any]:
        if not self.settings.test_command:
            return {}
        return {"review_failures": {**state["review_failures"], **self._run_check("tests", self.settings.test_command, context)}}

    def _score_quality(self, state: Mapping[str, Any], plan: Plan, context: NodeContext) -> tuple[float | None, str]:
        prompt = "\n".join(
            [
                QUALITY_PROMPT,
                'Respond with one JSON object: {"score": number, "feedback": str}.',
                f"Request: {state['request']}",
                f"Plan: {plan.title}",
                f"Change summary:\n{state['change_summary'] or '(unavailable)'}",
            ]
        )
        try:
            reply = self.gateway.invoke_model([Message(role="user", content=prompt)], context=context)
            payload = extract_json_payload(reply.content)
            score = float(payload["score"])
        except (ToolInvocationError, ValueError, KeyError, TypeError) as exc:
            return None, f"quality review unavailable: {exc}"
        return score, str(payload.get("feedback", ""))

    def _checking_completeness(self, state: Mapping[str, Any], context: NodeContext) -> dict[str, Any]:
        plan = Plan.model_validate(state["plan"])
        failures = dict(state["review_failures"])
        statuses = state["step_status"]
        incomplete = [step.id for step in plan.steps if statuses.get(step.id) != StepStatus.COMPLETED.value]
        if incomplete:
            details = [f"steps not completed: {', '.join(incomplete)}"]
            details.extend(
                f"{record.get('step_id') or record.get('node')}: {record.get('detail')}"
                for record in state["step_failures"]
            )
            failures["completeness"] = "\n".join(details)

        score, feedback = self._score_quality(state, plan, context)
        if score is None:
            failures["quality"] = feedback
        elif score < self.settings.quality_threshold:
            failures["quality"] = f"score {score:.1f} below {self.settings.quality_threshold:.1f}: {feedback}"

        update: dict[str, Any] = {"review_failures": failures, "quality_score": score}
        iteration = state["review_iterations"] + 1
        if failures and state["review_iterations"] >= self.settings.max_review_iterations and not self.force_approve:
            detail = f"review failed after {iteration} evaluation(s): {', '.join(sorted(failures))}"
            update["failures"] = [FailureRecord(kind=ErrorKind.QUOTA_EXCEEDED, node="checking_completeness", detail=detail)]
            update["failure_reason"] = f"{ErrorKind.QUOTA_EXCEEDED.value}: {detail}"
            update["verdict"] = ReviewVerdict(
                decision=ReviewDecision.REQUEST_CHANGES,
                iteration=iteration,
                feedback=self._feedback_text(failures),
                failures=failures,
            )
            logger.warning("quality gate exhausted without force approval: %s", detail)
        return update

    @staticmethod
    def _feedback_text(failures: Mapping[str, str]) -> str:
        return "\n".join(f"[{category}] {detail}" for category, detail in sorted(failures.items()))

    def _approved(self, state: Mapping[str, Any], context: NodeContext) -> dict[str, Any]:
        failures = dict(state["review_failures"])
        forced = bool(failures)
        verdict = ReviewVerdict(
            decision=ReviewDecision.APPROVE,
            iteration=state["review_iterations"] + 1,
            feedback=self._feedback_text(failures),
            failures=failures,
            forced=forced,
        )
        if forced:
            logger.warning("quality gate force-approved with open failures: %s", sorted(failures))
        else:
            logger.info("quality gate approved on evaluation %d", verdict.iteration)
        note = "Review approved" + (" (forced)" if forced else "")
        return {"verdict": verdict, "messages": [Message(role="system", content=note)]}

    def _feedback_given(self, state: Mapping[str, Any], context: NodeContext) -> dict[str, Any]:
        failures = dict(state["review_failures"])
        iteration = state["review_iterations"] + 1
        verdict = ReviewVerdict(
            decision=ReviewDecision.REQUEST_CHANGES,
            iteration=iteration,
            feedback=self._feedback_text(failures),
            failures=failures,
        )
        logger.info("quality gate requested changes (iteration %d): %s", iteration, sorted(failures))
        return {
            "verdict": verdict,
            "review_iterations": iteration,
            "messages": [Message(role="system", content=f"Review requested changes:\n{verdict.feedback}")],
        }
