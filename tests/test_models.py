from __future__ import annotations

import pytest
from pydantic import ValidationError

from agent_conductor.canonical import state_digest, to_canonical_json
from agent_conductor.models import Message, Plan, RunResult, Step, StepStatus, as_messages
from agent_conductor.utils import extract_code_block, extract_json_payload, slugify_name


def _plan(*steps: Step) -> Plan:
    return Plan(title="Greeting", steps=list(steps))


def test_valid_plan_passes_structure_check() -> None:
    plan = _plan(
        Step(id="a", description="models", target_path="src/models.py"),
        Step(id="b", description="api", target_path="src/api.py", depends_on=["a"]),
    )
    plan.validate_structure()
    assert plan.step("b").depends_on == ["a"]
    assert plan.step("a").status is StepStatus.PENDING


def test_dependency_cycle_is_rejected() -> None:
    plan = _plan(
        Step(id="a", description="x", target_path="a.py", depends_on=["b"]),
        Step(id="b", description="y", target_path="b.py", depends_on=["a"]),
    )
    with pytest.raises(ValueError, match="cycle"):
        plan.validate_structure()


def test_duplicate_step_ids_are_rejected() -> None:
    plan = _plan(
        Step(id="a", description="x", target_path="a.py"),
        Step(id="a", description="y", target_path="b.py"),
    )
    with pytest.raises(ValueError, match="Duplicate step id"):
        plan.validate_structure()


@pytest.mark.parametrize(
    ("depends_on", "message"),
    [(["ghost"], "unknown step"), (["a"], "depends on itself")],
)
def test_bad_dependencies_are_rejected(depends_on: list[str], message: str) -> None:
    plan = _plan(Step(id="a", description="x", target_path="a.py", depends_on=depends_on))
    with pytest.raises(ValueError, match=message):
        plan.validate_structure()


def test_empty_plan_is_rejected() -> None:
    with pytest.raises(ValueError, match="at least one step"):
        _plan().validate_structure()


def test_frozen_plan_cannot_be_revised() -> None:
    plan = _plan(Step(id="a", description="x", target_path="a.py"))
    revised = plan.revised(summary="more detail", revision=2)
    assert revised.revision == 2
    frozen = revised.frozen_copy()
    assert frozen.frozen is True
    assert revised.frozen is False
    with pytest.raises(ValueError, match="frozen"):
        frozen.revised(summary="late change")


def test_step_paths_are_required() -> None:
    with pytest.raises(ValidationError):
        Step(id="a", description="x", target_path="   ")


def test_messages_are_immutable() -> None:
    message = Message(role="user", content="hello")
    with pytest.raises(ValidationError):
        message.content = "changed"  # type: ignore[misc]
    with pytest.raises(ValidationError):
        Message(role=" ", content="x")


def test_as_messages_accepts_stored_dicts() -> None:
    stored = [{"role": "user", "content": "hi", "tool_call_refs": [{"id": "c1", "name": "view", "arguments": {"path": "."}}]}]
    messages = as_messages(stored)
    assert messages[0].tool_call("view") is not None
    assert messages[0].tool_call("search") is None
    assert as_messages(None) == []


def test_run_result_status_is_closed_set() -> None:
    assert RunResult(status="cancelled", reason="cancelled").status == "cancelled"
    with pytest.raises(ValidationError):
        RunResult(status="paused")


def test_canonical_digest_ignores_key_order() -> None:
    assert to_canonical_json({"b": 1, "a": [1, 2]}) == '{"a":[1,2],"b":1}'
    assert state_digest({"b": 1, "a": 2}) == state_digest({"a": 2, "b": 1})


def test_json_payload_extraction_handles_fenced_output() -> None:
    assert extract_json_payload('Here you go:\n```json\n{"title": "x"}\n```') == {"title": "x"}
    assert extract_json_payload('noise {"score": 8} trailing') == {"score": 8}
    with pytest.raises(ValueError):
        extract_json_payload("no json here")


def test_code_block_and_slug_helpers() -> None:
    assert extract_code_block("text\n```python\nprint(1)\n```\nmore") == "print(1)\n"
    assert extract_code_block("plain body") == "plain body"
    assert slugify_name("Add greeting endpoint!") == "add-greeting-endpoint"
