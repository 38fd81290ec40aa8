from __future__ import annotations

import json
import threading
from collections.abc import Mapping
from pathlib import Path
from typing import Any

import pytest

from agent_conductor.canonical import state_digest
from agent_conductor.checkpoint_store import CheckpointStore
from agent_conductor.compaction import TruncatingCompactor
from agent_conductor.engine import CANCELLED_REASON, GraphEngine
from agent_conductor.errors import (
    GraphDefinitionError,
    RunNotActive,
    StaleParent,
    StateCorruption,
    ToolInvocationError,
)
from agent_conductor.graph import END, FAIL, GraphBuilder, GraphDefinition, NodeContext, SubgraphRef
from agent_conductor.models import CheckpointEvent, RunStatus, ThreadRecord
from agent_conductor.reducers import FieldSpec, Reducer, StateSchema

COUNTER_SCHEMA = StateSchema.build(
    "counter",
    [
        FieldSpec("request", required=True),
        FieldSpec("count", default=0),
        FieldSpec("log", Reducer.APPEND),
        FieldSpec("notes", Reducer.APPEND),
        FieldSpec("messages", Reducer.APPEND),
        FieldSpec("limit", default=3),
        FieldSpec("failure_reason"),
    ],
)


def _increment(state: Mapping[str, Any], context: NodeContext) -> dict[str, Any]:
    count = state["count"] + 1
    return {"count": count, "log": [f"inc-{count}"]}


def counter_graph(name: str = "counter") -> GraphDefinition:
    graph = GraphBuilder(name, COUNTER_SCHEMA)
    graph.add_node("inc", _increment, writes={"count", "log"})
    graph.add_conditional_edges("inc", lambda state: "inc" if state["count"] < state["limit"] else "done", {"inc": "inc", "done": END})
    graph.set_entry_point("inc")
    return graph.compile()


def two_step_graph(second: Any = None) -> GraphDefinition:
    graph = GraphBuilder("two_step", COUNTER_SCHEMA)
    graph.add_node("first", lambda state, ctx: {"log": ["first"]}, writes={"log"})
    graph.add_node("second", second or (lambda state, ctx: {"log": ["second"]}), writes={"log", "count"})
    graph.add_edge("first", "second")
    graph.add_edge("second", END)
    graph.set_entry_point("first")
    return graph.compile()


def test_loop_runs_until_router_terminates(engine: GraphEngine) -> None:
    thread_id = engine.start(counter_graph(), {"request": "r"})
    assert engine.run(thread_id) is RunStatus.COMPLETED

    chain = engine.store.load_chain(thread_id).to_list()
    assert [cp.node_id for cp in chain] == ["__start__", "inc", "inc", "inc"]
    assert chain[-1].event is CheckpointEvent.TERMINAL
    assert chain[-1].next_node is None
    assert engine.state(thread_id)["log"] == ["inc-1", "inc-2", "inc-3"]
    record = engine.store.read_thread(thread_id)
    assert record.status is RunStatus.COMPLETED
    assert record.archived is True


def test_engine_places_no_iteration_cap(engine: GraphEngine) -> None:
    thread_id = engine.start(counter_graph(), {"request": "r", "limit": 60})
    assert engine.run(thread_id) is RunStatus.COMPLETED
    assert engine.state(thread_id)["count"] == 60


def test_step_dispatches_one_node_at_a_time(engine: GraphEngine) -> None:
    thread_id = engine.start(counter_graph(), {"request": "r"})
    assert engine.step(thread_id) is RunStatus.RUNNING
    assert engine.state(thread_id)["count"] == 1
    assert engine.step(thread_id) is RunStatus.RUNNING
    assert engine.step(thread_id) is RunStatus.COMPLETED
    assert engine.step(thread_id) is RunStatus.COMPLETED
    assert len(engine.store.load_chain(thread_id).to_list()) == 4


def test_replay_reproduces_every_checkpoint(engine: GraphEngine) -> None:
    thread_id = engine.start(counter_graph(), {"request": "r"})
    engine.run(thread_id)
    for checkpoint in engine.store.load_chain(thread_id):
        assert engine.replay(thread_id, upto=checkpoint.id) == checkpoint.state
    engine.verify(thread_id)


def test_resume_after_restart_matches_uninterrupted_run(store: CheckpointStore) -> None:
    uninterrupted = GraphEngine(store)
    reference = uninterrupted.start(counter_graph(), {"request": "r"})
    uninterrupted.run(reference)

    crashed = GraphEngine(store)
    thread_id = crashed.start(counter_graph(), {"request": "r"})
    crashed.step(thread_id)

    restarted = GraphEngine(store)
    restarted.register(counter_graph())
    assert restarted.recover() == [thread_id]
    assert restarted.run(thread_id) is RunStatus.COMPLETED
    assert restarted.state(thread_id) == uninterrupted.state(reference)


def test_fork_replays_to_identical_state(engine: GraphEngine) -> None:
    thread_id = engine.start(counter_graph(), {"request": "r"})
    engine.run(thread_id)
    chain = engine.store.load_chain(thread_id).to_list()

    forked = engine.fork(thread_id, chain[1].id)
    assert forked != thread_id
    assert engine.state(forked) == chain[1].state
    assert engine.run(forked) is RunStatus.COMPLETED
    assert engine.state(forked) == engine.state(thread_id)

    with pytest.raises(RunNotActive):
        engine.fork(thread_id, chain[-1].id)


def test_unregistered_graph_is_a_definition_error(store: CheckpointStore) -> None:
    GraphEngine(store).start(counter_graph(), {"request": "r"}, thread_id="orphan")
    with pytest.raises(GraphDefinitionError, match="not registered"):
        GraphEngine(store).step("orphan")


def test_node_exception_fails_the_run_with_reason(engine: GraphEngine) -> None:
    def _explode(state: Mapping[str, Any], context: NodeContext) -> None:
        raise RuntimeError("disk on fire")

    thread_id = engine.start(two_step_graph(_explode), {"request": "r"})
    assert engine.run(thread_id) is RunStatus.FAILED
    latest = engine.store.load_latest(thread_id)
    assert latest.metadata["reason"] == "second: RuntimeError: disk on fire"
    assert latest.state["log"] == ["first"]
    assert engine.store.read_thread(thread_id).reason == latest.metadata["reason"]


def test_router_to_failure_uses_failure_reason(engine: GraphEngine) -> None:
    graph = GraphBuilder("fails", COUNTER_SCHEMA)
    graph.add_node("check", lambda state, ctx: {"failure_reason": "quota_exceeded: too many"}, writes={"failure_reason"})
    graph.add_edge("check", FAIL)
    graph.set_entry_point("check")
    thread_id = engine.start(graph.compile(), {"request": "r"})

    assert engine.run(thread_id) is RunStatus.FAILED
    assert engine.store.load_latest(thread_id).metadata["reason"] == "quota_exceeded: too many"


def test_undeclared_node_output_is_a_programming_error(engine: GraphEngine) -> None:
    thread_id = engine.start(two_step_graph(lambda state, ctx: {"limit": 9}), {"request": "r"})
    engine.step(thread_id)
    with pytest.raises(GraphDefinitionError, match="undeclared"):
        engine.step(thread_id)


def test_concurrent_writer_surfaces_stale_parent(engine: GraphEngine) -> None:
    def _rogue(state: Mapping[str, Any], context: NodeContext) -> dict[str, Any]:
        head = engine.store.load_latest(context.thread_id)
        engine.store.append(
            context.thread_id,
            head.id,
            node_id="rogue",
            state=head.state,
            next_node=head.next_node,
            event=CheckpointEvent.NODE,
            status=RunStatus.RUNNING,
        )
        return {"log": ["second"]}

    thread_id = engine.start(two_step_graph(_rogue), {"request": "r"})
    engine.step(thread_id)
    with pytest.raises(StaleParent):
        engine.step(thread_id)


def test_missing_required_field_is_state_corruption(engine: GraphEngine, tmp_path: Path) -> None:
    thread_id = engine.start(counter_graph(), {"request": "r"}, thread_id="broken")
    path = next((tmp_path / "store" / "threads" / "broken" / "checkpoints").glob("*.json"))
    payload = json.loads(path.read_text(encoding="utf-8"))
    del payload["state"]["request"]
    payload["digest"] = state_digest(payload["state"])
    path.write_text(json.dumps(payload), encoding="utf-8")

    with pytest.raises(StateCorruption, match="request"):
        engine.step(thread_id)


def test_subgraph_runs_in_child_thread(engine: GraphEngine) -> None:
    child = counter_graph("child_counter")
    parent = GraphBuilder("parent", COUNTER_SCHEMA)
    parent.add_subgraph(
        "nested",
        SubgraphRef(
            graph=child,
            input_mapper=lambda state: {"request": state["request"], "limit": 2},
            output_mapper=lambda final, status: {"count": final["count"] * 10, "log": [f"child {status.value}"]},
        ),
        writes={"count", "log"},
    )
    parent.add_edge("nested", END)
    parent.set_entry_point("nested")

    thread_id = engine.start(parent.compile(), {"request": "r"}, thread_id="p")
    assert engine.run(thread_id) is RunStatus.COMPLETED

    assert engine.state(thread_id)["count"] == 20
    assert engine.state(thread_id)["log"] == ["child completed"]
    chain = engine.store.load_chain(thread_id).to_list()
    assert [cp.event for cp in chain] == [CheckpointEvent.START, CheckpointEvent.SUBRUN_PENDING, CheckpointEvent.TERMINAL]
    assert chain[1].metadata["child_thread_id"] == "p-nested-1"
    assert chain[2].updates == [{"count": 20, "log": ["child completed"]}]

    record = engine.store.read_thread("p-nested-1")
    assert record.parent_thread_id == "p"
    assert record.parent_node == "nested"
    assert engine.state("p-nested-1")["log"] == ["inc-1", "inc-2"]
    engine.verify(thread_id)


def test_subgraph_handoff_compacts_messages(store: CheckpointStore) -> None:
    engine = GraphEngine(store, compactor=TruncatingCompactor(keep_messages=2, max_chars=10_000))
    seen: list[int] = []

    def _count_messages(state: Mapping[str, Any], context: NodeContext) -> None:
        seen.append(len(state["messages"]))

    child = GraphBuilder("child_reader", COUNTER_SCHEMA)
    child.add_node("read", _count_messages)
    child.add_edge("read", END)
    child.set_entry_point("read")
    parent = GraphBuilder("parent_reader", COUNTER_SCHEMA)
    parent.add_subgraph(
        "nested",
        SubgraphRef(
            graph=child.compile(),
            input_mapper=lambda state: {"request": state["request"], "messages": state["messages"]},
            output_mapper=lambda final, status: {},
        ),
    )
    parent.add_edge("nested", END)
    parent.set_entry_point("nested")

    history = [{"role": "user", "content": f"m{n}", "tool_call_refs": []} for n in range(5)]
    thread_id = engine.start(parent.compile(), {"request": "r", "messages": history})
    engine.run(thread_id)

    assert seen == [3]
    assert len(engine.state(thread_id)["messages"]) == 5


def test_injected_update_merges_at_next_boundary(engine: GraphEngine) -> None:
    observed: list[list[str]] = []

    def _second(state: Mapping[str, Any], context: NodeContext) -> dict[str, Any]:
        observed.append(list(state["notes"]))
        return {"log": ["second"]}

    thread_id = engine.start(two_step_graph(_second), {"request": "r"})
    engine.step(thread_id)
    engine.inject(thread_id, {"notes": "use tabs"})
    assert engine.run(thread_id) is RunStatus.COMPLETED

    assert observed == [["use tabs"]]
    events = [cp.event for cp in engine.store.load_chain(thread_id)]
    assert events == [CheckpointEvent.START, CheckpointEvent.NODE, CheckpointEvent.INJECT, CheckpointEvent.TERMINAL]
    engine.verify(thread_id)

    with pytest.raises(RunNotActive):
        engine.inject(thread_id, {"notes": "too late"})


def test_inject_rejects_undeclared_fields(engine: GraphEngine) -> None:
    thread_id = engine.start(two_step_graph(), {"request": "r"})
    with pytest.raises(GraphDefinitionError):
        engine.inject(thread_id, {"bogus": True})


def test_cancel_before_dispatch_records_terminal_checkpoint(engine: GraphEngine) -> None:
    thread_id = engine.start(counter_graph(), {"request": "r"})
    engine.step(thread_id)
    assert engine.cancel(thread_id) is RunStatus.FAILED

    latest = engine.store.load_latest(thread_id)
    assert latest.status is RunStatus.FAILED
    assert latest.metadata["reason"] == CANCELLED_REASON
    assert latest.state["count"] == 1
    assert engine.run(thread_id) is RunStatus.FAILED


def test_cancel_during_node_discards_its_output(engine: GraphEngine) -> None:
    entered = threading.Event()

    def _slow(state: Mapping[str, Any], context: NodeContext) -> dict[str, Any]:
        entered.set()
        context.cancel_event.wait(5)
        return {"count": 99, "log": ["late"]}

    thread_id = engine.start(two_step_graph(_slow), {"request": "r"})
    outcome: list[RunStatus] = []
    runner = threading.Thread(target=lambda: outcome.append(engine.run(thread_id)))
    runner.start()
    assert entered.wait(5)
    engine.cancel(thread_id)
    runner.join(5)

    assert outcome == [RunStatus.FAILED]
    latest = engine.store.load_latest(thread_id)
    assert latest.metadata["reason"] == CANCELLED_REASON
    assert latest.state["count"] == 0
    assert latest.state["log"] == ["first"]
    assert engine.is_cancel_requested(thread_id)


def test_threads_progress_independently(engine: GraphEngine) -> None:
    release = threading.Event()

    def _blocked(state: Mapping[str, Any], context: NodeContext) -> dict[str, Any]:
        release.wait(5)
        return {"log": ["second"]}

    slow = engine.start(two_step_graph(_blocked), {"request": "slow"})
    runner = threading.Thread(target=engine.run, args=(slow,))
    runner.start()
    fast = engine.start(counter_graph(), {"request": "fast"})
    assert engine.run(fast) is RunStatus.COMPLETED
    assert engine.status(slow) is RunStatus.RUNNING
    release.set()
    runner.join(5)
    assert engine.status(slow) is RunStatus.COMPLETED


def nested_counter_graph() -> GraphDefinition:
    parent = GraphBuilder("parent", COUNTER_SCHEMA)
    parent.add_subgraph(
        "nested",
        SubgraphRef(
            graph=counter_graph("child_counter"),
            input_mapper=lambda state: {"request": state["request"], "limit": 2},
            output_mapper=lambda final, status: {"count": final["count"]},
        ),
        writes={"count"},
    )
    parent.add_edge("nested", END)
    parent.set_entry_point("nested")
    return parent.compile()


def test_handoff_interrupted_before_its_marker_adopts_the_child(engine: GraphEngine, monkeypatch: pytest.MonkeyPatch) -> None:
    thread_id = engine.start(nested_counter_graph(), {"request": "r"}, thread_id="p")
    original_append = engine.store.append
    crashed: list[str] = []

    def _crash_on_marker(thread_id: str, parent_id: str | None, **fields: Any) -> Any:
        if fields.get("event") is CheckpointEvent.SUBRUN_PENDING and not crashed:
            crashed.append(thread_id)
            raise OSError("disk full")
        return original_append(thread_id, parent_id, **fields)

    monkeypatch.setattr(engine.store, "append", _crash_on_marker)
    with pytest.raises(OSError):
        engine.step(thread_id)
    assert crashed == ["p"]
    assert engine.store.has_thread("p-nested-1")

    assert engine.run(thread_id) is RunStatus.COMPLETED
    chain = engine.store.load_chain(thread_id).to_list()
    assert [cp.event for cp in chain] == [CheckpointEvent.START, CheckpointEvent.SUBRUN_PENDING, CheckpointEvent.TERMINAL]
    assert chain[1].metadata["child_thread_id"] == "p-nested-1"
    assert engine.state(thread_id)["count"] == 2
    assert engine.state("p-nested-1")["log"] == ["inc-1", "inc-2"]


def test_child_record_without_root_checkpoint_is_started_on_adoption(engine: GraphEngine) -> None:
    thread_id = engine.start(nested_counter_graph(), {"request": "r"}, thread_id="p")
    engine.store.create_thread(
        ThreadRecord(
            thread_id="p-nested-1",
            graph_name="child_counter",
            parent_thread_id="p",
            parent_node="nested",
            status=RunStatus.RUNNING,
        )
    )
    assert engine.run(thread_id) is RunStatus.COMPLETED
    assert engine.state(thread_id)["count"] == 2
    assert [cp.node_id for cp in engine.store.load_chain("p-nested-1")] == ["__start__", "inc", "inc"]


def test_unrelated_thread_at_the_child_id_is_state_corruption(engine: GraphEngine) -> None:
    engine.start(counter_graph(), {"request": "r"}, thread_id="p-nested-1")
    thread_id = engine.start(nested_counter_graph(), {"request": "r"}, thread_id="p")
    with pytest.raises(StateCorruption, match="p-nested-1"):
        engine.step(thread_id)


class _FailingCompactor:
    def compact(self, messages: list[dict[str, Any]]) -> list[dict[str, Any]]:
        raise ToolInvocationError("model", "timed out after 5.0s", attempts=3)


def test_failed_compaction_hands_off_the_full_log(store: CheckpointStore) -> None:
    engine = GraphEngine(store, compactor=_FailingCompactor())
    seen: list[int] = []

    def _count_messages(state: Mapping[str, Any], context: NodeContext) -> None:
        seen.append(len(state["messages"]))

    child = GraphBuilder("child_reader", COUNTER_SCHEMA)
    child.add_node("read", _count_messages)
    child.add_edge("read", END)
    child.set_entry_point("read")
    parent = GraphBuilder("parent_reader", COUNTER_SCHEMA)
    parent.add_subgraph(
        "nested",
        SubgraphRef(
            graph=child.compile(),
            input_mapper=lambda state: {"request": state["request"], "messages": state["messages"]},
            output_mapper=lambda final, status: {},
        ),
    )
    parent.add_edge("nested", END)
    parent.set_entry_point("nested")

    history = [{"role": "user", "content": f"m{n}", "tool_call_refs": []} for n in range(5)]
    thread_id = engine.start(parent.compile(), {"request": "r", "messages": history})
    assert engine.run(thread_id) is RunStatus.COMPLETED
    assert seen == [5]


def test_inject_waits_for_the_dispatch_in_flight(engine: GraphEngine) -> None:
    entered = threading.Event()
    release = threading.Event()
    observed: list[list[str]] = []

    def _first(state: Mapping[str, Any], context: NodeContext) -> dict[str, Any]:
        entered.set()
        release.wait(5)
        return {"log": ["first"]}

    def _second(state: Mapping[str, Any], context: NodeContext) -> dict[str, Any]:
        observed.append(list(state["notes"]))
        return {"log": ["second"]}

    graph = GraphBuilder("blocking_two_step", COUNTER_SCHEMA)
    graph.add_node("first", _first, writes={"log"})
    graph.add_node("second", _second, writes={"log"})
    graph.add_edge("first", "second")
    graph.add_edge("second", END)
    graph.set_entry_point("first")
    thread_id = engine.start(graph.compile(), {"request": "r"})

    runner = threading.Thread(target=engine.step, args=(thread_id,))
    runner.start()
    assert entered.wait(5)
    errors: list[Exception] = []

    def _inject() -> None:
        try:
            engine.inject(thread_id, {"notes": "use tabs"})
        except Exception as exc:  # noqa: BLE001
            errors.append(exc)

    injector = threading.Thread(target=_inject)
    injector.start()
    injector.join(0.2)
    assert injector.is_alive()

    release.set()
    runner.join(5)
    injector.join(5)
    assert errors == []
    assert engine.run(thread_id) is RunStatus.COMPLETED
    assert observed == [["use tabs"]]


def test_finished_threads_release_their_bookkeeping(engine: GraphEngine) -> None:
    thread_id = engine.start(two_step_graph(), {"request": "r"})
    engine.step(thread_id)
    engine.inject(thread_id, {"notes": "keep it short"})
    assert engine.run(thread_id) is RunStatus.COMPLETED
    assert thread_id not in engine._locks
    assert thread_id not in engine._cancel_events
    assert thread_id not in engine._inbox

    with pytest.raises(RunNotActive):
        engine.inject(thread_id, {"notes": "too late"})
    engine.cancel(thread_id)
    assert thread_id not in engine._locks
    assert thread_id not in engine._inbox
    assert not engine.is_cancel_requested(thread_id)
    assert engine.run(thread_id) is RunStatus.COMPLETED
    assert thread_id not in engine._locks
