from __future__ import annotations

import os
from collections.abc import Iterator
from pathlib import Path

import pytest

from agent_conductor.checkpoint_store import CheckpointStore
from agent_conductor.coordinator import OrchestrationCoordinator
from agent_conductor.engine import GraphEngine
from agent_conductor.gateway import ToolGateway
from agent_conductor.session import TaskSession
from agent_conductor.settings import RuntimeSettings
from fakes import FakeEnvironment, FakeHosting, FakeSearch, ScriptedLanguageModel


@pytest.fixture(autouse=True)
def _isolate_conductor_env(monkeypatch: pytest.MonkeyPatch) -> None:
    for name in list(os.environ):
        if name.startswith("CONDUCTOR_"):
            monkeypatch.delenv(name, raising=False)


@pytest.fixture
def settings(tmp_path: Path) -> RuntimeSettings:
    return RuntimeSettings(
        state_store_root=str(tmp_path / "store"),
        workspace_root=str(tmp_path / "workspace"),
        tool_timeout_seconds=5.0,
        tool_backoff_seconds=0.0,
        tool_backoff_max_seconds=0.0,
        force_approve_on_exhaustion=True,
        lint_command="lint-check",
        test_command="run-tests",
        commit_command="commit-step {path} {message}",
    ).normalized()


@pytest.fixture
def fake_env() -> FakeEnvironment:
    return FakeEnvironment()


@pytest.fixture
def fake_model() -> ScriptedLanguageModel:
    return ScriptedLanguageModel()


@pytest.fixture
def fake_hosting() -> FakeHosting:
    return FakeHosting()


@pytest.fixture
def fake_search() -> FakeSearch:
    return FakeSearch()


@pytest.fixture
def gateway(
    settings: RuntimeSettings,
    fake_env: FakeEnvironment,
    fake_model: ScriptedLanguageModel,
    fake_hosting: FakeHosting,
    fake_search: FakeSearch,
) -> Iterator[ToolGateway]:
    gw = ToolGateway(
        settings,
        environment=fake_env,
        model=fake_model,
        hosting=fake_hosting,
        web_search=fake_search,
        docs=fake_search,
    )
    yield gw
    gw.shutdown()


@pytest.fixture
def store(tmp_path: Path) -> CheckpointStore:
    return CheckpointStore(tmp_path / "store")


@pytest.fixture
def engine(store: CheckpointStore) -> GraphEngine:
    return GraphEngine(store)


@pytest.fixture
def coordinator(engine: GraphEngine, gateway: ToolGateway, settings: RuntimeSettings) -> Iterator[OrchestrationCoordinator]:
    conductor = OrchestrationCoordinator(engine, TaskSession(gateway, settings), settings)
    yield conductor
    conductor.shutdown()
