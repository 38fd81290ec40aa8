from __future__ import annotations

from typing import Any

from agent_conductor.compaction import ModelSummaryCompactor, TruncatingCompactor
from agent_conductor.gateway import ToolGateway
from fakes import ScriptedLanguageModel


def _log(*contents: str) -> list[dict[str, Any]]:
    return [{"role": "user", "content": content, "tool_call_refs": []} for content in contents]


def test_short_log_is_left_alone() -> None:
    messages = _log("a", "b")
    assert TruncatingCompactor(keep_messages=5, max_chars=100).compact(messages) == messages


def test_old_messages_fold_into_one_note() -> None:
    compacted = TruncatingCompactor(keep_messages=2, max_chars=1000).compact(_log("one", "two", "three", "four", "five"))
    assert [message["content"] for message in compacted[1:]] == ["four", "five"]
    note = compacted[0]
    assert note["role"] == "system"
    assert note["content"].splitlines() == [
        "3 earlier message(s) were compacted:",
        "- user: one",
        "- user: two",
        "- user: three",
    ]


def test_character_budget_trims_but_keeps_newest() -> None:
    compacted = TruncatingCompactor(keep_messages=10, max_chars=50).compact(_log("x" * 40, "y" * 40, "z" * 400))
    assert compacted[-1]["content"] == "z" * 400
    assert len(compacted) == 2
    assert compacted[0]["content"].startswith("2 earlier message(s)")


def test_long_previews_are_shortened() -> None:
    compacted = TruncatingCompactor(keep_messages=1, max_chars=1000).compact(_log("word " * 100, "latest"))
    preview = compacted[0]["content"].splitlines()[1]
    assert preview.endswith("...")
    assert len(preview) < 200


def test_model_summary_replaces_transcript(gateway: ToolGateway, fake_model: ScriptedLanguageModel) -> None:
    fake_model.script("2 earlier message(s) were compacted:", "They agreed to add a greeting.")
    compactor = ModelSummaryCompactor(gateway, keep_messages=1, max_chars=1000)
    compacted = compactor.compact(_log("let's add a greeting", "ok", "go"))
    assert compacted[0]["content"] == "Summary of 2 earlier message(s): They agreed to add a greeting."
    assert compacted[1]["content"] == "go"
    assert "- user: let's add a greeting" in fake_model.calls[-1][1][-1].content


def test_model_failure_keeps_the_truncated_transcript(gateway: ToolGateway, fake_model: ScriptedLanguageModel) -> None:
    compactor = ModelSummaryCompactor(gateway, keep_messages=2, max_chars=1000)
    compacted = compactor.compact(_log("one", "two", "three", "four", "five"))
    assert compacted[0]["content"].startswith("3 earlier message(s) were compacted:")
    assert "- user: three" in compacted[0]["content"]
    assert [message["content"] for message in compacted[1:]] == ["four", "five"]
