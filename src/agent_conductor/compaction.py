"""Message-log compaction applied when a run hands off to a nested graph."""

from __future__ import annotations

import logging
from typing import TYPE_CHECKING, Any, Protocol

from .errors import ToolInvocationError
from .models import Message

if TYPE_CHECKING:
    from .gateway import ToolGateway

logger = logging.getLogger(__name__)

_PREVIEW_CHARS = 160


class MessageCompactor(Protocol):
    def compact(self, messages: list[dict[str, Any]]) -> list[dict[str, Any]]: ...


def _total_chars(messages: list[dict[str, Any]]) -> int:
    return sum(len(str(message.get("content", ""))) for message in messages)


def _split(messages: list[dict[str, Any]], keep: int, max_chars: int) -> tuple[list[dict[str, Any]], list[dict[str, Any]]]:
    """Return ``(dropped, kept)`` where ``kept`` is the newest tail within both limits."""
    kept = messages[-keep:] if len(messages) > keep else list(messages)
    while len(kept) > 1 and _total_chars(kept) > max_chars:
        kept = kept[1:]
    return messages[: len(messages) - len(kept)], kept


class TruncatingCompactor:
    """Keeps the newest messages and folds the rest into one system note."""

    def __init__(self, keep_messages: int, max_chars: int) -> None:
        self.keep_messages = keep_messages
        self.max_chars = max_chars

    def summarize(self, dropped: list[dict[str, Any]]) -> str:
        lines = [f"{len(dropped)} earlier message(s) were compacted:"]
        for message in dropped:
            content = " ".join(str(message.get("content", "")).split())
            if len(content) > _PREVIEW_CHARS:
                content = content[: _PREVIEW_CHARS - 3] + "..."
            lines.append(f"- {message.get('role', 'unknown')}: {content}")
        return "\n".join(lines)

    def compact(self, messages: list[dict[str, Any]]) -> list[dict[str, Any]]:
        dropped, kept = _split(messages, self.keep_messages, self.max_chars)
        if not dropped:
            return list(messages)
        note = Message(role="system", content=self.summarize(dropped)).model_dump(mode="json")
        logger.info("compacted %d message(s); kept %d", len(dropped), len(kept))
        return [note, *kept]


class ModelSummaryCompactor(TruncatingCompactor):
    """Asks the language model to summarize the dropped prefix.

    Falls back to the plain transcript note when the model call fails.
    """

    def __init__(self, gateway: "ToolGateway", keep_messages: int, max_chars: int) -> None:
        super().__init__(keep_messages, max_chars)
        self.gateway = gateway

    def summarize(self, dropped: list[dict[str, Any]]) -> str:
        transcript = super().summarize(dropped)
        try:
            reply = self.gateway.invoke_model(
                [
                    Message(
                        role="system",
                        content="Summarize this conversation prefix in a few sentences. Keep decisions and open issues.",
                    ),
                    Message(role="user", content=transcript),
                ]
            )
        except ToolInvocationError as exc:
            logger.warning("model summary failed, keeping the truncated transcript: %s", exc)
            return transcript
        return f"Summary of {len(dropped)} earlier message(s): {reply.content.strip()}"
