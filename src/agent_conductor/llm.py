from __future__ import annotations

import logging
import os
from collections.abc import Sequence
from pathlib import Path
from typing import Any

from dotenv import load_dotenv
from langchain_core.messages import AIMessage, BaseMessage, HumanMessage, SystemMessage, ToolMessage
from langchain_openai import ChatOpenAI

from .errors import ConfigurationError
from .models import Message, ToolCallRef
from .settings import RuntimeSettings

logger = logging.getLogger(__name__)

_DEFAULT_TIMEOUT: int = 120


def ensure_openai_api_key(repo_root: Path | None = None) -> str:
    """Load OPENAI_API_KEY from environment or .env and return it.

    Args:
        repo_root: Optional repo root path to search for .env file.

    Raises:
        ConfigurationError: If OPENAI_API_KEY is unavailable after all sources are checked.
    """
    repo = repo_root if repo_root is not None else Path.cwd()
    env_path = repo / ".env"
    if env_path.is_file():
        load_dotenv(env_path)

    key = os.getenv("OPENAI_API_KEY", "").strip()
    if not key:
        raise ConfigurationError("OPENAI_API_KEY is required for language model access")
    return key


def get_chat_model(
    *,
    model_name: str,
    temperature: float = 0.0,
    timeout: int = _DEFAULT_TIMEOUT,
    repo_root: Path | None = None,
) -> ChatOpenAI:
    """Construct a ChatOpenAI instance with a validated API key.

    Client-side retries are disabled; the tool gateway owns the retry policy.
    """
    if not model_name or not model_name.strip():
        raise ValueError("model_name must be a non-empty string")
    ensure_openai_api_key(repo_root=repo_root)
    return ChatOpenAI(model=model_name, temperature=temperature, timeout=timeout, max_retries=0)


def to_langchain_messages(messages: Sequence[Message]) -> list[BaseMessage]:
    converted: list[BaseMessage] = []
    for message in messages:
        if message.role == "system":
            converted.append(SystemMessage(content=message.content))
        elif message.role == "assistant":
            converted.append(
                AIMessage(
                    content=message.content,
                    tool_calls=[
                        {"id": ref.id, "name": ref.name, "args": dict(ref.arguments)}
                        for ref in message.tool_call_refs
                    ],
                )
            )
        elif message.role == "tool":
            call_id = message.tool_call_refs[0].id if message.tool_call_refs else ""
            converted.append(ToolMessage(content=message.content, tool_call_id=call_id))
        else:
            converted.append(HumanMessage(content=message.content))
    return converted


def from_langchain_message(raw: Any) -> Message:
    """Normalize a chat model response into a ``Message``."""
    content = getattr(raw, "content", raw)
    if isinstance(content, list):
        content = "".join(part.get("text", "") if isinstance(part, dict) else str(part) for part in content)
    refs = [
        ToolCallRef(id=str(call.get("id") or f"call-{index}"), name=call["name"], arguments=dict(call.get("args") or {}))
        for index, call in enumerate(getattr(raw, "tool_calls", None) or [])
    ]
    return Message(role="assistant", content=str(content or ""), tool_call_refs=refs)


class ChatModelAdapter:
    """``LanguageModel`` backed by a LangChain chat model."""

    def __init__(self, chat_model: Any) -> None:
        self.chat_model = chat_model

    @classmethod
    def from_settings(cls, settings: RuntimeSettings, *, repo_root: Path | None = None) -> "ChatModelAdapter":
        timeout = max(1, int(settings.tool_timeout_seconds))
        return cls(get_chat_model(model_name=settings.model_name, timeout=timeout, repo_root=repo_root))

    def invoke(self, messages: Sequence[Message], tools: Sequence[dict[str, Any]] | None = None) -> Message:
        runnable = self.chat_model.bind_tools(list(tools)) if tools else self.chat_model
        raw = runnable.invoke(to_langchain_messages(messages))
        reply = from_langchain_message(raw)
        logger.debug("model replied chars=%d tool_calls=%d", len(reply.content), len(reply.tool_call_refs))
        return reply
