"""In-memory stand-ins for the external collaborators used across the test suite."""

from __future__ import annotations

import json
import threading
import time
from collections.abc import Callable, Sequence
from typing import Any

from agent_conductor.execution import WRITE_PROMPT
from agent_conductor.models import CommandResult, Message, SearchResult, ToolCallRef
from agent_conductor.planning import GENERATE_PROMPT, RESEARCH_PROMPT
from agent_conductor.review import QUALITY_PROMPT

Reply = Message | str | Callable[[Sequence[Message]], Message]


def plan_json(*steps: dict[str, Any], title: str = "Add greeting") -> str:
    return json.dumps({"title": title, "summary": f"{title} summary", "steps": list(steps)})


def step_dict(step_id: str, target_path: str, *, depends_on: Sequence[str] = (), test_command: str | None = None) -> dict[str, Any]:
    return {
        "id": step_id,
        "description": f"implement {step_id}",
        "target_path": target_path,
        "depends_on": list(depends_on),
        "test_command": test_command,
    }


def tool_call(name: str, **arguments: Any) -> Message:
    return Message(role="assistant", content="", tool_call_refs=[ToolCallRef(id=f"call-{name}", name=name, arguments=arguments)])


class FakeEnvironment:
    """In-memory execution environment with scripted command results."""

    def __init__(self) -> None:
        self.files: dict[str, bytes] = {}
        self.commands: list[str] = []
        self._scripts: dict[str, list[CommandResult]] = {}
        self._delays: dict[str, float] = {}
        self._lock = threading.Lock()

    def on(self, fragment: str, *results: CommandResult | int) -> None:
        """Queue results for commands containing ``fragment``; the last one repeats."""
        self._scripts[fragment] = [
            result if isinstance(result, CommandResult) else CommandResult(exit_code=result, stderr="boom" if result else "")
            for result in results
        ]

    def delay(self, fragment: str, seconds: float) -> None:
        self._delays[fragment] = seconds

    def count(self, fragment: str) -> int:
        return sum(1 for command in self.commands if fragment in command)

    def execute(self, command: str, *, workdir: str | None = None, timeout: float | None = None) -> CommandResult:
        with self._lock:
            self.commands.append(command)
            result = CommandResult(exit_code=0, stdout="ok")
            for fragment, queue in self._scripts.items():
                if fragment in command:
                    result = queue.pop(0) if len(queue) > 1 else queue[0]
                    break
        for fragment, seconds in self._delays.items():
            if fragment in command:
                time.sleep(seconds)
                break
        return result

    def read_file(self, path: str, line_range: tuple[int, int] | None = None) -> bytes:
        if path not in self.files:
            raise FileNotFoundError(path)
        data = self.files[path]
        if line_range is None:
            return data
        start, end = line_range
        return b"".join(data.splitlines(keepends=True)[start - 1 : end])

    def write_file(self, path: str, data: bytes, line_range: tuple[int, int] | None = None) -> None:
        with self._lock:
            self.files[path] = data

    def list_dir(self, path: str = ".") -> list[str]:
        return sorted(self.files)


class ScriptedLanguageModel:
    """Replies keyed by the prefix of the last prompt message; the last reply repeats."""

    def __init__(self) -> None:
        self.calls: list[tuple[str, list[Message]]] = []
        self._scripts: dict[str, list[Reply]] = {}
        self._delays: dict[str, float] = {}
        self._lock = threading.Lock()
        self.script(RESEARCH_PROMPT, tool_call("finish_research"))
        self.script(GENERATE_PROMPT, plan_json(step_dict("s1", "src/greet.py")))
        self.script(WRITE_PROMPT, "```python\ndef greet():\n    return 'hi'\n```")
        self.script(QUALITY_PROMPT, '{"score": 9, "feedback": "clean"}')

    def script(self, prefix: str, *replies: Reply) -> None:
        self._scripts[prefix] = list(replies)

    def delay(self, prefix: str, seconds: float) -> None:
        self._delays[prefix] = seconds

    def count(self, prefix: str) -> int:
        return sum(1 for key, _ in self.calls if key == prefix)

    def invoke(self, messages: Sequence[Message], tools: Sequence[dict[str, Any]] | None = None) -> Message:
        prompt = messages[-1].content
        for prefix, queue in self._scripts.items():
            if prompt.startswith(prefix):
                with self._lock:
                    self.calls.append((prefix, list(messages)))
                    reply = queue.pop(0) if len(queue) > 1 else queue[0]
                if prefix in self._delays:
                    time.sleep(self._delays[prefix])
                if callable(reply):
                    return reply(messages)
                if isinstance(reply, str):
                    return Message(role="assistant", content=reply)
                return reply
        raise LookupError(f"no scripted reply for prompt: {prompt[:80]!r}")


class FakeHosting:
    def __init__(self) -> None:
        self.pull_requests: list[dict[str, str]] = []
        self.issues: list[dict[str, str]] = []
        self.comments: list[tuple[str, str]] = []

    def create_issue(self, title: str, body: str) -> str:
        self.issues.append({"title": title, "body": body})
        return f"https://hosting.test/issues/{len(self.issues)}"

    def create_pull_request(self, title: str, body: str, head: str, base: str) -> str:
        self.pull_requests.append({"title": title, "body": body, "head": head, "base": base})
        return f"https://hosting.test/pull/{len(self.pull_requests)}"

    def add_comment(self, ref: str, body: str) -> str:
        self.comments.append((ref, body))
        return f"{ref}#comment-{len(self.comments)}"


class FakeSearch:
    def __init__(self) -> None:
        self.queries: list[str] = []

    def query(self, text: str, *, limit: int = 5) -> list[SearchResult]:
        self.queries.append(text)
        return [SearchResult(url="https://docs.test/page", title="Docs", snippet=f"about {text}")]
