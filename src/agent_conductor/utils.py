from __future__ import annotations

import json
import re
from collections import defaultdict, deque
from collections.abc import Sequence
from typing import TYPE_CHECKING, Any

if TYPE_CHECKING:
    from .models import Step


_FENCED_BLOCK_RE = re.compile(r"```[A-Za-z0-9_+.-]*\n(.*?)```", re.DOTALL)


def slugify_name(name: str, *, max_length: int = 24) -> str:
    slug = re.sub(r"[^a-zA-Z0-9]+", "-", name.lower()).strip("-")
    slug = re.sub(r"-{2,}", "-", slug)
    return slug[:max_length].rstrip("-")


def validate_step_dependency_dag(steps: Sequence["Step"]) -> None:
    by_id = {step.id: step for step in steps}
    indegree = {step_id: 0 for step_id in by_id}
    edges: dict[str, list[str]] = defaultdict(list)

    for step in by_id.values():
        for dep in step.depends_on:
            if dep not in by_id:
                raise ValueError(f"Step {step.id} depends on unknown step {dep}")
            if dep == step.id:
                raise ValueError(f"Step {step.id} depends on itself")
            indegree[step.id] += 1
            edges[dep].append(step.id)

    queue = deque(sorted(step_id for step_id, degree in indegree.items() if degree == 0))
    visited = 0
    while queue:
        current = queue.popleft()
        visited += 1
        for nxt in sorted(edges[current]):
            indegree[nxt] -= 1
            if indegree[nxt] == 0:
                queue.append(nxt)

    if visited != len(by_id):
        raise ValueError("Step dependency graph contains a cycle")


def extract_json_payload(text: str) -> dict[str, Any]:
    """Extract a JSON object from model text output.

    Attempts parsing in order: direct JSON, fenced code block, first/last brace extraction.

    Args:
        text: Raw text output from a model.

    Returns:
        Parsed JSON dict.

    Raises:
        ValueError: If no valid JSON object can be extracted from the text.
    """
    body = text.strip()
    if not body:
        raise ValueError("Model returned empty output; expected JSON object")

    try:
        parsed = json.loads(body)
    except json.JSONDecodeError:
        parsed = None
    if isinstance(parsed, dict):
        return parsed

    fenced = re.search(r"```(?:json)?\s*(\{.*?\})\s*```", body, flags=re.DOTALL)
    if fenced is not None:
        try:
            payload = json.loads(fenced.group(1))
        except json.JSONDecodeError as exc:
            raise ValueError(f"Failed to parse fenced JSON payload: {exc}") from exc
        if isinstance(payload, dict):
            return payload

    start = body.find("{")
    end = body.rfind("}")
    if start != -1 and end != -1 and end > start:
        try:
            payload = json.loads(body[start : end + 1])
        except json.JSONDecodeError as exc:
            raise ValueError(f"Failed to parse extracted JSON payload: {exc}") from exc
        if isinstance(payload, dict):
            return payload

    preview = body[:220].replace("\n", " ")
    raise ValueError(f"Model output did not contain a JSON object: {preview}")


def extract_code_block(text: str) -> str:
    """Return the body of the first fenced block in ``text``, or the text itself."""
    match = _FENCED_BLOCK_RE.search(text)
    if match is not None:
        return match.group(1)
    return text
