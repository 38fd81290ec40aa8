from __future__ import annotations

import json
import logging
import urllib.error
import urllib.request
from typing import Any

logger = logging.getLogger(__name__)

_DEFAULT_TIMEOUT_SECONDS = 30


def request_json(
    method: str,
    url: str,
    payload: dict[str, Any] | None,
    headers: dict[str, str],
    *,
    timeout: float = _DEFAULT_TIMEOUT_SECONDS,
) -> Any:
    """Send a JSON request and return the parsed JSON response.

    Args:
        method: HTTP method.
        url: The endpoint URL.
        payload: JSON-serializable body, or None for no body.
        headers: Additional HTTP headers (merged with Content-Type).
        timeout: Socket timeout in seconds.

    Raises:
        RuntimeError: If the HTTP request fails or the response is not valid JSON.
    """
    request = urllib.request.Request(
        url,
        method=method,
        headers={"Content-Type": "application/json", **headers},
        data=json.dumps(payload).encode("utf-8") if payload is not None else None,
    )
    try:
        with urllib.request.urlopen(request, timeout=timeout) as response:
            data = response.read().decode("utf-8")
    except urllib.error.HTTPError as exc:
        body = exc.read().decode("utf-8", errors="replace")[:500] if exc.fp is not None else ""
        logger.error("HTTP %d from %s: %s", exc.code, url, body)
        raise RuntimeError(f"HTTP {exc.code} from {url}: {exc.reason}") from exc
    except urllib.error.URLError as exc:
        logger.error("URL error reaching %s: %s", url, exc.reason)
        raise RuntimeError(f"Failed to reach {url}: {exc.reason}") from exc
    if not data.strip():
        return {}
    try:
        return json.loads(data)
    except json.JSONDecodeError as exc:
        logger.error("Invalid JSON response from %s", url)
        raise RuntimeError(f"Invalid JSON response from {url}") from exc


def post_json(url: str, payload: dict[str, Any], headers: dict[str, str], *, timeout: float = _DEFAULT_TIMEOUT_SECONDS) -> Any:
    return request_json("POST", url, payload, headers, timeout=timeout)
