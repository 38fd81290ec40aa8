"""Uniform, cancellable, retrying access to external collaborators.

Every call to the execution environment, language model, source hosting
client, or search index goes through ``ToolGateway.call``, which runs it on its
own daemon thread under a timeout and retries failures with exponential
backoff.  A call that times out is abandoned on its thread and never delays
another call.  Cancellation of the owning run interrupts both the wait and the
backoff sleep.
"""

from __future__ import annotations

import logging
import threading
from collections.abc import Callable, Sequence
from concurrent.futures import FIRST_COMPLETED, Future, wait
from time import monotonic
from typing import Any, Protocol, TypeVar

from tenacity import (
    RetryCallState,
    Retrying,
    retry_if_exception_type,
    retry_if_not_exception_type,
    stop_after_attempt,
    wait_exponential,
)

from .errors import ConfigurationError, ToolCancelled, ToolInvocationError
from .graph import NodeContext
from .models import CommandResult, Message, SearchResult
from .settings import RuntimeSettings

logger = logging.getLogger(__name__)

T = TypeVar("T")

_POLL_SECONDS = 0.05

# 1-based, inclusive
LineRange = tuple[int, int]


class ExecutionEnvironment(Protocol):
    def execute(self, command: str, *, workdir: str | None = None, timeout: float | None = None) -> CommandResult: ...

    def read_file(self, path: str, line_range: LineRange | None = None) -> bytes: ...

    def write_file(self, path: str, data: bytes, line_range: LineRange | None = None) -> None: ...

    def list_dir(self, path: str = ".") -> list[str]: ...


class LanguageModel(Protocol):
    def invoke(self, messages: Sequence[Message], tools: Sequence[dict[str, Any]] | None = None) -> Message: ...


class SourceHostingClient(Protocol):
    def create_issue(self, title: str, body: str) -> str: ...

    def create_pull_request(self, title: str, body: str, head: str, base: str) -> str: ...

    def add_comment(self, ref: str, body: str) -> str: ...


class DocumentSearch(Protocol):
    def query(self, text: str, *, limit: int = 5) -> list[SearchResult]: ...


class ToolGateway:
    """Single entry point through which graph nodes reach the outside world."""

    def __init__(
        self,
        settings: RuntimeSettings,
        *,
        environment: ExecutionEnvironment,
        model: LanguageModel,
        hosting: SourceHostingClient | None = None,
        web_search: DocumentSearch | None = None,
        docs: DocumentSearch | None = None,
    ) -> None:
        self.settings = settings
        self.environment = environment
        self.model = model
        self.hosting = hosting
        self.web_search = web_search
        self.docs = docs
        self._lock = threading.Lock()
        self._abandoned: list[Future[Any]] = []

    def shutdown(self) -> None:
        """Report calls abandoned by a timeout or cancellation that are still running."""
        with self._lock:
            running = [future for future in self._abandoned if not future.done()]
            self._abandoned = []
        if running:
            logger.warning("%d abandoned tool call(s) still running at shutdown", len(running))

    # ------------------------------------------------------------------
    # Core call path
    # ------------------------------------------------------------------

    def call(
        self,
        capability: str,
        fn: Callable[[], T],
        *,
        context: NodeContext | None = None,
        timeout: float | None = None,
        retry: bool = True,
    ) -> T:
        """Invoke ``fn`` with timeout, retry and cancellation.

        Raises:
            ToolCancelled: If the owning run is cancelled before ``fn`` returns.
            ToolInvocationError: If every attempt failed or timed out.
            FileNotFoundError: Raised by a file read, without retrying.
        """
        cancel_event = context.cancel_event if context is not None else threading.Event()
        limit = timeout if timeout is not None else self.settings.tool_timeout_seconds
        max_attempts = self.settings.tool_max_attempts if retry else 1

        def _sleep(seconds: float) -> None:
            if cancel_event.wait(seconds):
                raise ToolCancelled(capability)

        def _log_retry(state: RetryCallState) -> None:
            exc = state.outcome.exception() if state.outcome is not None else None
            logger.warning(
                "%s attempt %d/%d failed: %s; retrying",
                capability,
                state.attempt_number,
                max_attempts,
                exc,
            )

        retrying = Retrying(
            stop=stop_after_attempt(max_attempts),
            wait=wait_exponential(
                multiplier=self.settings.tool_backoff_seconds,
                max=self.settings.tool_backoff_max_seconds,
            ),
            retry=retry_if_exception_type(ToolInvocationError) & retry_if_not_exception_type(ToolCancelled),
            sleep=_sleep,
            before_sleep=_log_retry,
            reraise=True,
        )
        attempts = 0
        try:
            for attempt in retrying:
                with attempt:
                    attempts += 1
                    return self._attempt(capability, fn, cancel_event, limit)
        except ToolCancelled:
            logger.info("%s cancelled after %d attempt(s)", capability, attempts)
            raise
        except ToolInvocationError as exc:
            raise ToolInvocationError(capability, exc.detail, attempts=attempts) from exc
        raise ToolInvocationError(capability, "retry loop exited without a result", attempts=attempts)

    def _launch(self, capability: str, fn: Callable[[], T]) -> Future[T]:
        future: Future[T] = Future()
        future.set_running_or_notify_cancel()

        def _run() -> None:
            try:
                result = fn()
            except Exception as exc:  # noqa: BLE001
                future.set_exception(exc)
            else:
                future.set_result(result)

        threading.Thread(target=_run, name=f"conductor-tool-{capability}", daemon=True).start()
        return future

    def _abandon(self, capability: str, future: Future[Any]) -> None:
        with self._lock:
            self._abandoned = [pending for pending in self._abandoned if not pending.done()]
            self._abandoned.append(future)
        logger.debug("abandoned in-flight %s call", capability)

    def _attempt(
        self,
        capability: str,
        fn: Callable[[], T],
        cancel_event: threading.Event,
        limit: float,
    ) -> T:
        if cancel_event.is_set():
            raise ToolCancelled(capability)
        future = self._launch(capability, fn)
        deadline = monotonic() + limit
        while True:
            remaining = deadline - monotonic()
            if remaining <= 0:
                self._abandon(capability, future)
                raise ToolInvocationError(capability, f"timed out after {limit:.1f}s")
            done, _ = wait([future], timeout=min(remaining, _POLL_SECONDS), return_when=FIRST_COMPLETED)
            if done:
                break
            if cancel_event.is_set():
                self._abandon(capability, future)
                raise ToolCancelled(capability)
        exc = future.exception()
        if exc is None:
            return future.result()
        if isinstance(exc, (ToolInvocationError, FileNotFoundError)):
            raise exc
        raise ToolInvocationError(capability, f"{type(exc).__name__}: {exc}") from exc

    # ------------------------------------------------------------------
    # Capability shortcuts
    # ------------------------------------------------------------------

    def execute(
        self,
        command: str,
        *,
        workdir: str | None = None,
        context: NodeContext | None = None,
    ) -> CommandResult:
        limit = self.settings.tool_timeout_seconds
        return self.call(
            "execute",
            lambda: self.environment.execute(command, workdir=workdir, timeout=limit),
            context=context,
        )

    def read_file(
        self,
        path: str,
        line_range: LineRange | None = None,
        *,
        context: NodeContext | None = None,
    ) -> bytes:
        """Read a workspace file; ``FileNotFoundError`` passes through unretried."""
        return self.call("read_file", lambda: self.environment.read_file(path, line_range), context=context)

    def read_text(self, path: str, *, context: NodeContext | None = None) -> str:
        return self.read_file(path, context=context).decode("utf-8", errors="replace")

    def write_file(
        self,
        path: str,
        data: bytes | str,
        line_range: LineRange | None = None,
        *,
        context: NodeContext | None = None,
    ) -> None:
        payload = data.encode("utf-8") if isinstance(data, str) else data
        self.call("write_file", lambda: self.environment.write_file(path, payload, line_range), context=context)

    def list_dir(self, path: str = ".", *, context: NodeContext | None = None) -> list[str]:
        return self.call("list_dir", lambda: self.environment.list_dir(path), context=context)

    def invoke_model(
        self,
        messages: Sequence[Message],
        *,
        tools: Sequence[dict[str, Any]] | None = None,
        context: NodeContext | None = None,
    ) -> Message:
        return self.call("invoke_model", lambda: self.model.invoke(list(messages), tools), context=context)

    def search(self, query: str, *, limit: int = 5, context: NodeContext | None = None) -> list[SearchResult]:
        if self.web_search is None:
            raise ConfigurationError("no web search backend configured")
        backend = self.web_search
        return self.call("web_search", lambda: backend.query(query, limit=limit), context=context)

    def search_docs(self, query: str, *, limit: int = 5, context: NodeContext | None = None) -> list[SearchResult]:
        if self.docs is None:
            raise ConfigurationError("no documentation index configured")
        backend = self.docs
        return self.call("search_docs", lambda: backend.query(query, limit=limit), context=context)

    def _require_hosting(self) -> SourceHostingClient:
        if self.hosting is None:
            raise ConfigurationError("no source hosting client configured")
        return self.hosting

    def create_issue(self, title: str, body: str, *, context: NodeContext | None = None) -> str:
        hosting = self._require_hosting()
        return self.call("create_issue", lambda: hosting.create_issue(title, body), context=context)

    def create_pull_request(
        self,
        title: str,
        body: str,
        *,
        head: str,
        base: str | None = None,
        context: NodeContext | None = None,
    ) -> str:
        hosting = self._require_hosting()
        target = base or self.settings.base_branch
        return self.call(
            "create_pull_request",
            lambda: hosting.create_pull_request(title, body, head, target),
            context=context,
        )

    def add_comment(self, ref: str, body: str, *, context: NodeContext | None = None) -> str:
        hosting = self._require_hosting()
        return self.call("add_comment", lambda: hosting.add_comment(ref, body), context=context)
