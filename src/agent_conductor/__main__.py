"""Entry point for `python -m agent_conductor` and the `conductor` CLI script."""

from __future__ import annotations

import argparse
import json
import logging
import os
from pathlib import Path

from agent_conductor.checkpoint_store import CheckpointStore
from agent_conductor.compaction import TruncatingCompactor
from agent_conductor.coordinator import OrchestrationCoordinator
from agent_conductor.engine import GraphEngine
from agent_conductor.environment import LocalExecutionEnvironment
from agent_conductor.errors import ConductorError
from agent_conductor.gateway import ToolGateway
from agent_conductor.hosting import GitHubClient
from agent_conductor.llm import ChatModelAdapter
from agent_conductor.models import ApprovalAction, RunMode
from agent_conductor.search import BrightDataSearch, ChromaDocumentSearch
from agent_conductor.session import TaskSession
from agent_conductor.settings import RuntimeSettings


def parse_args(argv: list[str] | None = None) -> argparse.Namespace:
    parser = argparse.ArgumentParser(description="Run and inspect agent_conductor task sessions")
    parser.add_argument(
        "--log-level",
        default="INFO",
        choices=["DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"],
        help="Logging verbosity",
    )
    parser.add_argument(
        "--workspace-root",
        type=Path,
        default=None,
        help="Root directory sessions read and write files in (default: cwd)",
    )
    subparsers = parser.add_subparsers(dest="command", required=True)

    run = subparsers.add_parser("run", help="Start a new task session and wait for it to stop")
    run.add_argument("--request-file", type=Path, default=None, help="Path to a markdown work request")
    run.add_argument("--request-text", default=None, help="Inline work request text")
    run.add_argument("--thread-id", default=None, help="Explicit thread id (default: random)")
    run.add_argument("--mode", default=RunMode.MANUAL.value, choices=[mode.value for mode in RunMode])

    resume = subparsers.add_parser("resume", help="Answer a suspended plan approval")
    resume.add_argument("thread_id")
    resume.add_argument("--action", default=ApprovalAction.ACCEPTED.value, choices=[a.value for a in ApprovalAction])
    resume.add_argument("--feedback", default="", help="Feedback text for rejected/feedback actions")

    show = subparsers.add_parser("show", help="Print a thread record and its latest checkpoint")
    show.add_argument("thread_id")
    show.add_argument("--chain", action="store_true", help="List every checkpoint from the root")
    show.add_argument("--verify", action="store_true", help="Replay the chain and compare to the head snapshot")

    threads = subparsers.add_parser("threads", help="List threads in the state store")
    threads.add_argument("--all", action="store_true", help="Include archived threads")

    subparsers.add_parser("recover", help="Resume runs interrupted by a crash")
    return parser.parse_args(argv)


def load_request(*, request_file: Path | None, request_text: str | None) -> str:
    if request_text is not None and request_file is not None:
        raise ValueError("request_text cannot be combined with request_file input")
    if request_text is not None:
        trimmed = request_text.strip()
        if not trimmed:
            raise ValueError("request_text must be non-empty")
        return trimmed
    if request_file is None:
        raise ValueError("one of --request-text or --request-file is required")
    if not request_file.is_file():
        raise FileNotFoundError(f"Requested input file does not exist: {request_file}")
    return request_file.read_text(encoding="utf-8")


def build_gateway(settings: RuntimeSettings) -> ToolGateway:
    """Wire the default adapters; optional backends are skipped when unconfigured."""
    workspace = settings.workspace_root_path
    hosting = GitHubClient.from_env() if os.getenv("GITHUB_TOKEN") else None
    web_search = BrightDataSearch.from_env() if os.getenv("BRIGHTDATA_API_KEY") else None
    docs_root = os.getenv("CONDUCTOR_DOCS_INDEX", "").strip()
    docs = ChromaDocumentSearch(Path(docs_root)) if docs_root else None
    return ToolGateway(
        settings,
        environment=LocalExecutionEnvironment(workspace, default_timeout=settings.tool_timeout_seconds),
        model=ChatModelAdapter.from_settings(settings, repo_root=workspace),
        hosting=hosting,
        web_search=web_search,
        docs=docs,
    )


def build_coordinator(settings: RuntimeSettings, gateway: ToolGateway) -> OrchestrationCoordinator:
    store = CheckpointStore(settings.state_store_path(settings.workspace_root_path))
    compactor = TruncatingCompactor(settings.compaction_keep_messages, settings.compaction_max_chars)
    engine = GraphEngine(store, compactor=compactor)
    return OrchestrationCoordinator(engine, TaskSession(gateway, settings), settings)


def _print_handle(coordinator: OrchestrationCoordinator, thread_id: str) -> int:
    handle = coordinator.status(thread_id)
    print(f"thread_id={handle.thread_id}")
    print(f"status={handle.status.value}")
    if handle.awaiting_input:
        pending = coordinator.engine.interrupts.pending(thread_id)
        if pending is not None:
            print(f"awaiting_input={pending.node}")
            plan = pending.state.get("plan")
            if plan is not None:
                print(json.dumps(plan, indent=2))
        return 0
    result = coordinator.result(thread_id)
    print(f"result={result.status}")
    if result.result_ref:
        print(f"result_ref={result.result_ref}")
    if result.reason:
        print(f"reason={result.reason}")
    return 0 if result.status == "completed" else 1


def _show(store: CheckpointStore, args: argparse.Namespace) -> int:
    record = store.read_thread(args.thread_id)
    print(record.model_dump_json(indent=2))
    if args.chain:
        for checkpoint in store.load_chain(args.thread_id):
            print(
                f"{checkpoint.sequence:>4} {checkpoint.id} {checkpoint.event.value:<15} "
                f"node={checkpoint.node_id} next={checkpoint.next_node} status={checkpoint.status.value}"
            )
    else:
        latest = store.load_latest(args.thread_id)
        print(latest.model_dump_json(indent=2, exclude={"state"}))
    return 0


def main(argv: list[str] | None = None) -> int:
    args = parse_args(argv)
    logging.basicConfig(
        level=getattr(logging, args.log_level),
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )

    # Set workspace root before constructing any settings objects.
    if args.workspace_root is not None:
        workspace_root = args.workspace_root.resolve()
        workspace_root.mkdir(parents=True, exist_ok=True)
        os.environ["CONDUCTOR_WORKSPACE_ROOT"] = str(workspace_root)

    try:
        settings = RuntimeSettings.from_env()
    except ConductorError as exc:
        logging.error("Invalid configuration: %s", exc)
        return 2

    if args.command == "threads" or (args.command == "show" and not args.verify):
        store = CheckpointStore(settings.state_store_path(settings.workspace_root_path))
        try:
            if args.command == "show":
                return _show(store, args)
            for record in store.list_threads(include_archived=args.all):
                print(
                    f"{record.thread_id} graph={record.graph_name} status={record.status.value} "
                    f"phase={record.phase.value} archived={record.archived}"
                )
            return 0
        except ConductorError as exc:
            logging.error("%s", exc)
            return 1

    if args.command == "run":
        try:
            request = load_request(request_file=args.request_file, request_text=args.request_text)
        except (OSError, ValueError) as exc:
            logging.error("Unable to load request input: %s", exc)
            return 1

    try:
        gateway = build_gateway(settings)
        coordinator = build_coordinator(settings, gateway)
    except ConductorError as exc:
        logging.error("Unable to start: %s", exc)
        return 2

    try:
        if args.command == "run":
            handle = coordinator.start_run(
                {"thread_id": args.thread_id, "initial_message": request, "mode": args.mode}
            )
            coordinator.wait(handle.thread_id)
            return _print_handle(coordinator, handle.thread_id)
        if args.command == "resume":
            resume_input = {"approval": {"action": args.action, "feedback": args.feedback}}
            coordinator.resume_run(args.thread_id, resume_input)
            coordinator.wait(args.thread_id)
            return _print_handle(coordinator, args.thread_id)
        if args.command == "show":
            coordinator.engine.verify(args.thread_id)
            latest = coordinator.engine.store.load_latest(args.thread_id)
            print(f"verified thread_id={args.thread_id} digest={latest.digest}")
            return 0
        recovered = coordinator.recover()
        for thread_id in recovered:
            coordinator.wait(thread_id)
            _print_handle(coordinator, thread_id)
        print(f"recovered={len(recovered)}")
        return 0
    except ConductorError as exc:
        logging.exception("Session failed: %s", exc)
        return 1
    finally:
        coordinator.shutdown()
        gateway.shutdown()


if __name__ == "__main__":
    raise SystemExit(main())
