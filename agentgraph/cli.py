"""
Command-line interface for agentgraph.

Usage:
    agentgraph validate graphs/support.json
    agentgraph run graphs/support.json --input '{"email": "hi"}'
    agentgraph summary <run_id> --storage ~/.agentgraph/runs
    agentgraph step <run_id> <step_id>
    agentgraph serve graphs/support.json graphs/triage.json --port 8080
"""

import argparse
import asyncio
import json
import logging
import sys
from pathlib import Path

from agentgraph.config import EngineConfig
from agentgraph.errors import GraphDefinitionError, RunNotFoundError
from agentgraph.graph.invoker import StepActionInvoker
from agentgraph.graph.validator import load_graph, validate_graph
from agentgraph.llm import MockLLMProvider
from agentgraph.observability import configure_logging
from agentgraph.runtime.api_server import RunApiServer, RunApiServerConfig
from agentgraph.runtime.run_service import RunService
from agentgraph.runtime.tracer import ExecutionTracer
from agentgraph.storage import FileRunStore, InMemoryRunStore

logger = logging.getLogger(__name__)


def _print_json(data) -> None:
    print(json.dumps(data, indent=2, default=str))


def _storage(args: argparse.Namespace, config: EngineConfig) -> FileRunStore:
    return FileRunStore(args.storage or config.storage_path)


def _build_service(args: argparse.Namespace, config: EngineConfig) -> RunService:
    # Without a configured LLM, ai-prompt steps echo their prompt
    invoker = StepActionInvoker(llm=MockLLMProvider())
    store = InMemoryRunStore() if args.ephemeral else _storage(args, config)
    return RunService.from_config(invoker, store=store, engine_config=config)


def cmd_validate(args: argparse.Namespace) -> int:
    """Validate a graph definition."""
    try:
        graph = load_graph(Path(args.graph).read_text(encoding="utf-8"))
    except GraphDefinitionError as e:
        for error in e.errors:
            print(f"ERROR: {error}")
        return 1

    report = validate_graph(graph)
    for error in report.errors:
        print(f"ERROR: {error}")
    for warning in report.warnings:
        print(f"WARNING: {warning}")
    if report.valid:
        print(f"✓ {args.graph} is valid")
        return 0
    return 1


def cmd_run(args: argparse.Namespace) -> int:
    """Run a graph to completion and print its summary."""
    config = EngineConfig()
    try:
        trigger_input = json.loads(args.input) if args.input else {}
    except json.JSONDecodeError as e:
        print(f"Invalid --input JSON: {e}", file=sys.stderr)
        return 2

    async def _run() -> int:
        service = _build_service(args, config)
        try:
            plan = service.register_graph(Path(args.graph).read_text(encoding="utf-8"))
        except GraphDefinitionError as e:
            for error in e.errors:
                print(f"ERROR: {error}", file=sys.stderr)
            return 1
        state = await service.trigger_and_wait(plan.graph_id, trigger_input)
        _print_json(service.tracer.summarize(state).model_dump(mode="json"))
        if args.output and state.output is not None:
            _print_json(state.output)
        return 0 if state.status == "completed" else 1

    return asyncio.run(_run())


def cmd_summary(args: argparse.Namespace) -> int:
    """Print the summary of a stored run."""
    store = _storage(args, EngineConfig())

    async def _summary() -> int:
        try:
            state = await store.get_run(args.run_id)
        except RunNotFoundError as e:
            print(str(e), file=sys.stderr)
            return 1
        _print_json(ExecutionTracer().summarize(state).model_dump(mode="json"))
        return 0

    return asyncio.run(_summary())


def cmd_step(args: argparse.Namespace) -> int:
    """Print every execution of one step of a stored run."""
    store = _storage(args, EngineConfig())

    async def _step() -> int:
        try:
            state = await store.get_run(args.run_id)
        except RunNotFoundError as e:
            print(str(e), file=sys.stderr)
            return 1
        detail = ExecutionTracer().step_detail(state, args.step_id)
        if detail is None:
            print(f"Step {args.step_id} never ran in {args.run_id}", file=sys.stderr)
            return 1
        _print_json(detail.model_dump(mode="json"))
        return 0

    return asyncio.run(_step())


def cmd_serve(args: argparse.Namespace) -> int:
    """Serve graphs over HTTP until interrupted."""
    config = EngineConfig()
    secrets = {}
    for pair in args.secret or []:
        graph_id, _, secret = pair.partition("=")
        secrets[graph_id] = secret

    async def _serve() -> int:
        service = _build_service(args, config)
        for graph_path in args.graphs:
            try:
                service.register_graph(Path(graph_path).read_text(encoding="utf-8"))
            except GraphDefinitionError as e:
                print(f"{graph_path}: {e}", file=sys.stderr)
                return 1

        server = RunApiServer(
            service, RunApiServerConfig(host=args.host, port=args.port, secrets=secrets)
        )
        await server.start()
        try:
            await asyncio.Event().wait()
        finally:
            await server.stop()
            await service.stop()
        return 0

    try:
        return asyncio.run(_serve())
    except KeyboardInterrupt:
        return 0


def register_commands(subparsers: argparse._SubParsersAction) -> None:
    validate_parser = subparsers.add_parser("validate", help="Validate a graph definition")
    validate_parser.add_argument("graph", help="Path to graph JSON")
    validate_parser.set_defaults(func=cmd_validate)

    run_parser = subparsers.add_parser("run", help="Run a graph")
    run_parser.add_argument("graph", help="Path to graph JSON")
    run_parser.add_argument("--input", "-i", type=str, help="Trigger input as JSON string")
    run_parser.add_argument("--storage", type=str, help="Run storage directory")
    run_parser.add_argument(
        "--ephemeral", action="store_true", help="Keep the run in memory only"
    )
    run_parser.add_argument("--output", action="store_true", help="Also print the run output")
    run_parser.set_defaults(func=cmd_run)

    summary_parser = subparsers.add_parser("summary", help="Show a run summary")
    summary_parser.add_argument("run_id")
    summary_parser.add_argument("--storage", type=str, help="Run storage directory")
    summary_parser.set_defaults(func=cmd_summary)

    step_parser = subparsers.add_parser("step", help="Show every execution of a step")
    step_parser.add_argument("run_id")
    step_parser.add_argument("step_id")
    step_parser.add_argument("--storage", type=str, help="Run storage directory")
    step_parser.set_defaults(func=cmd_step)

    serve_parser = subparsers.add_parser("serve", help="Serve graphs over HTTP")
    serve_parser.add_argument("graphs", nargs="+", help="Paths to graph JSON files")
    serve_parser.add_argument("--host", default="127.0.0.1")
    serve_parser.add_argument("--port", type=int, default=8080)
    serve_parser.add_argument(
        "--secret",
        action="append",
        metavar="GRAPH_ID=SECRET",
        help="HMAC secret for a graph's trigger route (repeatable)",
    )
    serve_parser.add_argument("--storage", type=str, help="Run storage directory")
    serve_parser.add_argument(
        "--ephemeral", action="store_true", help="Keep runs in memory only"
    )
    serve_parser.set_defaults(func=cmd_serve)


def main():
    parser = argparse.ArgumentParser(
        prog="agentgraph",
        description="agentgraph - Run workflow graphs of agent steps",
    )
    parser.add_argument("--log-level", default=None, help="Override the configured log level")

    subparsers = parser.add_subparsers(dest="command", required=True)
    register_commands(subparsers)

    args = parser.parse_args()

    config = EngineConfig()
    configure_logging(level=args.log_level or config.log_level, format=config.log_format)

    if hasattr(args, "func"):
        sys.exit(args.func(args))


if __name__ == "__main__":
    main()
