"""Terminal client for the Workflow Builder Agent.

Runs the six-stage pipeline directly in the terminal, no HTTP server required.

Usage:
    workflow-builder generate "Email me when a row is added to my Leads sheet"
    workflow-builder generate "Also post it to Slack" --existing flow.json --stream
    workflow-builder generate "..." --catalogue my_catalogue.json --output flow.json
    workflow-builder capabilities
    workflow-builder serve --port 8000
"""

from __future__ import annotations

import asyncio
import json
import logging
import sys
from argparse import ArgumentParser
from pathlib import Path
from typing import Any


def _load_env() -> None:
    try:
        from dotenv import load_dotenv
        load_dotenv()
    except ImportError:
        pass


def create_coordinator_from_env(catalogue: Path | None = None):
    """Create a PipelineCoordinator using environment variables."""
    from workflow_builder_agent.catalogue.library import CapabilityLibrary
    from workflow_builder_agent.pipeline.coordinator import PipelineCoordinator
    from workflow_builder_agent.pipeline.settings import PipelineSettings
    from workflow_builder_agent.reasoning import ReasoningSettings, create_engine

    reasoning_settings = ReasoningSettings()
    settings = PipelineSettings()
    library = CapabilityLibrary(catalogue or settings.catalogue_path)
    return PipelineCoordinator(
        create_engine(reasoning_settings),
        settings=settings,
        library=library,
        fast_model=reasoning_settings.resolved_fast_model(),
        model=reasoning_settings.model,
    )


def _read_json(path: str) -> Any:
    return json.loads(Path(path).read_text(encoding="utf-8"))


# ---------------------------------------------------------------------------
# Commands
# ---------------------------------------------------------------------------


async def _generate(args) -> int:
    from workflow_builder_agent.catalogue.library import CapabilityLibrary
    from workflow_builder_agent.pipeline.models import WorkflowGraph

    coordinator = create_coordinator_from_env()
    kwargs: dict[str, Any] = {}
    if args.existing:
        kwargs["existing_graph"] = WorkflowGraph.model_validate(_read_json(args.existing))
    if args.catalogue:
        kwargs["library"] = CapabilityLibrary(Path(args.catalogue))

    result: dict[str, Any] | None = None
    async for event in coordinator.stream(args.request, **kwargs):
        kind = event["type"]
        if kind == "progress":
            print(f"[{event['stepNumber']}/{event['totalSteps']}] {event['stepName']}", file=sys.stderr)
        elif kind == "chunk":
            if args.stream and not event["complete"]:
                print(event["text"], end="", file=sys.stderr, flush=True)
            elif args.stream:
                print(file=sys.stderr)
        elif kind == "complete":
            result = event
        elif kind == "error":
            err = event["error"]
            print(f"\nFailed ({err['kind']}) at {err['stage'] or 'start'}: {err['message']}", file=sys.stderr)
            return 1

    if result is None:
        return 1
    for warning in result.get("warnings") or []:
        print(f"warning: {warning}", file=sys.stderr)
    usage = result["tokenUsage"]
    print(
        f"\nTokens: {usage['inputTokens']} in / {usage['outputTokens']} out",
        file=sys.stderr,
    )

    output = json.dumps(result["workflow"], indent=2)
    if args.output:
        Path(args.output).write_text(output + "\n", encoding="utf-8")
        print(f"Workflow written to {args.output}", file=sys.stderr)
    else:
        print(output)
    return 0


def _capabilities(args) -> int:
    from workflow_builder_agent.catalogue.library import CapabilityLibrary
    from workflow_builder_agent.pipeline.settings import PipelineSettings

    path = Path(args.catalogue) if args.catalogue else PipelineSettings().catalogue_path
    library = CapabilityLibrary(path)
    for entry in library.all():
        print(f"{entry.type:<10} {entry.id:<32} {entry.name}")
    print(f"\n{len(library)} capabilities", file=sys.stderr)
    return 0


def _serve(args) -> int:
    from workflow_builder_agent.api import serve

    serve(host=args.host, port=args.port, reload=args.reload)
    return 0


# ---------------------------------------------------------------------------
# CLI entry point
# ---------------------------------------------------------------------------


def main() -> None:
    _load_env()
    from workflow_builder_agent.pipeline.settings import PipelineSettings

    logging.basicConfig(level=PipelineSettings().log_level, format="%(levelname)s: %(message)s")

    parser = ArgumentParser(
        prog="workflow-builder",
        description="Workflow Builder Agent: free-text request to validated workflow graph",
    )
    sub = parser.add_subparsers(dest="command", metavar="COMMAND")

    gen_p = sub.add_parser("generate", help="Generate a workflow from a natural-language request")
    gen_p.add_argument("request", help="What the automation should do")
    gen_p.add_argument("--existing", metavar="FILE", help="Existing workflow JSON to modify")
    gen_p.add_argument("--catalogue", metavar="FILE", help="Capability catalogue JSON (default: bundled snapshot)")
    gen_p.add_argument("--stream", action="store_true", help="Echo structure synthesis output as it arrives")
    gen_p.add_argument("--output", "-o", metavar="FILE", help="Write the workflow JSON here instead of stdout")

    cap_p = sub.add_parser("capabilities", help="List the capability catalogue")
    cap_p.add_argument("--catalogue", metavar="FILE", help="Capability catalogue JSON (default: bundled snapshot)")

    serve_p = sub.add_parser("serve", help="Run the HTTP API")
    serve_p.add_argument("--host", default="0.0.0.0")
    serve_p.add_argument("--port", type=int, default=8000)
    serve_p.add_argument("--reload", action="store_true", help="Reload on code changes (development)")

    args = parser.parse_args()

    if args.command == "generate":
        try:
            code = asyncio.run(_generate(args))
        except KeyboardInterrupt:
            print("\n\nInterrupted.", file=sys.stderr)
            code = 130
        sys.exit(code)
    elif args.command == "capabilities":
        sys.exit(_capabilities(args))
    elif args.command == "serve":
        sys.exit(_serve(args))
    else:
        parser.print_help()
        sys.exit(1)


if __name__ == "__main__":
    main()
