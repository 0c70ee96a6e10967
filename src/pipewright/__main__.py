"""pipewright CLI entry point."""

from __future__ import annotations

import argparse
import asyncio
import logging
import sys
from pathlib import Path

# Exit code when the pipeline never starts (bad config, dependency cycle)
EXIT_CONFIG_ERROR = 3


def _add_common_arguments(parser: argparse.ArgumentParser) -> None:
    parser.add_argument(
        "--config",
        "-c",
        type=Path,
        default=Path("pipewright.yml"),
        help="Path to the pipeline config (default: pipewright.yml)",
    )
    parser.add_argument(
        "--log-level",
        default="INFO",
        choices=["DEBUG", "INFO", "WARNING", "ERROR"],
        help="Logging level (default: INFO)",
    )


def _add_trigger_arguments(parser: argparse.ArgumentParser) -> None:
    parser.add_argument(
        "--source",
        default="push",
        choices=["push", "merge_request_event", "schedule", "web", "trigger", "api"],
        help="Pipeline source (default: push)",
    )
    parser.add_argument("--ref", default="main", help="Branch or tag name (default: main)")
    parser.add_argument("--tag", action="store_true", help="Treat --ref as a tag")
    parser.add_argument("--default-branch", default="main", help="Default branch (default: main)")
    parser.add_argument("--message", default="", help="Commit message")
    parser.add_argument("--schedule-name", help="Schedule name for --source schedule")
    parser.add_argument("--mr-title", help="Merge request title")
    parser.add_argument(
        "--mr-event-type",
        default="detached",
        help="Merge request event type (default: detached)",
    )
    parser.add_argument("--target-branch", default="", help="Merge request target branch")
    parser.add_argument("--source-branch", default="", help="Merge request source branch")
    parser.add_argument(
        "--changed-file",
        action="append",
        dest="changed_files",
        help="Changed file path (repeatable). Without any, the diff is unknown",
    )
    parser.add_argument(
        "--changed-files-from",
        type=Path,
        help="File listing changed paths, one per line",
    )
    parser.add_argument(
        "--var",
        action="append",
        default=[],
        metavar="NAME=VALUE",
        help="Pipeline variable (repeatable)",
    )


def _trigger_from_args(args):
    from pipewright.pipeline.models import EventSource, MergeRequestInfo, TriggerContext

    changed: set[str] | None = None
    if args.changed_files or args.changed_files_from:
        changed = set(args.changed_files or [])
        if args.changed_files_from:
            lines = args.changed_files_from.read_text().splitlines()
            changed.update(line.strip() for line in lines if line.strip())

    variables: dict[str, str] = {}
    for item in args.var:
        name, sep, value = item.partition("=")
        if not sep or not name:
            raise ValueError(f"--var expects NAME=VALUE, got {item!r}")
        variables[name] = value

    source = EventSource(args.source)
    merge_request = None
    if source == EventSource.MERGE_REQUEST or args.mr_title:
        merge_request = MergeRequestInfo(
            title=args.mr_title or "",
            event_type=args.mr_event_type,
            target_branch=args.target_branch,
            source_branch=args.source_branch or args.ref,
        )

    return TriggerContext(
        source=source,
        ref=args.ref,
        is_tag=args.tag,
        merge_request=merge_request,
        schedule_name=args.schedule_name,
        changed_files=frozenset(changed) if changed is not None else None,
        commit_message=args.message,
        default_branch=args.default_branch,
        variables=variables,
    )


def _validate(args) -> int:
    from pipewright.config import load_config
    from pipewright.pipeline.rules import find_unreachable_rules

    config = load_config(args.config)
    problems = 0
    for template in config.visible_templates:
        for idx in find_unreachable_rules(template.rules or []):
            print(f"warning: {template.name}: rule #{idx} is unreachable")
            problems += 1
    print(
        f"{args.config}: OK ({len(config.visible_templates)} jobs, "
        f"{len(config.templates) - len(config.visible_templates)} templates, "
        f"{problems} warnings)"
    )
    return 0


def _plan(args) -> int:
    from pipewright.config import load_config
    from pipewright.pipeline.coordinator import PipelineCoordinator
    from pipewright.pipeline.executor import ScriptRunner

    config = load_config(args.config)
    coordinator = PipelineCoordinator(config, ScriptRunner(config.base_dir))
    graph = coordinator.plan(_trigger_from_args(args))

    if not len(graph):
        print("No jobs match this trigger")
        return 0
    width = max(len(key) for key in graph.instances)
    for key in graph.topological_order():
        instance = graph.instances[key]
        needs = ", ".join(instance.depends_on) or "-"
        flags = " (allow_failure)" if instance.allow_failure else ""
        print(f"{key:<{width}}  {instance.stage:<10} {instance.when.value:<10} needs: {needs}{flags}")
    for warning in graph.warnings:
        print(f"warning: {warning}")
    return 0


async def _run(args) -> int:
    import aiosqlite

    from pipewright.config import load_config
    from pipewright.notifications import build_notifiers, close_notifiers
    from pipewright.pipeline.coordinator import PipelineCoordinator
    from pipewright.pipeline.executor import ScriptRunner
    from pipewright.pipeline.registry import PipelineRegistry
    from pipewright.pipeline.reporter import format_summary

    config = load_config(args.config)
    settings = config.orchestrator
    if args.concurrency:
        settings.concurrency = args.concurrency
    workdir = config.resolve_path(settings.workdir)
    trigger = _trigger_from_args(args)

    db = None
    registry = None
    if not args.no_db:
        db_path = config.resolve_path(settings.db_path)
        db_path.parent.mkdir(parents=True, exist_ok=True)
        db = await aiosqlite.connect(str(db_path))
        db.row_factory = aiosqlite.Row
        registry = PipelineRegistry(db)
        await registry.initialize()

    notifiers = build_notifiers(config.notifications)
    try:
        coordinator = PipelineCoordinator(
            config,
            ScriptRunner(workdir, log_dir=config.resolve_path(settings.log_dir)),
            registry=registry,
            notifiers=notifiers,
            project_dir=workdir,
        )
        report = await coordinator.run_pipeline(trigger, wait_for_manual=False)
    finally:
        await close_notifiers(notifiers)
        if db is not None:
            await db.close()

    print(format_summary(report))
    if args.report:
        args.report.write_text(report.model_dump_json(indent=2))
    return report.exit_code


def _serve(args) -> None:
    import uvicorn

    from pipewright.config import load_config
    from pipewright.server import create_app

    config = load_config(args.config)
    host = args.host or config.orchestrator.host
    port = args.port or config.orchestrator.port
    app = create_app(args.config)
    uvicorn.run(app, host=host, port=port, log_level=args.log_level.lower())


def main():
    parser = argparse.ArgumentParser(
        prog="pipewright",
        description="pipewright — CI pipeline orchestration engine",
    )

    subparsers = parser.add_subparsers(dest="command")

    # pipewright validate
    validate_parser = subparsers.add_parser("validate", help="Load and check a pipeline config")
    _add_common_arguments(validate_parser)

    # pipewright plan
    plan_parser = subparsers.add_parser("plan", help="Show the jobs a trigger would run")
    _add_common_arguments(plan_parser)
    _add_trigger_arguments(plan_parser)

    # pipewright run
    run_parser = subparsers.add_parser("run", help="Run a pipeline locally")
    _add_common_arguments(run_parser)
    _add_trigger_arguments(run_parser)
    run_parser.add_argument(
        "--concurrency",
        type=int,
        help="Maximum simultaneous jobs (default: from config)",
    )
    run_parser.add_argument(
        "--report",
        type=Path,
        help="Write the execution report as JSON to this path",
    )
    run_parser.add_argument(
        "--no-db",
        action="store_true",
        help="Do not record the run in the SQLite registry",
    )

    # pipewright serve
    serve_parser = subparsers.add_parser("serve", help="Start the HTTP server")
    _add_common_arguments(serve_parser)
    serve_parser.add_argument("--host", help="Host to bind to (default: from config)")
    serve_parser.add_argument("--port", type=int, help="Port to bind to (default: from config)")

    args = parser.parse_args()

    if args.command is None:
        parser.print_help()
        sys.exit(1)

    logging.basicConfig(
        level=getattr(logging, args.log_level),
        format="%(asctime)s [%(levelname)s] %(name)s: %(message)s",
        datefmt="%Y-%m-%d %H:%M:%S",
    )

    from pipewright.pipeline.errors import PipelineError

    try:
        if args.command == "validate":
            sys.exit(_validate(args))
        if args.command == "plan":
            sys.exit(_plan(args))
        if args.command == "run":
            sys.exit(asyncio.run(_run(args)))
        if args.command == "serve":
            _serve(args)
    except (FileNotFoundError, ValueError, PipelineError) as e:
        print(f"Error: {e}", file=sys.stderr)
        sys.exit(EXIT_CONFIG_ERROR)


if __name__ == "__main__":
    main()
