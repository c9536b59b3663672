"""Stagehand CLI entry point."""

from __future__ import annotations

import argparse
import asyncio
import json
import logging
import signal
import sys
from pathlib import Path

# ── Default templates for `stagehand init` ───────────────────────────────────

_DEFAULT_SELECTION = """\
# .stagehand/workflow-selection.yaml: which workflow a work order runs
defaultWorkflowId: feature_request

rules:
  - id: hotfix
    workflowId: bug_fix
    priority: [P0]
    precedes: [bugs]
  - id: bugs
    workflowId: bug_fix
    tagsAny: [bug, regression]
    titleKeywordsAny: [bug, fix, crash, regression]
  - id: epics
    workflowId: story_loop
    tagsAny: [epic]
"""

_DEFAULT_WORKFLOWS = {
    "feature_request.yaml": """\
id: feature_request
description: Plan, build, review, and ship a new feature.
stages:
  - ref: plan
    agent: plan
  - ref: plan_review
    agent: build_review
    loopTarget: plan
    maxIterations: 2
  - ref: build
    agent: build
  - ref: build_review
    agent: build_review
    loopTarget: build
    maxIterations: 2
  - ref: security
    agent: security
    optional: true
    condition: security_relevant
    canVeto: true
  - ref: ops
    agent: ops
    optional: true
    condition: deployment_needed
""",
    "bug_fix.yaml": """\
id: bug_fix
description: Fix a defect with a review gate and an optional security pass.
stages:
  - ref: build
    agent: build
  - ref: build_review
    agent: build_review
    loopTarget: build
    maxIterations: 2
  - ref: security
    agent: security
    optional: true
    condition: security_relevant
    canVeto: true
""",
    "story_loop.yaml": """\
id: story_loop
description: Plan an epic into stories, build them one at a time with verification.
stages:
  - ref: plan
    agent: plan
  - ref: build
    agent: build
    type: loop
    loop:
      maxStories: 10
      verifyEach: true
      verifyStageRef: build_review
  - ref: build_review
    agent: build_review
  - ref: ops
    agent: ops
    optional: true
    condition: deployment_needed
""",
}


def _init_project(repo_root: Path) -> None:
    """Scaffold a .stagehand/ directory with default configuration."""
    from stagehand.config import DEFAULT_CONFIG_YAML

    stagehand_dir = repo_root / ".stagehand"
    workflows_dir = stagehand_dir / "workflows"

    if stagehand_dir.exists():
        print(f"Error: {stagehand_dir} already exists", file=sys.stderr)
        print("Remove it first if you want to re-initialize.", file=sys.stderr)
        sys.exit(1)

    workflows_dir.mkdir(parents=True)
    (stagehand_dir / "config.yaml").write_text(DEFAULT_CONFIG_YAML)
    (stagehand_dir / "workflow-selection.yaml").write_text(_DEFAULT_SELECTION)
    for filename, content in _DEFAULT_WORKFLOWS.items():
        (workflows_dir / filename).write_text(content)

    print(f"Initialized Stagehand project at {stagehand_dir}")
    print("\nCreated:")
    print("  .stagehand/config.yaml")
    print("  .stagehand/workflow-selection.yaml")
    for filename in _DEFAULT_WORKFLOWS:
        print(f"  .stagehand/workflows/{filename}")
    print("\nNext steps:")
    print("  1. Point gateway.base_url at your agent gateway")
    print("  2. Register your agents under `agents:` in config.yaml")
    print("  3. Run: stagehand validate")


# ── Engine Wiring ────────────────────────────────────────────────────────────


def _resolve(repo_root: Path, path: str) -> Path:
    p = Path(path)
    return p if p.is_absolute() else repo_root / p


def _load(repo_root: Path):
    from stagehand.config import load_config
    from stagehand.workflow import WorkflowRegistry

    config = load_config(repo_root / ".stagehand")
    registry = WorkflowRegistry(_resolve(repo_root, config.workflow_dir))
    return config, registry


async def _with_engine(repo_root: Path, action):
    """Open the store and gateway, build an engine, run ``action(engine)``."""
    from stagehand.agents import StoreAgentResolver
    from stagehand.engine import WorkflowEngine
    from stagehand.gateway import HttpGateway
    from stagehand.store import EngineStore

    config, registry = _load(repo_root)
    db_path = _resolve(repo_root, config.database_path)
    db_path.parent.mkdir(parents=True, exist_ok=True)

    store = EngineStore(str(db_path))
    gateway = HttpGateway(
        config.gateway.base_url,
        token=config.gateway.resolve_token(),
        timeout=config.gateway.timeout_seconds,
    )
    await store.initialize()
    await gateway.start()
    try:
        for agent in config.agents:
            await store.upsert_agent(agent)
        engine = WorkflowEngine(store, registry, StoreAgentResolver(store), gateway, config)
        return await action(engine)
    finally:
        await gateway.close()
        await store.close()


def _print_model(model) -> None:
    print(model.model_dump_json(indent=2))


async def _run_forever(engine) -> None:
    stop = asyncio.Event()
    loop = asyncio.get_running_loop()
    for sig in (signal.SIGINT, signal.SIGTERM):
        try:
            loop.add_signal_handler(sig, stop.set)
        except NotImplementedError:
            pass  # Windows

    await engine.ticker.start()
    try:
        await stop.wait()
    finally:
        await engine.ticker.stop()


# ── Commands ─────────────────────────────────────────────────────────────────


def _validate(repo_root: Path) -> None:
    from stagehand.errors import StagehandError

    try:
        config, registry = _load(repo_root)
        workflows = registry.list_workflows()
        selection = registry.get_selection_config()
    except (FileNotFoundError, ValueError, StagehandError) as e:
        print(f"Error: {e}", file=sys.stderr)
        sys.exit(1)

    print(f"Engine: {config.engine_id}")
    print(f"Agents: {len(config.agents)}")
    print(f"Default workflow: {selection.default_workflow_id}")
    for workflow in workflows:
        refs = " → ".join(s.ref for s in workflow.stages)
        print(f"  {workflow.id}: {refs}")
    print(f"Selection rules: {len(selection.rules)}")


def _submit(args: argparse.Namespace) -> None:
    from stagehand.models import WorkOrder
    from stagehand.store import new_id

    async def action(engine):
        wo = WorkOrder(
            id=args.id or new_id("wo"),
            title=args.title,
            goal=args.goal or "",
            priority=args.priority,
            tags=args.tag or [],
            workflow_id=args.workflow,
        )
        await engine.store.create_work_order(wo)
        print(wo.id)

    asyncio.run(_with_engine(args.repo_root, action))


def _parse_json(raw: str | None, flag: str, *, object_only: bool = True):
    if raw is None:
        return {} if object_only else None
    try:
        value = json.loads(raw)
    except ValueError as e:
        print(f"Error: {flag} is not valid JSON: {e}", file=sys.stderr)
        sys.exit(1)
    if object_only and not isinstance(value, dict):
        print(f"Error: {flag} must be a JSON object", file=sys.stderr)
        sys.exit(1)
    return value


def _stage_result(args: argparse.Namespace):
    from stagehand.models import StageResult, StageResultStatus

    return StageResult(
        status=StageResultStatus(args.status),
        output=_parse_json(args.output, "--output", object_only=False),
        feedback=args.feedback,
        artifacts=args.artifact or [],
    )


def _build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="stagehand",
        description="Stagehand — multi-agent workflow orchestration engine",
    )
    parser.add_argument(
        "--repo-root",
        type=Path,
        default=Path.cwd(),
        help="Directory containing .stagehand/ (default: current directory)",
    )
    parser.add_argument(
        "--log-level",
        default="INFO",
        choices=["DEBUG", "INFO", "WARNING", "ERROR"],
        help="Logging level (default: INFO)",
    )

    subparsers = parser.add_subparsers(dest="command")

    subparsers.add_parser("init", help="Initialize a .stagehand/ directory")
    subparsers.add_parser("validate", help="Load and check config and workflow definitions")

    submit_parser = subparsers.add_parser("submit", help="Create a planned work order")
    submit_parser.add_argument("title")
    submit_parser.add_argument("--goal", help="Goal text sent to agents")
    submit_parser.add_argument("--priority", default="P2", help="Priority (default: P2)")
    submit_parser.add_argument("--tag", action="append", help="Tag (repeatable)")
    submit_parser.add_argument("--workflow", help="Pin a workflow id")
    submit_parser.add_argument("--id", help="Explicit work order id")

    start_parser = subparsers.add_parser("start", help="Start a work order")
    start_parser.add_argument("work_order_id")
    start_parser.add_argument("--workflow", help="Override the selected workflow")
    start_parser.add_argument("--force", action="store_true", help="Restart even if active")
    start_parser.add_argument("--context", help="Start context as a JSON object")

    resume_parser = subparsers.add_parser("resume", help="Resume a blocked work order")
    resume_parser.add_argument("work_order_id")
    resume_parser.add_argument("--reason", default="manual")

    complete_parser = subparsers.add_parser(
        "complete", help="Report an agent's result for an operation"
    )
    complete_parser.add_argument("operation_id")
    complete_parser.add_argument(
        "--status", required=True, choices=["approved", "rejected", "vetoed", "completed"]
    )
    complete_parser.add_argument("--feedback", help="Reviewer or agent feedback")
    complete_parser.add_argument("--output", help="Stage output as JSON (e.g. a story list)")
    complete_parser.add_argument("--artifact", action="append", help="Artifact URL (repeatable)")
    complete_parser.add_argument("--token", help="Idempotency token for retried reports")

    tick_parser = subparsers.add_parser("tick", help="Run one queue tick")
    tick_parser.add_argument("--limit", type=int, help="Max work orders to scan")
    tick_parser.add_argument("--dry-run", action="store_true", help="Report without starting")

    recover_parser = subparsers.add_parser("recover", help="Recover stale operations")
    recover_parser.add_argument("--limit", type=int, help="Max operations to inspect")
    recover_parser.add_argument(
        "--no-dispatch", action="store_true", help="Requeue without redispatching"
    )

    run_parser = subparsers.add_parser("run", help="Tick the queue until interrupted")
    run_parser.add_argument("--interval", type=float, help="Seconds between ticks")

    return parser


async def _run_command(engine, args: argparse.Namespace):
    """Execute an engine-backed subcommand; returns the result model, if any."""
    if args.command == "start":
        return await engine.start_work_order(
            args.work_order_id,
            context=_parse_json(args.context, "--context"),
            force=args.force,
            workflow_id_override=args.workflow,
        )
    if args.command == "resume":
        return await engine.resume_work_order(args.work_order_id, reason=args.reason)
    if args.command == "complete":
        return await engine.advance_on_completion(
            args.operation_id, _stage_result(args), completion_token=args.token
        )
    if args.command == "tick":
        return await engine.tick_queue(limit=args.limit, dry_run=args.dry_run)
    if args.command == "recover":
        return await engine.recover_stale_operations(
            limit=args.limit, auto_dispatch=not args.no_dispatch
        )
    if args.command == "run":
        if args.interval:
            engine.ticker.interval = args.interval
        await _run_forever(engine)
        return None
    raise ValueError(f"Unknown command: {args.command}")


def main():
    parser = _build_parser()
    args = parser.parse_args()

    if args.command is None:
        parser.print_help()
        sys.exit(1)

    if args.command == "init":
        _init_project(args.repo_root)
        return

    logging.basicConfig(
        level=getattr(logging, args.log_level),
        format="%(asctime)s [%(levelname)s] %(name)s: %(message)s",
        datefmt="%Y-%m-%d %H:%M:%S",
    )

    if args.command == "validate":
        _validate(args.repo_root)
        return

    if args.command == "submit":
        _submit(args)
        return

    from stagehand.errors import StagehandError

    try:
        result = asyncio.run(
            _with_engine(args.repo_root, lambda engine: _run_command(engine, args))
        )
    except (FileNotFoundError, StagehandError) as e:
        print(f"Error: {e}", file=sys.stderr)
        sys.exit(1)

    if result is not None:
        _print_model(result)


if __name__ == "__main__":
    main()
