"""
Command line entry point: run workflow templates against simulated operations.
"""

import argparse
import asyncio
import sys

from . import __version__
from .config.container import Container, setup_container
from .config.settings import Settings, get_settings
from .core.audit import create_run_snapshot, save_run_snapshot
from .core.batch import run_in_batches
from .core.context import ContextPatch
from .core.determinism import ensure_deterministic_startup
from .core.events import LogLine, RollbackAvailable, WorkflowEvent
from .core.state_machine import RunState
from .observability.logging import get_logger, setup_logging
from .observability.metrics import setup_metrics_export
from .observability.tracing import setup_tracing

logger = get_logger(__name__)


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(prog="laneflow", description="Conditional workflow runner")
    parser.add_argument("--list-templates", action="store_true", help="List templates and exit")
    parser.add_argument("--template", default="standard", help="Template key or name to run")
    parser.add_argument("--tasks", type=int, default=1, help="Number of independent runs")
    parser.add_argument(
        "--auto-approve", action="store_true", help="Approve manual approval gates"
    )
    parser.add_argument("--branch", default=None, help="Branch fact for the initial context")
    parser.add_argument("--snapshot-dir", default=None, help="Write run snapshots here")
    parser.add_argument("--version", action="store_true", help="Show version")
    return parser


def _print_templates(container: Container) -> None:
    for template in container.get("template_registry").list():
        steps = " -> ".join(template.step_ids)
        print(f"{template.key:<18} {template.name} [{template.rollback_strategy.value}]")
        print(f"{'':<18} {steps}")


async def run_task(
    container: Container,
    task_index: int,
    template: str,
    branch: str,
    auto_approve: bool = False,
    snapshot_dir: str | None = None,
) -> RunState:
    """Drive one run to a resting state, answering approval gates."""
    orchestrator = container.create("orchestrator")

    def render(event: WorkflowEvent) -> None:
        if isinstance(event, LogLine):
            print(f"[task {task_index}] {event.time_label} {event.level.value:<7} {event.message}")
        elif isinstance(event, RollbackAvailable):
            print(f"[task {task_index}] rollback targets: {', '.join(event.targets)}")

    orchestrator.subscribe(render)
    state = await orchestrator.start_run(template, ContextPatch(branch=branch))
    while state is RunState.AWAITING_APPROVAL:
        if auto_approve:
            state = await orchestrator.approve_waiting_step()
        else:
            state = await orchestrator.skip_waiting_step()

    if snapshot_dir:
        save_run_snapshot(create_run_snapshot(orchestrator.run, {"task": task_index}), snapshot_dir)
    return state


def main(argv=None) -> int:
    """Parse arguments, run the requested tasks and return an exit code."""
    args = build_parser().parse_args(argv)

    if args.version:
        print(f"laneflow v{__version__}")
        return 0

    settings: Settings = get_settings()
    setup_logging(settings.observability.log_level)
    seed, config_hash = ensure_deterministic_startup(settings, settings.seed)

    meter_provider = None
    if settings.observability.enable_metrics:
        meter_provider = setup_metrics_export(
            service_name=settings.observability.service_name,
            service_version=settings.observability.service_version,
            otlp_endpoint=settings.observability.otlp_endpoint,
        )

    tracing_manager = None
    if settings.observability.enable_tracing:
        tracing_manager = setup_tracing(
            service_name=settings.observability.service_name,
            service_version=settings.observability.service_version,
            otlp_endpoint=settings.observability.otlp_endpoint,
        )

    container = setup_container(settings)
    if args.list_templates:
        _print_templates(container)
        return 0
    if args.tasks < 1:
        print("--tasks must be at least 1", file=sys.stderr)
        return 2

    logger.info(
        "laneflow initialized",
        seed=seed,
        config_hash=config_hash[:16] + "...",
        environment=settings.environment,
        template=args.template,
        tasks=args.tasks,
    )

    branch = args.branch or settings.simulation.default_branch

    async def worker(task_index: int) -> RunState:
        return await run_task(
            container,
            task_index,
            args.template,
            branch,
            auto_approve=args.auto_approve,
            snapshot_dir=args.snapshot_dir,
        )

    try:
        results = asyncio.run(
            run_in_batches(
                range(1, args.tasks + 1), worker, settings.orchestrator.batch_size
            )
        )
    finally:
        if tracing_manager:
            tracing_manager.shutdown()
        if meter_provider:
            meter_provider.shutdown()

    completed = sum(1 for r in results if r.ok and r.result is RunState.COMPLETED)
    for r in results:
        outcome = r.result.value if r.ok else f"error: {r.error}"
        print(f"task {r.item}: {outcome}")
    print(f"{completed}/{len(results)} runs completed")
    return 0 if completed == len(results) else 1


def cli_main():
    """CLI entry point."""
    try:
        sys.exit(main())
    except KeyboardInterrupt:
        print("\nlaneflow interrupted")
        sys.exit(130)
    except Exception as e:
        logger.error(f"laneflow failed: {e}")
        print(f"laneflow failed: {e}", file=sys.stderr)
        sys.exit(1)


if __name__ == "__main__":
    cli_main()
