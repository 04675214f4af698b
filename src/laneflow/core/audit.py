"""
Run snapshots for the audit trail.
"""

import json
from pathlib import Path
from typing import Any

from ..observability.logging import get_logger
from ..observability.metrics import get_metrics_collector
from .determinism import get_config_hash
from .run import WorkflowRun
from .steps import StepStatus

logger = get_logger(__name__)


def create_run_snapshot(
    run: WorkflowRun, additional_data: dict[str, Any] | None = None
) -> dict[str, Any]:
    """
    Create a snapshot of a run for audit purposes.

    Args:
        run: The run to capture, usually a finished one
        additional_data: Extra top-level keys to merge in

    Returns:
        JSON-serializable snapshot dictionary
    """
    snapshot = run.to_dict()
    elapsed = [s.elapsed_ms for s in run.step_states.values() if s.elapsed_ms is not None]
    snapshot["config_sha256"] = get_config_hash()
    snapshot["metadata"] = {
        "total_steps": len(run.step_states),
        "completed": run.count(StepStatus.COMPLETED),
        "skipped": run.count(StepStatus.SKIPPED),
        "failed": run.count(StepStatus.FAILED),
        "rolled_back": run.count(StepStatus.ROLLED_BACK),
        "total_duration_ms": sum(elapsed),
        "progress": round(run.progress, 1),
    }
    snapshot["step_metrics"] = get_metrics_collector().get_business_metrics()

    if additional_data:
        snapshot.update(additional_data)

    return snapshot


def save_run_snapshot(snapshot: dict[str, Any], artifacts_dir: Path | str = "artifacts") -> Path:
    """
    Save a run snapshot to the artifacts directory.

    Returns:
        Path to the saved snapshot file
    """
    artifacts_path = Path(artifacts_dir)
    artifacts_path.mkdir(parents=True, exist_ok=True)

    snapshot_file = artifacts_path / f"workflow_run_{snapshot['run_id']}.json"

    try:
        snapshot_file.write_text(json.dumps(snapshot, indent=2))
    except OSError as e:
        logger.error(f"Failed to save run snapshot: {e}")
        raise

    logger.info(f"Saved run snapshot: {snapshot_file}")
    return snapshot_file
