"""
Determinism utilities for reproducible runs.
"""

import hashlib
import json
import os
import random
from typing import Any

from ..observability.logging import get_logger

logger = get_logger(__name__)

# Hash of the frozen startup configuration, stamped on run snapshots
CONFIG_SHA256: str = ""


def _reset_config_hash_for_tests():
    """Reset config hash for test isolation."""
    global CONFIG_SHA256
    CONFIG_SHA256 = ""


def seed_everything(seed: int | None = None) -> int:
    """Seed the process-wide random generator."""
    if seed is None:
        seed = int(os.getenv("LANEFLOW_SEED", "1337"))

    random.seed(seed)
    os.environ["PYTHONHASHSEED"] = str(seed)

    logger.info(f"Seeded RNG with seed: {seed}")
    return seed


def freeze_config_and_hash(config: Any) -> str:
    """
    Freeze configuration at startup and generate a deterministic hash.

    Args:
        config: Pydantic model or JSON-serializable object to hash

    Returns:
        SHA256 hex digest of the configuration
    """
    global CONFIG_SHA256

    if hasattr(config, "model_dump"):
        config = config.model_dump(mode="json")

    blob = json.dumps(config, default=str, sort_keys=True, separators=(",", ":")).encode("utf-8")
    CONFIG_SHA256 = hashlib.sha256(blob).hexdigest()

    logger.info(f"CONFIG_SHA256 {CONFIG_SHA256}")
    return CONFIG_SHA256


def get_config_hash() -> str:
    """Get the current config hash."""
    return CONFIG_SHA256


def ensure_deterministic_startup(config: Any, seed: int | None = None) -> tuple[int, str]:
    """
    Seed the RNG and hash the configuration.

    Returns:
        Tuple of (seed, config_hash)
    """
    seed = seed_everything(seed)
    config_hash = freeze_config_and_hash(config)

    logger.info("Deterministic startup complete", seed=seed, config_hash=config_hash[:16] + "...")

    return seed, config_hash
