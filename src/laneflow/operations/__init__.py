"""Step operations supplied to the executor."""

from .simulated import SimulatedOperations, build_operation_table

__all__ = ["SimulatedOperations", "build_operation_table"]
