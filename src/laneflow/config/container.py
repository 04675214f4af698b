"""
Dependency injection container wiring the workflow engine together.

Shared services (template registry, operation table, executor, rollback
controller) are created once. An orchestrator owns exactly one run, so
`Container.create` builds a fresh one for every concurrent run.
"""

from typing import Any

from .settings import Settings, get_settings


class Container:
    """Dependency injection container for shared services and run factories."""

    def __init__(self, settings: Settings | None = None):
        self.settings = settings or get_settings()
        self._services: dict[str, Any] = {}
        self._factories: dict[str, Any] = {}
        self._singletons: dict[str, Any] = {}

    def register_factory(self, name: str, factory: Any) -> None:
        """Register a factory function for a service."""
        self._factories[name] = factory

    def register_singleton(self, name: str, instance: Any) -> None:
        """Register a singleton instance."""
        self._singletons[name] = instance

    def get(self, name: str, default: Any = None) -> Any:
        """Get a shared service by name, creating it on first use."""
        if name in self._singletons:
            return self._singletons[name]

        if name in self._services:
            return self._services[name]

        if name in self._factories:
            instance = self._factories[name](self)
            self._services[name] = instance
            return instance

        return default

    def create(self, name: str) -> Any:
        """Build a new, uncached instance from the registered factory."""
        if name not in self._factories:
            raise KeyError(f"No factory registered for '{name}'")
        return self._factories[name](self)


def setup_container(settings: Settings | None = None) -> Container:
    """Setup container with default service factories."""
    container = Container(settings)

    def _registry_factory(c: Container):
        from ..core.templates import TemplateRegistry

        return TemplateRegistry()

    def _operations_factory(c: Container):
        from ..operations.simulated import build_operation_table

        return build_operation_table(c.settings.simulation, seed=c.settings.seed)

    def _executor_factory(c: Container):
        from ..core.executor import StepExecutor

        return StepExecutor(c.get("operations"))

    def _rollback_factory(c: Container):
        from ..core.rollback import RollbackController

        return RollbackController(step_delay=c.settings.orchestrator.rollback_step_delay)

    def _orchestrator_factory(c: Container):
        from ..core.orchestrator import WorkflowOrchestrator

        return WorkflowOrchestrator(
            c.get("executor"),
            registry=c.get("template_registry"),
            rollback=c.get("rollback_controller"),
            config=c.settings.orchestrator,
        )

    container.register_factory("template_registry", _registry_factory)
    container.register_factory("operations", _operations_factory)
    container.register_factory("executor", _executor_factory)
    container.register_factory("rollback_controller", _rollback_factory)
    container.register_factory("orchestrator", _orchestrator_factory)

    return container

