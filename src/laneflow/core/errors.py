"""Exceptions raised by the workflow engine for caller errors."""


class WorkflowError(Exception):
    """Base class for workflow engine errors."""


class TemplateNotFoundError(WorkflowError):
    """No template is registered under the requested name."""

    def __init__(self, name: str):
        super().__init__(f"Template '{name}' not found")
        self.name = name


class TemplateValidationError(WorkflowError):
    """A template cannot be run as declared."""

    def __init__(self, template_name: str, problems: list[str]):
        super().__init__(f"Template '{template_name}' is invalid: " + "; ".join(problems))
        self.template_name = template_name
        self.problems = problems


class RunStateError(WorkflowError):
    """The operation is not valid in the run's current state."""


class InvalidResumeError(RunStateError):
    """A resume signal was sent while nothing is waiting for it."""


class RollbackNotAvailableError(WorkflowError):
    """The template's rollback strategy does not offer rollback."""


class InvalidRollbackTargetError(WorkflowError):
    """The requested rollback target is not a valid checkpoint."""

    def __init__(self, step_id: str, reason: str):
        super().__init__(f"Cannot roll back to '{step_id}': {reason}")
        self.step_id = step_id
        self.reason = reason
