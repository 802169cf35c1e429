"""
Base error types for stepflow.

Component-specific errors live next to the code that raises them and
derive from StepflowError so drivers can catch the whole family.
"""


class StepflowError(Exception):
    """Base class for all stepflow errors."""
    pass


class StepExecutionError(StepflowError):
    """A step could not be executed. The step pointer is not advanced."""

    def __init__(self, step: str, message: str):
        self.step = step
        self.message = message
        super().__init__(f"[{step}] {message}")
