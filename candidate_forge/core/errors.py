# Error taxonomy shared by every agent
from typing import Any, Optional


class ForgeError(Exception):
    """Base class for all errors raised inside the pipeline."""


class ValidationError(ForgeError, ValueError):
    """Bad input or configuration. Fatal, never retried."""


class EvolutionStateError(ValidationError):
    """An operation was requested that the run's lifecycle does not allow."""


class TransientExternalError(ForgeError):
    """An external collaborator failed in a way that may succeed on retry."""


class PersistenceError(ForgeError):
    """The project store could not read or write a record."""


class CriticalQualityFailure(ForgeError):
    """The quality checkpoint decided to abort. Fatal, triggers compensation."""

    def __init__(self, message: str, checkpoint_result: Optional[Any] = None):
        super().__init__(message)
        self.checkpoint_result = checkpoint_result


class StepFailure(ForgeError):
    """Terminal failure of one saga step after its retries were exhausted."""

    def __init__(self, stage: str, attempt_count: int, cause: BaseException):
        super().__init__(f"Step '{stage}' failed after {attempt_count} attempt(s): {cause}")
        self.stage = stage
        self.attempt_count = attempt_count
        self.cause = cause

    def to_dict(self) -> dict:
        return {
            "stage": self.stage,
            "attempt_count": self.attempt_count,
            "cause": f"{type(self.cause).__name__}: {self.cause}",
        }


def is_retryable(error: BaseException) -> bool:
    """Fatal taxonomy members are never retried; anything else follows the step policy."""
    if isinstance(error, (ValidationError, CriticalQualityFailure)):
        return False
    return True
