from __future__ import annotations

from typing import Optional


class CodemendError(Exception):
    """Base class for all remediation pipeline errors."""


class DetectorFailure(CodemendError):
    """A detector raised or timed out on a single file."""

    def __init__(self, file_path: str, reason: str):
        super().__init__(f"Detector failed on {file_path}: {reason}")
        self.file_path = file_path
        self.reason = reason


class StrategyFailure(CodemendError):
    """A fix strategy crashed while producing a proposal. Treated as "no attempt"."""

    def __init__(self, strategy: str, reason: str):
        super().__init__(f"Strategy {strategy} failed: {reason}")
        self.strategy = strategy
        self.reason = reason


class ValidationFailure(CodemendError):
    """A candidate patch failed one of the validation gates."""

    def __init__(self, stage: str, detail: str = ""):
        super().__init__(f"Validation failed at {stage}: {detail}")
        self.stage = stage
        self.detail = detail


class ExternalServiceFailure(CodemendError):
    """The external generative service could not produce a patch."""


class TransientServiceError(ExternalServiceFailure):
    """Timeout or rate limit; retried with backoff before giving up."""

    def __init__(self, message: str, retry_after: Optional[float] = None):
        super().__init__(message)
        self.retry_after = retry_after


class DataStoreFailure(CodemendError):
    """The relational store rejected or failed an operation."""


class InvalidTransition(DataStoreFailure):
    """An issue state transition was illegal or lost a compare-and-swap race."""

    def __init__(self, issue_id: str, current: Optional[str], target: str):
        super().__init__(f"Issue {issue_id}: cannot move from {current} to {target}")
        self.issue_id = issue_id
        self.current = current
        self.target = target
