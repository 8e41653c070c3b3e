"""Exception types raised by the sweep."""
from __future__ import annotations

from typing import Any, Optional


class HexSweepError(RuntimeError):
    pass


class CoverageGenerationError(HexSweepError):
    pass


class QuotaExceededError(HexSweepError):
    """Raised when an estimate or a live reservation denies the operation.

    ``estimate`` and ``remaining`` describe the budget at the time of the
    refusal. When the pipeline aborts mid-run, ``report`` carries the partial
    report built so far.
    """

    def __init__(
        self,
        message: str,
        estimate: Optional[Any] = None,
        remaining: Optional[int] = None,
        report: Optional[Any] = None,
    ) -> None:
        super().__init__(message)
        self.estimate = estimate
        self.remaining = remaining
        self.report = report


class TransientAPIError(HexSweepError):
    def __init__(self, message: str, status_code: Optional[int] = None) -> None:
        super().__init__(message)
        self.status_code = status_code


class BoundaryValidationError(HexSweepError):
    pass


class SplitConfigurationError(HexSweepError):
    pass


class PipelineCancelled(HexSweepError):
    pass
