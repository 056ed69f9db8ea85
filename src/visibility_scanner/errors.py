"""Error taxonomy shared by all scanner components."""

from __future__ import annotations

from typing import Any, Optional


class ScannerError(Exception):
    """Base class for errors surfaced to callers as structured documents."""

    code = "scanner_error"

    def __init__(self, message: str, details: Optional[dict[str, Any]] = None) -> None:
        super().__init__(message)
        self.message = message
        self.details = details or {}

    def to_dict(self) -> dict[str, Any]:
        return {"code": self.code, "message": self.message, "details": self.details}


class PreconditionError(ScannerError):
    """Operation requested in a state that does not allow it. No state was mutated."""

    code = "precondition_failed"


class DataError(ScannerError):
    """Input rejected before any expensive work started."""

    code = "invalid_data"


class ThresholdExceededError(ScannerError):
    """Too many unit-level failures; the containing operation was escalated."""

    code = "threshold_exceeded"


class IndexUnavailableError(ScannerError):
    """An index was discarded or never became queryable."""

    code = "index_unavailable"


class NotFoundError(ScannerError):
    code = "not_found"


class CollaboratorError(ScannerError):
    """An external collaborator (embedding provider, LLM) failed or timed out."""

    code = "collaborator_error"
