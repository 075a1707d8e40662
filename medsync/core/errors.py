"""
Engine error taxonomy

Services raise these; the orchestrator and the handler layer translate them
into failure results so nothing propagates past the workflow boundary.
"""

from typing import Any, Dict, List, Optional


class MedsyncError(Exception):
    """Base class for all engine errors"""

    code = "error"

    def __init__(self, message: str, details: Optional[Dict[str, Any]] = None):
        super().__init__(message)
        self.message = message
        self.details = details or {}

    def to_dict(self) -> Dict[str, Any]:
        return {"code": self.code, "message": self.message, "details": self.details}


class ValidationError(MedsyncError):
    """Request rejected before any write (field-level messages)"""

    code = "validation"

    def __init__(
        self,
        errors: List[str],
        warnings: Optional[List[str]] = None,
        message: Optional[str] = None,
    ):
        self.errors = list(errors)
        self.warnings = list(warnings or [])
        super().__init__(
            message or f"Validation failed: {'; '.join(self.errors)}",
            {"errors": self.errors, "warnings": self.warnings},
        )


class NotFoundError(MedsyncError):
    code = "not_found"

    def __init__(self, entity: str, entity_id: str):
        self.entity = entity
        self.entity_id = entity_id
        super().__init__(
            f"{entity} not found: {entity_id}", {"entity": entity, "id": entity_id}
        )


class ConflictError(MedsyncError):
    """A precondition no longer holds (already undone, already exists, ...)"""

    code = "conflict"


class WindowError(MedsyncError):
    """Operation attempted outside its time window"""

    code = "window"

    def __init__(
        self,
        message: str,
        window: str,
        suggestion: Optional[str] = None,
        elapsed_seconds: Optional[float] = None,
    ):
        self.window = window
        self.suggestion = suggestion
        self.elapsed_seconds = elapsed_seconds
        super().__init__(
            message,
            {
                "window": window,
                "suggestion": suggestion,
                "elapsedSeconds": elapsed_seconds,
            },
        )


class InfrastructureError(MedsyncError):
    """Storage or transaction failure"""

    code = "infrastructure"
