"""Typed errors raised by the composition engine.

Only the HTTP layer maps these to status codes; the engine itself never
returns error values.
"""
from typing import Any, Dict, Optional


class ComposerError(Exception):
    """Base exception for all composition engine errors."""

    kind = "internal"

    def __init__(self, message: str, error_code: Optional[str] = None, details: Optional[Dict[str, Any]] = None):
        self.message = message
        self.error_code = error_code or self.__class__.__name__
        self.details = details or {}
        super().__init__(self.message)

    def to_dict(self) -> Dict[str, Any]:
        """Convert exception to dictionary for API responses."""
        return {
            "message": self.message,
            "type": self.kind,
            "code": self.error_code,
            "details": self.details,
        }


class ValidationError(ComposerError):
    """Malformed input (drop time, mode, config). Raised before any pool access."""

    kind = "validation"


class NotFoundError(ComposerError):
    kind = "not_found"

    def __init__(self, entity: str, entity_id: Any):
        super().__init__(
            message=f"{entity} {entity_id} not found",
            error_code=f"{entity.upper()}_NOT_FOUND",
            details={"id": str(entity_id)},
        )


class ConflictError(ComposerError):
    """A daily quiz already exists for the drop time, or one is being composed."""

    kind = "conflict"


class QuizLockedError(ComposerError):
    """The quiz has dropped and can no longer be changed."""

    kind = "quiz_dropped"

    def __init__(self, quiz_id: str, action: str):
        super().__init__(
            message=f"Daily quiz {quiz_id} has already dropped; cannot {action}",
            error_code="QUIZ_DROPPED",
            details={"quiz_id": quiz_id, "action": action},
        )


class PoolExhaustedError(ComposerError):
    """Not enough eligible questions even at maximum relaxation."""

    kind = "pool_exhausted"


class TemplateValidationError(ComposerError):
    kind = "internal"

    def __init__(self, issues):
        super().__init__(
            message=f"Template validation failed: {'; '.join(issues)}",
            error_code="TEMPLATE_INVALID",
            details={"issues": list(issues)},
        )
