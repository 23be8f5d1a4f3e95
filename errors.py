"""
Error taxonomy for the recommendation core.

Library code raises these; only the recommendation engine facade and the
HTTP layer translate them into fallbacks or status codes.
"""

from typing import Optional


class RecommenderError(Exception):
    """Base class for all recommendation core errors."""


class ValidationError(RecommenderError, ValueError):
    """Malformed context, unknown action type or out-of-range value.

    Raised at the boundary before any state is written.
    """

    def __init__(self, message: str, field: Optional[str] = None):
        super().__init__(message)
        self.field = field


class NotFoundError(RecommenderError, LookupError):
    """A referenced book, impression or arm does not exist."""


class NumericInstabilityError(RecommenderError):
    """Matrix inversion failed or produced non-finite values for an arm."""

    def __init__(self, message: str, arm_id: Optional[str] = None):
        super().__init__(message)
        self.arm_id = arm_id


class AttributionConflict(RecommenderError):
    """An action was already attributed, or its reward already applied, by another batch."""

    def __init__(self, action_id: Optional[str], message: Optional[str] = None):
        super().__init__(message or f"Action {action_id} is already attributed")
        self.action_id = action_id
