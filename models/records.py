"""
Domain records shared by the reward recorder, store and attribution engine.
"""

from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Dict, List, Optional

from errors import ValidationError

ANONYMOUS_SCOPE = 'anonymous'


@dataclass(frozen=True)
class Identity:
    """Who saw or acted on a book: a signed-in user, an anonymous session, or both."""
    user_id: Optional[str] = None
    session_id: Optional[str] = None

    def __post_init__(self):
        if not (self.user_id or self.session_id):
            raise ValidationError("Either user_id or session_id is required", field='identity')

    @property
    def scope(self) -> str:
        """Model scope for per-user arm parameters."""
        return self.user_id or ANONYMOUS_SCOPE


@dataclass
class Impression:
    """A book shown to an identity by one strategy arm."""
    impression_id: str
    identity: Identity
    book_id: str
    arm_id: str
    context_vector: List[float]
    rank: int
    score: float
    created_at: datetime
    context: Dict[str, Any] = field(default_factory=dict)
    metadata: Dict[str, Any] = field(default_factory=dict)
    reward: Optional[float] = None
    attributed_at: Optional[datetime] = None


@dataclass
class Action:
    """A user interaction with a book. Write-once apart from the attribution marker."""
    action_id: str
    identity: Identity
    book_id: str
    action_type: str
    created_at: datetime
    action_value: Optional[float] = None
    attributed_impression_id: Optional[str] = None
    attributed_at: Optional[datetime] = None


@dataclass
class Attribution:
    """Ledger row linking an action to the impression it credited."""
    action_id: str
    impression_id: str
    points: float
    decay_weight: float
    reward: float
    attributed_at: datetime
    model_applied: bool = False
    model_error: Optional[str] = None
