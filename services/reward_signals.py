"""
Reward Signal Recorder

Writes impressions when recommendations are rendered and actions when users
interact with a book. Recording never touches the bandit models; rewards
reach the models only through the attribution batch.
"""

from datetime import datetime
from typing import Any, Dict, List, Optional, Sequence
import logging
import math
import uuid

from categories import is_valid_category_value
from config import RecommenderConfig
from errors import ValidationError
from models.records import Action, Identity, Impression
from utils import to_naive_utc, utcnow

logger = logging.getLogger(__name__)


def new_id() -> str:
    return str(uuid.uuid4())


def make_identity(user_id: Optional[str] = None, session_id: Optional[str] = None) -> Identity:
    """Build an identity, rejecting non-string ids."""
    for name, value in (('user_id', user_id), ('session_id', session_id)):
        if value is not None and not isinstance(value, str):
            raise ValidationError(f"{name} must be a string", field=name)
    return Identity(user_id=user_id or None, session_id=session_id or None)


class RewardSignalRecorder:
    """Validates and stores impressions and actions."""

    def __init__(self, store, config: RecommenderConfig = None):
        self.store = store
        self.config = config or RecommenderConfig()

    def points_for(self, action_type: str, action_value: Optional[float] = None) -> float:
        """
        Reward points of an action.

        click = +1, save = +3, unsave = -3 (reverses a save), rate = the
        rating itself, which must lie in [min_rating, max_rating].

        Raises:
            ValidationError: For unknown action types or invalid ratings
        """
        if not is_valid_category_value('action', action_type):
            raise ValidationError(f"Unknown action type: {action_type!r}", field='action_type')

        rewards = self.config.rewards
        if action_type == 'rate':
            if action_value is None or isinstance(action_value, bool):
                raise ValidationError("A rating value is required for 'rate'", field='action_value')
            try:
                value = float(action_value)
            except (TypeError, ValueError):
                raise ValidationError("Rating must be a number", field='action_value')
            if not (rewards.min_rating <= value <= rewards.max_rating):
                raise ValidationError(
                    f"Rating must be between {rewards.min_rating} and {rewards.max_rating}, got {value}",
                    field='action_value'
                )
            return value

        return rewards.points_table()[action_type]

    def _check_book_id(self, book_id):
        if not book_id or not isinstance(book_id, str):
            raise ValidationError("book_id must be a non-empty string", field='book_id')

    def _check_context_vector(self, context_vector) -> List[float]:
        try:
            values = [float(v) for v in context_vector]
        except (TypeError, ValueError):
            raise ValidationError("Context vector must be a sequence of numbers", field='context_vector')
        if len(values) != self.config.bandit.feature_dim:
            raise ValidationError(
                f"Context vector must have length {self.config.bandit.feature_dim}", field='context_vector'
            )
        if not all(math.isfinite(v) for v in values):
            raise ValidationError("Context vector contains non-finite values", field='context_vector')
        return values

    def record_impression(self, identity: Identity, book_id: str, context_vector, arm_id: str,
                          rank: int, score: float = 0.0, metadata: Dict[str, Any] = None,
                          context: Dict[str, Any] = None, created_at: datetime = None) -> str:
        """Store one impression and return its id."""
        return self.record_impressions(
            identity,
            [{'book_id': book_id, 'rank': rank, 'score': score, 'metadata': metadata}],
            context_vector, arm_id, context=context, created_at=created_at,
        )[0]

    def record_impressions(self, identity: Identity, entries: Sequence[Dict[str, Any]], context_vector,
                           arm_id: str, context: Dict[str, Any] = None,
                           created_at: datetime = None) -> List[str]:
        """
        Store a rendered list of books in one transaction.

        Args:
            identity: Viewer of the list
            entries: Dicts with book_id, rank and optional score / metadata
            context_vector: Encoded context the arm was chosen for
            arm_id: Strategy that produced the list
        """
        if not arm_id or not isinstance(arm_id, str):
            raise ValidationError("arm_id must be a non-empty string", field='arm_id')
        vector = self._check_context_vector(context_vector)
        created_at = to_naive_utc(created_at) or utcnow()

        impressions = []
        for entry in entries:
            self._check_book_id(entry.get('book_id'))
            rank = entry.get('rank')
            if isinstance(rank, bool) or not isinstance(rank, int) or rank < 1:
                raise ValidationError("rank must be a positive integer", field='rank')
            impressions.append(Impression(
                impression_id=new_id(),
                identity=identity,
                book_id=entry['book_id'],
                arm_id=arm_id,
                context_vector=vector,
                rank=rank,
                score=float(entry.get('score') or 0.0),
                created_at=created_at,
                context=dict(context or {}),
                metadata=dict(entry.get('metadata') or {}),
            ))

        ids = self.store.insert_impressions(impressions)
        logger.debug(f"Recorded {len(ids)} impressions for arm {arm_id}")
        return ids

    def record_action(self, identity: Identity, book_id: str, action_type: str,
                      action_value: Optional[float] = None, timestamp=None) -> Dict[str, Any]:
        """
        Store a user action. Every call is stored; there is no deduplication.

        Returns:
            Ack with accepted, action_id and the points the action is worth
        """
        self._check_book_id(book_id)
        if not isinstance(action_type, str):
            raise ValidationError("action_type must be a string", field='action_type')
        action_type = action_type.strip().lower()
        points = self.points_for(action_type, action_value)

        try:
            created_at = to_naive_utc(timestamp) or utcnow()
        except ValueError as e:
            raise ValidationError(f"Invalid timestamp: {e}", field='timestamp')

        action = Action(
            action_id=new_id(),
            identity=identity,
            book_id=book_id,
            action_type=action_type,
            created_at=created_at,
            action_value=float(action_value) if action_type == 'rate' else None,
        )
        self.store.insert_action(action)

        logger.info(f"Recorded interaction: identity={identity.user_id or identity.session_id}, "
                    f"book={book_id}, action={action_type}, points={points}")
        return {'accepted': True, 'action_id': action.action_id, 'points': points}
