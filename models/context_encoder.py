"""
Context Encoder for Book Recommendations

Turns a reading context (mood, situation, goal, time of day and optional
user-level signals) into the fixed-length vector consumed by the LinUCB
selector. Encoding is pure: the same context always yields the same vector,
and the wall clock is never consulted.

Layout (44 dims):
    mood        8 semantic + 1 unknown
    situation   8 semantic + 1 unknown
    goal        8 semantic + 1 unknown
    temporal    time-of-day one-hot 4 + unknown 1, hour sin/cos,
                day-of-week sin/cos, weekend flag
    user        has-account, engagement, diversity, fiction / nonfiction /
                mixed preference, bias
"""

from collections.abc import Mapping
from typing import Any, Dict, Optional
import logging

import numpy as np

from categories import (
    GOAL_KEYWORDS,
    MOOD_KEYWORDS,
    TIME_OF_DAY_HOURS,
)
from errors import ValidationError
from utils import (
    cosine_similarity_vectors,
    cyclical_encoding,
    encode_categorical_feature,
    encode_semantic_feature,
    l2_normalise,
)

logger = logging.getLogger(__name__)

SEMANTIC_FIELDS = ('mood', 'situation', 'goal')
CONTEXT_FIELDS = SEMANTIC_FIELDS + ('time_of_day',)

USER_DEFAULTS = {
    'engagement_level': 0.5,
    'diversity_score': 0.5,
    'preference_fiction': 0.5,
    'preference_nonfiction': 0.5,
    'preference_mixed': 0.5,
}

CONTEXT_DIM = 44


def time_of_day_for_hour(hour: int) -> str:
    """Map an hour (0-23) to its time-of-day bucket."""
    if 5 <= hour < 12:
        return 'morning'
    if 12 <= hour < 17:
        return 'afternoon'
    if 17 <= hour < 21:
        return 'evening'
    return 'night'


def smart_defaults(hour: int, day_of_week: int) -> Dict[str, str]:
    """
    Suggest a default mood/situation/goal for a moment in the week.

    Args:
        hour: Hour of day, 0-23
        day_of_week: 0 = Monday ... 6 = Sunday

    Returns:
        Dictionary with mood, situation, goal and time_of_day
    """
    _check_range(hour, 0, 23, 'hour')
    _check_range(day_of_week, 0, 6, 'day_of_week')

    time_of_day = time_of_day_for_hour(hour)
    is_weekend = day_of_week >= 5

    defaults = {
        'morning': {
            'mood': 'motivated',
            'situation': 'weekend' if is_weekend else 'commuting',
            'goal': 'learning',
        },
        'afternoon': {
            'mood': 'curious',
            'situation': 'weekend' if is_weekend else 'lunch_break',
            'goal': 'entertainment',
        },
        'evening': {
            'mood': 'relaxed',
            'situation': 'weekend' if is_weekend else 'evening',
            'goal': 'escape',
        },
        'night': {
            'mood': 'peaceful',
            'situation': 'before_bed',
            'goal': 'relaxation',
        },
    }

    result = dict(defaults[time_of_day])
    result['time_of_day'] = time_of_day
    return result


def _check_range(value: Any, low: int, high: int, field: str) -> int:
    if isinstance(value, bool) or not isinstance(value, (int, np.integer)):
        raise ValidationError(f"{field} must be an integer", field=field)
    if not (low <= value <= high):
        raise ValidationError(f"{field} must be between {low} and {high}, got {value}", field=field)
    return int(value)


def _category_value(context: Mapping, field: str) -> Optional[str]:
    value = context.get(field)
    if value is None:
        return None
    if not isinstance(value, str):
        raise ValidationError(f"{field} must be a string", field=field)
    value = value.strip().lower()
    return value or None


class ContextEncoder:
    """Deterministic context-to-vector encoder."""

    def __init__(self, normalise: bool = True):
        self.normalise = normalise
        self.dimension = CONTEXT_DIM

    def encode(self, context: Mapping, user_id: Optional[str] = None) -> np.ndarray:
        """
        Encode a reading context as a read-only vector of length 44.

        Args:
            context: Mapping with optional mood, situation, goal, time_of_day,
                hour, day_of_week and a nested 'user' mapping of signals
            user_id: Signed-in user, sets the has-account feature

        Raises:
            ValidationError: If the context is malformed
        """
        if not isinstance(context, Mapping):
            raise ValidationError("Context must be a mapping", field='context')

        features = []

        for field in SEMANTIC_FIELDS:
            features.extend(encode_semantic_feature(_category_value(context, field), field))

        features.extend(self._encode_temporal(context))
        features.extend(self._encode_user(context, user_id))

        vector = np.asarray(features, dtype=np.float64)
        if vector.shape[0] != self.dimension:
            raise ValidationError(f"Encoded context has {vector.shape[0]} dims, expected {self.dimension}")

        if self.normalise:
            vector = l2_normalise(vector)

        vector = np.array(vector, dtype=np.float64)
        vector.setflags(write=False)
        return vector

    def _encode_temporal(self, context: Mapping) -> list:
        time_of_day = _category_value(context, 'time_of_day')
        features = encode_categorical_feature(time_of_day, 'time_of_day')

        hour = context.get('hour')
        if hour is not None:
            hour = _check_range(hour, 0, 23, 'hour')
        elif time_of_day in TIME_OF_DAY_HOURS:
            hour = TIME_OF_DAY_HOURS[time_of_day]
        features.extend(cyclical_encoding(hour, 24))

        day_of_week = context.get('day_of_week')
        if day_of_week is not None:
            day_of_week = _check_range(day_of_week, 0, 6, 'day_of_week')
        features.extend(cyclical_encoding(day_of_week, 7))
        features.append(1.0 if day_of_week is not None and day_of_week >= 5 else 0.0)

        return features

    def _encode_user(self, context: Mapping, user_id: Optional[str]) -> list:
        user = context.get('user') or {}
        if not isinstance(user, Mapping):
            raise ValidationError("user must be a mapping", field='user')

        has_account = bool(user_id) or bool(user.get('has_account', False))
        features = [1.0 if has_account else 0.0]

        for field, default in USER_DEFAULTS.items():
            value = user.get(field, default)
            if value is None:
                value = default
            if isinstance(value, bool) or not isinstance(value, (int, float)):
                raise ValidationError(f"{field} must be a number", field=field)
            if not (0.0 <= value <= 1.0):
                raise ValidationError(f"{field} must be between 0 and 1, got {value}", field=field)
            features.append(float(value))

        # Bias term
        features.append(1.0)
        return features

    def signature(self, context: Mapping) -> str:
        """Canonical 'mood|situation|goal|time' key for a context."""
        if not isinstance(context, Mapping):
            raise ValidationError("Context must be a mapping", field='context')
        return '|'.join(_category_value(context, field) or 'none' for field in CONTEXT_FIELDS)

    def context_text(self, context: Mapping) -> str:
        """Words describing a context, used as a semantic search query."""
        if not isinstance(context, Mapping):
            raise ValidationError("Context must be a mapping", field='context')

        words = []
        mood = _category_value(context, 'mood')
        situation = _category_value(context, 'situation')
        goal = _category_value(context, 'goal')

        if mood:
            words.append(mood)
            words.extend(MOOD_KEYWORDS.get(mood, []))
        if situation:
            words.append(situation.replace('_', ' '))
        if goal:
            words.append(goal.replace('_', ' '))
            words.extend(GOAL_KEYWORDS.get(goal, []))

        return ' '.join(words)

    def similarity(self, context_a: Mapping, context_b: Mapping) -> float:
        """Cosine similarity between two encoded contexts."""
        return cosine_similarity_vectors(self.encode(context_a), self.encode(context_b))
