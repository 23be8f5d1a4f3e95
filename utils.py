"""
Utility Functions for the Contextual Book Recommender

Contains helper functions for encoding, normalisation and timestamp handling.
"""

from datetime import datetime, timezone
from typing import List, Optional, Sequence, Union
import math

import numpy as np

from categories import get_categories, get_semantic_vector, SEMANTIC_DIM


def encode_categorical_feature(value: Optional[str], category_name: str) -> List[float]:
    """
    One-hot encode a categorical value with a trailing 'unknown' bucket.

    Example:
        >>> encode_categorical_feature('evening', 'time_of_day')
        [0.0, 0.0, 1.0, 0.0, 0.0]  # morning, afternoon, evening, night, unknown

        >>> encode_categorical_feature('brunch', 'time_of_day')
        [0.0, 0.0, 0.0, 0.0, 1.0]
    """
    try:
        categories = get_categories(category_name)
    except KeyError:
        raise ValueError(f"Unknown category name: {category_name}")

    features = [0.0] * (len(categories) + 1)
    key = value.strip().lower() if isinstance(value, str) else None
    if key in categories:
        features[categories.index(key)] = 1.0
    else:
        features[-1] = 1.0

    return features


def encode_semantic_feature(value: Optional[str], category_name: str) -> List[float]:
    """
    Encode a mood/situation/goal as its semantic vector plus an 'unknown' flag.

    Unknown or missing values produce a zero semantic part with the flag set.
    """
    vector = get_semantic_vector(category_name, value) if isinstance(value, str) else None
    if vector is None:
        return [0.0] * SEMANTIC_DIM + [1.0]
    return list(vector) + [0.0]


def cyclical_encoding(value: Optional[float], period: float) -> List[float]:
    """Encode a periodic quantity as (sin, cos); missing values encode as zeros."""
    if value is None:
        return [0.0, 0.0]
    angle = 2 * math.pi * value / period
    return [math.sin(angle), math.cos(angle)]


def l2_normalise(vector: np.ndarray) -> np.ndarray:
    """L2-normalise a vector; zero vectors are returned unchanged."""
    magnitude = np.linalg.norm(vector)
    if magnitude == 0:
        return vector
    return vector / magnitude


def safe_divide(numerator: float, denominator: float, default: float = 0.0) -> float:
    """Safely divide two numbers, returning default if denominator is zero."""
    if denominator == 0:
        return default
    return numerator / denominator


def cosine_similarity_vectors(vector_a: Sequence[float], vector_b: Sequence[float]) -> float:
    """Cosine similarity of two dense vectors; 0.0 when either has zero norm."""
    a = np.asarray(vector_a, dtype=float)
    b = np.asarray(vector_b, dtype=float)
    if a.shape != b.shape:
        raise ValueError('Vectors must have the same length')
    norm = np.linalg.norm(a) * np.linalg.norm(b)
    if norm == 0:
        return 0.0
    return float(a @ b / norm)


def utcnow() -> datetime:
    """Current time as a naive UTC datetime (the store's canonical form)."""
    return datetime.now(timezone.utc).replace(tzinfo=None)


def to_naive_utc(value: Union[datetime, str, None]) -> Optional[datetime]:
    """
    Convert a datetime or ISO-8601 string to a naive UTC datetime.

    Raises:
        ValueError: If the string cannot be parsed
    """
    if value is None:
        return None
    if isinstance(value, str):
        text = value.strip()
        if text.endswith('Z'):
            text = text[:-1] + '+00:00'
        value = datetime.fromisoformat(text)
    if not isinstance(value, datetime):
        raise ValueError(f"Unsupported timestamp type: {type(value).__name__}")
    if value.tzinfo is not None:
        value = value.astimezone(timezone.utc).replace(tzinfo=None)
    return value


def hours_between(start: datetime, end: datetime) -> float:
    """Elapsed hours from start to end."""
    return (end - start).total_seconds() / 3600.0
