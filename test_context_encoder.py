"""
Tests for the context encoder.
"""

import math

import numpy as np
import pytest

from errors import ValidationError
from models.context_encoder import CONTEXT_DIM, ContextEncoder, smart_defaults, time_of_day_for_hour

# Offsets of each block in the raw (unnormalised) vector
MOOD_UNKNOWN = 8
SITUATION_UNKNOWN = 17
GOAL_UNKNOWN = 26
TIME_OF_DAY = 27
TIME_UNKNOWN = 31
HOUR_SIN = 32
DAY_SIN = 34
WEEKEND = 36
HAS_ACCOUNT = 37
BIAS = 43

CONTEXT = {'mood': 'relaxed', 'situation': 'before_bed', 'goal': 'escape', 'time_of_day': 'evening'}


def test_vector_length_and_determinism():
    """Identical contexts produce bit-identical vectors of length 44."""
    encoder = ContextEncoder()
    first = encoder.encode(dict(CONTEXT))
    second = encoder.encode(dict(CONTEXT))

    assert first.shape == (CONTEXT_DIM,)
    assert np.array_equal(first, second)
    assert math.isclose(np.linalg.norm(first), 1.0, rel_tol=1e-12)


def test_vector_is_read_only():
    vector = ContextEncoder().encode(CONTEXT)
    assert not vector.flags.writeable
    with pytest.raises(ValueError):
        vector[0] = 1.0


def test_empty_context_sets_unknown_buckets():
    vector = ContextEncoder(normalise=False).encode({})

    for index in (MOOD_UNKNOWN, SITUATION_UNKNOWN, GOAL_UNKNOWN, TIME_UNKNOWN):
        assert vector[index] == 1.0
    assert vector[BIAS] == 1.0
    assert vector[HAS_ACCOUNT] == 0.0
    # Four unknown flags, five neutral user signals and the bias term
    assert math.isclose(vector.sum(), 4 + 5 * 0.5 + 1)


def test_unknown_mood_uses_unknown_bucket():
    vector = ContextEncoder(normalise=False).encode({'mood': 'grumpy'})
    assert np.all(vector[:8] == 0.0)
    assert vector[MOOD_UNKNOWN] == 1.0


def test_mood_is_case_insensitive():
    encoder = ContextEncoder()
    assert np.array_equal(encoder.encode({'mood': ' Relaxed '}), encoder.encode({'mood': 'relaxed'}))


def test_time_of_day_supplies_representative_hour():
    vector = ContextEncoder(normalise=False).encode({'time_of_day': 'evening'})
    assert vector[TIME_OF_DAY + 2] == 1.0
    assert math.isclose(vector[HOUR_SIN], math.sin(2 * math.pi * 19 / 24))


def test_explicit_hour_and_weekend():
    vector = ContextEncoder(normalise=False).encode({'hour': 6, 'day_of_week': 5})
    assert math.isclose(vector[HOUR_SIN], 1.0)
    assert math.isclose(vector[DAY_SIN], math.sin(2 * math.pi * 5 / 7))
    assert vector[WEEKEND] == 1.0


def test_user_id_sets_account_flag():
    vector = ContextEncoder(normalise=False).encode({}, user_id='reader-1')
    assert vector[HAS_ACCOUNT] == 1.0


@pytest.mark.parametrize('context', [
    {'hour': 24},
    {'hour': -1},
    {'day_of_week': 7},
    {'hour': 'noon'},
    {'mood': 5},
    {'user': {'preference_fiction': 1.5}},
    {'user': 'reader'},
])
def test_malformed_context_is_rejected(context):
    with pytest.raises(ValidationError):
        ContextEncoder().encode(context)


def test_non_mapping_context_is_rejected():
    with pytest.raises(ValidationError):
        ContextEncoder().encode(['relaxed'])


def test_signature_and_context_text():
    encoder = ContextEncoder()
    assert encoder.signature({'mood': 'relaxed', 'goal': 'escape', 'time_of_day': 'evening'}) == \
        'relaxed|none|escape|evening'

    text = encoder.context_text({'mood': 'relaxed', 'situation': 'before_bed', 'goal': 'escape'})
    assert 'cozy' in text
    assert 'before bed' in text
    assert 'fantasy' in text


def test_similarity_of_related_contexts():
    encoder = ContextEncoder()
    assert math.isclose(encoder.similarity(CONTEXT, CONTEXT), 1.0, rel_tol=1e-9)

    calm = encoder.similarity({'mood': 'relaxed'}, {'mood': 'peaceful'})
    energetic = encoder.similarity({'mood': 'relaxed'}, {'mood': 'excited'})
    assert calm > energetic


def test_smart_defaults():
    assert time_of_day_for_hour(4) == 'night'
    assert time_of_day_for_hour(12) == 'afternoon'

    night = smart_defaults(22, 2)
    assert night == {'mood': 'peaceful', 'situation': 'before_bed', 'goal': 'relaxation', 'time_of_day': 'night'}

    saturday_morning = smart_defaults(9, 5)
    assert saturday_morning['situation'] == 'weekend'
    assert saturday_morning['mood'] == 'motivated'

    with pytest.raises(ValidationError):
        smart_defaults(25, 0)
