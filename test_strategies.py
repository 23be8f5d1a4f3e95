"""
Tests for the recommendation strategies behind each arm.
"""

import pytest

from config import DatabaseConfig, RecommenderConfig
from models.context_encoder import ContextEncoder
from models.similarity import SemanticSimilarityEngine
from services.reward_signals import RewardSignalRecorder, make_identity
from services.store import RewardStore
from services.strategies import (
    CollaborativeFilteringStrategy,
    ContextualMoodStrategy,
    SemanticSimilarityStrategy,
    TrendingPopularStrategy,
    build_strategies,
    fallback_ranking,
    pad_with_fallback,
)

BOOKS = [
    {'id': 'cozy', 'title': 'Cozy Tales', 'moods': ['cozy', 'gentle'], 'themes': ['fantasy'],
     'description': 'gentle cozy fantasy stories by the fire', 'popularity_score': 0.5},
    {'id': 'thriller', 'title': 'Fast Chase', 'moods': ['thrilling', 'fast-paced'],
     'description': 'thrilling chase across the city', 'popularity_score': 0.9},
    {'id': 'habits', 'title': 'Better Habits', 'moods': ['practical'], 'themes': ['habits'],
     'description': 'practical habits for productive mornings', 'popularity_score': 0.7},
]


@pytest.fixture
def store():
    store = RewardStore(DatabaseConfig(url='sqlite://'))
    store.create_schema()
    yield store
    store.drop_schema()
    store.close()


def ids(ranked):
    return [item['book_id'] for item in ranked]


def test_fallback_ranking_orders_by_popularity_then_id():
    books = BOOKS + [{'id': 'aaa', 'popularity_score': 0.7}]
    assert ids(fallback_ranking(books, 10)) == ['thriller', 'aaa', 'habits', 'cozy']
    assert ids(fallback_ranking(books, 1)) == ['thriller']


def test_padding_fills_short_rankings():
    ranked = pad_with_fallback([{'book_id': 'cozy', 'score': 1.0, 'reason': 'mood'}], BOOKS, 3)
    assert ids(ranked) == ['cozy', 'thriller', 'habits']
    assert 'padded' not in ranked[0]
    assert ranked[1]['padded'] and ranked[2]['padded']


def test_mood_strategy_scores_tag_overlap():
    ranked = ContextualMoodStrategy().rank({'mood': 'relaxed'}, BOOKS)
    assert ids(ranked) == ['cozy']

    assert ContextualMoodStrategy().rank({}, BOOKS) == []


def test_semantic_strategy_indexes_unsynced_candidates():
    strategy = SemanticSimilarityStrategy(SemanticSimilarityEngine(), ContextEncoder())
    ranked = strategy.rank({'mood': 'relaxed', 'goal': 'escape'}, BOOKS)
    assert ids(ranked)[0] == 'cozy'


def test_trending_strategy_weights_recent_engagement(store):
    recorder = RewardSignalRecorder(store)
    reader = make_identity(session_id='s1')
    recorder.record_action(reader, 'habits', 'click')
    recorder.record_action(reader, 'habits', 'save')
    recorder.record_action(reader, 'thriller', 'click')
    recorder.record_action(reader, 'cozy', 'rate', 5)
    recorder.record_action(reader, 'cozy', 'unsave')

    ranked = TrendingPopularStrategy(store).rank({}, BOOKS)
    assert ids(ranked) == ['habits', 'thriller']


def test_collaborative_strategy_uses_peer_overlap(store):
    recorder = RewardSignalRecorder(store)
    recorder.record_action(make_identity(user_id='u1'), 'cozy', 'click')
    recorder.record_action(make_identity(user_id='u2'), 'cozy', 'save')
    recorder.record_action(make_identity(user_id='u2'), 'habits', 'click')

    strategy = CollaborativeFilteringStrategy(store)
    assert ids(strategy.rank({}, BOOKS, user_id='u1')) == ['habits']
    assert strategy.rank({}, BOOKS, user_id=None) == []


def test_every_configured_arm_has_a_strategy(store):
    config = RecommenderConfig()
    strategies = build_strategies(store, SemanticSimilarityEngine(), ContextEncoder(), config)
    assert set(config.bandit.arm_ids) <= set(strategies)

    mixed = strategies['personalized_mix'].rank({'mood': 'relaxed'}, BOOKS)
    assert ids(mixed)[0] == 'cozy'
