"""
End-to-end test script for the Contextual Book Recommender

Drives the recommendation engine over an in-memory SQLite store: selection,
interactions, attribution, statistics and the fallback paths. Runs under
pytest or directly as a script.
"""

import sys
import os
import threading
from datetime import timedelta

import numpy as np

# Add the project root to the Python path
sys.path.append(os.path.dirname(os.path.abspath(__file__)))

import pytest
from sqlalchemy.exc import SQLAlchemyError

from config import RecommenderConfig
from config.settings import get_environment_settings, validate_settings
from errors import ValidationError
from services.recommendation_engine import RecommendationEngine
from utils import utcnow

BOOKS = [
    {'id': 'book_001', 'title': 'The Hobbit', 'moods': ['cozy', 'adventurous'], 'themes': ['fantasy'],
     'description': 'a reluctant hobbit joins an epic fantasy quest', 'popularity_score': 0.92},
    {'id': 'book_002', 'title': 'Atomic Habits', 'moods': ['practical', 'motivated'], 'themes': ['habits'],
     'description': 'practical strategies for building better habits', 'popularity_score': 0.95},
    {'id': 'book_003', 'title': 'Sapiens', 'moods': ['curious', 'informative'], 'themes': ['history'],
     'description': 'a brief history of humankind', 'popularity_score': 0.91},
    {'id': 'book_004', 'title': 'The House in the Cerulean Sea', 'moods': ['cozy', 'gentle', 'hopeful'],
     'description': 'a gentle cozy story of found family', 'popularity_score': 0.86},
]

CONTEXT = {'mood': 'relaxed', 'situation': 'before_bed', 'goal': 'escape', 'time_of_day': 'evening'}


class FakeRedis:
    """Minimal in-process stand-in for the statistics cache."""

    def __init__(self):
        self.data = {}

    def get(self, key):
        return self.data.get(key)

    def setex(self, key, ttl, value):
        self.data[key] = value

    def scan_iter(self, match=None):
        prefix = (match or '').rstrip('*')
        return [key for key in self.data if key.startswith(prefix)]

    def delete(self, *keys):
        for key in keys:
            self.data.pop(key, None)

    def close(self):
        pass


def make_engine(**overrides):
    engine = RecommendationEngine(RecommenderConfig(**overrides))
    engine.sync_catalog(BOOKS)
    return engine


def test_engine_initialization():
    """Test engine start-up against an empty in-memory store."""
    print("\n--- Testing Engine Initialization ---")

    engine = RecommendationEngine(RecommenderConfig())
    stats = engine.get_arm_statistics()

    assert len(stats['arms']) == 5
    assert stats['total_interactions'] == 0
    assert engine.similarity_engine.index.is_empty
    print("✓ Engine initialized successfully")


def test_recommendations():
    """Test arm selection and impression recording."""
    print("\n--- Testing Recommendations ---")

    engine = make_engine()
    result = engine.select_recommendation(CONTEXT, BOOKS, session_id='session_1', limit=3)

    # Every arm is fresh, so the lowest arm id wins the tie
    assert result['arm_used'] == 'collaborative_filtering'
    assert result['diagnostics']['fallback'] is False
    assert result['diagnostics']['context_signature'] == 'relaxed|before_bed|escape|evening'
    assert len(result['book_list']) == 3
    assert len(result['impression_ids']) == 3

    # No user, so collaborative filtering is padded with popular books
    assert [book['book_id'] for book in result['book_list']] == ['book_002', 'book_001', 'book_003']
    assert all(book['padded'] for book in result['book_list'])

    impression = engine.store.get_impression(result['impression_ids'][0])
    assert impression.arm_id == 'collaborative_filtering'
    assert impression.rank == 1
    assert np.allclose(impression.context_vector, engine.encoder.encode(CONTEXT))
    print(f"✓ Selected {result['diagnostics']['arm_name']} with {len(result['book_list'])} books")


def test_empty_candidates():
    engine = make_engine()
    result = engine.select_recommendation(CONTEXT, [], session_id='session_1')
    assert result['book_list'] == []
    assert result['impression_ids'] == []
    assert result['diagnostics']['fallback'] is False


def test_invalid_requests_raise():
    engine = make_engine()
    with pytest.raises(ValidationError):
        engine.select_recommendation({'hour': 99}, BOOKS, session_id='session_1')
    with pytest.raises(ValidationError):
        engine.select_recommendation(CONTEXT, BOOKS)
    with pytest.raises(ValidationError):
        engine.select_recommendation(CONTEXT, BOOKS, session_id='session_1', limit=0)
    with pytest.raises(ValidationError):
        engine.select_recommendation(CONTEXT, [{'title': 'no id'}], session_id='session_1')
    assert engine.get_metrics()['total_selections'] == 0


def test_interactions_and_attribution():
    """Test the click -> attribution -> model update loop."""
    print("\n--- Testing Interactions ---")

    engine = make_engine()
    result = engine.select_recommendation(CONTEXT, BOOKS, session_id='session_1', limit=3)
    arm_used = result['arm_used']
    top_book = result['book_list'][0]['book_id']

    ack = engine.record_interaction(top_book, 'click', session_id='session_1')
    assert ack['accepted'] is True
    assert ack['points'] == 1.0

    summary = engine.run_attribution_batch(window_hours=1)
    assert summary['updated'] == 1
    assert summary['model_updates'] == 1

    stats = engine.get_arm_statistics()
    used = next(arm for arm in stats['arms'] if arm['arm_id'] == arm_used)
    assert used['interaction_count'] == 1
    assert used['state'] == 'warm'
    assert 0.99 < used['cumulative_reward'] <= 1.0

    # The rewarded arm now has a positive prediction for this context
    again = engine.select_recommendation(CONTEXT, BOOKS, session_id='session_1', limit=3)
    assert again['diagnostics']['scores'][arm_used]['predicted_reward'] > 0
    print(f"✓ Interaction attributed to {arm_used}")


def test_rejected_interactions():
    engine = make_engine()
    with pytest.raises(ValidationError):
        engine.record_interaction('book_001', 'rate', action_value=6, session_id='session_1')
    with pytest.raises(ValidationError):
        engine.record_interaction('book_001', 'click')
    assert engine.get_metrics()['interactions_rejected'] == 1


def test_store_failure_is_acknowledged_not_raised(monkeypatch):
    engine = make_engine()

    def failing_insert(action):
        raise SQLAlchemyError('database unavailable')

    monkeypatch.setattr(engine.store, 'insert_action', failing_insert)
    ack = engine.record_interaction('book_001', 'click', session_id='session_1')
    assert ack['accepted'] is False
    assert 'database unavailable' in ack['error']


def test_fallback_when_cancelled():
    engine = make_engine()
    cancel = threading.Event()
    cancel.set()

    result = engine.select_recommendation(CONTEXT, BOOKS, session_id='session_1', limit=2,
                                          cancel_event=cancel)

    assert result['diagnostics']['fallback'] is True
    assert result['arm_used'] is None
    assert result['impression_ids'] == []
    assert [book['book_id'] for book in result['book_list']] == ['book_002', 'book_001']
    assert engine.get_metrics()['fallback_selections'] == 1


def test_fallback_when_every_arm_is_degraded():
    engine = make_engine()
    registry = engine.bandit.registry
    for arm_id in engine.config.bandit.arm_ids:
        registry.get_or_create(arm_id, registry.scope_for(None)).degraded = True

    result = engine.select_recommendation(CONTEXT, BOOKS, session_id='session_1', limit=2)
    assert result['diagnostics']['fallback'] is True
    assert len(result['book_list']) == 2


def test_fallback_when_strategy_fails(monkeypatch):
    engine = make_engine()

    def broken_rank(*args, **kwargs):
        raise RuntimeError('strategy exploded')

    monkeypatch.setattr(engine.strategies['collaborative_filtering'], 'rank', broken_rank)
    result = engine.select_recommendation(CONTEXT, BOOKS, session_id='session_1', limit=2)
    assert result['diagnostics']['fallback'] is True
    assert 'strategy exploded' in result['diagnostics']['reason']


def test_arm_state_survives_restart(tmp_path):
    """Test that arm parameters persisted by attribution are reloaded."""
    print("\n--- Testing Model Persistence ---")

    url = f"sqlite:///{tmp_path / 'recommender.sqlite3'}"
    config = RecommenderConfig()
    config.database.url = url

    engine = RecommendationEngine(config)
    engine.sync_catalog(BOOKS)
    result = engine.select_recommendation(CONTEXT, BOOKS, session_id='session_1', limit=1)
    engine.record_interaction(result['book_list'][0]['book_id'], 'save', session_id='session_1')
    engine.run_attribution_batch(window_hours=1)
    engine.close()

    restarted = RecommendationEngine(RecommenderConfig(database=config.database))
    arm = restarted.bandit.registry.snapshot(result['arm_used'], 'anonymous')
    assert arm.interaction_count == 1
    assert arm.cumulative_reward > 2.9
    assert restarted.similarity_engine.index.book_ids == sorted(book['id'] for book in BOOKS)
    restarted.close()
    print("✓ Arm parameters reloaded from the store")


def test_statistics_cache_is_invalidated():
    engine = make_engine(redis_host=None)
    engine.redis_client = FakeRedis()

    first = engine.get_arm_statistics()
    assert 'arm_statistics:anonymous' in engine.redis_client.data
    assert engine.get_arm_statistics() == first

    engine.run_attribution_batch()
    assert engine.redis_client.data == {}


def test_reset_arms():
    engine = make_engine()
    x = engine.encoder.encode(CONTEXT)
    engine.bandit.update('trending_popular', x, 3.0)
    engine.bandit.update('contextual_mood', x, 3.0)

    assert engine.reset_arms('trending_popular') == 1
    stats = {arm['arm_id']: arm for arm in engine.get_arm_statistics()['arms']}
    assert stats['trending_popular']['interaction_count'] == 0
    assert stats['contextual_mood']['interaction_count'] == 1


def test_explicit_timestamps_outside_window_are_unmatched():
    engine = make_engine()
    result = engine.select_recommendation(CONTEXT, BOOKS, session_id='session_1', limit=1)
    late = utcnow() + timedelta(days=8)
    engine.record_interaction(result['book_list'][0]['book_id'], 'click', session_id='session_1',
                              timestamp=late)

    summary = engine.attribution.attribute_rewards(window_hours=24, now=late + timedelta(hours=1))
    assert summary['unmatched'] == 1


def test_settings():
    """Test settings loading and translation."""
    print("\n--- Testing Settings ---")

    settings = get_environment_settings('testing')
    assert validate_settings(settings)
    config = settings.to_recommender_config()
    assert config.database.url == 'sqlite://'
    assert config.bandit.alpha == settings.bandit_alpha
    assert config.attribution.window_hours == 168.0
    print("✓ Settings loaded successfully")


def test_settings_read_environment(monkeypatch):
    monkeypatch.setenv('BANDIT_ALPHA', '2.5')
    monkeypatch.setenv('ATTRIBUTION_WINDOW_HOURS', '72')
    monkeypatch.setenv('MAX_CACHED_SCOPES', '25')
    config = get_environment_settings('testing').to_recommender_config()
    assert config.bandit.alpha == 2.5
    assert config.bandit.max_cached_scopes == 25
    assert config.attribution.window_hours == 72.0


def test_invalid_settings_are_rejected(monkeypatch):
    monkeypatch.setenv('BANDIT_ALPHA', '50')
    with pytest.raises(ValueError):
        validate_settings(get_environment_settings('testing'))


def main():
    """Run the script-friendly subset of tests."""
    print("Contextual Book Recommender - System Test")
    print("=" * 50)

    tests = [
        ("Initialization", test_engine_initialization),
        ("Recommendations", test_recommendations),
        ("Interactions", test_interactions_and_attribution),
        ("Fallback", test_fallback_when_cancelled),
        ("Settings", test_settings),
    ]

    test_results = []
    for test_name, test in tests:
        try:
            test()
            test_results.append((test_name, True))
        except Exception as e:
            print(f"✗ {test_name} failed: {e}")
            test_results.append((test_name, False))

    # Summary
    print("\n" + "=" * 50)
    print("TEST SUMMARY")
    print("=" * 50)

    passed = 0
    for test_name, result in test_results:
        status = "✓ PASS" if result else "✗ FAIL"
        print(f"{test_name:20} {status}")
        if result:
            passed += 1

    print(f"\nResults: {passed}/{len(test_results)} tests passed")
    return passed == len(test_results)


if __name__ == "__main__":
    success = main()
    sys.exit(0 if success else 1)
