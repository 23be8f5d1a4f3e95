"""
Tests for the reward recorder, the reward store and the attribution engine.
"""

from datetime import datetime, timedelta
import math

import numpy as np
import pytest
from sqlalchemy.exc import OperationalError, SQLAlchemyError

from config import DatabaseConfig, RecommenderConfig
from errors import AttributionConflict, NotFoundError, ValidationError
from models.context_encoder import ContextEncoder
from models.contextual_bandit import ContextualBandit
from models.records import Action, Attribution
from services.attribution import AttributionEngine
from services.reward_signals import RewardSignalRecorder, make_identity
from services.store import RewardStore

T0 = datetime(2024, 3, 4, 12, 0, 0)
NOW = T0 + timedelta(days=8)
SCAN_HOURS = 24 * 30
ARM = 'contextual_mood'


class Harness:
    """In-memory store, bandit, recorder and attribution engine wired together."""

    def __init__(self):
        self.config = RecommenderConfig(database=DatabaseConfig(url='sqlite://'))
        self.store = RewardStore(self.config.database)
        self.store.create_schema()
        self.bandit = ContextualBandit(self.config.bandit)
        self.recorder = RewardSignalRecorder(self.store, self.config)
        self.engine = AttributionEngine(self.store, self.bandit, self.recorder, self.config)
        self.x = ContextEncoder().encode({'mood': 'relaxed', 'time_of_day': 'evening'})

    def show(self, book_id, at, identity=None, arm_id=ARM, rank=1):
        identity = identity or make_identity(session_id='s1')
        return self.recorder.record_impression(identity, book_id, self.x, arm_id, rank=rank, created_at=at)

    def act(self, book_id, action_type, at, identity=None, value=None):
        identity = identity or make_identity(session_id='s1')
        return self.recorder.record_action(identity, book_id, action_type, value, timestamp=at)['action_id']

    def run(self, **kwargs):
        kwargs.setdefault('window_hours', SCAN_HOURS)
        kwargs.setdefault('now', NOW)
        return self.engine.attribute_rewards(**kwargs)

    def arm(self, scope='anonymous', arm_id=ARM):
        return self.bandit.registry.snapshot(arm_id, scope)


def weight(hours):
    return math.exp(-hours / 48.0)


def test_points_for_actions():
    harness = Harness()
    recorder = harness.recorder
    assert recorder.points_for('click') == 1.0
    assert recorder.points_for('save') == 3.0
    assert recorder.points_for('unsave') == -3.0
    assert recorder.points_for('rate', 4) == 4.0

    for action_type, value in (('rate', 6), ('rate', 0), ('rate', None), ('share', None)):
        with pytest.raises(ValidationError):
            recorder.points_for(action_type, value)


def test_invalid_actions_are_not_stored():
    harness = Harness()
    with pytest.raises(ValidationError):
        harness.act('b1', 'rate', T0, value=9)
    with pytest.raises(ValidationError):
        harness.act('b1', 'bookmark', T0)
    with pytest.raises(ValidationError):
        harness.act('b1', 'click', 'not-a-date')
    with pytest.raises(ValidationError):
        make_identity()

    assert harness.store.unattributed_actions(T0 - timedelta(days=365)) == []


def test_impression_requires_full_context_vector():
    harness = Harness()
    with pytest.raises(ValidationError):
        harness.recorder.record_impression(make_identity(session_id='s1'), 'b1', [0.1] * 3, ARM, rank=1)


def test_click_save_unsave_reward_is_decayed_sum():
    """Every action on an impression contributes points * exp(-h / 48)."""
    harness = Harness()
    impression_id = harness.show('b1', T0)
    harness.act('b1', 'click', T0 + timedelta(hours=1))
    harness.act('b1', 'save', T0 + timedelta(hours=2))
    harness.act('b1', 'unsave', T0 + timedelta(hours=5))

    summary = harness.run()

    expected = 1 * weight(1) + 3 * weight(2) - 3 * weight(5)
    assert summary['processed'] == 3
    assert summary['updated'] == 3
    assert summary['unmatched'] == 0
    assert summary['model_updates'] == 1

    impression = harness.store.get_impression(impression_id)
    assert math.isclose(impression.reward, expected, rel_tol=1e-9)
    assert impression.attributed_at == NOW

    arm = harness.arm()
    assert arm.interaction_count == 1
    assert math.isclose(arm.cumulative_reward, expected, rel_tol=1e-9)
    assert np.allclose(arm.b, expected * harness.x)


def test_attribution_is_idempotent():
    harness = Harness()
    impression_id = harness.show('b1', T0)
    harness.act('b1', 'save', T0 + timedelta(hours=3))

    first = harness.run()
    reward = harness.store.get_impression(impression_id).reward
    second = harness.run()

    assert first['updated'] == 1
    assert second['processed'] == 0
    assert second['model_updates'] == 0
    assert harness.store.get_impression(impression_id).reward == reward
    assert harness.arm().interaction_count == 1
    assert len(harness.store.list_attributions()) == 1


def test_window_is_inclusive_at_seven_days():
    harness = Harness()
    harness.show('b1', T0)
    harness.show('b2', T0)
    on_boundary = harness.act('b1', 'click', T0 + timedelta(hours=168))
    past_boundary = harness.act('b2', 'click', T0 + timedelta(hours=168, microseconds=1))

    summary = harness.run()

    assert summary['updated'] == 1
    assert summary['unmatched'] == 1
    assert harness.store.get_action(on_boundary).attributed_impression_id is not None
    assert harness.store.get_action(past_boundary).attributed_at is None

    attribution = harness.store.list_attributions()[0]
    assert math.isclose(attribution.decay_weight, weight(168), rel_tol=1e-9)


def test_action_before_impression_is_unmatched():
    harness = Harness()
    harness.show('b1', T0 + timedelta(hours=2))
    harness.act('b1', 'click', T0 + timedelta(hours=1))
    assert harness.run()['unmatched'] == 1


def test_most_recent_impression_wins():
    harness = Harness()
    harness.show('b1', T0, arm_id='trending_popular')
    latest = harness.show('b1', T0 + timedelta(hours=3), arm_id='semantic_similarity')
    action_id = harness.act('b1', 'click', T0 + timedelta(hours=4))

    harness.run()

    assert harness.store.get_action(action_id).attributed_impression_id == latest
    assert harness.arm(arm_id='semantic_similarity').interaction_count == 1
    assert harness.arm(arm_id='trending_popular').interaction_count == 0


def test_other_identities_are_not_credited():
    harness = Harness()
    harness.show('b1', T0, identity=make_identity(session_id='s1'))
    harness.act('b1', 'click', T0 + timedelta(hours=1), identity=make_identity(session_id='s2'))
    assert harness.run()['unmatched'] == 1


def test_unsave_floors_impression_reward_but_not_model_reward():
    harness = Harness()
    impression_id = harness.show('b1', T0)
    harness.act('b1', 'unsave', T0 + timedelta(hours=1))

    harness.run()

    assert harness.store.get_impression(impression_id).reward == 0.0
    assert math.isclose(harness.arm().cumulative_reward, -3 * weight(1), rel_tol=1e-9)


def test_rating_is_credited_with_its_value():
    harness = Harness()
    impression_id = harness.show('b1', T0)
    harness.act('b1', 'rate', T0, value=4)

    harness.run()

    assert math.isclose(harness.store.get_impression(impression_id).reward, 4.0)


def test_malformed_stored_actions_count_as_errors():
    harness = Harness()
    harness.show('b1', T0)
    harness.store.insert_action(Action(
        action_id='broken', identity=make_identity(session_id='s1'), book_id='b1',
        action_type='bogus', created_at=T0 + timedelta(hours=1),
    ))
    harness.act('b1', 'click', T0 + timedelta(hours=2))

    summary = harness.run()

    assert summary['errors'] == 1
    assert summary['updated'] == 1
    assert harness.store.get_action('broken').attributed_at is None


def test_second_attribution_of_an_action_conflicts():
    harness = Harness()
    impression_id = harness.show('b1', T0)
    action_id = harness.act('b1', 'click', T0 + timedelta(hours=1))
    harness.run()
    reward = harness.store.get_impression(impression_id).reward

    with pytest.raises(AttributionConflict):
        harness.store.attribute_action(Attribution(
            action_id=action_id, impression_id=impression_id,
            points=1.0, decay_weight=1.0, reward=1.0, attributed_at=NOW,
        ))

    assert harness.store.get_impression(impression_id).reward == reward
    assert len(harness.store.list_attributions()) == 1


def test_batch_can_stop_and_resume():
    harness = Harness()
    harness.show('b1', T0)
    for hours in (1, 2, 3):
        harness.act('b1', 'click', T0 + timedelta(hours=hours))

    calls = []

    def should_stop():
        calls.append(True)
        return len(calls) > 1

    first = harness.run(should_stop=should_stop)
    assert first['processed'] == 1
    assert first['stopped']

    second = harness.run()
    assert second['processed'] == 2
    assert second['updated'] == 2

    # Each batch applies the impression's pending net reward once
    assert harness.arm().interaction_count == 2


def test_batch_respects_max_actions_and_scan_window():
    harness = Harness()
    harness.show('b1', T0)
    harness.act('b1', 'click', T0 + timedelta(hours=1))
    harness.act('b1', 'click', T0 + timedelta(hours=2))

    assert harness.run(max_actions=1)['processed'] == 1
    assert harness.run(window_hours=1)['processed'] == 0

    with pytest.raises(ValidationError):
        harness.run(window_hours=0)


def test_merged_session_history_is_credited_to_user():
    harness = Harness()
    harness.show('b1', T0, identity=make_identity(session_id='s1'))
    action_id = harness.act('b1', 'save', T0 + timedelta(hours=1), identity=make_identity(user_id='u1'))

    assert harness.run()['unmatched'] == 1

    assert harness.engine.merge_identities('s1', 'u1') == {'impressions': 1, 'actions': 0}
    summary = harness.run()

    assert summary['updated'] == 1
    assert harness.store.get_action(action_id).attributed_impression_id is not None
    assert harness.arm(scope='u1').interaction_count == 1

    with pytest.raises(ValidationError):
        harness.engine.merge_identities('', 'u1')


def test_model_updates_are_persisted_with_applied_flags():
    harness = Harness()
    harness.show('b1', T0)
    harness.act('b1', 'click', T0 + timedelta(hours=1))
    harness.run()

    states = harness.store.load_arm_states()
    assert [(state['scope'], state['arm_id']) for state in states] == [('anonymous', ARM)]
    assert states[0]['interaction_count'] == 1
    assert harness.store.pending_model_updates() == []
    assert harness.store.list_attributions()[0].model_applied


def test_failed_persist_leaves_updates_pending(monkeypatch):
    harness = Harness()
    harness.show('b1', T0)
    harness.act('b1', 'click', T0 + timedelta(hours=1))

    def failing_save(arm, ids=()):
        raise SQLAlchemyError('database unavailable')

    monkeypatch.setattr(harness.store, 'save_arm', failing_save)
    summary = harness.run()

    assert summary['updated'] == 1
    assert summary['model_errors'] == 1
    assert harness.arm().interaction_count == 0
    assert len(harness.store.pending_model_updates()) == 1

    monkeypatch.undo()
    assert harness.engine.apply_pending_model_updates() == {'applied': 1, 'errors': 0, 'skipped': 0}
    assert harness.arm().interaction_count == 1



def test_ledger_rows_are_applied_to_the_model_once(monkeypatch):
    harness = Harness()
    impression_id = harness.show('b1', T0)
    action_id = harness.act('b1', 'save', T0 + timedelta(hours=1))
    harness.store.attribute_action(Attribution(
        action_id=action_id, impression_id=impression_id,
        points=3.0, decay_weight=weight(1), reward=3 * weight(1), attributed_at=NOW,
    ))
    stale_rows = harness.store.pending_model_updates()

    assert harness.engine.apply_pending_model_updates() == {'applied': 1, 'errors': 0, 'skipped': 0}

    # A second batch that read the same rows before the first one finished
    monkeypatch.setattr(harness.store, 'pending_model_updates', lambda: stale_rows)
    assert harness.engine.apply_pending_model_updates() == {'applied': 0, 'errors': 0, 'skipped': 1}

    arm = harness.arm()
    assert arm.interaction_count == 1
    assert np.allclose(arm.b, 3 * weight(1) * harness.x)
    assert harness.store.load_arm_states()[0]['interaction_count'] == 1


def test_store_failures_are_counted_in_the_summary(monkeypatch):
    harness = Harness()
    harness.show('b1', T0)
    harness.act('b1', 'click', T0 + timedelta(hours=1))

    def unavailable():
        raise OperationalError('SELECT', {}, Exception('database unavailable'))

    monkeypatch.setattr(harness.store, 'pending_model_updates', unavailable)
    summary = harness.run()

    assert summary['updated'] == 1
    assert summary['model_updates'] == 0
    assert summary['model_errors'] == 1

    monkeypatch.undo()
    summary = harness.run()
    assert summary['processed'] == 0
    assert summary['model_updates'] == 1
    assert harness.arm().interaction_count == 1


def test_pending_action_read_failure_returns_summary(monkeypatch):
    harness = Harness()

    def unavailable(since, limit=None):
        raise OperationalError('SELECT', {}, Exception('database unavailable'))

    monkeypatch.setattr(harness.store, 'unattributed_actions', unavailable)
    summary = harness.run()

    assert summary['errors'] == 1
    assert summary['processed'] == 0


def test_vanished_impression_is_counted_as_error(monkeypatch):
    harness = Harness()
    harness.show('b1', T0)
    action_id = harness.act('b1', 'click', T0 + timedelta(hours=1))

    def impression_gone(attribution, floor_reward=True):
        raise NotFoundError(f"Impression {attribution.impression_id} not found")

    monkeypatch.setattr(harness.store, 'attribute_action', impression_gone)
    summary = harness.run()

    assert summary['errors'] == 1
    assert summary['updated'] == 0
    assert harness.store.get_action(action_id).attributed_at is None

def test_catalog_upsert_and_changed_since():
    harness = Harness()
    store = harness.store
    assert store.upsert_books([{'id': 'b1', 'title': 'First'}, {'id': 'b2', 'title': 'Second'}]) == 2
    checkpoint = store.books_changed_since(datetime(2000, 1, 1))
    assert [book['id'] for book in checkpoint] == ['b1', 'b2']

    store.upsert_books([{'id': 'b1', 'title': 'First, revised', 'popularity_score': 0.4}])
    assert store.get_book('b1')['title'] == 'First, revised'
    assert [book['id'] for book in store.all_books()] == ['b1', 'b2']
    assert store.books_changed_since(datetime(2100, 1, 1)) == []


def test_store_lookups_raise_not_found():
    harness = Harness()
    with pytest.raises(NotFoundError):
        harness.store.get_impression('missing')
    with pytest.raises(NotFoundError):
        harness.store.get_action('missing')
    with pytest.raises(NotFoundError):
        harness.store.get_book('missing')
