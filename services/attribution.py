"""
Attribution Engine

Links each user action to the most recent qualifying impression of the same
book for the same identity, credits that impression with a time-decayed
reward, and then feeds the net reward of every credited impression to the
arm that produced it.
"""

from collections import OrderedDict
from datetime import timedelta
from typing import Any, Callable, Dict, Optional
import logging
import math

from sqlalchemy.exc import SQLAlchemyError

from config import RecommenderConfig
from errors import AttributionConflict, NotFoundError, NumericInstabilityError, ValidationError
from models.contextual_bandit import ContextualBandit
from models.records import Attribution
from services.reward_signals import RewardSignalRecorder
from services.store import RewardStore, action_from_row
from utils import hours_between, utcnow

logger = logging.getLogger(__name__)


class AttributionEngine:
    """Batch attribution of actions to impressions, plus the model updates that follow."""

    def __init__(self, store: RewardStore, bandit: ContextualBandit,
                 recorder: RewardSignalRecorder = None, config: RecommenderConfig = None):
        self.store = store
        self.bandit = bandit
        self.config = config or RecommenderConfig()
        self.recorder = recorder or RewardSignalRecorder(store, self.config)

    def decay_weight(self, hours: float) -> float:
        """exp(-lambda * hours): influence halves roughly every 33 hours at the default rate."""
        return math.exp(-self.config.attribution.decay_lambda_per_hour * max(hours, 0.0))

    def attribute_rewards(self, window_hours: float = None, max_actions: int = None,
                          should_stop: Callable[[], bool] = None, now=None) -> Dict[str, Any]:
        """
        Attribute unattributed actions created within the last `window_hours`.

        Each action is committed on its own, so the batch can stop at any point
        (should_stop is checked before every action) and be resumed later.

        Returns:
            Counts of processed, updated, errors, unmatched, conflicts and model_updates
        """
        if window_hours is None:
            window_hours = self.config.attribution.default_batch_window_hours
        if window_hours <= 0:
            raise ValidationError("window_hours must be positive", field='window_hours')
        if max_actions is not None and max_actions <= 0:
            raise ValidationError("max_actions must be positive", field='max_actions')

        now = now or utcnow()
        attribution_window = timedelta(hours=self.config.attribution.window_hours)
        summary = {
            'processed': 0,
            'updated': 0,
            'errors': 0,
            'unmatched': 0,
            'conflicts': 0,
            'model_updates': 0,
            'model_errors': 0,
            'stopped': False,
        }

        try:
            rows = self.store.unattributed_actions(now - timedelta(hours=window_hours), limit=max_actions)
        except SQLAlchemyError as e:
            summary['errors'] += 1
            logger.error(f"Failed to read pending actions: {e}")
            rows = []
        logger.info(f"Attribution batch started: {len(rows)} pending actions")

        for row in rows:
            if should_stop is not None and should_stop():
                summary['stopped'] = True
                logger.info("Attribution batch stopped before completion")
                break

            summary['processed'] += 1
            try:
                action = action_from_row(row)
                points = self.recorder.points_for(action.action_type, action.action_value)
                if action.created_at is None:
                    raise ValidationError("Action has no timestamp", field='created_at')
            except (ValidationError, TypeError, KeyError) as e:
                summary['errors'] += 1
                logger.warning(f"Skipping malformed action {row.get('id')}: {e}")
                continue

            try:
                candidates = self.store.find_candidate_impressions(
                    action.identity.user_id, action.identity.session_id, action.book_id,
                    action.created_at - attribution_window, action.created_at,
                )
            except SQLAlchemyError as e:
                summary['errors'] += 1
                logger.error(f"Failed to look up impressions for action {action.action_id}: {e}")
                continue

            if not candidates:
                summary['unmatched'] += 1
                continue

            impression = candidates[0]
            weight = self.decay_weight(hours_between(impression.created_at, action.created_at))
            attribution = Attribution(
                action_id=action.action_id,
                impression_id=impression.impression_id,
                points=points,
                decay_weight=weight,
                reward=points * weight,
                attributed_at=now,
            )

            try:
                self.store.attribute_action(attribution, floor_reward=self.config.attribution.floor_impression_reward)
            except AttributionConflict as e:
                summary['conflicts'] += 1
                logger.warning(f"{e}; skipping")
                continue
            except (NotFoundError, SQLAlchemyError) as e:
                summary['errors'] += 1
                logger.error(f"Failed to attribute action {action.action_id}: {e}")
                continue

            summary['updated'] += 1

        model_summary = self.apply_pending_model_updates()
        summary['model_updates'] = model_summary['applied']
        summary['model_errors'] = model_summary['errors']
        summary['conflicts'] += model_summary['skipped']

        logger.info(f"Attribution batch finished: {summary}")
        return summary

    def apply_pending_model_updates(self) -> Dict[str, int]:
        """
        Apply every unapplied ledger row to the bandit, one update per impression.

        The arm parameters and the applied flags are written in one transaction
        while the arm lock is held. Rows another batch applied first are
        skipped and the arm is left as that batch wrote it.
        """
        result = {'applied': 0, 'errors': 0, 'skipped': 0}
        try:
            rows = self.store.pending_model_updates()
        except SQLAlchemyError as e:
            result['errors'] += 1
            logger.error(f"Failed to read pending model updates: {e}")
            return result

        groups: Dict[str, Dict[str, Any]] = OrderedDict()
        for row in rows:
            group = groups.setdefault(row['impression_id'], {
                'arm_id': row['arm_id'],
                'user_id': row['user_id'],
                'context_vector': row['context_vector'],
                'reward': 0.0,
                'attribution_ids': [],
            })
            group['reward'] += row['reward']
            group['attribution_ids'].append(row['attribution_id'])

        for impression_id, group in groups.items():
            ids = group['attribution_ids']
            try:
                scope = self.bandit.registry.scope_for(group['user_id'])
                self.bandit.updater.apply_reward(
                    group['arm_id'], group['context_vector'], group['reward'], scope,
                    persist=lambda arm, ids=ids: self.store.save_arm(arm, ids),
                )
                result['applied'] += 1
            except AttributionConflict as e:
                result['skipped'] += 1
                logger.warning(f"Reward of impression {impression_id} not applied: {e}")
            except (ValidationError, NumericInstabilityError, TypeError, ValueError) as e:
                result['errors'] += 1
                logger.error(f"Cannot apply reward of impression {impression_id}: {e}")
                try:
                    self.store.mark_model_error(ids, str(e))
                except SQLAlchemyError as mark_error:
                    logger.error(f"Failed to flag ledger rows {ids}: {mark_error}")
            except SQLAlchemyError as e:
                # Rows stay pending and are retried by the next batch
                result['errors'] += 1
                logger.error(f"Failed to persist arm {group['arm_id']} for impression {impression_id}: {e}")

        return result

    def merge_identities(self, session_id: str, user_id: str) -> Dict[str, int]:
        """Assign a session's anonymous impressions and actions to a signed-in user."""
        for name, value in (('session_id', session_id), ('user_id', user_id)):
            if not value or not isinstance(value, str):
                raise ValidationError(f"{name} must be a non-empty string", field=name)

        result = self.store.merge_identities(session_id, user_id)
        logger.info(f"Merged session {session_id} into user {user_id}: {result}")
        return result
