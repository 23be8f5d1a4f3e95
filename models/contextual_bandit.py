"""
Contextual Bandit Model for Strategy Selection

Implements disjoint LinUCB (Linear Upper Confidence Bound) over a small set of
recommendation strategies. Each strategy is an arm with its own ridge
regression state (A, b, theta). Parameters can be kept per user, with
anonymous traffic sharing one scope.
"""

from collections import OrderedDict, deque
from contextlib import contextmanager
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Callable, Dict, List, Optional, Tuple
import json
import logging
import threading

import numpy as np

from categories import STRATEGY_NAMES
from config import BanditConfig
from errors import NumericInstabilityError, ValidationError
from models.records import ANONYMOUS_SCOPE
from utils import safe_divide, utcnow

logger = logging.getLogger(__name__)

GLOBAL_SCOPE = 'global'

# Lifecycle states
UNINITIALIZED = 'uninitialized'
WARM = 'warm'
ACTIVE = 'active'


def arm_display_name(arm_id: str) -> str:
    return STRATEGY_NAMES.get(arm_id) or arm_id.replace('_', ' ').title()


class Arm:
    """LinUCB state of one strategy within one scope."""

    def __init__(self, arm_id: str, dimension: int, regularization: float = 1.0,
                 scope: str = ANONYMOUS_SCOPE, arm_name: str = None):
        self.arm_id = arm_id
        self.arm_name = arm_name or arm_display_name(arm_id)
        self.scope = scope
        self.dimension = dimension
        self.regularization = regularization

        self.A = regularization * np.eye(dimension)
        self.A_inv = np.eye(dimension) / regularization
        self.b = np.zeros(dimension)
        self.theta = np.zeros(dimension)

        self.interaction_count = 0
        self.cumulative_reward = 0.0
        self.reward_sq_sum = 0.0
        self.x_sum = np.zeros(dimension)
        self.selection_count = 0
        self.degraded = False
        self.last_updated: Optional[datetime] = None

    @property
    def average_reward(self) -> float:
        return safe_divide(self.cumulative_reward, self.interaction_count)

    @property
    def mean_context(self) -> np.ndarray:
        if self.interaction_count == 0:
            return np.zeros(self.dimension)
        return self.x_sum / self.interaction_count

    def lifecycle_state(self, min_observations: int) -> str:
        if self.interaction_count == 0:
            return UNINITIALIZED
        if self.interaction_count < min_observations:
            return WARM
        return ACTIVE

    def copy(self) -> 'Arm':
        clone = Arm(self.arm_id, self.dimension, self.regularization, self.scope, self.arm_name)
        clone.restore_from(self)
        return clone

    def restore_from(self, other: 'Arm'):
        """Overwrite this arm's learned state with another arm's."""
        self.A = other.A.copy()
        self.A_inv = other.A_inv.copy()
        self.b = other.b.copy()
        self.theta = other.theta.copy()
        self.interaction_count = other.interaction_count
        self.cumulative_reward = other.cumulative_reward
        self.reward_sq_sum = other.reward_sq_sum
        self.x_sum = other.x_sum.copy()
        self.selection_count = other.selection_count
        self.degraded = other.degraded
        self.last_updated = other.last_updated

    def to_dict(self) -> Dict[str, Any]:
        return {
            'arm_id': self.arm_id,
            'arm_name': self.arm_name,
            'scope': self.scope,
            'dimension': self.dimension,
            'regularization': self.regularization,
            'A': self.A.tolist(),
            'b': self.b.tolist(),
            'theta': self.theta.tolist(),
            'interaction_count': self.interaction_count,
            'cumulative_reward': self.cumulative_reward,
            'reward_sq_sum': self.reward_sq_sum,
            'x_sum': self.x_sum.tolist(),
            'selection_count': self.selection_count,
            'degraded': self.degraded,
            'last_updated': self.last_updated.isoformat() if self.last_updated else None,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> 'Arm':
        arm = cls(data['arm_id'], int(data['dimension']), float(data.get('regularization', 1.0)),
                  data.get('scope', ANONYMOUS_SCOPE), data.get('arm_name'))
        arm.A = np.array(data['A'], dtype=float)
        arm.b = np.array(data['b'], dtype=float)
        arm.theta = np.array(data['theta'], dtype=float)
        arm.interaction_count = int(data.get('interaction_count', 0))
        arm.cumulative_reward = float(data.get('cumulative_reward', 0.0))
        arm.reward_sq_sum = float(data.get('reward_sq_sum', 0.0))
        arm.x_sum = np.array(data.get('x_sum', np.zeros(arm.dimension)), dtype=float)
        arm.selection_count = int(data.get('selection_count', 0))
        arm.degraded = bool(data.get('degraded', False))
        last_updated = data.get('last_updated')
        arm.last_updated = datetime.fromisoformat(last_updated) if last_updated else None

        try:
            arm.A_inv = np.linalg.inv(arm.A)
        except np.linalg.LinAlgError:
            logger.error(f"Singular matrix restored for arm {arm.arm_id} ({arm.scope})")
            arm.A_inv = np.linalg.pinv(arm.A)
            arm.degraded = True
        return arm


class ArmRegistry:
    """
    Holds every arm, keyed by (scope, arm_id), with one re-entrant lock per arm.

    Arms are created on first reference. When a loader is given, the stored
    states of a scope are loaded the first time the scope is used, and user
    scopes beyond max_cached_scopes are evicted least recently used first;
    the shared scopes are never evicted. Readers take snapshots under the
    arm's lock; only the ModelUpdater mutates learned state.
    """

    def __init__(self, config: BanditConfig, loader: Callable[[str], List[Dict[str, Any]]] = None):
        self.config = config
        self.loader = loader
        self._arms: Dict[Tuple[str, str], Arm] = {}
        self._locks: Dict[Tuple[str, str], threading.RLock] = {}
        self._scopes: 'OrderedDict[str, None]' = OrderedDict()
        self._registry_lock = threading.Lock()

        for arm_id in config.arm_ids:
            self.get_or_create(arm_id, self.scope_for(None))

        logger.info(f"Initialised arm registry with arms: {config.arm_ids}")

    def scope_for(self, user_id: Optional[str] = None) -> str:
        """Model scope of a user: per-user, 'anonymous', or one shared scope."""
        if not self.config.per_user_models:
            return GLOBAL_SCOPE
        return user_id or ANONYMOUS_SCOPE

    def _stored_arms(self, scope: str) -> List[Arm]:
        arms = []
        for data in self.loader(scope):
            arm = Arm.from_dict(data)
            if arm.dimension != self.config.feature_dim or arm.scope != scope:
                logger.warning(f"Skipping stored arm {arm.arm_id} ({arm.scope}) with dimension {arm.dimension}")
                continue
            arms.append(arm)
        return arms

    def _use_scope(self, scope: str):
        # Registry lock held
        if scope in self._scopes:
            self._scopes.move_to_end(scope)
            return

        if self.loader is not None:
            for arm in self._stored_arms(scope):
                key = (scope, arm.arm_id)
                self._arms[key] = arm
                self._locks[key] = threading.RLock()
            if len(self._scopes) >= self.config.max_cached_scopes:
                self._evict_idle_scopes()
        self._scopes[scope] = None

    def _evict_idle_scopes(self):
        # Registry lock held. Scopes with a busy arm are skipped.
        for scope in list(self._scopes):
            if len(self._scopes) < self.config.max_cached_scopes:
                return
            if scope in (ANONYMOUS_SCOPE, GLOBAL_SCOPE):
                continue

            keys = [key for key in self._arms if key[0] == scope]
            acquired = []
            for key in keys:
                if not self._locks[key].acquire(blocking=False):
                    break
                acquired.append(key)

            evicted = len(acquired) == len(keys)
            if evicted:
                for key in keys:
                    del self._arms[key]
                del self._scopes[scope]
            for key in acquired:
                self._locks[key].release()
                if evicted:
                    del self._locks[key]
            if evicted:
                logger.debug(f"Evicted idle scope {scope}")

    def _entry(self, arm_id: str, scope: str) -> Tuple[Arm, threading.RLock]:
        if not arm_id or not isinstance(arm_id, str):
            raise ValidationError("arm_id must be a non-empty string", field='arm_id')

        key = (scope, arm_id)
        with self._registry_lock:
            self._use_scope(scope)
            arm = self._arms.get(key)
            if arm is None:
                arm = Arm(arm_id, self.config.feature_dim, self.config.regularization, scope)
                self._arms[key] = arm
                self._locks[key] = threading.RLock()
                logger.debug(f"Created arm {arm_id} in scope {scope}")
            return arm, self._locks[key]

    def get_or_create(self, arm_id: str, scope: str = ANONYMOUS_SCOPE) -> Arm:
        return self._entry(arm_id, scope)[0]

    @contextmanager
    def held(self, arm_id: str, scope: str = ANONYMOUS_SCOPE):
        """Lock an arm and yield it; retries if the scope was evicted meanwhile."""
        key = (scope, arm_id)
        while True:
            arm, lock = self._entry(arm_id, scope)
            lock.acquire()
            with self._registry_lock:
                current = self._arms.get(key) is arm
            if current:
                break
            lock.release()
        try:
            yield arm
        finally:
            lock.release()

    def snapshot(self, arm_id: str, scope: str = ANONYMOUS_SCOPE) -> Arm:
        """Consistent copy of an arm taken under its lock."""
        with self.held(arm_id, scope) as arm:
            return arm.copy()

    def arm_ids(self, scope: str = ANONYMOUS_SCOPE) -> List[str]:
        """Configured arms plus any created lazily in the scope, sorted."""
        with self._registry_lock:
            extra = {arm_id for arm_scope, arm_id in self._arms if arm_scope == scope}
        return sorted(set(self.config.arm_ids) | extra)

    def snapshots(self, scope: str = ANONYMOUS_SCOPE) -> List[Arm]:
        return [self.snapshot(arm_id, scope) for arm_id in self.arm_ids(scope)]

    def stored_snapshots(self, scope: str) -> List[Arm]:
        """Arms of a scope as stored, without keeping the scope in memory."""
        arms = {arm_id: Arm(arm_id, self.config.feature_dim, self.config.regularization, scope)
                for arm_id in self.config.arm_ids}
        if self.loader is not None:
            for arm in self._stored_arms(scope):
                arms[arm.arm_id] = arm
        return [arms[arm_id] for arm_id in sorted(arms)]

    def scopes(self) -> List[str]:
        with self._registry_lock:
            return sorted(self._scopes)

    def record_selection(self, arm_id: str, scope: str = ANONYMOUS_SCOPE):
        with self.held(arm_id, scope) as arm:
            arm.selection_count += 1

    def reset(self, arm_id: str = None, scope: str = None) -> int:
        """
        Administrative reset back to A = regularization * I, b = 0.

        Returns:
            Number of in-memory arms reset
        """
        with self._registry_lock:
            keys = [key for key in self._arms
                    if (arm_id is None or key[1] == arm_id) and (scope is None or key[0] == scope)]

        for arm_scope, key_arm_id in keys:
            with self.held(key_arm_id, arm_scope) as arm:
                arm.restore_from(Arm(arm.arm_id, arm.dimension, arm.regularization, arm.scope))

        logger.info(f"Reset {len(keys)} arms (arm_id={arm_id}, scope={scope})")
        return len(keys)

    def export_state(self, scope: str = None) -> List[Dict[str, Any]]:
        with self._registry_lock:
            keys = sorted(key for key in self._arms if scope is None or key[0] == scope)
        return [self.snapshot(arm_id, arm_scope).to_dict() for arm_scope, arm_id in keys]

    def restore(self, state: List[Dict[str, Any]]):
        """Load arm states produced by export_state or the store."""
        for data in state:
            restored = Arm.from_dict(data)
            if restored.dimension != self.config.feature_dim:
                logger.warning(f"Skipping arm {restored.arm_id} with dimension {restored.dimension}")
                continue
            with self.held(restored.arm_id, restored.scope) as arm:
                arm.restore_from(restored)
        logger.info(f"Restored {len(state)} arm states")


@dataclass
class ArmScore:
    arm_id: str
    predicted_reward: float
    confidence_bonus: float
    ucb_score: float
    interaction_count: int

    def to_dict(self) -> Dict[str, Any]:
        return {
            'predicted_reward': self.predicted_reward,
            'confidence_bonus': self.confidence_bonus,
            'ucb_score': self.ucb_score,
            'interaction_count': self.interaction_count,
        }


@dataclass
class ArmSelection:
    """Outcome of one LinUCB round."""
    arm_id: str
    arm_name: str
    predicted_reward: float
    confidence_bonus: float
    ucb_score: float
    exploration_level: float
    scope: str = ANONYMOUS_SCOPE
    scores: Dict[str, ArmScore] = field(default_factory=dict)
    excluded: List[str] = field(default_factory=list)


def _check_context_vector(x, dimension: int) -> np.ndarray:
    vector = np.asarray(x, dtype=float)
    if vector.ndim != 1 or vector.shape[0] != dimension:
        raise ValidationError(f"Context vector must have length {dimension}", field='context_vector')
    if not np.all(np.isfinite(vector)):
        raise ValidationError("Context vector contains non-finite values", field='context_vector')
    return vector


class LinUCBSelector:
    """
    Chooses the strategy arm with the highest upper confidence bound.

    ucb = theta . x + alpha * sqrt(x^T A^-1 x), ties broken by fewer
    interactions, then by arm id.
    """

    def __init__(self, registry: ArmRegistry, config: BanditConfig = None):
        self.registry = registry
        self.config = config or registry.config
        self.recent_exploration = deque(maxlen=self.config.exploration_history_size)
        self._history_lock = threading.Lock()

    def score(self, arm: Arm, x: np.ndarray) -> ArmScore:
        predicted = float(arm.theta @ x)
        quadratic = float(x @ arm.A_inv @ x)
        if not np.isfinite(quadratic) or quadratic < -1e-9:
            raise NumericInstabilityError(f"Invalid confidence width for arm {arm.arm_id}", arm_id=arm.arm_id)
        bonus = float(np.sqrt(max(quadratic, 0.0)))
        ucb = predicted + self.config.alpha * bonus
        return ArmScore(arm.arm_id, predicted, bonus, ucb, arm.interaction_count)

    def select_arm(self, x, arm_ids: List[str] = None, user_id: str = None) -> ArmSelection:
        """
        Select an arm for the encoded context.

        Raises:
            ValidationError: If the vector has the wrong shape
            NumericInstabilityError: If no arm can be scored
        """
        x = _check_context_vector(x, self.config.feature_dim)
        scope = self.registry.scope_for(user_id)
        candidates = sorted(set(arm_ids)) if arm_ids else self.registry.arm_ids(scope)

        scores: Dict[str, ArmScore] = {}
        names: Dict[str, str] = {}
        excluded = []

        for arm_id in candidates:
            arm = self.registry.snapshot(arm_id, scope)
            if arm.degraded:
                logger.warning(f"Excluding degraded arm {arm_id} ({scope}) from selection")
                excluded.append(arm_id)
                continue
            try:
                arm_score = self.score(arm, x)
            except NumericInstabilityError as e:
                logger.warning(f"Excluding arm {arm_id} ({scope}): {e}")
                excluded.append(arm_id)
                continue
            if not (np.isfinite(arm_score.ucb_score) and np.isfinite(arm_score.predicted_reward)):
                logger.warning(f"Excluding arm {arm_id} ({scope}) with non-finite score")
                excluded.append(arm_id)
                continue
            scores[arm_id] = arm_score
            names[arm_id] = arm.arm_name

        if not scores:
            raise NumericInstabilityError(f"No arm could be scored in scope {scope}")

        best = min(scores.values(), key=lambda s: (-s.ucb_score, s.interaction_count, s.arm_id))
        exploration_level = best.confidence_bonus / (
            best.predicted_reward + best.confidence_bonus + self.config.epsilon
        )

        with self._history_lock:
            self.recent_exploration.append(exploration_level)
        self.registry.record_selection(best.arm_id, scope)

        return ArmSelection(
            arm_id=best.arm_id,
            arm_name=names[best.arm_id],
            predicted_reward=best.predicted_reward,
            confidence_bonus=best.confidence_bonus,
            ucb_score=best.ucb_score,
            exploration_level=exploration_level,
            scope=scope,
            scores=scores,
            excluded=excluded,
        )

    def mean_exploration_level(self) -> float:
        with self._history_lock:
            if not self.recent_exploration:
                return 0.0
            return float(np.mean(self.recent_exploration))


class ModelUpdater:
    """The only writer of learned arm state."""

    def __init__(self, registry: ArmRegistry):
        self.registry = registry

    def apply_reward(self, arm_id: str, x, reward: float, scope: str = ANONYMOUS_SCOPE,
                     persist: Callable[[Arm], None] = None) -> Arm:
        """
        Apply one observed reward to an arm.

        A += x x^T, b += r x, A^-1 and theta are recomputed. When inversion fails
        the pseudo-inverse is used and the arm is marked degraded. If persist is
        given it runs while the arm lock is held; if it raises, the arm is
        rolled back and the error propagates.

        Returns:
            Snapshot of the updated arm
        """
        x = _check_context_vector(x, self.registry.config.feature_dim)
        if reward is None or not np.isfinite(reward):
            raise ValidationError("Reward must be a finite number", field='reward')
        reward = float(reward)

        with self.registry.held(arm_id, scope) as arm:
            backup = arm.copy()

            arm.A = arm.A + np.outer(x, x)
            arm.b = arm.b + reward * x

            degraded = False
            try:
                A_inv = np.linalg.inv(arm.A)
                if not np.all(np.isfinite(A_inv)):
                    raise np.linalg.LinAlgError("non-finite inverse")
            except np.linalg.LinAlgError as e:
                logger.error(f"Matrix inversion failed for arm {arm_id} ({scope}): {e}; using pseudo-inverse")
                degraded = True
                try:
                    A_inv = np.linalg.pinv(arm.A)
                except np.linalg.LinAlgError as pinv_error:
                    arm.restore_from(backup)
                    raise NumericInstabilityError(
                        f"Pseudo-inverse failed for arm {arm_id}: {pinv_error}", arm_id=arm_id
                    )

            theta = A_inv @ arm.b
            if not np.all(np.isfinite(theta)):
                logger.error(f"Non-finite parameters for arm {arm_id} ({scope})")
                degraded = True
                theta = np.nan_to_num(theta, nan=0.0, posinf=0.0, neginf=0.0)

            arm.A_inv = A_inv
            arm.theta = theta
            arm.degraded = degraded
            arm.interaction_count += 1
            arm.cumulative_reward += reward
            arm.reward_sq_sum += reward * reward
            arm.x_sum = arm.x_sum + x
            arm.last_updated = utcnow()

            if persist is not None:
                try:
                    persist(arm)
                except Exception:
                    arm.restore_from(backup)
                    logger.error(f"Persisting arm {arm_id} ({scope}) failed; rolled back")
                    raise

            return arm.copy()


class ContextualBandit:
    """
    LinUCB strategy selector: registry, selector and updater behind one object.
    """

    def __init__(self, config: BanditConfig = None, loader: Callable[[str], List[Dict[str, Any]]] = None):
        self.config = config or BanditConfig()
        self.registry = ArmRegistry(self.config, loader)
        self.selector = LinUCBSelector(self.registry, self.config)
        self.updater = ModelUpdater(self.registry)

        logger.info(f"Initialised Contextual Bandit with config: {self.config}")

    def select_arm(self, x, arm_ids: List[str] = None, user_id: str = None) -> ArmSelection:
        return self.selector.select_arm(x, arm_ids=arm_ids, user_id=user_id)

    def update(self, arm_id: str, x, reward: float, user_id: str = None,
               persist: Callable[[Arm], None] = None) -> Arm:
        return self.updater.apply_reward(arm_id, x, reward, self.registry.scope_for(user_id), persist)

    def save_model(self, filepath: str):
        """Save all arm states to a JSON file."""
        with open(filepath, 'w') as f:
            json.dump({'config': {'alpha': self.config.alpha, 'feature_dim': self.config.feature_dim},
                       'arms': self.registry.export_state()}, f, indent=2)
        logger.info(f"Model saved to {filepath}")

    def load_model(self, filepath: str):
        """Load arm states written by save_model."""
        with open(filepath, 'r') as f:
            model_data = json.load(f)
        self.registry.restore(model_data.get('arms', []))
        logger.info(f"Model loaded from {filepath}")
