"""
Arm statistics: average reward, Wald confidence interval, lifecycle state
and the best performing arm, built on a pandas DataFrame.
"""

from typing import Any, Dict, List, Optional
import logging
import math

import numpy as np
import pandas as pd

from config import BanditConfig, StatisticsConfig
from models.contextual_bandit import Arm

logger = logging.getLogger(__name__)


class StatsAggregator:

    def __init__(self, config: StatisticsConfig = None, bandit_config: BanditConfig = None):
        self.config = config or StatisticsConfig()
        self.bandit_config = bandit_config or BanditConfig()

    def reward_variance(self, arm: Arm) -> float:
        """Sample variance of observed rewards; the prior until two samples exist."""
        n = arm.interaction_count
        if n < 2:
            return self.config.prior_reward_variance
        mean = arm.cumulative_reward / n
        variance = (arm.reward_sq_sum - n * mean * mean) / (n - 1)
        return max(variance, 0.0)

    def confidence_interval(self, arm: Arm) -> Dict[str, float]:
        """
        Wald interval: avg +/- z * sqrt(sigma^2 * xbar^T A^-1 xbar).

        The lower bound is clamped at zero.
        """
        average = arm.average_reward
        if arm.interaction_count == 0:
            return {'lower': 0.0, 'upper': 0.0, 'half_width': 0.0}

        x_bar = arm.mean_context
        width = float(x_bar @ arm.A_inv @ x_bar)
        if not math.isfinite(width) or width < 0:
            width = 0.0
        half_width = self.config.z_score * math.sqrt(self.reward_variance(arm) * width)

        return {
            'lower': max(0.0, average - half_width),
            'upper': average + half_width,
            'half_width': half_width,
        }

    def arm_stats(self, arm: Arm) -> Dict[str, Any]:
        interval = self.confidence_interval(arm)
        return {
            'arm_id': arm.arm_id,
            'arm_name': arm.arm_name,
            'interaction_count': arm.interaction_count,
            'selection_count': arm.selection_count,
            'cumulative_reward': arm.cumulative_reward,
            'average_reward': arm.average_reward,
            'confidence_lower': interval['lower'],
            'confidence_upper': interval['upper'],
            'state': arm.lifecycle_state(self.bandit_config.min_observations),
            'degraded': arm.degraded,
            'theta_norm': float(np.linalg.norm(arm.theta)),
            'last_updated': arm.last_updated.isoformat() if arm.last_updated else None,
        }

    def to_frame(self, arms: List[Arm]) -> pd.DataFrame:
        """One row per arm, ordered by arm id."""
        columns = ['arm_id', 'arm_name', 'interaction_count', 'selection_count', 'cumulative_reward',
                   'average_reward', 'confidence_lower', 'confidence_upper', 'state', 'degraded',
                   'theta_norm', 'last_updated']
        frame = pd.DataFrame([self.arm_stats(arm) for arm in arms], columns=columns)
        return frame.sort_values('arm_id').reset_index(drop=True)

    def best_arm(self, frame: pd.DataFrame) -> Optional[str]:
        """Highest average reward among arms with enough samples, ties by arm id."""
        eligible = frame[frame['interaction_count'] >= self.config.min_samples_for_best]
        if eligible.empty:
            return None
        ranked = eligible.sort_values(['average_reward', 'arm_id'], ascending=[False, True])
        return str(ranked.iloc[0]['arm_id'])

    def summarise(self, arms: List[Arm], alpha: float, mean_exploration: float = 0.0,
                  scope: str = None) -> Dict[str, Any]:
        """
        Per-arm statistics plus totals, in a JSON-friendly dictionary.

        Records come straight from arm_stats so missing values stay None; the
        frame is only used for totals and the best arm.
        """
        records = [self.arm_stats(arm) for arm in sorted(arms, key=lambda arm: arm.arm_id)]
        frame = self.to_frame(arms)

        return {
            'scope': scope,
            'arms': records,
            'total_interactions': int(frame['interaction_count'].sum()) if not frame.empty else 0,
            'total_selections': int(frame['selection_count'].sum()) if not frame.empty else 0,
            'best_performing_arm': self.best_arm(frame) if not frame.empty else None,
            'exploration_coefficient': alpha,
            'mean_exploration_level': mean_exploration,
            'min_samples_for_best': self.config.min_samples_for_best,
        }
