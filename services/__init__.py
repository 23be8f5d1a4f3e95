from services.attribution import AttributionEngine
from services.recommendation_engine import RecommendationEngine
from services.reward_signals import RewardSignalRecorder
from services.statistics import StatsAggregator
from services.store import RewardStore

__all__ = [
    'AttributionEngine',
    'RecommendationEngine',
    'RewardSignalRecorder',
    'RewardStore',
    'StatsAggregator',
]
