from config.config import (
    AttributionConfig,
    BanditConfig,
    DatabaseConfig,
    RecommenderConfig,
    RewardConfig,
    SimilarityConfig,
    StatisticsConfig,
)

__all__ = [
    'AttributionConfig',
    'BanditConfig',
    'DatabaseConfig',
    'RecommenderConfig',
    'RewardConfig',
    'SimilarityConfig',
    'StatisticsConfig',
]
