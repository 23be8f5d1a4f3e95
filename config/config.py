"""
Configuration classes for the contextual book recommender.
Supports both PostgreSQL and SQLite stores.
"""

from dataclasses import dataclass, field
from typing import Dict, List, Optional

from categories import STRATEGY_CATEGORIES


@dataclass
class BanditConfig:
    """Configuration for the LinUCB strategy selector."""
    alpha: float = 1.0  # Exploration coefficient
    feature_dim: int = 44  # Context vector dimension
    regularization: float = 1.0  # A is initialised to regularization * I
    min_observations: int = 5  # Observations before an arm counts as Active
    epsilon: float = 1e-9  # Keeps explorationLevel finite
    per_user_models: bool = True  # Separate arm parameters per user ('anonymous' shared)
    arm_ids: List[str] = field(default_factory=lambda: list(STRATEGY_CATEGORIES))
    exploration_history_size: int = 100  # Recent exploration levels kept for stats
    max_cached_scopes: int = 1000  # In-memory user scopes when arms can be reloaded from the store

    def __post_init__(self):
        if self.alpha <= 0:
            raise ValueError("alpha must be positive")
        if self.feature_dim <= 0:
            raise ValueError("feature_dim must be positive")
        if self.regularization <= 0:
            raise ValueError("regularization must be positive")
        if self.max_cached_scopes < 1:
            raise ValueError("max_cached_scopes must be at least 1")


@dataclass
class RewardConfig:
    """Point values per action type. Ratings use the rating itself."""
    click: float = 1.0
    save: float = 3.0
    unsave: float = -3.0
    min_rating: float = 1.0
    max_rating: float = 5.0

    def points_table(self) -> Dict[str, float]:
        return {'click': self.click, 'save': self.save, 'unsave': self.unsave}


@dataclass
class AttributionConfig:
    """Configuration for last-touch reward attribution."""
    window_hours: float = 168.0  # Action must follow the impression within 7 days
    decay_lambda_per_hour: float = 1.0 / 48.0  # weight = exp(-lambda * hours)
    floor_impression_reward: bool = True  # Unsave cannot push an impression below zero
    default_batch_window_hours: float = 168.0  # How far back a batch scans actions

    def __post_init__(self):
        if self.window_hours <= 0:
            raise ValueError("window_hours must be positive")
        if self.decay_lambda_per_hour < 0:
            raise ValueError("decay_lambda_per_hour must be non-negative")


@dataclass
class SimilarityConfig:
    """Configuration for the TF-IDF similarity index."""
    min_similarity: float = 0.05  # Threshold used by the semantic strategy
    max_features: Optional[int] = None
    token_pattern: str = r"(?u)\b\w\w\w+\b"  # Tokens of three or more characters
    index_path: Optional[str] = None


@dataclass
class StatisticsConfig:
    """Configuration for arm statistics."""
    min_samples_for_best: int = 5
    z_score: float = 1.96  # 95% Wald interval
    prior_reward_variance: float = 1.0  # Used until an arm has two samples


@dataclass
class DatabaseConfig:
    """Configuration for database connections."""
    url: str = 'sqlite://'
    pool_size: int = 20
    max_overflow: int = 30
    pool_pre_ping: bool = True
    pool_recycle: int = 3600
    echo: bool = False

    @property
    def is_sqlite(self) -> bool:
        return self.url.startswith('sqlite')

    def get_engine_kwargs(self) -> dict:
        """Get SQLAlchemy engine kwargs."""
        if self.is_sqlite:
            return {'echo': self.echo}

        return {
            'pool_size': self.pool_size,
            'max_overflow': self.max_overflow,
            'pool_pre_ping': self.pool_pre_ping,
            'pool_recycle': self.pool_recycle,
            'echo': self.echo
        }


@dataclass
class RecommenderConfig:
    """Top-level configuration handed to the recommendation engine."""
    bandit: BanditConfig = None
    rewards: RewardConfig = None
    attribution: AttributionConfig = None
    similarity: SimilarityConfig = None
    statistics: StatisticsConfig = None
    database: DatabaseConfig = None
    default_limit: int = 10
    max_recommendations: int = 50
    selection_timeout_ms: Optional[float] = None
    popularity_window_days: int = 30
    cache_ttl: int = 300
    redis_host: Optional[str] = None
    redis_port: int = 6379
    redis_password: Optional[str] = None

    def __post_init__(self):
        """Initialise default sub-configs if not provided."""
        if self.bandit is None:
            self.bandit = BanditConfig()
        if self.rewards is None:
            self.rewards = RewardConfig()
        if self.attribution is None:
            self.attribution = AttributionConfig()
        if self.similarity is None:
            self.similarity = SimilarityConfig()
        if self.statistics is None:
            self.statistics = StatisticsConfig()
        if self.database is None:
            self.database = DatabaseConfig()
