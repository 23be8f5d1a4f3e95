"""
Configuration settings for the Contextual Book Recommender

Manages all configuration parameters including:
- Database connections
- Redis cache settings
- Bandit, reward and attribution parameters
- API settings
"""

import os
from typing import Optional

from dotenv import load_dotenv
from pydantic import Field
from pydantic_settings import BaseSettings, SettingsConfigDict

from config.config import (
    AttributionConfig,
    BanditConfig,
    DatabaseConfig,
    RecommenderConfig,
    RewardConfig,
    SimilarityConfig,
    StatisticsConfig,
)

# Load environment variables from .env file
load_dotenv()


class Settings(BaseSettings):
    """Application settings with environment variable support."""

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=False,
        extra="ignore",
    )

    # Database settings
    database_url: str = Field(
        default="postgresql+psycopg2://localhost/bookdb",
        description="SQLAlchemy URL of the impression/action store"
    )
    sql_debug: bool = Field(default=False, description="Echo SQL statements")

    # Redis settings
    redis_host: Optional[str] = Field(
        default=None,
        description="Redis server host; statistics caching is disabled when unset"
    )
    redis_port: int = Field(default=6379, description="Redis server port")
    redis_password: Optional[str] = Field(default=None, description="Redis server password")
    cache_ttl: int = Field(default=300, description="Cache time-to-live in seconds")

    # Contextual Bandit settings
    bandit_alpha: float = Field(
        default=1.0,
        description="Exploration coefficient for the LinUCB upper confidence bound"
    )
    regularization: float = Field(default=1.0, description="Initial A = regularization * I")
    min_observations: int = Field(
        default=5,
        description="Observations before an arm is considered Active"
    )
    per_user_models: bool = Field(
        default=True,
        description="Keep separate arm parameters for each signed-in user"
    )
    max_cached_scopes: int = Field(
        default=1000,
        description="User model scopes kept in memory before idle ones are evicted"
    )

    # Reward and attribution settings
    reward_click: float = Field(default=1.0, description="Points for a click")
    reward_save: float = Field(default=3.0, description="Points for a save")
    reward_unsave: float = Field(default=-3.0, description="Points for an unsave")
    attribution_window_hours: float = Field(
        default=168.0,
        description="Maximum delay between impression and action for attribution"
    )
    decay_lambda_per_hour: float = Field(
        default=1.0 / 48.0,
        description="Exponential time-decay rate applied to attributed rewards"
    )

    # Statistics settings
    min_samples_for_best: int = Field(
        default=5,
        description="Minimum interactions before an arm can be reported as best"
    )

    # Similarity settings
    min_similarity: float = Field(default=0.05, description="Similarity threshold for the semantic arm")
    similarity_index_path: Optional[str] = Field(
        default=None,
        description="Optional joblib file the similarity index is loaded from"
    )

    # Recommendation settings
    max_recommendations: int = Field(
        default=50,
        description="Maximum number of recommendations per request"
    )
    selection_timeout_ms: Optional[float] = Field(
        default=None,
        description="Selections slower than this fall back to the popularity ranking"
    )

    # API settings
    api_host: str = Field(default="0.0.0.0", description="API server host")
    api_port: int = Field(default=8000, description="API server port")
    debug: bool = Field(default=False, description="Enable debug mode")

    # Logging settings
    log_level: str = Field(default="INFO", description="Logging level")
    log_file: Optional[str] = Field(default=None, description="Log file path")

    def to_recommender_config(self) -> RecommenderConfig:
        """Translate flat settings into the engine's dataclass configuration."""
        return RecommenderConfig(
            bandit=BanditConfig(
                alpha=self.bandit_alpha,
                regularization=self.regularization,
                min_observations=self.min_observations,
                per_user_models=self.per_user_models,
                max_cached_scopes=self.max_cached_scopes,
            ),
            rewards=RewardConfig(
                click=self.reward_click,
                save=self.reward_save,
                unsave=self.reward_unsave,
            ),
            attribution=AttributionConfig(
                window_hours=self.attribution_window_hours,
                decay_lambda_per_hour=self.decay_lambda_per_hour,
            ),
            similarity=SimilarityConfig(
                min_similarity=self.min_similarity,
                index_path=self.similarity_index_path,
            ),
            statistics=StatisticsConfig(min_samples_for_best=self.min_samples_for_best),
            database=DatabaseConfig(url=self.database_url, echo=self.sql_debug),
            max_recommendations=self.max_recommendations,
            selection_timeout_ms=self.selection_timeout_ms,
            cache_ttl=self.cache_ttl,
            redis_host=self.redis_host,
            redis_port=self.redis_port,
            redis_password=self.redis_password,
        )


_settings = None


def get_settings() -> Settings:
    """Get the process-wide settings instance."""
    global _settings
    if _settings is None:
        _settings = Settings()
    return _settings


class DevelopmentSettings(Settings):
    """Development environment settings."""
    debug: bool = True
    log_level: str = "DEBUG"
    database_url: str = "sqlite:///bookdb_dev.sqlite3"


class ProductionSettings(Settings):
    """Production environment settings."""
    debug: bool = False
    log_level: str = "WARNING"
    cache_ttl: int = 600
    selection_timeout_ms: Optional[float] = 250.0


class TestingSettings(Settings):
    """Testing environment settings."""
    debug: bool = True
    log_level: str = "DEBUG"
    database_url: str = "sqlite://"
    cache_ttl: int = 60


def get_environment_settings(environment: str = None) -> Settings:
    """Get settings for a specific environment."""
    if environment is None:
        environment = os.getenv("ENVIRONMENT", "development")

    if environment == "production":
        return ProductionSettings()
    elif environment == "testing":
        return TestingSettings()
    else:
        return DevelopmentSettings()


def validate_settings(settings: Settings) -> bool:
    """Validate configuration settings."""
    errors = []

    if not settings.database_url.startswith(("postgresql", "postgres", "sqlite")):
        errors.append("Invalid database URL format")

    if not (0 <= settings.redis_port <= 65535):
        errors.append("Invalid Redis port number")

    if not (0 < settings.bandit_alpha <= 10):
        errors.append("Bandit alpha must be between 0 and 10")

    if settings.regularization <= 0:
        errors.append("Regularization must be positive")

    if settings.max_cached_scopes < 1:
        errors.append("Max cached scopes must be at least 1")

    if settings.attribution_window_hours <= 0:
        errors.append("Attribution window must be positive")

    if settings.decay_lambda_per_hour < 0:
        errors.append("Decay rate must be non-negative")

    if settings.reward_save < 0 or settings.reward_click < 0:
        errors.append("Click and save rewards must be non-negative")

    if not (1 <= settings.api_port <= 65535):
        errors.append("Invalid API port number")

    if settings.max_recommendations <= 0:
        errors.append("Max recommendations must be positive")

    if errors:
        raise ValueError(f"Configuration validation failed: {', '.join(errors)}")

    return True
