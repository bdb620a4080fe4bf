"""
Configuration management for the attribution engine
"""
from pydantic_settings import BaseSettings
from functools import lru_cache


class Settings(BaseSettings):
    """Engine settings"""

    # Application
    app_name: str = "Multi-Touch Attribution Engine"
    environment: str = "development"
    debug: bool = False
    log_level: str = "INFO"
    log_dir: str = "logs"  # Empty = console only

    # API
    api_host: str = "0.0.0.0"
    api_port: int = 8000

    # Database
    database_url: str = "sqlite:///./attribution.db"

    # Journeys
    attribution_window_days: int = 30

    # Rule-based models
    position_first_weight: float = 0.4
    position_last_weight: float = 0.4
    position_middle_weight: float = 0.2
    time_decay_half_life_days: float = 7.0
    shapley_max_channels: int = 10

    # Channel insights (tunable, not invariants)
    criticality_roas_weight: float = 0.4
    criticality_revenue_weight: float = 0.3
    criticality_assist_weight: float = 0.3
    criticality_revenue_scale: float = 1000.0
    budget_step: float = 0.2
    recommendation_top_n: int = 10

    # Synergy
    synergy_min_journeys: int = 4
    synergy_share_scale: float = 10.0
    synergy_top_n: int = 5

    # Drift / alerts
    drift_accuracy_threshold: float = 3.0  # Accuracy points
    drift_lookback_hours: int = 24
    share_shift_threshold: float = 10.0  # Attribution share points
    share_window_days: int = 7
    performance_drop_threshold: float = 20.0  # % ROAS drop
    channel_optimization_threshold: float = 15.0  # % efficiency gain
    channel_optimization_min_touches: int = 5

    # Experiments
    experiment_min_days: int = 7
    experiment_significance_cutoff: float = 95.0
    experiment_lift_threshold: float = 5.0

    # Scheduling
    enable_scheduler: bool = True
    experiment_tick_minutes: int = 60
    drift_tick_minutes: int = 60

    # Report generation
    report_workers: int = 4
    report_chunk_size: int = 250
    report_cache_seconds: int = 300
    top_journeys_limit: int = 10

    class Config:
        env_file = ".env"
        case_sensitive = False


@lru_cache()
def get_settings() -> Settings:
    """Get cached settings instance"""
    return Settings()
