"""Global configuration — loaded from environment variables."""

from pydantic_settings import BaseSettings


class EvoLedgerSettings(BaseSettings):
    log_level: str = "INFO"
    audit_db_path: str = ""  # empty keeps the audit trail in memory
    event_history_limit: int = 500

    # Evolution settings
    trait_count: int = 5
    randomness_words: int = 2
    randomness_delay_seconds: float = 0.0  # local provider delivery delay
    weather_series: str = "weather"
    oracle_timeout_seconds: float = 5.0
    stage_advance_mode: str = "increment"  # "increment" | "selected"

    # Personality settings
    default_learning_rate: int = 10

    # Staking settings
    reward_unit: int = 1000  # implied stake unit per asset

    model_config = {"env_prefix": "EVOLEDGER_"}


settings = EvoLedgerSettings()
