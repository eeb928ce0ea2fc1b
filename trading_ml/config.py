"""
Configuration for the Trading ML engine
"""
import os
import logging
from typing import Optional

from pydantic_settings import BaseSettings


class Settings(BaseSettings):
    """Application settings"""

    # Service info
    service_name: str = "daytrader-trading-ml"
    version: str = os.getenv("BUILD_VERSION", "1.0.0")
    commit: str = os.getenv("BUILD_COMMIT", "unknown")

    debug: bool = os.getenv("DEBUG", "false").lower() == "true"
    log_level: str = os.getenv("LOG_LEVEL", "INFO")

    # Model storage
    model_dir: str = os.getenv("MODEL_DIR", "./models")

    # Feature / training thresholds
    min_training_bars: int = int(os.getenv("MIN_TRAINING_BARS", "100"))
    min_training_vectors: int = int(os.getenv("MIN_TRAINING_VECTORS", "500"))
    target_lookforward: int = int(os.getenv("TARGET_LOOKFORWARD", "5"))

    # Decision engine
    action_log_size: int = int(os.getenv("ACTION_LOG_SIZE", "10000"))
    default_agent_type: str = os.getenv("DEFAULT_AGENT_TYPE", "PPO")

    # Optional global seed for reproducible runs
    random_seed: Optional[int] = None

    class Config:
        env_file = ".env"
        extra = "ignore"
        protected_namespaces = ()


settings = Settings()


def setup_logging(level: Optional[str] = None) -> None:
    """Configure root logging for command line entry points"""
    logging.basicConfig(
        level=(level or settings.log_level).upper(),
        format='%(asctime)s - %(name)s - %(levelname)s - %(message)s'
    )
