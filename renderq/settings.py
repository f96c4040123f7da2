"""Process-level settings read from the environment."""

import logging
from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    """RENDERQ_DATA_DIR and RENDERQ_LOG_LEVEL."""
    model_config = SettingsConfigDict(env_prefix="RENDERQ_")

    data_dir: str = ".renderq"
    log_level: str = "WARNING"


def configure_logging(level: str) -> None:
    logging.basicConfig(
        level=getattr(logging, level.upper(), logging.WARNING),
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )
