"""Runtime configuration and logging setup."""

import logging
from functools import lru_cache
from typing import Literal, Optional

from pydantic import Field
from pydantic_settings import BaseSettings, SettingsConfigDict

LOG_FORMAT = "%(asctime)s %(levelname)s %(name)s: %(message)s"


class Settings(BaseSettings):
    """
    Process-wide settings, read from ``SPENDNOTE_*`` environment variables
    and an optional ``.env`` file.
    """

    model_config = SettingsConfigDict(
        env_prefix="SPENDNOTE_",
        env_file=".env",
        env_file_encoding="utf-8",
        extra="ignore",
    )

    deployment_mode: Literal["development", "test", "production"] = "development"

    # Proof backend
    proof_backend: Literal["mock", "external"] = "mock"
    allow_mock_fallback: bool = True
    prover_command: Optional[str] = None  # e.g. "/opt/prover/host" or "python prover.py"
    prover_timeout_seconds: float = Field(default=120.0, gt=0)

    # Storage
    database_url: str = "sqlite:///spend_notes.db"

    # Claim links
    link_ttl_minutes: int = Field(default=60, gt=0)
    claim_base_url: str = "http://localhost:5173/claim"

    # Nullifier encryption key (hex); generated per process when unset
    nullifier_key_hex: Optional[str] = None

    # 1 ETH in wei
    default_amount: int = Field(default=10**18, ge=0)

    log_level: str = "INFO"

    @property
    def is_production(self) -> bool:
        return self.deployment_mode == "production"


@lru_cache(maxsize=1)
def get_settings() -> Settings:
    """Get or create the cached settings instance."""
    return Settings()


def reset_settings() -> None:
    """Drop the cached settings (for testing)."""
    get_settings.cache_clear()


def configure_logging(level: Optional[str] = None) -> logging.Logger:
    """
    Attach a single stream handler to the ``spendnote`` logger.

    Calling this more than once only updates the level.
    """
    logger = logging.getLogger("spendnote")
    logger.setLevel((level or get_settings().log_level).upper())

    if not any(getattr(h, "_spendnote", False) for h in logger.handlers):
        handler = logging.StreamHandler()
        handler.setFormatter(logging.Formatter(LOG_FORMAT))
        handler._spendnote = True
        logger.addHandler(handler)

    return logger
