"""Application settings using pydantic-settings."""

from functools import lru_cache
from typing import Literal

from pydantic import Field, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    """Application configuration with environment variable overrides."""

    model_config = SettingsConfigDict(
        env_prefix="INTENTX_",
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=False,
        extra="ignore",
    )

    # Storage
    # Empty URL keeps intents in memory (demo/test mode).
    db_url: str = Field(
        default="sqlite:///./intentx.db",
        description="Database connection URL (empty string = in-memory store)",
    )

    # Scheduler
    poll_interval_seconds: float = Field(
        default=5.0, description="Delay between pending-intent sweeps (seconds)"
    )
    scheduler_enabled: bool = Field(
        default=True, description="Run the polling scheduler inside the API process"
    )

    # Execution
    max_execution_attempts: int = Field(
        default=5,
        description="Execution claims per intent before market rejections become FAILED",
    )
    quote_timeout_seconds: float = Field(
        default=5.0, description="Upper bound for a single quote request (seconds)"
    )
    settlement_timeout_seconds: float = Field(
        default=30.0, description="Upper bound for a single settlement call (seconds)"
    )
    quote_fluctuation: float = Field(
        default=0.02,
        description="Width of the simulated market move applied to table rates (0.02 = +/-1%)",
    )

    # Admission
    signature_max_age_seconds: int = Field(
        default=300, description="Reject signed requests older than this (seconds)"
    )
    signature_max_skew_seconds: int = Field(
        default=60, description="Reject signed requests dated this far in the future (seconds)"
    )

    # Settlement
    settlement_mode: Literal["none", "simulated", "contract"] = Field(
        default="none",
        description="none = local execution only, simulated = fake tx hashes, contract = IntentX contract",
    )
    rpc_url: str = Field(default="http://localhost:8545", description="JSON-RPC endpoint")
    executor_private_key: str | None = Field(
        default=None, description="Executor wallet key for contract settlement (NEVER commit or print)"
    )
    contract_address: str | None = Field(
        default=None, description="Deployed IntentX contract address"
    )
    token_decimals: int = Field(
        default=18, description="Decimals used when converting amounts to on-chain units"
    )

    # API Configuration
    api_host: str = Field(default="0.0.0.0", description="FastAPI host")
    api_port: int = Field(default=5000, description="FastAPI port")
    cors_origins: list[str] = Field(default=["*"], description="Allowed CORS origins")

    # Logging
    log_level: Literal["DEBUG", "INFO", "WARNING", "ERROR"] = Field(
        default="INFO", description="Logging level"
    )
    log_format: Literal["json", "console"] = Field(
        default="json", description="Log output format"
    )

    @field_validator("poll_interval_seconds")
    @classmethod
    def validate_poll_interval(cls, v: float) -> float:
        """Validate poll interval is reasonable."""
        if v <= 0:
            raise ValueError(f"Poll interval must be positive, got {v}")
        return v

    @field_validator("max_execution_attempts")
    @classmethod
    def validate_attempts(cls, v: int) -> int:
        """A finite, positive retry budget is required."""
        if v < 1:
            raise ValueError(f"max_execution_attempts must be at least 1, got {v}")
        return v

    @field_validator("quote_timeout_seconds", "settlement_timeout_seconds")
    @classmethod
    def validate_timeouts(cls, v: float) -> float:
        """Collaborator calls must always be bounded."""
        if v <= 0:
            raise ValueError(f"Timeout must be positive, got {v}")
        return v

    @field_validator("quote_fluctuation")
    @classmethod
    def validate_fluctuation(cls, v: float) -> float:
        """Validate fluctuation is a fraction between 0 and 1."""
        if not 0 <= v < 1:
            raise ValueError(f"Fluctuation must be between 0 and 1, got {v}")
        return v


@lru_cache
def get_settings() -> Settings:
    """Get cached settings instance."""
    return Settings()
