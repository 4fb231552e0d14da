"""Application settings and configuration management."""

from pathlib import Path
from typing import Literal

import structlog
import yaml
from pydantic import Field, ValidationError
from pydantic_settings import BaseSettings

logger = structlog.get_logger(__name__)

PROFILES = ("dev", "staging", "prod")


class AppSettings(BaseSettings):
    """Application settings with environment variable support."""

    # Environment
    env: Literal["dev", "staging", "prod"] = Field(
        description="Environment: dev, staging, prod"
    )

    # Storage and shared cache
    database_path: str = Field(
        default="./pricing.sqlite",
        description="SQLite database file path, or memory:// for in-memory storage",
    )
    redis_url: str | None = Field(
        default=None,
        description="Shared cache URL (redis://..., memory://, unset = local-only)",
    )

    # On-chain oracle
    oracle_rpc_url: str | None = Field(default=None, description="EVM JSON-RPC URL")
    oracle_address: str | None = Field(
        default=None, description="TWAP oracle contract address"
    )
    oracle_period_seconds: int = Field(
        default=3600, gt=0, description="TWAP period in seconds"
    )

    # Price discovery
    stablecoin_symbols: list[str] = Field(
        default_factory=lambda: ["USDT", "USDC"],
        description="Symbols treated as stablecoins",
    )
    stablecoin_addresses: list[str] = Field(
        default_factory=lambda: [
            "0x7d984c24d2499d840eb3b7016077164e15e5faa6",
            "0x77071ad51ca93fc90e77bcdece5aa6f1b40fcb21",
        ],
        description="Addresses treated as stablecoins",
    )
    reference_token_symbol: str = Field(
        default="KKUB", description="Token stablecoins are market-priced against"
    )
    step_timeout_seconds: float = Field(
        default=5.0, gt=0, description="Timeout for each price fallback step"
    )
    max_concurrency: int = Field(
        default=8, ge=1, description="Bound on parallel repository/cache work"
    )
    max_route_depth: int = Field(
        default=3, ge=1, description="Maximum cross-token routing depth"
    )

    # Cache TTLs
    ttl_volatile_seconds: int = Field(default=10, gt=0, description="Live price TTL")
    ttl_standard_seconds: int = Field(
        default=300, gt=0, description="Token, pair and metrics TTL"
    )
    ttl_extended_seconds: int = Field(default=1800, gt=0, description="Chart/user TTL")
    cache_sweep_interval_seconds: float = Field(
        default=60.0, gt=0, description="Minimum interval between local sweeps"
    )
    chart_cache_ttl_seconds: int = Field(
        default=300, gt=0, description="Whole-series chart cache TTL"
    )

    # Shared cache circuit breaker
    circuit_failure_threshold: int = Field(
        default=5, ge=1, description="Failures before the shared tier is bypassed"
    )
    circuit_reset_timeout_seconds: float = Field(
        default=30.0, gt=0, description="Time before probing the shared tier again"
    )

    # Metrics
    fee_rate: float = Field(default=0.003, ge=0, description="Swap fee rate")
    metrics_staleness_seconds: int = Field(
        default=300, gt=0, description="Maximum age of a cached metric"
    )
    refresh_interval_seconds: float = Field(
        default=300.0, gt=0, description="Interval of the background metrics sweep"
    )

    model_config = {
        "env_file": ".env",
        "env_file_encoding": "utf-8",
        "case_sensitive": False,
        "extra": "ignore",
    }


def load_settings(profile: str, yaml_path: str) -> AppSettings:
    """Load settings from YAML file and environment variables.

    Args:
        profile: Configuration profile name (dev, staging, prod)
        yaml_path: Path to YAML configuration file

    Returns:
        AppSettings instance with loaded configuration

    Raises:
        FileNotFoundError: If YAML file doesn't exist
        ValidationError: If configuration is invalid
        ValueError: If profile is invalid
    """
    if profile not in PROFILES:
        raise ValueError(
            f"Invalid profile: {profile}. Must be one of: {', '.join(PROFILES)}"
        )

    yaml_file = Path(yaml_path)
    if not yaml_file.exists():
        raise FileNotFoundError(f"Configuration file not found: {yaml_path}")

    try:
        with open(yaml_file, encoding="utf-8") as f:
            yaml_config = yaml.safe_load(f) or {}

        yaml_config["env"] = profile

        logger.info("Loading configuration", profile=profile, yaml_path=yaml_path)

        settings = AppSettings(**yaml_config)

        logger.info(
            "Configuration loaded successfully",
            profile=profile,
            shared_cache="configured" if settings.redis_url else "local-only",
            oracle="configured" if settings.oracle_rpc_url else "disabled",
        )

        return settings

    except yaml.YAMLError as e:
        logger.error("Failed to parse YAML configuration", error=str(e))
        raise ValueError(f"Invalid YAML configuration: {e}") from e
    except ValidationError as e:
        logger.error("Configuration validation failed", error=str(e))
        raise
    except Exception as e:
        logger.error("Unexpected error loading configuration", error=str(e))
        raise
