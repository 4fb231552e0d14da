"""Tests for configuration management."""

import os
import tempfile

import pytest
from pydantic import ValidationError

from pricing.config.settings import AppSettings, load_settings


def test_app_settings_defaults() -> None:
    """Test that AppSettings has correct defaults."""
    settings = AppSettings(env="dev")

    assert settings.env == "dev"
    assert settings.database_path == "./pricing.sqlite"
    assert settings.redis_url is None
    assert settings.oracle_rpc_url is None
    assert settings.oracle_address is None
    assert settings.oracle_period_seconds == 3600
    assert settings.stablecoin_symbols == ["USDT", "USDC"]
    assert settings.reference_token_symbol == "KKUB"
    assert settings.step_timeout_seconds == 5.0
    assert settings.max_route_depth == 3
    assert settings.ttl_volatile_seconds == 10
    assert settings.ttl_standard_seconds == 300
    assert settings.ttl_extended_seconds == 1800
    assert settings.circuit_failure_threshold == 5
    assert settings.circuit_reset_timeout_seconds == 30.0
    assert settings.fee_rate == 0.003
    assert settings.metrics_staleness_seconds == 300


def test_app_settings_custom_values() -> None:
    """Test AppSettings with custom values."""
    settings = AppSettings(
        env="prod",
        redis_url="redis://cache:6379/1",
        oracle_rpc_url="https://rpc.example.org",
        oracle_address="0x0000000000000000000000000000000000000001",
        stablecoin_symbols=["USDT"],
        fee_rate=0.0025,
        max_concurrency=16,
    )

    assert settings.env == "prod"
    assert settings.redis_url == "redis://cache:6379/1"
    assert settings.oracle_rpc_url == "https://rpc.example.org"
    assert settings.stablecoin_symbols == ["USDT"]
    assert settings.fee_rate == 0.0025
    assert settings.max_concurrency == 16


def test_app_settings_validation() -> None:
    """Test that AppSettings validates fields."""
    with pytest.raises(ValidationError):
        AppSettings(env="invalid")

    with pytest.raises(ValidationError):
        AppSettings(env="dev", step_timeout_seconds=0)

    with pytest.raises(ValidationError):
        AppSettings(env="dev", max_route_depth=0)


def test_load_settings_dev_profile() -> None:
    """Test loading dev profile configuration."""
    with tempfile.NamedTemporaryFile(mode="w", suffix=".yaml", delete=False) as f:
        f.write("""
            database_path: "./dev-pricing.sqlite"
            redis_url: "memory://"
            stablecoin_symbols: [USDT, USDC, DAI]
            ttl_volatile_seconds: 5
            metrics_staleness_seconds: 120
            """)
        yaml_path = f.name

    try:
        settings = load_settings("dev", yaml_path)

        assert settings.env == "dev"
        assert settings.database_path == "./dev-pricing.sqlite"
        assert settings.redis_url == "memory://"
        assert settings.stablecoin_symbols == ["USDT", "USDC", "DAI"]
        assert settings.ttl_volatile_seconds == 5
        assert settings.metrics_staleness_seconds == 120
    finally:
        os.unlink(yaml_path)


def test_load_settings_profile_overrides_yaml_env() -> None:
    """Test that the profile argument wins over an env key in the file."""
    with tempfile.NamedTemporaryFile(mode="w", suffix=".yaml", delete=False) as f:
        f.write("""
            env: dev
            """)
        yaml_path = f.name

    try:
        settings = load_settings("staging", yaml_path)
        assert settings.env == "staging"
    finally:
        os.unlink(yaml_path)


def test_load_settings_empty_file() -> None:
    """Test that an empty file yields defaults."""
    with tempfile.NamedTemporaryFile(mode="w", suffix=".yaml", delete=False) as f:
        f.write("")
        yaml_path = f.name

    try:
        settings = load_settings("prod", yaml_path)
        assert settings.env == "prod"
        assert settings.fee_rate == 0.003
    finally:
        os.unlink(yaml_path)


def test_load_settings_invalid_profile() -> None:
    """Test that load_settings rejects invalid profiles."""
    with tempfile.NamedTemporaryFile(mode="w", suffix=".yaml", delete=False) as f:
        f.write("""
            fee_rate: 0.003
            """)
        yaml_path = f.name

    try:
        with pytest.raises(ValueError, match="Invalid profile: invalid"):
            load_settings("invalid", yaml_path)
    finally:
        os.unlink(yaml_path)


def test_load_settings_file_not_found() -> None:
    """Test that load_settings handles missing files."""
    with pytest.raises(FileNotFoundError, match="Configuration file not found"):
        load_settings("dev", "nonexistent.yaml")


def test_load_settings_invalid_yaml() -> None:
    """Test that load_settings handles invalid YAML."""
    with tempfile.NamedTemporaryFile(mode="w", suffix=".yaml", delete=False) as f:
        f.write("""
            invalid: yaml: content: [
            """)
        yaml_path = f.name

    try:
        with pytest.raises(ValueError, match="Invalid YAML configuration"):
            load_settings("dev", yaml_path)
    finally:
        os.unlink(yaml_path)


def test_load_settings_validation_error() -> None:
    """Test that load_settings handles validation errors."""
    with tempfile.NamedTemporaryFile(mode="w", suffix=".yaml", delete=False) as f:
        f.write("""
            fee_rate: "not_a_number"
            """)
        yaml_path = f.name

    try:
        with pytest.raises(ValidationError):
            load_settings("dev", yaml_path)
    finally:
        os.unlink(yaml_path)


def test_app_settings_environment_overrides() -> None:
    """Test that environment variables override defaults."""
    try:
        os.environ["REDIS_URL"] = "redis://env-host:6379/0"
        os.environ["MAX_ROUTE_DEPTH"] = "5"

        settings = AppSettings(env="dev")

        assert settings.redis_url == "redis://env-host:6379/0"
        assert settings.max_route_depth == 5
    finally:
        os.environ.pop("REDIS_URL", None)
        os.environ.pop("MAX_ROUTE_DEPTH", None)
