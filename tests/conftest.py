"""Pytest configuration and fixtures."""

import sys
from collections.abc import Callable
from pathlib import Path
from typing import Any

import pytest
import yaml

# Add src to path for imports
src_path = Path(__file__).parent.parent / "src"
sys.path.insert(0, str(src_path))

# Add tests to path for provider_mock imports
tests_path = Path(__file__).parent
sys.path.insert(0, str(tests_path))

from graphctl.config import Config, LogFormat  # noqa: E402
from provider_mock import MockProvider  # noqa: E402


@pytest.fixture
def config(tmp_path: Path) -> Config:
    """Engine configuration for the mock provider with instant retries."""
    return Config(
        config_path=tmp_path / "infra.yaml",
        state_path=tmp_path / "state" / "state.json",
        provider="mock",
        parallelism=4,
        max_attempts=3,
        retry_backoff_base_seconds=0.0,
        retry_backoff_max_seconds=0.0,
        provider_timeout_seconds=30,
        lock_timeout_seconds=60,
        teardown_max_rounds=5,
        log_format=LogFormat.TEXT,
    )


@pytest.fixture
def provider() -> MockProvider:
    return MockProvider()


@pytest.fixture
def write_document(config: Config) -> Callable[[dict[str, Any]], Path]:
    """Write a configuration document to config.config_path."""

    def write(document: dict[str, Any]) -> Path:
        config.config_path.write_text(yaml.safe_dump(document, sort_keys=False))
        return config.config_path

    return write
