from __future__ import annotations

import pytest
from pydantic import ValidationError

from unshackle_client import ApiConfig, ClientConfig, RetryConfig, load_config_from_environment

ENV_API_KEY = "env-key"
ENV_API_URL = "https://unshackle.example:9000"


def test_load_config_reads_environment_mapping() -> None:
    config = load_config_from_environment(
        env={
            "UNSHACKLE_API_URL": ENV_API_URL,
            "UNSHACKLE_API_KEY": ENV_API_KEY,
            "UNSHACKLE_REQUEST_TIMEOUT": "12.5",
            "UNSHACKLE_MAX_RETRIES": "1",
            "UNSHACKLE_STREAM_TOKEN": "ws-token",
        }
    )

    assert isinstance(config, ClientConfig)
    assert str(config.api.base_url).rstrip("/") == ENV_API_URL
    assert config.api.api_key == ENV_API_KEY
    assert config.api.request_timeout == 12.5
    assert config.api.effective_stream_token == "ws-token"
    assert config.retry.max_retries == 1


def test_load_config_defaults(monkeypatch: pytest.MonkeyPatch) -> None:
    monkeypatch.setenv("UNSHACKLE_API_KEY", ENV_API_KEY)
    for name in (
        "UNSHACKLE_API_URL",
        "UNSHACKLE_REQUEST_TIMEOUT",
        "UNSHACKLE_MAX_RETRIES",
        "UNSHACKLE_STREAM_TOKEN",
    ):
        monkeypatch.delenv(name, raising=False)

    config = load_config_from_environment()

    assert str(config.api.base_url) == "http://localhost:8888/"
    assert config.api.request_timeout == 30.0
    assert config.api.effective_stream_token == ENV_API_KEY
    assert config.retry == RetryConfig()
    assert config.stream.max_reconnect_attempts == 5
    assert config.stream.reconnect_base_delay == 1.0
    assert config.stream.exclusive is True


def test_load_config_missing_key_raises() -> None:
    with pytest.raises(ValueError, match="UNSHACKLE_API_KEY"):
        load_config_from_environment(env={"UNSHACKLE_API_URL": ENV_API_URL})


@pytest.mark.parametrize(
    ("name", "value"),
    [
        ("UNSHACKLE_REQUEST_TIMEOUT", "soon"),
        ("UNSHACKLE_MAX_RETRIES", "many"),
        ("UNSHACKLE_MAX_RETRIES", "-1"),
    ],
)
def test_load_config_rejects_malformed_numbers(name: str, value: str) -> None:
    with pytest.raises(ValueError):
        load_config_from_environment(env={"UNSHACKLE_API_KEY": ENV_API_KEY, name: value})


def test_config_models_are_frozen_and_strict() -> None:
    config = ApiConfig(api_key=ENV_API_KEY)
    with pytest.raises(ValidationError):
        config.api_key = "other"  # type: ignore[misc]
    with pytest.raises(ValidationError):
        ApiConfig(api_key=ENV_API_KEY, unexpected=True)  # type: ignore[call-arg]
    with pytest.raises(ValidationError):
        RetryConfig(jitter_ratio=1.5)
