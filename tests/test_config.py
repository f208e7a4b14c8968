from __future__ import annotations

from genloop.config import GenerationConfig, _parse_bool, load_settings


def test_defaults():
    settings = load_settings({})
    assert settings.default_model == "default"
    assert settings.max_api_requests == 10
    assert settings.request_timeout_seconds == 60.0
    assert settings.log_level == "INFO"
    assert settings.record_traffic is False


def test_env_overrides(monkeypatch):
    monkeypatch.setenv("GENLOOP_DEFAULT_MODEL", "model-x")
    monkeypatch.setenv("GENLOOP_MAX_API_REQUESTS", "3")
    monkeypatch.setenv("GENLOOP_REQUEST_TIMEOUT_SECONDS", "0")
    monkeypatch.setenv("GENLOOP_LOG_LEVEL", "debug")
    monkeypatch.setenv("GENLOOP_RECORD_TRAFFIC", "yes")

    settings = load_settings()
    assert settings.default_model == "model-x"
    assert settings.max_api_requests == 3
    assert settings.request_timeout_seconds is None
    assert settings.log_level == "DEBUG"
    assert settings.record_traffic is True


def test_invalid_values_fall_back():
    settings = load_settings({
        "GENLOOP_MAX_API_REQUESTS": "-4",
        "GENLOOP_REQUEST_TIMEOUT_SECONDS": "soon",
        "GENLOOP_LOG_LEVEL": "chatty",
    })
    assert settings.max_api_requests == 1
    assert settings.request_timeout_seconds == 60.0
    assert settings.log_level == "INFO"


def test_parse_bool():
    assert _parse_bool("On") is True
    assert _parse_bool("0") is False
    assert _parse_bool("maybe", default=True) is True
    assert _parse_bool(None) is False


def test_generation_config_from_settings_and_clamp():
    settings = load_settings({"GENLOOP_DEFAULT_MODEL": "m", "GENLOOP_RECORD_TRAFFIC": "1"})
    config = GenerationConfig.from_settings(settings, temperature=0.5)
    assert config.model == "m"
    assert config.record_traffic is True
    assert config.temperature == 0.5
    assert GenerationConfig(max_api_requests=0).max_api_requests == 1

    copy = config.copy()
    copy.params["seed"] = 1
    assert config.params == {}
