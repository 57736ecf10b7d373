import logging

import pytest
from pydantic import ValidationError

from load_config import ConfigurationError, LoadTestConfig, configure_logging, load_config, load_profile_file

BASE_ENV = {"CTFD_BASE_URL": "https://ctfd.example.com/", "CTFD_API_ACCESS_TOKEN": "ctfd_abc"}


def test_defaults():
    config = load_config(env=BASE_ENV)
    assert config.base_url == "https://ctfd.example.com"
    assert config.api_token == "ctfd_abc"
    assert config.duration_seconds == 300
    assert config.target_concurrency == 50
    assert config.pacing_s == 0.5
    assert config.detail_pacing_s == 0.25
    assert config.detail_calls == 3
    assert config.request_timeout_s == 30.0
    assert config.verify_tls is False
    assert config.session_bundle_path == "auth.json"
    assert config.auxiliary_endpoints == ["/api/v1/scoreboard", "/api/v1/users", "/api/v1/notifications"]


@pytest.mark.parametrize("missing", ["CTFD_BASE_URL", "CTFD_API_ACCESS_TOKEN"])
def test_missing_required_setting_names_variable(missing):
    env = {k: v for k, v in BASE_ENV.items() if k != missing}
    with pytest.raises(ConfigurationError) as exc:
        load_config(env=env)
    message = str(exc.value)
    assert f"missing required setting {missing}" in message
    assert "Please set CTFD_BASE_URL and CTFD_API_ACCESS_TOKEN." in message


def test_empty_env_value_counts_as_missing():
    with pytest.raises(ConfigurationError):
        load_config(env={**BASE_ENV, "CTFD_API_ACCESS_TOKEN": ""})


def test_env_values_are_coerced():
    env = {
        **BASE_ENV,
        "LOAD_DURATION_SECONDS": "30",
        "LOAD_TARGET_CONCURRENCY": "8",
        "LOAD_PACING_MS": "200",
        "LOAD_DETAIL_PACING_MS": "40",
        "LOAD_VERIFY_TLS": "true",
        "LOAD_AUXILIARY_ENDPOINTS": "/api/v1/scoreboard, /api/v1/teams",
        "LOAD_EXPECTED_STATUSES": '{"/api/v1/notifications": [200, 304], "/api/v1/teams": 403}',
    }
    config = load_config(env=env)
    assert config.duration_seconds == 30.0
    assert config.target_concurrency == 8
    assert config.pacing_s == 0.2
    assert config.detail_pacing_s == 0.04
    assert config.verify_tls is True
    assert config.auxiliary_endpoints == ["/api/v1/scoreboard", "/api/v1/teams"]
    assert config.expected_statuses == {"/api/v1/notifications": [200, 304], "/api/v1/teams": [403]}


def test_overrides_beat_env_and_none_is_ignored():
    config = load_config(overrides={"target_concurrency": 4, "duration_seconds": None}, env={**BASE_ENV, "LOAD_TARGET_CONCURRENCY": "9"})
    assert config.target_concurrency == 4
    assert config.duration_seconds == 300


def test_profile_is_lowest_precedence(tmp_path):
    profile = tmp_path / "profile.yaml"
    profile.write_text(
        "CTFD_BASE_URL: http://profile.test\n"
        "target_concurrency: 12\n"
        "detail_calls: 5\n"
        "auxiliary_endpoints:\n"
        "  - /api/v1/scoreboard\n"
    )
    config = load_config(env={"CTFD_API_ACCESS_TOKEN": "tok", "LOAD_DETAIL_CALLS": "1"}, profile_path=str(profile))
    assert config.base_url == "http://profile.test"
    assert config.target_concurrency == 12
    assert config.detail_calls == 1
    assert config.auxiliary_endpoints == ["/api/v1/scoreboard"]


def test_profile_errors_raise_configuration_error(tmp_path):
    with pytest.raises(ConfigurationError):
        load_profile_file(str(tmp_path / "missing.yaml"))

    bad = tmp_path / "bad.yaml"
    bad.write_text("- just\n- a list\n")
    with pytest.raises(ConfigurationError):
        load_profile_file(str(bad))

    empty = tmp_path / "empty.yaml"
    empty.write_text("")
    assert load_profile_file(str(empty)) == {}


@pytest.mark.parametrize("url", ["ctfd.example.com", "ftp://ctfd.example.com", "http://"])
def test_invalid_base_url_rejected(url):
    with pytest.raises(ConfigurationError):
        load_config(env={**BASE_ENV, "CTFD_BASE_URL": url})


def test_invalid_values_rejected():
    with pytest.raises(ValidationError):
        LoadTestConfig(base_url="http://x.test", api_token="t", target_concurrency=0)
    with pytest.raises(ValidationError):
        LoadTestConfig(base_url="http://x.test", api_token="t", detail_endpoint="/api/v1/challenges")
    with pytest.raises(ValidationError):
        LoadTestConfig(base_url="http://x.test", api_token="t", expected_statuses="{not json")


def test_config_accepts_aliases_and_is_frozen():
    config = LoadTestConfig(CTFD_BASE_URL="http://x.test", CTFD_API_ACCESS_TOKEN="t", LOAD_DETAIL_PACING_MS="")
    assert config.detail_pacing_ms is None
    with pytest.raises(ValidationError):
        config.target_concurrency = 3


def test_configure_logging_sets_level():
    logger = logging.getLogger("LoadRunner")
    try:
        configure_logging(True)
        assert logger.level == logging.DEBUG
        assert all(h.level == logging.DEBUG for h in logger.handlers)
    finally:
        configure_logging(False)
    assert logger.level == logging.INFO
    assert logger.propagate is False
