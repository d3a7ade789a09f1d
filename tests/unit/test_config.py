"""Tests for configuration loading."""

import pytest

from hachiko.config import load_config
from hachiko.exceptions import ConfigurationError


def test_load_config_from_env(tmp_path, monkeypatch):
    config_path = tmp_path / "hachiko.yml"
    config_path.write_text(
        """
policy:
  network: restricted
  max_attempts_per_step: 3
  allowlist_globs:
    - "src/**"
defaults:
  agent: mock
"""
    )
    monkeypatch.setenv("HACHIKO_CONFIG", str(config_path))
    monkeypatch.delenv("HACHIKO_DATABASE_URL", raising=False)

    config = load_config()
    assert config.policy.network == "restricted"
    assert config.policy.max_attempts_per_step == 3
    assert config.policy.allowlist_globs == ["src/**"]
    assert config.policy.step_timeout_minutes == 15
    assert config.defaults.agent == "mock"
    assert config.database_url is None


def test_missing_file_gives_defaults(tmp_path, monkeypatch):
    monkeypatch.setenv("HACHIKO_CONFIG", str(tmp_path / "absent.yml"))
    config = load_config()
    assert config.policy.network == "none"
    assert config.policy.allowlist_globs == []
    assert ".github/workflows/**" in config.policy.risky_globs


def test_database_url_env_overrides_file(tmp_path, monkeypatch):
    config_path = tmp_path / "hachiko.yml"
    config_path.write_text("database_url: sqlite://file.db\n")
    monkeypatch.setenv("HACHIKO_DATABASE_URL", "sqlite://env.db")
    assert load_config(str(config_path)).database_url == "sqlite://env.db"


@pytest.mark.parametrize(
    "content",
    [
        "policy: [unclosed",
        "- just\n- a list\n",
        "policy:\n  max_attempts_per_step: 9\n",
        "policy:\n  network: everything\n",
    ],
)
def test_invalid_config_raises(tmp_path, content):
    config_path = tmp_path / "hachiko.yml"
    config_path.write_text(content)
    with pytest.raises(ConfigurationError) as exc_info:
        load_config(str(config_path))
    assert exc_info.value.code == "CONFIGURATION_ERROR"
    assert exc_info.value.details["path"] == str(config_path)
