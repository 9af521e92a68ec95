"""Tests for application configuration."""

import pytest

from press_tracker.utils import config as config_module
from press_tracker.utils.config import Config, get_config, reset_config


@pytest.fixture(autouse=True)
def fresh_config(monkeypatch):
    monkeypatch.delenv(config_module.ENV_VAR_DATABASE_URL, raising=False)
    monkeypatch.delenv(config_module.ENV_VAR_ENVIRONMENT, raising=False)
    reset_config()
    yield
    reset_config()


def test_test_environment_is_in_memory():
    config = Config("test")

    assert config.database_url == "sqlite:///:memory:"
    assert config.database_path is None
    assert config.database_exists()


def test_url_override_from_environment(monkeypatch):
    monkeypatch.setenv(config_module.ENV_VAR_DATABASE_URL, "sqlite:////tmp/cellar.db")

    config = Config("test")

    assert config.database_url == "sqlite:////tmp/cellar.db"


def test_development_uses_project_data_dir(tmp_path, monkeypatch):
    monkeypatch.setattr(Config, "_get_project_data_dir", lambda self: tmp_path / "data")

    config = Config("development")

    assert config.is_development
    assert config.database_path == tmp_path / "data" / "press_tracker.db"
    assert config.database_url.startswith("sqlite:///")
    assert not config.database_exists()


def test_singleton_keeps_first_environment(monkeypatch):
    monkeypatch.setenv(config_module.ENV_VAR_ENVIRONMENT, "test")

    first = get_config()
    second = get_config("production")

    assert first is second
    assert second.environment == "test"


def test_unknown_environment_rejected():
    with pytest.raises(ValueError, match="staging"):
        Config("staging")
