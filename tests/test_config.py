import json
from pathlib import Path

import pytest

from stationcache.config import BuilderConfig
from stationcache.exceptions import ConfigurationError
from stationcache.settings_manager import SettingsManager


@pytest.fixture
def clean_env(monkeypatch):
    for name in ("STATION_CACHE_DIR", "MARKETS_FILE", "CHANNELS_URL", "CHANNELS_TOKEN", "API_TIMEOUT"):
        monkeypatch.delenv(name, raising=False)
    return monkeypatch


def test_defaults(clean_env, tmp_path):
    config = BuilderConfig.load(SettingsManager(str(tmp_path / "missing.json")))

    assert config.cache_dir == Path("cache")
    assert config.channels_url is None
    assert config.market_safety_buffer == 2
    assert config.enhancement_safety_buffer == 50
    assert config.enhancement_checkpoint_interval == 25
    assert config.enhancement_enabled is True
    assert config.max_user_backups == 5


def test_settings_file_overrides_environment(clean_env, tmp_path):
    clean_env.setenv("CHANNELS_URL", "http://from-env:8089")
    clean_env.setenv("API_TIMEOUT", "12")
    settings_path = tmp_path / "settings.json"
    settings_path.write_text(json.dumps({
        "channels": {"url": "http://from-file:8089/"},
        "enhancement": {"enabled": "false", "safety_buffer": 10},
    }))

    config = BuilderConfig.load(SettingsManager(str(settings_path)))

    assert config.channels_url == "http://from-file:8089"
    assert config.api_timeout == 12
    assert config.enhancement_enabled is False
    assert config.enhancement_safety_buffer == 10


def test_environment_used_without_settings_file(clean_env, tmp_path):
    clean_env.setenv("STATION_CACHE_DIR", str(tmp_path / "c"))
    clean_env.setenv("CHANNELS_TOKEN", " secret ")

    config = BuilderConfig.load(SettingsManager(str(tmp_path / "missing.json")))

    assert config.cache_dir == tmp_path / "c"
    assert config.channels_token == "secret"
    assert config.user_stations_file == tmp_path / "c" / "user_stations.json"
    assert config.checkpoint_file("user_caching") == tmp_path / "c" / "user_caching_progress.json"


@pytest.mark.parametrize("settings,key", [
    ({"channels": {"url": "ftp://nope"}}, "channels.url"),
    ({"api": {"timeout": "soon"}}, "api.timeout"),
    ({"enhancement": {"checkpoint_interval": 0}}, "enhancement.checkpoint_interval"),
    ({"enhancement": {"enabled": "maybe"}}, "enhancement.enabled"),
])
def test_invalid_values_raise(settings, key):
    with pytest.raises(ConfigurationError) as excinfo:
        BuilderConfig.from_settings(settings)

    assert excinfo.value.key == key


def test_update_settings_deep_merges(tmp_path):
    manager = SettingsManager(str(tmp_path / "data" / "settings.json"))
    manager.save_settings({"channels": {"url": "http://a:8089", "token": "t"}})

    manager.update_settings({"channels": {"url": "http://b:8089"}})

    assert manager.get_setting("channels.url") == "http://b:8089"
    assert manager.get_setting("channels.token") == "t"
