"""
Tests for the JSON config loader.
"""

import json
import logging

import pytest

from tours.lib import config
from tours.lib.config import cfg, load_config, reload_config


@pytest.fixture
def config_file(tmp_path, monkeypatch):
    """Point the loader at a single temp config.json."""
    path = tmp_path / "config.json"
    monkeypatch.setattr(config, "_SEARCH_PATHS", [str(path)])
    monkeypatch.setattr(config, "_config", None)

    def write(data):
        path.write_text(json.dumps(data) if not isinstance(data, str) else data)
        return reload_config()

    return write


class TestConfig:

    def test_reads_section_and_key(self, config_file):
        config_file({"api": {"base_url": "https://api.example"}, "cache": {"max_size": 50}})

        assert cfg("api", "base_url") == "https://api.example"
        assert cfg("cache", "max_size", default=500) == 50
        assert cfg("cache") == {"max_size": 50}

    def test_defaults_for_missing_values(self, config_file):
        config_file({"api": {"base_url": "https://api.example"}})

        assert cfg("player", "engine", default="mpv") == "mpv"
        assert cfg("api", "timeout", default=15) == 15
        assert cfg("nothing", default={}) == {}

    def test_result_is_cached_until_reload(self, config_file, tmp_path):
        config_file({"api": {"base_url": "https://one.example"}})
        (tmp_path / "config.json").write_text(json.dumps({"api": {"base_url": "https://two.example"}}))

        assert cfg("api", "base_url") == "https://one.example"
        reload_config()
        assert cfg("api", "base_url") == "https://two.example"

    def test_invalid_json_falls_through(self, config_file):
        assert config_file("{not json") == {}

    def test_no_file_gives_empty_config(self, tmp_path, monkeypatch):
        monkeypatch.setattr(config, "_SEARCH_PATHS", [str(tmp_path / "missing.json")])
        monkeypatch.setattr(config, "_config", None)
        assert load_config() == {}
        assert cfg("cache", "max_size", default=500) == 500

    def test_suspicious_values_are_warned(self, config_file, caplog):
        with caplog.at_level(logging.WARNING, logger="tours.lib.config"):
            config_file({
                "cache": {"max_size": 0, "cooldown": -1},
                "player": {"engine": "vlc", "poll_interval": 0},
            })

        text = caplog.text
        assert "api.base_url" in text
        assert "cache.max_size" in text
        assert "cache.cooldown" in text
        assert "unknown player.engine 'vlc'" in text
        assert "player.poll_interval" in text

    def test_repo_default_config_is_valid(self, monkeypatch, caplog):
        monkeypatch.setattr(config, "_SEARCH_PATHS", config._SEARCH_PATHS[-1:])
        monkeypatch.setattr(config, "_config", None)
        with caplog.at_level(logging.WARNING, logger="tours.lib.config"):
            loaded = load_config()

        assert loaded["cache"]["max_size"] == 500
        assert loaded["player"]["engine"] == "mpv"
        assert caplog.text == ""
