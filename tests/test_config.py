"""Tests for sealedlog configuration management."""

import pytest

from sealedlog.config import GlobalConfig, get_config_dir, get_global_config_path
from sealedlog.options import ConfigError

ADDRESS = "0x" + "a1" * 20


@pytest.fixture
def temp_config_dir(tmp_path, monkeypatch):
    """Use a temporary directory for config."""
    monkeypatch.setenv("XDG_CONFIG_HOME", str(tmp_path))
    yield tmp_path / "sealedlog"


class TestGlobalConfig:
    def test_paths(self, temp_config_dir):
        assert get_config_dir() == temp_config_dir
        assert get_global_config_path() == temp_config_dir / "config.yaml"

    def test_default_values(self, temp_config_dir):
        config = GlobalConfig()
        assert config.address is None
        assert config.url is None
        assert config.transcript_limit == 50

    def test_save_and_load(self, temp_config_dir):
        config = GlobalConfig(address=ADDRESS, url="https://log.example.com", transcript_limit=20)
        config.save()

        loaded = GlobalConfig.load()
        assert loaded.address == ADDRESS
        assert loaded.url == "https://log.example.com"
        assert loaded.transcript_limit == 20

    def test_load_returns_defaults_when_no_file(self, temp_config_dir):
        config = GlobalConfig.load()
        assert config.address is None
        assert config.transcript_limit == 50

    def test_exists(self, temp_config_dir):
        assert GlobalConfig.exists() is False
        GlobalConfig().save()
        assert GlobalConfig.exists() is True

    def test_load_rejects_non_mapping(self, temp_config_dir):
        temp_config_dir.mkdir(parents=True)
        (temp_config_dir / "config.yaml").write_text("- just\n- a list\n")
        with pytest.raises(ConfigError):
            GlobalConfig.load()

    def test_load_rejects_bad_limit(self, temp_config_dir):
        temp_config_dir.mkdir(parents=True)
        (temp_config_dir / "config.yaml").write_text("transcript_limit: many\n")
        with pytest.raises(ConfigError):
            GlobalConfig.load()


class TestSet:
    def test_set_fields(self):
        config = GlobalConfig()
        config.set("address", ADDRESS)
        config.set("transcript_limit", "10")
        assert config.address == ADDRESS
        assert config.transcript_limit == 10

    def test_clear_field(self):
        config = GlobalConfig(url="https://log.example.com")
        config.set("url", "")
        assert config.url is None

    def test_unknown_key(self):
        with pytest.raises(ConfigError):
            GlobalConfig().set("colour", "blue")

    def test_bad_limit(self):
        with pytest.raises(ConfigError):
            GlobalConfig().set("transcript_limit", "ten")


class TestToOptions:
    """Tests for building MessengerOptions from config."""

    def test_url_from_file(self):
        opts = GlobalConfig(url="https://log.example.com", path="/tmp/x").to_options()
        assert opts.is_remote()

    def test_path_from_file(self, tmp_path):
        opts = GlobalConfig(path=str(tmp_path)).to_options()
        assert opts.is_local()
        assert opts.resolved_path == tmp_path

    def test_explicit_path_beats_file_url(self, tmp_path):
        opts = GlobalConfig(url="https://log.example.com").to_options(path=str(tmp_path))
        assert opts.is_local()

    def test_in_memory(self):
        opts = GlobalConfig(transcript_limit=9).to_options(in_memory=True)
        assert opts.is_in_memory()
        assert opts.transcript_limit == 9
