"""
Tests for configuration loading.

Covers defaults, validators, YAML discovery and environment overrides.
"""

from pathlib import Path

import pytest
from pydantic import ValidationError

from storyvault.core.config import (
    Settings,
    _find_config_file,
    get_settings,
    load_settings,
    reset_settings,
)


class TestSettings:
    """Tests for the Settings model."""

    def test_defaults(self):
        settings = Settings()
        assert settings.max_states == 100
        assert settings.max_session_states == 20
        assert settings.save_depth == 100
        assert settings.db_name == "idb"
        assert settings.backend == "sqlite"
        assert settings.compress_autosave is False
        assert settings.reject_opaque_values is False

    def test_data_path_expands_home(self, tmp_path):
        assert Settings().data_path == tmp_path / ".storyvault"

    def test_backend_normalized(self):
        assert Settings(backend="MEMORY").backend == "memory"

    def test_invalid_backend(self):
        with pytest.raises(ValidationError):
            Settings(backend="redis")

    def test_max_states_at_least_one(self):
        with pytest.raises(ValidationError):
            Settings(max_states=0)

    @pytest.mark.parametrize("field", ["max_expired", "max_session_states", "save_depth", "session_quota_bytes"])
    def test_non_negative(self, field):
        with pytest.raises(ValidationError):
            Settings(**{field: -1})
        assert getattr(Settings(**{field: 0}), field) == 0

    def test_log_level_normalized(self):
        assert Settings(log_level="debug").log_level == "DEBUG"
        with pytest.raises(ValidationError):
            Settings(log_level="chatty")

    def test_env_vars(self, monkeypatch):
        monkeypatch.setenv("STORYVAULT_MAX_STATES", "7")
        monkeypatch.setenv("STORYVAULT_COMPRESS_AUTOSAVE", "true")
        settings = Settings()
        assert settings.max_states == 7
        assert settings.compress_autosave is True


class TestConfigFile:
    """Tests for YAML discovery and loading."""

    def test_no_file(self):
        assert _find_config_file() is None

    def test_finds_file_in_cwd(self):
        Path("storyvault.yaml").write_text("max_states: 5\n")
        assert _find_config_file() == Path("storyvault.yaml")

    def test_finds_file_in_home(self, tmp_path):
        path = tmp_path / ".storyvault" / "config.yaml"
        path.parent.mkdir()
        path.write_text("max_states: 5\n")
        assert _find_config_file() == path

    def test_env_var_path_wins(self, tmp_path, monkeypatch):
        Path("storyvault.yaml").write_text("max_states: 5\n")
        custom = tmp_path / "custom.yaml"
        custom.write_text("max_states: 6\n")
        monkeypatch.setenv("STORYVAULT_CONFIG_FILE", str(custom))
        assert _find_config_file() == custom

    def test_load_yaml_values(self):
        Path("storyvault.yaml").write_text("max_states: 5\nbackend: memory\n")
        settings = load_settings()
        assert settings.max_states == 5
        assert settings.backend == "memory"

    def test_env_overrides_yaml(self, monkeypatch):
        Path("storyvault.yaml").write_text("max_states: 5\nsave_depth: 9\n")
        monkeypatch.setenv("STORYVAULT_MAX_STATES", "11")
        settings = load_settings()
        assert settings.max_states == 11
        assert settings.save_depth == 9

    def test_explicit_missing_path(self, tmp_path):
        with pytest.raises(FileNotFoundError):
            load_settings(tmp_path / "missing.yaml")

    def test_invalid_yaml(self, tmp_path):
        path = tmp_path / "bad.yaml"
        path.write_text("max_states: [unclosed\n")
        with pytest.raises(ValueError, match="Invalid YAML"):
            load_settings(path)

    def test_non_mapping_yaml(self, tmp_path):
        path = tmp_path / "list.yaml"
        path.write_text("- 1\n- 2\n")
        with pytest.raises(ValueError, match="dictionary"):
            load_settings(path)


class TestSettingsCache:
    """Tests for get_settings caching."""

    def test_cached(self):
        assert get_settings() is get_settings()

    def test_reset(self, monkeypatch):
        first = get_settings()
        monkeypatch.setenv("STORYVAULT_SAVE_DEPTH", "3")
        assert get_settings() is first
        reset_settings()
        assert get_settings().save_depth == 3
