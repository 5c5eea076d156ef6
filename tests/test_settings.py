"""
Tests for appliance_media.config.settings module.

This test suite covers:
- Settings loading and merging with defaults
- Rejection of stored values with the wrong type
- Path and integer helpers
- Error handling for corrupted settings files
"""

import json
from pathlib import Path

import pytest

from appliance_media.config import settings


@pytest.fixture(autouse=True)
def restore_store():
    saved = dict(settings.settings_store.values)
    yield
    settings.settings_store.values = saved


@pytest.fixture
def settings_file(tmp_path, monkeypatch):
    path = tmp_path / "settings.json"
    monkeypatch.setattr("appliance_media.config.settings.SETTINGS_PATH", path)
    return path


class TestLoadSettings:
    """Tests for load_settings() function."""

    def test_load_defaults_when_no_file(self, settings_file):
        """Test that default settings are loaded when file doesn't exist."""
        settings.settings_store.values = {}
        settings.load_settings()

        assert settings.settings_store.values["split_size_mb"] == 4000
        assert settings.settings_store.values["allowed_bus_types"] == ["USB"]

    def test_load_merges_with_defaults(self, settings_file):
        """Test that stored values override defaults and the rest are kept."""
        settings_file.write_text(json.dumps({"kit_url": "https://mirror.example.com/kit.msi"}))

        settings.load_settings()

        assert settings.get_setting("kit_url") == "https://mirror.example.com/kit.msi"
        assert settings.get_setting("update_url") == settings.DEFAULT_UPDATE_URL

    @pytest.mark.parametrize("content", ["{invalid json", "[]"])
    def test_load_ignores_unusable_file(self, settings_file, content):
        """Test that corrupted or non-object files fall back to defaults."""
        settings_file.write_text(content)

        settings.load_settings()

        assert settings.get_setting("volume_label") == settings.DEFAULT_VOLUME_LABEL

    def test_defaults_are_not_shared(self, settings_file):
        settings.load_settings()
        settings.settings_store.values["volume_label"] = "CHANGED"

        assert settings.DEFAULT_SETTINGS["volume_label"] == settings.DEFAULT_VOLUME_LABEL


class TestHelpers:
    """Tests for the typed getters."""

    def test_get_path_expands_user(self):
        settings.settings_store.values = {"scratch_dir": "~/scratch"}

        assert settings.get_path("scratch_dir") == Path.home() / "scratch"

    def test_get_path_falls_back_to_default(self):
        settings.settings_store.values = {}

        assert settings.get_path("scratch_dir") == Path(
            settings.DEFAULT_SETTINGS["scratch_dir"]
        ).expanduser()

    @pytest.mark.parametrize(
        "stored, expected",
        [("12", 12), (7, 7), ("many", 5), (None, 5)],
    )
    def test_get_int(self, stored, expected):
        settings.settings_store.values = {"min_scratch_bytes": stored}

        assert settings.get_int("min_scratch_bytes", 5) == expected

    def test_get_missing_setting_returns_default(self):
        settings.settings_store.values = {}

        assert settings.get_setting("missing") is None
        assert settings.get_setting("missing", "x") == "x"

    def test_get_list_accepts_single_string(self):
        settings.settings_store.values = {"allowed_bus_types": "SATA"}

        assert settings.get_list("allowed_bus_types") == ["SATA"]

    def test_get_list_default(self):
        settings.settings_store.values = {}

        assert settings.get_list("allowed_bus_types") == ["USB"]


class TestTypeChecks:
    """Tests for rejecting stored values of the wrong type."""

    def test_wrong_type_keeps_default(self, settings_file, log_records):
        settings_file.write_text(json.dumps({"split_size_mb": "big", "volume_label": "KIOSK"}))

        settings.load_settings()

        assert settings.get_setting("split_size_mb") == settings.DEFAULT_SPLIT_SIZE_MB
        assert settings.get_setting("volume_label") == "KIOSK"
        assert any("split_size_mb" in r["message"] for r in log_records)

    def test_unknown_keys_are_kept(self, settings_file):
        settings_file.write_text(json.dumps({"proxy": "http://proxy:3128"}))

        settings.load_settings()

        assert settings.get_setting("proxy") == "http://proxy:3128"
