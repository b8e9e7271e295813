"""Tests for chunkferry/config.py — ConfigManager."""

from __future__ import annotations

import json
from pathlib import Path

import pytest

from chunkferry.config import ConfigManager, DEFAULT_CONFIG
from chunkferry.errors import ConfigError


@pytest.fixture()
def tmp_config(tmp_path: Path) -> ConfigManager:
    """Return a ConfigManager backed by a temporary directory."""
    return ConfigManager(base_dir=tmp_path)


class TestDefaultConfig:
    def test_default_created_when_missing(self, tmp_path: Path) -> None:
        """Config file is created with defaults if it does not exist."""
        cm = ConfigManager(base_dir=tmp_path)
        assert (tmp_path / "config.json").exists()
        assert cm.get("chunk_size_mb") == 4000

    def test_all_default_keys_present(self, tmp_config: ConfigManager) -> None:
        """Every key in DEFAULT_CONFIG is present after initialisation."""
        for key in DEFAULT_CONFIG:
            assert key in tmp_config.get_all()

    def test_work_dir_is_created(self, tmp_path: Path) -> None:
        base = tmp_path / "nested" / "work"
        ConfigManager(base_dir=base)
        assert base.is_dir()


class TestCorruptConfig:
    def test_corrupt_json_resets_to_defaults(self, tmp_path: Path) -> None:
        """A corrupt config.json triggers a reset, not a crash."""
        (tmp_path / "config.json").write_text("{ this is not valid json !!!", encoding="utf-8")
        cm = ConfigManager(base_dir=tmp_path)
        assert cm.get("max_retries") == 2

    def test_non_dict_root_resets(self, tmp_path: Path) -> None:
        """A config.json whose root is not an object triggers a reset."""
        (tmp_path / "config.json").write_text("[1, 2, 3]", encoding="utf-8")
        cm = ConfigManager(base_dir=tmp_path)
        assert cm.get("source_label") == "USB stick"

    def test_reset_rewrites_valid_file(self, tmp_path: Path) -> None:
        """After a corrupt-reset, the config file is valid JSON."""
        config_path = tmp_path / "config.json"
        config_path.write_text("GARBAGE", encoding="utf-8")
        ConfigManager(base_dir=tmp_path)
        loaded = json.loads(config_path.read_text(encoding="utf-8"))
        assert isinstance(loaded, dict)

    def test_partial_file_merged_with_defaults(self, tmp_path: Path) -> None:
        (tmp_path / "config.json").write_text('{"chunk_size_mb": 16}', encoding="utf-8")
        cm = ConfigManager(base_dir=tmp_path)
        assert cm.get("chunk_size_mb") == 16
        assert cm.get("mount_timeout") == 30


class TestGetSet:
    def test_set_persists_to_disk(self, tmp_path: Path) -> None:
        """set() writes the updated value to disk."""
        cm = ConfigManager(base_dir=tmp_path)
        cm.set("dest_label", "backup disk")
        cm2 = ConfigManager(base_dir=tmp_path)
        assert cm2.get("dest_label") == "backup disk"

    def test_get_unknown_key_returns_default(self, tmp_config: ConfigManager) -> None:
        assert tmp_config.get("nonexistent_key", "fallback") == "fallback"

    def test_no_temp_file_left_behind(self, tmp_path: Path) -> None:
        cm = ConfigManager(base_dir=tmp_path)
        cm.set("retry_delay", 5)
        assert not (tmp_path / "config.tmp").exists()


class TestDerivedSettings:
    def test_budget_bytes_uses_mebibytes(self, tmp_config: ConfigManager) -> None:
        tmp_config.set("chunk_size_mb", 3)
        assert tmp_config.budget_bytes() == 3 * 1024 * 1024

    @pytest.mark.parametrize("value", [0, -5, "lots"])
    def test_invalid_budget_raises_config_error(self, tmp_config: ConfigManager, value) -> None:
        tmp_config.set("chunk_size_mb", value)
        with pytest.raises(ConfigError):
            tmp_config.budget_bytes()

    def test_media_root_override(self, tmp_config: ConfigManager, tmp_path: Path) -> None:
        tmp_config.set("media_root", str(tmp_path / "media"))
        assert tmp_config.media_root() == tmp_path / "media"

    def test_media_root_defaults_to_user_media_dir(self, tmp_config: ConfigManager) -> None:
        root = tmp_config.media_root()
        assert root.parent == Path("/media")

    def test_unknown_engine_falls_back_to_auto(self, tmp_config: ConfigManager) -> None:
        tmp_config.set("transfer_engine", "teleport")
        assert tmp_config.transfer_engine() == "auto"

    def test_engine_name_is_case_insensitive(self, tmp_config: ConfigManager) -> None:
        tmp_config.set("transfer_engine", "RSYNC")
        assert tmp_config.transfer_engine() == "rsync"


class TestTypedSettings:
    def test_defaults(self, tmp_config: ConfigManager) -> None:
        assert tmp_config.get_int("max_retries") == 2
        assert tmp_config.get_float("mount_timeout") == 30.0

    def test_numeric_strings_accepted(self, tmp_config: ConfigManager) -> None:
        tmp_config.set("max_retries", "4")
        tmp_config.set("retry_delay", "0.5")
        assert tmp_config.get_int("max_retries") == 4
        assert tmp_config.get_float("retry_delay") == 0.5

    @pytest.mark.parametrize("value", ["two", None, True, 1.5, -1, [2]])
    def test_bad_retry_count_raises_config_error(self, tmp_config: ConfigManager, value) -> None:
        tmp_config.set("max_retries", value)
        with pytest.raises(ConfigError, match="max_retries"):
            tmp_config.get_int("max_retries")

    @pytest.mark.parametrize("key", ["retry_delay", "mount_timeout", "mount_poll_interval", "eject_settle_delay"])
    @pytest.mark.parametrize("value", ["soon", None, -0.1, "nan"])
    def test_bad_delay_raises_config_error(self, tmp_config: ConfigManager, key: str, value) -> None:
        tmp_config.set(key, value)
        with pytest.raises(ConfigError, match=key):
            tmp_config.get_float(key)

    def test_zero_delay_allowed(self, tmp_config: ConfigManager) -> None:
        tmp_config.set("retry_delay", 0)
        assert tmp_config.get_float("retry_delay") == 0.0
