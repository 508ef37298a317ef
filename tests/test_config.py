"""Tests for unetbridge/config.py — ConfigManager."""

from __future__ import annotations

import json
from pathlib import Path

import pytest

from unetbridge.config import DEFAULT_CONFIG, ConfigManager
from unetbridge.connection import HostIdentity


@pytest.fixture()
def tmp_config(tmp_path: Path) -> ConfigManager:
    """Return a ConfigManager backed by a temporary directory."""
    return ConfigManager(base_dir=tmp_path)


@pytest.fixture()
def identity() -> HostIdentity:
    return HostIdentity("gpu01.example.org", 22, "alice")


class TestDefaultConfig:
    def test_default_created_when_missing(self, tmp_path: Path) -> None:
        """Config file is created with defaults if it does not exist."""
        cm = ConfigManager(base_dir=tmp_path)
        assert (tmp_path / "config.json").exists()
        assert cm.get("grace_period") == 10
        assert cm.get("process_folder") == "/tmp/unetbridge"

    def test_nested_defaults_are_not_shared(self, tmp_path: Path) -> None:
        cm = ConfigManager(base_dir=tmp_path)
        cm.get("progress_ranges")["stage"][1] = 0.5
        assert DEFAULT_CONFIG["progress_ranges"]["stage"] == [0.0, 0.1]
        assert ConfigManager(base_dir=tmp_path / "other").get("progress_ranges")["stage"] == [0.0, 0.1]

    def test_all_default_keys_present(self, tmp_config: ConfigManager) -> None:
        assert set(DEFAULT_CONFIG) <= set(tmp_config.get_all())

    def test_new_defaults_merged_into_old_file(self, tmp_path: Path) -> None:
        (tmp_path / "config.json").write_text(json.dumps({"ssh_timeout": 60}), encoding="utf-8")
        cm = ConfigManager(base_dir=tmp_path)
        assert cm.get("ssh_timeout") == 60
        assert cm.get("chunk_size") == 256 * 1024


class TestCorruptFiles:
    def test_corrupt_json_resets_to_defaults(self, tmp_path: Path) -> None:
        """A corrupt config.json triggers a reset, not a crash."""
        (tmp_path / "config.json").write_text("{ this is not valid json !!!", encoding="utf-8")
        cm = ConfigManager(base_dir=tmp_path)
        assert cm.get("poll_interval") == 0.1
        assert isinstance(json.loads((tmp_path / "config.json").read_text(encoding="utf-8")), dict)

    def test_non_dict_root_resets(self, tmp_path: Path) -> None:
        (tmp_path / "config.json").write_text("[1, 2, 3]", encoding="utf-8")
        assert ConfigManager(base_dir=tmp_path).get("keepalive_interval") == 30

    def test_corrupt_hosts_reset_to_empty(self, tmp_path: Path) -> None:
        (tmp_path / "hosts.json").write_text("{}", encoding="utf-8")
        assert ConfigManager(base_dir=tmp_path).get_hosts() == []


class TestGetSet:
    def test_set_persists_to_disk(self, tmp_path: Path) -> None:
        ConfigManager(base_dir=tmp_path).set("grace_period", 30)
        assert ConfigManager(base_dir=tmp_path).get("grace_period") == 30

    def test_get_missing_returns_default(self, tmp_config: ConfigManager) -> None:
        assert tmp_config.get("no_such_key", "fallback") == "fallback"


class TestProgressRanges:
    def test_defaults(self, tmp_config: ConfigManager) -> None:
        assert tmp_config.progress_ranges() == {
            "stage": (0.0, 0.1),
            "execute": (0.1, 0.9),
            "fetch": (0.9, 1.0),
        }

    def test_invalid_entry_falls_back(self, tmp_config: ConfigManager) -> None:
        tmp_config.set("progress_ranges", {"stage": [0.0, 0.2], "execute": [0.9, 0.2], "fetch": "bad"})
        ranges = tmp_config.progress_ranges()
        assert ranges["stage"] == (0.0, 0.2)
        assert ranges["execute"] == (0.1, 0.9)
        assert ranges["fetch"] == (0.9, 1.0)


class TestHosts:
    def test_remember_and_get(self, tmp_config: ConfigManager, identity: HostIdentity) -> None:
        tmp_config.remember_host(identity, auth_method="key", key_path="~/.ssh/id_ed25519")
        entry = tmp_config.get_host(identity)
        assert entry == {
            "host": "gpu01.example.org",
            "port": 22,
            "username": "alice",
            "auth_method": "key",
            "key_path": "~/.ssh/id_ed25519",
        }

    def test_remember_is_upsert(self, tmp_config: ConfigManager, identity: HostIdentity) -> None:
        tmp_config.remember_host(identity)
        tmp_config.remember_host(identity, auth_method="key")
        assert len(tmp_config.get_hosts()) == 1

    def test_different_port_is_different_host(self, tmp_config: ConfigManager, identity: HostIdentity) -> None:
        tmp_config.remember_host(identity)
        tmp_config.remember_host(HostIdentity(identity.host, 2222, identity.username))
        assert len(tmp_config.get_hosts()) == 2

    def test_persisted_without_password(self, tmp_path: Path, identity: HostIdentity) -> None:
        ConfigManager(base_dir=tmp_path).remember_host(identity)
        raw = (tmp_path / "hosts.json").read_text(encoding="utf-8")
        assert "password" not in raw.replace('"auth_method": "password"', "")
        assert ConfigManager(base_dir=tmp_path).get_host(identity) is not None

    def test_forget(self, tmp_config: ConfigManager, identity: HostIdentity) -> None:
        tmp_config.remember_host(identity)
        assert tmp_config.forget_host(identity) is True
        assert tmp_config.forget_host(identity) is False
        assert tmp_config.get_host(identity) is None

    def test_empty_host_rejected(self, tmp_config: ConfigManager) -> None:
        with pytest.raises(ValueError):
            tmp_config.remember_host(HostIdentity(""))
