"""Tests for kdeploy.config module."""

from __future__ import annotations

import os
import stat
from dataclasses import replace
from pathlib import Path
from unittest.mock import MagicMock

import bcrypt
import pytest

from kdeploy.config import (
    ConfigStore,
    build_vm_spec,
    builtin_defaults,
    check_host_tools,
    config_path_from_env,
    find_ssh_public_key,
    identity_for,
    interactive_setup,
    parse_config_text,
)
from kdeploy.constants import DEFAULT_CONFIG_PATH
from kdeploy.exceptions import ConfigurationError
from kdeploy.models import PersistedDefaults

from conftest import PUBKEY


class TestParseConfigText:
    def test_parses_pairs(self):
        text = '# comment\n\nIMAGE_PATH="/data/images"\nDEFAULT_RAM = 4096\nDEFAULT_VM_SIZE=\'30G\'\n'
        assert parse_config_text(text) == {
            "IMAGE_PATH": "/data/images",
            "DEFAULT_RAM": "4096",
            "DEFAULT_VM_SIZE": "30G",
        }

    def test_value_may_contain_equals(self):
        assert parse_config_text("DEFAULT_PASSWORD=$2b$12$ab=cd")["DEFAULT_PASSWORD"] == "$2b$12$ab=cd"

    def test_malformed_line(self):
        with pytest.raises(ConfigurationError, match="line 2"):
            parse_config_text("IMAGE_PATH=/x\nnot a pair\n")


class TestConfigStore:
    def test_round_trip(self, tmp_path):
        store = ConfigStore(tmp_path / "kdeploy" / "config")
        defaults = PersistedDefaults(
            image_path=tmp_path / "images",
            storage_path=tmp_path / "vms",
            disk_size="40G",
            ram_mib=8192,
            vcpus=4,
            password_hash="$2b$12$abcdefghijklmnopqrstuv",
        )
        store.save(defaults)
        assert store.exists()
        assert store.load() == defaults
        assert stat.S_IMODE(os.stat(store.path).st_mode) == 0o600

    def test_missing_keys_fall_back(self, tmp_path):
        path = tmp_path / "config"
        path.write_text("DEFAULT_CPUS=6\n")
        loaded = ConfigStore(path).load()
        base = builtin_defaults()
        assert loaded.vcpus == 6
        assert loaded.ram_mib == base.ram_mib
        assert loaded.image_path == base.image_path
        assert loaded.password_hash is None

    def test_invalid_values(self, tmp_path):
        path = tmp_path / "config"
        path.write_text("DEFAULT_RAM=lots\n")
        with pytest.raises(ConfigurationError, match="DEFAULT_RAM"):
            ConfigStore(path).load()

    def test_unknown_keys_warn(self, tmp_path, capsys):
        path = tmp_path / "config"
        path.write_text("FAVOURITE_COLOUR=blue\n")
        ConfigStore(path).load()
        assert "FAVOURITE_COLOUR" in capsys.readouterr().out

    def test_missing_file(self, tmp_path):
        with pytest.raises(ConfigurationError, match="missing"):
            ConfigStore(tmp_path / "none").load()


def _answers(*values):
    it = iter(values)
    return lambda _prompt: next(it)


class TestInteractiveSetup:
    def test_prompts_and_hashes(self, tmp_path):
        store = ConfigStore(tmp_path / "config")
        defaults = interactive_setup(
            store,
            interactive=True,
            prompt=_answers(str(tmp_path / "img"), "", "30g", "4096", ""),
            secret_prompt=_answers("s3cret", "s3cret"),
        )
        assert defaults.image_path == tmp_path / "img"
        assert defaults.storage_path == builtin_defaults().storage_path
        assert defaults.disk_size == "30G"
        assert defaults.ram_mib == 4096
        assert defaults.vcpus == builtin_defaults().vcpus
        assert bcrypt.checkpw(b"s3cret", defaults.password_hash.encode())
        text = store.path.read_text()
        assert "s3cret" not in text
        assert defaults.password_hash in text

    def test_password_mismatch(self, tmp_path):
        store = ConfigStore(tmp_path / "config")
        with pytest.raises(ConfigurationError, match="do not match"):
            interactive_setup(
                store,
                interactive=True,
                prompt=_answers("", "", "", "", ""),
                secret_prompt=_answers("one", "two"),
            )
        assert not store.exists()

    def test_empty_password_keeps_current(self, tmp_path, defaults):
        store = ConfigStore(tmp_path / "config")
        current = replace(defaults, password_hash="$2b$12$existing")
        result = interactive_setup(
            store,
            interactive=True,
            current=current,
            prompt=_answers("", "", "", "", ""),
            secret_prompt=_answers(""),
        )
        assert result == current

    def test_non_interactive_writes_defaults(self, tmp_path, monkeypatch):
        monkeypatch.delenv("KDEPLOY_PASSWORD", raising=False)
        store = ConfigStore(tmp_path / "config")
        prompt = MagicMock()
        result = interactive_setup(store, interactive=False, prompt=prompt, secret_prompt=prompt)
        prompt.assert_not_called()
        assert result == builtin_defaults()
        assert store.load() == result

    def test_non_interactive_password_from_env(self, tmp_path, monkeypatch):
        monkeypatch.setenv("KDEPLOY_PASSWORD", "fromenv")
        store = ConfigStore(tmp_path / "config")
        result = interactive_setup(store, interactive=False)
        assert bcrypt.checkpw(b"fromenv", result.password_hash.encode())
        assert "fromenv" not in store.path.read_text()


class TestSshKeys:
    def test_default_candidate(self, ssh_dir):
        assert find_ssh_public_key(ssh_dir=ssh_dir) == ssh_dir / "id_ed25519.pub"

    def test_candidate_order(self, tmp_path):
        (tmp_path / "id_rsa.pub").write_text("ssh-rsa AAAA\n")
        (tmp_path / "id_ecdsa.pub").write_text("ecdsa-sha2-nistp256 AAAA\n")
        assert find_ssh_public_key(ssh_dir=tmp_path) == tmp_path / "id_ecdsa.pub"

    def test_explicit_key(self, tmp_path, ssh_dir):
        key = tmp_path / "work.pub"
        key.write_text(PUBKEY)
        assert find_ssh_public_key(key, ssh_dir=ssh_dir) == key

    def test_explicit_key_missing(self, tmp_path):
        with pytest.raises(ConfigurationError, match="not found"):
            find_ssh_public_key(tmp_path / "nope.pub", ssh_dir=tmp_path)

    def test_no_key(self, tmp_path):
        with pytest.raises(ConfigurationError, match="ssh-keygen"):
            find_ssh_public_key(ssh_dir=tmp_path)

    def test_identity_for(self):
        assert identity_for(Path("/k/id_ed25519.pub")) == Path("/k/id_ed25519")
        assert identity_for(Path("/k/mykey")) == Path("/k/mykey")


class TestCheckHostTools:
    def test_all_present(self):
        check_host_tools(lambda cmd: f"/usr/bin/{cmd}")

    def test_missing_named(self):
        with pytest.raises(ConfigurationError, match="virt-install"):
            check_host_tools(lambda cmd: None if cmd == "virt-install" else f"/usr/bin/{cmd}")


class TestBuildVmSpec:
    def test_defaults_applied(self, defaults, ssh_dir, monkeypatch):
        monkeypatch.delenv("KDEPLOY_PASSWORD", raising=False)
        spec = build_vm_spec("web01", defaults, user="bob", ssh_dir=ssh_dir)
        assert spec.name == "web01"
        assert spec.disk_size == "20G"
        assert spec.ram_mib == 2048
        assert spec.vcpus == 2
        assert spec.primary_user == "bob"
        assert spec.ssh_public_keys == [PUBKEY]
        assert spec.identity_file == ssh_dir / "id_ed25519"
        assert spec.packages == ["qemu-guest-agent"]
        assert spec.password is None
        assert spec.os_variant_override is None
        assert spec.network == "default"

    def test_overrides(self, defaults, ssh_dir):
        spec = build_vm_spec(
            "web01",
            defaults,
            size="50g",
            ram=4096,
            cpus=8,
            user="bob",
            packages=["htop", "qemu-guest-agent"],
            os_variant="debian12",
            ssh_dir=ssh_dir,
        )
        assert spec.disk_size == "50G"
        assert spec.ram_mib == 4096
        assert spec.vcpus == 8
        assert spec.packages == ["qemu-guest-agent", "htop"]
        assert spec.os_variant_override == "debian12"

    def test_password_from_env_is_masked(self, defaults, ssh_dir, monkeypatch):
        monkeypatch.setenv("KDEPLOY_PASSWORD", "hunter2")
        spec = build_vm_spec("web01", defaults, user="bob", ssh_dir=ssh_dir)
        assert spec.password.reveal() == "hunter2"
        assert "hunter2" not in repr(spec)

    def test_user_from_environment(self, defaults, ssh_dir, monkeypatch):
        monkeypatch.setenv("USER", "carol")
        assert build_vm_spec("web01", defaults, ssh_dir=ssh_dir).primary_user == "carol"

    @pytest.mark.parametrize("kwargs", [{"size": "big"}, {"ram": 0}, {"cpus": 0}])
    def test_invalid_overrides(self, defaults, ssh_dir, kwargs):
        with pytest.raises(ConfigurationError):
            build_vm_spec("web01", defaults, user="bob", ssh_dir=ssh_dir, **kwargs)

    def test_invalid_name(self, defaults, ssh_dir):
        with pytest.raises(ConfigurationError, match="Invalid VM name"):
            build_vm_spec("bad name", defaults, user="bob", ssh_dir=ssh_dir)


class TestConfigPathFromEnv:
    def test_default(self, monkeypatch):
        monkeypatch.delenv("KDEPLOY_CONFIG", raising=False)
        assert config_path_from_env() == DEFAULT_CONFIG_PATH

    def test_override(self, monkeypatch, tmp_path):
        monkeypatch.setenv("KDEPLOY_CONFIG", str(tmp_path / "cfg"))
        assert config_path_from_env() == tmp_path / "cfg"
