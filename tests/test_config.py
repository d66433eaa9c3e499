"""
Tests for the configuration system.

Copyright (c) 2026 Momentum. All rights reserved.
"""

import pytest
import yaml

from veilkyc.config import (
    MAINNET_CHAIN_ID,
    TESTNET_CHAIN_ID,
    ConfigManager,
    ConfigValidationError,
    ConfigValue,
    VeilKycConfig,
    get_config,
    get_config_manager,
)
from veilkyc.errors import ConfigError


class TestDefaults:

    def test_values(self):
        config = VeilKycConfig()
        assert config.network.chain_id.get() == TESTNET_CHAIN_ID
        assert config.network.required_chain_id.get() == TESTNET_CHAIN_ID
        assert config.verification.mode.get() == "confidential"
        assert config.verification.minimum_age.get() == 18
        assert config.verification.allowed_nationalities.get() == []
        assert config.verification.min_validity_days.get() == 30
        assert config.ledger.validity_seconds.get() == 365 * 24 * 60 * 60
        assert config.observability.log_level.get() == "info"

    def test_defaults_validate(self):
        assert ConfigManager().validate() == []

    def test_singleton(self):
        assert ConfigManager() is ConfigManager()
        assert get_config_manager() is ConfigManager()
        assert get_config() is ConfigManager().config

    def test_reset_instance(self):
        first = ConfigManager()
        first.set("verification.minimum_age", 21)
        ConfigManager.reset_instance()
        assert ConfigManager() is not first
        assert ConfigManager().get("verification.minimum_age") == 18


class TestEnvironment:

    def test_int_override(self, monkeypatch):
        monkeypatch.setenv("VEILKYC_MINIMUM_AGE", "21")
        assert ConfigManager().get("verification.minimum_age") == 21

    def test_env_beats_runtime_value(self, monkeypatch):
        mgr = ConfigManager()
        mgr.set("network.chain_id", MAINNET_CHAIN_ID)
        monkeypatch.setenv("VEILKYC_CHAIN_ID", "1")
        assert mgr.get("network.chain_id") == 1

    def test_list_override(self, monkeypatch):
        monkeypatch.setenv("VEILKYC_ALLOWED_NATIONALITIES", "DE, FR,,IT")
        assert ConfigManager().get("verification.allowed_nationalities") == ["DE", "FR", "IT"]

    def test_invalid_env_reported_by_validate(self, monkeypatch):
        monkeypatch.setenv("VEILKYC_LOG_LEVEL", "loud")
        monkeypatch.setenv("VEILKYC_CHAIN_ID", "mainnet")
        errors = ConfigManager().validate()
        assert any(e.startswith("observability.log_level") for e in errors)
        assert any(e.startswith("network.chain_id") for e in errors)


class TestSet:

    def test_string_coercion(self):
        mgr = ConfigManager()
        mgr.set("verification.minimum_age", "21")
        assert mgr.get("verification.minimum_age") == 21

    def test_list_coercion(self):
        mgr = ConfigManager()
        mgr.set("verification.allowed_nationalities", "DE,FR")
        assert mgr.get("verification.allowed_nationalities") == ["DE", "FR"]

    @pytest.mark.parametrize("path,value", [
        ("verification.minimum_age", "abc"),
        ("verification.minimum_age", 200),
        ("verification.mode", "magic"),
        ("confidential.app_address", "0x123"),
        ("observability.buffer_size", 0),
    ])
    def test_rejected(self, path, value):
        with pytest.raises(ConfigValidationError):
            ConfigManager().set(path, value)

    @pytest.mark.parametrize("path", ["verification.nope", "nope", "verification"])
    def test_invalid_path(self, path):
        with pytest.raises(ConfigError):
            ConfigManager().set(path, 1)

    def test_get_section(self):
        section = ConfigManager().get("verification")
        assert section.minimum_age.get() == 18

    def test_change_callback(self):
        seen = []
        value = ConfigValue(default=1)
        value.on_change(lambda old, new: seen.append((old, new)))
        value.set(2)
        value.set(3)
        assert seen == [(None, 2), (2, 3)]
        value.reset()
        assert value.get() == 1


class TestFiles:

    def test_load_yaml(self, tmp_path):
        path = tmp_path / "veilkyc.yaml"
        path.write_text(yaml.safe_dump({
            "network": {"chain_id": MAINNET_CHAIN_ID},
            "verification": {"minimum_age": 21, "allowed_nationalities": ["DE"]},
        }))
        mgr = ConfigManager()
        mgr.load_from_file(path)
        assert mgr.get("network.chain_id") == MAINNET_CHAIN_ID
        assert mgr.get("verification.minimum_age") == 21
        assert mgr.get("verification.allowed_nationalities") == ["DE"]

    def test_empty_file(self, tmp_path):
        path = tmp_path / "empty.yaml"
        path.write_text("")
        ConfigManager().load_from_file(path)
        assert ConfigManager().get("verification.minimum_age") == 18

    @pytest.mark.parametrize("content", [
        "unknown_section: {a: 1}",
        "verification: {unknown: 1}",
        "verification: 5",
        "- a\n- b",
        "verification: {minimum_age: [",
    ])
    def test_bad_files(self, tmp_path, content):
        path = tmp_path / "bad.yaml"
        path.write_text(content)
        with pytest.raises(ConfigError):
            ConfigManager().load_from_file(path)

    def test_missing_file(self, tmp_path):
        with pytest.raises(ConfigError, match="not found"):
            ConfigManager().load_from_file(tmp_path / "missing.yaml")

    def test_load_defaults_from_cwd(self, tmp_path, monkeypatch):
        monkeypatch.setenv("HOME", str(tmp_path / "home"))
        monkeypatch.chdir(tmp_path)
        (tmp_path / "veilkyc.yaml").write_text("verification: {minimum_age: 25}\n")
        loaded = ConfigManager().load_defaults()
        assert [p.name for p in loaded] == ["veilkyc.yaml"]
        assert ConfigManager().get("verification.minimum_age") == 25

    def test_reload_notifies_watchers(self, tmp_path):
        path = tmp_path / "veilkyc.yaml"
        path.write_text("verification: {minimum_age: 20}\n")
        mgr = ConfigManager()
        mgr.load_from_file(path)
        seen = []
        mgr.watch(lambda config: seen.append(config.verification.minimum_age.get()))
        path.write_text("verification: {minimum_age: 22}\n")
        mgr.reload()
        assert seen == [22]


class TestExport:

    def test_secrets_masked(self):
        mgr = ConfigManager()
        mgr.set("enclave.key_path", "/secrets/enclave.json")
        assert mgr.config.to_dict()["enclave"]["key_path"] == "***"
        assert mgr.config.to_dict(include_secrets=True)["enclave"]["key_path"] == "/secrets/enclave.json"

    def test_empty_secret_not_masked(self):
        assert VeilKycConfig().to_dict()["proof"]["backend_seed"] == ""

    def test_yaml_round_trip(self):
        data = yaml.safe_load(VeilKycConfig().to_yaml())
        assert data["network"]["chain_id"] == TESTNET_CHAIN_ID

    def test_schema(self):
        schema = ConfigManager().export_schema()["properties"]
        age = schema["verification"]["minimum_age"]
        assert age == {
            "type": "int",
            "default": "18",
            "description": "Minimum age in years",
            "env_var": "VEILKYC_MINIMUM_AGE",
        }
        assert schema["proof"]["backend_seed"]["default"] == "***"
