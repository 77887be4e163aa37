"""Tests for gate configuration loading."""

import json

import pytest

from secgate.config import (
    GateSettings,
    get_baseline_db_path,
    get_max_workers,
    get_policies,
    load_gate_config,
)
from secgate.errors import InvalidPolicyError
from secgate.models import Category


def test_missing_file_returns_defaults(tmp_path):
    config = load_gate_config(tmp_path / "missing.json")
    assert config["policies"] == {}
    assert config["orchestrator"]["maxWorkers"] == 3
    assert get_baseline_db_path(config).name == "baselines.db"


def test_merges_with_defaults(tmp_path):
    path = tmp_path / "gate-config.json"
    path.write_text(
        json.dumps(
            {
                "policies": {"vulnerability": {"minFailSeverity": "HIGH"}},
                "baseline": {"dbPath": str(tmp_path / "b.db")},
            }
        )
    )
    config = load_gate_config(path)
    assert config["version"] == 1
    assert config["orchestrator"]["maxWorkers"] == 3
    assert get_baseline_db_path(config) == tmp_path / "b.db"
    assert get_max_workers(config) == 3


def test_unparseable_file_is_an_error(tmp_path):
    path = tmp_path / "gate-config.json"
    path.write_text("{not json")
    with pytest.raises(InvalidPolicyError):
        load_gate_config(path)


def test_non_object_file_is_an_error(tmp_path):
    path = tmp_path / "gate-config.json"
    path.write_text("[]")
    with pytest.raises(InvalidPolicyError):
        load_gate_config(path)


def test_get_policies_keys_by_category():
    policies = get_policies({"policies": {"secret": {"minFailSeverity": "LOW"}, "misconfiguration": {}}})
    assert policies == {
        Category.SECRET: {"minFailSeverity": "LOW"},
        Category.MISCONFIGURATION: {},
    }


def test_get_policies_leaves_validation_to_evaluation():
    policies = get_policies({"policies": {"secret": {"minFailSeverity": "EXTREME"}}})
    assert policies[Category.SECRET] == {"minFailSeverity": "EXTREME"}


def test_get_policies_unknown_category():
    with pytest.raises(InvalidPolicyError, match="vulnerabilities"):
        get_policies({"policies": {"vulnerabilities": {}}})


def test_settings_from_environment(monkeypatch, tmp_path):
    monkeypatch.setenv("SECGATE_HOME", str(tmp_path))
    monkeypatch.setenv("SECGATE_DB_PATH", str(tmp_path / "x.db"))
    monkeypatch.setenv("SECGATE_MAX_WORKERS", "2")
    monkeypatch.setenv("SECGATE_PORT", "4000")
    monkeypatch.delenv("SECGATE_CONFIG", raising=False)
    settings = GateSettings()
    assert settings.config_path == tmp_path / "gate-config.json"
    assert settings.db_path == tmp_path / "x.db"
    assert settings.max_workers == 2
    assert settings.port == 4000


def test_settings_defaults(monkeypatch):
    for name in ("SECGATE_HOME", "SECGATE_CONFIG", "SECGATE_DB_PATH", "SECGATE_MAX_WORKERS", "SECGATE_PORT"):
        monkeypatch.delenv(name, raising=False)
    settings = GateSettings()
    assert settings.db_path is None
    assert settings.max_workers is None
    assert settings.port == 3110
