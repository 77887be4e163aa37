"""Gate configuration: JSON policy file plus environment settings."""

import json
import logging
import os
from pathlib import Path
from typing import Any, Dict, Optional

from .errors import InvalidPolicyError
from .models import Category

logger = logging.getLogger(__name__)

DEFAULT_HOME = Path(".secgate")
DEFAULT_CONFIG_PATH = DEFAULT_HOME / "gate-config.json"

DEFAULT_BASELINE_CONFIG = {
    "dbPath": str(DEFAULT_HOME / "baselines.db"),
}

DEFAULT_ORCHESTRATOR_CONFIG = {
    "maxWorkers": 3,
}


class GateSettings:
    """Settings loaded from environment variables.

    Values left unset fall back to the gate config file.
    """

    def __init__(self) -> None:
        self.home = Path(os.environ.get("SECGATE_HOME", str(DEFAULT_HOME)))
        self.config_path = Path(os.environ.get("SECGATE_CONFIG", str(self.home / "gate-config.json")))
        db_path = os.environ.get("SECGATE_DB_PATH")
        self.db_path: Optional[Path] = Path(db_path) if db_path else None
        self.port = int(os.environ.get("SECGATE_PORT", "3110"))

        max_workers = os.environ.get("SECGATE_MAX_WORKERS")
        self.max_workers: Optional[int] = int(max_workers) if max_workers else None


def load_gate_config(config_path: Optional[Path] = None) -> Dict[str, Any]:
    """Load the gate configuration, merged with defaults.

    A missing file yields the defaults (no policies). An unreadable or
    unparseable file raises InvalidPolicyError: a gate must not silently
    fall back to never failing.
    """
    path = config_path or DEFAULT_CONFIG_PATH

    if not path.exists():
        logger.info("No gate config at %s, using defaults", path)
        return _get_default_config()

    try:
        with open(path, "r", encoding="utf-8") as f:
            config = json.load(f)
    except (json.JSONDecodeError, OSError) as e:
        raise InvalidPolicyError(f"Cannot parse gate config {path}: {e}") from e

    if not isinstance(config, dict):
        raise InvalidPolicyError(f"Gate config {path} must be a JSON object")
    return _merge_with_defaults(config)


def _get_default_config() -> Dict[str, Any]:
    """Return default gate configuration."""
    return {
        "version": 1,
        "policies": {},
        "baseline": DEFAULT_BASELINE_CONFIG.copy(),
        "orchestrator": DEFAULT_ORCHESTRATOR_CONFIG.copy(),
    }


def _merge_with_defaults(config: Dict[str, Any]) -> Dict[str, Any]:
    """Merge loaded config with defaults to ensure all keys exist."""
    defaults = _get_default_config()

    config["baseline"] = {**DEFAULT_BASELINE_CONFIG, **(config.get("baseline") or {})}
    config["orchestrator"] = {**DEFAULT_ORCHESTRATOR_CONFIG, **(config.get("orchestrator") or {})}
    if config.get("policies") is None:
        config["policies"] = {}

    for key in defaults:
        if key not in config:
            config[key] = defaults[key]

    return config


def get_policies(config: Dict[str, Any]) -> Dict[Category, Any]:
    """Raw per-category policy mappings.

    Entries are validated later, one category at a time, so a broken
    policy only errors its own category. Unknown category names raise
    InvalidPolicyError.
    """
    policies = config.get("policies") or {}
    if not isinstance(policies, dict):
        raise InvalidPolicyError("'policies' must be an object keyed by category")

    by_category: Dict[Category, Any] = {}
    for name, policy in policies.items():
        try:
            category = Category(name)
        except ValueError:
            valid = ", ".join(c.value for c in Category)
            raise InvalidPolicyError(f"Unknown policy category {name!r} (expected one of {valid})") from None
        by_category[category] = policy
    return by_category


def get_max_workers(config: Dict[str, Any]) -> Optional[int]:
    value = config.get("orchestrator", {}).get("maxWorkers")
    return int(value) if value else None


def get_baseline_db_path(config: Dict[str, Any]) -> Path:
    return Path(config.get("baseline", {}).get("dbPath") or DEFAULT_BASELINE_CONFIG["dbPath"])
