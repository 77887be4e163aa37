"""Finding normalizer: maps raw scanner records onto canonical findings.

Each category has its own field vocabulary. Generic snake_case keys and
Trivy's PascalCase keys are both understood. A record that lacks an id or
the category's target locator is malformed: inside a batch it is skipped
and reported as a warning, the rest of the batch survives.
"""

import logging
from dataclasses import dataclass, field
from typing import Any, Iterable, Mapping, Optional, Union

from .errors import MalformedInputError
from .models import Category, Finding, ScanResult, Severity

logger = logging.getLogger(__name__)

SEVERITY_ALIASES = {
    "critical": Severity.CRITICAL,
    "crit": Severity.CRITICAL,
    "very high": Severity.CRITICAL,
    "blocker": Severity.CRITICAL,
    "high": Severity.HIGH,
    "error": Severity.HIGH,
    "severe": Severity.HIGH,
    "important": Severity.HIGH,
    "major": Severity.HIGH,
    "medium": Severity.MEDIUM,
    "moderate": Severity.MEDIUM,
    "warning": Severity.MEDIUM,
    "warn": Severity.MEDIUM,
    "low": Severity.LOW,
    "minor": Severity.LOW,
    "note": Severity.LOW,
    "info": Severity.LOW,
    "informational": Severity.LOW,
    "negligible": Severity.LOW,
    "unknown": Severity.UNKNOWN,
    "none": Severity.UNKNOWN,
    "unspecified": Severity.UNKNOWN,
    "": Severity.UNKNOWN,
}

_ID_KEYS = {
    Category.VULNERABILITY: ("id", "VulnerabilityID", "vulnerability_id", "cve"),
    Category.SECRET: ("id", "RuleID", "rule_id"),
    Category.MISCONFIGURATION: ("id", "ID", "AVDID", "check_id"),
}

_TARGET_KEYS = {
    Category.VULNERABILITY: ("target", "PkgName", "package", "pkg_name"),
    Category.SECRET: ("file", "path", "target"),
    Category.MISCONFIGURATION: ("target", "resource", "Resource", "file", "path"),
}

_TITLE_KEYS = ("title", "Title", "rule_title", "description")


@dataclass
class NormalizedBatch:
    """Findings of one raw batch plus the diagnostics of skipped records."""

    findings: list[Finding] = field(default_factory=list)
    warnings: list[str] = field(default_factory=list)


def map_severity(value: Any) -> Severity:
    """Map a scanner severity (name, alias or CVSS score) onto Severity.

    Total: anything unrecognized resolves to UNKNOWN.
    """
    if value is None:
        return Severity.UNKNOWN
    if isinstance(value, Severity):
        return value
    if isinstance(value, bool):
        return Severity.UNKNOWN
    if isinstance(value, (int, float)):
        return _severity_from_score(float(value))
    text = str(value).strip().lower()
    if text in SEVERITY_ALIASES:
        return SEVERITY_ALIASES[text]
    try:
        return _severity_from_score(float(text))
    except ValueError:
        return Severity.UNKNOWN


def _severity_from_score(score: float) -> Severity:
    # CVSS v3 qualitative bands
    if score >= 9.0:
        return Severity.CRITICAL
    if score >= 7.0:
        return Severity.HIGH
    if score >= 4.0:
        return Severity.MEDIUM
    if score > 0.0:
        return Severity.LOW
    return Severity.UNKNOWN


def _first(record: Mapping[str, Any], keys: Iterable[str]) -> Optional[str]:
    for key in keys:
        value = record.get(key)
        if value is None:
            continue
        text = str(value).strip()
        if text:
            return text
    return None


_FLAG_WORDS = {
    "true": True,
    "yes": True,
    "1": True,
    "false": False,
    "no": False,
    "0": False,
}


def _fix_flag(record: Mapping[str, Any]) -> Optional[bool]:
    """Explicit fix flag, or None when absent or unreadable."""
    for key in ("fix_available", "fixAvailable", "FixAvailable"):
        value = record.get(key)
        if isinstance(value, bool):
            return value
        if isinstance(value, int) and value in (0, 1):
            return bool(value)
        if isinstance(value, str) and value.strip().lower() in _FLAG_WORDS:
            return _FLAG_WORDS[value.strip().lower()]
        if value is not None:
            logger.debug("Ignoring unreadable %s value %r", key, value)
    return None


def _redact(secret: str) -> str:
    if len(secret) <= 8:
        return "***"
    return secret[:4] + "***"


def _base_metadata(record: Mapping[str, Any]) -> dict[str, str]:
    metadata: dict[str, str] = {}
    extra = record.get("metadata")
    if isinstance(extra, Mapping):
        metadata.update({str(k): str(v) for k, v in extra.items() if v is not None})
    title = _first(record, _TITLE_KEYS)
    if title:
        metadata["title"] = title
    return metadata


def normalize_record(record: Any, category: Union[Category, str]) -> Finding:
    """Map one raw record onto a Finding. Raises MalformedInputError."""
    category = Category(category)
    if not isinstance(record, Mapping):
        raise MalformedInputError(f"Expected a mapping, got {type(record).__name__}")

    finding_id = _first(record, _ID_KEYS[category])
    if finding_id is None:
        raise MalformedInputError(f"{category.value} record has no identifier")
    target = _first(record, _TARGET_KEYS[category])
    if target is None:
        raise MalformedInputError(f"{category.value} record {finding_id} has no target locator")

    severity = map_severity(record.get("severity", record.get("Severity")))
    metadata = _base_metadata(record)
    fix_available = _fix_flag(record)

    if category == Category.VULNERABILITY:
        installed = _first(record, ("installed_version", "InstalledVersion"))
        fixed = _first(record, ("fixed_version", "FixedVersion"))
        if installed:
            metadata["installed_version"] = installed
        if fixed:
            metadata["fixed_version"] = fixed
        if fix_available is None:
            fix_available = fixed is not None
    elif category == Category.SECRET:
        line = _first(record, ("line", "StartLine", "start_line"))
        if line:
            target = f"{target}:{line}"
        match = _first(record, ("match", "Match"))
        if match:
            metadata["match"] = _redact(match)
        if fix_available is None:
            # A leaked secret can always be rotated
            fix_available = True
    else:
        resolution = _first(record, ("resolution", "Resolution"))
        message = _first(record, ("message", "Message"))
        if resolution:
            metadata["resolution"] = resolution
        if message:
            metadata["message"] = message
        if fix_available is None:
            fix_available = resolution is not None

    return Finding(
        id=finding_id,
        category=category,
        severity=severity,
        target=target,
        fix_available=fix_available,
        metadata=metadata,
    )


def _is_passed_check(record: Any) -> bool:
    if not isinstance(record, Mapping):
        return False
    status = record.get("status", record.get("Status"))
    return isinstance(status, str) and status.strip().upper() == "PASS"


def normalize_batch(raw_records: Any, category: Union[Category, str]) -> NormalizedBatch:
    """Normalize a batch, skipping malformed records with a warning."""
    category = Category(category)
    batch = NormalizedBatch()
    if raw_records is None:
        return batch
    if isinstance(raw_records, (str, bytes, Mapping)) or not isinstance(raw_records, Iterable):
        raise MalformedInputError(
            f"Expected a sequence of {category.value} records, got {type(raw_records).__name__}"
        )

    for index, record in enumerate(raw_records):
        if category == Category.MISCONFIGURATION and _is_passed_check(record):
            continue
        try:
            batch.findings.append(normalize_record(record, category))
        except MalformedInputError as e:
            message = f"{category.value} record #{index} skipped: {e}"
            logger.warning(message)
            batch.warnings.append(message)
    return batch


def normalize(raw_records: Any, category: Union[Category, str]) -> list[Finding]:
    """Normalize raw scanner output for one category into findings."""
    return normalize_batch(raw_records, category).findings


def build_scan_result(
    artifact_id: str,
    category: Union[Category, str],
    raw_records: Any,
    timestamp: Optional[str] = None,
) -> ScanResult:
    """Normalize ``raw_records`` and wrap them into a ScanResult."""
    category = Category(category)
    batch = normalize_batch(raw_records, category)
    values: dict[str, Any] = {
        "artifact_id": artifact_id,
        "category": category,
        "findings": tuple(batch.findings),
        "warnings": tuple(batch.warnings),
    }
    if timestamp is not None:
        values["timestamp"] = timestamp
    return ScanResult(**values)
