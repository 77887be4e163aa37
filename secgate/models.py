"""Data models for the security gate."""

from datetime import datetime, timezone
from enum import Enum
from typing import Any, Mapping, Optional

from pydantic import BaseModel, ConfigDict, Field, ValidationError, field_validator, model_validator

from .errors import InvalidPolicyError


def _utcnow() -> str:
    return datetime.now(timezone.utc).isoformat()


class Severity(str, Enum):
    UNKNOWN = "UNKNOWN"
    LOW = "LOW"
    MEDIUM = "MEDIUM"
    HIGH = "HIGH"
    CRITICAL = "CRITICAL"

    @property
    def rank(self) -> int:
        """Position in the total order UNKNOWN < LOW < MEDIUM < HIGH < CRITICAL."""
        return SEVERITY_ORDER.index(self)

    @classmethod
    def parse(cls, value: Any) -> "Severity":
        """Strict lookup by level name (case-insensitive). Raises InvalidPolicyError."""
        if isinstance(value, Severity):
            return value
        if isinstance(value, str):
            try:
                return cls[value.strip().upper()]
            except KeyError:
                pass
        names = ", ".join(s.value for s in SEVERITY_ORDER)
        raise InvalidPolicyError(f"Unrecognized severity level {value!r} (expected one of {names})")


SEVERITY_ORDER = tuple(Severity)


class Category(str, Enum):
    VULNERABILITY = "vulnerability"
    SECRET = "secret"
    MISCONFIGURATION = "misconfiguration"


# Canonical iteration order for reports
CATEGORY_ORDER = tuple(Category)


class Finding(BaseModel):
    model_config = ConfigDict(frozen=True)

    id: str
    category: Category
    severity: Severity = Severity.UNKNOWN
    target: str
    fix_available: bool = False
    metadata: dict[str, str] = Field(default_factory=dict)

    @property
    def key(self) -> tuple[str, str]:
        """Identity of a finding within one scan run."""
        return (self.id, self.target)


class ScanResult(BaseModel):
    model_config = ConfigDict(frozen=True)

    artifact_id: str
    category: Category
    findings: tuple[Finding, ...] = ()
    timestamp: str = Field(default_factory=_utcnow)
    warnings: tuple[str, ...] = ()

    @field_validator("findings")
    @classmethod
    def collapse_duplicates(cls, findings: tuple[Finding, ...]) -> tuple[Finding, ...]:
        seen: set[tuple[str, str]] = set()
        unique = []
        for finding in findings:
            if finding.key in seen:
                continue
            seen.add(finding.key)
            unique.append(finding)
        return tuple(unique)

    @model_validator(mode="after")
    def check_categories(self) -> "ScanResult":
        for finding in self.findings:
            if finding.category != self.category:
                raise ValueError(
                    f"Finding {finding.id} has category {finding.category.value}, "
                    f"scan result is {self.category.value}"
                )
        return self


class IgnoreRule(BaseModel):
    model_config = ConfigDict(frozen=True)

    id: str
    justification: str

    @field_validator("id", "justification")
    @classmethod
    def not_blank(cls, value: str) -> str:
        if not value.strip():
            raise ValueError("must not be blank")
        return value


_POLICY_KEYS = {
    "minFailSeverity": "min_fail_severity",
    "min_fail_severity": "min_fail_severity",
    "ignoreRules": "ignore_rules",
    "ignore_rules": "ignore_rules",
    "requireFixAvailable": "require_fix_available",
    "require_fix_available": "require_fix_available",
}


class Policy(BaseModel):
    """Gate configuration for one category.

    ``min_fail_severity=None`` is the empty policy: nothing ever blocks.
    """

    model_config = ConfigDict(frozen=True)

    min_fail_severity: Optional[Severity] = None
    ignore_rules: tuple[IgnoreRule, ...] = ()
    require_fix_available: bool = False

    @property
    def ignored_ids(self) -> frozenset[str]:
        return frozenset(rule.id for rule in self.ignore_rules)

    def blocks(self, severity: Severity) -> bool:
        """Whether a finding of ``severity`` meets the failure threshold.

        UNKNOWN never blocks: it cannot be shown to reach a concrete bar.
        """
        if self.min_fail_severity is None or severity == Severity.UNKNOWN:
            return False
        return severity.rank >= self.min_fail_severity.rank

    @classmethod
    def from_config(cls, raw: Any) -> "Policy":
        """Build a Policy from its config form (camelCase or snake_case keys).

        Raises InvalidPolicyError for an unknown key, an unrecognized
        severity, or an ignore rule without id or justification.
        """
        if isinstance(raw, Policy):
            return raw
        if not isinstance(raw, Mapping):
            raise InvalidPolicyError(f"Policy must be a mapping, got {type(raw).__name__}")

        values: dict[str, Any] = {}
        for key, value in raw.items():
            field = _POLICY_KEYS.get(key)
            if field is None:
                raise InvalidPolicyError(f"Unknown policy option {key!r}")
            values[field] = value

        threshold = values.get("min_fail_severity")
        if threshold is not None:
            values["min_fail_severity"] = Severity.parse(threshold)

        rules = values.get("ignore_rules") or []
        if not isinstance(rules, (list, tuple)):
            raise InvalidPolicyError("ignoreRules must be a list of {id, justification} entries")
        parsed_rules = []
        for index, rule in enumerate(rules):
            if not isinstance(rule, Mapping):
                raise InvalidPolicyError(f"Ignore rule #{index} must be a mapping")
            if not str(rule.get("justification") or "").strip():
                raise InvalidPolicyError(
                    f"Ignore rule #{index} ({rule.get('id')!r}) has no justification"
                )
            try:
                parsed_rules.append(IgnoreRule(id=str(rule.get("id") or ""), justification=str(rule["justification"])))
            except ValidationError as e:
                raise InvalidPolicyError(f"Ignore rule #{index} is malformed: {e}") from e
        values["ignore_rules"] = tuple(parsed_rules)

        require_fix = values.get("require_fix_available", False)
        if not isinstance(require_fix, bool):
            raise InvalidPolicyError("requireFixAvailable must be a boolean")

        return cls(**values)


class VerdictStatus(str, Enum):
    PASSED = "passed"
    FAILED = "failed"
    ERRORED = "errored"
    SKIPPED = "skipped"


class Verdict(BaseModel):
    model_config = ConfigDict(frozen=True)

    category: Category
    status: VerdictStatus
    passed: bool
    blocking_findings: tuple[Finding, ...] = ()
    ignored_findings: tuple[Finding, ...] = ()
    informational_findings: tuple[Finding, ...] = ()
    error: Optional[str] = None
    detail: str = ""

    @property
    def gated_findings(self) -> tuple[Finding, ...]:
        """Findings tracked against the baseline: blocking plus ignored."""
        return self.blocking_findings + self.ignored_findings


class SbomComponent(BaseModel):
    model_config = ConfigDict(frozen=True)

    name: str
    version: str = ""
    purl: Optional[str] = None

    @property
    def key(self) -> str:
        """Version-independent identity (purl without version, else name)."""
        if self.purl:
            base = self.purl.split("?", 1)[0].split("#", 1)[0]
            slash = base.rfind("/")
            at = base.rfind("@")
            if at > slash:
                base = base[:at]
            return base
        return self.name


class ComponentChange(BaseModel):
    model_config = ConfigDict(frozen=True)

    key: str
    previous_versions: tuple[str, ...]
    current_versions: tuple[str, ...]


class SbomDelta(BaseModel):
    model_config = ConfigDict(frozen=True)

    added: tuple[SbomComponent, ...] = ()
    removed: tuple[SbomComponent, ...] = ()
    changed: tuple[ComponentChange, ...] = ()

    @property
    def is_empty(self) -> bool:
        return not (self.added or self.removed or self.changed)


class GateReport(BaseModel):
    model_config = ConfigDict(frozen=True)

    artifact_id: str
    overall_passed: bool
    per_category: dict[Category, Verdict] = Field(default_factory=dict)
    new_findings: tuple[Finding, ...] = ()
    resolved_findings: tuple[Finding, ...] = ()
    baseline_available: bool = True
    sbom: Optional[tuple[SbomComponent, ...]] = None
    sbom_delta: Optional[SbomDelta] = None
    generated_at: str = Field(default_factory=_utcnow)

    def gated_findings(self) -> list[Finding]:
        """Blocking and ignored findings across categories, in report order."""
        findings = []
        for verdict in self.per_category.values():
            findings.extend(verdict.gated_findings)
        return findings

    def failed_categories(self) -> list[Category]:
        return [c for c, v in self.per_category.items() if not v.passed]

    def to_json(self) -> str:
        return self.model_dump_json(indent=2)

    def canonical_json(self) -> str:
        """Serialization without the timestamp; equal for identical gate inputs."""
        return self.model_dump_json(exclude={"generated_at"})

    @classmethod
    def from_json(cls, document: str) -> "GateReport":
        return cls.model_validate_json(document)
