"""Gate orchestration: evaluates every scanned category and aggregates the verdicts."""

import logging
from concurrent.futures import ThreadPoolExecutor
from typing import TYPE_CHECKING, Any, Collection, Mapping, Optional, Sequence, Union

from .errors import BaselineUnavailableError, InvalidPolicyError
from .models import (
    CATEGORY_ORDER,
    Category,
    ComponentChange,
    Finding,
    GateReport,
    Policy,
    SbomComponent,
    SbomDelta,
    ScanResult,
    Verdict,
    VerdictStatus,
)
from .policy import errored_verdict, evaluate, skipped_verdict

if TYPE_CHECKING:
    from .storage import BaselineStore

logger = logging.getLogger(__name__)


def _index_scans(
    artifact_id: str,
    scan_results_by_category: Mapping[Union[Category, str], ScanResult],
) -> dict[Category, ScanResult]:
    scans: dict[Category, ScanResult] = {}
    for key, scan in scan_results_by_category.items():
        category = Category(key)
        if scan.category != category:
            raise ValueError(
                f"Scan result for {scan.category.value} filed under {category.value}"
            )
        if scan.artifact_id != artifact_id:
            raise ValueError(
                f"Scan result for artifact {scan.artifact_id!r} passed to gate for {artifact_id!r}"
            )
        scans[category] = scan
    return scans


def _evaluate_category(scan: ScanResult, policy: Union[Policy, Mapping[str, Any]]) -> Verdict:
    try:
        return evaluate(scan, policy)
    except InvalidPolicyError as e:
        logger.error("Policy for %s is invalid: %s", scan.category.value, e)
        return errored_verdict(scan, str(e))


def diff_findings(
    current: Sequence[Finding],
    previous: Optional[GateReport],
    evaluated: Optional[Collection[Category]] = None,
) -> tuple[list[Finding], list[Finding]]:
    """Split findings into (new, resolved) relative to ``previous`` by (id, target).

    When ``evaluated`` is given, only baseline findings of those categories
    can be resolved; the rest were not checked in this run.
    """
    current_unique = _unique(current)
    if previous is None:
        return current_unique, []

    previous_unique = _unique(previous.gated_findings())
    previous_keys = {f.key for f in previous_unique}
    current_keys = {f.key for f in current_unique}
    new = [f for f in current_unique if f.key not in previous_keys]
    resolved = [
        f
        for f in previous_unique
        if f.key not in current_keys and (evaluated is None or f.category in evaluated)
    ]
    return new, resolved


def _unique(findings: Sequence[Finding]) -> list[Finding]:
    seen: set[tuple[str, str]] = set()
    unique = []
    for finding in findings:
        if finding.key not in seen:
            seen.add(finding.key)
            unique.append(finding)
    return unique


def _versions_by_key(components: Sequence[SbomComponent]) -> dict[str, tuple[str, ...]]:
    grouped: dict[str, set[str]] = {}
    for component in components:
        grouped.setdefault(component.key, set()).add(component.version)
    return {key: tuple(sorted(versions)) for key, versions in grouped.items()}


def diff_sbom(
    previous: Sequence[SbomComponent],
    current: Sequence[SbomComponent],
) -> SbomDelta:
    """Component-level delta between two SBOMs, sorted by component key."""
    previous_versions = _versions_by_key(previous)
    current_versions = _versions_by_key(current)

    def _sorted(components):
        return tuple(sorted(components, key=lambda c: (c.key, c.version, c.purl or "")))

    added = _sorted({c for c in current if c.key not in previous_versions})
    removed = _sorted({c for c in previous if c.key not in current_versions})
    changed = tuple(
        ComponentChange(
            key=key,
            previous_versions=previous_versions[key],
            current_versions=current_versions[key],
        )
        for key in sorted(current_versions)
        if key in previous_versions and previous_versions[key] != current_versions[key]
    )
    return SbomDelta(added=added, removed=removed, changed=changed)


def run_gate(
    artifact_id: str,
    scan_results_by_category: Mapping[Union[Category, str], ScanResult],
    policies_by_category: Mapping[Union[Category, str], Union[Policy, Mapping[str, Any]]],
    previous_baseline: Optional[GateReport] = None,
    *,
    sbom: Optional[Sequence[SbomComponent]] = None,
    max_workers: Optional[int] = None,
) -> GateReport:
    """Evaluate every scanned category and produce the gate report.

    Categories with both a scan result and a policy are evaluated
    concurrently and all of them are joined before the verdicts are
    reduced. A scanned category without a policy is skipped (passes); a
    category whose policy is invalid is recorded as errored and fails the
    gate without affecting the other categories.

    Baseline findings of a category that was skipped, errored or not
    scanned in this run are never reported as resolved.

    The report is not persisted; committing it as the new baseline is up
    to the caller.
    """
    scans = _index_scans(artifact_id, scan_results_by_category)
    policies = {Category(key): policy for key, policy in policies_by_category.items()}

    if previous_baseline is not None and previous_baseline.artifact_id != artifact_id:
        raise ValueError(
            f"Baseline for {previous_baseline.artifact_id!r} passed to gate for {artifact_id!r}"
        )

    evaluated = [c for c in CATEGORY_ORDER if c in scans and c in policies]
    results: dict[Category, Verdict] = {}
    if evaluated:
        workers = max_workers or len(evaluated)
        with ThreadPoolExecutor(max_workers=workers) as pool:
            futures = {
                category: pool.submit(_evaluate_category, scans[category], policies[category])
                for category in evaluated
            }
            results = {category: future.result() for category, future in futures.items()}

    per_category: dict[Category, Verdict] = {}
    for category in CATEGORY_ORDER:
        if category in results:
            per_category[category] = results[category]
        elif category in scans:
            logger.info("No policy for %s on %s; category passes by default", category.value, artifact_id)
            per_category[category] = skipped_verdict(scans[category])
        elif category in policies:
            logger.debug("Policy for %s has no scan result on %s", category.value, artifact_id)

    overall_passed = all(v.passed for v in per_category.values())

    current: list[Finding] = []
    for verdict in per_category.values():
        current.extend(verdict.gated_findings)
    decided = {
        category
        for category, verdict in per_category.items()
        if verdict.status in (VerdictStatus.PASSED, VerdictStatus.FAILED)
    }
    new_findings, resolved_findings = diff_findings(current, previous_baseline, decided)

    sbom_components = tuple(sbom) if sbom is not None else None
    sbom_delta = None
    if (
        sbom_components is not None
        and previous_baseline is not None
        and previous_baseline.sbom is not None
    ):
        sbom_delta = diff_sbom(previous_baseline.sbom, sbom_components)

    report = GateReport(
        artifact_id=artifact_id,
        overall_passed=overall_passed,
        per_category=per_category,
        new_findings=tuple(new_findings),
        resolved_findings=tuple(resolved_findings),
        sbom=sbom_components,
        sbom_delta=sbom_delta,
    )
    logger.info(
        "Gate for %s %s (%d new, %d resolved)",
        artifact_id,
        "passed" if overall_passed else "failed",
        len(new_findings),
        len(resolved_findings),
    )
    return report


def run_gate_with_store(
    store: "BaselineStore",
    artifact_id: str,
    scan_results_by_category: Mapping[Union[Category, str], ScanResult],
    policies_by_category: Mapping[Union[Category, str], Union[Policy, Mapping[str, Any]]],
    *,
    use_baseline: bool = True,
    commit: bool = False,
    sbom: Optional[Sequence[SbomComponent]] = None,
    max_workers: Optional[int] = None,
) -> GateReport:
    """Run the gate against the stored baseline, optionally committing the result.

    An unreachable baseline store degrades to first-run semantics; the
    report then carries ``baseline_available=False``.
    """
    previous: Optional[GateReport] = None
    baseline_available = True
    if use_baseline:
        try:
            previous = store.get(artifact_id)
        except BaselineUnavailableError as e:
            logger.warning("Baseline for %s unavailable, treating as first run: %s", artifact_id, e)
            baseline_available = False

    report = run_gate(
        artifact_id,
        scan_results_by_category,
        policies_by_category,
        previous,
        sbom=sbom,
        max_workers=max_workers,
    )
    if not baseline_available:
        report = report.model_copy(update={"baseline_available": False})

    if commit:
        try:
            store.commit(artifact_id, report)
        except BaselineUnavailableError:
            logger.error("Could not commit baseline for %s", artifact_id)
            raise
    return report
