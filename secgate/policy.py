"""Policy engine: evaluates one scan result against one category policy."""

from typing import Any, Mapping, Union

from .models import Finding, Policy, ScanResult, Verdict, VerdictStatus


def evaluate(scan_result: ScanResult, policy: Union[Policy, Mapping[str, Any]]) -> Verdict:
    """Evaluate ``scan_result`` against ``policy``.

    Precedence per finding: ignore rule, then the fix-available filter,
    then the severity threshold. A finding lands in at most one of the
    blocking / ignored / informational lists.

    Raises InvalidPolicyError if ``policy`` is a malformed config mapping.
    """
    policy = Policy.from_config(policy)
    ignored_ids = policy.ignored_ids

    blocking: list[Finding] = []
    ignored: list[Finding] = []
    informational: list[Finding] = []

    for finding in scan_result.findings:
        if finding.id in ignored_ids:
            ignored.append(finding)
            continue
        if policy.require_fix_available and not finding.fix_available:
            informational.append(finding)
            continue
        if policy.blocks(finding.severity):
            blocking.append(finding)

    passed = not blocking
    return Verdict(
        category=scan_result.category,
        status=VerdictStatus.PASSED if passed else VerdictStatus.FAILED,
        passed=passed,
        blocking_findings=tuple(blocking),
        ignored_findings=tuple(ignored),
        informational_findings=tuple(informational),
        detail=_describe(policy, len(blocking), len(ignored)),
    )


def _describe(policy: Policy, blocking: int, ignored: int) -> str:
    if policy.min_fail_severity is None:
        detail = "No failure threshold configured"
    elif blocking:
        detail = f"{blocking} blocking finding(s) at or above {policy.min_fail_severity.value}"
    else:
        detail = f"No findings at or above {policy.min_fail_severity.value}"
    if ignored:
        detail += f", {ignored} ignored"
    return detail


def errored_verdict(scan_result: ScanResult, error: str) -> Verdict:
    """Verdict for a category whose policy could not be evaluated."""
    return Verdict(
        category=scan_result.category,
        status=VerdictStatus.ERRORED,
        passed=False,
        informational_findings=scan_result.findings,
        error=error,
        detail=f"Policy error: {error}",
    )


def skipped_verdict(scan_result: ScanResult, detail: str = "No policy configured") -> Verdict:
    """Verdict for a scanned category without a policy; always passes.

    Its findings are kept as informational so the report stays complete.
    """
    return Verdict(
        category=scan_result.category,
        status=VerdictStatus.SKIPPED,
        passed=True,
        informational_findings=scan_result.findings,
        detail=detail,
    )
