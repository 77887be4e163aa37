"""Tests for the policy engine."""

import pytest

from secgate.errors import InvalidPolicyError
from secgate.models import (
    Category,
    Finding,
    IgnoreRule,
    Policy,
    ScanResult,
    Severity,
    VerdictStatus,
)
from secgate.policy import evaluate


def _finding(fid="CVE-1", severity=Severity.CRITICAL, fix=True, target="openssl"):
    return Finding(
        id=fid,
        category=Category.VULNERABILITY,
        severity=severity,
        target=target,
        fix_available=fix,
    )


def _scan(*findings):
    return ScanResult(artifact_id="img", category=Category.VULNERABILITY, findings=findings)


def _all_levels():
    return [_finding(f"CVE-{s.value}", s, target=s.value.lower()) for s in Severity]


class TestScenarios:
    def test_critical_with_fix_blocks_at_high(self):
        finding = _finding()
        verdict = evaluate(_scan(finding), Policy(min_fail_severity=Severity.HIGH))
        assert verdict.passed is False
        assert verdict.status == VerdictStatus.FAILED
        assert verdict.blocking_findings == (finding,)

    def test_ignore_rule_exempts_finding(self):
        finding = _finding()
        policy = Policy(
            min_fail_severity=Severity.HIGH,
            ignore_rules=(IgnoreRule(id="CVE-1", justification="accepted risk"),),
        )
        verdict = evaluate(_scan(finding), policy)
        assert verdict.passed is True
        assert verdict.ignored_findings == (finding,)
        assert verdict.blocking_findings == ()

    def test_unknown_never_blocks(self):
        verdict = evaluate(
            _scan(_finding(severity=Severity.UNKNOWN)),
            Policy(min_fail_severity=Severity.LOW),
        )
        assert verdict.passed is True
        assert verdict.blocking_findings == ()

    def test_unknown_never_blocks_even_at_unknown_threshold(self):
        verdict = evaluate(
            _scan(_finding(severity=Severity.UNKNOWN)),
            Policy(min_fail_severity=Severity.UNKNOWN),
        )
        assert verdict.passed is True

    def test_require_fix_available_excludes_unfixed(self):
        finding = _finding(fix=False)
        policy = Policy(min_fail_severity=Severity.LOW, require_fix_available=True)
        verdict = evaluate(_scan(finding), policy)
        assert verdict.passed is True
        assert verdict.blocking_findings == ()
        assert verdict.informational_findings == (finding,)


class TestProperties:
    def test_critical_threshold_only_blocks_critical(self):
        verdict = evaluate(_scan(*_all_levels()), Policy(min_fail_severity=Severity.CRITICAL))
        assert [f.severity for f in verdict.blocking_findings] == [Severity.CRITICAL]

    @pytest.mark.parametrize("threshold", list(Severity))
    def test_threshold_is_monotonic(self, threshold):
        verdict = evaluate(_scan(*_all_levels()), Policy(min_fail_severity=threshold))
        for finding in verdict.blocking_findings:
            assert finding.severity != Severity.UNKNOWN
            assert finding.severity.rank >= threshold.rank

    def test_each_finding_lands_in_at_most_one_bucket(self):
        findings = _all_levels() + [_finding("CVE-X", Severity.HIGH, fix=False, target="x")]
        policy = Policy(
            min_fail_severity=Severity.MEDIUM,
            ignore_rules=(IgnoreRule(id="CVE-HIGH", justification="vendor patch pending"),),
            require_fix_available=True,
        )
        verdict = evaluate(_scan(*findings), policy)
        buckets = [
            {f.key for f in verdict.blocking_findings},
            {f.key for f in verdict.ignored_findings},
            {f.key for f in verdict.informational_findings},
        ]
        assert not (buckets[0] & buckets[1])
        assert not (buckets[0] & buckets[2])
        assert not (buckets[1] & buckets[2])

    def test_ignore_rule_takes_precedence_over_fix_filter(self):
        finding = _finding(fix=False)
        policy = Policy(
            min_fail_severity=Severity.LOW,
            ignore_rules=(IgnoreRule(id="CVE-1", justification="false positive"),),
            require_fix_available=True,
        )
        verdict = evaluate(_scan(finding), policy)
        assert verdict.ignored_findings == (finding,)
        assert verdict.informational_findings == ()

    def test_evaluate_is_idempotent(self):
        scan = _scan(*_all_levels())
        policy = Policy(min_fail_severity=Severity.MEDIUM)
        assert evaluate(scan, policy) == evaluate(scan, policy)

    def test_empty_policy_never_fails(self):
        verdict = evaluate(_scan(*_all_levels()), Policy())
        assert verdict.passed is True
        assert verdict.detail == "No failure threshold configured"


class TestPolicyConfig:
    def test_from_config_camel_case(self):
        policy = Policy.from_config(
            {
                "minFailSeverity": "high",
                "ignoreRules": [{"id": "CVE-1", "justification": "accepted risk"}],
                "requireFixAvailable": True,
            }
        )
        assert policy.min_fail_severity == Severity.HIGH
        assert policy.ignored_ids == frozenset({"CVE-1"})
        assert policy.require_fix_available is True

    def test_empty_mapping_is_valid(self):
        assert Policy.from_config({}) == Policy()

    def test_unrecognized_severity(self):
        with pytest.raises(InvalidPolicyError, match="Unrecognized severity"):
            Policy.from_config({"minFailSeverity": "SEVERE"})

    def test_ignore_rule_without_justification(self):
        with pytest.raises(InvalidPolicyError, match="justification"):
            Policy.from_config({"ignoreRules": [{"id": "CVE-1"}]})

    def test_ignore_rule_with_blank_justification(self):
        with pytest.raises(InvalidPolicyError):
            Policy.from_config({"ignoreRules": [{"id": "CVE-1", "justification": "   "}]})

    def test_ignore_rule_without_id(self):
        with pytest.raises(InvalidPolicyError):
            Policy.from_config({"ignoreRules": [{"justification": "accepted risk"}]})

    def test_unknown_option(self):
        with pytest.raises(InvalidPolicyError, match="Unknown policy option"):
            Policy.from_config({"failOn": "HIGH"})

    def test_non_boolean_require_fix(self):
        with pytest.raises(InvalidPolicyError):
            Policy.from_config({"requireFixAvailable": "yes"})

    def test_evaluate_accepts_raw_mapping(self):
        verdict = evaluate(_scan(_finding()), {"minFailSeverity": "CRITICAL"})
        assert verdict.passed is False

    def test_evaluate_raises_on_invalid_mapping(self):
        with pytest.raises(InvalidPolicyError):
            evaluate(_scan(_finding()), {"minFailSeverity": "EXTREME"})
