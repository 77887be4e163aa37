"""Tests for the MCP server tool handlers."""

from secgate.server import _commit_baseline, _evaluate, _get_baseline, _normalize, _run_gate
from secgate.storage import BaselineStore

VULNS = [
    {"id": "CVE-1", "package": "openssl", "severity": "CRITICAL", "fixed_version": "3.1.4"},
    {"severity": "HIGH"},
]


def test_normalize_reports_warnings():
    result = _normalize("vulnerability", VULNS)
    assert [f["id"] for f in result["findings"]] == ["CVE-1"]
    assert result["findings"][0]["severity"] == "CRITICAL"
    assert len(result["warnings"]) == 1


def test_normalize_unknown_category():
    assert "error" in _normalize("malware", VULNS)


def test_evaluate_policy():
    verdict = _evaluate("img", "vulnerability", VULNS, {"minFailSeverity": "HIGH"})
    assert verdict["status"] == "failed"
    assert verdict["blocking_findings"][0]["id"] == "CVE-1"


def test_evaluate_invalid_policy_returns_error():
    result = _evaluate("img", "vulnerability", VULNS, {"minFailSeverity": "EXTREME"})
    assert "EXTREME" in result["error"]


def test_run_gate_commit_and_baseline_round_trip():
    store = BaselineStore()
    policies = {"vulnerability": {"minFailSeverity": "HIGH"}}
    report = _run_gate(store, "img", {"vulnerability": VULNS}, policies, commit=True)
    assert report["overall_passed"] is False
    assert report["per_category"]["vulnerability"]["status"] == "failed"

    baseline = _get_baseline(store, "img")["baseline"]
    assert baseline["artifact_id"] == "img"

    second = _run_gate(store, "img", {"vulnerability": VULNS}, policies)
    assert second["new_findings"] == []
    assert second["resolved_findings"] == []


def test_run_gate_with_sbom():
    store = BaselineStore()
    sbom = {"bomFormat": "CycloneDX", "components": [{"name": "zlib", "version": "1.3"}]}
    report = _run_gate(store, "img", {"secret": []}, {"secret": {}}, sbom=sbom)
    assert report["sbom"] == [{"name": "zlib", "version": "1.3", "purl": None}]


def test_commit_baseline_tool():
    store = BaselineStore()
    report = _run_gate(store, "img", {"secret": []}, {"secret": {"minFailSeverity": "LOW"}})
    assert _commit_baseline(store, report) == {"committed": True, "artifact_id": "img"}
    assert _get_baseline(store, "img")["baseline"]["overall_passed"] is True


def test_commit_baseline_rejects_garbage():
    result = _commit_baseline(BaselineStore(), {"artifact_id": "img"})
    assert result["committed"] is False
