"""Security gate MCP server: gate evaluation and baseline tools."""

import os

# When run as main module, honor SECGATE_PROJECT_DIR so relative paths
# like .secgate/baselines.db resolve inside the project.
if __name__ == "__main__" and os.environ.get("SECGATE_PROJECT_DIR"):
    os.chdir(os.environ["SECGATE_PROJECT_DIR"])

from typing import Any, Optional

from fastmcp import FastMCP

from .adapters import parse_sbom
from .config import GateSettings, get_baseline_db_path, get_policies, load_gate_config
from .errors import SecGateError
from .gates import run_gate_with_store
from .models import Category, GateReport
from .normalizer import build_scan_result, normalize_batch
from .policy import evaluate
from .storage import BaselineStore, SQLiteBaselineBackend

mcp = FastMCP("Secgate Security Gate")

settings = GateSettings()
config = load_gate_config(settings.config_path)
store = BaselineStore(SQLiteBaselineBackend(settings.db_path or get_baseline_db_path(config)))


def _normalize(category: str, records: list[dict]) -> dict:
    try:
        batch = normalize_batch(records, category)
    except (SecGateError, ValueError) as e:
        return {"error": str(e)}
    return {
        "findings": [f.model_dump(mode="json") for f in batch.findings],
        "warnings": batch.warnings,
    }


def _evaluate(artifact_id: str, category: str, records: list[dict], policy: dict) -> dict:
    try:
        scan = build_scan_result(artifact_id, category, records)
        verdict = evaluate(scan, policy)
    except (SecGateError, ValueError) as e:
        return {"error": str(e)}
    return verdict.model_dump(mode="json")


def _run_gate(
    gate_store: BaselineStore,
    artifact_id: str,
    scans: dict[str, list[dict]],
    policies: Optional[dict[str, dict]] = None,
    use_baseline: bool = True,
    commit: bool = False,
    sbom: Optional[dict] = None,
) -> dict:
    try:
        if policies is None:
            policies = get_policies(config)
        scan_results = {
            Category(name): build_scan_result(artifact_id, name, records)
            for name, records in scans.items()
        }
        components = parse_sbom(sbom) if sbom is not None else None
        report = run_gate_with_store(
            gate_store,
            artifact_id,
            scan_results,
            policies,
            use_baseline=use_baseline,
            commit=commit,
            sbom=components,
            max_workers=settings.max_workers,
        )
    except (SecGateError, ValueError) as e:
        return {"error": str(e)}
    return report.model_dump(mode="json")


def _get_baseline(gate_store: BaselineStore, artifact_id: str) -> dict:
    try:
        report = gate_store.get(artifact_id)
    except SecGateError as e:
        return {"error": str(e)}
    return {"baseline": report.model_dump(mode="json") if report else None}


def _commit_baseline(gate_store: BaselineStore, report: dict[str, Any]) -> dict:
    try:
        parsed = GateReport.model_validate(report)
        gate_store.commit(parsed.artifact_id, parsed)
    except (SecGateError, ValueError) as e:
        return {"committed": False, "error": str(e)}
    return {"committed": True, "artifact_id": parsed.artifact_id}


@mcp.tool()
def normalize_findings(category: str, records: list[dict]) -> dict:
    """Normalize raw scanner records for one category.

    Args:
        category: One of: vulnerability, secret, misconfiguration.
        records: Raw scanner records (generic or Trivy field names).

    Returns:
        {findings, warnings} where warnings lists skipped malformed records.
    """
    return _normalize(category, records)


@mcp.tool()
def evaluate_policy(artifact_id: str, category: str, records: list[dict], policy: dict) -> dict:
    """Evaluate one category's raw findings against a policy.

    Args:
        policy: {minFailSeverity, ignoreRules: [{id, justification}], requireFixAvailable}
    """
    return _evaluate(artifact_id, category, records, policy)


@mcp.tool()
def run_gate(
    artifact_id: str,
    scans: dict[str, list[dict]],
    policies: Optional[dict[str, dict]] = None,
    use_baseline: bool = True,
    commit: bool = False,
    sbom: Optional[dict] = None,
) -> dict:
    """Run the full gate for an artifact.

    Args:
        artifact_id: Stable identity of the scanned artifact (image digest, commit).
        scans: Raw records keyed by category.
        policies: Policy config keyed by category; defaults to the gate config file.
        use_baseline: Diff against the committed baseline.
        commit: Commit the resulting report as the new baseline.
        sbom: Optional CycloneDX or SPDX JSON document.

    Returns:
        The gate report: {artifact_id, overall_passed, per_category, new_findings, ...}
    """
    return _run_gate(store, artifact_id, scans, policies, use_baseline, commit, sbom)


@mcp.tool()
def get_baseline(artifact_id: str) -> dict:
    """Get the committed baseline report for an artifact, or null."""
    return _get_baseline(store, artifact_id)


@mcp.tool()
def commit_baseline(report: dict) -> dict:
    """Commit a gate report as the baseline for its artifact."""
    return _commit_baseline(store, report)


@mcp.tool()
def list_baselines() -> dict:
    """List artifacts that have a committed baseline."""
    try:
        return {"artifacts": store.list_artifacts()}
    except SecGateError as e:
        return {"error": str(e)}


if __name__ == "__main__":
    mcp.run(transport="sse", port=settings.port)
