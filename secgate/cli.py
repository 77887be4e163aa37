"""Command-line entry point for CI pipelines.

Usage:
    secgate run --artifact sha256:abc --trivy trivy.json --config gate-config.json
    secgate run --artifact repo@commit --scan secret=gitleaks.json --commit
    secgate baseline show --artifact sha256:abc

``run`` exits 0 when the gate passes, 1 when it fails and 2 on usage,
configuration or storage errors.
"""

from __future__ import annotations

import argparse
import json
import logging
import sys
from pathlib import Path
from typing import Any

from .adapters import artifact_id_from_trivy, parse_sbom, scan_results_from_trivy
from .config import GateSettings, get_baseline_db_path, get_max_workers, get_policies, load_gate_config
from .errors import MalformedInputError, SecGateError
from .gates import run_gate_with_store
from .models import Category, GateReport, ScanResult
from .normalizer import build_scan_result
from .storage import BaselineStore, SQLiteBaselineBackend

logger = logging.getLogger("secgate")

EXIT_PASSED = 0
EXIT_FAILED = 1
EXIT_ERROR = 2


def _add_common_options(parser: argparse.ArgumentParser, default: Any) -> None:
    parser.add_argument(
        "--verbose",
        "-v",
        action="store_true",
        default=False if default is None else default,
        help="Enable verbose (DEBUG-level) logging.",
    )
    parser.add_argument("--config", type=Path, default=default, help="Gate config JSON file.")
    parser.add_argument("--db", type=Path, default=default, help="Baseline SQLite database.")


def _parse_args(argv: list[str] | None) -> argparse.Namespace:
    parser = argparse.ArgumentParser(
        prog="secgate",
        description="Evaluate scanner findings against a security gate policy.",
    )
    _add_common_options(parser, None)

    # Accepted after the subcommand too; SUPPRESS keeps a value given before it
    common = argparse.ArgumentParser(add_help=False)
    _add_common_options(common, argparse.SUPPRESS)

    commands = parser.add_subparsers(dest="command", required=True)

    run = commands.add_parser("run", parents=[common], help="Run the gate for one artifact.")
    run.add_argument("--artifact", default=None, help="Artifact identity (digest, path, commit).")
    run.add_argument("--trivy", type=Path, default=None, help="Trivy JSON report.")
    run.add_argument(
        "--scan",
        action="append",
        default=[],
        metavar="CATEGORY=FILE",
        help="Raw findings for one category (JSON list). Repeatable.",
    )
    run.add_argument("--sbom", type=Path, default=None, help="CycloneDX or SPDX JSON SBOM.")
    run.add_argument("--out", type=Path, default=None, help="Write the JSON report here.")
    run.add_argument("--commit", action="store_true", help="Commit the report as the new baseline.")
    run.add_argument("--no-baseline", action="store_true", help="Ignore the stored baseline.")

    baseline = commands.add_parser("baseline", parents=[common], help="Inspect or remove stored baselines.")
    baseline.add_argument("action", choices=["show", "delete", "list"])
    baseline.add_argument("--artifact", default=None)

    return parser.parse_args(argv)


def _setup_logging(verbose: bool) -> None:
    level = logging.DEBUG if verbose else logging.INFO
    logging.basicConfig(
        level=level,
        format="%(asctime)s  %(name)-20s  %(levelname)-7s  %(message)s",
        datefmt="%H:%M:%S",
        stream=sys.stderr,
    )


def _read_json(path: Path) -> Any:
    with open(path, "r", encoding="utf-8") as f:
        return json.load(f)


def _load_scans(args: argparse.Namespace) -> tuple[str, dict[Category, ScanResult]]:
    artifact_id = args.artifact
    trivy_doc = _read_json(args.trivy) if args.trivy else None
    if artifact_id is None and trivy_doc is not None:
        artifact_id = artifact_id_from_trivy(trivy_doc)
    if not artifact_id:
        raise SecGateError("No artifact identity: pass --artifact")

    scans: dict[Category, ScanResult] = {}
    if trivy_doc is not None:
        scans.update(scan_results_from_trivy(artifact_id, trivy_doc))

    for entry in args.scan:
        name, sep, file_name = entry.partition("=")
        if not sep or not file_name:
            raise SecGateError(f"--scan expects CATEGORY=FILE, got {entry!r}")
        try:
            category = Category(name)
        except ValueError:
            raise SecGateError(f"Unknown scan category {name!r}") from None
        raw = _read_json(Path(file_name))
        if isinstance(raw, dict):
            if not isinstance(raw.get("findings"), list):
                raise MalformedInputError(
                    f"{file_name}: expected a JSON list or an object with a 'findings' list"
                )
            raw = raw["findings"]
        elif not isinstance(raw, list):
            raise MalformedInputError(f"{file_name}: expected a JSON list of {category.value} records")
        scans[category] = build_scan_result(artifact_id, category, raw)

    if not scans:
        raise SecGateError("Nothing to evaluate: pass --trivy and/or --scan")
    return artifact_id, scans


def _print_summary(report: GateReport) -> None:
    for category, verdict in report.per_category.items():
        print(f"  {category.value:<18} {verdict.status.value:<8} {verdict.detail}")
    print(f"  new: {len(report.new_findings)}  resolved: {len(report.resolved_findings)}")
    if report.sbom_delta is not None and not report.sbom_delta.is_empty:
        delta = report.sbom_delta
        print(f"  sbom: +{len(delta.added)} -{len(delta.removed)} ~{len(delta.changed)}")
    print(f"Gate {'PASSED' if report.overall_passed else 'FAILED'} for {report.artifact_id}")


def _cmd_run(args: argparse.Namespace, config: dict, store: BaselineStore, settings: GateSettings) -> int:
    artifact_id, scans = _load_scans(args)
    sbom = parse_sbom(_read_json(args.sbom)) if args.sbom else None

    report = run_gate_with_store(
        store,
        artifact_id,
        scans,
        get_policies(config),
        use_baseline=not args.no_baseline,
        sbom=sbom,
        max_workers=settings.max_workers or get_max_workers(config),
    )

    if args.out:
        args.out.parent.mkdir(parents=True, exist_ok=True)
        args.out.write_text(report.to_json(), encoding="utf-8")
        logger.info("Report written to %s", args.out)
    _print_summary(report)

    if args.commit:
        store.commit(artifact_id, report)

    return EXIT_PASSED if report.overall_passed else EXIT_FAILED


def _cmd_baseline(args: argparse.Namespace, store: BaselineStore) -> int:
    if args.action == "list":
        for artifact_id in store.list_artifacts():
            print(artifact_id)
        return EXIT_PASSED

    if not args.artifact:
        raise SecGateError(f"baseline {args.action} requires --artifact")
    if args.action == "delete":
        removed = store.delete(args.artifact)
        print("deleted" if removed else "no baseline")
        return EXIT_PASSED

    report = store.get(args.artifact)
    if report is None:
        print(f"No baseline for {args.artifact}")
        return EXIT_FAILED
    print(report.to_json())
    return EXIT_PASSED


def main(argv: list[str] | None = None) -> int:
    """Entry point. Returns the process exit code."""
    args = _parse_args(argv)
    _setup_logging(args.verbose)
    settings = GateSettings()

    try:
        config = load_gate_config(args.config or settings.config_path)
        db_path = args.db or settings.db_path or get_baseline_db_path(config)
        store = BaselineStore(SQLiteBaselineBackend(db_path))

        if args.command == "run":
            return _cmd_run(args, config, store, settings)
        return _cmd_baseline(args, store)
    except (SecGateError, OSError, json.JSONDecodeError) as e:
        logger.error("%s", e)
        return EXIT_ERROR


if __name__ == "__main__":
    sys.exit(main())
