"""Readers for scanner and SBOM documents (Trivy JSON, CycloneDX, SPDX)."""

import logging
from typing import Any, Mapping, Optional

from .errors import MalformedInputError
from .models import CATEGORY_ORDER, Category, SbomComponent, ScanResult
from .normalizer import NormalizedBatch, normalize_batch

logger = logging.getLogger(__name__)

_TRIVY_SECTIONS = {
    Category.VULNERABILITY: "Vulnerabilities",
    Category.SECRET: "Secrets",
    Category.MISCONFIGURATION: "Misconfigurations",
}


def _trivy_records(category: Category, result_target: str, records: list) -> list:
    """Attach the result target to records that locate findings by file."""
    prepared = []
    for record in records:
        if not isinstance(record, Mapping):
            prepared.append(record)
            continue
        record = dict(record)
        if category == Category.SECRET:
            record.setdefault("file", result_target)
        elif category == Category.MISCONFIGURATION:
            cause = record.get("CauseMetadata") or {}
            resource = cause.get("Resource") if isinstance(cause, Mapping) else None
            record.setdefault("target", f"{result_target}:{resource}" if resource else result_target)
        elif result_target:
            metadata = dict(record.get("metadata") or {})
            metadata.setdefault("location", result_target)
            record["metadata"] = metadata
        prepared.append(record)
    return prepared


def normalize_trivy_report(document: Mapping[str, Any]) -> dict[Category, NormalizedBatch]:
    """Normalize a Trivy JSON report into one batch per category.

    Every category is present; an empty batch means the scanner reported
    nothing for it.
    """
    if not isinstance(document, Mapping):
        raise MalformedInputError("Trivy report must be a JSON object")
    results = document.get("Results") or []
    if not isinstance(results, list):
        raise MalformedInputError("Trivy report 'Results' must be a list")

    batches = {category: NormalizedBatch() for category in CATEGORY_ORDER}
    for index, result in enumerate(results):
        if not isinstance(result, Mapping):
            message = f"Trivy result #{index} skipped: not an object"
            logger.warning(message)
            batches[Category.VULNERABILITY].warnings.append(message)
            continue
        result_target = str(result.get("Target") or "")
        for category, section in _TRIVY_SECTIONS.items():
            records = result.get(section)
            if not records:
                continue
            try:
                batch = normalize_batch(_trivy_records(category, result_target, records), category)
            except MalformedInputError as e:
                message = f"Trivy result #{index} {section} skipped: {e}"
                logger.warning(message)
                batches[category].warnings.append(message)
                continue
            batches[category].findings.extend(batch.findings)
            batches[category].warnings.extend(batch.warnings)
    return batches


def artifact_id_from_trivy(document: Mapping[str, Any]) -> Optional[str]:
    """Best stable identity in a Trivy report: image digest, image ID, then name."""
    if not isinstance(document, Mapping):
        raise MalformedInputError("Trivy report must be a JSON object")
    metadata = document.get("Metadata") or {}
    if not isinstance(metadata, Mapping):
        raise MalformedInputError("Trivy report 'Metadata' must be an object")
    digests = metadata.get("RepoDigests") or []
    if isinstance(digests, list) and digests:
        return str(digests[0])
    if metadata.get("ImageID"):
        return str(metadata["ImageID"])
    name = document.get("ArtifactName")
    return str(name) if name else None


def scan_results_from_trivy(
    artifact_id: str,
    document: Mapping[str, Any],
    timestamp: Optional[str] = None,
) -> dict[Category, ScanResult]:
    """ScanResults for every category of a Trivy report."""
    if not isinstance(document, Mapping):
        raise MalformedInputError("Trivy report must be a JSON object")
    timestamp = timestamp or document.get("CreatedAt")
    scans = {}
    for category, batch in normalize_trivy_report(document).items():
        values: dict[str, Any] = {
            "artifact_id": artifact_id,
            "category": category,
            "findings": tuple(batch.findings),
            "warnings": tuple(batch.warnings),
        }
        if timestamp:
            values["timestamp"] = str(timestamp)
        scans[category] = ScanResult(**values)
    return scans


def _cyclonedx_components(components: list, out: list[SbomComponent]) -> None:
    for component in components:
        if not isinstance(component, Mapping) or not component.get("name"):
            logger.warning("Skipping CycloneDX component without a name")
            continue
        out.append(
            SbomComponent(
                name=str(component["name"]),
                version=str(component.get("version") or ""),
                purl=component.get("purl"),
            )
        )
        _cyclonedx_components(component.get("components") or [], out)


def _spdx_purl(package: Mapping[str, Any]) -> Optional[str]:
    for ref in package.get("externalRefs") or []:
        if isinstance(ref, Mapping) and ref.get("referenceType") == "purl":
            return ref.get("referenceLocator")
    return None


def parse_sbom(document: Mapping[str, Any]) -> tuple[SbomComponent, ...]:
    """Components of a CycloneDX or SPDX JSON SBOM."""
    if not isinstance(document, Mapping):
        raise MalformedInputError("SBOM must be a JSON object")

    components: list[SbomComponent] = []
    if document.get("bomFormat") == "CycloneDX" or "components" in document:
        _cyclonedx_components(document.get("components") or [], components)
    elif "spdxVersion" in document or "packages" in document:
        for package in document.get("packages") or []:
            if not isinstance(package, Mapping) or not package.get("name"):
                logger.warning("Skipping SPDX package without a name")
                continue
            components.append(
                SbomComponent(
                    name=str(package["name"]),
                    version=str(package.get("versionInfo") or ""),
                    purl=_spdx_purl(package),
                )
            )
    else:
        raise MalformedInputError("Unrecognized SBOM format (expected CycloneDX or SPDX JSON)")
    return tuple(components)
