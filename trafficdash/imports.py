from __future__ import annotations

import logging
from typing import Any

from sqlalchemy.orm import Session

from trafficdash import gateway, spreadsheet
from trafficdash.config import settings
from trafficdash.errors import FormatError, ValidationError
from trafficdash.import_validation import (
    check_customer_collisions,
    check_traffic_references,
    validate_customer_rows,
    validate_traffic_rows,
)
from trafficdash.schemas import RowError

logger = logging.getLogger(__name__)

VALID_IMPORT_MODES = {"preview", "apply"}
VALID_DUPLICATE_POLICIES = gateway.VALID_DUPLICATE_POLICIES


def _clean_text(value: Any) -> str:
    if value is None:
        return ""
    return str(value).strip()


def normalize_import_mode(import_mode: str | None) -> str:
    mode = _clean_text(import_mode).lower() or "preview"
    if mode not in VALID_IMPORT_MODES:
        allowed = ", ".join(sorted(VALID_IMPORT_MODES))
        raise ValidationError(f"Invalid import mode '{import_mode}'. Allowed: {allowed}.")
    return mode


def normalize_duplicate_policy(duplicate_policy: str | None) -> str:
    policy = _clean_text(duplicate_policy).lower() or settings.duplicate_contract_policy
    if policy not in VALID_DUPLICATE_POLICIES:
        allowed = ", ".join(sorted(VALID_DUPLICATE_POLICIES))
        raise ValidationError(f"Invalid duplicate policy '{duplicate_policy}'. Allowed: {allowed}.")
    return policy


def _new_summary(filename: str, dry_run: bool) -> dict[str, Any]:
    return {
        "filename": filename,
        "dry_run": dry_run,
        "total_rows": 0,
        "valid_rows": 0,
        "errors": [],
        "error_count": 0,
        "error_limit": settings.error_limit,
        "errors_truncated": 0,
        "warnings": [],
        "inserted": 0,
        "skipped": 0,
        "batch_id": None,
        "can_apply": False,
        "message": "",
    }


def _record_errors(summary: dict[str, Any], errors: list[RowError]) -> None:
    for error in errors:
        summary["error_count"] += 1
        if len(summary["errors"]) < summary["error_limit"]:
            summary["errors"].append(str(error))
        else:
            summary["errors_truncated"] += 1


def _read_rows(content: bytes) -> list[dict[str, Any]]:
    if not content:
        raise FormatError("Uploaded file is empty")
    if len(content) > settings.max_upload_bytes:
        raise FormatError(f"Uploaded file is larger than the {settings.max_upload_bytes} byte limit")
    return spreadsheet.decode(content)


def _finish(summary: dict[str, Any], label: str) -> dict[str, Any]:
    summary["can_apply"] = summary["error_count"] == 0 and summary["valid_rows"] > 0
    if summary["error_count"]:
        summary["message"] = f"Import blocked: {summary['error_count']} error(s) found. Nothing was imported."
    elif summary["valid_rows"] == 0:
        summary["message"] = "No data rows found in the uploaded file."
    elif summary["dry_run"]:
        summary["message"] = f"Preview complete: {summary['valid_rows']} {label} row(s) ready to import."
    return summary


def import_customers(
    db: Session,
    content: bytes,
    filename: str,
    *,
    mode: str = "preview",
    duplicate_policy: str | None = None,
) -> dict[str, Any]:
    """Decode, validate and (in apply mode) insert a customer workbook.

    Preview runs every check, including the lookup of already stored
    Contract IDs, and writes nothing.
    """
    resolved_mode = normalize_import_mode(mode)
    policy = normalize_duplicate_policy(duplicate_policy)
    rows = _read_rows(content)

    summary = _new_summary(filename, resolved_mode == "preview")
    summary["duplicate_policy"] = policy
    result = validate_customer_rows(rows)
    summary["total_rows"] = result.total_rows
    summary["valid_rows"] = len(result.records)
    _record_errors(summary, result.errors)

    collisions = check_customer_collisions(db, result.records)
    if collisions and policy == "reject":
        _record_errors(summary, collisions)
    elif collisions:
        summary["skipped"] = len(collisions)
        summary["warnings"].extend(f"{c} Row skipped." for c in collisions)

    _finish(summary, "customer")
    if not summary["can_apply"]:
        if summary["error_count"]:
            logger.warning("Customer import of %s blocked by %d error(s)", filename, summary["error_count"])
        return summary
    if summary["dry_run"]:
        return summary

    outcome = gateway.bulk_insert_customers(db, result.records, policy)
    summary["inserted"] = outcome["inserted"]
    summary["skipped"] = outcome["skipped"]
    summary["message"] = f"Imported {outcome['inserted']} customer(s)."
    if outcome["skipped"]:
        summary["message"] += f" Skipped {outcome['skipped']} existing Contract ID(s)."
    logger.info("Customer import of %s applied: %s", filename, outcome)
    return summary


def import_traffic(db: Session, content: bytes, filename: str, *, mode: str = "preview") -> dict[str, Any]:
    """Decode, validate and (in apply mode) insert a traffic workbook as one batch."""
    resolved_mode = normalize_import_mode(mode)
    rows = _read_rows(content)

    summary = _new_summary(filename, resolved_mode == "preview")
    result = validate_traffic_rows(rows)
    summary["total_rows"] = result.total_rows
    summary["valid_rows"] = len(result.records)
    _record_errors(summary, result.errors)

    # Stored data is only consulted once the file itself is clean.
    if result.ok and result.records:
        _record_errors(summary, check_traffic_references(db, result.records))

    _finish(summary, "traffic")
    if not summary["can_apply"]:
        if summary["error_count"]:
            logger.warning("Traffic import of %s blocked by %d error(s)", filename, summary["error_count"])
        return summary
    if summary["dry_run"]:
        return summary

    outcome = gateway.bulk_insert_traffic(db, result.records)
    summary["inserted"] = outcome["inserted"]
    summary["batch_id"] = outcome["batch_id"]
    summary["message"] = f"Imported {outcome['inserted']} traffic record(s) as batch {outcome['batch_id']}."
    logger.info("Traffic import of %s applied as batch %s", filename, outcome["batch_id"])
    return summary
