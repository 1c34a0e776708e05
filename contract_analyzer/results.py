from __future__ import annotations

from datetime import datetime, timezone

from contract_analyzer.errors import NotFoundError, ValidationError
from contract_analyzer.schema_models import RECORD_STATUSES
from contract_analyzer.storage import RecordStore

DEFAULT_LIST_LIMIT = 20
MAX_LIST_LIMIT = 100

PENDING_MESSAGES = {
    "uploaded": "Contract uploaded but analysis not started",
    "analyzing": "Analysis in progress",
}

LIST_FIELDS = ("contract_id", "filename", "status", "created_at", "analyzed_at", "file_size", "degraded")
_EPOCH = datetime(1970, 1, 1, tzinfo=timezone.utc)


def get_contract_result(contract_id: str, *, record_store: RecordStore) -> dict:
    """Status-shaped view of one contract; ``analysis`` only once completed."""

    contract_id = (contract_id or "").strip()
    if not contract_id:
        raise ValidationError("contract_id is required")

    record = record_store.get(contract_id)
    if record is None:
        raise NotFoundError(contract_id)

    status = record.get("status")
    if status in PENDING_MESSAGES:
        return {
            "contract_id": contract_id,
            "status": status,
            "pending": True,
            "message": PENDING_MESSAGES[status],
        }

    return {
        "contract_id": contract_id,
        "filename": record.get("filename"),
        "status": status,
        "pending": False,
        "created_at": record.get("created_at"),
        "analyzed_at": record.get("analyzed_at"),
        "analysis": record.get("analysis") or {},
        "analysis_source": record.get("analysis_source"),
        "degraded": bool(record.get("degraded")),
        "extraction": record.get("extraction"),
        "warnings": record.get("analysis_warnings") or [],
    }


def clamp_list_limit(limit: int | None) -> int:
    if limit is None:
        return DEFAULT_LIST_LIMIT
    return max(1, min(int(limit), MAX_LIST_LIMIT))


def _created_at_key(record: dict) -> datetime:
    try:
        created = datetime.fromisoformat(str(record.get("created_at") or ""))
    except ValueError:
        return _EPOCH
    if created.tzinfo is None:
        created = created.replace(tzinfo=timezone.utc)
    return created


def _project(record: dict) -> dict:
    projected = {key: record.get(key) for key in LIST_FIELDS}
    projected["degraded"] = bool(projected["degraded"])
    return projected


def list_contracts(
    limit: int | None = DEFAULT_LIST_LIMIT,
    status: str | None = None,
    *,
    record_store: RecordStore,
) -> dict:
    """Scan, filter and sort all records; summary counts cover the whole filtered set."""

    status_filter = (status or "").strip().lower() or None
    if status_filter is not None and status_filter not in RECORD_STATUSES:
        raise ValidationError(
            f"Unknown status filter '{status}'.",
            {"allowed": list(RECORD_STATUSES)},
        )

    effective_limit = clamp_list_limit(limit)
    records = record_store.scan(
        (lambda record: record.get("status") == status_filter) if status_filter else None
    )
    records.sort(key=lambda record: record.get("contract_id") or "")
    records.sort(key=_created_at_key, reverse=True)

    counts = {name: 0 for name in RECORD_STATUSES}
    degraded = 0
    for record in records:
        if record.get("status") in counts:
            counts[record["status"]] += 1
        degraded += int(bool(record.get("degraded")))

    return {
        "contracts": [_project(record) for record in records[:effective_limit]],
        "summary": {
            "total": len(records),
            "completed": counts["completed"],
            "analyzing": counts["analyzing"],
            "uploaded": counts["uploaded"],
            "degraded": degraded,
        },
        "pagination": {
            "limit": effective_limit,
            "has_more": len(records) > effective_limit,
        },
    }
