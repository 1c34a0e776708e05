from __future__ import annotations

import base64
import binascii
import hashlib
import logging
from dataclasses import asdict, dataclass, field
from datetime import datetime, timezone
from pathlib import PurePosixPath, PureWindowsPath
from uuid import uuid4

from contract_analyzer.analysis_config import DEFAULT_MAX_UPLOAD_BYTES
from contract_analyzer.errors import StorageError, ValidationError
from contract_analyzer.extraction import (
    DOCX_MIME_TYPE,
    PDF_MIME_TYPE,
    SUPPORTED_CONTENT_TYPES,
    normalize_content_type,
)
from contract_analyzer.storage import BlobStore, RecordStore

logger = logging.getLogger(__name__)

DEFAULT_CONTENT_TYPE = PDF_MIME_TYPE
UPLOADED_MESSAGE = "Contract uploaded successfully"


@dataclass
class ValidationResult:
    status: str
    message: str
    warnings: list[str]
    content_bytes: bytes = field(default=b"", repr=False)
    content_type: str = DEFAULT_CONTENT_TYPE
    filename: str = ""

    def to_dict(self) -> dict:
        payload = asdict(self)
        payload.pop("content_bytes")
        return payload


def _utc_now() -> str:
    return datetime.now(timezone.utc).isoformat()


def _detect_magic_type(content_bytes: bytes) -> str | None:
    signatures: list[tuple[bytes, str]] = [
        (b"%PDF", PDF_MIME_TYPE),
        (b"PK\x03\x04", "application/zip"),
    ]
    for signature, mime in signatures:
        if content_bytes.startswith(signature):
            return mime
    return None


def _clean_filename(filename: str | None) -> str:
    raw = (filename or "").strip()
    # Strip client-side directories from both POSIX and Windows paths.
    return PureWindowsPath(PurePosixPath(raw).name).name.strip()


def _normalize_extension(filename: str) -> str:
    return PurePosixPath(filename).suffix.lower().strip()


def _decode_file_data(file_data: str) -> bytes | None:
    compact = "".join(file_data.split())
    try:
        return base64.b64decode(compact, validate=True)
    except (binascii.Error, ValueError):
        return None


def validate_upload(
    filename: str | None,
    file_data: str | None,
    content_type: str | None,
    *,
    max_upload_bytes: int = DEFAULT_MAX_UPLOAD_BYTES,
) -> ValidationResult:
    warnings: list[str] = []
    cleaned_filename = _clean_filename(filename)
    declared_type = normalize_content_type(content_type) or DEFAULT_CONTENT_TYPE

    if not file_data or not file_data.strip():
        return ValidationResult(status="error", message="No file data provided", warnings=warnings)

    if not cleaned_filename:
        return ValidationResult(status="error", message="A filename is required", warnings=warnings)

    if declared_type not in SUPPORTED_CONTENT_TYPES:
        warnings.append(
            f"Unsupported content type '{declared_type}'. "
            "Supported types: PDF, DOCX, plain text."
        )
        return ValidationResult(status="error", message="Unsupported file type", warnings=warnings)

    content_bytes = _decode_file_data(file_data)
    if content_bytes is None:
        return ValidationResult(status="error", message="Invalid base64 file data", warnings=warnings)

    if not content_bytes:
        return ValidationResult(status="error", message="Empty uploads are not allowed", warnings=warnings)

    if len(content_bytes) > max_upload_bytes:
        return ValidationResult(
            status="error",
            message=f"File exceeds the maximum upload size of {max_upload_bytes} bytes",
            warnings=warnings,
        )

    magic_type = _detect_magic_type(content_bytes)
    if declared_type == PDF_MIME_TYPE and magic_type != PDF_MIME_TYPE:
        warnings.append("Declared PDF does not start with a PDF signature; text extraction may degrade.")
    if declared_type == DOCX_MIME_TYPE and magic_type != "application/zip":
        warnings.append("Declared DOCX is not a ZIP container; text extraction will fail.")

    return ValidationResult(
        status="success",
        message="File accepted for ingestion.",
        warnings=warnings,
        content_bytes=content_bytes,
        content_type=declared_type,
        filename=cleaned_filename,
    )


def build_storage_key(contract_id: str, filename: str, content_type: str) -> str:
    extension = _normalize_extension(filename) or SUPPORTED_CONTENT_TYPES[content_type]
    return f"contracts/{contract_id}/{contract_id}{extension}"


def submit_contract(
    filename: str | None,
    file_data: str | None,
    content_type: str | None = None,
    *,
    blob_store: BlobStore,
    record_store: RecordStore,
    max_upload_bytes: int = DEFAULT_MAX_UPLOAD_BYTES,
) -> dict:
    """Validate, persist the blob, then create the record with status ``uploaded``.

    Nothing is written when validation fails. When the record write fails
    the blob is deleted once, best-effort; a failing delete is logged and
    the blob is left behind.
    """

    validation = validate_upload(filename, file_data, content_type, max_upload_bytes=max_upload_bytes)
    if validation.status != "success":
        raise ValidationError(validation.message, {"warnings": validation.warnings})

    contract_id = str(uuid4())
    storage_key = build_storage_key(contract_id, validation.filename, validation.content_type)
    content_bytes = validation.content_bytes

    blob_store.put(storage_key, content_bytes)
    logger.info("Stored contract blob %s (%d bytes)", storage_key, len(content_bytes))

    timestamp = _utc_now()
    record = {
        "contract_id": contract_id,
        "filename": validation.filename,
        "storage_key": storage_key,
        "content_type": validation.content_type,
        "file_size": len(content_bytes),
        "sha256": hashlib.sha256(content_bytes).hexdigest(),
        "status": "uploaded",
        "created_at": timestamp,
        "updated_at": timestamp,
    }
    try:
        record_store.put(record)
    except StorageError:
        try:
            blob_store.delete(storage_key)
        except Exception:
            logger.warning("Failed to clean up blob %s after record write failure", storage_key, exc_info=True)
        raise

    return {
        "contract_id": contract_id,
        "status": "uploaded",
        "filename": validation.filename,
        "storage_key": storage_key,
        "message": UPLOADED_MESSAGE,
        "warnings": validation.warnings,
    }
