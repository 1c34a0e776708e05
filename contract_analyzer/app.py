from __future__ import annotations

import logging
import os
from dataclasses import dataclass

from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from pydantic import BaseModel

from contract_analyzer.analysis import ContractAnalyzer
from contract_analyzer.analysis_config import AnalysisSettings, load_analysis_settings
from contract_analyzer.errors import (
    ConflictError,
    ContractAnalyzerError,
    ExtractionError,
    NotFoundError,
    StorageError,
    ValidationError,
)
from contract_analyzer.ingestion import submit_contract
from contract_analyzer.model_provider import DisabledLanguageModel, LanguageModel, get_language_model
from contract_analyzer.results import DEFAULT_LIST_LIMIT, get_contract_result, list_contracts
from contract_analyzer.storage import BlobStore, FileBlobStore, JsonRecordStore, RecordStore

logger = logging.getLogger(__name__)

app = FastAPI(title="Contract Analysis API")


@app.middleware("http")
async def api_prefix_alias(request, call_next):
    """Accept both `/path` and `/api/path` for frontend compatibility."""
    if request.scope.get("path", "").startswith("/api/"):
        request.scope["path"] = request.scope["path"][4:]
    return await call_next(request)

DEFAULT_CORS_ORIGINS = "http://localhost:3000,http://127.0.0.1:3000"
CORS_ALLOWED_ORIGINS = [
    origin.strip()
    for origin in os.getenv("CONTRACT_CORS_ALLOWED_ORIGINS", DEFAULT_CORS_ORIGINS).split(",")
    if origin.strip()
]

app.add_middleware(
    CORSMiddleware,
    allow_origins=CORS_ALLOWED_ORIGINS,
    allow_credentials=True,
    allow_methods=["GET", "POST", "OPTIONS"],
    allow_headers=["*"],
)

ERROR_STATUS_CODES: dict[type[ContractAnalyzerError], int] = {
    ValidationError: 400,
    NotFoundError: 404,
    ConflictError: 409,
    ExtractionError: 422,
    StorageError: 500,
}


@dataclass
class ContractServices:
    settings: AnalysisSettings
    blob_store: BlobStore
    record_store: RecordStore
    analyzer: ContractAnalyzer


def _build_model(settings: AnalysisSettings) -> LanguageModel:
    try:
        return get_language_model(settings.llm_provider, api_key=settings.api_key, model=settings.llm_model)
    except ValueError as exc:
        logger.warning("Language model unavailable, analyses will use the fallback result: %s", exc)
        return DisabledLanguageModel()


def build_services(
    settings: AnalysisSettings | None = None,
    *,
    blob_store: BlobStore | None = None,
    record_store: RecordStore | None = None,
    model: LanguageModel | None = None,
) -> ContractServices:
    settings = settings or load_analysis_settings()
    blob_store = blob_store or FileBlobStore(settings.blob_dir)
    record_store = record_store or JsonRecordStore(settings.records_dir)
    analyzer = ContractAnalyzer(
        blob_store=blob_store,
        record_store=record_store,
        model=model or _build_model(settings),
        settings=settings,
    )
    return ContractServices(
        settings=settings,
        blob_store=blob_store,
        record_store=record_store,
        analyzer=analyzer,
    )


services = build_services()


def _error_response(exc: ContractAnalyzerError) -> JSONResponse:
    status_code = next(
        (code for error_type, code in ERROR_STATUS_CODES.items() if isinstance(exc, error_type)),
        500,
    )
    payload = exc.to_dict()
    warnings = exc.details.get("warnings") if isinstance(exc.details, dict) else None
    if warnings:
        payload["warnings"] = warnings
    return JSONResponse(status_code=status_code, content=payload)


class UploadRequest(BaseModel):
    filename: str | None = None
    file_data: str | None = None
    content_type: str | None = None


class AnalyzeRequest(BaseModel):
    contract_id: str | None = None


@app.get("/health")
def health_check():
    return {"status": "ok"}


@app.get("/config")
def analysis_config():
    settings = services.settings
    return {
        "llm_provider": settings.llm_provider,
        "llm_model": settings.llm_model,
        "max_upload_bytes": settings.max_upload_bytes,
        "max_prompt_chars": settings.max_prompt_chars,
        "pdf_parser": settings.pdf_parser,
    }


@app.post("/upload")
def upload_contract(request: UploadRequest):
    try:
        return submit_contract(
            request.filename,
            request.file_data,
            request.content_type,
            blob_store=services.blob_store,
            record_store=services.record_store,
            max_upload_bytes=services.settings.max_upload_bytes,
        )
    except ContractAnalyzerError as exc:
        return _error_response(exc)


@app.post("/analyze")
def analyze_contract(request: AnalyzeRequest):
    try:
        return services.analyzer.analyze(request.contract_id or "")
    except ContractAnalyzerError as exc:
        return _error_response(exc)


@app.get("/results")
def list_results(limit: int = DEFAULT_LIST_LIMIT, status: str | None = None):
    try:
        return list_contracts(limit, status, record_store=services.record_store)
    except ContractAnalyzerError as exc:
        return _error_response(exc)


@app.get("/results/{contract_id}")
def contract_result(contract_id: str):
    try:
        payload = get_contract_result(contract_id, record_store=services.record_store)
    except ContractAnalyzerError as exc:
        return _error_response(exc)

    if payload["pending"]:
        return JSONResponse(status_code=202, content=payload)
    return payload
