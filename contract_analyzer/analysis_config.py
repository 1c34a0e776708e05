from __future__ import annotations

import os
from dataclasses import asdict, dataclass
from pathlib import Path

DEFAULT_DATA_DIR = "data/contracts"
DEFAULT_PROVIDER = "disabled"
DEFAULT_MODELS = {
    "openai": "gpt-4.1-mini",
    "gemini": "gemini-1.5-flash",
    "anthropic": "claude-3-haiku-20240307",
}
DEFAULT_MODEL_TIMEOUT_SECONDS = 300.0
DEFAULT_MAX_PROMPT_CHARS = 4000
DEFAULT_MAX_OUTPUT_TOKENS = 2000
DEFAULT_TEMPERATURE = 0.1
DEFAULT_MAX_UPLOAD_BYTES = 10 * 1024 * 1024
DEFAULT_ANALYSIS_TIMEOUT_SECONDS = 330.0
DEFAULT_POLL_INTERVAL_SECONDS = 0.5
DEFAULT_PDF_PARSER = "heuristic"


@dataclass(frozen=True)
class AnalysisSettings:
    data_dir: Path = Path(DEFAULT_DATA_DIR)
    llm_provider: str = DEFAULT_PROVIDER
    llm_model: str | None = None
    api_key: str | None = None
    model_timeout: float = DEFAULT_MODEL_TIMEOUT_SECONDS
    max_prompt_chars: int = DEFAULT_MAX_PROMPT_CHARS
    max_output_tokens: int = DEFAULT_MAX_OUTPUT_TOKENS
    temperature: float = DEFAULT_TEMPERATURE
    max_upload_bytes: int = DEFAULT_MAX_UPLOAD_BYTES
    analysis_timeout: float = DEFAULT_ANALYSIS_TIMEOUT_SECONDS
    poll_interval: float = DEFAULT_POLL_INTERVAL_SECONDS
    pdf_parser: str = DEFAULT_PDF_PARSER

    @property
    def blob_dir(self) -> Path:
        return self.data_dir / "blobs"

    @property
    def records_dir(self) -> Path:
        return self.data_dir / "records"

    def to_dict(self) -> dict:
        payload = asdict(self)
        payload["data_dir"] = str(self.data_dir)
        payload["api_key"] = "***" if self.api_key else None
        return payload


def _env_float(name: str, default: float) -> float:
    raw = (os.getenv(name) or "").strip()
    if not raw:
        return default
    try:
        value = float(raw)
    except ValueError:
        return default
    return value if value > 0 else default


def _env_int(name: str, default: int) -> int:
    raw = (os.getenv(name) or "").strip()
    if not raw:
        return default
    try:
        value = int(raw)
    except ValueError:
        return default
    return value if value > 0 else default


def api_key_for_provider(provider: str) -> str | None:
    env_name = {
        "openai": "OPENAI_API_KEY",
        "chatgpt": "OPENAI_API_KEY",
        "gemini": "GEMINI_API_KEY",
        "anthropic": "ANTHROPIC_API_KEY",
        "claude": "ANTHROPIC_API_KEY",
    }.get(provider)
    if env_name is None:
        return None
    return (os.getenv(env_name) or "").strip() or None


def load_analysis_settings() -> AnalysisSettings:
    provider = (os.getenv("CONTRACT_LLM_PROVIDER") or DEFAULT_PROVIDER).strip().lower() or DEFAULT_PROVIDER
    pdf_parser = (os.getenv("CONTRACT_PDF_PARSER") or DEFAULT_PDF_PARSER).strip().lower() or DEFAULT_PDF_PARSER

    return AnalysisSettings(
        data_dir=Path(os.getenv("CONTRACT_DATA_DIR") or DEFAULT_DATA_DIR),
        llm_provider=provider,
        llm_model=(os.getenv("CONTRACT_LLM_MODEL") or "").strip() or None,
        api_key=api_key_for_provider(provider),
        model_timeout=_env_float("CONTRACT_MODEL_TIMEOUT", DEFAULT_MODEL_TIMEOUT_SECONDS),
        max_prompt_chars=_env_int("CONTRACT_MAX_PROMPT_CHARS", DEFAULT_MAX_PROMPT_CHARS),
        max_upload_bytes=_env_int("CONTRACT_MAX_UPLOAD_BYTES", DEFAULT_MAX_UPLOAD_BYTES),
        analysis_timeout=_env_float("CONTRACT_ANALYSIS_TIMEOUT", DEFAULT_ANALYSIS_TIMEOUT_SECONDS),
        poll_interval=_env_float("CONTRACT_ANALYSIS_POLL_INTERVAL", DEFAULT_POLL_INTERVAL_SECONDS),
        pdf_parser=pdf_parser,
    )
