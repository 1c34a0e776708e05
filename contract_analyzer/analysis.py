from __future__ import annotations

import argparse
import json
import logging
import mimetypes
import time
from dataclasses import dataclass, field
from datetime import datetime, timezone
from pathlib import Path
from typing import Callable

from pydantic import ValidationError as SchemaValidationError

from contract_analyzer.analysis_config import AnalysisSettings, api_key_for_provider, load_analysis_settings
from contract_analyzer.errors import (
    ConflictError,
    ContractAnalyzerError,
    ModelError,
    NotFoundError,
    ValidationError,
)
from contract_analyzer.extraction import ExtractedText, extract_text_or_placeholder
from contract_analyzer.model_provider import LanguageModel, get_language_model
from contract_analyzer.schema_models import validate_analysis_payload
from contract_analyzer.storage import BlobStore, RecordStore

logger = logging.getLogger(__name__)

ANALYSIS_PROMPT_TEMPLATE = """
You are a legal AI assistant specializing in contract analysis. Analyze the following contract and provide a comprehensive review.

Contract filename: {filename}

Contract text:
{contract_text}

Please analyze this contract and return ONLY valid JSON in this exact format:
{{
  "risk_score": [number from 1-10, where 10 is highest risk],
  "overall_summary": "[2-3 sentence executive summary]",
  "key_terms": {{
    "payment_terms": "[description of payment terms]",
    "termination_clause": "[description of termination terms]",
    "liability_limitations": "[description of liability terms]",
    "intellectual_property": "[description of IP terms]"
  }},
  "risks": [
    {{
      "category": "[risk category like 'payment', 'termination', 'liability', etc.]",
      "severity": [number from 1-10],
      "description": "[specific risk description]",
      "recommendation": "[specific actionable recommendation]"
    }}
  ],
  "missing_clauses": [
    "[description of important missing clauses]"
  ],
  "recommendations": [
    "[specific actionable recommendations for improvement]"
  ],
  "red_flags": [
    "[any major red flags or concerning terms]"
  ]
}}

Focus on practical business risks and actionable recommendations. Be specific and professional.
""".strip()


@dataclass(frozen=True)
class ParsedAnalysis:
    analysis: dict
    strategy: str


@dataclass(frozen=True)
class AnalysisOutcome:
    analysis: dict
    source: str
    warnings: list[str] = field(default_factory=list)

    @property
    def degraded(self) -> bool:
        return self.source != "model"


def _utc_now() -> str:
    return datetime.now(timezone.utc).isoformat()


def build_fallback_analysis() -> dict:
    return {
        "risk_score": 5,
        "overall_summary": (
            "Contract analysis temporarily unavailable. "
            "Manual review recommended for critical terms and conditions."
        ),
        "key_terms": {
            "payment_terms": "Review payment schedule and terms",
            "termination_clause": "Check termination notice requirements",
            "liability_limitations": "Verify liability and indemnification clauses",
            "intellectual_property": "Confirm IP ownership and licensing terms",
        },
        "risks": [
            {
                "category": "system",
                "severity": 3,
                "description": "Automated analysis temporarily unavailable",
                "recommendation": "Conduct manual legal review of all key terms",
            }
        ],
        "missing_clauses": [
            "Automated clause detection unavailable - manual review needed",
        ],
        "recommendations": [
            "Conduct thorough manual review of all contract terms",
            "Verify all key business terms are clearly defined",
            "Ensure proper legal review before signing",
        ],
        "red_flags": [
            "Manual review required - automated analysis unavailable",
        ],
    }


def build_analysis_prompt(contract_text: str, filename: str, max_chars: int = 4000) -> str:
    return ANALYSIS_PROMPT_TEMPLATE.format(
        filename=filename,
        contract_text=contract_text[:max_chars],
    )


def find_balanced_json_object(text: str) -> str | None:
    """Return the first ``{...}`` substring whose braces balance, honouring JSON strings."""

    start = text.find("{")
    while start != -1:
        depth = 0
        in_string = False
        escaped = False
        for index in range(start, len(text)):
            char = text[index]
            if in_string:
                if escaped:
                    escaped = False
                elif char == "\\":
                    escaped = True
                elif char == '"':
                    in_string = False
                continue

            if char == '"':
                in_string = True
            elif char == "{":
                depth += 1
            elif char == "}":
                depth -= 1
                if depth == 0:
                    return text[start : index + 1]
        start = text.find("{", start + 1)
    return None


def _validate_or_raise(payload: object, strategy: str) -> ParsedAnalysis:
    try:
        return ParsedAnalysis(analysis=validate_analysis_payload(payload), strategy=strategy)
    except SchemaValidationError as exc:
        raise ModelError(
            "schema",
            f"Model output did not match the analysis schema ({exc.error_count()} errors).",
            {"strategy": strategy},
        ) from exc


def parse_analysis_response(raw_response: str) -> ParsedAnalysis:
    """Decode untrusted model output into a validated analysis.

    The whole response is tried as strict JSON first. Otherwise the first
    brace-balanced object inside the prose is decoded once. Anything else
    raises ``ModelError`` with kind ``empty``, ``no_json``, ``invalid_json``
    or ``schema``.
    """

    text = (raw_response or "").strip()
    if not text:
        raise ModelError("empty", "Model returned an empty response.")

    try:
        payload = json.loads(text)
    except json.JSONDecodeError:
        pass
    else:
        if isinstance(payload, dict):
            return _validate_or_raise(payload, "strict")

    candidate = find_balanced_json_object(text)
    if candidate is None:
        raise ModelError("no_json", "Could not extract JSON from AI response.")

    try:
        payload = json.loads(candidate)
    except json.JSONDecodeError as exc:
        raise ModelError("invalid_json", f"Embedded JSON could not be decoded: {exc}") from exc

    return _validate_or_raise(payload, "embedded")


def _fallback_outcome(exc: ModelError) -> AnalysisOutcome:
    logger.warning("Model analysis failed (%s): %s; using fallback analysis", exc.kind, exc.message)
    return AnalysisOutcome(
        analysis=build_fallback_analysis(),
        source="fallback",
        warnings=[f"model_error[{exc.kind}]: {exc.message}"],
    )


def analyze_contract_text(
    contract_text: str,
    filename: str,
    *,
    model: LanguageModel,
    settings: AnalysisSettings,
) -> AnalysisOutcome:
    """Invoke the model once; any failure yields the fallback analysis."""

    prompt = build_analysis_prompt(contract_text, filename, max_chars=settings.max_prompt_chars)
    try:
        raw_response = model.invoke(
            prompt,
            max_tokens=settings.max_output_tokens,
            temperature=settings.temperature,
            timeout=settings.model_timeout,
        )
        parsed = parse_analysis_response(raw_response)
    except ModelError as exc:
        return _fallback_outcome(exc)
    except Exception as exc:  # noqa: BLE001
        kind = "timeout" if isinstance(exc, TimeoutError) else "transport"
        return _fallback_outcome(ModelError(kind, f"{type(exc).__name__}: {exc}"))

    warnings = [] if parsed.strategy == "strict" else ["Model output contained prose around the JSON object."]
    return AnalysisOutcome(analysis=parsed.analysis, source="model", warnings=warnings)


def completed_view(record: dict) -> dict:
    return {
        "contract_id": record["contract_id"],
        "status": record["status"],
        "analysis": record["analysis"],
        "analysis_source": record.get("analysis_source"),
        "degraded": bool(record.get("degraded")),
        "analyzed_at": record.get("analyzed_at"),
    }


class ContractAnalyzer:
    """Runs one stored contract through extraction and model analysis.

    Status transitions use compare-and-swap, so concurrent calls for the
    same id invoke the model once; the losers wait for the winner's result.
    A failure after the claim resets the record to ``uploaded`` so the next
    call retries it.
    """

    def __init__(
        self,
        *,
        blob_store: BlobStore,
        record_store: RecordStore,
        model: LanguageModel,
        settings: AnalysisSettings | None = None,
        clock: Callable[[], float] = time.monotonic,
        sleep: Callable[[float], None] = time.sleep,
    ) -> None:
        self.blob_store = blob_store
        self.record_store = record_store
        self.model = model
        self.settings = settings or AnalysisSettings()
        self._clock = clock
        self._sleep = sleep

    def _load(self, contract_id: str) -> dict:
        record = self.record_store.get(contract_id)
        if record is None:
            raise NotFoundError(contract_id)
        return record

    def _wait_for_completion(self, contract_id: str) -> dict:
        deadline = self._clock() + self.settings.analysis_timeout
        while True:
            record = self._load(contract_id)
            if record.get("status") == "completed":
                return completed_view(record)
            if record.get("status") == "uploaded":
                # The previous claim was released after a failure.
                return self.analyze(contract_id)
            if self._clock() >= deadline:
                raise ConflictError(contract_id, "completed", record.get("status"))
            self._sleep(self.settings.poll_interval)

    def analyze(self, contract_id: str) -> dict:
        contract_id = (contract_id or "").strip()
        if not contract_id:
            raise ValidationError("contract_id is required")

        record = self._load(contract_id)
        if record["status"] == "completed":
            return completed_view(record)

        try:
            record = self.record_store.update(
                contract_id,
                {"status": "analyzing", "updated_at": _utc_now()},
                expected_status="uploaded",
            )
        except ConflictError:
            logger.info("Contract %s is already being analyzed; waiting for result", contract_id)
            return self._wait_for_completion(contract_id)

        try:
            completed = self._run_claimed(contract_id, record)
        except ConflictError:
            return self._wait_for_completion(contract_id)
        except Exception:
            self._release_claim(contract_id)
            raise

        return completed_view(completed)

    def _release_claim(self, contract_id: str) -> None:
        """Hand an ``analyzing`` record back to ``uploaded`` so a later call can retry it."""

        try:
            self.record_store.update(
                contract_id,
                {"status": "uploaded", "updated_at": _utc_now()},
                expected_status="analyzing",
            )
        except ContractAnalyzerError:
            logger.warning("Failed to release analysis claim on contract %s", contract_id, exc_info=True)
        else:
            logger.warning("Analysis of contract %s failed; status reset to uploaded", contract_id)

    def _run_claimed(self, contract_id: str, record: dict) -> dict:
        content_bytes = self.blob_store.get(record["storage_key"])
        extracted: ExtractedText = extract_text_or_placeholder(
            content_bytes,
            record["content_type"],
            pdf_parser=self.settings.pdf_parser,
        )
        logger.info(
            "Extracted %d characters from %s via %s",
            len(extracted.text),
            contract_id,
            extracted.method,
        )

        outcome = analyze_contract_text(
            extracted.text,
            record["filename"],
            model=self.model,
            settings=self.settings,
        )

        timestamp = _utc_now()
        completed = self.record_store.update(
            contract_id,
            {
                "status": "completed",
                "analysis": outcome.analysis,
                "analysis_source": outcome.source,
                "degraded": outcome.degraded or extracted.is_placeholder,
                "extraction": extracted.to_dict(),
                "analysis_warnings": [*extracted.warnings, *outcome.warnings],
                "analyzed_at": timestamp,
                "updated_at": timestamp,
            },
            expected_status="analyzing",
        )
        logger.info("Analysis stored for contract %s (source=%s)", contract_id, outcome.source)
        return completed


def main() -> None:
    parser = argparse.ArgumentParser(description="Analyze a local contract file.")
    parser.add_argument("--file", required=True, help="Path to a PDF, DOCX or TXT contract")
    parser.add_argument("--content-type", default=None)
    parser.add_argument("--provider", choices=["openai", "gemini", "anthropic", "disabled"], default=None)
    args = parser.parse_args()

    settings = load_analysis_settings()
    provider = args.provider or settings.llm_provider
    api_key = api_key_for_provider(provider) if args.provider else settings.api_key
    model = get_language_model(provider, api_key=api_key, model=settings.llm_model)

    path = Path(args.file)
    content_type = args.content_type or mimetypes.guess_type(path.name)[0] or "application/pdf"
    extracted = extract_text_or_placeholder(path.read_bytes(), content_type, pdf_parser=settings.pdf_parser)
    outcome = analyze_contract_text(extracted.text, path.name, model=model, settings=settings)

    print(
        json.dumps(
            {
                "filename": path.name,
                "analysis_source": outcome.source,
                "degraded": outcome.degraded or extracted.is_placeholder,
                "extraction": extracted.to_dict(),
                "warnings": [*extracted.warnings, *outcome.warnings],
                "analysis": outcome.analysis,
            },
            indent=2,
        )
    )


if __name__ == "__main__":
    main()
