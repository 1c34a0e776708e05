from __future__ import annotations

from typing import Any, Literal

from pydantic import BaseModel, ConfigDict, Field, model_validator

RECORD_STATUSES = ("uploaded", "analyzing", "completed")


class KeyTermsModel(BaseModel):
    model_config = ConfigDict(extra="forbid")

    payment_terms: str
    termination_clause: str
    liability_limitations: str
    intellectual_property: str


class RiskModel(BaseModel):
    model_config = ConfigDict(extra="ignore")

    category: str
    severity: int = Field(ge=1, le=10)
    description: str
    recommendation: str


class AnalysisResultModel(BaseModel):
    """Structured risk report, produced whole or not at all."""

    model_config = ConfigDict(extra="ignore")

    risk_score: int = Field(ge=1, le=10)
    overall_summary: str = Field(min_length=1)
    key_terms: KeyTermsModel
    risks: list[RiskModel]
    missing_clauses: list[str]
    recommendations: list[str]
    red_flags: list[str]


class ExtractionInfoModel(BaseModel):
    model_config = ConfigDict(extra="allow")

    method: str
    quality: Literal["exact", "heuristic", "placeholder"]
    characters: int = 0
    warnings: list[str] = Field(default_factory=list)


class ContractRecordModel(BaseModel):
    """Persisted state of one submitted document."""

    model_config = ConfigDict(extra="allow")

    contract_id: str
    filename: str
    content_type: str
    file_size: int = Field(ge=0)
    storage_key: str
    sha256: str | None = None
    status: Literal["uploaded", "analyzing", "completed"]
    created_at: str
    updated_at: str
    analyzed_at: str | None = None
    analysis: AnalysisResultModel | None = None
    analysis_source: Literal["model", "fallback"] | None = None
    degraded: bool | None = None
    extraction: ExtractionInfoModel | None = None
    analysis_warnings: list[str] = Field(default_factory=list)

    @model_validator(mode="after")
    def _analysis_matches_status(self) -> "ContractRecordModel":
        if (self.status == "completed") != (self.analysis is not None):
            raise ValueError("analysis must be present exactly when status is completed")
        return self


def validate_analysis_payload(payload: Any) -> dict[str, Any]:
    """Validate an untrusted analysis payload and return its normalized form.

    Raises ``pydantic.ValidationError`` when the payload does not match.
    """

    return AnalysisResultModel.model_validate(payload).model_dump()


def validate_contract_record(payload: dict[str, Any]) -> dict[str, Any]:
    """Validate a contract record before persisting it."""

    return ContractRecordModel.model_validate(payload).model_dump(exclude_none=True)


def analysis_json_schema() -> dict[str, Any]:
    """Expose JSON schema for tests and tooling."""

    return AnalysisResultModel.model_json_schema()
