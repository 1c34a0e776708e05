"""Exceptions raised by the contract analysis pipeline."""

from __future__ import annotations

from typing import Any


class ContractAnalyzerError(Exception):
    """Base exception for all contract analyzer errors."""

    def __init__(self, message: str, details: dict[str, Any] | None = None) -> None:
        super().__init__(message)
        self.message = message
        self.details = details or {}

    def __str__(self) -> str:
        if self.details:
            return f"{self.message} | Details: {self.details}"
        return self.message

    def to_dict(self) -> dict:
        return {
            "status": "error",
            "error_type": type(self).__name__,
            "message": self.message,
        }


class ValidationError(ContractAnalyzerError):
    """Malformed or missing input, rejected before any side effect."""


class NotFoundError(ContractAnalyzerError):
    """Unknown contract id."""

    def __init__(self, contract_id: str) -> None:
        super().__init__("Contract not found", {"contract_id": contract_id})
        self.contract_id = contract_id


class ConflictError(ContractAnalyzerError):
    """Status compare-and-swap lost against a concurrent writer."""

    def __init__(self, contract_id: str, expected_status: str | None, actual_status: str | None) -> None:
        super().__init__(
            f"Contract '{contract_id}' is '{actual_status}', expected '{expected_status}'.",
            {"contract_id": contract_id, "expected_status": expected_status, "actual_status": actual_status},
        )
        self.contract_id = contract_id
        self.expected_status = expected_status
        self.actual_status = actual_status


class StorageError(ContractAnalyzerError):
    """Blob or record store operation failed."""


class ExtractionError(ContractAnalyzerError):
    """Text could not be extracted from the stored document."""


class ModelError(ContractAnalyzerError):
    """Model invocation or output parsing failed.

    ``kind`` tags the failure: ``disabled``, ``transport``, ``timeout``,
    ``empty``, ``no_json``, ``invalid_json`` or ``schema``.
    """

    def __init__(self, kind: str, message: str, details: dict[str, Any] | None = None) -> None:
        super().__init__(message, details)
        self.kind = kind
