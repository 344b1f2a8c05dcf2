"""User-facing error taxonomy for a chat turn.

Each error carries a stable ``error_code`` for log tagging and a ``message``
that can be surfaced verbatim by the presentation layer. The orchestrator
reports at most one of these per send attempt.
"""

from __future__ import annotations

from dataclasses import dataclass

NO_RESPONSE_MESSAGE = "No response received. Please try again."
FALLBACK_UNAVAILABLE_MESSAGE = "Fallback model is also unavailable. Please try again later."
GENERIC_FAILURE_MESSAGE = (
    "I apologize, but I encountered an error while processing your request. "
    "Please try again."
)
TOO_SHORT_ERROR_CODE = "too_short"
CONTRACT_ANALYSIS_FAILED_MESSAGE = (
    "Analysis failed. The AI could not parse the contract. "
    "Try pasting the key clauses as plain text instead."
)


@dataclass(slots=True, eq=False)
class ChatError(Exception):
    """Base class for chat turn errors."""

    message: str
    error_code: str

    def __str__(self) -> str:  # pragma: no cover - trivial
        return f"{self.error_code}: {self.message}"


class QuotaExhausted(ChatError):
    def __init__(self, message: str) -> None:
        super().__init__(message=message, error_code="quota_exhausted")


class EmptyResponse(ChatError):
    def __init__(self, message: str = NO_RESPONSE_MESSAGE) -> None:
        super().__init__(message=message, error_code="empty_response")


class TooShortResponse(ChatError):
    """An answer that failed the brevity check; retried silently, never surfaced."""

    def __init__(self, message: str = "Response too short") -> None:
        super().__init__(message=message, error_code=TOO_SHORT_ERROR_CODE)


class ExtractionFailure(ChatError):
    def __init__(
        self, message: str = "Could not extract text from the attached document."
    ) -> None:
        super().__init__(message=message, error_code="extraction_failed")


class FallbackAlsoExhausted(ChatError):
    def __init__(self, message: str = FALLBACK_UNAVAILABLE_MESSAGE) -> None:
        super().__init__(message=message, error_code="fallback_exhausted")


class ContractAnalysisError(ChatError):
    def __init__(self, message: str = CONTRACT_ANALYSIS_FAILED_MESSAGE) -> None:
        super().__init__(message=message, error_code="contract_analysis_failed")


__all__ = [
    "CONTRACT_ANALYSIS_FAILED_MESSAGE",
    "ChatError",
    "ContractAnalysisError",
    "EmptyResponse",
    "ExtractionFailure",
    "FALLBACK_UNAVAILABLE_MESSAGE",
    "FallbackAlsoExhausted",
    "GENERIC_FAILURE_MESSAGE",
    "NO_RESPONSE_MESSAGE",
    "QuotaExhausted",
    "TOO_SHORT_ERROR_CODE",
    "TooShortResponse",
]
