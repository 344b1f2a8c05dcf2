"""Red-flag contract scanner: score a contract and explain its risky clauses."""

from __future__ import annotations

import json
import logging
from dataclasses import dataclass
from enum import Enum
from pathlib import Path
from typing import Any, Callable

from ..errors import ContractAnalysisError, ExtractionFailure, QuotaExhausted
from ..logging import log_call
from .attachments import extract_document_text
from .model_client import (
    ChatMode,
    ModelClient,
    ModelClientError,
    is_quota_exhausted,
    strip_quota_marker,
)


logger = logging.getLogger(__name__)

CONTRACT_CHAR_LIMIT = 25_000
IMAGE_TEXT_FAILED_MESSAGE = (
    "Could not extract text from image. Please try pasting the contract text instead."
)
IMAGE_TEXT_PROMPT = (
    "Extract all text from this document image exactly as written. Return only the "
    "raw text, with no commentary, formatting changes or labels."
)
ANALYSIS_PROMPT = """Role: You are an elite contract lawyer protecting a freelancer or founder.
Task: Analyze the provided contract text. Identify the top 3 most dangerous clauses (type: "danger") and 2 favorable clauses (type: "safe"). If fewer dangerous or safe clauses exist, include as many as are present.

You MUST return a valid JSON object ONLY, with no markdown, explanation or code fences.

JSON Structure:
{
  "safety_score": (integer 0-100, where 100 is perfectly safe for the signing party),
  "summary": "(1 punchy sentence summarising the overall contract risk level)",
  "analysis": [
    {
      "type": "danger",
      "title": "(Short clause title, e.g. 'Aggressive Non-Compete')",
      "quote": "(Exact short excerpt from the contract, max 2 sentences)",
      "explanation": "(Why this clause is harmful for the signer in plain English, max 3 sentences)",
      "fix": "(Exact suggested replacement text or protective action)"
    }
  ]
}

Constraints:
1. Prioritise: IP Assignment (pre-existing IP), Non-Competes (scope/duration), Payment Terms (net 30 or less).
2. If those are absent, check: Termination at-will, Uncapped Liability, Broad Indemnification, Unfavourable Governing Law.
3. danger clauses come first in the analysis array, then safe clauses.
4. Tone: Professional, direct, protective.
5. Output ONLY the JSON object.

Analyze this contract:

"""


class ClauseType(Enum):
    DANGER = "danger"
    SAFE = "safe"


@dataclass(frozen=True, slots=True)
class ContractClause:
    type: ClauseType
    title: str
    quote: str
    explanation: str
    fix: str

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "ContractClause":
        return cls(
            type=ClauseType(str(data["type"]).strip().lower()),
            title=str(data["title"]),
            quote=str(data["quote"]),
            explanation=str(data["explanation"]),
            fix=str(data["fix"]),
        )

    def to_dict(self) -> dict[str, str]:
        return {
            "type": self.type.value,
            "title": self.title,
            "quote": self.quote,
            "explanation": self.explanation,
            "fix": self.fix,
        }


@dataclass(frozen=True, slots=True)
class ContractAnalysisResult:
    """Scored analysis of one contract.

    ``safety_score`` runs from 0 to 100, where 100 means the contract is safe
    for the signing party. ``analysis`` lists danger clauses before safe ones.
    """

    safety_score: int
    summary: str
    analysis: tuple[ContractClause, ...] = ()

    @property
    def danger_clauses(self) -> list[ContractClause]:
        return [clause for clause in self.analysis if clause.type is ClauseType.DANGER]

    @property
    def safe_clauses(self) -> list[ContractClause]:
        return [clause for clause in self.analysis if clause.type is ClauseType.SAFE]

    @property
    def score_label(self) -> str:
        if self.safety_score >= 80:
            return "Low Risk"
        if self.safety_score >= 60:
            return "Moderate Risk"
        if self.safety_score >= 40:
            return "High Risk"
        return "Dangerous"

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "ContractAnalysisResult":
        score = max(0, min(100, int(data["safety_score"])))
        return cls(
            safety_score=score,
            summary=str(data["summary"]),
            analysis=tuple(ContractClause.from_dict(item) for item in data["analysis"]),
        )

    def to_dict(self) -> dict[str, Any]:
        return {
            "safety_score": self.safety_score,
            "summary": self.summary,
            "analysis": [clause.to_dict() for clause in self.analysis],
        }


def parse_analysis(text: str) -> ContractAnalysisResult:
    """Decode the model's JSON reply, tolerating stray Markdown code fences."""

    cleaned = text.strip().replace("```json", "").replace("```", "").strip()
    try:
        data = json.loads(cleaned)
        if not isinstance(data, dict):
            raise TypeError("analysis payload is not an object")
        return ContractAnalysisResult.from_dict(data)
    except (ValueError, KeyError, TypeError) as exc:
        logger.warning(
            "Could not parse contract analysis",
            extra={"error": str(exc), "preview": cleaned[:200]},
        )
        raise ContractAnalysisError() from exc


class ContractScanner:
    """Run contract text, documents or photos through the model for a risk report.

    Each analysis starts a fresh chat on ``client`` so the scanner never shares
    history with the conversation view; give it a client of its own.
    """

    def __init__(
        self,
        client: ModelClient,
        *,
        extractor: Callable[[Path], str] = extract_document_text,
    ) -> None:
        self.client = client
        self._extractor = extractor

    @log_call(logger=logger)
    async def analyze_text(self, text: str) -> ContractAnalysisResult:
        contract = (text or "").strip()
        if not contract:
            raise ContractAnalysisError("There is no contract text to analyze.")
        if len(contract) > CONTRACT_CHAR_LIMIT:
            logger.warning(
                "Contract text truncated",
                extra={"length": len(contract), "limit": CONTRACT_CHAR_LIMIT},
            )
            contract = contract[:CONTRACT_CHAR_LIMIT]

        reply = await self._ask(ANALYSIS_PROMPT + contract)
        result = parse_analysis(reply)
        logger.info(
            "Contract analyzed",
            extra={"safety_score": result.safety_score, "clauses": len(result.analysis)},
        )
        return result

    async def analyze_document(self, path: str | Path) -> ContractAnalysisResult:
        return await self.analyze_text(self._extractor(Path(path)))

    async def analyze_image(self, image: bytes) -> ContractAnalysisResult:
        self.client.start_new_chat()
        try:
            answer = await self.client.send_text_with_image(
                IMAGE_TEXT_PROMPT, image, ChatMode.CONTRACTS
            )
        except ModelClientError as exc:
            raise ExtractionFailure(IMAGE_TEXT_FAILED_MESSAGE) from exc
        self._raise_for_quota(answer.text)
        if not answer.text.strip():
            raise ExtractionFailure(IMAGE_TEXT_FAILED_MESSAGE)
        return await self.analyze_text(answer.text)

    async def _ask(self, prompt: str) -> str:
        self.client.start_new_chat()
        try:
            answer = await self.client.send_text(prompt, ChatMode.CONTRACTS)
        except ModelClientError as exc:
            logger.error("Contract analysis request failed", extra={"error": str(exc)})
            raise ContractAnalysisError() from exc
        self._raise_for_quota(answer.text)
        return answer.text

    @staticmethod
    def _raise_for_quota(text: str) -> None:
        if is_quota_exhausted(text):
            raise QuotaExhausted(strip_quota_marker(text))


__all__ = [
    "ClauseType",
    "ContractAnalysisResult",
    "ContractClause",
    "ContractScanner",
    "parse_analysis",
]
