"""Chat services for the LexiChat application."""

from .animation import AnimationPlayer
from .attachments import extract_document_text
from .chat_orchestrator import (
    AttemptOutcome,
    ChatOrchestrator,
    ChatSessionState,
    OrchestrationState,
    OutcomeKind,
    SendRequest,
)
from .contract_scanner import ContractAnalysisResult, ContractClause, ContractScanner
from .delete_scheduler import DeleteScheduler
from .export_service import ExportService
from .model_client import (
    ChatMode,
    GeminiClient,
    ModelClient,
    ModelClientError,
    ModelConnectionError,
    ModelResponseError,
    QUOTA_EXHAUSTED_MARKER,
)
from .response_pipeline import (
    FinalizedMessage,
    RawAnswer,
    finalize_response,
    inject_citations,
    is_response_too_short,
    sanitize,
    share_text,
)
from .sources import Source, derive_sources, filter_excluded_sources
from .suggestions import RelatedTopic, RelatedTopicsService, SuggestionService, TopicCategory
from .tokenizer import Token, TokenKind, tokenize

__all__ = [
    "AnimationPlayer",
    "AttemptOutcome",
    "ChatMode",
    "ChatOrchestrator",
    "ChatSessionState",
    "ContractAnalysisResult",
    "ContractClause",
    "ContractScanner",
    "DeleteScheduler",
    "ExportService",
    "FinalizedMessage",
    "GeminiClient",
    "ModelClient",
    "ModelClientError",
    "ModelConnectionError",
    "ModelResponseError",
    "OrchestrationState",
    "OutcomeKind",
    "QUOTA_EXHAUSTED_MARKER",
    "RawAnswer",
    "RelatedTopic",
    "RelatedTopicsService",
    "SendRequest",
    "Source",
    "SuggestionService",
    "Token",
    "TokenKind",
    "TopicCategory",
    "derive_sources",
    "extract_document_text",
    "filter_excluded_sources",
    "finalize_response",
    "inject_citations",
    "is_response_too_short",
    "sanitize",
    "share_text",
    "tokenize",
]
