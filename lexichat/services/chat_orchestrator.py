"""Coordinate a chat turn from user input to a committed assistant message."""

from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass, field, replace
from enum import Enum
from pathlib import Path
from typing import TYPE_CHECKING, Any, Awaitable, Callable, Coroutine

from PyQt6.QtCore import QObject, pyqtSignal

from ..config import AssistantSettings
from ..errors import (
    ChatError,
    EmptyResponse,
    ExtractionFailure,
    FallbackAlsoExhausted,
    GENERIC_FAILURE_MESSAGE,
    QuotaExhausted,
    TOO_SHORT_ERROR_CODE,
)
from .animation import AnimationPlayer
from .attachments import compose_document_prompt, extract_document_text
from .model_client import (
    DEFAULT_IMAGE_PROMPT,
    ChatMode,
    ModelClient,
    ModelClientError,
    is_quota_exhausted,
    strip_quota_marker,
)
from .response_pipeline import (
    FinalizedMessage,
    RawAnswer,
    finalize_response,
    is_response_too_short,
    share_text,
)
from .suggestions import RelatedTopic, RelatedTopicsService, SuggestionService, TopicCategory
from .tokenizer import tokenize

if TYPE_CHECKING:
    from ..storage.database import ConversationStore, StoredMessage


logger = logging.getLogger(__name__)

DEFAULT_DOCUMENT_PROMPT = "Summarize and analyze this document."
UNEXPECTED_ERROR_CODE = "unexpected_error"


class OrchestrationState(Enum):
    IDLE = "idle"
    SENDING = "sending"
    ANIMATING = "animating"
    QUOTA_BLOCKED = "quota_blocked"
    EMPTY = "empty"
    FAILED = "failed"


class OutcomeKind(Enum):
    SUCCESS = "success"
    QUOTA_EXHAUSTED = "quota_exhausted"
    OTHER = "other"


@dataclass(frozen=True, slots=True)
class AttemptOutcome:
    """Classified result of the attempt loop."""

    kind: OutcomeKind
    raw: RawAnswer | None = None
    message: str | None = None
    attempts: int = 0

    @classmethod
    def success(cls, raw: RawAnswer, attempts: int = 1) -> "AttemptOutcome":
        return cls(OutcomeKind.SUCCESS, raw=raw, attempts=attempts)

    @classmethod
    def quota_exhausted(cls, message: str, attempts: int = 1) -> "AttemptOutcome":
        return cls(OutcomeKind.QUOTA_EXHAUSTED, message=message, attempts=attempts)

    @classmethod
    def other(cls, message: str, attempts: int = 1) -> "AttemptOutcome":
        return cls(OutcomeKind.OTHER, message=message, attempts=attempts)


@dataclass(frozen=True, slots=True)
class SendRequest:
    """Everything needed to replay a turn against the model.

    ``text`` is what the user typed, ``prompt`` is what the model receives
    (the text plus any extracted document) and ``history`` is the conversation
    before this turn.
    """

    text: str
    prompt: str
    image: bytes | None = None
    document: Path | None = None
    mode: ChatMode = ChatMode.GENERAL
    history: tuple[tuple[str, str], ...] = ()


@dataclass(slots=True)
class ChatSessionState:
    """Mutable per-conversation state; only :class:`ChatOrchestrator` writes it."""

    state: OrchestrationState = OrchestrationState.IDLE
    is_loading: bool = False
    conversation_id: int | None = None
    messages: list["StoredMessage"] = field(default_factory=list)
    failed_request: SendRequest | None = None
    show_quota_retry: bool = False
    error_message: str | None = None
    pending_image: bytes | None = None
    follow_ups: list[str] = field(default_factory=list)
    related_topics: dict[TopicCategory, list[RelatedTopic]] = field(default_factory=dict)

    def history(self) -> tuple[tuple[str, str], ...]:
        return tuple((message.role, message.content) for message in self.messages)


class ChatOrchestrator(QObject):
    """Drive send, retry and fallback for one conversation view.

    At most one invocation is in flight at a time. Each invocation runs the
    attempt loop, classifies the outcome, finalizes the answer and reveals it
    through the :class:`AnimationPlayer`; the assistant message is stored only
    once the reveal completes (or is stopped, which flushes it).
    """

    state_changed = pyqtSignal(object)
    loading_changed = pyqtSignal(bool)
    error_changed = pyqtSignal(str)
    follow_ups_changed = pyqtSignal(list)
    related_topics_changed = pyqtSignal(dict)
    quota_retry_changed = pyqtSignal(bool)
    message_committed = pyqtSignal(object)

    def __init__(
        self,
        client: ModelClient,
        store: "ConversationStore",
        *,
        settings: AssistantSettings | None = None,
        player: AnimationPlayer | None = None,
        related_topics: RelatedTopicsService | None = None,
        suggestions: SuggestionService | None = None,
        extractor: Callable[[Path], str] = extract_document_text,
        mode: ChatMode | str | None = None,
    ) -> None:
        super().__init__()
        self.settings = settings or AssistantSettings()
        self.client = client
        self.store = store
        self.player = player or AnimationPlayer(
            whitespace_delay=self.settings.whitespace_delay,
            word_delay=self.settings.word_delay,
        )
        self.related_topics_service = related_topics
        self.suggestion_service = suggestions
        self._extractor = extractor
        self._mode = ChatMode.parse(mode or self.settings.default_mode)
        self._session = ChatSessionState()
        self._pending_message: FinalizedMessage | None = None
        self._background_tasks: set[asyncio.Task[Any]] = set()
        self.player.finished.connect(self._on_animation_finished)

    # ------------------------------------------------------------------
    @property
    def session(self) -> ChatSessionState:
        return self._session

    @property
    def state(self) -> OrchestrationState:
        return self._session.state

    @property
    def is_loading(self) -> bool:
        return self._session.is_loading

    @property
    def failed_request(self) -> SendRequest | None:
        return self._session.failed_request

    @property
    def follow_ups(self) -> list[str]:
        return list(self._session.follow_ups)

    @property
    def related_topics(self) -> dict[TopicCategory, list[RelatedTopic]]:
        return dict(self._session.related_topics)

    @property
    def conversation_id(self) -> int | None:
        return self._session.conversation_id

    @property
    def mode(self) -> ChatMode:
        return self._mode

    def set_mode(self, mode: ChatMode | str) -> None:
        value = ChatMode.parse(mode)
        if value is self._mode:
            return
        self._mode = value
        logger.info("Chat mode changed", extra={"mode": value.value})

    # ------------------------------------------------------------------
    # Public operations
    async def send(
        self,
        text: str,
        image: bytes | None = None,
        document: str | Path | None = None,
    ) -> OrchestrationState:
        """Send a user turn and run it through the attempt loop.

        Returns the state the invocation ended in. Requests arriving while
        another invocation is in flight, or with nothing to send, are ignored.
        """

        text = (text or "").strip()
        if self._session.is_loading:
            logger.info("Ignoring send while a request is in flight")
            return self._session.state
        if not text and image is None and document is None:
            logger.debug("Ignoring empty send")
            return self._session.state

        self.player.stop()
        self._set_error(None)
        self._set_follow_ups([])
        self._set_loading(True)
        self._set_state(OrchestrationState.SENDING)
        self._session.pending_image = image
        return await self._guarded(self._send_turn(text, image, document))

    async def _send_turn(
        self, text: str, image: bytes | None, document: str | Path | None
    ) -> OrchestrationState:
        if not text:
            text = DEFAULT_IMAGE_PROMPT if image is not None else DEFAULT_DOCUMENT_PROMPT
        prompt = text
        document_path = Path(document) if document is not None else None
        if document_path is not None:
            try:
                document_text = self._extractor(document_path)
            except ExtractionFailure as exc:
                self._session.pending_image = None
                self._surface_error(exc, OrchestrationState.FAILED)
                return self._session.state
            prompt = compose_document_prompt(text, document_path.name, document_text)

        request = SendRequest(
            text=text,
            prompt=prompt,
            image=image,
            document=document_path,
            mode=self._mode,
            history=self._session.history(),
        )
        self._store_user_message(request)
        return await self._run_attempts(request, fallback=False)

    async def retry_with_fallback(self) -> OrchestrationState:
        """Replay the remembered failed request on the fallback model."""

        request = self._session.failed_request
        if request is None or self._session.is_loading:
            logger.debug("No failed request to retry")
            return self._session.state

        self.player.stop()
        self._set_quota_retry(False)
        self._set_error(None)
        self._set_loading(True)
        self._set_state(OrchestrationState.SENDING)
        return await self._guarded(self._run_attempts(request, fallback=True))

    def start_new_conversation(self) -> bool:
        if self._session.is_loading:
            logger.info("Cannot start a new conversation while a request is in flight")
            return False
        self.player.stop()
        self._session = ChatSessionState()
        self.client.start_new_chat()
        self._set_error(None)
        self._set_quota_retry(False)
        self.follow_ups_changed.emit([])
        self.related_topics_changed.emit({})
        self.state_changed.emit(OrchestrationState.IDLE)
        logger.info("Started new conversation")
        return True

    def load_conversation(self, conversation_id: int) -> list["StoredMessage"]:
        """Make ``conversation_id`` the active conversation and restore its state."""

        if self._session.is_loading:
            logger.info("Cannot switch conversation while a request is in flight")
            return list(self._session.messages)
        self.player.stop()
        messages = self.store.list_messages(conversation_id)
        self._session = ChatSessionState(conversation_id=conversation_id, messages=list(messages))
        self.client.continue_chat(self._session.history())
        last_assistant = next(
            (message for message in reversed(messages) if message.role == "assistant"),
            None,
        )
        self._set_error(None)
        self._set_quota_retry(False)
        self._set_follow_ups(list(last_assistant.follow_ups) if last_assistant else [])
        self.related_topics_changed.emit({})
        self.state_changed.emit(OrchestrationState.IDLE)
        logger.info(
            "Loaded conversation",
            extra={"conversation_id": conversation_id, "messages": len(messages)},
        )
        return list(messages)

    @staticmethod
    def select_follow_up(suggestion: str) -> str:
        return suggestion

    @staticmethod
    def select_related_topic(topic: RelatedTopic) -> str:
        return f"Tell me more about {topic.title}"

    @staticmethod
    def share_message(message: "StoredMessage | FinalizedMessage") -> str:
        return share_text(message.content, message.sources)

    async def wait_for_background_tasks(self) -> None:
        """Wait for pending related-topic and follow-up computations."""

        if self._background_tasks:
            await asyncio.gather(*list(self._background_tasks), return_exceptions=True)

    # ------------------------------------------------------------------
    # Attempt routine shared by send and fallback retry
    async def _guarded(self, invocation: Awaitable[OrchestrationState]) -> OrchestrationState:
        """Await one invocation; anything it raises ends the turn in ``FAILED``."""

        try:
            return await invocation
        except Exception:
            logger.exception("Chat turn failed unexpectedly")
            self._session.pending_image = None
            self._surface_error(
                ChatError(GENERIC_FAILURE_MESSAGE, UNEXPECTED_ERROR_CODE),
                OrchestrationState.FAILED,
            )
            return self._session.state
        finally:
            self._set_loading(False)

    async def _run_attempts(self, request: SendRequest, *, fallback: bool) -> OrchestrationState:
        max_attempts = 1 if fallback else max(1, self.settings.max_attempts)
        if fallback:
            self.client.switch_to_fallback_model()
        try:
            outcome = await self._attempt_loop(request, max_attempts)
        finally:
            if fallback:
                self.client.switch_to_primary_model()
        logger.info(
            "Attempt loop finished",
            extra={
                "outcome": outcome.kind.value,
                "attempts": outcome.attempts,
                "fallback": fallback,
            },
        )

        if outcome.kind is OutcomeKind.QUOTA_EXHAUSTED:
            self._session.pending_image = None
            self._set_related_topics({})
            if fallback:
                self._session.failed_request = None
                self._surface_error(FallbackAlsoExhausted(), OrchestrationState.FAILED)
            else:
                self._session.failed_request = request
                self._surface_error(
                    QuotaExhausted(outcome.message or ""), OrchestrationState.QUOTA_BLOCKED
                )
                self._set_quota_retry(True)
            return self._session.state

        if outcome.kind is OutcomeKind.OTHER:
            self._session.pending_image = None
            self._surface_error(
                ChatError(outcome.message or GENERIC_FAILURE_MESSAGE, "model_error"),
                OrchestrationState.FAILED,
            )
            return self._session.state

        assert outcome.raw is not None
        finalized = finalize_response(outcome.raw)
        self._session.pending_image = None
        if finalized is None:
            self._surface_error(EmptyResponse(), OrchestrationState.EMPTY)
            return self._session.state

        self._session.failed_request = None
        self._set_quota_retry(False)
        self._set_loading(False)
        self.player.stop()
        self._pending_message = finalized
        self._set_state(OrchestrationState.ANIMATING)
        self.player.start(tokenize(finalized.content))
        return self._session.state

    async def _attempt_loop(self, request: SendRequest, max_attempts: int) -> AttemptOutcome:
        for attempt in range(1, max_attempts + 1):
            self.client.continue_chat(request.history)
            try:
                if request.image is not None:
                    raw = await self.client.send_text_with_image(
                        request.prompt, request.image, request.mode
                    )
                else:
                    raw = await self.client.send_text(request.prompt, request.mode)
            except ModelClientError as exc:
                logger.error(
                    "Model request failed",
                    extra={"attempt": attempt, "error": str(exc)},
                )
                return AttemptOutcome.other(GENERIC_FAILURE_MESSAGE, attempts=attempt)

            if is_quota_exhausted(raw.text):
                return AttemptOutcome.quota_exhausted(
                    strip_quota_marker(raw.text), attempts=attempt
                )
            if attempt < max_attempts and is_response_too_short(
                raw.text,
                min_words=self.settings.min_words,
                min_sentences=self.settings.min_sentences,
            ):
                logger.info(
                    "Answer too short, retrying",
                    extra={
                        "attempt": attempt,
                        "words": len(raw.text.split()),
                        "error_code": TOO_SHORT_ERROR_CODE,
                    },
                )
                continue
            return AttemptOutcome.success(raw, attempts=attempt)
        raise AssertionError("attempt loop exited without an outcome")  # pragma: no cover

    # ------------------------------------------------------------------
    def _store_user_message(self, request: SendRequest) -> None:
        if self._session.conversation_id is None:
            self._session.conversation_id = self.store.create_transient_conversation(
                request.mode.value
            )
        content = request.text
        if request.document is not None:
            content = f"{content}\n\n[Attached document: {request.document.name}]"
        stored = self.store.append_message(self._session.conversation_id, content, "user")
        self._session.messages.append(stored)

    def _on_animation_finished(self) -> None:
        message, self._pending_message = self._pending_message, None
        if message is None:
            return
        conversation_id = self._session.conversation_id
        if conversation_id is None:
            conversation_id = self.store.create_transient_conversation(self._mode.value)
            self._session.conversation_id = conversation_id
        stored = self.store.append_message(
            conversation_id,
            message.content,
            "assistant",
            message.sources,
            message.follow_ups,
        )
        self._session.messages.append(stored)
        logger.info(
            "Assistant message committed",
            extra={
                "conversation_id": conversation_id,
                "sources": len(message.sources),
                "follow_ups": len(message.follow_ups),
            },
        )
        self.message_committed.emit(stored)
        self._set_follow_ups(list(message.follow_ups))
        self._set_state(OrchestrationState.IDLE)
        history = self._session.history()
        if self.related_topics_service is not None:
            self._schedule(
                self._compute_related_topics(history, message.content, conversation_id)
            )
        if self.suggestion_service is not None and not message.follow_ups:
            self._schedule(self._suggest_follow_ups(history, stored))

    def _schedule(self, work: Coroutine[Any, Any, None]) -> None:
        try:
            loop = asyncio.get_running_loop()
        except RuntimeError:
            logger.debug("No running event loop; background work skipped")
            work.close()
            return
        task = loop.create_task(work)
        self._background_tasks.add(task)
        task.add_done_callback(self._background_tasks.discard)

    async def _compute_related_topics(
        self, history: tuple[tuple[str, str], ...], content: str, conversation_id: int
    ) -> None:
        assert self.related_topics_service is not None
        try:
            topics = await self.related_topics_service.find_related_topics(history, content)
        except ModelClientError as exc:
            logger.warning("Related topics unavailable", extra={"error": str(exc)})
            return
        if conversation_id != self._session.conversation_id:
            logger.debug("Discarding related topics for an inactive conversation")
            return
        self._set_related_topics(topics)

    async def _suggest_follow_ups(
        self, history: tuple[tuple[str, str], ...], message: "StoredMessage"
    ) -> None:
        """Fill in follow-up questions for an answer that arrived without any."""

        assert self.suggestion_service is not None
        questions = await self.suggestion_service.generate_follow_up_questions(
            history[:-1], message.content
        )
        if not questions:
            return
        messages = self._session.messages
        # Only the newest answer of the active conversation may show suggestions.
        if not messages or messages[-1].id != message.id:
            logger.debug("Discarding follow-up suggestions for a stale answer")
            return
        self.store.update_follow_ups(message.id, questions)
        messages[-1] = replace(message, follow_ups=tuple(questions))
        self._set_follow_ups(questions)

    # ------------------------------------------------------------------
    def _surface_error(self, error: ChatError, state: OrchestrationState) -> None:
        self._set_loading(False)
        logger.warning(
            "Chat turn ended with error",
            extra={"error_code": error.error_code, "state": state.value},
        )
        self._set_error(error.message)
        self._set_state(state)

    def _set_state(self, state: OrchestrationState) -> None:
        if state is self._session.state:
            return
        self._session.state = state
        logger.debug("Orchestration state changed", extra={"state": state.value})
        self.state_changed.emit(state)

    def _set_loading(self, value: bool) -> None:
        if value == self._session.is_loading:
            return
        self._session.is_loading = value
        self.loading_changed.emit(value)

    def _set_error(self, message: str | None) -> None:
        if message == self._session.error_message:
            return
        self._session.error_message = message
        self.error_changed.emit(message or "")

    def _set_quota_retry(self, value: bool) -> None:
        if value == self._session.show_quota_retry:
            return
        self._session.show_quota_retry = value
        self.quota_retry_changed.emit(value)

    def _set_follow_ups(self, follow_ups: list[str]) -> None:
        if follow_ups == self._session.follow_ups:
            return
        self._session.follow_ups = follow_ups
        self.follow_ups_changed.emit(list(follow_ups))

    def _set_related_topics(self, topics: dict[TopicCategory, list[RelatedTopic]]) -> None:
        if topics == self._session.related_topics:
            return
        self._session.related_topics = topics
        self.related_topics_changed.emit(dict(topics))


__all__ = [
    "AttemptOutcome",
    "ChatOrchestrator",
    "ChatSessionState",
    "OrchestrationState",
    "OutcomeKind",
    "SendRequest",
]
