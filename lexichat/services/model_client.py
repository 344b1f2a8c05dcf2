"""Client for the Gemini ``generateContent`` REST API.

The orchestrator only relies on the :class:`ModelClient` protocol. Quota
exhaustion is reported in-band: the returned answer text starts with
:data:`QUOTA_EXHAUSTED_MARKER` followed by a human readable reason. Transport
and protocol failures raise :class:`ModelClientError`.
"""

from __future__ import annotations

import asyncio
import base64
import copy
import http.client
import json
import logging
import os
import socket
import time
from collections.abc import Iterable, Sequence
from enum import Enum
from typing import Any, Protocol, runtime_checkable
from urllib import error, request

from ..config import AssistantSettings
from ..logging import log_call
from .response_pipeline import RawAnswer
from .sources import Source, dedupe_sources, filter_excluded_sources


logger = logging.getLogger(__name__)


DEFAULT_BASE_URL = "https://generativelanguage.googleapis.com/v1beta"
PRIMARY_MODEL = "gemini-2.5-flash"
FALLBACK_MODEL = "gemini-2.5-flash-lite"
STREAM_PATH = "/models/{model}:streamGenerateContent?alt=sse"

QUOTA_EXHAUSTED_MARKER = "QUOTA_EXHAUSTED:"
QUOTA_EXHAUSTED_REASON = (
    "The service is temporarily unavailable due to high demand. "
    "Please try again with the fallback model."
)
FOLLOW_UP_DELIMITER = "---FOLLOW_UP_QUESTIONS---"
MAX_FOLLOW_UPS = 5
DEFAULT_IMAGE_PROMPT = "Analyze this image"


class ModelClientError(RuntimeError):
    """Base exception for model client failures."""


class ModelConnectionError(ModelClientError):
    """Raised when the model endpoint cannot be reached."""


class ModelResponseError(ModelClientError):
    """Raised when the model endpoint returns an error or an unusable payload."""

    def __init__(self, message: str, *, status: int | None = None) -> None:
        super().__init__(message)
        self.status = status


class ChatMode(Enum):
    """Answering focus; each mode has its own system instruction."""

    GENERAL = "general"
    CONTRACTS = "contracts"
    CASE_LAW = "case_law"
    REGULATIONS = "regulations"

    @property
    def label(self) -> str:
        return {
            ChatMode.GENERAL: "General Legal",
            ChatMode.CONTRACTS: "Contracts",
            ChatMode.CASE_LAW: "Case Law",
            ChatMode.REGULATIONS: "Regulations",
        }[self]

    @classmethod
    def parse(cls, value: "str | ChatMode | None") -> "ChatMode":
        if isinstance(value, ChatMode):
            return value
        cleaned = str(value or "").strip().lower().replace(" ", "_")
        for mode in cls:
            if cleaned in {mode.value, mode.name.lower()}:
                return mode
        return cls.GENERAL


_CITATION_RULES = (
    "Cite sources inline with numbered markers such as [1] or [1][2] placed "
    "immediately after the sentence they support. Never add a 'Sources' heading "
    "or a list of sources to the answer body; sources are shown separately. "
    "Never write placeholders such as 'URL unavailable'. Make clear that you "
    "provide legal information, not legal advice, and recommend a licensed "
    "attorney when a question needs professional counsel. Do not use tables. "
    "Give at least four substantive points and a short summary."
)
_FOLLOW_UP_RULES = (
    "At the end of the answer add this delimiter on its own line: "
    f"{FOLLOW_UP_DELIMITER}\n"
    "After it list 3-5 short educational follow-up questions about the topic, "
    "one per line, without numbering. Never ask about the user's own situation."
)
_MODE_FOCUS = {
    ChatMode.GENERAL: (
        "You are LexiChat, a legal information assistant. Ground answers in "
        "statutes, case law, court opinions and regulatory agencies."
    ),
    ChatMode.CONTRACTS: (
        "You are LexiChat, specialised in contract law. Prioritise contract "
        "statutes, UCC provisions and contract interpretation case law."
    ),
    ChatMode.CASE_LAW: (
        "You are LexiChat, specialised in case law research. Summarise facts, "
        "holding and reasoning of relevant decisions and precedents."
    ),
    ChatMode.REGULATIONS: (
        "You are LexiChat, specialised in regulations and compliance. Explain "
        "agency rules, their scope and enforcement."
    ),
}


def system_instruction(mode: ChatMode) -> str:
    return "\n\n".join((_MODE_FOCUS[mode], _CITATION_RULES, _FOLLOW_UP_RULES))


def is_quota_exhausted(text: str) -> bool:
    return (text or "").startswith(QUOTA_EXHAUSTED_MARKER)


def strip_quota_marker(text: str) -> str:
    """Return the user-facing reason carried after the quota marker."""

    return (text or "")[len(QUOTA_EXHAUSTED_MARKER) :].strip()


def split_follow_ups(full_text: str) -> tuple[str, list[str]]:
    """Separate the answer body from the follow-up questions block."""

    body, delimiter, tail = full_text.partition(FOLLOW_UP_DELIMITER)
    if not delimiter:
        return full_text, []
    questions = [
        line.strip()
        for line in tail.strip().splitlines()
        if len(line.strip()) > 10
    ]
    return body.strip(), questions[:MAX_FOLLOW_UPS]


@runtime_checkable
class ModelClient(Protocol):
    """Contract the orchestrator needs from a language model backend."""

    async def send_text(self, message: str, mode: ChatMode = ChatMode.GENERAL) -> RawAnswer:
        ...

    async def send_text_with_image(
        self, message: str, image: bytes, mode: ChatMode = ChatMode.GENERAL
    ) -> RawAnswer:
        ...

    def switch_to_fallback_model(self) -> None:
        ...

    def switch_to_primary_model(self) -> None:
        ...

    def start_new_chat(self) -> None:
        ...

    def continue_chat(self, history: Iterable[tuple[str, str]]) -> None:
        ...


class GeminiClient:
    """HTTP client for Gemini with grounding, chat history and model fallback."""

    @log_call(logger=logger)
    def __init__(
        self,
        *,
        api_key: str | None = None,
        base_url: str = DEFAULT_BASE_URL,
        primary_model: str = PRIMARY_MODEL,
        fallback_model: str = FALLBACK_MODEL,
        max_retries: int = 2,
        retry_backoff: float = 0.5,
        timeout: float = 60.0,
    ) -> None:
        self._api_key = api_key or ""
        self._base_url = base_url.rstrip("/") or DEFAULT_BASE_URL
        self._primary_model = primary_model
        self._fallback_model = fallback_model
        self._model = primary_model
        self.max_retries = max(max_retries, 0)
        self.retry_backoff = retry_backoff
        self.timeout = timeout
        self._history: list[dict[str, Any]] = []
        self.last_error: str | None = None

    @classmethod
    def from_settings(cls, settings: AssistantSettings) -> "GeminiClient":
        api_key = os.getenv(settings.api_key_env, "")
        if not api_key:
            logger.warning(
                "No API key configured", extra={"env_var": settings.api_key_env}
            )
        return cls(
            api_key=api_key,
            base_url=settings.base_url,
            primary_model=settings.primary_model,
            fallback_model=settings.fallback_model,
            max_retries=settings.max_retries,
            retry_backoff=settings.retry_backoff,
            timeout=settings.request_timeout,
        )

    @property
    def base_url(self) -> str:
        return self._base_url

    @property
    def model(self) -> str:
        return self._model

    @property
    def is_using_fallback(self) -> bool:
        return self._model == self._fallback_model

    @property
    def history(self) -> list[dict[str, Any]]:
        return copy.deepcopy(self._history)

    # ------------------------------------------------------------------
    # Model selection and history
    def switch_to_fallback_model(self) -> None:
        self._model = self._fallback_model
        logger.info("Switched to fallback model", extra={"model": self._model})

    def switch_to_primary_model(self) -> None:
        self._model = self._primary_model
        logger.info("Switched to primary model", extra={"model": self._model})

    def start_new_chat(self) -> None:
        self._history = []

    def continue_chat(self, history: Iterable[tuple[str, str]]) -> None:
        """Replace the chat history with ``(role, content)`` pairs."""

        self._history = [
            {
                "role": "user" if role == "user" else "model",
                "parts": [{"text": content or ""}],
            }
            for role, content in history
        ]

    # ------------------------------------------------------------------
    # Sending
    @log_call(logger=logger)
    async def send_text(self, message: str, mode: ChatMode = ChatMode.GENERAL) -> RawAnswer:
        parts = [{"text": message}]
        return await asyncio.to_thread(self._send, parts, ChatMode.parse(mode))

    @log_call(logger=logger)
    async def send_text_with_image(
        self,
        message: str,
        image: bytes,
        mode: ChatMode = ChatMode.GENERAL,
        *,
        mime_type: str = "image/jpeg",
    ) -> RawAnswer:
        parts = [
            {"text": message or DEFAULT_IMAGE_PROMPT},
            {
                "inlineData": {
                    "mimeType": mime_type,
                    "data": base64.b64encode(image).decode("ascii"),
                }
            },
        ]
        return await asyncio.to_thread(self._send, parts, ChatMode.parse(mode))

    def _send(self, parts: list[dict[str, Any]], mode: ChatMode) -> RawAnswer:
        self.last_error = None
        user_turn = {"role": "user", "parts": parts}
        payload = self._build_payload([*self._history, user_turn], mode)
        logger.info(
            "Dispatching model request",
            extra={
                "model": self._model,
                "mode": mode.value,
                "history_turns": len(self._history),
            },
        )
        path = STREAM_PATH.format(model=self._model)
        try:
            body = self._request("POST", path, payload)
        except ModelResponseError as exc:
            self.last_error = str(exc)
            if exc.status == 429:
                logger.warning("Model quota exhausted", extra={"model": self._model})
                return RawAnswer.create(f"{QUOTA_EXHAUSTED_MARKER} {QUOTA_EXHAUSTED_REASON}")
            raise
        except ModelClientError as exc:
            self.last_error = str(exc)
            raise

        answer = self._parse_response(body)
        self._history.append(user_turn)
        if answer.text:
            self._history.append({"role": "model", "parts": [{"text": answer.text}]})
        logger.info(
            "Model response received",
            extra={
                "model": self._model,
                "chars": len(answer.text),
                "sources": len(answer.structured_sources),
                "follow_ups": len(answer.follow_ups),
            },
        )
        return answer

    @staticmethod
    def _build_payload(contents: Sequence[dict[str, Any]], mode: ChatMode) -> dict[str, Any]:
        return {
            "systemInstruction": {"parts": [{"text": system_instruction(mode)}]},
            "contents": list(contents),
            "generationConfig": {
                "temperature": 0.7,
                "topP": 0.95,
                "topK": 40,
                "maxOutputTokens": 8192,
            },
            "tools": [{"google_search": {}}],
        }

    # ------------------------------------------------------------------
    # Transport
    def _request(
        self,
        method: str,
        path: str,
        payload: dict[str, Any] | None = None,
    ) -> bytes:
        url = f"{self._base_url}{path}"
        data: bytes | None = None
        headers = {"Accept": "application/json, text/event-stream"}
        if self._api_key:
            headers["x-goog-api-key"] = self._api_key
        if payload is not None:
            data = json.dumps(payload).encode("utf-8")
            headers["Content-Type"] = "application/json"
        request_obj = request.Request(url, data=data, headers=headers, method=method)
        last_error: ModelClientError | None = None
        for attempt in range(self.max_retries + 1):
            try:
                logger.debug(
                    "Model request attempt",
                    extra={"method": method, "url": url, "attempt": attempt + 1},
                )
                with request.urlopen(request_obj, timeout=self.timeout) as response:
                    return response.read()
            except error.HTTPError as exc:
                body = exc.read() if hasattr(exc, "read") else b""
                last_error = ModelResponseError(
                    self._build_http_error_message(exc.code, body), status=exc.code
                )
                if not self._should_retry(exc.code):
                    break
            except error.URLError as exc:
                if isinstance(exc.reason, (TimeoutError, socket.timeout)):
                    last_error = ModelConnectionError("Model request timed out")
                else:
                    last_error = ModelConnectionError(str(exc.reason))
            except TimeoutError:
                last_error = ModelConnectionError("Model request timed out")
            except (http.client.HTTPException, OSError) as exc:
                # Dropped connections and truncated bodies are not wrapped by urllib.
                last_error = ModelConnectionError(str(exc) or exc.__class__.__name__)
            if attempt < self.max_retries:
                logger.warning(
                    "Model request failed, retrying",
                    extra={
                        "url": url,
                        "attempt": attempt + 1,
                        "error": str(last_error) if last_error else None,
                    },
                )
                time.sleep(self.retry_backoff * (2**attempt))
        raise last_error or ModelClientError("Unexpected model request failure")

    @staticmethod
    def _should_retry(status: int | None) -> bool:
        if status is None:
            return True
        return status in {408, 409, 500, 502, 503, 504}

    @staticmethod
    def _build_http_error_message(status: int | None, body: bytes | str | None) -> str:
        summary = GeminiClient._summarize_error_body(body)
        if status is not None:
            if summary:
                return f"Model endpoint returned HTTP {status}: {summary}"
            return f"Model endpoint returned HTTP {status}"
        return summary or "Model request failed"

    @staticmethod
    def _summarize_error_body(body: bytes | str | None) -> str:
        if body is None:
            return ""
        text = body.decode("utf-8", errors="replace") if isinstance(body, bytes) else str(body)
        text = text.strip()
        if not text:
            return ""
        try:
            data = json.loads(text)
        except json.JSONDecodeError:
            return " ".join(text.split())
        if isinstance(data, list) and data and isinstance(data[0], dict):
            data = data[0]
        if isinstance(data, dict):
            payload = data.get("error") if isinstance(data.get("error"), dict) else data
            message = payload.get("message") or payload.get("status") or ""
            if message:
                return " ".join(str(message).split())
        return " ".join(text.split())

    # ------------------------------------------------------------------
    # Response parsing
    @staticmethod
    def _decode_events(body: bytes) -> list[dict[str, Any]]:
        """Return JSON events from an SSE stream or a plain JSON body."""

        try:
            text = body.decode("utf-8")
        except UnicodeDecodeError as exc:
            raise ModelResponseError("Model response is not valid UTF-8") from exc
        stripped = text.strip()
        if not stripped:
            raise ModelResponseError("Empty response from model endpoint")

        try:
            data = json.loads(stripped)
        except json.JSONDecodeError:
            data = None
        if isinstance(data, dict):
            return [data]
        if isinstance(data, list):
            return [item for item in data if isinstance(item, dict)]

        events: list[dict[str, Any]] = []
        for line in stripped.splitlines():
            line = line.strip()
            if not line.startswith("data:"):
                continue
            chunk = line[5:].strip()
            if not chunk or chunk == "[DONE]":
                continue
            try:
                event = json.loads(chunk)
            except json.JSONDecodeError:
                logger.debug("Skipping undecodable stream chunk")
                continue
            if isinstance(event, dict):
                events.append(event)
        if not events:
            raise ModelResponseError("Invalid JSON from model endpoint")
        return events

    @staticmethod
    def _parse_response(body: bytes) -> RawAnswer:
        events = GeminiClient._decode_events(body)
        pieces: list[str] = []
        sources: list[Source] = []
        for event in events:
            candidates = event.get("candidates")
            if not isinstance(candidates, list):
                continue
            for index, candidate in enumerate(candidates):
                if not isinstance(candidate, dict):
                    continue
                if index == 0:
                    pieces.extend(GeminiClient._candidate_text(candidate))
                metadata = candidate.get("groundingMetadata")
                if isinstance(metadata, dict):
                    sources.extend(GeminiClient._grounding_sources(metadata))
        full_text = "".join(pieces)
        body_text, follow_ups = split_follow_ups(full_text)
        resolved = filter_excluded_sources(dedupe_sources(sources))
        return RawAnswer.create(body_text, resolved, follow_ups)

    @staticmethod
    def _candidate_text(candidate: dict[str, Any]) -> list[str]:
        content = candidate.get("content")
        if not isinstance(content, dict):
            return []
        parts = content.get("parts")
        if not isinstance(parts, list):
            return []
        return [
            part["text"]
            for part in parts
            if isinstance(part, dict) and isinstance(part.get("text"), str)
        ]

    @staticmethod
    def _grounding_sources(metadata: dict[str, Any]) -> list[Source]:
        chunks = metadata.get("groundingChunks")
        if not isinstance(chunks, list):
            return []
        sources: list[Source] = []
        for chunk in chunks:
            web = chunk.get("web") if isinstance(chunk, dict) else None
            if not isinstance(web, dict):
                continue
            url = next(
                (
                    web[key]
                    for key in ("originalUrl", "sourceUrl", "link", "url", "uri")
                    if isinstance(web.get(key), str) and web[key].strip()
                ),
                None,
            )
            if not url:
                continue
            if "://" not in url:
                url = f"https://{url}"
            title = web.get("title") if isinstance(web.get("title"), str) else None
            sources.append(Source(title=(title or url).strip(), url=url.strip()))
        return sources


__all__ = [
    "ChatMode",
    "DEFAULT_IMAGE_PROMPT",
    "FOLLOW_UP_DELIMITER",
    "GeminiClient",
    "ModelClient",
    "ModelClientError",
    "ModelConnectionError",
    "ModelResponseError",
    "QUOTA_EXHAUSTED_MARKER",
    "QUOTA_EXHAUSTED_REASON",
    "is_quota_exhausted",
    "split_follow_ups",
    "strip_quota_marker",
    "system_instruction",
]
