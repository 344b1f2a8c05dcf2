"""Follow-up question and related-topic suggestions computed after an answer."""

from __future__ import annotations

import logging
import re
from collections.abc import Iterable, Sequence
from dataclasses import dataclass
from enum import Enum

from .model_client import QUOTA_EXHAUSTED_MARKER, ChatMode, ModelClient, ModelClientError


logger = logging.getLogger(__name__)

CONTEXT_MESSAGES = 4
MAX_SUGGESTIONS = 5
_NUMBERING_RE = re.compile(r"^\d+[.)]\s*")
_BULLET_RE = re.compile(r"^[-*]\s*")
_ERROR_PREFIXES = (
    QUOTA_EXHAUSTED_MARKER,
    "I apologize, but I encountered an error",
)

History = Sequence[tuple[str, str]]


class TopicCategory(Enum):
    SYMPTOMS = "Symptoms"
    TREATMENT = "Treatment"
    CAUSES = "Causes"
    PREVENTION = "Prevention"
    RESEARCH = "Research"
    DIAGNOSIS = "Diagnosis"
    COMPLICATIONS = "Complications"


@dataclass(frozen=True, slots=True)
class RelatedTopic:
    title: str
    category: TopicCategory
    description: str | None = None
    source_count: int = 0


def build_context(history: History, last_response: str) -> str:
    """Render the last few turns plus the latest answer as prompt context."""

    lines = [
        f"{'User' if role == 'user' else 'Assistant'}: {content}\n\n"
        for role, content in list(history)[-CONTEXT_MESSAGES:]
    ]
    return "".join(lines) + f"Last Response: {last_response}"


def is_error_text(text: str) -> bool:
    return text.startswith(_ERROR_PREFIXES)


def _clean_line(line: str) -> str:
    line = _NUMBERING_RE.sub("", line.strip())
    return _BULLET_RE.sub("", line).strip()


def parse_questions(response: str) -> list[str]:
    """Return question lines from a model reply, dropping noise and error strings."""

    questions: list[str] = []
    for line in response.splitlines():
        cleaned = _clean_line(line)
        if len(cleaned) <= 10 or is_error_text(cleaned):
            continue
        questions.append(cleaned)
    return questions


def parse_topics(
    response: str, category: TopicCategory, *, source_count: int = 0
) -> list[RelatedTopic]:
    """Parse ``Title | Description`` lines into :class:`RelatedTopic` entries."""

    topics: list[RelatedTopic] = []
    for line in response.splitlines():
        if not line.strip():
            continue
        title, _, description = line.partition("|")
        cleaned = _clean_line(title)
        if len(cleaned) <= 5 or is_error_text(cleaned):
            continue
        topics.append(
            RelatedTopic(
                title=cleaned,
                category=category,
                description=description.strip() or None,
                source_count=source_count,
            )
        )
    return topics[:MAX_SUGGESTIONS]


def _topic_prompt(category: TopicCategory, context: str, concepts: Iterable[str]) -> str:
    return (
        "Based on the following legal conversation, generate 3-5 related topics "
        f"in the category: {category.value}\n\n"
        f"Conversation context:\n{context}\n\n"
        f"Key concepts: {', '.join(concepts)}\n\n"
        "Guidelines:\n"
        "1. Topics should be directly related to the legal discussion\n"
        "2. Each topic should have a clear title (under 10 words)\n"
        "3. Include a brief description if helpful (under 20 words)\n"
        "4. Focus on authoritative legal information\n"
        '5. Return topics in format: "Title | Description" (one per line, description optional)\n\n'
        f"Generate related {category.value.lower()} topics:"
    )


def _follow_up_prompt(context: str) -> str:
    return (
        "Based on the following legal conversation, generate 3-5 concise, educational "
        "follow-up questions that help users learn more about the legal topic.\n\n"
        f"Conversation context:\n{context}\n\n"
        "Questions must explore the legal topic itself and never ask about the "
        "user's own situation. Keep each under 15 words. Return only the "
        "questions, one per line, without numbering or bullets."
    )


def _key_concepts(history: History, last_response: str) -> list[str]:
    text = " ".join([content for _, content in history] + [last_response])
    return [word for word in text.split() if len(word) > 5][:20]


class SuggestionService:
    """Ask the model for educational follow-up questions about the conversation."""

    def __init__(self, client: ModelClient) -> None:
        self.client = client

    async def generate_follow_up_questions(
        self, history: History, last_response: str
    ) -> list[str]:
        self.client.start_new_chat()
        prompt = _follow_up_prompt(build_context(history, last_response))
        try:
            answer = await self.client.send_text(prompt, ChatMode.GENERAL)
        except ModelClientError as exc:
            logger.warning("Follow-up generation failed", extra={"error": str(exc)})
            return []
        if is_error_text(answer.text):
            return []
        return parse_questions(answer.text)[:MAX_SUGGESTIONS]

    parse_questions = staticmethod(parse_questions)


class RelatedTopicsService:
    """Compute related topics for every :class:`TopicCategory`.

    Categories are queried one after another on a client dedicated to this
    service so the prompts never enter the main chat history. Categories that
    fail or yield nothing are left out of the result.
    """

    def __init__(self, client: ModelClient) -> None:
        self.client = client

    async def find_related_topics(
        self, history: History, last_response: str
    ) -> dict[TopicCategory, list[RelatedTopic]]:
        context = build_context(history, last_response)
        concepts = _key_concepts(history, last_response)
        topics_by_category: dict[TopicCategory, list[RelatedTopic]] = {}
        for category in TopicCategory:
            self.client.start_new_chat()
            try:
                answer = await self.client.send_text(
                    _topic_prompt(category, context, concepts), ChatMode.GENERAL
                )
            except ModelClientError as exc:
                logger.warning(
                    "Related topic generation failed",
                    extra={"category": category.value, "error": str(exc)},
                )
                continue
            if is_error_text(answer.text):
                logger.info(
                    "Stopping related topics after error reply",
                    extra={"category": category.value},
                )
                break
            topics = parse_topics(
                answer.text, category, source_count=len(answer.structured_sources)
            )
            if topics:
                topics_by_category[category] = topics
        logger.debug(
            "Related topics computed",
            extra={"categories": [category.value for category in topics_by_category]},
        )
        return topics_by_category


__all__ = [
    "RelatedTopic",
    "RelatedTopicsService",
    "SuggestionService",
    "TopicCategory",
    "build_context",
    "parse_questions",
    "parse_topics",
]
