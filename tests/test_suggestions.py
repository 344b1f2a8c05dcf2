from __future__ import annotations

import asyncio

from lexichat.services.model_client import ChatMode, ModelResponseError, QUOTA_EXHAUSTED_MARKER
from lexichat.services.response_pipeline import RawAnswer
from lexichat.services.suggestions import (
    RelatedTopic,
    RelatedTopicsService,
    SuggestionService,
    TopicCategory,
    build_context,
    parse_questions,
    parse_topics,
)


class ScriptedClient:
    def __init__(self, replies: list[str | Exception]) -> None:
        self.replies = list(replies)
        self.prompts: list[str] = []
        self.new_chats = 0

    async def send_text(self, message: str, mode: ChatMode = ChatMode.GENERAL) -> RawAnswer:
        self.prompts.append(message)
        reply = self.replies.pop(0) if self.replies else ""
        if isinstance(reply, Exception):
            raise reply
        return RawAnswer.create(reply)

    def start_new_chat(self) -> None:
        self.new_chats += 1


HISTORY = [
    ("user", "What is adverse possession?"),
    ("assistant", "Adverse possession lets a trespasser acquire title."),
    ("user", "How long does it take?"),
    ("assistant", "Statutory periods vary by state."),
    ("user", "Does California differ?"),
]


def test_build_context_uses_last_four_messages() -> None:
    context = build_context(HISTORY, "Yes, five years with taxes paid.")

    assert "What is adverse possession?" not in context
    assert context.startswith("Assistant: Adverse possession")
    assert context.endswith("Last Response: Yes, five years with taxes paid.")


def test_parse_questions_strips_numbering_and_noise() -> None:
    reply = "1. What is color of title?\n- Short?\n\n* How is tacking applied in practice?\n"

    assert parse_questions(reply) == [
        "What is color of title?",
        "How is tacking applied in practice?",
    ]
    assert parse_questions(f"{QUOTA_EXHAUSTED_MARKER} try later please") == []


def test_parse_topics_reads_title_and_description() -> None:
    reply = "Color of title | Claim based on a defective deed\nTax | too short\n2. Tacking periods\n"

    topics = parse_topics(reply, TopicCategory.RESEARCH, source_count=2)

    assert topics == [
        RelatedTopic(
            title="Color of title",
            category=TopicCategory.RESEARCH,
            description="Claim based on a defective deed",
            source_count=2,
        ),
        RelatedTopic(title="Tacking periods", category=TopicCategory.RESEARCH, source_count=2),
    ]


def test_follow_up_questions_use_fresh_chat() -> None:
    client = ScriptedClient(["What is tacking?\nWhat is hostile possession?"])
    service = SuggestionService(client)

    questions = asyncio.run(service.generate_follow_up_questions(HISTORY, "Answer."))

    assert questions == ["What is tacking?", "What is hostile possession?"]
    assert client.new_chats == 1
    assert "Last Response: Answer." in client.prompts[0]


def test_follow_up_questions_are_empty_on_failure() -> None:
    service = SuggestionService(ScriptedClient([ModelResponseError("boom", status=500)]))

    assert asyncio.run(service.generate_follow_up_questions(HISTORY, "Answer.")) == []


def test_related_topics_skip_failed_categories_and_stop_on_error_text() -> None:
    client = ScriptedClient(
        [
            "Open and notorious use | Visible occupation",
            ModelResponseError("boom", status=500),
            "",
            f"{QUOTA_EXHAUSTED_MARKER} limit reached",
            "Never requested topic",
        ]
    )
    service = RelatedTopicsService(client)

    topics = asyncio.run(service.find_related_topics(HISTORY, "Answer."))

    categories = list(TopicCategory)
    assert list(topics) == [categories[0]]
    assert topics[categories[0]][0].title == "Open and notorious use"
    assert len(client.prompts) == 4
    assert client.new_chats == 4
    assert f"category: {categories[0].value}" in client.prompts[0]
