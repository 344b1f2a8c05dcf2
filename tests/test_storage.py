from __future__ import annotations

import sqlite3
from pathlib import Path

import pytest

from lexichat.services.sources import Source
from lexichat.storage import (
    ConversationRepository,
    ConversationStore,
    DatabaseError,
    DatabaseManager,
)
from lexichat.storage.database import SCHEMA_VERSION


@pytest.fixture()
def database(tmp_path: Path) -> DatabaseManager:
    db_path = tmp_path / "lexichat.db"
    manager = DatabaseManager(db_path)
    manager.initialize()
    yield manager
    manager.close()


@pytest.fixture()
def conversations(database: DatabaseManager) -> ConversationRepository:
    return ConversationRepository(database)


def test_repository_satisfies_store_protocol(conversations: ConversationRepository) -> None:
    assert isinstance(conversations, ConversationStore)


def test_initialize_is_idempotent_and_sets_version(database: DatabaseManager) -> None:
    database.initialize()

    version = database.connect().execute("PRAGMA user_version").fetchone()[0]
    assert version == SCHEMA_VERSION


def test_newer_incompatible_schema_is_rejected(tmp_path: Path) -> None:
    path = tmp_path / "future.db"
    connection = sqlite3.connect(path)
    connection.execute("PRAGMA user_version = 99")
    connection.close()

    manager = DatabaseManager(path)
    with pytest.raises(DatabaseError):
        manager.initialize()
    manager.close()


def test_transient_conversation_becomes_persistent(conversations: ConversationRepository) -> None:
    conversation_id = conversations.create_transient_conversation("contracts")

    record = conversations.get(conversation_id)
    assert record is not None
    assert record.mode == "contracts"
    assert not record.is_persistent
    assert conversations.list_conversations() == []
    assert len(conversations.list_conversations(include_transient=True)) == 1

    conversations.append_message(conversation_id, "Is an email a binding contract?", "user")

    record = conversations.get(conversation_id)
    assert record is not None
    assert record.is_persistent
    assert record.title == "Is an email a binding contract?"
    assert record.message_count == 1
    assert [item.id for item in conversations.list_conversations()] == [conversation_id]


def test_long_first_message_is_truncated_for_title(conversations: ConversationRepository) -> None:
    conversation_id = conversations.create_transient_conversation()
    question = "Explain " + "the doctrine of promissory estoppel " * 4

    conversations.append_message(conversation_id, question, "user")
    conversations.append_message(conversation_id, "A second question", "user")

    title = conversations.get(conversation_id).title
    assert title.endswith("...")
    assert len(title) <= 53
    assert title.startswith("Explain the doctrine")


def test_messages_round_trip_sources_and_follow_ups(conversations: ConversationRepository) -> None:
    conversation_id = conversations.create_transient_conversation()
    sources = [Source(title="LII", url="https://law.cornell.edu", snippet="Wex entry")]

    conversations.append_message(conversation_id, "Question", "user")
    stored = conversations.append_message(
        conversation_id,
        "Answer [1]",
        "assistant",
        sources=sources,
        follow_ups=["What next?"],
    )

    assert stored.sources == tuple(sources)
    assert stored.follow_ups == ("What next?",)
    messages = conversations.list_messages(conversation_id)
    assert [message.role for message in messages] == ["user", "assistant"]
    assert messages[0].is_user
    assert messages[0].sources == ()
    assert messages[1] == stored


def test_append_rejects_unknown_role_and_missing_conversation(
    conversations: ConversationRepository,
) -> None:
    conversation_id = conversations.create_transient_conversation()

    with pytest.raises(ValueError):
        conversations.append_message(conversation_id, "hi", "system")
    with pytest.raises(DatabaseError):
        conversations.append_message(conversation_id + 100, "hi", "user")


def test_delete_conversation_cascades(
    conversations: ConversationRepository, database: DatabaseManager
) -> None:
    conversation_id = conversations.create_transient_conversation()
    conversations.append_message(conversation_id, "Question", "user")

    conversations.delete_conversation(conversation_id)

    assert conversations.get(conversation_id) is None
    remaining = database.connect().execute("SELECT COUNT(*) FROM messages").fetchone()[0]
    assert remaining == 0


def test_cleanup_removes_only_empty_transient_conversations(
    conversations: ConversationRepository,
) -> None:
    empty_id = conversations.create_transient_conversation()
    kept_id = conversations.create_transient_conversation()
    conversations.append_message(kept_id, "Question", "user")

    removed = conversations.cleanup_empty_conversations()

    assert removed == 1
    assert conversations.get(empty_id) is None
    assert conversations.get(kept_id) is not None
    assert conversations.cleanup_empty_conversations() == 0


def test_version_one_database_gains_bookmark_column(tmp_path: Path) -> None:
    path = tmp_path / "old.db"
    connection = sqlite3.connect(path)
    connection.executescript(
        """
        CREATE TABLE conversations (
            id INTEGER PRIMARY KEY AUTOINCREMENT,
            title TEXT,
            mode TEXT NOT NULL DEFAULT 'general',
            is_persistent INTEGER NOT NULL DEFAULT 0,
            created_at TEXT NOT NULL DEFAULT '2024-01-01T00:00:00Z',
            updated_at TEXT NOT NULL DEFAULT '2024-01-01T00:00:00Z'
        );
        INSERT INTO conversations (title, is_persistent) VALUES ('Old question', 1);
        PRAGMA user_version = 1;
        """
    )
    connection.close()

    manager = DatabaseManager(path)
    manager.initialize()
    repository = ConversationRepository(manager)

    (record,) = repository.list_conversations()
    assert record.title == "Old question"
    assert not record.bookmarked
    assert repository.toggle_bookmark(record.id)
    version = manager.connect().execute("PRAGMA user_version").fetchone()[0]
    assert version == SCHEMA_VERSION
    manager.close()


def test_toggle_bookmark_filters_history(conversations: ConversationRepository) -> None:
    kept_id = conversations.create_transient_conversation()
    other_id = conversations.create_transient_conversation()
    conversations.append_message(kept_id, "Adverse possession", "user")
    conversations.append_message(other_id, "Easements", "user")

    assert conversations.toggle_bookmark(kept_id) is True

    assert conversations.get(kept_id).bookmarked
    assert [record.id for record in conversations.list_conversations(bookmarked_only=True)] == [
        kept_id
    ]
    assert {record.id for record in conversations.list_conversations()} == {kept_id, other_id}

    assert conversations.toggle_bookmark(kept_id) is False
    assert conversations.list_conversations(bookmarked_only=True) == []


def test_toggle_bookmark_on_missing_conversation_raises(
    conversations: ConversationRepository,
) -> None:
    with pytest.raises(DatabaseError):
        conversations.toggle_bookmark(404)


def test_search_matches_titles_and_message_content(conversations: ConversationRepository) -> None:
    first = conversations.create_transient_conversation()
    second = conversations.create_transient_conversation()
    conversations.append_message(first, "What is a lease?", "user")
    conversations.append_message(second, "Tenant rights", "user")
    conversations.append_message(second, "A LEASE transfers possession.", "assistant")

    matches = conversations.search_conversations("lease")

    assert {record.id for record in matches} == {first, second}
    assert [record.id for record in conversations.search_conversations("tenant")] == [second]
    assert conversations.search_conversations("bankruptcy") == []


def test_update_follow_ups_persists_suggestions(conversations: ConversationRepository) -> None:
    conversation_id = conversations.create_transient_conversation()
    stored = conversations.append_message(conversation_id, "Answer", "assistant")

    conversations.update_follow_ups(stored.id, ["What is consideration?"])

    (message,) = conversations.list_messages(conversation_id)
    assert message.follow_ups == ("What is consideration?",)
