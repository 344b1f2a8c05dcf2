"""Entry point for the LexiChat console client."""

from __future__ import annotations

import argparse
import asyncio
import logging
import sys
from pathlib import Path
from typing import Sequence

from .config import get_user_config_dir, load_settings, write_default_settings
from .errors import ChatError
from .logging import (
    get_log_file_path,
    install_exception_hook,
    install_loop_exception_handler,
    setup_logging,
)
from .services.chat_orchestrator import ChatOrchestrator
from .services.contract_scanner import ContractAnalysisResult, ContractScanner
from .services.delete_scheduler import DeleteScheduler
from .services.export_service import ExportService
from .services.model_client import ChatMode, GeminiClient
from .services.suggestions import RelatedTopicsService, SuggestionService
from .storage import ConversationRepository, DatabaseError, DatabaseManager


DATABASE_FILENAME = "lexichat.db"
IMAGE_SUFFIXES = frozenset({".png", ".jpg", ".jpeg", ".gif", ".webp", ".heic"})
HELP_TEXT = """Commands:
  /new                        start a new conversation
  /mode NAME                  switch focus (general, contracts, case_law, regulations)
  /retry                      retry the last failed question on the fallback model
  /image PATH [QUESTION]      ask about an image
  /doc PATH [QUESTION]        ask about a PDF, Word or text document
  /scan PATH                  check a contract (PDF, Word, text or photo) for red flags
  /history [bookmarked|TEXT]  list saved conversations, bookmarked ones or matches
  /bookmark ID                bookmark or unbookmark a conversation
  /open ID                    continue a saved conversation
  /delete ID                  delete a conversation (undo with /undo within the grace period)
  /undo                       cancel the last pending delete
  /export PATH                export the current conversation (.md, .txt or .html)
  /quit                       exit"""



class ConsoleView:
    """Print orchestrator output to a text stream as it is revealed."""

    def __init__(self, orchestrator: ChatOrchestrator, stream=None) -> None:
        self.orchestrator = orchestrator
        self.stream = stream or sys.stdout
        self._shown = ""
        orchestrator.player.text_changed.connect(self._on_text)
        orchestrator.error_changed.connect(self._on_error)
        orchestrator.message_committed.connect(self._on_committed)
        orchestrator.follow_ups_changed.connect(self._on_follow_ups)
        orchestrator.quota_retry_changed.connect(self._on_quota_retry)
        orchestrator.related_topics_changed.connect(self._on_related_topics)

    def _write(self, text: str) -> None:
        self.stream.write(text)
        self.stream.flush()

    def _on_text(self, text: str) -> None:
        if text.startswith(self._shown):
            self._write(text[len(self._shown) :])
        else:
            self._write(text)
        self._shown = text

    def _on_error(self, message: str) -> None:
        if message:
            self._write(f"\n! {message}\n")

    def _on_quota_retry(self, enabled: bool) -> None:
        if enabled:
            self._write("  Type /retry to try the fallback model.\n")

    def _on_committed(self, message) -> None:
        self._shown = ""
        self._write("\n")
        for index, source in enumerate(message.sources, start=1):
            self._write(f"  [{index}] {source.title}: {source.url}\n")

    def _on_follow_ups(self, questions: list) -> None:
        for question in questions:
            self._write(f"  ? {question}\n")

    def _on_related_topics(self, topics: dict) -> None:
        for category, entries in topics.items():
            titles = ", ".join(topic.title for topic in entries)
            self._write(f"  {category.value}: {titles}\n")


def format_contract_report(result: ContractAnalysisResult) -> str:
    """Render a contract analysis as indented console text."""

    lines = [f"Safety score: {result.safety_score}/100 ({result.score_label})", result.summary]
    for marker, heading, clauses in (
        ("!", "Red flags", result.danger_clauses),
        ("+", "In your favour", result.safe_clauses),
    ):
        if not clauses:
            continue
        lines.append(f"{heading}:")
        for clause in clauses:
            lines.append(f"  {marker} {clause.title}")
            lines.append(f'    "{clause.quote}"')
            lines.append(f"    {clause.explanation}")
            if clause.fix:
                lines.append(f"    Fix: {clause.fix}")
    return "\n".join(lines)


def _parse_args(argv: Sequence[str] | None) -> argparse.Namespace:
    parser = argparse.ArgumentParser(prog="lexichat", description="Legal information chat client")
    parser.add_argument(
        "--mode",
        choices=[mode.value for mode in ChatMode],
        default=None,
        help="answering focus (defaults to the configured mode)",
    )
    parser.add_argument("--database", type=Path, default=None, help="conversation database path")
    parser.add_argument(
        "--related-topics",
        action="store_true",
        help="compute related topics after each answer (several extra model calls)",
    )
    parser.add_argument("--debug", action="store_true", help="enable debug logging")
    return parser.parse_args(argv)


async def _read_line(prompt: str) -> str | None:
    try:
        return await asyncio.to_thread(input, prompt)
    except EOFError:
        return None


async def _run(args: argparse.Namespace, logger: logging.Logger) -> int:
    install_loop_exception_handler(asyncio.get_running_loop(), logger)
    write_default_settings()
    settings = load_settings()
    database_path = args.database or get_user_config_dir() / DATABASE_FILENAME
    database = DatabaseManager(database_path)
    database.initialize()
    store = ConversationRepository(database)
    store.cleanup_empty_conversations()

    topics = (
        RelatedTopicsService(GeminiClient.from_settings(settings)) if args.related_topics else None
    )
    orchestrator = ChatOrchestrator(
        GeminiClient.from_settings(settings),
        store,
        settings=settings,
        related_topics=topics,
        suggestions=SuggestionService(GeminiClient.from_settings(settings)),
        mode=args.mode,
    )
    scanner = ContractScanner(GeminiClient.from_settings(settings))
    view = ConsoleView(orchestrator)  # noqa: F841 - keeps the slots connected
    exporter = ExportService()
    deletes = DeleteScheduler(store.delete_conversation, delay=settings.delete_grace_period)
    last_deleted: int | None = None
    logger.info("Console session started", extra={"database": str(database_path)})
    print(f"LexiChat ({orchestrator.mode.label}). Type /help for commands.")

    try:
        while True:
            line = await _read_line("> ")
            if line is None:
                break
            line = line.strip()
            if not line:
                continue
            command, _, rest = line.partition(" ")
            rest = rest.strip()
            if command in {"/quit", "/exit"}:
                break
            if command == "/help":
                print(HELP_TEXT)
                log_path = get_log_file_path(logger)
                if log_path is not None:
                    print(f"Log file: {log_path}")
            elif command == "/new":
                orchestrator.start_new_conversation()
                print("Started a new conversation.")
            elif command == "/mode" and rest:
                orchestrator.set_mode(rest)
                print(f"Mode: {orchestrator.mode.label}")
            elif command == "/retry":
                await orchestrator.retry_with_fallback()
            elif command in {"/image", "/doc"}:
                path_text, _, question = rest.partition(" ")
                path = Path(path_text).expanduser()
                if command == "/image":
                    try:
                        image = path.read_bytes()
                    except OSError as exc:
                        print(f"! Could not read image: {exc}")
                        continue
                    await orchestrator.send(question, image=image)
                else:
                    await orchestrator.send(question, document=path)
            elif command == "/history":
                if rest == "bookmarked":
                    records = store.list_conversations(bookmarked_only=True)
                elif rest:
                    records = store.search_conversations(rest)
                else:
                    records = store.list_conversations()
                for record in records:
                    if deletes.is_suppressed(record.id):
                        continue
                    mark = "*" if record.bookmarked else " "
                    print(
                        f" {mark}{record.id:>4}  {record.title or 'Untitled'}"
                        f" ({record.message_count} messages)"
                    )
            elif command == "/bookmark" and rest.isdigit():
                try:
                    bookmarked = store.toggle_bookmark(int(rest))
                except DatabaseError as exc:
                    print(f"! {exc}")
                    continue
                print(f"Conversation {rest} {'bookmarked' if bookmarked else 'unbookmarked'}.")
            elif command == "/scan" and rest:
                path = Path(rest).expanduser()
                print("Scanning contract for red flags...")
                try:
                    if path.suffix.lower() in IMAGE_SUFFIXES:
                        result = await scanner.analyze_image(path.read_bytes())
                    else:
                        result = await scanner.analyze_document(path)
                except OSError as exc:
                    print(f"! Could not read file: {exc}")
                    continue
                except ChatError as exc:
                    print(f"! {exc.message}")
                    continue
                print(format_contract_report(result))
            elif command == "/open" and rest.isdigit():
                for message in orchestrator.load_conversation(int(rest)):
                    label = "You" if message.is_user else "LexiChat"
                    print(f"{label}: {message.content}\n")
            elif command == "/delete" and rest.isdigit():
                last_deleted = int(rest)
                if last_deleted == orchestrator.conversation_id:
                    orchestrator.start_new_conversation()
                deletes.schedule(last_deleted)
                print(f"Conversation {last_deleted} deleted. /undo to restore.")
            elif command == "/undo":
                if last_deleted is not None and deletes.cancel(last_deleted):
                    print(f"Conversation {last_deleted} restored.")
                last_deleted = None
            elif command == "/export" and rest:
                conversation_id = orchestrator.conversation_id
                if conversation_id is None:
                    print("! Nothing to export yet.")
                    continue
                suffix = Path(rest).suffix.lower()
                export_format = {".txt": "text", ".html": "html", ".htm": "html"}.get(suffix, "markdown")
                record = store.get(conversation_id)
                path = exporter.export_conversation(
                    rest,
                    store.list_messages(conversation_id),
                    title=record.title if record else None,
                    format=export_format,
                )
                print(f"Exported to {path}")
            elif command.startswith("/"):
                print(HELP_TEXT)
            else:
                await orchestrator.send(line)
            await orchestrator.player.wait()
    finally:
        orchestrator.player.stop()
        deletes.flush()
        database.close()
        logger.info("Console session finished")
    return 0


def main(argv: Sequence[str] | None = None) -> int:
    """Start the interactive console client."""
    args = _parse_args(argv)
    logger = setup_logging(level=logging.DEBUG if args.debug else logging.INFO)
    install_exception_hook(logger)
    logger.debug("Starting console client")
    try:
        return asyncio.run(_run(args, logger))
    except KeyboardInterrupt:
        logger.info("Interrupted by user")
        return 130


if __name__ == "__main__":
    sys.exit(main())
