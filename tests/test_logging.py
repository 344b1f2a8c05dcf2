from __future__ import annotations

import asyncio
import logging
import sys
from pathlib import Path

import pytest

from lexichat.logging import (
    get_log_file_path,
    install_exception_hook,
    install_loop_exception_handler,
    log_call,
)


logger = logging.getLogger("lexichat.tests.logging")


@log_call(logger=logger, include_result=True)
def _double(value: int) -> int:
    return value * 2


@log_call(logger=logger)
async def _fail_later() -> None:
    await asyncio.sleep(0)
    raise RuntimeError("backend down")


def test_log_call_records_result_without_arguments(caplog: pytest.LogCaptureFixture) -> None:
    caplog.set_level(logging.DEBUG, logger=logger.name)

    assert _double(12345) == 24690

    messages = [record.getMessage() for record in caplog.records]
    assert any(message.startswith("Calling _double") for message in messages)
    assert any("_double returned 24690" in message for message in messages)
    assert not any("12345" in message for message in messages)


def test_log_call_logs_async_failures_and_reraises(caplog: pytest.LogCaptureFixture) -> None:
    caplog.set_level(logging.DEBUG, logger=logger.name)

    with pytest.raises(RuntimeError):
        asyncio.run(_fail_later())

    failures = [record for record in caplog.records if record.levelno == logging.ERROR]
    assert len(failures) == 1
    assert "_fail_later failed after" in failures[0].getMessage()
    assert failures[0].exc_info is not None


def test_get_log_file_path_reads_file_handler(tmp_path: Path) -> None:
    target = logging.getLogger("lexichat.tests.file")
    handler = logging.FileHandler(tmp_path / "lexichat.log", encoding="utf-8")
    target.addHandler(handler)
    try:
        assert get_log_file_path(target) == tmp_path / "lexichat.log"
    finally:
        target.removeHandler(handler)
        handler.close()


def test_exception_hook_logs_then_delegates(
    caplog: pytest.LogCaptureFixture, monkeypatch: pytest.MonkeyPatch
) -> None:
    seen: list[type[BaseException]] = []
    monkeypatch.setattr(sys, "excepthook", lambda exc_type, value, tb: seen.append(exc_type))

    install_exception_hook(logger)
    install_exception_hook(logger)
    sys.excepthook(ValueError, ValueError("bad state"), None)
    sys.excepthook(KeyboardInterrupt, KeyboardInterrupt(), None)

    assert seen == [ValueError, KeyboardInterrupt]
    critical = [record for record in caplog.records if record.levelno == logging.CRITICAL]
    assert len(critical) == 1


def test_loop_handler_logs_unretrieved_task_errors(caplog: pytest.LogCaptureFixture) -> None:
    async def scenario() -> None:
        loop = asyncio.get_running_loop()
        install_loop_exception_handler(loop, logger)
        loop.call_exception_handler(
            {"message": "Task exception was never retrieved", "exception": OSError("reset")}
        )

    asyncio.run(scenario())

    errors = [record for record in caplog.records if record.levelno == logging.ERROR]
    assert errors and "never retrieved" in errors[0].getMessage()
    assert errors[0].exc_info[0] is OSError
