"""Logging setup and the ``log_call`` tracing decorator."""

from __future__ import annotations

import asyncio
import functools
import inspect
import logging
import sys
import time
from pathlib import Path
from typing import Any, Callable, Optional

from .config import get_user_config_dir

LOG_FILENAME = "lexichat.log"
LOG_FORMAT = "%(asctime)s - %(name)s - %(levelname)s - %(message)s"
LOG_DATE_FORMAT = "%Y-%m-%d %H:%M:%S"
MAX_RESULT_REPR = 500


def setup_logging(
    *,
    level: int = logging.INFO,
    log_dir: Optional[Path] = None,
) -> logging.Logger:
    """Send records to ``lexichat.log`` and warnings to ``stderr``.

    Handlers go on the root logger so every module logger inherits them. The
    console handler only shows warnings and above; the answer text printed by
    the CLI goes to ``stdout`` and must stay readable.
    """

    logger = logging.getLogger("lexichat")
    root_logger = logging.getLogger()
    if root_logger.handlers:
        return logger

    log_path = (log_dir or get_user_config_dir()) / LOG_FILENAME
    formatter = logging.Formatter(LOG_FORMAT, datefmt=LOG_DATE_FORMAT)
    file_handler = logging.FileHandler(log_path, encoding="utf-8")
    console_handler = logging.StreamHandler(sys.stderr)
    console_handler.setLevel(logging.WARNING)
    for handler in (file_handler, console_handler):
        handler.setFormatter(formatter)
        root_logger.addHandler(handler)
    root_logger.setLevel(level)

    logger.info(
        "Logging initialised",
        extra={"log_path": str(log_path), "level": logging.getLevelName(level)},
    )
    return logger


def get_log_file_path(logger: Optional[logging.Logger] = None) -> Optional[Path]:
    """Return the file the root logger (or ``logger``) writes to, if any."""

    candidates = list(logger.handlers) if logger is not None else []
    candidates.extend(logging.getLogger().handlers)
    for handler in candidates:
        filename = getattr(handler, "baseFilename", None)
        if filename:
            return Path(filename)
    return None


def _flush_handlers() -> None:
    for handler in logging.getLogger().handlers:
        try:
            handler.flush()
        except (OSError, ValueError):  # pragma: no cover - closed stream
            continue


def install_exception_hook(logger: logging.Logger) -> None:
    """Log uncaught exceptions as ``CRITICAL`` before the interpreter reports them."""

    default_hook = sys.excepthook
    if getattr(default_hook, "_lexichat_hook", False):
        return

    def handle_exception(exc_type, exc_value, exc_traceback):
        if not issubclass(exc_type, KeyboardInterrupt):
            logger.critical(
                "Unhandled exception", exc_info=(exc_type, exc_value, exc_traceback)
            )
            _flush_handlers()
        default_hook(exc_type, exc_value, exc_traceback)

    handle_exception._lexichat_hook = True  # type: ignore[attr-defined]
    sys.excepthook = handle_exception


def install_loop_exception_handler(
    loop: asyncio.AbstractEventLoop, logger: logging.Logger
) -> None:
    """Log exceptions from tasks nobody awaited (background suggestions, timers)."""

    def handle(loop: asyncio.AbstractEventLoop, context: dict[str, Any]) -> None:
        exception = context.get("exception")
        logger.error(
            "Unhandled error in event loop: %s",
            context.get("message", "no message"),
            exc_info=exception if isinstance(exception, BaseException) else None,
        )

    loop.set_exception_handler(handle)


def _short_repr(value: Any) -> str:
    try:
        text = repr(value)
    except Exception:  # noqa: BLE001 - any __repr__ may fail
        text = object.__repr__(value)
    if len(text) > MAX_RESULT_REPR:
        return text[: MAX_RESULT_REPR - 3] + "..."
    return text


def log_call(
    *,
    logger: Optional[logging.Logger] = None,
    include_result: bool = False,
) -> Callable[[Any], Any]:
    """Trace entry, duration and failure of the decorated function at ``DEBUG``.

    Arguments are never logged since they carry user text and image bytes.
    Coroutine functions get a coroutine wrapper so the timing covers the
    awaited body. Failures are logged with the traceback and re-raised.
    """

    def decorator(func: Any) -> Any:
        target = logger or logging.getLogger(func.__module__)
        name = func.__qualname__

        def finished(start: float, result: Any) -> None:
            elapsed = time.perf_counter() - start
            if include_result:
                target.debug("%s returned %s (%.3fs)", name, _short_repr(result), elapsed)
            else:
                target.debug("%s completed in %.3fs", name, elapsed)

        def failed(start: float) -> None:
            target.error(
                "%s failed after %.3fs", name, time.perf_counter() - start, exc_info=True
            )

        if inspect.iscoroutinefunction(func):

            @functools.wraps(func)
            async def async_wrapper(*args: Any, **kwargs: Any) -> Any:
                target.debug("Calling %s", name)
                start = time.perf_counter()
                try:
                    result = await func(*args, **kwargs)
                except Exception:
                    failed(start)
                    raise
                finished(start, result)
                return result

            return async_wrapper

        @functools.wraps(func)
        def wrapper(*args: Any, **kwargs: Any) -> Any:
            target.debug("Calling %s", name)
            start = time.perf_counter()
            try:
                result = func(*args, **kwargs)
            except Exception:
                failed(start)
                raise
            finished(start, result)
            return result

        return wrapper

    return decorator


__all__ = [
    "get_log_file_path",
    "install_exception_hook",
    "install_loop_exception_handler",
    "log_call",
    "setup_logging",
]
