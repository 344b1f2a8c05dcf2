"""Cooperative word-by-word reveal of assistant answers."""

from __future__ import annotations

import asyncio
import contextlib
import logging
from typing import Awaitable, Callable, Sequence

from PyQt6.QtCore import QObject, pyqtSignal

from .tokenizer import Token, join_tokens


logger = logging.getLogger(__name__)

WHITESPACE_DELAY = 0.010
WORD_DELAY = 0.040


class _RevealRun:
    """Handle for one reveal; the loop checks ``cancelled`` before each token."""

    def __init__(self, tokens: Sequence[Token]) -> None:
        self.tokens = list(tokens)
        self.cancelled = False
        self.task: asyncio.Task[None] | None = None

    def cancel(self) -> None:
        self.cancelled = True
        if self.task is not None and not self.task.done():
            self.task.cancel()


class AnimationPlayer(QObject):
    """Append tokens to an observable buffer one at a time.

    Only one run is active at a time. Stopping a run never loses text: the
    buffer jumps to the full target and ``finished`` fires as if the reveal had
    completed. Runs are scheduled on the running :mod:`asyncio` loop.
    """

    text_changed = pyqtSignal(str)
    animating_changed = pyqtSignal(bool)
    finished = pyqtSignal()

    def __init__(
        self,
        *,
        whitespace_delay: float = WHITESPACE_DELAY,
        word_delay: float = WORD_DELAY,
        sleep: Callable[[float], Awaitable[None]] | None = None,
    ) -> None:
        super().__init__()
        self.whitespace_delay = max(0.0, whitespace_delay)
        self.word_delay = max(0.0, word_delay)
        self._sleep = sleep or asyncio.sleep
        self._text = ""
        self._target = ""
        self._animating = False
        self._run: _RevealRun | None = None

    # ------------------------------------------------------------------
    @property
    def text(self) -> str:
        return self._text

    @property
    def target_text(self) -> str:
        return self._target

    @property
    def is_animating(self) -> bool:
        return self._animating

    def delay_for(self, token: Token) -> float:
        return self.whitespace_delay if token.is_whitespace else self.word_delay

    # ------------------------------------------------------------------
    def start(self, tokens: Sequence[Token]) -> None:
        """Reveal ``tokens`` after flushing any run already in progress."""

        self.stop()
        self._target = join_tokens(list(tokens))
        self._set_text("")
        if not tokens:
            logger.debug("Nothing to reveal; completing immediately")
            self.finished.emit()
            return

        run = _RevealRun(tokens)
        self._run = run
        self._set_animating(True)
        run.task = asyncio.get_running_loop().create_task(self._reveal(run))
        logger.debug("Reveal started", extra={"tokens": len(run.tokens)})

    def stop(self) -> None:
        """Cancel the active run and show its full text immediately."""

        run, self._run = self._run, None
        if run is not None:
            run.cancel()
        if self._animating:
            logger.debug("Reveal stopped early; flushing full text")
            self._set_text(self._target)
            self._complete()

    async def wait(self) -> None:
        """Wait until the active run, if any, has finished or been cancelled."""

        run = self._run
        if run is None or run.task is None:
            return
        with contextlib.suppress(asyncio.CancelledError):
            await asyncio.shield(run.task)

    # ------------------------------------------------------------------
    async def _reveal(self, run: _RevealRun) -> None:
        for token in run.tokens:
            if run.cancelled:
                return
            self._set_text(self._text + token.text)
            await self._sleep(self.delay_for(token))
        if run.cancelled:
            return
        self._run = None
        self._complete()

    def _complete(self) -> None:
        self._set_animating(False)
        self.finished.emit()

    def _set_text(self, value: str) -> None:
        if value == self._text:
            return
        self._text = value
        self.text_changed.emit(value)

    def _set_animating(self, value: bool) -> None:
        if value == self._animating:
            return
        self._animating = value
        self.animating_changed.emit(value)


__all__ = ["AnimationPlayer", "WHITESPACE_DELAY", "WORD_DELAY"]
