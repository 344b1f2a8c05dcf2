from __future__ import annotations

import asyncio

from lexichat.services.animation import AnimationPlayer
from lexichat.services.tokenizer import tokenize


class Recorder:
    def __init__(self, player: AnimationPlayer) -> None:
        self.texts: list[str] = []
        self.animating: list[bool] = []
        self.finished = 0
        player.text_changed.connect(self._on_text)
        player.animating_changed.connect(self._on_animating)
        player.finished.connect(self._on_finished)

    def _on_text(self, text: str) -> None:
        self.texts.append(text)

    def _on_animating(self, value: bool) -> None:
        self.animating.append(value)

    def _on_finished(self) -> None:
        self.finished += 1


def _player_with_recorded_delays() -> tuple[AnimationPlayer, list[float]]:
    delays: list[float] = []

    async def fake_sleep(delay: float) -> None:
        delays.append(delay)
        await asyncio.sleep(0)

    return AnimationPlayer(whitespace_delay=0.01, word_delay=0.04, sleep=fake_sleep), delays


def test_reveal_runs_to_completion() -> None:
    player, delays = _player_with_recorded_delays()
    recorder = Recorder(player)

    async def scenario() -> None:
        player.start(tokenize("Hello  world [1]"))
        assert player.is_animating
        await player.wait()

    asyncio.run(scenario())

    assert player.text == "Hello  world [1]"
    assert recorder.texts == ["Hello", "Hello  ", "Hello  world", "Hello  world ", "Hello  world [1]"]
    assert delays == [0.04, 0.01, 0.04, 0.01, 0.04]
    assert recorder.animating == [True, False]
    assert recorder.finished == 1
    assert not player.is_animating


def test_stop_flushes_full_text_and_finishes_once() -> None:
    player, _ = _player_with_recorded_delays()
    recorder = Recorder(player)
    target = "One two three four five"

    async def scenario() -> None:
        player.start(tokenize(target))
        await asyncio.sleep(0)
        assert player.text == "One"
        assert player.target_text == target
        player.stop()
        assert player.text == target
        for _ in range(10):
            await asyncio.sleep(0)

    asyncio.run(scenario())

    assert player.text == target
    assert recorder.finished == 1
    assert recorder.animating == [True, False]


def test_stop_when_idle_does_nothing() -> None:
    player, _ = _player_with_recorded_delays()
    recorder = Recorder(player)

    player.stop()

    assert recorder.finished == 0
    assert recorder.texts == []


def test_empty_tokens_finish_without_animating() -> None:
    player, _ = _player_with_recorded_delays()
    recorder = Recorder(player)

    player.start([])

    assert recorder.finished == 1
    assert recorder.animating == []
    assert player.text == ""


def test_starting_again_flushes_previous_run() -> None:
    player, _ = _player_with_recorded_delays()
    recorder = Recorder(player)

    async def scenario() -> None:
        player.start(tokenize("first message here"))
        await asyncio.sleep(0)
        player.start(tokenize("second"))
        assert "first message here" in recorder.texts
        assert recorder.finished == 1
        await player.wait()

    asyncio.run(scenario())

    assert player.text == "second"
    assert recorder.finished == 2


def test_real_sleep_with_zero_delays() -> None:
    player = AnimationPlayer(whitespace_delay=0, word_delay=0)

    async def scenario() -> None:
        player.start(tokenize("quick reveal"))
        await player.wait()

    asyncio.run(scenario())

    assert player.text == "quick reveal"
    assert player.delay_for(tokenize(" ")[0]) == 0
