from __future__ import annotations

import asyncio

import pytest

from lexichat.services.delete_scheduler import DeleteScheduler


class DeleteRecorder:
    def __init__(self) -> None:
        self.deleted: list[object] = []

    def __call__(self, item_id: object) -> None:
        self.deleted.append(item_id)


def test_item_is_suppressed_then_deleted_after_delay() -> None:
    recorder = DeleteRecorder()
    scheduler = DeleteScheduler(recorder, delay=0.01)
    snapshots: list[frozenset] = []
    scheduler.suppressed_changed.connect(lambda items: snapshots.append(items))

    async def scenario() -> None:
        scheduler.schedule(7)
        assert scheduler.is_suppressed(7)
        assert scheduler.is_pending(7)
        assert recorder.deleted == []
        await asyncio.sleep(0.05)

    asyncio.run(scenario())

    assert recorder.deleted == [7]
    assert not scheduler.is_suppressed(7)
    assert not scheduler.is_pending(7)
    assert snapshots == [frozenset({7}), frozenset()]


def test_cancel_within_grace_period_never_deletes() -> None:
    recorder = DeleteRecorder()
    scheduler = DeleteScheduler(recorder, delay=0.02)

    async def scenario() -> bool:
        scheduler.schedule("conversation-1")
        await asyncio.sleep(0)
        cancelled = scheduler.cancel("conversation-1")
        await asyncio.sleep(0.05)
        return cancelled

    assert asyncio.run(scenario())
    assert recorder.deleted == []
    assert scheduler.suppressed == frozenset()
    assert not scheduler.cancel("conversation-1")


def test_force_now_deletes_immediately_and_disarms_timer() -> None:
    recorder = DeleteRecorder()
    scheduler = DeleteScheduler(recorder, delay=0.01)

    async def scenario() -> None:
        scheduler.schedule(1)
        assert scheduler.force_now(1)
        assert recorder.deleted == [1]
        await asyncio.sleep(0.03)

    asyncio.run(scenario())

    assert recorder.deleted == [1]
    assert not scheduler.force_now(1)


def test_rescheduling_keeps_a_single_pending_deletion() -> None:
    recorder = DeleteRecorder()
    scheduler = DeleteScheduler(recorder, delay=10)

    async def scenario() -> None:
        scheduler.schedule(3)
        scheduler.schedule(3, delay=0.01)
        await asyncio.sleep(0.05)

    asyncio.run(scenario())

    assert recorder.deleted == [3]


def test_flush_performs_every_pending_deletion() -> None:
    recorder = DeleteRecorder()
    scheduler = DeleteScheduler(recorder, delay=10)

    async def scenario() -> None:
        scheduler.schedule(1)
        scheduler.schedule(2)
        scheduler.flush()

    asyncio.run(scenario())

    assert sorted(recorder.deleted) == [1, 2]
    assert scheduler.suppressed == frozenset()


def test_failed_deletion_restores_visibility() -> None:
    def failing_delete(item_id: object) -> None:
        raise RuntimeError("disk full")

    scheduler = DeleteScheduler(failing_delete, delay=10)

    async def scenario() -> None:
        scheduler.schedule(5)
        with pytest.raises(RuntimeError):
            scheduler.force_now(5)

    asyncio.run(scenario())

    assert not scheduler.is_suppressed(5)
