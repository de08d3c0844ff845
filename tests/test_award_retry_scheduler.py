from __future__ import annotations

import asyncio
import threading
from datetime import datetime, timezone

from contest import AwardRetryScheduler

CREATED = datetime(2026, 9, 2, tzinfo=timezone.utc)


def test_enqueue_is_keyed_by_user_and_order() -> None:
    scheduler = AwardRetryScheduler(lambda *_: True, max_attempts=3)
    scheduler.enqueue("tg_1", "ord_1", "plan_30", CREATED, error="db down")
    entry = scheduler.enqueue("tg_1", "ord_1", "plan_30", CREATED, error="db still down")
    scheduler.enqueue("tg_1", "ord_2", "plan_30", CREATED)

    assert len(scheduler.pending()) == 2
    assert entry.attempt_count == 2
    assert entry.last_error == "db still down"


def test_successful_retry_removes_entry() -> None:
    calls = []

    def award(user_ref, order_id, plan_id, created_at):
        calls.append((user_ref, order_id, plan_id, created_at))
        return True

    scheduler = AwardRetryScheduler(award, max_attempts=3)
    scheduler.enqueue("tg_1", "ord_1", "plan_30", CREATED, error="timeout")
    counts = asyncio.run(scheduler.run_once())

    assert counts["awarded"] == 1
    assert scheduler.pending() == []
    assert calls == [("tg_1", "ord_1", "plan_30", CREATED)]


def test_failing_entry_is_dropped_after_max_attempts() -> None:
    attempts = []

    def award(user_ref, order_id, plan_id, created_at):
        attempts.append(order_id)
        raise RuntimeError("ledger unavailable")

    scheduler = AwardRetryScheduler(award, max_attempts=3)
    scheduler.enqueue("tg_1", "ord_1", "plan_30", CREATED, error="first failure")

    first = asyncio.run(scheduler.run_once())
    assert first["failed"] == 1
    assert scheduler.pending()[0].attempt_count == 2
    assert scheduler.pending()[0].last_error == "ledger unavailable"

    second = asyncio.run(scheduler.run_once())
    assert second["failed"] == 1
    assert second["dropped"] == 0
    assert scheduler.pending()[0].attempt_count == 3

    third = asyncio.run(scheduler.run_once())
    assert third["failed"] == 1
    assert third["dropped"] == 1
    assert scheduler.pending() == []
    assert scheduler.stats()["dropped"] == 1

    fourth = asyncio.run(scheduler.run_once())
    assert fourth["failed"] == 0
    assert len(attempts) == 3


def test_entry_already_over_limit_is_dropped_without_award() -> None:
    calls = []
    scheduler = AwardRetryScheduler(lambda *args: calls.append(args) or True, max_attempts=1)
    scheduler.enqueue("tg_1", "ord_1", "plan_30", CREATED)
    scheduler.enqueue("tg_1", "ord_1", "plan_30", CREATED)

    counts = asyncio.run(scheduler.run_once())
    assert counts["dropped"] == 1
    assert calls == []


def test_deferred_award_stays_queued() -> None:
    scheduler = AwardRetryScheduler(lambda *_: False, max_attempts=5)
    scheduler.enqueue("tg_1", "ord_1", "plan_30", CREATED)
    counts = asyncio.run(scheduler.run_once())
    assert counts["deferred"] == 1
    assert scheduler.pending()[0].attempt_count == 2


def test_recovery_scan_runs_after_drain() -> None:
    scheduler = AwardRetryScheduler(lambda *_: True, recovery=lambda: 4)
    counts = asyncio.run(scheduler.run_once())
    assert counts["recovered"] == 4
    assert scheduler.stats()["recovered"] == 4


def test_recovery_failure_is_contained() -> None:
    def recovery() -> int:
        raise RuntimeError("billing db offline")

    scheduler = AwardRetryScheduler(lambda *_: True, recovery=recovery)
    counts = asyncio.run(scheduler.run_once())
    assert counts["recovered"] == 0


def test_overlapping_tick_is_skipped() -> None:
    started = threading.Event()
    release = threading.Event()

    def slow_award(*_args):
        started.set()
        release.wait(timeout=5)
        return True

    scheduler = AwardRetryScheduler(slow_award)
    scheduler.enqueue("tg_1", "ord_1", "plan_30", CREATED)

    async def scenario():
        first = asyncio.create_task(scheduler.run_once())
        await asyncio.to_thread(started.wait, 5)
        overlapped = await scheduler.run_once()
        release.set()
        return overlapped, await first

    overlapped, first = asyncio.run(scenario())
    assert overlapped == {"skipped": 1}
    assert first["awarded"] == 1
    assert scheduler.stats()["skipped_ticks"] == 1


def test_start_and_stop_register_single_job() -> None:
    scheduler = AwardRetryScheduler(lambda *_: True, interval_seconds=60)

    async def scenario():
        scheduler.start()
        scheduler.start()
        jobs = scheduler._scheduler.get_jobs()
        running = scheduler.stats()["running"]
        scheduler.stop()
        return jobs, running

    jobs, running = asyncio.run(scenario())
    assert running is True
    assert [job.id for job in jobs] == ["contest_award_retry"]
    assert jobs[0].max_instances == 1
    assert scheduler.stats()["running"] is False
