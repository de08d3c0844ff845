from __future__ import annotations

import asyncio
import logging
from collections.abc import Callable
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Optional

from apscheduler.schedulers.asyncio import AsyncIOScheduler
from apscheduler.triggers.interval import IntervalTrigger

from config import AWARD_RETRY_INTERVAL_SECONDS, AWARD_RETRY_MAX_ATTEMPTS
from observability import get_logger, log_event
from runtime_metrics import record_counter_metric

_LOGGER = get_logger("subvpn.contest.scheduler")
_JOB_ID = "contest_award_retry"

AwardFn = Callable[[str, str, str, datetime], bool]
RecoveryFn = Callable[[], int]


def _utc_now() -> datetime:
    return datetime.now(timezone.utc)


@dataclass
class RetryEntry:
    user_ref: str
    order_id: str
    plan_id: str
    order_created_at: datetime
    attempt_count: int = 1
    last_error: Optional[str] = None
    updated_at: datetime = field(default_factory=_utc_now)

    @property
    def key(self) -> tuple[str, str]:
        return (self.user_ref, self.order_id)


class AwardRetryScheduler:
    """
    In-memory retry queue for ticket awards that failed during settlement.

    The queue is process-local and lost on restart; the recovery scan run after
    each drain re-derives anything the queue forgot from the paid orders.
    """

    def __init__(
        self,
        award: AwardFn,
        *,
        interval_seconds: int = AWARD_RETRY_INTERVAL_SECONDS,
        max_attempts: int = AWARD_RETRY_MAX_ATTEMPTS,
        recovery: Optional[RecoveryFn] = None,
        clock: Callable[[], datetime] = _utc_now,
    ) -> None:
        self._award = award
        self.interval_seconds = max(1, int(interval_seconds))
        self.max_attempts = max(1, int(max_attempts))
        self._recovery = recovery
        self._clock = clock
        self._queue: dict[tuple[str, str], RetryEntry] = {}
        self._busy = False
        self._scheduler: Optional[AsyncIOScheduler] = None
        self._ticks = 0
        self._skipped_ticks = 0
        self._dropped = 0
        self._recovered = 0

    def enqueue(
        self,
        user_ref: str,
        order_id: str,
        plan_id: str,
        order_created_at: datetime,
        error: Optional[str] = None,
    ) -> RetryEntry:
        key = (user_ref, order_id)
        entry = self._queue.get(key)
        if entry is None:
            entry = RetryEntry(
                user_ref=user_ref,
                order_id=order_id,
                plan_id=plan_id,
                order_created_at=order_created_at,
                last_error=error,
                updated_at=self._clock(),
            )
            self._queue[key] = entry
        else:
            entry.attempt_count += 1
            entry.last_error = error
            entry.updated_at = self._clock()
        log_event(
            _LOGGER,
            logging.INFO,
            "contest.retry.enqueued",
            user_ref=user_ref,
            order_id=order_id,
            attempt_count=entry.attempt_count,
            error=error,
        )
        return entry

    def pending(self) -> list[RetryEntry]:
        return list(self._queue.values())

    def _bump(self, entry: RetryEntry, error: Optional[str]) -> None:
        entry.attempt_count += 1
        entry.last_error = error
        entry.updated_at = self._clock()

    async def run_once(self) -> dict[str, int]:
        """Drain the queue once. Returns per-outcome counts; a tick that overlaps a running one is skipped."""

        if self._busy:
            self._skipped_ticks += 1
            log_event(_LOGGER, logging.DEBUG, "contest.retry.tick_skipped")
            return {"skipped": 1}
        self._busy = True
        self._ticks += 1
        counts = {"awarded": 0, "deferred": 0, "failed": 0, "dropped": 0, "recovered": 0}
        try:
            for entry in list(self._queue.values()):
                if entry.attempt_count > self.max_attempts:
                    self._drop(entry)
                    counts["dropped"] += 1
                    continue
                try:
                    awarded = await asyncio.to_thread(
                        self._award,
                        entry.user_ref,
                        entry.order_id,
                        entry.plan_id,
                        entry.order_created_at,
                    )
                except Exception as exc:  # noqa: BLE001
                    self._bump(entry, str(exc))
                    counts["failed"] += 1
                    log_event(
                        _LOGGER,
                        logging.WARNING,
                        "contest.retry.failed",
                        order_id=entry.order_id,
                        attempt_count=entry.attempt_count,
                        error=str(exc),
                    )
                else:
                    if awarded:
                        self._queue.pop(entry.key, None)
                        counts["awarded"] += 1
                        record_counter_metric(name="contest.retry.awarded")
                    else:
                        self._bump(entry, entry.last_error)
                        counts["deferred"] += 1
                if entry.key in self._queue and entry.attempt_count > self.max_attempts:
                    self._drop(entry)
                    counts["dropped"] += 1

            if self._recovery is not None:
                try:
                    recovered = await asyncio.to_thread(self._recovery)
                except Exception as exc:  # noqa: BLE001
                    log_event(_LOGGER, logging.WARNING, "contest.recovery.scan_failed", error=str(exc))
                else:
                    counts["recovered"] = recovered
                    self._recovered += recovered
        finally:
            self._busy = False
        if any(counts.values()):
            log_event(_LOGGER, logging.INFO, "contest.retry.tick", queue_size=len(self._queue), **counts)
        return counts

    def _drop(self, entry: RetryEntry) -> None:
        self._queue.pop(entry.key, None)
        self._dropped += 1
        record_counter_metric(name="contest.retry.dropped")
        log_event(
            _LOGGER,
            logging.WARNING,
            "contest.retry.dropped",
            user_ref=entry.user_ref,
            order_id=entry.order_id,
            attempt_count=entry.attempt_count,
            last_error=entry.last_error,
        )

    def start(self) -> None:
        if self._scheduler is not None:
            return
        self._scheduler = AsyncIOScheduler(timezone="UTC")
        self._scheduler.add_job(
            self.run_once,
            trigger=IntervalTrigger(seconds=self.interval_seconds),
            id=_JOB_ID,
            name="Contest Award Retry",
            max_instances=1,
            coalesce=True,
            replace_existing=True,
        )
        self._scheduler.start()
        log_event(_LOGGER, logging.INFO, "contest.retry.scheduler_started", interval_seconds=self.interval_seconds)

    def stop(self) -> None:
        if self._scheduler is None:
            return
        self._scheduler.shutdown(wait=False)
        self._scheduler = None
        log_event(_LOGGER, logging.INFO, "contest.retry.scheduler_stopped", queue_size=len(self._queue))

    def stats(self) -> dict[str, Any]:
        return {
            "running": self._scheduler is not None,
            "busy": self._busy,
            "queue_size": len(self._queue),
            "ticks": self._ticks,
            "skipped_ticks": self._skipped_ticks,
            "dropped": self._dropped,
            "recovered": self._recovered,
            "max_attempts": self.max_attempts,
            "interval_seconds": self.interval_seconds,
        }
