"""Durable offline queue of pending remote writes.

Operations are persisted to the local store under ``QUEUE_KEY`` after every
mutation, so a restart picks up where the previous process stopped.
Operations that exhaust their retries are moved to a dead-letter list under
``DEAD_LETTER_KEY`` where they stay until requeued or cleared. CRITICAL
operations are never dead-lettered.
"""

import asyncio
import json
import logging
import random
from typing import Awaitable, Callable, Dict, List, Optional, Set

from savesync.protocols import LocalStore, RemoteError, RemoteErrorKind, StorageError
from savesync.types import (
    DEAD_LETTER_KEY,
    QUEUE_KEY,
    DrainReport,
    SyncOperation,
    SyncPriority,
    utc_now,
)

logger = logging.getLogger(__name__)

Sender = Callable[[SyncOperation], Awaitable[None]]

MAX_ERROR_LENGTH = 500


def compute_backoff(
    config,
    retry_count: int,
    rate_limited: bool = False,
    retry_after: Optional[float] = None,
    rng: Callable[[], float] = random.random,
) -> float:
    """Seconds to wait before retry number ``retry_count + 1``."""
    if rate_limited:
        delay = config.rate_limit_step * (retry_count + 1)
        if retry_after:
            delay = max(delay, retry_after)
    else:
        delay = config.backoff_base * (2**retry_count)
    delay = min(delay, config.backoff_max)
    if config.jitter:
        delay += delay * config.jitter * (2 * rng() - 1)
    return max(0.0, delay)


class OfflineQueue:
    """Priority-ordered, persisted backlog of remote writes.

    Args:
        store: Local store used for persistence.
        config: SyncConfig supplying retry and backoff settings.
        sleep: Awaitable sleep, replaced in tests.
        rng: Returns a float in [0, 1) for jitter.
    """

    def __init__(
        self,
        store: LocalStore,
        config,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
        rng: Callable[[], float] = random.random,
    ):
        self.store = store
        self.config = config
        self._sleep = sleep
        self._rng = rng
        self._ops: List[SyncOperation] = []
        self._dead: List[SyncOperation] = []
        self._next_sequence = 1

    # === Persistence ===

    def load(self) -> int:
        """Load persisted operations. Returns the number of pending operations."""
        self._ops = self._read_list(QUEUE_KEY)
        self._dead = self._read_list(DEAD_LETTER_KEY)
        sequences = [op.sequence for op in self._ops + self._dead]
        self._next_sequence = max(sequences, default=0) + 1
        if self._ops:
            logger.info(f"Loaded {len(self._ops)} pending sync operations")
        return len(self._ops)

    def _read_list(self, key: str) -> List[SyncOperation]:
        raw = self.store.get_raw(key)
        if raw is None:
            return []
        try:
            items = json.loads(raw.decode("utf-8"))
            return [SyncOperation.from_dict(item) for item in items]
        except (UnicodeDecodeError, json.JSONDecodeError, KeyError, TypeError, ValueError) as e:
            raise StorageError(f"Persisted queue {key} is unreadable: {e}") from e

    def _persist(self) -> None:
        self.store.put_raw(QUEUE_KEY, self._dump(self._ops))

    def _persist_dead(self) -> None:
        self.store.put_raw(DEAD_LETTER_KEY, self._dump(self._dead))

    async def _persist_async(self, dead_letters: bool = False) -> None:
        """Persist from async code. Serialized here, written in a worker thread."""
        writes = [(QUEUE_KEY, self._dump(self._ops))]
        if dead_letters:
            writes.append((DEAD_LETTER_KEY, self._dump(self._dead)))
        for key, data in writes:
            await asyncio.to_thread(self.store.put_raw, key, data)

    @staticmethod
    def _dump(ops: List[SyncOperation]) -> bytes:
        return json.dumps([op.to_dict() for op in ops]).encode("utf-8")

    # === Queue operations ===

    def enqueue(self, op: SyncOperation) -> SyncOperation:
        """Add an operation, coalescing with a pending one for the same slot key.

        A coalesced operation takes the new data and operation type, keeps its
        place in line and keeps the higher of the two priorities.
        """
        queued = self._add(op)
        self._persist()
        return queued

    async def submit(self, op: SyncOperation) -> SyncOperation:
        """``enqueue`` for async callers; the store write runs in a worker thread."""
        queued = self._add(op)
        await self._persist_async()
        return queued

    def _add(self, op: SyncOperation) -> SyncOperation:
        existing = self._find(op.slot_key)
        if existing is not None:
            existing.data = op.data
            existing.operation = op.operation
            existing.priority = max(existing.priority, op.priority)
            existing.enqueued_at = op.enqueued_at
            existing.retry_count = 0
            existing.last_error = None
            logger.debug(
                f"Coalesced {op.operation} for {op.slot_key} (priority={existing.priority.name})"
            )
            return existing

        op.sequence = self._next_sequence
        self._next_sequence += 1
        self._ops.append(op)
        logger.debug(f"Queued {op.operation} for {op.slot_key} (priority={op.priority.name})")
        return op

    def _find(self, slot_key: str) -> Optional[SyncOperation]:
        for op in self._ops:
            if op.slot_key == slot_key:
                return op
        return None

    def pending(self) -> List[SyncOperation]:
        """Pending operations in drain order: priority desc, then FIFO."""
        return sorted(self._ops, key=lambda op: (-int(op.priority), op.sequence))

    def has_pending(self, slot_key: str) -> bool:
        return self._find(slot_key) is not None

    def discard(self, slot_key: str) -> bool:
        """Remove the pending operation for a slot key, if any."""
        op = self._find(slot_key)
        if op is None:
            return False
        self._ops.remove(op)
        self._persist()
        return True

    def __len__(self) -> int:
        return len(self._ops)

    def dead_letters(self) -> List[SyncOperation]:
        return list(self._dead)

    def requeue_dead_letters(self) -> int:
        """Move dead letters back to the queue with a fresh retry count.

        A dead letter is discarded if a newer operation for the same slot is
        already pending.
        """
        requeued = 0
        for op in self._dead:
            if self._find(op.slot_key) is not None:
                logger.info(f"Discarding stale dead letter for {op.slot_key}")
                continue
            op.retry_count = 0
            op.last_error = None
            op.sequence = self._next_sequence
            self._next_sequence += 1
            self._ops.append(op)
            requeued += 1
        self._dead = []
        self._persist()
        self._persist_dead()
        return requeued

    def clear(self, dead_letters: bool = False) -> int:
        """Drop all pending operations (and dead letters if asked). Returns the count."""
        count = len(self._ops)
        self._ops = []
        self._persist()
        if dead_letters:
            count += len(self._dead)
            self._dead = []
            self._persist_dead()
        logger.info(f"Cleared {count} queued operations")
        return count

    # === Backoff ===

    def backoff_delay(
        self, op: SyncOperation, rate_limited: bool = False, retry_after: Optional[float] = None
    ) -> float:
        """Delay before the next attempt of ``op``, after ``op.retry_count`` failures.

        Exponential (``base * 2**n``) for connectivity failures, linear
        (``step * (n + 1)``) when rate limited, where ``n`` counts the retries
        already waited for. Both are capped at ``backoff_max`` and spread by
        +/- ``jitter``.
        """
        waited = max(0, op.retry_count - 1)
        return compute_backoff(self.config, waited, rate_limited, retry_after, self._rng)

    # === Drain ===

    async def drain(self, is_online: Callable[[], bool], send: Sender) -> DrainReport:
        """Send pending operations in order until the queue is empty.

        The head operation is retried with backoff before anything behind it
        is attempted. A CRITICAL operation the remote rejects stays queued but
        is skipped for the rest of this drain so the operations behind it
        still go out. Draining stops when ``is_online()`` turns false or a
        CRITICAL operation has used up this drain's attempts.
        """
        report = DrainReport()
        attempts: Dict[str, int] = {}
        held: Set[str] = set()
        max_attempts = max(1, self.config.max_retries)

        while True:
            ready = [op for op in self.pending() if op.id not in held]
            if not ready:
                break
            if not is_online():
                report.errors.append("offline, drain stopped")
                break

            op = ready[0]
            op.last_attempt_at = utc_now()
            try:
                await send(op)
            except RemoteError as e:
                op.last_error = str(e)[:MAX_ERROR_LENGTH]
                critical = op.priority == SyncPriority.CRITICAL

                if not e.transient and not critical:
                    await self._dead_letter(op, report, "rejected by remote")
                    continue

                op.retry_count += 1
                report.retried += 1
                attempts[op.id] = attempts.get(op.id, 0) + 1

                if not critical and op.retry_count >= self.config.max_retries:
                    await self._dead_letter(op, report, f"exceeded {self.config.max_retries} retries")
                    continue

                if not e.transient:
                    held.add(op.id)
                    await self._persist_async()
                    report.errors.append(f"{op.slot_key}: rejected, kept in queue: {op.last_error}")
                    logger.warning(f"Critical {op.operation} for {op.slot_key} rejected, kept in queue: {e}")
                    continue

                if attempts[op.id] >= max_attempts:
                    await self._persist_async()
                    report.errors.append(
                        f"{op.slot_key}: {e.kind.value} after {op.retry_count} attempts, kept in queue"
                    )
                    logger.warning(f"Critical {op.operation} for {op.slot_key} still pending: {e}")
                    break

                await self._persist_async()
                delay = self.backoff_delay(
                    op,
                    rate_limited=e.kind == RemoteErrorKind.RATE_LIMITED,
                    retry_after=e.retry_after,
                )
                logger.debug(f"Retrying {op.slot_key} in {delay:.2f}s ({e.kind.value})")
                await self._sleep(delay)
                continue

            self._ops.remove(op)
            await self._persist_async()
            report.sent += 1
            logger.debug(f"Sent queued {op.operation} for {op.slot_key}")

        report.remaining = len(self._ops)
        if report.sent or report.dropped:
            logger.info(
                f"Queue drain: sent={report.sent}, dropped={report.dropped}, "
                f"remaining={report.remaining}"
            )
        return report

    async def _dead_letter(self, op: SyncOperation, report: DrainReport, reason: str) -> None:
        self._ops.remove(op)
        self._dead.append(op)
        await self._persist_async(dead_letters=True)
        report.dropped += 1
        report.errors.append(f"{op.slot_key}: dropped ({reason}): {op.last_error}")
        logger.warning(f"Moved {op.operation} for {op.slot_key} to dead letters: {reason}")
