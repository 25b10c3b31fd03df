"""Sync orchestrator: the public save/load/delete surface of savesync.

The orchestrator owns the in-memory record of each active slot and sequences
every other component:

    save:  prepare -> validate -> encode -> local write -> remote sync
    load:  remote fetch (if online) + local read -> migrate -> validate
           -> resolve conflicts -> metadata

Only one slot may be mid-sync at a time. A request for another slot while
one is busy raises SyncInProgressError instead of waiting. Once the local
write of a save has started it always completes, even if the caller is
cancelled.

Usage:
    async with SyncOrchestrator(config, store, remote, auth) as engine:
        engine.new_game(0)
        engine.update(lambda p: p.inventory.currencies.update(coins=100), slot=0)
        outcome = await engine.save(0)
"""

import asyncio
import contextlib
import logging
import random
from collections import deque
from dataclasses import asdict, dataclass, replace
from datetime import datetime
from pathlib import Path
from typing import Any, Awaitable, Callable, Deque, Dict, List, Optional, Set, Tuple, TypeVar

from savesync.codec import SaveCodec, export_record, read_export
from savesync.config import SyncConfig
from savesync.conflict import ConflictResolver
from savesync.logging_config import log_conflict, log_load, log_queue_drain, log_save
from savesync.metadata import SlotMetadataManager
from savesync.migration import VersionMigrator
from savesync.protocols import (
    AuthProvider,
    CodecError,
    ConflictPresenter,
    ConnectivitySignal,
    CorruptSlotError,
    IncompatibleVersionError,
    LocalStore,
    RemoteError,
    RemoteErrorKind,
    RemoteStore,
    SaveSyncError,
    SlotNotFoundError,
    StaticConnectivity,
    StorageError,
    SyncInProgressError,
    ValidationError,
    describe_failures,
)
from savesync.queue import OfflineQueue, compute_backoff
from savesync.remote import RemoteSyncClient
from savesync.types import (
    ConflictRecord,
    DeleteOutcome,
    DrainReport,
    LoadOutcome,
    SavePayload,
    SaveOutcome,
    SaveRecord,
    SlotMetadata,
    SlotState,
    SyncOperation,
    SyncPriority,
    SyncStatus,
    parse_slot_key,
    slot_key,
    utc_now,
)
from savesync.utils import get_device_id
from savesync.validation import RecordValidator

logger = logging.getLogger(__name__)

T = TypeVar("T")

MAX_RECENT_ERRORS = 20


@dataclass
class SyncStats:
    saves: int = 0
    loads: int = 0
    deletes: int = 0
    conflicts: int = 0
    queued: int = 0
    failures: int = 0

    def to_dict(self) -> Dict[str, int]:
        return asdict(self)


class SyncOrchestrator:
    """Save/load/delete with local durability, remote mirroring and conflict handling.

    Args:
        config: Engine configuration. Validated here; raises ConfigError.
        store: Local store (the single source of truth when offline).
        remote: Remote store, or None for a local-only engine.
        auth: Supplies the owner id and a validity signal.
        connectivity: Online/offline signal. Defaults to always online when a
            remote store is given.
        presenter: Conflict UI used by the ``ask_external`` strategy.
        clock: Callable returning the current UTC datetime.
        device_id: Stable device id. Defaults to the one stored in the data dir.
        sleep: Awaitable sleep used for retry backoff.
        rng: Jitter source for retry backoff.
    """

    def __init__(
        self,
        config: SyncConfig,
        store: LocalStore,
        remote: Optional[RemoteStore],
        auth: AuthProvider,
        connectivity: Optional[ConnectivitySignal] = None,
        presenter: Optional[ConflictPresenter] = None,
        clock: Optional[Callable[[], datetime]] = None,
        device_id: Optional[str] = None,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
        rng: Callable[[], float] = random.random,
    ):
        self.config = config.validate()
        self.store = store
        self.auth = auth
        self.connectivity = connectivity or StaticConnectivity(online=remote is not None)
        self._clock = clock or utc_now
        self._sleep = sleep
        self._rng = rng
        self.device_id = device_id or get_device_id()

        self.codec = SaveCodec.from_config(config)
        self.migrator = VersionMigrator()
        self.validator = RecordValidator(config, clock=self._clock)
        self.resolver = ConflictResolver(
            strategy=config.conflict_strategy,
            presenter=presenter,
            clock=self._clock,
            external_timeout=config.external_conflict_timeout,
        )
        self.queue = OfflineQueue(store, config, sleep=sleep, rng=rng)
        self.metadata = SlotMetadataManager(store, config.max_slots, config.total_levels)
        self.remote: Optional[RemoteSyncClient] = None
        if remote is not None:
            self.remote = RemoteSyncClient(remote, auth.owner_id, timeout=config.remote_timeout)

        self.stats = SyncStats()
        self._lock = asyncio.Lock()
        self._busy_slot: Optional[int] = None
        self._draining = False
        self._states: Dict[int, SlotState] = {}
        self._records: Dict[int, SaveRecord] = {}
        self._dirty: Set[int] = set()
        self._edits: Dict[int, int] = {}  # per-slot mutation counter
        self._active_slot: Optional[int] = None
        self._recent_errors: Deque[Exception] = deque(maxlen=MAX_RECENT_ERRORS)
        self._auto_task: Optional[asyncio.Task] = None

    # === Lifecycle ===

    async def start(self) -> "SyncOrchestrator":
        """Reload the offline queue and start the auto-save timer."""
        await asyncio.to_thread(self.queue.load)
        if self.config.auto_save_interval > 0 and self._auto_task is None:
            self._auto_task = asyncio.create_task(self._auto_save_loop())
        logger.info(
            f"Sync engine started for owner={self.owner_id} device={self.device_id} "
            f"({len(self.queue)} queued)"
        )
        return self

    async def close(self) -> None:
        if self._auto_task is not None:
            self._auto_task.cancel()
            try:
                await self._auto_task
            except asyncio.CancelledError:
                pass
            self._auto_task = None
        logger.debug("Sync engine closed")

    async def __aenter__(self) -> "SyncOrchestrator":
        return await self.start()

    async def __aexit__(self, exc_type, exc, tb) -> None:
        await self.close()

    # === In-memory records ===

    @property
    def owner_id(self) -> str:
        return self.auth.owner_id

    @property
    def active_slot(self) -> Optional[int]:
        return self._active_slot

    def current(self, slot: Optional[int] = None) -> Optional[SaveRecord]:
        slot = self._active_slot if slot is None else slot
        return None if slot is None else self._records.get(slot)

    def is_dirty(self, slot: int) -> bool:
        return slot in self._dirty

    def slot_state(self, slot: int) -> SlotState:
        return self._states.get(slot, SlotState.IDLE)

    def new_game(self, slot: int, payload: Optional[SavePayload] = None) -> SaveRecord:
        """Start a fresh record in a slot. Nothing is written until ``save``.

        The sync_version continues from the slot's previous save so the
        per-device counter never goes backwards.
        """
        self._require_slot(slot)
        now = self._clock()
        record = SaveRecord(
            owner_id=self.owner_id,
            device_id=self.device_id,
            sync_version=self._version_floor(slot),
            last_saved_at=now,
            local_timestamp=now,
            payload=payload or SavePayload(),
        )
        self._records[slot] = record
        self._active_slot = slot
        self._mark_dirty(slot)
        return record

    def update(self, mutator: Callable[[SavePayload], None], slot: Optional[int] = None) -> SaveRecord:
        """Apply ``mutator`` to a slot's payload and mark the slot dirty."""
        slot = self._active_slot if slot is None else slot
        record = self.current(slot)
        if record is None:
            raise SlotNotFoundError(-1 if slot is None else slot)
        mutator(record.payload)
        self._mark_dirty(slot)
        return record

    # === Public operations ===

    async def save(self, slot: int, priority: SyncPriority = SyncPriority.NORMAL) -> SaveOutcome:
        """Persist the slot's in-memory record locally, then mirror it remotely.

        Returns SUCCESS once the remote copy is current, PENDING_SYNC when the
        remote write was queued, ERROR otherwise (the error is attached).

        Raises:
            SyncInProgressError: If another slot is mid-sync.
        """
        priority = SyncPriority(priority)
        try:
            self._require_slot(slot)
        except ValidationError as e:
            return self._save_failed(slot, e)
        record = self._records.get(slot)
        if record is None:
            return self._save_failed(slot, SlotNotFoundError(slot))

        async with self._claim(slot):
            self._set_state(slot, SlotState.PREPARING)
            edits = self._edits.get(slot, 0)
            candidate = record.touch(self._clock())
            if not candidate.owner_id:
                candidate = replace(candidate, owner_id=self.owner_id)

            try:
                self._set_state(slot, SlotState.VALIDATING)
                self.validator.validate(candidate)
                self.validator.check_monotonic(candidate, scope=slot)
                self._set_state(slot, SlotState.ENCODING)
                data = self._encode_checked(candidate)
            except (ValidationError, CodecError) as e:
                return self._save_failed(slot, e)

            local_error: Optional[StorageError] = None
            try:
                await self._write_local(slot, data)
            except StorageError as e:
                logger.error(f"Local write for slot {slot} failed: {e}", exc_info=True)
                local_error = e
            else:
                self._accept(slot, candidate, edits)
                await self._update_metadata(slot, candidate, len(data), cloud_synced=False)

            if self.remote is None:
                if local_error is not None:
                    return self._save_failed(slot, local_error)
                return self._save_done(slot, candidate, len(data), SyncStatus.SUCCESS)

            if not self._online():
                return await self._queue_or_fail(slot, candidate, data, priority, local_error, None)

            self._set_state(slot, SlotState.REMOTE_SYNCING)
            try:
                winner, winner_data, conflict, needs_push = await self._reconcile(
                    slot, candidate, data, retry=True
                )
                if needs_push:
                    await self._with_retries(
                        lambda: self.remote.push(slot_key(slot), winner_data), f"push slot {slot}"
                    )
            except RemoteError as e:
                if e.transient:
                    return await self._queue_or_fail(slot, candidate, data, priority, local_error, e)
                return self._save_failed(slot, e, record=candidate)
            except (IncompatibleVersionError, ValidationError, CodecError) as e:
                return self._save_failed(slot, e, record=candidate)

            self._accept(slot, winner, edits)
            await self._update_metadata(slot, winner, len(winner_data), cloud_synced=True)
            self._set_state(slot, SlotState.RESOLVED)
            return self._save_done(
                slot, winner, len(winner_data), SyncStatus.SUCCESS, conflict=conflict, error=local_error
            )

    async def load(self, slot: int) -> LoadOutcome:
        """Load a slot, preferring the remote copy when online.

        The result is migrated and validated before it is returned and becomes
        the slot's in-memory record.

        Raises:
            SyncInProgressError: If another slot is mid-sync.
        """
        try:
            self._require_slot(slot)
        except ValidationError as e:
            return self._load_failed(slot, e)

        async with self._claim(slot):
            self._set_state(slot, SlotState.PREPARING)
            remote_record: Optional[SaveRecord] = None
            remote_raw: Optional[bytes] = None
            if self._online():
                self._set_state(slot, SlotState.REMOTE_SYNCING)
                try:
                    remote_raw = await self._with_retries(
                        lambda: self.remote.fetch(slot_key(slot)), f"fetch slot {slot}"
                    )
                except RemoteError as e:
                    logger.warning(f"Remote load of slot {slot} failed ({e}), using local copy")
                    self._recent_errors.append(e)
                if remote_raw is not None:
                    try:
                        remote_record = self._decode_trusted(remote_raw)
                    except IncompatibleVersionError as e:
                        return self._load_failed(slot, e)
                    except (CodecError, ValidationError) as e:
                        logger.warning(f"Remote copy of slot {slot} is unusable: {e}")
                        self._recent_errors.append(e)

            self._set_state(slot, SlotState.VALIDATING)
            local_record: Optional[SaveRecord] = None
            local_error: Optional[SaveSyncError] = None
            try:
                local_raw = await asyncio.to_thread(
                    self.store.get, slot_key(slot), validate=self._check_local_bytes
                )
                if local_raw is not None:
                    local_record = self._decode_trusted(local_raw)
            except IncompatibleVersionError as e:
                return self._load_failed(slot, e)
            except CorruptSlotError as e:
                local_error = e
                if remote_record is None:
                    await asyncio.to_thread(self.metadata.mark_corrupted, slot)
                    return self._load_failed(slot, e)
                logger.warning(f"Local copy of slot {slot} is corrupted, restoring from remote")
            except StorageError as e:
                local_error = e
                if remote_record is None:
                    return self._load_failed(slot, e)

            conflict: Optional[ConflictRecord] = None
            if remote_record is not None and local_record is not None:
                result = await self.resolver.resolve(local_record, remote_record)
                winner, conflict = result.record, result.conflict
                if conflict is not None:
                    self._note_conflict(slot, conflict)
                source = "remote" if winner == remote_record else "local"
            elif remote_record is not None:
                winner, source = remote_record, "remote"
            elif local_record is not None:
                winner, source = local_record, "local"
            else:
                return self._load_failed(slot, SlotNotFoundError(slot))

            try:
                size = await self._persist_loaded(slot, winner, local_record, remote_record, remote_raw)
            except (StorageError, ValidationError, CodecError) as e:
                return self._load_failed(slot, e, record=winner)

            self._records[slot] = winner
            self._dirty.discard(slot)
            self._active_slot = slot
            self.validator.observe(winner, scope=slot)
            await self._update_metadata(
                slot, winner, size, cloud_synced=remote_record is not None and winner == remote_record
            )
            self._set_state(slot, SlotState.RESOLVED)
            self.stats.loads += 1
            if self.config.event_log:
                log_load(self.owner_id, slot, source, SyncStatus.SUCCESS.value)
            logger.info(f"Loaded slot {slot} from {source} (v{winner.sync_version})")
            return LoadOutcome(
                status=SyncStatus.SUCCESS,
                slot=slot,
                record=winner,
                source=source,
                error=local_error,
                conflict=conflict,
            )

    async def delete(self, slot: int) -> DeleteOutcome:
        """Remove a slot locally and remotely. The remote delete is queued when offline.

        Raises:
            SyncInProgressError: If another slot is mid-sync.
        """
        try:
            self._require_slot(slot)
        except ValidationError as e:
            return DeleteOutcome(status=SyncStatus.ERROR, slot=slot, error=e)

        key = slot_key(slot)
        async with self._claim(slot):
            self._set_state(slot, SlotState.LOCAL_WRITING)
            try:
                await asyncio.to_thread(self.store.delete, key)
            except StorageError as e:
                self._set_state(slot, SlotState.FAILED)
                self.stats.failures += 1
                self._recent_errors.append(e)
                return DeleteOutcome(status=SyncStatus.ERROR, slot=slot, error=e)

            self._records.pop(slot, None)
            self._dirty.discard(slot)
            if self._active_slot == slot:
                self._active_slot = None
            await asyncio.to_thread(self.queue.discard, key)
            self.stats.deletes += 1

            if self.remote is None:
                self._set_state(slot, SlotState.RESOLVED)
                return DeleteOutcome(status=SyncStatus.SUCCESS, slot=slot)

            if self._online():
                self._set_state(slot, SlotState.REMOTE_SYNCING)
                try:
                    await self._with_retries(lambda: self.remote.remove(key), f"delete slot {slot}")
                except RemoteError as e:
                    if not e.transient:
                        self._set_state(slot, SlotState.FAILED)
                        self.stats.failures += 1
                        self._recent_errors.append(e)
                        return DeleteOutcome(status=SyncStatus.ERROR, slot=slot, error=e)
                    logger.warning(f"Remote delete of slot {slot} failed ({e}), queueing")
                else:
                    self._set_state(slot, SlotState.RESOLVED)
                    logger.info(f"Deleted slot {slot}")
                    return DeleteOutcome(status=SyncStatus.SUCCESS, slot=slot)

            await self.queue.submit(
                SyncOperation(slot_key=key, data=None, operation="delete", priority=SyncPriority.NORMAL)
            )
            self.stats.queued += 1
            self._set_state(slot, SlotState.QUEUED)
            return DeleteOutcome(status=SyncStatus.PENDING_SYNC, slot=slot)

    async def sync_pending(self) -> DrainReport:
        """Drain the offline queue against the remote store."""
        if self.remote is None or not len(self.queue):
            return DrainReport(remaining=len(self.queue))
        async with self._lock:
            self._draining = True
            try:
                report = await self.queue.drain(self._online, self._send_queued)
            finally:
                self._draining = False

        if self.config.event_log:
            log_queue_drain(self.owner_id, report.sent, report.dropped, report.remaining)
        return report

    async def on_suspend(self) -> Optional[SaveOutcome]:
        """Force a CRITICAL save of the active slot before the process is suspended."""
        return await self._forced_save(SyncPriority.CRITICAL)

    async def on_focus_lost(self) -> Optional[SaveOutcome]:
        """Force a HIGH priority save of the active slot when focus is lost."""
        return await self._forced_save(SyncPriority.HIGH)

    async def auto_save(self) -> Optional[SaveOutcome]:
        """Save the active slot at LOW priority if it is dirty and nothing else is running."""
        slot = self._active_slot
        if slot is None or slot not in self._dirty:
            return None
        if self._lock.locked():
            logger.debug("Auto-save skipped, a sync is in progress")
            return None
        return await self.save(slot, SyncPriority.LOW)

    # === Export / Import ===

    async def export_slot(self, slot: int, path: Path) -> Path:
        """Write a slot's record to a self-contained export file.

        The in-memory record is exported if the slot is loaded, otherwise the
        trusted local copy.
        """
        self._require_slot(slot)
        record = self._records.get(slot)
        if record is None:
            raw = await asyncio.to_thread(
                self.store.get, slot_key(slot), validate=self._check_local_bytes
            )
            if raw is None:
                raise SlotNotFoundError(slot)
            record = self._decode_trusted(raw)
        path = await asyncio.to_thread(export_record, record, Path(path))
        logger.info(f"Exported slot {slot} to {path}")
        return path

    async def import_slot(
        self, path: Path, slot: int, priority: SyncPriority = SyncPriority.NORMAL
    ) -> SaveOutcome:
        """Import an export file into a slot and save it.

        The file goes through the same migration and validation as a
        network load. The imported progress is saved as a new local write
        of this device.
        """
        try:
            self._require_slot(slot)
            document = self._migrate(await asyncio.to_thread(read_export, Path(path)))
            imported = self._record_from_document(document)
            self.validator.validate(imported)
        except (ValidationError, CodecError, IncompatibleVersionError) as e:
            return self._save_failed(slot, e)

        floor = self._version_floor(slot)
        self._records[slot] = replace(
            imported,
            owner_id=self.owner_id,
            device_id=self.device_id,
            sync_version=max(imported.sync_version, floor),
        )
        self._active_slot = slot
        self._mark_dirty(slot)
        logger.info(f"Imported {path} into slot {slot}")
        return await self.save(slot, priority)

    # === Status ===

    def list_slots(self) -> List[SlotMetadata]:
        return self.metadata.list_slots()

    def status(self) -> Dict[str, Any]:
        return {
            "owner_id": self.owner_id,
            "device_id": self.device_id,
            "online": self._online(),
            "busy_slot": self._busy_slot,
            "draining": self._draining,
            "active_slot": self._active_slot,
            "dirty_slots": sorted(self._dirty),
            "states": {slot: state.value for slot, state in sorted(self._states.items())},
            "pending": len(self.queue),
            "dead_letters": len(self.queue.dead_letters()),
            "conflicts": len(self.resolver.history),
            "stats": self.stats.to_dict(),
            "recent_errors": describe_failures(self._recent_errors),
        }

    # === Internals: state ===

    @contextlib.asynccontextmanager
    async def _claim(self, slot: int):
        if self._draining or (self._busy_slot is not None and self._busy_slot != slot):
            raise SyncInProgressError(self._busy_slot, slot)
        async with self._lock:
            self._busy_slot = slot
            try:
                yield
            finally:
                self._busy_slot = None
                self._set_state(slot, SlotState.IDLE)

    def _set_state(self, slot: int, state: SlotState) -> None:
        previous = self._states.get(slot, SlotState.IDLE)
        self._states[slot] = state
        if previous != state:
            logger.debug(f"Slot {slot}: {previous.value} -> {state.value}")

    def _require_slot(self, slot: int) -> None:
        if not isinstance(slot, int) or not 0 <= slot < self.config.max_slots:
            raise ValidationError([f"slot {slot!r} out of range (0..{self.config.max_slots - 1})"])

    def _online(self) -> bool:
        return self.remote is not None and self.connectivity.is_online() and self.auth.is_valid()

    def _mark_dirty(self, slot: int) -> None:
        self._edits[slot] = self._edits.get(slot, 0) + 1
        self._dirty.add(slot)

    def _version_floor(self, slot: int) -> int:
        """Highest sync_version this device has used for a slot."""
        previous = self._records.get(slot)
        floor = max(
            previous.sync_version if previous is not None else 0,
            self.metadata.get(slot).sync_version,
            self.validator.high_water(self.owner_id, self.device_id, scope=slot),
        )
        return floor

    def _accept(self, slot: int, record: SaveRecord, edits: int) -> None:
        """Make ``record`` the slot's in-memory record unless it was edited since ``edits``.

        An edited record is kept (still dirty) but its sync_version is raised
        so the next save continues the sequence.
        """
        if self._edits.get(slot, 0) == edits:
            self._records[slot] = record
            self._dirty.discard(slot)
        else:
            current = self._records.get(slot)
            if current is not None:
                current.sync_version = max(current.sync_version, record.sync_version)
        self.validator.observe(record, scope=slot)

    async def _update_metadata(
        self, slot: int, record: SaveRecord, size: int, cloud_synced: bool
    ) -> None:
        # Metadata is derived; a failed write must not fail the save
        try:
            await asyncio.to_thread(
                self.metadata.update_from_record, slot, record, size, cloud_synced=cloud_synced
            )
        except StorageError as e:
            logger.warning(f"Could not update metadata for slot {slot}: {e}")
            self._recent_errors.append(e)

    # === Internals: outcomes ===

    def _save_failed(
        self, slot: int, error: Exception, record: Optional[SaveRecord] = None
    ) -> SaveOutcome:
        self._set_state(slot, SlotState.FAILED)
        self.stats.failures += 1
        self._recent_errors.append(error)
        logger.warning(f"Save of slot {slot} failed: {error}")
        if self.config.event_log:
            log_save(self.owner_id, slot, SyncStatus.ERROR.value, 0, record.sync_version if record else -1)
        return SaveOutcome(status=SyncStatus.ERROR, slot=slot, record=record, error=error)

    def _save_done(
        self,
        slot: int,
        record: SaveRecord,
        size: int,
        status: SyncStatus,
        conflict: Optional[ConflictRecord] = None,
        error: Optional[Exception] = None,
    ) -> SaveOutcome:
        self.stats.saves += 1
        if self.config.event_log:
            log_save(self.owner_id, slot, status.value, size, record.sync_version)
        logger.info(f"Saved slot {slot} v{record.sync_version} ({status.value}, {size} bytes)")
        return SaveOutcome(status=status, slot=slot, record=record, error=error, conflict=conflict)

    def _load_failed(
        self, slot: int, error: Exception, record: Optional[SaveRecord] = None
    ) -> LoadOutcome:
        self._set_state(slot, SlotState.FAILED)
        self.stats.failures += 1
        self._recent_errors.append(error)
        logger.warning(f"Load of slot {slot} failed: {error}")
        if self.config.event_log:
            log_load(self.owner_id, slot, None, SyncStatus.ERROR.value)
        return LoadOutcome(status=SyncStatus.ERROR, slot=slot, record=record, error=error)

    async def _queue_or_fail(
        self,
        slot: int,
        record: SaveRecord,
        data: bytes,
        priority: SyncPriority,
        local_error: Optional[StorageError],
        remote_error: Optional[RemoteError],
    ) -> SaveOutcome:
        """Queue the remote write after an offline or transient remote failure."""
        if local_error is not None and priority == SyncPriority.CRITICAL:
            logger.error(f"Critical save of slot {slot} failed locally and remotely")
            return self._save_failed(slot, local_error, record=record)
        if remote_error is not None:
            self._recent_errors.append(remote_error)

        try:
            await self.queue.submit(
                SyncOperation(
                    slot_key=slot_key(slot), data=data, priority=priority, enqueued_at=self._clock()
                )
            )
        except StorageError as e:
            return self._save_failed(slot, local_error or e, record=record)

        self.stats.queued += 1
        self._set_state(slot, SlotState.QUEUED)
        return self._save_done(slot, record, len(data), SyncStatus.PENDING_SYNC, error=local_error)

    def _note_conflict(self, slot: int, conflict: ConflictRecord) -> None:
        self.stats.conflicts += 1
        if self.config.event_log:
            log_conflict(self.owner_id, slot, conflict.strategy.value, conflict.resolution)

    # === Internals: local ===

    async def _write_local(self, slot: int, data: bytes) -> None:
        """Write primary and backup. Completes even if the caller is cancelled."""
        self._set_state(slot, SlotState.LOCAL_WRITING)
        write = asyncio.ensure_future(asyncio.to_thread(self.store.put, slot_key(slot), data))
        try:
            await asyncio.shield(write)
        except asyncio.CancelledError:
            await asyncio.wait([write])
            if not write.cancelled() and write.exception() is not None:
                logger.error(f"Local write of slot {slot} failed after cancellation: {write.exception()}")
            raise

    def _encode_checked(self, record: SaveRecord) -> bytes:
        data = self.codec.encode(record)
        return self.validator.check_size(data, raw_size=self.codec.inspect(data).raw_size)

    def _migrate(self, document: Dict[str, Any]) -> Dict[str, Any]:
        try:
            return self.migrator.migrate(document)
        except (KeyError, TypeError, ValueError, AttributeError) as e:
            raise CodecError(f"Save document cannot be migrated: {e}") from e

    def _record_from_document(self, document: Dict[str, Any]) -> SaveRecord:
        if not document.get("owner_id"):
            document["owner_id"] = self.owner_id
        try:
            return SaveRecord.from_dict(document)
        except (KeyError, TypeError, ValueError, AttributeError) as e:
            raise CodecError(f"Save document is malformed: {e}") from e

    def _decode_trusted(self, raw: bytes) -> SaveRecord:
        """Decode, migrate and validate bytes from any untrusted source."""
        document = self._migrate(self.codec.decode_document(raw))
        record = self._record_from_document(document)
        record.compression = self.codec.inspect(raw)
        self.validator.validate(record)
        if record.owner_id != self.owner_id:
            raise ValidationError([f"save belongs to owner {record.owner_id!r}"])
        return record

    def _check_local_bytes(self, raw: bytes) -> bool:
        """Validator for local copies. A schema mismatch is not corruption."""
        try:
            self._decode_trusted(raw)
        except IncompatibleVersionError as e:
            # Intact bytes from another major version; load() reports it
            logger.debug(f"Local copy has an incompatible schema: {e}")
        return True

    async def _persist_loaded(
        self,
        slot: int,
        winner: SaveRecord,
        local_record: Optional[SaveRecord],
        remote_record: Optional[SaveRecord],
        remote_raw: Optional[bytes],
    ) -> int:
        """Write the loaded record locally when it differs from the local copy."""
        if local_record is not None and winner == local_record:
            if remote_record is not None and winner != remote_record and self.remote is not None:
                await self.queue.submit(
                    SyncOperation(slot_key=slot_key(slot), data=self.codec.encode(winner))
                )
            return winner.compression.encoded_size

        if remote_record is not None and winner == remote_record and remote_raw is not None:
            await self._write_local(slot, remote_raw)
            return len(remote_raw)

        # Merged or externally chosen record: new local write, then push later
        data = self._encode_checked(winner)
        await self._write_local(slot, data)
        if self.remote is not None:
            await self.queue.submit(SyncOperation(slot_key=slot_key(slot), data=data))
        return len(data)

    # === Internals: remote ===

    async def _with_retries(self, factory: Callable[[], Awaitable[T]], what: str) -> T:
        """Run a remote call, retrying transient failures with backoff."""
        retry = 0
        while True:
            try:
                return await factory()
            except RemoteError as e:
                if not e.transient or retry >= self.config.max_retries or not self._online():
                    raise
                delay = compute_backoff(
                    self.config,
                    retry,
                    rate_limited=e.kind == RemoteErrorKind.RATE_LIMITED,
                    retry_after=e.retry_after,
                    rng=self._rng,
                )
                retry += 1
                logger.debug(f"{what} failed ({e.kind.value}), retry {retry} in {delay:.2f}s")
                await self._sleep(delay)

    async def _reconcile(
        self, slot: int, record: SaveRecord, data: bytes, retry: bool
    ) -> Tuple[SaveRecord, bytes, Optional[ConflictRecord], bool]:
        """Compare ``record`` with the remote copy and settle any conflict.

        Returns ``(winner, winner_bytes, conflict, needs_push)``. A winner
        other than ``record`` has already been written locally.
        """
        key = slot_key(slot)
        if retry:
            remote_raw = await self._with_retries(lambda: self.remote.fetch(key), f"fetch slot {slot}")
        else:
            remote_raw = await self.remote.fetch(key)
        if remote_raw is None:
            return record, data, None, True

        try:
            remote_record = self._decode_trusted(remote_raw)
        except (CodecError, ValidationError) as e:
            logger.warning(f"Remote copy of slot {slot} is unusable ({e}), overwriting it")
            return record, data, None, True

        result = await self.resolver.resolve(record, remote_record)
        if not result.had_conflict:
            return record, data, None, True
        self._note_conflict(slot, result.conflict)

        winner = result.record
        if winner == record:
            return record, data, result.conflict, True
        if winner == remote_record:
            await self._write_local(slot, remote_raw)
            self.validator.observe(remote_record, scope=slot)
            return remote_record, remote_raw, result.conflict, False

        self.validator.validate(winner)
        winner_data = self._encode_checked(winner)
        await self._write_local(slot, winner_data)
        self.validator.observe(winner, scope=slot)
        return winner, winner_data, result.conflict, True

    async def _send_queued(self, op: SyncOperation) -> None:
        """Send one queued operation. Used as the queue's drain callback.

        The op's slot is marked busy while it is sent, since reconciling can
        write the slot locally.
        """
        slot = parse_slot_key(op.slot_key)
        self._busy_slot = slot
        try:
            await self._send_one(op)
        finally:
            self._busy_slot = None
            if slot is not None:
                self._set_state(slot, SlotState.IDLE)

    async def _send_one(self, op: SyncOperation) -> None:
        if op.operation == "delete":
            await self.remote.remove(op.slot_key)
            return

        slot = parse_slot_key(op.slot_key)
        try:
            record = self._decode_trusted(op.data)
        except (CodecError, ValidationError, IncompatibleVersionError) as e:
            raise RemoteError(RemoteErrorKind.REJECTED, f"queued save is unusable: {e}") from e

        if slot is None:
            await self.remote.push(op.slot_key, op.data)
            return

        try:
            winner, data, _, needs_push = await self._reconcile(slot, record, op.data, retry=False)
        except (IncompatibleVersionError, ValidationError, CodecError) as e:
            raise RemoteError(RemoteErrorKind.REJECTED, f"cannot reconcile {op.slot_key}: {e}") from e
        if needs_push:
            await self.remote.push(op.slot_key, data)

        current = self._records.get(slot)
        if current is not None and current == record:
            self._records[slot] = winner
        await self._update_metadata(slot, winner, len(data), cloud_synced=True)

    # === Internals: auto-save ===

    async def _forced_save(self, priority: SyncPriority) -> Optional[SaveOutcome]:
        slot = self._active_slot
        if slot is None or slot not in self._records:
            return None
        return await self.save(slot, priority)

    async def _auto_save_loop(self) -> None:
        while True:
            await asyncio.sleep(self.config.auto_save_interval)
            try:
                await self.auto_save()
                if len(self.queue) and self._online() and not self._lock.locked():
                    await self.sync_pending()
            except SaveSyncError as e:
                logger.error(f"Auto-save tick failed: {e}", exc_info=True)
