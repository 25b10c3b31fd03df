"""Conflict detection and resolution between local and remote saves.

A conflict exists when the remote save is at least as recent as the local one
and the two were produced by different writes (different sync_version or
device). The configured strategy then decides the winner:

- use_local / use_cloud: keep one side
- use_newest: later ``last_saved_at`` wins, ties broken by higher
  sync_version, then by a stable content hash
- merge: field-by-field merge (see ``merge``)
- ask_external: hand both records to the ConflictPresenter; if it is missing,
  fails or times out, fall back to use_newest
"""

import asyncio
import hashlib
import json
import logging
from collections import deque
from dataclasses import dataclass, replace
from datetime import datetime
from typing import Any, Callable, Deque, Dict, List, Optional, Tuple

from savesync.protocols import ConflictPresenter
from savesync.types import (
    ConflictRecord,
    ConflictStrategy,
    Inventory,
    Profile,
    Progression,
    SavePayload,
    SaveRecord,
    Statistics,
    utc_now,
)

logger = logging.getLogger(__name__)

# (local_value, remote_value) -> merged value
ExtensionMerger = Callable[[Any, Any], Any]

MAX_CONFLICT_HISTORY = 50


@dataclass
class ResolutionResult:
    """The record to keep, plus the conflict that produced it (None if no conflict)."""

    record: SaveRecord
    conflict: Optional[ConflictRecord] = None

    @property
    def had_conflict(self) -> bool:
        return self.conflict is not None


def _max_counts(local: Dict[str, Any], remote: Dict[str, Any]) -> Dict[str, Any]:
    merged = dict(local)
    for key, value in remote.items():
        merged[key] = max(merged[key], value) if key in merged else value
    return merged


class ConflictResolver:
    """Detects and resolves save conflicts with a configured strategy.

    Args:
        strategy: Resolution strategy applied to every conflict.
        presenter: External UI used by ``ask_external``.
        extension_mergers: Per-key merge functions for ``payload.extensions``.
            Keys without a merger take the newer record's value.
        clock: Callable returning the current UTC datetime (used for merges).
        external_timeout: Seconds to wait for the presenter before falling back.
    """

    def __init__(
        self,
        strategy: ConflictStrategy = ConflictStrategy.USE_NEWEST,
        presenter: Optional[ConflictPresenter] = None,
        extension_mergers: Optional[Dict[str, ExtensionMerger]] = None,
        clock: Optional[Callable[[], datetime]] = None,
        external_timeout: float = 30.0,
    ):
        self.strategy = ConflictStrategy(strategy)
        self.presenter = presenter
        self.extension_mergers: Dict[str, ExtensionMerger] = dict(extension_mergers or {})
        self._clock = clock or utc_now
        self.external_timeout = external_timeout
        self._history: Deque[ConflictRecord] = deque(maxlen=MAX_CONFLICT_HISTORY)

    def register_extension_merger(self, key: str, merger: ExtensionMerger) -> None:
        self.extension_mergers[key] = merger

    @property
    def history(self) -> List[ConflictRecord]:
        """Recent conflicts, oldest first."""
        return list(self._history)

    # === Detection ===

    def detect(self, local: SaveRecord, remote: SaveRecord) -> bool:
        """True iff the remote is at least as recent and came from a different write."""
        if remote.last_saved_at < local.last_saved_at:
            return False
        return remote.sync_version != local.sync_version or remote.device_id != local.device_id

    # === Resolution ===

    async def resolve(self, local: SaveRecord, remote: SaveRecord) -> ResolutionResult:
        """Resolve local against remote. Without a conflict, local is kept unchanged."""
        if not self.detect(local, remote):
            return ResolutionResult(record=local)

        strategy = self.strategy
        if strategy == ConflictStrategy.USE_LOCAL:
            record, resolution, decision = local, "local_wins", "strategy_use_local"
        elif strategy == ConflictStrategy.USE_CLOUD:
            record, resolution, decision = remote, "cloud_wins", "strategy_use_cloud"
        elif strategy == ConflictStrategy.MERGE:
            record, resolution, decision = self.merge(local, remote), "merged", "field_merge"
        elif strategy == ConflictStrategy.ASK_EXTERNAL:
            record, resolution, decision = await self._ask_external(local, remote)
        else:
            record, decision = self.pick_newest(local, remote)
            resolution = "local_wins" if record is local else "cloud_wins"

        conflict = ConflictRecord(
            local=local,
            remote=remote,
            strategy=strategy,
            detected_at=self._clock(),
            resolution=resolution,
            policy_decision=decision,
            diff_hash=self._build_conflict_hash(local, remote),
        )
        self._history.append(conflict)
        logger.info(
            f"Conflict resolved: strategy={strategy.value}, resolution={resolution}, "
            f"local=v{local.sync_version}@{local.device_id}, remote=v{remote.sync_version}@{remote.device_id}"
        )
        return ResolutionResult(record=record, conflict=conflict)

    def pick_newest(self, local: SaveRecord, remote: SaveRecord) -> Tuple[SaveRecord, str]:
        """Deterministically choose the newer record. Returns ``(record, policy_decision)``."""
        if remote.last_saved_at != local.last_saved_at:
            if remote.last_saved_at > local.last_saved_at:
                return remote, "newer_cloud_timestamp"
            return local, "newer_local_timestamp"
        if remote.sync_version != local.sync_version:
            if remote.sync_version > local.sync_version:
                return remote, "higher_cloud_sync_version"
            return local, "higher_local_sync_version"

        local_hash = self._build_record_hash(local)
        remote_hash = self._build_record_hash(remote)
        # Stable tie-breaker: smallest hash wins
        if remote_hash < local_hash:
            return remote, "cloud_wins_tie_hash"
        return local, "local_wins_tie_hash"

    async def _ask_external(
        self, local: SaveRecord, remote: SaveRecord
    ) -> Tuple[SaveRecord, str, str]:
        if self.presenter is None:
            logger.warning("No conflict presenter configured, falling back to use_newest")
            return self._fallback(local, remote, "external_unavailable")

        try:
            chosen = await asyncio.wait_for(
                self.presenter.present_conflict(local, remote), timeout=self.external_timeout
            )
        except asyncio.TimeoutError:
            logger.warning(
                f"Conflict presenter did not answer within {self.external_timeout}s, "
                "falling back to use_newest"
            )
            return self._fallback(local, remote, "external_timeout")
        except Exception as e:
            logger.warning(f"Conflict presenter failed ({e}), falling back to use_newest", exc_info=True)
            return self._fallback(local, remote, "external_error")

        if chosen is local or chosen == local:
            return local, "local_wins", "external_choice"
        if chosen is remote or chosen == remote:
            return remote, "cloud_wins", "external_choice"
        if isinstance(chosen, SaveRecord):
            return chosen, "external_record", "external_choice"
        logger.warning(f"Conflict presenter returned {type(chosen).__name__}, falling back")
        return self._fallback(local, remote, "external_invalid")

    def _fallback(self, local: SaveRecord, remote: SaveRecord, reason: str):
        record, decision = self.pick_newest(local, remote)
        resolution = "local_wins" if record is local else "cloud_wins"
        return record, resolution, f"{reason}:{decision}"

    # === Merge ===

    def merge(self, local: SaveRecord, remote: SaveRecord) -> SaveRecord:
        """Merge two records field by field.

        - numeric counters (currencies, item counts, statistics, level/xp): max
        - sets (completed levels, unlocked items): union
        - level records: better value per field (lowest time, highest score/stars)
        - settings and other scalars: the newer record wins wholesale
        - extensions: per-key merger, else the newer record's value

        The result carries ``sync_version = max + 1`` and ``last_saved_at = now``.
        """
        newer, _ = self.pick_newest(local, remote)
        older = remote if newer is local else local
        lp, rp = local.payload, remote.payload
        newest = newer.payload

        level_records = dict(lp.progression.level_records)
        for level_id, record in rp.progression.level_records.items():
            current = level_records.get(level_id)
            level_records[level_id] = record if current is None else current.better_of(record)

        payload = SavePayload(
            profile=Profile(
                player_name=newest.profile.player_name,
                level=max(lp.profile.level, rp.profile.level),
                experience=max(lp.profile.experience, rp.profile.experience),
                avatar=newest.profile.avatar,
            ),
            progression=Progression(
                completed_levels=set(lp.progression.completed_levels)
                | set(rp.progression.completed_levels),
                unlocked_items=set(lp.progression.unlocked_items)
                | set(rp.progression.unlocked_items),
                level_records=level_records,
                current_level=newest.progression.current_level,
            ),
            inventory=Inventory(
                currencies=_max_counts(lp.inventory.currencies, rp.inventory.currencies),
                items=_max_counts(lp.inventory.items, rp.inventory.items),
            ),
            settings=replace(newest.settings, values=dict(newest.settings.values)),
            statistics=Statistics(
                counters=_max_counts(lp.statistics.counters, rp.statistics.counters),
                play_time_seconds=max(
                    lp.statistics.play_time_seconds, rp.statistics.play_time_seconds
                ),
            ),
            extensions=self._merge_extensions(
                newer.payload.extensions, older.payload.extensions, newer is local
            ),
        )

        now = self._clock()
        return SaveRecord(
            owner_id=local.owner_id,
            device_id=local.device_id,
            schema_version=max(local.schema_version, remote.schema_version),
            sync_version=max(local.sync_version, remote.sync_version) + 1,
            last_saved_at=now,
            local_timestamp=now,
            remote_timestamp=remote.remote_timestamp,
            payload=payload,
        )

    def _merge_extensions(
        self, newer: Dict[str, Any], older: Dict[str, Any], newer_is_local: bool
    ) -> Dict[str, Any]:
        merged = dict(older)
        merged.update(newer)
        for key, merger in self.extension_mergers.items():
            if key in newer and key in older:
                local_value, remote_value = (
                    (newer[key], older[key]) if newer_is_local else (older[key], newer[key])
                )
                merged[key] = merger(local_value, remote_value)
        return merged

    # === Hashing ===

    def _build_record_hash(self, record: SaveRecord) -> str:
        return hashlib.sha256(
            json.dumps(record.to_dict(), sort_keys=True, default=str).encode("utf-8")
        ).hexdigest()

    def _build_conflict_hash(self, local: SaveRecord, remote: SaveRecord) -> str:
        """Deterministic hash of both sides, for auditing and de-duplication."""
        payload = {"cloud": remote.to_dict(), "local": local.to_dict()}
        return hashlib.sha256(
            json.dumps(payload, sort_keys=True, default=str).encode("utf-8")
        ).hexdigest()
