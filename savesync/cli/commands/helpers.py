"""Shared helpers for CLI commands."""

from typing import Optional

from savesync.orchestrator import SyncOrchestrator
from savesync.protocols import RemoteStore, StaticConnectivity
from savesync.remote import HttpRemoteStore
from savesync.types import SlotMetadata


def build_engine(ctx, remote: Optional[RemoteStore] = None, online: bool = False) -> SyncOrchestrator:
    return SyncOrchestrator(
        ctx.config,
        ctx.store,
        remote,
        ctx.auth,
        connectivity=StaticConnectivity(online=online),
    )


def configured_remote(ctx) -> Optional[HttpRemoteStore]:
    """HTTP remote for the configured backend, or None when no backend is set."""
    if not ctx.config.backend_url:
        return None
    return HttpRemoteStore(ctx.config.backend_url, auth_token=ctx.config.auth_token)


def format_slot(meta: SlotMetadata) -> str:
    if not meta.in_use:
        return f"[{meta.slot}] (empty)"
    flags = []
    if meta.corrupted:
        flags.append("CORRUPTED")
    flags.append("synced" if meta.cloud_synced else "local only")
    modified = meta.modified_at.strftime("%Y-%m-%d %H:%M") if meta.modified_at else "?"
    name = meta.player_name or "(unnamed)"
    return (
        f"[{meta.slot}] {name}  {meta.progress_percent:.0f}%  v{meta.sync_version}  "
        f"{meta.size_bytes} bytes  {modified}  ({', '.join(flags)})"
    )
