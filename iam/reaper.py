"""
iam/reaper.py -- Periodic cleanup of expired and revoked credentials.

run_cleanup() performs one sweep:
  - refresh tokens     expired or revoked  -> deleted
  - sessions           expired or revoked  -> deleted
  - password resets    expired or used     -> deleted
  - invitations        PENDING past expiry -> marked EXPIRED
  - one-time codes     past expiry         -> deleted
  - OAuth states       past TTL            -> purged (in-memory backend only)

Every step is independent. A failing step is logged and the sweep moves on,
so one broken table never blocks the others.

cleanup_loop() runs a sweep immediately, then once per interval, until its
task is cancelled. CancelledError propagates out of asyncio.sleep and ends
the coroutine cleanly on shutdown.

Layer rule: no imports from api/.
"""

from __future__ import annotations

import asyncio
import logging
from datetime import datetime, timezone

from iam.state import StateStore
from iam.store import IAMStore

logger = logging.getLogger("tenantgate.iam.reaper")


def run_cleanup(store: IAMStore, state_store: StateStore | None = None) -> dict[str, int]:
    """Run one cleanup sweep. Returns rows affected per step (failed steps omitted)."""
    now = datetime.now(timezone.utc)
    steps = {
        "refresh_tokens": lambda: store.delete_stale_refresh_tokens(now),
        "sessions": lambda: store.delete_stale_sessions(now),
        "password_reset_tokens": lambda: store.delete_stale_password_reset_tokens(now),
        "invitations": lambda: store.expire_pending_invitations(now),
        "otps": lambda: store.delete_expired_otps(now),
    }
    if state_store is not None:
        steps["oauth_states"] = state_store.purge_expired

    results: dict[str, int] = {}
    for name, step in steps.items():
        try:
            results[name] = step()
        except Exception:  # noqa: BLE001
            logger.exception("Cleanup step %s failed", name)
    if any(results.values()):
        logger.info(
            "Cleanup removed %s",
            ", ".join(f"{count} {name}" for name, count in results.items() if count),
            extra={"event": "cleanup"},
        )
    return results


async def cleanup_loop(store: IAMStore, interval_seconds: int, state_store: StateStore | None = None) -> None:
    """Sweep now, then every interval_seconds, until cancelled."""
    while True:
        await asyncio.to_thread(run_cleanup, store, state_store)
        await asyncio.sleep(interval_seconds)
