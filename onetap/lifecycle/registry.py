"""Durable, cross-process claim registry.

The state file (~/.onetap/state.json) plus its sibling lock file is the shared
state: there is no in-memory source of truth. Every mutation goes through
``ClaimRegistry.modify``, which re-reads the snapshot under an exclusive lock,
applies a transform and atomically replaces the whole file.
"""

from __future__ import annotations

import json
import logging
import os
import sys
import tempfile
from collections.abc import Callable
from datetime import datetime, timedelta, timezone
from pathlib import Path
from typing import Any, TypeVar

from pydantic import ValidationError

from onetap.config import CONFIG_DIR, LOCK_FILE_NAME, STATE_FILE_NAME, get_stale_grace_hours
from onetap.lifecycle import session
from onetap.lifecycle.locking import exclusive_lock
from onetap.models import Claim, RegistrySnapshot, Simulator, StorageCorrupt

logger = logging.getLogger("onetap.registry")

T = TypeVar("T")


# ----------------------------------------------------------------
# Liveness
# ----------------------------------------------------------------


def pid_exists(pid: int) -> bool:
    """Check whether a process exists without delivering a signal."""
    if pid <= 0:
        return False
    if sys.platform == "win32":
        return _win_pid_exists(pid)
    try:
        os.kill(pid, 0)
    except ProcessLookupError:
        return False
    except PermissionError:
        # Exists, owned by another user
        return True
    except OverflowError:
        return False
    return True


def _win_pid_exists(pid: int) -> bool:
    import ctypes

    PROCESS_QUERY_LIMITED_INFORMATION = 0x1000
    handle = ctypes.windll.kernel32.OpenProcess(PROCESS_QUERY_LIMITED_INFORMATION, False, pid)
    if not handle:
        return False
    ctypes.windll.kernel32.CloseHandle(handle)
    return True


def is_alive(
    claim: Claim,
    now: datetime | None = None,
    grace_hours: float = 24.0,
) -> bool:
    """Decide whether a claim's owner is still around.

    Terminal sessions are dead as soon as their shell pid is gone. Fallback and
    env sessions (hooks, scripts) get a new pid per invocation, so they stay
    alive while their last activity is within the grace window.
    """
    if pid_exists(claim.process_id):
        return True
    if claim.is_terminal_session:
        return False
    now = now or datetime.now(timezone.utc)
    return now - claim.last_activity_at < timedelta(hours=grace_hours)


# ----------------------------------------------------------------
# Registry
# ----------------------------------------------------------------


class ClaimRegistry:
    """Maps sessions to simulator claims, persisted in a single JSON snapshot.

    ``load`` is lock-free: writes replace the file atomically, so readers see
    either the old or the new snapshot. ``modify`` serializes writers across
    processes with an exclusive lock on the sibling lock file.
    """

    def __init__(self, state_dir: Path | None = None, grace_hours: float | None = None):
        self.state_dir = state_dir or CONFIG_DIR
        self.state_file = self.state_dir / STATE_FILE_NAME
        self.lock_file = self.state_dir / LOCK_FILE_NAME
        self.grace_hours = grace_hours if grace_hours is not None else get_stale_grace_hours()

    # ----------------------------------------------------------------
    # Core operations
    # ----------------------------------------------------------------

    def load(self) -> RegistrySnapshot:
        """Return the persisted snapshot, or an empty one if nothing was saved yet.

        Raises:
            StorageCorrupt: the state file exists but cannot be read or parsed
        """
        if not self.state_file.exists():
            return RegistrySnapshot()

        try:
            raw = self.state_file.read_text()
            return RegistrySnapshot.model_validate_json(raw)
        except (OSError, ValidationError, ValueError, TypeError) as e:
            logger.error("Failed to parse state file %s: %s", self.state_file, e)
            raise StorageCorrupt(
                f"State file {self.state_file} is corrupt: {e}. "
                f"Fix or remove it to continue.",
                tool="registry",
            ) from e

    def modify(self, transform: Callable[[RegistrySnapshot], T]) -> T:
        """Atomically read, transform and write back the snapshot.

        The transform may mutate the snapshot in place or return a replacement
        ``RegistrySnapshot``. Any other return value is passed back to the
        caller. If the transform raises, nothing is written and the lock is
        still released.
        """
        with exclusive_lock(self.lock_file):
            snapshot = self.load()
            result = transform(snapshot)
            if isinstance(result, RegistrySnapshot):
                snapshot = result
            self._write_snapshot(snapshot)
            return result

    def current_claim(self, session_id: str | None = None) -> Claim | None:
        """Claim held by the given session (defaults to the calling session)."""
        return self.load().claim_for_session(session_id or session.resolve())

    def all_claims(self) -> list[Claim]:
        return self.load().claims

    def is_alive(self, claim: Claim, now: datetime | None = None) -> bool:
        return is_alive(claim, now=now, grace_hours=self.grace_hours)

    def stale_claims(self) -> list[Claim]:
        """Claims that garbage collection would remove right now (read-only)."""
        return [c for c in self.load().claims if not self.is_alive(c)]

    def garbage_collect_stale(self) -> list[Claim]:
        """Remove claims whose owner is gone. Returns the removed claims."""

        def _collect(snapshot: RegistrySnapshot) -> list[Claim]:
            now = datetime.now(timezone.utc)
            return snapshot.partition_stale(lambda claim: self.is_alive(claim, now=now))

        removed = self.modify(_collect)
        for claim in removed:
            logger.info(
                "Removed stale claim %s on %s (pid %d, session %s)",
                claim.display_name, claim.simulator_name, claim.process_id, claim.session_id,
            )
        return removed

    # ----------------------------------------------------------------
    # Convenience mutations used by the commands
    # ----------------------------------------------------------------

    def claim(
        self,
        simulator: Simulator,
        session_id: str,
        process_id: int,
        name: str | None = None,
    ) -> Claim:
        """Create a claim for the session on the simulator.

        Raises:
            ResourceAlreadyClaimed: the simulator or the session already has a claim
        """
        new_claim = Claim(
            simulator_udid=simulator.udid,
            simulator_name=simulator.name,
            session_id=session_id,
            process_id=process_id,
            name=name,
        )
        claim = self.modify(lambda snapshot: snapshot.add_claim(new_claim))
        logger.info("Simulator claimed: %s (%s) by session %s", simulator.udid, simulator.name, session_id)
        return claim

    def release(self, session_id: str) -> Claim | None:
        removed = self.modify(lambda snapshot: snapshot.remove_claim_for_session(session_id))
        if removed is not None:
            logger.info("Simulator released: %s (%s)", removed.simulator_udid, removed.simulator_name)
        return removed

    def release_simulator(self, udid: str) -> Claim | None:
        removed = self.modify(lambda snapshot: snapshot.remove_claim_for_simulator(udid))
        if removed is not None:
            logger.info("Simulator released: %s (%s)", removed.simulator_udid, removed.simulator_name)
        return removed

    def touch(self, session_id: str) -> Claim | None:
        return self.modify(lambda snapshot: snapshot.touch_session(session_id))

    def record_bundle_id(self, session_id: str, bundle_id: str) -> Claim | None:
        return self.modify(lambda snapshot: snapshot.update_bundle_id(session_id, bundle_id))

    # ----------------------------------------------------------------
    # Internal helpers
    # ----------------------------------------------------------------

    @staticmethod
    def serialize(snapshot: RegistrySnapshot) -> str:
        """Stable JSON: sorted keys, 2-space indent, None fields omitted."""
        data: dict[str, Any] = snapshot.model_dump(mode="json", exclude_none=True)
        return json.dumps(data, indent=2, sort_keys=True) + "\n"

    def _write_snapshot(self, snapshot: RegistrySnapshot) -> None:
        """Write-to-temp then rename, so readers never see a torn file."""
        self.state_dir.mkdir(parents=True, exist_ok=True)
        content = self.serialize(snapshot)

        fd, tmp_name = tempfile.mkstemp(
            prefix=f".{self.state_file.name}.", suffix=".tmp", dir=str(self.state_dir),
        )
        tmp_path = Path(tmp_name)
        try:
            with os.fdopen(fd, "w", encoding="utf-8") as f:
                f.write(content)
                f.flush()
                os.fsync(f.fileno())
            os.replace(tmp_path, self.state_file)
        finally:
            if tmp_path.exists():
                tmp_path.unlink()
