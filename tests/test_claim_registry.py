"""Tests for the cross-process claim registry."""

from __future__ import annotations

import json
import multiprocessing
import os
import sys
from concurrent.futures import ThreadPoolExecutor
from datetime import datetime, timedelta, timezone
from pathlib import Path

import pytest

from onetap.lifecycle.registry import ClaimRegistry, is_alive, pid_exists
from onetap.models import (
    Claim,
    RegistrySnapshot,
    ResourceAlreadyClaimed,
    Simulator,
    StorageCorrupt,
)

# Far above any pid_max, so guaranteed not to exist
DEAD_PID = 99999999


def _sim(udid: str, name: str = "iPhone 15") -> Simulator:
    return Simulator(udid=udid, name=name, state="Shutdown")


def _claim(
    udid: str,
    session_id: str,
    process_id: int,
    last_activity_at: datetime | None = None,
) -> Claim:
    kwargs = {}
    if last_activity_at is not None:
        kwargs = {"created_at": last_activity_at, "last_activity_at": last_activity_at}
    return Claim(
        simulator_udid=udid,
        simulator_name=f"Sim {udid}",
        session_id=session_id,
        process_id=process_id,
        **kwargs,
    )


@pytest.fixture
def registry(tmp_path: Path) -> ClaimRegistry:
    return ClaimRegistry(state_dir=tmp_path, grace_hours=24)


# ---------------------------------------------------------------------------
# load / modify
# ---------------------------------------------------------------------------


class TestLoad:
    def test_missing_file_is_empty(self, registry):
        snapshot = registry.load()
        assert snapshot.claims == []
        assert not registry.state_file.exists()

    def test_corrupt_file_raises(self, registry):
        registry.state_file.write_text("{not json")
        with pytest.raises(StorageCorrupt):
            registry.load()

    def test_wrong_shape_raises(self, registry):
        registry.state_file.write_text(json.dumps({"claims": [{"simulator_udid": 5}]}))
        with pytest.raises(StorageCorrupt):
            registry.load()

    def _write_raw_claim(self, registry, created_at: str, last_activity_at: str) -> None:
        registry.state_file.write_text(json.dumps({
            "version": 1,
            "claims": [{
                "id": "ABCDEF12-0000-0000-0000-000000000000",
                "simulator_udid": "A",
                "simulator_name": "iPhone 15",
                "session_id": "/dev/ttys009",
                "process_id": DEAD_PID,
                "created_at": created_at,
                "last_activity_at": last_activity_at,
            }],
        }))

    def test_mixed_naive_and_aware_timestamps(self, registry):
        self._write_raw_claim(registry, "2024-01-01T00:00:00", "2024-01-02T00:00:00Z")

        claim = registry.load().claims[0]

        assert claim.created_at == datetime(2024, 1, 1, tzinfo=timezone.utc)
        assert claim.last_activity_at == datetime(2024, 1, 2, tzinfo=timezone.utc)

    def test_naive_timestamps_are_treated_as_utc(self, registry):
        self._write_raw_claim(registry, "2024-01-01T00:00:00", "2024-01-02T00:00:00")

        assert registry.load().claims[0].created_at.tzinfo is not None
        assert [c.simulator_udid for c in registry.stale_claims()] == ["A"]
        assert [c.simulator_udid for c in registry.garbage_collect_stale()] == ["A"]
        assert registry.all_claims() == []

    def test_modify_refuses_to_overwrite_corrupt_file(self, registry):
        registry.state_file.write_text("garbage")
        with pytest.raises(StorageCorrupt):
            registry.claim(_sim("A"), "/dev/ttys001", os.getpid())
        assert registry.state_file.read_text() == "garbage"


class TestModify:
    def test_mutation_is_persisted(self, registry):
        registry.modify(lambda s: s.add_claim(_claim("A", "/dev/ttys001", os.getpid())))

        fresh = ClaimRegistry(state_dir=registry.state_dir)
        assert [c.simulator_udid for c in fresh.load().claims] == ["A"]

    def test_returns_transform_value(self, registry):
        assert registry.modify(lambda s: 42) == 42

    def test_replacement_snapshot(self, registry):
        registry.claim(_sim("A"), "/dev/ttys001", os.getpid())
        registry.modify(lambda s: RegistrySnapshot())
        assert registry.load().claims == []

    def test_failed_transform_writes_nothing(self, registry):
        registry.claim(_sim("A"), "/dev/ttys001", os.getpid())
        before = registry.state_file.read_bytes()

        def _boom(snapshot):
            snapshot.claims.clear()
            raise RuntimeError("boom")

        with pytest.raises(RuntimeError):
            registry.modify(_boom)

        assert registry.state_file.read_bytes() == before
        # Lock was released: a later modify does not block
        registry.claim(_sim("B"), "/dev/ttys002", os.getpid())
        assert len(registry.load().claims) == 2

    def test_no_temp_files_left_behind(self, registry):
        registry.claim(_sim("A"), "/dev/ttys001", os.getpid())
        registry.release("/dev/ttys001")
        leftovers = [p.name for p in registry.state_dir.iterdir() if p.name.endswith(".tmp")]
        assert leftovers == []

    def test_creates_state_dir(self, tmp_path):
        registry = ClaimRegistry(state_dir=tmp_path / "nested" / "dir")
        registry.claim(_sim("A"), "/dev/ttys001", os.getpid())
        assert registry.state_file.exists()
        assert registry.lock_file.exists()


class TestSerialization:
    def test_stable_json(self, registry):
        registry.claim(_sim("A"), "/dev/ttys001", os.getpid(), name="auth-feature")
        text = registry.state_file.read_text()
        data = json.loads(text)

        assert text == ClaimRegistry.serialize(registry.load())
        assert list(data) == sorted(data)
        assert data["version"] == RegistrySnapshot.CURRENT_VERSION
        claim = data["claims"][0]
        assert claim["name"] == "auth-feature"
        assert "last_bundle_id" not in claim

    def test_round_trip(self, registry):
        registry.claim(_sim("A"), "/dev/ttys001", os.getpid(), name="one")
        registry.claim(_sim("B"), "pid-77", os.getpid())
        registry.record_bundle_id("pid-77", "com.example.app")

        snapshot = registry.load()
        assert RegistrySnapshot.model_validate_json(ClaimRegistry.serialize(snapshot)) == snapshot


# ---------------------------------------------------------------------------
# Claims
# ---------------------------------------------------------------------------


class TestClaims:
    def test_claim_and_current(self, registry):
        claim = registry.claim(_sim("A"), "env-ci", os.getpid(), name="ci")
        assert registry.current_claim("env-ci") == claim
        assert registry.current_claim("env-other") is None

    def test_current_claim_defaults_to_calling_session(self, registry, monkeypatch):
        monkeypatch.setenv("ONETAP_SESSION", "mine")
        registry.claim(_sim("A"), "env-mine", os.getpid())
        assert registry.current_claim().simulator_udid == "A"

    def test_claimed_simulator_rejected(self, registry):
        registry.claim(_sim("A"), "/dev/ttys001", os.getpid())
        with pytest.raises(ResourceAlreadyClaimed):
            registry.claim(_sim("A"), "/dev/ttys002", os.getpid())
        assert len(registry.all_claims()) == 1

    def test_session_with_claim_rejected(self, registry):
        registry.claim(_sim("A"), "/dev/ttys001", os.getpid())
        with pytest.raises(ResourceAlreadyClaimed):
            registry.claim(_sim("B"), "/dev/ttys001", os.getpid())

    def test_release(self, registry):
        registry.claim(_sim("A"), "/dev/ttys001", os.getpid())
        released = registry.release("/dev/ttys001")
        assert released.simulator_udid == "A"
        assert registry.release("/dev/ttys001") is None
        assert registry.all_claims() == []

    def test_release_simulator(self, registry):
        registry.claim(_sim("A"), "/dev/ttys001", os.getpid())
        assert registry.release_simulator("A").session_id == "/dev/ttys001"
        assert registry.release_simulator("A") is None

    def test_record_bundle_id(self, registry):
        claim = registry.claim(_sim("A"), "/dev/ttys001", os.getpid())
        updated = registry.record_bundle_id("/dev/ttys001", "com.example.app")
        assert updated.last_bundle_id == "com.example.app"
        assert registry.current_claim("/dev/ttys001").last_activity_at >= claim.last_activity_at

    def test_touch_unknown_session(self, registry):
        assert registry.touch("/dev/ttys009") is None


# ---------------------------------------------------------------------------
# Liveness and garbage collection
# ---------------------------------------------------------------------------


class TestLiveness:
    def test_pid_exists(self):
        assert pid_exists(os.getpid())
        assert not pid_exists(DEAD_PID)
        assert not pid_exists(0)
        assert not pid_exists(-1)

    def test_terminal_session_with_live_pid(self):
        assert is_alive(_claim("A", "/dev/ttys001", os.getpid()))

    def test_terminal_session_with_dead_pid(self):
        assert not is_alive(_claim("A", "/dev/ttys001", DEAD_PID))

    def test_fallback_session_within_grace(self):
        claim = _claim("A", "pid-4242", DEAD_PID)
        assert is_alive(claim, grace_hours=24)

    def test_fallback_session_past_grace(self):
        old = datetime.now(timezone.utc) - timedelta(hours=25)
        assert not is_alive(_claim("A", "pid-4242", DEAD_PID, last_activity_at=old), grace_hours=24)
        assert not is_alive(_claim("B", "env-ci", DEAD_PID, last_activity_at=old), grace_hours=24)

    def test_grace_is_configurable(self):
        recent = datetime.now(timezone.utc) - timedelta(hours=2)
        claim = _claim("A", "env-ci", DEAD_PID, last_activity_at=recent)
        assert is_alive(claim, grace_hours=24)
        assert not is_alive(claim, grace_hours=1)

    def test_explicit_now(self):
        start = datetime(2024, 5, 1, tzinfo=timezone.utc)
        claim = _claim("A", "pid-1", DEAD_PID, last_activity_at=start)
        assert is_alive(claim, now=start + timedelta(hours=23), grace_hours=24)
        assert not is_alive(claim, now=start + timedelta(hours=24), grace_hours=24)


class TestGarbageCollection:
    def _seed(self, registry: ClaimRegistry) -> None:
        old = datetime.now(timezone.utc) - timedelta(days=3)
        registry.modify(lambda s: s.claims.extend([
            _claim("LIVE-TTY", "/dev/ttys001", os.getpid()),
            _claim("DEAD-TTY", "/dev/ttys002", DEAD_PID),
            _claim("RECENT-PID", "pid-100", DEAD_PID),
            _claim("OLD-PID", "pid-200", DEAD_PID, last_activity_at=old),
            _claim("OLD-ENV", "env-ci", DEAD_PID, last_activity_at=old),
        ]))

    def test_removes_exactly_dead_claims(self, registry):
        self._seed(registry)

        removed = registry.garbage_collect_stale()

        assert {c.simulator_udid for c in removed} == {"DEAD-TTY", "OLD-PID", "OLD-ENV"}
        assert {c.simulator_udid for c in registry.all_claims()} == {"LIVE-TTY", "RECENT-PID"}

    def test_stale_claims_is_read_only(self, registry):
        self._seed(registry)
        before = registry.state_file.read_bytes()

        stale = registry.stale_claims()

        assert len(stale) == 3
        assert registry.state_file.read_bytes() == before

    def test_nothing_to_collect(self, registry):
        registry.claim(_sim("A"), "/dev/ttys001", os.getpid())
        assert registry.garbage_collect_stale() == []
        assert len(registry.all_claims()) == 1

    def test_gc_frees_simulator_for_new_claim(self, registry):
        registry.modify(lambda s: s.add_claim(_claim("A", "/dev/ttys002", DEAD_PID)))
        with pytest.raises(ResourceAlreadyClaimed):
            registry.claim(_sim("A"), "/dev/ttys003", os.getpid())

        registry.garbage_collect_stale()

        claim = registry.claim(_sim("A"), "/dev/ttys003", os.getpid())
        assert claim.session_id == "/dev/ttys003"


# ---------------------------------------------------------------------------
# Concurrency
# ---------------------------------------------------------------------------


class TestConcurrentModify:
    """Each worker builds its own registry, so every modify opens its own lock fd."""

    def test_no_lost_updates(self, tmp_path):
        adds = 40
        removes = 15

        def _add(i: int) -> None:
            ClaimRegistry(state_dir=tmp_path).claim(_sim(f"SIM-{i}"), f"env-{i}", os.getpid())

        with ThreadPoolExecutor(max_workers=8) as pool:
            list(pool.map(_add, range(adds)))

        def _remove(i: int) -> None:
            ClaimRegistry(state_dir=tmp_path).release(f"env-{i}")

        with ThreadPoolExecutor(max_workers=8) as pool:
            list(pool.map(_remove, range(removes)))

        claims = ClaimRegistry(state_dir=tmp_path).all_claims()
        assert len(claims) == adds - removes

    def test_single_winner_for_contended_simulator(self, tmp_path):
        def _try(i: int) -> bool:
            try:
                ClaimRegistry(state_dir=tmp_path).claim(_sim("SHARED"), f"env-{i}", os.getpid())
            except ResourceAlreadyClaimed:
                return False
            return True

        with ThreadPoolExecutor(max_workers=8) as pool:
            results = list(pool.map(_try, range(12)))

        assert results.count(True) == 1
        assert len(ClaimRegistry(state_dir=tmp_path).all_claims()) == 1


def _claim_in_child(state_dir: str, index: int) -> None:
    registry = ClaimRegistry(state_dir=Path(state_dir), grace_hours=24)
    registry.claim(_sim(f"PROC-{index}"), f"env-proc-{index}", os.getpid())


@pytest.mark.skipif(
    sys.platform == "win32" or "fork" not in multiprocessing.get_all_start_methods(),
    reason="needs fork start method",
)
class TestMultiProcess:
    def test_claims_from_separate_processes(self, tmp_path):
        ctx = multiprocessing.get_context("fork")
        procs = [ctx.Process(target=_claim_in_child, args=(str(tmp_path), i)) for i in range(6)]
        for p in procs:
            p.start()
        for p in procs:
            p.join(timeout=30)

        assert [p.exitcode for p in procs] == [0] * 6
        udids = {c.simulator_udid for c in ClaimRegistry(state_dir=tmp_path).all_claims()}
        assert udids == {f"PROC-{i}" for i in range(6)}
