"""Core data models: claims, the registry snapshot, simulators and errors."""

from __future__ import annotations

import enum
import re
import uuid
from collections.abc import Callable
from datetime import datetime, timezone
from typing import Any, ClassVar

from pydantic import BaseModel, Field, field_validator


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


# ---------------------------------------------------------------------------
# Errors
# ---------------------------------------------------------------------------


class OneTapError(Exception):
    """Base error for everything onetap surfaces to the user."""

    def __init__(self, message: str, tool: str = "") -> None:
        self.tool = tool
        super().__init__(message)


class StorageCorrupt(OneTapError):
    """The state file exists but cannot be parsed."""


class LockUnavailable(OneTapError):
    """The state lock could not be opened or acquired."""


class NoActiveClaim(OneTapError):
    def __init__(self) -> None:
        super().__init__("No simulator claimed for this session. Run 'tap claim' first.")


class ResourceAlreadyClaimed(OneTapError):
    def __init__(self, owner: str, udid: str = "") -> None:
        self.owner = owner
        self.udid = udid
        super().__init__(f"Simulator already claimed by {owner}")


class ResourceNotFound(OneTapError):
    def __init__(self, udid: str) -> None:
        self.udid = udid
        super().__init__(f"Simulator not found: {udid}")


class NoResourcesAvailable(OneTapError):
    def __init__(self, message: str = "No available simulators to claim") -> None:
        super().__init__(message)


class ExternalCommandFailed(OneTapError):
    """An external command (xcrun, xcodebuild, open) exited non-zero."""

    def __init__(self, command: str, returncode: int, output: str, tool: str = "") -> None:
        self.command = command
        self.returncode = returncode
        self.output = output
        super().__init__(f"{command} failed with code {returncode}:\n{output}", tool=tool or command)


class ProjectNotFound(OneTapError):
    def __init__(self) -> None:
        super().__init__("No Xcode project or workspace found in current directory", tool="xcodebuild")


class MultipleProjectsFound(OneTapError):
    def __init__(self, names: list[str]) -> None:
        self.names = names
        super().__init__(
            f"Multiple projects found: {', '.join(names)}. Specify one with --project",
            tool="xcodebuild",
        )


class NoSchemeFound(OneTapError):
    def __init__(self) -> None:
        super().__init__("No schemes found in project", tool="xcodebuild")


class BuildFailed(OneTapError):
    def __init__(self, message: str) -> None:
        super().__init__(f"Build failed: {message}", tool="xcodebuild")


class LaunchFailed(OneTapError):
    def __init__(self, message: str) -> None:
        super().__init__(f"Launch failed: {message}", tool="simctl")


# ---------------------------------------------------------------------------
# Claims
# ---------------------------------------------------------------------------


TERMINAL_SESSION_PREFIX = "/dev/"


class Claim(BaseModel):
    """One session's exclusive hold on one simulator."""

    id: str = Field(default_factory=lambda: str(uuid.uuid4()).upper())
    simulator_udid: str
    simulator_name: str
    session_id: str = Field(description="TTY path, env-<name> or pid-<ppid>")
    process_id: int
    name: str | None = Field(default=None, description="User-provided label (e.g. 'auth-feature')")
    created_at: datetime = Field(default_factory=_utcnow)
    last_activity_at: datetime | None = None
    last_bundle_id: str | None = None

    @field_validator("created_at", "last_activity_at")
    @classmethod
    def _assume_utc(cls, value: datetime | None) -> datetime | None:
        # Hand-edited state files may carry naive timestamps; they are UTC
        if value is not None and value.tzinfo is None:
            return value.replace(tzinfo=timezone.utc)
        return value

    def model_post_init(self, __context: Any) -> None:
        if self.last_activity_at is None or self.last_activity_at < self.created_at:
            self.last_activity_at = self.created_at

    @property
    def display_name(self) -> str:
        return self.name or f"session-{self.id[:8]}"

    @property
    def is_terminal_session(self) -> bool:
        """True when the session id is a controlling-terminal path."""
        return self.session_id.startswith(TERMINAL_SESSION_PREFIX)

    @property
    def uptime(self) -> str:
        """Time since the claim was created, e.g. '2h 5m' or '12m'."""
        seconds = max(0, int((_utcnow() - self.created_at).total_seconds()))
        hours, remainder = divmod(seconds, 3600)
        minutes = remainder // 60
        if hours > 0:
            return f"{hours}h {minutes}m"
        return f"{minutes}m"


class RegistrySnapshot(BaseModel):
    """The complete durable state: every active claim plus a schema version.

    The helpers below mutate the snapshot in place and are meant to be called
    from inside ``ClaimRegistry.modify`` transforms.
    """

    CURRENT_VERSION: ClassVar[int] = 1

    claims: list[Claim] = Field(default_factory=list)
    version: int = CURRENT_VERSION

    def claim_for_session(self, session_id: str) -> Claim | None:
        return next((c for c in self.claims if c.session_id == session_id), None)

    def claim_for_simulator(self, udid: str) -> Claim | None:
        return next((c for c in self.claims if c.simulator_udid == udid), None)

    def add_claim(self, claim: Claim) -> Claim:
        """Append a claim, rejecting a second claim on the same simulator or session.

        Raises:
            ResourceAlreadyClaimed: the simulator or the session already holds a claim
        """
        owner = self.claim_for_simulator(claim.simulator_udid)
        if owner is not None:
            raise ResourceAlreadyClaimed(owner.display_name, udid=claim.simulator_udid)
        existing = self.claim_for_session(claim.session_id)
        if existing is not None:
            raise ResourceAlreadyClaimed(existing.display_name, udid=existing.simulator_udid)
        self.claims.append(claim)
        return claim

    def remove_claim_for_session(self, session_id: str) -> Claim | None:
        claim = self.claim_for_session(session_id)
        if claim is not None:
            self.claims.remove(claim)
        return claim

    def remove_claim_for_simulator(self, udid: str) -> Claim | None:
        claim = self.claim_for_simulator(udid)
        if claim is not None:
            self.claims.remove(claim)
        return claim

    def touch_session(self, session_id: str, now: datetime | None = None) -> Claim | None:
        claim = self.claim_for_session(session_id)
        if claim is not None:
            claim.last_activity_at = max(now or _utcnow(), claim.created_at)
        return claim

    def update_bundle_id(self, session_id: str, bundle_id: str, now: datetime | None = None) -> Claim | None:
        """Record the last installed/launched app and bump activity."""
        claim = self.touch_session(session_id, now=now)
        if claim is not None:
            claim.last_bundle_id = bundle_id
        return claim

    def partition_stale(self, is_alive: Callable[[Claim], bool]) -> list[Claim]:
        """Keep the claims ``is_alive`` accepts and return the ones it dropped."""
        alive: list[Claim] = []
        removed: list[Claim] = []
        for claim in self.claims:
            (alive if is_alive(claim) else removed).append(claim)
        self.claims = alive
        return removed


# ---------------------------------------------------------------------------
# Simulators
# ---------------------------------------------------------------------------


_FAMILY_PREFIXES = (
    ("iphone", "iPhone"),
    ("ipad", "iPad"),
    ("apple-watch", "Apple Watch"),
    ("apple-tv", "Apple TV"),
)


class SimulatorState(str, enum.Enum):
    """Boot state as reported by simctl. Unrecognized strings map to UNKNOWN."""

    SHUTDOWN = "Shutdown"
    BOOTED = "Booted"
    BOOTING = "Booting"
    SHUTTING_DOWN = "Shutting Down"
    UNKNOWN = "unknown"

    @classmethod
    def _missing_(cls, value):
        return cls.UNKNOWN


class Simulator(BaseModel):
    """An iOS simulator as listed by `xcrun simctl list devices --json`."""

    udid: str
    name: str
    device_type_identifier: str = ""
    state: SimulatorState = SimulatorState.UNKNOWN
    is_available: bool = True
    runtime_identifier: str = ""

    @field_validator("state", mode="before")
    @classmethod
    def _coerce_state(cls, value):
        if isinstance(value, SimulatorState):
            return value
        return SimulatorState(value)

    @property
    def is_booted(self) -> bool:
        return self.state == SimulatorState.BOOTED

    @property
    def runtime_version(self) -> str:
        """Human-readable runtime, e.g. 'com.apple.CoreSimulator.SimRuntime.iOS-17-2' -> 'iOS 17.2'."""
        last = self.runtime_identifier.rsplit(".", 1)[-1]
        parts = last.split("-", 1)
        if len(parts) == 2:
            return f"{parts[0]} {parts[1].replace('-', '.')}"
        return last

    @property
    def device_type_name(self) -> str:
        """e.g. 'com.apple.CoreSimulator.SimDeviceType.iPhone-15-Pro' -> 'iPhone 15 Pro'."""
        last = self.device_type_identifier.rsplit(".", 1)[-1]
        return last.replace("-", " ")

    @property
    def device_family(self) -> str:
        """Device family from the device type identifier, inferred from the name if unset.

        e.g. 'com.apple.CoreSimulator.SimDeviceType.iPad-Pro-13-inch-M4' -> 'iPad'
        """
        match = re.search(r"SimDeviceType\.(.+)$", self.device_type_identifier)
        if match:
            type_name = match.group(1).lower()
            for prefix, family in _FAMILY_PREFIXES:
                if type_name.startswith(prefix):
                    return family
            return ""
        name_lower = self.name.lower()
        for prefix, family in _FAMILY_PREFIXES:
            if prefix.replace("-", " ") in name_lower:
                return family
        return ""

    @property
    def display_string(self) -> str:
        marker = "●" if self.is_booted else "○"
        return f"{marker} {self.name} ({self.runtime_version})"


# ---------------------------------------------------------------------------
# Build
# ---------------------------------------------------------------------------


class BuildResult(BaseModel):
    """Artifact produced by a successful simulator build."""

    app_path: str
    bundle_id: str
