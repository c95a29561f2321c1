"""Deterministic simulator auto-selection.

Preference cascade: booted phones, then the newest-runtime Pro phone, then
tablets, then anything booted, then anything at all.
"""

from __future__ import annotations

import logging
from collections.abc import Iterable

from onetap.models import Simulator

logger = logging.getLogger("onetap.selection")

PHONE_FAMILY = "iPhone"
TABLET_FAMILY = "iPad"


def parse_runtime_version(runtime: str) -> tuple[int, int]:
    """Extract (major, minor) from a runtime identifier.

    Examples:
        parse_runtime_version("com.apple.CoreSimulator.SimRuntime.iOS-26-2") → (26, 2)
        parse_runtime_version("iOS-17-0") → (17, 0)
        parse_runtime_version("iOS 17.2") → (17, 2)
        parse_runtime_version("17.0") → (17, 0)
        parse_runtime_version("garbage") → (0, 0)
    """
    tail = runtime.rsplit("SimRuntime.", 1)[-1]
    parts = tail.replace(" ", "-").replace(".", "-").split("-")
    if parts and not parts[0].isdigit():
        # Platform prefix such as "iOS"
        parts = parts[1:]
    numbers: list[int] = []
    for part in parts:
        try:
            numbers.append(int(part))
        except ValueError:
            numbers.append(0)
    major = numbers[0] if numbers else 0
    minor = numbers[1] if len(numbers) > 1 else 0
    return major, minor


def compare_runtimes(lhs: str, rhs: str) -> int:
    """Negative if lhs is older than rhs, 0 if equal, positive if newer."""
    lhs_major, lhs_minor = parse_runtime_version(lhs)
    rhs_major, rhs_minor = parse_runtime_version(rhs)
    if lhs_major != rhs_major:
        return lhs_major - rhs_major
    return lhs_minor - rhs_minor


def _rank_phone(sim: Simulator) -> tuple:
    """Sort key (lower = better): newest runtime, Pro models, then name."""
    major, minor = parse_runtime_version(sim.runtime_identifier)
    return (-major, -minor, 0 if "Pro" in sim.name else 1, sim.name)


def _is_ios_family(sim: Simulator, family: str) -> bool:
    return "iOS" in sim.runtime_identifier and sim.device_family == family


def auto_select(
    simulators: Iterable[Simulator],
    exclude_udids: Iterable[str] = (),
    prefer_booted: bool = True,
    minimum_runtime: str | None = None,
    preferred_family: str = PHONE_FAMILY,
) -> Simulator | None:
    """Pick the best unclaimed simulator, or None if nothing is left.

    Args:
        simulators: Candidates from the resource directory
        exclude_udids: Already-claimed simulators
        prefer_booted: Favor simulators that are already running
        minimum_runtime: Drop runtimes older than this (e.g. "iOS-17-0")
        preferred_family: Family of the preferred tier; the other of
            iPhone/iPad is the fallback tier
    """
    excluded = set(exclude_udids)
    available = [s for s in simulators if s.udid not in excluded]

    if minimum_runtime:
        available = [
            s for s in available
            if compare_runtimes(s.runtime_identifier, minimum_runtime) >= 0
        ]

    fallback_family = TABLET_FAMILY if preferred_family == PHONE_FAMILY else PHONE_FAMILY

    preferred = sorted(
        (s for s in available if _is_ios_family(s, preferred_family)),
        key=_rank_phone,
    )

    if prefer_booted:
        booted = next((s for s in preferred if s.is_booted), None)
        if booted is not None:
            return booted

    if preferred:
        return preferred[0]

    fallback = next((s for s in available if _is_ios_family(s, fallback_family)), None)
    if fallback is not None:
        return fallback

    if prefer_booted:
        booted = next((s for s in available if s.is_booted), None)
        if booted is not None:
            return booted

    if available:
        return available[0]

    logger.debug("No simulator left after excluding %d claimed", len(excluded))
    return None
