"""Command-line surface for onetap (the `tap` command).

Every command resolves "the current target" by looking up the calling
session's claim in the registry, so no UDID is passed between commands.
"""

from __future__ import annotations

import argparse
import asyncio
import logging
import signal
import sys
import tempfile
from datetime import datetime
from pathlib import Path

from onetap import __version__
from onetap.build import xcodebuild
from onetap.config import get_default_device_family, get_minimum_runtime
from onetap.device.log_stream import LogStreamer
from onetap.device.picker import confirm, pick_simulator
from onetap.device.screenshots import SUPPORTED_FORMATS, output_suffix, process_screenshot
from onetap.device.selection import auto_select, parse_runtime_version
from onetap.device.simctl import SimctlBackend, run_command
from onetap.lifecycle import session
from onetap.lifecycle.registry import ClaimRegistry
from onetap.models import (
    Claim,
    LaunchFailed,
    NoActiveClaim,
    NoResourcesAvailable,
    NoSchemeFound,
    OneTapError,
    ResourceAlreadyClaimed,
    ResourceNotFound,
)

logger = logging.getLogger("onetap.cli")


def _require_claim(registry: ClaimRegistry) -> Claim:
    claim = registry.current_claim()
    if claim is None:
        raise NoActiveClaim()
    return claim


async def _ensure_booted(simctl: SimctlBackend, claim: Claim, open_app: bool = False) -> None:
    sim = await simctl.get_simulator(claim.simulator_udid)
    if sim is not None and not sim.is_booted:
        print("Booting simulator...")
        if open_app:
            await simctl.open_simulator_app(claim.simulator_udid)
        else:
            await simctl.boot(claim.simulator_udid)


async def _resolve_scheme(project: xcodebuild.Project, scheme: str | None, prefer_app: bool) -> str | None:
    if scheme or project.kind == xcodebuild.ProjectKind.SWIFT_PACKAGE:
        return scheme
    schemes = await xcodebuild.list_schemes(project)
    chosen = xcodebuild.choose_scheme(schemes, prefer_app=prefer_app)
    if chosen is None:
        raise NoSchemeFound()
    if len(schemes) > 1:
        print(f"Using scheme '{chosen}' (use --scheme to specify)")
    return chosen


# ---------------------------------------------------------------------------
# Commands
# ---------------------------------------------------------------------------


async def _cmd_claim(args: argparse.Namespace, registry: ClaimRegistry, simctl: SimctlBackend) -> int:
    """Claim a simulator for this terminal session."""
    session_id = session.resolve()

    existing = registry.current_claim(session_id)
    if existing is not None:
        print(f"You already have a claim on {existing.simulator_name}")
        print("   Release it first with 'tap release'")
        return 0

    simulators = await simctl.list_simulators()
    snapshot = registry.load()
    claimed_udids = {c.simulator_udid for c in snapshot.claims}

    if args.udid:
        selected = next((s for s in simulators if s.udid == args.udid), None)
        if selected is None:
            raise ResourceNotFound(args.udid)
        owner = snapshot.claim_for_simulator(args.udid)
        if owner is not None:
            raise ResourceAlreadyClaimed(owner.display_name, udid=args.udid)
    elif args.auto:
        minimum_runtime = args.min_runtime or get_minimum_runtime()
        if minimum_runtime and parse_runtime_version(minimum_runtime)[0] == 0:
            raise OneTapError(
                f"Invalid minimum runtime '{minimum_runtime}' (expected e.g. iOS-17-0 or 17.0)",
                tool="claim",
            )
        selected = auto_select(
            simulators,
            exclude_udids=claimed_udids,
            prefer_booted=True,
            minimum_runtime=minimum_runtime,
            preferred_family=get_default_device_family(),
        )
        if selected is None:
            raise NoResourcesAvailable()
    else:
        if not session.is_interactive():
            print("Not in interactive mode. Use --auto or --udid", file=sys.stderr)
            return 1
        selected = pick_simulator(simulators, exclude_udids=claimed_udids)
        if selected is None:
            print("No simulator selected")
            return 0

    claim = registry.claim(selected, session_id, session.session_process_id(), name=args.name)

    print(f"Claimed {selected.name}")
    print(f"   Session: {claim.display_name}")
    print(f"   UDID: {selected.udid}")

    if args.boot and not selected.is_booted:
        print("Booting simulator...")
        await simctl.open_simulator_app(selected.udid)
        print("Simulator booted")
    return 0


async def _cmd_release(args: argparse.Namespace, registry: ClaimRegistry, simctl: SimctlBackend) -> int:
    """Release the claimed simulator."""
    session_id = session.resolve()
    claim = registry.release(session_id)
    if claim is None:
        print("No simulator claimed for this session")
        return 0

    print(f"Released {claim.simulator_name}")

    if args.shutdown:
        print("Shutting down simulator...")
        await simctl.shutdown(claim.simulator_udid)
        print("Simulator shut down")
    return 0


def _cmd_status(args: argparse.Namespace, registry: ClaimRegistry) -> int:
    """Show all active claims."""
    snapshot = registry.load()
    current_session = session.resolve()

    if not snapshot.claims:
        print("No active claims")
        print("   Run 'tap claim' to claim a simulator")
        return 0

    print("Active Claims:\n")
    stale = 0
    for claim in snapshot.claims:
        marker = "→" if claim.session_id == current_session else " "
        alive = registry.is_alive(claim)
        if not alive:
            stale += 1
        print(f"{marker} [{'alive' if alive else 'stale'}] {claim.display_name}")
        print(f"     Simulator: {claim.simulator_name}")
        if getattr(args, "detailed", False):
            print(f"     UDID: {claim.simulator_udid}")
            print(f"     Session: {session.short_display(claim.session_id)}")
            print(f"     PID: {claim.process_id}")
        print(f"     Uptime: {claim.uptime}")
        if getattr(args, "detailed", False) and claim.last_bundle_id:
            print(f"     Last app: {claim.last_bundle_id}")
        print()

    if stale:
        print(f"{stale} stale claim(s) detected. Run 'tap gc' to clean up.")
    return 0


async def _cmd_build(args: argparse.Namespace, registry: ClaimRegistry, simctl: SimctlBackend) -> int:
    """Build the project for the claimed simulator."""
    claim = _require_claim(registry)

    project = xcodebuild.detect_project(xcodebuild.project_directory(args.project))
    scheme = await _resolve_scheme(project, args.scheme, prefer_app=False)

    print(f"Building {scheme or 'project'}...")
    result = await xcodebuild.build(project, scheme, claim.simulator_udid, args.configuration)
    registry.record_bundle_id(claim.session_id, result.bundle_id)

    print(f"\nBuilt: {result.app_path}")
    print(f"   Bundle ID: {result.bundle_id}")
    return 0


async def _cmd_run(args: argparse.Namespace, registry: ClaimRegistry, simctl: SimctlBackend) -> int:
    """Build, install and launch the app on the claimed simulator."""
    claim = _require_claim(registry)
    print(f"Target: {claim.simulator_name}\n")

    project = xcodebuild.detect_project(xcodebuild.project_directory(args.project))
    scheme = await _resolve_scheme(project, args.scheme, prefer_app=True)

    print(f"Building {scheme or 'project'}...")
    result = await xcodebuild.build(project, scheme, claim.simulator_udid, args.configuration)
    print("Build succeeded")

    await _ensure_booted(simctl, claim)

    if args.show:
        await simctl.open_simulator_app(claim.simulator_udid)

    if args.restart:
        await simctl.terminate(claim.simulator_udid, result.bundle_id)

    print("\nInstalling...")
    await simctl.install(claim.simulator_udid, result.app_path)

    print("Launching...")
    await simctl.launch(claim.simulator_udid, result.bundle_id)

    registry.record_bundle_id(claim.session_id, result.bundle_id)
    print(f"\nRunning {result.bundle_id} on {claim.simulator_name}")
    return 0


async def _cmd_install(args: argparse.Namespace, registry: ClaimRegistry, simctl: SimctlBackend) -> int:
    """Install an app bundle to the claimed simulator."""
    claim = _require_claim(registry)

    app_path = Path(args.app_path).expanduser()
    if not app_path.exists():
        raise OneTapError(f"Install failed: App not found at {args.app_path}", tool="simctl")

    await _ensure_booted(simctl, claim)

    print(f"Installing to {claim.simulator_name}...")
    await simctl.install(claim.simulator_udid, str(app_path))

    bundle_id = xcodebuild.read_bundle_id(app_path)
    if bundle_id:
        registry.record_bundle_id(claim.session_id, bundle_id)
        print(f"Installed {bundle_id}")
    else:
        registry.touch(claim.session_id)
        print("Installed")
    return 0


async def _cmd_launch(args: argparse.Namespace, registry: ClaimRegistry, simctl: SimctlBackend) -> int:
    """Launch an app on the claimed simulator."""
    claim = _require_claim(registry)

    if args.bundle_id:
        bundle_id = args.bundle_id
    elif claim.last_bundle_id:
        bundle_id = claim.last_bundle_id
        print(f"Using last installed app: {bundle_id}")
    else:
        raise LaunchFailed("No bundle ID specified and no previous app installed")

    await _ensure_booted(simctl, claim, open_app=True)

    if args.restart:
        print("Terminating existing instance...")
        await simctl.terminate(claim.simulator_udid, bundle_id)

    print(f"Launching {bundle_id}...")
    await simctl.launch(claim.simulator_udid, bundle_id)

    registry.record_bundle_id(claim.session_id, bundle_id)
    print("Launched")
    return 0


async def _cmd_logs(args: argparse.Namespace, registry: ClaimRegistry, simctl: SimctlBackend) -> int:
    """Stream logs from the claimed simulator until it ends or Ctrl+C."""
    claim = _require_claim(registry)
    await _ensure_booted(simctl, claim)

    if args.all:
        bundle_id = None
        print(f"Streaming all logs from {claim.simulator_name}...")
    elif args.bundle_id:
        bundle_id = args.bundle_id
        print(f"Streaming logs for {bundle_id}...")
    elif claim.last_bundle_id:
        bundle_id = claim.last_bundle_id
        print(f"Streaming logs for {bundle_id}...")
    else:
        bundle_id = None
        print("Streaming all logs (no app filter, use --bundle-id to filter)...")
    print("   Press Ctrl+C to stop\n")

    streamer = LogStreamer(simctl)
    loop = asyncio.get_running_loop()
    stop_tasks: list[asyncio.Task] = []

    def _on_interrupt() -> None:
        print("\n\nLog streaming stopped")
        stop_tasks.append(asyncio.ensure_future(streamer.stop()))

    await streamer.start(claim.simulator_udid, bundle_id, lambda line: print(line, end="", flush=True))
    loop.add_signal_handler(signal.SIGINT, _on_interrupt)
    try:
        await streamer.wait()
    finally:
        loop.remove_signal_handler(signal.SIGINT)
        # Let stop() finish its terminate/kill sequence before the loop closes
        if stop_tasks:
            await asyncio.gather(*stop_tasks)
    return 0


async def _cmd_screenshot(args: argparse.Namespace, registry: ClaimRegistry, simctl: SimctlBackend) -> int:
    """Capture a screenshot from the claimed simulator."""
    claim = _require_claim(registry)

    sim = await simctl.get_simulator(claim.simulator_udid)
    if sim is None or not sim.is_booted:
        print("Simulator is not booted. Boot it first with 'tap claim --boot'", file=sys.stderr)
        return 1

    suffix = output_suffix(args.format)
    if args.output_path:
        final_path = args.output_path
    else:
        timestamp = datetime.now().astimezone().isoformat(timespec="seconds").replace(":", "-")
        final_path = f"screenshot-{timestamp}{suffix}"
    accepted = (".jpg", ".jpeg") if suffix == ".jpg" else (suffix,)
    if not final_path.lower().endswith(accepted):
        final_path += suffix

    print("Capturing screenshot...")
    if args.format == "png" and args.scale == 1.0:
        await simctl.screenshot(claim.simulator_udid, final_path)
    else:
        with tempfile.TemporaryDirectory(prefix="onetap-shot-") as tmp:
            raw_path = Path(tmp) / "raw.png"
            await simctl.screenshot(claim.simulator_udid, str(raw_path))
            processed = process_screenshot(raw_path.read_bytes(), format=args.format, scale=args.scale)
        Path(final_path).write_bytes(processed)

    registry.touch(claim.session_id)
    print(f"Saved to {final_path}")

    if args.open:
        await run_command("open", final_path, tool="open")
    return 0


async def _cmd_gc(args: argparse.Namespace, registry: ClaimRegistry) -> int:
    """Garbage collect stale claims (from dead terminals)."""
    stale = registry.stale_claims()
    if not stale:
        print("No stale claims to clean up")
        return 0

    print(f"Found {len(stale)} stale claim(s):\n")
    for claim in stale:
        print(f"   • {claim.display_name} → {claim.simulator_name}")
        print(f"     PID {claim.process_id} is no longer running")
    print()

    if not args.force and not confirm("Remove these stale claims?"):
        print("Cancelled")
        return 0

    removed = registry.garbage_collect_stale()
    print(f"Removed {len(removed)} stale claim(s)")
    return 0


async def dispatch(
    args: argparse.Namespace,
    registry: ClaimRegistry | None = None,
    simctl: SimctlBackend | None = None,
) -> int:
    """Run the selected command and return its exit code."""
    registry = registry or ClaimRegistry()
    simctl = simctl or SimctlBackend()

    if args.command in (None, "status"):
        return _cmd_status(args, registry)
    if args.command == "gc":
        return await _cmd_gc(args, registry)

    handlers = {
        "claim": _cmd_claim,
        "release": _cmd_release,
        "run": _cmd_run,
        "build": _cmd_build,
        "install": _cmd_install,
        "launch": _cmd_launch,
        "logs": _cmd_logs,
        "screenshot": _cmd_screenshot,
    }
    return await handlers[args.command](args, registry, simctl)


# ---------------------------------------------------------------------------
# Parser
# ---------------------------------------------------------------------------


def _add_build_flags(parser: argparse.ArgumentParser) -> None:
    """Add shared build flags to a subcommand parser."""
    parser.add_argument("--scheme", "-s", default=None, help="Scheme to build")
    parser.add_argument(
        "--configuration", "-c", default="Debug", help="Build configuration (default: Debug)",
    )
    parser.add_argument("--project", default=None, help="Path to project or workspace")


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="tap",
        description="IDE-less iOS development. One tap to build, install, and run.",
    )
    parser.add_argument("--version", action="version", version=f"%(prog)s {__version__}")
    parser.add_argument(
        "--verbose", "-v", dest="debug_logging", action="store_true", help="Enable debug logging",
    )
    parser.set_defaults(command=None, detailed=False)

    subparsers = parser.add_subparsers(dest="command")

    # claim
    claim_parser = subparsers.add_parser("claim", help="Claim a simulator for this terminal session")
    claim_parser.add_argument("--name", "-n", default=None, help="Name for this session (e.g. 'auth-feature')")
    claim_parser.add_argument("--udid", default=None, help="Specific simulator UDID to claim")
    claim_parser.add_argument(
        "--auto", action="store_true", default=False,
        help="Auto-select an available simulator (non-interactive)",
    )
    claim_parser.add_argument(
        "--boot", action="store_true", default=False, help="Boot the simulator if not already running",
    )
    claim_parser.add_argument(
        "--min-runtime", default=None,
        help="With --auto, skip runtimes older than this (e.g. iOS-17-0)",
    )

    # release
    release_parser = subparsers.add_parser("release", help="Release the claimed simulator")
    release_parser.add_argument(
        "--shutdown", action="store_true", default=False, help="Shutdown the simulator after releasing",
    )

    # status
    status_parser = subparsers.add_parser("status", help="Show all active claims")
    status_parser.add_argument(
        "--verbose", dest="detailed", action="store_true", default=False, help="Show detailed information",
    )

    # run
    run_parser = subparsers.add_parser("run", help="Build, install, and launch the app")
    _add_build_flags(run_parser)
    run_parser.add_argument(
        "--restart", action=argparse.BooleanOptionalAction, default=True,
        help="Terminate existing app instance before launching (default: on)",
    )
    run_parser.add_argument(
        "--show", action="store_true", default=False, help="Open Simulator.app and bring to front",
    )

    # build
    build_cmd_parser = subparsers.add_parser("build", help="Build the project for the simulator")
    _add_build_flags(build_cmd_parser)

    # install
    install_parser = subparsers.add_parser("install", help="Install an app to the claimed simulator")
    install_parser.add_argument("app_path", help="Path to the .app bundle")

    # launch
    launch_parser = subparsers.add_parser("launch", help="Launch an app on the claimed simulator")
    launch_parser.add_argument(
        "bundle_id", nargs="?", default=None, help="Bundle ID of the app (uses last installed if omitted)",
    )
    launch_parser.add_argument(
        "--restart", action="store_true", default=False, help="Terminate the app if already running",
    )

    # logs
    logs_parser = subparsers.add_parser("logs", help="Stream logs from the claimed simulator")
    logs_parser.add_argument(
        "--bundle-id", "-b", default=None, help="Bundle ID to filter logs (uses last installed if omitted)",
    )
    logs_parser.add_argument(
        "--all", "-a", action="store_true", default=False, help="Show all logs (don't filter by app)",
    )

    # screenshot
    shot_parser = subparsers.add_parser("screenshot", help="Capture a screenshot from the claimed simulator")
    shot_parser.add_argument(
        "output_path", nargs="?", default=None, help="Output file path (default: screenshot-<timestamp>.png)",
    )
    shot_parser.add_argument(
        "--open", action="store_true", default=False, help="Open the screenshot after capturing",
    )
    shot_parser.add_argument(
        "--scale", type=float, default=1.0, help="Scale factor 0.1-1.0 (default: 1.0)",
    )
    shot_parser.add_argument(
        "--format", choices=SUPPORTED_FORMATS, default="png", help="Output format (default: png)",
    )

    # gc
    gc_parser = subparsers.add_parser("gc", help="Garbage collect stale claims (from dead terminals)")
    gc_parser.add_argument("--force", action="store_true", default=False, help="Skip confirmation prompt")

    return parser


def cli(argv: list[str] | None = None) -> None:
    """CLI entry point."""
    parser = build_parser()
    args = parser.parse_args(argv)

    logging.basicConfig(
        level=logging.DEBUG if args.debug_logging else logging.WARNING,
        format="%(asctime)s [%(levelname)s] %(name)s: %(message)s",
    )

    if args.command == "screenshot" and not 0.1 <= args.scale <= 1.0:
        parser.error("--scale must be between 0.1 and 1.0")

    try:
        code = asyncio.run(dispatch(args))
    except OneTapError as e:
        logger.debug("Command %s failed", args.command, exc_info=True)
        print(f"Error: {e}", file=sys.stderr)
        sys.exit(1)
    except KeyboardInterrupt:
        sys.exit(130)
    sys.exit(code)


if __name__ == "__main__":
    cli()
