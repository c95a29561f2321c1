"""Builds Xcode projects for the simulator and extracts the app bundle id."""

from __future__ import annotations

import asyncio
import enum
import json
import logging
import plistlib
import shutil
import tempfile
import uuid
from dataclasses import dataclass
from pathlib import Path

from onetap.models import (
    BuildFailed,
    BuildResult,
    ExternalCommandFailed,
    MultipleProjectsFound,
    ProjectNotFound,
)

logger = logging.getLogger("onetap.build")

BUILD_TIMEOUT = 600  # seconds
STABLE_APP_DIR = Path(tempfile.gettempdir()) / "onetap-apps"


class ProjectKind(str, enum.Enum):
    WORKSPACE = "workspace"
    PROJECT = "project"
    SWIFT_PACKAGE = "swift_package"


@dataclass
class Project:
    kind: ProjectKind
    path: Path

    @property
    def xcodebuild_flag(self) -> str:
        return "-workspace" if self.kind == ProjectKind.WORKSPACE else "-project"


# ---------------------------------------------------------------------------
# Project / scheme helpers
# ---------------------------------------------------------------------------


def detect_project(directory: Path | None = None) -> Project:
    """Find the project to build. Prefers a workspace, then a project, then Package.swift.

    Raises:
        MultipleProjectsFound: more than one workspace (or project) in the directory
        ProjectNotFound: nothing buildable in the directory
    """
    directory = (directory or Path.cwd()).expanduser().resolve()

    workspaces = sorted(directory.glob("*.xcworkspace"))
    if len(workspaces) == 1:
        return Project(ProjectKind.WORKSPACE, workspaces[0])
    if len(workspaces) > 1:
        raise MultipleProjectsFound([w.name for w in workspaces])

    projects = sorted(directory.glob("*.xcodeproj"))
    if len(projects) == 1:
        return Project(ProjectKind.PROJECT, projects[0])
    if len(projects) > 1:
        raise MultipleProjectsFound([p.name for p in projects])

    if (directory / "Package.swift").exists():
        return Project(ProjectKind.SWIFT_PACKAGE, directory)

    raise ProjectNotFound()


def project_directory(project_arg: str | None) -> Path:
    """Directory to search for a project, given the --project option."""
    if not project_arg:
        return Path.cwd()
    path = Path(project_arg).expanduser()
    if path.suffix in (".xcworkspace", ".xcodeproj"):
        return path.parent
    return path


async def _run(args: list[str], timeout: float | None = None) -> tuple[int, str]:
    """Run a toolchain command, returning (returncode, combined output)."""
    try:
        proc = await asyncio.create_subprocess_exec(
            *args,
            stdout=asyncio.subprocess.PIPE,
            stderr=asyncio.subprocess.STDOUT,
        )
    except FileNotFoundError as e:
        raise ExternalCommandFailed(args[0], 127, f"{args[0]} not found. Is Xcode installed?", tool=args[0]) from e
    try:
        stdout, _ = await asyncio.wait_for(proc.communicate(), timeout=timeout)
    except asyncio.TimeoutError:
        proc.kill()
        raise ExternalCommandFailed(args[0], -1, f"timed out after {timeout}s", tool=args[0])
    return proc.returncode, stdout.decode(errors="replace")


async def list_schemes(project: Project) -> list[str]:
    """Run `xcodebuild -list -json` and return the scheme list (empty for Swift packages)."""
    if project.kind == ProjectKind.SWIFT_PACKAGE:
        return []
    returncode, output = await _run(
        ["xcodebuild", project.xcodebuild_flag, str(project.path), "-list", "-json"], timeout=60,
    )
    if returncode != 0:
        raise ExternalCommandFailed("xcodebuild -list", returncode, extract_build_error(output), tool="xcodebuild")
    try:
        data = json.loads(output[output.index("{"):])
    except ValueError as e:
        raise BuildFailed(f"Could not parse scheme list: {e}") from e
    root = data.get("workspace") or data.get("project") or {}
    return root.get("schemes") or []


def choose_scheme(schemes: list[str], prefer_app: bool = True) -> str | None:
    """Pick a scheme when none was given. Skips test schemes when there are several."""
    if not schemes:
        return None
    if len(schemes) == 1 or not prefer_app:
        return schemes[0]
    app_schemes = [s for s in schemes if "test" not in s.lower()]
    return app_schemes[0] if app_schemes else schemes[0]


def extract_build_error(output: str) -> str:
    """Trim xcodebuild output to the useful part: up to 5 error lines, else the last 10 lines."""
    lines = output.splitlines()
    errors = [line for line in lines if "error:" in line or "❌" in line]
    if errors:
        return "\n".join(errors[:5])
    return "\n".join(lines[-10:])


def read_bundle_id(app_path: Path) -> str | None:
    """Read CFBundleIdentifier from an app bundle's Info.plist, or None if unavailable."""
    info_plist = Path(app_path) / "Info.plist"
    if not info_plist.exists():
        return None
    try:
        with open(info_plist, "rb") as f:
            plist = plistlib.load(f)
    except Exception as e:
        logger.warning("Could not read %s: %s", info_plist, e)
        return None
    bundle_id = plist.get("CFBundleIdentifier")
    return bundle_id if isinstance(bundle_id, str) and bundle_id else None


def _find_app(derived_data: Path, configuration: str) -> Path | None:
    """Locate the built .app bundle in the DerivedData products directory."""
    products = derived_data / "Build" / "Products" / f"{configuration}-iphonesimulator"
    apps = sorted(products.glob("*.app"))
    return apps[0] if apps else None


# ---------------------------------------------------------------------------
# Build
# ---------------------------------------------------------------------------


async def build(
    project: Project,
    scheme: str | None,
    simulator_udid: str,
    configuration: str = "Debug",
) -> BuildResult:
    """Build the scheme for the given simulator and return the installable app.

    The app is copied out of a throwaway DerivedData directory into a stable
    temp location so it survives cleanup.
    """
    if project.kind == ProjectKind.SWIFT_PACKAGE:
        raise BuildFailed("Swift packages without iOS app structure not yet supported")

    derived_data = Path(tempfile.gettempdir()) / f"onetap-build-{uuid.uuid4()}"
    cmd = [
        "xcodebuild",
        project.xcodebuild_flag, str(project.path),
        "-scheme", scheme or "",
        "-configuration", configuration,
        "-destination", f"platform=iOS Simulator,id={simulator_udid}",
        "-derivedDataPath", str(derived_data),
        "build",
    ]
    logger.info("Building %s (scheme=%s, simulator=%s)", project.path, scheme, simulator_udid[:8])
    logger.debug("xcodebuild command: %s", " ".join(cmd))

    try:
        returncode, output = await _run(cmd, timeout=BUILD_TIMEOUT)
        if returncode != 0:
            raise ExternalCommandFailed("xcodebuild", returncode, extract_build_error(output), tool="xcodebuild")

        app = _find_app(derived_data, configuration)
        if app is None:
            raise BuildFailed("No .app found in build products")

        bundle_id = read_bundle_id(app)
        if bundle_id is None:
            raise BuildFailed("Could not extract bundle ID from built app")

        stable_app = STABLE_APP_DIR / app.name
        shutil.rmtree(stable_app, ignore_errors=True)
        STABLE_APP_DIR.mkdir(parents=True, exist_ok=True)
        shutil.copytree(app, stable_app, symlinks=True)
    finally:
        shutil.rmtree(derived_data, ignore_errors=True)

    logger.info("Build succeeded: %s (%s)", stable_app, bundle_id)
    return BuildResult(app_path=str(stable_app), bundle_id=bundle_id)
