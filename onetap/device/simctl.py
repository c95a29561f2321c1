"""SimctlBackend: async wrapper around xcrun simctl for simulator management."""

from __future__ import annotations

import asyncio
import json
import logging

from onetap.models import ExternalCommandFailed, Simulator, SimulatorState

logger = logging.getLogger("onetap.simctl")


async def run_command(*args: str, tool: str = "") -> tuple[str, str]:
    """Run an external command and return (stdout, stderr).

    Raises ExternalCommandFailed on non-zero exit code or a missing binary.
    """
    try:
        proc = await asyncio.create_subprocess_exec(
            *args,
            stdout=asyncio.subprocess.PIPE,
            stderr=asyncio.subprocess.PIPE,
        )
    except FileNotFoundError as e:
        raise ExternalCommandFailed(args[0], 127, f"{args[0]} not found", tool=tool) from e
    stdout, stderr = await proc.communicate()
    if proc.returncode != 0:
        command = " ".join(args[:3]) if args[0] == "xcrun" else args[0]
        raise ExternalCommandFailed(
            command,
            proc.returncode,
            (stdout.decode(errors="replace") + stderr.decode(errors="replace")).strip(),
            tool=tool,
        )
    return stdout.decode(errors="replace"), stderr.decode(errors="replace")


class SimctlBackend:
    """Lists and controls iOS simulators via xcrun simctl subprocess calls."""

    async def _run_simctl(self, *args: str) -> tuple[str, str]:
        return await run_command("xcrun", "simctl", *args, tool="simctl")

    async def list_simulators(self) -> list[Simulator]:
        """List available simulators, booted first, then by name."""
        stdout, _ = await self._run_simctl("list", "devices", "--json")
        simulators = self.parse_device_list(stdout)
        return sorted(simulators, key=lambda s: (0 if s.is_booted else 1, s.name))

    @staticmethod
    def parse_device_list(raw_json: str) -> list[Simulator]:
        """Parse `simctl list devices --json` output, dropping unavailable devices."""
        data = json.loads(raw_json)
        simulators: list[Simulator] = []

        for runtime_key, device_list in data.get("devices", {}).items():
            for dev in device_list:
                if not dev.get("isAvailable", False):
                    continue
                simulators.append(Simulator(
                    udid=dev["udid"],
                    name=dev["name"],
                    device_type_identifier=dev.get("deviceTypeIdentifier", ""),
                    state=dev.get("state", SimulatorState.UNKNOWN.value),
                    is_available=True,
                    runtime_identifier=runtime_key,
                ))

        return simulators

    async def get_simulator(self, udid: str) -> Simulator | None:
        for sim in await self.list_simulators():
            if sim.udid == udid:
                return sim
        return None

    async def booted_simulators(self) -> list[Simulator]:
        return [s for s in await self.list_simulators() if s.is_booted]

    async def boot(self, udid: str) -> None:
        """Boot a simulator."""
        await self._run_simctl("boot", udid)

    async def shutdown(self, udid: str) -> None:
        """Shutdown a simulator."""
        await self._run_simctl("shutdown", udid)

    async def install(self, udid: str, app_path: str) -> None:
        """Install an app on a simulator."""
        await self._run_simctl("install", udid, app_path)

    async def launch(self, udid: str, bundle_id: str) -> None:
        """Launch an app on a simulator."""
        await self._run_simctl("launch", udid, bundle_id)

    async def terminate(self, udid: str, bundle_id: str) -> None:
        """Terminate an app. Failure is ignored: the app may not be running."""
        try:
            await self._run_simctl("terminate", udid, bundle_id)
        except ExternalCommandFailed as e:
            logger.debug("terminate %s on %s ignored: %s", bundle_id, udid[:8], e.output)

    async def screenshot(self, udid: str, output_path: str) -> None:
        """Capture a PNG screenshot to output_path."""
        await self._run_simctl("io", udid, "screenshot", output_path)

    async def open_simulator_app(self, udid: str) -> None:
        """Boot the simulator if needed and bring it to front in Simulator.app."""
        sim = await self.get_simulator(udid)
        if sim is not None and not sim.is_booted:
            await self.boot(udid)
        await run_command("open", "-a", "Simulator", "--args", "-CurrentDeviceUDID", udid, tool="open")

    async def stream_logs(self, udid: str, bundle_id: str | None = None) -> asyncio.subprocess.Process:
        """Spawn `simctl spawn <udid> log stream` and return the running process.

        stderr is merged into stdout so the caller reads a single stream.
        """
        cmd = ["xcrun", "simctl", "spawn", udid, "log", "stream", "--style", "compact"]
        if bundle_id:
            cmd.extend(["--predicate", f"subsystem == '{bundle_id}'"])
        try:
            return await asyncio.create_subprocess_exec(
                *cmd,
                stdout=asyncio.subprocess.PIPE,
                stderr=asyncio.subprocess.STDOUT,
            )
        except FileNotFoundError as e:
            raise ExternalCommandFailed("xcrun", 127, "xcrun not found. Install Xcode Command Line Tools.", tool="simctl") from e
