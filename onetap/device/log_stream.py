"""Streams simulator logs on a cancellable background task."""

from __future__ import annotations

import asyncio
import logging
from collections.abc import Callable

from onetap.device.simctl import SimctlBackend

logger = logging.getLogger("onetap.log-stream")

LineHandler = Callable[[str], None]


class LogStreamer:
    """Runs `simctl spawn <udid> log stream` and feeds each line to a handler.

    ``start`` is a no-op while a stream is already running. ``wait`` returns
    when the stream ends on its own or after ``stop``.
    """

    def __init__(self, simctl: SimctlBackend | None = None) -> None:
        self.simctl = simctl or SimctlBackend()
        self._process: asyncio.subprocess.Process | None = None
        self._read_task: asyncio.Task | None = None

    @property
    def is_running(self) -> bool:
        return self._read_task is not None and not self._read_task.done()

    async def start(self, udid: str, bundle_id: str | None, handler: LineHandler) -> None:
        if self.is_running:
            return
        self._process = await self.simctl.stream_logs(udid, bundle_id)
        self._read_task = asyncio.create_task(self._read_loop(handler))
        logger.info("Log stream started (udid=%s, bundle_id=%s)", udid[:8], bundle_id)

    async def _read_loop(self, handler: LineHandler) -> None:
        assert self._process is not None
        assert self._process.stdout is not None
        async for raw_line in self._process.stdout:
            handler(raw_line.decode("utf-8", errors="replace"))
        await self._process.wait()

    async def stop(self) -> None:
        """Terminate the log stream subprocess and clean up."""
        if self._process and self._process.returncode is None:
            self._process.terminate()
            try:
                await asyncio.wait_for(self._process.wait(), timeout=5.0)
            except asyncio.TimeoutError:
                self._process.kill()

        if self._read_task and not self._read_task.done():
            self._read_task.cancel()
            try:
                await self._read_task
            except asyncio.CancelledError:
                pass

        self._process = None
        self._read_task = None
        logger.info("Log stream stopped")

    async def wait(self) -> None:
        """Block until the stream ends (naturally or via stop)."""
        task = self._read_task
        if task is None:
            return
        await asyncio.wait({task})
        if not task.cancelled() and task.exception() is not None:
            raise task.exception()
