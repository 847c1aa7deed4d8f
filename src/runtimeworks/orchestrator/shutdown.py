from __future__ import annotations

import asyncio
import logging
from typing import Awaitable, Callable, Optional, Sequence

from .config import OrchestratorConfig
from .errors import CommandError
from .platforms import Platform
from .process import CommandRunner

logger = logging.getLogger("runtimeworks.shutdown")


class PlatformShutdown:
    """Graceful quit and kill-by-name for one operating system."""

    def __init__(self, runner: CommandRunner):
        self.runner = runner

    async def request_quit(self) -> None:
        raise NotImplementedError

    async def kill(self, force: bool) -> None:
        raise NotImplementedError

    async def _run(self, argv: Sequence[str]) -> None:
        try:
            result = await self.runner.run(list(argv), timeout=10)
        except CommandError as exc:
            logger.warning("[shutdown] %s", exc)
            return
        if not result.ok:
            # pkill exits 1 when nothing matched; that is not an error here.
            logger.debug(
                "[shutdown] %s exited %s: %s",
                argv[0],
                result.returncode,
                result.stderr.strip(),
            )


class MacOSShutdown(PlatformShutdown):
    async def request_quit(self) -> None:
        await self._run(["pkill", "-f", "ollama serve"])
        await self._run(["osascript", "-e", 'tell application "Ollama" to quit'])

    async def kill(self, force: bool) -> None:
        if force:
            await self._run(["pkill", "-9", "-f", "ollama"])
        else:
            await self._run(["pkill", "-f", "ollama"])


class WindowsShutdown(PlatformShutdown):
    async def request_quit(self) -> None:
        await self._run(["taskkill", "/IM", "ollama app.exe", "/T"])
        await self._run(["taskkill", "/IM", "ollama.exe", "/T"])

    async def kill(self, force: bool) -> None:
        await self._run(["taskkill", "/F", "/IM", "ollama app.exe", "/T"])
        await self._run(["taskkill", "/F", "/IM", "ollama.exe", "/T"])


class LinuxShutdown(PlatformShutdown):
    async def request_quit(self) -> None:
        await self._run(["pkill", "-INT", "-f", "ollama serve"])

    async def kill(self, force: bool) -> None:
        signal = "-KILL" if force else "-TERM"
        await self._run(["pkill", signal, "-f", "ollama serve"])


_HANDLERS: dict[Platform, type[PlatformShutdown]] = {
    Platform.MACOS: MacOSShutdown,
    Platform.WINDOWS: WindowsShutdown,
    Platform.LINUX: LinuxShutdown,
}


class ShutdownManager:
    def __init__(
        self,
        cfg: OrchestratorConfig,
        is_running: Callable[[], Awaitable[bool]],
        runner: Optional[CommandRunner] = None,
        *,
        platform: Optional[Platform] = None,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ):
        self.cfg = cfg
        self.is_running = is_running
        self.runner = runner or CommandRunner()
        self.platform = platform
        self._sleep = sleep
        self.handler: Optional[PlatformShutdown] = (
            _HANDLERS[platform](self.runner) if platform else None
        )

    async def shutdown(self, force: bool = False) -> bool:
        """Stop the runtime; the result is the observed state, not exit codes."""
        if self.handler is None:
            logger.warning("[shutdown] No shutdown strategy for this platform")
            return False

        if force:
            logger.info("[shutdown] Force-stopping Ollama")
            await self.handler.kill(force=True)
        else:
            logger.info("[shutdown] Asking Ollama to quit")
            await self.handler.request_quit()
            await self._sleep(self.cfg.shutdown_grace_s)
            if await self.is_running():
                logger.info("[shutdown] Still running; killing by name")
                await self.handler.kill(force=False)

        await self._sleep(self.cfg.shutdown_final_wait_s)
        stopped = not await self.is_running()
        if stopped:
            logger.info("[shutdown] Ollama stopped")
        else:
            logger.warning("[shutdown] Ollama still responding after shutdown")
        return stopped
