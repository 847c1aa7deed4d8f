from __future__ import annotations

import asyncio
import logging
import os
import shutil
import subprocess
import sys
from dataclasses import dataclass
from typing import Optional, Sequence

from .errors import CommandError

logger = logging.getLogger("runtimeworks.process")


@dataclass
class CommandResult:
    argv: list[str]
    returncode: int
    stdout: str
    stderr: str

    @property
    def ok(self) -> bool:
        return self.returncode == 0


class CommandRunner:
    """Thin async wrapper around the external commands the orchestrator uses.

    Tests substitute a fake with the same three methods instead of spawning
    real processes.
    """

    async def run(
        self,
        argv: Sequence[str],
        *,
        check: bool = False,
        timeout: Optional[float] = None,
    ) -> CommandResult:
        argv = [str(part) for part in argv]
        logger.debug("[process] exec %s", " ".join(argv))
        try:
            proc = await asyncio.create_subprocess_exec(
                *argv,
                stdout=asyncio.subprocess.PIPE,
                stderr=asyncio.subprocess.PIPE,
            )
        except (FileNotFoundError, PermissionError) as exc:
            result = CommandResult(argv, 127, "", str(exc))
            if check:
                raise CommandError(argv, 127, str(exc)) from exc
            return result

        try:
            stdout, stderr = await asyncio.wait_for(proc.communicate(), timeout)
        except asyncio.TimeoutError:
            proc.kill()
            await proc.wait()
            raise CommandError(argv, None, f"timed out after {timeout}s")

        result = CommandResult(
            argv,
            proc.returncode if proc.returncode is not None else -1,
            stdout.decode("utf-8", errors="replace"),
            stderr.decode("utf-8", errors="replace"),
        )
        if check and not result.ok:
            raise CommandError(argv, result.returncode, result.stderr)
        return result

    def spawn_detached(self, argv: Sequence[str]) -> int:
        """Start a long-lived process that outlives the orchestrator."""
        argv = [str(part) for part in argv]
        kwargs: dict = {
            "stdin": subprocess.DEVNULL,
            "stdout": subprocess.DEVNULL,
            "stderr": subprocess.DEVNULL,
            "close_fds": True,
        }
        if sys.platform == "win32":
            kwargs["creationflags"] = (
                subprocess.DETACHED_PROCESS | subprocess.CREATE_NEW_PROCESS_GROUP
            )
        else:
            kwargs["start_new_session"] = True
        proc = subprocess.Popen(argv, env=dict(os.environ), **kwargs)  # noqa: S603
        logger.info("[process] spawned %s (pid=%s)", " ".join(argv), proc.pid)
        return proc.pid

    def which(self, name: str) -> Optional[str]:
        return shutil.which(name)
