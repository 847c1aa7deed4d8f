"""Platform-dispatched installation of the Ollama runtime.

Each platform routine walks the same states, recording a checkpoint at
each one so that a failure can be undone step by step::

    pre-install -> post-download -> post-install -> (cli-linked | link-failed)
        -> cleaned-up

Linux is deliberately excluded from automatic installation: the official
installer needs root, so the user is pointed at the manual instructions.
"""

from __future__ import annotations

import asyncio
import logging
import os
import shutil
import tempfile
import time
from dataclasses import dataclass
from pathlib import Path
from typing import Awaitable, Callable, Optional

from .checksums import InstallerArtifact, artifact_for
from .config import OrchestratorConfig
from .downloader import DownloadManager
from .errors import (
    InstallError,
    ManualInstallRequiredError,
    OrchestratorError,
    UnsupportedPlatformError,
)
from .events import InstallProgress
from .platforms import (
    LINUX_DOWNLOAD_URL,
    Platform,
    app_bundle_path,
    cli_path,
    current_platform,
)
from .process import CommandRunner

logger = logging.getLogger("runtimeworks.installer")

InstallProgressCallback = Callable[[InstallProgress], None]

PRE_INSTALL = "pre-install"
POST_DOWNLOAD = "post-download"
POST_INSTALL = "post-install"
CLI_LINKED = "cli-linked"
LINK_FAILED = "link-failed"
CLEANED_UP = "cleaned-up"

_INSTALLED_STATES = frozenset({POST_INSTALL, CLI_LINKED, LINK_FAILED, CLEANED_UP})
_UNSAFE_PATH_CHARS = set(";&|`$()'\"\n\\")
CLI_LINK_TARGET = "/usr/local/bin/ollama"


@dataclass
class Checkpoint:
    name: str
    timestamp: float


@dataclass
class VerificationResult:
    success: bool
    error: Optional[str] = None

    def to_dict(self) -> dict:
        payload: dict = {"success": self.success}
        if self.error:
            payload["error"] = self.error
        return payload


def _is_safe_path(path: str) -> bool:
    return os.path.isabs(path) and not (set(path) & _UNSAFE_PATH_CHARS)


class PlatformInstaller:
    """Install and undo steps for one operating system."""

    platform: Platform

    def __init__(self, owner: "RuntimeInstaller"):
        self.owner = owner
        self.cfg = owner.cfg
        self.runner = owner.runner
        self.artifact_path: Optional[Path] = None

    async def install(self, report: InstallProgressCallback) -> None:
        raise NotImplementedError

    async def undo(self, checkpoint: Checkpoint) -> None:
        if checkpoint.name == POST_DOWNLOAD:
            self._remove_artifact()
        elif checkpoint.name in _INSTALLED_STATES:
            await self.remove_application()

    async def remove_application(self) -> None:
        raise NotImplementedError

    def verify_bundle(self) -> Optional[str]:
        """Return an error message when platform files are missing."""
        return None

    async def _download(
        self, artifact: InstallerArtifact, report: InstallProgressCallback
    ) -> Path:
        destination = self.owner.temp_dir() / artifact.filename
        self.artifact_path = destination
        if not artifact.sha256:
            logger.warning(
                "[installer] No pinned SHA-256 for %s; download will not be verified",
                artifact.filename,
            )

        def _on_progress(percent: int, _done: int, _total: int) -> None:
            report(
                InstallProgress(
                    stage="downloading",
                    message=f"Downloading Ollama... {percent}%",
                    progress=min(int(percent * 0.6), 60),
                )
            )

        report(InstallProgress("downloading", "Downloading Ollama...", 0))
        await self.owner.downloader.fetch_with_retry(
            artifact.url,
            destination,
            expected_sha256=artifact.sha256,
            on_progress=_on_progress,
        )
        return destination

    def _remove_artifact(self) -> None:
        if self.artifact_path is None:
            return
        try:
            self.artifact_path.unlink(missing_ok=True)
        except OSError as exc:
            logger.warning(
                "[installer] Could not remove %s: %s", self.artifact_path, exc
            )


class MacOSInstaller(PlatformInstaller):
    platform = Platform.MACOS

    @property
    def app_path(self) -> Path:
        return app_bundle_path(self.cfg.applications_dir)

    async def install(self, report: InstallProgressCallback) -> None:
        artifact = artifact_for(Platform.MACOS, self.cfg)
        self.owner.save_checkpoint(PRE_INSTALL)
        dmg = await self._download(artifact, report)
        self.owner.save_checkpoint(POST_DOWNLOAD)

        mount_point = self.owner.temp_dir() / "runtimeworks-ollama-mount"
        mount_point.mkdir(parents=True, exist_ok=True)
        try:
            report(InstallProgress("mounting", "Mounting installer image...", 65))
            await self.runner.run(
                [
                    "hdiutil",
                    "attach",
                    str(dmg),
                    "-mountpoint",
                    str(mount_point),
                    "-nobrowse",
                    "-quiet",
                ],
                check=True,
            )
            report(InstallProgress("installing", "Copying Ollama.app...", 75))
            await self.runner.run(
                [
                    "cp",
                    "-R",
                    str(mount_point / "Ollama.app"),
                    str(Path(self.cfg.applications_dir)) + "/",
                ],
                check=True,
            )
            self.owner.save_checkpoint(POST_INSTALL)

            report(InstallProgress("linking", "Linking ollama command...", 85))
            if await self._link_cli():
                self.owner.save_checkpoint(CLI_LINKED)
            else:
                self.owner.save_checkpoint(LINK_FAILED)
                report(
                    InstallProgress(
                        "linking",
                        "Could not link the ollama command; the API remains usable",
                        85,
                    )
                )
        finally:
            report(InstallProgress("cleanup", "Cleaning up...", 95))
            await self._cleanup(dmg, mount_point)

        self.owner.save_checkpoint(CLEANED_UP)
        await self.owner.sleep(self.cfg.install_settle_s)

    async def _link_cli(self) -> bool:
        source = cli_path(Platform.MACOS, self.cfg.applications_dir)
        if not _is_safe_path(source):
            logger.warning("[installer] Refusing to link unsafe CLI path %r", source)
            return False
        script = (
            f"do shell script \"mkdir -p /usr/local/bin && ln -sf '{source}' "
            f"'{CLI_LINK_TARGET}'\" with administrator privileges"
        )
        result = await self.runner.run(["osascript", "-e", script])
        if not result.ok:
            logger.warning(
                "[installer] CLI link failed (exit %s): %s",
                result.returncode,
                result.stderr.strip(),
            )
            return False
        return True

    async def _cleanup(self, dmg: Path, mount_point: Path) -> None:
        detach = await self.runner.run(
            ["hdiutil", "detach", str(mount_point), "-quiet"]
        )
        if not detach.ok:
            logger.debug("[installer] hdiutil detach: %s", detach.stderr.strip())
        self._remove_artifact()
        try:
            mount_point.rmdir()
        except OSError:
            pass

    async def remove_application(self) -> None:
        if not self.app_path.exists():
            return
        logger.info("[installer] Removing %s", self.app_path)
        await asyncio.to_thread(shutil.rmtree, self.app_path)

    def verify_bundle(self) -> Optional[str]:
        executable = self.app_path / "Contents" / "MacOS" / "Ollama"
        if not executable.exists():
            return f"Application executable missing: {executable}"
        return None


class WindowsInstaller(PlatformInstaller):
    platform = Platform.WINDOWS

    @staticmethod
    def install_dir() -> Path:
        local = os.environ.get("LOCALAPPDATA") or str(Path.home() / "AppData" / "Local")
        return Path(local) / "Programs" / "Ollama"

    async def install(self, report: InstallProgressCallback) -> None:
        artifact = artifact_for(Platform.WINDOWS, self.cfg)
        self.owner.save_checkpoint(PRE_INSTALL)
        exe = await self._download(artifact, report)
        self.owner.save_checkpoint(POST_DOWNLOAD)
        try:
            report(InstallProgress("installing", "Running Ollama installer...", 70))
            await self.runner.run(
                [str(exe), "/VERYSILENT", "/NORESTART", "/SUPPRESSMSGBOXES"],
                check=True,
            )
            self.owner.save_checkpoint(POST_INSTALL)

            report(InstallProgress("linking", "Checking ollama command...", 85))
            if (self.install_dir() / "ollama.exe").exists():
                self.owner.save_checkpoint(CLI_LINKED)
            else:
                logger.warning(
                    "[installer] ollama.exe not found under %s", self.install_dir()
                )
                self.owner.save_checkpoint(LINK_FAILED)
        finally:
            report(InstallProgress("cleanup", "Cleaning up...", 95))
            self._remove_artifact()

        self.owner.save_checkpoint(CLEANED_UP)
        await self.owner.sleep(self.cfg.install_settle_s)

    async def remove_application(self) -> None:
        uninstaller = self.install_dir() / "unins000.exe"
        if not uninstaller.exists():
            logger.warning(
                "[installer] Uninstaller not found; manual uninstall of Ollama required"
            )
            return
        result = await self.runner.run(
            [str(uninstaller), "/VERYSILENT", "/NORESTART"]
        )
        if not result.ok:
            logger.warning(
                "[installer] Uninstaller exited with %s", result.returncode
            )


class LinuxInstaller(PlatformInstaller):
    platform = Platform.LINUX

    async def install(self, report: InstallProgressCallback) -> None:
        raise ManualInstallRequiredError(LINUX_DOWNLOAD_URL)

    async def remove_application(self) -> None:
        return None


_INSTALLERS: dict[Platform, type[PlatformInstaller]] = {
    Platform.MACOS: MacOSInstaller,
    Platform.WINDOWS: WindowsInstaller,
    Platform.LINUX: LinuxInstaller,
}


class RuntimeInstaller:
    def __init__(
        self,
        cfg: OrchestratorConfig,
        downloader: DownloadManager,
        runner: Optional[CommandRunner] = None,
        *,
        platform: Optional[Platform] = None,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ):
        self.cfg = cfg
        self.downloader = downloader
        self.runner = runner or CommandRunner()
        self.platform = platform or current_platform()
        self.sleep = sleep
        self.checkpoints: list[Checkpoint] = []
        self._impl: Optional[PlatformInstaller] = (
            _INSTALLERS[self.platform](self) if self.platform else None
        )

    @property
    def cli_path(self) -> str:
        if self.cfg.cli_path:
            return self.cfg.cli_path
        if self.platform is None:
            return "ollama"
        return cli_path(self.platform, self.cfg.applications_dir)

    def temp_dir(self) -> Path:
        path = Path(self.cfg.temp_dir or tempfile.gettempdir()).expanduser()
        path.mkdir(parents=True, exist_ok=True)
        return path

    def save_checkpoint(self, name: str) -> Checkpoint:
        checkpoint = Checkpoint(name=name, timestamp=time.time())
        self.checkpoints.append(checkpoint)
        logger.debug("[installer] checkpoint %s", name)
        return checkpoint

    def clear_checkpoints(self) -> None:
        self.checkpoints.clear()

    async def rollback_to_last_checkpoint(self) -> Optional[Checkpoint]:
        """Undo the most recent checkpoint; undo failures are only logged."""
        if not self.checkpoints:
            logger.info("[installer] No checkpoint to roll back")
            return None
        checkpoint = self.checkpoints.pop()
        logger.info("[installer] Rolling back to before '%s'", checkpoint.name)
        if self._impl is None:
            return checkpoint
        try:
            await self._impl.undo(checkpoint)
        except Exception as exc:  # noqa: BLE001
            logger.warning(
                "[installer] Rollback of '%s' failed: %s", checkpoint.name, exc
            )
        return checkpoint

    async def auto_install(
        self, on_progress: Optional[InstallProgressCallback] = None
    ) -> None:
        if self._impl is None:
            raise UnsupportedPlatformError("Unsupported platform for installation")

        def report(event: InstallProgress) -> None:
            if on_progress is not None:
                on_progress(event)

        try:
            await self._impl.install(report)
        except OrchestratorError:
            raise
        except Exception as exc:  # noqa: BLE001
            raise InstallError(f"Installation failed: {exc}") from exc
        logger.info("[installer] Installation finished on %s", self.platform.name)

    async def verify_installation(
        self, is_installed: Callable[[], Awaitable[bool]]
    ) -> VerificationResult:
        try:
            if not await is_installed():
                return VerificationResult(False, "Ollama not found after installation")
            probe = await self.runner.run([self.cli_path, "--version"], timeout=30)
            if not probe.ok:
                return VerificationResult(
                    False, f"CLI version probe failed: {probe.stderr.strip()}"
                )
            if self._impl is not None:
                problem = self._impl.verify_bundle()
                if problem:
                    return VerificationResult(False, problem)
            return VerificationResult(True)
        except Exception as exc:  # noqa: BLE001
            return VerificationResult(False, f"Verification failed: {exc}")
