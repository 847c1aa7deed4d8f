"""The orchestrator callers talk to.

:class:`RuntimeOrchestrator` ties the installer, catalog, warm-up coordinator
and shutdown manager together behind operations that never raise: each one
returns a ``{"success": bool, ...}`` dict so the HTTP and CLI layers can pass
results straight through.
"""

from __future__ import annotations

import asyncio
import contextlib
import logging
import os
import time
from dataclasses import asdict, dataclass
from pathlib import Path
from typing import Any, Awaitable, Callable, Optional

import httpx

from .catalog import ModelCatalog, names_match
from .client import RuntimeClient
from .config import OrchestratorConfig
from .downloader import DownloadManager
from .errors import (
    InstallError,
    ManualInstallRequiredError,
    OrchestratorError,
    PullError,
    RateLimitedError,
)
from .events import (
    ErrorEvent,
    EventBus,
    EventJournal,
    InstallationComplete,
    InstallProgress,
    StateChanged,
)
from .installer import RuntimeInstaller, WindowsInstaller
from .platforms import Platform, app_bundle_path, current_platform
from .process import CommandRunner
from .repository import (
    ConfiguredModelSelection,
    JsonModelStatusRepository,
    ModelStatusRepository,
    SelectedModelProvider,
    record_install_status,
)
from .shutdown import ShutdownManager
from .warmup import WarmupCoordinator

logger = logging.getLogger("runtimeworks.orchestrator")


@dataclass
class InstallState:
    is_installed: bool = False
    is_installing: bool = False
    progress: int = 0
    is_running: bool = False
    last_sync: float = 0.0

    def to_dict(self) -> dict:
        return asdict(self)


def _failure(exc: BaseException, **extra: Any) -> dict:
    payload: dict[str, Any] = {
        "success": False,
        "error": str(exc) or exc.__class__.__name__,
        "error_type": getattr(exc, "error_type", "unexpected-error"),
    }
    if isinstance(exc, RateLimitedError):
        payload["retry_after"] = round(exc.retry_after, 3)
    if isinstance(exc, ManualInstallRequiredError):
        payload["instructions_url"] = exc.instructions_url
    payload.update(extra)
    return payload


class RuntimeOrchestrator:
    def __init__(
        self,
        cfg: OrchestratorConfig,
        *,
        events: EventBus,
        client: RuntimeClient,
        downloader: DownloadManager,
        installer: RuntimeInstaller,
        catalog: ModelCatalog,
        warmup: WarmupCoordinator,
        shutdown_manager: ShutdownManager,
        repository: Optional[ModelStatusRepository] = None,
        runner: Optional[CommandRunner] = None,
        platform: Optional[Platform] = None,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ):
        self.cfg = cfg
        self.events = events
        self.client = client
        self.downloader = downloader
        self.installer = installer
        self.catalog = catalog
        self.warmup = warmup
        self.shutdown_manager = shutdown_manager
        self.repository = repository
        self.runner = runner or CommandRunner()
        self.platform = platform
        self._sleep = sleep
        self.install_state = InstallState()
        self._last_loaded: set[str] = set()
        self._known_models: set[str] = set()
        self._sync_task: Optional[asyncio.Task] = None
        self._shutdown_running = False

    @property
    def is_shutting_down(self) -> bool:
        return self.client.is_shutting_down

    # ---- lifecycle -----------------------------------------------------

    async def init(self) -> None:
        try:
            await self.sync_state()
        except Exception:  # noqa: BLE001
            logger.exception("[orchestrator] Initial state sync failed")
        if self.cfg.enable_periodic_sync:
            self.start_periodic_sync()

    async def aclose(self) -> None:
        await self.stop_periodic_sync()
        await self.client.aclose()
        await self.downloader.aclose()

    def start_periodic_sync(self) -> None:
        if self._sync_task is not None and not self._sync_task.done():
            return
        self._sync_task = asyncio.create_task(
            self._sync_loop(), name="runtimeworks-sync"
        )

    async def stop_periodic_sync(self) -> None:
        task, self._sync_task = self._sync_task, None
        if task is None:
            return
        task.cancel()
        with contextlib.suppress(asyncio.CancelledError):
            await task

    async def _sync_loop(self) -> None:
        while not self.client.is_shutting_down:
            await asyncio.sleep(self.cfg.sync_interval_s)
            if self.client.is_shutting_down:
                break
            try:
                await self.sync_state()
            except Exception:  # noqa: BLE001
                logger.exception("[orchestrator] State sync failed")

    def cleanup(self) -> None:
        self.installer.clear_checkpoints()
        self.catalog.cleanup()
        self.warmup.cleanup()

    # ---- observation ---------------------------------------------------

    async def is_installed(self) -> bool:
        if self.platform is Platform.MACOS:
            return app_bundle_path(self.cfg.applications_dir).exists()
        cli = self.installer.cli_path
        if os.path.isabs(cli):
            return Path(cli).exists()
        if self.runner.which(cli) is not None:
            return True
        if self.platform is Platform.WINDOWS:
            return (WindowsInstaller.install_dir() / "ollama.exe").exists()
        return False

    async def is_service_running(self, *, allow_during_shutdown: bool = False) -> bool:
        return await self.client.is_alive(allow_during_shutdown=allow_during_shutdown)

    async def wait_for_service(self) -> bool:
        for attempt in range(1, self.cfg.service_wait_attempts + 1):
            if await self.is_service_running():
                logger.info("[orchestrator] Ollama answered after %d check(s)", attempt)
                return True
            await self._sleep(self.cfg.service_wait_delay_s)
        return False

    async def start_service(self) -> bool:
        if await self.is_service_running():
            self.install_state.is_running = True
            return True
        if not await self.is_installed():
            raise InstallError("Ollama is not installed")

        cli = self.installer.cli_path
        if self.platform is Platform.MACOS:
            opened = await self.runner.run(["open", "-a", "Ollama"])
            if not opened.ok:
                logger.warning(
                    "[orchestrator] `open -a Ollama` failed; starting `%s serve`", cli
                )
                self.runner.spawn_detached([cli, "serve"])
        else:
            if self.platform is Platform.WINDOWS and self.runner.which(cli) is None:
                cli = str(WindowsInstaller.install_dir() / "ollama.exe")
            self.runner.spawn_detached([cli, "serve"])

        running = await self.wait_for_service()
        self.install_state.is_running = running
        if not running:
            logger.error("[orchestrator] Ollama did not come up in time")
        return running

    async def health_check(self) -> dict:
        running = await self.is_service_running()
        api_responsive = False
        models_accessible = False
        memory: Optional[dict] = None
        if running:
            try:
                root = await self.client.request("GET", "/", check=False)
                api_responsive = root.is_success
            except (OrchestratorError, httpx.HTTPError) as exc:
                logger.debug("[orchestrator] Root probe failed: %s", exc)
            try:
                await self.client.get_json("/api/tags")
                models_accessible = True
            except (OrchestratorError, httpx.HTTPError, ValueError) as exc:
                logger.debug("[orchestrator] Tags probe failed: %s", exc)
            loaded = await self.catalog.list_loaded_with_memory()
            memory = {
                "loaded_models": len(loaded),
                "vram_bytes": sum(int(m.get("size_vram") or 0) for m in loaded),
                "models": loaded,
            }
        return {
            "service_running": running,
            "api_responsive": api_responsive,
            "models_accessible": models_accessible,
            "memory_status": memory,
            "healthy": running and api_responsive and models_accessible,
            "timestamp": time.time(),
        }

    async def sync_state(self) -> None:
        """Re-read installed/running/loaded state and publish changes.

        ``state-changed`` is emitted only when one of the flags or the loaded
        set differs from the previous sync.
        """

        if self.client.is_shutting_down:
            return
        installed = await self.is_installed()
        running = await self.is_service_running()
        models: list[str] = []
        loaded: Optional[list[str]] = []
        if running:
            models = [
                str(m.get("name") or m.get("model"))
                for m in await self.catalog.list_installed()
                if m.get("name") or m.get("model")
            ]
            loaded = await self.catalog.try_list_loaded()
        if self.client.is_shutting_down:
            return

        previous = self._last_loaded
        if loaded is None:
            # Loaded set unknown; keep the last one and the warm flags.
            logger.debug("[orchestrator] Loaded models unknown, keeping last sync")
            loaded_set = set(previous)
        else:
            loaded_set = set(loaded)
            stale = previous - loaded_set
            stale.update(
                name
                for name in self.warmup.warmed_models
                if not any(names_match(n, name) for n in loaded_set)
            )
            for name in sorted(stale):
                self.warmup.remove_from_warmed(name)

        state = self.install_state
        changed = (
            installed != state.is_installed
            or running != state.is_running
            or loaded_set != previous
        )
        state.is_installed = installed
        state.is_running = running
        state.last_sync = time.time()
        self._last_loaded = loaded_set

        new_models = [name for name in models if name not in self._known_models]
        self._known_models.update(new_models)
        for name in new_models:
            await record_install_status(
                self.repository, name, installed=True, installing=False
            )

        if changed:
            logger.info(
                "[orchestrator] State changed: installed=%s running=%s loaded=%s",
                installed,
                running,
                sorted(loaded_set),
            )
            self.events.emit(
                StateChanged(
                    installed=installed,
                    running=running,
                    models=len(models),
                    loaded_models=sorted(loaded_set),
                )
            )

    # ---- composite operations ------------------------------------------

    async def get_status(self) -> dict:
        try:
            installed = await self.is_installed()
            running = await self.is_service_running()
        except Exception as exc:  # noqa: BLE001
            return _failure(exc)
        state = self.install_state
        state.is_installed = installed
        state.is_running = running
        return {
            "success": True,
            "installed": installed,
            "running": running,
            "installing": state.is_installing,
            "progress": state.progress,
            "last_sync": state.last_sync,
            "platform": self.platform.name.lower() if self.platform else None,
            "shutting_down": self.client.is_shutting_down,
        }

    async def install(self) -> dict:
        state = self.install_state
        if state.is_installing:
            return {
                "success": False,
                "error": "Installation already in progress",
                "error_type": "installation-in-progress",
            }
        state.is_installing = True
        state.progress = 0

        def report(event: InstallProgress) -> None:
            state.progress = event.progress
            self.events.emit(event)

        try:
            await self.installer.auto_install(report)
            report(InstallProgress("verifying", "Verifying installation...", 96))
            verification = await self.installer.verify_installation(self.is_installed)
            if not verification.success:
                raise InstallError(verification.error or "Verification failed")
            if not await self.is_service_running():
                report(InstallProgress("starting", "Starting Ollama...", 98))
                if not await self.start_service():
                    raise InstallError("Ollama was installed but did not start")
            state.is_installed = True
            state.is_running = True
            self.installer.clear_checkpoints()
            report(InstallProgress("complete", "Ollama is installed", 100))
            self.events.emit(InstallationComplete())
            return {"success": True}
        except Exception as exc:  # noqa: BLE001
            logger.error("[orchestrator] Installation failed: %s", exc)
            await self.installer.rollback_to_last_checkpoint()
            self.events.emit(
                ErrorEvent(error_type="installation-failed", error=str(exc))
            )
            return _failure(exc)
        finally:
            state.is_installing = False

    async def start(self) -> dict:
        try:
            running = await self.start_service()
        except Exception as exc:  # noqa: BLE001
            return _failure(exc)
        if not running:
            return {
                "success": False,
                "error": "Ollama did not respond after starting",
                "error_type": "start-timeout",
            }
        return {"success": True}

    async def ensure_ready(self) -> dict:
        try:
            if not await self.is_installed():
                return {
                    "success": False,
                    "installed": False,
                    "running": False,
                    "error": "Ollama is not installed",
                    "error_type": "not-installed",
                }
            running = await self.is_service_running()
            if not running:
                running = await self.start_service()
        except Exception as exc:  # noqa: BLE001
            return _failure(exc)
        result = {"success": running, "installed": True, "running": running}
        if not running:
            result["error"] = "Ollama did not respond after starting"
            result["error_type"] = "start-timeout"
        return result

    async def get_models(self) -> dict:
        try:
            statuses = await self.catalog.list_with_status(self.warmup)
        except Exception as exc:  # noqa: BLE001
            return _failure(exc, models=[])
        return {"success": True, "models": [s.to_dict() for s in statuses]}

    async def get_model_suggestions(self) -> dict:
        try:
            return {"success": True, "models": await self.catalog.suggestions()}
        except Exception as exc:  # noqa: BLE001
            return _failure(exc, models=[])

    async def is_model_installed(self, name: str) -> dict:
        try:
            return {"success": True, "installed": await self.catalog.is_installed(name)}
        except Exception as exc:  # noqa: BLE001
            return _failure(exc, installed=False)

    async def pull_model(self, name: str) -> dict:
        name = (name or "").strip()
        if not name:
            error = PullError(name, "model name is required")
            return _failure(error, model=name)
        await record_install_status(
            self.repository, name, installed=False, installing=True
        )
        try:
            await self.catalog.pull(name)
        except Exception as exc:  # noqa: BLE001
            logger.error("[orchestrator] Pull of %s failed: %s", name, exc)
            still_installed = await self.catalog.is_installed(name)
            await record_install_status(
                self.repository, name, installed=still_installed, installing=False
            )
            self.events.emit(
                ErrorEvent(error_type="model-pull-failed", error=str(exc), model=name)
            )
            return _failure(exc, model=name)
        await record_install_status(
            self.repository, name, installed=True, installing=False
        )
        return {"success": True, "model": name}

    async def warm_up_model(self, name: str, force_refresh: bool = False) -> dict:
        try:
            ok = await self.warmup.warm_up(name, force_refresh)
        except Exception as exc:  # noqa: BLE001
            return _failure(exc, model=name)
        result: dict[str, Any] = {"success": ok, "model": name}
        if not ok:
            result["error"] = f"Warm-up of '{name}' failed"
            result["error_type"] = "warmup-failed"
        return result

    async def auto_warm_up(self) -> dict:
        try:
            ok = await self.warmup.auto_warm_up_selected_model(self.is_service_running)
        except Exception as exc:  # noqa: BLE001
            return _failure(exc)
        return {"success": ok}

    async def get_warmup_status(self) -> dict:
        try:
            loaded = await self.catalog.list_loaded()
        except Exception as exc:  # noqa: BLE001
            return _failure(exc)
        return {"success": True, **self.warmup.get_warmup_status(loaded)}

    async def shutdown(self, force: bool = False) -> dict:
        if self._shutdown_running:
            return {
                "success": False,
                "error": "Shutdown already in progress",
                "error_type": "shutting-down",
            }
        self._shutdown_running = True
        self.client.is_shutting_down = True
        logger.info("[orchestrator] Shutting down (force=%s)", force)
        try:
            await self.warmup.shutdown(force)
            await self.stop_periodic_sync()
            self.cleanup()
            if await self.is_service_running(allow_during_shutdown=True):
                stopped = await self.shutdown_manager.shutdown(force)
            else:
                stopped = True
        except Exception as exc:  # noqa: BLE001
            logger.error("[orchestrator] Shutdown failed: %s", exc)
            return _failure(exc)
        finally:
            self._shutdown_running = False

        if not stopped:
            return {
                "success": False,
                "error": "Ollama is still running",
                "error_type": "shutdown-incomplete",
            }
        self.install_state.is_running = False
        self.client.is_shutting_down = False
        await self.sync_state()
        return {"success": True}


def build_orchestrator(
    cfg: Optional[OrchestratorConfig] = None,
    *,
    events: Optional[EventBus] = None,
    transport: Optional[httpx.AsyncBaseTransport] = None,
    download_transport: Optional[httpx.AsyncBaseTransport] = None,
    runner: Optional[CommandRunner] = None,
    platform: Optional[Platform] = None,
    repository: Optional[ModelStatusRepository] = None,
    selection: Optional[SelectedModelProvider] = None,
    sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
) -> RuntimeOrchestrator:
    """Wire every component around one shared event bus and API client."""

    cfg = cfg or OrchestratorConfig.load()
    events = events or EventBus()
    if cfg.events_log_path:
        events.subscribe(EventJournal(cfg.events_log_path, cfg.max_event_log_bytes))
    runner = runner or CommandRunner()
    platform = platform or current_platform()
    if repository is None:
        repository = JsonModelStatusRepository(cfg.repository_path)
    if selection is None:
        selection = ConfiguredModelSelection(cfg)

    client = RuntimeClient(cfg, transport=transport)
    downloader = DownloadManager(
        cfg, events, transport=download_transport, sleep=sleep
    )
    installer = RuntimeInstaller(
        cfg, downloader, runner, platform=platform, sleep=sleep
    )
    catalog = ModelCatalog(cfg, client, events, runner, cli_path=installer.cli_path)
    warmup = WarmupCoordinator(cfg, client, catalog, events, repository, selection)

    async def _observed_running() -> bool:
        return await client.is_alive(allow_during_shutdown=True)

    shutdown_manager = ShutdownManager(
        cfg, _observed_running, runner, platform=platform, sleep=sleep
    )
    return RuntimeOrchestrator(
        cfg,
        events=events,
        client=client,
        downloader=downloader,
        installer=installer,
        catalog=catalog,
        warmup=warmup,
        shutdown_manager=shutdown_manager,
        repository=repository,
        runner=runner,
        platform=platform,
        sleep=sleep,
    )
