from __future__ import annotations

import asyncio
import json
import logging
from dataclasses import asdict, dataclass
from typing import Any, Optional, Protocol

import httpx

from .client import RuntimeClient
from .config import OrchestratorConfig
from .errors import (
    CommandError,
    OrchestratorError,
    PullError,
    ServiceShuttingDownError,
)
from .events import EventBus, InstallProgress, ModelPullComplete
from .process import CommandRunner

logger = logging.getLogger("runtimeworks.catalog")

# Ollama does not always report byte counts, so known status lines map to
# approximate percentages.
PULL_STATUS_PROGRESS: dict[str, int] = {
    "pulling manifest": 5,
    "downloading": 10,
    "verifying sha256 digest": 90,
    "writing manifest": 95,
    "removing any unused layers": 98,
}


class WarmupStateView(Protocol):
    def is_warming(self, name: str) -> bool: ...

    def is_warmed(self, name: str) -> bool: ...


@dataclass
class ModelStatus:
    name: str
    display_name: str
    size: str
    description: str
    installed: bool
    installing: bool
    progress: int
    warmed_up: bool
    is_warming_up: bool
    is_loaded: bool
    status: str

    def to_dict(self) -> dict:
        return asdict(self)


def parse_pull_progress(data: dict[str, Any]) -> Optional[int]:
    """Map one pull progress object to a percentage, or ``None`` if unknown.

    Byte ratios are capped at 99 so that 100 is only ever reported for the
    final ``success`` line.
    """

    status = str(data.get("status") or "").strip().lower()
    if status == "success":
        return 100
    total = data.get("total")
    completed = data.get("completed")
    if isinstance(total, (int, float)) and total > 0 and isinstance(
        completed, (int, float)
    ):
        return min(round(completed / total * 100), 99)
    if status in PULL_STATUS_PROGRESS:
        return PULL_STATUS_PROGRESS[status]
    # "pulling <digest>" lines without byte counts
    if status.startswith("pulling ") and status != "pulling manifest":
        return PULL_STATUS_PROGRESS["downloading"]
    return None


def _model_names(models: list[dict]) -> list[str]:
    names = []
    for model in models:
        name = model.get("name") or model.get("model")
        if name:
            names.append(str(name))
    return names


def names_match(candidate: str, name: str) -> bool:
    return candidate == name or candidate == f"{name}:latest"


def _format_size(num_bytes: Any) -> str:
    if not isinstance(num_bytes, (int, float)) or num_bytes <= 0:
        return ""
    value = float(num_bytes)
    for unit in ("B", "KB", "MB", "GB"):
        if value < 1000 or unit == "GB":
            break
        value /= 1000
    return f"{value:.1f} {unit}" if unit != "B" else f"{int(value)} B"


def _describe(model: dict) -> str:
    details = model.get("details") or {}
    parts = [
        details.get("family"),
        details.get("parameter_size"),
        details.get("quantization_level"),
    ]
    return " ".join(str(p) for p in parts if p)


class ModelCatalog:
    def __init__(
        self,
        cfg: OrchestratorConfig,
        client: RuntimeClient,
        events: EventBus,
        runner: Optional[CommandRunner] = None,
        *,
        cli_path: str = "ollama",
    ):
        self.cfg = cfg
        self.client = client
        self.events = events
        self.runner = runner or CommandRunner()
        self.cli_path = cli_path
        self._install_progress: dict[str, int] = {}

    # ---- queries -------------------------------------------------------

    async def list_installed(self) -> list[dict]:
        """Models from ``/api/tags``; empty when the runtime cannot be asked."""
        if self.client.is_shutting_down:
            return []
        try:
            payload = await self.client.get_json("/api/tags")
        except (OrchestratorError, httpx.HTTPError, ValueError) as exc:
            logger.warning("[catalog] Failed to list installed models: %s", exc)
            return []
        models = payload.get("models") if isinstance(payload, dict) else None
        return [m for m in models or [] if isinstance(m, dict)]

    async def list_loaded_with_memory(self) -> list[dict]:
        return await self._read_loaded() or []

    async def _read_loaded(self) -> Optional[list[dict]]:
        """Entries from ``/api/ps``, or None when the runtime could not say."""
        if self.client.is_shutting_down:
            return None
        try:
            payload = await self.client.get_json("/api/ps")
        except (OrchestratorError, httpx.HTTPError, ValueError) as exc:
            logger.warning("[catalog] Failed to list loaded models: %s", exc)
            return None
        models = payload.get("models") if isinstance(payload, dict) else None
        loaded = []
        for model in models or []:
            if not isinstance(model, dict):
                continue
            name = model.get("name") or model.get("model")
            if not name:
                continue
            loaded.append(
                {
                    "name": str(name),
                    "size": model.get("size"),
                    "size_vram": model.get("size_vram"),
                    "expires_at": model.get("expires_at"),
                }
            )
        return loaded

    async def list_loaded(self) -> list[str]:
        return [m["name"] for m in await self.list_loaded_with_memory()]

    async def try_list_loaded(self) -> Optional[list[str]]:
        """Like :meth:`list_loaded`, but None when the read failed."""
        loaded = await self._read_loaded()
        return None if loaded is None else [m["name"] for m in loaded]

    async def is_installed(self, name: str) -> bool:
        installed = _model_names(await self.list_installed())
        return any(names_match(n, name) for n in installed)

    async def is_loaded(self, name: str) -> bool:
        return any(names_match(n, name) for n in await self.list_loaded())

    async def list_installed_cli(self) -> list[dict]:
        """Parse ``ollama list``; falls back to the API when the CLI fails."""
        if self.client.is_shutting_down:
            return []
        try:
            result = await self.runner.run([self.cli_path, "list"], timeout=30)
        except CommandError as exc:
            logger.debug("[catalog] `ollama list` did not finish: %s", exc)
            result = None
        if result is not None and result.ok:
            rows = []
            for line in result.stdout.splitlines()[1:]:
                parts = line.split()
                if len(parts) < 3:
                    continue
                size = " ".join(parts[2:4]) if len(parts) >= 4 else parts[2]
                rows.append({"name": parts[0], "id": parts[1], "size": size})
            return rows

        if result is not None:
            logger.debug("[catalog] `ollama list` failed: %s", result.stderr.strip())
        return [
            {
                "name": name,
                "id": str(model.get("digest") or "")[:12],
                "size": _format_size(model.get("size")),
            }
            for model in await self.list_installed()
            for name in _model_names([model])
        ]

    async def suggestions(self) -> list[dict]:
        return await self.list_installed_cli()

    # ---- in-progress pulls --------------------------------------------

    def install_progress(self, name: str) -> Optional[int]:
        return self._install_progress.get(name)

    def installs_in_progress(self) -> dict[str, int]:
        return dict(self._install_progress)

    def cleanup(self) -> None:
        self._install_progress.clear()

    # ---- pull ----------------------------------------------------------

    async def pull(self, name: str) -> None:
        """Download ``name`` into the runtime, streaming progress events.

        Resolves once Ollama reports ``success``. Raises :class:`PullError`
        on HTTP failures, error lines, an idle stream, or a stream that ends
        without ``success``.
        """

        name = (name or "").strip()
        if not name:
            raise PullError(name, "model name is required")
        if self.client.is_shutting_down:
            raise ServiceShuttingDownError()

        self._install_progress[name] = 0
        self._emit_progress(name, 0, "starting")
        try:
            async with self.client.stream(
                "POST",
                "/api/pull",
                json={"model": name, "stream": True},
                idle_timeout=self.cfg.pull_idle_timeout_s,
            ) as resp:
                if not resp.is_success:
                    body = (await resp.aread()).decode("utf-8", errors="replace")
                    raise PullError(name, f"HTTP {resp.status_code} {body[:200]}".strip())
                completed = False
                async for line in resp.aiter_lines():
                    if await self._handle_pull_line(name, line):
                        completed = True
                        break
            if not completed:
                raise PullError(name, "stream ended before the pull completed")
        except httpx.TimeoutException as exc:
            raise PullError(
                name, f"no progress for {self.cfg.pull_idle_timeout_s:g}s"
            ) from exc
        except httpx.HTTPError as exc:
            raise PullError(name, str(exc)) from exc
        finally:
            self._install_progress.pop(name, None)

        logger.info("[catalog] Pulled model %s", name)
        self.events.emit(ModelPullComplete(model=name))

    async def _handle_pull_line(self, name: str, line: str) -> bool:
        line = line.strip()
        if not line:
            return False
        try:
            data = json.loads(line)
        except ValueError:
            logger.warning("[catalog] Skipping malformed pull line: %.120s", line)
            return False
        if not isinstance(data, dict):
            logger.warning("[catalog] Skipping unexpected pull line: %.120s", line)
            return False
        if data.get("error"):
            raise PullError(name, str(data["error"]))

        progress = parse_pull_progress(data)
        if progress is None:
            return False
        # Per-layer ratios restart from zero; keep the reported value monotonic.
        progress = max(progress, self._install_progress.get(name, 0))
        self._install_progress[name] = progress
        self._emit_progress(name, progress, str(data.get("status") or "pulling"))
        return progress == 100

    def _emit_progress(self, name: str, progress: int, status: str) -> None:
        self.events.emit(
            InstallProgress(
                stage="pulling",
                message=f"{name}: {status}",
                progress=progress,
                model=name,
            )
        )

    # ---- merged view ---------------------------------------------------

    async def list_with_status(self, warmup: WarmupStateView) -> list[ModelStatus]:
        installed = await self.list_installed()
        loaded = await self.list_loaded()
        chunk = max(1, self.cfg.catalog_chunk_size)

        statuses: list[ModelStatus] = []
        seen: set[str] = set()
        for index, model in enumerate(installed):
            if index and index % chunk == 0:
                await asyncio.sleep(0)
            names = _model_names([model])
            if not names:
                continue
            name = names[0]
            seen.add(name)
            is_warming = warmup.is_warming(name)
            warmed = warmup.is_warmed(name)
            is_loaded = any(names_match(n, name) or names_match(name, n) for n in loaded)
            if is_warming:
                status = "warming"
            elif is_loaded:
                status = "loaded"
            elif warmed:
                status = "ready"
            else:
                status = "cold"
            statuses.append(
                ModelStatus(
                    name=name,
                    display_name=name.removesuffix(":latest"),
                    size=_format_size(model.get("size")),
                    description=_describe(model),
                    installed=True,
                    installing=False,
                    progress=100,
                    warmed_up=warmed,
                    is_warming_up=is_warming,
                    is_loaded=is_loaded,
                    status=status,
                )
            )

        for name, progress in self._install_progress.items():
            if name in seen:
                continue
            statuses.append(
                ModelStatus(
                    name=name,
                    display_name=name.removesuffix(":latest"),
                    size="",
                    description="",
                    installed=False,
                    installing=True,
                    progress=progress,
                    warmed_up=False,
                    is_warming_up=False,
                    is_loaded=False,
                    status="cold",
                )
            )
        return statuses
