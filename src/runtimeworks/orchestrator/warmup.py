from __future__ import annotations

import asyncio
import logging
import time
from typing import Awaitable, Callable, Optional

import httpx

from .catalog import ModelCatalog
from .client import RuntimeClient
from .config import OrchestratorConfig
from .errors import OrchestratorError, RateLimitedError
from .events import EventBus, ModelWarmedUp
from .repository import (
    ModelStatusRepository,
    SelectedModelProvider,
    record_install_status,
)

logger = logging.getLogger("runtimeworks.warmup")

LOCAL_PROVIDER = "ollama"


class WarmupCoordinator:
    """Loads models into Ollama's memory ahead of the first real request.

    At most one probe runs per model name; concurrent callers join it. A
    model that Ollama does not know is pulled and probed once more.
    """

    def __init__(
        self,
        cfg: OrchestratorConfig,
        client: RuntimeClient,
        catalog: ModelCatalog,
        events: EventBus,
        repository: Optional[ModelStatusRepository] = None,
        selection: Optional[SelectedModelProvider] = None,
        *,
        clock: Callable[[], float] = time.monotonic,
    ):
        self.cfg = cfg
        self.client = client
        self.catalog = catalog
        self.events = events
        self.repository = repository
        self.selection = selection
        self._clock = clock
        self.warming_models: dict[str, asyncio.Task[bool]] = {}
        self.warmed_models: set[str] = set()
        self.last_warmup_attempt: dict[str, float] = {}
        # Bumped whenever the cache is cleared so probes started earlier
        # cannot mark a model warm afterwards.
        self._generation = 0

    def is_warming(self, name: str) -> bool:
        return name in self.warming_models

    def is_warmed(self, name: str) -> bool:
        return name in self.warmed_models

    async def warm_up(self, name: str, force_refresh: bool = False) -> bool:
        if name in self.warmed_models and not force_refresh:
            return True

        in_flight = self.warming_models.get(name)
        if in_flight is not None:
            logger.debug("[warmup] Joining in-flight warm-up for %s", name)
            return await asyncio.shield(in_flight)

        now = self._clock()
        last = self.last_warmup_attempt.get(name)
        if last is not None and now - last < self.cfg.warmup_cooldown_s:
            raise RateLimitedError(name, self.cfg.warmup_cooldown_s - (now - last))

        self.last_warmup_attempt[name] = now
        task = asyncio.create_task(
            self._run_warm_up(name, self._generation, force_refresh),
            name=f"warmup:{name}",
        )
        self.warming_models[name] = task
        return await asyncio.shield(task)

    async def _run_warm_up(self, name: str, generation: int, force: bool) -> bool:
        try:
            ok = await self._perform_warm_up(name)
        finally:
            if self.warming_models.get(name) is asyncio.current_task():
                del self.warming_models[name]
        if ok and generation == self._generation:
            self.warmed_models.add(name)
        elif not ok and force:
            self.warmed_models.discard(name)
        return ok

    async def _probe(self, name: str) -> httpx.Response:
        return await self.client.request(
            "POST",
            "/api/chat",
            json={
                "model": name,
                "messages": [{"role": "user", "content": self.cfg.warmup_prompt}],
                "stream": False,
                "options": {"num_predict": 1, "temperature": 0},
            },
            timeout=self.cfg.warmup_timeout_s,
            check=False,
            # Probes already under way finish even if shutdown begins.
            allow_during_shutdown=True,
        )

    async def _perform_warm_up(self, name: str) -> bool:
        if self.client.is_shutting_down:
            logger.info("[warmup] Skipping %s: service is shutting down", name)
            return False
        started = self._clock()
        try:
            resp = await self._probe(name)
        except (OrchestratorError, httpx.HTTPError) as exc:
            logger.warning("[warmup] Probe for %s failed: %s", name, exc)
            return False

        if resp.status_code == 404:
            return await self._install_and_retry(name)
        if resp.is_success:
            logger.info(
                "[warmup] %s warmed up in %.1fs", name, self._clock() - started
            )
            return True
        logger.warning(
            "[warmup] Probe for %s returned HTTP %s", name, resp.status_code
        )
        return False

    async def _install_and_retry(self, name: str) -> bool:
        logger.info("[warmup] %s not installed; pulling before retry", name)
        try:
            await self.catalog.pull(name)
            await record_install_status(
                self.repository, name, installed=True, installing=False
            )
            resp = await self._probe(name)
        except Exception as exc:  # noqa: BLE001
            logger.warning("[warmup] Auto-install of %s failed: %s", name, exc)
            await record_install_status(
                self.repository, name, installed=False, installing=False
            )
            return False
        if not resp.is_success:
            logger.warning(
                "[warmup] Retry probe for %s returned HTTP %s",
                name,
                resp.status_code,
            )
        return resp.is_success

    async def auto_warm_up_selected_model(
        self, is_service_running: Callable[[], Awaitable[bool]]
    ) -> bool:
        """Warm the user's selected LLM when it is served by the local runtime."""
        if self.selection is None:
            return False
        try:
            selected = await self.selection.get_selected_models()
        except Exception as exc:  # noqa: BLE001
            logger.warning("[warmup] Could not read selected models: %s", exc)
            return False

        model_id = (selected or {}).get("llm")
        if not model_id:
            logger.debug("[warmup] No LLM selected; nothing to warm")
            return False
        if self.selection.get_provider_for_model("llm", model_id) != LOCAL_PROVIDER:
            logger.debug("[warmup] %s is not served by Ollama; skipping", model_id)
            return False
        if not await is_service_running():
            self.clear_cache()
            return False

        try:
            ok = await self.warm_up(model_id)
        except RateLimitedError as exc:
            logger.info("[warmup] %s", exc)
            return False
        if ok:
            self.events.emit(ModelWarmedUp(model=model_id))
        return ok

    def get_warmup_status(self, loaded_models: Optional[list[str]] = None) -> dict:
        now = self._clock()
        return {
            "warmed_models": sorted(self.warmed_models),
            "warming_models": sorted(self.warming_models),
            "loaded_models": list(loaded_models or []),
            "last_attempts": {
                name: round(now - ts, 3)
                for name, ts in self.last_warmup_attempt.items()
            },
        }

    def remove_from_warmed(self, name: str) -> None:
        if name in self.warmed_models:
            self.warmed_models.discard(name)
            logger.debug("[warmup] %s no longer resident; cleared warm flag", name)

    def clear_cache(self) -> None:
        self.warmed_models.clear()
        self.last_warmup_attempt.clear()
        self._generation += 1

    def cleanup(self) -> None:
        self.warming_models.clear()
        self.clear_cache()

    async def shutdown(self, force: bool = False) -> None:
        pending = list(self.warming_models.values())
        if pending and not force:
            logger.info("[warmup] Waiting for %d warm-up(s) to settle", len(pending))
            await asyncio.gather(*pending, return_exceptions=True)
        self.cleanup()
