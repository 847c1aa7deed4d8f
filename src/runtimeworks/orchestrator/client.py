from __future__ import annotations

import asyncio
import logging
from contextlib import asynccontextmanager
from typing import Any, AsyncIterator, Optional

import httpx

from .config import OrchestratorConfig
from .errors import RequestTimeoutError, RuntimeRequestError, ServiceShuttingDownError

logger = logging.getLogger("runtimeworks.client")


class RuntimeClient:
    """Serialized access to the runtime's HTTP API.

    Ollama handles concurrent management calls poorly, so every request
    waits for a single slot before it is sent. Streaming pulls are the
    exception: they run outside the slot so a long download does not stall
    status polling.
    """

    def __init__(
        self,
        cfg: OrchestratorConfig,
        *,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ):
        self.cfg = cfg
        self.base_url = cfg.base_url_normalized
        self._http = httpx.AsyncClient(
            base_url=self.base_url,
            timeout=cfg.request_timeout_s,
            transport=transport,
        )
        self._gate = asyncio.Lock()
        self.is_shutting_down = False

    async def aclose(self) -> None:
        try:
            await self._http.aclose()
        except Exception:  # noqa: BLE001
            pass

    def _ensure_accepting(self, allow_during_shutdown: bool) -> None:
        if self.is_shutting_down and not allow_during_shutdown:
            raise ServiceShuttingDownError()

    async def request(
        self,
        method: str,
        path: str,
        *,
        json: Any = None,
        timeout: Optional[float] = None,
        check: bool = True,
        allow_during_shutdown: bool = False,
    ) -> httpx.Response:
        self._ensure_accepting(allow_during_shutdown)
        limit = timeout if timeout is not None else self.cfg.request_timeout_s
        async with self._gate:
            # Shutdown may have started while this call was queued.
            self._ensure_accepting(allow_during_shutdown)
            try:
                resp = await asyncio.wait_for(
                    self._http.request(method, path, json=json, timeout=limit), limit
                )
            except (asyncio.TimeoutError, httpx.TimeoutException) as exc:
                raise RequestTimeoutError(
                    f"{method} {path} timed out after {limit:g}s"
                ) from exc
        if check and not resp.is_success:
            raise RuntimeRequestError(method, path, resp.status_code, resp.text[:200])
        return resp

    async def get_json(self, path: str, **kwargs: Any) -> Any:
        resp = await self.request("GET", path, **kwargs)
        return resp.json()

    async def is_alive(self, *, allow_during_shutdown: bool = False) -> bool:
        """True when ``GET /api/ps`` answers successfully."""
        try:
            resp = await self.request(
                "GET",
                "/api/ps",
                check=False,
                allow_during_shutdown=allow_during_shutdown,
            )
        except (httpx.HTTPError, RequestTimeoutError, ServiceShuttingDownError):
            return False
        return resp.is_success

    @asynccontextmanager
    async def stream(
        self,
        method: str,
        path: str,
        *,
        json: Any = None,
        idle_timeout: Optional[float] = None,
    ) -> AsyncIterator[httpx.Response]:
        self._ensure_accepting(False)
        timeout = httpx.Timeout(idle_timeout or self.cfg.pull_idle_timeout_s)
        async with self._http.stream(method, path, json=json, timeout=timeout) as resp:
            yield resp
