import asyncio
import json
import os
from typing import Callable, Optional

import httpx
import pytest

from runtimeworks.orchestrator.config import OrchestratorConfig
from runtimeworks.orchestrator.config_loader import CONFIG_FILE_ENV, ENV_PREFIX
from runtimeworks.orchestrator.errors import CommandError
from runtimeworks.orchestrator.process import CommandResult

SUCCESS_PULL_LINES = [
    {"status": "pulling manifest"},
    {"status": "pulling 6a0746a1ec1a", "digest": "sha256:6a07", "total": 1000, "completed": 0},
    {"status": "pulling 6a0746a1ec1a", "digest": "sha256:6a07", "total": 1000, "completed": 500},
    {"status": "pulling 6a0746a1ec1a", "digest": "sha256:6a07", "total": 1000, "completed": 1000},
    {"status": "verifying sha256 digest"},
    {"status": "writing manifest"},
    {"status": "removing any unused layers"},
    {"status": "success"},
]


class FakeRuntime:
    """In-process stand-in for the Ollama HTTP API."""

    def __init__(self):
        self.running = True
        self.installed: list[str] = []
        self.loaded: list[str] = []
        self.ps_body: Optional[str] = None
        self.missing: set[str] = set()
        self.chat_statuses: dict[str, list[int]] = {}
        self.chat_delay = 0.0
        self.pull_lines: Optional[list] = None
        self.pull_status = 200
        self.requests: list[tuple[str, str]] = []
        self.chat_log: list[tuple[str, float, float]] = []
        self.in_flight = 0
        self.max_in_flight = 0

    def count(self, method: str, path: str) -> int:
        return sum(1 for m, p in self.requests if m == method and p == path)

    @property
    def transport(self) -> httpx.MockTransport:
        return httpx.MockTransport(self.handler)

    async def handler(self, request: httpx.Request) -> httpx.Response:
        path = request.url.path
        self.requests.append((request.method, path))
        if not self.running:
            raise httpx.ConnectError("connection refused", request=request)
        self.in_flight += 1
        self.max_in_flight = max(self.max_in_flight, self.in_flight)
        try:
            return await self._dispatch(request, path)
        finally:
            self.in_flight -= 1

    async def _dispatch(self, request: httpx.Request, path: str) -> httpx.Response:
        loop = asyncio.get_running_loop()
        if path == "/":
            return httpx.Response(200, text="Ollama is running")
        if path == "/api/tags":
            models = [
                {
                    "name": name,
                    "size": 4_700_000_000,
                    "digest": "365c0bd3c000a25d28ddbf732fe1c6add414de7275464c4e4d1c3b5fcb5d8ad1",
                    "details": {"family": "llama", "parameter_size": "8B", "quantization_level": "Q4_0"},
                }
                for name in self.installed
            ]
            return httpx.Response(200, json={"models": models})
        if path == "/api/ps":
            if self.ps_body is not None:
                return httpx.Response(200, text=self.ps_body)
            models = [{"name": n, "size": 5_000, "size_vram": 4_000} for n in self.loaded]
            return httpx.Response(200, json={"models": models})
        if path == "/api/chat":
            body = json.loads(request.content)
            model = body["model"]
            started = loop.time()
            if self.chat_delay:
                await asyncio.sleep(self.chat_delay)
            queue = self.chat_statuses.get(model)
            if queue:
                status = queue.pop(0)
            else:
                status = 404 if model in self.missing else 200
            self.chat_log.append((model, started, loop.time()))
            if status == 404:
                return httpx.Response(404, json={"error": f"model '{model}' not found"})
            if status == 200 and model not in self.loaded:
                self.loaded.append(model)
            return httpx.Response(status, json={"message": {"role": "assistant", "content": "H"}})
        if path == "/api/pull":
            body = json.loads(request.content)
            model = body["model"]
            if self.pull_status != 200:
                return httpx.Response(self.pull_status, text="pull refused")
            lines = SUCCESS_PULL_LINES if self.pull_lines is None else self.pull_lines
            encoded = "\n".join(
                line if isinstance(line, str) else json.dumps(line) for line in lines
            )
            if any(isinstance(l, dict) and l.get("status") == "success" for l in lines):
                self.missing.discard(model)
                if model not in self.installed:
                    self.installed.append(model)
            return httpx.Response(200, content=encoded.encode())
        return httpx.Response(404, json={"error": "not found"})


class FakeRunner:
    """Records commands instead of running them."""

    def __init__(self):
        self.calls: list[list[str]] = []
        self.spawned: list[list[str]] = []
        self.paths: dict[str, str] = {}
        self.handlers: dict[str, Callable[[list[str]], tuple]] = {}
        self.on_spawn: Optional[Callable[[list[str]], None]] = None

    async def run(self, argv, *, check=False, timeout=None):
        argv = [str(part) for part in argv]
        self.calls.append(argv)
        handler = self.handlers.get(os.path.basename(argv[0]))
        returncode, stdout, stderr = handler(argv) if handler else (0, "", "")
        result = CommandResult(argv, returncode, stdout, stderr)
        if check and not result.ok:
            raise CommandError(argv, returncode, stderr)
        return result

    def spawn_detached(self, argv):
        self.spawned.append([str(part) for part in argv])
        if self.on_spawn is not None:
            self.on_spawn(list(argv))
        return 4242

    def which(self, name):
        return self.paths.get(name)

    def commands(self, program: str) -> list[list[str]]:
        return [argv for argv in self.calls if os.path.basename(argv[0]) == program]


class RecordingRepository:
    def __init__(self):
        self.calls: list[tuple[str, bool, bool]] = []
        self.state: dict[str, dict] = {}

    async def update_install_status(self, name, installed, installing):
        self.calls.append((name, installed, installing))
        self.state[name] = {"installed": installed, "installing": installing}


class RecordingBus:
    def __init__(self, bus):
        self.events = []
        bus.subscribe(self.events.append)

    def kinds(self):
        return [event.kind for event in self.events]

    def of(self, kind):
        return [event for event in self.events if event.kind == kind]


async def no_sleep(_seconds):
    await asyncio.sleep(0)


@pytest.fixture(autouse=True)
def clear_runtimeworks_env(monkeypatch):
    for key in list(os.environ.keys()):
        if key.startswith(ENV_PREFIX) and key != CONFIG_FILE_ENV:
            monkeypatch.delenv(key, raising=False)
    yield


@pytest.fixture
def cfg(tmp_path):
    return OrchestratorConfig(
        request_timeout_s=2.0,
        warmup_timeout_s=2.0,
        pull_idle_timeout_s=2.0,
        download_timeout_s=2.0,
        download_retry_delay_s=0.0,
        enable_periodic_sync=False,
        service_wait_attempts=3,
        service_wait_delay_s=0.0,
        shutdown_grace_s=0.0,
        shutdown_final_wait_s=0.0,
        install_settle_s=0.0,
        temp_dir=str(tmp_path / "tmp"),
        applications_dir=str(tmp_path / "Applications"),
        repository_path=str(tmp_path / "model_status.json"),
        events_log_path="",
    )


@pytest.fixture
def fake_runtime():
    return FakeRuntime()


@pytest.fixture
def runner():
    fake = FakeRunner()
    fake.paths["ollama"] = "/usr/local/bin/ollama"
    return fake


@pytest.fixture
def repository():
    return RecordingRepository()


@pytest.fixture
def recording_bus():
    return RecordingBus


@pytest.fixture
def fast_sleep():
    return no_sleep
