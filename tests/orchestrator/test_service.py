import asyncio
from pathlib import Path

import httpx

from runtimeworks.orchestrator.events import EventBus
from runtimeworks.orchestrator.platforms import Platform
from runtimeworks.orchestrator.service import build_orchestrator


async def _no_sleep(_seconds):
    await asyncio.sleep(0)


def _orchestrator(cfg, fake_runtime, runner, repository, platform=Platform.LINUX, **kwargs):
    return build_orchestrator(
        cfg,
        events=EventBus(),
        transport=fake_runtime.transport,
        runner=runner,
        platform=platform,
        repository=repository,
        sleep=_no_sleep,
        **kwargs,
    )


def test_sync_state_emits_only_on_change(cfg, fake_runtime, runner, repository, recording_bus):
    fake_runtime.installed = ["llama3:latest", "phi3:latest"]
    fake_runtime.loaded = ["llama3:latest"]

    async def _run():
        orch = _orchestrator(cfg, fake_runtime, runner, repository)
        recorder = recording_bus(orch.events)
        await orch.sync_state()
        primed = len(recorder.of("state-changed"))
        await orch.sync_state()
        await orch.sync_state()
        unchanged = len(recorder.of("state-changed"))

        orch.warmup.warmed_models.add("llama3:latest")
        fake_runtime.loaded = []
        await orch.sync_state()
        await orch.aclose()
        return orch, recorder, primed, unchanged

    orch, recorder, primed, unchanged = asyncio.run(_run())
    assert (primed, unchanged) == (1, 1)
    changes = recorder.of("state-changed")
    assert len(changes) == 2
    assert changes[0].loaded_models == ["llama3:latest"]
    assert changes[0].models == 2
    assert changes[1].loaded_models == []
    assert not orch.warmup.is_warmed("llama3:latest")
    assert repository.calls == [
        ("llama3:latest", True, False),
        ("phi3:latest", True, False),
    ]


def test_pull_model_streams_progress_and_records_state(cfg, fake_runtime, runner, repository, recording_bus):
    async def _run():
        orch = _orchestrator(cfg, fake_runtime, runner, repository)
        recorder = recording_bus(orch.events)
        result = await orch.pull_model("llama3")
        await orch.aclose()
        return result, recorder

    result, recorder = asyncio.run(_run())
    assert result == {"success": True, "model": "llama3"}
    progress = [e.progress for e in recorder.of("install-progress")]
    assert progress[-1] == 100
    assert progress == sorted(progress)
    assert repository.calls == [("llama3", False, True), ("llama3", True, False)]
    assert repository.state["llama3"] == {"installed": True, "installing": False}


def test_failed_pull_records_final_state(cfg, fake_runtime, runner, repository, recording_bus):
    fake_runtime.pull_status = 500

    async def _run():
        orch = _orchestrator(cfg, fake_runtime, runner, repository)
        recorder = recording_bus(orch.events)
        result = await orch.pull_model("llama3")
        await orch.aclose()
        return result, recorder

    result, recorder = asyncio.run(_run())
    assert result["success"] is False
    assert result["error_type"] == "model-pull-failed"
    assert repository.state["llama3"] == {"installed": False, "installing": False}
    errors = recorder.of("error")
    assert errors[0].model == "llama3"


def test_graceful_shutdown_waits_for_warm_ups(cfg, fake_runtime, runner, repository):
    fake_runtime.chat_delay = 0.05
    killed_at = []

    def _pkill(argv):
        killed_at.append(asyncio.get_running_loop().time())
        fake_runtime.running = False
        return (0, "", "")

    runner.handlers["pkill"] = _pkill

    async def _run():
        orch = _orchestrator(cfg, fake_runtime, runner, repository)
        warm_ups = [
            asyncio.create_task(orch.warm_up_model(name)) for name in ("llama3", "phi3")
        ]
        await asyncio.sleep(0.01)
        result = await orch.shutdown(force=False)
        warmed = await asyncio.gather(*warm_ups)
        await orch.aclose()
        return orch, result, warmed

    orch, result, warmed = asyncio.run(_run())
    assert result == {"success": True}
    assert [w["success"] for w in warmed] == [True, True]
    assert len(fake_runtime.chat_log) == 2
    assert all(end <= killed_at[0] for _, _, end in fake_runtime.chat_log)
    assert runner.calls[0] == ["pkill", "-INT", "-f", "ollama serve"]
    assert orch.is_shutting_down is False
    assert orch.install_state.is_running is False


def test_shutdown_when_runtime_already_stopped(cfg, fake_runtime, runner, repository):
    fake_runtime.running = False

    async def _run():
        orch = _orchestrator(cfg, fake_runtime, runner, repository)
        result = await orch.shutdown(force=True)
        await orch.aclose()
        return result

    assert asyncio.run(_run()) == {"success": True}
    assert runner.calls == []


def test_failed_shutdown_keeps_rejecting_requests(cfg, fake_runtime, runner, repository):
    def _pkill(argv):
        if argv[1] == "-KILL":
            fake_runtime.running = False
        return (0, "", "")

    runner.handlers["pkill"] = _pkill

    async def _run():
        orch = _orchestrator(cfg, fake_runtime, runner, repository)
        failed = await orch.shutdown(force=False)
        still_shutting_down = orch.is_shutting_down
        models = await orch.get_models()
        forced = await orch.shutdown(force=True)
        await orch.aclose()
        return orch, failed, still_shutting_down, models, forced

    orch, failed, still_shutting_down, models, forced = asyncio.run(_run())
    assert failed["error_type"] == "shutdown-incomplete"
    assert still_shutting_down is True
    assert models == {"success": True, "models": []}
    assert forced == {"success": True}
    assert [argv[1] for argv in runner.commands("pkill")] == ["-INT", "-TERM", "-KILL"]
    assert orch.is_shutting_down is False


def test_sync_state_keeps_warm_flags_when_loaded_set_is_unreadable(
    cfg, fake_runtime, runner, repository, recording_bus
):
    fake_runtime.installed = ["llama3:latest"]
    fake_runtime.loaded = ["llama3:latest"]

    async def _run():
        orch = _orchestrator(cfg, fake_runtime, runner, repository)
        recorder = recording_bus(orch.events)
        await orch.sync_state()
        orch.warmup.warmed_models.add("llama3:latest")
        fake_runtime.ps_body = "not json"
        await orch.sync_state()
        await orch.aclose()
        return orch, recorder

    orch, recorder = asyncio.run(_run())
    assert len(recorder.of("state-changed")) == 1
    assert orch.warmup.is_warmed("llama3:latest")


def test_pull_model_normalizes_name_before_recording(cfg, fake_runtime, runner, repository):
    async def _run():
        orch = _orchestrator(cfg, fake_runtime, runner, repository)
        blank = await orch.pull_model("  ")
        padded = await orch.pull_model(" llama3 ")
        await orch.aclose()
        return blank, padded

    blank, padded = asyncio.run(_run())
    assert blank["success"] is False
    assert blank["error_type"] == "model-pull-failed"
    assert padded == {"success": True, "model": "llama3"}
    assert repository.calls == [("llama3", False, True), ("llama3", True, False)]
    assert fake_runtime.count("POST", "/api/pull") == 1


def test_install_failure_after_copy_rolls_back(cfg, fake_runtime, runner, repository, recording_bus):
    app_dir = Path(cfg.applications_dir) / "Ollama.app"

    def _cp(argv):
        # Bundle without its executable fails verification.
        app_dir.mkdir(parents=True, exist_ok=True)
        return (0, "", "")

    runner.handlers["cp"] = _cp
    download = httpx.MockTransport(lambda request: httpx.Response(200, content=b"dmg"))

    async def _run():
        orch = _orchestrator(
            cfg,
            fake_runtime,
            runner,
            repository,
            platform=Platform.MACOS,
            download_transport=download,
        )
        recorder = recording_bus(orch.events)
        result = await orch.install()
        await orch.aclose()
        return orch, result, recorder

    orch, result, recorder = asyncio.run(_run())
    assert result["success"] is False
    assert result["error_type"] == "installation-failed"
    assert "Application executable missing" in result["error"]
    assert not app_dir.exists()
    assert [c.name for c in orch.installer.checkpoints][-1] == "cli-linked"
    assert recorder.of("error")[0].error_type == "installation-failed"
    assert "installation-complete" not in recorder.kinds()
    assert orch.install_state.is_installing is False


def test_install_on_linux_points_to_manual_instructions(cfg, fake_runtime, runner, repository):
    async def _run():
        orch = _orchestrator(cfg, fake_runtime, runner, repository)
        result = await orch.install()
        await orch.aclose()
        return result

    result = asyncio.run(_run())
    assert result["success"] is False
    assert result["error_type"] == "manual-install-required"
    assert result["instructions_url"] == "https://ollama.com/download/linux"


def test_install_completes_and_starts_service(cfg, fake_runtime, runner, repository, recording_bus):
    fake_runtime.running = False
    app_dir = Path(cfg.applications_dir) / "Ollama.app"

    def _cp(argv):
        executable = app_dir / "Contents" / "MacOS" / "Ollama"
        executable.parent.mkdir(parents=True, exist_ok=True)
        executable.write_text("binary")
        return (0, "", "")

    def _open(argv):
        fake_runtime.running = True
        return (0, "", "")

    runner.handlers["cp"] = _cp
    runner.handlers["open"] = _open
    download = httpx.MockTransport(lambda request: httpx.Response(200, content=b"dmg"))

    async def _run():
        orch = _orchestrator(
            cfg,
            fake_runtime,
            runner,
            repository,
            platform=Platform.MACOS,
            download_transport=download,
        )
        recorder = recording_bus(orch.events)
        result = await orch.install()
        await orch.aclose()
        return orch, result, recorder

    orch, result, recorder = asyncio.run(_run())
    assert result == {"success": True}
    assert recorder.kinds()[-1] == "installation-complete"
    assert recorder.of("install-progress")[-1].progress == 100
    assert orch.installer.checkpoints == []
    assert runner.commands("open") == [["open", "-a", "Ollama"]]


def test_ensure_ready_starts_stopped_runtime(cfg, fake_runtime, runner, repository):
    fake_runtime.running = False
    runner.on_spawn = lambda argv: setattr(fake_runtime, "running", True)

    async def _run():
        orch = _orchestrator(cfg, fake_runtime, runner, repository)
        result = await orch.ensure_ready()
        await orch.aclose()
        return result

    assert asyncio.run(_run()) == {"success": True, "installed": True, "running": True}
    assert runner.spawned == [["ollama", "serve"]]


def test_ensure_ready_reports_missing_install(cfg, fake_runtime, runner, repository):
    runner.paths.clear()

    async def _run():
        orch = _orchestrator(cfg, fake_runtime, runner, repository)
        result = await orch.ensure_ready()
        await orch.aclose()
        return result

    result = asyncio.run(_run())
    assert result["error_type"] == "not-installed"
    assert runner.spawned == []


def test_start_times_out_when_runtime_never_answers(cfg, fake_runtime, runner, repository):
    fake_runtime.running = False

    async def _run():
        orch = _orchestrator(cfg, fake_runtime, runner, repository)
        result = await orch.start()
        await orch.aclose()
        return result

    result = asyncio.run(_run())
    assert result["error_type"] == "start-timeout"
    assert fake_runtime.count("GET", "/api/ps") == 1 + cfg.service_wait_attempts


def test_status_and_health(cfg, fake_runtime, runner, repository):
    fake_runtime.installed = ["llama3:latest"]
    fake_runtime.loaded = ["llama3:latest"]

    async def _run():
        orch = _orchestrator(cfg, fake_runtime, runner, repository)
        status = await orch.get_status()
        health = await orch.health_check()
        fake_runtime.running = False
        down = await orch.health_check()
        await orch.aclose()
        return status, health, down

    status, health, down = asyncio.run(_run())
    assert status["installed"] is True
    assert status["running"] is True
    assert status["platform"] == "linux"
    assert health["healthy"] is True
    assert health["memory_status"]["vram_bytes"] == 4_000
    assert down["healthy"] is False
    assert down["memory_status"] is None


def test_warm_up_model_reports_rate_limit(cfg, fake_runtime, runner, repository):
    fake_runtime.chat_statuses["llama3"] = [500]

    async def _run():
        orch = _orchestrator(cfg, fake_runtime, runner, repository)
        first = await orch.warm_up_model("llama3")
        second = await orch.warm_up_model("llama3")
        await orch.aclose()
        return first, second

    first, second = asyncio.run(_run())
    assert first["error_type"] == "warmup-failed"
    assert second["error_type"] == "rate-limited"
    assert 0 < second["retry_after"] <= cfg.warmup_cooldown_s
