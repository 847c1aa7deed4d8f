import asyncio
from dataclasses import replace
from pathlib import Path

import httpx
import pytest

from runtimeworks.orchestrator.downloader import DownloadManager
from runtimeworks.orchestrator.errors import (
    ChecksumMismatchError,
    ManualInstallRequiredError,
    UnsupportedPlatformError,
)
from runtimeworks.orchestrator.installer import RuntimeInstaller, WindowsInstaller
from runtimeworks.orchestrator.platforms import Platform

INSTALLER_BYTES = b"\x00installer" * 64


def _downloader(cfg):
    def handler(request):
        return httpx.Response(200, content=INSTALLER_BYTES)

    return DownloadManager(cfg, transport=httpx.MockTransport(handler))


def _fake_app_copy(cfg):
    def _cp(argv):
        executable = Path(cfg.applications_dir) / "Ollama.app" / "Contents" / "MacOS" / "Ollama"
        executable.parent.mkdir(parents=True, exist_ok=True)
        executable.write_text("binary")
        cli = Path(cfg.applications_dir) / "Ollama.app" / "Contents" / "Resources" / "ollama"
        cli.parent.mkdir(parents=True, exist_ok=True)
        cli.write_text("cli")
        return (0, "", "")

    return _cp


def _mac_installer(cfg, runner):
    runner.handlers["cp"] = _fake_app_copy(cfg)
    return RuntimeInstaller(
        cfg, _downloader(cfg), runner, platform=Platform.MACOS
    )


def test_macos_install_walks_every_checkpoint(cfg, runner):
    installer = _mac_installer(cfg, runner)
    progress = []

    asyncio.run(installer.auto_install(progress.append))

    assert [c.name for c in installer.checkpoints] == [
        "pre-install",
        "post-download",
        "post-install",
        "cli-linked",
        "cleaned-up",
    ]
    assert (Path(cfg.applications_dir) / "Ollama.app").is_dir()
    assert not (Path(cfg.temp_dir) / "Ollama.dmg").exists()
    assert runner.commands("hdiutil")[0][1] == "attach"
    assert runner.commands("hdiutil")[-1][1] == "detach"
    script = runner.commands("osascript")[0][2]
    assert "/usr/local/bin/ollama" in script
    assert "with administrator privileges" in script
    stages = [event.stage for event in progress]
    assert stages[0] == "downloading"
    assert {"mounting", "installing", "linking", "cleanup"} <= set(stages)


def test_cli_link_failure_does_not_abort_install(cfg, runner):
    installer = _mac_installer(cfg, runner)
    runner.handlers["osascript"] = lambda argv: (1, "", "User canceled.")
    progress = []

    asyncio.run(installer.auto_install(progress.append))

    names = [c.name for c in installer.checkpoints]
    assert "link-failed" in names
    assert names[-1] == "cleaned-up"
    assert any("Could not link" in event.message for event in progress)


def test_rollback_after_post_install_removes_application(cfg, runner):
    installer = _mac_installer(cfg, runner)
    app_dir = Path(cfg.applications_dir) / "Ollama.app"

    async def _run():
        await installer.auto_install()
        assert app_dir.exists()
        undone = await installer.rollback_to_last_checkpoint()
        assert undone.name == "cleaned-up"

    asyncio.run(_run())
    assert not app_dir.exists()


def test_rollback_without_checkpoint_does_nothing(cfg, runner):
    installer = _mac_installer(cfg, runner)
    app_dir = Path(cfg.applications_dir) / "Ollama.app"
    app_dir.mkdir(parents=True)

    result = asyncio.run(installer.rollback_to_last_checkpoint())

    assert result is None
    assert app_dir.exists()
    assert runner.calls == []


def test_rollback_after_post_download_only_removes_artifact(cfg, runner):
    installer = _mac_installer(cfg, runner)
    app_dir = Path(cfg.applications_dir) / "Ollama.app"
    app_dir.mkdir(parents=True)
    artifact = Path(cfg.temp_dir) / "Ollama.dmg"
    artifact.parent.mkdir(parents=True, exist_ok=True)
    artifact.write_bytes(b"dmg")
    installer._impl.artifact_path = artifact
    installer.save_checkpoint("pre-install")
    installer.save_checkpoint("post-download")

    asyncio.run(installer.rollback_to_last_checkpoint())

    assert not artifact.exists()
    assert app_dir.exists()
    assert [c.name for c in installer.checkpoints] == ["pre-install"]


def test_checksum_failure_stops_before_running_installer(cfg, runner):
    pinned = replace(cfg, installer_sha256_macos="ab" * 32)
    installer = _mac_installer(pinned, runner)

    with pytest.raises(ChecksumMismatchError):
        asyncio.run(installer.auto_install())

    assert runner.commands("hdiutil") == []
    assert [c.name for c in installer.checkpoints] == ["pre-install"]
    assert not (Path(cfg.temp_dir) / "Ollama.dmg").exists()


def test_linux_requires_manual_install(cfg, runner):
    installer = RuntimeInstaller(cfg, _downloader(cfg), runner, platform=Platform.LINUX)

    with pytest.raises(ManualInstallRequiredError) as excinfo:
        asyncio.run(installer.auto_install())

    assert excinfo.value.instructions_url == "https://ollama.com/download/linux"
    assert installer.checkpoints == []


def test_unknown_platform_is_rejected(cfg, runner, monkeypatch):
    monkeypatch.setattr(
        "runtimeworks.orchestrator.installer.current_platform", lambda: None
    )
    installer = RuntimeInstaller(cfg, _downloader(cfg), runner)

    with pytest.raises(UnsupportedPlatformError):
        asyncio.run(installer.auto_install())


def test_windows_install_and_uninstall(cfg, runner, monkeypatch, tmp_path):
    monkeypatch.setenv("LOCALAPPDATA", str(tmp_path / "Local"))
    install_dir = WindowsInstaller.install_dir()

    def _setup(argv):
        assert "/VERYSILENT" in argv
        install_dir.mkdir(parents=True, exist_ok=True)
        (install_dir / "ollama.exe").write_text("exe")
        (install_dir / "unins000.exe").write_text("uninstaller")
        return (0, "", "")

    runner.handlers["OllamaSetup.exe"] = _setup
    installer = RuntimeInstaller(cfg, _downloader(cfg), runner, platform=Platform.WINDOWS)

    async def _run():
        await installer.auto_install()
        assert [c.name for c in installer.checkpoints][-2:] == ["cli-linked", "cleaned-up"]
        await installer.rollback_to_last_checkpoint()

    asyncio.run(_run())
    assert not (Path(cfg.temp_dir) / "OllamaSetup.exe").exists()
    assert runner.commands("unins000.exe")[0][1] == "/VERYSILENT"


def test_verify_installation_reports_missing_bundle_executable(cfg, runner):
    installer = _mac_installer(cfg, runner)
    (Path(cfg.applications_dir) / "Ollama.app").mkdir(parents=True)

    async def _installed():
        return True

    result = asyncio.run(installer.verify_installation(_installed))

    assert result.success is False
    assert "Application executable missing" in result.error
    assert runner.commands("ollama")[0][1] == "--version"


def test_verify_installation_succeeds_after_install(cfg, runner):
    installer = _mac_installer(cfg, runner)

    async def _installed():
        return True

    async def _run():
        await installer.auto_install()
        return await installer.verify_installation(_installed)

    result = asyncio.run(_run())
    assert result.success is True
    assert result.to_dict() == {"success": True}


def test_verify_installation_never_raises(cfg, runner):
    installer = _mac_installer(cfg, runner)

    async def _boom():
        raise RuntimeError("probe exploded")

    result = asyncio.run(installer.verify_installation(_boom))

    assert result.success is False
    assert "probe exploded" in result.error
