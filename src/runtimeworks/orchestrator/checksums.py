"""Installer artifacts the orchestrator is willing to download and run."""

from __future__ import annotations

from dataclasses import dataclass, replace
from typing import Optional

from .config import OrchestratorConfig
from .platforms import Platform


@dataclass(frozen=True)
class InstallerArtifact:
    platform: Platform
    url: str
    filename: str
    sha256: Optional[str] = None


# Upstream serves rolling "latest" builds, so digests are pinned through
# configuration (installer_sha256_*) rather than here.
INSTALLER_ARTIFACTS: dict[Platform, InstallerArtifact] = {
    Platform.MACOS: InstallerArtifact(
        Platform.MACOS, "https://ollama.com/download/Ollama.dmg", "Ollama.dmg"
    ),
    Platform.WINDOWS: InstallerArtifact(
        Platform.WINDOWS,
        "https://ollama.com/download/OllamaSetup.exe",
        "OllamaSetup.exe",
    ),
}


def artifact_for(platform: Platform, cfg: OrchestratorConfig) -> InstallerArtifact:
    """Return the artifact for ``platform`` with any configured digest applied."""
    artifact = INSTALLER_ARTIFACTS[platform]
    pinned = {
        Platform.MACOS: cfg.installer_sha256_macos,
        Platform.WINDOWS: cfg.installer_sha256_windows,
    }.get(platform)
    if pinned:
        artifact = replace(artifact, sha256=pinned.strip().lower())
    return artifact
