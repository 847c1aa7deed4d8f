from __future__ import annotations

from dataclasses import dataclass
from typing import Optional


@dataclass
class OrchestratorConfig:
    # Runtime endpoint and model selection
    base_url: str = "http://127.0.0.1:11434"
    cli_path: Optional[str] = None
    selected_model: Optional[str] = None
    selected_provider: str = "ollama"
    # Timeouts (seconds)
    request_timeout_s: float = 30.0
    warmup_timeout_s: float = 120.0
    pull_idle_timeout_s: float = 300.0
    download_timeout_s: float = 300.0
    # Downloads
    download_max_attempts: int = 3
    download_retry_delay_s: float = 1.0
    download_max_redirects: int = 10
    # Warm-up
    warmup_cooldown_s: float = 5.0
    warmup_prompt: str = "Hi"
    # Reconciliation and service start
    enable_periodic_sync: bool = True
    sync_interval_s: float = 30.0
    catalog_chunk_size: int = 10
    service_wait_attempts: int = 30
    service_wait_delay_s: float = 1.0
    # Shutdown
    shutdown_grace_s: float = 2.0
    shutdown_final_wait_s: float = 1.0
    # Install
    temp_dir: Optional[str] = None
    applications_dir: str = "/Applications"
    install_settle_s: float = 2.0
    installer_sha256_macos: Optional[str] = None
    installer_sha256_windows: Optional[str] = None
    # Storage
    repository_path: str = "_staging/model_status.json"
    events_log_path: str = "logs/runtimeworks_events.jsonl"
    max_event_log_bytes: int = 25_000_000
    # Control API
    host: str = "127.0.0.1"
    port: int = 8110
    config_file_path: Optional[str] = None

    @property
    def base_url_normalized(self) -> str:
        return self.base_url.rstrip("/")

    @classmethod
    def load(cls) -> "OrchestratorConfig":
        from .config_loader import load_orchestrator_config

        return load_orchestrator_config()
