from __future__ import annotations

import os
import tempfile
import tomllib
from dataclasses import asdict, fields
from pathlib import Path
from typing import Any, Callable, Union, get_args, get_origin, get_type_hints

from .config import OrchestratorConfig

CONFIG_FILE_ENV = "RUNTIMEWORKS_CONFIG_FILE"
ENV_PREFIX = "RUNTIMEWORKS_"
DEFAULT_CONFIG_PATH = Path("configs/runtimeworks.toml")

_SECTION_MAP: dict[str, list[str]] = {
    "runtime": ["base_url", "cli_path", "selected_model", "selected_provider"],
    "timeouts": [
        "request_timeout_s",
        "warmup_timeout_s",
        "pull_idle_timeout_s",
        "download_timeout_s",
    ],
    "downloads": [
        "download_max_attempts",
        "download_retry_delay_s",
        "download_max_redirects",
    ],
    "warmup": ["warmup_cooldown_s", "warmup_prompt"],
    "sync": [
        "enable_periodic_sync",
        "sync_interval_s",
        "catalog_chunk_size",
        "service_wait_attempts",
        "service_wait_delay_s",
    ],
    "shutdown": ["shutdown_grace_s", "shutdown_final_wait_s"],
    "install": [
        "temp_dir",
        "applications_dir",
        "install_settle_s",
        "installer_sha256_macos",
        "installer_sha256_windows",
    ],
    "storage": ["repository_path", "events_log_path", "max_event_log_bytes"],
    "server": ["host", "port"],
}


def _field_types() -> dict[str, Any]:
    hints = get_type_hints(OrchestratorConfig)
    return {f.name: hints[f.name] for f in fields(OrchestratorConfig)}


def _coerce_bool(value: Any) -> bool:
    if isinstance(value, bool):
        return value
    if isinstance(value, str):
        return value.strip().lower() in {"1", "true", "yes", "on"}
    return bool(value)


def _coerce_int(value: Any) -> int:
    if isinstance(value, bool):
        return int(value)
    if isinstance(value, int):
        return value
    if isinstance(value, float):
        return int(value)
    return int(str(value).strip())


def _coerce_float(value: Any) -> float:
    if isinstance(value, (int, float)):
        return float(value)
    return float(str(value).strip())


def _coerce_str(value: Any) -> str:
    if value is None:
        return ""
    return str(value)


def _coerce_optional(value: Any, caster: Callable[[Any], Any]) -> Any:
    if value in ("", None):
        return None
    return caster(value)


_CASTERS: dict[Any, Callable[[Any], Any]] = {
    bool: _coerce_bool,
    int: _coerce_int,
    float: _coerce_float,
    str: _coerce_str,
}


def _coerce_value(field_type: Any, value: Any) -> Any:
    origin = get_origin(field_type)
    if origin is None:
        caster = _CASTERS.get(field_type)
        return caster(value) if caster else value

    if origin is Union:
        args = [arg for arg in get_args(field_type) if arg is not type(None)]
        if len(args) == 1:
            caster = _CASTERS.get(args[0])
            if caster:
                return _coerce_optional(value, caster)
    return value


def _read_config_file(path: Path) -> dict[str, Any]:
    if not path.exists():
        return {}
    with path.open("rb") as fh:
        data = tomllib.load(fh)

    out: dict[str, Any] = {}
    for section, keys in _SECTION_MAP.items():
        section_values = data.get(section, {})
        if not isinstance(section_values, dict):
            continue
        for key in keys:
            if key in section_values:
                out[key] = section_values[key]
    return out


def _env_name(field_name: str) -> str:
    return f"{ENV_PREFIX}{field_name.upper()}"


def _apply_env_overrides(config: dict[str, Any]) -> dict[str, Any]:
    """Overlay ``RUNTIMEWORKS_<FIELD>`` variables, ignoring unparsable values."""

    field_types = _field_types()
    for key in list(config):
        raw = os.environ.get(_env_name(key))
        if raw is None:
            continue
        try:
            config[key] = _coerce_value(field_types[key], raw)
        except (TypeError, ValueError):
            continue
    return config


def _default_config_dict() -> dict[str, Any]:
    data = asdict(OrchestratorConfig())
    data.pop("config_file_path", None)
    return data


def _normalize(config: dict[str, Any]) -> dict[str, Any]:
    field_types = _field_types()
    normalized = {}
    for key, default_value in _default_config_dict().items():
        value = config.get(key, default_value)
        try:
            normalized[key] = _coerce_value(field_types[key], value)
        except (TypeError, ValueError):
            normalized[key] = default_value
    return normalized


def _config_path() -> Path:
    return Path(os.environ.get(CONFIG_FILE_ENV, DEFAULT_CONFIG_PATH)).expanduser()


def _ensure_config_file(path: Path) -> None:
    if path.exists():
        return
    path.parent.mkdir(parents=True, exist_ok=True)
    write_config(OrchestratorConfig(), path)


def load_file_config() -> dict[str, Any]:
    """Return the normalized file values without environment overrides."""
    path = _config_path()
    _ensure_config_file(path)
    base = _default_config_dict()
    base.update(_read_config_file(path))
    return _normalize(base)


def load_orchestrator_config() -> OrchestratorConfig:
    candidate = _config_path()
    _ensure_config_file(candidate)
    normalized = _normalize(_read_config_file(candidate))
    normalized = _apply_env_overrides(normalized)
    cfg = OrchestratorConfig(**normalized)
    cfg.config_file_path = str(candidate)
    return cfg


def _format_value(value: Any) -> str:
    if isinstance(value, bool):
        return "true" if value else "false"
    if isinstance(value, (int, float)):
        return str(value)
    if value is None:
        return '""'
    escaped = str(value).replace("\\", "\\\\").replace('"', '\\"')
    return f'"{escaped}"'


def _ordered_sections(config: OrchestratorConfig) -> dict[str, dict[str, Any]]:
    config_dict = asdict(config)
    config_dict.pop("config_file_path", None)
    sections: dict[str, dict[str, Any]] = {}
    for section, keys in _SECTION_MAP.items():
        values = {key: config_dict[key] for key in keys if key in config_dict}
        if values:
            sections[section] = values
    return sections


def write_config(config: OrchestratorConfig, path: Path | None = None) -> None:
    path = Path(path or _config_path()).expanduser()
    path.parent.mkdir(parents=True, exist_ok=True)
    lines: list[str] = [
        "# runtimeworks orchestrator configuration.",
        "# Generated automatically. Edit values as needed.",
    ]
    for section, values in _ordered_sections(config).items():
        lines.append("")
        lines.append(f"[{section}]")
        for key, value in values.items():
            lines.append(f"{key} = {_format_value(value)}")

    tmp_fd, tmp_path = tempfile.mkstemp(
        prefix="runtimeworks_config_", suffix=".toml", dir=str(path.parent)
    )
    try:
        with os.fdopen(tmp_fd, "w", encoding="utf-8") as handle:
            handle.write("\n".join(lines) + "\n")
        Path(tmp_path).replace(path)
    finally:
        try:
            os.unlink(tmp_path)
        except FileNotFoundError:
            pass


def update_config_file(updates: dict[str, Any]) -> OrchestratorConfig:
    path = _config_path()
    _ensure_config_file(path)
    base = _default_config_dict()
    base.update(_read_config_file(path))

    unknown = [key for key in updates if key not in base]
    if unknown:
        raise KeyError(f"Unknown configuration field(s): {', '.join(sorted(unknown))}")

    base.update(updates)
    file_config = OrchestratorConfig(**_normalize(base))
    write_config(file_config, path)
    return load_orchestrator_config()


def list_env_overrides() -> dict[str, str]:
    return {
        key: value
        for key, value in os.environ.items()
        if key.startswith(ENV_PREFIX) and key != CONFIG_FILE_ENV
    }
