from __future__ import annotations

import asyncio
import json
import logging
import time
from dataclasses import dataclass
from pathlib import Path
from typing import Optional, Protocol

from .config import OrchestratorConfig

logger = logging.getLogger("runtimeworks.repository")


class ModelStatusRepository(Protocol):
    async def update_install_status(
        self, name: str, installed: bool, installing: bool
    ) -> None: ...


class SelectedModelProvider(Protocol):
    async def get_selected_models(self) -> dict[str, Optional[str]]: ...

    def get_provider_for_model(self, kind: str, model_id: str) -> Optional[str]: ...


@dataclass
class ModelRecord:
    name: str
    installed: bool = False
    installing: bool = False
    updated_at: float = 0.0

    @classmethod
    def from_dict(cls, payload: dict) -> "ModelRecord | None":
        try:
            name = str(payload["name"])
        except (KeyError, TypeError):
            return None
        if not name:
            return None
        return cls(
            name=name,
            installed=bool(payload.get("installed", False)),
            installing=bool(payload.get("installing", False)),
            updated_at=float(payload.get("updated_at") or 0.0),
        )

    def to_dict(self) -> dict:
        return {
            "name": self.name,
            "installed": self.installed,
            "installing": self.installing,
            "updated_at": self.updated_at,
        }


class JsonModelStatusRepository:
    """Model install flags persisted as one JSON document."""

    def __init__(self, path: Path | str):
        self._path = Path(path).expanduser()
        self._lock = asyncio.Lock()
        self._records: Optional[dict[str, ModelRecord]] = None

    async def update_install_status(
        self, name: str, installed: bool, installing: bool
    ) -> None:
        async with self._lock:
            records = await self._ensure_loaded()
            records[name] = ModelRecord(
                name=name,
                installed=installed,
                installing=installing,
                updated_at=time.time(),
            )
            payload = json.dumps(
                {"models": [r.to_dict() for r in records.values()]}, indent=2
            )
            await asyncio.to_thread(self._write_atomic, payload)

    async def get(self, name: str) -> Optional[ModelRecord]:
        async with self._lock:
            records = await self._ensure_loaded()
            return records.get(name)

    async def list_records(self) -> list[ModelRecord]:
        async with self._lock:
            records = await self._ensure_loaded()
            return sorted(records.values(), key=lambda r: r.name)

    async def _ensure_loaded(self) -> dict[str, ModelRecord]:
        if self._records is None:
            self._records = await asyncio.to_thread(self._read)
        return self._records

    def _read(self) -> dict[str, ModelRecord]:
        if not self._path.exists():
            return {}
        try:
            data = json.loads(self._path.read_text(encoding="utf-8"))
        except (OSError, ValueError) as exc:
            logger.warning("[repository] Ignoring unreadable %s: %s", self._path, exc)
            return {}
        records: dict[str, ModelRecord] = {}
        for item in data.get("models") or []:
            record = ModelRecord.from_dict(item) if isinstance(item, dict) else None
            if record is not None:
                records[record.name] = record
        return records

    def _write_atomic(self, payload: str) -> None:
        self._path.parent.mkdir(parents=True, exist_ok=True)
        tmp_path = self._path.with_suffix(".tmp")
        tmp_path.write_text(payload, encoding="utf-8")
        tmp_path.replace(self._path)


async def record_install_status(
    repository: Optional[ModelStatusRepository],
    name: str,
    *,
    installed: bool,
    installing: bool,
) -> None:
    """Persist install flags; failures are logged and never raised."""
    if repository is None:
        return
    try:
        await repository.update_install_status(name, installed, installing)
    except Exception as exc:  # noqa: BLE001
        logger.warning(
            "[repository] Failed to record install status for %s: %s", name, exc
        )


class ConfiguredModelSelection:
    """Selected-model provider backed by ``selected_model`` in the config."""

    def __init__(self, cfg: OrchestratorConfig):
        self.cfg = cfg

    async def get_selected_models(self) -> dict[str, Optional[str]]:
        return {"llm": self.cfg.selected_model}

    def get_provider_for_model(self, kind: str, model_id: str) -> Optional[str]:
        if kind == "llm" and model_id and model_id == self.cfg.selected_model:
            return self.cfg.selected_provider
        return None
