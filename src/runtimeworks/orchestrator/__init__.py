"""Supervision of a single local Ollama runtime.

Build an orchestrator with :func:`build_orchestrator`, call ``init()`` once,
and use its operations; each returns a ``{"success": ...}`` dict.
"""

from .config import OrchestratorConfig
from .events import EventBus
from .service import InstallState, RuntimeOrchestrator, build_orchestrator

__all__ = [
    "OrchestratorConfig",
    "EventBus",
    "InstallState",
    "RuntimeOrchestrator",
    "build_orchestrator",
]
