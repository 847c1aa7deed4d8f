"""Local model-runtime orchestration for Ollama."""

__version__ = "0.1.0"
