from __future__ import annotations

from typing import Optional


class OrchestratorError(RuntimeError):
    """Base class for failures raised by the runtime orchestrator."""

    error_type = "orchestrator-error"


class DownloadError(OrchestratorError):
    """A file download failed (HTTP status, transport, timeout or checksum)."""

    error_type = "download-failed"

    def __init__(
        self,
        message: str,
        *,
        url: str | None = None,
        status_code: int | None = None,
    ):
        super().__init__(message)
        self.url = url
        self.status_code = status_code


class RedirectError(DownloadError):
    """Redirect without a usable ``Location`` header, or too many hops."""

    error_type = "redirect-failed"


class ChecksumMismatchError(DownloadError):
    error_type = "checksum-mismatch"

    def __init__(self, path: str, expected: str, actual: str):
        super().__init__(
            f"Checksum mismatch for {path}: expected {expected}, got {actual}"
        )
        self.path = path
        self.expected = expected
        self.actual = actual


class UnsupportedPlatformError(OrchestratorError):
    error_type = "unsupported-platform"


class ManualInstallRequiredError(OrchestratorError):
    """Automatic installation is not attempted on this platform."""

    error_type = "manual-install-required"

    def __init__(self, instructions_url: str):
        super().__init__(
            f"Manual installation required. Please visit {instructions_url}"
        )
        self.instructions_url = instructions_url


class InstallError(OrchestratorError):
    error_type = "installation-failed"


class PullError(OrchestratorError):
    error_type = "model-pull-failed"

    def __init__(self, model: str, message: str):
        super().__init__(f"Failed to pull '{model}': {message}")
        self.model = model


class RateLimitedError(OrchestratorError):
    """A warm-up for the same model was attempted inside the cooldown window."""

    error_type = "rate-limited"

    def __init__(self, model: str, retry_after: float):
        super().__init__(
            f"Warm-up for '{model}' attempted too recently; retry in {retry_after:.1f}s"
        )
        self.model = model
        self.retry_after = retry_after


class RequestTimeoutError(OrchestratorError, TimeoutError):
    error_type = "request-timeout"


class ServiceShuttingDownError(OrchestratorError):
    error_type = "shutting-down"

    def __init__(self, message: str = "Service is shutting down"):
        super().__init__(message)


class RuntimeRequestError(OrchestratorError):
    """The runtime answered with a non-success HTTP status."""

    error_type = "runtime-request-failed"

    def __init__(self, method: str, path: str, status_code: int, body: str = ""):
        detail = f": {body}" if body else ""
        super().__init__(f"{method} {path} returned HTTP {status_code}{detail}")
        self.method = method
        self.path = path
        self.status_code = status_code


class CommandError(OrchestratorError):
    error_type = "command-failed"

    def __init__(self, argv: list[str], returncode: Optional[int], stderr: str = ""):
        tail = stderr.strip().splitlines()[-1] if stderr.strip() else ""
        message = f"Command {argv[0]!r} exited with {returncode}"
        if tail:
            message += f": {tail}"
        super().__init__(message)
        self.argv = list(argv)
        self.returncode = returncode
        self.stderr = stderr


__all__ = [
    "OrchestratorError",
    "DownloadError",
    "RedirectError",
    "ChecksumMismatchError",
    "UnsupportedPlatformError",
    "ManualInstallRequiredError",
    "InstallError",
    "PullError",
    "RateLimitedError",
    "RequestTimeoutError",
    "ServiceShuttingDownError",
    "RuntimeRequestError",
    "CommandError",
]
