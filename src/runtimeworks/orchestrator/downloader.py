from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass
from hashlib import sha256
from pathlib import Path
from typing import Awaitable, Callable, Optional

import httpx

from runtimeworks import __version__

from .config import OrchestratorConfig
from .errors import ChecksumMismatchError, DownloadError, RedirectError
from .events import DownloadFailed, EventBus

logger = logging.getLogger("runtimeworks.downloader")

CHUNK_SIZE = 1024 * 1024
_REDIRECT_CODES = frozenset({301, 302, 303, 307, 308})

ProgressCallback = Callable[[int, int, int], None]


def hash_file(path: Path, chunk_size: int = CHUNK_SIZE) -> str:
    h = sha256()
    with path.open("rb") as f:
        while True:
            chunk = f.read(chunk_size)
            if not chunk:
                break
            h.update(chunk)
    return h.hexdigest()


@dataclass
class DownloadResult:
    path: Path
    size: int


class DownloadManager:
    """Redirect-following, checksum-verifying file fetcher."""

    def __init__(
        self,
        cfg: OrchestratorConfig,
        events: Optional[EventBus] = None,
        *,
        transport: Optional[httpx.AsyncBaseTransport] = None,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ):
        self.cfg = cfg
        self.events = events
        self._sleep = sleep
        # The timeout applies per read, so it bounds idle time rather than the
        # total length of a large download.
        self._http = httpx.AsyncClient(
            timeout=httpx.Timeout(cfg.download_timeout_s),
            follow_redirects=False,
            headers={"User-Agent": f"runtimeworks/{__version__}"},
            transport=transport,
        )

    async def aclose(self) -> None:
        await self._http.aclose()

    async def fetch(
        self,
        url: str,
        destination: Path | str,
        *,
        on_progress: Optional[ProgressCallback] = None,
        model_id: Optional[str] = None,
        _depth: int = 0,
    ) -> DownloadResult:
        """Download ``url`` to ``destination``; no partial file survives a failure."""

        dest = Path(destination)
        dest.parent.mkdir(parents=True, exist_ok=True)
        redirect_to: Optional[str] = None
        downloaded = 0
        try:
            async with self._http.stream("GET", url) as resp:
                if resp.status_code in _REDIRECT_CODES:
                    location = resp.headers.get("location")
                    if not location:
                        raise RedirectError(
                            "Redirect without location header",
                            url=url,
                            status_code=resp.status_code,
                        )
                    redirect_to = str(resp.url.join(location))
                elif not resp.is_success:
                    raise DownloadError(
                        f"HTTP {resp.status_code}: {resp.reason_phrase}",
                        url=url,
                        status_code=resp.status_code,
                    )
                else:
                    total = _content_length(resp)
                    with dest.open("wb") as fh:
                        async for chunk in resp.aiter_bytes(CHUNK_SIZE):
                            fh.write(chunk)
                            downloaded += len(chunk)
                            if total and on_progress is not None:
                                percent = round(downloaded / total * 100)
                                on_progress(percent, downloaded, total)
                    if (
                        total is not None
                        and "content-encoding" not in resp.headers
                        and downloaded < total
                    ):
                        raise DownloadError(
                            f"Incomplete download: {downloaded} of {total} bytes",
                            url=url,
                        )
        except DownloadError:
            _discard(dest)
            raise
        except httpx.TimeoutException as exc:
            _discard(dest)
            raise DownloadError(f"Download timeout: {url}", url=url) from exc
        except httpx.HTTPError as exc:
            _discard(dest)
            if self.events is not None:
                self.events.emit(
                    DownloadFailed(url=url, error=str(exc), model_id=model_id)
                )
            raise DownloadError(f"Download failed: {exc}", url=url) from exc
        except asyncio.CancelledError:
            _discard(dest)
            raise
        except Exception as exc:  # noqa: BLE001
            _discard(dest)
            raise DownloadError(f"Download failed: {exc}", url=url) from exc

        if redirect_to is not None:
            if _depth >= self.cfg.download_max_redirects:
                raise RedirectError(
                    f"Too many redirects (>{self.cfg.download_max_redirects})", url=url
                )
            logger.debug("[download] %s redirected to %s", url, redirect_to)
            return await self.fetch(
                redirect_to,
                dest,
                on_progress=on_progress,
                model_id=model_id,
                _depth=_depth + 1,
            )

        logger.info("[download] Saved %s (%d bytes) to %s", url, downloaded, dest)
        return DownloadResult(path=dest, size=downloaded)

    async def fetch_with_retry(
        self,
        url: str,
        destination: Path | str,
        *,
        expected_sha256: Optional[str] = None,
        on_progress: Optional[ProgressCallback] = None,
        max_attempts: Optional[int] = None,
        retry_delay_s: Optional[float] = None,
        model_id: Optional[str] = None,
    ) -> DownloadResult:
        attempts = max(1, max_attempts or self.cfg.download_max_attempts)
        delay = (
            self.cfg.download_retry_delay_s if retry_delay_s is None else retry_delay_s
        )
        last_error: Optional[DownloadError] = None

        for attempt in range(1, attempts + 1):
            try:
                result = await self.fetch(
                    url, destination, on_progress=on_progress, model_id=model_id
                )
                if expected_sha256:
                    await self._check_digest(result.path, expected_sha256)
                return result
            except DownloadError as exc:
                last_error = exc
                logger.warning(
                    "[download] Attempt %d/%d for %s failed: %s",
                    attempt,
                    attempts,
                    url,
                    exc,
                )
                if attempt < attempts:
                    await self._sleep(delay * attempt)

        assert last_error is not None
        raise last_error

    async def verify_checksum(self, path: Path | str, expected_sha256: str) -> bool:
        actual = await asyncio.to_thread(hash_file, Path(path))
        return actual == expected_sha256.strip().lower()

    async def _check_digest(self, path: Path, expected_sha256: str) -> None:
        expected = expected_sha256.strip().lower()
        actual = await asyncio.to_thread(hash_file, path)
        if actual != expected:
            _discard(path)
            raise ChecksumMismatchError(str(path), expected, actual)


def _content_length(resp: httpx.Response) -> Optional[int]:
    raw = resp.headers.get("content-length")
    if raw is None:
        return None
    try:
        value = int(raw)
    except ValueError:
        return None
    return value if value > 0 else None


def _discard(path: Path) -> None:
    try:
        path.unlink(missing_ok=True)
    except OSError as exc:
        logger.warning("[download] Could not remove partial file %s: %s", path, exc)


__all__ = ["DownloadManager", "DownloadResult", "hash_file", "ProgressCallback"]
