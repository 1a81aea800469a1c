"""Archive download with manual redirect handling and throttled progress.

Redirects are followed by hand (not by httpx) so that the hop count is
bounded and any partial file from a previous hop is removed before the
next request is issued.
"""

from __future__ import annotations

import logging
import time
from pathlib import Path
from typing import Callable, Optional

import httpx

from ..errors import HTTPStatusError, NetworkError, TooManyRedirects

logger = logging.getLogger(__name__)

ProgressCallback = Callable[[Optional[float], str], None]

REDIRECT_STATUSES = {301, 302, 303, 307, 308}
DEFAULT_MAX_REDIRECTS = 5
DEFAULT_PROGRESS_INTERVAL = 0.5  # seconds
CHUNK_SIZE = 64 * 1024
_MB = 1024 * 1024


def _discard(path: Path) -> None:
    """Remove a partial download; failures are logged, never raised."""
    try:
        path.unlink(missing_ok=True)
    except OSError as e:
        logger.warning("Could not remove partial download %s: %s", path, e)


def format_progress(received: int, total: Optional[int], elapsed: float) -> str:
    speed = received / _MB / elapsed if elapsed > 0 else 0.0
    if total:
        percent = received * 100.0 / total
        return (
            f"{percent:.1f}% ({received / _MB:.1f} MB / {total / _MB:.1f} MB) "
            f"- {speed:.2f} MB/s"
        )
    return f"{received / _MB:.1f} MB - {speed:.2f} MB/s"


class _ProgressThrottle:
    """Forwards progress at most once per interval, plus a final event."""

    def __init__(
        self,
        callback: Optional[ProgressCallback],
        total: Optional[int],
        interval: float,
    ) -> None:
        self.callback = callback
        self.total = total
        self.interval = interval
        self.started = time.monotonic()
        self.last_emit = self.started

    def _percent(self, received: int) -> Optional[float]:
        if not self.total:
            return None
        return min(100.0, received * 100.0 / self.total)

    def update(self, received: int) -> None:
        if self.callback is None:
            return
        now = time.monotonic()
        if now - self.last_emit < self.interval:
            return
        self.last_emit = now
        self.callback(
            self._percent(received),
            format_progress(received, self.total, now - self.started),
        )

    def finish(self, received: int) -> None:
        if self.callback is None:
            return
        elapsed = time.monotonic() - self.started
        self.callback(100.0, format_progress(received, self.total or received, elapsed))


async def download(
    url: str,
    destination: Path,
    on_progress: Optional[ProgressCallback] = None,
    *,
    client: Optional[httpx.AsyncClient] = None,
    max_redirects: int = DEFAULT_MAX_REDIRECTS,
    progress_interval: float = DEFAULT_PROGRESS_INTERVAL,
    timeout: float = 60.0,
) -> Path:
    """Download ``url`` to ``destination``.

    Args:
        url: Archive URL
        destination: File to write; parent directories are created
        on_progress: Called as ``(percent_or_None, status_text)``
        client: Optional shared client; one is created (and closed) otherwise
        max_redirects: Redirect hops allowed before giving up
        progress_interval: Minimum seconds between progress events
        timeout: Per-request timeout when a client is created here

    Returns:
        The destination path

    Raises:
        TooManyRedirects: More than ``max_redirects`` hops
        HTTPStatusError: Non-2xx terminal status
        NetworkError: Connection-level failure or an unreadable body

    On every failure the destination file is removed.
    """
    destination = Path(destination)
    destination.parent.mkdir(parents=True, exist_ok=True)

    owns_client = client is None
    if client is None:
        client = httpx.AsyncClient(timeout=timeout, follow_redirects=False)

    current_url = url
    redirects = 0
    try:
        while True:
            async with client.stream(
                "GET", current_url, follow_redirects=False
            ) as response:
                if response.status_code in REDIRECT_STATUSES:
                    location = response.headers.get("location")
                    _discard(destination)
                    if not location:
                        raise HTTPStatusError(current_url, response.status_code)
                    redirects += 1
                    if redirects > max_redirects:
                        raise TooManyRedirects(url, max_redirects)
                    current_url = str(response.url.join(location))
                    logger.debug("Redirect %d -> %s", redirects, current_url)
                    continue

                if not response.is_success:
                    _discard(destination)
                    raise HTTPStatusError(current_url, response.status_code)

                length = response.headers.get("content-length")
                total = int(length) if length and length.isdigit() else None
                throttle = _ProgressThrottle(on_progress, total, progress_interval)

                received = 0
                with open(destination, "wb") as f:
                    async for chunk in response.aiter_bytes(chunk_size=CHUNK_SIZE):
                        f.write(chunk)
                        received += len(chunk)
                        throttle.update(received)

                throttle.finish(received)
                return destination
    except (httpx.HTTPError, httpx.StreamError) as e:
        _discard(destination)
        raise NetworkError(f"Network error while downloading {url}: {e}", url) from e
    except BaseException:
        # cancellation or a failing progress callback: leave nothing behind
        _discard(destination)
        raise
    finally:
        if owns_client:
            await client.aclose()
