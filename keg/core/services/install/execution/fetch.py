"""
L4 Execution — artifact download with retry and digest verification.

``fetch_and_verify`` is the only way artifact bytes enter an install
run: bytes that fail verification are dropped here and never reach
the extractor.
"""

from __future__ import annotations

import http.client
import logging
import threading
import time
import urllib.error
import urllib.request
from collections.abc import Callable
from pathlib import Path
from urllib.parse import urlparse
from urllib.request import url2pathname

from keg import __version__
from keg.core.errors import NetworkError
from keg.core.models.manifest import Digest
from keg.core.reliability.backoff import RetryPolicy, call_with_retry
from keg.core.services.install.execution.verify import verify_bytes

logger = logging.getLogger(__name__)

USER_AGENT = f"keg/{__version__}"

# Server-side conditions worth another try; every other 4xx is permanent.
_TRANSIENT_STATUS = frozenset({408, 425, 429})

_CHUNK = 64 * 1024


def _fmt_size(n: float) -> str:
    for unit in ("B", "KB", "MB", "GB"):
        if n < 1024:
            return f"{n:.1f} {unit}"
        n /= 1024
    return f"{n:.1f} TB"


def _is_transient(exc: Exception) -> bool:
    return isinstance(exc, NetworkError) and exc.transient


def _check_cancelled(url: str, cancel: threading.Event | None) -> None:
    if cancel is not None and cancel.is_set():
        raise NetworkError(f"Download of {url} cancelled")


def download(
    url: str,
    *,
    timeout: float = 60.0,
    cancel: threading.Event | None = None,
) -> bytes:
    """Retrieve ``url`` once, giving up early once ``cancel`` is set.

    Raises:
        NetworkError: ``transient=True`` for timeouts, connection
            failures and 408/425/429/5xx responses; ``transient=False``
            for everything else (404, malformed URL, missing file).
    """
    _check_cancelled(url, cancel)
    parsed = urlparse(url)
    if parsed.scheme == "file":
        path = Path(url2pathname(parsed.path))
        try:
            return path.read_bytes()
        except OSError as e:
            raise NetworkError(f"Cannot read {path}: {e.strerror or e}") from e

    if parsed.scheme not in ("http", "https") or not parsed.netloc:
        raise NetworkError(f"Malformed URL: {url}")

    req = urllib.request.Request(url, headers={"User-Agent": USER_AGENT})
    try:
        with urllib.request.urlopen(req, timeout=timeout) as resp:
            total = int(resp.headers.get("Content-Length") or 0)
            chunks = []
            received = 0
            while True:
                chunk = resp.read(_CHUNK)
                if not chunk:
                    break
                chunks.append(chunk)
                received += len(chunk)
                _check_cancelled(url, cancel)
            if total and received < total:
                raise NetworkError(
                    f"Truncated download from {url}: {received} of {total} bytes",
                    transient=True,
                )
    except urllib.error.HTTPError as e:
        transient = e.code in _TRANSIENT_STATUS or e.code >= 500
        raise NetworkError(
            f"HTTP {e.code} fetching {url}", transient=transient, status=e.code,
        ) from e
    except urllib.error.URLError as e:
        raise NetworkError(f"Cannot reach {url}: {e.reason}", transient=True) from e
    except (TimeoutError, ConnectionError, http.client.HTTPException) as e:
        raise NetworkError(f"Download of {url} failed: {e}", transient=True) from e
    except ValueError as e:
        raise NetworkError(f"Malformed URL {url}: {e}") from e

    logger.info("Downloaded %s (%s)", url, _fmt_size(received))
    return b"".join(chunks)


def fetch_and_verify(
    url: str,
    digest: Digest,
    *,
    policy: RetryPolicy | None = None,
    timeout: float = 60.0,
    sleep: Callable[[float], None] = time.sleep,
    cancel: threading.Event | None = None,
) -> bytes:
    """Download ``url`` (retrying transient failures) and verify it.

    Raises:
        NetworkError: Permanent failure, or transient failures that
            outlasted the retry policy.
        DigestMismatchError: The bytes do not match ``digest``. Never
            retried.
    """
    data = call_with_retry(
        lambda: download(url, timeout=timeout, cancel=cancel),
        policy=policy or RetryPolicy(),
        is_transient=_is_transient,
        sleep=sleep,
        label=f"Download of {url}",
    )
    verify_bytes(data, digest, url=url)
    logger.debug("Verified %s %s", digest.algorithm, digest.value)
    return data


def fetch_in_background(
    url: str,
    digest: Digest,
    *,
    deadline: float,
    **kwargs,
) -> bytes:
    """Run :func:`fetch_and_verify` on a worker thread, bounded by ``deadline`` seconds.

    The worker is a daemon thread: once the deadline passes it is told
    to stop, and a download still in flight cannot keep the process alive.
    """
    cancel = threading.Event()
    outcome: dict = {}

    def _worker() -> None:
        try:
            outcome["data"] = fetch_and_verify(url, digest, cancel=cancel, **kwargs)
        except Exception as e:
            outcome["error"] = e

    thread = threading.Thread(target=_worker, name="keg-fetch", daemon=True)
    thread.start()
    try:
        thread.join(deadline)
    finally:
        cancel.set()

    if thread.is_alive():
        raise NetworkError(f"Download of {url} exceeded {deadline:g}s")
    if "error" in outcome:
        raise outcome["error"]
    return outcome["data"]
