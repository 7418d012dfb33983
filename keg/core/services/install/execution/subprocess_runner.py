"""
L4 Execution — Core subprocess runner.

The single place where ``subprocess.run`` is called. Never raises:
every outcome, including a missing binary or a timeout, comes back
as a result dict.
"""

from __future__ import annotations

import logging
import subprocess
import time
from typing import Any

logger = logging.getLogger(__name__)

_OUTPUT_TAIL = 2000


def run_command(
    cmd: list[str],
    *,
    timeout: float = 30.0,
    cwd: str | None = None,
) -> dict[str, Any]:
    """Run ``cmd`` and capture its output.

    Returns:
        ``{"ok", "returncode", "stdout", "stderr", "elapsed_ms", "error"}``.
        Shell conventions are used when the command never ran:
        127 not found, 126 not executable, 124 timed out.
    """
    logger.debug("Running %s", cmd)
    start = time.monotonic()
    try:
        result = subprocess.run(
            cmd,
            capture_output=True,
            text=True,
            errors="replace",
            timeout=timeout,
            stdin=subprocess.DEVNULL,
            cwd=cwd,
        )
    except FileNotFoundError:
        return _failed(127, f"Command not found: {cmd[0]}", start)
    except PermissionError:
        return _failed(126, f"Permission denied: {cmd[0]}", start)
    except subprocess.TimeoutExpired:
        return _failed(124, f"Command timed out ({timeout:.0f}s)", start)
    except OSError as e:
        logger.warning("Subprocess error: %s: %s", cmd, e)
        return _failed(126, str(e), start)

    elapsed_ms = int((time.monotonic() - start) * 1000)
    ok = result.returncode == 0
    return {
        "ok": ok,
        "returncode": result.returncode,
        "stdout": result.stdout[-_OUTPUT_TAIL:] if result.stdout else "",
        "stderr": result.stderr[-_OUTPUT_TAIL:] if result.stderr else "",
        "elapsed_ms": elapsed_ms,
        "error": "" if ok else f"Command failed (exit {result.returncode})",
    }


def _failed(returncode: int, error: str, start: float) -> dict[str, Any]:
    return {
        "ok": False,
        "returncode": returncode,
        "stdout": "",
        "stderr": "",
        "elapsed_ms": int((time.monotonic() - start) * 1000),
        "error": error,
    }
