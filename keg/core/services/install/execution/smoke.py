"""
L4 Execution — post-install smoke test.

Runs the installed binary once with the manifest's test arguments.
The outcome is reported, never raised: a failing smoke test does not
undo an install.
"""

from __future__ import annotations

import logging
from pathlib import Path

from keg.core.models.report import SmokeTestResult
from keg.core.services.install.execution.subprocess_runner import run_command

logger = logging.getLogger(__name__)


def run_smoke_test(
    binary_path: Path,
    args: tuple[str, ...] | list[str] = ("--version",),
    *,
    timeout: float = 30.0,
) -> SmokeTestResult:
    cmd = [str(binary_path), *args]
    result = run_command(cmd, timeout=timeout, cwd=str(binary_path.parent))

    smoke = SmokeTestResult(
        command=cmd,
        returncode=result["returncode"],
        stdout=result["stdout"],
        stderr=result["stderr"],
        elapsed_ms=result["elapsed_ms"],
        # A clean non-zero exit is described by its stderr instead
        error=result["error"] if result["returncode"] in (124, 126, 127) and not result["stderr"] else "",
    )
    if smoke.ok:
        logger.info("Smoke test passed: %s (%d ms)", " ".join(cmd), smoke.elapsed_ms)
    else:
        logger.warning("Smoke test failed: %s exited %d", " ".join(cmd), smoke.returncode)
    return smoke
