"""
Install run results — state machine, applied steps, smoke test outcome.

States:
    PENDING     → Nothing done yet.
    VERIFYING   → Fetching the artifact and checking its digest.
    EXTRACTING  → Unpacking into the staging area.
    INSTALLING  → Placing staged files at their destinations.
    INSTALLED   → Terminal. Every step applied.
    ROLLED_BACK → Terminal. The run failed or was cancelled and all of
                  its filesystem effects were reverted.

No transition skips VERIFYING: the only way into EXTRACTING is from it.
"""

from __future__ import annotations

import logging
import time
import uuid
from dataclasses import dataclass, field
from enum import StrEnum
from pathlib import Path
from typing import Any

from keg.core.errors import SmokeTestFailure
from keg.core.models.manifest import InstallStep

logger = logging.getLogger(__name__)


class InstallState(StrEnum):
    """Install run states."""

    PENDING = "pending"
    VERIFYING = "verifying"
    EXTRACTING = "extracting"
    INSTALLING = "installing"
    INSTALLED = "installed"
    ROLLED_BACK = "rolled_back"

    @property
    def terminal(self) -> bool:
        return self in (InstallState.INSTALLED, InstallState.ROLLED_BACK)


_TRANSITIONS: dict[InstallState, frozenset[InstallState]] = {
    InstallState.PENDING: frozenset({InstallState.VERIFYING, InstallState.ROLLED_BACK}),
    InstallState.VERIFYING: frozenset({InstallState.EXTRACTING, InstallState.ROLLED_BACK}),
    InstallState.EXTRACTING: frozenset({InstallState.INSTALLING, InstallState.ROLLED_BACK}),
    InstallState.INSTALLING: frozenset({InstallState.INSTALLED, InstallState.ROLLED_BACK}),
    InstallState.INSTALLED: frozenset(),
    InstallState.ROLLED_BACK: frozenset(),
}


@dataclass
class AppliedStep:
    """A step that was applied during this run (and may need reverting)."""

    index: int
    step: InstallStep
    destination: Path
    unchanged: bool = False
    written: bool = False
    backup: Path | None = None
    created_dirs: list[Path] = field(default_factory=list)

    def to_dict(self) -> dict[str, Any]:
        return {
            "index": self.index,
            "category": self.step.category.value,
            "source": self.step.source,
            "destination": str(self.destination),
            "unchanged": self.unchanged,
        }


@dataclass
class SmokeTestResult:
    """Outcome of running the installed binary once."""

    command: list[str]
    returncode: int
    stdout: str = ""
    stderr: str = ""
    elapsed_ms: int = 0
    error: str = ""

    @property
    def ok(self) -> bool:
        return self.returncode == 0

    @property
    def failure(self) -> SmokeTestFailure | None:
        """The failure to report, or None when the command exited 0."""
        if self.ok:
            return None
        detail = self.error or (self.stderr.strip().splitlines() or [""])[-1]
        message = f"smoke test '{' '.join(self.command)}' exited {self.returncode}"
        if detail:
            message += f": {detail}"
        return SmokeTestFailure(message, returncode=self.returncode)

    def to_dict(self) -> dict[str, Any]:
        return {
            "command": self.command,
            "returncode": self.returncode,
            "ok": self.ok,
            "stdout": self.stdout,
            "stderr": self.stderr,
            "elapsed_ms": self.elapsed_ms,
            "error": self.error,
        }


@dataclass
class InstallReport:
    """Everything one install run did, in order."""

    name: str
    version: str = ""
    prefix: Path | None = None
    operation_id: str = field(default_factory=lambda: uuid.uuid4().hex[:12])
    state: InstallState = InstallState.PENDING
    history: list[InstallState] = field(default_factory=lambda: [InstallState.PENDING])
    steps: list[AppliedStep] = field(default_factory=list)
    smoke_test: SmokeTestResult | None = None
    missing_dependencies: list[str] = field(default_factory=list)
    error: str = ""
    started_at: float = field(default_factory=time.monotonic)
    duration_ms: int = 0

    def transition(self, new_state: InstallState) -> None:
        """Move to ``new_state``; illegal moves raise ``RuntimeError``."""
        if new_state not in _TRANSITIONS[self.state]:
            raise RuntimeError(
                f"Illegal install transition for '{self.name}': "
                f"{self.state.value} → {new_state.value}"
            )
        logger.debug("Install '%s': %s → %s", self.name, self.state.value, new_state.value)
        self.state = new_state
        self.history.append(new_state)
        if new_state.terminal:
            self.duration_ms = int((time.monotonic() - self.started_at) * 1000)

    @property
    def ok(self) -> bool:
        return self.state == InstallState.INSTALLED

    @property
    def installed_files(self) -> list[Path]:
        return [s.destination for s in self.steps]

    @property
    def smoke_test_failure(self) -> SmokeTestFailure | None:
        if self.smoke_test is None:
            return None
        failure = self.smoke_test.failure
        if failure is not None:
            failure.with_context(manifest_name=self.name)
        return failure

    def to_dict(self) -> dict[str, Any]:
        return {
            "name": self.name,
            "version": self.version,
            "prefix": str(self.prefix) if self.prefix else None,
            "operation_id": self.operation_id,
            "state": self.state.value,
            "history": [s.value for s in self.history],
            "steps": [s.to_dict() for s in self.steps],
            "smoke_test": self.smoke_test.to_dict() if self.smoke_test else None,
            "missing_dependencies": self.missing_dependencies,
            "error": self.error,
            "duration_ms": self.duration_ms,
        }
