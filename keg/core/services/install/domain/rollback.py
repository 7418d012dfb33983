"""
L1 Domain — rollback plan generation (pure).

Derives the undo actions for the steps a run applied, in reverse
order. Steps that found their destination already correct wrote
nothing and need no undo.
"""

from __future__ import annotations

from dataclasses import dataclass
from pathlib import Path

from keg.core.models.report import AppliedStep


@dataclass(frozen=True)
class RollbackAction:
    """Undo one applied step.

    ``destination`` is restored from ``backup`` when there is one, or
    removed when the step created it. ``prune_dirs`` are directories the
    step created; each is removed if empty, deepest first.
    """

    index: int
    destination: Path
    written: bool
    backup: Path | None
    prune_dirs: tuple[Path, ...]

    def describe(self) -> str:
        if not self.written:
            return f"step {self.index}: nothing written"
        if self.backup is not None:
            return f"step {self.index}: restore {self.destination}"
        return f"step {self.index}: remove {self.destination}"


def plan_rollback(applied: list[AppliedStep]) -> list[RollbackAction]:
    """Rollback actions for ``applied``, last applied first."""
    actions: list[RollbackAction] = []
    for step in reversed(applied):
        if step.unchanged:
            continue
        actions.append(
            RollbackAction(
                index=step.index,
                destination=step.destination,
                written=step.written,
                backup=step.backup,
                prune_dirs=tuple(reversed(step.created_dirs)),
            )
        )
    return actions
