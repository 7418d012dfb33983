"""
L4 Execution — place staged files, all or nothing.

Steps are applied in declared order. Each write goes to a temp file in
the destination directory and is renamed into place; anything it
replaces is copied to a run-scoped backup directory first. If a step
fails, or the run is interrupted, every step applied so far is undone
in reverse order before the error propagates.
"""

from __future__ import annotations

import logging
import os
import shutil
import stat
import tempfile
from collections.abc import Callable, Sequence
from pathlib import Path

from keg.core.errors import InstallError, KegError
from keg.core.models.layout import InstallLayout
from keg.core.models.manifest import InstallStep
from keg.core.models.report import AppliedStep, InstallReport
from keg.core.services.install.domain.rollback import RollbackAction, plan_rollback
from keg.core.services.install.execution.extract import StagedArtifact
from keg.core.services.install.execution.verify import file_digest

logger = logging.getLogger(__name__)

EXECUTABLE_MODE = 0o755
DATA_MODE = 0o644


def apply(
    staged: StagedArtifact,
    steps: Sequence[InstallStep],
    layout: InstallLayout,
    *,
    report: InstallReport | None = None,
    backup_parent: Path | None = None,
    commit: Callable[[list[AppliedStep]], None] | None = None,
) -> InstallReport:
    """Apply ``steps`` from ``staged`` into ``layout`` as one unit.

    Args:
        staged: Verified, extracted artifact.
        steps: Install steps, applied in order.
        layout: Destination directories.
        report: Report to record applied steps on (created if None).
        backup_parent: Where to keep backups of replaced files
            (default: the system temp dir).
        commit: Called after the last step, before backups are
            dropped. If it raises, the whole run is rolled back.

    Returns:
        The report, with one ``AppliedStep`` per step.

    Raises:
        InstallError: A source is missing or a destination could not be
            written. All previously applied steps have been reverted.
    """
    if report is None:
        report = InstallReport(name="", prefix=layout.prefix)

    # Every source must exist before the first write.
    sources: list[Path] = []
    for index, step in enumerate(steps):
        try:
            sources.append(staged.resolve(step.source))
        except InstallError as e:
            raise e.with_context(step_index=index)

    if backup_parent is not None:
        backup_parent.mkdir(parents=True, exist_ok=True)
    backup_dir = Path(tempfile.mkdtemp(prefix="keg-backup-", dir=backup_parent))
    applied: list[AppliedStep] = []
    index = 0
    try:
        for index, (step, source) in enumerate(zip(steps, sources)):
            record = AppliedStep(index=index, step=step, destination=layout.destination_for(step))
            applied.append(record)
            _apply_step(record, source, backup_dir)
            logger.info(
                "%s %s",
                "Unchanged" if record.unchanged else "Installed",
                record.destination,
            )
        if commit is not None:
            index = len(steps)
            commit(applied)
    except BaseException as exc:
        errors = rollback(applied)
        if not isinstance(exc, Exception):
            raise
        if isinstance(exc, KegError):
            exc.with_context(step_index=index if index < len(steps) else None)
            if errors:
                exc.message += f" (rollback incomplete: {'; '.join(errors)})"
            raise
        message = f"{steps[index].describe()}: {exc}" if index < len(steps) else str(exc)
        if errors:
            message += f" (rollback incomplete: {'; '.join(errors)})"
        raise InstallError(
            message, step_index=index if index < len(steps) else None,
        ) from exc
    finally:
        shutil.rmtree(backup_dir, ignore_errors=True)

    report.steps.extend(applied)
    return report


def _apply_step(record: AppliedStep, source: Path, backup_dir: Path) -> None:
    dest = record.destination
    mode = EXECUTABLE_MODE if record.step.category.executable else DATA_MODE

    if dest.is_dir() and not dest.is_symlink():
        raise InstallError(f"Destination {dest} is a directory")

    if _already_installed(source, dest, mode):
        record.unchanged = True
        return

    _ensure_directory(dest.parent, record)

    if dest.exists() or dest.is_symlink():
        backup = backup_dir / f"{record.index}-{dest.name}"
        shutil.copy2(dest, backup, follow_symlinks=False)
        record.backup = backup

    _atomic_copy(source, dest, mode)
    record.written = True


def _already_installed(source: Path, dest: Path, mode: int) -> bool:
    if dest.is_symlink() or not dest.is_file():
        return False
    if stat.S_IMODE(dest.stat().st_mode) != mode:
        return False
    return file_digest(dest) == file_digest(source)


def _ensure_directory(directory: Path, record: AppliedStep) -> None:
    """Create ``directory`` and missing parents, recording each one created."""
    missing: list[Path] = []
    current = directory
    while not current.exists():
        missing.append(current)
        current = current.parent
    for d in reversed(missing):
        d.mkdir()
        record.created_dirs.append(d)


def _atomic_copy(source: Path, dest: Path, mode: int) -> None:
    fd, tmp_name = tempfile.mkstemp(dir=dest.parent, prefix=f".{dest.name}.", suffix=".keg-tmp")
    os.close(fd)
    tmp = Path(tmp_name)
    try:
        shutil.copyfile(source, tmp)
        os.chmod(tmp, mode)
        os.replace(tmp, dest)
    except BaseException:
        tmp.unlink(missing_ok=True)
        raise


def rollback(applied: list[AppliedStep]) -> list[str]:
    """Undo ``applied`` (best effort). Returns error messages, if any.

    A failing action does not stop the rest of the rollback.
    """
    errors: list[str] = []
    for action in plan_rollback(applied):
        logger.info("Rollback %s", action.describe())
        try:
            _execute_rollback_action(action)
        except OSError as e:
            errors.append(f"{action.describe()}: {e}")
            logger.warning("Rollback action failed: %s: %s", action.describe(), e)
    return errors


def _execute_rollback_action(action: RollbackAction) -> None:
    dest = action.destination
    if action.written:
        if action.backup is not None:
            tmp = dest.with_name(f".{dest.name}.keg-restore")
            if tmp.exists() or tmp.is_symlink():
                tmp.unlink()
            shutil.copy2(action.backup, tmp, follow_symlinks=False)
            os.replace(tmp, dest)
        else:
            dest.unlink(missing_ok=True)
    for directory in action.prune_dirs:
        try:
            directory.rmdir()
        except FileNotFoundError:
            pass
        except OSError:
            # not empty: something else lives there now
            logger.debug("Keeping non-empty directory %s", directory)
            break
