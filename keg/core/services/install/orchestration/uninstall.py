"""
L5 Orchestration — remove an installed package using its receipt.

Only files whose content still matches the receipt are removed; a
file changed since install is left in place and reported.
"""

from __future__ import annotations

import logging
import time
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any

from keg.core.config.settings import Settings
from keg.core.errors import NotInstalledError
from keg.core.persistence.install_log import InstallLog, InstallLogEntry, ReceiptStore
from keg.core.persistence.lock import destination_lock
from keg.core.services.install.execution.verify import file_digest

logger = logging.getLogger(__name__)


@dataclass
class UninstallReport:
    name: str
    version: str = ""
    prefix: Path | None = None
    removed: list[Path] = field(default_factory=list)
    kept: list[Path] = field(default_factory=list)
    missing: list[Path] = field(default_factory=list)
    pruned_dirs: list[Path] = field(default_factory=list)
    duration_ms: int = 0

    def to_dict(self) -> dict[str, Any]:
        return {
            "name": self.name,
            "version": self.version,
            "prefix": str(self.prefix) if self.prefix else None,
            "removed": [str(p) for p in self.removed],
            "kept": [str(p) for p in self.kept],
            "missing": [str(p) for p in self.missing],
            "pruned_dirs": [str(p) for p in self.pruned_dirs],
            "duration_ms": self.duration_ms,
        }


def uninstall_package(name: str, settings: Settings) -> UninstallReport:
    """Remove the files ``name`` installed and forget its receipt.

    Raises:
        NotInstalledError: No receipt for ``name``.
        LockError: Another run holds the package's prefix.
    """
    receipts = ReceiptStore(settings.receipts_dir)
    receipt = receipts.load(name)
    if receipt is None:
        raise NotInstalledError(f"Package '{name}' is not installed", manifest_name=name)

    start = time.monotonic()
    prefix = Path(receipt.prefix)
    report = UninstallReport(name=name, version=receipt.version, prefix=prefix)

    with destination_lock(prefix, settings.locks_dir, timeout=settings.lock_timeout):
        parents: set[Path] = set()
        for entry in receipt.files:
            path = prefix / entry.path
            parents.add(path.parent)
            if not path.is_file() or path.is_symlink():
                report.missing.append(path)
                continue
            if file_digest(path) != entry.sha256:
                logger.warning("Keeping %s: modified since install", path)
                report.kept.append(path)
                continue
            path.unlink()
            report.removed.append(path)
            logger.info("Removed %s", path)

        for directory in sorted(parents, key=lambda p: len(p.parts), reverse=True):
            report.pruned_dirs.extend(_prune_empty(directory, prefix))

        receipts.delete(name)

    report.duration_ms = int((time.monotonic() - start) * 1000)
    InstallLog(settings.install_log_path).write(
        InstallLogEntry(
            operation="uninstall",
            package=name,
            version=receipt.version,
            prefix=receipt.prefix,
            status="removed",
            steps_total=len(receipt.files),
            steps_applied=len(report.removed),
            duration_ms=report.duration_ms,
            files=[str(p) for p in report.removed],
            context={"kept": [str(p) for p in report.kept]},
        )
    )
    return report


def _prune_empty(directory: Path, stop: Path) -> list[Path]:
    """Remove ``directory`` and its parents while empty, never ``stop`` itself."""
    pruned = []
    current = directory
    while current != stop and current.is_relative_to(stop):
        try:
            current.rmdir()
        except OSError:
            break
        pruned.append(current)
        current = current.parent
    return pruned
