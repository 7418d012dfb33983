"""
Install log — receipts plus an append-only history of runs.

Receipts (``<state>/receipts/<name>.json``) describe what is currently
installed and are what ``uninstall`` works from. They are written
atomically (temp file, then rename) so a crash never leaves a
half-written receipt.

The history (``<state>/install.ndjson``) gets one JSON line per
install or uninstall run, successful or not. It is never rewritten.
"""

from __future__ import annotations

import json
import logging
import tempfile
from datetime import UTC, datetime
from pathlib import Path
from typing import Any

from pydantic import BaseModel, Field, ValidationError

from keg.core.models.receipt import Receipt

logger = logging.getLogger(__name__)


class InstallLogEntry(BaseModel):
    """One line of install history."""

    timestamp: str = Field(default_factory=lambda: datetime.now(UTC).isoformat())
    operation_id: str = ""
    operation: str = ""            # install, uninstall
    package: str = ""
    version: str = ""
    prefix: str = ""

    status: str = ""               # installed, rolled_back, removed
    steps_total: int = 0
    steps_applied: int = 0
    duration_ms: int = 0

    files: list[str] = Field(default_factory=list)
    errors: list[str] = Field(default_factory=list)
    context: dict[str, Any] = Field(default_factory=dict)


class InstallLog:
    """Append-only NDJSON history writer/reader."""

    def __init__(self, path: Path):
        self._path = path

    @property
    def path(self) -> Path:
        return self._path

    def write(self, entry: InstallLogEntry) -> None:
        self._path.parent.mkdir(parents=True, exist_ok=True)
        line = json.dumps(entry.model_dump(mode="json"), ensure_ascii=False) + "\n"
        try:
            with self._path.open("a", encoding="utf-8") as f:
                f.write(line)
            logger.debug("Install log entry written: %s/%s", entry.operation, entry.package)
        except OSError as e:
            logger.error("Failed to write install log entry: %s", e)

    def read_all(self) -> list[InstallLogEntry]:
        """All entries, oldest first. Corrupt lines are skipped."""
        if not self._path.is_file():
            return []
        entries = []
        with self._path.open("r", encoding="utf-8") as f:
            for line_num, line in enumerate(f, start=1):
                line = line.strip()
                if not line:
                    continue
                try:
                    entries.append(InstallLogEntry.model_validate(json.loads(line)))
                except (json.JSONDecodeError, ValidationError) as e:
                    logger.warning("Skipping corrupt install log line %d: %s", line_num, e)
        return entries

    def read_recent(self, n: int = 20) -> list[InstallLogEntry]:
        return self.read_all()[-n:]


class ReceiptStore:
    """Directory of per-package receipts."""

    def __init__(self, directory: Path):
        self._dir = directory

    @property
    def directory(self) -> Path:
        return self._dir

    def path_for(self, name: str) -> Path:
        return self._dir / f"{name}.json"

    def save(self, receipt: Receipt) -> Path:
        """Write a receipt atomically, replacing any previous one."""
        path = self.path_for(receipt.name)
        path.parent.mkdir(parents=True, exist_ok=True)
        content = json.dumps(receipt.model_dump(mode="json"), indent=2, ensure_ascii=False) + "\n"

        fd, tmp_name = tempfile.mkstemp(dir=path.parent, prefix=".receipt_", suffix=".tmp")
        tmp = Path(tmp_name)
        try:
            with open(fd, "w", encoding="utf-8") as f:
                f.write(content)
            tmp.replace(path)
        except BaseException:
            tmp.unlink(missing_ok=True)
            raise
        logger.debug("Receipt saved: %s", path)
        return path

    def load(self, name: str) -> Receipt | None:
        """Receipt for ``name``, or None if absent or unreadable."""
        path = self.path_for(name)
        if not path.is_file():
            return None
        try:
            return Receipt.model_validate(json.loads(path.read_text(encoding="utf-8")))
        except (OSError, json.JSONDecodeError, ValidationError) as e:
            logger.warning("Cannot read receipt %s: %s", path, e)
            return None

    def list_receipts(self) -> list[Receipt]:
        if not self._dir.is_dir():
            return []
        receipts = []
        for path in sorted(self._dir.glob("*.json")):
            receipt = self.load(path.stem)
            if receipt is not None:
                receipts.append(receipt)
        return receipts

    def delete(self, name: str) -> bool:
        path = self.path_for(name)
        if not path.is_file():
            return False
        path.unlink()
        logger.debug("Receipt removed: %s", path)
        return True
