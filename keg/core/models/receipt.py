"""
Receipt — the persisted record of one installed package.

Written after a successful install, read back by ``uninstall``,
``list`` and ``test``. File paths are stored relative to the prefix
so a receipt stays meaningful if the prefix is referenced through a
different path later.
"""

from __future__ import annotations

from datetime import UTC, datetime

from pydantic import BaseModel, Field


def _now_iso() -> str:
    return datetime.now(UTC).isoformat()


class InstalledFile(BaseModel):
    """One file keg placed under the prefix."""

    path: str
    category: str
    sha256: str


class Receipt(BaseModel):
    """Install record for a single package."""

    schema_version: int = 1

    name: str
    version: str = ""
    url: str = ""
    digest: str = ""
    prefix: str
    installed_at: str = Field(default_factory=_now_iso)
    operation_id: str = ""

    files: list[InstalledFile] = Field(default_factory=list)

    # Smoke test, relative to the prefix
    test_binary: str | None = None
    test_args: list[str] = Field(default_factory=list)
