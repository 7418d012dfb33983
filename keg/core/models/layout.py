"""
Install layout — where each destination category lives under a prefix.

Passed explicitly to the installer instead of being read from global
state, so an install into a temporary directory behaves exactly like
one into ``/usr/local``.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from pathlib import Path

from pydantic import BaseModel

from keg.core.models.manifest import DestinationCategory, InstallStep


class LayoutConfig(BaseModel):
    """Per-category subdirectories, relative to the prefix."""

    bin: str = "bin"
    man1: str = "share/man/man1"
    bash_completion: str = "etc/bash_completion.d"
    zsh_completion: str = "share/zsh/site-functions"
    fish_completion: str = "share/fish/vendor_completions.d"


@dataclass(frozen=True)
class InstallLayout:
    """Concrete destination directories for one prefix."""

    prefix: Path
    subdirs: LayoutConfig = field(default_factory=LayoutConfig)

    @classmethod
    def for_prefix(cls, prefix: Path | str, subdirs: LayoutConfig | None = None) -> InstallLayout:
        return cls(prefix=Path(prefix).expanduser().resolve(), subdirs=subdirs or LayoutConfig())

    def directory_for(self, category: DestinationCategory) -> Path:
        return self.prefix / getattr(self.subdirs, category.value)

    def destination_for(self, step: InstallStep) -> Path:
        return self.directory_for(step.category) / step.destination_name

    def relative(self, path: Path) -> str:
        """Path relative to the prefix, as stored in receipts."""
        return path.relative_to(self.prefix).as_posix()
