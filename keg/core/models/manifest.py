"""
Manifest model — the parsed, immutable description of one package.

A manifest names the artifact to fetch, the digest it must match, and
the ordered install steps that place its files. It is loaded from a
YAML/JSON manifest or from a Homebrew-style formula (see
``keg.core.config``) and never changes after validation.
"""

from __future__ import annotations

import hashlib
import re
from enum import StrEnum
from pathlib import PurePosixPath
from typing import Any
from urllib.parse import urlparse

from pydantic import BaseModel, ConfigDict, Field, field_validator, model_validator

SUPPORTED_ALGORITHMS = ("sha256", "sha384", "sha512", "sha1")
SUPPORTED_SCHEMES = ("http", "https", "file")

_HEX_RE = re.compile(r"^[0-9a-f]+$")
_NAME_RE = re.compile(r"^[A-Za-z0-9][A-Za-z0-9._+@-]*$")

# Version inference, Homebrew style: "tool-1.2.3-x86_64.tar.gz" or ".../v1.2.3/..."
_VERSION_IN_BASENAME_RE = re.compile(r"[-_]v?(\d+(?:\.\d+)+)(?=[-_.]|$)")
_VERSION_SEGMENT_RE = re.compile(r"^v?(\d+(?:\.\d+)+)$")


class Shell(StrEnum):
    """Shells that keg installs completions for."""

    BASH = "bash"
    ZSH = "zsh"
    FISH = "fish"


class DestinationCategory(StrEnum):
    """Where an install step places its file (manifest literal names)."""

    BIN = "bin"
    MAN1 = "man1"
    BASH_COMPLETION = "bash_completion"
    ZSH_COMPLETION = "zsh_completion"
    FISH_COMPLETION = "fish_completion"

    @property
    def kind(self) -> str:
        """Coarse kind: ``binary``, ``man_page`` or ``shell_completion``."""
        if self is DestinationCategory.BIN:
            return "binary"
        if self is DestinationCategory.MAN1:
            return "man_page"
        return "shell_completion"

    @property
    def shell(self) -> Shell | None:
        """The shell a completion category targets, else None."""
        return {
            DestinationCategory.BASH_COMPLETION: Shell.BASH,
            DestinationCategory.ZSH_COMPLETION: Shell.ZSH,
            DestinationCategory.FISH_COMPLETION: Shell.FISH,
        }.get(self)

    @property
    def executable(self) -> bool:
        return self is DestinationCategory.BIN


class DependencyKind(StrEnum):
    BUILD = "build"
    RUN = "run"


class Digest(BaseModel):
    """A declared content digest: algorithm plus lower-case hex value."""

    model_config = ConfigDict(frozen=True)

    algorithm: str = "sha256"
    value: str

    @field_validator("algorithm", mode="before")
    @classmethod
    def _normalize_algorithm(cls, v: Any) -> Any:
        if isinstance(v, str):
            v = v.strip().lower()
            if v not in SUPPORTED_ALGORITHMS:
                raise ValueError(
                    f"unsupported digest algorithm '{v}' "
                    f"(expected one of: {', '.join(SUPPORTED_ALGORITHMS)})"
                )
        return v

    @field_validator("value", mode="before")
    @classmethod
    def _normalize_value(cls, v: Any) -> Any:
        if isinstance(v, str):
            v = v.strip().lower()
            if not _HEX_RE.match(v):
                raise ValueError("digest must be a hexadecimal string")
        return v

    @model_validator(mode="after")
    def _check_length(self) -> Digest:
        expected = hashlib.new(self.algorithm).digest_size * 2
        if len(self.value) != expected:
            raise ValueError(
                f"{self.algorithm} digest must be {expected} hex characters, "
                f"got {len(self.value)}"
            )
        return self

    @classmethod
    def parse(cls, text: str) -> Digest:
        """Parse ``algo:hex``. A bare hex string is taken as sha256."""
        if ":" in text:
            algorithm, value = text.split(":", 1)
            return cls(algorithm=algorithm, value=value)
        return cls(value=text)

    def __str__(self) -> str:
        return f"{self.algorithm}:{self.value}"


class InstallStep(BaseModel):
    """One instruction: copy a staged file into a destination category."""

    model_config = ConfigDict(frozen=True)

    source: str
    category: DestinationCategory
    name: str | None = None

    @field_validator("source")
    @classmethod
    def _relative_source(cls, v: str) -> str:
        v = v.strip()
        if not v:
            raise ValueError("install source must not be empty")
        path = PurePosixPath(v)
        if path.is_absolute():
            raise ValueError(f"install source must be relative: {v}")
        if ".." in path.parts:
            raise ValueError(f"install source must not contain '..': {v}")
        return v

    @field_validator("name")
    @classmethod
    def _plain_name(cls, v: str | None) -> str | None:
        if v is None:
            return v
        v = v.strip()
        if not v or v in (".", "..") or "/" in v:
            raise ValueError(f"invalid destination name: {v!r}")
        return v

    @property
    def destination_name(self) -> str:
        """Override name, or the source file's base name."""
        return self.name or PurePosixPath(self.source).name

    @property
    def shell(self) -> Shell | None:
        return self.category.shell

    def describe(self) -> str:
        target = f"{self.category.value}/{self.destination_name}"
        return f"{self.source} → {target}"


class Dependency(BaseModel):
    model_config = ConfigDict(frozen=True)

    name: str
    kind: DependencyKind = DependencyKind.RUN


class SmokeTestSpec(BaseModel):
    """Post-install check: run an installed binary with fixed arguments."""

    model_config = ConfigDict(frozen=True)

    binary: str | None = None
    args: tuple[str, ...] = ("--version",)


class Manifest(BaseModel):
    """Immutable package description.

    Required: ``name``, ``url`` and ``digest``. Everything else has a
    sensible default so a minimal manifest stays minimal.
    """

    model_config = ConfigDict(frozen=True)

    name: str
    version: str = ""
    desc: str = ""
    homepage: str = ""
    url: str
    digest: Digest
    license: frozenset[str] = frozenset()
    dependencies: tuple[Dependency, ...] = ()
    install: tuple[InstallStep, ...]
    test: SmokeTestSpec = Field(default_factory=SmokeTestSpec)

    @field_validator("name")
    @classmethod
    def _valid_name(cls, v: str) -> str:
        v = v.strip()
        if not _NAME_RE.match(v):
            raise ValueError(f"invalid package name: {v!r}")
        return v

    @field_validator("url")
    @classmethod
    def _valid_url(cls, v: str) -> str:
        v = v.strip()
        parsed = urlparse(v)
        if parsed.scheme not in SUPPORTED_SCHEMES:
            raise ValueError(
                f"unsupported URL scheme in {v!r} "
                f"(expected one of: {', '.join(SUPPORTED_SCHEMES)})"
            )
        if not parsed.path or parsed.path == "/":
            raise ValueError(f"URL has no path: {v!r}")
        if parsed.scheme != "file" and not parsed.netloc:
            raise ValueError(f"URL has no host: {v!r}")
        return v

    @field_validator("install")
    @classmethod
    def _non_empty_install(cls, v: tuple[InstallStep, ...]) -> tuple[InstallStep, ...]:
        if not v:
            raise ValueError("manifest declares no install steps")
        return v

    @property
    def source_url(self) -> str:
        return self.url

    @property
    def build_dependencies(self) -> list[str]:
        return [d.name for d in self.dependencies if d.kind == DependencyKind.BUILD]

    @property
    def run_dependencies(self) -> list[str]:
        return [d.name for d in self.dependencies if d.kind == DependencyKind.RUN]

    @property
    def artifact_name(self) -> str:
        """Base name of the artifact in the URL."""
        return PurePosixPath(urlparse(self.url).path).name

    def smoke_binary(self) -> str | None:
        """Binary the smoke test runs: explicit, else the first ``bin`` step."""
        if self.test.binary:
            return self.test.binary
        for step in self.install:
            if step.category is DestinationCategory.BIN:
                return step.destination_name
        return None

    def to_dict(self) -> dict[str, Any]:
        """JSON-serializable form with a stable license order."""
        data = self.model_dump(mode="json")
        data["license"] = sorted(self.license)
        return data


def infer_version(url: str) -> str:
    """Guess a version from a release URL, or return ``""``.

    Looks at the file name first (``tool-1.2.3-x86_64.tar.gz``), then
    at path segments (``/releases/download/v1.2.3/tool.tar.gz``).
    """
    path = PurePosixPath(urlparse(url).path)
    m = _VERSION_IN_BASENAME_RE.search(path.name)
    if m:
        return m.group(1)
    for segment in reversed(path.parent.parts):
        m = _VERSION_SEGMENT_RE.match(segment)
        if m:
            return m.group(1)
    return ""
