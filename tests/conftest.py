"""
Shared test fixtures: archive builders, manifests and isolated settings.
"""

import hashlib
import io
import logging
import tarfile
import zipfile
from pathlib import Path

import pytest

from keg.core.config.loader import parse_manifest
from keg.core.config.settings import Settings

HURL_SCRIPT = b'#!/bin/sh\necho "hurl 0.1.0"\n'
HURL_MAN = b'.TH HURL 1\n.SH NAME\nhurl \\- run HTTP requests\n'


@pytest.fixture(autouse=True)
def isolated_env(tmp_path: Path, monkeypatch):
    """Keep tests away from the real home directory and KEG_* variables."""
    for var in ("KEG_CONFIG", "KEG_PREFIX", "KEG_STATE_DIR", "KEG_LOG_LEVEL",
                "KEG_LOG_FILE", "KEG_LOG_FILE_LEVEL"):
        monkeypatch.delenv(var, raising=False)
    home = tmp_path / "home"
    home.mkdir()
    monkeypatch.setenv("HOME", str(home))


@pytest.fixture(autouse=True)
def restore_root_logger():
    """The CLI reconfigures the root logger; put it back after each test."""
    root = logging.getLogger()
    handlers, level = root.handlers[:], root.level
    yield
    root.handlers[:] = handlers
    root.setLevel(level)


def build_tar(files: dict[str, bytes], *, compression: str = "gz", modes: dict | None = None) -> bytes:
    """Tarball holding ``files`` (name → content)."""
    modes = modes or {}
    buf = io.BytesIO()
    mode = f"w:{compression}" if compression else "w"
    with tarfile.open(fileobj=buf, mode=mode) as tf:
        for name, content in files.items():
            info = tarfile.TarInfo(name)
            info.size = len(content)
            info.mode = modes.get(name, 0o644)
            tf.addfile(info, io.BytesIO(content))
    return buf.getvalue()


def build_zip(files: dict[str, bytes], *, modes: dict | None = None) -> bytes:
    modes = modes or {}
    buf = io.BytesIO()
    with zipfile.ZipFile(buf, "w") as zf:
        for name, content in files.items():
            info = zipfile.ZipInfo(name)
            info.external_attr = modes.get(name, 0o644) << 16
            zf.writestr(info, content)
    return buf.getvalue()


@pytest.fixture
def hurl_tarball() -> bytes:
    """The hurl release layout: binary, man page and completions in one top dir."""
    return build_tar(
        {
            "hurl-0.1.0/hurl": HURL_SCRIPT,
            "hurl-0.1.0/man/hurl.1": HURL_MAN,
            "hurl-0.1.0/completions/hurl.bash": b"complete -F _hurl hurl\n",
            "hurl-0.1.0/completions/_hurl": b"#compdef hurl\n",
            "hurl-0.1.0/completions/hurl.fish": b"complete -c hurl\n",
        },
        modes={"hurl-0.1.0/hurl": 0o755},
    )


@pytest.fixture
def artifact(tmp_path: Path):
    """Write artifact bytes under tmp_path/artifacts; returns the file path."""

    def _write(data: bytes, name: str = "hurl-0.1.0.tar.gz") -> Path:
        directory = tmp_path / "artifacts"
        directory.mkdir(exist_ok=True)
        path = directory / name
        path.write_bytes(data)
        return path

    return _write


@pytest.fixture
def make_manifest(artifact):
    """Manifest for ``data`` served from a file:// URL, digest computed."""

    def _make(data: bytes, install: list | None = None, *, name: str = "hurl",
              artifact_name: str = "hurl-0.1.0.tar.gz", **extra):
        path = artifact(data, artifact_name)
        raw = {
            "name": name,
            "url": path.as_uri(),
            "sha256": hashlib.sha256(data).hexdigest(),
            "install": install or [{"bin": "hurl"}, {"man1": "man/hurl.1"}],
        }
        raw.update(extra)
        return parse_manifest(raw)

    return _make


@pytest.fixture
def settings(tmp_path: Path) -> Settings:
    """Settings with prefix and state dir under tmp_path, no waiting."""
    return Settings(
        prefix=tmp_path / "prefix",
        state_dir=tmp_path / "state",
        lock_timeout=0.2,
        smoke_timeout=10.0,
        fetch={"max_attempts": 1, "base_delay": 0.0, "deadline": 30.0},
    )


def files_under(root: Path) -> list[str]:
    """Sorted relative paths of the regular files under ``root``."""
    if not root.exists():
        return []
    return sorted(p.relative_to(root).as_posix() for p in root.rglob("*") if p.is_file())


@pytest.fixture
def tar_builder():
    return build_tar


@pytest.fixture
def zip_builder():
    return build_zip


@pytest.fixture
def list_files():
    return files_under
