"""
L4 Execution — unpack a verified artifact into a private staging area.

Supports tar (plain, gzip, bzip2, xz), zip, single compressed files
and raw files. Every member is checked before anything is written; one
unsafe entry rejects the whole archive.

The staging area is a ``StagedArtifact`` context manager: leaving the
``with`` block removes it, whatever happened inside.
"""

from __future__ import annotations

import bz2
import gzip
import io
import logging
import lzma
import os
import shutil
import tarfile
import tempfile
import zipfile
import zlib
from dataclasses import dataclass, field
from pathlib import Path, PurePosixPath

from keg.core.errors import ExtractionError, InstallError
from keg.core.services.install.domain.paths import link_escape_reason, member_escape_reason

logger = logging.getLogger(__name__)

_GZIP_MAGIC = b"\x1f\x8b"
_BZIP2_MAGIC = b"BZh"
_XZ_MAGIC = b"\xfd7zXZ\x00"
_ZIP_MAGICS = (b"PK\x03\x04", b"PK\x05\x06")

_COMPRESSED_SUFFIXES = (".gz", ".tgz", ".bz2", ".xz")


@dataclass
class StagedArtifact:
    """Extracted artifact, exclusively owned by one install run.

    ``root`` is where install sources are resolved. When the archive
    holds a single top-level directory, ``root`` is that directory;
    ``workdir`` is always the directory that gets deleted.
    """

    workdir: Path
    root: Path
    format: str
    files: list[str] = field(default_factory=list)

    def __enter__(self) -> StagedArtifact:
        return self

    def __exit__(self, *exc_info) -> None:
        self.cleanup()

    def cleanup(self) -> None:
        shutil.rmtree(self.workdir, ignore_errors=True)
        logger.debug("Removed staging area %s", self.workdir)

    def resolve(self, relative: str) -> Path:
        """Staged file for an install source path.

        Looks under ``root`` first, then under ``workdir`` so sources
        written with the archive's top-level directory still resolve.

        Raises:
            InstallError: If no regular file exists at ``relative``.
        """
        workdir = self.workdir.resolve()
        for base in dict.fromkeys((self.root, self.workdir)):
            candidate = base / relative
            resolved = candidate.resolve()
            if not resolved.is_relative_to(workdir):
                raise InstallError(f"Install source '{relative}' resolves outside the artifact")
            if resolved.is_file():
                return resolved
        raise InstallError(f"Install source '{relative}' not found in artifact")


def detect_format(data: bytes) -> str:
    """``tar``, ``zip``, ``gzip``, ``bzip2``, ``xz`` or ``raw``."""
    if data.startswith(_ZIP_MAGICS):
        return "zip"
    if data.startswith(_GZIP_MAGIC):
        return "gzip"
    if data.startswith(_BZIP2_MAGIC):
        return "bzip2"
    if data.startswith(_XZ_MAGIC):
        return "xz"
    if _is_tar(data):
        return "tar"
    return "raw"


def _is_tar(data: bytes) -> bool:
    return len(data) >= 262 and data[257:262] == b"ustar"


def extract(
    data: bytes,
    *,
    artifact_name: str = "artifact",
    staging_parent: Path | None = None,
) -> StagedArtifact:
    """Unpack ``data`` into a fresh staging directory.

    Args:
        data: Verified artifact bytes.
        artifact_name: File name from the URL; names raw artifacts.
        staging_parent: Where to create the staging directory
            (default: the system temp dir).

    Raises:
        ExtractionError: Corrupt archive, or any entry that would land
            outside the staging root.
    """
    if staging_parent is not None:
        staging_parent.mkdir(parents=True, exist_ok=True)
    workdir = Path(tempfile.mkdtemp(prefix="keg-stage-", dir=staging_parent))
    try:
        fmt = detect_format(data)
        payload = data
        name = artifact_name
        if fmt in ("gzip", "bzip2", "xz"):
            payload = _decompress(data, fmt)
            name = _strip_compression_suffix(artifact_name)
            if _is_tar(payload):
                fmt = f"tar.{fmt}"

        if fmt.startswith("tar"):
            _extract_tar(payload, workdir)
        elif fmt == "zip":
            _extract_zip(payload, workdir)
        else:
            _write_single(payload, workdir, name)

        root = _staging_root(workdir)
        files = sorted(
            p.relative_to(root).as_posix() for p in root.rglob("*") if p.is_file()
        )
    except BaseException:
        shutil.rmtree(workdir, ignore_errors=True)
        raise

    logger.info("Staged %s artifact (%d files) in %s", fmt, len(files), workdir)
    return StagedArtifact(workdir=workdir, root=root, format=fmt, files=files)


def _decompress(data: bytes, fmt: str) -> bytes:
    try:
        if fmt == "gzip":
            return gzip.decompress(data)
        if fmt == "bzip2":
            return bz2.decompress(data)
        return lzma.decompress(data)
    except (OSError, EOFError, ValueError, lzma.LZMAError, zlib.error) as e:
        raise ExtractionError(f"Corrupt {fmt} data: {e}") from e


def _strip_compression_suffix(name: str) -> str:
    lower = name.lower()
    if lower.endswith(".tgz"):
        return name[:-4] + ".tar"
    for suffix in _COMPRESSED_SUFFIXES:
        if lower.endswith(suffix):
            return name[: -len(suffix)]
    return name


def _check_tar_member(member: tarfile.TarInfo) -> None:
    reason = member_escape_reason(member.name)
    if reason is None and member.issym():
        reason = link_escape_reason(member.name, member.linkname)
    if reason is None and member.islnk():
        reason = member_escape_reason(member.linkname)
        if reason:
            reason = f"hard link target: {reason}"
    if reason is None and (member.isdev() or member.isfifo()):
        reason = "special file"
    if reason:
        raise ExtractionError(f"Unsafe archive entry '{member.name}': {reason}")


def _extract_tar(payload: bytes, workdir: Path) -> None:
    try:
        with tarfile.open(fileobj=io.BytesIO(payload), mode="r:") as tf:
            members = tf.getmembers()
            for member in members:
                _check_tar_member(member)
            tf.extractall(workdir, members=members, filter="data")
    except tarfile.TarError as e:
        raise ExtractionError(f"Cannot extract tar archive: {e}") from e
    except (EOFError, OSError) as e:
        raise ExtractionError(f"Corrupt tar archive: {e}") from e


def _extract_zip(payload: bytes, workdir: Path) -> None:
    try:
        with zipfile.ZipFile(io.BytesIO(payload)) as zf:
            infos = zf.infolist()
            for info in infos:
                reason = member_escape_reason(info.filename)
                if reason:
                    raise ExtractionError(f"Unsafe archive entry '{info.filename}': {reason}")
            for info in infos:
                target = Path(zf.extract(info, workdir))
                mode = (info.external_attr >> 16) & 0o777
                if mode and not info.is_dir():
                    os.chmod(target, mode)
    except (zipfile.BadZipFile, zlib.error, EOFError) as e:
        raise ExtractionError(f"Corrupt zip archive: {e}") from e
    except OSError as e:
        raise ExtractionError(f"Cannot extract zip archive: {e}") from e


def _write_single(payload: bytes, workdir: Path, name: str) -> None:
    name = PurePosixPath(name).name or "artifact"
    (workdir / name).write_bytes(payload)


def _staging_root(workdir: Path) -> Path:
    entries = list(workdir.iterdir())
    if len(entries) == 1 and entries[0].is_dir() and not entries[0].is_symlink():
        return entries[0]
    return workdir
