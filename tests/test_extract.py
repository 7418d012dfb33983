"""
Tests for archive extraction — formats, staging root, unsafe entries.
"""

import gzip
import io
import stat
import tarfile

import pytest

from keg.core.errors import ExtractionError, InstallError
from keg.core.services.install.domain.paths import link_escape_reason, member_escape_reason
from keg.core.services.install.execution.extract import detect_format, extract


def _tar_with(*members: tarfile.TarInfo) -> bytes:
    buf = io.BytesIO()
    with tarfile.open(fileobj=buf, mode="w") as tf:
        for info in members:
            data = b"x" * info.size if info.isfile() else None
            tf.addfile(info, io.BytesIO(data) if data is not None else None)
    return buf.getvalue()


def _file(name: str) -> tarfile.TarInfo:
    info = tarfile.TarInfo(name)
    info.size = 1
    return info


def _symlink(name: str, target: str) -> tarfile.TarInfo:
    info = tarfile.TarInfo(name)
    info.type = tarfile.SYMTYPE
    info.linkname = target
    return info


class TestFormats:
    def test_detect(self, tar_builder, zip_builder):
        assert detect_format(tar_builder({"a": b"1"}, compression="")) == "tar"
        assert detect_format(tar_builder({"a": b"1"})) == "gzip"
        assert detect_format(tar_builder({"a": b"1"}, compression="xz")) == "xz"
        assert detect_format(tar_builder({"a": b"1"}, compression="bz2")) == "bzip2"
        assert detect_format(zip_builder({"a": b"1"})) == "zip"
        assert detect_format(b"#!/bin/sh\n") == "raw"

    @pytest.mark.parametrize("compression,fmt", [
        ("", "tar"), ("gz", "tar.gzip"), ("bz2", "tar.bzip2"), ("xz", "tar.xz"),
    ])
    def test_tar_variants(self, tar_builder, compression, fmt):
        data = tar_builder({"tool": b"bin", "doc/tool.1": b"man"}, compression=compression)
        with extract(data) as staged:
            assert staged.format == fmt
            assert staged.files == ["doc/tool.1", "tool"]
            assert (staged.root / "tool").read_bytes() == b"bin"

    def test_zip_keeps_permissions(self, zip_builder):
        data = zip_builder({"tool": b"bin", "README": b"hi"}, modes={"tool": 0o755})
        with extract(data) as staged:
            assert staged.format == "zip"
            assert stat.S_IMODE((staged.root / "tool").stat().st_mode) == 0o755

    def test_raw_file_named_after_artifact(self):
        with extract(b"#!/bin/sh\necho hi\n", artifact_name="tool") as staged:
            assert staged.format == "raw"
            assert staged.files == ["tool"]

    def test_gzipped_single_file(self):
        data = gzip.compress(b"#!/bin/sh\n")
        with extract(data, artifact_name="tool.gz") as staged:
            assert staged.format == "gzip"
            assert staged.files == ["tool"]

    def test_corrupt_gzip(self):
        with pytest.raises(ExtractionError, match="Corrupt gzip"):
            extract(b"\x1f\x8b" + b"garbage" * 10)

    def test_corrupt_zip(self):
        with pytest.raises(ExtractionError):
            extract(b"PK\x03\x04" + b"\x00" * 40)


class TestStagingArea:
    def test_single_top_level_dir_becomes_root(self, hurl_tarball):
        with extract(hurl_tarball) as staged:
            assert staged.root.name == "hurl-0.1.0"
            assert "man/hurl.1" in staged.files

    def test_resolve_accepts_top_dir_prefix(self, hurl_tarball):
        with extract(hurl_tarball) as staged:
            assert staged.resolve("hurl") == staged.resolve("hurl-0.1.0/hurl")

    def test_resolve_missing_source(self, hurl_tarball):
        with extract(hurl_tarball) as staged:
            with pytest.raises(InstallError, match="not found"):
                staged.resolve("hurlfmt")

    def test_removed_on_exit(self, hurl_tarball):
        with extract(hurl_tarball) as staged:
            workdir = staged.workdir
            assert workdir.is_dir()
        assert not workdir.exists()

    def test_removed_on_error(self, hurl_tarball):
        with pytest.raises(RuntimeError):
            with extract(hurl_tarball) as staged:
                workdir = staged.workdir
                raise RuntimeError("boom")
        assert not workdir.exists()

    def test_staging_parent(self, tmp_path, hurl_tarball):
        with extract(hurl_tarball, staging_parent=tmp_path / "scratch") as staged:
            assert staged.workdir.parent == tmp_path / "scratch"
        assert list((tmp_path / "scratch").iterdir()) == []


class TestUnsafeEntries:
    @pytest.mark.parametrize("name", ["../evil", "/etc/evil", "a/../../evil"])
    def test_tar_member_outside_root(self, name, tmp_path):
        data = _tar_with(_file("ok"), _file(name))
        with pytest.raises(ExtractionError, match="Unsafe archive entry"):
            extract(data, staging_parent=tmp_path / "scratch")
        assert list((tmp_path / "scratch").iterdir()) == []
        assert not (tmp_path / "evil").exists()

    def test_symlink_escaping_root(self):
        data = _tar_with(_file("ok"), _symlink("link", "../../etc/passwd"))
        with pytest.raises(ExtractionError, match="link target escapes"):
            extract(data)

    def test_absolute_symlink(self):
        data = _tar_with(_symlink("link", "/etc/passwd"))
        with pytest.raises(ExtractionError, match="absolute link target"):
            extract(data)

    def test_symlink_inside_root_is_fine(self):
        data = _tar_with(_file("bin/tool-1.0"), _symlink("bin/tool", "tool-1.0"))
        with extract(data) as staged:
            assert staged.resolve("bin/tool").name == "tool-1.0"

    def test_device_entry(self):
        info = tarfile.TarInfo("dev")
        info.type = tarfile.CHRTYPE
        with pytest.raises(ExtractionError, match="special file"):
            extract(_tar_with(info))

    def test_zip_traversal(self, zip_builder):
        data = zip_builder({"ok": b"1", "../evil": b"2"})
        with pytest.raises(ExtractionError, match="Unsafe archive entry"):
            extract(data)


class TestPathChecks:
    def test_member_names(self):
        assert member_escape_reason("bin/hurl") is None
        assert member_escape_reason("./bin/../hurl") is None
        assert member_escape_reason("..") is not None
        assert member_escape_reason("C:/x") == "drive-qualified path"
        assert member_escape_reason("a\\..\\..\\x") is not None

    def test_link_targets(self):
        assert link_escape_reason("a/b/link", "../c") is None
        assert link_escape_reason("a/link", "../../c") is not None
