"""
Tests for the installer — placement, modes, idempotence and rollback.
"""

import stat
from pathlib import Path

import pytest

from keg.core.errors import InstallError
from keg.core.models.layout import InstallLayout, LayoutConfig
from keg.core.models.manifest import DestinationCategory, InstallStep
from keg.core.services.install.domain.rollback import plan_rollback
from keg.core.services.install.execution import installer
from keg.core.services.install.execution.extract import extract
from keg.core.services.install.execution.installer import apply

TOOLS = {f"tool{i}": f"tool {i}\n".encode() for i in range(1, 6)}


def _steps(*names: str) -> list[InstallStep]:
    return [InstallStep(source=n, category=DestinationCategory.BIN) for n in names]


@pytest.fixture
def layout(tmp_path: Path) -> InstallLayout:
    return InstallLayout.for_prefix(tmp_path / "prefix")


@pytest.fixture
def staged(tar_builder):
    with extract(tar_builder(TOOLS)) as s:
        yield s


class TestPlacement:
    def test_files_land_in_category_dirs(self, hurl_tarball, layout, list_files):
        steps = [
            InstallStep(source="hurl", category=DestinationCategory.BIN),
            InstallStep(source="man/hurl.1", category=DestinationCategory.MAN1),
            InstallStep(source="completions/hurl.bash", category=DestinationCategory.BASH_COMPLETION,
                        name="hurl"),
            InstallStep(source="completions/_hurl", category=DestinationCategory.ZSH_COMPLETION),
            InstallStep(source="completions/hurl.fish", category=DestinationCategory.FISH_COMPLETION),
        ]
        with extract(hurl_tarball) as s:
            report = apply(s, steps, layout)
        assert list_files(layout.prefix) == [
            "bin/hurl",
            "etc/bash_completion.d/hurl",
            "share/fish/vendor_completions.d/hurl.fish",
            "share/man/man1/hurl.1",
            "share/zsh/site-functions/_hurl",
        ]
        assert [s.index for s in report.steps] == [0, 1, 2, 3, 4]

    def test_modes(self, staged, layout):
        steps = _steps("tool1") + [InstallStep(source="tool2", category=DestinationCategory.MAN1)]
        apply(staged, steps, layout)
        assert stat.S_IMODE((layout.prefix / "bin/tool1").stat().st_mode) == 0o755
        assert stat.S_IMODE((layout.prefix / "share/man/man1/tool2").stat().st_mode) == 0o644

    def test_custom_layout(self, staged, tmp_path):
        layout = InstallLayout.for_prefix(tmp_path / "opt", LayoutConfig(bin="tools"))
        apply(staged, _steps("tool1"), layout)
        assert (layout.prefix / "tools/tool1").read_bytes() == TOOLS["tool1"]

    def test_no_temp_files_left(self, staged, layout):
        apply(staged, _steps("tool1", "tool2"), layout)
        assert sorted(p.name for p in (layout.prefix / "bin").iterdir()) == ["tool1", "tool2"]


class TestIdempotence:
    def test_second_apply_changes_nothing(self, staged, layout):
        apply(staged, _steps("tool1", "tool2"), layout)
        before = {p: p.stat().st_mtime_ns for p in (layout.prefix / "bin").iterdir()}

        report = apply(staged, _steps("tool1", "tool2"), layout)
        assert all(s.unchanged for s in report.steps)
        assert {p: p.stat().st_mtime_ns for p in (layout.prefix / "bin").iterdir()} == before

    def test_wrong_mode_is_rewritten(self, staged, layout):
        apply(staged, _steps("tool1"), layout)
        (layout.prefix / "bin/tool1").chmod(0o644)
        report = apply(staged, _steps("tool1"), layout)
        assert not report.steps[0].unchanged
        assert stat.S_IMODE((layout.prefix / "bin/tool1").stat().st_mode) == 0o755

    def test_differing_file_replaced(self, staged, layout):
        dest = layout.prefix / "bin/tool1"
        dest.parent.mkdir(parents=True)
        dest.write_bytes(b"old\n")
        report = apply(staged, _steps("tool1"), layout)
        assert report.steps[0].written
        assert dest.read_bytes() == TOOLS["tool1"]


class TestRollback:
    def test_failure_at_third_of_five_steps(self, staged, layout, list_files):
        """Steps 0 and 1 are undone; the pre-existing file is restored."""
        bin_dir = layout.prefix / "bin"
        bin_dir.mkdir(parents=True)
        (bin_dir / "tool1").write_bytes(b"previous tool1\n")
        (bin_dir / "tool3").mkdir()  # step 2 cannot replace a directory

        with pytest.raises(InstallError) as exc_info:
            apply(staged, _steps("tool1", "tool2", "tool3", "tool4", "tool5"), layout)

        assert exc_info.value.step_index == 2
        assert list_files(layout.prefix) == ["bin/tool1"]
        assert (bin_dir / "tool1").read_bytes() == b"previous tool1\n"
        assert (bin_dir / "tool3").is_dir()

    def test_missing_source_fails_before_any_write(self, staged, layout):
        layout.prefix.mkdir(parents=True)
        steps = _steps("tool1") + [InstallStep(source="missing-later", category=DestinationCategory.MAN1)]
        with pytest.raises(InstallError, match="not found") as exc_info:
            apply(staged, steps, layout)
        assert exc_info.value.step_index == 1
        assert list(layout.prefix.iterdir()) == []

    def test_write_failure_removes_new_dirs(self, staged, layout, monkeypatch):
        layout.prefix.mkdir(parents=True)
        real_copy = installer._atomic_copy
        calls = []

        def failing_copy(source, dest, mode):
            calls.append(dest)
            if len(calls) == 2:
                raise OSError("disk full")
            real_copy(source, dest, mode)

        monkeypatch.setattr(installer, "_atomic_copy", failing_copy)
        steps = _steps("tool1") + [InstallStep(source="tool2", category=DestinationCategory.MAN1)]
        with pytest.raises(InstallError, match="disk full") as exc_info:
            apply(staged, steps, layout)

        assert exc_info.value.step_index == 1
        assert isinstance(exc_info.value.__cause__, OSError)
        assert list(layout.prefix.iterdir()) == []

    def test_interrupt_rolls_back_and_propagates(self, staged, layout, monkeypatch, list_files):
        real_copy = installer._atomic_copy
        calls = []

        def interrupted_copy(source, dest, mode):
            calls.append(dest)
            if len(calls) == 3:
                raise KeyboardInterrupt
            real_copy(source, dest, mode)

        monkeypatch.setattr(installer, "_atomic_copy", interrupted_copy)
        with pytest.raises(KeyboardInterrupt):
            apply(staged, _steps("tool1", "tool2", "tool3"), layout)
        assert list_files(layout.prefix) == []

    def test_commit_failure_rolls_back(self, staged, layout, list_files):
        def commit(applied):
            raise OSError("receipt dir read-only")

        with pytest.raises(InstallError, match="receipt dir read-only") as exc_info:
            apply(staged, _steps("tool1", "tool2"), layout, commit=commit)
        assert exc_info.value.step_index is None
        assert list_files(layout.prefix) == []

    def test_commit_sees_all_steps(self, staged, layout):
        seen = []
        apply(staged, _steps("tool1", "tool2"), layout, commit=lambda applied: seen.extend(applied))
        assert [s.index for s in seen] == [0, 1]

    def test_backups_cleaned_up(self, staged, layout, tmp_path):
        backups = tmp_path / "scratch"
        dest = layout.prefix / "bin/tool1"
        dest.parent.mkdir(parents=True)
        dest.write_bytes(b"old\n")
        apply(staged, _steps("tool1"), layout, backup_parent=backups)
        assert list(backups.iterdir()) == []


class TestRollbackPlan:
    def test_reverse_order_skips_unchanged(self, staged, layout):
        apply(staged, _steps("tool1"), layout)
        report = apply(staged, _steps("tool1", "tool2"), layout)
        actions = plan_rollback(report.steps)
        assert [a.index for a in actions] == [1]
        assert actions[0].describe().startswith("step 1: remove")
