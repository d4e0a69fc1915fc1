"""Tests for the temporary export dir sweeper."""

from __future__ import annotations

import os
import shutil

import pytest

from dgraph_export.cleanup import CleanupSweeper
from dgraph_export.errors import CleanupFailure

PATTERN = r"export[0-9]+"


class TestCleanupSweeper:
    def test_removes_only_matching_directories(self, tmp_path):
        (tmp_path / "export123" / "nested").mkdir(parents=True)
        (tmp_path / "export123" / "nested" / "g01.rdf.gz").write_text("data")
        (tmp_path / "keep").mkdir()

        result = CleanupSweeper(tmp_path, PATTERN).sweep()

        assert result.removed == [tmp_path / "export123"]
        assert not (tmp_path / "export123").exists()
        assert (tmp_path / "keep").is_dir()

    def test_matching_files_are_untouched(self, tmp_path):
        (tmp_path / "export42").write_text("not a directory")

        result = CleanupSweeper(tmp_path, PATTERN).sweep()

        assert result.removed == []
        assert (tmp_path / "export42").is_file()

    def test_name_must_match_fully(self, tmp_path):
        for name in ("export", "export1a", "myexport1", "export7"):
            (tmp_path / name).mkdir()

        result = CleanupSweeper(tmp_path, PATTERN).sweep()

        assert result.removed == [tmp_path / "export7"]
        assert sorted(p.name for p in tmp_path.iterdir()) == ["export", "export1a", "myexport1"]

    def test_only_immediate_children(self, tmp_path):
        (tmp_path / "outer" / "export5").mkdir(parents=True)

        result = CleanupSweeper(tmp_path, PATTERN).sweep()

        assert result.removed == []
        assert (tmp_path / "outer" / "export5").is_dir()

    def test_symlinked_directories_are_not_followed(self, tmp_path):
        target = tmp_path / "real"
        target.mkdir()
        (target / "keep.txt").write_text("keep")
        root = tmp_path / "root"
        root.mkdir()
        os.symlink(target, root / "export9")

        result = CleanupSweeper(root, PATTERN).sweep()

        assert result.removed == []
        assert (target / "keep.txt").exists()

    def test_targets_recomputed_each_sweep(self, tmp_path):
        sweeper = CleanupSweeper(tmp_path, PATTERN)
        assert sweeper.sweep().removed == []

        (tmp_path / "export1").mkdir()

        assert sweeper.sweep().removed == [tmp_path / "export1"]

    def test_missing_root_raises(self, tmp_path):
        with pytest.raises(CleanupFailure, match="cannot list"):
            CleanupSweeper(tmp_path / "missing", PATTERN).sweep()

    def test_removal_errors_are_collected(self, tmp_path, monkeypatch):
        for name in ("export1", "export2", "export3"):
            (tmp_path / name).mkdir()

        real_rmtree = shutil.rmtree

        def flaky_rmtree(path, *args, **kwargs):
            if os.path.basename(path) == "export2":
                raise PermissionError(13, "Permission denied", str(path))
            return real_rmtree(path, *args, **kwargs)

        monkeypatch.setattr("dgraph_export.cleanup.shutil.rmtree", flaky_rmtree)

        with pytest.raises(CleanupFailure) as exc_info:
            CleanupSweeper(tmp_path, PATTERN).sweep()

        failure = exc_info.value
        assert [path.name for path, _ in failure.errors] == ["export2"]
        assert sorted(path.name for path in failure.removed) == ["export1", "export3"]
        assert (tmp_path / "export2").is_dir()
        assert not (tmp_path / "export1").exists()
        assert not (tmp_path / "export3").exists()

    @pytest.mark.asyncio
    async def test_async_sweep(self, tmp_path):
        (tmp_path / "export10").mkdir()

        result = await CleanupSweeper(str(tmp_path), PATTERN).asweep()

        assert result.removed == [tmp_path / "export10"]
