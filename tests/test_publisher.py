"""
Tests for staged publishing.

The target directory must always be either the old or the new complete tree.
"""

import os

import pytest

import publisher
from errors import FilesystemFailure, PublishRollbackFailed
from publisher import backup_path_for, discard, publish, stage, staging_path_for


def _tree(root):
    return {
        str(path.relative_to(root)).replace(os.sep, "/"): path.read_bytes()
        for path in sorted(root.rglob("*"))
        if path.is_file()
    }


class TestPaths:
    def test_suffixes(self, tmp_path):
        target = tmp_path / "123"
        assert staging_path_for(target) == tmp_path / "123.tmp"
        assert backup_path_for(target) == tmp_path / "123.old"

    def test_trailing_separator_is_ignored(self, tmp_path):
        assert staging_path_for(str(tmp_path / "123") + os.sep) == tmp_path / "123.tmp"


class TestStage:
    def test_stage_creates_empty_dir(self, tmp_path):
        target = tmp_path / "item"
        leftover = staging_path_for(target)
        leftover.mkdir()
        (leftover / "junk.bin").write_bytes(b"junk")

        staging = stage(target)
        assert staging == leftover
        assert staging.is_dir()
        assert list(staging.iterdir()) == []

    def test_discard_removes_staging(self, tmp_path):
        staging = stage(tmp_path / "item")
        (staging / "f").write_bytes(b"x")
        discard(staging)
        assert not staging.exists()

    def test_discard_missing_dir_is_quiet(self, tmp_path):
        discard(tmp_path / "never-created.tmp")


class TestPublish:
    def test_first_publish(self, tmp_path):
        target = tmp_path / "item"
        staging = stage(target)
        (staging / "a.txt").write_bytes(b"new")

        publish(target, staging)

        assert _tree(target) == {"a.txt": b"new"}
        assert not staging.exists()
        assert not backup_path_for(target).exists()

    def test_replaces_previous_state(self, tmp_path):
        target = tmp_path / "item"
        target.mkdir()
        (target / "old.txt").write_bytes(b"old")
        staging = stage(target)
        (staging / "sub").mkdir()
        (staging / "sub" / "new.txt").write_bytes(b"new")

        publish(target, staging)

        assert _tree(target) == {"sub/new.txt": b"new"}
        assert not backup_path_for(target).exists()

    def test_stale_backup_is_replaced(self, tmp_path):
        target = tmp_path / "item"
        target.mkdir()
        (target / "cur.txt").write_bytes(b"cur")
        backup = backup_path_for(target)
        backup.mkdir()
        (backup / "ancient.txt").write_bytes(b"ancient")
        staging = stage(target)
        (staging / "next.txt").write_bytes(b"next")

        publish(target, staging)

        assert _tree(target) == {"next.txt": b"next"}
        assert not backup.exists()

    def test_failed_promote_rolls_back(self, tmp_path, monkeypatch):
        target = tmp_path / "item"
        target.mkdir()
        (target / "keep.txt").write_bytes(b"original")
        before = _tree(target)
        staging = stage(target)
        (staging / "keep.txt").write_bytes(b"replacement")

        real_rename = os.rename

        def flaky_rename(src, dst):
            if os.fspath(src) == os.fspath(staging):
                raise OSError("disk on fire")
            return real_rename(src, dst)

        monkeypatch.setattr(publisher.os, "rename", flaky_rename)

        with pytest.raises(FilesystemFailure) as excinfo:
            publish(target, staging)

        assert not isinstance(excinfo.value, PublishRollbackFailed)
        assert _tree(target) == before
        assert not backup_path_for(target).exists()

    def test_failed_rollback_is_fatal(self, tmp_path, monkeypatch):
        target = tmp_path / "item"
        target.mkdir()
        (target / "keep.txt").write_bytes(b"original")
        staging = stage(target)

        real_rename = os.rename
        backup = backup_path_for(target)

        def broken_rename(src, dst):
            if os.fspath(src) in (os.fspath(staging), os.fspath(backup)):
                raise OSError("read-only")
            return real_rename(src, dst)

        monkeypatch.setattr(publisher.os, "rename", broken_rename)

        with pytest.raises(PublishRollbackFailed):
            publish(target, staging)
        assert (backup / "keep.txt").read_bytes() == b"original"

    def test_move_aside_failure_leaves_target_untouched(self, tmp_path, monkeypatch):
        target = tmp_path / "item"
        target.mkdir()
        (target / "keep.txt").write_bytes(b"original")
        staging = stage(target)

        def no_rename(src, dst):
            raise OSError("locked")

        monkeypatch.setattr(publisher.os, "rename", no_rename)

        with pytest.raises(FilesystemFailure):
            publish(target, staging)
        assert _tree(target) == {"keep.txt": b"original"}
