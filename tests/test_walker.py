"""Tests for the filesystem walker."""

from __future__ import annotations

import os

import pytest

import dirstat.core.walker as walker_mod
from dirstat.core.exclude import ExcludeRules
from dirstat.core.walker import DirWalker
from dirstat.errors import ScanRootError
from dirstat.models.entry import EntryType
from dirstat.models.session import ScanSession
from dirstat.models.tree import DirTree, ScanOutcome


def _walk(path, walker: DirWalker | None = None, **kwargs):
    session = ScanSession(target=str(path))
    tree = DirTree()
    outcome = (walker or DirWalker()).walk(session, tree, **kwargs)
    return outcome, tree, session


def _assert_aggregates_consistent(tree: DirTree) -> None:
    for entry in tree.iter_entries():
        if entry.is_dir:
            own = 0 if entry.error else entry.size
            assert entry.total_size == own + sum(c.total_size for c in entry.children), entry.path


class TestDirWalker:
    def test_sizes_aggregate_bottom_up(self, sample_dir):
        outcome, tree, session = _walk(sample_dir)

        assert outcome is ScanOutcome.FINISHED
        assert tree.outcome is ScanOutcome.FINISHED
        assert tree.root_path == str(sample_dir)
        assert tree.root.total_size == 200
        assert tree.find("sub").total_size == 100
        assert tree.root.total_items == 4
        assert session.entries_visited == 5
        assert session.bytes_accumulated == 200
        _assert_aggregates_consistent(tree)

    def test_relative_root_is_made_absolute(self, sample_dir, monkeypatch):
        monkeypatch.chdir(sample_dir.parent)
        _, tree, _ = _walk(sample_dir.name)
        assert tree.root_path == str(sample_dir)

    def test_visitor_sees_linked_entries(self, sample_dir):
        seen = []

        def visitor(entry):
            if entry.parent is not None:
                assert entry in entry.parent.children
            seen.append(entry)

        _, tree, _ = _walk(sample_dir, visitor=visitor)
        assert len(seen) == len(tree) == 5
        assert seen[0] is tree.root
        assert len({id(e) for e in seen}) == 5

    def test_symlinks_are_recorded_not_followed(self, sample_dir):
        os.symlink("a.bin", sample_dir / "link")
        os.symlink("..", sample_dir / "sub" / "loop")

        outcome, tree, _ = _walk(sample_dir)

        assert outcome is ScanOutcome.FINISHED
        link = tree.find("link")
        assert link.type is EntryType.SYMLINK
        assert link.link_target == "a.bin"
        loop = tree.find("sub/loop")
        assert loop.type is EntryType.SYMLINK
        assert loop.link_target == ".."
        assert loop.children == []
        # Only the link's own length counts, never the target's content
        assert tree.root.total_size == 200 + len("a.bin") + len("..")
        _assert_aggregates_consistent(tree)

    def test_missing_root_raises(self, tmp_path):
        with pytest.raises(ScanRootError):
            _walk(tmp_path / "does-not-exist")

    def test_missing_root_leaves_tree_empty(self, tmp_path):
        tree = DirTree()
        with pytest.raises(ScanRootError):
            DirWalker().walk(ScanSession(target=str(tmp_path / "nope")), tree)
        assert tree.root is None

    def test_unlistable_root_raises(self, sample_dir, monkeypatch):
        def deny(path):
            raise PermissionError(13, "Permission denied", path)

        monkeypatch.setattr(walker_mod, "_list_dir", deny)
        with pytest.raises(ScanRootError, match="Permission denied"):
            _walk(sample_dir)

    def test_file_root(self, sample_dir):
        outcome, tree, _ = _walk(sample_dir / "a.bin")
        assert outcome is ScanOutcome.FINISHED
        assert tree.root.type is EntryType.FILE
        assert tree.root.total_size == 100
        assert len(tree) == 1

    def test_vanished_entry_is_flagged(self, sample_dir, monkeypatch):
        real_lstat = walker_mod._lstat

        def flaky_lstat(dirent):
            if dirent.name == "b.bin":
                raise FileNotFoundError(2, "No such file or directory", dirent.path)
            return real_lstat(dirent)

        monkeypatch.setattr(walker_mod, "_lstat", flaky_lstat)
        outcome, tree, _ = _walk(sample_dir)

        assert outcome is ScanOutcome.FINISHED
        broken = tree.find("sub/b.bin")
        assert broken.error
        assert broken.type is EntryType.FILE
        assert tree.find("sub").total_size == 50
        assert tree.root.total_size == 150
        assert tree.root.error_count == 1
        _assert_aggregates_consistent(tree)

    def test_unreadable_directory_is_flagged(self, sample_dir, monkeypatch):
        real_list = walker_mod._list_dir

        def list_dir(path):
            if path.endswith(os.sep + "sub"):
                raise PermissionError(13, "Permission denied", path)
            return real_list(path)

        monkeypatch.setattr(walker_mod, "_list_dir", list_dir)
        outcome, tree, _ = _walk(sample_dir)

        assert outcome is ScanOutcome.FINISHED
        sub = tree.find("sub")
        assert sub.error
        assert sub.children == []
        assert tree.root.total_size == 100
        assert tree.root.error_count == 1

    @pytest.mark.skipif(hasattr(os, "geteuid") and os.geteuid() == 0, reason="root ignores permissions")
    def test_permission_denied_on_disk(self, sample_dir):
        locked = sample_dir / "sub"
        locked.chmod(0)
        try:
            outcome, tree, _ = _walk(sample_dir)
        finally:
            locked.chmod(0o755)
        assert outcome is ScanOutcome.FINISHED
        assert tree.find("sub").error
        assert tree.root.total_size == 100

    def test_exclude_rules(self, sample_dir):
        walker = DirWalker(exclude_rules=ExcludeRules([r".*/sub"]))
        _, tree, _ = _walk(sample_dir, walker)

        sub = tree.find("sub")
        assert sub.excluded
        assert sub.children == []
        assert not sub.error
        assert tree.root.total_size == 100

    def test_other_filesystem_not_descended(self, sample_dir, sub_on_other_device):
        _, tree, _ = _walk(sample_dir)

        sub = tree.find("sub")
        assert sub.excluded
        assert sub.children == []
        assert not sub.error
        assert tree.root.total_size == 100
        assert len(tree) == 3

    def test_cross_filesystems_descends(self, sample_dir, sub_on_other_device):
        _, tree, _ = _walk(sample_dir, DirWalker(cross_filesystems=True))

        sub = tree.find("sub")
        assert not sub.excluded
        assert sub.total_size == 100
        assert tree.root.total_size == 200

    def test_abort_keeps_partial_tree(self, wide_dir):
        session = ScanSession(target=str(wide_dir))

        def visitor(entry):
            if session.entries_visited == 8:
                session.cancel()

        tree = DirTree()
        outcome = DirWalker().walk(session, tree, visitor=visitor)

        assert outcome is ScanOutcome.ABORTED
        assert tree.outcome is ScanOutcome.ABORTED
        assert session.entries_visited == 8
        assert len(tree) == 8
        assert tree.partial
        assert tree.root.total_size < 250
        assert tree.root.total_size == sum(e.size for e in tree.iter_entries())
        _assert_aggregates_consistent(tree)

        for entry in tree.iter_entries():
            if entry.partial:
                assert entry.is_dir
                # Every partial directory's ancestors are partial too
                parent = entry.parent
                while parent is not None:
                    assert parent.partial
                    parent = parent.parent

    def test_cancel_before_walk(self, sample_dir):
        session = ScanSession(target=str(sample_dir))
        session.cancel()
        tree = DirTree()

        outcome = DirWalker().walk(session, tree)

        assert outcome is ScanOutcome.ABORTED
        assert tree.root.partial
        assert tree.root.children == []

    def test_progress_is_rate_limited(self, wide_dir):
        calls: list[str] = []
        _walk(wide_dir, DirWalker(progress_interval=3600), on_progress=calls.append)
        assert calls == [str(wide_dir)]

    def test_progress_reports_directories(self, wide_dir):
        calls: list[str] = []
        _walk(wide_dir, DirWalker(progress_interval=0), on_progress=calls.append)
        assert len(calls) > 1
        assert all(c.startswith(str(wide_dir)) for c in calls)
        assert str(wide_dir / "d0") in calls


class TestExcludeRules:
    def test_full_path_match(self):
        rules = ExcludeRules([r".*/\.snapshot$"])
        assert rules.match("/home/me/.snapshot")
        assert not rules.match("/home/me/.snapshot/inner")
        assert not rules.match("/home/me/snapshot")

    def test_duplicates_ignored(self):
        rules = ExcludeRules(["a", "a", "b"])
        assert len(rules) == 2
        assert list(rules) == ["a", "b"]

    def test_empty_matches_nothing(self):
        assert not ExcludeRules().match("/anything")
