# Copyright Red Hat
#
# tests/fsdiff/test_engine.py - Diff engine tests.
#
# This file is part of the treesync project.
#
# SPDX-License-Identifier: Apache-2.0
import unittest
from unittest.mock import patch
import tempfile
import os

from treesync import (
    IGNORE_FILE_NAME,
    LINK_FILE_NAME,
    CancelToken,
    TreeSyncAccessError,
    TreeSyncCancelledError,
    TypeConflictError,
)
from treesync.fsdiff import (
    DeltaKind,
    DiffEngine,
    DiffOptions,
    EntryType,
    LocalTree,
    diff,
)
from treesync.store import MemoryStore, VersionedTree

from .._util import FIXTURE_ONE, make_tree


def _kinds(delta):
    """Map every non-root path in ``delta`` to its kind."""
    return {path: d.kind for path, d in delta.walk() if d is not delta}


def _assert_rollup(test, delta):
    """Check the rollup invariant for every directory on both sides."""
    for _, node in delta.walk():
        if node.kind not in (DeltaKind.UNCHANGED, DeltaKind.CHANGED):
            continue
        if not node.is_dir:
            continue
        all_unchanged = all(c.kind == DeltaKind.UNCHANGED for c in node.children.values())
        test.assertEqual(node.kind == DeltaKind.UNCHANGED, all_unchanged)


class _FailingTree:
    """A ``ReadableTree`` wrapper that refuses to list one path."""

    def __init__(self, tree, fail_path):
        self.tree = tree
        self.fail_path = fail_path

    def list(self, path):
        if path == self.fail_path:
            raise TreeSyncAccessError(path, "Permission denied")
        return self.tree.list(path)

    def read(self, path):
        return self.tree.read(path)


class DiffEngineTestBase(unittest.TestCase):
    layout = FIXTURE_ONE

    def setUp(self):
        self._tmp = tempfile.TemporaryDirectory()
        self.root = self._tmp.name
        make_tree(self.root, self.layout)
        self.tree = LocalTree(self.root)

    def tearDown(self):
        self._tmp.cleanup()

    def diff(self, target, local, **kwargs):
        options = DiffOptions(**kwargs)
        return DiffEngine(options).diff(target, local, self.tree, self.tree)


class TestDiffEngineFixture(DiffEngineTestBase):
    def test_fixture_scenario(self):
        delta = self.diff("a", "b")
        self.assertEqual(delta.name, ".")
        self.assertEqual(delta.kind, DeltaKind.CHANGED)
        self.assertEqual(list(delta.children), ["four.txt", "sub"])
        self.assertEqual(delta.children["four.txt"].kind, DeltaKind.ADDED)

        sub = delta.children["sub"]
        self.assertEqual(sub.kind, DeltaKind.CHANGED)
        self.assertTrue(sub.is_dir)
        self.assertEqual(list(sub.children), ["one.txt", "three.txt", "two.txt"])
        self.assertEqual(sub.children["one.txt"].kind, DeltaKind.CHANGED)
        self.assertEqual(sub.children["three.txt"].kind, DeltaKind.ADDED)
        self.assertEqual(sub.children["two.txt"].kind, DeltaKind.REMOVED)
        for child in sub.children.values():
            self.assertEqual(child.children, {})
        _assert_rollup(self, delta)

    def test_module_diff_function(self):
        delta = diff("a", "b", self.tree, self.tree, options=DiffOptions(max_workers=1))
        self.assertEqual(delta.to_dict(), self.diff("a", "b").to_dict())

    def test_reverse_direction(self):
        delta = self.diff("b", "a")
        self.assertEqual(
            _kinds(delta),
            {
                "four.txt": DeltaKind.REMOVED,
                "sub": DeltaKind.CHANGED,
                "sub/one.txt": DeltaKind.CHANGED,
                "sub/three.txt": DeltaKind.REMOVED,
                "sub/two.txt": DeltaKind.ADDED,
            },
        )

    def test_include_unchanged(self):
        delta = self.diff("a", "b", include_unchanged=True)
        self.assertEqual(delta.kind, DeltaKind.CHANGED)
        self.assertEqual(delta.children["unchanged.txt"].kind, DeltaKind.UNCHANGED)
        _assert_rollup(self, delta)

    def test_idempotence(self):
        for path in ("a", "b", "a/sub"):
            delta = self.diff(path, path)
            self.assertEqual(delta.kind, DeltaKind.UNCHANGED)
            self.assertEqual(delta.children, {})

    def test_idempotence_include_unchanged(self):
        delta = self.diff("b", "b", include_unchanged=True)
        self.assertEqual(delta.kind, DeltaKind.UNCHANGED)
        self.assertEqual(
            set(_kinds(delta).values()), {DeltaKind.UNCHANGED}
        )
        _assert_rollup(self, delta)

    def test_concurrent_matches_serial(self):
        serial = self.diff("a", "b", max_workers=1)
        for workers in (2, 4, 16):
            concurrent = self.diff("a", "b", max_workers=workers)
            self.assertEqual(concurrent.to_dict(), serial.to_dict())

    def test_cancelled(self):
        cancel = CancelToken()
        cancel.cancel()
        with self.assertRaises(TreeSyncCancelledError):
            DiffEngine().diff("a", "b", self.tree, self.tree, cancel=cancel)

    def test_listing_error_aborts(self):
        failing = _FailingTree(self.tree, "b/sub")
        for workers in (1, 4):
            engine = DiffEngine(DiffOptions(max_workers=workers))
            with self.assertRaises(TreeSyncAccessError) as cm:
                engine.diff("a", "b", self.tree, failing)
            self.assertIn("b/sub", str(cm.exception))

    def test_root_listing_error_aborts(self):
        failing = _FailingTree(self.tree, "a")
        with self.assertRaises(TreeSyncAccessError):
            DiffEngine().diff("a", "b", failing, self.tree)


class TestDiffEngineRoots(DiffEngineTestBase):
    layout = {
        "empty": {},
        "local": {"a.txt": "a\n", "d": {"e.txt": "e\n"}},
    }

    def test_missing_target_root(self):
        delta = self.diff("missing", "local")
        self.assertEqual(delta.kind, DeltaKind.ADDED)
        self.assertEqual(
            _kinds(delta),
            {
                "a.txt": DeltaKind.ADDED,
                "d": DeltaKind.ADDED,
                "d/e.txt": DeltaKind.ADDED,
            },
        )
        self.assertTrue(delta.children["d"].is_dir)
        self.assertFalse(delta.children["a.txt"].is_dir)

    def test_empty_target_root(self):
        delta = self.diff("empty", "local")
        self.assertEqual(delta.kind, DeltaKind.CHANGED)
        self.assertEqual(
            set(_kinds(delta).values()), {DeltaKind.ADDED}
        )

    def test_missing_local_root(self):
        delta = self.diff("local", "missing")
        self.assertEqual(delta.kind, DeltaKind.REMOVED)
        self.assertEqual(
            _kinds(delta),
            {
                "a.txt": DeltaKind.REMOVED,
                "d": DeltaKind.REMOVED,
                "d/e.txt": DeltaKind.REMOVED,
            },
        )

    def test_empty_local_root(self):
        delta = self.diff("local", "empty")
        self.assertEqual(delta.kind, DeltaKind.CHANGED)
        self.assertEqual(set(_kinds(delta).values()), {DeltaKind.REMOVED})

    def test_both_roots_missing(self):
        delta = self.diff("missing", "gone")
        self.assertEqual(delta.kind, DeltaKind.UNCHANGED)
        self.assertEqual(delta.children, {})

    def test_added_empty_directory(self):
        os.mkdir(os.path.join(self.root, "local", "new"))
        delta = self.diff("empty", "local")
        new = delta.children["new"]
        self.assertEqual(new.kind, DeltaKind.ADDED)
        self.assertTrue(new.is_dir)
        self.assertEqual(new.children, {})


class TestDiffEngineIgnore(DiffEngineTestBase):
    layout = {
        "target": {
            "keep.txt": "keep\n",
            "old.log": "log\n",
            "sub": {"x.log": "x\n"},
        },
        "local": {
            IGNORE_FILE_NAME: "# logs\n*.log\nbuild/\n",
            LINK_FILE_NAME: "public/local\n",
            "keep.txt": "keep\n",
            "new.log": "log\n",
            "build": {"out.o": "o\n"},
            "sub": {"x.log": "changed\n", "y.log": "y\n"},
        },
    }

    def test_ignored_entries_never_appear(self):
        delta = self.diff("target", "local")
        paths = delta.paths()
        self.assertNotIn("old.log", paths)
        self.assertNotIn("new.log", paths)
        self.assertNotIn("build", paths)
        self.assertNotIn(IGNORE_FILE_NAME, paths)
        self.assertNotIn(LINK_FILE_NAME, paths)

    def test_patterns_apply_to_one_level(self):
        delta = self.diff("target", "local")
        self.assertEqual(
            _kinds(delta),
            {
                "sub": DeltaKind.CHANGED,
                "sub/x.log": DeltaKind.CHANGED,
                "sub/y.log": DeltaKind.ADDED,
            },
        )

    def test_ignore_both_directions(self):
        delta = self.diff("local", "local")
        self.assertEqual(delta.kind, DeltaKind.UNCHANGED)
        # Patterns come from the local side only; the reserved names are
        # excluded on the target side regardless.
        delta = self.diff("local", "target")
        self.assertIn("new.log", delta.paths())
        self.assertNotIn(IGNORE_FILE_NAME, delta.paths())
        self.assertNotIn(LINK_FILE_NAME, delta.paths())

    def test_exclude_patterns(self):
        delta = self.diff("target", "local", exclude_patterns=("sub",))
        self.assertEqual(delta.kind, DeltaKind.UNCHANGED)

    def test_custom_ignore_file_name(self):
        delta = DiffEngine().diff(
            "target", "local", self.tree, self.tree, ignore_file_name=".other"
        )
        paths = delta.paths()
        # The default ignore file is now ordinary content
        self.assertIn(IGNORE_FILE_NAME, paths)
        self.assertIn("new.log", paths)


class TestDiffEngineTypeConflicts(DiffEngineTestBase):
    layout = {
        "files": {"x": "x is a file\n", "same.txt": "same\n"},
        "dirs": {"x": {"inner.txt": "inner\n", "deeper": {}}, "same.txt": "same\n"},
    }

    def test_file_to_directory(self):
        delta = self.diff("files", "dirs")
        self.assertEqual(delta.kind, DeltaKind.CHANGED)
        x = delta.children["x"]
        self.assertEqual(x.kind, DeltaKind.REPLACED)
        self.assertTrue(x.is_dir)
        self.assertEqual(x.replaced, (EntryType.FILE, EntryType.DIRECTORY))
        self.assertEqual(list(x.children), ["deeper", "inner.txt"])
        for child in x.children.values():
            self.assertEqual(child.kind, DeltaKind.ADDED)

    def test_directory_to_file(self):
        delta = self.diff("dirs", "files")
        x = delta.children["x"]
        self.assertEqual(x.kind, DeltaKind.REPLACED)
        self.assertFalse(x.is_dir)
        self.assertEqual(x.replaced, (EntryType.DIRECTORY, EntryType.FILE))
        self.assertEqual(x.children, {})

    def test_conflict_error(self):
        with self.assertRaises(TypeConflictError) as cm:
            self.diff("files", "dirs", replace_type_conflicts=False)
        self.assertEqual(cm.exception.path, "dirs/x")
        self.assertEqual(cm.exception.old_type, EntryType.FILE)
        self.assertEqual(cm.exception.new_type, EntryType.DIRECTORY)


class TestDiffEngineVersionedTarget(unittest.TestCase):
    def test_versioned_against_local(self):
        with tempfile.TemporaryDirectory() as tmpdir:
            make_tree(tmpdir, {"a.txt": "a\n", "d": {"b.txt": "b\n"}})
            local = LocalTree(tmpdir)
            target = VersionedTree(MemoryStore())
            target.write("proj/a.txt", b"a\n")
            target.write("proj/d/b.txt", b"old\n")
            target.commit()

            delta = DiffEngine().diff("proj", "", target, local)
            self.assertEqual(
                _kinds(delta),
                {"d": DeltaKind.CHANGED, "d/b.txt": DeltaKind.CHANGED},
            )


class TestDiffEngineVanishingFiles(DiffEngineTestBase):
    layout = {
        "target": {"a.txt": "a\n", "b.txt": "b\n", "sub": {"c.txt": "c\n"}},
        "local": {"a.txt": "a\n", "b.txt": "b\n", "sub": {"c.txt": "c\n"}},
    }

    def _diff_vanishing(self, target, local, name):
        real_fingerprint = LocalTree._fingerprint

        def _fingerprint(tree, full_path, file_stat):
            if os.path.relpath(full_path, self.root) == name:
                raise FileNotFoundError(2, "No such file or directory", full_path)
            return real_fingerprint(tree, full_path, file_stat)

        with patch.object(LocalTree, "_fingerprint", _fingerprint):
            return self.diff(target, local)

    def test_vanished_file_at_root(self):
        delta = self._diff_vanishing("target", "local", "local/b.txt")
        self.assertEqual(delta.kind, DeltaKind.CHANGED)
        self.assertEqual(_kinds(delta), {"b.txt": DeltaKind.REMOVED})

    def test_vanished_file_below_root(self):
        delta = self._diff_vanishing("target", "local", "local/sub/c.txt")
        self.assertEqual(delta.kind, DeltaKind.CHANGED)
        self.assertEqual(
            _kinds(delta),
            {"sub": DeltaKind.CHANGED, "sub/c.txt": DeltaKind.REMOVED},
        )
