# Copyright Red Hat
#
# tests/test_snapshot.py - Snapshot applier tests.
#
# This file is part of the treesync project.
#
# SPDX-License-Identifier: Apache-2.0
import unittest
from unittest.mock import patch
import tempfile
import json
import os

from treesync import (
    ApplyError,
    CancelToken,
    ReadError,
    TreeSyncCancelledError,
    TreeSyncStoreError,
    WriteError,
)
from treesync.fsdiff import DeltaKind, DiffEngine, DiffOptions, LocalTree
from treesync.snapshot import ApplyResult, SnapshotApplier, apply
from treesync.store import MemoryStore, VersionedTree

from ._util import FIXTURE_ONE, as_bytes, make_tree, read_tree

TARGET_ROOT = "public/project"


class SnapshotTestBase(unittest.TestCase):
    def setUp(self):
        self._tmp = tempfile.TemporaryDirectory()
        self.local_root = os.path.join(self._tmp.name, "local")
        os.makedirs(self.local_root)
        self.local = LocalTree(self.local_root)
        self.store = MemoryStore()
        self.target = VersionedTree(self.store)

    def tearDown(self):
        self._tmp.cleanup()

    def seed_target(self, layout, root=TARGET_ROOT):
        """Populate and commit the target tree from a ``make_tree()`` layout."""
        seed_dir = os.path.join(self._tmp.name, "seed")
        make_tree(seed_dir, layout)
        seed = LocalTree(seed_dir)
        delta = DiffEngine().diff(root, "", self.target, seed)
        return apply(self.target, seed, root, "", delta)

    def diff(self, root=TARGET_ROOT, **kwargs):
        return DiffEngine(DiffOptions(**kwargs)).diff(
            root, "", self.target, self.local
        )

    def sync(self, root=TARGET_ROOT, **kwargs):
        options = DiffOptions(**kwargs)
        delta = DiffEngine(options).diff(root, "", self.target, self.local)
        return SnapshotApplier(options).apply(self.target, self.local, root, "", delta)


class TestSnapshotApplier(SnapshotTestBase):
    def test_fixture_round_trip(self):
        self.seed_target(FIXTURE_ONE["a"])
        make_tree(self.local_root, FIXTURE_ONE["b"])
        before = self.target.version

        result = self.sync()
        self.assertTrue(result.committed)
        self.assertEqual(result.parent, before)
        self.assertNotEqual(result.version, before)
        self.assertEqual(result.counts, {"write": 3, "mkdir": 0, "remove": 1})

        self.assertEqual(read_tree(self.target, TARGET_ROOT), as_bytes(FIXTURE_ONE["b"]))
        delta = self.diff()
        self.assertEqual(delta.kind, DeltaKind.UNCHANGED)
        self.assertEqual(delta.children, {})

    def test_empty_target_root(self):
        make_tree(self.local_root, {"a.txt": "a\n"})
        delta = self.diff()
        self.assertEqual(delta.kind, DeltaKind.ADDED)
        self.assertEqual(delta.children["a.txt"].kind, DeltaKind.ADDED)

        version = apply(self.target, self.local, TARGET_ROOT, "", delta)
        self.assertEqual(self.target.read(f"{TARGET_ROOT}/a.txt"), b"a\n")
        self.assertEqual(self.target.version, version)
        self.assertEqual(len(list(self.target.history())), 1)

    def test_identical_trees_noop(self):
        self.seed_target({"a.txt": "a\n", "d": {"b.txt": "b\n"}})
        make_tree(self.local_root, {"a.txt": "a\n", "d": {"b.txt": "b\n"}})
        before = self.target.version
        history = list(self.target.history())

        delta = self.diff()
        self.assertEqual(delta.kind, DeltaKind.UNCHANGED)
        with patch.object(self.target, "commit") as commit:
            result = SnapshotApplier().apply(
                self.target, self.local, TARGET_ROOT, "", delta
            )
            commit.assert_not_called()
        self.assertFalse(result.committed)
        self.assertEqual(result.version, before)
        self.assertEqual(result.mutations, 0)
        self.assertEqual(list(self.target.history()), history)

    def test_single_commit_per_apply(self):
        make_tree(self.local_root, {f"f{i}.txt": str(i) for i in range(10)})
        with patch.object(self.target, "commit", wraps=self.target.commit) as commit:
            result = self.sync()
            commit.assert_called_once_with()
        self.assertEqual(result.counts["write"], 10)
        self.assertEqual(result.counts["mkdir"], 1)
        self.assertEqual(len(list(self.target.history())), 1)

    def test_added_directories(self):
        make_tree(self.local_root, {"d": {"e": {"f.txt": "f"}, "empty": {}}})
        self.sync()
        self.assertTrue(self.target.is_dir(f"{TARGET_ROOT}/d/empty"))
        self.assertEqual(self.target.read(f"{TARGET_ROOT}/d/e/f.txt"), b"f")
        self.assertEqual(self.diff().kind, DeltaKind.UNCHANGED)

    def test_removed_directory_single_remove(self):
        self.seed_target({"keep.txt": "k", "gone": {"a": "a", "b": {"c": "c"}}})
        make_tree(self.local_root, {"keep.txt": "k"})
        calls = []
        real_remove = self.target.remove_path

        def _remove(path, commit=False):
            calls.append(path)
            return real_remove(path, commit=commit)

        with patch.object(self.target, "remove_path", side_effect=_remove):
            result = self.sync()
        self.assertEqual(calls, [f"{TARGET_ROOT}/gone"])
        self.assertEqual(result.counts["remove"], 1)
        self.assertFalse(self.target.exists(f"{TARGET_ROOT}/gone"))

    def test_local_root_removed(self):
        self.seed_target({"a.txt": "a"})
        delta = DiffEngine().diff(TARGET_ROOT, "missing", self.target, self.local)
        self.assertEqual(delta.kind, DeltaKind.REMOVED)
        apply(self.target, self.local, TARGET_ROOT, "missing", delta)
        self.assertFalse(self.target.exists(TARGET_ROOT))
        self.assertTrue(self.target.is_dir("public"))

    def test_concurrent_apply(self):
        layout = {f"d{i}": {f"f{j}.txt": f"{i}.{j}" for j in range(5)} for i in range(8)}
        make_tree(self.local_root, layout)
        result = self.sync(max_workers=4)
        self.assertEqual(result.counts["write"], 40)
        self.assertEqual(read_tree(self.target, TARGET_ROOT), as_bytes(layout))

    def test_ignored_files_not_synced(self):
        make_tree(
            self.local_root,
            {".treesyncignore": "*.tmp\n", "a.txt": "a", "b.tmp": "b", ".treesync": "x"},
        )
        self.sync()
        self.assertEqual(
            [e.name for e in self.target.list(TARGET_ROOT)], ["a.txt"]
        )

    def test_apply_result_json(self):
        make_tree(self.local_root, {"a.txt": "a"})
        result = self.sync()
        data = json.loads(result.json())
        self.assertEqual(data["version"], result.version)
        self.assertTrue(data["committed"])
        self.assertEqual(data["counts"]["write"], 1)

    def test_file_vanishing_during_diff_keeps_target(self):
        self.seed_target({"a.txt": "a\n", "b.txt": "b\n"})
        make_tree(self.local_root, {"a.txt": "a\n", "b.txt": "b\n"})
        real_fingerprint = LocalTree._fingerprint

        def _fingerprint(tree, full_path, file_stat):
            if os.path.basename(full_path) == "b.txt":
                raise FileNotFoundError(2, "No such file or directory", full_path)
            return real_fingerprint(tree, full_path, file_stat)

        with patch.object(LocalTree, "_fingerprint", _fingerprint):
            delta = self.diff()
        self.assertEqual(delta.kind, DeltaKind.CHANGED)
        self.assertEqual(list(delta.children), ["b.txt"])
        self.assertEqual(delta.children["b.txt"].kind, DeltaKind.REMOVED)

        result = SnapshotApplier().apply(self.target, self.local, TARGET_ROOT, "", delta)
        self.assertEqual(result.counts, {"write": 0, "mkdir": 0, "remove": 1})
        self.assertTrue(self.target.is_dir(TARGET_ROOT))
        self.assertEqual(self.target.read(f"{TARGET_ROOT}/a.txt"), b"a\n")


class TestSnapshotReplace(SnapshotTestBase):
    def test_file_to_directory(self):
        self.seed_target({"x": "file", "y.txt": "y"})
        make_tree(self.local_root, {"x": {"inner.txt": "inner"}, "y.txt": "y"})
        delta = self.diff()
        self.assertEqual(delta.children["x"].kind, DeltaKind.REPLACED)
        self.sync()
        self.assertEqual(self.target.read(f"{TARGET_ROOT}/x/inner.txt"), b"inner")
        self.assertEqual(self.diff().kind, DeltaKind.UNCHANGED)

    def test_directory_to_file(self):
        self.seed_target({"x": {"inner.txt": "inner"}})
        make_tree(self.local_root, {"x": "now a file"})
        result = self.sync()
        self.assertEqual(result.counts, {"write": 1, "mkdir": 0, "remove": 1})
        self.assertEqual(self.target.read(f"{TARGET_ROOT}/x"), b"now a file")
        self.assertEqual(self.diff().kind, DeltaKind.UNCHANGED)


class TestSnapshotAtomicity(SnapshotTestBase):
    def setUp(self):
        super().setUp()
        self.seed_target(FIXTURE_ONE["a"])
        make_tree(self.local_root, FIXTURE_ONE["b"])
        self.before = self.target.version
        self.before_tree = read_tree(self.target, TARGET_ROOT)
        self.delta = self.diff()

    def _assert_unchanged(self):
        self.assertEqual(self.target.version, self.before)
        self.assertEqual(self.store.get_ref("head"), self.before)
        self.assertFalse(self.target.dirty)
        self.assertEqual(read_tree(self.target, TARGET_ROOT), self.before_tree)

    def test_write_failure(self):
        real_write = self.target.write

        def _write(path, data, commit=False):
            if path.endswith("three.txt"):
                raise WriteError(path, "quota exceeded")
            return real_write(path, data, commit=commit)

        with patch.object(self.target, "write", side_effect=_write):
            with self.assertRaises(ApplyError) as cm:
                apply(self.target, self.local, TARGET_ROOT, "", self.delta)
        err = cm.exception
        self.assertEqual(err.mutation, "write")
        self.assertEqual(err.path, f"{TARGET_ROOT}/sub/three.txt")
        self.assertEqual(err.version, self.before)
        self.assertIsInstance(err.__cause__, WriteError)
        self._assert_unchanged()

    def test_remove_failure(self):
        with patch.object(
            self.target, "remove_path", side_effect=WriteError("x", "denied")
        ):
            with self.assertRaises(ApplyError) as cm:
                apply(self.target, self.local, TARGET_ROOT, "", self.delta)
        self.assertEqual(cm.exception.mutation, "remove")
        self._assert_unchanged()

    def test_read_failure(self):
        with patch.object(
            self.local, "read", side_effect=ReadError("four.txt", "I/O error")
        ):
            with self.assertRaises(ApplyError) as cm:
                apply(self.target, self.local, TARGET_ROOT, "", self.delta)
        self.assertIsInstance(cm.exception.__cause__, ReadError)
        self._assert_unchanged()

    def test_commit_failure(self):
        with patch.object(
            self.store, "set_ref", side_effect=TreeSyncStoreError("disk full")
        ):
            with self.assertRaises(ApplyError) as cm:
                apply(self.target, self.local, TARGET_ROOT, "", self.delta)
        self.assertEqual(cm.exception.mutation, "commit")
        self.assertEqual(self.store.get_ref("head"), self.before)

    def test_concurrent_failure(self):
        real_write = self.target.write

        def _write(path, data, commit=False):
            if path.endswith("four.txt"):
                raise WriteError(path, "quota exceeded")
            return real_write(path, data, commit=commit)

        with patch.object(self.target, "write", side_effect=_write):
            with self.assertRaises(ApplyError):
                apply(
                    self.target,
                    self.local,
                    TARGET_ROOT,
                    "",
                    self.delta,
                    options=DiffOptions(max_workers=4),
                )
        self._assert_unchanged()

    def test_cancel_before_apply(self):
        cancel = CancelToken()
        cancel.cancel()
        with self.assertRaises(TreeSyncCancelledError):
            apply(self.target, self.local, TARGET_ROOT, "", self.delta, cancel=cancel)
        self._assert_unchanged()

    def test_cancel_during_apply(self):
        cancel = CancelToken()
        real_write = self.target.write

        def _write(path, data, commit=False):
            real_write(path, data, commit=commit)
            cancel.cancel()

        with patch.object(self.target, "write", side_effect=_write):
            with self.assertRaises(TreeSyncCancelledError):
                SnapshotApplier(DiffOptions(max_workers=1)).apply(
                    self.target, self.local, TARGET_ROOT, "", self.delta, cancel=cancel
                )
        self._assert_unchanged()

    def test_apply_after_failure_succeeds(self):
        with patch.object(
            self.target, "remove_path", side_effect=WriteError("x", "denied")
        ):
            with self.assertRaises(ApplyError):
                apply(self.target, self.local, TARGET_ROOT, "", self.delta)
        version = apply(self.target, self.local, TARGET_ROOT, "", self.delta)
        self.assertNotEqual(version, self.before)
        self.assertEqual(read_tree(self.target, TARGET_ROOT), as_bytes(FIXTURE_ONE["b"]))


class TestApplyResult(unittest.TestCase):
    def test_defaults(self):
        result = ApplyResult("v1", "v1")
        self.assertFalse(result.committed)
        self.assertEqual(result.mutations, 0)
        self.assertEqual(result.to_dict()["counts"], {"write": 0, "mkdir": 0, "remove": 0})
