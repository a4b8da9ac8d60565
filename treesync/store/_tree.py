# Copyright Red Hat
#
# treesync/store/_tree.py - Tree synchronisation versioned tree
#
# This file is part of the treesync project.
#
# SPDX-License-Identifier: Apache-2.0
"""
A versioned, content-addressed directory tree.

Each version is a commit object naming a root directory node and its
parent version. Mutations are staged in an in-memory working copy and
published as a single new version by ``commit()``.
"""
from typing import Dict, Iterator, List, Optional, Tuple, Union
from datetime import datetime
import threading
import logging
import json
import time

from treesync import (
    TREESYNC_SUBSYSTEM_STORE,
    ListingError,
    ReadError,
    RemoveError,
    TreeSyncNotFoundError,
    TreeSyncStoreError,
    WriteError,
    normalize_path,
)
from treesync.fsdiff.lister import Entry

from ._objects import ObjectStore

_log = logging.getLogger(__name__)

_log_debug = _log.debug
_log_info = _log.info
_log_warn = _log.warning
_log_error = _log.error

#: The ref holding the published version.
HEAD_REF = "head"

_NODE_TYPE_DIR = "dir"
_NODE_TYPE_FILE = "file"


def _log_debug_store(msg, *args, **kwargs):
    """A wrapper for store subsystem debug logs."""
    _log.debug(msg, *args, extra={"subsystem": TREESYNC_SUBSYSTEM_STORE}, **kwargs)


def _decode_json(store: ObjectStore, cid: str, what: str) -> dict:
    """
    Fetch ``cid`` from ``store`` and decode it as a JSON object.
    """
    try:
        value = json.loads(store.get(cid).decode("utf8"))
    except (UnicodeDecodeError, json.JSONDecodeError) as err:
        raise TreeSyncStoreError(f"Malformed {what} object {cid}: {err}") from err
    if not isinstance(value, dict):
        raise TreeSyncStoreError(f"Malformed {what} object {cid}: not a mapping")
    return value


def _encode_json(value: dict) -> bytes:
    return json.dumps(value, sort_keys=True, separators=(",", ":")).encode("utf8")


class _FileNode:
    """
    A file in the working copy.
    """

    __slots__ = ("cid", "size")

    def __init__(self, cid: str, size: int):
        self.cid = cid
        self.size = size


class _DirNode:
    """
    A directory in the working copy. Committed directories are loaded from
    the store on first access; ``cid`` is ``None`` while a directory holds
    uncommitted changes.
    """

    __slots__ = ("cid", "_entries", "_store")

    def __init__(
        self,
        store: ObjectStore,
        cid: Optional[str] = None,
        entries: Optional[Dict[str, "_Node"]] = None,
    ):
        self.cid = cid
        self._store = store
        self._entries = entries
        if cid is None and entries is None:
            self._entries = {}

    @property
    def entries(self) -> Dict[str, "_Node"]:
        if self._entries is None:
            self._entries = self._load()
        return self._entries

    def _load(self) -> Dict[str, "_Node"]:
        value = _decode_json(self._store, self.cid, "directory")
        if value.get("type") != _NODE_TYPE_DIR:
            raise TreeSyncStoreError(f"Object {self.cid} is not a directory node")
        entries: Dict[str, _Node] = {}
        try:
            for name, child in value["entries"].items():
                if child["type"] == _NODE_TYPE_DIR:
                    entries[name] = _DirNode(self._store, child["cid"])
                else:
                    entries[name] = _FileNode(child["cid"], int(child["size"]))
        except (KeyError, TypeError, ValueError, AttributeError) as err:
            raise TreeSyncStoreError(
                f"Malformed directory object {self.cid}: {err}"
            ) from err
        _log_debug_store("Loaded directory node %s (%d entries)", self.cid, len(entries))
        return entries


_Node = Union[_DirNode, _FileNode]


class VersionedTree:
    """
    A versioned directory tree over an ``ObjectStore``.

    Implements the ``TargetTree`` protocol. Paths are ``/``-separated and
    relative to the tree root; the empty string and ``"."`` name the root.
    """

    def __init__(
        self,
        store: ObjectStore,
        version: Optional[str] = None,
        ref_name: Optional[str] = HEAD_REF,
    ):
        """
        Initialise a new ``VersionedTree``.

        :param store: The object store holding the tree.
        :type store: ``ObjectStore``
        :param version: The version to open. Defaults to the version the
                        ``ref_name`` ref points at, or an empty tree.
        :type version: ``Optional[str]``
        :param ref_name: The ref advanced by ``commit()``, or ``None`` to
                         open the tree read-only.
        :type ref_name: ``Optional[str]``
        """
        self._store = store
        self._ref_name = ref_name
        self._lock = threading.RLock()
        if version is None and ref_name is not None:
            version = store.get_ref(ref_name)
        self._version: Optional[str] = version
        self._root: _DirNode = self._load_root(version)
        self._dirty = False

    def __repr__(self):
        return f"VersionedTree({self._store!r}, version={self._version!r})"

    @property
    def version(self) -> Optional[str]:
        """
        The published version identifier, or ``None`` for a tree that has
        never been committed.
        """
        return self._version

    @property
    def read_only(self) -> bool:
        """``True`` if this tree cannot be committed."""
        return self._ref_name is None

    @property
    def dirty(self) -> bool:
        """``True`` if there are staged, uncommitted mutations."""
        return self._dirty

    def _read_commit(self, version: str) -> dict:
        value = _decode_json(self._store, version, "commit")
        if "root" not in value or "parent" not in value:
            raise TreeSyncStoreError(f"Object {version} is not a commit")
        return value

    def _load_root(self, version: Optional[str]) -> _DirNode:
        if version is None:
            return _DirNode(self._store)
        return _DirNode(self._store, self._read_commit(version)["root"])

    @staticmethod
    def _split(path: str) -> List[str]:
        rel = normalize_path(path)
        return rel.split("/") if rel else []

    def _lookup(self, path: str) -> Optional[_Node]:
        node: _Node = self._root
        for part in self._split(path):
            if not isinstance(node, _DirNode):
                return None
            node = node.entries.get(part)
            if node is None:
                return None
        return node

    def _parents(self, path: str, parts: List[str], create: bool) -> List[_DirNode]:
        """
        Return the directory nodes from the root down to the parent of
        ``parts[-1]``, creating missing directories if ``create`` is set.
        """
        nodes = [self._root]
        for part in parts[:-1]:
            child = nodes[-1].entries.get(part)
            if child is None:
                if not create:
                    raise RemoveError(path, "No such file or directory")
                child = _DirNode(self._store)
                nodes[-1].entries[part] = child
            elif not isinstance(child, _DirNode):
                if create:
                    raise WriteError(path, f"'{part}' is not a directory")
                raise RemoveError(path, "No such file or directory")
            nodes.append(child)
        return nodes

    def _touch(self, nodes: List[_DirNode]):
        for node in nodes:
            node.cid = None
        self._dirty = True

    def list(self, path: str) -> List[Entry]:
        """
        List the directory at ``path``.

        :param path: The tree path to list.
        :type path: ``str``
        :returns: The directory entries sorted by name.
        :rtype: ``List[Entry]``
        """
        with self._lock:
            try:
                node = self._lookup(path)
                if node is None:
                    raise TreeSyncNotFoundError(path, "No such file or directory")
                if not isinstance(node, _DirNode):
                    raise ListingError(path, "Not a directory")
                entries = [
                    Entry(name, True)
                    if isinstance(child, _DirNode)
                    else Entry(name, False, child.cid, child.size)
                    for name, child in sorted(node.entries.items())
                ]
            except TreeSyncStoreError as err:
                raise ListingError(path, str(err)) from err
        _log_debug_store("Listed %d entries from target '%s'", len(entries), path)
        return entries

    def read(self, path: str) -> bytes:
        """
        Return the content of the file at ``path``.
        """
        with self._lock:
            try:
                node = self._lookup(path)
                if node is None:
                    raise ReadError(path, "No such file or directory")
                if isinstance(node, _DirNode):
                    raise ReadError(path, "Is a directory")
                return self._store.get(node.cid)
            except TreeSyncStoreError as err:
                raise ReadError(path, str(err)) from err

    def exists(self, path: str) -> bool:
        """
        Return ``True`` if ``path`` names a file or directory.
        """
        with self._lock:
            return self._lookup(path) is not None

    def is_dir(self, path: str) -> bool:
        """
        Return ``True`` if ``path`` names a directory.
        """
        with self._lock:
            return isinstance(self._lookup(path), _DirNode)

    def write(self, path: str, data: bytes, commit: bool = False):
        """
        Create or overwrite the file at ``path``, creating missing parent
        directories.

        :param path: The tree path to write.
        :type path: ``str``
        :param data: The file content.
        :type data: ``bytes``
        :param commit: Publish the change immediately.
        :type commit: ``bool``
        """
        parts = self._split(path)
        if not parts:
            raise WriteError(path, "Is a directory")
        if self.read_only:
            raise WriteError(path, "Tree is read-only")
        with self._lock:
            try:
                if isinstance(self._lookup(path), _DirNode):
                    raise WriteError(path, "Is a directory")
                cid = self._store.put(data)
                nodes = self._parents(path, parts, create=True)
            except TreeSyncStoreError as err:
                raise WriteError(path, str(err)) from err
            nodes[-1].entries[parts[-1]] = _FileNode(cid, len(data))
            self._touch(nodes)
            _log_debug_store("Staged write of '%s' (%s)", path, cid)
            if commit:
                self.commit()

    def make_directory(self, path: str, commit: bool = False):
        """
        Create the directory at ``path`` and any missing parents. Creating
        an existing directory is a no-op.
        """
        parts = self._split(path)
        if self.read_only:
            raise WriteError(path, "Tree is read-only")
        if not parts:
            return
        with self._lock:
            try:
                nodes = self._parents(path, parts, create=True)
                existing = nodes[-1].entries.get(parts[-1])
            except TreeSyncStoreError as err:
                raise WriteError(path, str(err)) from err
            if isinstance(existing, _FileNode):
                raise WriteError(path, "File exists")
            if existing is None:
                nodes[-1].entries[parts[-1]] = _DirNode(self._store)
                self._touch(nodes)
                _log_debug_store("Staged directory '%s'", path)
            if commit:
                self.commit()

    def remove_path(self, path: str, commit: bool = False):
        """
        Recursively remove the file or directory at ``path``. Removing the
        root empties the tree.
        """
        parts = self._split(path)
        if self.read_only:
            raise RemoveError(path, "Tree is read-only")
        with self._lock:
            if not parts:
                self._root = _DirNode(self._store)
                self._touch([self._root])
            else:
                try:
                    nodes = self._parents(path, parts, create=False)
                    if parts[-1] not in nodes[-1].entries:
                        raise RemoveError(path, "No such file or directory")
                except TreeSyncStoreError as err:
                    raise RemoveError(path, str(err)) from err
                del nodes[-1].entries[parts[-1]]
                self._touch(nodes)
            _log_debug_store("Staged removal of '%s'", path)
            if commit:
                self.commit()

    def _save(self, node: _DirNode) -> str:
        """
        Store ``node`` and any modified descendants, returning its CID.
        """
        if node.cid is not None:
            return node.cid
        entries = {}
        for name, child in node.entries.items():
            if isinstance(child, _DirNode):
                entries[name] = {
                    "type": _NODE_TYPE_DIR,
                    "cid": self._save(child),
                    "size": 0,
                }
            else:
                entries[name] = {
                    "type": _NODE_TYPE_FILE,
                    "cid": child.cid,
                    "size": child.size,
                }
        node.cid = self._store.put(
            _encode_json({"type": _NODE_TYPE_DIR, "entries": entries})
        )
        return node.cid

    def commit(self) -> Optional[str]:
        """
        Publish all staged mutations as one new version.

        :returns: The new version, or the current version if nothing was
                  staged.
        :rtype: ``Optional[str]``
        :raises TreeSyncStoreError: if the tree is read-only or the store
                                    cannot be updated.
        """
        with self._lock:
            if not self._dirty:
                _log_debug_store("Nothing to commit at version %s", self._version)
                return self._version
            if self.read_only:
                raise TreeSyncStoreError("Cannot commit a read-only tree")
            root_cid = self._save(self._root)
            version = self._store.put(
                _encode_json(
                    {
                        "root": root_cid,
                        "parent": self._version,
                        "timestamp": time.time(),
                    }
                )
            )
            self._store.set_ref(self._ref_name, version)
            _log_info("Committed version %s (parent %s)", version, self._version)
            self._version = version
            self._dirty = False
            return version

    def discard(self):
        """
        Drop all staged mutations, reverting to the published version.
        """
        with self._lock:
            if self._dirty:
                _log_debug_store("Discarding staged changes at %s", self._version)
            self._root = self._load_root(self._version)
            self._dirty = False

    def history(self) -> Iterator[Tuple[str, datetime]]:
        """
        Iterate over the published versions, newest first.

        :returns: An iterator yielding ``(version, timestamp)`` pairs.
        """
        version = self._version
        while version is not None:
            commit = self._read_commit(version)
            yield version, datetime.fromtimestamp(commit.get("timestamp", 0))
            version = commit["parent"]

    def open_version(self, version: str) -> "VersionedTree":
        """
        Open a read-only view of ``version``.

        :param version: A version identifier from ``history()``.
        :type version: ``str``
        :returns: A read-only ``VersionedTree``.
        :rtype: ``VersionedTree``
        """
        if not self._store.has(version):
            raise TreeSyncStoreError(f"Unknown version: {version}")
        return VersionedTree(self._store, version=version, ref_name=None)


__all__ = [
    "HEAD_REF",
    "VersionedTree",
]
