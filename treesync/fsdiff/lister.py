# Copyright Red Hat
#
# treesync/fsdiff/lister.py - Tree synchronisation entry listing
#
# This file is part of the treesync project.
#
# SPDX-License-Identifier: Apache-2.0
"""
Entry listing for both sides of a tree comparison.

The local file system and the versioned target tree are accessed through
the ``ReadableTree`` and ``TargetTree`` protocols. ``LocalTree`` implements
``ReadableTree`` over an ordinary directory; ``treesync.store.VersionedTree``
implements ``TargetTree``.
"""
from typing import Dict, List, Optional, Protocol, Tuple, runtime_checkable
from dataclasses import dataclass
from hashlib import sha256
import logging
import errno
import stat
import os

from treesync import (
    CID_PREFIX,
    TREESYNC_SUBSYSTEM_FSDIFF,
    ListingError,
    ReadError,
    TreeSyncAccessError,
    TreeSyncNotFoundError,
    join_path,
    normalize_path,
)

from .difftypes import EntryType

_log = logging.getLogger(__name__)

_log_debug = _log.debug
_log_info = _log.info
_log_warn = _log.warning
_log_error = _log.error

#: Chunk size for content hashing.
_HASH_CHUNK_SIZE = 65536


def _log_debug_fsdiff(msg, *args, **kwargs):
    """A wrapper for fsdiff subsystem debug logs."""
    _log.debug(msg, *args, extra={"subsystem": TREESYNC_SUBSYSTEM_FSDIFF}, **kwargs)


def content_id(data: bytes) -> str:
    """
    Return the content identifier for ``data``.

    :param data: The content to identify.
    :type data: ``bytes``
    :returns: A ``"sha256:<hex>"`` string.
    :rtype: ``str``
    """
    return CID_PREFIX + sha256(data, usedforsecurity=False).hexdigest()


@dataclass(frozen=True)
class Entry:
    """
    Representation of a single directory entry for comparison.
    """

    #: The base name of the entry
    name: str
    #: ``True`` if the entry is a directory
    is_dir: bool
    #: Opaque comparable content summary (``None`` for directories)
    fingerprint: Optional[str] = None
    #: Content size in bytes (0 for directories)
    size: int = 0

    @property
    def entry_type(self) -> EntryType:
        """
        The ``EntryType`` of this entry.
        """
        return EntryType.DIRECTORY if self.is_dir else EntryType.FILE


@runtime_checkable
class ReadableTree(Protocol):
    """
    The read-only capability surface shared by both sides of a comparison.
    """

    def list(self, path: str) -> List[Entry]:
        """
        List the entries of the directory at ``path`` sorted by name.

        :raises TreeSyncNotFoundError: if ``path`` does not exist.
        :raises ListingError: if ``path`` cannot be enumerated.
        """

    def read(self, path: str) -> bytes:
        """
        Return the content of the file at ``path``.

        :raises ReadError: if the content cannot be read.
        """


@runtime_checkable
class TargetTree(ReadableTree, Protocol):
    """
    The capability surface of a versioned target tree.

    Mutations made with ``commit=False`` are staged; ``commit()`` publishes
    every staged mutation as a single new version and ``discard()`` drops
    them, leaving the published version untouched.
    """

    @property
    def version(self) -> Optional[str]:
        """The current published version identifier."""

    def write(self, path: str, data: bytes, commit: bool = False) -> None:
        """Create or overwrite the file at ``path``."""

    def make_directory(self, path: str, commit: bool = False) -> None:
        """Create the directory at ``path``."""

    def remove_path(self, path: str, commit: bool = False) -> None:
        """Recursively remove the entry at ``path``."""

    def commit(self) -> Optional[str]:
        """Publish staged mutations and return the new version."""

    def discard(self) -> None:
        """Drop staged mutations."""


class LocalTree:
    """
    Read-only access to a local directory tree.

    Paths passed to ``list()`` and ``read()`` are relative to ``root``.
    """

    def __init__(self, root: str, follow_symlinks: bool = False):
        """
        Initialise a new ``LocalTree`` object.

        :param root: The local directory that tree paths are relative to.
        :type root: ``str``
        :param follow_symlinks: Follow symbolic links instead of skipping
                                them.
        :type follow_symlinks: ``bool``
        """
        self.root: str = os.path.abspath(root)
        self.follow_symlinks: bool = follow_symlinks
        # full path -> (size, mtime_ns, fingerprint)
        self._hash_cache: Dict[str, Tuple[int, int, str]] = {}

    def __repr__(self):
        return f"LocalTree({self.root!r})"

    def _full_path(self, path: str) -> str:
        """
        Map a tree path to a full local path.
        """
        rel = normalize_path(path)
        return os.path.join(self.root, rel) if rel else self.root

    def _fingerprint(self, full_path: str, file_stat: os.stat_result) -> str:
        """
        Return the content fingerprint for ``full_path``, reusing a cached
        value while the file size and modification time are unchanged.
        """
        key = (file_stat.st_size, file_stat.st_mtime_ns)
        cached = self._hash_cache.get(full_path)
        if cached and cached[:2] == key:
            return cached[2]

        hasher = sha256(usedforsecurity=False)
        with open(full_path, "rb") as f:
            for chunk in iter(lambda: f.read(_HASH_CHUNK_SIZE), b""):
                hasher.update(chunk)
        fingerprint = CID_PREFIX + hasher.hexdigest()
        self._hash_cache[full_path] = (*key, fingerprint)
        return fingerprint

    def list(self, path: str) -> List[Entry]:
        """
        List the entries of the local directory at ``path``.

        Symbolic links are skipped unless ``follow_symlinks`` is set, and
        entries that are neither regular files nor directories are always
        skipped.

        :param path: The tree path to list.
        :type path: ``str``
        :returns: The directory entries sorted by name.
        :rtype: ``List[Entry]``
        """
        full_path = self._full_path(path)
        try:
            it = os.scandir(full_path)
        except FileNotFoundError as err:
            raise TreeSyncNotFoundError(path, "No such file or directory") from err
        except PermissionError as err:
            raise TreeSyncAccessError(path, "Permission denied") from err
        except OSError as err:
            if err.errno == errno.ENOTDIR:
                raise ListingError(path, "Not a directory") from err
            raise ListingError(path, err.strerror or str(err)) from err

        entries = []
        with it:
            for dirent in it:
                try:
                    entry = self._list_entry(dirent)
                except PermissionError as err:
                    raise TreeSyncAccessError(
                        join_path(path, dirent.name), "Permission denied"
                    ) from err
                except OSError as err:
                    raise ListingError(
                        join_path(path, dirent.name), err.strerror or str(err)
                    ) from err
                if entry is not None:
                    entries.append(entry)

        entries.sort(key=lambda e: e.name)
        _log_debug_fsdiff("Listed %d entries from local '%s'", len(entries), full_path)
        return entries

    def _list_entry(self, dirent: os.DirEntry) -> Optional[Entry]:
        """
        Build the ``Entry`` for one directory entry, or return ``None`` if
        the entry is skipped. An entry removed while the directory is being
        listed is skipped.
        """
        if dirent.is_symlink() and not self.follow_symlinks:
            _log_debug_fsdiff("Skipping symbolic link '%s'", dirent.path)
            return None
        try:
            dirent_stat = dirent.stat(follow_symlinks=True)
        except FileNotFoundError:
            _log_debug_fsdiff("Skipping dangling entry '%s'", dirent.path)
            return None
        if stat.S_ISDIR(dirent_stat.st_mode):
            return Entry(dirent.name, True)
        if not stat.S_ISREG(dirent_stat.st_mode):
            _log_debug_fsdiff("Skipping special file '%s'", dirent.path)
            return None
        try:
            fingerprint = self._fingerprint(dirent.path, dirent_stat)
        except FileNotFoundError:
            _log_debug_fsdiff("Skipping vanished file '%s'", dirent.path)
            return None
        return Entry(dirent.name, False, fingerprint, dirent_stat.st_size)

    def read(self, path: str) -> bytes:
        """
        Return the content of the local file at ``path``.

        :param path: The tree path to read.
        :type path: ``str``
        :returns: The file content.
        :rtype: ``bytes``
        """
        try:
            with open(self._full_path(path), "rb") as f:
                return f.read()
        except OSError as err:
            raise ReadError(path, err.strerror or str(err)) from err


__all__ = [
    "Entry",
    "LocalTree",
    "ReadableTree",
    "TargetTree",
    "content_id",
]
