# Copyright Red Hat
#
# treesync/store/_objects.py - Tree synchronisation object stores
#
# This file is part of the treesync project.
#
# SPDX-License-Identifier: Apache-2.0
"""
Content-addressed object stores.

Objects are immutable byte strings identified by the ``"sha256:<hex>"``
content identifier (CID) of their content. Stores also hold named refs
pointing at a CID; the ``VersionedTree`` head ref is the only mutable
state.
"""
from typing import Dict, Optional, Protocol, runtime_checkable
from stat import S_ISDIR, S_ISLNK
import threading
import logging
import os
import re

import zstandard as zstd

from treesync import (
    CID_PREFIX,
    TREESYNC_SUBSYSTEM_STORE,
    TreeSyncStoreError,
)
from treesync.fsdiff.lister import content_id

_log = logging.getLogger(__name__)

_log_debug = _log.debug
_log_info = _log.info
_log_warn = _log.warning
_log_error = _log.error

#: Store directory file mode
_STORE_DIR_MODE: int = 0o700

#: Compressed object file extension
_OBJECT_EXTENSION: str = "zst"

_CID_RE = re.compile(r"^sha256:[0-9a-f]{64}$")
_REF_RE = re.compile(r"^[A-Za-z0-9_.-]+$")


def _log_debug_store(msg, *args, **kwargs):
    """A wrapper for store subsystem debug logs."""
    _log.debug(msg, *args, extra={"subsystem": TREESYNC_SUBSYSTEM_STORE}, **kwargs)


def _check_cid(cid: str):
    """
    Raise ``TreeSyncStoreError`` if ``cid`` is not a valid content
    identifier.
    """
    if not isinstance(cid, str) or not _CID_RE.match(cid):
        raise TreeSyncStoreError(f"Invalid content identifier: {cid!r}")


def _check_ref(name: str):
    """
    Raise ``TreeSyncStoreError`` if ``name`` is not a valid ref name.
    """
    if not _REF_RE.match(name) or name.startswith("."):
        raise TreeSyncStoreError(f"Invalid ref name: {name!r}")


@runtime_checkable
class ObjectStore(Protocol):
    """
    The capability surface of a content-addressed object store.
    """

    def put(self, data: bytes) -> str:
        """Store ``data`` and return its CID."""

    def get(self, cid: str) -> bytes:
        """Return the object ``cid`` or raise ``TreeSyncStoreError``."""

    def has(self, cid: str) -> bool:
        """Return ``True`` if the object ``cid`` is present."""

    def get_ref(self, name: str) -> Optional[str]:
        """Return the CID the ref ``name`` points at, or ``None``."""

    def set_ref(self, name: str, cid: str) -> None:
        """Point the ref ``name`` at ``cid``."""


class MemoryStore:
    """
    An object store held in memory.
    """

    def __init__(self):
        self._objects: Dict[str, bytes] = {}
        self._refs: Dict[str, str] = {}
        self._lock = threading.Lock()

    def __len__(self):
        return len(self._objects)

    def put(self, data: bytes) -> str:
        cid = content_id(data)
        with self._lock:
            self._objects.setdefault(cid, bytes(data))
        return cid

    def get(self, cid: str) -> bytes:
        with self._lock:
            try:
                return self._objects[cid]
            except KeyError as err:
                raise TreeSyncStoreError(f"Object not found: {cid}") from err

    def has(self, cid: str) -> bool:
        with self._lock:
            return cid in self._objects

    def get_ref(self, name: str) -> Optional[str]:
        with self._lock:
            return self._refs.get(name)

    def set_ref(self, name: str, cid: str) -> None:
        _check_ref(name)
        _check_cid(cid)
        with self._lock:
            self._refs[name] = cid


def _check_store_dir(dirpath: str, mode: int, name: str) -> str:
    """
    Check for the presence of a store directory and create it if
    necessary.

    :param dirpath: Path to the directory
    :param mode: Permissions mode for the directory
    :param name: Human-readable name for error messages
    :returns: The directory path
    """
    if os.path.lexists(dirpath):
        try:
            st = os.lstat(dirpath)
        except OSError as err:
            raise TreeSyncStoreError(f"Failed to stat {name} {dirpath}: {err}") from err
        if S_ISLNK(st.st_mode):
            raise TreeSyncStoreError(f"{name} {dirpath} is a symlink (not secure)")
        if not S_ISDIR(st.st_mode):
            raise TreeSyncStoreError(f"{name} {dirpath} exists but is not a directory")

    try:
        os.makedirs(dirpath, mode=mode, exist_ok=True)
    except OSError as err:
        raise TreeSyncStoreError(f"Failed to create {name} {dirpath}: {err}") from err

    return dirpath


class DirectoryStore:
    """
    An object store kept in a local directory.

    Each object is stored zstd-compressed under
    ``objects/<first two hex digits>/<remaining hex digits>.zst``; refs
    are small text files under ``refs/``. All files are written to a
    temporary name and moved into place with ``os.replace()``.
    """

    def __init__(self, path: str, level: int = 3):
        """
        Initialise a new ``DirectoryStore`` rooted at ``path``.

        :param path: The store directory (created if missing).
        :type path: ``str``
        :param level: The zstd compression level.
        :type level: ``int``
        """
        self.path: str = os.path.abspath(os.path.expanduser(path))
        self._objects_dir = os.path.join(self.path, "objects")
        self._refs_dir = os.path.join(self.path, "refs")
        self._level = level
        self._lock = threading.Lock()

        _check_store_dir(self.path, _STORE_DIR_MODE, "store dir")
        _check_store_dir(self._objects_dir, _STORE_DIR_MODE, "objects dir")
        _check_store_dir(self._refs_dir, _STORE_DIR_MODE, "refs dir")
        _log_debug_store("Opened directory store at %s", self.path)

    def __repr__(self):
        return f"DirectoryStore({self.path!r})"

    def _object_path(self, cid: str) -> str:
        _check_cid(cid)
        digest = cid[len(CID_PREFIX) :]
        return os.path.join(
            self._objects_dir, digest[:2], f"{digest[2:]}.{_OBJECT_EXTENSION}"
        )

    @staticmethod
    def _write_file(path: str, data: bytes):
        """
        Write ``data`` to ``path`` atomically.
        """
        tmp_path = f"{path}.tmp.{os.getpid()}.{threading.get_ident()}"
        try:
            with open(tmp_path, "wb") as fp:
                fp.write(data)
                fp.flush()
                os.fsync(fp.fileno())
            os.replace(tmp_path, path)
        except OSError:
            try:
                os.unlink(tmp_path)
            except FileNotFoundError:
                pass
            raise

    def put(self, data: bytes) -> str:
        cid = content_id(data)
        obj_path = self._object_path(cid)
        if os.path.exists(obj_path):
            return cid
        try:
            os.makedirs(os.path.dirname(obj_path), mode=_STORE_DIR_MODE, exist_ok=True)
            cctx = zstd.ZstdCompressor(level=self._level)
            self._write_file(obj_path, cctx.compress(data))
        except (OSError, zstd.ZstdError) as err:
            raise TreeSyncStoreError(f"Failed to store object {cid}: {err}") from err
        _log_debug_store("Stored object %s (%d bytes)", cid, len(data))
        return cid

    def get(self, cid: str) -> bytes:
        obj_path = self._object_path(cid)
        try:
            with open(obj_path, "rb") as fp:
                compressed = fp.read()
        except FileNotFoundError as err:
            raise TreeSyncStoreError(f"Object not found: {cid}") from err
        except OSError as err:
            raise TreeSyncStoreError(f"Failed to read object {cid}: {err}") from err

        try:
            data = zstd.ZstdDecompressor().decompress(compressed)
        except zstd.ZstdError as err:
            raise TreeSyncStoreError(f"Corrupt object {cid}: {err}") from err

        if content_id(data) != cid:
            raise TreeSyncStoreError(f"Corrupt object {cid}: content mismatch")
        return data

    def has(self, cid: str) -> bool:
        return os.path.exists(self._object_path(cid))

    def get_ref(self, name: str) -> Optional[str]:
        _check_ref(name)
        try:
            with open(os.path.join(self._refs_dir, name), "r", encoding="utf8") as fp:
                cid = fp.read().strip()
        except FileNotFoundError:
            return None
        except OSError as err:
            raise TreeSyncStoreError(f"Failed to read ref {name}: {err}") from err
        _check_cid(cid)
        return cid

    def set_ref(self, name: str, cid: str) -> None:
        _check_ref(name)
        _check_cid(cid)
        with self._lock:
            try:
                self._write_file(
                    os.path.join(self._refs_dir, name), f"{cid}\n".encode("utf8")
                )
            except OSError as err:
                raise TreeSyncStoreError(f"Failed to write ref {name}: {err}") from err
        _log_debug_store("Updated ref %s -> %s", name, cid)


__all__ = [
    "DirectoryStore",
    "MemoryStore",
    "ObjectStore",
]
