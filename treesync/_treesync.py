# Copyright Red Hat
#
# treesync/_treesync.py - Tree synchronisation global definitions
#
# This file is part of the treesync project.
#
# SPDX-License-Identifier: Apache-2.0
"""
Global definitions for the top-level treesync package.
"""
from typing import Optional
import posixpath
import threading
import logging

_log = logging.getLogger("treesync")

_log_debug = _log.debug
_log_info = _log.info
_log_warn = _log.warning
_log_error = _log.error

# Treesync debugging subsystem mask
TREESYNC_DEBUG_FSDIFF = 1
TREESYNC_DEBUG_APPLY = 2
TREESYNC_DEBUG_STORE = 4
TREESYNC_DEBUG_COMMAND = 8
TREESYNC_DEBUG_ALL = (
    TREESYNC_DEBUG_FSDIFF
    | TREESYNC_DEBUG_APPLY
    | TREESYNC_DEBUG_STORE
    | TREESYNC_DEBUG_COMMAND
)

# Treesync debugging subsystem names
TREESYNC_SUBSYSTEM_FSDIFF = "treesync.fsdiff"
TREESYNC_SUBSYSTEM_APPLY = "treesync.apply"
TREESYNC_SUBSYSTEM_STORE = "treesync.store"
TREESYNC_SUBSYSTEM_COMMAND = "treesync.command"

_DEBUG_MASK_TO_SUBSYSTEM = {
    TREESYNC_DEBUG_FSDIFF: TREESYNC_SUBSYSTEM_FSDIFF,
    TREESYNC_DEBUG_APPLY: TREESYNC_SUBSYSTEM_APPLY,
    TREESYNC_DEBUG_STORE: TREESYNC_SUBSYSTEM_STORE,
    TREESYNC_DEBUG_COMMAND: TREESYNC_SUBSYSTEM_COMMAND,
}

_debug_subsystems = set()

#: Name of the file linking a local directory to a target tree path.
LINK_FILE_NAME = ".treesync"

#: Default name of the per-directory ignore file.
IGNORE_FILE_NAME = ".treesyncignore"

#: Prefix for content identifiers.
CID_PREFIX = "sha256:"

#: Name of the root node of every Delta tree.
ROOT_NAME = "."


class SubsystemFilter(logging.Filter):
    """
    Filters DEBUG records based on a set of enabled subsystem names.
    Non-DEBUG records or DEBUG records without a 'subsystem' attribute
    are always passed through.
    """

    def __init__(self, name=""):
        super().__init__(name)
        self.enabled_subsystems = set(_debug_subsystems)

    def filter(self, record):
        if record.levelno != logging.DEBUG:
            return True

        if not hasattr(record, "subsystem"):
            return True

        return record.subsystem in self.enabled_subsystems

    def set_debug_subsystems(self, subsystems):
        """Sets the collection of subsystems to allow."""
        self.enabled_subsystems = set(subsystems)


def get_debug_mask():
    """
    Return the current debug mask for the ``treesync`` package.

    :returns: The current debug mask value
    :rtype: int
    """
    enabled_subsystems = set(_debug_subsystems)
    treesync_log = logging.getLogger("treesync")

    for handler in treesync_log.handlers:
        for f in handler.filters:
            if isinstance(f, SubsystemFilter):
                enabled_subsystems.update(f.enabled_subsystems)

    mask_map = {v: k for k, v in _DEBUG_MASK_TO_SUBSYSTEM.items()}
    mask = 0
    for subsystem_name in enabled_subsystems:
        mask |= mask_map.get(subsystem_name, 0)
    return mask


def set_debug_mask(mask):
    """
    Set the debug mask for the ``treesync`` package.

    :param mask: the logical OR of the ``TREESYNC_DEBUG_*``
                 values to log.
    :rtype: None
    """
    # pylint: disable=global-statement
    global _debug_subsystems

    if mask < 0 or mask > TREESYNC_DEBUG_ALL:
        raise ValueError(f"Invalid treesync debug mask: {mask}")

    enabled_subsystems = []
    for flag, subsystem_name in _DEBUG_MASK_TO_SUBSYSTEM.items():
        if mask & flag:
            enabled_subsystems.append(subsystem_name)

    treesync_log = logging.getLogger("treesync")
    for handler in treesync_log.handlers:
        for f in handler.filters:
            if isinstance(f, SubsystemFilter):
                f.set_debug_subsystems(enabled_subsystems)

    _debug_subsystems = set(enabled_subsystems)


def join_path(base: str, name: str) -> str:
    """
    Join a tree path and an entry name.

    Tree paths are POSIX style and relative to the tree root; the empty
    string and ``"."`` both name the root itself.

    :param base: The parent path.
    :type base: ``str``
    :param name: The entry name to append.
    :type name: ``str``
    :returns: The joined path.
    :rtype: ``str``
    """
    base = normalize_path(base)
    if not base:
        return name
    return posixpath.join(base, name)


def normalize_path(path: Optional[str]) -> str:
    """
    Normalise a tree path: strip leading and trailing separators and
    collapse ``"."`` to the empty string (the tree root).

    :param path: The path to normalise.
    :type path: ``Optional[str]``
    :returns: The normalised path.
    :rtype: ``str``
    """
    if not path:
        return ""
    path = posixpath.normpath(path.strip("/"))
    if path == ".":
        return ""
    if path == ".." or path.startswith("../"):
        raise TreeSyncPathError(f"Path escapes tree root: {path}")
    return path


class CancelToken:
    """
    A cancellation signal shared between the caller and a running diff or
    apply operation. Operations check the token between steps and never
    in the middle of a mutation.
    """

    def __init__(self):
        self._event = threading.Event()

    def cancel(self):
        """Request cancellation."""
        self._event.set()

    @property
    def cancelled(self) -> bool:
        """``True`` once ``cancel()`` has been called."""
        return self._event.is_set()

    def check(self, where: str = ""):
        """
        Raise ``TreeSyncCancelledError`` if cancellation was requested.

        :param where: A description of the step about to run.
        :type where: ``str``
        """
        if self._event.is_set():
            raise TreeSyncCancelledError(
                f"Operation cancelled{' before ' + where if where else ''}"
            )


#
# Treesync exception types
#


class TreeSyncError(Exception):
    """
    Base class for tree synchronisation errors.
    """


class TreeSyncPathError(TreeSyncError):
    """
    An invalid tree path was supplied.
    """


class ListingError(TreeSyncError):
    """
    A directory could not be enumerated.
    """

    def __init__(self, path: str, reason: str):
        """
        Initialise a new ``ListingError`` exception.

        :param path: The path that could not be listed.
        :param reason: A description of the failure.
        """
        self.path, self.reason = path, reason
        super().__init__(f"Cannot list '{path or ROOT_NAME}': {reason}")


class TreeSyncNotFoundError(ListingError):
    """
    The requested path does not exist.
    """


class TreeSyncAccessError(ListingError):
    """
    Access to the requested path was denied.
    """


class ReadError(TreeSyncError):
    """
    The content of a file could not be read.
    """

    def __init__(self, path: str, reason: str):
        self.path, self.reason = path, reason
        super().__init__(f"Cannot read '{path}': {reason}")


class WriteError(TreeSyncError):
    """
    A write or directory creation was rejected by the target tree.
    """

    def __init__(self, path: str, reason: str):
        self.path, self.reason = path, reason
        super().__init__(f"Cannot write '{path}': {reason}")


class RemoveError(TreeSyncError):
    """
    A removal was rejected by the target tree.
    """

    def __init__(self, path: str, reason: str):
        self.path, self.reason = path, reason
        super().__init__(f"Cannot remove '{path}': {reason}")


class TypeConflictError(TreeSyncError):
    """
    The same name is a file on one side of a comparison and a directory on
    the other.
    """

    def __init__(self, path: str, old_type, new_type):
        """
        Initialise a new ``TypeConflictError`` exception.

        :param path: The local path of the conflicting entry.
        :param old_type: The ``EntryType`` on the target side.
        :param new_type: The ``EntryType`` on the local side.
        """
        self.path, self.old_type, self.new_type = path, old_type, new_type
        super().__init__(
            f"Type conflict at '{path}': {old_type.value} in target, "
            f"{new_type.value} locally"
        )


class ApplyError(TreeSyncError):
    """
    A mutation failed while applying a delta. The target tree version is
    unchanged.
    """

    def __init__(self, mutation: str, path: str, version: Optional[str], reason):
        """
        Initialise a new ``ApplyError`` exception.

        :param mutation: The failing mutation ("write", "mkdir", "remove").
        :param path: The target path of the failing mutation.
        :param version: The (unchanged) current version of the target tree.
        :param reason: The underlying error.
        """
        self.mutation, self.path, self.version = mutation, path, version
        self.reason = reason
        super().__init__(
            f"Failed to {mutation} '{path}': {reason} "
            f"(version {version or 'none'} is still current)"
        )


class TreeSyncCancelledError(TreeSyncError):
    """
    The operation was cancelled by the caller.
    """


class TreeSyncStateError(TreeSyncError):
    """
    A link, state or configuration file is missing or invalid.
    """


class TreeSyncStoreError(TreeSyncError):
    """
    The object store is missing an object or holds a corrupt one.
    """


__all__ = [
    # Debug logging - subsystem name interface
    "SubsystemFilter",
    "TREESYNC_SUBSYSTEM_FSDIFF",
    "TREESYNC_SUBSYSTEM_APPLY",
    "TREESYNC_SUBSYSTEM_STORE",
    "TREESYNC_SUBSYSTEM_COMMAND",
    # Debug logging - mask interface
    "TREESYNC_DEBUG_FSDIFF",
    "TREESYNC_DEBUG_APPLY",
    "TREESYNC_DEBUG_STORE",
    "TREESYNC_DEBUG_COMMAND",
    "TREESYNC_DEBUG_ALL",
    "set_debug_mask",
    "get_debug_mask",
    # Constants
    "LINK_FILE_NAME",
    "IGNORE_FILE_NAME",
    "CID_PREFIX",
    "ROOT_NAME",
    # Paths and cancellation
    "join_path",
    "normalize_path",
    "CancelToken",
    # Exceptions
    "TreeSyncError",
    "TreeSyncPathError",
    "ListingError",
    "TreeSyncNotFoundError",
    "TreeSyncAccessError",
    "ReadError",
    "WriteError",
    "RemoveError",
    "TypeConflictError",
    "ApplyError",
    "TreeSyncCancelledError",
    "TreeSyncStateError",
    "TreeSyncStoreError",
]
