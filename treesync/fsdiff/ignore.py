# Copyright Red Hat
#
# treesync/fsdiff/ignore.py - Tree synchronisation ignore files
#
# This file is part of the treesync project.
#
# SPDX-License-Identifier: Apache-2.0
"""
Per-directory ignore file support.

An ignore file holds one glob pattern per line. Patterns match entry base
names only (``fnmatch`` semantics) and apply to the directory containing
the ignore file. Blank lines and lines starting with ``#`` are skipped; a
pattern ending in ``/`` only matches directories.
"""
from typing import Iterable, Optional, Sequence, Tuple
from fnmatch import fnmatchcase
import logging

from treesync import (
    LINK_FILE_NAME,
    TREESYNC_SUBSYSTEM_FSDIFF,
    ListingError,
    ReadError,
    join_path,
)

from .lister import Entry, ReadableTree

_log = logging.getLogger(__name__)

_log_debug = _log.debug
_log_info = _log.info
_log_warn = _log.warning
_log_error = _log.error


def _log_debug_fsdiff(msg, *args, **kwargs):
    """A wrapper for fsdiff subsystem debug logs."""
    _log.debug(msg, *args, extra={"subsystem": TREESYNC_SUBSYSTEM_FSDIFF}, **kwargs)


def parse_patterns(text: str) -> Tuple[str, ...]:
    """
    Parse the content of an ignore file into a tuple of patterns.

    :param text: The ignore file content.
    :type text: ``str``
    :returns: The patterns in file order.
    :rtype: ``Tuple[str, ...]``
    """
    patterns = []
    for line in text.splitlines():
        line = line.strip()
        if not line or line.startswith("#"):
            continue
        patterns.append(line)
    return tuple(patterns)


class IgnoreFilter:
    """
    Predicate excluding entry names from comparison.
    """

    def __init__(
        self,
        patterns: Iterable[str] = (),
        reserved_names: Iterable[str] = (),
    ):
        """
        Initialise a new ``IgnoreFilter``.

        :param patterns: Glob patterns matched against entry base names.
        :type patterns: ``Iterable[str]``
        :param reserved_names: Names that are always excluded.
        :type reserved_names: ``Iterable[str]``
        """
        self.patterns: Tuple[str, ...] = tuple(patterns)
        self.reserved_names = frozenset(reserved_names)

    def __repr__(self):
        return (
            f"IgnoreFilter(patterns={self.patterns!r}, "
            f"reserved_names={sorted(self.reserved_names)!r})"
        )

    def excluded(self, name: str, is_dir: bool = False) -> bool:
        """
        Return ``True`` if the entry ``name`` is excluded from comparison.

        :param name: The entry base name.
        :type name: ``str``
        :param is_dir: ``True`` if the entry is a directory.
        :type is_dir: ``bool``
        :rtype: ``bool``
        """
        if name in self.reserved_names:
            return True
        for pattern in self.patterns:
            if pattern.endswith("/"):
                if is_dir and fnmatchcase(name, pattern.rstrip("/")):
                    return True
            elif fnmatchcase(name, pattern):
                return True
        return False

    def filter(self, entries: Sequence[Entry]) -> Sequence[Entry]:
        """
        Return ``entries`` without the excluded ones.
        """
        return [e for e in entries if not self.excluded(e.name, e.is_dir)]

    @classmethod
    def from_tree(
        cls,
        tree: ReadableTree,
        path: str,
        entries: Sequence[Entry],
        ignore_file_name: str,
        exclude_patterns: Iterable[str] = (),
        reserved_names: Optional[Iterable[str]] = None,
    ) -> "IgnoreFilter":
        """
        Build the ``IgnoreFilter`` for the directory at ``path``.

        The ignore file is read only if it appears in ``entries`` (the
        directory's listing), so no extra listing is needed.

        :param tree: The tree holding the directory (the local side).
        :type tree: ``ReadableTree``
        :param path: The directory path.
        :type path: ``str``
        :param entries: The directory listing.
        :type entries: ``Sequence[Entry]``
        :param ignore_file_name: The reserved ignore file name.
        :type ignore_file_name: ``str``
        :param exclude_patterns: Patterns excluded at every level.
        :type exclude_patterns: ``Iterable[str]``
        :param reserved_names: Extra always-excluded names (defaults to the
                               link file name).
        :type reserved_names: ``Optional[Iterable[str]]``
        :returns: A new ``IgnoreFilter``.
        :rtype: ``IgnoreFilter``
        """
        if reserved_names is None:
            reserved_names = (LINK_FILE_NAME,)
        reserved = {ignore_file_name, *reserved_names}
        patterns = list(exclude_patterns)

        if any(e.name == ignore_file_name and not e.is_dir for e in entries):
            ignore_path = join_path(path, ignore_file_name)
            try:
                text = tree.read(ignore_path).decode("utf8", errors="replace")
            except ReadError as err:
                raise ListingError(path, f"Cannot read ignore file: {err}") from err
            file_patterns = parse_patterns(text)
            _log_debug_fsdiff(
                "Loaded %d ignore patterns from '%s'", len(file_patterns), ignore_path
            )
            patterns.extend(file_patterns)

        return cls(patterns, reserved)


__all__ = [
    "IgnoreFilter",
    "parse_patterns",
]
