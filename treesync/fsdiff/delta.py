# Copyright Red Hat
#
# treesync/fsdiff/delta.py - Tree synchronisation delta trees
#
# This file is part of the treesync project.
#
# SPDX-License-Identifier: Apache-2.0
"""
Delta tree model and shared traversal helpers.
"""
from typing import (
    Any,
    Callable,
    Dict,
    Iterator,
    List,
    Mapping,
    Optional,
    Tuple,
    TypeVar,
)
from concurrent.futures import Executor, FIRST_EXCEPTION, wait
from dataclasses import dataclass, field
from types import MappingProxyType
from json import dumps
import logging

from treesync import ROOT_NAME, join_path

from .difftypes import DeltaKind, EntryType

_log = logging.getLogger(__name__)

_log_debug = _log.debug
_log_info = _log.info
_log_warn = _log.warning
_log_error = _log.error

T = TypeVar("T")
R = TypeVar("R")


def walk_sorted(
    children: Mapping[str, T],
    action: Callable[[str, T], R],
    executor: Optional[Executor] = None,
) -> List[R]:
    """
    Call ``action(name, value)`` for each item of a name-indexed mapping in
    ascending name order and return the results in the same order.

    If ``executor`` is given the calls are submitted to it and may run
    concurrently; results are still returned in name order. The first
    exception raised by any call is re-raised once the remaining pending
    calls have been cancelled or have finished.

    :param children: The mapping to visit.
    :type children: ``Mapping[str, T]``
    :param action: The per-item callable.
    :type action: ``Callable[[str, T], R]``
    :param executor: An optional executor for concurrent visits.
    :type executor: ``Optional[Executor]``
    :returns: The results of ``action`` in ascending name order.
    :rtype: ``List[R]``
    """
    names = sorted(children)
    if executor is None or len(names) < 2:
        return [action(name, children[name]) for name in names]

    futures = [executor.submit(action, name, children[name]) for name in names]
    done, pending = wait(futures, return_when=FIRST_EXCEPTION)
    for future in pending:
        future.cancel()
    for future in futures:
        if future in done and future.exception() is not None:
            # Let in-flight work drain before surfacing the error.
            wait(pending)
            raise future.exception()
    return [future.result() for future in futures]


def rollup(children: Mapping[str, "Delta"]) -> DeltaKind:
    """
    Compute the kind of a directory present on both sides from its
    children.

    :param children: The directory's child deltas.
    :type children: ``Mapping[str, Delta]``
    :returns: ``DeltaKind.UNCHANGED`` if every child is unchanged (or there
              are no children) and ``DeltaKind.CHANGED`` otherwise.
    :rtype: ``DeltaKind``
    """
    if all(child.kind == DeltaKind.UNCHANGED for child in children.values()):
        return DeltaKind.UNCHANGED
    return DeltaKind.CHANGED


@dataclass(frozen=True)
class Delta:
    """
    A node in a delta tree mirroring the file system hierarchy.

    ``Delta`` objects are immutable: ``children`` is exposed as a read-only
    mapping ordered by name.
    """

    #: The difference classification for this entry.
    kind: DeltaKind
    #: The base name of this entry (``"."`` for the root).
    name: str
    #: ``True`` if this entry is a directory on the side it is synced from.
    is_dir: bool = False
    #: Child deltas indexed by name.
    children: Mapping[str, "Delta"] = field(default_factory=dict)
    #: ``(old_type, new_type)`` for ``DeltaKind.REPLACED`` entries.
    replaced: Optional[Tuple[EntryType, EntryType]] = None

    def __post_init__(self):
        if (self.kind == DeltaKind.REPLACED) != (self.replaced is not None):
            raise ValueError(
                f"Delta '{self.name}': 'replaced' must be set if and only if "
                f"kind is {DeltaKind.REPLACED.value} (kind={self.kind.value})"
            )
        if self.children and not self.is_dir:
            raise ValueError(f"Delta '{self.name}': file entries have no children")
        ordered = {name: self.children[name] for name in sorted(self.children)}
        object.__setattr__(self, "children", MappingProxyType(ordered))

    def __str__(self) -> str:
        """
        Return a string representation of this ``Delta``.

        :returns: One line per changed path: ``<kind> <path>``.
        :rtype: ``str``
        """
        return "\n".join(
            f"{delta.kind.value}: {path}"
            for path, delta in self.walk()
            if delta.kind != DeltaKind.UNCHANGED or delta is self
        )

    @property
    def is_leaf(self) -> bool:
        """
        ``True`` if this ``Delta`` is a file-level comparison result.
        """
        return not self.is_dir

    @property
    def unchanged(self) -> bool:
        """
        ``True`` if this ``Delta`` records no difference.
        """
        return self.kind == DeltaKind.UNCHANGED

    def walk(self, path: str = ROOT_NAME) -> Iterator[Tuple[str, "Delta"]]:
        """
        Walk this delta tree depth first, in ascending name order, yielding
        ``(path, delta)`` pairs. The root is yielded first with ``path``.

        :param path: The path to report for this node.
        :type path: ``str``
        """
        yield path, self
        base = "" if path == ROOT_NAME else path
        for name, child in self.children.items():
            yield from child.walk(join_path(base, name))

    def paths(self, kind: Optional[DeltaKind] = None) -> List[str]:
        """
        Return the paths of all non-root entries in this tree, optionally
        restricted to one ``kind``.

        :param kind: An optional kind to select.
        :type kind: ``Optional[DeltaKind]``
        :returns: A list of relative paths in walk order.
        :rtype: ``List[str]``
        """
        return [
            path
            for path, delta in self.walk()
            if delta is not self and (kind is None or delta.kind == kind)
        ]

    def counts(self) -> Dict[DeltaKind, int]:
        """
        Count the non-root entries in this tree by kind.

        :returns: A dictionary mapping each ``DeltaKind`` to a count.
        :rtype: ``Dict[DeltaKind, int]``
        """
        counts = {kind: 0 for kind in DeltaKind}
        for _, delta in self.walk():
            if delta is not self:
                counts[delta.kind] += 1
        return counts

    def to_dict(self) -> Dict[str, Any]:
        """
        Convert this ``Delta`` into a dictionary representation suitable for
        encoding as JSON.

        :returns: A dictionary mapping this instance's keys to values.
        :rtype: ``Dict[str, Any]``
        """
        out = {
            "kind": self.kind.value,
            "name": self.name,
            "is_dir": self.is_dir,
        }
        if self.replaced is not None:
            out["replaced"] = [self.replaced[0].value, self.replaced[1].value]
        if self.children:
            out["children"] = [child.to_dict() for child in self.children.values()]
        return out

    def json(self, pretty: bool = False) -> str:
        """
        Return a JSON representation of this ``Delta``.

        :param pretty: Indent the output.
        :type pretty: ``bool``
        :returns: This ``Delta`` as a JSON string.
        :rtype: ``str``
        """
        return dumps(self.to_dict(), indent=4 if pretty else None)


__all__ = [
    "Delta",
    "rollup",
    "walk_sorted",
]
