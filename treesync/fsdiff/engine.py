# Copyright Red Hat
#
# treesync/fsdiff/engine.py - Tree synchronisation diff engine
#
# This file is part of the treesync project.
#
# SPDX-License-Identifier: Apache-2.0
"""
Tree diff engine
"""
from typing import Dict, List, Optional, Tuple
from concurrent.futures import Executor, ThreadPoolExecutor
from datetime import datetime
import logging

from treesync import (
    TREESYNC_SUBSYSTEM_FSDIFF,
    CancelToken,
    TreeSyncNotFoundError,
    TypeConflictError,
    ROOT_NAME,
    join_path,
)

from .delta import Delta, rollup, walk_sorted
from .difftypes import DeltaKind, EntryType
from .ignore import IgnoreFilter
from .lister import Entry, ReadableTree
from .options import DiffOptions

_log = logging.getLogger(__name__)

_log_debug = _log.debug
_log_info = _log.info
_log_warn = _log.warning
_log_error = _log.error

ENGINE_LOG_ME_HARDER = False

#: A pair of (target entry, local entry) for one name.
_EntryPair = Tuple[Optional[Entry], Optional[Entry]]


def _log_debug_fsdiff(msg, *args, **kwargs):
    """A wrapper for fsdiff subsystem debug logs."""
    _log.debug(msg, *args, extra={"subsystem": TREESYNC_SUBSYSTEM_FSDIFF}, **kwargs)


def _log_debug_fsdiff_extra(msg, *args, **kwargs):
    """A wrapper for fsdiff subsystem debug logs."""
    if ENGINE_LOG_ME_HARDER:  # pragma: no cover
        _log.debug(msg, *args, extra={"subsystem": TREESYNC_SUBSYSTEM_FSDIFF}, **kwargs)


class _DiffContext:
    """
    Per-invocation state shared by the recursive diff walk.
    """

    def __init__(
        self,
        target_tree: ReadableTree,
        local_tree: ReadableTree,
        ignore_file_name: str,
        options: DiffOptions,
        cancel: CancelToken,
    ):
        self.target_tree = target_tree
        self.local_tree = local_tree
        self.ignore_file_name = ignore_file_name
        self.options = options
        self.cancel = cancel


class DiffEngine:
    """
    Core difference computation engine.

    Walks a target tree and a local tree in lock-step and builds a
    ``Delta`` tree classifying every compared entry.
    """

    def __init__(self, options: Optional[DiffOptions] = None):
        """
        Initialise a new ``DiffEngine``.

        :param options: Options controlling the comparison.
        :type options: ``Optional[DiffOptions]``
        """
        self.options: DiffOptions = options or DiffOptions()

    @staticmethod
    def _list_root(tree: ReadableTree, path: str) -> Tuple[List[Entry], bool]:
        """
        List a diff root, mapping a missing root to an empty listing.

        :returns: A 2-tuple of (entries, exists).
        """
        try:
            return tree.list(path), True
        except TreeSyncNotFoundError:
            _log_debug_fsdiff("Diff root '%s' not found: using empty listing", path)
            return [], False

    # pylint: disable=too-many-arguments
    def diff(
        self,
        target_root_path: str,
        local_root_path: str,
        target_tree: ReadableTree,
        local_tree: ReadableTree,
        ignore_file_name: Optional[str] = None,
        cancel: Optional[CancelToken] = None,
    ) -> Delta:
        """
        Compute the ``Delta`` tree that transforms the target tree at
        ``target_root_path`` into the local tree at ``local_root_path``.

        :param target_root_path: The root path in the target tree.
        :type target_root_path: ``str``
        :param local_root_path: The root path in the local tree.
        :type local_root_path: ``str``
        :param target_tree: The target (destination) tree.
        :type target_tree: ``ReadableTree``
        :param local_tree: The local (source) tree.
        :type local_tree: ``ReadableTree``
        :param ignore_file_name: The reserved ignore file name (defaults to
                                 ``options.ignore_file_name``).
        :type ignore_file_name: ``Optional[str]``
        :param cancel: An optional cancellation token.
        :type cancel: ``Optional[CancelToken]``
        :returns: The root ``Delta``, named ``"."``.
        :rtype: ``Delta``
        :raises ListingError: if any directory cannot be listed.
        :raises TypeConflictError: on a file/directory conflict when
                                   ``replace_type_conflicts`` is disabled.
        :raises TreeSyncCancelledError: if ``cancel`` is triggered.
        """
        ctx = _DiffContext(
            target_tree,
            local_tree,
            ignore_file_name or self.options.ignore_file_name,
            self.options,
            cancel or CancelToken(),
        )
        _log_info(
            "Comparing target '%s' with local '%s'",
            target_root_path or ROOT_NAME,
            local_root_path or ROOT_NAME,
        )
        start_time = datetime.now()

        ctx.cancel.check(f"listing '{target_root_path or ROOT_NAME}'")
        target_entries, target_exists = self._list_root(target_tree, target_root_path)
        local_entries, local_exists = self._list_root(local_tree, local_root_path)

        workers = self.options.max_workers
        if workers > 1:
            with ThreadPoolExecutor(
                max_workers=workers, thread_name_prefix="treesync-diff"
            ) as executor:
                children = self._diff_dir(
                    ctx,
                    target_root_path,
                    local_root_path,
                    target_entries,
                    local_entries,
                    executor=executor,
                )
        else:
            children = self._diff_dir(
                ctx, target_root_path, local_root_path, target_entries, local_entries
            )

        if target_exists and local_exists:
            kind = rollup(children)
        elif local_exists:
            kind = DeltaKind.ADDED
        elif target_exists:
            kind = DeltaKind.REMOVED
        else:
            kind = DeltaKind.UNCHANGED

        root = Delta(kind, ROOT_NAME, True, children)
        end_time = datetime.now()
        _log_info(
            "Computed diff in %s: root %s with %d changed entries",
            end_time - start_time,
            kind.value,
            sum(n for k, n in root.counts().items() if k != DeltaKind.UNCHANGED),
        )
        return root

    # pylint: disable=too-many-arguments
    def _diff_dir(
        self,
        ctx: _DiffContext,
        target_path: str,
        local_path: str,
        target_entries: List[Entry],
        local_entries: List[Entry],
        executor: Optional[Executor] = None,
    ) -> Dict[str, Delta]:
        """
        Compare one directory level and return the recorded child deltas.
        """
        ignore = IgnoreFilter.from_tree(
            ctx.local_tree,
            local_path,
            local_entries,
            ctx.ignore_file_name,
            exclude_patterns=ctx.options.exclude_patterns,
        )

        pairs: Dict[str, _EntryPair] = {}
        for entry in ignore.filter(target_entries):
            pairs[entry.name] = (entry, None)
        for entry in ignore.filter(local_entries):
            pairs[entry.name] = (pairs.get(entry.name, (None, None))[0], entry)

        def _action(name: str, pair: _EntryPair) -> Delta:
            return self._diff_entry(
                ctx, join_path(target_path, name), join_path(local_path, name), *pair
            )

        results = walk_sorted(pairs, _action, executor=executor)
        return {
            delta.name: delta
            for delta in results
            if ctx.options.include_unchanged or delta.kind != DeltaKind.UNCHANGED
        }

    # pylint: disable=too-many-arguments,too-many-return-statements
    def _diff_entry(
        self,
        ctx: _DiffContext,
        target_path: str,
        local_path: str,
        target: Optional[Entry],
        local: Optional[Entry],
    ) -> Delta:
        """
        Classify a single name present on at least one side.
        """
        if target is None:
            _log_debug_fsdiff_extra("Added: %s", local_path)
            if local.is_dir:
                return Delta(
                    DeltaKind.ADDED,
                    local.name,
                    True,
                    self._one_sided(ctx, target_path, local_path, local=True),
                )
            return Delta(DeltaKind.ADDED, local.name)

        if local is None:
            _log_debug_fsdiff_extra("Removed: %s", target_path)
            if target.is_dir:
                return Delta(
                    DeltaKind.REMOVED,
                    target.name,
                    True,
                    self._one_sided(ctx, target_path, local_path, local=False),
                )
            return Delta(DeltaKind.REMOVED, target.name)

        if target.is_dir and local.is_dir:
            ctx.cancel.check(f"listing '{target_path}'")
            children = self._diff_dir(
                ctx,
                target_path,
                local_path,
                ctx.target_tree.list(target_path),
                ctx.local_tree.list(local_path),
            )
            return Delta(rollup(children), local.name, True, children)

        if not target.is_dir and not local.is_dir:
            same = target.fingerprint is not None and (
                target.fingerprint == local.fingerprint
            )
            _log_debug_fsdiff_extra(
                "%s: %s (%s / %s)",
                "Unchanged" if same else "Changed",
                local_path,
                target.fingerprint,
                local.fingerprint,
            )
            return Delta(
                DeltaKind.UNCHANGED if same else DeltaKind.CHANGED, local.name
            )

        if not ctx.options.replace_type_conflicts:
            raise TypeConflictError(local_path, target.entry_type, local.entry_type)

        _log_debug_fsdiff(
            "Replaced: %s (%s -> %s)",
            local_path,
            target.entry_type.value,
            local.entry_type.value,
        )
        if local.is_dir:
            return Delta(
                DeltaKind.REPLACED,
                local.name,
                True,
                self._one_sided(ctx, target_path, local_path, local=True),
                replaced=(EntryType.FILE, EntryType.DIRECTORY),
            )
        return Delta(
            DeltaKind.REPLACED,
            local.name,
            replaced=(EntryType.DIRECTORY, EntryType.FILE),
        )

    def _one_sided(
        self, ctx: _DiffContext, target_path: str, local_path: str, local: bool
    ) -> Dict[str, Delta]:
        """
        Build the children of a directory that exists on one side only: a
        fully ``ADDED`` subtree for the local side or a fully ``REMOVED``
        subtree for the target side.
        """
        if local:
            ctx.cancel.check(f"listing '{local_path}'")
            return self._diff_dir(
                ctx, target_path, local_path, [], ctx.local_tree.list(local_path)
            )
        ctx.cancel.check(f"listing '{target_path}'")
        return self._diff_dir(
            ctx, target_path, local_path, ctx.target_tree.list(target_path), []
        )


def diff(
    target_root_path: str,
    local_root_path: str,
    target_tree: ReadableTree,
    local_tree: ReadableTree,
    ignore_file_name: Optional[str] = None,
    options: Optional[DiffOptions] = None,
    cancel: Optional[CancelToken] = None,
) -> Delta:
    """
    Compute the ``Delta`` between a target tree and a local tree.

    Convenience wrapper around ``DiffEngine(options).diff()``.
    """
    return DiffEngine(options).diff(
        target_root_path,
        local_root_path,
        target_tree,
        local_tree,
        ignore_file_name=ignore_file_name,
        cancel=cancel,
    )


__all__ = [
    "DiffEngine",
    "diff",
]
