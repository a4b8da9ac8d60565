# Copyright Red Hat
#
# treesync/snapshot.py - Tree synchronisation snapshot applier
#
# This file is part of the treesync project.
#
# SPDX-License-Identifier: Apache-2.0
"""
Snapshot application: replay a ``Delta`` tree against a target tree as one
atomic batch of mutations.
"""
from typing import Any, Dict, Optional
from concurrent.futures import Executor, ThreadPoolExecutor
from dataclasses import dataclass, field
from datetime import datetime
from json import dumps
import threading
import logging

from treesync import (
    TREESYNC_SUBSYSTEM_APPLY,
    ROOT_NAME,
    ApplyError,
    CancelToken,
    TreeSyncCancelledError,
    TreeSyncError,
    join_path,
)
from treesync.fsdiff import (
    Delta,
    DeltaKind,
    DiffOptions,
    ReadableTree,
    TargetTree,
    walk_sorted,
)

_log = logging.getLogger(__name__)

_log_debug = _log.debug
_log_info = _log.info
_log_warn = _log.warning
_log_error = _log.error

#: Mutation names used in log messages and ``ApplyError``.
MUTATION_WRITE = "write"
MUTATION_MKDIR = "mkdir"
MUTATION_REMOVE = "remove"
MUTATION_COMMIT = "commit"

_PROGRESS_VERBS = {
    MUTATION_WRITE: "writing",
    MUTATION_MKDIR: "creating",
    MUTATION_REMOVE: "removing",
}


def _log_debug_apply(msg, *args, **kwargs):
    """A wrapper for apply subsystem debug logs."""
    _log.debug(msg, *args, extra={"subsystem": TREESYNC_SUBSYSTEM_APPLY}, **kwargs)


@dataclass
class ApplyResult:
    """
    The outcome of applying one ``Delta`` tree.
    """

    #: The target tree version after the apply call.
    version: Optional[str]
    #: The target tree version before the apply call.
    parent: Optional[str]
    #: Mutation counts by name ("write", "mkdir", "remove").
    counts: Dict[str, int] = field(
        default_factory=lambda: dict.fromkeys(_PROGRESS_VERBS, 0)
    )

    @property
    def committed(self) -> bool:
        """``True`` if a new version was published."""
        return self.version != self.parent

    @property
    def mutations(self) -> int:
        """The total number of mutations issued."""
        return sum(self.counts.values())

    def to_dict(self) -> Dict[str, Any]:
        """
        Convert this ``ApplyResult`` into a dictionary representation
        suitable for encoding as JSON.

        :returns: A dictionary mapping this instance's keys to values.
        :rtype: ``Dict[str, Any]``
        """
        return {
            "version": self.version,
            "parent": self.parent,
            "committed": self.committed,
            "counts": dict(self.counts),
        }

    def json(self, pretty: bool = False) -> str:
        """
        Return a JSON representation of this ``ApplyResult``.

        :param pretty: Indent the output.
        :type pretty: ``bool``
        :returns: This ``ApplyResult`` as a JSON string.
        :rtype: ``str``
        """
        return dumps(self.to_dict(), indent=4 if pretty else None)


class _ApplyContext:
    """
    Per-invocation state shared by the apply walk.
    """

    def __init__(
        self,
        target_tree: TargetTree,
        local_tree: ReadableTree,
        cancel: CancelToken,
        result: ApplyResult,
    ):
        self.target_tree = target_tree
        self.local_tree = local_tree
        self.cancel = cancel
        self.result = result
        self._lock = threading.Lock()

    def count(self, mutation: str):
        with self._lock:
            self.result.counts[mutation] += 1


class SnapshotApplier:
    """
    Apply ``Delta`` trees to a ``TargetTree``.

    Every mutation issued by one ``apply()`` call is staged and published
    with a single ``commit()``. If any mutation fails the staged changes
    are discarded and the target tree version is left unchanged.
    """

    def __init__(self, options: Optional[DiffOptions] = None):
        """
        Initialise a new ``SnapshotApplier``.

        :param options: Options controlling concurrency.
        :type options: ``Optional[DiffOptions]``
        """
        self.options: DiffOptions = options or DiffOptions()

    # pylint: disable=too-many-arguments
    def apply(
        self,
        target_tree: TargetTree,
        local_tree: ReadableTree,
        target_root_path: str,
        local_root_path: str,
        delta: Delta,
        cancel: Optional[CancelToken] = None,
    ) -> ApplyResult:
        """
        Apply ``delta`` to ``target_tree``, reading new content from
        ``local_tree``.

        ``delta`` must have been produced by diffing ``target_root_path``
        against ``local_root_path``; its shape is trusted without
        re-checking either tree.

        :param target_tree: The tree to mutate.
        :type target_tree: ``TargetTree``
        :param local_tree: The tree to read content from.
        :type local_tree: ``ReadableTree``
        :param target_root_path: The root path in the target tree.
        :type target_root_path: ``str``
        :param local_root_path: The root path in the local tree.
        :type local_root_path: ``str``
        :param delta: The root delta to apply.
        :type delta: ``Delta``
        :param cancel: An optional cancellation token.
        :type cancel: ``Optional[CancelToken]``
        :returns: The apply result holding the new version.
        :rtype: ``ApplyResult``
        :raises ApplyError: if a mutation or the final commit fails.
        :raises TreeSyncCancelledError: if ``cancel`` is triggered.
        """
        parent = target_tree.version
        result = ApplyResult(parent, parent)
        if delta.kind == DeltaKind.UNCHANGED:
            _log_info("Nothing to apply at version %s", parent)
            return result

        ctx = _ApplyContext(target_tree, local_tree, cancel or CancelToken(), result)
        start_time = datetime.now()
        try:
            self._apply_root(ctx, target_root_path, local_root_path, delta)
            ctx.cancel.check("commit")
            try:
                result.version = target_tree.commit()
            except TreeSyncError as err:
                raise ApplyError(
                    MUTATION_COMMIT, target_root_path or ROOT_NAME, parent, err
                ) from err
        except Exception as err:
            _log_debug_apply("Discarding staged mutations: %s", err)
            target_tree.discard()
            raise

        end_time = datetime.now()
        _log_info(
            "Applied %d mutations in %s: version %s",
            result.mutations,
            end_time - start_time,
            result.version,
        )
        return result

    def _apply_root(
        self, ctx: _ApplyContext, target_path: str, local_path: str, delta: Delta
    ):
        if delta.kind == DeltaKind.REMOVED:
            self._mutate(ctx, MUTATION_REMOVE, target_path)
            return
        if delta.kind == DeltaKind.REPLACED:
            self._mutate(ctx, MUTATION_REMOVE, target_path)
        if delta.kind in (DeltaKind.ADDED, DeltaKind.REPLACED):
            self._mutate(ctx, MUTATION_MKDIR, target_path)

        workers = self.options.max_workers
        if workers > 1:
            with ThreadPoolExecutor(
                max_workers=workers, thread_name_prefix="treesync-apply"
            ) as executor:
                self._apply_children(ctx, target_path, local_path, delta, executor)
        else:
            self._apply_children(ctx, target_path, local_path, delta)

    def _apply_children(
        self,
        ctx: _ApplyContext,
        target_path: str,
        local_path: str,
        delta: Delta,
        executor: Optional[Executor] = None,
    ):
        def _action(name: str, child: Delta):
            self._apply_node(
                ctx, join_path(target_path, name), join_path(local_path, name), child
            )

        walk_sorted(delta.children, _action, executor=executor)

    def _apply_node(
        self, ctx: _ApplyContext, target_path: str, local_path: str, delta: Delta
    ):
        """
        Issue the mutations for one non-root delta node.
        """
        if delta.kind == DeltaKind.UNCHANGED:
            return
        if delta.kind == DeltaKind.REMOVED:
            self._mutate(ctx, MUTATION_REMOVE, target_path)
            return
        if delta.kind == DeltaKind.REPLACED:
            _log_debug_apply(
                "Replacing %s at '%s' with %s",
                delta.replaced[0].value,
                target_path,
                delta.replaced[1].value,
            )
            self._mutate(ctx, MUTATION_REMOVE, target_path)

        if not delta.is_dir:
            self._mutate(ctx, MUTATION_WRITE, target_path, local_path)
            return
        if delta.kind != DeltaKind.CHANGED:
            self._mutate(ctx, MUTATION_MKDIR, target_path)
        self._apply_children(ctx, target_path, local_path, delta)

    @staticmethod
    def _mutate(
        ctx: _ApplyContext,
        mutation: str,
        target_path: str,
        local_path: Optional[str] = None,
    ):
        """
        Issue a single staged mutation against the target tree.
        """
        display_path = target_path or ROOT_NAME
        ctx.cancel.check(f"{_PROGRESS_VERBS[mutation]} '{display_path}'")
        _log_info("%s %s", _PROGRESS_VERBS[mutation], display_path)
        try:
            if mutation == MUTATION_WRITE:
                data = ctx.local_tree.read(local_path)
                ctx.target_tree.write(target_path, data, commit=False)
            elif mutation == MUTATION_MKDIR:
                ctx.target_tree.make_directory(target_path, commit=False)
            else:
                ctx.target_tree.remove_path(target_path, commit=False)
        except TreeSyncCancelledError:
            raise
        except TreeSyncError as err:
            _log_error("Failed to %s '%s': %s", mutation, display_path, err)
            raise ApplyError(
                mutation, display_path, ctx.result.parent, err
            ) from err
        ctx.count(mutation)


# pylint: disable=too-many-arguments
def apply(
    target_tree: TargetTree,
    local_tree: ReadableTree,
    target_root_path: str,
    local_root_path: str,
    delta: Delta,
    options: Optional[DiffOptions] = None,
    cancel: Optional[CancelToken] = None,
) -> Optional[str]:
    """
    Apply ``delta`` to ``target_tree`` and return the resulting version.

    Convenience wrapper around ``SnapshotApplier(options).apply()``.

    :returns: The new version, or the unchanged current version if
              ``delta`` records no difference.
    :rtype: ``Optional[str]``
    """
    result = SnapshotApplier(options).apply(
        target_tree,
        local_tree,
        target_root_path,
        local_root_path,
        delta,
        cancel=cancel,
    )
    return result.version


__all__ = [
    "ApplyResult",
    "SnapshotApplier",
    "apply",
]
