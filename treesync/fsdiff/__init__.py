# Copyright Red Hat
#
# treesync/fsdiff/__init__.py - Tree synchronisation fs differ package
#
# This file is part of the treesync project.
#
# SPDX-License-Identifier: Apache-2.0
"""
Tree diff package.

Provides lock-step comparison of a local directory tree with a versioned
target tree, per-directory ignore files and delta tree rendering. The main
entry points are ``diff()``, ``DiffEngine`` and ``DiffOptions``.
"""
from .delta import Delta, rollup, walk_sorted
from .difftypes import DeltaKind, EntryType
from .engine import DiffEngine, diff
from .ignore import IgnoreFilter
from .lister import Entry, LocalTree, ReadableTree, TargetTree, content_id
from .options import DiffOptions
from .tree import DiffTree, render_delta

__all__ = [
    "Delta",
    "DeltaKind",
    "DiffEngine",
    "DiffOptions",
    "DiffTree",
    "Entry",
    "EntryType",
    "IgnoreFilter",
    "LocalTree",
    "ReadableTree",
    "TargetTree",
    "content_id",
    "diff",
    "render_delta",
    "rollup",
    "walk_sorted",
]
