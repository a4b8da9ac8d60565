# Copyright Red Hat
#
# treesync/store/__init__.py - Tree synchronisation store package
#
# This file is part of the treesync project.
#
# SPDX-License-Identifier: Apache-2.0
"""
Versioned target tree and content-addressed object stores.
"""
from ._objects import DirectoryStore, MemoryStore, ObjectStore
from ._tree import HEAD_REF, VersionedTree

__all__ = [
    "DirectoryStore",
    "HEAD_REF",
    "MemoryStore",
    "ObjectStore",
    "VersionedTree",
]
