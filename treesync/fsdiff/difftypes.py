# Copyright Red Hat
#
# treesync/fsdiff/difftypes.py - Tree synchronisation diff types
#
# This file is part of the treesync project.
#
# SPDX-License-Identifier: Apache-2.0
"""
Tree diff types
"""
from enum import Enum


class DeltaKind(Enum):
    """
    Enum for different difference types.
    """

    UNCHANGED = "unchanged"
    ADDED = "added"
    CHANGED = "changed"
    REMOVED = "removed"
    REPLACED = "replaced"


class EntryType(Enum):
    """
    Enum for the type of a tree entry.
    """

    FILE = "file"
    DIRECTORY = "directory"
