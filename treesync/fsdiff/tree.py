# Copyright Red Hat
#
# treesync/fsdiff/tree.py - Tree synchronisation delta tree renderer
#
# This file is part of the treesync project.
#
# SPDX-License-Identifier: Apache-2.0
"""
Delta tree rendering
"""
from typing import List, Optional
import logging

from treesync import TREESYNC_SUBSYSTEM_FSDIFF

from ..term import TermControl
from .delta import Delta, walk_sorted
from .difftypes import DeltaKind

_log = logging.getLogger(__name__)

_log_debug = _log.debug
_log_info = _log.info
_log_warn = _log.warning
_log_error = _log.error


def _log_debug_fsdiff(msg, *args, **kwargs):
    """A wrapper for fsdiff subsystem debug logs."""
    _log.debug(msg, *args, extra={"subsystem": TREESYNC_SUBSYSTEM_FSDIFF}, **kwargs)


class DiffTree:
    """Top level interface for rendering delta trees"""

    def __init__(
        self,
        root: Delta,
        color: str = "auto",
        term_control: Optional[TermControl] = None,
    ):
        """
        Initialise a new ``DiffTree`` object.

        :param root: The root ``Delta`` for this ``DiffTree``.
        :type root: ``Delta``
        :param color: A string to control color tree rendering: "auto",
                      "always", or "never".
        :type color: ``str``
        :param term_control: An optional ``TermControl`` instance to use for
                             formatting. The supplied instance overrides any
                             ``color`` argument if set.
        :type term_control: ``Optional[TermControl]``
        """
        if root is None:
            raise ValueError("Root delta is undefined")

        self.root: Delta = root

        self.term_control: TermControl = term_control or TermControl(color=color)

        # Default to ASCII tree drawing characters
        self.branch = "|-- "
        self.last = "`-- "
        self.vbar = "|"

        self.marker_map = {
            DeltaKind.ADDED: (self.term_control.GREEN, "[+]"),
            DeltaKind.REMOVED: (self.term_control.RED, "[-]"),
            DeltaKind.CHANGED: (self.term_control.YELLOW, "[*]"),
            DeltaKind.REPLACED: (self.term_control.BLUE, "[!]"),
        }

        encoding = getattr(self.term_control.term_stream, "encoding", None)

        if not encoding:
            return
        try:
            "└─├│".encode(encoding)
            self.branch = "├── "
            self.last = "└── "
            self.vbar = "│"
        except (UnicodeEncodeError, LookupError):
            return

    def get_change_marker(self, delta: Delta) -> str:
        """
        Return color-coded change mark for a delta node.

        :param delta: The delta to generate a marker for.
        :type delta: ``Delta``
        :returns: Change marker with embedded color codes, or the empty
                  string for unchanged entries.
        :rtype: ``str``
        """
        if delta.kind not in self.marker_map:
            return ""
        color, marker = self.marker_map[delta.kind]
        return f"{color}{marker}{self.term_control.NORMAL}"

    def _render_node(
        self,
        delta: Delta,
        lines: List[str],
        desc: str,
        prefix: str,
        is_last: bool,
        is_root: bool,
    ):
        """
        Recursively render ``delta`` into ``lines``.
        """
        marker = self.get_change_marker(delta)
        connector = "" if is_root else self.last if is_last else self.branch
        spacer = "" if not marker else " "
        name = delta.name + ("/" if delta.is_dir and not is_root else "")

        description = ""
        if desc != "none" and not is_root:
            if delta.kind == DeltaKind.REPLACED:
                old_type, new_type = delta.replaced
                description = f" ({old_type.value} -> {new_type.value})"
            elif desc == "full" or delta.kind != DeltaKind.UNCHANGED:
                description = f" ({delta.kind.value})"

        lines.append(f"{prefix}{connector}{marker}{spacer}{name}{description}")

        extension = "" if is_root else "    " if is_last else f"{self.vbar}   "
        child_prefix = prefix + extension
        last_name = max(delta.children, default=None)

        def _child(name: str, child: Delta):
            self._render_node(
                child, lines, desc, child_prefix, name == last_name, False
            )

        walk_sorted(delta.children, _child)

    def render(self, desc: str = "none") -> str:
        """
        Render the delta tree with box-drawing characters.

        :param desc: Include descriptions: "short" to describe changed
                     entries, "full" to describe every entry or "none" to
                     omit.
        :type desc: ``str``
        :returns: The rendered tree.
        :rtype: ``str``
        """
        if desc not in ("none", "short", "full"):
            raise ValueError(f"Invalid description mode: {desc}")
        lines: List[str] = []
        self._render_node(self.root, lines, desc, "", True, True)
        _log_debug_fsdiff("Rendered delta tree with %d lines", len(lines))
        return "\n".join(lines)


def render_delta(delta: Delta, color: str = "never", desc: str = "none") -> str:
    """
    Render ``delta`` as a human-readable tree.

    :param delta: The delta tree to render.
    :type delta: ``Delta``
    :param color: A string to control color rendering: "auto", "always", or
                  "never".
    :type color: ``str``
    :param desc: Description mode passed to ``DiffTree.render()``.
    :type desc: ``str``
    :returns: The rendered tree.
    :rtype: ``str``
    """
    return DiffTree(delta, color=color).render(desc=desc)


__all__ = [
    "DiffTree",
    "render_delta",
]
