# Copyright Red Hat
#
# treesync/term.py - Tree synchronisation terminal control
#
# This file is part of the treesync project.
#
# SPDX-License-Identifier: Apache-2.0
"""
Terminal control for colored output.
"""
from typing import List, Optional, TextIO
import curses
import sys

#: Valid values for ``color`` arguments.
COLOR_MODES = ("auto", "always", "never")


class TermControl:
    """
    A class for portable terminal color output.

    Uses the curses package to look up the control sequences for the
    current terminal. Each color attribute holds the sequence needed to
    switch to that color, or the empty string if the terminal (or the
    ``color`` mode) does not allow it, so output can always be built as:

        >>> term = TermControl()
        >>> print("This is " + term.GREEN + "green" + term.NORMAL)
    """

    NORMAL: str = ""  #: Turn off all modes

    # Foreground colors:
    BLACK: str = ""  #: Black foreground color
    BLUE: str = ""  #: Blue foreground color
    GREEN: str = ""  #: Green foreground color
    CYAN: str = ""  #: Cyan foreground color
    RED: str = ""  #: Red foreground color
    MAGENTA: str = ""  #: Magenta foreground color
    YELLOW: str = ""  #: Yellow foreground color
    WHITE: str = ""  #: White foreground color

    _ANSI_COLORS: List[str] = "BLACK RED GREEN YELLOW BLUE MAGENTA CYAN WHITE".split()

    def _force_ansi(self):
        for i, color in enumerate(self._ANSI_COLORS):
            setattr(self, color, f"\033[0;3{i}m")
        self.NORMAL = "\033[0m"

    def __init__(self, term_stream: Optional[TextIO] = None, color: str = "auto"):
        """
        Initialize terminal color capabilities.

        If the output stream is not a tty or terminal setup fails, the
        instance has no color capabilities unless ``color`` is "always", in
        which case plain ANSI sequences are used.

        :param term_stream: Output stream to probe for capabilities.
        :type term_stream: ``Optional[TextIO]``
        :param color: A string to control color rendering: "auto", "always", or
                      "never".
        :type color: ``str``
        """
        if color not in COLOR_MODES:
            raise ValueError(f"Invalid color mode: {color}")

        if term_stream is None:
            term_stream = sys.stdout

        self.term_stream = term_stream

        if color == "never":
            return

        if color != "always":
            if not hasattr(term_stream, "isatty") or not term_stream.isatty():
                return

        try:
            curses.setupterm()
        # curses.error cannot be caught directly before setupterm() has run.
        except BaseException as err:  # pylint: disable=broad-exception-caught
            if isinstance(err, (KeyboardInterrupt, SystemExit)):  # pragma: no cover
                raise
            if color == "always":
                self._force_ansi()
            return

        self.NORMAL = self._tigetstr("sgr0")
        set_fg_ansi = self._tigetstr("setaf")
        if set_fg_ansi:
            set_fg_ansi = set_fg_ansi.encode("utf8")
            for i, color_name in enumerate(self._ANSI_COLORS):
                setattr(
                    self,
                    color_name,
                    curses.tparm(set_fg_ansi, i).decode("utf8") or "",
                )
        elif color == "always":
            self._force_ansi()

    def _tigetstr(self, cap_name):
        # Strip "delays" of the form "$<2>".
        cap = curses.tigetstr(cap_name)
        cap = cap.decode(encoding="utf8") if cap else ""
        return cap.split("$", maxsplit=1)[0]


__all__ = [
    "COLOR_MODES",
    "TermControl",
]
