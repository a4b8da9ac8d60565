# Copyright Red Hat
#
# treesync/fsdiff/options.py - Tree synchronisation diff options
#
# This file is part of the treesync project.
#
# SPDX-License-Identifier: Apache-2.0
"""
Tree diff options.
"""
from dataclasses import dataclass, field, fields
from typing import Tuple, Union
from argparse import Namespace
import logging

from treesync import IGNORE_FILE_NAME

_log = logging.getLogger(__name__)

_log_debug = _log.debug
_log_info = _log.info
_log_warn = _log.warning
_log_error = _log.error

#: Default bound on concurrent subtree workers.
DEFAULT_MAX_WORKERS = 4


@dataclass(frozen=True)
class DiffOptions:
    """
    Tree comparison and application options.
    """

    #: Name of the per-directory ignore file
    ignore_file_name: str = IGNORE_FILE_NAME
    #: Name patterns excluded at every level (glob notation)
    exclude_patterns: Tuple[str, ...] = field(default_factory=tuple)
    #: Record unchanged entries in the delta tree
    include_unchanged: bool = False
    #: Report file/directory type conflicts as replacements instead of
    #: raising ``TypeConflictError``
    replace_type_conflicts: bool = True
    #: Follow symlinks when listing the local tree
    follow_symlinks: bool = False
    #: Maximum number of concurrent subtree workers (<= 1 disables)
    max_workers: int = DEFAULT_MAX_WORKERS

    def __str__(self):
        """
        Return a human readable string representation of this
        ``DiffOptions`` instance.

        :returns: A human readable string.
        :rtype: ``str``
        """
        items = [
            (key, val) if not isinstance(val, tuple) else (key, " ".join(val))
            for key, val in self.__dict__.items()
        ]
        return "\n".join(f"{key}={val}" for key, val in items)

    @classmethod
    def from_cmd_args(cls, cmd_args: Namespace, **defaults) -> "DiffOptions":
        """
        Initialise DiffOptions from command line arguments.

        Construct a new ``DiffOptions`` object from the command line
        arguments in ``cmd_args``. Values in ``defaults`` (for example
        those read from the configuration file) are used for arguments
        that are absent or ``None``.

        :param cmd_args: The command line arguments.
        :type cmd_args: ``Namespace``
        :returns: A new ``DiffOptions`` instance
        :rtype: ``DiffOptions``
        """

        def get_value(name: str) -> Union[bool, int, str, Tuple[str, ...]]:
            """
            Get a value from ``cmd_args``, converting lists to tuples.

            :param name: The name of the argument.
            :type name: ``str``
            :returns: The argument converted to a tuple if appropriate.
            """
            attr = getattr(cmd_args, name, None)
            if attr is None:
                return defaults[name]
            if isinstance(attr, list):
                return tuple(attr)
            return attr

        field_names = {f.name for f in fields(cls)}
        kwargs = {
            name: get_value(name)
            for name in field_names
            if getattr(cmd_args, name, None) is not None or name in defaults
        }
        options = cls(**kwargs)
        _log_debug("Initialised DiffOptions from arguments: %s", repr(options))
        return options
