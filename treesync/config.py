# Copyright Red Hat
#
# treesync/config.py - Tree synchronisation configuration
#
# This file is part of the treesync project.
#
# SPDX-License-Identifier: Apache-2.0
"""
Configuration file support.
"""
from configparser import ConfigParser, Error as ConfigParserError
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional
from os.path import exists, join
import logging
import os

from treesync import IGNORE_FILE_NAME, TreeSyncStateError
from treesync.fsdiff.options import DEFAULT_MAX_WORKERS

_log = logging.getLogger(__name__)

_log_debug = _log.debug
_log_info = _log.info
_log_warn = _log.warning
_log_error = _log.error

#: Environment variable overriding the configuration file path
TREESYNC_CONFIG_ENV = "TREESYNC_CONFIG"

#: Default configuration file path
_DEFAULT_CONFIG_PATH = join("~", ".config", "treesync", "treesync.conf")

#: Default object store directory
DEFAULT_STORE_PATH = join("~", ".local", "share", "treesync", "store")

#: Global configuration section
_CFG_GLOBAL = "global"

#: Diff configuration section
_CFG_DIFF = "diff"


def default_config_path() -> str:
    """
    Return the configuration file path: ``$TREESYNC_CONFIG`` if set,
    otherwise ``~/.config/treesync/treesync.conf``.
    """
    return os.path.expanduser(
        os.environ.get(TREESYNC_CONFIG_ENV, _DEFAULT_CONFIG_PATH)
    )


@dataclass
class TreeSyncConfig:
    """
    Tool configuration.
    """

    store: str = DEFAULT_STORE_PATH
    ignore_file: str = IGNORE_FILE_NAME
    max_workers: int = DEFAULT_MAX_WORKERS
    follow_symlinks: bool = False
    exclude: List[str] = field(default_factory=list)

    @property
    def store_path(self) -> str:
        """The expanded object store directory."""
        return os.path.expanduser(self.store)

    def diff_defaults(self) -> Dict[str, Any]:
        """
        Return keyword defaults for ``DiffOptions.from_cmd_args()``.
        """
        return {
            "ignore_file_name": self.ignore_file,
            "max_workers": self.max_workers,
            "follow_symlinks": self.follow_symlinks,
            "exclude_patterns": tuple(self.exclude),
        }

    @classmethod
    def from_file(cls, config_file: Optional[str] = None) -> "TreeSyncConfig":
        """
        Load ``TreeSyncConfig`` from an INI-style configuration file located
        at ``config_file``. A missing file yields the default configuration.

        :param config_file: path to treesync.conf (defaults to
                            ``default_config_path()``).
        :type config_file: ``Optional[str]``.
        :returns: A ``TreeSyncConfig`` instance initialised from
                  ``config_file``.
        :rtype: ``TreeSyncConfig``
        """
        config_file = config_file or default_config_path()
        if not exists(config_file):
            return TreeSyncConfig()

        _log_debug("Loading configuration from '%s'", config_file)
        cfg = ConfigParser()
        kwargs: Dict[str, Any] = {}
        try:
            cfg.read([config_file])
            if cfg.has_section(_CFG_GLOBAL):
                if cfg.has_option(_CFG_GLOBAL, "store"):
                    kwargs["store"] = cfg[_CFG_GLOBAL]["store"]
            if cfg.has_section(_CFG_DIFF):
                section = cfg[_CFG_DIFF]
                if cfg.has_option(_CFG_DIFF, "ignore_file"):
                    kwargs["ignore_file"] = section["ignore_file"].strip()
                if cfg.has_option(_CFG_DIFF, "max_workers"):
                    kwargs["max_workers"] = section.getint("max_workers")
                if cfg.has_option(_CFG_DIFF, "follow_symlinks"):
                    kwargs["follow_symlinks"] = section.getboolean("follow_symlinks")
                if cfg.has_option(_CFG_DIFF, "exclude"):
                    kwargs["exclude"] = [
                        pat.strip()
                        for pat in section["exclude"].split(",")
                        if pat.strip()
                    ]
        except (ConfigParserError, ValueError) as err:
            raise TreeSyncStateError(
                f"Invalid configuration file '{config_file}': {err}"
            ) from err

        if not kwargs.get("ignore_file", IGNORE_FILE_NAME):
            raise TreeSyncStateError(
                f"Invalid configuration file '{config_file}': empty ignore_file"
            )

        return TreeSyncConfig(**kwargs)


__all__ = [
    "DEFAULT_STORE_PATH",
    "TREESYNC_CONFIG_ENV",
    "TreeSyncConfig",
    "default_config_path",
]
