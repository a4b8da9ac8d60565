# Copyright Red Hat
#
# treesync/state.py - Tree synchronisation link and state files
#
# This file is part of the treesync project.
#
# SPDX-License-Identifier: Apache-2.0
"""
External synchronisation state.

A local directory is linked to a target path by a link file holding that
path. The last published root version is kept in a JSON state file. Both
are loaded once before an operation and written once after it succeeds.
"""
from dataclasses import dataclass, field
from typing import Any, Dict, Optional
from os.path import dirname, join
from json import JSONDecodeError, dumps, loads
import tempfile
import logging
import os

from treesync import LINK_FILE_NAME, TreeSyncStateError, normalize_path

_log = logging.getLogger(__name__)

_log_debug = _log.debug
_log_info = _log.info
_log_warn = _log.warning
_log_error = _log.error

#: Environment variable overriding the state file path
TREESYNC_STATE_ENV = "TREESYNC_STATE"

#: Default state file path
_DEFAULT_STATE_PATH = join("~", ".local", "state", "treesync", "state.json")

#: State file permissions
_STATE_FILE_MODE = 0o600


def default_state_path() -> str:
    """
    Return the state file path: ``$TREESYNC_STATE`` if set, otherwise
    ``~/.local/state/treesync/state.json``.
    """
    return os.path.expanduser(os.environ.get(TREESYNC_STATE_ENV, _DEFAULT_STATE_PATH))


def link_path(dirpath: str) -> str:
    """
    Return the path of the link file in ``dirpath``.
    """
    return join(dirpath, LINK_FILE_NAME)


def read_link(dirpath: str) -> str:
    """
    Return the target path that ``dirpath`` is linked to.

    :param dirpath: The local directory.
    :type dirpath: ``str``
    :returns: The linked target path.
    :rtype: ``str``
    :raises TreeSyncStateError: if the directory is not linked or the link
                                file is invalid.
    """
    path = link_path(dirpath)
    try:
        with open(path, "r", encoding="utf8") as fp:
            target = fp.readline().strip()
    except FileNotFoundError as err:
        raise TreeSyncStateError(
            f"Directory '{dirpath}' is not linked (no {LINK_FILE_NAME} file)"
        ) from err
    except OSError as err:
        raise TreeSyncStateError(f"Cannot read link file '{path}': {err}") from err

    if not normalize_path(target):
        raise TreeSyncStateError(f"Link file '{path}' names no target path")
    _log_debug("Read link '%s' -> '%s'", path, target)
    return target


def write_link(dirpath: str, target_path: str) -> str:
    """
    Link ``dirpath`` to ``target_path``.

    :param dirpath: The local directory.
    :type dirpath: ``str``
    :param target_path: The target tree path to link to.
    :type target_path: ``str``
    :returns: The path of the link file written.
    :rtype: ``str``
    """
    path = link_path(dirpath)
    try:
        with open(path, "w", encoding="utf8") as fp:
            fp.write(f"{normalize_path(target_path)}\n")
    except OSError as err:
        raise TreeSyncStateError(f"Cannot write link file '{path}': {err}") from err
    _log_debug("Wrote link '%s' -> '%s'", path, target_path)
    return path


def remove_link(dirpath: str):
    """
    Remove the link file from ``dirpath`` if present.
    """
    try:
        os.unlink(link_path(dirpath))
    except FileNotFoundError:
        pass
    except OSError as err:
        raise TreeSyncStateError(
            f"Cannot remove link file '{link_path(dirpath)}': {err}"
        ) from err


@dataclass
class SyncState:
    """
    The persisted synchronisation state.
    """

    #: The last published root version of the target tree
    root_version: Optional[str] = None
    #: The file this state was loaded from and is written to
    path: Optional[str] = field(default=None, compare=False)

    def to_dict(self) -> Dict[str, Any]:
        """
        Convert this ``SyncState`` into a dictionary representation suitable
        for encoding as JSON.
        """
        return {"root_version": self.root_version}

    def json(self, pretty: bool = False) -> str:
        """
        Return a JSON representation of this ``SyncState``.
        """
        return dumps(self.to_dict(), indent=4 if pretty else None)

    @classmethod
    def load(cls, path: Optional[str] = None) -> "SyncState":
        """
        Load ``SyncState`` from the JSON file at ``path``. A missing file
        yields an empty state.

        :param path: The state file path (defaults to
                     ``default_state_path()``).
        :type path: ``Optional[str]``
        :returns: A new ``SyncState`` instance.
        :rtype: ``SyncState``
        """
        path = path or default_state_path()
        try:
            with open(path, "r", encoding="utf8") as fp:
                data = loads(fp.read())
        except FileNotFoundError:
            _log_debug("No state file at '%s': using empty state", path)
            return cls(path=path)
        except (OSError, JSONDecodeError) as err:
            raise TreeSyncStateError(f"Cannot load state file '{path}': {err}") from err

        if not isinstance(data, dict):
            raise TreeSyncStateError(f"Invalid state file '{path}': not a mapping")
        root_version = data.get("root_version")
        if root_version is not None and not isinstance(root_version, str):
            raise TreeSyncStateError(
                f"Invalid state file '{path}': bad root_version {root_version!r}"
            )
        _log_debug("Loaded state from '%s': %s", path, root_version)
        return cls(root_version=root_version, path=path)

    def write(self, path: Optional[str] = None):
        """
        Write this ``SyncState`` atomically to ``path`` (defaults to the
        path it was loaded from).

        :param path: An optional path overriding ``self.path``.
        :type path: ``Optional[str]``
        """
        path = path or self.path or default_state_path()
        state_dir = dirname(path) or "."
        try:
            os.makedirs(state_dir, exist_ok=True)
            fd, tmp_path = tempfile.mkstemp(dir=state_dir, prefix=".tmp_", text=True)
            try:
                with os.fdopen(fd, "w", encoding="utf8") as f:
                    f.write(self.json(pretty=True))
                    f.flush()
                    os.fdatasync(f.fileno())
                os.chmod(tmp_path, _STATE_FILE_MODE)
                os.replace(tmp_path, path)
            except OSError:
                os.unlink(tmp_path)
                raise
        except OSError as err:
            raise TreeSyncStateError(f"Cannot write state file '{path}': {err}") from err
        self.path = path
        _log_debug("Wrote state to '%s': %s", path, self.root_version)


__all__ = [
    "SyncState",
    "TREESYNC_STATE_ENV",
    "default_state_path",
    "link_path",
    "read_link",
    "remove_link",
    "write_link",
]
