# Copyright Red Hat
#
# treesync/command.py - Tree synchronisation command interface
#
# This file is part of the treesync project.
#
# SPDX-License-Identifier: Apache-2.0
"""The ``treesync.command`` module provides both the treesync command line
interface infrastructure, and a simple procedural interface to the
``treesync`` library modules.

The procedural interface is used by the ``treesync`` command line tool,
and may be used by application programs, or interactively in the
Python shell by users who do not require all the features present
in the treesync object API.
"""
from argparse import ArgumentParser
from dataclasses import replace
from typing import List, Optional, Tuple
from os.path import basename
import logging
import sys
import os

from treesync import (
    TREESYNC_DEBUG_FSDIFF,
    TREESYNC_DEBUG_APPLY,
    TREESYNC_DEBUG_STORE,
    TREESYNC_DEBUG_COMMAND,
    TREESYNC_DEBUG_ALL,
    TREESYNC_SUBSYSTEM_COMMAND,
    ROOT_NAME,
    SubsystemFilter,
    TreeSyncError,
    TreeSyncStateError,
    join_path,
    normalize_path,
    set_debug_mask,
    __version__,
)
from treesync.config import TreeSyncConfig
from treesync.fsdiff import (
    Delta,
    DeltaKind,
    DiffEngine,
    DiffOptions,
    DiffTree,
    LocalTree,
)
from treesync.snapshot import ApplyResult, SnapshotApplier
from treesync.state import SyncState, read_link, remove_link, write_link
from treesync.store import DirectoryStore, VersionedTree
from treesync.term import COLOR_MODES

_log = logging.getLogger(__name__)

_log_debug = _log.debug
_log_info = _log.info
_log_warn = _log.warning
_log_error = _log.error


def _log_debug_command(msg, *args, **kwargs):
    """A wrapper for command subsystem debug logs."""
    _log.debug(msg, *args, extra={"subsystem": TREESYNC_SUBSYSTEM_COMMAND}, **kwargs)


_DEFAULT_LOG_LEVEL = logging.WARNING
_CONSOLE_HANDLER = None

#: Target tree directory holding linked projects
PUBLIC_DIR = "public"

#: Message printed when there is nothing to commit
CLEAN_MESSAGE = "nothing to commit, working tree clean"

DESC_MODES = ["none", "short", "full"]


class Workspace:
    """
    The resources a command operates on: configuration, persisted state and
    the target tree.
    """

    def __init__(self, config: TreeSyncConfig, state: SyncState, tree: VersionedTree):
        self.config = config
        self.state = state
        self.tree = tree

    @classmethod
    def open(
        cls, config_file: Optional[str] = None, state_file: Optional[str] = None
    ) -> "Workspace":
        """
        Load configuration and state and open the target tree.

        :param config_file: An optional configuration file path.
        :param state_file: An optional state file path.
        :returns: A new ``Workspace``.
        """
        config = TreeSyncConfig.from_file(config_file)
        state = SyncState.load(state_file)
        store = DirectoryStore(config.store_path)
        version = state.root_version
        if version and not store.has(version):
            _log_warn(
                "State root version %s not found in store '%s': using head",
                version,
                store.path,
            )
            version = None
        tree = VersionedTree(store, version=version)
        _log_debug_command(
            "Opened workspace: store=%s version=%s", store.path, tree.version
        )
        return cls(config, state, tree)

    def diff_options(self, cmd_args=None) -> DiffOptions:
        """
        Build ``DiffOptions`` from the configuration, overridden by any
        options given on the command line. Exclude patterns given on the
        command line are added to the configured patterns.
        """
        defaults = self.config.diff_defaults()
        if cmd_args is None:
            return DiffOptions(**defaults)
        extra = getattr(cmd_args, "exclude_patterns", None) or []
        defaults["exclude_patterns"] += tuple(
            pat for pat in extra if pat not in defaults["exclude_patterns"]
        )
        options = DiffOptions.from_cmd_args(cmd_args, **defaults)
        return replace(options, exclude_patterns=defaults["exclude_patterns"])

    def update_state(self):
        """
        Record the target tree version in the state file.
        """
        if self.state.root_version == self.tree.version:
            return
        _log_info("writing root version: %s", self.tree.version)
        self.state.root_version = self.tree.version
        self.state.write()


def init_directory(
    workspace: Workspace, dirpath: str, target_path: Optional[str] = None
) -> str:
    """
    Link ``dirpath`` to a new directory in the target tree.

    :param workspace: The workspace to use.
    :type workspace: ``Workspace``
    :param dirpath: The local directory to link.
    :type dirpath: ``str``
    :param target_path: The target path (default ``public/<dirname>``).
    :type target_path: ``Optional[str]``
    :returns: The linked target path.
    :rtype: ``str``
    """
    project_name = basename(os.path.abspath(dirpath))
    target_path = normalize_path(target_path or f"{PUBLIC_DIR}/{project_name}")
    if workspace.tree.exists(target_path):
        raise TreeSyncStateError(f"Target path '{target_path}' already exists")

    write_link(dirpath, target_path)
    try:
        workspace.tree.make_directory(target_path, commit=True)
    except TreeSyncError:
        remove_link(dirpath)
        workspace.tree.discard()
        raise

    workspace.update_state()
    _log_info("Linked '%s' to '%s'", dirpath, target_path)
    return target_path


def directory_delta(
    workspace: Workspace, dirpath: str, options: Optional[DiffOptions] = None
) -> Tuple[str, LocalTree, Delta]:
    """
    Diff the linked directory ``dirpath`` against its target path.

    :returns: A 3-tuple of (target path, local tree, root delta).
    """
    options = options or workspace.diff_options()
    target_path = read_link(dirpath)
    local_tree = LocalTree(dirpath, follow_symlinks=options.follow_symlinks)
    delta = DiffEngine(options).diff(target_path, "", workspace.tree, local_tree)
    return target_path, local_tree, delta


def commit_directory(
    workspace: Workspace, dirpath: str, options: Optional[DiffOptions] = None
) -> Optional[ApplyResult]:
    """
    Write a snapshot of the linked directory ``dirpath`` to the target tree.

    :returns: The ``ApplyResult``, or ``None`` if nothing changed.
    """
    options = options or workspace.diff_options()
    target_path, local_tree, delta = directory_delta(workspace, dirpath, options)
    if delta.unchanged:
        return None
    result = SnapshotApplier(options).apply(
        workspace.tree, local_tree, target_path, "", delta
    )
    workspace.update_state()
    return result


def target_delta(tree: VersionedTree, path: str) -> Delta:
    """
    Build an all-``UNCHANGED`` delta tree describing the target tree at
    ``path``, for rendering.
    """

    def _build(node_path: str, name: str) -> Delta:
        children = {}
        for entry in tree.list(node_path):
            child_path = join_path(node_path, entry.name)
            if entry.is_dir:
                children[entry.name] = _build(child_path, entry.name)
            else:
                children[entry.name] = Delta(DeltaKind.UNCHANGED, entry.name)
        return Delta(DeltaKind.UNCHANGED, name, True, children)

    return _build(normalize_path(path), path or ROOT_NAME)


def _directory(cmd_args) -> str:
    return os.path.abspath(cmd_args.directory or os.getcwd())


def _open_workspace(cmd_args) -> Workspace:
    return Workspace.open(cmd_args.config, cmd_args.state)


def _init_cmd(cmd_args):
    """
    Init command handler.

    Link the working directory to a new target tree directory.

    :param cmd_args: Command line arguments for the command
    :returns: integer status code returned from ``main()``
    """
    workspace = _open_workspace(cmd_args)
    target_path = init_directory(workspace, _directory(cmd_args), cmd_args.path)
    print(f"Linked to {target_path}")
    return 0


def _status_cmd(cmd_args):
    """
    Status command handler.

    Show differences between the latest snapshot and the working directory.

    :param cmd_args: Command line arguments for the command
    :returns: integer status code returned from ``main()``
    """
    workspace = _open_workspace(cmd_args)
    options = workspace.diff_options(cmd_args)
    _, _, delta = directory_delta(workspace, _directory(cmd_args), options)

    if cmd_args.json:
        print(delta.json(pretty=True))
        return 0

    if delta.unchanged and not delta.children:
        print(CLEAN_MESSAGE)
        return 0

    print(DiffTree(delta, color=cmd_args.color).render(desc=cmd_args.desc))
    return 0


def _commit_cmd(cmd_args):
    """
    Commit command handler.

    Write a snapshot of the working directory to the target tree.

    :param cmd_args: Command line arguments for the command
    :returns: integer status code returned from ``main()``
    """
    workspace = _open_workspace(cmd_args)
    result = commit_directory(
        workspace, _directory(cmd_args), workspace.diff_options(cmd_args)
    )
    if result is None:
        print(CLEAN_MESSAGE)
        return 0
    if cmd_args.json:
        print(result.json(pretty=True))
    else:
        counts = result.counts
        print(
            f"{result.version}: {counts['write']} written, "
            f"{counts['mkdir']} created, {counts['remove']} removed"
        )
    return 0


def _cat_cmd(cmd_args):
    """
    Cat command handler.

    :param cmd_args: Command line arguments for the command
    :returns: integer status code returned from ``main()``
    """
    workspace = _open_workspace(cmd_args)
    data = workspace.tree.read(cmd_args.path)
    sys.stdout.flush()
    sys.stdout.buffer.write(data)
    sys.stdout.buffer.flush()
    return 0


def _ls_cmd(cmd_args):
    """
    List command handler.

    :param cmd_args: Command line arguments for the command
    :returns: integer status code returned from ``main()``
    """
    workspace = _open_workspace(cmd_args)
    for entry in workspace.tree.list(cmd_args.path or ""):
        print(entry.name + ("/" if entry.is_dir else ""))
    return 0


def _tree_cmd(cmd_args):
    """
    Tree command handler.

    :param cmd_args: Command line arguments for the command
    :returns: integer status code returned from ``main()``
    """
    workspace = _open_workspace(cmd_args)
    delta = target_delta(workspace.tree, cmd_args.path or PUBLIC_DIR)
    print(DiffTree(delta, color="never").render())
    return 0


def _log_cmd(cmd_args):
    """
    Log command handler.

    :param cmd_args: Command line arguments for the command
    :returns: integer status code returned from ``main()``
    """
    workspace = _open_workspace(cmd_args)
    for version, timestamp in workspace.tree.history():
        print(f"{version}  {timestamp:%Y-%m-%d %H:%M:%S}")
    return 0


def setup_logging(cmd_args):
    """
    Set up treesync logging.
    """
    # pylint: disable=global-statement
    global _CONSOLE_HANDLER
    level = _DEFAULT_LOG_LEVEL
    if cmd_args.verbose and cmd_args.verbose > 1:
        level = logging.DEBUG
    elif cmd_args.verbose and cmd_args.verbose > 0:
        level = logging.INFO

    treesync_log = logging.getLogger("treesync")
    formatter = logging.Formatter("%(levelname)s - %(message)s")
    treesync_log.setLevel(level)
    if treesync_log.hasHandlers():
        treesync_log.handlers.clear()

    # Subsystem log filtering
    _treesync_subsystem_filter = SubsystemFilter("treesync")

    # Main console handler
    _CONSOLE_HANDLER = logging.StreamHandler()

    _CONSOLE_HANDLER.setLevel(level)
    _CONSOLE_HANDLER.setFormatter(formatter)
    _CONSOLE_HANDLER.addFilter(_treesync_subsystem_filter)

    treesync_log.addHandler(_CONSOLE_HANDLER)


def shutdown_logging():
    """
    Shut down treesync logging.
    """
    logging.shutdown()


def set_debug(debug_arg):
    """
    Set debugging mask from command line argument.
    """
    if not debug_arg:
        return

    mask_map = {
        "fsdiff": TREESYNC_DEBUG_FSDIFF,
        "apply": TREESYNC_DEBUG_APPLY,
        "store": TREESYNC_DEBUG_STORE,
        "command": TREESYNC_DEBUG_COMMAND,
        "all": TREESYNC_DEBUG_ALL,
    }

    mask = 0
    for name in debug_arg.split(","):
        if name not in mask_map:
            raise ValueError(f"Unknown debug option: {name}")
        mask |= mask_map[name]
    set_debug_mask(mask)


def _add_json_arg(parser):
    parser.add_argument(
        "--json",
        action="store_true",
        help="Output JSON instead of human readable text",
    )


def _add_diff_args(parser):
    parser.add_argument(
        "-F",
        "--follow-symlinks",
        action="store_true",
        default=None,
        help="Follow symlinks when walking the working directory",
    )
    parser.add_argument(
        "-e",
        "--exclude",
        type=str,
        action="append",
        metavar="PATTERN",
        dest="exclude_patterns",
        help="Exclude names matching PATTERN at every level (in addition "
        "to configured patterns)",
    )
    parser.add_argument(
        "-j",
        "--max-workers",
        type=int,
        metavar="N",
        help="Maximum number of concurrent subtree workers",
    )


def _add_command_parsers(command_subparser):
    init_parser = command_subparser.add_parser(
        "init", help="Link the working directory to a target tree directory"
    )
    init_parser.add_argument(
        "path",
        metavar="PATH",
        nargs="?",
        default=None,
        help="Target tree path (default: public/<dirname>)",
    )
    init_parser.set_defaults(func=_init_cmd)

    status_parser = command_subparser.add_parser(
        "status", help="Show differences between latest snapshot & filesystem"
    )
    _add_json_arg(status_parser)
    status_parser.add_argument(
        "--color",
        choices=COLOR_MODES,
        default="auto",
        help="Control color output (default: auto)",
    )
    status_parser.add_argument(
        "--desc",
        choices=DESC_MODES,
        default="none",
        help="Describe the kind of each entry (default: none)",
    )
    status_parser.add_argument(
        "-a",
        "--all",
        dest="include_unchanged",
        action="store_true",
        default=None,
        help="Include unchanged entries",
    )
    _add_diff_args(status_parser)
    status_parser.set_defaults(func=_status_cmd)

    commit_parser = command_subparser.add_parser(
        "commit", help="Write filesystem snapshot to the target tree"
    )
    _add_json_arg(commit_parser)
    _add_diff_args(commit_parser)
    commit_parser.set_defaults(func=_commit_cmd)

    cat_parser = command_subparser.add_parser("cat", help="Print a target file")
    cat_parser.add_argument("path", metavar="PATH", help="Target file path")
    cat_parser.set_defaults(func=_cat_cmd)

    ls_parser = command_subparser.add_parser(
        "ls", help="List the contents of a target directory"
    )
    ls_parser.add_argument(
        "path", metavar="PATH", nargs="?", default="", help="Target directory path"
    )
    ls_parser.set_defaults(func=_ls_cmd)

    tree_parser = command_subparser.add_parser(
        "tree", help="Show a tree rooted at a given target path"
    )
    tree_parser.add_argument(
        "path",
        metavar="PATH",
        nargs="?",
        default=PUBLIC_DIR,
        help=f"Target directory path (default: {PUBLIC_DIR})",
    )
    tree_parser.set_defaults(func=_tree_cmd)

    log_parser = command_subparser.add_parser(
        "log", help="List target tree versions, newest first"
    )
    log_parser.set_defaults(func=_log_cmd)


def main(args: List[str]):
    """
    Main entry point for treesync.
    """
    parser = ArgumentParser(description="Tree Synchronisation", prog=basename(args[0]))

    # Global arguments
    parser.add_argument(
        "-d",
        "--debug",
        metavar="DEBUGOPTS",
        type=str,
        help="A list of debug options to enable",
    )
    parser.add_argument("-v", "--verbose", help="Enable verbose output", action="count")
    parser.add_argument(
        "-V",
        "--version",
        action="version",
        help="Report the version number of treesync",
        version=__version__,
    )
    parser.add_argument(
        "-C",
        "--directory",
        metavar="DIR",
        type=str,
        help="Run as if started in DIR",
    )
    parser.add_argument(
        "--config",
        metavar="FILE",
        type=str,
        help="Configuration file path",
    )
    parser.add_argument(
        "--state",
        metavar="FILE",
        type=str,
        help="State file path",
    )
    # Subparser for command
    command_subparser = parser.add_subparsers(dest="command", help="Command")

    _add_command_parsers(command_subparser)

    cmd_args = parser.parse_args(args[1:])

    status = 1

    try:
        set_debug(cmd_args.debug)
    except ValueError as err:
        print(err)
        parser.print_help()
        return status

    setup_logging(cmd_args)

    _log_debug_command("Parsed %s", " ".join(args[1:]))

    if "func" not in cmd_args:
        parser.print_help()
        return status

    if cmd_args.debug:
        status = cmd_args.func(cmd_args)
    else:
        try:
            status = cmd_args.func(cmd_args)
        # pylint: disable=broad-except
        except KeyboardInterrupt:  # pragma: no cover
            _log_info("Exiting on user cancel")
        except Exception as err:
            _log_error("Command failed: %s", err)

    shutdown_logging()
    return status


__all__ = [
    "Workspace",
    "commit_directory",
    "directory_delta",
    "init_directory",
    "main",
    "target_delta",
]


# vim: set et ts=4 sw=4 :
