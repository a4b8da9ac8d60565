# Copyright Red Hat
#
# treesync/__main__.py - Tree synchronisation command entry point
#
# This file is part of the treesync project.
#
# SPDX-License-Identifier: Apache-2.0
"""
Entry point for ``python -m treesync`` and the ``treesync`` script.
"""
import sys

from treesync.command import main


def run():
    """Run the treesync command line tool and exit with its status."""
    sys.exit(main(sys.argv))


if __name__ == "__main__":
    run()
