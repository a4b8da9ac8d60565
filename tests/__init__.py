# Copyright Red Hat
#
# tests/__init__.py - Tree synchronisation test package
#
# This file is part of the treesync project.
#
# SPDX-License-Identifier: Apache-2.0
import logging
import os
import time

log = logging.getLogger()
log.setLevel(logging.DEBUG)
formatter = logging.Formatter('%(asctime)s %(levelname)s %(name)s %(message)s')
file_handler = logging.FileHandler("test.log")
file_handler.setFormatter(formatter)
console_handler = logging.StreamHandler()
console_handler.setFormatter(formatter)
console_handler.setLevel(logging.WARNING)
log.addHandler(file_handler)
log.addHandler(console_handler)

os.environ["TZ"] = "UTC"
time.tzset()


class MockArgs(object):
    debug = None
    verbose = 0
    version = False
    directory = None
    config = None
    state = None
    json = False
    color = "never"
    desc = "none"
    include_unchanged = None
    follow_symlinks = None
    exclude_patterns = None
    max_workers = None
    path = None
