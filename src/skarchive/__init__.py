"""
SKArchive — audit artifact lifecycle.

Session recordings, user logs and user databases age on local disk,
get signed and sealed in layered PGP, travel offsite, then leave.

A smilinTux Open Source Project.
"""

import os

__version__ = "0.1.0"
__author__ = "smilinTux"

ARCHIVE_CONFIG = os.environ.get("SKARCHIVE_CONFIG", "/etc/skarchive/skarchive.yaml")
