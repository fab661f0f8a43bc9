"""
kvbackup - incremental file backup into a single embedded SQLite store.

Back up what a manifest names, skip what has not changed, restore it all.
"""

from importlib.metadata import version as _version

__version__ = _version("kvbackup")
