"""
Notekeeper - multi-backend storage and reconciliation core for a note-taking app.

Notes, folders, tags and note-tag links live in a local SQLite store and can be
reconciled with a WebDAV document store or an authenticated cloud API using a
per-record last-writer-wins merge.

This version uses synchronous operations.
"""

from importlib.metadata import PackageNotFoundError, version

try:
    __version__ = version("notekeeper-sync")
except PackageNotFoundError:
    __version__ = "0.3.0"
