"""Backend adapters for the local store and the remote media."""

from notekeeper.backends.base import BackendAdapter
from notekeeper.backends.local import LocalBackend
from notekeeper.backends.remote_api import RemoteApiBackend
from notekeeper.backends.webdav import WebDAVBackend

__all__ = [
    "BackendAdapter",
    "LocalBackend",
    "WebDAVBackend",
    "RemoteApiBackend",
]
