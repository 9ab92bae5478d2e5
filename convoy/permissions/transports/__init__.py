"""Where permission requests come from: a drop-box directory or an HTTP hook."""
from .base import PermissionTransport
from .filesystem import FilesystemTransport
from .http import HttpTransport

__all__ = [
    "PermissionTransport",
    "FilesystemTransport",
    "HttpTransport",
]
