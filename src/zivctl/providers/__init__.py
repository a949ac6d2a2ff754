"""Provider interfaces for zivctl."""
from __future__ import annotations

from .base import RemoteArchive, ServiceController, SyncBackend
from .rclone import RcloneBackend, RcloneError
from .systemd import RestartNotifier, SystemdError, SystemdProvider

__all__ = [
    "RcloneBackend",
    "RcloneError",
    "RemoteArchive",
    "RestartNotifier",
    "ServiceController",
    "SyncBackend",
    "SystemdError",
    "SystemdProvider",
]
