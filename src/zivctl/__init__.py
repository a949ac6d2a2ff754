"""zivctl package bootstrap.

Exposes the package version used by the CLI, the HTTP API and packaging
metadata.
"""
from __future__ import annotations

__all__ = ["__version__", "get_version"]

# Keep in step with ``version`` in pyproject.toml.
__version__ = "0.3.0"


def get_version() -> str:
    """Return the current package version."""
    return __version__
