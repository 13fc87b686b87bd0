"""Conversation engine where either party can drive filesystem commands.

The core lives in :mod:`fs_chat.pipeline` and its collaborators; the FastAPI
application factory is :func:`create_app` in ``fs_chat/server.py``.

Typical usage
-------------
from fs_chat import create_app
app = create_app()

or, from the provided launcher:

python scripts/run_server.py --host 127.0.0.1 --port 8000
"""

from __future__ import annotations

__all__ = ["create_app", "__version__", "get_version"]

# ---------------------------------------------------------------------
# Version handling
# ---------------------------------------------------------------------
__version__ = "0.1.0"


def get_version() -> str:
    """Return the package version."""
    return __version__


def create_app(*args, **kwargs):
    """Return a configured FastAPI application.

    This forwards to :func:`fs_chat.server.create_app`; the import is deferred
    so the core modules can be used without the web stack loaded.
    """
    from .server import create_app as _create_app

    return _create_app(*args, **kwargs)
