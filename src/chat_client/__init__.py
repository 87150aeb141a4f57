"""Conversational chat client core with an HTTP host.

The session manager (``chat_client.session``) owns a live transcript and
streams model replies into it; ``chat_client.server`` exposes sessions over
HTTP through a FastAPI application factory named ``create_app``.

Typical usage
-------------
from chat_client import create_app
app = create_app()

or, from the provided launcher:

python scripts/run_server.py --host 127.0.0.1 --port 8000
"""

from __future__ import annotations

from .messages import ImagePart, Message, Role, TextPart
from .session import SessionEvent, SessionManager, SessionState
from .window import window_messages

__all__ = [
    "create_app",
    "get_version",
    "ImagePart",
    "Message",
    "Role",
    "SessionEvent",
    "SessionManager",
    "SessionState",
    "TextPart",
    "window_messages",
    "__version__",
]

__version__ = "0.1.0"


def get_version() -> str:
    """Return the package version."""
    return __version__


def create_app(*args, **kwargs):
    """Return a configured FastAPI application.

    This forwards to :func:`chat_client.server.create_app`; the import is
    deferred so the core can be used without the HTTP stack loaded.
    """
    from .server import create_app as _create_app

    return _create_app(*args, **kwargs)
