"""REST/SSE relay over per-account Telegram sessions."""

from .api import create_app
from .manager import SessionManager

__all__ = ["create_app", "SessionManager"]
