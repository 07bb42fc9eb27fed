"""Chrome DevTools Protocol client: connection, tab discovery, exceptions."""

from .connection import CDPConnection
from .session import CDPSession, Target

__all__ = ["CDPConnection", "CDPSession", "Target"]
