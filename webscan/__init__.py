"""Browser-driven page scanner built on the Chrome DevTools Protocol.

This package provides:
- CDPConnection / CDPSession: WebSocket protocol client and tab management
- Connector: loads one page, correlates its network traffic and walks the DOM
- EventEmitter: lifecycle event channels consumed by analysis rules
- CLI: ``webscan collect`` streams the lifecycle events as JSONL
"""

__version__ = "0.1.0"
