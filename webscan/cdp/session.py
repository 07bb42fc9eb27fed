"""
Tab discovery and management over the browser's DevTools HTTP endpoint.

Lists, opens and closes tabs, and attaches CDPConnections to them.
"""

import asyncio
import json
import logging
import urllib.error
import urllib.parse
import urllib.request
from typing import Any, Dict, List, Optional

from .connection import CDPConnection
from .exceptions import CDPError, CDPTargetNotFoundError, ConnectionFailedError

logger = logging.getLogger(__name__)

# Attach retries after the first attempt; delay grows linearly per attempt.
ATTACH_RETRIES = 3
ATTACH_BACKOFF_BASE = 0.5
ATTACH_BACKOFF_STEP = 0.25


class Target:
    """
    A debuggable browser target (page, iframe, worker, service worker).

    Attributes:
        id: Unique target ID
        type: Target type ("page", "iframe", "worker", "service_worker", "browser")
        title: Page title or worker name
        url: Target URL
        webSocketDebuggerUrl: CDP WebSocket URL for this target
    """

    def __init__(self, target_data: Dict[str, Any]):
        self.id = target_data["id"]
        self.type = target_data.get("type", "page")
        self.title = target_data.get("title", "")
        self.url = target_data.get("url", "")
        self.webSocketDebuggerUrl = target_data.get("webSocketDebuggerUrl", "")

    @property
    def is_extension(self) -> bool:
        """Tabs opened by browser extensions are never used for scanning."""
        return self.url.startswith("chrome-extension")

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "type": self.type,
            "title": self.title,
            "url": self.url,
            "webSocketDebuggerUrl": self.webSocketDebuggerUrl,
        }

    def __eq__(self, other):
        # Tab listings return fresh objects; identity is the target id.
        if not isinstance(other, Target):
            return NotImplemented
        return self.id == other.id

    def __hash__(self):
        return hash(self.id)

    def __repr__(self):
        return f"Target(id={self.id!r}, type={self.type!r}, url={self.url!r})"


class CDPSession:
    """
    Session manager for the tabs of one browser instance.

    Usage:
        session = CDPSession("localhost", 9222)
        tab = session.new_tab("about:blank")
        conn = await session.attach(tab)

    Attributes:
        chrome_host: Browser host (default: "localhost")
        chrome_port: Browser debugging port (default: 9222)
        timeout: HTTP request timeout for the DevTools endpoint (default: 5s)
        command_timeout: Default timeout of commands sent on attached connections
        max_size: WebSocket message size limit of attached connections
    """

    def __init__(
        self,
        chrome_host: str = "localhost",
        chrome_port: int = 9222,
        timeout: float = 5.0,
        command_timeout: float = 30.0,
        max_size: int = 8_388_608,
    ):
        if not 1 <= chrome_port <= 65535:
            raise ValueError(f"chrome_port must be 1-65535, got {chrome_port}")

        self.chrome_host = chrome_host
        self.chrome_port = chrome_port
        self.timeout = timeout
        self.command_timeout = command_timeout
        self.max_size = max_size

    @property
    def endpoint(self) -> str:
        return f"http://{self.chrome_host}:{self.chrome_port}"

    def _request_json(self, path: str, method: str = "GET") -> Any:
        endpoint_url = f"{self.endpoint}{path}"
        request = urllib.request.Request(endpoint_url, method=method)

        try:
            with urllib.request.urlopen(request, timeout=self.timeout) as response:
                body = response.read()
        except urllib.error.URLError as e:
            raise CDPError(
                f"Failed to connect to browser at {endpoint_url}: {e}",
                details={
                    "chrome_host": self.chrome_host,
                    "chrome_port": self.chrome_port,
                    "recovery": "Ensure the browser is running with --remote-debugging-port",
                },
            ) from e

        if not body:
            return None

        try:
            return json.loads(body)
        except json.JSONDecodeError:
            # /json/close answers with plain text
            return body.decode("utf-8", errors="replace")

    def version(self) -> Dict[str, Any]:
        """Return the browser's /json/version metadata."""
        data = self._request_json("/json/version")
        if not isinstance(data, dict):
            raise CDPError(
                "Invalid JSON response from /json/version",
                details={"endpoint": self.endpoint},
            )
        return data

    def is_available(self) -> bool:
        """Check whether a browser answers on the debugging port."""
        try:
            self.version()
        except CDPError:
            return False
        return True

    def list_targets(
        self,
        target_type: Optional[str] = None,
        url_pattern: Optional[str] = None,
        include_extensions: bool = True,
    ) -> List[Target]:
        """
        Fetch targets from the HTTP endpoint with optional filtering.

        Args:
            target_type: Filter by target type ("page", "iframe", "worker", ...)
            url_pattern: Case-insensitive substring the target URL must contain
            include_extensions: Whether to keep chrome-extension:// targets

        Raises:
            CDPError: If the endpoint is unreachable or returns invalid data
        """
        targets_data = self._request_json("/json/list")
        if not isinstance(targets_data, list):
            raise CDPError(
                "Invalid JSON response from browser endpoint",
                details={"endpoint": f"{self.endpoint}/json/list"},
            )

        targets = [Target(data) for data in targets_data]

        if target_type:
            targets = [t for t in targets if t.type == target_type]

        if url_pattern:
            url_pattern_lower = url_pattern.lower()
            targets = [t for t in targets if url_pattern_lower in t.url.lower()]

        if not include_extensions:
            targets = [t for t in targets if not t.is_extension]

        return targets

    def get_target_by_id(self, target_id: str) -> Optional[Target]:
        """Find target by ID among the currently listed ones."""
        for target in self.list_targets():
            if target.id == target_id:
                return target
        return None

    def new_tab(self, url: Optional[str] = None) -> Target:
        """
        Open a new tab, optionally loading ``url``.

        Raises:
            CDPTargetNotFoundError: If the browser did not return the new tab
        """
        path = "/json/new"
        if url:
            path = f"{path}?{urllib.parse.quote(url, safe=':/?&=#%')}"

        data = self._request_json(path, method="PUT")
        if not isinstance(data, dict) or "id" not in data:
            raise CDPTargetNotFoundError(
                "Error trying to open a new tab",
                details={"endpoint": self.endpoint},
            )

        tab = Target(data)
        logger.debug(f"Opened new tab {tab.id}")
        return tab

    def resolve_tab(self, tab: Target) -> Target:
        """
        Find ``tab`` in the current listing by id.

        Listed objects are new instances, so the match is on identity of the
        target id rather than of the Python object.
        """
        for candidate in self.list_targets():
            if candidate.id == tab.id:
                return candidate

        raise CDPTargetNotFoundError(
            f"Target not found: {tab.id}",
            target_id=tab.id,
        )

    def close_tab(self, target_id: str) -> None:
        """Close a tab by id."""
        self._request_json(f"/json/close/{target_id}")
        logger.debug(f"Closed tab {target_id}")

    def connect_to_target(self, target: Target) -> CDPConnection:
        """
        Create (but do not open) a CDPConnection for ``target``.

        Raises:
            CDPError: If the target has no WebSocket debugger URL
        """
        if not target.webSocketDebuggerUrl:
            raise CDPError(
                f"Target {target.id} has no WebSocket debugger URL",
                details={"target": target.to_dict()},
            )

        return CDPConnection(
            target.webSocketDebuggerUrl,
            timeout=self.command_timeout,
            max_size=self.max_size,
        )

    async def attach(self, target: Target, retries: int = ATTACH_RETRIES) -> CDPConnection:
        """
        Open a connection to ``target``, retrying with linear backoff.

        The browser may still be starting up when the first attempt is made.

        Raises:
            ConnectionFailedError: When every attempt failed
        """
        attempt = 0
        while True:
            conn = self.connect_to_target(target)
            try:
                await conn.connect()
                return conn
            except ConnectionFailedError:
                if attempt >= retries:
                    raise
                delay = ATTACH_BACKOFF_BASE + attempt * ATTACH_BACKOFF_STEP
                logger.debug(
                    f"Attach to {target.id} failed, retrying in {delay}s "
                    f"({attempt + 1}/{retries})"
                )
                await asyncio.sleep(delay)
                attempt += 1
