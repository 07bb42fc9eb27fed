"""Exception hierarchy for protocol and scanning failures.

All errors raised by webscan inherit from CDPError. Protocol-level failures
(connection, command, timeout, target discovery) sit next to the scan-level
ones (page load, redirects, in-page evaluation, out-of-band fetches).
"""

from typing import List, Optional


class CDPError(Exception):
    """Base exception for all webscan errors.

    Attributes:
        message: Human-readable error message
        details: Optional dictionary with additional error context
    """

    def __init__(self, message: str, details: Optional[dict] = None):
        super().__init__(message)
        self.message = message
        self.details = details or {}

    def __str__(self):
        if self.details:
            details_str = ", ".join(f"{k}={v}" for k, v in self.details.items())
            return f"{self.message} ({details_str})"
        return self.message


class CDPConnectionError(CDPError):
    """WebSocket connection failures."""

    pass


class ConnectionFailedError(CDPConnectionError):
    """Initial connection failed.

    Raised when the WebSocket to a tab cannot be established, including after
    the attach retries are exhausted.
    """

    pass


class ConnectionClosedError(CDPConnectionError):
    """Connection closed while a command was outstanding."""

    pass


class CDPCommandError(CDPError):
    """Command execution failures."""

    def __init__(
        self,
        message: str,
        method: Optional[str] = None,
        error_code: Optional[int] = None,
        details: Optional[dict] = None,
    ):
        super().__init__(message, details)
        self.method = method
        self.error_code = error_code


class CommandFailedError(CDPCommandError):
    """The browser answered a command with an error response."""

    pass


class InvalidCommandError(CDPCommandError):
    """Command rejected locally before it was sent."""

    pass


class CDPTimeoutError(CDPError):
    """Command or evaluation did not complete within its time budget."""

    def __init__(
        self,
        message: str,
        command_method: Optional[str] = None,
        timeout: Optional[float] = None,
        details: Optional[dict] = None,
    ):
        super().__init__(message, details)
        self.command_method = command_method
        self.timeout = timeout

    def __str__(self):
        if self.command_method and self.timeout:
            return f"Command '{self.command_method}' timed out after {self.timeout}s"
        return self.message


class CDPTargetNotFoundError(CDPError):
    """No usable tab could be found or opened."""

    def __init__(
        self,
        message: str,
        target_id: Optional[str] = None,
        url_pattern: Optional[str] = None,
        details: Optional[dict] = None,
    ):
        super().__init__(message, details)
        self.target_id = target_id
        self.url_pattern = url_pattern

    def __str__(self):
        if self.target_id:
            return f"Target not found: {self.target_id}"
        if self.url_pattern:
            return f"No target matching URL pattern: {self.url_pattern}"
        return self.message


class LauncherError(CDPError):
    """The browser could not be started or reached on its debugging port."""

    pass


class PageLoadError(CDPError):
    """The page being scanned failed to load. Fatal for the collection."""

    def __init__(self, message: str, url: Optional[str] = None, details: Optional[dict] = None):
        super().__init__(message, details)
        self.url = url


class RedirectError(CDPError):
    """A request chain could not be followed.

    Attributes:
        url: URL whose redirect was rejected
        hops: Redirect chain (oldest first) recorded up to the rejection
    """

    def __init__(
        self,
        message: str,
        url: str,
        hops: Optional[List[str]] = None,
        details: Optional[dict] = None,
    ):
        super().__init__(message, details)
        self.url = url
        self.hops = list(hops or [])


class RedirectLoopError(RedirectError):
    """A URL redirected to itself."""

    pass


class RedirectLimitError(RedirectError):
    """A redirect chain reached the hop limit."""

    pass


class EvaluationError(CDPError):
    """An expression evaluated in the page threw.

    Carries the serialized browser-side error so it survives the protocol
    round trip.
    """

    def __init__(
        self,
        message: str,
        name: str = "Error",
        stack: Optional[str] = None,
        details: Optional[dict] = None,
    ):
        super().__init__(message, details)
        self.name = name
        self.stack = stack

    def __str__(self):
        return f"{self.name}: {self.message}"


class RequestError(CDPError):
    """Out-of-band HTTP fetch failed before a response was available."""

    def __init__(
        self,
        message: str,
        url: Optional[str] = None,
        status_code: Optional[int] = None,
        details: Optional[dict] = None,
    ):
        super().__init__(message, details)
        self.url = url
        self.status_code = status_code
