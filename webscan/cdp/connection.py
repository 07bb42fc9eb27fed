"""CDP WebSocket connection to one browser tab.

Provides CDPConnection for command execution and event subscription. Commands
are matched to responses by id; events are dispatched to the callbacks
subscribed under the event's method name.
"""

import asyncio
import json
import logging
from typing import TYPE_CHECKING, Any, Awaitable, Callable, Dict, List, Optional, Set

try:
    import websockets
    from websockets.exceptions import ConnectionClosed
except ImportError:
    raise ImportError(
        "websockets library not found. Install with: pip3 install websockets"
    )

if TYPE_CHECKING:
    from websockets.asyncio.client import ClientConnection

from .exceptions import (
    ConnectionFailedError,
    ConnectionClosedError,
    CommandFailedError,
    CDPTimeoutError,
)

logger = logging.getLogger(__name__)

EventHandler = Callable[[dict], Awaitable[None]]
CloseHandler = Callable[[Exception], Awaitable[None]]


class CDPConnection:
    """Manages the WebSocket connection to a tab's DevTools endpoint.

    Handles:
    - Connection lifecycle (connect, disconnect, context manager)
    - Command execution with timeout handling
    - Event subscription and dispatching
    - Tracking of in-flight event handlers so callers can wait for them

    Usage:
        async with CDPConnection(ws_url) as conn:
            conn.subscribe("Network.responseReceived", on_response)
            await conn.execute_command("Network.enable")
            result = await conn.execute_command("Runtime.evaluate", {"expression": "1+1"})

    Attributes:
        ws_url: WebSocket debugger URL
        timeout: Default command timeout in seconds
        max_size: Maximum WebSocket message size in bytes (large DOM trees)
    """

    def __init__(
        self,
        ws_url: str,
        *,
        timeout: float = 30.0,
        max_size: int = 8_388_608
    ):
        """Initialize CDP connection.

        Args:
            ws_url: WebSocket debugger URL (e.g., ws://localhost:9222/devtools/page/ABC123)
            timeout: Default command timeout in seconds
            max_size: Maximum WebSocket message size in bytes
        """
        if not ws_url.startswith(("ws://", "wss://")):
            raise ValueError(f"Invalid WebSocket URL: {ws_url}")

        self.ws_url = ws_url
        self.timeout = timeout
        self.max_size = max_size

        self._ws: Optional["ClientConnection"] = None
        self._next_command_id: int = 1
        self._pending_commands: Dict[int, asyncio.Future] = {}
        self._event_handlers: Dict[str, List[EventHandler]] = {}
        self._handler_tasks: Set[asyncio.Task] = set()
        self._close_handlers: List[CloseHandler] = []
        self._receive_task: Optional[asyncio.Task] = None
        self._is_connected: bool = False

    @property
    def is_connected(self) -> bool:
        """Check if WebSocket connection is active."""
        if not self._is_connected or self._ws is None:
            return False
        try:
            return self._ws.state.name == "OPEN"
        except AttributeError:
            return not getattr(self._ws, "closed", True)

    async def connect(self) -> None:
        """Establish WebSocket connection and start receive loop.

        Raises:
            ConnectionFailedError: If WebSocket connection fails
        """
        try:
            logger.debug(f"Connecting to {self.ws_url}")
            self._ws = await websockets.connect(
                self.ws_url,
                max_size=self.max_size
            )
            self._is_connected = True
            self._receive_task = asyncio.create_task(self._receive_loop())
            logger.debug("CDP connection established")
        except Exception as e:
            raise ConnectionFailedError(
                f"Failed to connect to {self.ws_url}: {e}",
                details={"url": self.ws_url, "error": str(e)}
            )

    async def disconnect(self) -> None:
        """Close WebSocket connection and fail outstanding commands."""
        logger.debug("Disconnecting CDP connection")
        self._is_connected = False

        if self._receive_task and not self._receive_task.done():
            self._receive_task.cancel()
            try:
                await self._receive_task
            except asyncio.CancelledError:
                pass

        if self._ws:
            try:
                if hasattr(self._ws, "state") and self._ws.state.name != "CLOSED":
                    await self._ws.close()
                elif not hasattr(self._ws, "state"):
                    await self._ws.close()
            except Exception as e:
                logger.warning(f"Error closing WebSocket: {e}")

        self._fail_pending(ConnectionClosedError("Connection closed during command execution"))

        logger.debug("CDP connection closed")

    async def __aenter__(self) -> "CDPConnection":
        await self.connect()
        return self

    async def __aexit__(self, exc_type, exc_val, exc_tb) -> None:
        await self.disconnect()

    async def execute_command(
        self,
        method: str,
        params: Optional[dict] = None,
        *,
        timeout: Optional[float] = None
    ) -> dict:
        """Execute CDP command and wait for response.

        Args:
            method: CDP method name (e.g., "Network.enable", "Page.navigate")
            params: Method parameters (default: empty dict)
            timeout: Command timeout in seconds (default: self.timeout)

        Returns:
            Command result dict (contents of "result" field in response)

        Raises:
            ConnectionClosedError: If connection is not active
            CDPTimeoutError: If command times out
            CommandFailedError: If the browser returns an error response
        """
        if not self.is_connected:
            raise ConnectionClosedError("Cannot execute command: connection not active")

        cmd_id = self._next_command_id
        self._next_command_id += 1

        future: asyncio.Future = asyncio.get_running_loop().create_future()
        self._pending_commands[cmd_id] = future

        message = json.dumps({
            "id": cmd_id,
            "method": method,
            "params": params or {}
        })

        cmd_timeout = timeout if timeout is not None else self.timeout
        try:
            await self._ws.send(message)
            logger.debug(f"Sent command {cmd_id}: {method}")

            return await asyncio.wait_for(future, timeout=cmd_timeout)

        except asyncio.TimeoutError:
            raise CDPTimeoutError(
                "Command timed out",
                command_method=method,
                timeout=cmd_timeout
            )
        except CommandFailedError as e:
            e.method = method
            raise
        finally:
            self._pending_commands.pop(cmd_id, None)

    def subscribe(self, event_name: str, callback: EventHandler) -> None:
        """Register async callback for CDP event.

        Args:
            event_name: CDP event name (e.g., "Network.requestWillBeSent")
            callback: Async function with signature: async def callback(params: dict)

        Note:
            Subscribe before enabling the domain, otherwise early events are lost.
        """
        self._event_handlers.setdefault(event_name, []).append(callback)
        logger.debug(f"Subscribed to event: {event_name}")

    def unsubscribe(self, event_name: str, callback: EventHandler) -> None:
        """Remove event callback."""
        if event_name in self._event_handlers:
            try:
                self._event_handlers[event_name].remove(callback)
                logger.debug(f"Unsubscribed from event: {event_name}")
            except ValueError:
                logger.warning(f"Callback not found for event: {event_name}")

    def on_close(self, callback: CloseHandler) -> None:
        """Register async callback run when the browser side closes the socket.

        Not called for disconnect(). The callback receives the
        ConnectionClosedError that outstanding commands were failed with.
        """
        self._close_handlers.append(callback)

    async def wait_for_handlers(self) -> None:
        """Wait until every event handler dispatched so far has finished."""
        while self._handler_tasks:
            await asyncio.gather(*list(self._handler_tasks), return_exceptions=True)

    def _dispatch_event(self, event_name: str, params: dict) -> None:
        """Schedule each subscribed handler as its own task, in subscription order."""
        for handler in self._event_handlers.get(event_name, []):
            task = asyncio.create_task(handler(params))
            self._handler_tasks.add(task)
            task.add_done_callback(self._on_handler_done(event_name))

    def _on_handler_done(self, event_name: str) -> Callable[[asyncio.Task], None]:
        def done(task: asyncio.Task) -> None:
            self._handler_tasks.discard(task)
            if task.cancelled():
                return
            error = task.exception()
            if error is not None:
                logger.error(
                    f"Event handler error for {event_name}: {error}",
                    exc_info=error,
                )

        return done

    def _fail_pending(self, error: Exception) -> None:
        for future in self._pending_commands.values():
            if not future.done():
                future.set_exception(error)
        self._pending_commands.clear()

    def _handle_message(self, data: Dict[str, Any]) -> None:
        # Command response (has "id" field)
        if "id" in data:
            future = self._pending_commands.get(data["id"])
            if future is None or future.done():
                return

            if "error" in data:
                error = data["error"]
                future.set_exception(
                    CommandFailedError(
                        error.get("message", "Unknown CDP error"),
                        error_code=error.get("code"),
                        details={"error": error}
                    )
                )
            else:
                future.set_result(data.get("result", {}))

        # Event notification (has "method" field, no "id")
        elif "method" in data:
            event_name = data["method"]
            logger.debug(f"Received event: {event_name}")
            self._dispatch_event(event_name, data.get("params", {}))

    async def _receive_loop(self) -> None:
        """Background task routing incoming messages to commands or event handlers."""
        try:
            async for message in self._ws:
                try:
                    self._handle_message(json.loads(message))
                except json.JSONDecodeError as e:
                    logger.error(f"Malformed CDP message: {e}")
                except Exception as e:
                    logger.error(f"Error processing message: {e}", exc_info=True)

            # The iterator ends quietly on a clean close.
            logger.warning("WebSocket connection closed by the browser")
            error = ConnectionClosedError("Connection closed by the browser")
        except ConnectionClosed as e:
            logger.warning(f"WebSocket connection closed: {e}")
            error = ConnectionClosedError(f"Connection closed: {e}")
        except Exception as e:
            logger.error(f"Receive loop error: {e}", exc_info=True)
            error = ConnectionClosedError(f"Receive loop error: {e}")

        self._is_connected = False
        self._fail_pending(error)
        for handler in list(self._close_handlers):
            task = asyncio.create_task(handler(error))
            self._handler_tasks.add(task)
            task.add_done_callback(self._on_handler_done("close"))
