"""
Lifecycle event channels.

The connector only publishes; whatever analyses the page (rules, reporters,
the CLI's JSONL printer) subscribes by event name.

Event names:
    scan::start, scan::end
    targetfetch::start, targetfetch::end, targetfetch::error
    fetch::start, fetch::end, fetch::error
    manifestfetch::end, manifestfetch::error, manifestfetch::missing
    traverse::start, traverse::down, traverse::up, traverse::end
    element::<lowercased tag name>
"""

import asyncio
import inspect
import logging
from typing import Any, Awaitable, Callable, Dict, List, Optional, Set, Union

logger = logging.getLogger(__name__)

Listener = Callable[[Any], Union[None, Awaitable[None]]]
AnyListener = Callable[[str, Any], Union[None, Awaitable[None]]]


class EventEmitter:
    """
    Named event channels with sync or async subscribers.

    Usage:
        emitter = EventEmitter()
        emitter.on("fetch::end", on_fetch_end)
        emitter.on_any(print_event)
        await emitter.emit_async("fetch::end", payload)

    Subscribers run one after the other in registration order; an exception
    in one is logged and does not stop the others.
    """

    def __init__(self):
        self._listeners: Dict[str, List[Listener]] = {}
        self._any_listeners: List[AnyListener] = []
        self._pending: Set[asyncio.Task] = set()

    def on(self, event_name: str, callback: Listener) -> None:
        self._listeners.setdefault(event_name, []).append(callback)

    def off(self, event_name: str, callback: Listener) -> None:
        try:
            self._listeners.get(event_name, []).remove(callback)
        except ValueError:
            logger.warning(f"Listener not found for event: {event_name}")

    def on_any(self, callback: AnyListener) -> None:
        """Subscribe to every event; the callback receives ``(event_name, payload)``."""
        self._any_listeners.append(callback)

    def listeners(self, event_name: str) -> List[Listener]:
        return list(self._listeners.get(event_name, []))

    async def emit_async(self, event_name: str, payload: Optional[Any] = None) -> None:
        """Deliver ``payload`` to every subscriber and wait for all of them."""
        for callback in self.listeners(event_name):
            await self._call(event_name, callback, payload)

        for any_callback in list(self._any_listeners):
            await self._call(event_name, any_callback, event_name, payload)

    def emit(self, event_name: str, payload: Optional[Any] = None) -> asyncio.Task:
        """Deliver ``payload`` without waiting for the subscribers."""
        task = asyncio.ensure_future(self.emit_async(event_name, payload))
        self._pending.add(task)
        task.add_done_callback(self._pending.discard)
        return task

    async def _call(self, event_name: str, callback: Callable, *args: Any) -> None:
        try:
            result = callback(*args)
            if inspect.isawaitable(result):
                await result
        except Exception as e:
            logger.error(f"Listener error for {event_name}: {e}", exc_info=True)
