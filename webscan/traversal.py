"""Depth-first walk of the loaded document emitting ``element::*`` and ``traverse::*`` events."""

import logging
from typing import Awaitable, Callable, Optional

from .dom import DOCUMENT_TYPE_NODE, AsyncHTMLElement
from .events import EventEmitter
from .state import SessionState
from .utils import has_attribute_with_value

logger = logging.getLogger(__name__)

IGNORED_NODE_TYPES = (DOCUMENT_TYPE_NODE,)

ManifestTrigger = Callable[[AsyncHTMLElement], Awaitable[None]]


class DOMTraverser:
    """
    Walks the document in pre-order.

    For every node an ``element::<tag>`` event is emitted before its
    children are visited; each child is preceded by one ``traverse::down``
    and every node is closed by exactly one ``traverse::up``.

    Attributes:
        emitter: Where events are published
        state: Shared SessionState (finalHref, manifest flag)
        on_manifest: Awaited for the first ``<link rel="manifest">`` found
    """

    def __init__(
        self,
        emitter: EventEmitter,
        state: SessionState,
        on_manifest: Optional[ManifestTrigger] = None,
    ):
        self.emitter = emitter
        self.state = state
        self.on_manifest = on_manifest

    async def traverse(self, element: AsyncHTMLElement) -> None:
        if element.node_type in IGNORED_NODE_TYPES:
            return

        resource = self.state.final_href
        event_name = f"element::{element.node_name.lower()}"

        logger.debug(f"emitting {event_name}")
        await self.emitter.emit_async(event_name, {"element": element, "resource": resource})

        if has_attribute_with_value(element, "link", "rel", "manifest") and not self.state.manifest_seen:
            self.state.manifest_seen = True
            if self.on_manifest is not None:
                await self.on_manifest(element)

        for child in element.children:
            if child.node_type in IGNORED_NODE_TYPES:
                continue

            await self.emitter.emit_async("traverse::down", {"resource": resource})
            await self.traverse(child)

        await self.emitter.emit_async("traverse::up", {"resource": resource})
