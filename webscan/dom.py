"""
DOM abstraction over the protocol's DOM domain.

The whole tree is fetched once with ``DOM.getDocument(depth=-1)``; element
accessors answer from that snapshot and only selector queries and HTML
serialization go back to the browser.
"""

import logging
import re
from typing import Any, Dict, Iterator, List, Optional

from .cdp.connection import CDPConnection
from .cdp.exceptions import CDPError

logger = logging.getLogger(__name__)

ELEMENT_NODE = 1
TEXT_NODE = 3
COMMENT_NODE = 8
DOCUMENT_NODE = 9
DOCUMENT_TYPE_NODE = 10

_EXPRESSION_RE = re.compile(r"^\s*\{\{.*\}\}\s*$", re.S)


class AsyncHTMLElement:
    """
    One node of the loaded document.

    Attributes:
        node: Raw protocol node (nodeId, nodeType, nodeName, attributes, children)
        document: Owning AsyncHTMLDocument
    """

    def __init__(self, node: Dict[str, Any], document: "AsyncHTMLDocument"):
        self.node = node
        self.document = document
        self._attributes: Optional[Dict[str, str]] = None

    @property
    def node_id(self) -> int:
        return self.node["nodeId"]

    @property
    def node_name(self) -> str:
        return self.node.get("nodeName", "")

    @property
    def node_type(self) -> int:
        return self.node.get("nodeType", 0)

    @property
    def attributes(self) -> Dict[str, str]:
        """Attributes by lowercased name; the protocol sends a flat name/value list."""
        if self._attributes is None:
            flat = self.node.get("attributes", [])
            self._attributes = {
                name.lower(): value for name, value in zip(flat[::2], flat[1::2])
            }
        return self._attributes

    def get_attribute(self, name: str) -> Optional[str]:
        return self.attributes.get(name.lower())

    def is_attribute_an_expression(self, name: str) -> bool:
        """Whether the attribute holds a template expression (``{{ ... }}``) instead of a value."""
        value = self.get_attribute(name)
        return bool(value and _EXPRESSION_RE.match(value))

    @property
    def children(self) -> List["AsyncHTMLElement"]:
        """Element children in document order; text, comments and doctypes are left out."""
        return [
            AsyncHTMLElement(child, self.document)
            for child in self.node.get("children", [])
            if child.get("nodeType") == ELEMENT_NODE
        ]

    async def outer_html(self) -> str:
        result = await self.document.connection.execute_command(
            "DOM.getOuterHTML", {"nodeId": self.node_id}
        )
        return result.get("outerHTML", "")

    def to_dict(self) -> Dict[str, Any]:
        return {"nodeName": self.node_name, "attributes": self.attributes}

    def __eq__(self, other):
        if not isinstance(other, AsyncHTMLElement):
            return NotImplemented
        return self.node_id == other.node_id

    def __hash__(self):
        return hash(self.node_id)

    def __repr__(self):
        return f"AsyncHTMLElement(node_name={self.node_name!r}, node_id={self.node_id!r})"


class AsyncHTMLDocument:
    """
    The loaded page's document.

    Usage:
        dom = AsyncHTMLDocument(conn)
        await dom.load()
        links = await dom.query_selector_all('link[rel~="icon"]')
    """

    def __init__(self, connection: CDPConnection):
        self.connection = connection
        self._root: Optional[Dict[str, Any]] = None
        self._nodes: Dict[int, Dict[str, Any]] = {}

    async def load(self) -> None:
        """Fetch the full tree and index every node by id."""
        result = await self.connection.execute_command("DOM.getDocument", {"depth": -1})
        root = result.get("root")
        if not root:
            raise CDPError("DOM.getDocument returned no root node")

        self._root = root
        self._nodes = {node["nodeId"]: node for node in _walk(root)}
        logger.debug(f"DOM loaded with {len(self._nodes)} nodes")

    @property
    def is_loaded(self) -> bool:
        return self._root is not None

    @property
    def root(self) -> AsyncHTMLElement:
        if self._root is None:
            raise CDPError("DOM accessed before load()")
        return AsyncHTMLElement(self._root, self)

    def get_element(self, node_id: int) -> Optional[AsyncHTMLElement]:
        node = self._nodes.get(node_id)
        return AsyncHTMLElement(node, self) if node is not None else None

    async def query_selector_all(self, selector: str) -> List[AsyncHTMLElement]:
        """Elements matching ``selector`` in document order."""
        result = await self.connection.execute_command(
            "DOM.querySelectorAll",
            {"nodeId": self.root.node_id, "selector": selector},
        )

        elements = []
        for node_id in result.get("nodeIds", []):
            element = self.get_element(node_id)
            if element is not None:
                elements.append(element)
        return elements

    async def page_html(self) -> str:
        return await self.root.outer_html()


def _walk(node: Dict[str, Any]) -> Iterator[Dict[str, Any]]:
    stack = [node]
    while stack:
        current = stack.pop()
        yield current
        stack.extend(reversed(current.get("children", [])))
