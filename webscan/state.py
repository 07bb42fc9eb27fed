"""Mutable state of one collection, shared by the connector's components."""

from typing import Dict, List, Optional

from .cdp.session import Target
from .dom import AsyncHTMLDocument
from .types import NetworkData
from .utils import normalize_url, strip_fragment


class SessionState:
    """
    Everything one ``collect`` call learns about the page.

    Attributes:
        target_href: URL being collected, without fragment
        final_href: URL the root document ended up at after redirects
        manifest_seen: A ``<link rel="manifest">`` was traversed
        favicon_seen: A favicon was received for a ``<link rel="icon">``
        page_errored: The root document failed to load
        tabs: Tabs acquired for this collection, in acquisition order
        dom: Loaded document, None until the load event has been handled
        target_network_data: Request/response of the root document
        headers: Default headers for out-of-band fetches
    """

    def __init__(self, headers: Optional[Dict[str, str]] = None):
        self.target_href: Optional[str] = None
        self.final_href: Optional[str] = None
        self.manifest_seen: bool = False
        self.favicon_seen: bool = False
        self.page_errored: bool = False
        self.tabs: List[Target] = []
        self.dom: Optional[AsyncHTMLDocument] = None
        self.target_network_data: Optional[NetworkData] = None
        self.headers: Optional[Dict[str, str]] = dict(headers) if headers else None

    def start(self, target: str) -> None:
        href = normalize_url(target)
        self.target_href = strip_fragment(href)
        # Updated once the root document's redirects are known.
        self.final_href = href

    @property
    def dom_ready(self) -> bool:
        return self.dom is not None

    def is_target(self, url: Optional[str]) -> bool:
        return url is not None and url in (self.target_href, self.final_href)
