"""
Network event correlation.

Turns the protocol's Network.requestWillBeSent / responseReceived /
loadingFailed notifications into ``*fetch::start|end|error`` events. Each
request is tracked by its requestId until it completes or fails; redirects
are folded into the RedirectManager; responses and failures that arrive
before the DOM can be queried are queued and replayed, in arrival order,
once it can.
"""

import base64
import logging
from collections import deque
from functools import partial
from typing import Awaitable, Callable, Deque, Dict, List, Optional, Set

from .cdp.connection import CDPConnection
from .cdp.exceptions import (
    CDPError,
    RedirectError,
    RedirectLimitError,
    RedirectLoopError,
    RequestError,
)
from .content_type import get_content_type_data
from .dom import AsyncHTMLElement
from .events import EventEmitter
from .logging_setup import log_with_context
from .redirects import RedirectManager
from .state import SessionState
from .types import FetchEnd, FetchError, NetworkData, Request, RequestRecord, Response, ResponseBody
from .utils import cut_string, has_attribute_with_value, is_http_url, normalize_headers, resolve_url

logger = logging.getLogger(__name__)

# Initiators whose requests can be traced back to an element in the markup.
# https://chromedevtools.github.io/devtools-protocol/tot/Network/#type-Initiator
ELEMENT_INITIATORS = ("parser", "other")

FetchContent = Callable[..., Awaitable[NetworkData]]
PendingEvent = Callable[[], Awaitable[None]]


def _css_string(value: str) -> str:
    return value.replace("\\", "\\\\").replace('"', '\\"')


class RequestCorrelator:
    """
    Per-request state machine fed by the Network domain.

    A request is Pending from requestWillBeSent until its response
    (Completed) or failure (Failed) has been reported; a redirect keeps it
    Pending under the URL it was redirected to. The root document's record
    is kept for the whole collection.

    Attributes:
        connection: Connection of the scanned tab (response bodies, DOM queries)
        emitter: Where lifecycle events are published
        state: Shared SessionState of the collection
        redirects: Redirect chains seen so far
        fetch_content: Out-of-band fetch used to recover raw response bytes
        on_fatal: Called when the root document cannot be loaded
    """

    def __init__(
        self,
        connection: CDPConnection,
        emitter: EventEmitter,
        state: SessionState,
        redirects: RedirectManager,
        fetch_content: FetchContent,
        on_fatal: Optional[Callable[[Exception], Awaitable[None]]] = None,
    ):
        self.connection = connection
        self.emitter = emitter
        self.state = state
        self.redirects = redirects
        self.fetch_content = fetch_content
        self.on_fatal = on_fatal

        self._requests: Dict[str, RequestRecord] = {}
        self._dropped: Set[str] = set()
        self._pending: Deque[PendingEvent] = deque()
        self._ready = False

    @property
    def ready(self) -> bool:
        """Events are handled as they come once the DOM is loaded and the queue is drained."""
        return self._ready

    @property
    def pending_count(self) -> int:
        return len(self._pending)

    def get_request(self, request_id: str) -> Optional[RequestRecord]:
        return self._requests.get(request_id)

    def subscribe(self) -> None:
        """Register the Network event handlers on the connection."""
        self.connection.subscribe("Network.requestWillBeSent", self.on_request_will_be_sent)
        self.connection.subscribe("Network.responseReceived", self.on_response_received)
        self.connection.subscribe("Network.loadingFailed", self.on_loading_failed)

    async def process_pending(self) -> None:
        """
        Replay the events queued while the DOM was missing.

        Events arriving during the replay are appended to the same queue, so
        the overall order is still arrival order.
        """
        while self._pending:
            logger.debug(f"Pending requests: {len(self._pending)}")
            await self._pending.popleft()()
        self._ready = True

    def is_root_favicon(self, url: Optional[str]) -> bool:
        """
        ``/favicon.ico`` of the final URL is probed separately after the
        traversal; the browser's own request for it is not reported.
        """
        if not self.state.final_href or not url:
            return False
        return url == resolve_url("/favicon.ico", self.state.final_href)

    # ------------------------------------------------------------------
    # Network.requestWillBeSent

    async def on_request_will_be_sent(self, params: dict) -> None:
        request_id = params.get("requestId")
        request = params.get("request", {})
        request_url: str = request.get("url", "")

        if request_id is None or request_id in self._dropped:
            return

        self._requests[request_id] = params  # type: ignore[assignment]

        if self.state.headers is None:
            self.state.headers = dict(request.get("headers") or {})

        redirect_response = params.get("redirectResponse")
        if redirect_response:
            await self._on_redirect(request_id, redirect_response.get("url", ""), request_url)
            return

        event_name = "targetfetch::start" if request_url == self.state.target_href else "fetch::start"
        logger.debug(f"About to start fetching {cut_string(request_url)}")

        if not self.is_root_favicon(request_url):
            await self.emitter.emit_async(event_name, {"resource": request_url})

    async def _on_redirect(self, request_id: str, source: str, target: str) -> None:
        logger.debug(f"Redirect found for {cut_string(source)}")

        hops = self.redirects.calculate(source)

        if target == source or target in hops:
            log_with_context(
                logger, logging.ERROR, f"Error redirecting: {target} is an infinite loop", url=target
            )
            error: RedirectError = RedirectLoopError(
                f"Error redirecting: {target} is an infinite loop",
                url=target,
                hops=hops + [source],
            )
            await self._reject_redirect(request_id, error)
            return

        if self.redirects.exceeds_limit(source):
            log_with_context(
                logger, logging.ERROR, f"More than {self.redirects.limit} redirects found for {target}",
                url=target,
            )
            error = RedirectLimitError(
                f"More than {self.redirects.limit} redirects found for {target}",
                url=target,
                hops=hops + [source],
            )
            await self._reject_redirect(request_id, error)
            return

        self.redirects.add(source, target)

        chain = self.redirects.calculate(target)
        if chain and chain[0] == self.state.target_href:
            self.state.final_href = target

    async def _reject_redirect(self, request_id: str, error: RedirectError) -> None:
        self._dropped.add(request_id)
        self._requests.pop(request_id, None)

        origin = error.hops[0] if error.hops else error.url
        event: FetchError = {
            "element": None,
            "error": error,
            "hops": error.hops,
            "resource": origin,
        }

        if origin == self.state.target_href:
            self.state.page_errored = True
            await self.emitter.emit_async("targetfetch::error", event)
            if self.on_fatal is not None:
                await self.on_fatal(error)
            return

        await self.emitter.emit_async("fetch::error", event)

    # ------------------------------------------------------------------
    # Network.responseReceived

    async def on_response_received(self, params: dict) -> None:
        request_id = params.get("requestId")
        if request_id in self._dropped:
            return

        response = params.get("response", {})
        resource_url: str = response.get("url", "")
        hops = self.redirects.calculate(resource_url)
        original_url = hops[0] if hops else resource_url

        event_name = "targetfetch::end" if original_url == self.state.target_href else "fetch::end"
        if params.get("type") == "Manifest":
            event_name = "manifestfetch::end"

        if event_name != "targetfetch::end" and not self._ready:
            self._pending.append(partial(self._handle_response, params, event_name, original_url))
            return

        await self._handle_response(params, event_name, original_url)

    async def _handle_response(self, params: dict, event_name: str, original_url: str) -> None:
        request_id = params.get("requestId")
        response = params.get("response", {})
        resource_url: str = response.get("url", "")

        # Claimed before the first await so a later loadingFailed for the
        # same request finds nothing. The root record stays for late redirects.
        record: Optional[RequestRecord] = None
        if request_id is not None:
            if event_name == "targetfetch::end":
                record = self._requests.get(request_id)
            else:
                record = self._requests.pop(request_id, None)

        element: Optional[AsyncHTMLElement] = None
        if event_name != "targetfetch::end":
            try:
                element = await self.get_element_from_request(record)
            except CDPError as e:
                logger.debug(f"Error finding element for request {request_id}, element will be None ({e})")

        request_headers = response.get("requestHeaders")
        if request_headers is None and record is not None:
            request_headers = record.get("request", {}).get("headers")

        request = Request(url=original_url, headers=request_headers)
        data: FetchEnd = {
            "element": element,
            "request": request,
            "resource": resource_url,
            "response": await self.create_response(params, element),
        }

        if event_name == "targetfetch::end":
            self.state.target_network_data = NetworkData(request, data["response"])

        if has_attribute_with_value(element, "link", "rel", "icon"):
            self.state.favicon_seen = True

        if event_name == "manifestfetch::end" and data["response"].status_code >= 400:
            status = data["response"].status_code
            await self.emitter.emit_async("manifestfetch::error", {
                "error": RequestError(
                    f"Manifest request failed with status {status}",
                    url=resource_url,
                    status_code=status,
                ),
                "resource": resource_url,
            })
        elif not self.is_root_favicon(resource_url):
            # Emitted for every status code, not only 200.
            await self.emitter.emit_async(event_name, data)

    async def create_response(self, params: dict, element: Optional[AsyncHTMLElement]) -> Response:
        """Build the Response for a responseReceived event and resolve its content type."""
        cdp_response = params.get("response", {})
        resource_url: str = cdp_response.get("url", "")

        response = Response(
            url=resource_url,
            status_code=int(cdp_response.get("status", 0)),
            headers=normalize_headers(cdp_response.get("headers")),
            hops=self.redirects.calculate(resource_url),
            body=await self.get_response_body(params),
        )
        response.media_type, response.charset = get_content_type_data(element, resource_url, response)
        return response

    async def get_response_body(self, params: dict) -> ResponseBody:
        """
        Body of a 200 response as the browser received it.

        Other statuses get an empty body. A body requested after the
        browser dropped it comes back empty instead of failing the response.
        """
        cdp_response = params.get("response", {})

        if cdp_response.get("status") != 200:
            return ResponseBody()

        try:
            result = await self.connection.execute_command(
                "Network.getResponseBody", {"requestId": params.get("requestId")}
            )
        except CDPError:
            logger.debug(f"Body requested after connection closed for request {params.get('requestId')}")
            return ResponseBody(raw_content=b"")

        body: str = result.get("body", "")
        if result.get("base64Encoded"):
            raw_content = base64.b64decode(body)
            content = raw_content.decode("utf-8", errors="replace")
        else:
            raw_content = body.encode("utf-8")
            content = body

        logger.debug(f"Content for {cut_string(cdp_response.get('url', ''))} downloaded")

        return ResponseBody(
            content=content,
            raw_content=raw_content,
            raw_response_loader=partial(self._load_raw_response, cdp_response, raw_content),
        )

    async def _load_raw_response(self, cdp_response: dict, raw_content: bytes) -> bytes:
        headers = normalize_headers(cdp_response.get("headers"))
        content_length = headers.get("content-length")

        # Not compressed on the wire: what the browser handed over is what was sent.
        if content_length is not None and content_length.strip() == str(len(raw_content)):
            return raw_content

        data = await self.fetch_content(cdp_response.get("url", ""), cdp_response.get("requestHeaders"))
        return await data.response.body.raw_response() or b""

    # ------------------------------------------------------------------
    # Network.loadingFailed

    async def on_loading_failed(self, params: dict) -> None:
        request_id = params.get("requestId")
        record = self._requests.get(request_id) if request_id is not None else None

        # Already reported through responseReceived; the two are not ordered.
        if record is None:
            logger.debug("requestId doesn't exist, skipping this error")
            return

        resource: str = record.get("request", {}).get("url", "")

        if self.state.is_target(resource):
            self.state.page_errored = True
            event: FetchError = {
                "element": None,
                "error": self._request_error(params, resource),
                "hops": self.redirects.calculate(resource),
                "resource": resource,
            }
            await self.emitter.emit_async("targetfetch::error", event)
            return

        if params.get("type") == "Manifest":
            self._requests.pop(request_id, None)
            await self.emitter.emit_async("manifestfetch::error", {
                "error": self._request_error(params, resource),
                "resource": resource,
            })
            return

        if not self._ready:
            self._pending.append(partial(self._handle_failure, params))
            return

        await self._handle_failure(params)

    async def _handle_failure(self, params: dict) -> None:
        request_id = params.get("requestId")
        logger.debug(f"Error found for request {request_id}: {params.get('errorText')}")

        record = self._requests.pop(request_id, None)
        if record is None:
            logger.debug(f"Request {request_id} failed but wasn't in the list")
            return
        # A responseReceived arriving after this is ignored.
        self._dropped.add(request_id)

        element: Optional[AsyncHTMLElement] = None
        try:
            element = await self.get_element_from_request(record)
        except CDPError as e:
            logger.debug(f"Error finding element for request {request_id}, element will be None ({e})")

        resource: str = record.get("request", {}).get("url", "")
        event: FetchError = {
            "element": element,
            "error": self._request_error(params, resource),
            "hops": self.redirects.calculate(resource),
            "resource": resource,
        }

        if not self.is_root_favicon(resource):
            await self.emitter.emit_async("fetch::error", event)

    @staticmethod
    def _request_error(params: dict, resource: str) -> RequestError:
        details = {
            key: params[key]
            for key in ("type", "blockedReason", "canceled")
            if params.get(key) is not None
        }
        return RequestError(params.get("errorText") or "Request failed", url=resource, details=details)

    # ------------------------------------------------------------------
    # Element correlation

    async def get_element_from_request(self, record: Optional[RequestRecord]) -> Optional[AsyncHTMLElement]:
        """
        Element whose ``src``/``href`` issued the request, if it can be found.

        Only requests started by the parser (or "other") over HTTP(S) are
        attributed; script and preload initiated fetches never are.
        """
        if record is None or not self.state.dom_ready:
            return None

        initiator_type = (record.get("initiator") or {}).get("type")
        request_url: str = record.get("request", {}).get("url", "")

        # Elements reference the URL from before any redirect.
        hops = self.redirects.calculate(request_url)
        original_url = hops[0] if hops else request_url

        if initiator_type in ELEMENT_INITIATORS and is_http_url(original_url):
            return await self.get_element_from_parser(original_url.split("/"))

        return None

    async def get_element_from_parser(self, parts: List[str]) -> Optional[AsyncHTMLElement]:
        """
        Match ever longer URL suffixes against ``src``/``href`` attributes.

        Stops as soon as one element matches. If several elements share the
        longest matching suffix, the first one in document order is the one
        that issued the request.
        """
        parts = list(parts)
        basename: Optional[str] = None
        elements: List[AsyncHTMLElement] = []

        while parts:
            segment = parts.pop()
            basename = segment if basename is None else f"{segment}/{basename}"
            value = _css_string(basename)
            query = f'[src$="{value}"],[href$="{value}"]'

            new_elements = await self.state.dom.query_selector_all(query)

            if not new_elements:
                # Relative URLs stop matching once the host is prepended.
                return elements[0] if elements else None

            if len(new_elements) == 1:
                return new_elements[0]

            elements = new_elements

        return elements[0] if elements else None
