"""
Browser connector.

Drives one collection of a page: acquires a tab, enables the Network and
Page domains, navigates, and turns what the browser reports into lifecycle
events on an EventEmitter. Request correlation lives in
``webscan.correlator`` and the DOM walk in ``webscan.traversal``; this module
owns the session and the order in which those run.
"""

import asyncio
import logging
from typing import Any, Callable, Dict, List, Mapping, Optional

from .cdp.connection import CDPConnection
from .cdp.exceptions import (
    CDPError,
    CDPTargetNotFoundError,
    EvaluationError,
    PageLoadError,
    RequestError,
)
from .cdp.session import CDPSession
from .correlator import RequestCorrelator
from .dom import AsyncHTMLDocument, AsyncHTMLElement
from .events import EventEmitter
from .launcher import Launcher
from .redirects import RedirectManager
from .requester import Requester
from .state import SessionState
from .traversal import DOMTraverser
from .types import NetworkData
from .utils import cut_string, normalize_url, resolve_url

logger = logging.getLogger(__name__)

DEFAULT_TAB_URL = "about:blank"
DEFAULT_WAIT_FOR = 1000
DEFAULT_TIMEOUT = 60.0

# Trailing loadingFailed events still arrive after the favicon probe.
GRACE_PERIOD = 1.0
# Lets the browser finish closing tabs before another session attaches.
CLOSE_DELAY = 0.3

EVALUATE_WRAPPER = """(function wrapInNativePromise() {
  const __nativePromise = window.__nativePromise || Promise;

  return new __nativePromise(function (resolve) {
    return __nativePromise.resolve()
      .then(_ => %s)
      .catch(function wrapRuntimeEvalErrorInBrowser(e) {
        const err = e || new Error();
        const fallbackMessage = typeof err === 'string' ? err : 'unknown error';

        return {
          __failedInBrowser: true,
          name: err.name || 'Error',
          message: err.message || fallbackMessage,
          stack: err.stack || (new Error()).stack
        };
      })
      .then(resolve);
  });
}())"""


class Connector:
    """
    Collects one page through a Chrome DevTools Protocol session.

    Usage:
        emitter = EventEmitter()
        emitter.on("fetch::end", on_fetch_end)

        async with Connector(emitter, ChromeLauncher(port=9222)) as connector:
            await connector.collect("https://example.test/")
            value = await connector.evaluate("document.title")

    Attributes:
        emitter: Where lifecycle events are published
        launcher: Provides the browser (new or already running)
        tab_url: Page loaded in the tab before navigating
        use_tab_url: Open the tab on ``tab_url`` instead of a blank page
        wait_for: Settle delay after the load event, in milliseconds
        override_invalid_cert: Accept every certificate error
        timeout: Upper bound for ``evaluate``, in seconds
        chrome_host: Host of the browser's debugging endpoint
    """

    def __init__(
        self,
        emitter: EventEmitter,
        launcher: Launcher,
        *,
        tab_url: str = DEFAULT_TAB_URL,
        use_tab_url: bool = False,
        wait_for: int = DEFAULT_WAIT_FOR,
        headers: Optional[Mapping[str, str]] = None,
        override_invalid_cert: bool = False,
        timeout: float = DEFAULT_TIMEOUT,
        chrome_host: str = "localhost",
        max_size: int = 8_388_608,
        requester_factory: Callable[..., Requester] = Requester,
    ):
        self.emitter = emitter
        self.launcher = launcher
        self.tab_url = tab_url
        self.use_tab_url = use_tab_url
        self.wait_for = wait_for
        self.override_invalid_cert = override_invalid_cert
        self.timeout = timeout
        self.chrome_host = chrome_host
        self.max_size = max_size
        self.requester_factory = requester_factory

        self.state = SessionState(headers=dict(headers) if headers else None)
        self.redirects = RedirectManager()

        self._session: Optional[CDPSession] = None
        self._client: Optional[CDPConnection] = None
        self._correlator: Optional[RequestCorrelator] = None
        self._traverser = DOMTraverser(emitter, self.state, on_manifest=self._get_manifest)
        self._done: Optional[asyncio.Future] = None
        self._started = False
        self._load_handled = False

    # ------------------------------------------------------------------
    # Accessors

    @property
    def client(self) -> Optional[CDPConnection]:
        return self._client

    @property
    def dom(self) -> Optional[AsyncHTMLDocument]:
        return self.state.dom

    @property
    def headers(self) -> Optional[Dict[str, str]]:
        """Response headers of the root document."""
        if self.state.target_network_data is None:
            return None
        return self.state.target_network_data.response.headers

    @property
    def target_network_data(self) -> Optional[NetworkData]:
        return self.state.target_network_data

    async def html(self) -> str:
        if self.state.dom is None:
            raise CDPError("The page has not been loaded")
        return await self.state.dom.page_html()

    async def query_selector_all(self, selector: str) -> List[AsyncHTMLElement]:
        if self.state.dom is None:
            return []
        return await self.state.dom.query_selector_all(selector)

    # ------------------------------------------------------------------
    # Collection

    async def collect(self, target: str) -> None:
        """
        Load ``target`` and emit its lifecycle events.

        Returns once ``scan::end`` has been emitted.

        Raises:
            CDPError: The tab could not be acquired, navigation failed,
                the root document could not be loaded (PageLoadError,
                RedirectError), or the tab connection closed first
                (ConnectionClosedError)
        """
        if self._started:
            raise CDPError("collect() can only be called once per connector")
        self._started = True

        target = normalize_url(target)
        self.state.start(target)
        await self.emitter.emit_async("scan::start", {"resource": target})

        self._client = await self._initiate_comms()
        self._done = asyncio.get_running_loop().create_future()
        self._client.on_close(self._on_connection_closed)

        self._correlator = RequestCorrelator(
            self._client,
            self.emitter,
            self.state,
            self.redirects,
            fetch_content=self.fetch_content,
            on_fatal=self._fail,
        )

        try:
            if self.override_invalid_cert:
                await self._override_certificate_errors()

            self._client.subscribe("Page.loadEventFired", self._on_load_event_fired)
            await self._configure_and_enable()

            logger.info(f"Navigating to {cut_string(target, 100)}")
            await self._client.execute_command("Page.navigate", {"url": target})
        except CDPError as e:
            logger.error(f"Navigation to {target} failed: {e}")
            await self.emitter.emit_async("scan::end", {"resource": target})
            raise

        await self._done

    async def _initiate_comms(self) -> CDPConnection:
        initial_url = self.tab_url if self.use_tab_url else DEFAULT_TAB_URL
        info = await self.launcher.launch(initial_url)
        logger.debug(f"Browser on port {info.port} (new: {info.is_new})")

        self._session = CDPSession(
            chrome_host=self.chrome_host,
            chrome_port=info.port,
            max_size=self.max_size,
        )

        if info.is_new:
            tabs = await asyncio.to_thread(
                self._session.list_targets, "page", include_extensions=False
            )
            if not tabs:
                raise CDPTargetNotFoundError("No page tab available in the launched browser")

            self.state.tabs.extend(tabs)
            tab = tabs[0]
        else:
            new_tab = await asyncio.to_thread(
                self._session.new_tab, self.tab_url if self.use_tab_url else None
            )
            self.state.tabs.append(new_tab)
            tab = await asyncio.to_thread(self._session.resolve_tab, new_tab)

        logger.debug(f"Attaching to tab {tab.id}")
        return await self._session.attach(tab)

    async def _override_certificate_errors(self) -> None:
        self._client.subscribe("Security.certificateError", self._on_certificate_error)
        await self._client.execute_command("Security.enable")
        await self._client.execute_command("Security.setOverrideCertificateErrors", {"override": True})

    async def _on_certificate_error(self, params: dict) -> None:
        logger.debug(f"Accepting certificate error {params.get('errorType')}")
        await self._client.execute_command(
            "Security.handleCertificateError",
            {"eventId": params.get("eventId"), "action": "continue"},
        )

    async def _configure_and_enable(self) -> None:
        self._correlator.subscribe()

        await self._client.execute_command("Network.clearBrowserCache")
        await self._client.execute_command("Network.setCacheDisabled", {"cacheDisabled": True})
        await self._client.execute_command("Network.enable")
        await self._client.execute_command("Page.enable")

    async def _on_load_event_fired(self, params: dict) -> None:
        if self._load_handled or self._done is None or self._done.done():
            return
        self._load_handled = True

        await asyncio.sleep(self.wait_for / 1000)

        try:
            dom = AsyncHTMLDocument(self._client)
            await dom.load()
            self.state.dom = dom

            await self._correlator.process_pending()

            if self.state.page_errored:
                raise PageLoadError("Problem loading the website", url=self.state.target_href)

            event = {"resource": self.state.final_href}

            await self.emitter.emit_async("traverse::start", event)
            await self._traverser.traverse(dom.root)
            await self.emitter.emit_async("traverse::end", event)

            if not self.state.manifest_seen:
                await self.emitter.emit_async("manifestfetch::missing", {"resource": self.state.target_href})

            if not self.state.favicon_seen:
                icons = await dom.query_selector_all('link[rel~="icon"]')
                await self._get_favicon(icons[0] if icons else None)

            await asyncio.sleep(GRACE_PERIOD)
            await self.emitter.emit_async("scan::end", event)

            if not self._done.done():
                self._done.set_result(None)
        except Exception as e:
            # Surfaces through collect(), which awaits the future.
            if not self._done.done():
                self._done.set_exception(e)

    async def _fail(self, error: Exception) -> None:
        await self.emitter.emit_async("scan::end", {"resource": self.state.target_href})
        if self._done is not None and not self._done.done():
            self._done.set_exception(error)

    async def _on_connection_closed(self, error: Exception) -> None:
        if self._done is None or self._done.done():
            return
        logger.error(f"Tab connection lost before the collection finished: {error}")
        await self._fail(error)

    # ------------------------------------------------------------------
    # Secondary fetches

    async def _get_manifest(self, element: AsyncHTMLElement) -> None:
        """
        Ask the browser for the manifest so its fetch shows up as Network
        events; fall back to fetching it ourselves.
        """
        try:
            await self._client.execute_command("Page.getAppManifest")
            return
        except CDPError as e:
            logger.debug(f"Page.getAppManifest failed, fetching manually: {e}")

        await self._get_manifest_manually(element)

    async def _get_manifest_manually(self, element: AsyncHTMLElement) -> None:
        resource = resolve_url(element.get_attribute("href") or "", self.state.final_href)

        try:
            data = await self.fetch_content(resource)
        except CDPError as e:
            await self.emitter.emit_async("manifestfetch::error", {"error": e, "resource": resource})
            return

        status = data.response.status_code
        if status >= 400:
            error = RequestError(
                f"Manifest request failed with status {status}",
                url=resource,
                status_code=status,
            )
            await self.emitter.emit_async("manifestfetch::error", {"error": error, "resource": resource})
            return

        await self.emitter.emit_async("manifestfetch::end", {
            "element": element,
            "request": data.request,
            "resource": resource,
            "response": data.response,
        })

    async def _get_favicon(self, element: Optional[AsyncHTMLElement]) -> None:
        href = (element.get_attribute("href") if element is not None else None) or "/favicon.ico"
        resource = resolve_url(href, self.state.final_href)

        logger.debug(f"Get favicon: {cut_string(resource)}")
        await self.emitter.emit_async("fetch::start", {"resource": resource})

        try:
            data = await self.fetch_content(resource)
        except CDPError as e:
            await self.emitter.emit_async("fetch::error", {
                "element": element,
                "error": e,
                "hops": getattr(e, "hops", []),
                "resource": resource,
            })
            return

        await self.emitter.emit_async("fetch::end", {
            "element": element,
            "request": data.request,
            "resource": resource,
            "response": data.response,
        })

    async def fetch_content(
        self, target: str, custom_headers: Optional[Mapping[str, str]] = None
    ) -> NetworkData:
        """
        Fetch ``target`` outside the browser with the page's headers.

        Raises:
            RequestError / RedirectError: The fetch failed
        """
        headers: Dict[str, Any] = {}
        if self.state.headers:
            headers.update(self.state.headers)
        if custom_headers:
            headers.update(custom_headers)

        requester = self.requester_factory(headers=headers)
        return await requester.get(target)

    # ------------------------------------------------------------------
    # Page access

    async def evaluate(self, code: str) -> Any:
        """
        Run ``code`` in the page and return its (JSON-serializable) value.

        Promises are awaited.

        Raises:
            EvaluationError: The expression threw in the page
            CDPTimeoutError: No answer within ``timeout`` seconds
        """
        if self._client is None:
            raise CDPError("evaluate() called before collect()")

        result = await self._client.execute_command(
            "Runtime.evaluate",
            {
                "expression": EVALUATE_WRAPPER % code,
                "includeCommandLineAPI": True,
                "awaitPromise": True,
                "returnByValue": True,
            },
            timeout=self.timeout,
        )

        if result.get("exceptionDetails"):
            raise EvaluationError(
                "an unexpected driver error occurred",
                details={"exceptionDetails": result["exceptionDetails"]},
            )

        value = result.get("result", {}).get("value")
        if isinstance(value, dict) and value.get("__failedInBrowser"):
            raise EvaluationError(
                value.get("message", "unknown error"),
                name=value.get("name", "Error"),
                stack=value.get("stack"),
            )

        return value

    async def close(self) -> None:
        """Close the tabs this collection used, then the connection."""
        while self.state.tabs:
            tab = self.state.tabs.pop()
            try:
                await asyncio.to_thread(self._session.close_tab, tab.id)
            except CDPError as e:
                logger.warning(f"Couldn't close tab {tab.id}: {e}")

        if self._client is not None:
            await self._client.disconnect()
            await asyncio.sleep(CLOSE_DELAY)

    async def __aenter__(self) -> "Connector":
        return self

    async def __aexit__(self, exc_type, exc_val, exc_tb) -> None:
        await self.close()
