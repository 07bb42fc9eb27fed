"""Unit tests for Connector.collect/evaluate/close with a scripted fake tab."""

import asyncio

import pytest
from unittest.mock import AsyncMock, MagicMock, patch

from webscan.cdp.connection import CDPConnection
from webscan.cdp.exceptions import (
    CDPError,
    ConnectionClosedError,
    CDPTimeoutError,
    CommandFailedError,
    EvaluationError,
    PageLoadError,
    RedirectLoopError,
    RequestError,
)
from webscan.cdp.session import Target
from webscan.connector import Connector
from webscan.launcher import Launcher
from webscan.types import BrowserInfo, NetworkData, Request, Response

from tests.helpers import make_document, make_element

TARGET = "https://example.test/"


class FakeTab:
    """
    Stands in for an attached tab.

    Commands are answered from ``results`` (by method); navigating plays
    ``network_events`` through the subscribed handlers, then fires the load
    event.
    """

    def __init__(self, document=None):
        self.connection = AsyncMock(spec=CDPConnection)
        self.connection.execute_command.side_effect = self.execute
        self.connection.on_close.side_effect = self.on_close
        self.connection.subscribe.side_effect = self.subscribe
        self.handlers = {}
        self.close_handlers = []
        self.commands = []
        self.results = {
            "DOM.getDocument": {"root": document or make_document(make_element(4, "head"))},
            "DOM.querySelectorAll": {"nodeIds": []},
            "Page.navigate": {"frameId": "F1"},
        }
        self.errors = {}
        self.network_events = []
        self.fire_load = True

    def subscribe(self, event_name, callback):
        self.handlers.setdefault(event_name, []).append(callback)

    def on_close(self, callback):
        self.close_handlers.append(callback)

    async def close(self, error):
        for handler in self.close_handlers:
            await handler(error)

    async def fire(self, event_name, params):
        for handler in self.handlers.get(event_name, []):
            await handler(params)

    async def execute(self, method, params=None, **kwargs):
        self.commands.append((method, params))
        if method in self.errors:
            raise self.errors[method]
        if method == "Page.navigate":
            for event_name, event_params in self.network_events:
                await self.fire(event_name, event_params)
            if self.fire_load:
                asyncio.get_running_loop().call_soon(
                    lambda: asyncio.ensure_future(self.fire("Page.loadEventFired", {"timestamp": 1.0}))
                )
        result = self.results.get(method, {})
        return result(params) if callable(result) else result

    @property
    def methods(self):
        return [method for method, _ in self.commands]


def root_document_events(status=200):
    return [
        ("Network.requestWillBeSent", {
            "requestId": "1",
            "request": {"url": TARGET, "headers": {"User-Agent": "fake"}},
            "initiator": {"type": "other"},
            "type": "Document",
        }),
        ("Network.responseReceived", {
            "requestId": "1",
            "type": "Document",
            "response": {"url": TARGET, "status": status, "headers": {"Content-Type": "text/html"}},
        }),
    ]


def favicon_data(status=404):
    url = "https://example.test/favicon.ico"
    return NetworkData(Request(url), Response(url, status))


@pytest.fixture(autouse=True)
def no_delays(monkeypatch):
    monkeypatch.setattr("webscan.connector.GRACE_PERIOD", 0)
    monkeypatch.setattr("webscan.connector.CLOSE_DELAY", 0)


@pytest.fixture
def tab():
    tab = FakeTab()
    tab.network_events = root_document_events()
    return tab


@pytest.fixture
def launcher():
    launcher = AsyncMock(spec=Launcher)
    launcher.launch.return_value = BrowserInfo(port=9333, is_new=True)
    return launcher


@pytest.fixture
def requester():
    requester = MagicMock()
    requester.get = AsyncMock(return_value=favicon_data())
    return requester


@pytest.fixture
def session(tab):
    with patch("webscan.connector.CDPSession") as session_class:
        session = session_class.return_value
        session.list_targets.return_value = [
            Target({"id": "page-1", "type": "page", "url": "about:blank",
                    "webSocketDebuggerUrl": "ws://localhost:9333/devtools/page/page-1"}),
        ]
        session.attach = AsyncMock(return_value=tab.connection)
        yield session


@pytest.fixture
def connector(emitter, launcher, requester, session):
    return Connector(emitter, launcher, wait_for=0, requester_factory=lambda headers: requester)


@pytest.mark.unit
@pytest.mark.asyncio
class TestCollect:

    async def test_event_sequence(self, connector, recorder):
        await connector.collect(TARGET)

        assert recorder.names == [
            "scan::start",
            "targetfetch::start",
            "targetfetch::end",
            "traverse::start",
            "element::#document",
            "traverse::down", "element::html",
            "traverse::down", "element::head", "traverse::up",
            "traverse::up",
            "traverse::up",
            "traverse::end",
            "manifestfetch::missing",
            "fetch::start",
            "fetch::end",
            "scan::end",
        ]
        assert recorder.payloads("manifestfetch::missing") == [{"resource": TARGET}]
        assert recorder.payloads("fetch::start") == [{"resource": "https://example.test/favicon.ico"}]

    async def test_domains_enabled_before_navigation(self, connector, tab):
        await connector.collect(TARGET)

        assert tab.methods[:5] == [
            "Network.clearBrowserCache",
            "Network.setCacheDisabled",
            "Network.enable",
            "Page.enable",
            "Page.navigate",
        ]
        assert ("Page.navigate", {"url": TARGET}) in tab.commands

    async def test_new_browser_uses_first_listed_tab(self, connector, launcher, session):
        await connector.collect(TARGET)

        launcher.launch.assert_awaited_once_with("about:blank")
        session.list_targets.assert_called_once_with("page", include_extensions=False)
        assert session.attach.await_args.args[0].id == "page-1"
        session.new_tab.assert_not_called()

    async def test_reused_browser_opens_own_tab(self, emitter, launcher, requester, session):
        launcher.launch.return_value = BrowserInfo(port=9222, is_new=False)
        opened = Target({"id": "page-9", "url": "about:blank"})
        listed = Target({"id": "page-9", "url": "about:blank",
                         "webSocketDebuggerUrl": "ws://localhost:9222/devtools/page/page-9"})
        session.new_tab.return_value = opened
        session.resolve_tab.return_value = listed

        connector = Connector(emitter, launcher, wait_for=0, requester_factory=lambda headers: requester)
        await connector.collect(TARGET)

        session.new_tab.assert_called_once_with(None)
        session.resolve_tab.assert_called_once_with(opened)
        assert session.attach.await_args.args[0] is listed
        assert connector.state.tabs == [opened]

    async def test_accessors_after_collect(self, connector, tab):
        await connector.collect(TARGET)

        assert connector.dom is not None
        assert connector.headers == {"content-type": "text/html"}
        assert connector.target_network_data.request.url == TARGET

        tab.results["DOM.getOuterHTML"] = {"outerHTML": "<html><head></head></html>"}
        assert await connector.html() == "<html><head></head></html>"

    async def test_collect_is_not_reentrant(self, connector):
        await connector.collect(TARGET)

        with pytest.raises(CDPError, match="only be called once"):
            await connector.collect(TARGET)

    async def test_navigation_failure_ends_scan(self, connector, tab, recorder):
        tab.errors["Page.navigate"] = CommandFailedError("Cannot navigate to invalid URL")

        with pytest.raises(CommandFailedError):
            await connector.collect(TARGET)

        assert recorder.names == ["scan::start", "scan::end"]

    async def test_enable_failure_ends_scan(self, connector, tab, recorder):
        tab.errors["Network.enable"] = CommandFailedError("Network domain unavailable")

        with pytest.raises(CommandFailedError):
            await connector.collect(TARGET)

        assert recorder.names[-1] == "scan::end"
        assert "Page.navigate" not in tab.methods

    async def test_root_failure_fails_collection(self, connector, tab, recorder):
        tab.network_events = [
            root_document_events()[0],
            ("Network.loadingFailed", {"requestId": "1", "errorText": "net::ERR_CONNECTION_REFUSED",
                                       "type": "Document"}),
        ]

        with pytest.raises(PageLoadError):
            await connector.collect(TARGET)

        assert "targetfetch::error" in recorder.names
        assert "traverse::start" not in recorder.names

    async def test_root_redirect_loop_fails_without_load(self, connector, tab, recorder):
        tab.fire_load = False
        request = root_document_events()[0]
        tab.network_events = [
            request,
            ("Network.requestWillBeSent", dict(request[1], redirectResponse={"url": TARGET, "status": 302})),
        ]

        with pytest.raises(RedirectLoopError):
            await connector.collect(TARGET)

        assert recorder.names == ["scan::start", "targetfetch::start", "targetfetch::error", "scan::end"]

    async def test_target_is_normalized_like_the_browser(self, connector, tab, recorder):
        await connector.collect("HTTPS://Example.test")

        assert ("Page.navigate", {"url": TARGET}) in tab.commands
        assert recorder.payloads("scan::start") == [{"resource": TARGET}]
        assert recorder.names[1:3] == ["targetfetch::start", "targetfetch::end"]
        assert connector.headers == {"content-type": "text/html"}
        assert connector.state.target_href == TARGET

    async def test_root_failure_detected_without_trailing_slash(self, connector, tab, recorder):
        tab.network_events = [
            root_document_events()[0],
            ("Network.loadingFailed", {"requestId": "1", "errorText": "net::ERR_NAME_NOT_RESOLVED",
                                       "type": "Document"}),
        ]

        with pytest.raises(PageLoadError):
            await connector.collect("https://example.test")

        assert recorder.payloads("targetfetch::error")[0]["resource"] == TARGET
        assert "traverse::start" not in recorder.names

    async def test_connection_lost_before_load_fails_collection(self, connector, tab, recorder):
        tab.fire_load = False

        collecting = asyncio.create_task(connector.collect(TARGET))
        while "Page.navigate" not in tab.methods:
            await asyncio.sleep(0)
        await tab.close(ConnectionClosedError("Connection closed by the browser"))

        with pytest.raises(ConnectionClosedError):
            await asyncio.wait_for(collecting, timeout=5)

        assert recorder.names[-1] == "scan::end"
        assert "traverse::start" not in recorder.names

    async def test_subresources_before_load_are_reported(self, connector, tab, recorder):
        tab.network_events = root_document_events() + [
            ("Network.requestWillBeSent", {
                "requestId": "2",
                "request": {"url": "https://example.test/app.js", "headers": {}},
                "initiator": {"type": "parser"},
                "type": "Script",
            }),
            ("Network.responseReceived", {
                "requestId": "2",
                "type": "Script",
                "response": {"url": "https://example.test/app.js", "status": 200, "headers": {}},
            }),
        ]

        await connector.collect(TARGET)

        ends = recorder.payloads("fetch::end")
        assert ends[0]["resource"] == "https://example.test/app.js"
        assert recorder.names.index("fetch::end") < recorder.names.index("traverse::start")

    async def test_override_invalid_cert(self, emitter, launcher, requester, session, tab):
        connector = Connector(
            emitter, launcher, wait_for=0, override_invalid_cert=True,
            requester_factory=lambda headers: requester,
        )

        await connector.collect(TARGET)
        await tab.fire("Security.certificateError", {"eventId": 3, "errorType": "net::ERR_CERT_INVALID"})

        assert tab.methods.index("Security.setOverrideCertificateErrors") < tab.methods.index("Page.navigate")
        assert ("Security.setOverrideCertificateErrors", {"override": True}) in tab.commands
        assert ("Security.handleCertificateError", {"eventId": 3, "action": "continue"}) in tab.commands


@pytest.mark.unit
@pytest.mark.asyncio
class TestSecondaryFetches:

    async def test_manifest_asked_from_browser(self, emitter, launcher, requester, session, recorder):
        tab = FakeTab(make_document(make_element(4, "head", children=[
            make_element(6, "link", ["rel", "manifest", "href", "/site.webmanifest"]),
        ])))
        tab.network_events = root_document_events()
        session.attach.return_value = tab.connection

        connector = Connector(emitter, launcher, wait_for=0, requester_factory=lambda headers: requester)
        await connector.collect(TARGET)

        assert "Page.getAppManifest" in tab.methods
        assert "manifestfetch::missing" not in recorder.names

    async def test_manifest_fetched_manually_when_browser_cannot(self, emitter, launcher, session, recorder):
        tab = FakeTab(make_document(make_element(4, "head", children=[
            make_element(6, "link", ["rel", "manifest", "href", "/site.webmanifest"]),
        ])))
        tab.network_events = root_document_events()
        tab.errors["Page.getAppManifest"] = CommandFailedError("'Page.getAppManifest' wasn't found")
        session.attach.return_value = tab.connection

        manifest_url = "https://example.test/site.webmanifest"
        requester = MagicMock()
        requester.get = AsyncMock(side_effect=lambda url: (
            NetworkData(Request(url), Response(url, 200)) if url == manifest_url else favicon_data()
        ))

        connector = Connector(emitter, launcher, wait_for=0, requester_factory=lambda headers: requester)
        await connector.collect(TARGET)

        end = recorder.payloads("manifestfetch::end")[0]
        assert end["resource"] == manifest_url
        assert end["element"].get_attribute("href") == "/site.webmanifest"

    async def test_manually_fetched_manifest_error_status(self, emitter, launcher, session, recorder):
        tab = FakeTab(make_document(make_element(4, "head", children=[
            make_element(6, "link", ["rel", "manifest", "href", "/site.webmanifest"]),
        ])))
        tab.network_events = root_document_events()
        tab.errors["Page.getAppManifest"] = CommandFailedError("'Page.getAppManifest' wasn't found")
        session.attach.return_value = tab.connection

        manifest_url = "https://example.test/site.webmanifest"
        requester = MagicMock()
        requester.get = AsyncMock(side_effect=lambda url: (
            NetworkData(Request(url), Response(url, 404)) if url == manifest_url else favicon_data()
        ))

        connector = Connector(emitter, launcher, wait_for=0, requester_factory=lambda headers: requester)
        await connector.collect(TARGET)

        error = recorder.payloads("manifestfetch::error")[0]
        assert error["resource"] == manifest_url
        assert isinstance(error["error"], RequestError)
        assert error["error"].status_code == 404
        assert "manifestfetch::end" not in recorder.names
        assert "manifestfetch::missing" not in recorder.names

    async def test_favicon_from_icon_link(self, emitter, launcher, requester, session, recorder):
        tab = FakeTab(make_document(make_element(4, "head", children=[
            make_element(6, "link", ["rel", "icon", "href", "/img/icon.png"]),
        ])))
        tab.network_events = root_document_events()
        tab.results["DOM.querySelectorAll"] = {"nodeIds": [6]}
        session.attach.return_value = tab.connection

        connector = Connector(emitter, launcher, wait_for=0, requester_factory=lambda headers: requester)
        await connector.collect(TARGET)

        requester.get.assert_awaited_once_with("https://example.test/img/icon.png")
        assert recorder.payloads("fetch::end")[-1]["element"].node_id == 6

    async def test_favicon_fetch_error(self, connector, requester, recorder):
        requester.get.side_effect = RequestError("Failed to fetch", url="https://example.test/favicon.ico")

        await connector.collect(TARGET)

        error = recorder.payloads("fetch::error")[0]
        assert error["resource"] == "https://example.test/favicon.ico"
        assert isinstance(error["error"], RequestError)
        assert recorder.names[-1] == "scan::end"

    async def test_fetch_content_merges_headers(self, emitter, launcher, requester):
        factory = MagicMock(return_value=requester)
        connector = Connector(emitter, launcher, headers={"User-Agent": "ua", "X-A": "1"}, requester_factory=factory)

        await connector.fetch_content("https://example.test/x", {"X-A": "2"})

        factory.assert_called_once_with(headers={"User-Agent": "ua", "X-A": "2"})
        requester.get.assert_awaited_once_with("https://example.test/x")


@pytest.mark.unit
@pytest.mark.asyncio
class TestEvaluate:

    async def test_returns_value(self, connector, tab):
        await connector.collect(TARGET)
        tab.results["Runtime.evaluate"] = {"result": {"type": "string", "value": "Example"}}

        assert await connector.evaluate("document.title") == "Example"

        method, params = tab.commands[-1]
        assert method == "Runtime.evaluate"
        assert "_ => document.title" in params["expression"]
        assert params["awaitPromise"] and params["returnByValue"]

    async def test_browser_error_is_raised(self, connector, tab):
        await connector.collect(TARGET)
        tab.results["Runtime.evaluate"] = {"result": {"type": "object", "value": {
            "__failedInBrowser": True,
            "name": "TypeError",
            "message": "x is undefined",
            "stack": "TypeError: x is undefined\n    at <anonymous>:1:1",
        }}}

        with pytest.raises(EvaluationError) as exc_info:
            await connector.evaluate("x.y")

        assert exc_info.value.name == "TypeError"
        assert str(exc_info.value) == "TypeError: x is undefined"

    async def test_exception_details(self, connector, tab):
        await connector.collect(TARGET)
        tab.results["Runtime.evaluate"] = {"result": {}, "exceptionDetails": {"text": "SyntaxError"}}

        with pytest.raises(EvaluationError, match="unexpected driver error"):
            await connector.evaluate("(")

    async def test_timeout(self, emitter, launcher, requester, session, tab):
        connector = Connector(emitter, launcher, wait_for=0, timeout=5, requester_factory=lambda headers: requester)
        await connector.collect(TARGET)
        tab.errors["Runtime.evaluate"] = CDPTimeoutError("Command timed out", command_method="Runtime.evaluate", timeout=5)

        with pytest.raises(CDPTimeoutError):
            await connector.evaluate("new Promise(() => {})")

        assert tab.connection.execute_command.await_args.kwargs["timeout"] == 5

    async def test_before_collect(self, connector):
        with pytest.raises(CDPError, match="before collect"):
            await connector.evaluate("1")


@pytest.mark.unit
@pytest.mark.asyncio
class TestClose:

    async def test_closes_tabs_and_connection(self, connector, session, tab):
        await connector.collect(TARGET)

        await connector.close()

        session.close_tab.assert_called_once_with("page-1")
        tab.connection.disconnect.assert_awaited_once()
        assert connector.state.tabs == []

    async def test_tab_close_errors_are_logged(self, connector, session, tab, caplog):
        await connector.collect(TARGET)
        session.close_tab.side_effect = CDPError("Failed to connect to browser")

        await connector.close()

        assert "Couldn't close tab page-1" in caplog.text
        tab.connection.disconnect.assert_awaited_once()

    async def test_context_manager(self, emitter, launcher, requester, session, tab):
        async with Connector(emitter, launcher, wait_for=0, requester_factory=lambda headers: requester) as connector:
            await connector.collect(TARGET)

        tab.connection.disconnect.assert_awaited_once()
