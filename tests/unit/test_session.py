"""
Unit tests for CDPSession and Target classes.

Tab discovery and management against a mocked DevTools HTTP endpoint.
"""

import json
import urllib.error

import pytest
from unittest.mock import AsyncMock, Mock, patch

from webscan.cdp.exceptions import CDPError, CDPTargetNotFoundError, ConnectionFailedError
from webscan.cdp.session import CDPSession, Target


@pytest.fixture
def mock_targets_response():
    """Mock browser /json/list endpoint response."""
    return [
        {
            "id": "page-1",
            "type": "page",
            "title": "Example Domain",
            "url": "https://example.com",
            "webSocketDebuggerUrl": "ws://localhost:9222/devtools/page/page-1",
        },
        {
            "id": "ext-1",
            "type": "page",
            "title": "Extension options",
            "url": "chrome-extension://abcdef/options.html",
            "webSocketDebuggerUrl": "ws://localhost:9222/devtools/page/ext-1",
        },
        {
            "id": "worker-1",
            "type": "service_worker",
            "title": "Service Worker",
            "url": "https://example.com/sw.js",
            "webSocketDebuggerUrl": "ws://localhost:9222/devtools/page/worker-1",
        },
    ]


def mock_http_response(body):
    """Context-manager response as returned by urlopen."""
    mock_response = Mock()
    mock_response.read.return_value = body if isinstance(body, bytes) else json.dumps(body).encode()
    mock_response.__enter__ = Mock(return_value=mock_response)
    mock_response.__exit__ = Mock(return_value=False)
    return mock_response


def test_target_initialization():
    target = Target({
        "id": "test-id",
        "type": "page",
        "title": "Test Page",
        "url": "https://test.com",
        "webSocketDebuggerUrl": "ws://localhost:9222/devtools/page/test-id",
    })

    assert target.id == "test-id"
    assert target.type == "page"
    assert target.title == "Test Page"
    assert target.url == "https://test.com"
    assert target.webSocketDebuggerUrl == "ws://localhost:9222/devtools/page/test-id"
    assert not target.is_extension


def test_targets_compare_by_id():
    """Listings return new objects for the same tab."""
    assert Target({"id": "a", "url": "about:blank"}) == Target({"id": "a", "url": "https://x.test/"})
    assert Target({"id": "a"}) != Target({"id": "b"})


def test_cdp_session_invalid_port():
    with pytest.raises(ValueError, match="chrome_port must be 1-65535"):
        CDPSession(chrome_port=0)


def test_list_targets_success(mock_targets_response):
    session = CDPSession()

    with patch("urllib.request.urlopen", return_value=mock_http_response(mock_targets_response)) as mock_urlopen:
        targets = session.list_targets()

        request = mock_urlopen.call_args.args[0]
        assert request.full_url == "http://localhost:9222/json/list"
        assert mock_urlopen.call_args.kwargs["timeout"] == 5.0
        assert [t.id for t in targets] == ["page-1", "ext-1", "worker-1"]


def test_list_targets_filters(mock_targets_response):
    session = CDPSession()

    with patch("urllib.request.urlopen", return_value=mock_http_response(mock_targets_response)):
        pages = session.list_targets("page", include_extensions=False)

    assert [t.id for t in pages] == ["page-1"]


def test_list_targets_connection_error():
    session = CDPSession()

    with patch("urllib.request.urlopen", side_effect=urllib.error.URLError("Connection refused")):
        with pytest.raises(CDPError, match="Failed to connect to browser"):
            session.list_targets()


def test_list_targets_invalid_json():
    session = CDPSession()

    with patch("urllib.request.urlopen", return_value=mock_http_response(b"NOT VALID JSON")):
        with pytest.raises(CDPError, match="Invalid JSON response"):
            session.list_targets()


def test_is_available():
    session = CDPSession()

    with patch("urllib.request.urlopen", return_value=mock_http_response({"Browser": "Chrome/130"})):
        assert session.is_available()

    with patch("urllib.request.urlopen", side_effect=urllib.error.URLError("refused")):
        assert not session.is_available()


def test_new_tab_uses_put():
    session = CDPSession()
    tab_data = {"id": "new-1", "type": "page", "url": "https://example.com/",
                "webSocketDebuggerUrl": "ws://localhost:9222/devtools/page/new-1"}

    with patch("urllib.request.urlopen", return_value=mock_http_response(tab_data)) as mock_urlopen:
        tab = session.new_tab("https://example.com/")

    request = mock_urlopen.call_args.args[0]
    assert request.get_method() == "PUT"
    assert request.full_url == "http://localhost:9222/json/new?https://example.com/"
    assert tab.id == "new-1"


def test_new_tab_without_id():
    session = CDPSession()

    with patch("urllib.request.urlopen", return_value=mock_http_response({"error": "nope"})):
        with pytest.raises(CDPTargetNotFoundError, match="Error trying to open a new tab"):
            session.new_tab()


def test_resolve_tab_matches_by_id(mock_targets_response):
    session = CDPSession()

    with patch("urllib.request.urlopen", return_value=mock_http_response(mock_targets_response)):
        resolved = session.resolve_tab(Target({"id": "worker-1"}))
        assert resolved.webSocketDebuggerUrl == "ws://localhost:9222/devtools/page/worker-1"

        with pytest.raises(CDPTargetNotFoundError):
            session.resolve_tab(Target({"id": "gone"}))


def test_close_tab_accepts_text_answer():
    session = CDPSession()

    with patch("urllib.request.urlopen", return_value=mock_http_response(b"Target is closing")) as mock_urlopen:
        session.close_tab("page-1")

    assert mock_urlopen.call_args.args[0].full_url == "http://localhost:9222/json/close/page-1"


def test_connect_to_target_requires_ws_url():
    with pytest.raises(CDPError, match="no WebSocket debugger URL"):
        CDPSession().connect_to_target(Target({"id": "x"}))


@pytest.mark.asyncio
async def test_attach_retries_with_linear_backoff():
    session = CDPSession(command_timeout=12.0)
    target = Target({"id": "page-1", "webSocketDebuggerUrl": "ws://localhost:9222/devtools/page/page-1"})
    connections = []

    def make_connection(*args, **kwargs):
        conn = Mock()
        conn.connect = AsyncMock(
            side_effect=None if len(connections) == 2 else ConnectionFailedError("refused")
        )
        connections.append(conn)
        return conn

    with patch("webscan.cdp.session.CDPConnection", side_effect=make_connection), \
            patch("webscan.cdp.session.asyncio.sleep", new=AsyncMock()) as mock_sleep:
        conn = await session.attach(target)

    assert conn is connections[2]
    assert [c.args[0] for c in mock_sleep.await_args_list] == [0.5, 0.75]


@pytest.mark.asyncio
async def test_attach_gives_up():
    session = CDPSession()
    target = Target({"id": "page-1", "webSocketDebuggerUrl": "ws://localhost:9222/devtools/page/page-1"})

    failing = Mock()
    failing.connect = AsyncMock(side_effect=ConnectionFailedError("refused"))

    with patch("webscan.cdp.session.CDPConnection", return_value=failing), \
            patch("webscan.cdp.session.asyncio.sleep", new=AsyncMock()) as mock_sleep:
        with pytest.raises(ConnectionFailedError):
            await session.attach(target)

    assert failing.connect.await_count == 4
    assert mock_sleep.await_count == 3
