"""
Data model shared by the connector, the requester and event subscribers.

Network exchanges are plain classes (Request, Response, ResponseBody,
NetworkData); event payloads are TypedDicts so subscribers can treat them as
ordinary dictionaries.
"""

from typing import (
    TYPE_CHECKING,
    Any,
    Awaitable,
    Callable,
    Dict,
    List,
    Optional,
    TypedDict,
)

# NotRequired added in Python 3.11, use typing_extensions for 3.10 compatibility
if TYPE_CHECKING:
    from typing_extensions import NotRequired
else:
    try:
        from typing import NotRequired
    except ImportError:
        from typing_extensions import NotRequired

if TYPE_CHECKING:
    from .dom import AsyncHTMLElement


RawResponseLoader = Callable[[], Awaitable[bytes]]


class BrowserInfo:
    """What a launcher hands back: where to reach the browser, and whether it was just started."""

    def __init__(self, port: int, is_new: bool, pid: Optional[int] = None):
        self.port = port
        self.is_new = is_new
        self.pid = pid

    def __repr__(self):
        return f"BrowserInfo(port={self.port!r}, is_new={self.is_new!r}, pid={self.pid!r})"


class Request:
    """Outgoing side of a network exchange."""

    def __init__(self, url: str, headers: Optional[Dict[str, str]] = None):
        self.url = url
        self.headers = headers or {}

    def to_dict(self) -> Dict[str, Any]:
        return {"url": self.url, "headers": self.headers}

    def __repr__(self):
        return f"Request(url={self.url!r})"


class ResponseBody:
    """
    Body of a response.

    ``content`` is the decoded text, ``raw_content`` the decoded bytes. The
    bytes exactly as sent by the server (still compressed, if they were) are
    only fetched on demand through ``raw_response()`` and then cached.
    """

    def __init__(
        self,
        content: str = "",
        raw_content: bytes = b"",
        raw_response_loader: Optional[RawResponseLoader] = None,
    ):
        self.content = content
        self.raw_content = raw_content
        self._raw_response_loader = raw_response_loader
        self._raw_response: Optional[bytes] = None

    async def raw_response(self) -> Optional[bytes]:
        if self._raw_response is not None:
            return self._raw_response
        if self._raw_response_loader is None:
            return None

        self._raw_response = await self._raw_response_loader()
        return self._raw_response

    def __repr__(self):
        return f"ResponseBody(content_length={len(self.content)}, raw_length={len(self.raw_content)})"


class Response:
    """
    Incoming side of a network exchange.

    ``headers`` keys are lowercased. ``media_type`` and ``charset`` stay None
    until the content-type resolver has run.
    """

    def __init__(
        self,
        url: str,
        status_code: int,
        headers: Optional[Dict[str, str]] = None,
        hops: Optional[List[str]] = None,
        body: Optional[ResponseBody] = None,
        media_type: Optional[str] = None,
        charset: Optional[str] = None,
    ):
        self.url = url
        self.status_code = status_code
        self.headers = headers or {}
        self.hops = list(hops or [])
        self.body = body if body is not None else ResponseBody()
        self.media_type = media_type
        self.charset = charset

    def to_dict(self) -> Dict[str, Any]:
        return {
            "url": self.url,
            "statusCode": self.status_code,
            "headers": self.headers,
            "hops": self.hops,
            "mediaType": self.media_type,
            "charset": self.charset,
        }

    def __repr__(self):
        return f"Response(url={self.url!r}, status_code={self.status_code!r}, media_type={self.media_type!r})"


class NetworkData:
    """A request/response pair."""

    def __init__(self, request: Request, response: Response):
        self.request = request
        self.response = response

    def __repr__(self):
        return f"NetworkData(request={self.request!r}, response={self.response!r})"


class RequestRecord(TypedDict):
    """Parameters of a Network.requestWillBeSent event, as stored for correlation."""
    requestId: str
    request: Dict[str, Any]
    initiator: Dict[str, Any]
    type: NotRequired[str]
    redirectResponse: NotRequired[Dict[str, Any]]


class Event(TypedDict):
    """Base payload: every event carries the resource it is about."""
    resource: str


class FetchStart(Event):
    pass


class FetchEnd(Event):
    element: Optional["AsyncHTMLElement"]
    request: Request
    response: Response


class FetchError(Event):
    element: Optional["AsyncHTMLElement"]
    error: Any
    hops: List[str]


class ManifestFetchEnd(FetchEnd):
    pass


class ManifestFetchError(Event):
    error: Any


class ElementFound(Event):
    element: "AsyncHTMLElement"


class TraverseDown(Event):
    pass


class TraverseUp(Event):
    pass
