"""
Out-of-band HTTP fetches (manifest fallback, favicon probe, raw body recovery).

Requests run through ``urllib.request`` in a worker thread so the event loop
keeps serving protocol events meanwhile. Redirects are followed here rather
than by urllib so the hops can be reported like the browser's.
"""

import asyncio
import gzip
import logging
import urllib.error
import urllib.request
import zlib
from typing import Dict, Mapping, Optional, Tuple

from .cdp.exceptions import RedirectLimitError, RedirectLoopError, RequestError
from .content_type import get_content_type_data, parse_content_type
from .redirects import MAX_REDIRECTS, RedirectManager
from .types import NetworkData, Request, Response, ResponseBody
from .utils import cut_string, normalize_headers, resolve_url

logger = logging.getLogger(__name__)

REDIRECT_STATUSES = (301, 302, 303, 307, 308)
DEFAULT_ACCEPT_ENCODING = "gzip, deflate"


class _NoRedirectHandler(urllib.request.HTTPRedirectHandler):
    def redirect_request(self, req, fp, code, msg, headers, newurl):
        return None


def _clean_headers(headers: Optional[Mapping[str, str]]) -> Dict[str, str]:
    # HTTP/2 pseudo-headers (":authority", ...) show up in browser request headers.
    return {
        name: str(value)
        for name, value in (headers or {}).items()
        if not name.startswith(":")
    }


def decode_body(raw: bytes, content_encoding: Optional[str]) -> bytes:
    """Undo gzip/deflate content coding; unknown codings are returned untouched."""
    encoding = (content_encoding or "").strip().lower()

    if encoding in ("gzip", "x-gzip"):
        return gzip.decompress(raw)
    if encoding == "deflate":
        try:
            return zlib.decompress(raw)
        except zlib.error:
            return zlib.decompress(raw, -zlib.MAX_WBITS)
    if encoding and encoding != "identity":
        logger.debug(f"Unsupported content-encoding '{encoding}', keeping raw bytes")
    return raw


def decode_text(raw: bytes, content_type: Optional[str]) -> str:
    charset = "utf-8"
    if content_type:
        try:
            charset = parse_content_type(content_type).parameters.get("charset", charset)
        except ValueError:
            pass

    try:
        return raw.decode(charset, errors="replace")
    except LookupError:
        return raw.decode("utf-8", errors="replace")


class Requester:
    """
    Minimal HTTP client returning the same Request/Response shapes the
    connector builds from protocol events.

    Usage:
        requester = Requester(headers={"User-Agent": "..."})
        data = await requester.get("https://example.test/site.webmanifest")
        data.response.status_code, data.response.body.content
    """

    def __init__(
        self,
        headers: Optional[Mapping[str, str]] = None,
        timeout: float = 30.0,
        max_redirects: int = MAX_REDIRECTS,
    ):
        self.headers = _clean_headers(headers)
        self.timeout = timeout
        self.max_redirects = max_redirects
        self._opener = urllib.request.build_opener(_NoRedirectHandler)

    async def get(self, url: str, headers: Optional[Mapping[str, str]] = None) -> NetworkData:
        """
        Fetch ``url`` following redirects.

        Non-2xx responses are returned, not raised.

        Raises:
            RequestError: Network failure or unreadable response
            RedirectLoopError / RedirectLimitError: Redirects could not be followed
        """
        request_headers = dict(self.headers)
        request_headers.update(_clean_headers(headers))
        return await asyncio.to_thread(self._get, url, request_headers)

    def _get(self, url: str, headers: Dict[str, str]) -> NetworkData:
        send_headers = dict(headers)
        if not any(name.lower() == "accept-encoding" for name in send_headers):
            send_headers["Accept-Encoding"] = DEFAULT_ACCEPT_ENCODING

        redirects = RedirectManager(limit=self.max_redirects)
        current = url

        while True:
            status, response_headers, raw = self._open(current, send_headers)
            location = response_headers.get("location")

            if status not in REDIRECT_STATUSES or not location:
                break

            next_url = resolve_url(location, current)
            if not redirects.add(current, next_url):
                raise RedirectLoopError(
                    f"Error redirecting: {current} is an infinite loop",
                    url=current,
                    hops=redirects.calculate(current),
                )
            if len(redirects.calculate(next_url)) >= self.max_redirects:
                raise RedirectLimitError(
                    f"More than {self.max_redirects} redirects found for {url}",
                    url=next_url,
                    hops=redirects.calculate(next_url),
                )

            logger.debug(f"Redirect found for {cut_string(current)} -> {cut_string(next_url)}")
            current = next_url

        try:
            decoded = decode_body(raw, response_headers.get("content-encoding"))
        except (OSError, EOFError, zlib.error) as e:
            raise RequestError(f"Could not decode body of {url}: {e}", url=current, status_code=status) from e

        body = ResponseBody(
            content=decode_text(decoded, response_headers.get("content-type")),
            raw_content=decoded,
            raw_response_loader=_constant(raw),
        )
        response = Response(
            url=current,
            status_code=status,
            headers=response_headers,
            hops=redirects.calculate(current),
            body=body,
        )
        response.media_type, response.charset = get_content_type_data(None, current, response)

        logger.debug(f"Content for {cut_string(current)} downloaded ({status})")
        return NetworkData(Request(url=url, headers=headers), response)

    def _open(self, url: str, headers: Dict[str, str]) -> Tuple[int, Dict[str, str], bytes]:
        request = urllib.request.Request(url, headers=headers, method="GET")
        try:
            with self._opener.open(request, timeout=self.timeout) as response:
                return response.status, normalize_headers(response.headers), response.read()
        except urllib.error.HTTPError as e:
            # 3xx (redirects are not followed by urllib) and 4xx/5xx responses
            try:
                body = e.read()
            finally:
                e.close()
            return e.code, normalize_headers(e.headers), body
        except (urllib.error.URLError, OSError, ValueError) as e:
            raise RequestError(f"Failed to fetch {url}: {e}", url=url) from e


def _constant(value: bytes):
    async def load() -> bytes:
        return value

    return load

