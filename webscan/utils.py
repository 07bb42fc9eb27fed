"""Small helpers for URLs, headers and element checks."""

import posixpath
from typing import TYPE_CHECKING, Any, Dict, Mapping, Optional
from urllib.parse import urldefrag, urljoin, urlparse, urlsplit, urlunsplit

if TYPE_CHECKING:
    from .dom import AsyncHTMLElement

DEFAULT_PORTS = {"http": 80, "https": 443, "ws": 80, "wss": 443}


def normalize_string(value: Optional[Any]) -> Optional[str]:
    """Lowercase and strip ``value``; None stays None."""
    if value is None:
        return None
    return str(value).strip().lower()


def normalize_headers(headers: Optional[Mapping[str, Any]]) -> Dict[str, str]:
    """
    Lowercase header names.

    The protocol reports repeated headers joined by newlines; they are
    re-joined with ", " as they would be on the wire.
    """
    if not headers:
        return {}

    normalized: Dict[str, str] = {}
    for name, value in headers.items():
        value = ", ".join(str(value).split("\n"))
        key = name.lower()
        if key in normalized:
            normalized[key] = f"{normalized[key]}, {value}"
        else:
            normalized[key] = value
    return normalized


def cut_string(value: str, max_length: int = 50) -> str:
    """Shorten long URLs for log messages, keeping both ends."""
    if len(value) <= max_length:
        return value

    half = (max_length - 3) // 2
    return f"{value[:half]}...{value[-half:]}"


def normalize_url(url: str) -> str:
    """
    Serialize ``url`` the way the browser reports it in Network events.

    Scheme and host are lowercased, a default port is dropped and an empty
    path becomes ``/``. The fragment is kept. Anything that is not an
    absolute URL with a host is returned unchanged.
    """
    url = url.strip()
    parts = urlsplit(url)
    scheme = parts.scheme.lower()
    if scheme not in DEFAULT_PORTS or not parts.hostname:
        return url

    try:
        port = parts.port
    except ValueError:
        return url

    host = parts.hostname
    if ":" in host:
        host = f"[{host}]"
    netloc = host if port is None or port == DEFAULT_PORTS[scheme] else f"{host}:{port}"

    if parts.username is not None:
        userinfo = parts.username
        if parts.password is not None:
            userinfo = f"{userinfo}:{parts.password}"
        netloc = f"{userinfo}@{netloc}"

    return urlunsplit((scheme, netloc, parts.path or "/", parts.query, parts.fragment))


def strip_fragment(url: str) -> str:
    return urldefrag(url)[0]


def resolve_url(url: str, base: str) -> str:
    return urljoin(base, url)


def is_http_url(url: str) -> bool:
    return urlparse(url).scheme in ("http", "https")


def is_data_uri(url: str) -> bool:
    return url.startswith("data:")


def get_file_extension(resource: str) -> Optional[str]:
    """
    Extension of the last path segment, lowercased and without the dot.

    Query strings and fragments are ignored.
    """
    if not resource or is_data_uri(resource):
        return None

    path = urlparse(resource).path or resource
    extension = posixpath.splitext(posixpath.basename(path))[1]
    if not extension:
        return None
    return extension[1:].lower()


def has_attribute_with_value(
    element: Optional["AsyncHTMLElement"], node_name: str, attribute: str, value: str
) -> bool:
    """
    Whether ``element`` is a ``node_name`` whose space-separated ``attribute``
    tokens include ``value`` (e.g. ``<link rel="shortcut icon">`` for "icon").
    """
    if element is None or normalize_string(element.node_name) != node_name:
        return False

    tokens = (normalize_string(element.get_attribute(attribute)) or "").split()
    return value in tokens
