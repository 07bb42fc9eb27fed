"""
Media type and charset resolution for fetched resources.

Servers are often misconfigured, so the ``Content-Type`` header is the last
thing consulted. In order, the first answer wins:

1. the element that requested the resource (``<script>``, ``<link rel=...>``)
2. the byte signature of the body
3. the file extension of the URL
4. the ``Content-Type`` header

The charset the server declared is kept whenever one was declared, even if
it is not the best choice; judging that is left to the rules.
"""

import logging
import mimetypes
import re
from typing import TYPE_CHECKING, Dict, Optional, Tuple

import filetype

from .utils import get_file_extension, normalize_string

if TYPE_CHECKING:
    from .dom import AsyncHTMLElement
    from .types import Response

logger = logging.getLogger(__name__)

# Built-in table only: the host's mime.types files are not read.
MEDIA_TYPE_DATABASE = mimetypes.MimeTypes()

# https://html.spec.whatwg.org/multipage/scripting.html#javascript-mime-type
JAVASCRIPT_MEDIA_TYPES = frozenset([
    "application/ecmascript",
    "application/javascript",
    "application/x-ecmascript",
    "application/x-javascript",
    "text/ecmascript",
    "text/javascript",
    "text/javascript1.0",
    "text/javascript1.1",
    "text/javascript1.2",
    "text/javascript1.3",
    "text/javascript1.4",
    "text/javascript1.5",
    "text/jscript",
    "text/livescript",
    "text/x-ecmascript",
    "text/x-javascript",
])

# Ordered by how often they show up on the web. Hard-coded because the
# general database disagrees with current recommendations for some of them
# (e.g. it answers application/javascript for js).
EXTENSION_MEDIA_TYPES: Dict[str, str] = {
    "html": "text/html",
    "htm": "text/html",
    "xhtml": "application/xhtml+xml",
    "js": "text/javascript",
    "mjs": "text/javascript",
    "css": "text/css",
    "ico": "image/x-icon",
    "webmanifest": "application/manifest+json",
    "jpeg": "image/jpeg",
    "jpg": "image/jpeg",
    "png": "image/png",
    "gif": "image/gif",
    "svg": "image/svg+xml",
    "webp": "image/webp",
    "woff2": "font/woff2",
    "woff": "font/woff",
    "ttf": "font/ttf",
    "otf": "font/otf",
}

# Media types whose registration defines a charset.
INHERENT_CHARSETS: Dict[str, str] = {
    "application/javascript": "utf-8",
    "application/json": "utf-8",
    "application/manifest+json": "utf-8",
    "text/javascript": "utf-8",
}

# Legacy names mapped to the codec name Python uses.
CHARSET_ALIASES: Dict[str, str] = {
    "iso-8859-1": "latin1",
}

TEXT_MEDIA_TYPES = (
    re.compile(r"application/(?:javascript|json|x-javascript|xml)", re.I),
    re.compile(r"application/.*\+(?:json|xml)", re.I),
    re.compile(r"image/svg\+xml", re.I),
    re.compile(r"text/.*", re.I),
)

# RFC 7231 media-type grammar
_TOKEN = r"[!#$%&'*+.^_`|~0-9A-Za-z-]+"
_TYPE_RE = re.compile(rf"^{_TOKEN}/{_TOKEN}$")
_PARAM_RE = re.compile(
    rf"; *({_TOKEN}) *= *(\"(?:[\x0b\x20\x21\x23-\x5b\x5d-\x7e\x80-\xff]|\\[\x0b\x20-\xff])*\"|{_TOKEN}) *"
)
_QUOTED_ESCAPE_RE = re.compile(r"\\([\x0b\x20-\xff])")

_SVG_COMMENT_RE = re.compile(r"<!--.*?-->", re.S)
_SVG_RE = re.compile(
    r"^\s*(?:<\?xml[^>]*>\s*)?(?:<!doctype\s+svg[^>]*>\s*)?<svg[\s>/]",
    re.I,
)
SVG_SNIFF_LENGTH = 4096


class MediaType:
    """Parsed ``Content-Type`` value: lowercased type plus its parameters."""

    def __init__(self, type: str, parameters: Optional[Dict[str, str]] = None):
        self.type = type
        self.parameters = parameters or {}

    def __repr__(self):
        return f"MediaType(type={self.type!r}, parameters={self.parameters!r})"


def parse_content_type(value: str) -> MediaType:
    """
    Parse a ``Content-Type`` header value.

    Raises:
        ValueError: If the value does not follow the media-type grammar
    """
    index = value.find(";")
    media_type = (value[:index] if index != -1 else value).strip()

    if not _TYPE_RE.match(media_type):
        raise ValueError("invalid media type")

    parameters: Dict[str, str] = {}
    if index != -1:
        position = index
        for match in _PARAM_RE.finditer(value, index):
            if match.start() != position:
                raise ValueError("invalid parameter format")

            position = match.end()
            key = match.group(1).lower()
            param_value = match.group(2)
            if param_value.startswith('"'):
                param_value = _QUOTED_ESCAPE_RE.sub(r"\1", param_value[1:-1])
            parameters[key] = param_value

        if position != len(value):
            raise ValueError("invalid parameter format")

    return MediaType(media_type.lower(), parameters)


def is_text_media_type(media_type: Optional[str]) -> bool:
    """Whether ``media_type`` names a text based format."""
    if not media_type:
        return False
    return any(regex.search(media_type) for regex in TEXT_MEDIA_TYPES)


def get_media_type_for_extension(extension: Optional[str]) -> Optional[str]:
    """Media type for ``extension``: the override table first, then the general database."""
    if not extension:
        return None
    extension = extension.lower()
    if extension in EXTENSION_MEDIA_TYPES:
        return EXTENSION_MEDIA_TYPES[extension]
    media_type, _ = MEDIA_TYPE_DATABASE.guess_type(f"file.{extension}", strict=False)
    return media_type


def determine_media_type_for_script(element: "AsyncHTMLElement") -> Optional[str]:
    """
    ``text/javascript`` unless the script is a data block.

    A ``type`` that is missing, empty, a JavaScript media type or ``module``
    means the content is meant to run.
    """
    type_attribute = normalize_string(element.get_attribute("type"))

    if (not type_attribute or
            type_attribute in JAVASCRIPT_MEDIA_TYPES or
            type_attribute == "module"):
        return "text/javascript"

    return None


def determine_media_type_based_on_element(element: Optional["AsyncHTMLElement"]) -> Optional[str]:
    node_name = normalize_string(element.node_name) if element is not None else None

    if node_name == "script":
        return determine_media_type_for_script(element)

    if node_name == "link":
        rel = (normalize_string(element.get_attribute("rel")) or "").split()
        if "stylesheet" in rel:
            return "text/css"
        if "manifest" in rel:
            return "application/manifest+json"

    return None


def determine_media_type_based_on_file_extension(resource: str) -> Optional[str]:
    extension = get_file_extension(resource)

    if not extension:
        return None

    return get_media_type_for_extension(extension)


def is_svg(raw_content: bytes) -> bool:
    text = raw_content[:SVG_SNIFF_LENGTH].decode("utf-8", errors="ignore").lstrip("\ufeff")
    if "\x00" in text:
        return False
    return bool(_SVG_RE.match(_SVG_COMMENT_RE.sub("", text)))


def determine_media_type_based_on_file_type(raw_content: Optional[bytes]) -> Optional[str]:
    if not raw_content:
        return None

    kind = filetype.guess(raw_content)
    if kind is not None:
        # Prefer our name for the detected format over the library's.
        return get_media_type_for_extension(kind.extension) or kind.mime

    if is_svg(raw_content):
        return "image/svg+xml"

    return None


def parse_content_type_header(response: "Response") -> Optional[MediaType]:
    value = response.headers.get("content-type") if response.headers else None

    if value is None:
        logger.debug("'content-type' header was not specified")
        return None

    try:
        if not value.strip():
            raise ValueError("invalid media type")
        return parse_content_type(value)
    except ValueError as e:
        logger.debug(f"'content-type' header value is invalid ({e})")
        return None


def determine_charset(original_charset: Optional[str], media_type: Optional[str]) -> Optional[str]:
    """
    Pick the charset for a resource of ``media_type``.

    Binary formats get no charset. Text formats keep the declared charset
    when there is one and fall back to the registered one, or utf-8.
    """
    original_charset = normalize_string(original_charset) or None
    declared = CHARSET_ALIASES.get(original_charset, original_charset) if original_charset else None

    determined = INHERENT_CHARSETS.get(media_type) if media_type else None

    if declared and determined == declared:
        return declared

    if not is_text_media_type(media_type):
        return None

    return declared or determined or "utf-8"


def get_content_type_data(
    element: Optional["AsyncHTMLElement"],
    resource: str,
    response: "Response",
) -> Tuple[Optional[str], Optional[str]]:
    """
    Resolve ``(media_type, charset)`` for a fetched resource.

    Args:
        element: Element that initiated the request, if known
        resource: URL of the resource
        response: Response whose headers and raw body are inspected
    """
    original_media_type = None
    original_charset = None

    content_type = parse_content_type_header(response)
    if content_type is not None:
        original_media_type = content_type.type
        original_charset = content_type.parameters.get("charset")

    media_type = (
        determine_media_type_based_on_element(element) or
        determine_media_type_based_on_file_type(response.body.raw_content) or
        determine_media_type_based_on_file_extension(resource) or
        original_media_type
    )

    charset = determine_charset(original_charset, media_type)

    return media_type, charset
