"""
Utilities for turning user input (URLs, `type:id` pairs) into content references.
"""

import re
from collections.abc import Iterable

from qobuz_queue.exceptions import InvalidReferenceError
from qobuz_queue.models.job import ContentType

_URL_PATTERN = re.compile(
    r"qobuz\.com/(?:[^/]+/)?(?P<type>album|artist|track|playlist|interpreter)/(?:[^/]+/)?(?P<id>[\w\d-]+)"
)
_PAIR_PATTERN = re.compile(r"^(?P<type>album|artist|track|playlist):(?P<id>[\w\d-]+)$")


def parse_qobuz_url(url: str) -> tuple[ContentType, str] | None:
    """
    Parses a Qobuz URL to extract the content type and ID.
    Handles multiple URL formats.
    """
    match = _URL_PATTERN.search(url)
    if match:
        url_type = match.group("type")
        if url_type == "interpreter":
            url_type = "artist"
        return ContentType(url_type), match.group("id")
    return None


def parse_reference(
    text: str, default_type: ContentType | None = None
) -> tuple[ContentType, str]:
    """
    Parses a Qobuz URL, a `type:id` pair, or a bare ID when `default_type`
    is given.

    Raises:
        InvalidReferenceError: If the text matches none of these forms.
    """
    text = text.strip()
    if parsed := parse_qobuz_url(text):
        return parsed
    if match := _PAIR_PATTERN.match(text):
        return ContentType(match.group("type")), match.group("id")
    if default_type is not None and re.fullmatch(r"[\w\d-]+", text):
        return default_type, text
    raise InvalidReferenceError(f"Invalid or unsupported reference: '{text}'")


def read_references(lines: Iterable[str]) -> list[str]:
    """Strips blank lines and '#' comments from a list of references."""
    references = []
    for line in lines:
        line = line.strip()
        if line and not line.startswith("#"):
            references.append(line)
    return references
