from __future__ import annotations

import re
from collections.abc import Iterable, Iterator
from dataclasses import dataclass
from enum import Enum
from pathlib import PurePosixPath
from urllib.parse import urlparse

from linkmend.core.config import DEFAULT_SCAN_EXTENSIONS
from linkmend.core.urls import is_loopback_or_ip_host


class ContentKind(str, Enum):
    MARKDOWN = "markdown"
    HTML = "html"
    SCRIPT = "script"
    TEXT = "text"


KNOWN_EXTENSION_KINDS: dict[str, ContentKind] = {
    ".md": ContentKind.MARKDOWN,
    ".markdown": ContentKind.MARKDOWN,
    ".html": ContentKind.HTML,
    ".htm": ContentKind.HTML,
    ".js": ContentKind.SCRIPT,
    ".jsx": ContentKind.SCRIPT,
    ".ts": ContentKind.SCRIPT,
    ".tsx": ContentKind.SCRIPT,
    ".txt": ContentKind.TEXT,
}

# Characters that end a URL token, per content kind. Quotes close attribute and
# string literals in HTML and scripts; markdown also ends at backticks.
_URL_PATTERNS: dict[ContentKind, re.Pattern[str]] = {
    ContentKind.MARKDOWN: re.compile(r"https?://[^\s<>\"'`]+", re.IGNORECASE),
    ContentKind.HTML: re.compile(r"https?://[^\s<>\"'`]+", re.IGNORECASE),
    ContentKind.SCRIPT: re.compile(r"https?://[^\s<>\"'`\\]+", re.IGNORECASE),
    ContentKind.TEXT: re.compile(r"https?://[^\s<>\"]+", re.IGNORECASE),
}
_TRAILING_PUNCTUATION = ".,;:!?'\"*_"
_CLOSERS = {")": "(", "]": "[", "}": "{"}
_HOST_RE = re.compile(r"^[a-z0-9-]+(?:\.[a-z0-9-]+)*\.(?:[a-z]{2,}|xn--[a-z0-9-]+)$", re.IGNORECASE)


@dataclass(slots=True, frozen=True)
class RawLink:
    file_path: str
    line_number: int
    line_content: str
    url: str
    column: int = 0


def build_extension_map(extensions: Iterable[str] | None = None) -> dict[str, ContentKind]:
    """Map configured extensions to content kinds; unknown extensions scan as plain text."""
    mapping: dict[str, ContentKind] = {}
    for raw in extensions if extensions is not None else DEFAULT_SCAN_EXTENSIONS:
        extension = raw.strip().lower()
        if not extension:
            continue
        if not extension.startswith("."):
            extension = f".{extension}"
        mapping[extension] = KNOWN_EXTENSION_KINDS.get(extension, ContentKind.TEXT)
    return mapping


def content_kind_for(file_path: str, extension_map: dict[str, ContentKind]) -> ContentKind | None:
    return extension_map.get(PurePosixPath(file_path).suffix.lower())


def extract_links(
    files: Iterable[tuple[str, str]],
    *,
    extensions: Iterable[str] | None = None,
) -> Iterator[RawLink]:
    """Yield every absolute URL occurrence, file by file and line by line."""
    extension_map = build_extension_map(extensions)
    for file_path, content in files:
        kind = content_kind_for(file_path, extension_map)
        if kind is None:
            continue
        yield from find_links_in_content(content, file_path, kind)


def find_links_in_content(content: str, file_path: str, kind: ContentKind) -> Iterator[RawLink]:
    pattern = _URL_PATTERNS[kind]
    for index, raw_line in enumerate(content.split("\n"), start=1):
        if "://" not in raw_line:
            continue
        line = raw_line.rstrip("\r")
        for match in pattern.finditer(line):
            url = _trim_url(match.group(0))
            if not _is_checkable(url):
                continue
            yield RawLink(file_path=file_path, line_number=index, line_content=line, url=url, column=match.start())


def _trim_url(url: str) -> str:
    while url:
        last = url[-1]
        if last in _TRAILING_PUNCTUATION:
            url = url[:-1]
            continue
        opener = _CLOSERS.get(last)
        # Keep balanced parentheses such as wiki/Foo_(bar).
        if opener is not None and url.count(opener) < url.count(last):
            url = url[:-1]
            continue
        break
    return url


def _is_checkable(url: str) -> bool:
    try:
        parsed = urlparse(url)
        host = parsed.hostname
    except ValueError:
        return False
    if not host or is_loopback_or_ip_host(host):
        return False
    try:
        ascii_host = host.encode("idna").decode("ascii")
    except UnicodeError:
        return False
    return bool(_HOST_RE.match(ascii_host))
