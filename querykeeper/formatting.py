"""
Response formatting for querykeeper.

Cleans assistant output for chat transport and splits long answers into
labelled pages.
"""

import re
from typing import Optional

CITATION_PATTERN = re.compile(r"【.*?】")
LINK_PATTERN = re.compile(r"\[([^\]]+)\]\(<?(\S+?)>?\)")
PAGE_LABEL_PATTERN = re.compile(r"\n\n\d+/\d+$")


class ChunkLimitError(Exception):
    """Raised when an answer needs more pages than the configured cap."""
    def __init__(self, pages: int, max_pages: int):
        self.pages = pages
        self.max_pages = max_pages
        super().__init__(
            f"Response needs {pages} pages, exceeding the limit of {max_pages}"
        )


def normalize(text: str, embed_links: bool = False) -> str:
    """
    Strip citation markers and rewrite markdown links.

    Args:
        text: Raw assistant output.
        embed_links: If False, URLs are wrapped in angle brackets so the chat
            platform does not render link previews.

    Returns:
        Cleaned text.
    """
    text = CITATION_PATTERN.sub("", text)

    def _rewrite(match: re.Match) -> str:
        label, url = match.group(1), match.group(2)
        if label == url:
            return url if embed_links else f"<{url}>"
        if embed_links:
            return f"[{label}]({url})"
        return f"[{label}](<{url}>)"

    return LINK_PATTERN.sub(_rewrite, text)


def _split_point(text: str, max_len: int) -> int:
    """Index of the last whitespace at or before max_len, or -1."""
    return max(text.rfind(" ", 0, max_len + 1), text.rfind("\n", 0, max_len + 1))


def _next_break(text: str, start: int) -> int:
    """Index of the first whitespace at or after start, or -1."""
    found = [i for i in (text.find(" ", start), text.find("\n", start)) if i >= 0]
    return min(found) if found else -1


def chunk(text: str, max_len: int, max_pages: Optional[int] = None) -> list[str]:
    """
    Split text into pages of about max_len characters, each labelled "i/n".

    Pages break on the last whitespace at or before max_len. A word longer
    than max_len is kept whole and ends at the first whitespace after it;
    only text with no whitespace left at all is cut at max_len. The label is
    appended after splitting.

    Args:
        text: Text to split.
        max_len: Maximum content length per page.
        max_pages: Optional cap on the number of pages.

    Returns:
        List of labelled pages, empty for empty text.

    Raises:
        ChunkLimitError: If max_pages is set and more pages are needed.
    """
    if max_len < 1:
        raise ValueError("max_len must be positive")

    pieces: list[str] = []
    rest = text
    while len(rest) > max_len:
        cut = _split_point(rest, max_len)
        if cut == 0:
            rest = rest[1:]
            continue
        if cut < 0:
            cut = _next_break(rest, max_len)
        if cut < 0:
            pieces.append(rest[:max_len])
            rest = rest[max_len:]
        else:
            pieces.append(rest[:cut])
            rest = rest[cut + 1:]
    if rest:
        pieces.append(rest)

    total = len(pieces)
    if max_pages is not None and total > max_pages:
        raise ChunkLimitError(total, max_pages)

    return [f"{piece}\n\n{index}/{total}" for index, piece in enumerate(pieces, start=1)]


def strip_page_label(page: str) -> str:
    """Remove the trailing "i/n" label added by chunk()."""
    return PAGE_LABEL_PATTERN.sub("", page)


def _plural(count: int, unit: str) -> str:
    return f"{count} {unit}" if count == 1 else f"{count} {unit}s"


def format_relative(delta_ms: int) -> str:
    """Render a future offset in milliseconds as "in 3 hours and 12 minutes"."""
    if delta_ms <= 0:
        return "now"
    minutes_total = delta_ms // 60_000
    if minutes_total == 0:
        return "in less than a minute"

    days, remainder = divmod(minutes_total, 24 * 60)
    hours, minutes = divmod(remainder, 60)
    parts = []
    if days:
        parts.append(_plural(days, "day"))
    if hours:
        parts.append(_plural(hours, "hour"))
    if minutes and not days:
        parts.append(_plural(minutes, "minute"))
    return "in " + " and ".join(parts[:2])
