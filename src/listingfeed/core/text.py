"""Text normalization: markup stripping and the title/description split."""

from __future__ import annotations

import html
import re
import unicodedata
from typing import NamedTuple

DEFAULT_TITLE = "Объявление"
TITLE_MAX_CHARS = 120

_BREAK_RE = re.compile(r"<br\s*/?>", re.IGNORECASE)
_PARAGRAPH_END_RE = re.compile(r"</p\s*>", re.IGNORECASE)
_TAG_RE = re.compile(r"<[^>]+>")
_BLANK_RUN_RE = re.compile(r"\n{3,}")

# Zero-width joiners, variation selectors and skin-tone modifiers glue emoji
# sequences together and have to go with them.
_EMOJI_GLUE = {"\u200d", "\u20e3", "\ufe0e", "\ufe0f"}


class Normalized(NamedTuple):
    title: str
    description: str


def strip_html(markup: str) -> str:
    """Turn message markup into plain text, keeping line structure."""

    text = _BREAK_RE.sub("\n", markup)
    text = _PARAGRAPH_END_RE.sub("\n", text)
    text = _TAG_RE.sub("", text)
    text = html.unescape(text).replace("\xa0", " ")
    text = _BLANK_RUN_RE.sub("\n\n", text)
    return text.strip()


def _is_decoration(char: str) -> bool:
    if char in _EMOJI_GLUE or char.isspace():
        return True
    category = unicodedata.category(char)
    # P* punctuation, S* symbols (emoji are So), Sk covers skin-tone modifiers.
    return category[0] in ("P", "S") or category == "Cf"


def strip_leading_decoration(line: str) -> str:
    index = 0
    while index < len(line) and _is_decoration(line[index]):
        index += 1
    return line[index:]


def split_lines(text: str) -> list[str]:
    return [line.strip() for line in text.splitlines() if line.strip()]


def normalize(text: str, is_html: bool = False) -> Normalized:
    """Split source text into a listing title and description.

    The title is the first non-empty line without its leading run of
    punctuation or emoji, capped at ``TITLE_MAX_CHARS``. Anything unusable
    falls back to ``DEFAULT_TITLE``.
    """

    if is_html:
        text = strip_html(text)
    lines = split_lines(text or "")
    if not lines:
        return Normalized(DEFAULT_TITLE, "")

    title = strip_leading_decoration(lines[0])[:TITLE_MAX_CHARS].strip()
    return Normalized(title or DEFAULT_TITLE, "\n".join(lines[1:]))
