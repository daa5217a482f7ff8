# src/filters/mention_parser.py

"""``@name`` mention tokenizer for community posts and comments.

Splits free text into plain and mention segments for rendering, and
supports the autocomplete flow of a mention input: finding the partial
name being typed before the cursor and replacing it with the chosen
member name.
"""

import logging
import re
from dataclasses import dataclass
from enum import Enum, auto

logger = logging.getLogger("marketplace_hub.mentions")

MENTION_RE = re.compile(r"@(\w+)")


class SegmentType(Enum):
    """Kinds of rendered text segment."""

    TEXT = auto()
    MENTION = auto()


@dataclass(frozen=True)
class MentionSegment:
    """One contiguous run of text; mentions keep their ``@``."""

    type: SegmentType
    value: str

    @property
    def name(self) -> str | None:
        """Mentioned name without ``@`` (``None`` for plain text)."""
        if self.type is SegmentType.MENTION:
            return self.value[1:]
        return None


def extract_mentions(text: str) -> list[str]:
    """Return mentioned names in order of appearance, duplicates kept."""
    return MENTION_RE.findall(text)


def has_mentions(text: str) -> bool:
    return MENTION_RE.search(text) is not None


def split_mentions(text: str) -> list[MentionSegment]:
    """Split ``text`` into alternating text and mention segments."""
    segments: list[MentionSegment] = []
    last = 0
    for match in MENTION_RE.finditer(text):
        if match.start() > last:
            segments.append(
                MentionSegment(SegmentType.TEXT, text[last:match.start()])
            )
        segments.append(MentionSegment(SegmentType.MENTION, match.group(0)))
        last = match.end()
    if last < len(text):
        segments.append(MentionSegment(SegmentType.TEXT, text[last:]))
    return segments


def _last_at(text: str, cursor: int) -> int:
    return text[:cursor].rfind("@")


def active_mention_query(text: str, cursor: int | None = None) -> str | None:
    """Partial name typed after the last ``@`` before ``cursor``.

    Returns ``None`` when there is no ``@`` or when a space or newline
    separates it from the cursor. An empty string means the user just
    typed ``@``.
    """
    position = len(text) if cursor is None else cursor
    at_index = _last_at(text, position)
    if at_index == -1:
        return None
    partial = text[at_index + 1:position]
    if " " in partial or "\n" in partial:
        return None
    return partial


def insert_mention(
    text: str, cursor: int, name: str,
) -> tuple[str, int]:
    """Replace the partial mention before ``cursor`` with ``@name ``.

    Returns the new text and the cursor position right after the
    inserted mention. Text is returned unchanged when no ``@`` precedes
    the cursor.
    """
    at_index = _last_at(text, cursor)
    if at_index == -1:
        return text, cursor
    completed = f"{text[:at_index]}@{name} {text[cursor:]}"
    new_cursor = at_index + len(name) + 2
    logger.debug("Inserted mention @%s at %d", name, at_index)
    return completed, new_cursor
