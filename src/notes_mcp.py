"""Notes MCP server with an offline-first note cache.

Provides block-level editing of personal notes stored behind a remote note
API. Notes are persisted as a flat marked-up string (plain text interleaved
with [CODE:lang]...[/CODE] and [IMAGE:id] markers) and edited as an ordered
sequence of text / code / image blocks.

Tools:
- notes_list / notes_read: served from the local SQLite cache, refreshed in
  the background from the remote API
- notes_create / notes_edit / notes_save / notes_close: block editing with
  debounced saves
- notes_delete / notes_restore / notes_purge: recycle bin
- notes_sync: force a reconciliation with the remote API

API URL and optional token file are passed as CLI arguments at startup.
"""

import asyncio
import json
import logging
import random
import re
import sqlite3
import string
import threading
import time
from dataclasses import dataclass, field, replace
from datetime import datetime, timezone
from enum import Enum, auto
from pathlib import Path
from typing import Any, Awaitable, Callable, Optional, Union
from urllib.parse import urlsplit

import httpx
import parsy as P
from mcp.server.fastmcp import FastMCP
from starlette.requests import Request
from starlette.responses import JSONResponse

logger = logging.getLogger("notes-mcp")

# =============================================================================
# Configuration Defaults
# =============================================================================

DEFAULT_API_URL = "http://localhost:3000/api"
DEFAULT_CACHE_DB = "~/.cache/notes-mcp/notes.db"
DEFAULT_PORT = 2053
REQUEST_TIMEOUT = 30.0  # seconds

# Quiescence window before an edited note is pushed to the remote API
SAVE_DEBOUNCE_DELAY = 0.5  # seconds

DEFAULT_NOTE_TITLE = "New Note"
DEFAULT_CODE_LANGUAGE = "javascript"

CODE_LANGUAGES = frozenset({
    "javascript", "typescript", "python", "java", "cpp", "c", "csharp",
    "php", "ruby", "go", "rust", "swift", "kotlin", "html", "css", "sql",
    "bash", "json", "xml", "yaml",
})

WELCOME_NOTE_TITLE = "Welcome to Better Notes"
WELCOME_NOTE_CONTENT = (
    "Start typing to create your first note...\n\n"
    "Features:\n"
    "• Smooth typing experience\n"
    "• Paste images straight into a note\n"
    "• Code blocks with syntax highlighting\n"
    "• Deleted notes wait in the recycle bin"
)


# =============================================================================
# ID Helpers
# =============================================================================

# Base62 alphabet: a-z, A-Z, 0-9 (case-sensitive)
BASE62_ALPHABET = string.ascii_lowercase + string.ascii_uppercase + string.digits

# Prefix for ids minted locally before the server assigns a real one
TEMP_ID_PREFIX = "tmp-"


def generate_short_id(existing_ids: set[str] | None = None, length: int = 6) -> str:
    """Generate a random base62 ID.

    Args:
        existing_ids: Set of IDs to avoid collisions with.
        length: Number of characters.

    Returns:
        A unique ID.
    """
    existing = existing_ids or set()
    for _ in range(100):
        short_id = ''.join(random.choices(BASE62_ALPHABET, k=length))
        if short_id not in existing:
            return short_id
    raise RuntimeError("Failed to generate unique short ID after 100 attempts")


def generate_temp_id() -> str:
    """Mint a client-side id for a note or image not yet known to the server."""
    return f"{TEMP_ID_PREFIX}{generate_short_id(length=10)}"


def is_temp_id(value: str) -> bool:
    return value.startswith(TEMP_ID_PREFIX)


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


def _epoch_millis() -> int:
    return int(time.time() * 1000)


def parse_timestamp(value: Any) -> Optional[datetime]:
    """Parse a wire timestamp into an aware datetime.

    Accepts ISO-8601 strings (with or without a trailing 'Z'), epoch
    milliseconds, or an existing datetime. Naive values are taken as UTC.

    Raises:
        ValueError: If a string is not valid ISO-8601.
    """
    if value is None or value == "":
        return None
    if isinstance(value, datetime):
        parsed = value
    elif isinstance(value, (int, float)):
        return datetime.fromtimestamp(value / 1000, tz=timezone.utc)
    else:
        text = str(value).strip()
        if text.endswith(('Z', 'z')):
            text = text[:-1] + '+00:00'
        parsed = datetime.fromisoformat(text)
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed


def _format_timestamp(value: Optional[datetime]) -> Optional[str]:
    if value is None:
        return None
    return value.isoformat()


# =============================================================================
# Note Model
# =============================================================================


@dataclass
class NoteImage:
    """An image owned by a note, referenced from content via [IMAGE:id]."""
    id: str
    url: str
    name: str

    @classmethod
    def from_wire(cls, data: dict) -> "NoteImage":
        return cls(
            id=str(data["id"]),
            url=data.get("url", ""),
            name=data.get("name", ""),
        )

    def to_wire(self) -> dict:
        return {"id": self.id, "url": self.url, "name": self.name}


@dataclass
class NoteLinkPreview:
    """A link preview card attached to a note (not referenced inline)."""
    id: str
    url: str
    title: str
    description: Optional[str] = None
    image: Optional[str] = None
    site_name: Optional[str] = None
    favicon: Optional[str] = None

    @classmethod
    def from_wire(cls, data: dict) -> "NoteLinkPreview":
        return cls(
            id=str(data.get("id") or generate_temp_id()),
            url=data.get("url", ""),
            title=data.get("title") or "",
            description=data.get("description") or None,
            image=data.get("image") or None,
            site_name=data.get("siteName") or None,
            favicon=data.get("favicon") or None,
        )

    def to_wire(self) -> dict:
        result = {"id": self.id, "url": self.url, "title": self.title}
        # Optional fields are omitted rather than sent as null
        if self.description:
            result["description"] = self.description
        if self.image:
            result["image"] = self.image
        if self.site_name:
            result["siteName"] = self.site_name
        if self.favicon:
            result["favicon"] = self.favicon
        return result


@dataclass
class Note:
    """A note as served by the remote API.

    `content` is the single source of truth for block structure; images and
    link previews are auxiliary entities owned by the note.
    """
    id: str
    title: str
    content: str
    created_at: datetime
    updated_at: datetime
    deleted_at: Optional[datetime] = None
    images: list[NoteImage] = field(default_factory=list)
    link_previews: list[NoteLinkPreview] = field(default_factory=list)

    @property
    def is_deleted(self) -> bool:
        return self.deleted_at is not None

    def matches(self, query: str) -> bool:
        """Case-insensitive substring match on title or content."""
        needle = query.lower()
        return needle in self.title.lower() or needle in self.content.lower()

    @classmethod
    def from_wire(cls, data: dict) -> "Note":
        """Build a Note from its JSON representation.

        Raises:
            KeyError: If the id is missing.
            ValueError: If a timestamp is malformed.
        """
        created_at = parse_timestamp(data.get("createdAt")) or _utcnow()
        return cls(
            id=str(data["id"]),
            title=data.get("title") or "",
            content=data.get("content") or "",
            created_at=created_at,
            updated_at=parse_timestamp(data.get("updatedAt")) or created_at,
            deleted_at=parse_timestamp(data.get("deletedAt")),
            images=[NoteImage.from_wire(img) for img in data.get("images") or []],
            link_previews=[
                NoteLinkPreview.from_wire(p) for p in data.get("linkPreviews") or []
            ],
        )

    def to_wire(self) -> dict:
        result = {
            "id": self.id,
            "title": self.title,
            "content": self.content,
            "createdAt": _format_timestamp(self.created_at),
            "updatedAt": _format_timestamp(self.updated_at),
            "images": [img.to_wire() for img in self.images],
            "linkPreviews": [p.to_wire() for p in self.link_previews],
        }
        if self.deleted_at is not None:
            result["deletedAt"] = _format_timestamp(self.deleted_at)
        return result


def filter_notes(notes: list[Note], query: str) -> list[Note]:
    """Return the notes whose title or content contains `query`."""
    if not query or not query.strip():
        return list(notes)
    return [note for note in notes if note.matches(query.strip())]


# =============================================================================
# Partial Updates
# =============================================================================
# One variant per valid PATCH shape, so an update can only carry the field
# combinations the remote API understands.


@dataclass
class TitleUpdate:
    """Rename a note."""
    title: str

    def to_payload(self) -> dict:
        return {"title": self.title}

    def apply(self, note: Note, now: datetime) -> Note:
        return replace(note, title=self.title, updated_at=now)


@dataclass
class ContentUpdate:
    """Replace a note's content, optionally with its image list and title.

    When `images` is given, images with temporary ids are created by the
    server and every [IMAGE:<temp id>] marker in `content` is rewritten to
    the server id within the same update.
    """
    content: str
    images: Optional[list[NoteImage]] = None
    title: Optional[str] = None

    def to_payload(self) -> dict:
        payload: dict[str, Any] = {"content": self.content}
        if self.images is not None:
            payload["images"] = [img.to_wire() for img in self.images]
        if self.title is not None:
            payload["title"] = self.title
        return payload

    def apply(self, note: Note, now: datetime) -> Note:
        updated = replace(note, content=self.content, updated_at=now)
        if self.images is not None:
            updated.images = list(self.images)
        if self.title is not None:
            updated.title = self.title
        return updated


@dataclass
class LinkPreviewUpdate:
    """Replace a note's ordered link preview collection."""
    link_previews: list[NoteLinkPreview]

    def to_payload(self) -> dict:
        return {"linkPreviews": [p.to_wire() for p in self.link_previews]}

    def apply(self, note: Note, now: datetime) -> Note:
        return replace(note, link_previews=list(self.link_previews), updated_at=now)


NoteUpdate = Union[TitleUpdate, ContentUpdate, LinkPreviewUpdate]


# =============================================================================
# Content Grammar (Parsy-based)
# =============================================================================
# content      := (code_span | image_marker | literal)*
# code_span    := "[CODE:" language "]" body "[/CODE]"
# image_marker := "[IMAGE:" image_id "]"
#
# A code body ends at the first "[/CODE]". Sentinels that do not complete a
# marker are literal text. There is no escape syntax.


class BlockType(str, Enum):
    """Content block types."""
    TEXT = "text"
    CODE = "code"
    IMAGE = "image"


CODE_OPEN = "[CODE:"
CODE_CLOSE = "[/CODE]"
IMAGE_OPEN = "[IMAGE:"

IMAGE_ID_PATTERN = r'[A-Za-z0-9_-]+'

# Runs of 3+ newlines collapse to a single blank line on serialize
_EXCESS_NEWLINES = re.compile(r'\n{3,}')


@dataclass
class ContentToken:
    """One lexical unit of a note's persisted content."""
    kind: BlockType
    value: str  # text, code body, or image id
    language: Optional[str] = None  # raw language tag, code only

    def source(self) -> str:
        """Reproduce the exact source text of this token."""
        if self.kind == BlockType.CODE:
            return f"{CODE_OPEN}{self.language or ''}]{self.value}{CODE_CLOSE}"
        if self.kind == BlockType.IMAGE:
            return f"{IMAGE_OPEN}{self.value}]"
        return self.value


def _merge_adjacent_text(tokens: list[ContentToken]) -> list[ContentToken]:
    """Merge neighbouring text tokens into one."""
    merged: list[ContentToken] = []
    for token in tokens:
        if merged and token.kind == BlockType.TEXT and merged[-1].kind == BlockType.TEXT:
            merged[-1] = ContentToken(BlockType.TEXT, merged[-1].value + token.value)
        else:
            merged.append(token)
    return merged


def _make_content_parser():
    """Build the marker grammar using parsy combinators.

    Returns a parser that converts content to list[ContentToken]. Every input
    parses: a "[" that does not open a complete marker falls through to the
    single-character literal.
    """
    # Language tag stops at "]" and may not span lines
    language = P.regex(r'[^\]\n]*')

    code_span = P.seq(
        P.string(CODE_OPEN) >> language << P.string(']'),
        P.regex(r'.*?(?=\[/CODE\])', re.DOTALL) << P.string(CODE_CLOSE),
    ).combine(lambda lang, body: ContentToken(BlockType.CODE, body, language=lang))

    image_marker = (
        P.string(IMAGE_OPEN) >>
        P.regex(IMAGE_ID_PATTERN) <<
        P.string(']')
    ).map(lambda image_id: ContentToken(BlockType.IMAGE, image_id))

    # Run of characters that cannot start a marker
    literal_run = P.regex(r'[^\[]+').map(lambda t: ContentToken(BlockType.TEXT, t))

    # "[" that didn't open a marker
    bracket = P.string('[').map(lambda t: ContentToken(BlockType.TEXT, t))

    return (code_span | image_marker | literal_run | bracket).many()


# Build the parser once at module load
_content_parser = _make_content_parser()


def tokenize_content(content: str) -> list[ContentToken]:
    """Split persisted content into text, code and image tokens."""
    if not content:
        return []
    try:
        tokens = _content_parser.parse(content)
    except P.ParseError as e:
        logger.warning(f"Content marker parse error: {e}")
        return [ContentToken(BlockType.TEXT, content)]
    return _merge_adjacent_text(tokens)


def remap_image_markers(content: str, id_map: dict[str, str]) -> str:
    """Rewrite every [IMAGE:old] marker to [IMAGE:new] according to id_map.

    Only real image markers are rewritten; text inside code bodies is left
    alone.
    """
    if not id_map:
        return content
    parts = []
    for token in tokenize_content(content):
        if token.kind == BlockType.IMAGE:
            token = ContentToken(BlockType.IMAGE, id_map.get(token.value, token.value))
        parts.append(token.source())
    return ''.join(parts)


def build_image_id_map(sent: list[NoteImage], saved: list[NoteImage]) -> dict[str, str]:
    """Match images sent with temporary ids to the ids the server assigned.

    Images the server kept keep their id. New images are matched by url and
    name, first unclaimed match wins.
    """
    saved_ids = {img.id for img in saved}
    sent_ids = {img.id for img in sent}
    unclaimed = [img for img in saved if img.id not in sent_ids]
    id_map: dict[str, str] = {}
    for img in sent:
        if img.id in saved_ids:
            continue
        for candidate in unclaimed:
            if candidate.url == img.url and candidate.name == img.name:
                id_map[img.id] = candidate.id
                unclaimed.remove(candidate)
                break
    return id_map


# =============================================================================
# Block Model
# =============================================================================


@dataclass
class ContentBlock:
    """One independently editable unit of note content."""
    id: str
    type: BlockType
    content: str = ""
    language: Optional[str] = None  # code only
    image_ref: Optional[str] = None  # image only

    @property
    def is_blank_text(self) -> bool:
        return self.type == BlockType.TEXT and not self.content.strip()


def new_block(
    block_type: BlockType,
    content: str = "",
    language: Optional[str] = None,
    image_ref: Optional[str] = None,
) -> ContentBlock:
    """Create a block with a fresh id."""
    return ContentBlock(
        id=f"{block_type.value}-{generate_short_id()}",
        type=block_type,
        content=content,
        language=language,
        image_ref=image_ref,
    )


def consolidate_blocks(blocks: list[ContentBlock]) -> list[ContentBlock]:
    """Remove redundant empty text blocks.

    An empty text block is dropped when the block kept before it, or the
    block after it in the input, is a text block. At least one text block
    always survives: if none would, an empty one is appended.
    """
    consolidated: list[ContentBlock] = []
    for index, block in enumerate(blocks):
        if block.is_blank_text:
            prev_block = consolidated[-1] if consolidated else None
            next_block = blocks[index + 1] if index + 1 < len(blocks) else None
            if (prev_block is not None and prev_block.type == BlockType.TEXT) or (
                next_block is not None and next_block.type == BlockType.TEXT
            ):
                continue
        consolidated.append(block)

    if not any(block.type == BlockType.TEXT for block in consolidated):
        consolidated.append(new_block(BlockType.TEXT))

    return consolidated


def parse_content(content: str, images: Optional[list[NoteImage]] = None) -> list[ContentBlock]:
    """Convert persisted note content into editable blocks.

    Args:
        content: Flat content with [CODE:lang]...[/CODE] and [IMAGE:id] markers.
        images: The note's images; markers for unknown ids are dropped.

    Returns:
        Consolidated, never-empty block list.
    """
    if not content or not content.strip():
        return [new_block(BlockType.TEXT)]

    known = {img.id for img in images or []}

    # Unknown image markers vanish from the text flow, so text around them
    # joins back into a single fragment
    tokens = _merge_adjacent_text([
        token for token in tokenize_content(content)
        if token.kind != BlockType.IMAGE or token.value in known
    ])

    blocks: list[ContentBlock] = []
    for token in tokens:
        if token.kind == BlockType.IMAGE:
            blocks.append(new_block(BlockType.IMAGE, image_ref=token.value))
        elif token.kind == BlockType.CODE:
            blocks.append(new_block(
                BlockType.CODE,
                content=token.value.strip(),
                language=(token.language or "").strip() or DEFAULT_CODE_LANGUAGE,
            ))
        else:
            # Drop the blank-line separators (LF or CRLF) that surround markers
            text = token.value.strip('\r\n')
            if text.strip():
                blocks.append(new_block(BlockType.TEXT, content=text))

    return consolidate_blocks(blocks)


def serialize_blocks(blocks: list[ContentBlock]) -> str:
    """Convert blocks back into persisted note content."""
    parts = []
    for block in blocks:
        if block.type == BlockType.CODE:
            language = block.language or DEFAULT_CODE_LANGUAGE
            parts.append(f"{CODE_OPEN}{language}]\n{block.content}\n{CODE_CLOSE}")
        elif block.type == BlockType.IMAGE:
            parts.append(f"{IMAGE_OPEN}{block.image_ref}]" if block.image_ref else "")
        else:
            parts.append(block.content)
    return _EXCESS_NEWLINES.sub('\n\n', '\n\n'.join(parts))


def remap_image_refs(blocks: list[ContentBlock], id_map: dict[str, str]) -> list[ContentBlock]:
    """Point image blocks at remapped image ids."""
    if not id_map:
        return list(blocks)
    return [
        replace(block, image_ref=id_map.get(block.image_ref, block.image_ref))
        if block.type == BlockType.IMAGE and block.image_ref else block
        for block in blocks
    ]


# =============================================================================
# Block Editing Operations
# =============================================================================
# Each operation is pure: it takes the current block list and returns a new
# consolidated list plus where the caret should go.


@dataclass
class EditResult:
    """Outcome of an editing operation."""
    blocks: list[ContentBlock]
    focus_id: Optional[str] = None
    cursor: int = 0


def _index_of(blocks: list[ContentBlock], block_id: Optional[str]) -> int:
    if block_id is None:
        return -1
    for index, block in enumerate(blocks):
        if block.id == block_id:
            return index
    return -1


def _contains(blocks: list[ContentBlock], block_id: str) -> bool:
    return _index_of(blocks, block_id) != -1


def _unchanged(blocks: list[ContentBlock], focus_id: Optional[str], cursor: int = 0) -> EditResult:
    return EditResult(list(blocks), focus_id=focus_id, cursor=cursor)


def insert_code_block(
    blocks: list[ContentBlock],
    focused_id: Optional[str] = None,
    language: str = DEFAULT_CODE_LANGUAGE,
) -> EditResult:
    """Insert a code block (followed by a text block) at the focused block.

    A focused empty text block is replaced; any other focused block gets
    the new blocks after it. With no focus the blocks are appended.
    """
    code = new_block(BlockType.CODE, language=language)
    trailing = new_block(BlockType.TEXT)
    updated = list(blocks)

    index = _index_of(blocks, focused_id)
    if index == -1:
        updated.extend([code, trailing])
    elif blocks[index].is_blank_text:
        updated[index:index + 1] = [code, trailing]
    else:
        updated[index + 1:index + 1] = [code, trailing]

    return EditResult(consolidate_blocks(updated), focus_id=code.id, cursor=0)


def add_text_block(blocks: list[ContentBlock], after_id: str) -> EditResult:
    """Insert an empty text block after `after_id`, where consolidation allows."""
    index = _index_of(blocks, after_id)
    if index == -1:
        return _unchanged(blocks, None)
    block = new_block(BlockType.TEXT)
    updated = list(blocks)
    updated.insert(index + 1, block)
    result = consolidate_blocks(updated)
    if _contains(result, block.id):
        return EditResult(result, focus_id=block.id, cursor=0)
    return EditResult(result, focus_id=after_id, cursor=len(blocks[index].content))


def update_block(
    blocks: list[ContentBlock],
    block_id: str,
    content: Optional[str] = None,
    language: Optional[str] = None,
) -> EditResult:
    """Change a block's content and/or code language."""
    index = _index_of(blocks, block_id)
    if index == -1:
        return _unchanged(blocks, None)
    block = blocks[index]
    changes: dict[str, Any] = {}
    if content is not None:
        changes["content"] = content
    if language is not None and block.type == BlockType.CODE:
        changes["language"] = language
    updated = list(blocks)
    updated[index] = replace(block, **changes)
    result = consolidate_blocks(updated)
    focus = block_id if _contains(result, block_id) else None
    return EditResult(result, focus_id=focus, cursor=len(updated[index].content))


def split_text_block(blocks: list[ContentBlock], block_id: str, cursor: int) -> EditResult:
    """Split a text block at `cursor` into two text blocks."""
    index = _index_of(blocks, block_id)
    if index == -1 or blocks[index].type != BlockType.TEXT:
        return _unchanged(blocks, block_id, cursor)

    block = blocks[index]
    cursor = max(0, min(cursor, len(block.content)))
    first = replace(block, content=block.content[:cursor])
    second = new_block(BlockType.TEXT, content=block.content[cursor:])

    updated = list(blocks)
    updated[index:index + 1] = [first, second]
    result = consolidate_blocks(updated)

    if _contains(result, second.id):
        return EditResult(result, focus_id=second.id, cursor=0)
    if _contains(result, first.id):
        return EditResult(result, focus_id=first.id, cursor=len(first.content))
    return EditResult(result)


def _previous_text_focus(
    before: list[ContentBlock], result: list[ContentBlock]
) -> EditResult:
    """Focus the end of the last surviving text block among `before`."""
    prior_ids = {block.id for block in before}
    for block in reversed(result):
        if block.id in prior_ids and block.type == BlockType.TEXT:
            return EditResult(result, focus_id=block.id, cursor=len(block.content))
    return EditResult(result)


def remove_block(blocks: list[ContentBlock], block_id: str) -> EditResult:
    """Remove a block and focus the end of the previous text block."""
    index = _index_of(blocks, block_id)
    if index == -1:
        return _unchanged(blocks, None)
    result = consolidate_blocks(blocks[:index] + blocks[index + 1:])
    return _previous_text_focus(blocks[:index], result)


def backspace(blocks: list[ContentBlock], block_id: str, cursor: int = 0) -> EditResult:
    """Handle Backspace in a text block.

    Only acts at position 0 of a text block that is not the first block:
    - an empty block is deleted and focus moves to the previous text block
    - otherwise the content merges into the nearest preceding text block,
      skipping (and removing) empty code blocks in between
    """
    index = _index_of(blocks, block_id)
    if index <= 0 or cursor != 0:
        return _unchanged(blocks, block_id if index != -1 else None, cursor)

    current = blocks[index]
    if current.type != BlockType.TEXT:
        return _unchanged(blocks, block_id, cursor)

    if current.is_blank_text:
        return remove_block(blocks, block_id)

    merge_index = index - 1
    while merge_index >= 0:
        candidate = blocks[merge_index]
        if candidate.type == BlockType.TEXT:
            break
        if candidate.type == BlockType.CODE and not candidate.content.strip():
            merge_index -= 1
            continue
        # Non-empty code or an image stops the merge
        return _unchanged(blocks, block_id, cursor)

    if merge_index < 0:
        return _unchanged(blocks, block_id, cursor)

    target = blocks[merge_index]
    add_space = (
        bool(target.content)
        and bool(current.content.strip())
        and not target.content[-1].isspace()
    )
    merged = target.content + (" " if add_space else "") + current.content

    updated = blocks[:merge_index] + [replace(target, content=merged)] + blocks[index + 1:]
    join_at = len(target.content) + (1 if add_space else 0)
    return EditResult(consolidate_blocks(updated), focus_id=target.id, cursor=join_at)


def paste_image(
    blocks: list[ContentBlock],
    image: NoteImage,
    focused_id: Optional[str] = None,
    cursor: int = 0,
) -> EditResult:
    """Insert an image block at the caret.

    A focused text block is split at `cursor`; blank fragments are dropped
    rather than kept as empty text blocks. A text block follows the image so
    typing can continue below it.
    """
    image_block = new_block(BlockType.IMAGE, image_ref=image.id)
    trailing = new_block(BlockType.TEXT)
    updated = list(blocks)

    index = _index_of(blocks, focused_id)
    if index == -1:
        updated.extend([image_block, trailing])
    elif blocks[index].type == BlockType.TEXT:
        focused = blocks[index]
        cursor = max(0, min(cursor, len(focused.content)))
        before = focused.content[:cursor]
        after = focused.content[cursor:]
        if not before.strip():
            replacement = [image_block, replace(trailing, content=after)]
        elif not after.strip():
            replacement = [replace(focused, content=before), image_block, trailing]
        else:
            replacement = [
                replace(focused, content=before),
                image_block,
                replace(trailing, content=after),
            ]
        updated[index:index + 1] = replacement
    else:
        updated[index + 1:index + 1] = [image_block, trailing]

    result = consolidate_blocks(updated)
    if _contains(result, trailing.id):
        return EditResult(result, focus_id=trailing.id, cursor=0)
    # Trailing block was absorbed; continue in the next text block
    image_index = _index_of(result, image_block.id)
    for block in result[image_index + 1:]:
        if block.type == BlockType.TEXT:
            return EditResult(result, focus_id=block.id, cursor=0)
    return EditResult(result)


def remove_image(blocks: list[ContentBlock], image_id: str) -> EditResult:
    """Remove every image block that references `image_id`."""
    filtered = [
        block for block in blocks
        if not (block.type == BlockType.IMAGE and block.image_ref == image_id)
    ]
    return EditResult(consolidate_blocks(filtered))


# =============================================================================
# Local Note Store (SQLite)
# =============================================================================


class Collection(str, Enum):
    """Independently synced note collections. Values double as sync tags."""
    ACTIVE = "notes"
    DELETED = "deletedNotes"


_COLLECTION_TABLES = {
    Collection.ACTIVE: "notes",
    Collection.DELETED: "deleted_notes",
}

# Failures of the local store degrade to remote-only operation
STORE_ERRORS = (sqlite3.Error, OSError)


class LocalNoteStore:
    """Offline cache of notes keyed by id.

    Two note tables (active, deleted) plus a sync-metadata table holding the
    last successful sync time per collection, in epoch milliseconds. Every
    public method is one transaction. The connection is opened on first use
    and kept for the life of the store; calls may come from worker threads.
    """

    def __init__(self, db_path: str | Path):
        self._db_path = str(db_path)
        self._db: Optional[sqlite3.Connection] = None
        self._lock = threading.Lock()

    @property
    def is_open(self) -> bool:
        return self._db is not None

    def _ensure_db(self) -> sqlite3.Connection:
        if self._db is None:
            if self._db_path != ":memory:":
                Path(self._db_path).expanduser().parent.mkdir(parents=True, exist_ok=True)
                path = str(Path(self._db_path).expanduser())
            else:
                path = self._db_path
            db = sqlite3.connect(path, check_same_thread=False)
            db.execute('PRAGMA journal_mode=WAL')
            db.row_factory = sqlite3.Row
            self._create_tables(db)
            self._db = db
        return self._db

    def _create_tables(self, db: sqlite3.Connection) -> None:
        db.executescript('''
            CREATE TABLE IF NOT EXISTS notes (
                id TEXT PRIMARY KEY,
                sort_key TEXT NOT NULL,
                data TEXT NOT NULL
            );

            CREATE TABLE IF NOT EXISTS deleted_notes (
                id TEXT PRIMARY KEY,
                sort_key TEXT NOT NULL,
                data TEXT NOT NULL
            );

            CREATE TABLE IF NOT EXISTS sync_meta (
                key TEXT PRIMARY KEY,
                last_sync_time INTEGER NOT NULL
            );
        ''')

    @staticmethod
    def _row_values(collection: Collection, note: Note) -> tuple[str, str, str]:
        # Active notes sort by last edit, deleted notes by deletion time
        if collection == Collection.DELETED and note.deleted_at is not None:
            sort_at = note.deleted_at
        else:
            sort_at = note.updated_at
        return note.id, sort_at.isoformat(), json.dumps(note.to_wire())

    # --- Notes ---

    def get_all(self, collection: Collection) -> list[Note]:
        table = _COLLECTION_TABLES[collection]
        with self._lock:
            rows = self._ensure_db().execute(
                f'SELECT id, data FROM {table} ORDER BY sort_key DESC'
            ).fetchall()
        notes = []
        for row in rows:
            try:
                notes.append(Note.from_wire(json.loads(row['data'])))
            except (json.JSONDecodeError, KeyError, TypeError, ValueError) as e:
                logger.warning(f"Skipping unreadable cached note {row['id']}: {e}")
        return notes

    def put_many(self, collection: Collection, notes: list[Note]) -> None:
        table = _COLLECTION_TABLES[collection]
        with self._lock:
            db = self._ensure_db()
            with db:
                db.executemany(
                    f'INSERT OR REPLACE INTO {table} (id, sort_key, data) VALUES (?, ?, ?)',
                    [self._row_values(collection, note) for note in notes],
                )

    def delete(self, collection: Collection, note_id: str) -> None:
        table = _COLLECTION_TABLES[collection]
        with self._lock:
            db = self._ensure_db()
            with db:
                db.execute(f'DELETE FROM {table} WHERE id = ?', (note_id,))

    def clear(self, collection: Collection) -> None:
        table = _COLLECTION_TABLES[collection]
        with self._lock:
            db = self._ensure_db()
            with db:
                db.execute(f'DELETE FROM {table}')

    def replace_all(self, collection: Collection, notes: list[Note]) -> None:
        """Clear the collection and insert `notes` in a single transaction."""
        table = _COLLECTION_TABLES[collection]
        with self._lock:
            db = self._ensure_db()
            with db:
                db.execute(f'DELETE FROM {table}')
                db.executemany(
                    f'INSERT OR REPLACE INTO {table} (id, sort_key, data) VALUES (?, ?, ?)',
                    [self._row_values(collection, note) for note in notes],
                )

    # --- Sync metadata ---

    def get_last_sync_time(self, key: str) -> int:
        with self._lock:
            row = self._ensure_db().execute(
                'SELECT last_sync_time FROM sync_meta WHERE key = ?', (key,)
            ).fetchone()
        return row['last_sync_time'] if row else 0

    def set_last_sync_time(self, key: str, millis: int) -> None:
        with self._lock:
            db = self._ensure_db()
            with db:
                db.execute(
                    'INSERT OR REPLACE INTO sync_meta (key, last_sync_time) VALUES (?, ?)',
                    (key, millis),
                )

    def close(self) -> None:
        with self._lock:
            if self._db is not None:
                self._db.close()
                self._db = None


# =============================================================================
# Remote Note API Client
# =============================================================================


class NotesApiError(Exception):
    """Remote note API call failed (network error or non-success status)."""

    def __init__(self, message: str, status_code: int | None = None, detail: str | None = None):
        super().__init__(message)
        self.message = message
        self.status_code = status_code
        self.detail = detail

    def to_dict(self) -> dict:
        result: dict[str, Any] = {"message": self.message}
        if self.status_code is not None:
            result["status"] = self.status_code
        if self.detail:
            result["detail"] = self.detail
        return result


def _http_error_detail(e: httpx.HTTPStatusError, max_len: int = 300) -> str:
    """Extract error detail from an HTTP status error."""
    if e.response is not None:
        return e.response.text[:max_len]
    return str(e)


YOUTUBE_URL_PATTERN = re.compile(
    r'(?:youtube\.com/(?:[^/]+/.+/|(?:v|e(?:mbed)?)/|.*[?&]v=)|youtu\.be/)([^"&?/\s]{11})',
    re.IGNORECASE
)
GITHUB_URL_PATTERN = re.compile(r'github\.com/([^/?#]+)(?:/([^/?#]+))?', re.IGNORECASE)


def normalize_link_url(url: str) -> str:
    """Trim a user-entered URL and default its scheme to https."""
    url = url.strip()
    if not re.match(r'^https?://', url, re.IGNORECASE):
        url = f"https://{url}"
    return url


def _favicon_url(hostname: str, size: int) -> str:
    return f"https://www.google.com/s2/favicons?domain={hostname}&sz={size}"


def fallback_link_preview(url: str) -> NoteLinkPreview:
    """Build a preview from the URL alone, for when scraping fails."""
    url = normalize_link_url(url)
    hostname = urlsplit(url).hostname or url

    youtube = YOUTUBE_URL_PATTERN.search(url)
    if youtube:
        video_id = youtube.group(1)
        return NoteLinkPreview(
            id=generate_temp_id(),
            url=url,
            title="YouTube Video",
            description="Watch this video on YouTube",
            image=f"https://img.youtube.com/vi/{video_id}/maxresdefault.jpg",
            site_name="YouTube",
            favicon="https://www.youtube.com/favicon.ico",
        )

    github = GITHUB_URL_PATTERN.search(url)
    if github:
        owner, repo = github.group(1), github.group(2)
        return NoteLinkPreview(
            id=generate_temp_id(),
            url=url,
            title=f"{owner}/{repo}" if repo else owner,
            description="GitHub Repository" if repo else "GitHub Profile",
            image=f"https://github.com/{owner}.png",
            site_name="GitHub",
            favicon="https://github.com/favicon.ico",
        )

    return NoteLinkPreview(
        id=generate_temp_id(),
        url=url,
        title=hostname,
        description=url,
        image=_favicon_url(hostname, 128),
        site_name=hostname,
        favicon=_favicon_url(hostname, 64),
    )


class NotesApiClient:
    """Async client for the remote note API.

    All success responses carry the note representation
    {id, title, content, createdAt, updatedAt, deletedAt?, images[], linkPreviews[]}.
    Failures surface as NotesApiError; there is no automatic retry.
    """

    def __init__(
        self,
        base_url: str = DEFAULT_API_URL,
        token: Optional[str] = None,
        timeout: float = REQUEST_TIMEOUT,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ):
        self.base_url = base_url.rstrip('/')
        self._token = token
        self._timeout = timeout
        self._transport = transport
        self._client: Optional[httpx.AsyncClient] = None

    async def _get_client(self) -> httpx.AsyncClient:
        """Get or create the async HTTP client."""
        if self._client is None or self._client.is_closed:
            headers = {"Content-Type": "application/json"}
            if self._token:
                headers["Authorization"] = f"Bearer {self._token}"
            self._client = httpx.AsyncClient(
                base_url=self.base_url,
                headers=headers,
                timeout=self._timeout,
                transport=self._transport,
            )
        return self._client

    async def aclose(self) -> None:
        if self._client is not None:
            await self._client.aclose()
            self._client = None

    async def _request(self, method: str, endpoint: str, json_body: Optional[dict] = None) -> Any:
        """Make a request and return the decoded JSON body.

        Raises:
            NotesApiError: On transport errors, non-2xx responses, invalid
                JSON, or a body reporting {"success": false}.
        """
        client = await self._get_client()
        try:
            response = await client.request(method, endpoint, json=json_body)
            response.raise_for_status()
        except httpx.HTTPStatusError as e:
            raise NotesApiError(
                f"HTTP {e.response.status_code} on {method} {endpoint}",
                status_code=e.response.status_code,
                detail=_http_error_detail(e),
            ) from e
        except httpx.HTTPError as e:
            raise NotesApiError(f"{type(e).__name__} on {method} {endpoint}: {e}") from e

        if not response.content:
            return {}
        try:
            data = response.json()
        except ValueError as e:
            raise NotesApiError(f"Invalid JSON from {method} {endpoint}") from e

        if isinstance(data, dict) and data.get("success") is False:
            raise NotesApiError(
                f"{method} {endpoint} reported failure",
                status_code=response.status_code,
                detail=str(data.get("error", "")) or None,
            )
        return data

    @staticmethod
    def _note_from(data: Any, endpoint: str) -> Note:
        if not isinstance(data, dict):
            raise NotesApiError(
                f"Malformed note from {endpoint}: expected an object, got {type(data).__name__}"
            )
        try:
            return Note.from_wire(data)
        except (AttributeError, KeyError, TypeError, ValueError) as e:
            raise NotesApiError(f"Malformed note from {endpoint}: {e}") from e

    def _notes_from(self, data: Any, endpoint: str) -> list[Note]:
        if not isinstance(data, list):
            raise NotesApiError(f"Expected a list of notes from {endpoint}")
        return [self._note_from(item, endpoint) for item in data]

    async def list_notes(self) -> list[Note]:
        return self._notes_from(await self._request("GET", "/notes"), "/notes")

    async def list_deleted_notes(self) -> list[Note]:
        return self._notes_from(
            await self._request("GET", "/notes/deleted"), "/notes/deleted"
        )

    async def create_note(self, note: Note) -> Note:
        body = {
            "title": note.title,
            "content": note.content,
            "images": [{"url": img.url, "name": img.name} for img in note.images],
        }
        return self._note_from(await self._request("POST", "/notes", json_body=body), "/notes")

    async def update_note(self, note_id: str, update: NoteUpdate) -> Note:
        endpoint = f"/notes/{note_id}"
        data = await self._request("PATCH", endpoint, json_body=update.to_payload())
        return self._note_from(data, endpoint)

    async def delete_note(self, note_id: str) -> None:
        """Soft delete: the note moves to the recycle bin."""
        await self._request("DELETE", f"/notes/{note_id}")

    async def restore_note(self, note_id: str) -> Optional[Note]:
        """Restore from the recycle bin; returns the restored note when sent."""
        endpoint = f"/notes/restore/{note_id}"
        data = await self._request("POST", endpoint)
        if isinstance(data, dict) and isinstance(data.get("note"), dict):
            return self._note_from(data["note"], endpoint)
        return None

    async def permanent_delete_note(self, note_id: str) -> None:
        await self._request("DELETE", f"/notes/permanent-delete/{note_id}")

    async def fetch_link_preview(self, url: str) -> NoteLinkPreview:
        """Fetch preview metadata for a URL, falling back to domain defaults."""
        url = normalize_link_url(url)
        try:
            data = await self._request("POST", "/link-preview", json_body={"url": url})
            if not isinstance(data, dict):
                raise NotesApiError("Expected a preview object from /link-preview")
        except NotesApiError as e:
            logger.warning(f"Link preview for {url} failed, using fallback: {e}")
            return fallback_link_preview(url)

        preview = NoteLinkPreview.from_wire({**data, "url": data.get("url") or url})
        if not preview.title:
            preview.title = urlsplit(url).hostname or url
        return preview


# =============================================================================
# Offline Cache & Sync Engine
# =============================================================================


class SyncState(Enum):
    """Lifecycle of one synced collection."""
    EMPTY = auto()
    CACHE_LOADED = auto()
    SYNCING = auto()
    SYNCED = auto()


class CollectionSync:
    """Visible state of one note collection, its cache, and its sync guard.

    The visible list is served from the local store first and replaced
    wholesale by each successful remote fetch. Only one sync runs at a time;
    triggering another while one is in flight is a no-op.
    """

    def __init__(
        self,
        collection: Collection,
        store: LocalNoteStore,
        fetch: Callable[[], Awaitable[list[Note]]],
    ):
        self.collection = collection
        self.notes: list[Note] = []
        self.state = SyncState.EMPTY
        self.last_sync_time = 0
        self.last_error: Optional[dict] = None
        self._store = store
        self._fetch = fetch
        self._in_flight = False

    @property
    def is_syncing(self) -> bool:
        return self._in_flight

    def get(self, note_id: str) -> Optional[Note]:
        for note in self.notes:
            if note.id == note_id:
                return note
        return None

    async def _cache(self, method: Callable[..., Any], *args: Any) -> Any:
        """Run a store call off the event loop; store failures are logged only."""
        try:
            return await asyncio.to_thread(method, *args)
        except STORE_ERRORS as e:
            logger.warning(f"Local cache {method.__name__} on {self.collection.value} failed: {e}")
            return None

    async def load_cached(self) -> list[Note]:
        """Expose whatever the local store holds, before any network call."""
        cached = await self._cache(self._store.get_all, self.collection)
        last_sync = await self._cache(self._store.get_last_sync_time, self.collection.value)
        self.last_sync_time = last_sync or 0
        if cached and self.state == SyncState.EMPTY:
            self.notes = cached
            self.state = SyncState.CACHE_LOADED
        return self.notes

    async def sync(self) -> bool:
        """Fetch the remote collection and replace state and cache with it.

        Returns:
            True if the collection was refreshed, False if a sync was already
            in flight or the fetch failed (the cached view is kept).
        """
        if self._in_flight:
            logger.debug(f"Sync of {self.collection.value} already in flight")
            return False

        self._in_flight = True
        previous = self.state
        self.state = SyncState.SYNCING
        try:
            try:
                notes = await self._fetch()
            except NotesApiError as e:
                logger.warning(f"Background sync of {self.collection.value} failed: {e}")
                self.last_error = e.to_dict()
                self.state = previous
                return False
            except asyncio.CancelledError:
                self.state = previous
                raise
            except Exception as e:
                detail = f"{type(e).__name__}: {e}"
                logger.warning(f"Background sync of {self.collection.value} failed unexpectedly: {detail}")
                self.last_error = {"message": detail}
                self.state = previous
                return False

            self.notes = list(notes)
            self.state = SyncState.SYNCED
            self.last_error = None
            now = _epoch_millis()
            await self._cache(self._store.replace_all, self.collection, self.notes)
            await self._cache(self._store.set_last_sync_time, self.collection.value, now)
            self.last_sync_time = now
            logger.info(f"Synced {len(self.notes)} note(s) into {self.collection.value}")
            return True
        finally:
            self._in_flight = False

    async def put(self, note: Note, front: bool = False) -> None:
        """Insert or replace a note in visible state and cache."""
        for index, existing in enumerate(self.notes):
            if existing.id == note.id:
                self.notes[index] = note
                break
        else:
            if front:
                self.notes.insert(0, note)
            else:
                self.notes.append(note)
        await self._cache(self._store.put_many, self.collection, [note])

    async def swap(self, old_id: str, note: Note) -> None:
        """Replace the note stored under `old_id` with `note` in place."""
        for index, existing in enumerate(self.notes):
            if existing.id == old_id:
                self.notes[index] = note
                break
        else:
            self.notes.insert(0, note)
        await self._cache(self._store.delete, self.collection, old_id)
        await self._cache(self._store.put_many, self.collection, [note])

    async def discard(self, note_id: str) -> Optional[Note]:
        """Remove a note from visible state and cache; returns it if present."""
        removed = self.get(note_id)
        self.notes = [note for note in self.notes if note.id != note_id]
        await self._cache(self._store.delete, self.collection, note_id)
        return removed


class NotesSync:
    """Offline-first note repository.

    Mutations are optimistic: visible state and local cache change before the
    remote call is issued. When the remote call fails, a background re-sync
    of the affected collection(s) restores the server-confirmed state.

    Args:
        api: Remote note API client.
        store: Local cache; injected so callers choose its lifetime.
        seed_welcome: Create a welcome note when the remote has none.
    """

    def __init__(self, api: NotesApiClient, store: LocalNoteStore, seed_welcome: bool = True):
        self.api = api
        self.store = store
        self.seed_welcome = seed_welcome
        self.active = CollectionSync(Collection.ACTIVE, store, api.list_notes)
        self.deleted = CollectionSync(Collection.DELETED, store, api.list_deleted_notes)
        self._background: set[asyncio.Task] = set()

    # --- Loading & syncing ---

    async def load(self) -> None:
        """Serve cached notes now and refresh both collections in the background."""
        await asyncio.gather(self.active.load_cached(), self.deleted.load_cached())
        self._spawn(self._initial_active_sync())
        self.schedule_sync(self.deleted)

    async def _initial_active_sync(self) -> None:
        synced = await self.active.sync()
        if synced and self.seed_welcome and not self.active.notes:
            await self.create_note(WELCOME_NOTE_TITLE, WELCOME_NOTE_CONTENT)

    def _spawn(self, coro: Awaitable[Any]) -> asyncio.Task:
        task = asyncio.ensure_future(coro)
        self._background.add(task)
        task.add_done_callback(self._background.discard)
        return task

    def schedule_sync(self, *collections: CollectionSync) -> list[asyncio.Task]:
        """Start background syncs; overlapping triggers collapse to one call."""
        return [self._spawn(target.sync()) for target in collections]

    async def sync_all(self) -> tuple[bool, bool]:
        """Sync both collections now. Returns (active_synced, deleted_synced)."""
        active, deleted = await asyncio.gather(self.active.sync(), self.deleted.sync())
        return active, deleted

    async def wait_for_background(self) -> None:
        """Wait until no background sync is pending."""
        # A finishing sync may schedule follow-up work (e.g. the welcome note)
        while True:
            pending = [task for task in self._background if not task.done()]
            if not pending:
                return
            await asyncio.gather(*pending, return_exceptions=True)

    # --- Queries ---

    def get_note(self, note_id: str) -> Optional[Note]:
        return self.active.get(note_id)

    def search(self, query: str = "", deleted: bool = False) -> list[Note]:
        source = self.deleted if deleted else self.active
        return filter_notes(source.notes, query)

    # --- Mutations ---

    async def create_note(
        self,
        title: str = DEFAULT_NOTE_TITLE,
        content: str = "",
        images: Optional[list[NoteImage]] = None,
    ) -> Optional[Note]:
        """Create a note. A draft with a temporary id is shown until the server answers."""
        now = _utcnow()
        draft = Note(
            id=generate_temp_id(),
            title=title or DEFAULT_NOTE_TITLE,
            content=content,
            created_at=now,
            updated_at=now,
            images=list(images or []),
        )
        await self.active.put(draft, front=True)

        try:
            created = await self.api.create_note(draft)
        except NotesApiError as e:
            logger.warning(f"Creating note failed: {e}")
            await self.active.discard(draft.id)
            self.schedule_sync(self.active)
            return None

        await self.active.swap(draft.id, created)
        return created

    async def update_note(self, note_id: str, update: NoteUpdate) -> Optional[Note]:
        """Apply a partial update locally, then persist it.

        Returns the server's representation, or None if the update failed
        (a re-sync has then been scheduled).
        """
        current = self.active.get(note_id)
        if current is not None:
            await self.active.put(update.apply(current, _utcnow()))

        try:
            saved = await self.api.update_note(note_id, update)
        except NotesApiError as e:
            logger.warning(f"Updating note {note_id} failed: {e}")
            self.schedule_sync(self.active)
            return None

        if isinstance(update, ContentUpdate) and update.images is not None:
            # The cached copy must never keep markers for temporary image ids
            id_map = build_image_id_map(update.images, saved.images)
            if id_map:
                saved = replace(saved, content=remap_image_markers(saved.content, id_map))

        await self.active.put(saved)
        return saved

    async def delete_note(self, note_id: str) -> bool:
        """Soft delete: move the note to the recycle bin."""
        note = await self.active.discard(note_id)
        if note is not None:
            await self.deleted.put(replace(note, deleted_at=_utcnow()), front=True)

        try:
            await self.api.delete_note(note_id)
        except NotesApiError as e:
            logger.warning(f"Deleting note {note_id} failed: {e}")
            self.schedule_sync(self.active, self.deleted)
            return False
        return True

    async def restore_note(self, note_id: str) -> Optional[Note]:
        """Move a note from the recycle bin back to the active notes."""
        trashed = await self.deleted.discard(note_id)

        try:
            restored = await self.api.restore_note(note_id)
        except NotesApiError as e:
            logger.warning(f"Restoring note {note_id} failed: {e}")
            self.schedule_sync(self.deleted)
            return None

        if restored is None and trashed is None:
            self.schedule_sync(self.active)
            return None
        if restored is None:
            restored = replace(trashed, deleted_at=None)
        elif trashed is not None:
            # The restore response omits attachments
            restored = replace(
                restored,
                images=restored.images or trashed.images,
                link_previews=restored.link_previews or trashed.link_previews,
            )
        await self.active.put(restored, front=True)
        return restored

    async def permanent_delete_note(self, note_id: str) -> bool:
        """Remove a note from the recycle bin for good."""
        await self.deleted.discard(note_id)

        try:
            await self.api.permanent_delete_note(note_id)
        except NotesApiError as e:
            logger.warning(f"Permanently deleting note {note_id} failed: {e}")
            self.schedule_sync(self.deleted)
            return False
        return True


# =============================================================================
# Debounced Saving
# =============================================================================


class Debouncer:
    """Debounced async callback.

    `trigger()` (re)starts the quiescence timer and returns the cancel
    handle; the callback runs once no trigger has happened for `delay`
    seconds.
    """

    def __init__(self, callback: Callable[[], Awaitable[Any]], delay: float = SAVE_DEBOUNCE_DELAY):
        self._callback = callback
        self._delay = delay
        self._timer: Optional[asyncio.TimerHandle] = None
        self._task: Optional[asyncio.Task] = None

    @property
    def pending(self) -> bool:
        return self._timer is not None

    def trigger(self) -> Callable[[], None]:
        """Schedule the callback after the delay. Resets if called again."""
        self.cancel()
        loop = asyncio.get_running_loop()
        self._timer = loop.call_later(self._delay, self._do_save)
        return self.cancel

    def cancel(self) -> None:
        """Cancel any pending run."""
        if self._timer is not None:
            self._timer.cancel()
            self._timer = None

    async def save_now(self) -> None:
        """Run immediately if a run is pending, then wait for it."""
        if self._timer is not None:
            self.cancel()
            self._start()
        await self.wait()

    async def wait(self) -> None:
        """Wait for every run already started."""
        if self._task is not None and not self._task.done():
            await asyncio.shield(self._task)

    def _do_save(self) -> None:
        self._timer = None
        self._start()

    def _start(self) -> None:
        self._task = asyncio.ensure_future(self._run(self._task))

    async def _run(self, previous: Optional[asyncio.Task]) -> None:
        # Runs never overlap: each one starts after the one before it
        if previous is not None and not previous.done():
            await asyncio.wait([previous])
        try:
            await self._callback()
        except Exception as e:
            logger.warning(f"Debounced save failed: {type(e).__name__}: {e}")


# =============================================================================
# Note Editing Session
# =============================================================================


class NoteSession:
    """Editing state for one open note.

    Holds the block list, title and images; every edit schedules a debounced
    ContentUpdate. Pasted images get temporary ids that are swapped for the
    server's ids when the save comes back.
    """

    def __init__(self, sync: NotesSync, note: Note, save_delay: float = SAVE_DEBOUNCE_DELAY):
        self._sync = sync
        self.note_id = note.id
        self.title = note.title
        self.images = list(note.images)
        self.link_previews = list(note.link_previews)
        self.blocks = parse_content(note.content, note.images)
        self.focus_id: Optional[str] = None
        self.cursor = 0
        self.closed = False
        self._images_dirty = False
        self._autosave = Debouncer(self._save, save_delay)

    @property
    def content(self) -> str:
        return serialize_blocks(self.blocks)

    @property
    def save_pending(self) -> bool:
        return self._autosave.pending

    def image(self, image_id: Optional[str]) -> Optional[NoteImage]:
        for img in self.images:
            if img.id == image_id:
                return img
        return None

    def _apply(self, result: EditResult) -> EditResult:
        if self.closed:
            raise RuntimeError(f"Session for note {self.note_id} is closed")
        self.blocks = result.blocks
        self.focus_id = result.focus_id
        self.cursor = result.cursor
        self._autosave.trigger()
        return result

    # --- Edits ---

    def set_title(self, title: str) -> None:
        if self.closed:
            raise RuntimeError(f"Session for note {self.note_id} is closed")
        self.title = title
        self._autosave.trigger()

    def edit_block(self, block_id: str, content: Optional[str] = None,
                   language: Optional[str] = None) -> EditResult:
        return self._apply(update_block(self.blocks, block_id, content=content, language=language))

    def insert_code_block(self, focused_id: Optional[str] = None,
                          language: str = DEFAULT_CODE_LANGUAGE) -> EditResult:
        return self._apply(insert_code_block(self.blocks, focused_id, language))

    def add_text_block(self, after_id: str) -> EditResult:
        return self._apply(add_text_block(self.blocks, after_id))

    def split_block(self, block_id: str, cursor: int) -> EditResult:
        return self._apply(split_text_block(self.blocks, block_id, cursor))

    def backspace(self, block_id: str, cursor: int = 0) -> EditResult:
        return self._apply(backspace(self.blocks, block_id, cursor))

    def remove_block(self, block_id: str) -> EditResult:
        return self._apply(remove_block(self.blocks, block_id))

    def paste_image(self, url: str, name: str, focused_id: Optional[str] = None,
                    cursor: int = 0) -> NoteImage:
        image = NoteImage(id=generate_temp_id(), url=url, name=name)
        self.images.append(image)
        self._images_dirty = True
        self._apply(paste_image(self.blocks, image, focused_id, cursor))
        return image

    def remove_image(self, image_id: str) -> EditResult:
        self.images = [img for img in self.images if img.id != image_id]
        self._images_dirty = True
        return self._apply(remove_image(self.blocks, image_id))

    async def add_link_preview(self, url: str) -> NoteLinkPreview:
        """Fetch a preview for `url` and attach it to the note."""
        preview = await self._sync.api.fetch_link_preview(url)
        self.link_previews.append(preview)
        saved = await self._sync.update_note(self.note_id, LinkPreviewUpdate(list(self.link_previews)))
        if saved is not None:
            self.link_previews = list(saved.link_previews)
            for stored in saved.link_previews:
                if stored.url == preview.url:
                    return stored
        return preview

    async def remove_link_preview(self, preview_id: str) -> bool:
        remaining = [p for p in self.link_previews if p.id != preview_id]
        if len(remaining) == len(self.link_previews):
            return False
        self.link_previews = remaining
        saved = await self._sync.update_note(self.note_id, LinkPreviewUpdate(list(remaining)))
        return saved is not None

    # --- Persistence ---

    async def _save(self) -> None:
        # Images go along while any still carries a temporary id, so its
        # markers are remapped by the same update that persists them
        unsaved = any(is_temp_id(img.id) for img in self.images)
        sent = list(self.images) if self._images_dirty or unsaved else None
        self._images_dirty = False
        update = ContentUpdate(content=self.content, images=sent, title=self.title)

        saved = await self._sync.update_note(self.note_id, update)
        if saved is None:
            if sent is not None:
                self._images_dirty = True
            return

        if sent is not None:
            id_map = build_image_id_map(sent, saved.images)
            if id_map:
                self.blocks = remap_image_refs(self.blocks, id_map)
                self.images = [replace(img, id=id_map.get(img.id, img.id)) for img in self.images]

    async def save_now(self) -> None:
        await self._autosave.save_now()

    async def close(self, discard_pending: bool = False) -> bool:
        """End the session; no save is issued after this returns.

        Pending edits are flushed unless `discard_pending` is set. A note
        left with a blank title and blank content is deleted.

        Returns:
            True if the note was deleted because it was blank.
        """
        if self.closed:
            return False
        if discard_pending:
            self._autosave.cancel()
            await self._autosave.wait()
        else:
            await self._autosave.save_now()
        self.closed = True

        if not self.title.strip() and not self.content.strip():
            await self._sync.delete_note(self.note_id)
            return True
        return False


# =============================================================================
# Rendering
# =============================================================================


def _indent_lines(text: str, indent: str = "  ") -> list[str]:
    return [f"{indent}{line}" for line in text.split('\n')]


def render_blocks(
    blocks: list[ContentBlock],
    images: list[NoteImage],
    focus_id: Optional[str] = None,
) -> str:
    """Render blocks as one header line per block with indented content."""
    image_by_id = {img.id: img for img in images}
    lines = []
    for block in blocks:
        marker = "*" if block.id == focus_id else " "
        if block.type == BlockType.CODE:
            lines.append(f"{marker}{block.id} code:{block.language or DEFAULT_CODE_LANGUAGE}")
            if block.content:
                lines.extend(_indent_lines(block.content))
        elif block.type == BlockType.IMAGE:
            img = image_by_id.get(block.image_ref)
            label = f"{img.name} <{img.url}>" if img else block.image_ref
            if is_temp_id(block.image_ref or ""):
                label += " (unsaved)"
            lines.append(f"{marker}{block.id} image {block.image_ref}: {label}")
        else:
            lines.append(f"{marker}{block.id} text")
            if block.content:
                lines.extend(_indent_lines(block.content))
    return "\n".join(lines)


def render_session(session: NoteSession) -> str:
    lines = [f"@note {session.note_id}", f"@title {session.title}"]
    if session.save_pending:
        lines.append("@save pending")
    lines.append(render_blocks(session.blocks, session.images, session.focus_id))
    for preview in session.link_previews:
        lines.append(f"@link {preview.id} {preview.title} <{preview.url}>")
    if session.focus_id:
        lines.append(f"@focus {session.focus_id}:{session.cursor}")
    return "\n".join(lines)


def render_note_line(note: Note) -> str:
    stamp = note.deleted_at if note.is_deleted else note.updated_at
    title = note.title.strip() or "(untitled)"
    return f"{note.id}  {stamp:%Y-%m-%d %H:%M}  {title}"


# =============================================================================
# Self-Healing Error Messages
# =============================================================================


def _error(code: str, message: str, hint: str | None = None, ref: str | None = None) -> str:
    """Format error with optional self-healing hint.

    Args:
        code: Error code (e.g., UNKNOWN_NOTE, INVALID_OP)
        message: Human-readable description
        hint: Suggestion on how to fix the issue
        ref: The reference that failed (for context)

    Returns:
        Formatted error string with hint if provided.
    """
    parts = [f"error: {code} - {message}"]
    if ref:
        parts.append(f"ref: {ref}")
    if hint:
        parts.append(f"hint: {hint}")
    return "\n".join(parts)


# Common error hints
HINTS = {
    "unknown_note": "Use notes_list to find the note id; run notes_sync if the note was created elsewhere.",
    "unknown_block": "Use notes_read to see current block ids; ids change when blocks are split or merged.",
    "remote_failed": "The change was applied locally and a re-sync was scheduled. Check the API URL and try again.",
    "not_configured": "Start the server through the notes-mcp entry point so the API client and cache are set up.",
    "unknown_language": f"Supported languages: {', '.join(sorted(CODE_LANGUAGES))}.",
}

EDIT_OPS = (
    "title", "set", "language", "code", "text", "split", "backspace",
    "remove", "image", "remove_image", "link", "unlink",
)


# =============================================================================
# MCP Server
# =============================================================================

mcp = FastMCP("notes-mcp", host="127.0.0.1", port=DEFAULT_PORT)


@dataclass
class AppContext:
    """Process-wide server state, created once by main()."""
    sync: NotesSync
    save_delay: float = SAVE_DEBOUNCE_DELAY
    sessions: dict[str, NoteSession] = field(default_factory=dict)
    loaded: bool = False


_context: Optional[AppContext] = None


def _get_context() -> AppContext:
    if _context is None:
        raise RuntimeError("Notes client not configured. Start the server via main().")
    return _context


async def _ready_context() -> AppContext:
    """Return the context, loading the cache on first use."""
    ctx = _get_context()
    if not ctx.loaded:
        ctx.loaded = True
        await ctx.sync.load()
    return ctx


def _open_session(ctx: AppContext, note_id: str) -> Optional[NoteSession]:
    session = ctx.sessions.get(note_id)
    if session is not None and not session.closed:
        return session
    note = ctx.sync.get_note(note_id)
    if note is None:
        return None
    session = NoteSession(ctx.sync, note, save_delay=ctx.save_delay)
    ctx.sessions[note_id] = session
    return session


@mcp.tool()
async def notes_list(query: str = "", deleted: bool = False) -> str:
    """List notes, newest first, optionally filtered by a search query.

    Args:
        query: Case-insensitive text matched against title and content.
        deleted: List the recycle bin instead of active notes.

    Returns:
        One line per note: id, last update (or deletion) time, title.
    """
    try:
        ctx = await _ready_context()
    except RuntimeError as e:
        return _error("NOT_CONFIGURED", str(e), hint=HINTS["not_configured"])

    notes = ctx.sync.search(query, deleted=deleted)
    where = "recycle bin" if deleted else "notes"
    if not notes:
        if query:
            return f"No {where} match '{query}'"
        return f"No {where}"
    header = f"Found {len(notes)} note(s) in {where}"
    if query:
        header += f" matching '{query}'"
    return header + ":\n" + "\n".join(render_note_line(note) for note in notes)


@mcp.tool()
async def notes_read(note_id: str) -> str:
    """Open a note for editing and show its blocks.

    Args:
        note_id: Note id from notes_list.

    Returns:
        Note header, one entry per block (block id, type, content), link
        previews, and the caret position. The focused block is marked '*'.
    """
    try:
        ctx = await _ready_context()
    except RuntimeError as e:
        return _error("NOT_CONFIGURED", str(e), hint=HINTS["not_configured"])

    session = _open_session(ctx, note_id)
    if session is not None:
        return render_session(session)

    trashed = ctx.sync.deleted.get(note_id)
    if trashed is not None:
        blocks = parse_content(trashed.content, trashed.images)
        return "\n".join([
            f"@note {trashed.id} (in recycle bin)",
            f"@title {trashed.title}",
            render_blocks(blocks, trashed.images),
        ])
    return _error("UNKNOWN_NOTE", "Note not found", hint=HINTS["unknown_note"], ref=note_id)


@mcp.tool()
async def notes_create(title: str = DEFAULT_NOTE_TITLE, content: str = "") -> str:
    """Create a note.

    Args:
        title: Note title (default "New Note").
        content: Initial content; may include [CODE:lang]...[/CODE] markers.

    Returns:
        The new note's id and title.
    """
    try:
        ctx = await _ready_context()
    except RuntimeError as e:
        return _error("NOT_CONFIGURED", str(e), hint=HINTS["not_configured"])

    note = await ctx.sync.create_note(title, content)
    if note is None:
        return _error("REMOTE_FAILED", "Could not create note", hint=HINTS["remote_failed"])
    return f"created {note.id}  {note.title}"


@mcp.tool()
async def notes_edit(
    note_id: str,
    op: str,
    block_id: str = "",
    text: Optional[str] = None,
    cursor: int = 0,
    language: str = "",
) -> str:
    """Edit an open note's blocks. Changes are saved after a short pause.

    Args:
        note_id: Note to edit.
        op: One of:
            title         set the title to `text`
            set           replace block `block_id` content with `text`
            language      set code block `block_id` language to `language`
            code          insert a code block at `block_id` (or at the end)
            text          add an empty text block after `block_id`
            split         split text block `block_id` at `cursor`
            backspace     Backspace at `cursor` in text block `block_id`
            remove        remove block `block_id`
            image         paste image with URL `text` at `block_id`/`cursor`
            remove_image  remove image `text` (image id) from the note
            link          attach a link preview for URL `text`
            unlink        remove link preview `text` (preview id)
        block_id: Target block id from notes_read.
        text: Text, URL or id argument, depending on op.
        cursor: Caret offset within the block.
        language: Code language for 'code' and 'language'.

    Returns:
        The note's blocks after the edit, or an error.
    """
    try:
        ctx = await _ready_context()
    except RuntimeError as e:
        return _error("NOT_CONFIGURED", str(e), hint=HINTS["not_configured"])

    if op not in EDIT_OPS:
        return _error("INVALID_OP", f"Unknown op '{op}'", hint=f"Valid ops: {', '.join(EDIT_OPS)}")

    session = _open_session(ctx, note_id)
    if session is None:
        return _error("UNKNOWN_NOTE", "Note not found", hint=HINTS["unknown_note"], ref=note_id)

    block_ops = ("set", "language", "text", "split", "backspace", "remove")
    if op in block_ops and _index_of(session.blocks, block_id) == -1:
        return _error("UNKNOWN_BLOCK", "Block not found", hint=HINTS["unknown_block"], ref=block_id)

    if language and language not in CODE_LANGUAGES:
        return _error("UNKNOWN_LANGUAGE", f"Unsupported language '{language}'",
                      hint=HINTS["unknown_language"])

    needs_text = ("title", "set", "image", "remove_image", "link", "unlink")
    if op in needs_text and text is None:
        return _error("MISSING_TEXT", f"Op '{op}' needs the text argument")

    focus = block_id or None
    if op == "title":
        session.set_title(text)
    elif op == "set":
        session.edit_block(block_id, content=text)
    elif op == "language":
        if not language:
            return _error("MISSING_LANGUAGE", "Op 'language' needs the language argument")
        session.edit_block(block_id, language=language)
    elif op == "code":
        session.insert_code_block(focus, language or DEFAULT_CODE_LANGUAGE)
    elif op == "text":
        session.add_text_block(block_id)
    elif op == "split":
        session.split_block(block_id, cursor)
    elif op == "backspace":
        session.backspace(block_id, cursor)
    elif op == "remove":
        session.remove_block(block_id)
    elif op == "image":
        url = text.strip()
        name = url.rstrip('/').rsplit('/', 1)[-1] or "image"
        session.paste_image(url, name, focus, cursor)
    elif op == "remove_image":
        if session.image(text) is None:
            return _error("UNKNOWN_IMAGE", "Image not found", ref=text)
        session.remove_image(text)
    elif op == "link":
        await session.add_link_preview(text)
    elif op == "unlink":
        if not await session.remove_link_preview(text):
            return _error("UNKNOWN_LINK", "Link preview not found", ref=text)

    return render_session(session)


@mcp.tool()
async def notes_save(note_id: str) -> str:
    """Push an open note's pending edits to the server now.

    Args:
        note_id: Note to save.
    """
    try:
        ctx = await _ready_context()
    except RuntimeError as e:
        return _error("NOT_CONFIGURED", str(e), hint=HINTS["not_configured"])

    session = ctx.sessions.get(note_id)
    if session is None or session.closed:
        return _error("NOT_OPEN", "Note is not open", hint="Open it with notes_read first.", ref=note_id)
    await session.save_now()
    return f"saved {note_id}"


@mcp.tool()
async def notes_close(note_id: str, discard: bool = False) -> str:
    """Close an open note.

    Pending edits are saved first unless `discard` is set. A note with a
    blank title and blank content is moved to the recycle bin.

    Args:
        note_id: Note to close.
        discard: Drop edits not yet saved.
    """
    try:
        ctx = await _ready_context()
    except RuntimeError as e:
        return _error("NOT_CONFIGURED", str(e), hint=HINTS["not_configured"])

    session = ctx.sessions.pop(note_id, None)
    if session is None:
        return _error("NOT_OPEN", "Note is not open", ref=note_id)
    removed = await session.close(discard_pending=discard)
    return f"closed {note_id}" + (" (blank note deleted)" if removed else "")


@mcp.tool()
async def notes_delete(note_id: str) -> str:
    """Move a note to the recycle bin.

    Args:
        note_id: Note to delete.
    """
    try:
        ctx = await _ready_context()
    except RuntimeError as e:
        return _error("NOT_CONFIGURED", str(e), hint=HINTS["not_configured"])

    session = ctx.sessions.pop(note_id, None)
    if session is not None:
        await session.close(discard_pending=True)
    if not await ctx.sync.delete_note(note_id):
        return _error("REMOTE_FAILED", "Delete not confirmed by server", hint=HINTS["remote_failed"], ref=note_id)
    return f"deleted {note_id}"


@mcp.tool()
async def notes_restore(note_id: str) -> str:
    """Restore a note from the recycle bin.

    Args:
        note_id: Note id from notes_list(deleted=True).
    """
    try:
        ctx = await _ready_context()
    except RuntimeError as e:
        return _error("NOT_CONFIGURED", str(e), hint=HINTS["not_configured"])

    note = await ctx.sync.restore_note(note_id)
    if note is None:
        return _error("REMOTE_FAILED", "Restore not confirmed by server", hint=HINTS["remote_failed"], ref=note_id)
    return f"restored {note.id}  {note.title}"


@mcp.tool()
async def notes_purge(note_id: str) -> str:
    """Permanently delete a note from the recycle bin.

    Args:
        note_id: Note id from notes_list(deleted=True).
    """
    try:
        ctx = await _ready_context()
    except RuntimeError as e:
        return _error("NOT_CONFIGURED", str(e), hint=HINTS["not_configured"])

    if not await ctx.sync.permanent_delete_note(note_id):
        return _error("REMOTE_FAILED", "Permanent delete not confirmed by server",
                      hint=HINTS["remote_failed"], ref=note_id)
    return f"purged {note_id}"


@mcp.tool()
async def notes_sync() -> str:
    """Reconcile the local cache with the server now.

    Returns:
        Per collection: whether it synced and how many notes it holds.
    """
    try:
        ctx = await _ready_context()
    except RuntimeError as e:
        return _error("NOT_CONFIGURED", str(e), hint=HINTS["not_configured"])

    # Let a running background sync finish so this one is not a no-op
    await ctx.sync.wait_for_background()
    active_ok, deleted_ok = await ctx.sync.sync_all()
    lines = []
    for target, ok in ((ctx.sync.active, active_ok), (ctx.sync.deleted, deleted_ok)):
        if ok:
            status = "synced"
        elif target.is_syncing:
            status = "sync already running"
        else:
            status = "offline, showing cache"
        lines.append(f"{target.collection.value}: {status} ({len(target.notes)})")
    return "\n".join(lines)


# =============================================================================
# HTTP Endpoints (/health)
# =============================================================================

async def health_endpoint(request: Request) -> JSONResponse:
    """Health check endpoint for easy testing."""
    if _context is None:
        return JSONResponse({"status": "unconfigured"}, status_code=503)

    sync = _context.sync
    return JSONResponse({
        "status": "ok",
        "api_url": sync.api.base_url,
        "collections": {
            target.collection.value: {
                "state": target.state.name.lower(),
                "notes": len(target.notes),
                "last_sync_time": target.last_sync_time,
                "last_error": target.last_error,
            }
            for target in (sync.active, sync.deleted)
        },
        "open_sessions": len(_context.sessions),
    })


# =============================================================================
# Main Entry Point
# =============================================================================

def main():
    """Run the notes MCP server.

    Supports two transport modes:
    - stdio (default): launched directly by an MCP client
    - http: standalone server on localhost

    Usage:
        notes-mcp --api-url http://localhost:3000/api
        notes-mcp --api-url https://notes.example.com/api --token-file ~/.notes_token --http
    """
    import argparse

    global _context

    parser = argparse.ArgumentParser(description="Notes MCP Server")
    parser.add_argument(
        "--api-url",
        default=DEFAULT_API_URL,
        help=f"Base URL of the remote note API (default {DEFAULT_API_URL})"
    )
    parser.add_argument(
        "--token-file",
        help="Path to file containing a bearer token for the note API"
    )
    parser.add_argument(
        "--cache-db",
        default=DEFAULT_CACHE_DB,
        help=f"SQLite file for the offline cache (default {DEFAULT_CACHE_DB})"
    )
    parser.add_argument(
        "--save-delay",
        type=float,
        default=SAVE_DEBOUNCE_DELAY,
        help="Seconds of inactivity before edits are saved"
    )
    parser.add_argument(
        "--http",
        action="store_true",
        help="Run as HTTP server on localhost instead of stdio"
    )
    parser.add_argument(
        "--port",
        type=int,
        default=DEFAULT_PORT,
        help=f"Port for --http mode (default {DEFAULT_PORT})"
    )
    args = parser.parse_args()

    logging.basicConfig(
        level=logging.INFO,
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
        datefmt="%H:%M:%S"
    )

    token = None
    if args.token_file:
        token_path = Path(args.token_file).expanduser()
        if not token_path.exists():
            logger.error(f"Token file not found: {token_path}")
            raise SystemExit(1)
        token = token_path.read_text().strip()
        if not token:
            logger.error("Token file is empty")
            raise SystemExit(1)
        logger.info(f"API token loaded from {token_path}")

    store = LocalNoteStore(Path(args.cache_db).expanduser())
    api = NotesApiClient(args.api_url, token=token)
    _context = AppContext(sync=NotesSync(api, store), save_delay=args.save_delay)
    logger.info(f"Using note API at {api.base_url}, cache at {args.cache_db}")

    if args.http:
        import uvicorn

        app = mcp.streamable_http_app()
        app.add_route("/health", health_endpoint, methods=["GET"])

        logger.info(f"Starting notes MCP server on http://127.0.0.1:{args.port}")
        uvicorn.run(app, host="127.0.0.1", port=args.port, log_level="warning")
    else:
        mcp.run()


if __name__ == "__main__":
    main()
