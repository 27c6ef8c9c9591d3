"""Reader document types and tolerant decoding of the list API payload."""

from __future__ import annotations

import json
import logging
import re
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Any

logger = logging.getLogger(__name__)

UNTITLED = "Untitled"

# Full date and time with seconds. The offset may be omitted (taken as UTC).
TIMESTAMP_RE = re.compile(r"\d{4}-\d{2}-\d{2}[T ]\d{2}:\d{2}:\d{2}(\.\d+)?(Z|[+-]\d{2}:\d{2})?")


class Category(str, Enum):
    """Kind of document stored in Reader."""

    ARTICLE = "article"
    EMAIL = "email"
    EPUB = "epub"
    HIGHLIGHT = "highlight"
    NOTE = "note"
    PDF = "pdf"
    RSS = "rss"
    TWEET = "tweet"
    VIDEO = "video"


class Location(str, Enum):
    """Reader inbox a document currently sits in."""

    ARCHIVE = "archive"
    FEED = "feed"
    LATER = "later"
    NEW = "new"
    SHORTLIST = "shortlist"


class DecodeError(ValueError):
    """The payload structure is not what the list API is supposed to return."""

    def __init__(self, path: str, message: str) -> None:
        super().__init__(f"{path or '<root>'}: {message}")
        self.path = path or "<root>"
        self.message = message


def format_timestamp(ts: datetime) -> str:
    """Serialize an aware datetime as ISO-8601 in UTC."""
    return ts.astimezone(timezone.utc).isoformat()


def _from_iso(value: str) -> datetime | None:
    try:
        dt = datetime.fromisoformat(value.strip().replace("Z", "+00:00"))
    except ValueError:
        return None
    if dt.tzinfo is None:
        dt = dt.replace(tzinfo=timezone.utc)
    return dt.astimezone(timezone.utc)


def parse_timestamp(value: Any, path: str) -> datetime:
    """Strictly decode an RFC 3339 timestamp, raising DecodeError at `path`.

    Date-only, basic-format and truncated times are rejected.
    """
    if not isinstance(value, str):
        raise DecodeError(path, f"expected timestamp string, got {type(value).__name__}")
    if not TIMESTAMP_RE.fullmatch(value.strip()):
        raise DecodeError(path, f"invalid timestamp {value!r}")
    dt = _from_iso(value)
    if dt is None:
        raise DecodeError(path, f"invalid timestamp {value!r}")
    return dt


def parse_published_date(value: Any) -> datetime | None:
    """Decode `published_date`, which the API sends in several shapes.

    - null -> None
    - integer Unix timestamp (seconds) -> UTC datetime
    - RFC 3339 datetime string -> UTC datetime
    - date-only string ("2026-01-30") -> midnight UTC

    Anything else is logged and degrades to None.
    """
    if value is None:
        return None

    if isinstance(value, int) and not isinstance(value, bool):
        try:
            return datetime.fromtimestamp(value, tz=timezone.utc)
        except (OverflowError, OSError, ValueError):
            logger.warning(f"published_date timestamp out of range: {value}. Defaulting to None.")
            return None

    if isinstance(value, str):
        dt = _from_iso(value)
        if dt is None:
            logger.warning(f"Failed to parse published_date string {value!r}. Defaulting to None.")
        return dt

    logger.warning(f"Unexpected published_date value: {value!r}. Defaulting to None.")
    return None


@dataclass(frozen=True)
class Document:
    """A single item from the Reader list API."""

    id: str
    category: Category
    created_at: datetime
    reading_progress: float
    title: str = UNTITLED
    word_count: int = 0
    location: Location | None = None
    author: str | None = None
    content: str | None = None
    notes: str | None = None
    summary: str | None = None
    site_name: str | None = None
    source: str | None = None
    source_url: str | None = None
    readwise_url: str | None = None
    image_url: str | None = None
    parent_id: str | None = None
    updated_at: datetime | None = None
    published_date: datetime | None = None
    tags: Any = None

    def to_row(self) -> dict[str, Any]:
        """Column values for the reading table."""
        return {
            "id": self.id,
            "author": self.author,
            "category": self.category.value,
            "content": self.content,
            "created_at": format_timestamp(self.created_at),
            "image_url": self.image_url,
            "location": self.location.value if self.location else None,
            "notes": self.notes,
            "parent_id": self.parent_id,
            "published_date": format_timestamp(self.published_date) if self.published_date else None,
            "reading_progress": self.reading_progress,
            "readwise_url": self.readwise_url,
            "site_name": self.site_name,
            "source": self.source,
            "source_url": self.source_url,
            "summary": self.summary,
            "tags": json.dumps(self.tags) if self.tags is not None else None,
            "title": self.title,
            "updated_at": format_timestamp(self.updated_at) if self.updated_at else None,
            "word_count": self.word_count,
        }


@dataclass(frozen=True)
class Page:
    """One page of the list API response. Never persisted."""

    count: int
    next_page_cursor: str | None
    results: list[Document] = field(default_factory=list)


# Optional string fields, keyed by wire name -> Document attribute
_OPTIONAL_STRINGS = {
    "author": "author",
    "content": "content",
    "notes": "notes",
    "summary": "summary",
    "site_name": "site_name",
    "source": "source",
    "source_url": "source_url",
    "url": "readwise_url",
    "image_url": "image_url",
    "parent_id": "parent_id",
}


def _join(path: str, key: str) -> str:
    return f"{path}.{key}" if path else key


def _optional_str(raw: dict, key: str, path: str) -> str | None:
    value = raw.get(key)
    if value is None or isinstance(value, str):
        return value
    raise DecodeError(_join(path, key), f"expected string or null, got {type(value).__name__}")


def _enum(enum_cls: type[Enum], raw: dict, key: str, path: str, *, required: bool) -> Any:
    value = raw.get(key)
    if value is None:
        if required:
            raise DecodeError(_join(path, key), "missing required field")
        return None
    try:
        return enum_cls(value)
    except ValueError:
        raise DecodeError(_join(path, key), f"unknown {key} {value!r}") from None


def parse_document(raw: Any, path: str = "") -> Document:
    """Decode one list API result into a Document.

    Degradable fields (title, word_count, published_date) fall back to
    defaults; anything else that is structurally wrong raises DecodeError
    pointing at the offending field.
    """
    if not isinstance(raw, dict):
        raise DecodeError(path, f"expected object, got {type(raw).__name__}")

    doc_id = raw.get("id")
    if not isinstance(doc_id, str) or not doc_id:
        raise DecodeError(_join(path, "id"), "missing or non-string id")

    category = _enum(Category, raw, "category", path, required=True)
    location = _enum(Location, raw, "location", path, required=False)

    if "created_at" not in raw:
        raise DecodeError(_join(path, "created_at"), "missing required field")
    created_at = parse_timestamp(raw["created_at"], _join(path, "created_at"))

    updated_at = None
    if raw.get("updated_at") is not None:
        updated_at = parse_timestamp(raw["updated_at"], _join(path, "updated_at"))

    progress = raw.get("reading_progress")
    if isinstance(progress, bool) or not isinstance(progress, (int, float)):
        raise DecodeError(_join(path, "reading_progress"), f"expected number, got {progress!r}")

    title = raw.get("title")
    if title is None:
        title = UNTITLED
    elif not isinstance(title, str):
        raise DecodeError(_join(path, "title"), f"expected string or null, got {type(title).__name__}")

    word_count = raw.get("word_count")
    if word_count is None:
        word_count = 0
    elif isinstance(word_count, bool) or not isinstance(word_count, int):
        raise DecodeError(_join(path, "word_count"), f"expected integer or null, got {word_count!r}")

    strings = {attr: _optional_str(raw, key, path) for key, attr in _OPTIONAL_STRINGS.items()}

    return Document(
        id=doc_id,
        category=category,
        created_at=created_at,
        reading_progress=float(progress),
        title=title,
        word_count=word_count,
        location=location,
        updated_at=updated_at,
        published_date=parse_published_date(raw.get("published_date")),
        tags=raw.get("tags"),
        **strings,
    )


def parse_page(raw: Any) -> Page:
    """Decode a full list API response, failing on the first broken path."""
    if not isinstance(raw, dict):
        raise DecodeError("", f"expected object, got {type(raw).__name__}")

    count = raw.get("count")
    if isinstance(count, bool) or not isinstance(count, int):
        raise DecodeError("count", f"expected integer, got {count!r}")

    cursor = raw.get("nextPageCursor")
    if cursor is not None and not isinstance(cursor, str):
        raise DecodeError("nextPageCursor", f"expected string or null, got {type(cursor).__name__}")

    results = raw.get("results")
    if not isinstance(results, list):
        raise DecodeError("results", f"expected array, got {type(results).__name__}")

    return Page(
        count=count,
        next_page_cursor=cursor or None,
        results=[parse_document(item, f"results[{i}]") for i, item in enumerate(results)],
    )
