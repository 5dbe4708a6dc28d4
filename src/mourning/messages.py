"""Message and cluster types shared by every layer of the engine.

A **message** is one short grief submission, immutable once admitted to the
store.  Its integer ``id`` is the sole ordering key: ids only ever grow, so
"newer than the watermark" and "created later" mean the same thing.

This module provides:

* :class:`Message` -- maps 1:1 to a row of the ``messages`` table.
* :class:`RelatedMessage` -- a message paired with its similarity to a focus.
* :class:`MessageCluster` -- the displayable group emitted every cycle.
* :class:`WorkingSetChange` -- the membership delta emitted alongside it.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any

MAX_CONTENT_LENGTH = 280
"""Longest accepted message content, in characters."""


def parse_timestamp(value: Any) -> datetime | None:
    """Parse an ISO-8601 timestamp into an aware UTC :class:`datetime`.

    Naive values are assumed to be UTC.  A trailing ``Z`` is accepted.
    ``None`` and empty strings yield ``None``.
    """
    if value is None:
        return None
    if isinstance(value, datetime):
        dt = value
    else:
        s = str(value).strip()
        if not s:
            return None
        if s.endswith("Z"):
            s = s[:-1] + "+00:00"
        dt = datetime.fromisoformat(s)
    if dt.tzinfo is None:
        dt = dt.replace(tzinfo=timezone.utc)
    return dt.astimezone(timezone.utc)


def utc_now() -> datetime:
    return datetime.now(tz=timezone.utc)


# ---------------------------------------------------------------------------
# Message
# ---------------------------------------------------------------------------


@dataclass(frozen=True, slots=True)
class Message:
    """In-memory representation of a single ``messages`` row.

    Parameters
    ----------
    id:
        Auto-incremented primary key; monotonically increasing.
    content:
        The submission text, 1-280 characters.
    created_at:
        Submission time as an aware UTC datetime.
    approved:
        Only approved messages are ever visible.
    deleted_at:
        Soft-delete timestamp; a non-null value excludes the message
        everywhere.
    """

    id: int
    content: str
    created_at: datetime
    approved: bool = True
    deleted_at: datetime | None = None

    @classmethod
    def from_row(cls, row: Any) -> Message:
        """Create a :class:`Message` from a :class:`sqlite3.Row` (or mapping)."""
        return cls(
            id=int(row["id"]),
            content=row["content"],
            created_at=parse_timestamp(row["created_at"]) or utc_now(),
            approved=bool(row["approved"]),
            deleted_at=parse_timestamp(row["deleted_at"]),
        )

    @property
    def visible(self) -> bool:
        """Whether the message qualifies for display."""
        return self.approved and self.deleted_at is None

    def to_dict(self) -> dict[str, Any]:
        """Serialise to a JSON-friendly dict."""
        return {
            "id": self.id,
            "content": self.content,
            "created_at": self.created_at.isoformat(),
            "approved": self.approved,
            "deleted_at": self.deleted_at.isoformat() if self.deleted_at else None,
        }


# ---------------------------------------------------------------------------
# Cluster output types
# ---------------------------------------------------------------------------


@dataclass(frozen=True, slots=True)
class RelatedMessage:
    """A related message and its similarity to the cluster focus."""

    message: Message
    similarity: float

    @property
    def id(self) -> int:
        return self.message.id

    def to_dict(self) -> dict[str, Any]:
        return {"message": self.message.to_dict(), "similarity": round(self.similarity, 4)}


@dataclass(frozen=True, slots=True)
class MessageCluster:
    """One displayable group: a focus, its related companions and a next.

    ``next`` becomes the focus of the following cluster, which is what
    makes consecutive clusters overlap.  A cluster whose ``focus`` is
    ``None`` is the placeholder emitted while the working set is empty.
    """

    focus: Message | None
    related: tuple[RelatedMessage, ...] = ()
    next: Message | None = None
    duration_ms: int = 0
    total_shown: int = 0
    created_at: datetime = field(default_factory=utc_now)

    @classmethod
    def placeholder(cls, duration_ms: int = 0, total_shown: int = 0) -> MessageCluster:
        """Build the "no content" sentinel cluster."""
        return cls(focus=None, duration_ms=duration_ms, total_shown=total_shown)

    @property
    def is_placeholder(self) -> bool:
        return self.focus is None

    @property
    def focus_id(self) -> int | None:
        return self.focus.id if self.focus is not None else None

    @property
    def next_id(self) -> int | None:
        return self.next.id if self.next is not None else None

    @property
    def related_ids(self) -> list[int]:
        return [r.id for r in self.related]

    def member_ids(self) -> list[int]:
        """Focus id followed by related ids (excludes ``next``, already in related)."""
        ids = [self.focus.id] if self.focus is not None else []
        ids.extend(self.related_ids)
        return ids

    def to_dict(self) -> dict[str, Any]:
        return {
            "focus": self.focus.to_dict() if self.focus is not None else None,
            "related": [r.to_dict() for r in self.related],
            "next": self.next.to_dict() if self.next is not None else None,
            "duration_ms": self.duration_ms,
            "total_shown": self.total_shown,
            "created_at": self.created_at.isoformat(),
            "placeholder": self.is_placeholder,
        }


@dataclass(frozen=True, slots=True)
class WorkingSetChange:
    """Membership delta of the working set, emitted to the renderer."""

    removed: tuple[int, ...] = ()
    added: tuple[Message, ...] = ()
    reason: str = "cycle"

    @property
    def is_empty(self) -> bool:
        return not self.removed and not self.added

    def to_dict(self) -> dict[str, Any]:
        return {
            "removed": list(self.removed),
            "added": [m.to_dict() for m in self.added],
            "reason": self.reason,
        }
