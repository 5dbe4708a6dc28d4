"""Retrying adapter over the append-only message store.

The :class:`StoreGateway` is the only component that speaks SQL.  Every read
filters on ``approved = 1 AND deleted_at IS NULL`` -- unfiltered rows are
never trusted -- and every operation retries transient failures with capped
exponential backoff before giving up with :class:`StoreUnavailable`.

Callers are expected to degrade on :class:`StoreUnavailable` (skip a cycle,
skip a poll) rather than crash.

Usage::

    gateway = StoreGateway(storage)
    newest = await gateway.max_id()
    page = await gateway.range_backward(newest, limit=20, ceiling_id=newest)
"""

from __future__ import annotations

import asyncio
import logging
import random
import sqlite3
from functools import wraps
from typing import Any, Awaitable, Callable, TypeVar

from mourning.config import RetryConfig, get_config
from mourning.messages import MAX_CONTENT_LENGTH, Message, utc_now
from mourning.storage import Storage

log = logging.getLogger(__name__)

F = TypeVar("F", bound=Callable[..., Awaitable[Any]])

_VISIBLE = "approved = 1 AND deleted_at IS NULL"
_COLUMNS = "id, content, created_at, approved, deleted_at"


class StoreUnavailable(RuntimeError):
    """The store could not be reached after all retry attempts."""

    def __init__(self, operation: str, attempts: int, cause: BaseException | None = None):
        super().__init__(
            f"store operation {operation!r} failed after {attempts} attempt(s): {cause}"
        )
        self.operation = operation
        self.attempts = attempts


def _is_transient(exc: BaseException) -> bool:
    """Integrity and programming errors are permanent; other DB/OS errors are not."""
    if isinstance(exc, (sqlite3.IntegrityError, sqlite3.ProgrammingError)):
        return False
    return isinstance(exc, (sqlite3.OperationalError, sqlite3.DatabaseError, OSError))


def retry_transient(operation: str) -> Callable[[F], F]:
    """Decorator retrying a gateway coroutine on transient store errors.

    The policy is read from ``self._retry`` at call time so each gateway can
    carry its own :class:`~mourning.config.RetryConfig`.  The delay before
    attempt ``n + 1`` is ``min(base * 2**(n-1), max)`` plus up to
    ``jitter`` of that delay at random.
    """

    def decorator(func: F) -> F:
        @wraps(func)
        async def wrapper(self: StoreGateway, *args: Any, **kwargs: Any) -> Any:
            policy = self._retry
            last_error: BaseException | None = None

            for attempt in range(1, policy.max_attempts + 1):
                try:
                    return await func(self, *args, **kwargs)
                except Exception as exc:
                    if not _is_transient(exc):
                        raise
                    last_error = exc

                    if attempt >= policy.max_attempts:
                        log.error(
                            "Store %s failed after %d attempts: %s",
                            operation,
                            attempt,
                            exc,
                        )
                        break

                    delay_ms = min(
                        policy.base_delay_ms * (2 ** (attempt - 1)), policy.max_delay_ms
                    )
                    delay_ms += random.uniform(0, delay_ms * policy.jitter)

                    log.warning(
                        "Store %s failed (attempt %d/%d), retrying in %.0fms: %s",
                        operation,
                        attempt,
                        policy.max_attempts,
                        delay_ms,
                        exc,
                    )
                    await asyncio.sleep(delay_ms / 1000.0)

            raise StoreUnavailable(operation, policy.max_attempts, last_error) from last_error

        return wrapper  # type: ignore[return-value]

    return decorator


class StoreGateway:
    """Cursor-scoped, visibility-filtered access to the message store.

    Parameters
    ----------
    storage:
        An initialised :class:`~mourning.storage.Storage`.
    retry:
        Backoff policy; defaults to the configured one.
    """

    def __init__(self, storage: Storage, retry: RetryConfig | None = None) -> None:
        self._storage = storage
        self._retry = retry or get_config().retry

    @property
    def storage(self) -> Storage:
        return self._storage

    # ------------------------------------------------------------------
    # Reads
    # ------------------------------------------------------------------

    @retry_transient("range_backward")
    async def range_backward(
        self, from_id: int, limit: int, ceiling_id: int
    ) -> list[Message]:
        """Up to *limit* visible messages with ``id <= min(from_id, ceiling_id)``, newest first."""
        if limit <= 0:
            return []
        rows = await self._storage.execute(
            f"SELECT {_COLUMNS} FROM messages "
            f"WHERE id <= ? AND id <= ? AND {_VISIBLE} "
            "ORDER BY id DESC LIMIT ?",
            (from_id, ceiling_id, limit),
        )
        return [Message.from_row(r) for r in rows]

    @retry_transient("above")
    async def above(self, watermark_id: int) -> list[Message]:
        """All visible messages with ``id > watermark_id``, oldest first."""
        rows = await self._storage.execute(
            f"SELECT {_COLUMNS} FROM messages "
            f"WHERE id > ? AND {_VISIBLE} ORDER BY id ASC",
            (watermark_id,),
        )
        return [Message.from_row(r) for r in rows]

    @retry_transient("max_id")
    async def max_id(self) -> int:
        """Highest visible id, or 0 when nothing qualifies."""
        rows = await self._storage.execute(
            f"SELECT COALESCE(MAX(id), 0) FROM messages WHERE {_VISIBLE}"
        )
        return int(rows[0][0])

    @retry_transient("count")
    async def count(self) -> int:
        """Number of visible messages."""
        rows = await self._storage.execute(
            f"SELECT COUNT(*) FROM messages WHERE {_VISIBLE}"
        )
        return int(rows[0][0])

    async def ping(self) -> bool:
        """Return ``True`` when the store answers a trivial query."""
        try:
            await self._ping()
        except StoreUnavailable:
            return False
        return True

    @retry_transient("ping")
    async def _ping(self) -> None:
        await self._storage.execute("SELECT 1")

    # ------------------------------------------------------------------
    # Writes (intake only)
    # ------------------------------------------------------------------

    async def insert(self, content: str, approved: bool = True) -> Message:
        """Append a new message and return it as stored.

        Raises
        ------
        ValueError
            If *content* is empty or longer than 280 characters.
        StoreUnavailable
            If the write could not be completed.
        """
        text = (content or "").strip()
        if not text:
            raise ValueError("Message content must not be empty")
        if len(text) > MAX_CONTENT_LENGTH:
            raise ValueError(
                f"Message content exceeds {MAX_CONTENT_LENGTH} characters ({len(text)})"
            )
        return await self._insert(text, approved)

    @retry_transient("insert")
    async def _insert(self, content: str, approved: bool) -> Message:
        rows = await self._storage.execute_write_returning(
            f"INSERT INTO messages (content, created_at, approved) VALUES (?, ?, ?) "
            f"RETURNING {_COLUMNS}",
            (content, utc_now().isoformat(), int(approved)),
        )
        message = Message.from_row(rows[0])
        log.debug("Inserted message %d (approved=%s)", message.id, approved)
        return message
