"""Shared fixtures and helpers for the mourning test suite."""

from __future__ import annotations

from datetime import datetime, timedelta
from pathlib import Path

import pytest

from mourning.config import EngineConfig, RetryConfig
from mourning.gateway import StoreGateway
from mourning.messages import Message, utc_now
from mourning.storage import Storage


# ---------------------------------------------------------------------------
# Fixtures
# ---------------------------------------------------------------------------


@pytest.fixture
def fast_retry() -> RetryConfig:
    """Retry policy with no backoff so failure tests run instantly."""
    return RetryConfig(max_attempts=3, base_delay_ms=0, max_delay_ms=0, jitter=0.0)


@pytest.fixture
def config(tmp_path: Path, fast_retry: RetryConfig) -> EngineConfig:
    """A scaled-down engine configuration backed by a temp database.

    Small sizes keep the invariant-heavy tests fast while still exercising
    eviction, replenishment and recycling.
    """
    return EngineConfig(
        db_path=tmp_path / "messages.db",
        working_set_size=40,
        cluster_size=6,
        cluster_duration_ms=50,
        polling_interval_ms=20,
        priority_queue_max_size=50,
        retry=fast_retry,
    )


@pytest.fixture
async def storage(tmp_path: Path) -> Storage:
    """Provide an initialized Storage instance backed by a temp directory.

    The database file lives entirely inside ``tmp_path`` so tests never
    touch ``~/.mourning/messages.db``.
    """
    s = Storage(tmp_path / "messages.db")
    await s.initialize()
    yield s  # type: ignore[misc]
    await s.close()


@pytest.fixture
async def gateway(storage: Storage, fast_retry: RetryConfig) -> StoreGateway:
    return StoreGateway(storage, fast_retry)


# ---------------------------------------------------------------------------
# Shared test helpers -- direct SQL insertion bypassing the gateway
# ---------------------------------------------------------------------------


async def insert_message(
    storage: Storage,
    content: str = "Missing my father every day",
    *,
    created_at: datetime | None = None,
    approved: bool = True,
    deleted: bool = False,
) -> int:
    """Insert one row directly and return its id."""
    return await storage.execute_write(
        "INSERT INTO messages (content, created_at, approved, deleted_at) "
        "VALUES (?, ?, ?, ?)",
        (
            content,
            (created_at or utc_now()).isoformat(),
            int(approved),
            utc_now().isoformat() if deleted else None,
        ),
    )


async def insert_many(
    storage: Storage,
    count: int,
    *,
    start: datetime | None = None,
    step: timedelta = timedelta(hours=1),
    approved: bool = True,
) -> list[int]:
    """Insert *count* visible rows with ascending timestamps; return their ids."""
    before = await storage.execute("SELECT COALESCE(MAX(id), 0) FROM messages")
    first = start or utc_now() - step * count
    await storage.execute_many(
        "INSERT INTO messages (content, created_at, approved) VALUES (?, ?, ?)",
        [
            (
                f"message {i} " + "x" * (i % 97),
                (first + step * i).isoformat(),
                int(approved),
            )
            for i in range(count)
        ],
    )
    rows = await storage.execute(
        "SELECT id FROM messages WHERE id > ? ORDER BY id", (before[0][0],)
    )
    return [r["id"] for r in rows]


def make_message(
    id: int,
    content: str | None = None,
    *,
    created_at: datetime | None = None,
    hours_ago: float = 0.0,
) -> Message:
    """Build an in-memory :class:`Message` without touching the store."""
    return Message(
        id=id,
        content=content if content is not None else f"message {id}",
        created_at=created_at or utc_now() - timedelta(hours=hours_ago),
    )
