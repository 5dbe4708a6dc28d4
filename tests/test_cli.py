"""Tests for the CLI helpers and commands."""

from __future__ import annotations

import random
from datetime import datetime
from pathlib import Path

import pytest

from mourning import cli
from mourning.config import get_config
from mourning.messages import MAX_CONTENT_LENGTH, MessageCluster
from mourning.storage import Storage
from tests.conftest import make_message


@pytest.fixture
def db_env(tmp_path: Path, monkeypatch: pytest.MonkeyPatch) -> Path:
    """Point the cached config at a temp database for CLI commands."""
    db_path = tmp_path / "cli.db"
    monkeypatch.setenv("MOURNING_DB_PATH", str(db_path))
    monkeypatch.setenv("MOURNING_RETRY__BASE_DELAY_MS", "0")
    monkeypatch.setenv("MOURNING_RETRY__MAX_DELAY_MS", "0")
    get_config(reload=True)
    yield db_path
    monkeypatch.undo()
    get_config(reload=True)


class TestGenerateMessages:
    def test_count_and_length(self) -> None:
        rows = cli.generate_messages(50, random.Random(1))
        assert len(rows) == 50
        assert all(0 < len(content) <= MAX_CONTENT_LENGTH for content, _ in rows)

    def test_chronological(self) -> None:
        rows = cli.generate_messages(100, random.Random(2))
        stamps = [datetime.fromisoformat(ts) for _, ts in rows]
        assert stamps == sorted(stamps)

    def test_templates_filled(self) -> None:
        rows = cli.generate_messages(24, random.Random(3))
        assert all("{subject}" not in content for content, _ in rows)
        assert rows[0][0] == "Missing my dog every day"

    def test_seeded_is_deterministic(self) -> None:
        a = [c for c, _ in cli.generate_messages(10, random.Random(9))]
        b = [c for c, _ in cli.generate_messages(10, random.Random(9))]
        assert a == b


class TestFormatting:
    def test_placeholder(self) -> None:
        assert cli.format_cluster(MessageCluster.placeholder()) == "(no messages yet)"

    def test_cluster_line(self) -> None:
        focus = make_message(3, "x" * 100)
        cluster = MessageCluster(focus=focus, next=focus, total_shown=7)
        line = cli.format_cluster(cluster)
        assert line.startswith("#7 focus=3")
        assert "..." in line
        assert line.endswith("related=0 next=3")


class TestFlags:
    def test_flag_value(self) -> None:
        assert cli._flag_value(["--count", "5"], "--count", "-n") == "5"
        assert cli._flag_value(["-n", "7"], "--count", "-n") == "7"
        assert cli._flag_value(["--count"], "--count") is None
        assert cli._flag_value([], "--count") is None

    def test_int_flag_rejects_garbage(self) -> None:
        with pytest.raises(SystemExit):
            cli._int_flag(["--cycles", "lots"], "--cycles")


class TestCommands:
    async def test_seed_then_stats(self, db_env: Path) -> None:
        result = await cli._seed(25, seed=4)
        assert "Seeded 25" in result

        stats = await cli._stats()
        assert "visible messages: 25" in stats
        assert str(db_env) in stats

    async def test_submit(self, db_env: Path) -> None:
        result = await cli._submit("Learning to live without my home")
        assert result.startswith("Stored message #1")

    async def test_submit_rejects_overlong(self, db_env: Path) -> None:
        with pytest.raises(ValueError):
            await cli._submit("x" * 300)

    async def test_health(self, db_env: Path) -> None:
        result = await cli._health()
        assert "store: reachable" in result

    async def test_run_cycles(self, db_env: Path) -> None:
        await cli._seed(60, seed=5)
        result = await cli._run(3, fast=True)
        assert result.startswith("Showed 4 cluster(s)")

    async def test_run_empty_store(self, db_env: Path) -> None:
        storage = Storage(db_env)
        await storage.initialize()
        await storage.close()
        result = await cli._run(2, fast=True)
        assert result.startswith("Showed 0 cluster(s)")

    def test_dispatch_unknown_command(self, db_env: Path) -> None:
        with pytest.raises(SystemExit) as excinfo:
            cli.dispatch(["rewind"])
        assert excinfo.value.code == 1

    def test_dispatch_empty_falls_through(self) -> None:
        assert cli.dispatch([]) is None
