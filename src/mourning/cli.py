"""CLI entry points for running, seeding and inspecting the engine.

Usage::

    python -m mourning run --cycles 50 --fast   # headless traversal
    python -m mourning seed --count 1000         # sample messages
    python -m mourning submit "Missing my father every day"
    python -m mourning stats
    python -m mourning health

With no command, ``python -m mourning`` starts the MCP server instead.
"""

from __future__ import annotations

import asyncio
import logging
import random
import sys
from dataclasses import replace
from datetime import timedelta

from mourning.config import ConfigError, EngineConfig, get_config
from mourning.engine import Engine
from mourning.gateway import StoreGateway
from mourning.messages import MessageCluster, utc_now
from mourning.storage import Storage

log = logging.getLogger(__name__)

COMMANDS = ("run", "seed", "submit", "stats", "health")

_FAST_CLUSTER_MS = 250
_FAST_POLL_MS = 100

_SEED_TEMPLATES: tuple[str, ...] = (
    "Missing {subject} every day",
    "Still can't believe {subject} is gone",
    "The silence where {subject} used to be",
    "Grieving the loss of {subject}",
    "Some days the absence of {subject} is overwhelming",
    "Learning to live without {subject}",
    "The world feels emptier without {subject}",
    "Carrying the memory of {subject}",
)

_SEED_SUBJECTS: tuple[str, ...] = (
    "my dog", "my cat", "my father", "my mother", "my friend",
    "my grandmother", "my career", "my home", "my marriage",
    "the person I used to be", "my health", "my dreams",
)


def configure_logging(config: EngineConfig) -> None:
    """Send log records to stderr at the configured level."""
    logging.basicConfig(
        level=getattr(logging, config.log_level.upper(), logging.INFO),
        format="%(asctime)s %(levelname)-7s %(name)s: %(message)s",
        stream=sys.stderr,
    )


def _flag_value(args: list[str], *flags: str) -> str | None:
    """Return the value following the first of *flags* present in *args*."""
    for flag in flags:
        if flag in args:
            idx = args.index(flag)
            if idx + 1 < len(args):
                return args[idx + 1]
            return None
    return None


def _int_flag(args: list[str], *flags: str) -> int | None:
    raw = _flag_value(args, *flags)
    if raw is None:
        return None
    try:
        value = int(raw)
    except ValueError:
        print(f"Error: {flags[0]} must be an integer, got {raw!r}", file=sys.stderr)
        sys.exit(1)
    if value < 0:
        print(f"Error: {flags[0]} must not be negative", file=sys.stderr)
        sys.exit(1)
    return value


async def _open_gateway(config: EngineConfig) -> StoreGateway:
    storage = Storage(config.db_path)
    await storage.initialize()
    return StoreGateway(storage, config.retry)


def format_cluster(cluster: MessageCluster) -> str:
    """One-line summary of a cluster for headless runs."""
    if cluster.is_placeholder:
        return "(no messages yet)"
    assert cluster.focus is not None
    preview = cluster.focus.content
    if len(preview) > 60:
        preview = preview[:57] + "..."
    return (
        f"#{cluster.total_shown} focus={cluster.focus.id} {preview!r} "
        f"related={len(cluster.related)} next={cluster.next_id}"
    )


# ------------------------------------------------------------------
# Seed command
# ------------------------------------------------------------------


def generate_messages(
    count: int,
    rng: random.Random | None = None,
    spread_days: int = 30,
) -> list[tuple[str, str]]:
    """Build ``(content, created_at)`` pairs for sample submissions.

    Timestamps are spread over the last *spread_days* days and returned in
    chronological order, so ascending ids follow creation time as they do
    for real submissions.
    """
    rng = rng or random.Random()
    now = utc_now()
    stamps = sorted(
        now - timedelta(days=rng.randrange(spread_days), hours=rng.randrange(24),
                        minutes=rng.randrange(60))
        for _ in range(count)
    )
    return [
        (
            _SEED_TEMPLATES[i % len(_SEED_TEMPLATES)].format(
                subject=_SEED_SUBJECTS[i % len(_SEED_SUBJECTS)]
            ),
            stamp.isoformat(),
        )
        for i, stamp in enumerate(stamps)
    ]


async def _seed(count: int, seed: int | None = None) -> str:
    config = get_config()
    gateway = await _open_gateway(config)
    try:
        rows = generate_messages(count, random.Random(seed))
        await gateway.storage.execute_many(
            "INSERT INTO messages (content, created_at, approved) VALUES (?, ?, 1)",
            rows,
        )
        total = await gateway.count()
        return f"Seeded {count} message(s); {total} visible in {config.db_path}"
    finally:
        await gateway.storage.close()


def run_seed(args: list[str]) -> None:
    """Insert sample messages with spread timestamps."""
    count = _int_flag(args, "--count", "-n")
    seed = _int_flag(args, "--seed")
    result = asyncio.run(_seed(1000 if count is None else count, seed))
    print(result)


# ------------------------------------------------------------------
# Submit command
# ------------------------------------------------------------------


async def _submit(content: str) -> str:
    config = get_config()
    gateway = await _open_gateway(config)
    try:
        message = await gateway.insert(content, approved=config.auto_approve)
        return f"Stored message #{message.id} (approved={message.approved})"
    finally:
        await gateway.storage.close()


def run_submit(args: list[str]) -> None:
    """Store one message."""
    if not args:
        print('Usage: mourning submit "<content>"', file=sys.stderr)
        sys.exit(1)
    try:
        result = asyncio.run(_submit(" ".join(args)))
    except ValueError as exc:
        print(f"Error: {exc}", file=sys.stderr)
        sys.exit(1)
    print(result)


# ------------------------------------------------------------------
# Run command
# ------------------------------------------------------------------


async def _run(cycles: int | None, fast: bool = False) -> str:
    """Drive the traversal headlessly, logging each cluster.

    With *cycles* the timers stay off and exactly that many poll+cycle
    steps run, one cluster duration apart; without it the engine runs on
    its own timers until interrupted.
    """
    config = get_config()
    if fast:
        config = replace(
            config,
            cluster_duration_ms=_FAST_CLUSTER_MS,
            polling_interval_ms=_FAST_POLL_MS,
        )

    engine = Engine(config=config)
    await engine.initialize(schedule=cycles is None)
    coordinator = engine.coordinator
    log.info("Cluster: %s", format_cluster(coordinator.get_current_cluster()))
    coordinator.on_cluster_changed(lambda c: log.info("Cluster: %s", format_cluster(c)))

    try:
        if cycles is None:
            await asyncio.Event().wait()
        else:
            for _ in range(cycles):
                await asyncio.sleep(config.cluster_duration_ms / 1000.0)
                await coordinator.poll()
                await coordinator.cycle()
    finally:
        stats = coordinator.get_stats()
        await engine.shutdown()

    return (
        f"Showed {stats['total_clusters_shown']} cluster(s); "
        f"working set {stats['working_set_size']}/{stats['working_set_target']}, "
        f"skipped ticks {stats['skipped_ticks']}, "
        f"store failures {stats['store_failures']}"
    )


def run_run(args: list[str]) -> None:
    """Run the traversal headlessly."""
    cycles = _int_flag(args, "--cycles", "-c")
    fast = "--fast" in args
    try:
        result = asyncio.run(_run(cycles, fast=fast))
    except KeyboardInterrupt:
        print("Interrupted", file=sys.stderr)
        return
    print(result)


# ------------------------------------------------------------------
# Stats & health commands
# ------------------------------------------------------------------


async def _stats() -> str:
    config = get_config()
    gateway = await _open_gateway(config)
    try:
        total = await gateway.count()
        newest = await gateway.max_id()
    finally:
        await gateway.storage.close()

    lines = [
        "mourning stats:",
        f"  db: {config.db_path}",
        f"  visible messages: {total}",
        f"  newest id: {newest}",
        f"  working set: {config.working_set_size}",
        f"  cluster size: {config.cluster_size}",
        f"  cluster duration: {config.cluster_duration_ms}ms",
        f"  polling interval: {config.polling_interval_ms}ms",
        f"  priority queue max: {config.priority_queue_max_size}",
    ]
    if 0 < total < config.working_set_size:
        lines.append(
            f"  note: store holds fewer messages than the working set "
            f"({total} < {config.working_set_size})"
        )
    return "\n".join(lines)


def run_stats() -> None:
    """Print store and configuration summary."""
    result = asyncio.run(_stats())
    print(result)


async def _health() -> str:
    """Run health check and return formatted status."""
    try:
        config = get_config()
        gateway = await _open_gateway(config)
        try:
            reachable = await gateway.ping()
            total = await gateway.count() if reachable else 0
        finally:
            await gateway.storage.close()

        return "\n".join([
            "mourning health check:",
            f"  store: {'reachable' if reachable else 'unreachable'}",
            f"  messages: {total}",
            f"  db: {config.db_path}",
        ])
    except Exception as exc:
        return f"Health check failed: {exc}"


def run_health() -> None:
    """Run health check command."""
    result = asyncio.run(_health())
    print(result)


def dispatch(args: list[str]) -> None:
    """Main CLI dispatcher.

    Parameters
    ----------
    args:
        Command-line arguments after ``python -m mourning``,
        e.g. ``["run", "--cycles", "10"]``.
    """
    if not args:
        return  # Fall through to MCP server.

    try:
        configure_logging(get_config())
    except ConfigError as exc:
        print(f"Invalid configuration: {exc}", file=sys.stderr)
        sys.exit(2)

    command = args[0]

    if command == "run":
        run_run(args[1:])
        sys.exit(0)

    elif command == "seed":
        run_seed(args[1:])
        sys.exit(0)

    elif command == "submit":
        run_submit(args[1:])
        sys.exit(0)

    elif command == "stats":
        run_stats()
        sys.exit(0)

    elif command == "health":
        run_health()
        sys.exit(0)

    else:
        print(f"Unknown command: {command}", file=sys.stderr)
        sys.exit(1)
