"""Central configuration for the traversal engine.

All tunables live here with sensible defaults.  Values can be overridden
through environment variables prefixed with ``MOURNING_`` (nested keys use
double underscores, e.g. ``MOURNING_SIMILARITY__TEMPORAL_WEIGHT=0.5``).

Every section validates itself on construction and raises
:class:`ConfigError` for out-of-range values, so a bad environment fails at
startup rather than hours into an unattended run.

Usage::

    from mourning.config import get_config

    cfg = get_config()
    print(cfg.working_set_size)
    print(cfg.similarity.temporal_weight)
"""

from __future__ import annotations

import math
import os
import sys
from dataclasses import dataclass, field, fields
from pathlib import Path
from typing import TypeVar, get_type_hints

T = TypeVar("T")


class ConfigError(ValueError):
    """Raised when a configuration value is outside its accepted range."""


def _check_range(name: str, value: float, low: float, high: float) -> None:
    if not low <= value <= high:
        raise ConfigError(f"{name}={value!r} must be within [{low}, {high}]")


# ---------------------------------------------------------------------------
# Nested configuration sections
# ---------------------------------------------------------------------------


@dataclass(frozen=True, slots=True)
class SimilarityWeights:
    """Relative weights for the cluster similarity function.

    The three weights must sum to 1.0.  ``semantic_weight`` is reserved for
    a future embedding-based term; the term currently scores 0.0, so its
    share of the total is deliberately left unused rather than folded into
    the other two.
    """

    temporal_weight: float = 0.6
    length_weight: float = 0.2
    semantic_weight: float = 0.2
    temporal_window_days: float = 30.0
    """Creation-time distance at which temporal proximity reaches zero."""
    max_length: int = 280
    """Content length that normalises the length-similarity term."""

    def __post_init__(self) -> None:
        for name in ("temporal_weight", "length_weight", "semantic_weight"):
            _check_range(name, getattr(self, name), 0.0, 1.0)
        total = self.temporal_weight + self.length_weight + self.semantic_weight
        if not math.isclose(total, 1.0, abs_tol=1e-6):
            raise ConfigError(f"similarity weights must sum to 1.0, got {total:.6f}")
        if self.temporal_window_days <= 0:
            raise ConfigError("temporal_window_days must be positive")
        if self.max_length <= 0:
            raise ConfigError("max_length must be positive")


@dataclass(frozen=True, slots=True)
class RetryConfig:
    """Capped exponential backoff for store operations."""

    max_attempts: int = 5
    base_delay_ms: int = 200
    max_delay_ms: int = 5000
    jitter: float = 0.1
    """Extra random delay as a fraction of the computed backoff."""

    def __post_init__(self) -> None:
        _check_range("max_attempts", self.max_attempts, 1, 20)
        _check_range("base_delay_ms", self.base_delay_ms, 0, 60_000)
        _check_range("max_delay_ms", self.max_delay_ms, self.base_delay_ms, 300_000)
        _check_range("jitter", self.jitter, 0.0, 1.0)


# ---------------------------------------------------------------------------
# Top-level configuration
# ---------------------------------------------------------------------------


@dataclass(frozen=True, slots=True)
class EngineConfig:
    """Root configuration object for the traversal engine.

    ``db_path`` is stored as a resolved :class:`~pathlib.Path` with ``~``
    expanded.
    """

    db_path: Path = field(default_factory=lambda: Path("~/.mourning/messages.db"))

    working_set_size: int = 400
    cluster_size: int = 20
    cluster_duration_ms: int = 8000
    polling_interval_ms: int = 5000
    priority_queue_max_size: int = 200

    priority_related_slots: int = 1
    """Priority members guaranteed a place among a cluster's related messages.

    Zero ranks related messages purely by similarity."""

    max_replenish_rounds: int = 64
    """Upper bound on ``next_batch`` calls per replenishment while deduping."""

    auto_approve: bool = True  # submissions are visible immediately
    log_level: str = "INFO"

    similarity: SimilarityWeights = field(default_factory=SimilarityWeights)
    retry: RetryConfig = field(default_factory=RetryConfig)

    def __post_init__(self) -> None:
        # Expand ~ in the path field.  We use object.__setattr__ because the
        # dataclass is frozen.
        object.__setattr__(self, "db_path", Path(self.db_path).expanduser())

        _check_range("working_set_size", self.working_set_size, 1, 10_000)
        _check_range("cluster_size", self.cluster_size, 2, 500)
        if self.cluster_size > self.working_set_size:
            raise ConfigError(
                f"cluster_size={self.cluster_size} exceeds "
                f"working_set_size={self.working_set_size}"
            )
        _check_range("cluster_duration_ms", self.cluster_duration_ms, 10, 3_600_000)
        _check_range("polling_interval_ms", self.polling_interval_ms, 10, 3_600_000)
        _check_range("priority_queue_max_size", self.priority_queue_max_size, 1, 100_000)
        _check_range(
            "priority_related_slots", self.priority_related_slots, 0, self.cluster_size - 1
        )
        _check_range("max_replenish_rounds", self.max_replenish_rounds, 1, 1000)

    @property
    def related_limit(self) -> int:
        """Maximum number of related messages in a cluster."""
        return self.cluster_size - 1


# ---------------------------------------------------------------------------
# Environment-variable loader
# ---------------------------------------------------------------------------

_ENV_PREFIX = "MOURNING_"
_NESTED_SEP = "__"


def _resolve_type_hints(dc_type: type) -> dict[str, type]:
    """Resolve stringified annotations back to real types.

    ``from __future__ import annotations`` turns all annotations into
    strings.  :func:`typing.get_type_hints` evaluates them in the correct
    module namespace so we get the actual :class:`type` objects.
    """
    module = sys.modules.get(dc_type.__module__, None)
    globalns = getattr(module, "__dict__", {}) if module else {}
    return get_type_hints(dc_type, globalns=globalns)


def _coerce(value: str, target_type: type[T]) -> T:
    """Cast an env-var string to the target field type."""
    if target_type is bool:
        return target_type(value.lower() in ("1", "true", "yes"))  # type: ignore[return-value]
    if target_type is int:
        return target_type(float(value))  # type: ignore[return-value]
    return target_type(value)  # type: ignore[return-value]


def _load_dataclass(dc_type: type[T], prefix: str) -> T:
    """Recursively build a dataclass from env-var overrides + defaults."""
    hints = _resolve_type_hints(dc_type)
    kwargs: dict[str, object] = {}

    for f in fields(dc_type):  # type: ignore[arg-type]
        field_type = hints[f.name]
        nested_prefix = f"{prefix}{f.name}{_NESTED_SEP}".upper()

        if hasattr(field_type, "__dataclass_fields__"):
            kwargs[f.name] = _load_dataclass(field_type, nested_prefix)
        else:
            env_key = f"{prefix}{f.name}".upper()
            raw = os.environ.get(env_key)
            if raw is not None:
                try:
                    kwargs[f.name] = _coerce(raw, field_type)
                except ValueError as exc:
                    raise ConfigError(f"{env_key}={raw!r}: {exc}") from exc

    return dc_type(**kwargs)  # type: ignore[return-value]


# ---------------------------------------------------------------------------
# Public API
# ---------------------------------------------------------------------------

_cached_config: EngineConfig | None = None


def get_config(*, reload: bool = False) -> EngineConfig:
    """Return the current :class:`EngineConfig`.

    On the first call the config is built by merging defaults with any
    ``MOURNING_*`` environment variables.  The result is cached for the
    lifetime of the process unless *reload* is ``True``.

    Raises
    ------
    ConfigError
        If any value (default or override) is out of range.
    """
    global _cached_config  # noqa: PLW0603
    if _cached_config is None or reload:
        _cached_config = _load_dataclass(EngineConfig, _ENV_PREFIX)
    return _cached_config
