"""mourning -- traversal and clustering engine for a grief-message exhibition.

Quick start::

    from mourning import Engine

    async def main():
        engine = Engine()
        await engine.initialize()

        await engine.submit("Missing my father every day")
        cluster = await engine.current_cluster()

        await engine.shutdown()

For lower-level access, import from submodules::

    from mourning.coordinator import TraversalCoordinator, EngineState
    from mourning.pool import PoolManager
    from mourning.selector import ClusterSelector
    from mourning.gateway import StoreGateway, StoreUnavailable
"""

from __future__ import annotations

__version__ = "0.1.0"

# Public API exports
from mourning.config import ConfigError, EngineConfig, get_config
from mourning.coordinator import EngineState, TraversalCoordinator
from mourning.engine import Engine
from mourning.gateway import StoreGateway, StoreUnavailable
from mourning.messages import Message, MessageCluster, RelatedMessage, WorkingSetChange
from mourning.selector import ClusterSelector, InvariantViolation

__all__ = [
    "__version__",
    "ClusterSelector",
    "ConfigError",
    "Engine",
    "EngineConfig",
    "EngineState",
    "InvariantViolation",
    "Message",
    "MessageCluster",
    "RelatedMessage",
    "StoreGateway",
    "StoreUnavailable",
    "TraversalCoordinator",
    "WorkingSetChange",
    "get_config",
]
