"""Entry point for ``python -m mourning``.

Dispatches to CLI commands (run, seed, submit, stats, health) or starts
the MCP server over stdio transport if no CLI command is given.
"""

from __future__ import annotations

import sys


def main() -> None:
    """Dispatch CLI commands or run the MCP server."""
    args = sys.argv[1:]

    if args:
        from mourning.cli import dispatch
        dispatch(args)
        return

    from mourning.cli import configure_logging
    from mourning.config import get_config
    from mourning.server import mcp

    configure_logging(get_config())
    mcp.run()


if __name__ == "__main__":
    main()
