#!/usr/bin/env python3
"""
Refactor MCP - MCP bridge

Exposes the daemon's refactoring tools over MCP stdio. The daemon is
shared by every bridge on the same port, so the bridge only makes sure
one is answering and closes its own HTTP session on exit.
"""

import argparse
import asyncio
import logging
import os
import sys

from ._core import mcp, call_tool, format_result, ensure_daemon_running, cleanup, DAEMON_URL

# Registers the @mcp.tool() wrappers
from . import refactoring

__all__ = ["mcp", "call_tool", "format_result", "ensure_daemon_running", "main"]

logger = logging.getLogger(__name__)


def main(argv: list[str] | None = None):
    parser = argparse.ArgumentParser(description="Refactor MCP bridge (stdio)")
    parser.add_argument("--workspace", "-w", default=os.getcwd(),
                        help="Workspace for the daemon if one has to be started (default: cwd)")
    args = parser.parse_args(argv)

    # stdout is the MCP channel
    logging.basicConfig(level=logging.INFO, format="%(levelname)s %(name)s: %(message)s", stream=sys.stderr)
    logger.info("Refactor MCP bridge for %s", DAEMON_URL)
    if not ensure_daemon_running(args.workspace):
        logger.warning("Daemon is not answering; tool calls will report connection errors")

    try:
        mcp.run()
    finally:
        asyncio.run(cleanup())


if __name__ == "__main__":
    main()
