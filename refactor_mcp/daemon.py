#!/usr/bin/env python3
"""
Refactor MCP Daemon

A shared HTTP server exposing refactoring tools (rename, move, delete,
find usages on symbols and files) so any agent can drive structural code
edits without an IDE.

Usage:
    python -m refactor_mcp.daemon [--port 7910] [--workspace /path/to/workspace]

Endpoints:
    GET  /                  - Tool catalogue with input schemas
    GET  /tools             - Same as above
    POST /tools/{name}      - Run a tool; JSON body holds its arguments
    GET  /health            - Health check
    GET  /stats             - Request and outcome counters

Example:
    curl -X POST http://localhost:7910/tools/find_usages \\
      -H "Content-Type: application/json" \\
      -d '{"filePath": "/path/to/file.py", "codeToSymbol": "class "}'
"""

import argparse
import asyncio
import collections
import logging
import os
import signal
import sys

from aiohttp import web

from .backends import default_backends
from .executor import DEFAULT_TIMEOUT, RefactoringExecutor
from .lifecycle import DEFAULT_GRACE_PERIOD, DEFAULT_HOST, ServerLifecycle
from .model import CodeModel
from .tools import build_registry

logger = logging.getLogger(__name__)

DEFAULT_PORT = int(os.environ.get("REFACTOR_MCP_PORT", "7910"))
RECENT_NOTIFICATIONS = 20


class RefactorDaemon:
    def __init__(self, workspace: str, timeout: float = DEFAULT_TIMEOUT, backends=None):
        self.workspace = os.path.realpath(workspace)
        self.model = CodeModel(self.workspace)
        self.executor = RefactoringExecutor(
            self.model,
            backends if backends is not None else default_backends(self.model),
            timeout=timeout,
        )
        self.notifications = collections.deque(maxlen=RECENT_NOTIFICATIONS)
        self.registry = build_registry(self.executor, notifier=self._notify)
        self._request_count = 0

    def make_app(self) -> web.Application:
        """A fresh application; aiohttp apps cannot be restarted once cleaned up."""
        app = web.Application()
        app.router.add_get("/", self.handle_tools_index)
        app.router.add_get("/tools", self.handle_tools_index)
        app.router.add_post("/tools/{name}", self.handle_tool)
        app.router.add_get("/health", self.handle_health)
        app.router.add_get("/stats", self.handle_stats)
        return app

    def close(self):
        self.executor.close()

    def _notify(self, summary: str):
        logger.info("%s", summary)
        self.notifications.append(summary)

    def _json_response(self, data: dict, status: int = 200) -> web.Response:
        return web.json_response(data, status=status)

    def _error_response(self, message: str, status: int = 400) -> web.Response:
        return self._json_response({"status": "error", "message": message, "kind": "BadRequest"}, status=status)

    # --- Endpoints ---

    async def handle_tools_index(self, request: web.Request) -> web.Response:
        """Return the tool catalogue for agent discovery."""
        return self._json_response({"tools": self.registry.catalogue()})

    async def handle_tool(self, request: web.Request) -> web.Response:
        """Dispatch a tool call; error envelopes are answered with 400."""
        self._request_count += 1
        name = request.match_info["name"]
        try:
            body = await request.json() if request.can_read_body else {}
        except ValueError as e:
            # JSONDecodeError and UnicodeDecodeError both land here
            return self._error_response(f"Request body is not valid UTF-8 JSON: {e}")
        if not isinstance(body, dict):
            return self._error_response("Request body must be a JSON object")

        envelope = await self.registry.dispatch(name, body)
        status = 400 if envelope.get("status") == "error" else 200
        return self._json_response(envelope, status=status)

    async def handle_health(self, request: web.Request) -> web.Response:
        """Health check endpoint."""
        return self._json_response({"status": "ok", "workspace": self.workspace})

    async def handle_stats(self, request: web.Request) -> web.Response:
        """Return daemon statistics."""
        return self._json_response({
            "request_count": self._request_count,
            "outcomes": dict(self.registry.outcomes),
            "tools": self.registry.names(),
            "recent": list(self.notifications),
            "locked_documents": self.executor.locks.busy(),
            "workspace": self.workspace,
        })


async def run(args: argparse.Namespace):
    """Serve until SIGINT/SIGTERM."""
    daemon = RefactorDaemon(workspace=args.workspace, timeout=args.timeout)
    lifecycle = ServerLifecycle(
        daemon.make_app,
        host=args.host,
        grace_period=args.grace,
        workspace=daemon.workspace,
        on_dispose=daemon.close,
    )

    stop_event = asyncio.Event()
    loop = asyncio.get_running_loop()
    for sig in (signal.SIGINT, signal.SIGTERM):
        try:
            loop.add_signal_handler(sig, stop_event.set)
        except NotImplementedError:
            pass

    try:
        if not await lifecycle.start(args.port):
            print(f"Failed to start: {lifecycle.last_error}", file=sys.stderr)
            return 1
        print(f"\nReady! Listening on http://{args.host}:{lifecycle.bound_port}", file=sys.stderr)
        print(f"  Workspace: {daemon.workspace}", file=sys.stderr)
        await stop_event.wait()
        print("\nShutting down...", file=sys.stderr)
        return 0
    finally:
        await lifecycle.dispose()


def parse_args(argv: list[str] | None = None) -> argparse.Namespace:
    parser = argparse.ArgumentParser(description="Refactor MCP Daemon - shared refactoring server for all agents")
    parser.add_argument("--port", type=int, default=DEFAULT_PORT, help=f"HTTP port (default: {DEFAULT_PORT})")
    parser.add_argument("--host", type=str, default=DEFAULT_HOST, help=f"Bind address (default: {DEFAULT_HOST})")
    parser.add_argument("--workspace", type=str, default=os.getcwd(), help="Workspace root (default: cwd)")
    parser.add_argument("--timeout", type=float, default=DEFAULT_TIMEOUT,
                        help=f"Per-operation timeout in seconds (default: {DEFAULT_TIMEOUT:g})")
    parser.add_argument("--grace", type=float, default=DEFAULT_GRACE_PERIOD,
                        help=f"Shutdown grace period in seconds (default: {DEFAULT_GRACE_PERIOD:g})")
    parser.add_argument("--log-level", type=str, default=os.environ.get("REFACTOR_MCP_LOG_LEVEL", "INFO"),
                        help="Logging level (default: INFO)")
    return parser.parse_args(argv)


def main(argv: list[str] | None = None):
    args = parse_args(argv)
    logging.basicConfig(
        level=args.log_level.upper(),
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
        stream=sys.stderr,
    )
    sys.exit(asyncio.run(run(args)))


if __name__ == "__main__":
    main()
