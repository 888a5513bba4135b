#!/usr/bin/env python3
"""
Refactor MCP - Lifecycle Manager

Starts and stops the HTTP endpoint for one workspace. Every transition is
serialized, start/stop are idempotent, and whatever goes wrong the state
always settles back on STOPPED rather than hanging in between.
"""

import asyncio
import enum
import logging
import os
from typing import Callable

from aiohttp import web

from .errors import BindFailure

logger = logging.getLogger(__name__)

DEFAULT_HOST = "127.0.0.1"
DEFAULT_GRACE_PERIOD = float(os.environ.get("REFACTOR_MCP_GRACE", "5"))
# Floor for steps that must still run once the grace period is spent
MIN_CLEANUP_TIME = 0.5


class LifecycleState(enum.Enum):
    STOPPED = "stopped"
    STARTING = "starting"
    RUNNING = "running"
    STOPPING = "stopping"


class ServerLifecycle:
    """Owns the aiohttp runner serving one app for one workspace.

    Args:
        app_factory: returns the web.Application to serve on each start.
        host: interface to bind.
        grace_period: seconds allowed for in-flight requests and cleanup on stop.
        workspace: label used in log messages.
        on_dispose: called once by dispose(), after the server is stopped.
    """

    def __init__(
        self,
        app_factory: Callable[[], web.Application],
        host: str = DEFAULT_HOST,
        grace_period: float = DEFAULT_GRACE_PERIOD,
        workspace: str | None = None,
        on_dispose: Callable[[], None] | None = None,
    ):
        self.app_factory = app_factory
        self.host = host
        self.grace_period = grace_period
        self.workspace = workspace or os.getcwd()
        self.on_dispose = on_dispose
        self.state = LifecycleState.STOPPED
        self.last_error: Exception | None = None
        self._runner: web.AppRunner | None = None
        self._transition_lock = asyncio.Lock()
        self._in_flight: set[asyncio.Task] = set()
        self._disposed = False

    def is_running(self) -> bool:
        return self.state == LifecycleState.RUNNING

    @property
    def bound_port(self) -> int | None:
        """Port actually bound (useful when started on port 0)."""
        if self._runner is None:
            return None
        for address in self._runner.addresses:
            if isinstance(address, tuple) and len(address) >= 2:
                return address[1]
        return None

    @web.middleware
    async def _track_requests(self, request: web.Request, handler):
        if self.state != LifecycleState.RUNNING:
            raise web.HTTPServiceUnavailable(text="Server is stopping")
        task = asyncio.current_task()
        self._in_flight.add(task)
        try:
            return await handler(request)
        finally:
            self._in_flight.discard(task)

    async def start(self, port: int) -> bool:
        """Bind the endpoint. Returns True when running afterwards."""
        async with self._transition_lock:
            if self._disposed:
                logger.warning("Start requested for disposed server of %s", self.workspace)
                return False
            if self.state == LifecycleState.RUNNING:
                logger.warning("Server start requested but already running for %s on port %s",
                               self.workspace, self.bound_port)
                return True

            self.state = LifecycleState.STARTING
            self.last_error = None
            logger.info("Starting server for %s on %s:%s", self.workspace, self.host, port)
            runner = None
            try:
                app = self.app_factory()
                app.middlewares.append(self._track_requests)
                runner = web.AppRunner(app, handle_signals=False)
                await runner.setup()
                site = web.TCPSite(runner, self.host, port)
                await site.start()
            except OSError as e:
                self.last_error = BindFailure(f"Could not bind {self.host}:{port}: {e}")
                logger.error("Failed to start server for %s: %s", self.workspace, self.last_error)
                await self._cleanup_runner(runner)
                self.state = LifecycleState.STOPPED
                return False
            except Exception as e:
                self.last_error = e
                logger.exception("Failed to start server for %s", self.workspace)
                await self._cleanup_runner(runner)
                self.state = LifecycleState.STOPPED
                return False

            self._runner = runner
            self.state = LifecycleState.RUNNING
            logger.info("Server running for %s on %s:%s", self.workspace, self.host, self.bound_port)
            return True

    async def stop(self) -> bool:
        """Stop the endpoint within the grace period. Returns True if it was running."""
        async with self._transition_lock:
            if self.state != LifecycleState.RUNNING:
                logger.warning("Server stop requested but not running for %s", self.workspace)
                return False

            # New requests are refused from here on
            self.state = LifecycleState.STOPPING
            logger.info("Stopping server for %s...", self.workspace)
            loop = asyncio.get_running_loop()
            deadline = loop.time() + self.grace_period
            try:
                await self._drain_requests(deadline)
                await asyncio.wait_for(self._runner.cleanup(),
                                       max(deadline - loop.time(), MIN_CLEANUP_TIME))
                logger.info("Server stopped for %s", self.workspace)
            except asyncio.TimeoutError:
                logger.error("Server cleanup for %s timed out after %.1fs", self.workspace, self.grace_period)
            except Exception:
                logger.exception("Error stopping server for %s", self.workspace)
            finally:
                self._runner = None
                self._in_flight.clear()
                self.state = LifecycleState.STOPPED
            return True

    async def dispose(self):
        """Stop and release everything. Safe to call more than once."""
        if self._disposed:
            return
        if self.is_running():
            await self.stop()
        self._disposed = True
        if self.on_dispose is not None:
            try:
                self.on_dispose()
            except Exception:
                logger.exception("Error disposing resources for %s", self.workspace)
        logger.info("Lifecycle disposed for %s", self.workspace)

    async def _drain_requests(self, deadline: float):
        pending = {t for t in self._in_flight if not t.done()}
        if not pending:
            return
        loop = asyncio.get_running_loop()
        _, still_running = await asyncio.wait(pending, timeout=max(deadline - loop.time(), 0))
        if still_running:
            logger.warning("Grace period expired with %d request(s) in flight for %s; cancelling",
                           len(still_running), self.workspace)
            for task in still_running:
                task.cancel()
            await asyncio.wait(still_running, timeout=MIN_CLEANUP_TIME)

    async def _cleanup_runner(self, runner: web.AppRunner | None):
        if runner is None:
            return
        try:
            await runner.cleanup()
        except Exception as e:
            logger.warning("Error cleaning up failed start: %s", e)
