"""Tests for starting and stopping the HTTP endpoint."""

import asyncio
import logging
import socket

import aiohttp
import pytest
from aiohttp import web

from refactor_mcp.errors import BindFailure
from refactor_mcp.lifecycle import LifecycleState, ServerLifecycle


async def _ping(request):
    return web.json_response({"status": "ok"})


def make_app():
    app = web.Application()
    app.router.add_get("/health", _ping)
    return app


@pytest.fixture
def lifecycle(tmp_path):
    return ServerLifecycle(make_app, workspace=str(tmp_path), grace_period=1)


class TestStartStop:
    @pytest.mark.asyncio
    async def test_start_serves_requests(self, lifecycle):
        assert await lifecycle.start(0)
        try:
            assert lifecycle.is_running()
            url = f"http://127.0.0.1:{lifecycle.bound_port}/health"
            async with aiohttp.ClientSession() as session:
                async with session.get(url) as resp:
                    assert resp.status == 200
                    assert await resp.json() == {"status": "ok"}
        finally:
            assert await lifecycle.stop()
        assert lifecycle.state == LifecycleState.STOPPED
        assert lifecycle.bound_port is None

    @pytest.mark.asyncio
    async def test_second_start_warns_and_keeps_endpoint(self, lifecycle, caplog):
        await lifecycle.start(0)
        port = lifecycle.bound_port
        try:
            with caplog.at_level(logging.WARNING):
                assert await lifecycle.start(0)
            assert "already running" in caplog.text
            assert lifecycle.bound_port == port
        finally:
            await lifecycle.stop()

    @pytest.mark.asyncio
    async def test_stop_when_not_running(self, lifecycle, caplog):
        with caplog.at_level(logging.WARNING):
            assert await lifecycle.stop() is False
        assert "not running" in caplog.text
        assert lifecycle.state == LifecycleState.STOPPED

    @pytest.mark.asyncio
    async def test_restart_after_stop(self, lifecycle):
        assert await lifecycle.start(0)
        await lifecycle.stop()
        assert await lifecycle.start(0)
        assert lifecycle.is_running()
        await lifecycle.stop()



class TestDrain:
    @staticmethod
    def slow_app(seconds, cancelled):
        async def slow(request):
            try:
                await asyncio.sleep(seconds)
            except asyncio.CancelledError:
                cancelled.append(request.path)
                raise
            return web.json_response({"slept": seconds})

        def make():
            app = make_app()
            app.router.add_get("/slow", slow)
            return app
        return make

    @pytest.mark.asyncio
    async def test_stop_waits_for_in_flight_request(self, tmp_path):
        cancelled = []
        lifecycle = ServerLifecycle(self.slow_app(0.3, cancelled), workspace=str(tmp_path), grace_period=2)
        await lifecycle.start(0)
        base = f"http://127.0.0.1:{lifecycle.bound_port}"
        async with aiohttp.ClientSession() as session:

            async def fetch(path):
                async with session.get(base + path) as resp:
                    return resp.status

            slow = asyncio.ensure_future(fetch("/slow"))
            await asyncio.sleep(0.1)
            stopping = asyncio.ensure_future(lifecycle.stop())
            await asyncio.sleep(0.05)
            # refused while the slow request drains
            late = await fetch("/health")
            assert await stopping
            assert await slow == 200
        assert late == 503
        assert cancelled == []
        assert lifecycle.state == LifecycleState.STOPPED

    @pytest.mark.asyncio
    async def test_request_past_grace_is_cancelled(self, tmp_path):
        cancelled = []
        lifecycle = ServerLifecycle(self.slow_app(30, cancelled), workspace=str(tmp_path), grace_period=0.2)
        await lifecycle.start(0)
        url = f"http://127.0.0.1:{lifecycle.bound_port}/slow"
        async with aiohttp.ClientSession() as session:
            slow = asyncio.ensure_future(session.get(url))
            await asyncio.sleep(0.1)
            loop = asyncio.get_running_loop()
            started = loop.time()
            assert await lifecycle.stop()
            elapsed = loop.time() - started
            await asyncio.gather(slow, return_exceptions=True)
        assert cancelled == ["/slow"]
        assert elapsed < 1.5
        assert lifecycle.state == LifecycleState.STOPPED

class TestBindFailure:
    @pytest.mark.asyncio
    async def test_occupied_port(self, lifecycle):
        with socket.socket(socket.AF_INET, socket.SOCK_STREAM) as sock:
            sock.bind(("127.0.0.1", 0))
            sock.listen(1)
            port = sock.getsockname()[1]

            assert await lifecycle.start(port) is False

        assert lifecycle.state == LifecycleState.STOPPED
        assert not lifecycle.is_running()
        assert isinstance(lifecycle.last_error, BindFailure)
        assert str(port) in lifecycle.last_error.message


class TestDispose:
    @pytest.mark.asyncio
    async def test_dispose_is_idempotent(self, tmp_path):
        calls = []
        lifecycle = ServerLifecycle(make_app, workspace=str(tmp_path), on_dispose=lambda: calls.append(1))
        await lifecycle.start(0)
        await lifecycle.dispose()
        await lifecycle.dispose()
        assert calls == [1]
        assert not lifecycle.is_running()

    @pytest.mark.asyncio
    async def test_start_after_dispose_refused(self, lifecycle):
        await lifecycle.dispose()
        assert await lifecycle.start(0) is False
