"""Tests for the MCP bridge formatting and tool wrappers."""

import pytest

from refactor_mcp.mcp import _core, refactoring


class TestFormatResult:
    def test_transport_error(self):
        assert _core.format_result({"error": "Connection error"}) == "Error: Connection error"

    def test_error_envelope(self):
        envelope = {"status": "error", "message": "File not found: /x", "kind": "NotFound"}
        assert _core.format_result(envelope) == "Error: File not found: /x"

    def test_success_is_encoded(self):
        assert "success" in _core.format_result({"status": "success"})

    def test_drop_none(self):
        assert _core.drop_none(a=1, b=None, c="") == {"a": 1, "c": ""}


class TestToolWrappers:
    @pytest.mark.asyncio
    async def test_find_usages_posts_supplied_fields(self, monkeypatch):
        calls = []

        async def fake_call(name, arguments):
            calls.append((name, arguments))
            return {"usages": []}

        monkeypatch.setattr(refactoring, "call_tool", fake_call)
        await refactoring.find_usages("/tmp/a.txt", codeToSymbol="class ")
        assert calls == [("find_usages", {"filePath": "/tmp/a.txt", "codeToSymbol": "class "})]

    @pytest.mark.asyncio
    async def test_rename_error_is_reported(self, monkeypatch):
        async def fake_call(name, arguments):
            return {"status": "error", "message": "Invalid symbol name: '1x'", "kind": "BadRequest"}

        monkeypatch.setattr(refactoring, "call_tool", fake_call)
        out = await refactoring.rename_element("/tmp/a.txt", "1x", offset=6)
        assert out == "Error: Invalid symbol name: '1x'"


class TestDaemonCalls:
    @pytest.mark.asyncio
    async def test_unreachable_daemon_becomes_error(self, monkeypatch):
        monkeypatch.setattr(_core, "DAEMON_URL", "http://127.0.0.1:1")
        try:
            result = await _core.call_tool("find_usages", {"filePath": "/tmp/a.txt"})
        finally:
            await _core.cleanup()
        assert result["error"].startswith("Connection error")
        assert _core.format_result(result).startswith("Error: Connection error")

    def test_ensure_uses_manager_in_process(self, monkeypatch):
        seen = []

        class FakeManager:
            def __init__(self, port):
                seen.append(port)

            def ensure(self, workspace):
                seen.append(workspace)
                return True

        monkeypatch.setattr(_core, "DaemonManager", FakeManager)
        assert _core.ensure_daemon_running("/w") is True
        assert seen == [_core.DEFAULT_PORT, "/w"]
