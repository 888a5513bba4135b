"""Tests for the tool registry: validation, dispatch and envelopes."""

import pytest

from refactor_mcp.executor import OperationResult
from refactor_mcp.tools import ToolRegistry, ToolSpec, build_registry


@pytest.fixture
def registry(executor):
    return build_registry(executor)


class TestCatalogue:
    def test_all_tools_registered(self, registry):
        assert registry.names() == [
            "rename_element",
            "move_element",
            "delete_element",
            "find_usages",
            "move_file",
            "rename_file",
            "delete_file",
        ]

    def test_input_schema(self, registry):
        schema = registry.get("rename_element").input_schema()
        assert schema["required"] == ["filePath", "newName"]
        assert {"required": ["symbolName"]} in schema["anyOf"]

    def test_duplicate_registration(self, registry):
        with pytest.raises(ValueError):
            registry.register(registry.get("find_usages"))


class TestValidation:
    @pytest.mark.asyncio
    async def test_missing_required_field(self, registry, write):
        path = write("a.txt", "class C {}")
        envelope = await registry.dispatch("rename_element", {"filePath": path, "codeToSymbol": "class "})
        assert envelope["status"] == "error"
        assert envelope["kind"] == "BadRequest"
        assert "newName (missing)" in envelope["message"]

    @pytest.mark.asyncio
    async def test_missing_locator(self, registry, write):
        path = write("a.txt", "class C {}")
        envelope = await registry.dispatch("delete_element", {"filePath": path})
        assert envelope["kind"] == "BadRequest"
        assert "codeToSymbol|offset" in envelope["message"]

    @pytest.mark.asyncio
    @pytest.mark.parametrize("offset, problem", [
        ("6", "expected integer"),
        (True, "expected integer"),
        (-1, "must be >= 0"),
    ])
    async def test_bad_offset(self, registry, write, offset, problem):
        path = write("a.txt", "class C {}")
        envelope = await registry.dispatch("delete_element", {"filePath": path, "offset": offset})
        assert envelope["kind"] == "BadRequest"
        assert problem in envelope["message"]

    @pytest.mark.asyncio
    async def test_unknown_tool(self, registry):
        envelope = await registry.dispatch("explode", {})
        assert envelope["status"] == "error"
        assert envelope["kind"] == "UnknownTool"

    @pytest.mark.asyncio
    async def test_non_object_arguments(self, registry):
        envelope = await registry.dispatch("find_usages", ["a"])
        assert envelope["kind"] == "BadRequest"


class TestDispatch:
    @pytest.mark.asyncio
    async def test_find_usages_envelope(self, registry, write):
        path = write("a.txt", "class C {}")
        envelope = await registry.dispatch("find_usages", {"filePath": path, "codeToSymbol": "class "})
        assert envelope == {"usages": []}

    @pytest.mark.asyncio
    async def test_rename_then_counts(self, registry, write):
        path = write("a.txt", "class C {}")
        envelope = await registry.dispatch("rename_element", {
            "filePath": path, "codeToSymbol": "class ", "newName": "D",
        })
        assert envelope == {"status": "success"}
        await registry.dispatch("explode", {})
        assert registry.outcomes == {"success": 1, "error": 1}

    @pytest.mark.asyncio
    async def test_unknown_fields_ignored(self, registry, write):
        path = write("a.txt", "class C {}")
        envelope = await registry.dispatch("find_usages", {
            "filePath": path, "symbolName": "C", "colour": "blue",
        })
        assert envelope == {"usages": []}

    @pytest.mark.asyncio
    async def test_notifier_failure_does_not_change_outcome(self, executor, write):
        def notifier(summary):
            raise RuntimeError("listener down")

        registry = build_registry(executor, notifier=notifier)
        path = write("a.txt", "class C {}")
        envelope = await registry.dispatch("find_usages", {"filePath": path, "codeToSymbol": "class "})
        assert envelope == {"usages": []}

    @pytest.mark.asyncio
    async def test_notifier_receives_summary(self, executor, write):
        seen = []
        registry = build_registry(executor, notifier=seen.append)
        path = write("a.txt", "class C {}")
        await registry.dispatch("rename_element", {"filePath": path, "offset": 6, "newName": "D"})
        assert seen == ["rename_element: succeeded"]

    @pytest.mark.asyncio
    async def test_crashing_handler_becomes_backend_failure(self):
        async def handler(args):
            raise RuntimeError("boom")

        registry = ToolRegistry()
        registry.register(ToolSpec(name="crash", description="", properties={}, handler=handler))
        envelope = await registry.dispatch("crash", {})
        assert envelope["kind"] == "BackendFailure"
        assert "boom" in envelope["message"]

    @pytest.mark.asyncio
    async def test_handler_result_passed_through(self):
        async def handler(args):
            return OperationResult.ok()

        registry = ToolRegistry()
        registry.register(ToolSpec(name="noop", description="", properties={}, handler=handler))
        assert await registry.dispatch("noop", None) == {"status": "success"}
