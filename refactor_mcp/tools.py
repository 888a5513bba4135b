#!/usr/bin/env python3
"""
Refactor MCP - Tool Registry & Dispatcher

Maps tool names to input schemas and handlers, validates raw wire
arguments and always answers with a protocol envelope:

    {"status": "success"}
    {"status": "error", "message": "...", "kind": "..."}
    {"usages": [{"filePath", "lineNumber", "columnNumber", "lineSnippet"}, ...]}
"""

import logging
from dataclasses import dataclass, field
from typing import Any, Awaitable, Callable

from .errors import BackendFailure, BadRequest, RefactorError, UnknownTool
from .executor import (
    Delete,
    DeleteFile,
    FindUsages,
    Move,
    MoveFile,
    OperationResult,
    RefactoringExecutor,
    Rename,
    RenameFile,
)
from .locator import locator_from_args

logger = logging.getLogger(__name__)

Handler = Callable[[dict], Awaitable[OperationResult]]

_JSON_TYPES = {
    "string": lambda v: isinstance(v, str),
    "integer": lambda v: isinstance(v, int) and not isinstance(v, bool),
    "boolean": lambda v: isinstance(v, bool),
}


@dataclass
class ToolSpec:
    """A named tool: its input fields and the handler that runs it.

    `properties` maps field name to {"type": ..., "description": ...}.
    Each group in `one_of` needs at least one of its fields present.
    """
    name: str
    description: str
    properties: dict[str, dict]
    handler: Handler
    required: list[str] = field(default_factory=list)
    one_of: list[list[str]] = field(default_factory=list)

    def input_schema(self) -> dict:
        schema = {
            "type": "object",
            "properties": self.properties,
            "required": list(self.required),
        }
        if self.one_of:
            schema["anyOf"] = [
                {"required": [name]} for group in self.one_of for name in group
            ]
        return schema

    def validate(self, args: Any) -> dict:
        """Check presence and types of fields; returns the known fields only.

        Raises:
            BadRequest: listing every missing or malformed field.
        """
        if not isinstance(args, dict):
            raise BadRequest(f"{self.name}: arguments must be an object", [])

        problems = []
        for name in self.required:
            if args.get(name) is None:
                problems.append(f"{name} (missing)")
        for group in self.one_of:
            if all(args.get(name) is None for name in group):
                problems.append(f"{'|'.join(group)} (missing)")
        for name, prop in self.properties.items():
            value = args.get(name)
            if value is None:
                continue
            check = _JSON_TYPES.get(prop.get("type"))
            if check is not None and not check(value):
                problems.append(f"{name} (expected {prop['type']})")
            elif prop.get("minimum") is not None and value < prop["minimum"]:
                problems.append(f"{name} (must be >= {prop['minimum']})")

        if problems:
            raise BadRequest(f"BadRequest: {self.name}: {', '.join(problems)}",
                             [p.split(" ")[0] for p in problems])
        return {name: args[name] for name in self.properties if args.get(name) is not None}


class ToolRegistry:
    """Named tools plus the dispatch entry point used by every transport."""

    def __init__(self, notifier: Callable[[str], None] | None = None):
        self._tools: dict[str, ToolSpec] = {}
        self.notifier = notifier
        self.outcomes = {"success": 0, "error": 0}

    def register(self, spec: ToolSpec):
        if spec.name in self._tools:
            raise ValueError(f"Tool already registered: {spec.name}")
        self._tools[spec.name] = spec

    def get(self, name: str) -> ToolSpec | None:
        return self._tools.get(name)

    def names(self) -> list[str]:
        return list(self._tools)

    def catalogue(self) -> list[dict]:
        return [
            {"name": spec.name, "description": spec.description, "inputSchema": spec.input_schema()}
            for spec in self._tools.values()
        ]

    async def dispatch(self, name: str, raw_args: Any) -> dict:
        """Validate, run and wrap. Never raises."""
        try:
            spec = self._tools.get(name)
            if spec is None:
                raise UnknownTool(f"UnknownTool: no tool named '{name}' "
                                  f"(available: {', '.join(self._tools)})")
            args = spec.validate(raw_args if raw_args is not None else {})
            logger.info("Dispatching %s %s", name, _summarize_args(args))
            result = await spec.handler(args)
        except RefactorError as e:
            result = OperationResult.err(e)
        except Exception as e:
            logger.exception("Tool %s raised", name)
            result = OperationResult.err(BackendFailure(f"{name} failed: {e}"))

        envelope = result.to_envelope()
        self.outcomes["success" if result.succeeded else "error"] += 1
        self._notify(name, envelope)
        return envelope

    def _notify(self, name: str, envelope: dict):
        if self.notifier is None:
            return
        if "usages" in envelope:
            summary = f"{name}: found {len(envelope['usages'])} usage(s)"
        elif envelope.get("status") == "success":
            summary = f"{name}: succeeded"
        else:
            summary = f"{name}: {envelope.get('message')}"
        try:
            self.notifier(summary)
        except Exception as e:
            logger.warning("Notifier failed for %s: %s", name, e)


def _summarize_args(args: dict) -> str:
    shown = {}
    for key, value in args.items():
        if key == "codeToSymbol":
            shown[key] = f"<{len(value)} chars>"
        else:
            shown[key] = value
    return str(shown)


# --- Tool definitions ---

def _string(description: str) -> dict:
    return {"type": "string", "description": description}


LOCATOR_FIELDS = {
    "codeToSymbol": _string("The code from the start of the file up to (not including) the symbol."),
    "offset": {"type": "integer", "minimum": 0, "description": "Character offset of the symbol in the file."},
    "symbolName": _string("Name of the declared symbol."),
    "lineNumber": {"type": "integer", "minimum": 1,
                   "description": "Approximate 1-based line of the declaration, used with symbolName."},
}


def _locator_fields(*names: str) -> dict:
    return {name: LOCATOR_FIELDS[name] for name in names}


def build_registry(executor: RefactoringExecutor, notifier: Callable[[str], None] | None = None) -> ToolRegistry:
    """Registry with the refactoring tools bound to executor."""
    registry = ToolRegistry(notifier=notifier)

    async def rename_element(args: dict) -> OperationResult:
        return await executor.execute(args["filePath"], locator_from_args(args), Rename(args["newName"]))

    async def move_element(args: dict) -> OperationResult:
        return await executor.execute(args["filePath"], locator_from_args(args), Move(args["targetDirectoryPath"]))

    async def delete_element(args: dict) -> OperationResult:
        return await executor.execute(args["filePath"], locator_from_args(args), Delete())

    async def find_usages(args: dict) -> OperationResult:
        return await executor.execute(args["filePath"], locator_from_args(args), FindUsages())

    async def move_file(args: dict) -> OperationResult:
        return await executor.execute_file(MoveFile(args["targetFilePath"], args["destDirectoryPath"]))

    async def rename_file(args: dict) -> OperationResult:
        return await executor.execute_file(RenameFile(args["targetFilePath"], args["newName"]))

    async def delete_file(args: dict) -> OperationResult:
        return await executor.execute_file(DeleteFile(args["targetFilePath"]))

    registry.register(ToolSpec(
        name="rename_element",
        description="Renames an element (variable, function, class, etc.) and updates its references.",
        properties={
            "filePath": _string("Absolute path to the file."),
            **_locator_fields("codeToSymbol", "offset", "symbolName", "lineNumber"),
            "newName": _string("The new name for the element."),
        },
        required=["filePath", "newName"],
        one_of=[["codeToSymbol", "offset", "symbolName"]],
        handler=rename_element,
    ))
    registry.register(ToolSpec(
        name="move_element",
        description="Moves the file containing an element to a different directory.",
        properties={
            "filePath": _string("Absolute path to the file containing the element to move."),
            **_locator_fields("codeToSymbol", "offset"),
            "targetDirectoryPath": _string("Absolute path to the target directory."),
        },
        required=["filePath", "targetDirectoryPath"],
        one_of=[["codeToSymbol", "offset"]],
        handler=move_element,
    ))
    registry.register(ToolSpec(
        name="delete_element",
        description="Safely deletes a declaration; refuses while usages remain.",
        properties={
            "filePath": _string("Absolute path to the file containing the element."),
            **_locator_fields("codeToSymbol", "offset"),
        },
        required=["filePath"],
        one_of=[["codeToSymbol", "offset"]],
        handler=delete_element,
    ))
    registry.register(ToolSpec(
        name="find_usages",
        description="Finds all usages of an element (symbol).",
        properties={
            "filePath": _string("Absolute path to the file where the element is defined."),
            **_locator_fields("codeToSymbol", "symbolName", "lineNumber"),
        },
        required=["filePath"],
        one_of=[["codeToSymbol", "symbolName"]],
        handler=find_usages,
    ))
    registry.register(ToolSpec(
        name="move_file",
        description="Moves a file to a different directory.",
        properties={
            "targetFilePath": _string("Absolute path to the file to move."),
            "destDirectoryPath": _string("Absolute path to the destination directory."),
        },
        required=["targetFilePath", "destDirectoryPath"],
        handler=move_file,
    ))
    registry.register(ToolSpec(
        name="rename_file",
        description="Renames a file.",
        properties={
            "targetFilePath": _string("Absolute path to the file to rename."),
            "newName": _string("The new name for the file (including extension)."),
        },
        required=["targetFilePath", "newName"],
        handler=rename_file,
    ))
    registry.register(ToolSpec(
        name="delete_file",
        description="Safely deletes a file; refuses while other files reference it.",
        properties={
            "targetFilePath": _string("Absolute path to the file to delete."),
        },
        required=["targetFilePath"],
        handler=delete_file,
    ))
    return registry
