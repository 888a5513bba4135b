#!/usr/bin/env python3
"""Refactoring tools: rename, move and delete elements and files, find usages."""

from ._core import mcp, call_tool, format_result, drop_none


@mcp.tool()
async def rename_element(
    filePath: str,
    newName: str,
    codeToSymbol: str | None = None,
    offset: int | None = None,
    symbolName: str | None = None,
    lineNumber: int | None = None,
) -> str:
    """
    Rename an element (variable, function, class, etc.) and update its references.

    Locate the element with one of codeToSymbol, offset or symbolName.

    Args:
        filePath: Absolute path to the file
        newName: The new name for the element
        codeToSymbol: Code from the start of the file up to (not including) the symbol
        offset: Character offset of the symbol
        symbolName: Name of the declared symbol
        lineNumber: Approximate line of the declaration, used with symbolName
    """
    result = await call_tool("rename_element", drop_none(
        filePath=filePath,
        newName=newName,
        codeToSymbol=codeToSymbol,
        offset=offset,
        symbolName=symbolName,
        lineNumber=lineNumber,
    ))
    return format_result(result)


@mcp.tool()
async def move_element(
    filePath: str,
    targetDirectoryPath: str,
    codeToSymbol: str | None = None,
    offset: int | None = None,
) -> str:
    """
    Move the file containing an element to a different directory.

    Args:
        filePath: Absolute path to the file containing the element
        targetDirectoryPath: Absolute path to the target directory
        codeToSymbol: Code from the start of the file up to the symbol
        offset: Character offset of the symbol
    """
    result = await call_tool("move_element", drop_none(
        filePath=filePath,
        targetDirectoryPath=targetDirectoryPath,
        codeToSymbol=codeToSymbol,
        offset=offset,
    ))
    return format_result(result)


@mcp.tool()
async def delete_element(filePath: str, codeToSymbol: str | None = None, offset: int | None = None) -> str:
    """
    Safely delete a declaration. Refused while usages remain.

    Args:
        filePath: Absolute path to the file containing the element
        codeToSymbol: Code from the start of the file up to the symbol
        offset: Character offset of the symbol
    """
    result = await call_tool("delete_element", drop_none(
        filePath=filePath,
        codeToSymbol=codeToSymbol,
        offset=offset,
    ))
    return format_result(result)


@mcp.tool()
async def find_usages(
    filePath: str,
    codeToSymbol: str | None = None,
    symbolName: str | None = None,
    lineNumber: int | None = None,
) -> str:
    """
    Find all usages of an element.

    Args:
        filePath: Absolute path to the file where the element is defined
        codeToSymbol: Code from the start of the file up to the symbol
        symbolName: Name of the declared symbol
        lineNumber: Approximate line of the declaration, used with symbolName
    """
    result = await call_tool("find_usages", drop_none(
        filePath=filePath,
        codeToSymbol=codeToSymbol,
        symbolName=symbolName,
        lineNumber=lineNumber,
    ))
    return format_result(result)


@mcp.tool()
async def move_file(targetFilePath: str, destDirectoryPath: str) -> str:
    """
    Move a file to a different directory.

    Args:
        targetFilePath: Absolute path to the file to move
        destDirectoryPath: Absolute path to the destination directory
    """
    result = await call_tool("move_file", {
        "targetFilePath": targetFilePath,
        "destDirectoryPath": destDirectoryPath,
    })
    return format_result(result)


@mcp.tool()
async def rename_file(targetFilePath: str, newName: str) -> str:
    """
    Rename a file.

    Args:
        targetFilePath: Absolute path to the file to rename
        newName: New file name, including extension
    """
    result = await call_tool("rename_file", {
        "targetFilePath": targetFilePath,
        "newName": newName,
    })
    return format_result(result)


@mcp.tool()
async def delete_file(targetFilePath: str) -> str:
    """Safely delete a file. Refused while other files reference it."""
    result = await call_tool("delete_file", {"targetFilePath": targetFilePath})
    return format_result(result)
