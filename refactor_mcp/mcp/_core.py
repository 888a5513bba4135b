#!/usr/bin/env python3
"""
Refactor MCP - bridge core

One FastMCP instance, one aiohttp session to the daemon, and the TOON
rendering of tool envelopes. Tool modules register on ``mcp`` and go
through ``call_tool``.
"""

import asyncio
import logging
import os
from typing import Optional

import aiohttp
from mcp.server.fastmcp import FastMCP
from toon import encode as toon_encode

from ..manager import DEFAULT_PORT, DaemonManager

logger = logging.getLogger(__name__)

DAEMON_URL = os.environ.get("REFACTOR_MCP_URL", f"http://127.0.0.1:{DEFAULT_PORT}")
HTTP_TIMEOUT = aiohttp.ClientTimeout(total=float(os.environ.get("REFACTOR_MCP_HTTP_TIMEOUT", "60")))

mcp = FastMCP("refactor-mcp")

_http_session: Optional[aiohttp.ClientSession] = None


def ensure_daemon_running(workspace: str | None = None) -> bool:
    """Start the shared daemon unless one already answers.

    Runs in-process so stdout, which carries the MCP stdio stream, stays clean.
    """
    return DaemonManager(DEFAULT_PORT).ensure(workspace)


async def _session() -> aiohttp.ClientSession:
    global _http_session
    if _http_session is None or _http_session.closed:
        _http_session = aiohttp.ClientSession(timeout=HTTP_TIMEOUT)
    return _http_session


async def call_tool(name: str, arguments: dict) -> dict:
    """POST arguments to /tools/{name}; transport failures come back as {"error": ...}."""
    session = await _session()
    try:
        async with session.post(f"{DAEMON_URL}/tools/{name}", json=arguments) as resp:
            # Error envelopes arrive with status 400 and a JSON body
            if resp.content_type == "application/json":
                body = await resp.json()
                if isinstance(body, dict) and "status" in body:
                    return body
            return {"error": f"HTTP {resp.status}: {await resp.text()}"}
    except aiohttp.ClientError as e:
        logger.warning("Tool %s could not reach %s: %s", name, DAEMON_URL, e)
        return {"error": f"Connection error: {e}. Is the refactor daemon running on {DAEMON_URL}?"}
    except asyncio.TimeoutError:
        return {"error": f"No answer from {DAEMON_URL} within {HTTP_TIMEOUT.total:g}s"}


def format_result(result: dict) -> str:
    """Format an envelope as TOON for token efficiency."""
    if "error" in result:
        return f"Error: {result['error']}"
    if result.get("status") == "error":
        return f"Error: {result.get('message')}"
    return toon_encode(result)


def drop_none(**fields) -> dict:
    """Keep only the arguments the caller actually supplied."""
    return {key: value for key, value in fields.items() if value is not None}


async def cleanup():
    """Close the HTTP session; the daemon keeps running for other clients."""
    if _http_session is not None and not _http_session.closed:
        await _http_session.close()
