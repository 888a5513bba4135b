#!/usr/bin/env python3
"""
Refactor MCP - Code Model Adapter

Turns absolute file paths into loaded Documents and owns the per-document
reader/writer locks that keep reads from observing a half-applied mutation.
"""

import asyncio
import logging
import os

from .document import Document
from .errors import NotFound

logger = logging.getLogger(__name__)

# Files larger than this are never scanned or loaded
MAX_FILE_SIZE = 2 * 1024 * 1024

SKIP_DIRS = {'__pycache__', '.git', '.hg', '.svn', '.tox', '.mypy_cache', '.pytest_cache',
             '.ropeproject', 'node_modules', '.venv', 'venv', '.eggs', 'dist', 'build'}


def skip_dir(name: str) -> bool:
    return name.startswith('.') or name in SKIP_DIRS or name.endswith('.egg-info')


def read_source(file_path: str) -> str:
    """File text with line endings exactly as on disk, so offsets match the file."""
    with open(file_path, encoding="utf-8", newline="") as f:
        return f.read()


class CodeModel:
    """Loads documents relative to a workspace root."""

    def __init__(self, workspace: str):
        self.workspace = os.path.realpath(workspace)
        self._listeners = []

    def add_load_listener(self, listener):
        """Called with the path every time a document is (re)loaded."""
        self._listeners.append(listener)

    def load(self, file_path: str) -> Document:
        """Load a document from disk.

        Raises:
            NotFound: the path is relative, missing, not a file or unreadable.
        """
        if not file_path or not os.path.isabs(file_path):
            raise NotFound(f"File path must be absolute: {file_path!r}")
        if not os.path.isfile(file_path):
            raise NotFound(f"File not found: {file_path}")
        if os.path.getsize(file_path) > MAX_FILE_SIZE:
            raise NotFound(f"File too large to load: {file_path}")
        try:
            text = read_source(file_path)
        except (OSError, UnicodeDecodeError) as e:
            raise NotFound(f"Could not read {file_path}: {e}") from e

        for listener in self._listeners:
            listener(file_path)
        logger.debug("Loaded %s (%d chars)", file_path, len(text))
        return Document(file_path, text)

    def scope_root(self, file_path: str) -> str:
        """Root directory searched for references to symbols in file_path."""
        real = os.path.realpath(file_path)
        if real == self.workspace or real.startswith(self.workspace + os.sep):
            return self.workspace
        return os.path.dirname(real)

    def iter_scope_files(self, file_path: str, suffix: str | None = None):
        """Yield files under the scope root of file_path, optionally filtered by suffix."""
        root = self.scope_root(file_path)
        for dirpath, dirnames, filenames in os.walk(root):
            dirnames[:] = sorted(d for d in dirnames if not skip_dir(d))
            for name in sorted(filenames):
                if suffix is not None and not name.endswith(suffix):
                    continue
                path = os.path.join(dirpath, name)
                try:
                    if os.path.getsize(path) > MAX_FILE_SIZE:
                        continue
                except OSError:
                    continue
                yield path


class DocumentLocks:
    """Reader/writer locks keyed by document realpath.

    A holder takes a whole set of documents in one step, so two operations
    with overlapping change sets can never deadlock on each other. Readers
    share a document, a writer excludes everyone, and a waiting writer
    blocks new readers of the documents it wants. Entries disappear as
    soon as nobody holds or waits for them.
    """

    def __init__(self):
        self._cond = asyncio.Condition()
        self._readers: dict[str, int] = {}
        self._writers: set[str] = set()
        self._waiting: dict[str, int] = {}

    @staticmethod
    def keys(paths) -> frozenset[str]:
        return frozenset(os.path.realpath(p) for p in paths if p)

    def busy(self) -> list[str]:
        """Documents currently held or waited for."""
        return sorted(set(self._readers) | self._writers | set(self._waiting))

    async def acquire_read(self, keys: frozenset[str]):
        async with self._cond:
            await self._cond.wait_for(
                lambda: keys.isdisjoint(self._writers) and keys.isdisjoint(self._waiting))
            for key in keys:
                self._readers[key] = self._readers.get(key, 0) + 1

    async def release_read(self, keys: frozenset[str]):
        async with self._cond:
            for key in keys:
                _decrement(self._readers, key)
            self._cond.notify_all()

    async def acquire_write(self, keys: frozenset[str]):
        async with self._cond:
            for key in keys:
                self._waiting[key] = self._waiting.get(key, 0) + 1
            try:
                await self._cond.wait_for(
                    lambda: keys.isdisjoint(self._writers) and keys.isdisjoint(self._readers))
            finally:
                for key in keys:
                    _decrement(self._waiting, key)
                # readers held back by this writer may go ahead if it gave up
                self._cond.notify_all()
            self._writers.update(keys)

    async def release_write(self, keys: frozenset[str]):
        async with self._cond:
            self._writers.difference_update(keys)
            self._cond.notify_all()


def _decrement(counts: dict[str, int], key: str):
    counts[key] -= 1
    if counts[key] <= 0:
        del counts[key]
