#!/usr/bin/env python3
"""
Refactor MCP - Refactoring Executor

Applies an operation to a located element (or to a whole file) against
the backends, under the document locks:

    Idle -> Resolving -> Mutating -> Committed, or Failed from any stage

Mutations hold write locks on every document they touch, from resolution
to commit, so a concurrent read never sees a torn file. Usage searches
hold read locks on the documents they report from. Waiting for locks and
the backend call itself share one deadline per operation.
"""

import asyncio
import logging
import os
from concurrent.futures import ThreadPoolExecutor
from dataclasses import dataclass, field

from .backends import IDENTIFIER_RE, Backend, Reference, backend_for, default_backends
from .document import Document
from .errors import (
    BackendFailure,
    BadRequest,
    NotFound,
    NotWritable,
    OperationTimeout,
    RefactorError,
    UnsafeDelete,
)
from .locator import Locator, ResolvedElement, resolve
from .model import CodeModel, DocumentLocks

logger = logging.getLogger(__name__)

DEFAULT_TIMEOUT = float(os.environ.get("REFACTOR_MCP_TIMEOUT", "30"))
MAX_LISTED_REFERENCES = 10
MAX_LOCK_ROUNDS = 3


# --- Operations ---

@dataclass(frozen=True)
class Rename:
    new_name: str


@dataclass(frozen=True)
class Move:
    target_directory: str


@dataclass(frozen=True)
class Delete:
    pass


@dataclass(frozen=True)
class FindUsages:
    pass


@dataclass(frozen=True)
class MoveFile:
    path: str
    dest_directory: str


@dataclass(frozen=True)
class RenameFile:
    path: str
    new_name: str


@dataclass(frozen=True)
class DeleteFile:
    path: str


ElementOperation = Rename | Move | Delete | FindUsages
FileOperation = MoveFile | RenameFile | DeleteFile


# --- Results ---

@dataclass(frozen=True)
class UsageRecord:
    file_path: str
    line_number: int
    column_number: int
    line_snippet: str

    def to_dict(self) -> dict:
        return {
            "filePath": self.file_path,
            "lineNumber": self.line_number,
            "columnNumber": self.column_number,
            "lineSnippet": self.line_snippet,
        }


@dataclass(frozen=True)
class OperationResult:
    """Exactly one of: plain success, a usage list, or an error."""
    usages: list[UsageRecord] | None = None
    error: RefactorError | None = None

    @classmethod
    def ok(cls) -> "OperationResult":
        return cls()

    @classmethod
    def ok_usages(cls, usages: list[UsageRecord]) -> "OperationResult":
        return cls(usages=list(usages))

    @classmethod
    def err(cls, error: RefactorError) -> "OperationResult":
        return cls(error=error)

    @property
    def succeeded(self) -> bool:
        return self.error is None

    def to_envelope(self) -> dict:
        if self.error is not None:
            return {"status": "error", "message": self.error.message, "kind": self.error.kind}
        if self.usages is not None:
            return {"usages": [u.to_dict() for u in self.usages]}
        return {"status": "success"}


def _check_name(new_name: str, what: str):
    if not isinstance(new_name, str) or not IDENTIFIER_RE.match(new_name):
        raise BadRequest(f"Invalid {what} name: {new_name!r}", ["newName"])


def _check_writable(path: str, what: str):
    if not os.access(path, os.W_OK):
        raise NotWritable(f"{what} is not writable: {path}")


def _check_directory(path: str, what: str = "Directory"):
    if not path or not os.path.isabs(path):
        raise NotFound(f"{what} path must be absolute: {path!r}")
    if not os.path.isdir(path):
        raise NotFound(f"DirectoryNotFound: {what} not found or not a directory: {path}")


@dataclass
class _Plan:
    """What an operation will touch, worked out under the locks it runs with."""
    subject: ResolvedElement | MoveFile | RenameFile | DeleteFile
    paths: set[str]
    refs: list[Reference] = field(default_factory=list)


class _Replan(Exception):
    """The change set reaches documents that were not locked for it."""

    def __init__(self, paths: set[str]):
        super().__init__(f"{len(paths)} document(s)")
        self.paths = paths


class RefactoringExecutor:
    """Runs operations against the code model with locking and timeouts.

    Each operation locks every document in its change set: the located
    document plus every file the backend will read results from or
    write. The set is only known after resolving, so an operation that
    finds it reaches beyond what it holds releases, widens and retries.
    """

    def __init__(
        self,
        model: CodeModel,
        backends: list[Backend] | None = None,
        timeout: float = DEFAULT_TIMEOUT,
        max_workers: int = 4,
    ):
        self.model = model
        self.backends = backends if backends is not None else default_backends(model)
        self.timeout = timeout
        self.locks = DocumentLocks()
        self._pool = ThreadPoolExecutor(max_workers=max_workers, thread_name_prefix="refactor")
        self._closed = False
        self._releases: set[asyncio.Task] = set()

    # --- Public API ---

    async def execute(self, path: str, locator: Locator, op: ElementOperation) -> OperationResult:
        """Load, resolve and apply inside one lock scope."""

        def plan() -> _Plan:
            self._transition(path, op, "Resolving")
            element = resolve(self.model.load(path), locator)
            logger.info("Resolved %s for %s", element.describe(), type(op).__name__)
            return self._plan_element(element, op)

        return await self._guarded(path, op, plan, lambda p: self._apply(p, op))

    async def apply(self, element: ResolvedElement, op: ElementOperation) -> OperationResult:
        """Apply to an element resolved earlier; fails if its file changed since."""

        def plan() -> _Plan:
            if element.is_stale():
                raise BackendFailure(f"{element.path} changed since {element.describe()} was resolved")
            return self._plan_element(element, op)

        return await self._guarded(element.path, op, plan, lambda p: self._apply(p, op))

    async def execute_file(self, op: FileOperation) -> OperationResult:
        return await self._guarded(op.path, op, lambda: self._plan_file(op), self._apply_file)

    def close(self):
        """Release the worker pool and backend projects. Safe to call twice."""
        if self._closed:
            return
        self._closed = True
        self._pool.shutdown(wait=False, cancel_futures=True)
        for backend in self.backends:
            try:
                backend.close()
            except Exception as e:
                logger.warning("Error closing %s backend: %s", backend.name, e)

    # --- Locking, timeouts, error conversion ---

    def _transition(self, path: str, op, state: str):
        logger.debug("%s %s: %s", type(op).__name__, path, state)

    async def _guarded(self, path: str, op, plan, run) -> OperationResult:
        loop = asyncio.get_running_loop()
        deadline = loop.time() + self.timeout
        write = not isinstance(op, FindUsages)
        paths = {path}
        try:
            for _ in range(MAX_LOCK_ROUNDS):
                try:
                    result = await self._run_locked(path, self.locks.keys(paths), write, plan, run, deadline)
                except _Replan as e:
                    paths |= e.paths
                    logger.debug("%s %s: widening lock to %d document(s)", type(op).__name__, path, len(paths))
                    continue
                self._transition(path, op, "Committed")
                return result
            raise BackendFailure(f"Change set of {type(op).__name__} on {path} kept growing while being locked")
        except RefactorError as e:
            self._transition(path, op, "Failed")
            logger.warning("%s failed for %s: %s", type(op).__name__, path, e.message)
            return OperationResult.err(e)
        except Exception as e:
            self._transition(path, op, "Failed")
            logger.exception("%s crashed for %s", type(op).__name__, path)
            return OperationResult.err(BackendFailure(str(e) or type(e).__name__))

    async def _run_locked(self, path: str, keys: frozenset[str], write: bool, plan, run, deadline: float):
        if self._closed:
            raise BackendFailure("Executor is shut down")
        loop = asyncio.get_running_loop()
        if write:
            acquire, release = self.locks.acquire_write, self.locks.release_write
        else:
            acquire, release = self.locks.acquire_read, self.locks.release_read

        try:
            await asyncio.wait_for(acquire(keys), max(deadline - loop.time(), 0))
        except asyncio.TimeoutError:
            raise OperationTimeout(f"Operation on {path} timed out after {self.timeout:g}s "
                                   f"waiting for another operation on the same documents") from None

        def work():
            prepared = plan()
            if not self.locks.keys(prepared.paths) <= keys:
                raise _Replan(prepared.paths)
            return run(prepared)

        try:
            future = loop.run_in_executor(self._pool, work)
        except RuntimeError as e:
            await release(keys)
            raise BackendFailure(f"Worker pool unavailable: {e}") from e

        # The locks are held until the worker thread returns, even after a timeout
        def on_done(_):
            task = loop.create_task(release(keys))
            self._releases.add(task)
            task.add_done_callback(self._releases.discard)

        future.add_done_callback(on_done)
        try:
            return await asyncio.wait_for(asyncio.shield(future), max(deadline - loop.time(), 0))
        except asyncio.TimeoutError:
            raise OperationTimeout(f"Operation on {path} timed out after {self.timeout:g}s") from None

    # --- Element operations (worker thread) ---

    def _plan_element(self, element: ResolvedElement, op: ElementOperation) -> _Plan:
        backend = backend_for(self.backends, element.path)

        if isinstance(op, Move):
            target = os.path.join(op.target_directory, os.path.basename(element.path))
            return _Plan(element, backend.file_change_set(element.path, target))

        if isinstance(op, Rename):
            _check_name(op.new_name, "symbol")
            _check_writable(element.path, "File")
        elif isinstance(op, Delete):
            self._check_deletable(element)

        refs = backend.find_references(element)
        return _Plan(element, {element.path} | {ref.path for ref in refs}, refs)

    def _check_deletable(self, element: ResolvedElement):
        if not element.is_named:
            raise NotFound(f"No named declaration at {element.path}:{element.line} "
                           f"(offset {element.name_offset}) to delete")
        _check_writable(element.path, "File")
        # `a, b = 1, 2` gives both names the same statement
        siblings = [
            decl.name for decl in element.document.declarations
            if (decl.start, decl.end) == (element.start, element.end)
            and decl.name_start != element.name_offset
        ]
        if siblings:
            raise UnsafeDelete(
                f"Cannot safely delete {element.describe()}: its statement also declares "
                f"{', '.join(siblings)}"
            )

    def _apply(self, plan: _Plan, op: ElementOperation) -> OperationResult:
        element = plan.subject
        backend = backend_for(self.backends, element.path)

        if isinstance(op, FindUsages):
            return OperationResult.ok_usages(self._usages(plan.refs))

        self._transition(element.path, op, "Mutating")
        if isinstance(op, Rename):
            changed = backend.rename(element, op.new_name)
            logger.info("Renamed %s to '%s' in %d file(s)", element.describe(), op.new_name, len(changed))
            return OperationResult.ok()

        if isinstance(op, Move):
            # Element moves relocate the containing file
            self._move_file(element.path, op.target_directory)
            return OperationResult.ok()

        if isinstance(op, Delete):
            if plan.refs:
                raise UnsafeDelete(
                    f"Cannot safely delete {element.describe()}: "
                    f"{len(plan.refs)} usage(s) remain ({self._listing(plan.refs)})",
                    references=plan.refs,
                )
            backend.delete_declaration(element)
            logger.info("Deleted %s", element.describe())
            return OperationResult.ok()

        raise BadRequest(f"Unsupported operation: {op!r}")

    def _load_all(self, refs: list[Reference]) -> dict[str, Document | None]:
        """Each hit's document, loaded once; None where it cannot be loaded."""
        docs = {}
        for ref in refs:
            if ref.path in docs:
                continue
            try:
                docs[ref.path] = self.model.load(ref.path)
            except RefactorError:
                docs[ref.path] = None
        return docs

    def _usages(self, refs: list[Reference]) -> list[UsageRecord]:
        docs = self._load_all(refs)
        usages = []
        for ref in refs:
            doc = docs[ref.path]
            if doc is None:
                usages.append(UsageRecord(ref.path, -1, -1, ref.text))
                continue
            line, column = doc.line_col(ref.offset)
            usages.append(UsageRecord(ref.path, line, column, doc.line_text(line).strip()))
        return usages

    def _listing(self, refs: list[Reference]) -> str:
        shown_refs = refs[:MAX_LISTED_REFERENCES]
        docs = self._load_all(shown_refs)
        shown = []
        for ref in shown_refs:
            doc = docs[ref.path]
            shown.append(f"{ref.path}:{doc.line_of(ref.offset) if doc is not None else '?'}")
        if len(refs) > MAX_LISTED_REFERENCES:
            shown.append(f"and {len(refs) - MAX_LISTED_REFERENCES} more")
        return ", ".join(shown)

    # --- File operations (worker thread) ---

    def _check_source(self, path: str):
        if not path or not os.path.isabs(path):
            raise NotFound(f"File path must be absolute: {path!r}")
        if not os.path.isfile(path):
            raise NotFound(f"File not found: {path}")
        _check_writable(os.path.dirname(path), "Source directory")

    def _move_file(self, path: str, dest_directory: str) -> str:
        self._check_source(path)
        _check_directory(dest_directory, "Destination directory")
        _check_writable(dest_directory, "Destination directory")
        target = os.path.join(dest_directory, os.path.basename(path))
        if os.path.realpath(os.path.dirname(path)) == os.path.realpath(dest_directory):
            raise BadRequest(f"{path} is already in {dest_directory}", ["destDirectoryPath"])
        if os.path.exists(target):
            raise NotWritable(f"Destination already exists: {target}")
        new_path = backend_for(self.backends, path).move_file(path, dest_directory)
        logger.info("Moved %s to %s", path, new_path)
        return new_path

    def _plan_file(self, op: FileOperation) -> _Plan:
        self._transition(op.path, op, "Resolving")
        self._check_source(op.path)
        backend = backend_for(self.backends, op.path)

        if isinstance(op, MoveFile):
            target = os.path.join(op.dest_directory, os.path.basename(op.path))
            return _Plan(op, backend.file_change_set(op.path, target))

        if isinstance(op, RenameFile):
            if not op.new_name or os.sep in op.new_name or op.new_name in (".", ".."):
                raise BadRequest(f"Invalid file name: {op.new_name!r}", ["newName"])
            target = os.path.join(os.path.dirname(op.path), op.new_name)
            return _Plan(op, backend.file_change_set(op.path, target))

        if isinstance(op, DeleteFile):
            refs = backend.file_references(op.path)
            return _Plan(op, {op.path} | {ref.path for ref in refs}, refs)

        raise BadRequest(f"Unsupported operation: {op!r}")

    def _apply_file(self, plan: _Plan) -> OperationResult:
        op = plan.subject
        self._transition(op.path, op, "Mutating")

        if isinstance(op, MoveFile):
            self._move_file(op.path, op.dest_directory)
            return OperationResult.ok()

        if isinstance(op, RenameFile):
            target = os.path.join(os.path.dirname(op.path), op.new_name)
            if os.path.exists(target):
                raise NotWritable(f"Destination already exists: {target}")
            new_path = backend_for(self.backends, op.path).rename_file(op.path, op.new_name)
            logger.info("Renamed %s to %s", op.path, new_path)
            return OperationResult.ok()

        if isinstance(op, DeleteFile):
            if plan.refs:
                raise UnsafeDelete(
                    f"Cannot safely delete {op.path}: referenced from {len(plan.refs)} place(s) "
                    f"({self._listing(plan.refs)})",
                    references=plan.refs,
                )
            backend_for(self.backends, op.path).delete_file(op.path)
            logger.info("Deleted %s", op.path)
            return OperationResult.ok()

        raise BadRequest(f"Unsupported operation: {op!r}")
