#!/usr/bin/env python3
"""
Refactor MCP - Code model backends

The executor delegates the actual source transformations to a backend:

- RopeBackend: Python modules, via rope (semantic rename, occurrences,
  module moves that rewrite imports).
- TextBackend: any other text file, via identifier matching over the
  documents of the same kind in the workspace scope.

Backends are synchronous and may block; the executor runs them on its
worker pool and bounds every call with a timeout.
"""

import logging
import os
import re
import threading
from dataclasses import dataclass
from pathlib import Path

from .document import Document
from .errors import BackendFailure, NotFound
from .locator import ResolvedElement
from .model import CodeModel, read_source

logger = logging.getLogger(__name__)

IDENTIFIER_RE = re.compile(r"^[A-Za-z_$][\w$]*$")


@dataclass(frozen=True)
class Reference:
    """A raw hit from a reference search."""
    path: str
    offset: int
    text: str


def write_text_atomic(path: str, content: str) -> None:
    """Write through a temp file and rename so readers never see a partial file.

    Line endings in content are written as they are.
    """
    p = Path(path)
    tmp = p.with_name(p.name + ".refactor.tmp")
    with open(tmp, "w", encoding="utf-8", newline="") as f:
        f.write(content)
    tmp.replace(p)


def write_all_or_nothing(contents: dict[str, str]) -> list[str]:
    """Write every file or restore the ones already written."""
    originals: dict[str, str] = {}
    try:
        for path, content in contents.items():
            originals[path] = read_source(path)
            write_text_atomic(path, content)
    except OSError as e:
        for path, original in originals.items():
            try:
                write_text_atomic(path, original)
            except OSError:
                logger.error("Could not restore %s after failed write", path)
        raise BackendFailure(f"Write failed, changes rolled back: {e}") from e
    return list(contents)


def remove_declaration_text(element: ResolvedElement) -> str:
    """Document text with the element's declaration removed.

    Whole lines are dropped when the declaration owns them; otherwise only
    the span is cut.
    """
    doc = element.document
    start, end = element.start, element.end
    first, last = doc.line_of(start), doc.line_of(max(start, end - 1))
    before = doc.text[doc.line_start(first):start]
    after = doc.text[end:doc.line_end(last)]
    if not before.strip() and not after.strip():
        start = doc.line_start(first)
        end = doc.line_end(last)
        if end < len(doc.text):
            end += 1  # the newline
    return doc.text[:start] + doc.text[end:]


class Backend:
    """Operations shared by every backend; subclasses supply symbol semantics."""

    name = "base"

    def __init__(self, model: CodeModel):
        self.model = model

    def supports(self, path: str) -> bool:
        return True

    def rename(self, element: ResolvedElement, new_name: str) -> list[str]:
        raise NotImplementedError

    def find_references(self, element: ResolvedElement) -> list[Reference]:
        raise NotImplementedError

    def delete_declaration(self, element: ResolvedElement) -> None:
        write_text_atomic(element.path, remove_declaration_text(element))

    def move_file(self, path: str, dest_directory: str) -> str:
        target = os.path.join(dest_directory, os.path.basename(path))
        os.rename(path, target)
        return target

    def rename_file(self, path: str, new_name: str) -> str:
        target = os.path.join(os.path.dirname(path), new_name)
        os.rename(path, target)
        return target

    def delete_file(self, path: str) -> None:
        os.remove(path)

    def file_change_set(self, path: str, target: str) -> set[str]:
        """Paths a move or rename of path to target may write."""
        return {path, target}

    def file_references(self, path: str) -> list[Reference]:
        """Mentions of the file's stem in other files of its scope."""
        stem = Path(path).stem
        if not IDENTIFIER_RE.match(stem):
            return []
        pattern = re.compile(r"(?<![\w$])" + re.escape(stem) + r"(?![\w$])")
        real = os.path.realpath(path)
        refs = []
        for other in self.model.iter_scope_files(path):
            if os.path.realpath(other) == real:
                continue
            try:
                text = read_source(other)
            except (OSError, UnicodeDecodeError):
                continue
            for match in pattern.finditer(text):
                refs.append(Reference(other, match.start(), match.group()))
        return refs

    def close(self) -> None:
        pass


class TextBackend(Backend):
    """Identifier-level refactoring for files without a semantic backend."""

    name = "text"

    def _symbol(self, element: ResolvedElement) -> str:
        name = element.name
        if not IDENTIFIER_RE.match(name):
            raise BackendFailure(f"Element {element.describe()} is not a symbol")
        return name

    def _documents(self, element: ResolvedElement):
        """The element's own document first, then scope files that mention the name."""
        yield element.document
        suffix = Path(element.path).suffix or None
        own = os.path.realpath(element.path)
        for path in self.model.iter_scope_files(element.path, suffix):
            if os.path.realpath(path) == own:
                continue
            try:
                text = read_source(path)
            except (OSError, UnicodeDecodeError):
                continue
            if element.name in text:
                yield Document(path, text)

    def _occurrences(self, doc: Document, name: str) -> list[int]:
        return [leaf.start for leaf in doc.leaves if leaf.kind == "identifier" and leaf.text == name]

    def find_references(self, element: ResolvedElement) -> list[Reference]:
        name = self._symbol(element)
        refs = []
        for doc in self._documents(element):
            for offset in self._occurrences(doc, name):
                if doc is element.document and offset == element.name_offset:
                    continue
                refs.append(Reference(doc.path, offset, name))
        return refs

    def rename(self, element: ResolvedElement, new_name: str) -> list[str]:
        name = self._symbol(element)
        contents = {}
        for doc in self._documents(element):
            offsets = self._occurrences(doc, name)
            if not offsets:
                continue
            parts, position = [], 0
            for offset in offsets:
                parts.append(doc.text[position:offset])
                parts.append(new_name)
                position = offset + len(name)
            parts.append(doc.text[position:])
            contents[doc.path] = "".join(parts)
        if not contents:
            raise BackendFailure(f"No occurrences of '{name}' to rename")
        return write_all_or_nothing(contents)


class RopeBackend(Backend):
    """Python refactorings through rope projects rooted at each scope root."""

    name = "rope"

    def __init__(self, model: CodeModel):
        super().__init__(model)
        self._projects = {}
        # rope projects are not thread-safe
        self._lock = threading.RLock()
        model.add_load_listener(self._invalidate)

    def supports(self, path: str) -> bool:
        return path.endswith(".py")

    def _get_rope_project(self, file_path: str):
        """Get or create the rope project for the scope of file_path."""
        from rope.base.project import Project

        root = self.model.scope_root(file_path)
        project = self._projects.get(root)
        if project is None:
            project = Project(root, ropefolder=None, ignore_syntax_errors=True)
            self._projects[root] = project
        return project

    def _resource(self, project, path: str, kind: str | None = None):
        from rope.base import libutils

        return libutils.path_to_resource(project, os.path.realpath(path), type=kind)

    def _inside(self, project, path: str) -> bool:
        root = os.path.realpath(project.address)
        real = os.path.realpath(path)
        return real == root or real.startswith(root + os.sep)

    def _invalidate(self, path: str):
        if not self.supports(path):
            return
        with self._lock:
            root = self.model.scope_root(path)
            project = self._projects.get(root)
            if project is not None and self._inside(project, path):
                project.validate(self._resource(project, path))

    def _run(self, description: str, fn):
        from rope.base.exceptions import RopeError

        with self._lock:
            try:
                return fn()
            except RopeError as e:
                # rope's message is what the caller needs to see
                raise BackendFailure(f"{description} failed: {e}") from e

    def rename(self, element: ResolvedElement, new_name: str) -> list[str]:
        from rope.refactor.rename import Rename

        def do():
            project = self._get_rope_project(element.path)
            resource = self._resource(project, element.path)
            changes = Rename(project, resource, _rope_offset(element)).get_changes(new_name)
            changed = [r.real_path for r in changes.get_changed_resources()]
            project.do(changes)
            return changed

        return self._run(f"Rename of {element.describe()}", do)

    def find_references(self, element: ResolvedElement) -> list[Reference]:
        from rope.contrib.findit import find_occurrences

        def do():
            project = self._get_rope_project(element.path)
            resource = self._resource(project, element.path)
            own = os.path.realpath(element.path)
            texts = {}
            refs = []
            for location in find_occurrences(project, resource, _rope_offset(element), unsure=False):
                path = location.resource.real_path
                if path not in texts:
                    texts[path] = read_source(path)
                offset = _raw_offset(texts[path], location.offset)
                if os.path.realpath(path) == own and offset == element.name_offset:
                    continue
                refs.append(Reference(path, offset, element.name))
            return refs

        return self._run(f"Usage search for {element.describe()}", do)

    def file_change_set(self, path: str, target: str) -> set[str]:
        # MoveModule and module renames rewrite the importers too
        return super().file_change_set(path, target) | {ref.path for ref in self.file_references(path)}

    def delete_declaration(self, element: ResolvedElement) -> None:
        with self._lock:
            super().delete_declaration(element)
            self._get_rope_project(element.path).validate()

    def move_file(self, path: str, dest_directory: str) -> str:
        from rope.refactor.move import MoveModule

        def do():
            project = self._get_rope_project(path)
            if not (self._inside(project, path) and self._inside(project, dest_directory)):
                return super(RopeBackend, self).move_file(path, dest_directory)
            resource = self._resource(project, path)
            dest = self._resource(project, dest_directory, kind="folder")
            if dest is None:
                raise NotFound(f"Directory not found: {dest_directory}")
            project.do(MoveModule(project, resource).get_changes(dest))
            return os.path.join(dest_directory, os.path.basename(path))

        return self._run(f"Move of {path}", do)

    def rename_file(self, path: str, new_name: str) -> str:
        from rope.refactor.rename import Rename

        stem = new_name[:-3] if new_name.endswith(".py") else None

        def do():
            project = self._get_rope_project(path)
            if stem is None or not stem.isidentifier() or not self._inside(project, path):
                return super(RopeBackend, self).rename_file(path, new_name)
            resource = self._resource(project, path)
            # No offset renames the module itself and its imports
            project.do(Rename(project, resource).get_changes(stem))
            return os.path.join(os.path.dirname(path), new_name)

        return self._run(f"Rename of {path}", do)

    def delete_file(self, path: str) -> None:
        with self._lock:
            super().delete_file(path)
            self._get_rope_project(path).validate()

    def close(self) -> None:
        with self._lock:
            for project in self._projects.values():
                project.close()
            self._projects.clear()


def _rope_offset(element: ResolvedElement) -> int:
    """rope reads files with \\n line endings; map our on-disk offset onto its text."""
    text = element.document.text
    return element.name_offset - text.count("\r\n", 0, element.name_offset)


def _raw_offset(raw: str, offset: int) -> int:
    """Inverse of _rope_offset for a file whose on-disk text is raw."""
    shift = 0
    for match in re.finditer("\r\n", raw):
        if match.start() - shift >= offset:
            break
        shift += 1
    return offset + shift


def default_backends(model: CodeModel) -> list[Backend]:
    """Backends in priority order; the last one accepts every file."""
    return [RopeBackend(model), TextBackend(model)]


def backend_for(backends: list[Backend], path: str) -> Backend:
    for backend in backends:
        if backend.supports(path):
            return backend
    raise BackendFailure(f"No backend can handle {path}")

