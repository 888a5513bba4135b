#!/usr/bin/env python3
"""
Refactor MCP - Documents

A Document is a loaded source file: its text, a line table, the leaves
(tokens) covering every character, and the named declarations found in it.

Python files are analyzed with `ast` + `tokenize`. Everything else goes
through a small regex tokenizer that recognizes keyword-introduced
declarations (class, fun, def, val, ...), which covers most brace and
indentation languages well enough to locate symbols.
"""

import ast
import bisect
import io
import keyword
import re
import tokenize
from dataclasses import dataclass
from pathlib import Path
from typing import ClassVar

PYTHON_SUFFIXES = {".py", ".pyi"}

# Leaves that never identify a symbol by themselves
INSIGNIFICANT_LEAVES = {"whitespace", "punctuation", "comment", "keyword"}

CLASS_KEYWORDS = {"class", "interface", "struct", "enum", "trait", "object",
                  "record", "type", "module", "namespace"}
FUNCTION_KEYWORDS = {"def", "fun", "func", "function", "fn"}
VARIABLE_KEYWORDS = {"val", "var", "let", "const"}
DECLARATION_KEYWORDS = CLASS_KEYWORDS | FUNCTION_KEYWORDS | VARIABLE_KEYWORDS

_TOKEN_RE = re.compile(r"""
    (?P<whitespace>\s+)
  | (?P<comment>//[^\n]*|\#[^\n]*|/\*.*?\*/)
  | (?P<string>"(?:\\.|[^"\\\n])*"|'(?:\\.|[^'\\\n])*'|`[^`]*`)
  | (?P<identifier>[A-Za-z_$][\w$]*)
  | (?P<number>\d[\w.]*)
  | (?P<punctuation>.)
""", re.VERBOSE | re.DOTALL)

_PY_DECL_NAME_RE = re.compile(r"(?:async\s+)?(?:def|class)\s+([A-Za-z_]\w*)")


@dataclass(frozen=True)
class Leaf:
    """A single token of the document."""
    kind: str
    start: int
    end: int
    text: str

    @property
    def significant(self) -> bool:
        return self.kind not in INSIGNIFICANT_LEAVES


@dataclass(frozen=True)
class Declaration:
    """A named declaration (the HasName capability).

    `start`/`end` span the whole declaration, `name_start` points at the
    identifier and `line` is the 1-based line of the identifier.
    """
    name: str
    name_start: int
    start: int
    end: int
    line: int
    kind: ClassVar[str] = "declaration"

    @property
    def name_end(self) -> int:
        return self.name_start + len(self.name)

    def contains(self, offset: int) -> bool:
        return self.start <= offset < self.end


@dataclass(frozen=True)
class ClassDecl(Declaration):
    kind: ClassVar[str] = "class"


@dataclass(frozen=True)
class FunctionDecl(Declaration):
    kind: ClassVar[str] = "function"


@dataclass(frozen=True)
class VariableDecl(Declaration):
    kind: ClassVar[str] = "variable"


def _keyword_variant(keyword_text: str) -> type[Declaration]:
    if keyword_text in CLASS_KEYWORDS:
        return ClassDecl
    if keyword_text in FUNCTION_KEYWORDS:
        return FunctionDecl
    return VariableDecl


class Document:
    """A source file loaded into memory and analyzed."""

    def __init__(self, path: str, text: str):
        self.path = path
        self.text = text
        self._line_starts = [0] + [m.end() for m in re.finditer("\n", text)]
        self.language = "python" if Path(path).suffix in PYTHON_SUFFIXES else "text"

        analyzed = None
        if self.language == "python":
            analyzed = _analyze_python(self)
            if analyzed is None:
                # Unparseable python still gets located textually
                self.language = "text"
        if analyzed is None:
            analyzed = _analyze_generic(self)
        self.leaves, self.declarations = analyzed
        self._leaf_starts = [leaf.start for leaf in self.leaves]

    def __repr__(self) -> str:
        return f"Document({self.path!r}, {len(self.text)} chars)"

    # --- Lines ---

    @property
    def line_count(self) -> int:
        return len(self._line_starts)

    def line_of(self, offset: int) -> int:
        """1-based line containing offset."""
        return bisect.bisect_right(self._line_starts, offset)

    def line_col(self, offset: int) -> tuple[int, int]:
        """1-based (line, column) of offset."""
        line = self.line_of(offset)
        return line, offset - self._line_starts[line - 1] + 1

    def line_start(self, line: int) -> int:
        return self._line_starts[line - 1]

    def line_end(self, line: int) -> int:
        """Offset of the end of line, excluding its newline."""
        if line < len(self._line_starts):
            return self._line_starts[line] - 1
        return len(self.text)

    def line_text(self, line: int) -> str:
        return self.text[self.line_start(line):self.line_end(line)].removesuffix("\r")

    def offset_of(self, line: int, column: int) -> int:
        return self._line_starts[line - 1] + column - 1

    # --- Syntax ---

    def leaf_at(self, offset: int) -> Leaf | None:
        if offset < 0 or offset >= len(self.text):
            return None
        index = bisect.bisect_right(self._leaf_starts, offset) - 1
        if index < 0:
            return None
        leaf = self.leaves[index]
        return leaf if leaf.start <= offset < leaf.end else None

    def declaration_named_at(self, offset: int) -> Declaration | None:
        """The declaration whose identifier covers offset."""
        for decl in self.declarations:
            if decl.name_start <= offset < decl.name_end:
                return decl
        return None

    def enclosing_declaration(self, offset: int) -> Declaration | None:
        """Innermost declaration whose span contains offset."""
        best = None
        for decl in self.declarations:
            if decl.contains(offset) and (best is None or decl.end - decl.start < best.end - best.start):
                best = decl
        return best

    def declarations_named(self, name: str) -> list[Declaration]:
        return [decl for decl in self.declarations if decl.name == name]


# --- Python analysis ---

class _PythonDeclarationVisitor(ast.NodeVisitor):
    """Collects class, function and assignment declarations in source order."""

    def __init__(self, doc: Document):
        self.doc = doc
        self.found: list[Declaration] = []

    def _offset(self, lineno: int, byte_col: int) -> int:
        # ast columns are utf-8 byte offsets
        line = self.doc.line_text(lineno)
        return self.doc.line_start(lineno) + len(line.encode("utf-8")[:byte_col].decode("utf-8", errors="ignore"))

    def _span(self, node: ast.AST) -> tuple[int, int]:
        start = self._offset(node.lineno, node.col_offset)
        decorators = getattr(node, "decorator_list", None)
        if decorators:
            first = decorators[0]
            # The '@' sits just before the decorator expression
            start = min(start, self._offset(first.lineno, first.col_offset) - 1)
        end = self._offset(node.end_lineno, node.end_col_offset)
        return start, end

    def _named(self, node: ast.AST, variant: type[Declaration]):
        keyword_at = self._offset(node.lineno, node.col_offset)
        match = _PY_DECL_NAME_RE.match(self.doc.text, keyword_at)
        if not match:
            return
        start, end = self._span(node)
        name_start = match.start(1)
        self.found.append(variant(
            name=match.group(1),
            name_start=name_start,
            start=start,
            end=end,
            line=self.doc.line_of(name_start),
        ))

    def _targets(self, target: ast.AST, statement: ast.AST):
        if isinstance(target, ast.Name):
            name_start = self._offset(target.lineno, target.col_offset)
            start, end = self._span(statement)
            self.found.append(VariableDecl(
                name=target.id,
                name_start=name_start,
                start=start,
                end=end,
                line=self.doc.line_of(name_start),
            ))
        elif isinstance(target, (ast.Tuple, ast.List)):
            for element in target.elts:
                self._targets(element, statement)

    def visit_ClassDef(self, node: ast.ClassDef):
        self._named(node, ClassDecl)
        self.generic_visit(node)

    def visit_FunctionDef(self, node: ast.FunctionDef):
        self._named(node, FunctionDecl)
        self.generic_visit(node)

    def visit_AsyncFunctionDef(self, node: ast.AsyncFunctionDef):
        self._named(node, FunctionDecl)
        self.generic_visit(node)

    def visit_Assign(self, node: ast.Assign):
        for target in node.targets:
            self._targets(target, node)
        self.generic_visit(node)

    def visit_AnnAssign(self, node: ast.AnnAssign):
        self._targets(node.target, node)
        self.generic_visit(node)


_PY_LEAF_KINDS = {
    tokenize.NAME: "identifier",
    tokenize.NUMBER: "number",
    tokenize.STRING: "string",
    tokenize.COMMENT: "comment",
    tokenize.OP: "punctuation",
}


def _analyze_python(doc: Document) -> tuple[list[Leaf], list[Declaration]] | None:
    try:
        tree = ast.parse(doc.text)
        tokens = list(tokenize.generate_tokens(io.StringIO(doc.text).readline))
    except (SyntaxError, tokenize.TokenError, ValueError):
        return None

    leaves: list[Leaf] = []
    position = 0
    for tok in tokens:
        kind = _PY_LEAF_KINDS.get(tok.type)
        if kind is None:
            name = tokenize.tok_name.get(tok.type, "")
            if not name.startswith("FSTRING"):
                continue
            kind = "string"
        start = doc.offset_of(tok.start[0], tok.start[1] + 1)
        end = doc.offset_of(tok.end[0], tok.end[1] + 1)
        if end <= start or start < position:
            continue
        if start > position:
            leaves.append(_gap_leaf(doc.text, position, start))
        if kind == "identifier" and keyword.iskeyword(tok.string):
            kind = "keyword"
        leaves.append(Leaf(kind, start, end, doc.text[start:end]))
        position = end
    if position < len(doc.text):
        leaves.append(_gap_leaf(doc.text, position, len(doc.text)))

    visitor = _PythonDeclarationVisitor(doc)
    visitor.visit(tree)
    return leaves, visitor.found


def _gap_leaf(text: str, start: int, end: int) -> Leaf:
    chunk = text[start:end]
    return Leaf("whitespace" if chunk.isspace() else "punctuation", start, end, chunk)


# --- Generic analysis ---

def _analyze_generic(doc: Document) -> tuple[list[Leaf], list[Declaration]]:
    leaves = []
    for match in _TOKEN_RE.finditer(doc.text):
        kind = match.lastgroup
        if kind == "identifier" and match.group() in DECLARATION_KEYWORDS:
            kind = "keyword"
        leaves.append(Leaf(kind, match.start(), match.end(), match.group()))

    declarations = []
    for index, leaf in enumerate(leaves):
        if leaf.kind != "keyword":
            continue
        name_leaf = _next_code_leaf(leaves, index + 1)
        if name_leaf is None or leaves[name_leaf].kind != "identifier":
            continue
        name = leaves[name_leaf]
        variant = _keyword_variant(leaf.text)
        declarations.append(variant(
            name=name.text,
            name_start=name.start,
            start=leaf.start,
            end=_generic_declaration_end(leaves, name_leaf + 1, len(doc.text)),
            line=doc.line_of(name.start),
        ))
    return leaves, declarations


def _next_code_leaf(leaves: list[Leaf], index: int) -> int | None:
    while index < len(leaves):
        if leaves[index].kind not in ("whitespace", "comment"):
            return index
        index += 1
    return None


def _generic_declaration_end(leaves: list[Leaf], index: int, text_end: int) -> int:
    """A declaration ends at its matching '}', at ';', or at end of line."""
    depth = 0
    for leaf in leaves[index:]:
        if depth == 0:
            if leaf.kind == "whitespace" and "\n" in leaf.text:
                return leaf.start + len(leaf.text.split("\n", 1)[0].rstrip("\r"))
            if leaf.text == ";":
                return leaf.end
        if leaf.text == "{":
            depth += 1
        elif leaf.text == "}" and depth:
            depth -= 1
            if depth == 0:
                return leaf.end
    return text_end
