#!/usr/bin/env python3
"""
Refactor MCP - Symbol Locator

Finds the program element a request is talking about, either from a raw
offset, from "all the code up to the symbol" (its length is the offset),
or from a name plus an approximate line.
"""

import logging
from dataclasses import dataclass, field

from .document import Declaration, Document, Leaf
from .errors import Ambiguous, BadRequest, NotFound
from .model import read_source

logger = logging.getLogger(__name__)

NAMED = "named"
GENERIC = "generic"


@dataclass(frozen=True)
class ByOffset:
    offset: int


@dataclass(frozen=True)
class ByPrefixLength:
    prefix_text: str

    @property
    def offset(self) -> int:
        return len(self.prefix_text)


@dataclass(frozen=True)
class ByNameAndLine:
    name: str
    approximate_line: int | None = None


Locator = ByOffset | ByPrefixLength | ByNameAndLine


@dataclass
class ResolvedElement:
    """A located element, valid for one request only."""
    document: Document
    start: int
    end: int
    text: str
    classification: str
    declaration: Declaration | None = None
    leaf: Leaf | None = field(default=None, repr=False)

    @property
    def path(self) -> str:
        return self.document.path

    @property
    def is_named(self) -> bool:
        return self.classification == NAMED

    @property
    def name_offset(self) -> int:
        """Offset of the identifier backends should operate on."""
        if self.declaration is not None:
            return self.declaration.name_start
        return self.start

    @property
    def name(self) -> str:
        if self.declaration is not None:
            return self.declaration.name
        return self.text

    @property
    def line(self) -> int:
        return self.document.line_of(self.name_offset)

    def describe(self) -> str:
        return f"'{self.name}' at {self.path}:{self.line} (offset {self.name_offset})"

    def is_stale(self) -> bool:
        """True when the file on disk no longer matches the resolved document."""
        try:
            return read_source(self.document.path) != self.document.text
        except (OSError, UnicodeDecodeError):
            return True


def locator_from_args(args: dict) -> Locator:
    """Build a locator from wire arguments.

    codeToSymbol wins over offset, which wins over symbolName.
    """
    if args.get("codeToSymbol") is not None:
        return ByPrefixLength(args["codeToSymbol"])
    if args.get("offset") is not None:
        return ByOffset(args["offset"])
    if args.get("symbolName") is not None:
        return ByNameAndLine(args["symbolName"], args.get("lineNumber"))
    raise BadRequest("Missing locator: one of codeToSymbol, offset, symbolName",
                     ["codeToSymbol", "offset", "symbolName"])


def resolve(document: Document, locator: Locator) -> ResolvedElement:
    """Resolve a locator against a document.

    Raises:
        NotFound: nothing sits at the offset, or no declaration has the name.
        Ambiguous: several declarations share the name and no line was given.
    """
    if isinstance(locator, ByNameAndLine):
        return _resolve_by_name(document, locator)
    if isinstance(locator, (ByOffset, ByPrefixLength)):
        return _resolve_at_offset(document, locator.offset)
    raise BadRequest(f"Unsupported locator: {locator!r}")


def _from_declaration(document: Document, decl: Declaration) -> ResolvedElement:
    return ResolvedElement(
        document=document,
        start=decl.start,
        end=decl.end,
        text=document.text[decl.start:decl.end],
        classification=NAMED,
        declaration=decl,
    )


def _resolve_at_offset(document: Document, offset: int) -> ResolvedElement:
    leaf = document.leaf_at(offset)
    if leaf is None:
        raise NotFound(f"No element at offset {offset} in {document.path} "
                       f"(document length {len(document.text)})")

    if leaf.kind == "identifier":
        decl = document.declaration_named_at(offset)
        if decl is not None:
            return _from_declaration(document, decl)
    elif not leaf.significant:
        # Offsets often land on punctuation next to the intended identifier
        decl = document.enclosing_declaration(offset)
        if decl is not None:
            logger.debug("Offset %d in %s on %s leaf, using enclosing %s '%s'",
                         offset, document.path, leaf.kind, decl.kind, decl.name)
            return _from_declaration(document, decl)

    return ResolvedElement(
        document=document,
        start=leaf.start,
        end=leaf.end,
        text=leaf.text,
        classification=GENERIC,
        leaf=leaf,
    )


def _resolve_by_name(document: Document, locator: ByNameAndLine) -> ResolvedElement:
    candidates = document.declarations_named(locator.name)
    if not candidates:
        raise NotFound(f"No declaration named '{locator.name}' in {document.path}")
    if len(candidates) == 1:
        return _from_declaration(document, candidates[0])

    if locator.approximate_line is None:
        listing = [{"line": c.line, "offset": c.name_start, "kind": c.kind} for c in candidates]
        where = ", ".join(f"line {c['line']} (offset {c['offset']})" for c in listing)
        raise Ambiguous(
            f"{len(candidates)} declarations named '{locator.name}' in {document.path}: "
            f"{where}. Pass lineNumber to choose one.",
            candidates=listing,
        )

    # min() keeps the first of equally close candidates
    best = min(candidates, key=lambda c: abs(c.line - locator.approximate_line))
    return _from_declaration(document, best)
