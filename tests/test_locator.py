"""Tests for resolving locators to elements."""

import pytest

from refactor_mcp.document import Document
from refactor_mcp.errors import Ambiguous, BadRequest, NotFound
from refactor_mcp.locator import (
    ByNameAndLine,
    ByOffset,
    ByPrefixLength,
    locator_from_args,
    resolve,
)


class TestOffsetLocators:
    def test_prefix_length_is_the_offset(self):
        assert ByPrefixLength("class ").offset == 6

    def test_prefix_resolves_declaration_name(self):
        doc = Document("/tmp/a.txt", "class C {}")
        element = resolve(doc, ByPrefixLength("class "))
        assert element.is_named
        assert element.name == "C"
        assert element.name_offset == 6

    def test_keyword_walks_up_to_declaration(self):
        doc = Document("/tmp/a.txt", "class C {}")
        element = resolve(doc, ByOffset(0))
        assert element.is_named
        assert element.name == "C"

    def test_punctuation_walks_up_to_declaration(self):
        doc = Document("/tmp/a.txt", "class C {}")
        assert resolve(doc, ByOffset(8)).name == "C"

    def test_usage_identifier_is_generic(self):
        doc = Document("/tmp/a.txt", "class C {}\nval x = C\n")
        element = resolve(doc, ByOffset(doc.text.rindex("C")))
        assert not element.is_named
        assert element.text == "C"

    @pytest.mark.parametrize("offset", [10, 100])
    def test_offset_past_end(self, offset):
        doc = Document("/tmp/a.txt", "class C {}")
        with pytest.raises(NotFound) as exc:
            resolve(doc, ByOffset(offset))
        assert "length 10" in exc.value.message

    def test_python_function(self):
        doc = Document("/tmp/m.py", "def foo():\n    pass\n\nfoo()\n")
        element = resolve(doc, ByPrefixLength("def "))
        assert element.is_named
        assert element.describe() == "'foo' at /tmp/m.py:1 (offset 4)"


TWO_FS = "fun f() {}\nfun g() {}\nfun f() {}\n"


class TestNameLocator:
    def test_unique_name(self):
        doc = Document("/tmp/a.kt", TWO_FS)
        assert resolve(doc, ByNameAndLine("g")).line == 2

    def test_missing_name(self):
        doc = Document("/tmp/a.kt", TWO_FS)
        with pytest.raises(NotFound):
            resolve(doc, ByNameAndLine("zzz"))

    def test_duplicates_without_line_are_ambiguous(self):
        doc = Document("/tmp/a.kt", TWO_FS)
        with pytest.raises(Ambiguous) as exc:
            resolve(doc, ByNameAndLine("f"))
        assert [c["line"] for c in exc.value.candidates] == [1, 3]
        assert exc.value.kind == "Ambiguous"

    def test_closest_line_wins(self):
        doc = Document("/tmp/a.kt", TWO_FS)
        assert resolve(doc, ByNameAndLine("f", 3)).line == 3

    def test_tie_picks_first(self):
        doc = Document("/tmp/a.kt", TWO_FS)
        assert resolve(doc, ByNameAndLine("f", 2)).line == 1


class TestLocatorFromArgs:
    def test_code_to_symbol_wins(self):
        locator = locator_from_args({"codeToSymbol": "ab", "offset": 5, "symbolName": "x"})
        assert locator == ByPrefixLength("ab")

    def test_offset_before_name(self):
        assert locator_from_args({"offset": 5, "symbolName": "x"}) == ByOffset(5)

    def test_name_with_line(self):
        assert locator_from_args({"symbolName": "x", "lineNumber": 4}) == ByNameAndLine("x", 4)

    def test_nothing_given(self):
        with pytest.raises(BadRequest):
            locator_from_args({"filePath": "/tmp/a.txt"})
