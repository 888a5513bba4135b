"""Tests for document analysis: lines, leaves and declarations."""

from refactor_mcp.document import ClassDecl, Document, FunctionDecl, VariableDecl


PY_SOURCE = '''class Foo:
    def bar(self):
        return 1


counter = 0
'''


class TestLines:
    def test_line_and_column_are_one_based(self):
        doc = Document("/tmp/a.txt", "ab\ncd\n")
        assert doc.line_of(0) == 1
        assert doc.line_col(4) == (2, 2)
        assert doc.line_text(2) == "cd"
        assert doc.offset_of(2, 1) == 3

    def test_last_line_without_newline(self):
        doc = Document("/tmp/a.txt", "one\ntwo")
        assert doc.line_count == 2
        assert doc.line_text(2) == "two"


class TestPythonDocuments:
    def test_declarations_found_in_source_order(self):
        doc = Document("/tmp/mod.py", PY_SOURCE)
        assert doc.language == "python"
        names = [(type(d), d.name, d.line) for d in doc.declarations]
        assert names == [
            (ClassDecl, "Foo", 1),
            (FunctionDecl, "bar", 2),
            (VariableDecl, "counter", 6),
        ]

    def test_name_offsets_point_at_identifier(self):
        doc = Document("/tmp/mod.py", PY_SOURCE)
        foo, bar, _ = doc.declarations
        assert foo.name_start == 6
        assert doc.text[bar.name_start:bar.name_end] == "bar"

    def test_keywords_are_insignificant(self):
        doc = Document("/tmp/mod.py", PY_SOURCE)
        leaf = doc.leaf_at(0)
        assert leaf.kind == "keyword"
        assert not leaf.significant
        assert doc.leaf_at(6).kind == "identifier"

    def test_decorators_belong_to_the_span(self):
        source = "@staticmethod\ndef f():\n    pass\n"
        doc = Document("/tmp/mod.py", source)
        (decl,) = doc.declarations
        assert decl.start == 0
        assert decl.end == len(source) - 1

    def test_syntax_error_falls_back_to_text(self):
        doc = Document("/tmp/broken.py", "def broken(:\n")
        assert doc.language == "text"
        assert [d.name for d in doc.declarations] == ["broken"]


class TestGenericDocuments:
    def test_brace_declaration_spans_to_closing_brace(self):
        doc = Document("/tmp/a.txt", "class C {}")
        (decl,) = doc.declarations
        assert isinstance(decl, ClassDecl)
        assert (decl.name, decl.name_start, decl.start, decl.end) == ("C", 6, 0, 10)

    def test_statement_declarations_end_at_semicolon(self):
        doc = Document("/tmp/a.kt", "val x = 1; val y = 2")
        x, y = doc.declarations
        assert doc.text[x.start:x.end] == "val x = 1;"
        assert y.name == "y"

    def test_leaf_at_out_of_range(self):
        doc = Document("/tmp/a.txt", "class C {}")
        assert doc.leaf_at(10) is None
        assert doc.leaf_at(-1) is None

    def test_enclosing_declaration_is_innermost(self):
        doc = Document("/tmp/a.kt", "class A {\n  fun b() {\n    x\n  }\n}\n")
        offset = doc.text.index("x")
        assert doc.enclosing_declaration(offset).name == "b"
