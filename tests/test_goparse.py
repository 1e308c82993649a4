"""
Tests for the top-level Go declaration scanner.
"""

from notebook_go.declarations import DeclKind
from notebook_go.goparse import import_local_name, parse_cell


def numbered(code: str):
    return [(n + 1, line) for n, line in enumerate(code.split("\n"))]


class TestParseCell:
    """Test splitting cells into declarations and statements."""

    def test_function_and_statement(self):
        parsed = parse_cell(numbered(
            "func Incr(x int) int {\n"
            "\treturn x + 1\n"
            "}\n"
            "Incr(5)"
        ), cell_id=3)

        assert len(parsed.declarations) == 1
        func = parsed.declarations[0]
        assert func.kind is DeclKind.FUNC
        assert func.identifier == "Incr"
        assert func.cell_id == 3
        assert func.line == 1
        assert parsed.statements == [(4, "Incr(5)")]

    def test_imports_single_and_grouped(self):
        parsed = parse_cell(numbered(
            'import "fmt"\n'
            "import (\n"
            '\tstr "strings"\n'
            '\t_ "embed"\n'
            ")"
        ))

        imports = [(d.identifier, d.alias, d.names) for d in parsed.declarations]
        assert imports == [
            ("fmt", None, ["fmt"]),
            ("strings", "str", ["str"]),
            ("embed", "_", []),
        ]
        assert [d.line for d in parsed.declarations] == [1, 3, 4]

    def test_grouped_import_lines_skip_comments(self):
        parsed = parse_cell(numbered(
            "import ( // standard library\n"
            "\t/* formatting\n"
            '\t   "not/an/import" */\n'
            '\t"fmt"\n'
            ")"
        ))

        assert [(d.identifier, d.line) for d in parsed.declarations] == [("fmt", 4)]

    def test_method_keyed_by_receiver(self):
        parsed = parse_cell(numbered(
            "func (p *Point) String() string {\n"
            '\treturn "p"\n'
            "}"
        ))

        assert parsed.declarations[0].identifier == "Point.String"

    def test_generic_receiver(self):
        parsed = parse_cell(numbered("func (s Stack[T]) Len() int { return len(s) }"))

        assert parsed.declarations[0].identifier == "Stack.Len"

    def test_grouped_constants(self):
        parsed = parse_cell(numbered(
            "const (\n"
            "\tA = iota\n"
            "\tB\n"
            "\tC\n"
            ")"
        ))

        const = parsed.declarations[0]
        assert const.kind is DeclKind.VAR
        assert const.identifier == "A"
        assert const.names == ["A", "B", "C"]

    def test_multi_name_var(self):
        parsed = parse_cell(numbered("var x, y = 1, 2"))

        assert parsed.declarations[0].names == ["x", "y"]

    def test_blank_var_gets_content_key(self):
        a = parse_cell(numbered("var _ = fmt.Sprintf"))
        b = parse_cell(numbered("var _ = strings.ToUpper"))

        assert a.declarations[0].identifier.startswith("_#")
        assert a.declarations[0].identifier != b.declarations[0].identifier

    def test_struct_type_spanning_lines(self):
        parsed = parse_cell(numbered(
            "type Point struct {\n"
            "\tX, Y int // coordinates\n"
            "}\n"
            "p := Point{1, 2}"
        ))

        assert parsed.declarations[0].identifier == "Point"
        assert parsed.declarations[0].source.count("\n") == 2
        assert parsed.statements == [(4, "p := Point{1, 2}")]

    def test_braces_in_strings_and_comments_ignored(self):
        parsed = parse_cell(numbered(
            "func F() string {\n"
            '\ts := "}"  // }\n'
            "\t/* { */\n"
            "\treturn `{`\n"
            "}\n"
            "F()"
        ))

        assert len(parsed.declarations) == 1
        assert parsed.statements == [(6, "F()")]

    def test_init_blocks(self):
        parsed = parse_cell(numbered(
            "func init() { x = 1 }\n"
            "func init_setup() { x = 2 }"
        ))

        anon, named = parsed.declarations
        assert anon.kind is DeclKind.INIT and anon.identifier is None
        assert named.kind is DeclKind.INIT and named.identifier == "init_setup"

    def test_user_main_not_a_declaration(self):
        parsed = parse_cell(numbered('func main() {\n\tprintln("hi")\n}'))

        assert parsed.declarations == []
        assert parsed.main is not None
        assert parsed.main.source.startswith("func main()")

    def test_main_from_turns_declarations_into_statements(self):
        parsed = parse_cell([(1, "func A() {}"), (3, "var x = A"), (4, "_ = x")], main_from=2)

        assert [d.identifier for d in parsed.declarations] == ["A"]
        assert parsed.statements == [(3, "var x = A"), (4, "_ = x")]

    def test_package_clause_and_blank_lines_skipped(self):
        parsed = parse_cell(numbered("package main\n\n// comment\nfunc A() {}"))

        assert len(parsed.declarations) == 1
        assert parsed.statements == []

    def test_keyword_inside_statement_block_is_statement(self):
        parsed = parse_cell(numbered(
            "for i := 0; i < 3; i++ {\n"
            "\tvar y = i\n"
            "\t_ = y\n"
            "}"
        ))

        assert parsed.declarations == []
        assert len(parsed.statements) == 4

    def test_test_names(self):
        parsed = parse_cell(numbered(
            "func TestA(t *testing.T) {}\n"
            "func BenchmarkB(b *testing.B) {}\n"
            "func helper() {}"
        ))

        assert parsed.test_names() == ["TestA", "BenchmarkB"]


class TestImportLocalName:
    """Test the package name an import introduces."""

    def test_last_segment(self):
        assert import_local_name("net/http") == "http"

    def test_alias(self):
        assert import_local_name("strings", "str") == "str"

    def test_blank_and_dot(self):
        assert import_local_name("embed", "_") is None
        assert import_local_name("math", ".") is None

    def test_major_version_suffix(self):
        assert import_local_name("github.com/foo/bar/v2") == "bar"
        assert import_local_name("gopkg.in/yaml.v3") == "yaml"
