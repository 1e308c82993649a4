"""
Tests for ProgramSynthesizer and diagnostic translation.
"""

import pytest

from notebook_go.declarations import DeclarationStore
from notebook_go.errors import CompileError, MergeConflictError
from notebook_go.goparse import parse_cell
from notebook_go.synthesizer import MAIN_FILE, TEST_FILE, LineMap, ProgramSynthesizer


def numbered(code: str):
    return [(n + 1, line) for n, line in enumerate(code.split("\n"))]


class TestProgramSynthesizer:
    """Test cases for program synthesis."""

    def setup_method(self):
        self.synth = ProgramSynthesizer()
        self.store = DeclarationStore()

    def remember(self, code: str, cell_id: int):
        self.store.merge(parse_cell(numbered(code), cell_id).declarations)

    def test_bare_statement_wrapped_in_main(self):
        self.remember("func Incr(x int) int {\n\treturn x + 1\n}", 1)
        cell = parse_cell(numbered("Incr(5)"), 2)

        program = self.synth.synthesize(self.store.snapshot(), cell, 2)

        assert program.filename == MAIN_FILE
        assert program.source == (
            "package main\n"
            "\n"
            "func Incr(x int) int {\n"
            "\treturn x + 1\n"
            "}\n"
            "\n"
            "func main() {\n"
            "Incr(5)\n"
            "}\n"
        )

    def test_sections_in_kind_order(self):
        self.remember('func F() {}\nvar v = 1\ntype T int\nimport "fmt"', 1)
        cell = parse_cell(numbered("func init() {}"), 2)

        source = self.synth.synthesize(self.store.snapshot(), cell, 2).source

        positions = [source.index(s) for s in
                     ('"fmt"', "type T", "var v", "func F", "func main", "func init")]
        assert positions == sorted(positions)

    def test_deterministic(self):
        self.remember('import "fmt"\nfunc A() { fmt.Println("a") }', 1)
        cell = parse_cell(numbered("A()"), 2)

        first = self.synth.synthesize(self.store.snapshot(), cell, 2)
        second = self.synth.synthesize(self.store.snapshot(), cell, 2)

        assert first.source == second.source
        assert first.line_map == second.line_map

    def test_does_not_mutate_store(self):
        self.remember("func A() {}", 1)
        before = self.store.snapshot()

        self.synth.synthesize(self.store.snapshot(), parse_cell(numbered("func B() {}"), 2), 2)

        assert self.store.snapshot() == before

    def test_cell_redefinition_wins(self):
        self.remember("func F() int { return 1 }", 1)
        cell = parse_cell(numbered("func F() int { return 2 }"), 2)

        source = self.synth.synthesize(self.store.snapshot(), cell, 2).source

        assert "return 2" in source
        assert "return 1" not in source

    def test_conflict_raises(self):
        self.remember("var x = 1", 1)
        cell = parse_cell(numbered("func x() {}"), 2)

        with pytest.raises(MergeConflictError):
            self.synth.synthesize(self.store.snapshot(), cell, 2)

    def test_user_main_used_as_entry(self):
        cell = parse_cell(numbered('func main() {\n\tprintln("hi")\n}'), 1)

        source = self.synth.synthesize(self.store.snapshot(), cell, 1).source

        assert source.count("func main()") == 1
        assert 'println("hi")' in source

    def test_named_init_emitted_as_init(self):
        self.remember("func init_a() { x = 1 }", 1)
        cell = parse_cell(numbered(""), 2)

        source = self.synth.synthesize(self.store.snapshot(), cell, 2).source

        assert "func init() { x = 1 }" in source
        assert "init_a" not in source

    def test_excluded_imports_omitted(self):
        self.remember('import "fmt"\nimport "strings"', 1)
        cell = parse_cell(numbered('fmt.Println("x")'), 2)

        program = self.synth.synthesize(self.store.snapshot(), cell, 2,
                                        exclude_imports=frozenset({"strings"}))

        assert '"strings"' not in program.source
        assert '"fmt"' in program.source
        assert program.excluded_imports == frozenset({"strings"})

    def test_test_mode(self):
        self.remember("func TestOld(t *testing.T) {}", 1)
        cell = parse_cell(numbered("func TestNew(t *testing.T) {}"), 2)

        program = self.synth.synthesize(self.store.snapshot(), cell, 2, test=True)

        assert program.filename == TEST_FILE
        assert program.is_test
        assert "func TestMain(m *nbgo_testing.M) {" in program.source
        assert "\tnbgo_os.Exit(m.Run())" in program.source
        assert '\tnbgo_os "os"' in program.source
        assert '\tnbgo_testing "testing"' in program.source
        assert '\t"testing"' in program.source
        assert "func main()" not in program.source
        assert program.test_selection == ["TestNew"]
        assert program.known_tests == ["TestOld", "TestNew"]

    def test_test_harness_independent_of_user_imports(self):
        cell = parse_cell(numbered(
            'import xos "os"\n'
            "func TestA(t *testing.T) { xos.Getenv(\"HOME\") }"
        ), 1)

        source = self.synth.synthesize(self.store.snapshot(), cell, 1, test=True).source

        assert source.startswith(
            "package main\n"
            "\n"
            "import (\n"
            '\txos "os"\n'
            '\tnbgo_os "os"\n'
            '\tnbgo_testing "testing"\n'
            '\t"testing"\n'
            ")\n"
        )
        assert "\tnbgo_os.Exit(m.Run())" in source

    def test_test_mode_keeps_user_testing_import(self):
        cell = parse_cell(numbered('import tst "testing"\nfunc TestA(t *tst.T) {}'), 1)

        source = self.synth.synthesize(self.store.snapshot(), cell, 1, test=True).source

        assert '\ttst "testing"' in source
        assert '\t"testing"' not in source

    def test_user_test_main_with_statements_rejected(self):
        cell = parse_cell(numbered(
            "func TestMain(m *testing.M) { m.Run() }\n"
            'println("setup")'
        ), 3)

        with pytest.raises(CompileError) as excinfo:
            self.synth.synthesize(self.store.snapshot(), cell, 3, test=True)

        diag = excinfo.value.diagnostics[0]
        assert (diag.cell_id, diag.cell_line) == (3, 2)
        assert diag.source_line == 'println("setup")'
        assert "func TestMain" in diag.message

    def test_user_test_main_replaces_harness(self):
        cell = parse_cell(numbered("func TestMain(m *testing.M) { m.Run() }"), 1)

        source = self.synth.synthesize(self.store.snapshot(), cell, 1, test=True).source

        assert source.count("func TestMain(") == 1
        assert "nbgo_" not in source

    def test_user_main_with_statements_rejected(self):
        cell = parse_cell(numbered('func main() {\n\tprintln("hi")\n}\nprintln("extra")'), 2)

        with pytest.raises(CompileError) as excinfo:
            self.synth.synthesize(self.store.snapshot(), cell, 2)

        diag = excinfo.value.diagnostics[0]
        assert (diag.cell_id, diag.cell_line) == (2, 4)
        assert str(diag).startswith("cell[2]:4: statements outside of declarations")

    def test_test_mode_selects_referenced_tests(self):
        self.remember("func TestOld(t *testing.T) {}", 1)
        cell = parse_cell(numbered("// runs TestOld again\n_ = TestOld"), 2)

        program = self.synth.synthesize(self.store.snapshot(), cell, 2, test=True)

        assert program.test_selection == ["TestOld"]


class TestLineMapping:
    """Test that compiler diagnostics are translated to cell positions."""

    def setup_method(self):
        self.synth = ProgramSynthesizer()
        self.store = DeclarationStore()
        self.store.merge(parse_cell(numbered("func A() {}"), 1).declarations)

    def test_every_cell_line_mapped(self):
        cell = parse_cell(numbered("x := 1\ny := Foo(x)"), 4)

        program = self.synth.synthesize(self.store.snapshot(), cell, 4)

        lines = program.lines
        foo_line = next(i for i, text in enumerate(lines, 1) if "Foo(x)" in text)
        assert program.line_map.translate(foo_line) == (4, 2)
        assert program.line_map.translate(1) is None

    def test_translate_injected_error(self):
        cell = parse_cell(numbered("x := 1\ny := Foo(x)"), 4)
        program = self.synth.synthesize(self.store.snapshot(), cell, 4)
        foo_line = next(i for i, text in enumerate(program.lines, 1) if "Foo(x)" in text)

        output = (
            "# notebook_go_abc\n"
            f"./main.go:{foo_line}:7: undefined: Foo\n"
        )
        diagnostics = program.translate_diagnostics(output)

        assert len(diagnostics) == 1
        diag = diagnostics[0]
        assert (diag.cell_id, diag.cell_line, diag.column) == (4, 2, 7)
        assert diag.message == "undefined: Foo"
        assert str(diag) == "cell[4]:2:7: undefined: Foo\n\ty := Foo(x)"

    def test_error_in_grouped_import_points_at_its_line(self):
        cell = parse_cell(numbered('import (\n\t"fmt"\n\t"x/y"\n)\nfmt.Println(y.Z)'), 5)
        program = self.synth.synthesize(self.store.snapshot(), cell, 5)
        import_line = program.lines.index('\t"x/y"') + 1

        diag = program.translate_diagnostics(
            f"./main.go:{import_line}:2: package x/y is not in std")[0]

        assert (diag.cell_id, diag.cell_line) == (5, 3)
        assert diag.source_line == '\t"x/y"'

    def test_error_in_memorized_declaration_points_at_its_cell(self):
        cell = parse_cell(numbered("A()"), 2)
        program = self.synth.synthesize(self.store.snapshot(), cell, 2)
        a_line = next(i for i, text in enumerate(program.lines, 1) if "func A()" in text)

        diag = program.translate_diagnostics(f"./main.go:{a_line}:6: oops")[0]

        assert (diag.cell_id, diag.cell_line) == (1, 1)

    def test_unmapped_line_kept_raw(self):
        cell = parse_cell(numbered("A()"), 2)
        program = self.synth.synthesize(self.store.snapshot(), cell, 2)

        diag = program.translate_diagnostics("./main.go:1:1: expected package")[0]

        assert diag.cell_id is None
        assert str(diag).startswith("./main.go:1:1: expected package")

    def test_other_files_not_translated(self):
        cell = parse_cell(numbered("A()"), 2)
        program = self.synth.synthesize(self.store.snapshot(), cell, 2)

        diag = program.translate_diagnostics("helper.go:3:1: boom")[0]

        assert diag.cell_id is None
        assert diag.source_line is None

    def test_line_map_equality(self):
        a, b = LineMap(), LineMap()
        a.add(3, 1, 1)
        b.add(3, 1, 1)

        assert a == b
        assert len(a) == 1
