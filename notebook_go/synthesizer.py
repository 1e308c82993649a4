"""
ProgramSynthesizer: builds one Go source file from memorized declarations
plus the current cell, and maps compiler diagnostics back to cell lines.
"""

import os
import re
from dataclasses import dataclass, field
from typing import Optional

from notebook_go.declarations import Declaration, DeclarationStore, DeclKind, StoreSnapshot
from notebook_go.errors import CompileError
from notebook_go.goparse import ParsedCell


MAIN_FILE = "main.go"
TEST_FILE = "main_test.go"

_DIAGNOSTIC_RE = re.compile(
    r"^(?P<file>[^\s:]+\.go):(?P<line>\d+)(?::(?P<col>\d+))?:\s*(?P<msg>.*)$"
)
_NAMED_INIT_RE = re.compile(r"^(\s*func\s+)init_\w+")
# The generated TestMain uses its own names for these, whatever the cell imports.
_HARNESS_IMPORTS = (("nbgo_os", "os"), ("nbgo_testing", "testing"))
_TESTING_REF_RE = re.compile(r"\btesting\.")


class LineMap:
    """Synthesized line (1-based) -> (cell id, 1-based line within the cell)."""

    def __init__(self):
        self._entries: dict[int, tuple[int, int]] = {}

    def add(self, line: int, cell_id: int, cell_line: int) -> None:
        self._entries[line] = (cell_id, cell_line)

    def translate(self, line: int) -> Optional[tuple[int, int]]:
        return self._entries.get(line)

    def __len__(self) -> int:
        return len(self._entries)

    def __eq__(self, other) -> bool:
        return isinstance(other, LineMap) and self._entries == other._entries


@dataclass
class Diagnostic:
    """A compiler message, translated to cell coordinates when possible."""
    file: str
    line: int
    column: Optional[int]
    message: str
    cell_id: Optional[int] = None
    cell_line: Optional[int] = None
    source_line: Optional[str] = None

    def __str__(self) -> str:
        col = f":{self.column}" if self.column else ""
        if self.cell_id is not None:
            where = f"cell[{self.cell_id}]:{self.cell_line}{col}"
        else:
            where = f"{self.file}:{self.line}{col}"
        text = f"{where}: {self.message}"
        if self.source_line is not None:
            text += f"\n\t{self.source_line.strip()}"
        return text


@dataclass
class SynthesizedProgram:
    """A complete Go file and the information needed to build and run it."""
    source: str
    line_map: LineMap
    filename: str = MAIN_FILE
    is_test: bool = False
    is_wasm: bool = False
    test_selection: list[str] = field(default_factory=list)
    known_tests: list[str] = field(default_factory=list)
    excluded_imports: frozenset = frozenset()

    @property
    def lines(self) -> list[str]:
        return self.source.split("\n")

    def translate_diagnostics(self, output: str) -> list[Diagnostic]:
        """Parse `go build` output into Diagnostics using the line map."""
        diagnostics = []
        lines = self.lines
        for raw in output.splitlines():
            m = _DIAGNOSTIC_RE.match(raw.strip())
            if m is None:
                continue
            diag = Diagnostic(
                file=m.group("file"),
                line=int(m.group("line")),
                column=int(m.group("col")) if m.group("col") else None,
                message=m.group("msg"),
            )
            if os.path.basename(diag.file) == self.filename:
                mapped = self.line_map.translate(diag.line)
                if mapped is not None:
                    diag.cell_id, diag.cell_line = mapped
                if 0 < diag.line <= len(lines):
                    diag.source_line = lines[diag.line - 1]
            diagnostics.append(diag)
        return diagnostics


class _Writer:
    def __init__(self):
        self.lines: list[str] = []
        self.line_map = LineMap()

    def emit(self, text: str = "", origin: Optional[tuple[int, int]] = None) -> None:
        for offset, line in enumerate(text.split("\n")):
            self.lines.append(line)
            if origin is not None:
                self.line_map.add(len(self.lines), origin[0], origin[1] + offset)

    def emit_decl(self, decl: Declaration, text: Optional[str] = None) -> None:
        self.emit(decl.source if text is None else text, (decl.cell_id, decl.line))
        self.emit()


class ProgramSynthesizer:
    """
    Merges a store snapshot with a parsed cell into a single Go program.

    The synthesizer is pure: the same snapshot and cell always produce the
    same bytes. It never mutates the store it's given.
    """

    def synthesize(self, snapshot: StoreSnapshot, cell: ParsedCell, cell_id: int,
                   test: bool = False, wasm: bool = False,
                   exclude_imports: frozenset = frozenset()) -> SynthesizedProgram:
        """
        Build the program for one cell.

        Raises:
            MergeConflictError: if the cell redeclares a name with another kind
            CompileError: if bare statements come with a user-defined entry point
        """
        preview = DeclarationStore()
        preview.restore(snapshot)
        preview.merge(cell.declarations)
        merged = preview.snapshot()

        user_test_main = any(d.identifier == "TestMain" for d in merged.funcs)
        if test and user_test_main:
            self._reject_statements(cell, cell_id, "a user-defined func TestMain")
        elif not test and cell.main is not None:
            self._reject_statements(cell, cell_id, "a user-defined func main")
        harness = test and not user_test_main

        w = _Writer()
        w.emit("package main")
        w.emit()
        self._emit_imports(w, merged, cell, test, harness, exclude_imports)
        for kind in (DeclKind.TYPE, DeclKind.VAR, DeclKind.FUNC):
            for decl in merged.by_kind(kind):
                w.emit_decl(decl)

        if harness:
            self._emit_entry(w, cell, cell_id, "func TestMain(m *nbgo_testing.M) {",
                             "\tnbgo_os.Exit(m.Run())")
        elif not test and cell.main is not None:
            w.emit_decl(cell.main)
        elif not test:
            self._emit_entry(w, cell, cell_id, "func main() {")

        for decl in merged.inits:
            text = decl.source
            if decl.identifier is not None:
                text = _NAMED_INIT_RE.sub(r"\1init", text, count=1)
            w.emit_decl(decl, text)

        return SynthesizedProgram(
            source="\n".join(w.lines).rstrip("\n") + "\n",
            line_map=w.line_map,
            filename=TEST_FILE if test else MAIN_FILE,
            is_test=test,
            is_wasm=wasm,
            test_selection=self._select_tests(preview, cell) if test else [],
            known_tests=preview.test_functions() if test else [],
            excluded_imports=frozenset(exclude_imports),
        )

    @staticmethod
    def _reject_statements(cell: ParsedCell, cell_id: int, entry: str) -> None:
        """Bare statements have no entry point to go in next to a user-defined one."""
        if not cell.statements:
            return
        number, text = cell.statements[0]
        raise CompileError([Diagnostic(
            file=f"cell[{cell_id}]", line=number, column=None,
            message=f"statements outside of declarations can't be used with {entry}",
            cell_id=cell_id, cell_line=number, source_line=text,
        )])

    @staticmethod
    def _emit_imports(w: _Writer, merged: StoreSnapshot, cell: ParsedCell, test: bool,
                      harness: bool, exclude_imports: frozenset) -> None:
        imports = [d for d in merged.imports if d.identifier not in exclude_imports]
        extra = [f'{alias} "{path}"' for alias, path in _HARNESS_IMPORTS] if harness else []
        # Test functions need "testing"; add it when no import of it is memorized.
        if test and not any(d.identifier == "testing" for d in merged.imports):
            code = [d.source for d in merged.all() if d.kind is not DeclKind.IMPORT]
            code += [text for _, text in cell.statements]
            if _TESTING_REF_RE.search("\n".join(code)):
                extra.append('"testing"')
        if not imports and not extra:
            return
        w.emit("import (")
        for decl in imports:
            w.emit("\t" + decl.source, (decl.cell_id, decl.line))
        for spec in extra:
            w.emit("\t" + spec)
        w.emit(")")
        w.emit()

    @staticmethod
    def _emit_entry(w: _Writer, cell: ParsedCell, cell_id: int, opening: str,
                    closing: Optional[str] = None) -> None:
        w.emit(opening)
        for number, text in cell.statements:
            w.emit(text, (cell_id, number))
        if closing:
            w.emit(closing)
        w.emit("}")
        w.emit()

    @staticmethod
    def _select_tests(preview: DeclarationStore, cell: ParsedCell) -> list[str]:
        selected = cell.test_names()
        statements = "\n".join(text for _, text in cell.statements)
        for name in preview.test_functions():
            if name not in selected and re.search(rf"\b{re.escape(name)}\b", statements):
                selected.append(name)
        return selected
