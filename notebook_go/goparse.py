"""
Top-level Go declaration scanner.

This is not a Go parser: it only splits a cell into top-level declarations
and free-standing statements by tracking bracket depth, strings and comments.
Type checking is left to the `go` toolchain.
"""

import hashlib
import re
from dataclasses import dataclass, field
from typing import Optional

from notebook_go.declarations import Declaration, DeclKind, is_test_function


_FUNC_RE = re.compile(r"^func\s*(?:\((?P<recv>[^)]*)\)\s*)?(?P<name>[A-Za-z_]\w*)")
_TYPE_RE = re.compile(r"^\s*(?P<name>[A-Za-z_]\w*)")
_NAMES_RE = re.compile(r"^\s*(?P<names>[A-Za-z_]\w*(?:\s*,\s*[A-Za-z_]\w*)*)")
_IMPORT_SPEC_RE = re.compile(r'(?:(?P<alias>[A-Za-z_]\w*|\.)\s+)?"(?P<path>[^"]+)"')
_KEYWORD_RE = re.compile(r"^(?P<kw>import|type|var|const|func)\b")
_VERSION_RE = re.compile(r"^v\d+$")


@dataclass
class ParsedCell:
    """Result of scanning the code lines of one cell."""
    declarations: list[Declaration] = field(default_factory=list)
    statements: list[tuple[int, str]] = field(default_factory=list)
    main: Optional[Declaration] = None

    def test_names(self) -> list[str]:
        """Test* and Benchmark* functions introduced by this cell."""
        return [
            d.identifier for d in self.declarations
            if d.kind is DeclKind.FUNC and d.identifier and is_test_function(d.identifier)
        ]


class _BracketScanner:
    """Tracks bracket depth across lines, skipping strings, runes and comments."""

    def __init__(self):
        self.depth = 0
        self.in_raw = False
        self.in_comment = False

    @property
    def balanced(self) -> bool:
        return self.depth <= 0 and not self.in_raw and not self.in_comment

    def feed(self, line: str) -> None:
        i, n = 0, len(line)
        while i < n:
            c = line[i]
            if self.in_comment:
                if line.startswith("*/", i):
                    self.in_comment = False
                    i += 2
                else:
                    i += 1
                continue
            if self.in_raw:
                if c == "`":
                    self.in_raw = False
                i += 1
                continue
            if line.startswith("//", i):
                return
            if line.startswith("/*", i):
                self.in_comment = True
                i += 2
                continue
            if c == "`":
                self.in_raw = True
            elif c in "\"'":
                i = _skip_quoted(line, i)
                continue
            elif c in "({[":
                self.depth += 1
            elif c in ")}]":
                self.depth -= 1
            i += 1


def _skip_quoted(line: str, start: int) -> int:
    quote = line[start]
    i = start + 1
    while i < len(line):
        if line[i] == "\\":
            i += 2
            continue
        if line[i] == quote:
            return i + 1
        i += 1
    return i


def _blank_comments(text: str) -> str:
    """Replace comments with spaces, keeping offsets and newlines in place."""
    def blank(m: re.Match) -> str:
        return re.sub(r"[^\n]", " ", m.group(0))
    return re.sub(r"/\*.*?\*/|//[^\n]*", blank, text, flags=re.DOTALL)


def import_local_name(path: str, alias: Optional[str] = None) -> Optional[str]:
    """Package-scope name an import introduces; None for `_` and `.` imports."""
    if alias is not None:
        return None if alias in ("_", ".") else alias
    parts = [p for p in path.split("/") if p]
    if len(parts) > 1 and _VERSION_RE.match(parts[-1]):
        parts.pop()
    name = parts[-1] if parts else path
    name = re.sub(r"\.v\d+$", "", name)
    return re.sub(r"\W", "_", name.replace("go-", ""))


def _blank_identifier(source: str) -> str:
    return "_#" + hashlib.sha1(source.encode("utf-8")).hexdigest()[:8]


def _receiver_type(recv: str) -> str:
    tokens = recv.replace("*", " ").split()
    name = tokens[-1] if tokens else recv
    return name.split("[", 1)[0]


def parse_cell(lines: list[tuple[int, str]], cell_id: int = 0,
               main_from: Optional[int] = None) -> ParsedCell:
    """
    Split numbered code lines into declarations and bare statements.

    Args:
        lines: (1-based line number, text) pairs, directives already removed
        cell_id: Execution counter of the cell, recorded on each declaration
        main_from: Lines numbered after this one are always bare statements

    Returns:
        ParsedCell
    """
    parsed = ParsedCell()
    stmt_scanner = _BracketScanner()
    i = 0
    while i < len(lines):
        number, text = lines[i]
        stripped = text.strip()
        in_main = main_from is not None and number > main_from
        match = _KEYWORD_RE.match(text.lstrip()) if stmt_scanner.balanced else None

        if not in_main and stmt_scanner.balanced and (
                not stripped or stripped.startswith("//") or stripped.startswith("package ")):
            i += 1
            continue

        if in_main or match is None:
            stmt_scanner.feed(text)
            parsed.statements.append((number, text))
            i += 1
            continue

        # Collect the whole declaration.
        scanner = _BracketScanner()
        block = []
        while i < len(lines):
            block.append(lines[i])
            scanner.feed(lines[i][1])
            i += 1
            if scanner.balanced:
                break
        _add_declaration(parsed, match.group("kw"), block, cell_id)

    return parsed


def _add_declaration(parsed: ParsedCell, keyword: str, block: list[tuple[int, str]],
                     cell_id: int) -> None:
    line = block[0][0]
    source = "\n".join(text for _, text in block)
    body = source.lstrip()[len(keyword):]

    if keyword == "import":
        # Each import of a group keeps the cell line it was written on.
        start = source.index(keyword) + len(keyword)
        for spec in _IMPORT_SPEC_RE.finditer(_blank_comments(source), start):
            path, alias = spec.group("path"), spec.group("alias")
            local = import_local_name(path, alias)
            text = f'{alias} "{path}"' if alias else f'"{path}"'
            parsed.declarations.append(Declaration(
                kind=DeclKind.IMPORT, identifier=path, names=[local] if local else [],
                source=text, cell_id=cell_id, line=block[source.count("\n", 0, spec.start())][0],
                alias=alias,
            ))
        return

    if keyword == "func":
        m = _FUNC_RE.match(source.lstrip())
        if m is None:
            parsed.statements.extend(block)
            return
        name, recv = m.group("name"), m.group("recv")
        if recv:
            identifier = f"{_receiver_type(recv)}.{name}"
            decl = Declaration(kind=DeclKind.FUNC, identifier=identifier, names=[identifier],
                               source=source, cell_id=cell_id, line=line)
        elif name == "main":
            parsed.main = Declaration(kind=DeclKind.FUNC, identifier="main", names=["main"],
                                      source=source, cell_id=cell_id, line=line)
            return
        elif name == "init":
            decl = Declaration(kind=DeclKind.INIT, source=source, cell_id=cell_id, line=line)
        elif name.startswith("init_"):
            decl = Declaration(kind=DeclKind.INIT, identifier=name, names=[name],
                               source=source, cell_id=cell_id, line=line)
        else:
            decl = Declaration(kind=DeclKind.FUNC, identifier=name, names=[name],
                               source=source, cell_id=cell_id, line=line)
        parsed.declarations.append(decl)
        return

    kind = DeclKind.TYPE if keyword == "type" else DeclKind.VAR
    names = _group_names(body, kind) if body.lstrip().startswith("(") else _spec_names(body, kind)
    real = [n for n in names if n != "_"]
    identifier = real[0] if real else _blank_identifier(source)
    parsed.declarations.append(Declaration(
        kind=kind, identifier=identifier, names=names, source=source,
        cell_id=cell_id, line=line,
    ))


def _spec_names(spec: str, kind: DeclKind) -> list[str]:
    if kind is DeclKind.TYPE:
        m = _TYPE_RE.match(spec)
        return [m.group("name")] if m else []
    m = _NAMES_RE.match(spec)
    if m is None:
        return []
    return [n.strip() for n in m.group("names").split(",")]


def _group_names(body: str, kind: DeclKind) -> list[str]:
    inner = body.lstrip()[1:]
    names: list[str] = []
    scanner = _BracketScanner()
    for text in inner.split("\n"):
        if scanner.balanced and text.strip() and not text.strip().startswith(("//", ")")):
            for name in _spec_names(text, kind):
                if name not in names:
                    names.append(name)
        scanner.feed(text)
    return names
