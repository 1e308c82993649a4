"""
DeclarationStore: memory of top-level Go declarations across cells.
"""

from enum import Enum
from typing import Iterable, Optional

from pydantic import BaseModel, ConfigDict, Field

from notebook_go.errors import MergeConflictError


class DeclKind(str, Enum):
    """Kind of top-level declaration. Order here is the synthesis order."""
    IMPORT = "import"
    TYPE = "type"
    VAR = "var"  # var or const
    FUNC = "func"
    INIT = "init"


KIND_ORDER = [DeclKind.IMPORT, DeclKind.TYPE, DeclKind.VAR, DeclKind.FUNC]


class ResetMode(str, Enum):
    FULL = "full"
    MANIFEST_ONLY = "manifest_only"


class Declaration(BaseModel):
    """
    A single top-level declaration.

    `identifier` is the storage key within its kind: the import path for
    imports, `Type.Method` for methods, the first name of a grouped
    `var (...)` / `const (...)` / `type (...)` block, `None` for anonymous
    `func init()` blocks. `names` lists every name the declaration brings
    into package scope and is what conflicts are checked against.
    """
    model_config = ConfigDict(frozen=True)

    kind: DeclKind
    identifier: Optional[str] = None
    names: list[str] = Field(default_factory=list)
    source: str
    cell_id: int = 0
    line: int = 1
    alias: Optional[str] = None

    @property
    def is_anonymous(self) -> bool:
        return self.identifier is None

    def scope_names(self) -> set[str]:
        """Names this declaration occupies, ignoring the blank identifier."""
        return {n for n in self.names if n and n != "_"}

    def label(self) -> str:
        if self.identifier is None:
            return f"{self.kind.value} (anonymous, cell {self.cell_id})"
        return f"{self.kind.value} {self.identifier}"


class StoreSnapshot(BaseModel):
    """Immutable, ordered view of the store used for synthesis."""
    model_config = ConfigDict(frozen=True)

    imports: tuple[Declaration, ...] = ()
    types: tuple[Declaration, ...] = ()
    vars: tuple[Declaration, ...] = ()
    funcs: tuple[Declaration, ...] = ()
    inits: tuple[Declaration, ...] = ()

    def by_kind(self, kind: DeclKind) -> tuple[Declaration, ...]:
        return {
            DeclKind.IMPORT: self.imports,
            DeclKind.TYPE: self.types,
            DeclKind.VAR: self.vars,
            DeclKind.FUNC: self.funcs,
            DeclKind.INIT: self.inits,
        }[kind]

    def all(self) -> list[Declaration]:
        return [*self.imports, *self.types, *self.vars, *self.funcs, *self.inits]


def _key(decl: Declaration) -> tuple[DeclKind, Optional[str]]:
    return (decl.kind, decl.identifier)


class DeclarationStore:
    """
    Persistent memory of top-level declarations.

    Declarations live in an insertion-ordered mapping keyed by
    (kind, identifier); init-blocks live in a separate ordered list.
    The store is only ever mutated between executions by the kernel.
    """

    def __init__(self):
        self._decls: dict[tuple[DeclKind, Optional[str]], Declaration] = {}
        self._inits: list[Declaration] = []

    def __len__(self) -> int:
        return len(self._decls) + len(self._inits)

    def __contains__(self, identifier: str) -> bool:
        return self.get(identifier) is not None

    def copy(self) -> "DeclarationStore":
        other = DeclarationStore()
        other._decls = dict(self._decls)
        other._inits = list(self._inits)
        return other

    def get(self, identifier: str) -> Optional[Declaration]:
        """Find a declaration by identifier, scope name or import alias."""
        for decl in self._entries():
            if decl.identifier == identifier or identifier in decl.scope_names():
                return decl
        return None

    def _entries(self) -> list[Declaration]:
        return [*self._decls.values(), *self._inits]

    def merge(self, new_decls: Iterable[Declaration]) -> None:
        """
        Merge declarations from a cell into the store.

        A declaration replaces, in place, every stored entry of the same kind
        sharing its key or one of its names. Reusing a name with a different
        kind raises MergeConflictError and leaves the store untouched.
        """
        decls = dict(self._decls)
        inits = list(self._inits)
        for decl in new_decls:
            self._check_conflict(decls.values(), inits, decl)
            if decl.kind is DeclKind.INIT:
                inits = self._place_init(inits, decl)
            else:
                decls = self._place(decls, decl)
        self._decls = decls
        self._inits = inits

    @staticmethod
    def _check_conflict(decls, inits, decl: Declaration) -> None:
        names = decl.scope_names()
        if not names:
            return
        for existing in [*decls, *inits]:
            if existing.kind is decl.kind:
                continue
            clash = names & existing.scope_names()
            if clash:
                raise MergeConflictError(
                    sorted(clash)[0], existing.kind.value, decl.kind.value
                )

    @staticmethod
    def _matches(existing: Declaration, decl: Declaration) -> bool:
        if existing.kind is not decl.kind:
            return False
        if _key(existing) == _key(decl):
            return True
        return bool(existing.scope_names() & decl.scope_names())

    def _place(self, decls: dict, decl: Declaration) -> dict:
        if not any(self._matches(d, decl) for d in decls.values()):
            decls[_key(decl)] = decl
            return decls
        placed = {}
        inserted = False
        for key, existing in decls.items():
            if self._matches(existing, decl):
                if not inserted:
                    placed[_key(decl)] = decl
                    inserted = True
                continue
            placed[key] = existing
        return placed

    @staticmethod
    def _place_init(inits: list, decl: Declaration) -> list:
        if decl.identifier is None:
            return inits + [decl]
        for i, existing in enumerate(inits):
            if existing.identifier == decl.identifier:
                return inits[:i] + [decl] + inits[i + 1:]
        return inits + [decl]

    def remove(self, identifiers: Iterable[str]) -> tuple[list[Declaration], list[str]]:
        """
        Remove declarations by identifier, scope name or import path.

        Anonymous init-blocks can't be targeted. Returns (removed, not_found).
        """
        removed: list[Declaration] = []
        missing: list[str] = []
        for identifier in identifiers:
            found = False
            for key, decl in list(self._decls.items()):
                if decl.identifier == identifier or identifier in decl.scope_names():
                    del self._decls[key]
                    removed.append(decl)
                    found = True
            for decl in list(self._inits):
                if decl.identifier is not None and decl.identifier == identifier:
                    self._inits.remove(decl)
                    removed.append(decl)
                    found = True
            if not found:
                missing.append(identifier)
        return removed, missing

    def reset(self, mode: ResetMode = ResetMode.FULL) -> None:
        """Discard all declarations. Manifest-only resets keep them."""
        if mode is ResetMode.FULL:
            self._decls.clear()
            self._inits.clear()

    def snapshot(self) -> StoreSnapshot:
        groups = {kind: [] for kind in KIND_ORDER}
        for decl in self._decls.values():
            groups[decl.kind].append(decl)
        return StoreSnapshot(
            imports=tuple(groups[DeclKind.IMPORT]),
            types=tuple(groups[DeclKind.TYPE]),
            vars=tuple(groups[DeclKind.VAR]),
            funcs=tuple(groups[DeclKind.FUNC]),
            inits=tuple(self._inits),
        )

    def identifiers(self) -> list[str]:
        return [d.identifier for d in self.snapshot().all() if d.identifier is not None]

    def test_functions(self) -> list[str]:
        """Names of memorized Test* and Benchmark* functions, in store order."""
        return [
            d.identifier for d in self.snapshot().funcs
            if d.identifier and is_test_function(d.identifier)
        ]

    def restore(self, snapshot: StoreSnapshot) -> None:
        """Replace the whole content of the store with a snapshot."""
        self._decls = {_key(d): d for d in [*snapshot.imports, *snapshot.types,
                                            *snapshot.vars, *snapshot.funcs]}
        self._inits = list(snapshot.inits)


def is_test_function(name: str) -> bool:
    for prefix in ("Test", "Benchmark"):
        if name.startswith(prefix) and name != "TestMain":
            rest = name[len(prefix):]
            if not rest or not rest[0].islower():
                return True
    return False


def is_benchmark(name: str) -> bool:
    return name.startswith("Benchmark") and is_test_function(name)
