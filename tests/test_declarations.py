"""
Tests for DeclarationStore.
"""

import pytest

from notebook_go.declarations import (
    Declaration, DeclarationStore, DeclKind, ResetMode, StoreSnapshot,
    is_benchmark, is_test_function,
)
from notebook_go.errors import MergeConflictError


def decl(kind, identifier, source=None, names=None, cell_id=1, alias=None):
    if names is None:
        names = [identifier] if identifier else []
    return Declaration(kind=kind, identifier=identifier, names=names,
                       source=source or f"{kind.value} {identifier}", cell_id=cell_id,
                       alias=alias)


class TestDeclarationStore:
    """Test cases for merging and removing declarations."""

    def setup_method(self):
        self.store = DeclarationStore()

    def test_merge_adds_declarations(self):
        self.store.merge([decl(DeclKind.FUNC, "Incr"), decl(DeclKind.TYPE, "Point")])

        assert len(self.store) == 2
        assert "Incr" in self.store
        assert "Point" in self.store

    def test_redefinition_keeps_one_entry_with_latest_text(self):
        self.store.merge([decl(DeclKind.FUNC, "F", "func F() int { return 1 }")])
        self.store.merge([decl(DeclKind.FUNC, "F", "func F() int { return 2 }", cell_id=2)])

        funcs = self.store.snapshot().funcs
        assert len(funcs) == 1
        assert funcs[0].source == "func F() int { return 2 }"
        assert funcs[0].cell_id == 2

    def test_redefinition_keeps_position(self):
        self.store.merge([decl(DeclKind.FUNC, "A"), decl(DeclKind.FUNC, "B"),
                          decl(DeclKind.FUNC, "C")])
        self.store.merge([decl(DeclKind.FUNC, "A", "func A() {}")])

        assert [d.identifier for d in self.store.snapshot().funcs] == ["A", "B", "C"]

    def test_kind_conflict_raises_and_leaves_store_unchanged(self):
        self.store.merge([decl(DeclKind.VAR, "x")])
        before = self.store.snapshot()

        with pytest.raises(MergeConflictError) as exc_info:
            self.store.merge([decl(DeclKind.FUNC, "y"), decl(DeclKind.FUNC, "x")])

        assert exc_info.value.identifier == "x"
        assert exc_info.value.existing_kind == "var"
        assert exc_info.value.new_kind == "func"
        assert self.store.snapshot() == before
        assert "y" not in self.store

    def test_conflict_within_one_cell(self):
        with pytest.raises(MergeConflictError):
            self.store.merge([decl(DeclKind.TYPE, "T"), decl(DeclKind.VAR, "T")])
        assert len(self.store) == 0

    def test_group_declaration_replaces_members(self):
        self.store.merge([decl(DeclKind.VAR, "a"), decl(DeclKind.VAR, "b")])
        self.store.merge([decl(DeclKind.VAR, "a", "var (\n\ta = 1\n\tb = 2\n)", names=["a", "b"])])

        vars_ = self.store.snapshot().vars
        assert len(vars_) == 1
        assert vars_[0].names == ["a", "b"]

    def test_import_alias_conflicts_with_other_kind(self):
        self.store.merge([decl(DeclKind.FUNC, "str")])

        with pytest.raises(MergeConflictError):
            self.store.merge([decl(DeclKind.IMPORT, "strings", names=["str"], alias="str")])

    def test_import_same_path_new_alias_replaces(self):
        self.store.merge([decl(DeclKind.IMPORT, "strings", names=["strings"])])
        self.store.merge([decl(DeclKind.IMPORT, "strings", names=["s"], alias="s")])

        imports = self.store.snapshot().imports
        assert len(imports) == 1
        assert imports[0].alias == "s"

    def test_anonymous_init_blocks_accumulate(self):
        self.store.merge([decl(DeclKind.INIT, None, "func init() {}")])
        self.store.merge([decl(DeclKind.INIT, None, "func init() {}", cell_id=2)])

        assert len(self.store.snapshot().inits) == 2

    def test_named_init_block_replaced(self):
        self.store.merge([decl(DeclKind.INIT, "init_a", "func init_a() { x = 1 }")])
        self.store.merge([decl(DeclKind.INIT, "init_a", "func init_a() { x = 2 }")])

        inits = self.store.snapshot().inits
        assert len(inits) == 1
        assert "x = 2" in inits[0].source

    def test_remove(self):
        self.store.merge([decl(DeclKind.FUNC, "F"), decl(DeclKind.INIT, "init_a")])

        removed, missing = self.store.remove(["F", "init_a", "nope"])

        assert [d.identifier for d in removed] == ["F", "init_a"]
        assert missing == ["nope"]
        assert len(self.store) == 0

    def test_remove_method(self):
        self.store.merge([decl(DeclKind.FUNC, "Point.String")])

        removed, _ = self.store.remove(["Point.String"])

        assert len(removed) == 1

    def test_full_reset_discards_everything(self):
        self.store.merge([decl(DeclKind.FUNC, "F"), decl(DeclKind.INIT, None, "func init() {}")])

        self.store.reset(ResetMode.FULL)

        assert len(self.store) == 0

    def test_manifest_only_reset_keeps_declarations(self):
        self.store.merge([decl(DeclKind.FUNC, "F")])

        self.store.reset(ResetMode.MANIFEST_ONLY)

        assert "F" in self.store

    def test_snapshot_orders_by_kind(self):
        self.store.merge([
            decl(DeclKind.FUNC, "F"),
            decl(DeclKind.INIT, None, "func init() {}"),
            decl(DeclKind.VAR, "v"),
            decl(DeclKind.TYPE, "T"),
            decl(DeclKind.IMPORT, "fmt"),
        ])

        kinds = [d.kind for d in self.store.snapshot().all()]
        assert kinds == [DeclKind.IMPORT, DeclKind.TYPE, DeclKind.VAR,
                         DeclKind.FUNC, DeclKind.INIT]

    def test_restore_round_trips_through_json(self):
        self.store.merge([decl(DeclKind.FUNC, "F"), decl(DeclKind.IMPORT, "fmt")])
        data = self.store.snapshot().model_dump(mode="json")

        other = DeclarationStore()
        other.restore(StoreSnapshot.model_validate(data))

        assert other.snapshot() == self.store.snapshot()

    def test_copy_is_independent(self):
        self.store.merge([decl(DeclKind.FUNC, "F")])
        copy = self.store.copy()
        copy.merge([decl(DeclKind.FUNC, "G")])

        assert "G" not in self.store
        assert "G" in copy


class TestTestFunctionNames:
    """Test recognition of test and benchmark functions."""

    def test_test_functions(self):
        assert is_test_function("TestA")
        assert is_test_function("Test_a")
        assert is_test_function("BenchmarkSort")
        assert not is_test_function("TestMain")
        assert not is_test_function("Testify")
        assert not is_test_function("helper")

    def test_benchmarks(self):
        assert is_benchmark("BenchmarkSort")
        assert not is_benchmark("TestSort")
