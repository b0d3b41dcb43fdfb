"""Tests for the query catalog and the read-only guard."""

import textwrap

import pytest

from catalog import (
    Catalog, DiagnosticDefinition, FieldSpec, FieldType, RankingPolicy, ensure_read_only,
    load_catalog_file,
)
from errors import InvalidParameter, ReadOnlyViolation, UnknownDiagnostic

BUILTIN = [
    "active-queries", "blocking-chains", "file-io-stats", "index-fragmentation",
    "index-usage", "long-running-queries", "missing-indexes", "resource-stats",
    "sessions", "top-cpu-queries", "wait-stats",
]


def _definition(identifier="custom", query="SELECT 1 AS one", **kwargs):
    kwargs.setdefault("schema", (FieldSpec("one", FieldType.INTEGER),))
    return DiagnosticDefinition(identifier=identifier, title=identifier, query=query, **kwargs)


class TestBuiltinCatalog:
    def test_list_is_sorted(self, catalog):
        assert catalog.list() == BUILTIN

    def test_lookup(self, catalog):
        definition = catalog.lookup("wait-stats")
        assert definition.title
        assert definition.ranking == RankingPolicy("wait_time_ms", descending=True)
        assert definition.permission == "VIEW SERVER STATE"
        assert "wait_time_ms" in definition.field_names

    def test_unknown_identifier(self, catalog):
        with pytest.raises(UnknownDiagnostic) as excinfo:
            catalog.lookup("no-such-diagnostic")
        assert excinfo.value.identifier == "no-such-diagnostic"
        assert excinfo.value.exit_code == 2

    def test_every_placeholder_has_a_default(self, catalog):
        for definition in catalog:
            for name in definition.placeholders:
                assert name in definition.defaults, (definition.identifier, name)

    def test_missing_indexes_declares_a_derived_field(self, catalog):
        definition = catalog.lookup("missing-indexes")
        derived = [spec.name for spec in definition.schema if spec.derived]
        assert derived == ["create_index_statement"]
        assert "create_index_statement" not in [f.name for f in definition.query_fields]

    def test_catalog_cannot_be_changed(self, catalog):
        definition = catalog.lookup("sessions")
        with pytest.raises(TypeError):
            definition.defaults["row_limit"] = 1
        with pytest.raises(AttributeError):
            definition.query = "SELECT 1"


class TestResolve:
    def test_all_expands_to_every_diagnostic(self, catalog):
        assert catalog.resolve(["all"]) == BUILTIN

    def test_duplicates_are_dropped_in_caller_order(self, catalog):
        assert catalog.resolve(["wait-stats", "sessions", "wait-stats"]) == ["wait-stats", "sessions"]

    def test_unknown_names_are_kept_for_the_runner(self, catalog):
        assert catalog.resolve(["nope"]) == ["nope"]


class TestReadOnlyGuard:
    @pytest.mark.parametrize("sql", [
        "SELECT 1",
        "WITH x AS (SELECT 1 AS a) SELECT a FROM x;",
        "SELECT 'DROP TABLE t' AS note",
        "SELECT 1 -- DELETE FROM t\n",
        "SELECT 1 /* ; UPDATE t SET a = 1 */",
    ])
    def test_accepts_single_select(self, sql):
        assert ensure_read_only(sql) == sql

    @pytest.mark.parametrize("sql", [
        "DELETE FROM t",
        "SELECT 1; DROP TABLE t",
        "SELECT * INTO t2 FROM t",
        "EXEC sp_who2",
        "WITH x AS (SELECT 1 AS a) UPDATE x SET a = 2",
        "",
    ])
    def test_rejects_everything_else(self, sql):
        with pytest.raises(ReadOnlyViolation):
            ensure_read_only(sql)

    def test_catalog_refuses_a_writing_query(self):
        with pytest.raises(ReadOnlyViolation):
            Catalog([_definition(query="UPDATE t SET a = 1")])

    def test_every_builtin_query_passes(self, catalog):
        for definition in catalog:
            ensure_read_only(definition.query, definition.identifier)


class TestRegistrationChecks:
    def test_disallowed_placeholder(self):
        with pytest.raises(InvalidParameter):
            Catalog([_definition(query="SELECT 1 AS one WHERE :table_name = 'x'")])

    def test_placeholder_without_default(self):
        with pytest.raises(InvalidParameter):
            Catalog([_definition(query="SELECT TOP (:row_limit) 1 AS one")])

    def test_duplicate_identifier(self):
        with pytest.raises(InvalidParameter):
            Catalog([_definition(), _definition()])

    def test_ranking_field_must_exist(self):
        with pytest.raises(InvalidParameter):
            Catalog([_definition(ranking=RankingPolicy("missing"))])


class TestCatalogFile:
    def test_load(self, tmp_path):
        path = tmp_path / "catalog.yaml"
        path.write_text(textwrap.dedent("""\
            version: "2025.01-site"
            diagnostics:
              - id: db-size
                title: Database size
                query: |
                  SELECT TOP (:row_limit) name, size_mb
                  FROM sys.master_files
                fields:
                  - {name: name, type: string}
                  - {name: size_mb, type: float}
                defaults: {row_limit: 10}
                rank_by: size_mb
        """))

        catalog = load_catalog_file(str(path))

        assert catalog.version == "2025.01-site"
        assert catalog.list() == ["db-size"]
        definition = catalog.lookup("db-size")
        assert definition.placeholders == ("row_limit",)
        assert definition.ranking == RankingPolicy("size_mb", True)
        assert definition.schema[1] == FieldSpec("size_mb", FieldType.FLOAT)

    def test_unknown_derivation(self, tmp_path):
        path = tmp_path / "catalog.yaml"
        path.write_text(textwrap.dedent("""\
            diagnostics:
              - id: x
                query: SELECT 1 AS a
                fields: [{name: a, type: integer}, {name: b, derived: true}]
                derivations: {b: not_a_function}
        """))

        with pytest.raises(InvalidParameter):
            load_catalog_file(str(path))

    def test_broken_yaml(self, tmp_path):
        path = tmp_path / "catalog.yaml"
        path.write_text("diagnostics: [unclosed\n")

        with pytest.raises(InvalidParameter):
            load_catalog_file(str(path))

    def test_malformed_entry(self, tmp_path):
        path = tmp_path / "catalog.yaml"
        path.write_text("diagnostics:\n  - title: no id or query\n")

        with pytest.raises(InvalidParameter):
            load_catalog_file(str(path))
