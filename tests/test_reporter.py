"""Tests for normalization, ranking and rendering."""

import csv
import io
import json
from datetime import datetime, timedelta
from decimal import Decimal

import pytest

from catalog import FieldSpec, FieldType, RankingPolicy
from conftest import sample_rows
from errors import SchemaMismatch
from reporter import coerce, normalize, rank, render, shape
from results import ResultSet, RunError, Status


class TestCoerce:
    @pytest.mark.parametrize("raw, expected", [
        ("42", 42),
        (" 7 ", 7),
        (Decimal("12"), 12),
        (3.0, 3),
        (True, 1),
        (None, None),
    ])
    def test_integer(self, raw, expected):
        assert coerce(raw, FieldType.INTEGER) == expected

    @pytest.mark.parametrize("raw", ["abc", 1.5, Decimal("2.25"), datetime(2024, 1, 1)])
    def test_integer_rejects_lossy_values(self, raw):
        with pytest.raises(SchemaMismatch):
            coerce(raw, FieldType.INTEGER, "wait_time_ms", "wait-stats")

    def test_float_from_decimal_and_text(self):
        assert coerce(Decimal("12.50"), FieldType.FLOAT) == 12.5
        assert coerce("0.25", FieldType.FLOAT) == 0.25

    def test_binary_becomes_hex(self):
        assert coerce(b"\x01\xab", FieldType.STRING) == "0x01AB"

    def test_timestamp_from_text(self):
        assert coerce("2024-10-01T12:30:00", FieldType.TIMESTAMP) == datetime(2024, 10, 1, 12, 30)

    def test_duration_from_milliseconds(self):
        assert coerce(1500, FieldType.DURATION) == timedelta(seconds=1.5)
        assert coerce("250", FieldType.DURATION) == timedelta(milliseconds=250)

    def test_mismatch_names_the_field(self):
        with pytest.raises(SchemaMismatch) as excinfo:
            coerce("yesterday", FieldType.TIMESTAMP, "end_time", "resource-stats")
        assert "end_time" in str(excinfo.value)
        assert excinfo.value.identifier == "resource-stats"


class TestNormalize:
    def test_missing_column_is_a_mismatch(self, catalog):
        definition = catalog.lookup("file-io-stats")
        rows = sample_rows(definition, count=1)
        del rows[0]["file_id"]

        with pytest.raises(SchemaMismatch) as excinfo:
            normalize(rows, definition)
        assert "file_id" in excinfo.value.message

    def test_field_order_follows_the_schema(self, catalog):
        definition = catalog.lookup("index-usage")
        raw = {k: v for k, v in reversed(list(sample_rows(definition, 1)[0].items()))}

        result = normalize([raw], definition)

        assert tuple(result.rows[0]) == definition.field_names

    def test_bare_schema(self):
        schema = (FieldSpec("wait_type", FieldType.STRING), FieldSpec("wait_time_ms", FieldType.INTEGER))

        result = normalize([{"wait_time_ms": "12", "wait_type": "CXPACKET"}], schema,
                           identifier="wait-stats")

        assert result.identifier == "wait-stats"
        assert result.fields == ("wait_type", "wait_time_ms")
        assert result.rows == ({"wait_type": "CXPACKET", "wait_time_ms": 12},)

    def test_bare_schema_cannot_derive_fields(self):
        schema = (FieldSpec("a", FieldType.INTEGER), FieldSpec("b", FieldType.STRING, derived=True))
        with pytest.raises(SchemaMismatch):
            normalize([{"a": 1}], schema)

    def test_empty_result(self, catalog):
        result = normalize([], catalog.lookup("blocking-chains"))
        assert result.rows == ()
        assert result.fields == catalog.lookup("blocking-chains").field_names


class TestRanking:
    def test_wait_stats_descending_by_wait_time(self, catalog):
        definition = catalog.lookup("wait-stats")
        rows = sample_rows(definition)
        for row, wait in zip(rows, (500, 9000, 100)):
            row["wait_time_ms"] = wait

        result = shape(rows, definition)

        assert result.column("wait_time_ms") == [9000, 500, 100]

    def test_absent_values_sort_last(self):
        rows = [{"v": None}, {"v": 1}, {"v": 3}]
        assert [r["v"] for r in rank(rows, RankingPolicy("v"))] == [3, 1, None]
        assert [r["v"] for r in rank(rows, RankingPolicy("v", descending=False))] == [1, 3, None]

    def test_ties_keep_their_order(self):
        rows = [{"v": 1, "n": "a"}, {"v": 2, "n": "b"}, {"v": 1, "n": "c"}]
        assert [r["n"] for r in rank(rows, RankingPolicy("v"))] == ["b", "a", "c"]

    def test_no_policy_keeps_driver_order(self):
        rows = [{"v": 1}, {"v": 3}]
        assert rank(rows, None) == tuple(rows)


@pytest.fixture
def mixed_results():
    ok = ResultSet(
        "wait-stats",
        ("wait_type", "wait_time_ms", "since"),
        (
            {"wait_type": "PAGEIOLATCH_SH", "wait_time_ms": 9000, "since": datetime(2024, 10, 1, 8)},
            {"wait_type": "CXPACKET", "wait_time_ms": 500, "since": None},
        ),
        elapsed_ms=12.0,
    )
    failed = RunError("top-cpu-queries", "permission_denied", "[42000] permission was denied (300)")
    return {"wait-stats": ok, "top-cpu-queries": failed}


class TestRender:
    def test_json(self, mixed_results):
        document = json.loads(render(mixed_results, "json"))

        ok, failed = document["diagnostics"]
        assert ok["status"] == "succeeded"
        assert ok["rows"][0] == {"wait_type": "PAGEIOLATCH_SH", "wait_time_ms": 9000,
                                 "since": "2024-10-01T08:00:00"}
        assert ok["rows"][1]["since"] is None
        assert failed["status"] == "failed"
        assert failed["error"]["kind"] == "permission_denied"

    def test_json_durations_are_milliseconds(self):
        result = ResultSet("active-queries", ("total_elapsed_time",),
                           ({"total_elapsed_time": timedelta(seconds=2.5)},))
        document = json.loads(render(result, "json"))
        assert document["diagnostics"][0]["rows"][0]["total_elapsed_time"] == 2500.0

    def test_csv_single_result_is_plain(self, mixed_results):
        text = render([mixed_results["wait-stats"]], "csv")
        rows = list(csv.reader(io.StringIO(text)))

        assert rows[0] == ["wait_type", "wait_time_ms", "since"]
        assert rows[1] == ["PAGEIOLATCH_SH", "9000", "2024-10-01T08:00:00"]
        assert rows[2] == ["CXPACKET", "500", ""]

    def test_csv_sections(self, mixed_results):
        text = render(mixed_results, "csv")
        assert text.startswith("# wait-stats\n")
        assert "# top-cpu-queries: failed (permission_denied)" in text

    def test_table(self, mixed_results):
        text = render(mixed_results, "table")
        assert "wait-stats (2 rows" in text
        assert "PAGEIOLATCH_SH" in text
        # markup characters in driver messages are printed literally
        assert "[42000]" in text

    def test_pending_status_is_rendered(self):
        pending = RunError("sessions", "cancelled", "not started", Status.PENDING)
        document = json.loads(render([pending], "json"))
        assert document["diagnostics"][0]["status"] == "pending"

    def test_unknown_format(self, mixed_results):
        with pytest.raises(ValueError):
            render(mixed_results, "xml")
