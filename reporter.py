"""
Result normalization, ranking and rendering.

Everything here is pure: rows in, rows or text out. Writing the rendered
text anywhere is the caller's job.
"""

import csv
import io
import json
import re
from datetime import date, datetime, timedelta
from decimal import Decimal, InvalidOperation

from rich.console import Console
from rich.table import Table
from rich.text import Text

from catalog import DiagnosticDefinition, FieldType
from errors import DiagnosticError, SchemaMismatch
from results import ResultSet, RunError

FORMATS = ("table", "json", "csv")

TABLE_CELL_WIDTH = 80
DEFAULT_TABLE_WIDTH = 200

_INTEGER_TEXT = re.compile(r"^[+-]?\d+$")


def _mismatch(name, value, field_type, identifier):
    return SchemaMismatch(
        f"field {name}: cannot convert {value!r} ({type(value).__name__}) to {field_type.value}",
        identifier,
    )


def _to_decimal(value):
    try:
        return Decimal(str(value).strip())
    except InvalidOperation:
        return None


def coerce(value, field_type, name="value", identifier=None):
    """Convert one driver value to the declared semantic type. None stays None."""
    if value is None:
        return None
    field_type = FieldType(field_type)

    if field_type is FieldType.INTEGER:
        if isinstance(value, bool):
            return int(value)
        if isinstance(value, int):
            return value
        if isinstance(value, str) and _INTEGER_TEXT.match(value.strip()):
            return int(value.strip())
        if isinstance(value, (float, Decimal, str)):
            number = _to_decimal(value)
            if number is not None and number.is_finite() and number == number.to_integral_value():
                return int(number)
        raise _mismatch(name, value, field_type, identifier)

    if field_type is FieldType.FLOAT:
        if isinstance(value, (int, float, Decimal)) and not isinstance(value, bool):
            return float(value)
        if isinstance(value, str):
            number = _to_decimal(value)
            if number is not None:
                return float(number)
        raise _mismatch(name, value, field_type, identifier)

    if field_type is FieldType.STRING:
        if isinstance(value, str):
            return value
        if isinstance(value, (bytes, bytearray)):
            # binary hashes and handles, shown the way SSMS shows them
            return "0x" + bytes(value).hex().upper()
        if isinstance(value, (datetime, date)):
            return value.isoformat()
        return str(value)

    if field_type is FieldType.TIMESTAMP:
        if isinstance(value, datetime):
            return value
        if isinstance(value, date):
            return datetime(value.year, value.month, value.day)
        if isinstance(value, str):
            try:
                return datetime.fromisoformat(value.strip())
            except ValueError:
                pass
        raise _mismatch(name, value, field_type, identifier)

    if field_type is FieldType.DURATION:
        if isinstance(value, timedelta):
            return value
        if isinstance(value, (int, float, Decimal)) and not isinstance(value, bool):
            return timedelta(milliseconds=float(value))
        if isinstance(value, str):
            number = _to_decimal(value)
            if number is not None and number.is_finite():
                return timedelta(milliseconds=float(number))
        raise _mismatch(name, value, field_type, identifier)

    raise _mismatch(name, value, field_type, identifier)


def normalize(raw_rows, definition, elapsed_ms=0.0, identifier=None):
    """
    Shape driver rows into a ResultSet matching a schema.

    `definition` is a DiagnosticDefinition or a bare sequence of FieldSpec.
    The driver must return exactly the query's declared columns. Derived
    fields are computed afterwards from the coerced values, so a bare schema
    cannot declare any.
    """
    if isinstance(definition, DiagnosticDefinition):
        identifier = definition.identifier
        schema = definition.schema
        derivations = definition.derivations
    else:
        schema = tuple(definition)
        derivations = {}
    field_names = tuple(spec.name for spec in schema)
    expected_set = {spec.name for spec in schema if not spec.derived}
    rows = []
    for index, raw in enumerate(raw_rows):
        columns = set(raw)
        if columns != expected_set:
            missing = sorted(expected_set - columns)
            extra = sorted(columns - expected_set)
            raise SchemaMismatch(
                f"row {index}: missing columns {missing or '[]'}, unexpected columns {extra or '[]'}",
                identifier,
            )
        row = {}
        for spec in schema:
            if spec.derived:
                continue
            row[spec.name] = coerce(raw[spec.name], spec.type, spec.name, identifier)
        for spec in schema:
            if not spec.derived:
                continue
            if spec.name not in derivations:
                raise SchemaMismatch(f"derived field {spec.name} has no derivation", identifier)
            try:
                value = derivations[spec.name](row)
            except DiagnosticError as e:
                raise SchemaMismatch(f"row {index}: cannot derive {spec.name}: {e.message}",
                                     identifier) from e
            row[spec.name] = coerce(value, spec.type, spec.name, identifier)
        rows.append({name: row[name] for name in field_names})
    return ResultSet(identifier, field_names, tuple(rows), elapsed_ms)


def rank(rows, policy):
    """Stable sort by the policy's field; rows with an absent value go last."""
    if policy is None:
        return tuple(rows)
    present = [row for row in rows if row[policy.field] is not None]
    absent = [row for row in rows if row[policy.field] is None]
    present.sort(key=lambda row: row[policy.field], reverse=policy.descending)
    return tuple(present + absent)


def limit(rows, row_limit):
    if row_limit is None:
        return tuple(rows)
    return tuple(rows)[:row_limit]


def shape(raw_rows, definition, row_limit=None, elapsed_ms=0.0):
    """normalize, then rank by the definition's policy, then apply the row limit."""
    result = normalize(raw_rows, definition, elapsed_ms)
    rows = limit(rank(result.rows, definition.ranking), row_limit)
    return ResultSet(result.identifier, result.fields, rows, elapsed_ms)


def plain_value(value):
    """JSON/CSV friendly form: ISO timestamps, durations as milliseconds."""
    if isinstance(value, datetime):
        return value.isoformat()
    if isinstance(value, timedelta):
        return round(value.total_seconds() * 1000.0, 3)
    if isinstance(value, Decimal):
        return float(value)
    return value


def _items(result_sets):
    if hasattr(result_sets, "values"):
        return list(result_sets.values())
    if isinstance(result_sets, (ResultSet, RunError)):
        return [result_sets]
    return list(result_sets)


def _render_json(items):
    diagnostics = []
    for item in items:
        entry = {"identifier": item.identifier, "status": item.status.value,
                 "elapsed_ms": round(item.elapsed_ms, 3)}
        if isinstance(item, RunError):
            entry["error"] = {"kind": item.kind, "message": item.message}
        else:
            entry["fields"] = list(item.fields)
            entry["rows"] = [
                {name: plain_value(row[name]) for name in item.fields} for row in item.rows
            ]
        diagnostics.append(entry)
    return json.dumps({"diagnostics": diagnostics}, ensure_ascii=False, indent=2) + "\n"


def _render_csv(items):
    buffer = io.StringIO()
    writer = csv.writer(buffer, lineterminator="\n")
    sections = len(items) > 1
    for position, item in enumerate(items):
        if position:
            buffer.write("\n")
        if isinstance(item, RunError):
            buffer.write(f"# {item}\n")
            continue
        if sections:
            buffer.write(f"# {item.identifier}\n")
        writer.writerow(item.fields)
        for row in item.rows:
            writer.writerow(["" if row[name] is None else plain_value(row[name])
                             for name in item.fields])
    return buffer.getvalue()


def _cell(value):
    if value is None:
        return Text("-", style="dim")
    if isinstance(value, float):
        return Text(f"{value:,.2f}")
    if isinstance(value, timedelta):
        return Text(f"{value.total_seconds() * 1000.0:,.0f} ms")
    if isinstance(value, datetime):
        return Text(value.strftime("%Y-%m-%d %H:%M:%S"))
    text = " ".join(str(value).split())
    if len(text) > TABLE_CELL_WIDTH:
        text = text[:TABLE_CELL_WIDTH - 3] + "..."
    return Text(text)


def _render_table(items, width):
    buffer = io.StringIO()
    console = Console(file=buffer, width=width, color_system=None, force_terminal=False,
                      highlight=False)
    for item in items:
        if isinstance(item, RunError):
            console.print(Text(str(item)))
            continue
        table = Table(title=f"{item.identifier} ({len(item)} rows, {item.elapsed_ms:.0f} ms)")
        for name in item.fields:
            table.add_column(name, overflow="fold")
        for row in item.rows:
            table.add_row(*[_cell(row[name]) for name in item.fields])
        console.print(table)
    return buffer.getvalue()


def render(result_sets, fmt="table", width=DEFAULT_TABLE_WIDTH):
    """Serialize results (a mapping, a sequence, or a single result) as table, json or csv."""
    items = _items(result_sets)
    if fmt == "json":
        return _render_json(items)
    if fmt == "csv":
        return _render_csv(items)
    if fmt == "table":
        return _render_table(items, width)
    raise ValueError(f"unknown format {fmt!r}; expected one of {', '.join(FORMATS)}")
