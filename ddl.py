"""
CREATE INDEX text for missing-index suggestions.

Pure text generation. The statement is shown to the operator for review
and is never executed by this tool.
"""

import re

from errors import InvalidParameter

MAX_IDENTIFIER_LENGTH = 128

_BRACKETED = r"\[(?:[^\]]|\]\])+\]"
_COLUMN_LIST = re.compile(rf"^\s*{_BRACKETED}(\s*,\s*{_BRACKETED})*\s*$")
_COLUMN = re.compile(r"\[((?:[^\]]|\]\])+)\]")
_UNSAFE_NAME_CHARS = re.compile(r"[^A-Za-z0-9_]+")


def quote_identifier(name):
    return "[" + name.replace("]", "]]") + "]"


def parse_column_list(columns):
    """Split a DMV column list such as '[a], [b]' into bare names."""
    if columns is None or not columns.strip():
        return []
    if not _COLUMN_LIST.match(columns):
        raise InvalidParameter(f"unexpected column list format: {columns!r}")
    return [m.group(1).replace("]]", "]") for m in _COLUMN.finditer(columns)]


def index_name(table_name, key_columns, has_included):
    parts = ["IX", table_name] + list(key_columns)
    if has_included:
        parts.append("Included")
    name = _UNSAFE_NAME_CHARS.sub("_", "_".join(parts)).strip("_")
    return name[:MAX_IDENTIFIER_LENGTH]


def create_index_statement(table_schema, table_name, equality_columns=None,
                           inequality_columns=None, included_columns=None):
    """
    Build the CREATE INDEX statement for one suggestion.

    Equality columns come first in the key, then inequality columns, which
    is the order the optimizer reports them in.
    """
    if not table_name:
        raise InvalidParameter("missing index suggestion has no table name")
    keys = parse_column_list(equality_columns) + parse_column_list(inequality_columns)
    if not keys:
        raise InvalidParameter(f"missing index suggestion for {table_name} has no key columns")
    included = parse_column_list(included_columns)

    target = quote_identifier(table_name)
    if table_schema:
        target = quote_identifier(table_schema) + "." + target
    statement = (
        f"CREATE INDEX {quote_identifier(index_name(table_name, keys, bool(included)))}"
        f" ON {target} ({', '.join(quote_identifier(c) for c in keys)})"
    )
    if included:
        statement += f" INCLUDE ({', '.join(quote_identifier(c) for c in included)})"
    return statement + ";"


def missing_index_statement(row):
    """Derivation used by the missing-indexes diagnostic; absent when the table is gone."""
    if not row.get("table_name"):
        return None
    return create_index_statement(
        row.get("table_schema"),
        row["table_name"],
        row.get("equality_columns"),
        row.get("inequality_columns"),
        row.get("included_columns"),
    )
