"""Shared fixtures: a scripted stand-in for the ODBC driver.

The fake follows pyodbc's surface closely enough for ScopedConnection:
connect() -> connection.cursor() -> execute/description/fetchall/cancel,
and errors carry (sqlstate, message) in args like pyodbc.Error.
"""

import threading
from datetime import datetime

import pytest

from catalog import FieldType, default_catalog
from connection import ConnectionProvider, TargetDescriptor
from params import bind

PASSWORD = "s3cret-Passw0rd"


class FakeDriverError(Exception):
    """Shaped like pyodbc.Error: args[0] is the SQLSTATE, args[1] the message."""


PERMISSION_ERROR = FakeDriverError(
    "42000",
    "[Microsoft][ODBC Driver 18 for SQL Server][SQL Server]VIEW SERVER STATE permission "
    "was denied on object 'server', database 'master'. (300) (SQLExecDirectW)",
)


class Response:
    def __init__(self, rows=None, error=None, delay=0.0, ignore_cancel=False):
        self.rows = rows or []
        self.error = error
        self.delay = delay
        self.ignore_cancel = ignore_cancel


class FakeCursor:
    def __init__(self, connection):
        self.connection = connection
        self.description = None
        self._rows = []
        self._cancelled = threading.Event()

    def execute(self, sql, *args):
        server = self.connection.server
        with server.lock:
            server.statements.append((sql, args))
            self.connection.statements.append(sql)
            server.in_flight += 1
            server.max_in_flight = max(server.max_in_flight, server.in_flight)
        try:
            response = server.response_for(sql)
            if response.delay:
                if response.ignore_cancel:
                    threading.Event().wait(response.delay)
                elif self._cancelled.wait(response.delay):
                    raise FakeDriverError("HY008", "[Microsoft][ODBC Driver 18 for SQL Server]Operation canceled")
            if response.error is not None:
                raise response.error
            columns = list(response.rows[0].keys()) if response.rows else []
            self.description = [(name, None, None, None, None, None, True) for name in columns]
            self._rows = [tuple(row[c] for c in columns) for row in response.rows]
        finally:
            with server.lock:
                server.in_flight -= 1
        return self

    def fetchall(self):
        return list(self._rows)

    def cancel(self):
        self.connection.server.cancels += 1
        self._cancelled.set()

    def close(self):
        pass


class FakeConnection:
    def __init__(self, server, connection_string, kwargs):
        self.server = server
        self.connection_string = connection_string
        self.kwargs = kwargs
        self.timeout = 0
        self.closed = False
        self.statements = []

    def cursor(self):
        return FakeCursor(self)

    def close(self):
        self.closed = True


class FakeServer:
    """Answers statements by exact (bound) SQL text or by a fragment of it."""

    def __init__(self):
        self.lock = threading.Lock()
        self.responses = []
        self.statements = []
        self.connections = []
        self.connect_errors = []
        self.in_flight = 0
        self.max_in_flight = 0
        self.cancels = 0

    def connect(self, connection_string, timeout):
        with self.lock:
            if self.connect_errors:
                raise self.connect_errors.pop(0)
            connection = FakeConnection(self, connection_string, {"timeout": timeout})
            self.connections.append(connection)
            return connection

    def respond(self, fragment, **kwargs):
        self.responses.insert(0, (fragment, Response(**kwargs)))

    def respond_to(self, definition, **kwargs):
        sql, _ = bind(definition.query, dict(definition.defaults))
        self.respond(sql, **kwargs)

    def response_for(self, sql):
        for fragment, response in self.responses:
            if fragment == sql or fragment in sql:
                return response
        raise FakeDriverError("42000", f"no scripted response for statement: {sql[:60]}")


def sample_value(name, field_type, index=0):
    if name.endswith("_columns"):
        return {
            "equality_columns": "[CustomerId]",
            "inequality_columns": "[OrderDate]",
            "included_columns": "[Total], [Status]",
        }[name]
    if field_type is FieldType.INTEGER:
        return 100 + index
    if field_type is FieldType.FLOAT:
        return 1.5 + index
    if field_type is FieldType.TIMESTAMP:
        return datetime(2024, 10, 1, 12, 0, index)
    if field_type is FieldType.DURATION:
        return 250 + index
    if name == "table_name":
        return "Orders"
    if name == "table_schema":
        return "dbo"
    return f"{name}-{index}"


def sample_rows(definition, count=3):
    return [
        {spec.name: sample_value(spec.name, spec.type, i) for spec in definition.query_fields}
        for i in range(count)
    ]


@pytest.fixture
def catalog():
    return default_catalog()


@pytest.fixture
def server(catalog):
    """A fake server with a plausible answer for every built-in diagnostic."""
    fake = FakeServer()
    for definition in catalog:
        fake.respond_to(definition, rows=sample_rows(definition))
    return fake


@pytest.fixture
def provider(server):
    return ConnectionProvider(connect=server.connect, environ={"SQLDIAG_PASSWORD": PASSWORD})


@pytest.fixture
def target():
    return TargetDescriptor(server="tcp:test.database.windows.net", database="appdb",
                            username="diag_reader")


@pytest.fixture
def connection(provider, target):
    with provider.acquire(target) as scoped:
        yield scoped
