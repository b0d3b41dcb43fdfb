import re

# Exit codes for the CLI. Order in EXIT_PRECEDENCE decides which one wins
# when a batch fails in more than one way.
EXIT_OK = 0
EXIT_QUERY_FAILED = 1
EXIT_USAGE = 2
EXIT_CONNECTION = 3
EXIT_PERMISSION = 4
EXIT_SCHEMA = 5
EXIT_TIMEOUT = 6
EXIT_CANCELLED = 7

EXIT_PRECEDENCE = (
    EXIT_CONNECTION,
    EXIT_PERMISSION,
    EXIT_SCHEMA,
    EXIT_TIMEOUT,
    EXIT_CANCELLED,
    EXIT_QUERY_FAILED,
    EXIT_USAGE,
)

_SECRET_PATTERN = re.compile(r"(PWD|Password)\s*=\s*(\{[^}]*\}|[^;]*)", re.IGNORECASE)


def redact(text):
    """Mask anything that looks like a password in an ODBC string or driver message."""
    if not text:
        return text
    return _SECRET_PATTERN.sub(lambda m: f"{m.group(1)}=***", str(text))


class DiagnosticError(Exception):
    """Base class. Every error carries a kind and, when known, the diagnostic it belongs to."""

    kind = "failed"
    exit_code = EXIT_QUERY_FAILED

    def __init__(self, message, identifier=None):
        super().__init__(redact(message))
        self.message = redact(message)
        self.identifier = identifier

    def __str__(self):
        if self.identifier:
            return f"{self.identifier}: {self.kind}: {self.message}"
        return f"{self.kind}: {self.message}"


class UnknownDiagnostic(DiagnosticError):
    kind = "unknown_diagnostic"
    exit_code = EXIT_USAGE


class InvalidParameter(DiagnosticError):
    kind = "invalid_parameter"
    exit_code = EXIT_USAGE


class ReadOnlyViolation(DiagnosticError):
    """Raised when a query is not a single SELECT statement."""

    kind = "read_only_violation"
    exit_code = EXIT_USAGE


class ConnectionFailure(DiagnosticError):
    kind = "connection_error"
    exit_code = EXIT_CONNECTION


class AuthenticationFailed(ConnectionFailure):
    kind = "authentication_failed"


class Unreachable(ConnectionFailure):
    kind = "unreachable"


class PermissionDenied(ConnectionFailure):
    """The login lacks a grant such as VIEW DATABASE STATE for a particular DMV."""

    kind = "permission_denied"
    exit_code = EXIT_PERMISSION


class SchemaMismatch(DiagnosticError):
    kind = "schema_mismatch"
    exit_code = EXIT_SCHEMA


class QueryFailed(DiagnosticError):
    kind = "failed"


class QueryTimeout(DiagnosticError):
    kind = "timed_out"
    exit_code = EXIT_TIMEOUT


class QueryCancelled(DiagnosticError):
    kind = "cancelled"
    exit_code = EXIT_CANCELLED


_EXIT_BY_KIND = {
    cls.kind: cls.exit_code
    for cls in (
        UnknownDiagnostic, InvalidParameter, ReadOnlyViolation, ConnectionFailure,
        AuthenticationFailed, Unreachable, PermissionDenied, SchemaMismatch,
        QueryFailed, QueryTimeout, QueryCancelled,
    )
}


def exit_code_for(kinds):
    """Pick the process exit code for a collection of error kinds."""
    codes = {_EXIT_BY_KIND.get(kind, EXIT_QUERY_FAILED) for kind in kinds}
    for code in EXIT_PRECEDENCE:
        if code in codes:
            return code
    return EXIT_OK
