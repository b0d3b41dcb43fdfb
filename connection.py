import logging
import math
import os
import re
import threading
from dataclasses import dataclass

from errors import (
    AuthenticationFailed, ConnectionFailure, DiagnosticError, InvalidParameter, PermissionDenied,
    QueryCancelled, QueryFailed, QueryTimeout, Unreachable, redact,
)

DEFAULT_DRIVER = "{ODBC Driver 18 for SQL Server}"
DEFAULT_PASSWORD_ENV = "SQLDIAG_PASSWORD"

# Authentication modes that do not need a password from the environment.
PASSWORDLESS_AUTHENTICATION = {
    "ActiveDirectoryDefault",
    "ActiveDirectoryIntegrated",
    "ActiveDirectoryInteractive",
    "ActiveDirectoryMsi",
    "ActiveDirectoryManagedIdentity",
}

_AUTH_SQLSTATES = {"28000"}
_AUTH_NATIVE_ERRORS = {18456, 18452, 18486, 18487, 18488}
_UNREACHABLE_SQLSTATES = {"08001", "08S01", "08004", "IM002", "HYT00", "HYT01"}
# 229/230: object permission denied, 297/300: VIEW ... STATE missing,
# 262: CREATE/SHOWPLAN denied, 916/4060: cannot access/open the database.
_PERMISSION_NATIVE_ERRORS = {229, 230, 262, 297, 300, 916, 4060}
_TIMEOUT_SQLSTATES = {"HYT00", "HYT01"}
_CANCEL_SQLSTATES = {"HY008"}

_SQLSTATE_PATTERN = re.compile(r"^[0-9A-Z]{5}$")
_NATIVE_ERROR_PATTERN = re.compile(r"\((\d+)\)")


def _driver_error_parts(exc):
    """pyodbc errors carry (sqlstate, message) in args."""
    args = getattr(exc, "args", ())
    if len(args) >= 2 and isinstance(args[0], str) and _SQLSTATE_PATTERN.match(args[0]):
        return args[0], str(args[1])
    return None, str(exc)


def classify_driver_error(exc, connecting=False, identifier=None):
    """Map a driver exception onto the error taxonomy."""
    if isinstance(exc, DiagnosticError):
        return exc
    sqlstate, message = _driver_error_parts(exc)
    native = {int(n) for n in _NATIVE_ERROR_PATTERN.findall(message)}
    if sqlstate:
        message = f"[{sqlstate}] {message}"

    if sqlstate in _AUTH_SQLSTATES or native & _AUTH_NATIVE_ERRORS:
        return AuthenticationFailed(message, identifier)
    if native & _PERMISSION_NATIVE_ERRORS or "permission was denied" in message.lower():
        return PermissionDenied(message, identifier)
    if connecting:
        if sqlstate in _UNREACHABLE_SQLSTATES:
            return Unreachable(message, identifier)
        return ConnectionFailure(message, identifier)
    if sqlstate in _TIMEOUT_SQLSTATES:
        return QueryTimeout(message, identifier)
    if sqlstate in _CANCEL_SQLSTATES:
        return QueryCancelled(message, identifier)
    if sqlstate in _UNREACHABLE_SQLSTATES:
        return Unreachable(message, identifier)
    return QueryFailed(message, identifier)


def _odbc_value(value):
    """Brace a connection string value when it contains characters ODBC treats specially."""
    text = str(value)
    if any(ch in text for ch in ";{}=") or text != text.strip():
        return "{" + text.replace("}", "}}") + "}"
    return text


@dataclass(frozen=True)
class TargetDescriptor:
    """
    Where to connect and how to authenticate.

    Holds the *name* of the environment variable with the password, never
    the password itself.
    """

    server: str
    database: str = "master"
    username: str = None
    password_env: str = DEFAULT_PASSWORD_ENV
    driver: str = DEFAULT_DRIVER
    authentication: str = None
    encrypt: str = "yes"
    trust_server_certificate: str = "no"
    login_timeout: int = 10

    @classmethod
    def from_config(cls, config, environ=None):
        environ = os.environ if environ is None else environ
        server = environ.get("SQLDIAG_SERVER") or config.get("server")
        if not server:
            raise ConnectionFailure("no server configured (set 'server' or SQLDIAG_SERVER)")
        try:
            login_timeout = int(config.get("login_timeout", 10))
        except (TypeError, ValueError):
            raise InvalidParameter(
                f"login_timeout must be a whole number of seconds, got {config.get('login_timeout')!r}"
            ) from None
        return cls(
            server=server,
            database=environ.get("SQLDIAG_DATABASE") or config.get("database", "master"),
            username=environ.get("SQLDIAG_USERNAME") or config.get("username"),
            password_env=config.get("password_env", DEFAULT_PASSWORD_ENV),
            driver=config.get("driver", DEFAULT_DRIVER),
            authentication=config.get("authentication"),
            encrypt=config.get("encrypt", "yes"),
            trust_server_certificate=config.get("trust_server_certificate", "no"),
            login_timeout=login_timeout,
        )

    def __str__(self):
        return f"{self.server}/{self.database}"

    def connection_string(self, password=None):
        parts = [
            ("DRIVER", self.driver),
            ("SERVER", self.server),
            ("DATABASE", self.database),
        ]
        if self.authentication:
            parts.append(("Authentication", self.authentication))
        if self.username:
            parts.append(("UID", self.username))
        if password is not None:
            parts.append(("PWD", password))
        parts += [
            ("Encrypt", self.encrypt),
            ("TrustServerCertificate", self.trust_server_certificate),
            ("ApplicationIntent", "ReadOnly"),
            ("APP", "sqldiag"),
        ]
        # the driver name keeps its own braces
        return "".join(
            f"{key}={value if key == 'DRIVER' else _odbc_value(value)};" for key, value in parts
        )


def _pyodbc_connect(connection_string, timeout):
    import pyodbc

    return pyodbc.connect(connection_string, timeout=timeout, readonly=True, autocommit=True)


class ScopedConnection:
    """
    A connection owned by one invocation and used by one statement at a time.

    Use as a context manager; the connection is closed on every exit path.
    """

    def __init__(self, raw, provider, target):
        self._raw = raw
        self.provider = provider
        self.target = target
        self._cursor = None
        self._lock = threading.Lock()
        self.logger = logging.getLogger("ScopedConnection")

    @property
    def closed(self):
        return self._raw is None

    def execute(self, sql, args=(), timeout=None):
        """Run one statement and return its rows as dicts keyed by column name."""
        if not self._lock.acquire(blocking=False):
            raise QueryFailed(f"connection to {self.target} is already running a statement")
        try:
            if self._raw is None:
                raise QueryFailed(f"connection to {self.target} is closed")
            if timeout:
                self._raw.timeout = max(1, int(math.ceil(timeout)))
            cursor = self._raw.cursor()
            self._cursor = cursor
            try:
                cursor.execute(sql, *args)
                columns = [d[0] for d in cursor.description] if cursor.description else []
                return [dict(zip(columns, row)) for row in cursor.fetchall()]
            finally:
                self._cursor = None
                try:
                    cursor.close()
                except Exception as e:
                    self.logger.debug(f"Ignoring error while closing cursor: {redact(e)}")
        except DiagnosticError:
            raise
        except Exception as e:
            raise classify_driver_error(e) from e
        finally:
            self._lock.release()

    def cancel(self):
        """Ask the server to stop the statement in flight, if any."""
        cursor = self._cursor
        if cursor is None:
            return False
        try:
            cursor.cancel()
            return True
        except Exception as e:
            self.logger.debug(f"Cancel on {self.target} failed: {redact(e)}")
            return False

    def sibling(self):
        """A new scoped connection to the same target."""
        return self.provider.acquire(self.target)

    def close(self):
        raw, self._raw = self._raw, None
        if raw is None:
            return
        try:
            raw.close()
        except Exception as e:
            self.logger.debug(f"Ignoring error while closing connection: {redact(e)}")

    def __enter__(self):
        return self

    def __exit__(self, exc_type, exc, tb):
        self.close()
        return False


class ConnectionProvider:
    """Opens short-lived read-only connections through the ODBC driver."""

    def __init__(self, connect=None, environ=None):
        self._connect = connect or _pyodbc_connect
        self._environ = os.environ if environ is None else environ
        self.logger = logging.getLogger("ConnectionProvider")

    def _password(self, target):
        if target.authentication in PASSWORDLESS_AUTHENTICATION:
            return None
        password = self._environ.get(target.password_env)
        if not password:
            raise AuthenticationFailed(
                f"no password available: environment variable {target.password_env} is not set"
            )
        if not target.username:
            raise AuthenticationFailed("SQL authentication needs a username")
        return password

    def acquire(self, target):
        password = self._password(target)
        connection_string = target.connection_string(password)
        self.logger.debug(f"Connecting with {redact(connection_string)}")
        try:
            raw = self._connect(connection_string, target.login_timeout)
        except Exception as e:
            error = classify_driver_error(e, connecting=True)
            self.logger.error(f"Failed to connect to {target}: {error.message}")
            raise error from e
        self.logger.info(f"Connected to {target}")
        return ScopedConnection(raw, self, target)
