import enum
from dataclasses import dataclass, field

from errors import DiagnosticError


class Status(str, enum.Enum):
    PENDING = "pending"
    EXECUTING = "executing"
    SUCCEEDED = "succeeded"
    FAILED = "failed"
    TIMED_OUT = "timed_out"
    CANCELLED = "cancelled"


TERMINAL_STATUSES = frozenset({Status.SUCCEEDED, Status.FAILED, Status.TIMED_OUT, Status.CANCELLED})


@dataclass(frozen=True)
class ResultSet:
    """Normalized rows of one diagnostic. Every row has exactly `fields` as keys."""

    identifier: str
    fields: tuple
    rows: tuple
    elapsed_ms: float = field(default=0.0, compare=False)

    status = Status.SUCCEEDED
    ok = True

    def __len__(self):
        return len(self.rows)

    def column(self, name):
        return [row[name] for row in self.rows]


@dataclass(frozen=True)
class RunError:
    identifier: str
    kind: str
    message: str
    status: Status = Status.FAILED
    elapsed_ms: float = field(default=0.0, compare=False)

    ok = False

    @classmethod
    def from_exception(cls, identifier, exc, elapsed_ms=0.0, status=None):
        if isinstance(exc, DiagnosticError):
            kind, message = exc.kind, exc.message
        else:
            kind, message = "failed", str(exc) or exc.__class__.__name__
        if status is None:
            status = {
                "timed_out": Status.TIMED_OUT,
                "cancelled": Status.CANCELLED,
            }.get(kind, Status.FAILED)
        return cls(identifier, kind, message, status, elapsed_ms)

    def __str__(self):
        return f"{self.identifier}: {self.status.value} ({self.kind}): {self.message}"
