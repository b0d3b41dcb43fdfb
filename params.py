import re
from dataclasses import dataclass, fields, replace

from errors import InvalidParameter

# Placeholders a catalog query may use. Anything else is rejected at
# registration time.
ALLOWED_PLACEHOLDERS = frozenset({
    "lookback_hours",
    "row_limit",
    "fragmentation_threshold",
    "excluded_wait_types",
})

# Benign background waits that drown out the interesting ones.
DEFAULT_EXCLUDED_WAIT_TYPES = (
    "BROKER_EVENTHANDLER", "BROKER_RECEIVE_WAITFOR", "BROKER_TASK_STOP", "BROKER_TO_FLUSH",
    "BROKER_TRANSMITTER", "CHECKPOINT_QUEUE", "CHKPT", "CLR_AUTO_EVENT", "CLR_MANUAL_EVENT",
    "CLR_SEMAPHORE", "DBCC_SPECIFY_SYSTEM_MESSAGES", "DBMIRROR_DBM_EVENT", "DBMIRROR_EVENTS_QUEUE",
    "DBMIRROR_WORKER_QUEUE", "DBMIRRORING_CMD", "DIRTY_PAGE_POLL", "DISPATCHER_QUEUE_SEMAPHORE",
    "DTC_STATE", "DTC_TMDOWN_REQUEST", "DTC_TMREQUEST", "EXECSYNC", "EXTENDED_PROCEDURE_CALL",
    "FSAGENT", "FT_IFTS_SCHEDULER_IDLE_WAIT", "FT_IFTSHC_MUTEX", "HADR_CLUSAPI_CALL",
    "HADR_FILESTREAM_IOMGR_IOCOMPLETION", "HADR_LOGCAPTURE_WAIT", "HADR_NOTIFICATION_DEQUEUE",
    "HADR_TIMER_TASK", "HADR_WORK_QUEUE", "KSOURCE_WAKEUP", "KTM_ENLISTMENT", "LAZYWRITER_SLEEP",
    "LOGMGR_QUEUE", "MEMORY_ALLOCATION_EXT", "ONDEMAND_TASK_QUEUE",
    "PREEMPTIVE_OS_FOR_REPLICATION_AGENTS", "PREEMPTIVE_OS_GETPROCADDRESS",
    "PREEMPTIVE_OS_WAITFORSINGLEOBJECT", "PREEMPTIVE_OS_WRITEFILE", "PREEMPTIVE_XE_GETTARGETSTATE",
    "PWAIT_ALL_COMPONENTS_INITIALIZED", "PWAIT_DIRECTLOGCONSUMER_GETNEXT",
    "PWAIT_EXTENSIBILITY_CLEANUP", "PWAIT_EXTENSIBILITY_MANAGER", "QDS_ASYNC_QUEUE",
    "QDS_CLEANUP_STALE", "QDS_PERSIST_TASK_MAIN_LOOP_SLEEP", "QDS_SHUTDOWN_QUEUE",
    "REQUEST_FOR_DEADLOCK_SEARCH", "RESOURCE_QUEUE", "SERVER_IDLE_CHECK", "SLEEP_BPOOL_FLUSH",
    "SLEEP_DBSTARTUP", "SLEEP_DCOMSTARTUP", "SLEEP_MASTERDBREADY", "SLEEP_MASTERMDREADY",
    "SLEEP_MASTERUPGRADED", "SLEEP_MSDBSTARTUP", "SLEEP_SYSTEMTASK", "SLEEP_TASK",
    "SLEEP_TEMPDBSTARTUP", "SNI_HTTP_ACCEPT", "SP_SERVER_DIAGNOSTICS_SLEEP",
    "SQLTRACE_BUFFER_FLUSH", "SQLTRACE_INCREMENTAL_FLUSH_SLEEP", "SQLTRACE_WAIT_ENTRIES",
    "WAIT_FOR_RESULTS", "WAITFOR", "WAITFOR_TASKSHUTDOWN", "WAIT_XTP_CKPT_CLOSE",
    "WAIT_XTP_HOST_WAIT", "WAIT_XTP_OFFLINE_CKPT_NEW_LOG", "WAIT_XTP_RECOVERY",
    "XE_DISPATCHER_JOIN", "XE_DISPATCHER_WAIT", "XE_TIMER_EVENT", "XTP_PREEMPTIVE_TASK",
)

MAX_LOOKBACK_HOURS = 24 * 30
MAX_ROW_LIMIT = 10000
MAX_CONCURRENCY = 16

_LOOKBACK_PATTERN = re.compile(r"^\s*(\d+)\s*([hd]?)\s*$", re.IGNORECASE)
_WAIT_TYPE_PATTERN = re.compile(r"^[A-Z0-9_]+$")

# String literals and comments are copied through untouched; only bare
# :name tokens outside them are placeholders.
_TOKEN_PATTERN = re.compile(
    r"(?P<literal>N?'(?:[^']|'')*')"
    r"|(?P<line_comment>--[^\n]*)"
    r"|(?P<block_comment>/\*.*?\*/)"
    r"|(?<![:\w]):(?P<name>[A-Za-z_]\w*)",
    re.DOTALL,
)


def parse_lookback(value):
    """Turn '24h', '2d' or a bare number of hours into an int number of hours."""
    if isinstance(value, bool):
        raise InvalidParameter(f"invalid lookback window: {value!r}")
    if isinstance(value, int):
        hours = value
    else:
        match = _LOOKBACK_PATTERN.match(str(value))
        if not match:
            raise InvalidParameter(
                f"invalid lookback window {value!r}; expected something like '24h' or '2d'"
            )
        hours = int(match.group(1))
        if match.group(2).lower() == "d":
            hours *= 24
    if not 1 <= hours <= MAX_LOOKBACK_HOURS:
        raise InvalidParameter(
            f"lookback window must be between 1 and {MAX_LOOKBACK_HOURS} hours, got {hours}"
        )
    return hours


def _check_int(name, value, low, high):
    if isinstance(value, bool) or not isinstance(value, int):
        raise InvalidParameter(f"{name} must be an integer, got {value!r}")
    if not low <= value <= high:
        raise InvalidParameter(f"{name} must be between {low} and {high}, got {value}")
    return value


def _check_wait_types(values):
    if isinstance(values, str):
        values = [v for v in values.split(",") if v.strip()]
    cleaned = []
    for wait_type in values:
        name = str(wait_type).strip().upper()
        if not _WAIT_TYPE_PATTERN.match(name):
            raise InvalidParameter(f"invalid wait type name {wait_type!r}")
        cleaned.append(name)
    return tuple(cleaned)


@dataclass(frozen=True)
class RunParameters:
    """
    Options for one invocation. Fields left as None fall back to the
    per-diagnostic defaults declared in the catalog.
    """

    lookback_hours: object = None
    row_limit: object = None
    fragmentation_threshold: object = None
    excluded_wait_types: object = None
    concurrency: int = 1
    timeout_seconds: float = 30.0

    def __post_init__(self):
        if self.lookback_hours is not None:
            object.__setattr__(self, "lookback_hours", parse_lookback(self.lookback_hours))
        if self.row_limit is not None:
            _check_int("row_limit", self.row_limit, 1, MAX_ROW_LIMIT)
        if self.fragmentation_threshold is not None:
            threshold = self.fragmentation_threshold
            if isinstance(threshold, bool) or not isinstance(threshold, (int, float)):
                raise InvalidParameter(
                    f"fragmentation_threshold must be a number, got {threshold!r}"
                )
            if not 0 <= threshold <= 100:
                raise InvalidParameter(
                    f"fragmentation_threshold must be between 0 and 100, got {threshold}"
                )
            object.__setattr__(self, "fragmentation_threshold", float(threshold))
        if self.excluded_wait_types is not None:
            object.__setattr__(
                self, "excluded_wait_types", _check_wait_types(self.excluded_wait_types)
            )
        _check_int("concurrency", self.concurrency, 1, MAX_CONCURRENCY)
        timeout = self.timeout_seconds
        if isinstance(timeout, bool) or not isinstance(timeout, (int, float)) or timeout <= 0:
            raise InvalidParameter(f"timeout_seconds must be a positive number, got {timeout!r}")

    @property
    def parallel(self):
        return self.concurrency > 1

    @classmethod
    def from_mapping(cls, data):
        """Build from a config 'defaults' block; unknown keys are an error."""
        if data is not None and not isinstance(data, dict):
            raise InvalidParameter(f"run parameter defaults must be a mapping, got {data!r}")
        data = dict(data or {})
        known = {f.name for f in fields(cls)}
        unknown = sorted(set(data) - known)
        if unknown:
            raise InvalidParameter(f"unknown run parameter(s): {', '.join(unknown)}")
        return cls(**data)

    def merged(self, **overrides):
        """Return a copy with the non-None overrides applied."""
        changes = {k: v for k, v in overrides.items() if v is not None}
        return replace(self, **changes) if changes else self

    def placeholder_values(self, defaults):
        """Values for the catalog placeholders: these parameters over the diagnostic's defaults."""
        values = dict(defaults)
        for name in ALLOWED_PLACEHOLDERS:
            value = getattr(self, name)
            if value is not None:
                values[name] = value
        return values


def placeholders(template):
    """Names of the :placeholders used by a query template, in order of first use."""
    seen = []
    for match in _TOKEN_PATTERN.finditer(template):
        name = match.group("name")
        if name and name not in seen:
            seen.append(name)
    return seen


def _bind_value(name, value):
    if name == "excluded_wait_types":
        return ",".join(_check_wait_types(value))
    if name == "lookback_hours":
        return parse_lookback(value)
    if name == "row_limit":
        return _check_int(name, value, 1, MAX_ROW_LIMIT)
    if name == "fragmentation_threshold":
        if isinstance(value, bool) or not isinstance(value, (int, float)):
            raise InvalidParameter(f"{name} must be a number, got {value!r}")
        return float(value)
    return value


def bind(template, values):
    """
    Replace each allow-listed :placeholder with a driver '?' marker.

    Returns the statement text and the ordered argument list. The values
    themselves never enter the statement text.
    """
    args = []

    def _substitute(match):
        name = match.group("name")
        if not name:
            return match.group(0)
        if name not in ALLOWED_PLACEHOLDERS:
            raise InvalidParameter(f"placeholder :{name} is not allowed")
        if name not in values or values[name] is None:
            raise InvalidParameter(f"no value supplied for placeholder :{name}")
        args.append(_bind_value(name, values[name]))
        return "?"

    sql = _TOKEN_PATTERN.sub(_substitute, template)
    return sql, args
