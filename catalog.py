"""
Query catalog: the fixed set of diagnostics this tool knows how to run.

The catalog is built once per process and cannot be changed afterwards, so
the query text that runs is always the text that `describe` prints.
"""

import enum
import functools
import logging
import re
from dataclasses import dataclass, field
from types import MappingProxyType

import yaml

import queries
from ddl import missing_index_statement
from errors import InvalidParameter, ReadOnlyViolation, UnknownDiagnostic
from params import ALLOWED_PLACEHOLDERS, DEFAULT_EXCLUDED_WAIT_TYPES, placeholders

CATALOG_VERSION = "2024.10"

logger = logging.getLogger("Catalog")

VIEW_DATABASE_STATE = "VIEW DATABASE STATE"
VIEW_SERVER_STATE = "VIEW SERVER STATE"


class FieldType(str, enum.Enum):
    INTEGER = "integer"
    FLOAT = "float"
    STRING = "string"
    TIMESTAMP = "timestamp"
    # milliseconds on the wire, timedelta once normalized
    DURATION = "duration"


@dataclass(frozen=True)
class FieldSpec:
    name: str
    type: FieldType
    derived: bool = False


@dataclass(frozen=True)
class RankingPolicy:
    field: str
    descending: bool = True


@dataclass(frozen=True)
class DiagnosticDefinition:
    identifier: str
    title: str
    query: str
    schema: tuple
    description: str = ""
    permission: str = VIEW_DATABASE_STATE
    ranking: RankingPolicy = None
    defaults: MappingProxyType = field(default_factory=lambda: MappingProxyType({}))
    derivations: MappingProxyType = field(default_factory=lambda: MappingProxyType({}))

    @property
    def field_names(self):
        return tuple(f.name for f in self.schema)

    @property
    def query_fields(self):
        """Fields the query itself must return (derived ones are computed afterwards)."""
        return tuple(f for f in self.schema if not f.derived)

    @property
    def placeholders(self):
        return tuple(placeholders(self.query))


# Comments and string literals are removed before looking for keywords, so
# a literal such as 'CREATE INDEX' cannot trip the check.
_STRIP_PATTERN = re.compile(r"N?'(?:[^']|'')*'|--[^\n]*|/\*.*?\*/", re.DOTALL)
_FORBIDDEN_KEYWORDS = re.compile(
    r"\b(INSERT|UPDATE|DELETE|MERGE|DROP|ALTER|CREATE|TRUNCATE|EXEC|EXECUTE|GRANT|REVOKE|"
    r"DENY|BACKUP|RESTORE|DBCC|SHUTDOWN|KILL|INTO|OPENROWSET|OPENQUERY|OPENDATASOURCE|"
    r"BULK|RECONFIGURE|USE|SET|DECLARE|WAITFOR)\b",
    re.IGNORECASE,
)


def ensure_read_only(sql, identifier=None):
    """Reject anything that is not exactly one SELECT (or WITH ... SELECT) statement."""
    code = _STRIP_PATTERN.sub(" ", sql)
    statements = [s for s in code.split(";") if s.strip()]
    if len(statements) != 1:
        raise ReadOnlyViolation(
            f"expected exactly one statement, found {len(statements)}", identifier
        )
    first = statements[0].split(None, 1)[0].upper()
    if first not in ("SELECT", "WITH"):
        raise ReadOnlyViolation(f"statement starts with {first}, not SELECT", identifier)
    forbidden = _FORBIDDEN_KEYWORDS.search(statements[0])
    if forbidden:
        raise ReadOnlyViolation(
            f"statement contains forbidden keyword {forbidden.group(1).upper()}", identifier
        )
    return sql


def _validate(definition):
    ensure_read_only(definition.query, definition.identifier)
    names = definition.field_names
    if len(set(names)) != len(names):
        raise InvalidParameter("duplicate field names in schema", definition.identifier)
    for name in definition.placeholders:
        if name not in ALLOWED_PLACEHOLDERS:
            raise InvalidParameter(f"placeholder :{name} is not allowed", definition.identifier)
        if name not in definition.defaults:
            raise InvalidParameter(f"placeholder :{name} has no default", definition.identifier)
    for spec in definition.schema:
        if spec.derived and spec.name not in definition.derivations:
            raise InvalidParameter(
                f"derived field {spec.name} has no derivation", definition.identifier
            )
    if definition.ranking and definition.ranking.field not in names:
        raise InvalidParameter(
            f"ranking field {definition.ranking.field} is not in the schema",
            definition.identifier,
        )


class Catalog:
    """Read-only registry of diagnostic definitions keyed by identifier."""

    def __init__(self, definitions, version=CATALOG_VERSION):
        registry = {}
        for definition in definitions:
            _validate(definition)
            if definition.identifier in registry:
                raise InvalidParameter("duplicate diagnostic identifier", definition.identifier)
            registry[definition.identifier] = definition
        self._definitions = MappingProxyType(registry)
        self.version = version

    def lookup(self, identifier):
        try:
            return self._definitions[identifier]
        except KeyError:
            raise UnknownDiagnostic(
                f"no diagnostic named {identifier!r}; known: {', '.join(self.list())}",
                identifier,
            ) from None

    def list(self):
        return sorted(self._definitions)

    def resolve(self, identifiers):
        """Expand 'all', drop duplicates, keep caller order."""
        resolved = []
        for identifier in identifiers:
            expanded = self.list() if identifier == "all" else [identifier]
            for name in expanded:
                if name not in resolved:
                    resolved.append(name)
        return resolved

    def __contains__(self, identifier):
        return identifier in self._definitions

    def __iter__(self):
        return (self._definitions[name] for name in self.list())

    def __len__(self):
        return len(self._definitions)


I, F, S, T, D = (FieldType.INTEGER, FieldType.FLOAT, FieldType.STRING,
                 FieldType.TIMESTAMP, FieldType.DURATION)


def _schema(*columns):
    return tuple(FieldSpec(name, kind) for name, kind in columns)


def _definition(identifier, title, query, schema, ranking=None, defaults=None,
                derivations=None, **kwargs):
    return DiagnosticDefinition(
        identifier=identifier,
        title=title,
        query=query,
        schema=schema,
        ranking=ranking,
        defaults=MappingProxyType(dict(defaults or {})),
        derivations=MappingProxyType(dict(derivations or {})),
        **kwargs,
    )


# Derivations an external catalog file may refer to by name.
DERIVATIONS = MappingProxyType({
    "missing_index_statement": missing_index_statement,
})

_QUERY_STORE_SCHEMA = _schema(
    ("query_sql_text", S), ("query_id", I), ("query_hash", S), ("total_executions", I),
    ("total_cpu_time_ms", F), ("total_duration_ms", F), ("total_logical_reads", F),
    ("max_cpu_time_ms", F), ("max_duration_ms", F), ("max_logical_reads", I),
)


def builtin_definitions():
    return (
        _definition(
            "active-queries", "Active queries",
            queries.ACTIVE_QUERIES,
            _schema(
                ("session_id", I), ("command", S), ("status", S), ("wait_type", S),
                ("wait_time", D), ("last_wait_type", S), ("cpu_time", D),
                ("total_elapsed_time", D), ("reads", I), ("writes", I), ("logical_reads", I),
                ("blocking_session_id", I), ("database_name", S), ("host_name", S),
                ("program_name", S), ("login_name", S), ("sql_command_text", S),
            ),
            ranking=RankingPolicy("total_elapsed_time"),
            defaults={"row_limit": 50},
            description="Currently executing user requests, longest running first.",
        ),
        _definition(
            "blocking-chains", "Blocking chains",
            queries.BLOCKING_CHAINS,
            _schema(
                ("resource_type", S), ("resource_database_id", I),
                ("resource_associated_entity_id", I), ("request_mode", S),
                ("request_status", S), ("request_owner_type", S), ("request_session_id", I),
                ("blocking_session_id", I), ("last_wait_type", S), ("wait_time", D),
                ("wait_type", S), ("command", S), ("blocked_sql_text", S),
                ("blocking_sql_text", S),
            ),
            ranking=RankingPolicy("wait_time"),
            defaults={"row_limit": 100},
            description="Lock requests waiting on another session, with both statements.",
        ),
        _definition(
            "sessions", "User sessions",
            queries.SESSIONS,
            _schema(
                ("session_id", I), ("login_name", S), ("host_name", S), ("program_name", S),
                ("status", S), ("cpu_time", D), ("memory_usage", I),
                ("last_request_start_time", T), ("last_request_end_time", T), ("reads", I),
                ("writes", I), ("logical_reads", I), ("command", S), ("request_status", S),
                ("wait_type", S), ("wait_time", D), ("current_sql_text", S),
            ),
            ranking=RankingPolicy("session_id", descending=False),
            defaults={"row_limit": 200},
            description="All user sessions with their current request, like sp_who2.",
        ),
        _definition(
            "resource-stats", "Database resource consumption",
            queries.RESOURCE_STATS,
            _schema(
                ("end_time", T), ("avg_cpu_percent", F), ("avg_data_io_percent", F),
                ("avg_log_write_percent", F), ("avg_memory_usage_percent", F),
                ("xtp_storage_percent", F), ("max_worker_percent", F),
                ("max_session_percent", F), ("dtu_limit", I), ("avg_dtu_percent", F),
            ),
            ranking=RankingPolicy("end_time"),
            defaults={"lookback_hours": 1, "row_limit": 240},
            description="CPU, data I/O and log write usage over the lookback window.",
        ),
        _definition(
            "file-io-stats", "File I/O statistics",
            queries.FILE_IO_STATS,
            _schema(
                ("database_name", S), ("file_id", I), ("num_of_reads", I),
                ("num_of_writes", I), ("io_stall_read_ms", I), ("io_stall_write_ms", I),
                ("io_stall_queued_read_ms", I), ("io_stall_queued_write_ms", I),
                ("total_io_stall_ms", I), ("size_on_disk_bytes", I),
            ),
            ranking=RankingPolicy("total_io_stall_ms"),
            description="Reads, writes and stall time per database file.",
        ),
        _definition(
            "wait-stats", "Wait statistics",
            queries.WAIT_STATS,
            _schema(
                ("wait_type", S), ("wait_time_ms", I), ("waiting_tasks_count", I),
                ("signal_wait_time_ms", I), ("percentage_of_total", F),
            ),
            ranking=RankingPolicy("wait_time_ms"),
            defaults={"row_limit": 25, "excluded_wait_types": DEFAULT_EXCLUDED_WAIT_TYPES},
            permission=VIEW_SERVER_STATE,
            description="Cumulative waits since startup with benign waits filtered out.",
        ),
        _definition(
            "missing-indexes", "Missing index suggestions",
            queries.MISSING_INDEXES,
            _schema(
                ("database_name", S), ("table_schema", S), ("table_name", S),
                ("equality_columns", S), ("inequality_columns", S), ("included_columns", S),
                ("user_seeks", I), ("user_scans", I), ("avg_total_user_cost", F),
                ("avg_user_impact", F), ("estimated_impact", F), ("last_user_seek", T),
            ) + (FieldSpec("create_index_statement", S, derived=True),),
            ranking=RankingPolicy("estimated_impact"),
            defaults={"row_limit": 25},
            derivations={"create_index_statement": missing_index_statement},
            description="Optimizer index suggestions ranked by estimated impact. "
                        "Review and test before creating any of them.",
        ),
        _definition(
            "top-cpu-queries", "Top queries by CPU (Query Store)",
            queries.TOP_CPU_QUERIES,
            _QUERY_STORE_SCHEMA,
            ranking=RankingPolicy("total_cpu_time_ms"),
            defaults={"lookback_hours": 24, "row_limit": 20},
            description="Queries with the most total CPU time in the lookback window.",
        ),
        _definition(
            "long-running-queries", "Top long-running queries (Query Store)",
            queries.LONG_RUNNING_QUERIES,
            _QUERY_STORE_SCHEMA,
            ranking=RankingPolicy("total_duration_ms"),
            defaults={"lookback_hours": 24, "row_limit": 20},
            description="Queries with the most total elapsed time in the lookback window.",
        ),
        _definition(
            "index-usage", "Index usage",
            queries.INDEX_USAGE,
            _schema(
                ("table_name", S), ("index_name", S), ("user_seeks", I), ("user_scans", I),
                ("user_lookups", I), ("user_updates", I), ("total_user_reads", I),
                ("last_user_seek", T), ("last_user_scan", T), ("last_user_lookup", T),
                ("last_user_update", T),
            ),
            ranking=RankingPolicy("total_user_reads"),
            description="Seeks, scans, lookups and updates per index since startup.",
        ),
        _definition(
            "index-fragmentation", "Index fragmentation",
            queries.INDEX_FRAGMENTATION,
            _schema(
                ("table_name", S), ("index_name", S), ("avg_fragmentation_in_percent", F),
                ("page_count", I), ("avg_page_space_used_in_percent", F), ("record_count", I),
            ),
            ranking=RankingPolicy("avg_fragmentation_in_percent"),
            defaults={"fragmentation_threshold": 10.0},
            description="Indexes above the fragmentation threshold; candidates for "
                        "REORGANIZE or REBUILD.",
        ),
    )


@functools.lru_cache(maxsize=1)
def default_catalog():
    """The built-in catalog, created on first use and shared for the life of the process."""
    catalog = Catalog(builtin_definitions())
    logger.debug(f"Loaded built-in catalog {catalog.version} with {len(catalog)} diagnostics")
    return catalog


def _definition_from_mapping(entry):
    try:
        identifier = entry["id"]
        schema = []
        for column in entry["fields"]:
            schema.append(FieldSpec(
                column["name"], FieldType(column.get("type", "string")),
                derived=bool(column.get("derived", False)),
            ))
        derivations = {}
        for name, function_name in (entry.get("derivations") or {}).items():
            if function_name not in DERIVATIONS:
                raise InvalidParameter(f"unknown derivation {function_name!r}", identifier)
            derivations[name] = DERIVATIONS[function_name]
        ranking = None
        if entry.get("rank_by"):
            ranking = RankingPolicy(entry["rank_by"], bool(entry.get("descending", True)))
        return _definition(
            identifier,
            entry.get("title", identifier),
            entry["query"],
            tuple(schema),
            ranking=ranking,
            defaults=entry.get("defaults"),
            derivations=derivations,
            description=entry.get("description", ""),
            permission=entry.get("permission", VIEW_DATABASE_STATE),
        )
    except (KeyError, TypeError, ValueError) as e:
        raise InvalidParameter(f"malformed catalog entry {entry!r}: {e}") from e


def load_catalog_file(path):
    """Load a versioned YAML catalog supplied as configuration."""
    with open(path, "r") as f:
        try:
            data = yaml.safe_load(f) or {}
        except yaml.YAMLError as e:
            raise InvalidParameter(f"catalog file {path} is not valid YAML: {e}") from e
    if not isinstance(data, dict):
        raise InvalidParameter(f"catalog file {path} must contain a mapping")
    entries = data.get("diagnostics") or []
    if not isinstance(entries, list):
        raise InvalidParameter(f"catalog file {path}: 'diagnostics' must be a list")
    catalog = Catalog(
        [_definition_from_mapping(entry) for entry in entries],
        version=str(data.get("version", "unversioned")),
    )
    logger.info(f"Loaded catalog {catalog.version} from {path} ({len(catalog)} diagnostics)")
    return catalog
