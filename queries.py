# queries.py
#
# Query text for the built-in diagnostics. Every statement is a single
# read-only SELECT. Named placeholders (:lookback_hours, :row_limit,
# :fragmentation_threshold, :excluded_wait_types) are bound by the runner as
# driver parameters, never spliced into the text.
#
# Permissions: database-scoped DMVs need VIEW DATABASE STATE. Query Store
# views need VIEW DATABASE STATE as well. Server-scoped waits need
# VIEW SERVER STATE on SQL Server (VIEW DATABASE STATE on Azure SQL Database).

# Active Queries (what is running right now)
# Currently executing user requests with their waits and statement text.
ACTIVE_QUERIES = """
SELECT
    s.session_id,
    r.command,
    r.status,
    r.wait_type,
    r.wait_time,
    r.last_wait_type,
    r.cpu_time,
    r.total_elapsed_time,
    r.reads,
    r.writes,
    r.logical_reads,
    r.blocking_session_id,
    DB_NAME(r.database_id) AS database_name,
    s.host_name,
    s.program_name,
    s.login_name,
    t.text AS sql_command_text
FROM sys.dm_exec_requests r
JOIN sys.dm_exec_sessions s ON r.session_id = s.session_id
OUTER APPLY sys.dm_exec_sql_text(r.sql_handle) t
WHERE s.is_user_process = 1
AND r.session_id <> @@SPID;
"""

# Blocking Chains
# Lock requests stuck in WAIT together with the statement of the session
# holding them up. The blocker may be idle, so its text comes from the
# connection's most recent handle rather than an active request.
BLOCKING_CHAINS = """
SELECT
    l.resource_type,
    l.resource_database_id,
    l.resource_associated_entity_id,
    l.request_mode,
    l.request_status,
    l.request_owner_type,
    l.request_session_id,
    r.blocking_session_id,
    r.last_wait_type,
    r.wait_time,
    r.wait_type,
    r.command,
    blocked.text AS blocked_sql_text,
    blocker.text AS blocking_sql_text
FROM sys.dm_tran_locks l
JOIN sys.dm_exec_requests r ON l.request_session_id = r.session_id
LEFT JOIN sys.dm_exec_connections bc ON bc.session_id = r.blocking_session_id
OUTER APPLY sys.dm_exec_sql_text(r.sql_handle) blocked
OUTER APPLY sys.dm_exec_sql_text(bc.most_recent_sql_handle) blocker
WHERE l.request_status = 'WAIT'
AND r.blocking_session_id <> 0;
"""

# Sessions (sp_who2 replacement)
# Every user session, with its current request if it has one.
SESSIONS = """
SELECT
    s.session_id,
    s.login_name,
    s.host_name,
    s.program_name,
    s.status,
    s.cpu_time,
    s.memory_usage,
    s.last_request_start_time,
    s.last_request_end_time,
    s.reads,
    s.writes,
    s.logical_reads,
    r.command,
    r.status AS request_status,
    r.wait_type,
    r.wait_time,
    t.text AS current_sql_text
FROM sys.dm_exec_sessions s
LEFT JOIN sys.dm_exec_requests r ON s.session_id = r.session_id
OUTER APPLY sys.dm_exec_sql_text(r.sql_handle) t
WHERE s.is_user_process = 1;
"""

# Database Resource Consumption (CPU, data I/O, log I/O)
# 15 second samples kept by the engine for roughly an hour. DTU percentage
# is the highest of the three DTU components for each sample.
RESOURCE_STATS = """
SELECT
    end_time,
    avg_cpu_percent,
    avg_data_io_percent,
    avg_log_write_percent,
    avg_memory_usage_percent,
    xtp_storage_percent,
    max_worker_percent,
    max_session_percent,
    dtu_limit,
    (SELECT MAX(v) FROM (VALUES (avg_cpu_percent), (avg_data_io_percent), (avg_log_write_percent)) AS d(v)) AS avg_dtu_percent
FROM sys.dm_db_resource_stats
WHERE end_time >= DATEADD(hour, -1 * CAST(:lookback_hours AS int), GETUTCDATE());
"""

# File I/O Statistics
# Per-file reads, writes and stalls for the current database.
FILE_IO_STATS = """
SELECT
    DB_NAME(database_id) AS database_name,
    file_id,
    num_of_reads,
    num_of_writes,
    io_stall_read_ms,
    io_stall_write_ms,
    io_stall_queued_read_ms,
    io_stall_queued_write_ms,
    io_stall_read_ms + io_stall_write_ms AS total_io_stall_ms,
    size_on_disk_bytes
FROM sys.dm_io_virtual_file_stats(DB_ID(), NULL);
"""

# Wait Statistics
# Benign background waits are excluded; the list is a bound parameter split
# server side so callers can change it without touching this text.
WAIT_STATS = """
SELECT
    wait_type,
    SUM(wait_time_ms) AS wait_time_ms,
    SUM(waiting_tasks_count) AS waiting_tasks_count,
    SUM(signal_wait_time_ms) AS signal_wait_time_ms,
    CAST(SUM(wait_time_ms) * 100.0 / NULLIF(SUM(SUM(wait_time_ms)) OVER (), 0) AS DECIMAL(5, 2)) AS percentage_of_total
FROM sys.dm_os_wait_stats
WHERE wait_time_ms > 0
AND wait_type NOT IN (SELECT value FROM STRING_SPLIT(:excluded_wait_types, ','))
GROUP BY wait_type;
"""

# Missing Indexes
# Optimizer suggestions for the current database. The CREATE INDEX text is
# generated client side from these columns and is only ever displayed.
MISSING_INDEXES = """
SELECT
    DB_NAME(mid.database_id) AS database_name,
    OBJECT_SCHEMA_NAME(mid.object_id, mid.database_id) AS table_schema,
    OBJECT_NAME(mid.object_id, mid.database_id) AS table_name,
    mid.equality_columns,
    mid.inequality_columns,
    mid.included_columns,
    migs.user_seeks,
    migs.user_scans,
    migs.avg_total_user_cost,
    migs.avg_user_impact,
    migs.avg_total_user_cost * (migs.avg_user_impact / 100.0) AS estimated_impact,
    migs.last_user_seek
FROM sys.dm_db_missing_index_details mid
JOIN sys.dm_db_missing_index_groups mig ON mig.index_handle = mid.index_handle
JOIN sys.dm_db_missing_index_group_stats migs ON migs.group_handle = mig.index_group_handle
WHERE mid.database_id = DB_ID();
"""

# Top Queries by CPU (Query Store)
# Query Store keeps times in microseconds; converted to milliseconds here.
# TOP needs an ORDER BY to pick the right rows.
TOP_CPU_QUERIES = """
SELECT TOP (:row_limit)
    qt.query_sql_text,
    q.query_id,
    q.query_hash,
    SUM(rs.count_executions) AS total_executions,
    SUM(rs.avg_cpu_time * rs.count_executions) / 1000.0 AS total_cpu_time_ms,
    SUM(rs.avg_duration * rs.count_executions) / 1000.0 AS total_duration_ms,
    SUM(rs.avg_logical_io_reads * rs.count_executions) AS total_logical_reads,
    MAX(rs.max_cpu_time) / 1000.0 AS max_cpu_time_ms,
    MAX(rs.max_duration) / 1000.0 AS max_duration_ms,
    MAX(rs.max_logical_io_reads) AS max_logical_reads
FROM sys.query_store_query_text qt
JOIN sys.query_store_query q ON qt.query_text_id = q.query_text_id
JOIN sys.query_store_plan p ON q.query_id = p.query_id
JOIN sys.query_store_runtime_stats rs ON p.plan_id = rs.plan_id
JOIN sys.query_store_runtime_stats_interval rsi ON rs.runtime_stats_interval_id = rsi.runtime_stats_interval_id
WHERE rsi.start_time >= DATEADD(hour, -1 * CAST(:lookback_hours AS int), GETUTCDATE())
GROUP BY qt.query_sql_text, q.query_id, q.query_hash
ORDER BY total_cpu_time_ms DESC;
"""

# Top Long-Running Queries (Query Store)
LONG_RUNNING_QUERIES = """
SELECT TOP (:row_limit)
    qt.query_sql_text,
    q.query_id,
    q.query_hash,
    SUM(rs.count_executions) AS total_executions,
    SUM(rs.avg_duration * rs.count_executions) / 1000.0 AS total_duration_ms,
    SUM(rs.avg_cpu_time * rs.count_executions) / 1000.0 AS total_cpu_time_ms,
    SUM(rs.avg_logical_io_reads * rs.count_executions) AS total_logical_reads,
    MAX(rs.max_duration) / 1000.0 AS max_duration_ms,
    MAX(rs.max_cpu_time) / 1000.0 AS max_cpu_time_ms,
    MAX(rs.max_logical_io_reads) AS max_logical_reads
FROM sys.query_store_query_text qt
JOIN sys.query_store_query q ON qt.query_text_id = q.query_text_id
JOIN sys.query_store_plan p ON q.query_id = p.query_id
JOIN sys.query_store_runtime_stats rs ON p.plan_id = rs.plan_id
JOIN sys.query_store_runtime_stats_interval rsi ON rs.runtime_stats_interval_id = rsi.runtime_stats_interval_id
WHERE rsi.start_time >= DATEADD(hour, -1 * CAST(:lookback_hours AS int), GETUTCDATE())
GROUP BY qt.query_sql_text, q.query_id, q.query_hash
ORDER BY total_duration_ms DESC;
"""

# Index Usage
# Seeks, scans and lookups against updates. Low reads with high updates
# point at indexes that cost more than they give.
INDEX_USAGE = """
SELECT
    OBJECT_NAME(s.object_id) AS table_name,
    i.name AS index_name,
    s.user_seeks,
    s.user_scans,
    s.user_lookups,
    s.user_updates,
    s.user_seeks + s.user_scans + s.user_lookups AS total_user_reads,
    s.last_user_seek,
    s.last_user_scan,
    s.last_user_lookup,
    s.last_user_update
FROM sys.dm_db_index_usage_stats s
JOIN sys.indexes i ON s.object_id = i.object_id AND s.index_id = i.index_id
WHERE OBJECTPROPERTY(s.object_id, 'IsUserTable') = 1
AND s.database_id = DB_ID();
"""

# Index Fragmentation
# LIMITED mode is the cheapest scan; it leaves page density and record
# count NULL.
INDEX_FRAGMENTATION = """
SELECT
    OBJECT_NAME(i.object_id) AS table_name,
    i.name AS index_name,
    ps.avg_fragmentation_in_percent,
    ps.page_count,
    ps.avg_page_space_used_in_percent,
    ps.record_count
FROM sys.dm_db_index_physical_stats(DB_ID(), NULL, NULL, NULL, 'LIMITED') ps
JOIN sys.indexes i ON ps.object_id = i.object_id AND ps.index_id = i.index_id
WHERE OBJECTPROPERTY(i.object_id, 'IsUserTable') = 1
AND ps.avg_fragmentation_in_percent > :fragmentation_threshold;
"""
