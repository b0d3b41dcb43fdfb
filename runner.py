import logging
import threading
import time
from concurrent.futures import Future, ThreadPoolExecutor, as_completed
from concurrent.futures import TimeoutError as FutureTimeout

from prometheus_client import Counter, Gauge

from catalog import ensure_read_only
from errors import (
    ConnectionFailure, DiagnosticError, PermissionDenied, QueryCancelled, QueryTimeout,
)
from params import RunParameters, bind
from reporter import shape
from results import TERMINAL_STATUSES, RunError, Status

# Metrics Definitions
SQL_UP = Gauge('sql_server_up', 'SQL Server connect success')
DIAGNOSTIC_RUNS = Counter(
    'sqldiag_diagnostic_runs', 'Diagnostic executions by outcome', ['diagnostic', 'status']
)
DIAGNOSTIC_DURATION = Gauge(
    'sqldiag_diagnostic_duration_seconds', 'Duration of the last execution', ['diagnostic']
)
DIAGNOSTIC_ROWS = Gauge(
    'sqldiag_diagnostic_rows', 'Rows returned by the last successful execution', ['diagnostic']
)

# How often a waiting diagnostic checks for cancellation.
POLL_INTERVAL = 0.05

_TRANSITIONS = {
    Status.PENDING: {Status.EXECUTING},
    Status.EXECUTING: TERMINAL_STATUSES,
}


class InvalidTransition(RuntimeError):
    pass


class Invocation:
    """One diagnostic within a batch: Pending -> Executing -> a terminal status."""

    def __init__(self, identifier):
        self.identifier = identifier
        self.status = Status.PENDING
        self.result = None
        self._lock = threading.Lock()

    def transition(self, status, result=None):
        with self._lock:
            if status not in _TRANSITIONS.get(self.status, ()):
                raise InvalidTransition(
                    f"{self.identifier}: cannot go from {self.status.value} to {status.value}"
                )
            self.status = status
            if result is not None:
                self.result = result

    @property
    def done(self):
        return self.status in TERMINAL_STATUSES


class _Expired(Exception):
    pass


class _Interrupted(Exception):
    pass


def _start_worker(fn, name):
    """Run fn on a daemon thread so a hung statement never holds up the batch or process exit."""
    future = Future()

    def _target():
        if not future.set_running_or_notify_cancel():
            return
        try:
            future.set_result(fn())
        except Exception as exc:
            future.set_exception(exc)

    threading.Thread(target=_target, name=name, daemon=True).start()
    return future


class _ConnectionLease:
    """
    Hands out connections so that each statement has one to itself.

    Starts from the caller's connection and opens siblings when more are
    needed. A connection whose statement timed out or was cancelled is never
    handed out again; siblings are closed once their worker lets go.
    """

    def __init__(self, base):
        self._base = base
        self._idle = [base]
        self._owned = []
        self._lock = threading.Lock()

    def take(self):
        with self._lock:
            if self._idle:
                return self._idle.pop()
        connection = self._base.sibling()
        with self._lock:
            self._owned.append(connection)
        return connection

    def give_back(self, connection):
        with self._lock:
            self._idle.append(connection)

    def retire(self, connection, worker):
        if connection is self._base:
            return
        with self._lock:
            self._owned.remove(connection)
        worker.add_done_callback(lambda _f: connection.close())

    def close(self):
        with self._lock:
            owned, self._owned = self._owned, []
        for connection in owned:
            connection.close()


class DiagnosticRunner:
    def __init__(self, catalog, provider=None):
        self.catalog = catalog
        self.provider = provider
        self._cancel_event = threading.Event()
        self.logger = logging.getLogger("DiagnosticRunner")

    def cancel(self):
        """Stop the current batch: in-flight statements are cancelled, unstarted ones skipped."""
        self.logger.info("Cancellation requested")
        self._cancel_event.set()

    @property
    def cancelled(self):
        return self._cancel_event.is_set()

    def run_target(self, identifiers, params, target):
        """Acquire a connection to target, run the batch on it and release it."""
        if self.provider is None:
            raise ConnectionFailure("runner has no connection provider")
        # a cancel() from here on, login included, applies to this batch
        self._cancel_event.clear()
        try:
            connection = self.provider.acquire(target)
        except ConnectionFailure:
            SQL_UP.set(0)
            raise
        SQL_UP.set(1)
        with connection:
            if self.cancelled:
                self.logger.info(f"Cancelled while connecting to {target}, nothing will run")
            return self.run(identifiers, params, connection)

    def run(self, identifiers, params, connection):
        """
        Run each identifier and return {identifier: ResultSet | RunError} in caller order.

        A failing diagnostic never stops the others. Failing to open a
        further connection does: the ConnectionFailure is raised with the
        results gathered so far attached as `partial_results`.

        A cancel() made before the call stops the batch before anything
        runs; run_target clears it when the next batch starts.
        """
        params = params or RunParameters()
        invocations = [Invocation(i) for i in self.catalog.resolve(identifiers)]
        lease = _ConnectionLease(connection)
        mode = f"parallel (cap {params.concurrency})" if params.parallel else "sequential"
        self.logger.info(f"Running {len(invocations)} diagnostic(s) against {connection.target}, {mode}")

        start_time = time.time()
        try:
            if params.parallel:
                self._run_parallel(invocations, params, lease)
            else:
                for invocation in invocations:
                    if self.cancelled:
                        break
                    self._execute(invocation, params, lease)
        except ConnectionFailure as e:
            e.partial_results = self._results(invocations)
            self.logger.error(f"Batch aborted: {e}")
            raise
        finally:
            lease.close()

        results = self._results(invocations)
        failed = sum(1 for r in results.values() if not r.ok)
        elapsed = time.time() - start_time
        self.logger.info(
            f"Batch finished in {elapsed:.2f}s: {len(results) - failed} succeeded, {failed} failed"
        )
        return results

    def _run_parallel(self, invocations, params, lease):
        abort = None
        with ThreadPoolExecutor(max_workers=params.concurrency,
                                thread_name_prefix="diagnostic") as pool:
            futures = [pool.submit(self._execute, inv, params, lease) for inv in invocations]
            for future in as_completed(futures):
                try:
                    future.result()
                except ConnectionFailure as e:
                    if abort is None:
                        abort = e
                        self.cancel()
        if abort is not None:
            raise abort

    def _results(self, invocations):
        results = {}
        for invocation in invocations:
            if invocation.done:
                results[invocation.identifier] = invocation.result
            else:
                results[invocation.identifier] = RunError(
                    invocation.identifier, QueryCancelled.kind,
                    "not started: the run was cancelled", Status.PENDING,
                )
        return results

    def _finish(self, invocation, definition, outcome, started):
        elapsed = time.monotonic() - started
        invocation.transition(outcome.status, outcome)
        if definition is not None:
            DIAGNOSTIC_RUNS.labels(diagnostic=invocation.identifier,
                                   status=outcome.status.value).inc()
            DIAGNOSTIC_DURATION.labels(diagnostic=invocation.identifier).set(elapsed)
        if outcome.ok:
            DIAGNOSTIC_ROWS.labels(diagnostic=invocation.identifier).set(len(outcome))
            self.logger.info(
                f"Collected {len(outcome)} rows from {invocation.identifier} in {elapsed:.2f}s"
            )
        elif outcome.kind == PermissionDenied.kind and definition is not None:
            self.logger.warning(
                f"Failed to collect {invocation.identifier} (needs {definition.permission}): "
                f"{outcome.message}"
            )
        else:
            self.logger.warning(f"Failed to collect {invocation.identifier}: {outcome}")

    def _fail(self, invocation, definition, error, started, status=None):
        elapsed_ms = (time.monotonic() - started) * 1000.0
        outcome = RunError.from_exception(invocation.identifier, error, elapsed_ms, status)
        self._finish(invocation, definition, outcome, started)

    def _execute(self, invocation, params, lease):
        if self.cancelled:
            return
        started = time.monotonic()
        invocation.transition(Status.EXECUTING)
        identifier = invocation.identifier
        definition = None
        try:
            definition = self.catalog.lookup(identifier)
            sql, args = bind(definition.query, params.placeholder_values(definition.defaults))
            ensure_read_only(sql, identifier)
        except DiagnosticError as e:
            e.identifier = identifier
            self._fail(invocation, definition, e, started)
            return

        try:
            connection = lease.take()
        except ConnectionFailure as e:
            self._fail(invocation, definition, e, started)
            raise
        self.logger.debug(f"Executing {identifier} with {len(args)} bound parameter(s)")
        worker = _start_worker(
            lambda: connection.execute(sql, args, timeout=params.timeout_seconds),
            name=f"diagnostic-{identifier}",
        )
        try:
            raw_rows = self._wait(worker, params.timeout_seconds)
        except _Expired:
            connection.cancel()
            lease.retire(connection, worker)
            error = QueryTimeout(f"no result within {params.timeout_seconds:g}s", identifier)
            self._fail(invocation, definition, error, started)
            return
        except _Interrupted:
            connection.cancel()
            lease.retire(connection, worker)
            error = QueryCancelled("cancelled while executing", identifier)
            self._fail(invocation, definition, error, started)
            return
        except DiagnosticError as e:
            if isinstance(e, ConnectionFailure) and not isinstance(e, PermissionDenied):
                # the link is gone; later statements get a fresh connection
                lease.retire(connection, worker)
            else:
                lease.give_back(connection)
            e.identifier = identifier
            self._fail(invocation, definition, e, started)
            return
        except Exception as e:
            lease.give_back(connection)
            self._fail(invocation, definition, e, started)
            return
        lease.give_back(connection)

        elapsed_ms = (time.monotonic() - started) * 1000.0
        row_limit = params.row_limit or definition.defaults.get("row_limit")
        try:
            result = shape(raw_rows, definition, row_limit, elapsed_ms)
        except Exception as e:
            self._fail(invocation, definition, e, started)
            return
        self._finish(invocation, definition, result, started)

    def _wait(self, worker, timeout):
        deadline = time.monotonic() + timeout
        while True:
            remaining = deadline - time.monotonic()
            if remaining <= 0:
                raise _Expired()
            try:
                return worker.result(timeout=min(remaining, POLL_INTERVAL))
            except FutureTimeout:
                if self.cancelled:
                    raise _Interrupted()
