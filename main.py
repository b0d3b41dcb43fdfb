import argparse
import logging
import os
import signal
import sys
import time

import yaml
from prometheus_client import start_http_server

from catalog import default_catalog, load_catalog_file
from connection import ConnectionProvider, TargetDescriptor
from errors import EXIT_OK, EXIT_USAGE, ConnectionFailure, DiagnosticError, exit_code_for
from params import RunParameters
from reporter import FORMATS, render
from runner import DiagnosticRunner

LOG_FORMAT = '%(asctime)s - %(name)s - %(levelname)s - %(message)s'
DEFAULT_CONFIG = "config.yaml"

logger = logging.getLogger("Main")


class ConfigError(Exception):
    pass


def configure_logging(level="INFO"):
    # stdout carries the rendered report, so logs go to stderr
    logging.basicConfig(
        level=getattr(logging, str(level).upper(), logging.INFO),
        format=LOG_FORMAT,
        handlers=[logging.StreamHandler(sys.stderr)],
    )


def load_config(config_path=DEFAULT_CONFIG, required=False):
    if not os.path.exists(config_path):
        if required:
            raise ConfigError(f"Config file {config_path} not found!")
        logger.debug(f"Config file {config_path} not found, using environment only")
        return {}
    with open(config_path, "r") as f:
        config = yaml.safe_load(f) or {}
    if not isinstance(config, dict):
        raise ConfigError(f"Config file {config_path} must contain a mapping")
    return config


def _add_parameter_options(parser):
    parser.add_argument("identifiers", nargs="+", metavar="identifier",
                        help="diagnostic identifiers, or 'all'")
    parser.add_argument("--lookback", help="lookback window, e.g. 24h or 2d")
    parser.add_argument("--row-limit", type=int)
    parser.add_argument("--fragmentation-threshold", type=float)
    parser.add_argument("--exclude-wait-type", action="append", dest="excluded_wait_types",
                        metavar="WAIT_TYPE", help="replaces the default exclusion list")
    parser.add_argument("--concurrency", type=int,
                        help="run up to N diagnostics at once (default 1: sequential)")
    parser.add_argument("--timeout", type=float, help="per-diagnostic timeout in seconds")
    parser.add_argument("--server")
    parser.add_argument("--database")


def build_parser():
    parser = argparse.ArgumentParser(
        prog="sqldiag",
        description="Read-only performance diagnostics for SQL Server and Azure SQL Database.",
    )
    parser.add_argument("--config", help=f"YAML config (default: $SQLDIAG_CONFIG or {DEFAULT_CONFIG})")
    parser.add_argument("--catalog", help="YAML catalog to use instead of the built-in one")
    parser.add_argument("--log-level")
    commands = parser.add_subparsers(dest="command", required=True)

    commands.add_parser("list", help="list available diagnostics")

    describe = commands.add_parser("describe", help="show a diagnostic's fields and query")
    describe.add_argument("identifier")

    run = commands.add_parser("run", help="run diagnostics once and print the results")
    _add_parameter_options(run)
    run.add_argument("--format", choices=FORMATS, default="table")
    run.add_argument("--output", help="write the report here instead of stdout")

    watch = commands.add_parser("watch", help="run diagnostics on an interval and export metrics")
    _add_parameter_options(watch)
    watch.add_argument("--interval", type=float, help="seconds between runs")
    watch.add_argument("--port", type=int, help="Prometheus metrics port")
    watch.add_argument("--iterations", type=int, default=0, help="stop after N runs (0: forever)")
    watch.add_argument("--format", choices=FORMATS, help="also print each run's report")
    return parser


def build_parameters(config, args):
    params = RunParameters.from_mapping(config.get("defaults"))
    return params.merged(
        lookback_hours=args.lookback,
        row_limit=args.row_limit,
        fragmentation_threshold=args.fragmentation_threshold,
        excluded_wait_types=args.excluded_wait_types,
        concurrency=args.concurrency,
        timeout_seconds=args.timeout,
    )


def build_target(config, args):
    overrides = {k: v for k, v in (("server", args.server), ("database", args.database)) if v}
    return TargetDescriptor.from_config({**config, **overrides})


def _catalog(config, args):
    path = args.catalog or config.get("catalog_path")
    return load_catalog_file(path) if path else default_catalog()


def _write(text, output=None):
    if output:
        with open(output, "w") as f:
            f.write(text)
        logger.info(f"Report written to {output}")
    else:
        sys.stdout.write(text)
        sys.stdout.flush()


def cmd_list(catalog, args):
    print(f"Catalog {catalog.version}")
    for definition in catalog:
        print(f"  {definition.identifier:<24} {definition.title}")
    return EXIT_OK


def cmd_describe(catalog, args):
    definition = catalog.lookup(args.identifier)
    print(f"{definition.identifier}: {definition.title}")
    if definition.description:
        print(definition.description)
    print(f"Permission: {definition.permission}")
    if definition.ranking:
        order = "descending" if definition.ranking.descending else "ascending"
        print(f"Ranking: {definition.ranking.field} {order}")
    for name, value in sorted(definition.defaults.items()):
        if isinstance(value, (list, tuple)):
            value = f"{len(value)} entries"
        print(f"Default {name}: {value}")
    print("Fields:")
    for spec in definition.schema:
        suffix = " (derived)" if spec.derived else ""
        print(f"  {spec.name:<32} {spec.type.value}{suffix}")
    print("Query:")
    print(definition.query.strip())
    return EXIT_OK


def _install_cancel_handlers(runner):
    """Route SIGINT/SIGTERM to cooperative cancellation; returns the handlers to restore."""
    def _handler(signum, frame):
        logger.info(f"Received signal {signum}, cancelling...")
        runner.cancel()

    previous = {}
    for signum in (signal.SIGINT, signal.SIGTERM):
        try:
            previous[signum] = signal.signal(signum, _handler)
        except ValueError:
            # not the main thread
            pass
    return previous


def _restore_handlers(previous):
    for signum, handler in previous.items():
        signal.signal(signum, handler)


def cmd_run(catalog, config, args):
    params = build_parameters(config, args)
    target = build_target(config, args)
    runner = DiagnosticRunner(catalog, ConnectionProvider())
    previous = _install_cancel_handlers(runner)
    try:
        results = runner.run_target(args.identifiers, params, target)
    except ConnectionFailure as e:
        logger.error(f"Cannot run diagnostics against {target}: {e}")
        partial = getattr(e, "partial_results", None)
        if partial:
            _write(render(partial, args.format), args.output)
        return e.exit_code
    finally:
        _restore_handlers(previous)

    _write(render(results, args.format), args.output)
    return exit_code_for(r.kind for r in results.values() if not r.ok)


def cmd_watch(catalog, config, args):
    params = build_parameters(config, args)
    target = build_target(config, args)
    collection_interval = args.interval or config.get('collection_interval_seconds', 60)
    export_port = args.port or config.get('export_port', 8000)

    logger.info(f"Starting Prometheus Metrics Server on port {export_port}")
    start_http_server(export_port)

    runner = DiagnosticRunner(catalog, ConnectionProvider())
    logger.info(f"Starting collection loop (Interval: {collection_interval}s)")
    runs = 0
    try:
        while True:
            start_time = time.time()
            try:
                results = runner.run_target(args.identifiers, params, target)
                if args.format:
                    _write(render(results, args.format))
            except ConnectionFailure as e:
                logger.error(f"Collection failed, will retry next cycle: {e}")
            elapsed = time.time() - start_time
            logger.info(f"Diagnostics collected in {elapsed:.2f}s")

            runs += 1
            if args.iterations and runs >= args.iterations:
                break
            time.sleep(max(0, collection_interval - elapsed))
    except KeyboardInterrupt:
        logger.info("Stopping watch loop...")
    return EXIT_OK


def main(argv=None):
    args = build_parser().parse_args(argv)
    try:
        config_path = args.config or os.environ.get("SQLDIAG_CONFIG")
        config = load_config(config_path or DEFAULT_CONFIG, required=config_path is not None)
    except (ConfigError, yaml.YAMLError) as e:
        configure_logging(args.log_level or "INFO")
        logger.error(str(e))
        return EXIT_USAGE
    configure_logging(args.log_level or config.get("log_level", "INFO"))

    try:
        catalog = _catalog(config, args)
        if args.command == "list":
            return cmd_list(catalog, args)
        if args.command == "describe":
            return cmd_describe(catalog, args)
        if args.command == "run":
            return cmd_run(catalog, config, args)
        return cmd_watch(catalog, config, args)
    except DiagnosticError as e:
        logger.error(str(e))
        return e.exit_code
    except OSError as e:
        logger.error(f"I/O error: {e}")
        return EXIT_USAGE


if __name__ == "__main__":
    sys.exit(main())
