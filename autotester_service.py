"""CLI entry point for the reef auto-tester controller service."""
from __future__ import annotations

import argparse
import signal
import sys
from pathlib import Path

from autotester import AppConfig, load_config
from autotester.config import LoggingConfig
from autotester.logging_setup import configure_logging
from autotester.service import AutotesterController, ServiceRunner
from autotester.storage import Database


def _apply_overrides(config: AppConfig, args: argparse.Namespace) -> AppConfig:
    if args.simulate:
        config.bus.transport = 'sim'
    if args.bus is not None:
        config.bus.bus = args.bus
    if args.database:
        config.storage.database_path = Path(args.database)
    if args.api_host:
        config.api.host = args.api_host
    if args.api_port is not None:
        config.api.port = args.api_port
    if args.no_api:
        config.api.enabled = False
    if args.log_level:
        config.logging = LoggingConfig(
            level=args.log_level,
            file=config.logging.file,
            audit_level=config.logging.audit_level,
        )
    return config


def main(argv: list[str] | None = None) -> int:
    parser = argparse.ArgumentParser(
        description='Run the reef auto-tester controller.',
        epilog='Scheduled readings and the configuration live in a local SQLite database.',
    )
    parser.add_argument('--config', type=Path, help='Configuration file (json/toml/yaml) to load.')
    parser.add_argument('--database', type=str, help='Override SQLite database file path.')
    parser.add_argument('--bus', type=int, help='Override I2C bus number.')
    parser.add_argument('--simulate', action='store_true', help='Use the simulated device instead of I2C.')
    parser.add_argument('--api-host', type=str, help='HTTP API host (default from config).')
    parser.add_argument('--api-port', type=int, help='HTTP API port (default from config).')
    parser.add_argument('--no-api', action='store_true', help='Do not start the HTTP API.')
    parser.add_argument('--log-level', type=str, help='Console log level (DEBUG, INFO, ...).')
    args = parser.parse_args(argv)

    if args.config and not args.config.exists():
        print(f'Config file not found: {args.config}', file=sys.stderr)
        return 1

    try:
        config = _apply_overrides(load_config(args.config), args)
    except (TypeError, ValueError) as exc:
        print(f'Invalid configuration: {exc}', file=sys.stderr)
        return 2

    database = Database(config.storage)
    database.initialise()
    configure_logging(config.logging, database)

    controller = AutotesterController(config, database)
    api_host = config.api.host if config.api.enabled else None
    runner = ServiceRunner(controller, api_host=api_host, api_port=config.api.port)

    if runner.api_address:
        host, port = runner.api_address
        print(f'API listening on http://{host}:{port}/api/autotester')

    shutdown_requested = False

    def signal_handler(signum, frame):
        nonlocal shutdown_requested
        if not shutdown_requested:
            shutdown_requested = True
            print(f'Received shutdown signal {signum}, stopping auto-tester...')
            runner.request_stop()

    signal.signal(signal.SIGINT, signal_handler)
    signal.signal(signal.SIGTERM, signal_handler)
    if hasattr(signal, 'SIGHUP'):
        signal.signal(signal.SIGHUP, signal_handler)

    try:
        runner.run()
    except KeyboardInterrupt:
        print('Interrupted by user, stopping auto-tester...')
        runner.request_stop()
    finally:
        database.close()
    return 0


if __name__ == '__main__':
    raise SystemExit(main(sys.argv[1:]))
