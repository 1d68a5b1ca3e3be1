"""Run a single test or calibration handshake from the command line."""
from __future__ import annotations

import argparse
import json
import sys
from contextlib import ExitStack
from datetime import datetime, timezone
from pathlib import Path
from typing import Optional

from autotester import load_config
from autotester.constants import PARAMETER_LABELS
from autotester.errors import AutotesterError, UnknownKey
from autotester.hardware import create_bus
from autotester.logging_setup import configure_logging
from autotester.protocol import (
    KIND_CALIBRATION,
    KIND_TEST,
    OPCODES,
    ProtocolDriver,
    resolve_opcode,
)
from autotester.storage import ConfigStore, Database, Reading, ResultStore


def parse_args(argv: list[str]) -> argparse.Namespace:
    parser = argparse.ArgumentParser(description='Trigger a test or calibration on the analyzer and wait for the result')
    parser.add_argument('key', nargs='?', help='Parameter key (ca, alk, mg, no3, po4) or "pump" with --calibrate')
    parser.add_argument('--config', type=Path, help='Configuration file (json/toml/yaml) to load')
    parser.add_argument('--address', type=lambda raw: int(raw, 0), help='Override the device address (e.g. 0x10)')
    parser.add_argument('--simulate', action='store_true', help='Use the simulated device instead of I2C')
    parser.add_argument('--calibrate', action='store_true', help='Run the calibration sequence for KEY')
    parser.add_argument('--store', action='store_true', help='Append the test reading to the database')
    parser.add_argument('--list', action='store_true', help='List known keys and their opcodes and exit')
    parser.add_argument('--json', action='store_true', help='Emit the result as JSON for automation use')
    return parser.parse_args(argv)


def _list_keys(as_json: bool) -> None:
    entries = [
        {'kind': kind, 'key': key, 'opcode': f'0x{opcode:02x}', 'label': PARAMETER_LABELS.get(key, key)}
        for (kind, key), opcode in OPCODES.items()
    ]
    if as_json:
        print(json.dumps(entries, ensure_ascii=False, indent=2))
        return
    for entry in entries:
        print(f"{entry['kind']:<12} {entry['key']:<5} {entry['opcode']}  {entry['label']}")


def _emit(payload: dict, as_json: bool) -> None:
    if as_json:
        print(json.dumps(payload, ensure_ascii=False, indent=2))
        return
    for name, value in payload.items():
        print(f"{name}: {value}")


def main(argv: list[str]) -> int:
    args = parse_args(argv)
    if args.list:
        _list_keys(args.json)
        return 0
    if not args.key:
        print('A key is required unless --list is given.', file=sys.stderr)
        return 2

    kind = KIND_CALIBRATION if args.calibrate else KIND_TEST
    try:
        opcode = resolve_opcode(kind, args.key)
    except UnknownKey as exc:
        print(str(exc), file=sys.stderr)
        return 3

    config = load_config(args.config)
    if args.simulate:
        config.bus.transport = 'sim'
    configure_logging(config.logging)
    key = args.key.strip().lower()

    with ExitStack() as stack:
        database: Optional[Database] = None
        address = args.address
        if address is None or args.store:
            database = Database(config.storage)
            stack.callback(database.close)
            database.initialise()
            if address is None:
                address = ConfigStore(database).get().address

        bus = create_bus(config.bus)
        stack.callback(bus.close)
        driver = ProtocolDriver(bus, poll_interval_s=config.driver.poll_interval_s)
        try:
            value = driver.execute_test(address, opcode, key=key)
        except KeyboardInterrupt:
            print('Interrupted; the device may still be running the command.', file=sys.stderr)
            return 130
        except AutotesterError as exc:
            print(f"{kind.capitalize()} failed: {type(exc).__name__}: {exc}", file=sys.stderr)
            return 5

        payload = {
            'kind': kind,
            'key': key,
            'address': f'0x{address:02x}',
            'opcode': f'0x{opcode:02x}',
            'value': value,
        }
        if args.store and kind == KIND_TEST and database is not None:
            try:
                payload['record_id'] = ResultStore(database).append(
                    Reading(parameter=key, value=value, timestamp=datetime.now(timezone.utc))
                )
            except AutotesterError as exc:
                print(f"Could not store reading: {exc}", file=sys.stderr)
                return 6

    _emit(payload, args.json)
    return 0


if __name__ == '__main__':
    raise SystemExit(main(sys.argv[1:]))
