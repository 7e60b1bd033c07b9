"""Command-line interface for fieldlink."""

from __future__ import annotations

import argparse
import logging
import sys
from pathlib import Path
from typing import Optional

from . import constants
from .alarms import RuleConfigurationError, load_rules
from .app import FieldlinkApp
from .config import load_config

LOGGER = logging.getLogger(__name__)


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="fieldlink", description="MQTT command and monitoring hub for field devices"
    )
    parser.add_argument(
        "-c",
        "--config",
        type=Path,
        default=constants.DEFAULT_CONFIG_PATH,
        help=f"Path to configuration file (default: {constants.DEFAULT_CONFIG_PATH})",
    )

    subparsers = parser.add_subparsers(dest="command", required=True)

    subparsers.add_parser("start", help="Start the fieldlink service")

    subparsers.add_parser(
        "show-config", help="Print the resolved configuration and exit"
    )

    rules_parser = subparsers.add_parser(
        "check-rules", help="Validate an alarm rules file and summarise it"
    )
    rules_parser.add_argument(
        "path",
        type=Path,
        nargs="?",
        help="Rules file to check (default: [alarms] rules_path from the config)",
    )

    return parser


def main(argv: Optional[list[str]] = None) -> int:
    parser = build_parser()
    args = parser.parse_args(argv)

    config = load_config(args.config)

    if args.command == "start":
        FieldlinkApp.start(config)
        return 0

    if args.command == "show-config":
        print(f"Configuration loaded from {config.path!s}\n")
        for section in config.raw.sections():
            print(f"[{section}]")
            for key, value in config.raw[section].items():
                if key == "password" and value:
                    value = "********"
                print(f"{key} = {value}")
            print()
        return 0

    if args.command == "check-rules":
        path = args.path or config.alarms.rules_path
        if path is None:
            print("No rules file given and [alarms] rules_path is not set")
            return 1
        try:
            store = load_rules(path)
        except RuleConfigurationError as exc:
            print(f"Invalid rules: {exc}")
            return 1

        print(f"{len(store)} alarm(s) in {path!s}")
        for device_id in store.device_ids():
            alarms = store.alarms_for_device(device_id, active_only=False)
            active = sum(1 for alarm in alarms if alarm.active)
            rule_count = sum(len(alarm.rules) for alarm in alarms)
            print(
                f"  {device_id}: {len(alarms)} alarm(s), {active} active, "
                f"{rule_count} threshold rule(s)"
            )
        return 0

    LOGGER.error("Unknown command: %s", args.command)
    return 1


if __name__ == "__main__":
    sys.exit(main())
