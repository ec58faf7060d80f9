from __future__ import annotations

import argparse
import json
import logging
import os
import threading

import yaml
from rich.console import Console
from rich.logging import RichHandler

from birthdaycal.config_manager import ConfigManager, resolve_config_path
from birthdaycal.scheduler import SyncScheduler
from birthdaycal.sync_engine import SyncEngine


EXIT_CODES = {"success": 0, "partial": 2}


def _setup_logging(verbose: bool) -> None:
    level_name = "DEBUG" if verbose else os.getenv("BIRTHDAYCAL_LOG_LEVEL", "INFO").upper()
    logging.basicConfig(
        level=getattr(logging, level_name, logging.INFO),
        format="%(message)s",
        datefmt="[%X]",
        handlers=[RichHandler(rich_tracebacks=True, show_path=False, console=Console(stderr=True))],
    )


def _parse_args(argv: list[str] | None = None) -> argparse.Namespace:
    parser = argparse.ArgumentParser(
        prog="birthdaycal",
        description="Keep a CalDAV calendar in sync with the birthdays of a CardDAV address book.",
    )
    parser.add_argument("--config", help="Path to the YAML config file.")
    parser.add_argument("--once", action="store_true", help="Run a single sync and exit.")
    parser.add_argument("-v", "--verbose", action="store_true", help="Enable debug logging.")
    parser.add_argument(
        "--show-config",
        action="store_true",
        help="Print the effective config with the password masked and exit.",
    )
    return parser.parse_args(argv)


def main(argv: list[str] | None = None) -> int:
    args = _parse_args(argv)
    _setup_logging(args.verbose)
    config_manager = ConfigManager(resolve_config_path(args.config))

    if args.show_config:
        print(yaml.safe_dump(config_manager.masked(), sort_keys=False, allow_unicode=True), end="")
        return 0

    sync_engine = SyncEngine(config_manager)

    if args.once:
        result = sync_engine.run_once(trigger="manual")
        print(json.dumps(result.to_dict(), ensure_ascii=False))
        return EXIT_CODES.get(result.status, 1)

    scheduler = SyncScheduler(sync_engine, config_manager)
    scheduler.start()
    try:
        threading.Event().wait()
    except KeyboardInterrupt:
        logging.getLogger(__name__).info("Stopping scheduler.")
    finally:
        scheduler.stop()
    return 0


if __name__ == "__main__":
    raise SystemExit(main())
