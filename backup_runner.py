"""Command line interface for the PostgreSQL to Cloudflare R2 backup tool."""
from __future__ import annotations

import argparse
import logging
import sys
from functools import partial
from pathlib import Path
from typing import Iterable, Optional

from pg_backup.config import ENV_VARIABLES, ConfigurationError, load_config
from pg_backup.pipeline import BackupPipeline, PipelineError
from pg_backup.utils import mask_sensitive

LOGGER = logging.getLogger("pg_backup")


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        description="Dump a PostgreSQL database and upload it to a Cloudflare R2 bucket.",
    )
    parser.add_argument(
        "--env-file",
        help="Path to a dotenv file (default: ./.env when present).",
    )
    parser.add_argument("--config", help="Optional YAML file with default variable values.")
    parser.add_argument("-v", "--verbose", action="count", default=0, help="Increase log verbosity.")
    parser.add_argument("-q", "--quiet", action="store_true", help="Only log warnings and errors.")

    subparsers = parser.add_subparsers(dest="command")
    subparsers.add_parser("run", help="Run the dump and upload once.")
    subparsers.add_parser("check-config", help="Print the resolved configuration with secrets masked.")
    return parser


def configure_logging(level: int, quiet: bool = False) -> None:
    if quiet:
        log_level = logging.WARNING
    elif level >= 1:
        log_level = logging.DEBUG
    else:
        log_level = logging.INFO
    logging.basicConfig(level=log_level, format="%(asctime)s [%(levelname)s] %(name)s: %(message)s")


def _optional_path(value: Optional[str]) -> Optional[Path]:
    return Path(value) if value else None


def handle_run(args: argparse.Namespace) -> None:
    loader = partial(
        load_config,
        env_file=_optional_path(args.env_file),
        config_file=_optional_path(args.config),
    )
    pipeline = BackupPipeline(config_loader=loader)
    try:
        pipeline.run()
    except PipelineError as exc:
        secrets = pipeline.config.secrets if pipeline.config else ()
        LOGGER.critical(
            "Backup %s failed: %s",
            exc.step.value,
            mask_sensitive(str(exc.cause), secrets),
        )
        sys.exit(1)


def handle_check_config(args: argparse.Namespace) -> None:
    try:
        config = load_config(
            env_file=_optional_path(args.env_file),
            config_file=_optional_path(args.config),
        )
    except ConfigurationError as exc:
        print(f"Configuration error: {exc}", file=sys.stderr)
        sys.exit(1)

    values = config.to_dict(mask=True)
    for attr, variable in ENV_VARIABLES.items():
        value = values[attr]
        print(f"{variable}={value}" if value else f"{variable}= (empty)")
    print(f"BACKUP_DIR={values['backup_dir']}")


def main(argv: Optional[Iterable[str]] = None) -> None:
    parser = build_parser()
    args = parser.parse_args(argv)
    if not args.command:
        parser.print_help()
        return

    configure_logging(args.verbose, args.quiet)

    if args.command == "run":
        handle_run(args)
    elif args.command == "check-config":
        handle_check_config(args)
    else:
        parser.print_help()


if __name__ == "__main__":
    main()
