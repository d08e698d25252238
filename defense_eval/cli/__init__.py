#!/usr/bin/env python3
"""
Defense Evaluation CLI

Usage:
    python -m defense_eval.cli <command> [options]

Commands:
    db          Database operations (init, verify, seed-demo)

Environment:
    DATABASE_URL    Database connection string
    LOG_LEVEL       DEBUG|INFO|WARNING|ERROR
"""
import sys
import argparse
import logging
from typing import Optional

from defense_eval.cli.db_commands import DbCommand
from defense_eval.core.stages import EvaluationType


def setup_logging(level: str = "INFO") -> None:
    """Configure logging."""
    logging.basicConfig(
        level=getattr(logging, level.upper()),
        format="%(asctime)s - %(name)s - %(levelname)s - %(message)s"
    )


def create_parser() -> argparse.ArgumentParser:
    """Create CLI argument parser."""
    parser = argparse.ArgumentParser(
        prog="defense-eval",
        description="Defense Evaluation CLI",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog="""
Examples:
  %(prog)s db init
  %(prog)s db seed-demo --type final --rooms 2
  %(prog)s db verify --json
        """
    )

    parser.add_argument(
        "--version",
        action="version",
        version="%(prog)s 1.0.0"
    )

    parser.add_argument(
        "--log-level",
        default="INFO",
        choices=["DEBUG", "INFO", "WARNING", "ERROR"],
        help="Logging level (default: INFO)"
    )

    parser.add_argument(
        "--dry-run",
        action="store_true",
        help="Show what would be done without executing"
    )

    parser.add_argument(
        "--database-url",
        default=None,
        help="Override DATABASE_URL"
    )

    subparsers = parser.add_subparsers(dest="command", help="Available commands")

    # Database commands
    db_parser = subparsers.add_parser("db", help="Database operations")
    db_subparsers = db_parser.add_subparsers(dest="db_action")

    # db init
    db_subparsers.add_parser("init", help="Create missing tables")

    # db verify
    verify_parser = db_subparsers.add_parser("verify", help="Verify completion invariants")
    verify_parser.add_argument("--json", action="store_true", help="Print the full report as JSON")

    # db seed-demo
    seed_parser = db_subparsers.add_parser("seed-demo", help="Seed a demo defense")
    seed_parser.add_argument(
        "--type",
        choices=[t.value for t in EvaluationType],
        default=EvaluationType.PROPOSAL.value,
        help="Evaluation type of the defense"
    )
    seed_parser.add_argument("--rooms", type=int, default=2, help="Number of rooms")
    seed_parser.add_argument("--projects", type=int, default=3, help="Projects per room")
    seed_parser.add_argument("--evaluators", type=int, default=3, help="Evaluators per room")
    seed_parser.add_argument("--members", type=int, default=3, help="Team members per project")

    return parser


def main(args: Optional[list] = None) -> int:
    """Main entry point."""
    parser = create_parser()
    parsed = parser.parse_args(args)

    if not parsed.command:
        parser.print_help()
        return 1

    setup_logging(parsed.log_level)

    command_map = {
        "db": DbCommand,
    }

    if parsed.command in command_map:
        handler = command_map[parsed.command](dry_run=parsed.dry_run, database_url=parsed.database_url)
        return handler.execute(parsed)

    parser.print_help()
    return 1


if __name__ == "__main__":
    sys.exit(main())
