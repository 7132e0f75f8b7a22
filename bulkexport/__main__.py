"""CLI entry point for running export passes.

Usage:
    python -m bulkexport create --config export.yaml
    python -m bulkexport check --config export.yaml
    python -m bulkexport status --config export.yaml
    python -m bulkexport reset --config export.yaml --yes

The ``create`` and ``check`` commands are meant to be run on a schedule
(cron, a task scheduler, a workflow engine). Each run is one pass.
"""

from __future__ import annotations

import argparse
import json
import logging
import sys
from typing import List, Optional

from bulkexport.lib.config import ExportConfig, load_config, load_env_file
from bulkexport.lib.coordinator import (
    ExportCoordinator,
    PassResult,
    PassState,
    check_and_merge_jobs,
    create_export_jobs,
)
from bulkexport.lib.errors import ExportError
from bulkexport.lib.logging import setup_logging

logger = logging.getLogger(__name__)


def print_result(result: PassResult) -> None:
    """Print a pass summary."""
    print()
    print("=" * 60)
    print(f"{result.pass_name.upper()} PASS: {result.state.value.upper()}")
    print("=" * 60)
    if result.reason:
        print(f"  Reason:         {result.reason.value}")
    if result.pass_name == "create":
        print(f"  Jobs created:   {len(result.jobs_created)}")
    else:
        print(f"  Jobs merged:    {len(result.jobs_merged)}")
        print(f"  Jobs dropped:   {len(result.jobs_dropped)}")
        print(f"  Jobs pending:   {len(result.jobs_retained)}")
        print(f"  Rows inserted:  {result.rows_inserted}")
    if result.watermark is not None:
        print(f"  Watermark:      {result.watermark.describe()}")
    print(f"  Elapsed:        {result.elapsed_seconds:.1f}s")
    if result.error:
        print(f"  Error:          {result.error}")
    print()


def status_command(config: ExportConfig, as_json: bool = False) -> None:
    """Print watermark, pending jobs and lease holder."""
    with ExportCoordinator(config) as coordinator:
        snapshot = coordinator.status()

    if as_json:
        print(json.dumps(snapshot, indent=2, default=str))
        return

    watermark = snapshot["watermark"]
    print()
    print("=" * 60)
    print("EXPORT STATE")
    print("=" * 60)
    print(f"  State dir:      {config.state_dir}")
    print(f"  Sink:           {config.sink_path}")
    print(f"  Max id:         {watermark['maxIngestedId']}")
    print(f"  Max createdAt:  {watermark['maxIngestedTimestamp'] or '(none)'}")
    lock = snapshot["lock"]
    if lock:
        print(f"  Lease:          held by {lock['owner']} until {lock['expiresAt']}")
    else:
        print("  Lease:          free")
    print()

    jobs = snapshot["pending_jobs"]
    if not jobs:
        print("No pending export jobs.")
        return

    print(f"Pending export jobs ({len(jobs)}):")
    print(f"  {'Export id':<38}  {'Status':<10}  Window")
    print(f"  {'-' * 38}  {'-' * 10}  {'-' * 42}")
    for job in jobs:
        window = f"{job.get('windowStart', '-')} .. {job.get('windowEnd', '-')}"
        print(f"  {job['exportId']:<38}  {job['status']:<10}  {window}")


def reset_command(config: ExportConfig, confirmed: bool) -> int:
    """Clear all persisted state; refuses without ``--yes``."""
    if not confirmed:
        print("Refusing to reset export state without --yes.")
        print(f"  This clears the watermark and pending jobs in {config.state_dir}")
        print("  Rows already in the sink are kept; the next run restarts from start_at.")
        return 1

    with ExportCoordinator(config) as coordinator:
        coordinator.reset()
    print(f"Cleared export state in {config.state_dir}")
    return 0


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="bulk-export",
        description="Incremental bulk export coordinator",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog="""
Examples:
    # Create export jobs for new data (schedule e.g. hourly)
    bulk-export create --config export.yaml

    # Merge finished jobs into the sink (schedule e.g. every 10 minutes)
    bulk-export check --config export.yaml

    # Show watermark and pending jobs
    bulk-export status --config export.yaml

    # Start over from start_at
    bulk-export reset --config export.yaml --yes
        """,
    )
    parser.add_argument(
        "command",
        choices=["create", "check", "status", "reset"],
        help="Pass or administrative command to run",
    )
    parser.add_argument(
        "--config",
        "-c",
        required=True,
        help="Path to the export YAML configuration",
    )
    parser.add_argument(
        "--yes",
        action="store_true",
        help="Confirm destructive commands (reset)",
    )
    parser.add_argument(
        "--json",
        action="store_true",
        dest="as_json",
        help="Print command output as JSON",
    )
    parser.add_argument(
        "-v",
        "--verbose",
        action="store_true",
        help="Enable verbose logging",
    )
    parser.add_argument(
        "--json-logs",
        action="store_true",
        help="Output logs in JSON format (for log aggregation systems)",
    )
    parser.add_argument(
        "--log-file",
        help="Write logs to a file in addition to console",
    )
    parser.add_argument(
        "--env-file",
        help="Load environment variables from this .env file (default: ./.env)",
    )
    return parser


def main(argv: Optional[List[str]] = None) -> int:
    """Main entry point for the CLI."""
    args = build_parser().parse_args(argv)

    setup_logging(verbose=args.verbose, json_format=args.json_logs, log_file=args.log_file)
    load_env_file(args.env_file)

    try:
        config = load_config(args.config)
    except ExportError as exc:
        print(f"Error: {exc}", file=sys.stderr)
        return 1

    if args.command == "status":
        status_command(config, as_json=args.as_json)
        return 0

    if args.command == "reset":
        return reset_command(config, args.yes)

    if args.command == "create":
        result = create_export_jobs(config)
    else:
        result = check_and_merge_jobs(config)

    if args.as_json:
        print(json.dumps(result.to_dict(), indent=2, default=str))
    else:
        print_result(result)
    return 1 if result.state == PassState.FAILED else 0


if __name__ == "__main__":
    sys.exit(main())
