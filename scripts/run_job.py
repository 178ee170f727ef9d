#!/usr/bin/env python3
"""
Run one background job: the entry point an external scheduler (cron,
Kubernetes CronJob, Cloud Scheduler) invokes.

Configuration comes from get_active_config(); the database URL from
--database-url, the config file, or MEALBOX_DATABASE_URL.

Usage:
    python3 scripts/run_job.py <job_type> [options]

Examples:
    # One invocation; a long run leaves a continuation job behind
    python3 scripts/run_job.py renewal_weekly

    # Keep invoking until the job reports no more work
    python3 scripts/run_job.py credit_expiry --until-complete

    # Notification-only pass for pauses close to the limit
    python3 scripts/run_job.py auto_cancel_warnings

    # Create tables first (local SQLite)
    python3 scripts/run_job.py order_generation --database-url sqlite:///mealbox.db --create-tables
"""

from __future__ import annotations

import argparse
import json
import sys
from pathlib import Path

# Project root on sys.path
ROOT = Path(__file__).resolve().parent.parent
sys.path.insert(0, str(ROOT))

from mealbox_batch.domain.types import JobType  # noqa: E402
from mealbox_batch.orchestrator import JobOrchestrator  # noqa: E402
from mealbox_config import get_active_config  # noqa: E402
from mealbox_kernel.db.engine import (  # noqa: E402
    create_tables,
    init_engine_from_url,
    session_scope,
)
from mealbox_kernel.exceptions import MealboxError  # noqa: E402
from mealbox_kernel.logging_config import get_logger  # noqa: E402

logger = get_logger("scripts.run_job")

WARNINGS_COMMAND = "auto_cancel_warnings"


def _parse_args() -> argparse.Namespace:
    parser = argparse.ArgumentParser(
        description="Run a mealbox background job once, or until it completes.",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog=__doc__,
    )
    parser.add_argument(
        "job_type",
        choices=[t.value for t in JobType] + [WARNINGS_COMMAND],
        help="Job type to run.",
    )
    parser.add_argument(
        "--until-complete",
        action="store_true",
        help="Re-invoke while the run reports more work.",
    )
    parser.add_argument(
        "--max-runs",
        type=int,
        default=100,
        help="Upper bound on invocations with --until-complete (default: 100).",
    )
    parser.add_argument(
        "--config",
        type=Path,
        default=None,
        help="Path to a YAML config file (default: packaged defaults).",
    )
    parser.add_argument(
        "--database-url",
        default=None,
        help="Database URL; overrides the config file.",
    )
    parser.add_argument(
        "--create-tables",
        action="store_true",
        help="Create missing tables before running.",
    )
    return parser.parse_args()


def main() -> int:
    args = _parse_args()
    config = get_active_config(args.config)
    database_url = args.database_url or config.database_url
    if not database_url:
        print("No database URL: pass --database-url or set MEALBOX_DATABASE_URL", file=sys.stderr)
        return 2

    init_engine_from_url(database_url)
    if args.create_tables:
        create_tables()

    try:
        with session_scope() as session:
            orchestrator = JobOrchestrator.from_session(session, config=config)
            if args.job_type == WARNINGS_COMMAND:
                warned = orchestrator.send_auto_cancel_warnings()
                output = {"warned": warned.warned, "days_remaining": warned.days_remaining}
            elif args.until_complete:
                runs = orchestrator.run_until_complete(args.job_type, max_runs=args.max_runs)
                output = {"runs": [_summary(r) for r in runs]}
            else:
                output = _summary(orchestrator.run(args.job_type))
    except MealboxError as exc:
        logger.error("job_cli_failed", extra={"job_type": args.job_type, "error": str(exc)})
        print(f"{type(exc).__name__}: {exc}", file=sys.stderr)
        return 1

    print(json.dumps(output, indent=2, default=str))
    return 0


def _summary(result) -> dict:
    return {
        "job_id": str(result.job_id),
        "job_type": result.job_type.value,
        "status": result.status.value,
        "result": result.result,
        "continuation_job_id": (
            str(result.continuation_job_id) if result.continuation_job_id else None
        ),
    }


if __name__ == "__main__":
    sys.exit(main())
