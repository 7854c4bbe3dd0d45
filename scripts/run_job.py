#!/usr/bin/env python
"""
Run Job
Entry point for an external cron to trigger a scheduled job

Usage:
    python scripts/run_job.py daily_archival
    python scripts/run_job.py weekly_summary --at 2026-03-08T08:00:00+00:00
    python scripts/run_job.py --list
"""

import sys
import os
import argparse
import asyncio
import json
import logging
from datetime import datetime, timezone

# Add parent directory to path for imports
sys.path.insert(0, os.path.dirname(os.path.dirname(os.path.abspath(__file__))))

from config import settings
from database import init_db
from jobs.tasks import JOB_REGISTRY, ScheduledJobs, run_job
from services.container import build_services


logging.basicConfig(level=settings.LOG_LEVEL, format=settings.LOG_FORMAT)
logger = logging.getLogger(__name__)


def parse_instant(value: str) -> datetime:
    instant = datetime.fromisoformat(value)
    if instant.tzinfo is None:
        raise argparse.ArgumentTypeError("--at must include a UTC offset")
    return instant.astimezone(timezone.utc)


async def trigger(job_name: str, now: datetime = None) -> dict:
    init_db()
    jobs = ScheduledJobs(build_services())
    return await run_job(jobs, job_name, now=now)


def main():
    parser = argparse.ArgumentParser(
        description="Trigger a DoseLedger scheduled job"
    )
    parser.add_argument(
        "job",
        nargs="?",
        choices=sorted(JOB_REGISTRY),
        help="Job to run"
    )
    parser.add_argument(
        "--at",
        type=parse_instant,
        help="Run as if the clock read this ISO-8601 instant"
    )
    parser.add_argument(
        "--list",
        action="store_true",
        help="List jobs with their cron schedules"
    )

    args = parser.parse_args()

    if args.list or not args.job:
        for name, (_, cron) in sorted(JOB_REGISTRY.items()):
            print(f"{name:<28} {cron}")
        return

    report = asyncio.run(trigger(args.job, now=args.at))
    print(json.dumps(report, indent=2, default=str))

    if report.get("failed"):
        sys.exit(1)


if __name__ == "__main__":
    main()
