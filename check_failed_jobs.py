#!/usr/bin/env python3
"""Show patient jobs that failed permanently, for manual registration."""

import argparse
import asyncio
import json
import sys
from typing import List

from config import get_db_config
from exceptions import QueueStoreError
from patient_queue import FAILED_ARCHIVE_SIZE, Job, PatientQueue, PostgresJobStore


def print_failed_jobs(jobs: List[Job], show_payload: bool = True) -> None:
    if not jobs:
        print("✅ No failed jobs in the archive.")
        return

    print(f"❌ Found {len(jobs)} failed job(s)\n")
    print("=" * 100)
    for i, job in enumerate(jobs, 1):
        print(f"\n📋 Job #{i}: {job.id}")
        patient = job.payload if isinstance(job.payload, dict) else {}
        print("-" * 100)
        print(f"  {'patient':20s}: {patient.get('nombre') or 'N/A'} {patient.get('apellidos') or ''}")
        print(f"  {'attempts':20s}: {job.attempt}/{job.max_attempts}")
        print(f"  {'failed at':20s}: {job.finished_at}")
        print(f"  {'error':20s}: {job.error}")
        if show_payload:
            print(f"  {'payload':20s}:")
            print(json.dumps(job.payload, indent=2, ensure_ascii=False))
        print()


def main(argv=None) -> int:
    parser = argparse.ArgumentParser(description="List patient jobs that exhausted all retries")
    parser.add_argument(
        '--limit',
        type=int,
        default=FAILED_ARCHIVE_SIZE,
        help=f'Maximum number of jobs to show (default: {FAILED_ARCHIVE_SIZE})'
    )
    parser.add_argument(
        '--no-payload',
        action='store_true',
        help='Hide the submitted patient data'
    )
    args = parser.parse_args(argv)

    queue = PatientQueue(PostgresJobStore(get_db_config()))
    try:
        jobs = asyncio.run(queue.failed_jobs(args.limit))
    except QueueStoreError as e:
        print(f"❌ {e}")
        print("\nPlease check:")
        print("  1. PostgreSQL is running")
        print("  2. Database credentials in .env file are correct")
        print("  3. Table 'patient_jobs' exists (run db_schema.sql if needed)")
        return 1

    print_failed_jobs(jobs, show_payload=not args.no_payload)
    return 0


if __name__ == '__main__':
    sys.exit(main())
