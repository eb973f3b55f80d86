#!/usr/bin/env python3
"""View print jobs on Digital Factory.

Prints a small, human-friendly summary of print jobs (running ones by
default).

API ref:
- GET /connect/v1/print_jobs?limit=..&status=..
"""

from __future__ import annotations

import argparse
import json
import sys
from typing import Any, Dict, List

import requests
from dotenv import load_dotenv

from digital_factory.authorize import authenticated_client, build_token_manager
from digital_factory.oauth import SignInError


def _parse_args(argv: List[str]) -> argparse.Namespace:
    p = argparse.ArgumentParser(description="View Digital Factory print jobs")
    p.add_argument("--limit", type=int, default=20, help="Max jobs to fetch")
    p.add_argument(
        "--status",
        default="in_progress",
        help="Job status filter (default: in_progress)",
    )
    p.add_argument(
        "--json",
        action="store_true",
        help="Print raw JSON for each job",
    )
    p.add_argument("--timeout-s", type=int, default=None)
    p.add_argument("--state-file", default=None, help="State JSON path")
    return p.parse_args(argv)


def format_print_job(job: Dict[str, Any]) -> str:
    lines = [
        "-",
        f"id:       {job.get('job_instance_uuid') or job.get('uuid')}",
        f"name:     {job.get('name') or job.get('job_name')}",
        f"status:   {job.get('status')}",
        f"cluster:  {job.get('cluster_id')}",
    ]
    if job.get("progress") is not None:
        lines.append(f"progress: {job.get('progress')}")
    return "\n".join(lines)


def main(argv: List[str]) -> int:
    load_dotenv()
    args = _parse_args(argv)

    try:
        manager = build_token_manager(args.timeout_s, args.state_file)
    except SignInError as e:
        print(f"ERROR: {e}", file=sys.stderr)
        return 2

    try:
        client = authenticated_client(manager)
        jobs = client.get_running_print_jobs(
            limit=max(1, int(args.limit)), status=args.status
        )
    except (requests.RequestException, RuntimeError) as e:
        print(f"ERROR: failed to fetch print jobs: {e}", file=sys.stderr)
        return 1

    for job in jobs:
        if not isinstance(job, dict):
            continue
        if args.json:
            print(json.dumps(job, indent=2, sort_keys=True, ensure_ascii=False))
        else:
            print(format_print_job(job))

    if not jobs:
        print("No print jobs matched.")
        return 3

    return 0


if __name__ == "__main__":
    raise SystemExit(main(sys.argv[1:]))
