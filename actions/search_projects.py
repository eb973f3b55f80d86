#!/usr/bin/env python3
"""Search Digital Factory library projects by name."""

from __future__ import annotations

import argparse
import json
import sys
from typing import List

import requests
from dotenv import load_dotenv

from digital_factory.authorize import authenticated_client, build_token_manager
from digital_factory.oauth import SignInError


def _parse_args(argv: List[str]) -> argparse.Namespace:
    p = argparse.ArgumentParser(description="Search Digital Factory projects")
    p.add_argument("search", nargs="?", default="", help="Search term")
    p.add_argument("--limit", type=int, default=24)
    p.add_argument("--page", type=int, default=1)
    p.add_argument(
        "--shared",
        action="store_true",
        help="Search projects shared with you instead of your own",
    )
    p.add_argument("--json", action="store_true", help="Print raw JSON")
    p.add_argument("--timeout-s", type=int, default=None)
    p.add_argument("--state-file", default=None, help="State JSON path")
    return p.parse_args(argv)


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
        projects = client.search_projects(
            search=args.search,
            limit=max(1, int(args.limit)),
            page=max(1, int(args.page)),
            shared=args.shared,
        )
    except (requests.RequestException, RuntimeError) as e:
        print(f"ERROR: project search failed: {e}", file=sys.stderr)
        return 1

    if args.json:
        print(json.dumps(projects, indent=2, sort_keys=True, ensure_ascii=False))
    else:
        for project in projects:
            print(
                f"{project.get('library_project_id')}  "
                f"{project.get('display_name')}"
            )

    if not projects:
        print("No projects found.")
        return 3
    return 0


if __name__ == "__main__":
    raise SystemExit(main(sys.argv[1:]))
