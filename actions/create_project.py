#!/usr/bin/env python3
"""Create a Digital Factory library project.

This is a small, generic "action" script intended to be:
- runnable as a standalone CLI
- importable by other scripts (shared project creation behavior)

Uses the cached token from `python -m digital_factory.authorize` and signs in
through the browser when there is none.

Env vars (loaded from `.env` if present):
- CLIENT_ID (required)
- DIGITAL_FACTORY_TIMEOUT_S (optional, default: 60)
"""

from __future__ import annotations

import argparse
import json
import sys
from typing import Any, Dict, List, Optional

import requests
from dotenv import load_dotenv

from digital_factory.authorize import authenticated_client, build_token_manager
from digital_factory.digital_factory_client import DigitalFactoryClient
from digital_factory.oauth import SignInError


def create_project(
    client: DigitalFactoryClient,
    *,
    name: str,
    comment: Optional[str] = None,
) -> Dict[str, Any]:
    """Create a project and optionally leave a first comment on it."""
    project = client.create_project(name) or {}
    if comment:
        project_id = project.get("library_project_id")
        client.add_comment_to_project(project_id, comment)
    return project


def _parse_args(argv: List[str]) -> argparse.Namespace:
    p = argparse.ArgumentParser(description="Create a Digital Factory project")
    p.add_argument("--name", required=True, help="Project display name")
    p.add_argument("--comment", default=None, help="Optional first comment")
    p.add_argument("--dry-run", action="store_true", help="Do not PUT")
    p.add_argument(
        "--json",
        action="store_true",
        help="Print the raw project JSON",
    )
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
        client = authenticated_client(manager, dry_run=args.dry_run)
        project = create_project(client, name=args.name, comment=args.comment)
    except (requests.RequestException, RuntimeError) as e:
        print(f"ERROR: failed to create project: {e}", file=sys.stderr)
        return 1

    if args.json:
        print(json.dumps(project, indent=2, sort_keys=True, ensure_ascii=False))
    else:
        print(f"Created project with ID: {project.get('library_project_id')}")
    return 0


if __name__ == "__main__":
    raise SystemExit(main(sys.argv[1:]))
