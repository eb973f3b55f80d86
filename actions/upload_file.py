#!/usr/bin/env python3
"""Upload a UFP file to a Digital Factory project, optionally printing it.

Usage:
  python -m actions.upload_file --project-id <ID> --file model.ufp
  python -m actions.upload_file --project-id <ID> --file model.ufp \
      --cluster-id <CLUSTER_ID>

Env vars (loaded from `.env` if present):
- CLIENT_ID (required)
- CLUSTER_ID (optional, used when --cluster-id is not given and --print is set)
"""

from __future__ import annotations

import argparse
import os
import sys
from pathlib import Path
from typing import Any, Dict, List, Optional

import requests
from dotenv import load_dotenv

from digital_factory.authorize import authenticated_client, build_token_manager
from digital_factory.digital_factory_client import DigitalFactoryClient
from digital_factory.oauth import SignInError


def upload_file(
    client: DigitalFactoryClient,
    *,
    project_id: str,
    file_path: str,
    cluster_id: Optional[str] = None,
) -> Dict[str, Any]:
    """Upload file_path into the project; submit it when cluster_id is set.

    Returns {"upload": <slot data>, "print_job": <submit data or None>}.
    """
    upload = client.upload_file_to_project(project_id, file_path) or {}
    print_job = None
    if cluster_id:
        print_job = client.submit_print_job(upload.get("job_id"), cluster_id)
    return {"upload": upload, "print_job": print_job}


def _parse_args(argv: List[str]) -> argparse.Namespace:
    p = argparse.ArgumentParser(description="Upload a UFP file")
    p.add_argument("--project-id", required=True, help="Library project id")
    p.add_argument("--file", required=True, help="Path to the .ufp file")
    p.add_argument(
        "--cluster-id",
        default=None,
        help="Submit the uploaded job to this cluster",
    )
    p.add_argument(
        "--print",
        action="store_true",
        help="Submit to env CLUSTER_ID when --cluster-id is not given",
    )
    p.add_argument("--dry-run", action="store_true", help="Do not upload")
    p.add_argument("--timeout-s", type=int, default=None)
    p.add_argument("--state-file", default=None, help="State JSON path")
    return p.parse_args(argv)


def main(argv: List[str]) -> int:
    load_dotenv()
    args = _parse_args(argv)

    if not Path(args.file).is_file():
        print(f"ERROR: file not found: {args.file}", file=sys.stderr)
        return 2

    cluster_id = args.cluster_id
    if cluster_id is None and args.print:
        cluster_id = os.getenv("CLUSTER_ID")
        if not cluster_id:
            print("ERROR: CLUSTER_ID not set (check your .env)", file=sys.stderr)
            return 2

    try:
        manager = build_token_manager(args.timeout_s, args.state_file)
    except SignInError as e:
        print(f"ERROR: {e}", file=sys.stderr)
        return 2

    try:
        client = authenticated_client(manager, dry_run=args.dry_run)
        result = upload_file(
            client,
            project_id=args.project_id,
            file_path=args.file,
            cluster_id=cluster_id,
        )
    except (requests.RequestException, RuntimeError, OSError) as e:
        print(f"ERROR: upload failed: {e}", file=sys.stderr)
        return 1

    print(f"Uploaded file with ID: {result['upload'].get('job_id')}")
    if result["print_job"] is not None:
        print(
            "Submitted print job with ID: "
            f"{(result['print_job'] or {}).get('job_instance_uuid')}"
        )
    return 0


if __name__ == "__main__":
    raise SystemExit(main(sys.argv[1:]))
