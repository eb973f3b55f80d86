#!/usr/bin/env python3
"""Interactive Digital Factory API demo.

Signs in through the browser, then walks through the main API calls:
create a project, comment on it, upload a UFP file and print it on a cluster
(when configured), list running print jobs and search projects.

Recommended invocation:
- python -m digital_factory.demo

Env vars (loaded from `.env`):
- CLIENT_ID (required)
- SCOPES (optional)
- CLUSTER_ID, UFP_PATH (optional; enable the upload + print part)
"""

from __future__ import annotations

import argparse
import json
import os
import sys
from typing import Any, List, Optional

import requests
from dotenv import load_dotenv

from digital_factory.authorize import build_token_manager
from digital_factory.digital_factory_client import DigitalFactoryClient


PLACEHOLDER_CLUSTER_ID = "your-cluster-id"
PLACEHOLDER_UFP_PATH = "path/to/your/file.ufp"
PROJECT_URL = "https://digitalfactory.ultimaker.com/app/library/project/{}"


def pretty_json(value: Any) -> str:
    return json.dumps(value, indent=4, ensure_ascii=False)


def print_job_configured(
    cluster_id: Optional[str], ufp_path: Optional[str]
) -> bool:
    """True when both values are set and not the sample placeholders."""
    return bool(
        cluster_id
        and ufp_path
        and cluster_id != PLACEHOLDER_CLUSTER_ID
        and ufp_path != PLACEHOLDER_UFP_PATH
    )


def _print_first(label: str, items: List[Any], empty_msg: str) -> None:
    if items:
        print(f"Total {label} retrieved: {len(items)}")
        print(f"First {label[:-1]} retrieved: {pretty_json(items[0])}\n")
    else:
        print(empty_msg + "\n")


def run_demo(
    client: DigitalFactoryClient,
    *,
    project_name: str = "Demo project",
    comment: str = "Demo comment",
    cluster_id: Optional[str] = None,
    ufp_path: Optional[str] = None,
    search: str = "demo",
) -> None:
    print("Creating demo project...")
    project = client.create_project(project_name) or {}
    project_id = project.get("library_project_id")
    print(f"Created project with ID: {project_id}\n")

    print("Adding comment to demo project...")
    client.add_comment_to_project(project_id, comment)
    print("Comment added.\n")

    if print_job_configured(cluster_id, ufp_path):
        print("Uploading file to demo project...")
        upload = client.upload_file_to_project(project_id, ufp_path) or {}
        job_id = upload.get("job_id")
        print(f"Uploaded file with ID: {job_id}\n")
        print(f"Visit {PROJECT_URL.format(project_id)} to see your project\n")

        print("Submitting a print job")
        submitted = client.submit_print_job(job_id, cluster_id) or {}
        print(
            "Submitted print job with ID: "
            f"{submitted.get('job_instance_uuid')}\n"
        )
    else:
        print(
            "(Skipping print job submission. Configure CLUSTER_ID and "
            "UFP_PATH in '.env' for this part of the demo.)\n"
        )

    print("Getting running print jobs.")
    _print_first(
        "print jobs",
        client.get_running_print_jobs(),
        "No running print jobs found. Sometimes it takes up to 10 seconds "
        "for new print jobs to show up.",
    )

    print("Searching projects.")
    _print_first(
        "projects",
        client.search_projects(search=search),
        "No projects found.",
    )


def _parse_args(argv: List[str]) -> argparse.Namespace:
    p = argparse.ArgumentParser(description="Run the Digital Factory API demo")
    p.add_argument("--project-name", default="Demo project")
    p.add_argument("--comment", default="Demo comment")
    p.add_argument("--search", default="demo", help="Project search term")
    p.add_argument(
        "--cluster-id",
        default=None,
        help="Cluster to print on (default: env CLUSTER_ID)",
    )
    p.add_argument(
        "--ufp-path",
        default=None,
        help="UFP file to upload (default: env UFP_PATH)",
    )
    p.add_argument(
        "--dry-run",
        action="store_true",
        help="Do not perform write operations (POST/PATCH/PUT/DELETE)",
    )
    p.add_argument(
        "--use-cached-token",
        action="store_true",
        help="Reuse (or refresh) the cached token instead of signing in",
    )
    p.add_argument(
        "--open-browser",
        action="store_true",
        help="Open the sign-in URL in the default browser",
    )
    p.add_argument("--state-file", default=None, help="State JSON path")
    return p.parse_args(argv)


def main(argv: List[str]) -> int:
    load_dotenv()

    args = _parse_args(argv)
    timeout_s = int(os.getenv("DIGITAL_FACTORY_TIMEOUT_S", "60"))

    try:
        manager = build_token_manager(timeout_s, args.state_file)
    except RuntimeError as e:
        print(f"ERROR: {e}", file=sys.stderr)
        return 2

    try:
        manager.ensure_token(
            use_cache=args.use_cached_token, open_browser=args.open_browser
        )
        print("Sign in completed.\n")

        client = DigitalFactoryClient(
            timeout_s=timeout_s,
            dry_run=args.dry_run,
            retries=int(os.getenv("DIGITAL_FACTORY_RETRIES", "2")),
            token_provider=manager.access_token,
        )
        run_demo(
            client,
            project_name=args.project_name,
            comment=args.comment,
            cluster_id=args.cluster_id or os.getenv("CLUSTER_ID"),
            ufp_path=args.ufp_path or os.getenv("UFP_PATH"),
            search=args.search,
        )
    except (requests.RequestException, RuntimeError, OSError) as e:
        print(f"ERROR: demo failed: {e}", file=sys.stderr)
        return 1

    return 0


if __name__ == "__main__":
    raise SystemExit(main(sys.argv[1:]))
