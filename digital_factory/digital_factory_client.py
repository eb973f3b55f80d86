#!/usr/bin/env python3
"""Digital Factory API client.

This module intentionally contains only API communication logic so it can be
reused by the demo, the cluster monitor and standalone scripts under
`actions/`.

Important:
- Every API response wraps its payload in a `{"data": ...}` envelope; the
  public methods return the unwrapped `data` member.
- File uploads go to a pre-signed storage URL. That request must not carry
  the Authorization header.
"""

from __future__ import annotations

import logging
import os
import time
from pathlib import Path
from typing import Any, Callable, Dict, List, Optional

import requests


logger = logging.getLogger("digital-factory")

DEFAULT_API_ROOT = "https://api.ultimaker.com"
UFP_MIME_TYPE = "application/x-ufp"


class DigitalFactoryClient:
    """Client for interacting with the Digital Factory API."""

    def __init__(
        self,
        access_token: Optional[str] = None,
        api_root: Optional[str] = None,
        timeout_s: int = 60,
        dry_run: bool = False,
        retries: int = 2,
        retry_backoff_s: float = 1.0,
        token_provider: Optional[Callable[[], str]] = None,
    ):
        """Initialize the Digital Factory client.

        Args:
            access_token: OAuth2 access token sent as Bearer credential
            api_root: Root URL of the API (default: env
                DIGITAL_FACTORY_API_ROOT or https://api.ultimaker.com)
            timeout_s: Default request timeout in seconds
            dry_run: If True, do not perform write operations
                (POST/PATCH/PUT/DELETE)
            retries: Number of retries for idempotent requests (GET/HEAD)
            retry_backoff_s: Base backoff in seconds between retries
            token_provider: Callable returning a current access token. Takes
                precedence over `access_token` and is asked before every
                request, so long-running callers can refresh transparently.
        """
        self.api_root = (
            api_root
            or os.getenv("DIGITAL_FACTORY_API_ROOT")
            or DEFAULT_API_ROOT
        ).rstrip("/")
        self.timeout_s = timeout_s
        self.dry_run = dry_run
        self.retries = max(0, int(retries))
        self.retry_backoff_s = float(retry_backoff_s)
        self.token_provider = token_provider

        self.session = requests.Session()
        self.session.headers.update({"Content-Type": "application/json"})

        # Pre-signed upload URLs reject requests that carry our bearer token.
        self.upload_session = requests.Session()

        self.access_token: Optional[str] = None
        if access_token:
            self.set_access_token(access_token)

    def set_access_token(self, access_token: str) -> None:
        self.access_token = access_token
        self.session.headers.update(
            {"Authorization": f"Bearer {access_token}"}
        )

    def _require_access_token(self) -> None:
        if self.token_provider is not None:
            token = self.token_provider()
            if token != self.access_token:
                self.set_access_token(token)
        if not self.access_token:
            raise RuntimeError(
                "This Digital Factory operation requires an access token. "
                "Sign in first (python -m digital_factory.authorize)."
            )

    def _url(self, path: str) -> str:
        return f"{self.api_root}/{path.lstrip('/')}"

    def _request(
        self,
        method: str,
        path: str,
        **kwargs,
    ) -> Dict[str, Any]:
        """Internal request helper.

        Raises RuntimeError for non-2xx answers, with the API's error title
        and detail when the body carries them.
        """
        method_u = method.upper()
        self._require_access_token()

        url = self._url(path)
        if self.dry_run and method_u in {"POST", "PUT", "PATCH", "DELETE"}:
            logger.info("DRY_RUN - skipping %s %s", method_u, url)
            return {
                "data": {},
                "dry_run": True,
                "skipped": True,
                "method": method_u,
                "path": path,
            }

        kwargs.setdefault("timeout", self.timeout_s)

        attempt = 0
        while True:
            attempt += 1
            try:
                response = self.session.request(method_u, url, **kwargs)
                break
            except requests.RequestException as e:
                can_retry = (
                    method_u in {"GET", "HEAD"}
                    and attempt < (1 + self.retries)
                )
                if can_retry:
                    sleep_s = self.retry_backoff_s * (2 ** (attempt - 1))
                    logger.warning(
                        "Request failed (%s %s) attempt %s/%s: %s; "
                        "retrying in %.1fs",
                        method_u,
                        url,
                        attempt,
                        (1 + self.retries),
                        e,
                        sleep_s,
                    )
                    time.sleep(sleep_s)
                    continue

                logger.error("Request failed (%s %s): %s", method_u, url, e)
                raise

        data: Optional[Any]
        try:
            data = response.json()
        except ValueError:
            data = None

        if response.status_code == 429:
            logger.warning(
                "Rate limited (429) calling %s %s; Retry-After=%s",
                method_u,
                url,
                response.headers.get("Retry-After"),
            )

        if not response.ok:
            raise RuntimeError(
                f"Digital Factory API error {response.status_code} for "
                f"{method_u} {url}: "
                f"{_error_message(data) or response.text}"
            )

        if isinstance(data, dict):
            return data
        return {"data": data}

    def create_project(self, name: str) -> Dict[str, Any]:
        """Create a library project; the result holds `library_project_id`."""
        payload = {"data": {"display_name": name}}
        return self._request(
            "PUT", "/cura/v1/projects", json=payload
        ).get("data")

    def add_comment_to_project(
        self, project_id: str, comment: str
    ) -> Dict[str, Any]:
        payload = {"data": {"body": comment}}
        return self._request(
            "PUT",
            f"/cura/v1/projects/{project_id}/comments",
            json=payload,
        ).get("data")

    def request_job_upload(
        self,
        job_name: str,
        file_size: int,
        library_project_id: str,
        content_type: str = UFP_MIME_TYPE,
    ) -> Dict[str, Any]:
        """Reserve an upload slot for a print job file.

        The result carries `job_id` and a pre-signed `upload_url`.
        """
        payload = {
            "data": {
                "job_name": job_name,
                "content_type": content_type,
                "file_size": file_size,
                "library_project_id": library_project_id,
            }
        }
        return self._request(
            "PUT", "/cura/v1/jobs/upload", json=payload
        ).get("data")

    def upload_file_to_project(
        self,
        library_project_id: str,
        file_path: str,
        content_type: str = UFP_MIME_TYPE,
    ) -> Dict[str, Any]:
        """Upload a local file into a library project.

        Two steps: reserve an upload slot, then PUT the raw bytes to the
        slot's `upload_url`. Returns the slot data (contains `job_id`).
        """
        path = Path(file_path)
        contents = path.read_bytes()

        upload = self.request_job_upload(
            job_name=path.name,
            file_size=len(contents),
            library_project_id=library_project_id,
            content_type=content_type,
        )
        upload_url = (upload or {}).get("upload_url")
        if self.dry_run:
            logger.info("DRY_RUN - skipping upload of %s", path)
            return upload
        if not upload_url:
            raise RuntimeError(
                f"Upload slot for {path.name} did not include an upload_url"
            )
        logger.info("upload url: %s", upload_url)

        response = self.upload_session.put(
            upload_url,
            data=contents,
            headers={"Content-Type": content_type},
            timeout=self.timeout_s,
        )
        if not response.ok:
            raise RuntimeError(
                f"Upload of {path.name} failed with status "
                f"{response.status_code}: {response.text}"
            )
        return upload

    def submit_print_job(self, job_id: str, cluster_id: str) -> Dict[str, Any]:
        """Send an uploaded job to a cluster; result has `job_instance_uuid`."""
        return self._request(
            "POST",
            f"/connect/v1/clusters/{cluster_id}/print/{job_id}",
            json={"data": {}},
        ).get("data")

    def get_running_print_jobs(
        self, limit: int = 20, status: str = "in_progress"
    ) -> List[Dict[str, Any]]:
        params = {"limit": str(limit), "status": status}
        return self._request(
            "GET", "/connect/v1/print_jobs", params=params
        ).get("data") or []

    def search_projects(
        self,
        search: str = "demo",
        limit: int = 24,
        page: int = 1,
        shared: bool = False,
    ) -> List[Dict[str, Any]]:
        params = {
            "limit": str(limit),
            "page": str(page),
            "search": search,
            "shared": "true" if shared else "false",
        }
        return self._request(
            "GET", "/cura/v1/projects", params=params
        ).get("data") or []

    def get_clusters(self) -> List[Dict[str, Any]]:
        """List the clusters visible to the signed-in user."""
        return self._request("GET", "/connect/v1/clusters").get("data") or []


def _error_message(data: Any) -> Optional[str]:
    # Error bodies look like {"errors": [{"title": ..., "detail": ...}]}.
    if not isinstance(data, dict):
        return None
    errors = data.get("errors")
    if isinstance(errors, list) and errors:
        first = errors[0]
        if isinstance(first, dict):
            parts = [first.get("title"), first.get("detail")]
            return ": ".join(p for p in parts if p) or None
    return data.get("error") or data.get("message")


__all__ = ["DigitalFactoryClient", "DEFAULT_API_ROOT", "UFP_MIME_TYPE"]
