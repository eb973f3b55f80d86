#!/usr/bin/env python3
"""Sign in to Ultimaker Digital Factory and cache the token.

This is a small helper intended for quick troubleshooting and for priming the
token cache used by the scripts under `actions/`:
- reuses the cached token when still valid
- refreshes an expired token through its refresh token
- otherwise runs the interactive browser sign-in

Recommended invocation:
- python -m digital_factory.authorize

Env vars (loaded from `.env`):
- CLIENT_ID (required)
- SCOPES (optional)
- DIGITAL_FACTORY_TIMEOUT_S (optional, default: 60)
- STATE_FILE (optional, default: .digital_factory_state.json in repo root)
"""

from __future__ import annotations

import argparse
import json
import logging
import os
import sys
from datetime import datetime, timezone
from typing import List, Optional

import requests
from dotenv import load_dotenv

from digital_factory.digital_factory_client import DigitalFactoryClient
from digital_factory.oauth import AuthorizationFlow, SignInError, TokenResponse
from digital_factory.state import StateStore, default_state_path


logger = logging.getLogger("digital-factory")


def _utc_now_iso() -> str:
    return datetime.now(timezone.utc).isoformat()


class TokenManager:
    """Keeps a usable access token, backed by the JSON state store."""

    def __init__(self, flow: AuthorizationFlow, store: StateStore):
        self.flow = flow
        self.store = store
        self.token: Optional[TokenResponse] = None

    def load_cached(self) -> Optional[TokenResponse]:
        auth = self.store.load().get("auth") or {}
        cached = auth.get("token")
        if not isinstance(cached, dict):
            return None
        try:
            self.token = TokenResponse.from_dict(cached)
        except SignInError:
            return None
        return self.token

    def save(self, token: TokenResponse) -> None:
        self.token = token
        state = self.store.load()
        state["auth"] = {
            "client_id": self.flow.client_id,
            "token": token.to_dict(),
            "updated_at": _utc_now_iso(),
        }
        self.store.save(state)

    def refresh(self) -> TokenResponse:
        if self.token is None or not self.token.refresh_token:
            raise SignInError("No refresh token available; sign in again")
        logger.info("Access token expired, refreshing")
        token = self.flow.refresh_access_token(self.token.refresh_token)
        if not token.refresh_token:
            token.refresh_token = self.token.refresh_token
        self.save(token)
        return token

    def sign_in(self, open_browser: bool = False) -> TokenResponse:
        token = self.flow.sign_in(open_browser=open_browser)
        self.save(token)
        return token

    def ensure_token(
        self, use_cache: bool = True, open_browser: bool = False
    ) -> TokenResponse:
        """Cached token if valid, refreshed token if possible, else sign in."""
        if use_cache and self.load_cached() is not None:
            if not self.token.is_expired():
                return self.token
            try:
                return self.refresh()
            except (requests.RequestException, SignInError) as e:
                logger.warning("Token refresh failed: %s", e)
        return self.sign_in(open_browser=open_browser)

    def access_token(self) -> str:
        """Token provider for DigitalFactoryClient (refreshes on expiry)."""
        if self.token is None:
            raise SignInError("Not signed in")
        if self.token.is_expired():
            self.refresh()
        return self.token.access_token


def build_token_manager(
    timeout_s: Optional[int] = None,
    state_file: Optional[str] = None,
) -> TokenManager:
    """Create a TokenManager from env configuration (call load_dotenv first)."""
    client_id = os.getenv("CLIENT_ID")
    if not client_id:
        raise SignInError("CLIENT_ID not set (check your .env)")
    timeout = (
        int(timeout_s)
        if timeout_s is not None
        else int(os.getenv("DIGITAL_FACTORY_TIMEOUT_S", "60"))
    )
    flow = AuthorizationFlow(
        client_id,
        scopes=os.getenv("SCOPES", ""),
        timeout_s=timeout,
    )
    return TokenManager(flow, StateStore(default_state_path(state_file)))


def authenticated_client(
    manager: TokenManager,
    dry_run: bool = False,
    open_browser: bool = False,
) -> DigitalFactoryClient:
    """Client backed by the cached token (signing in when there is none)."""
    manager.ensure_token(use_cache=True, open_browser=open_browser)
    return DigitalFactoryClient(
        timeout_s=manager.flow.timeout_s,
        dry_run=dry_run,
        retries=int(os.getenv("DIGITAL_FACTORY_RETRIES", "2")),
        token_provider=manager.access_token,
    )


def _parse_args(argv: List[str]) -> argparse.Namespace:
    p = argparse.ArgumentParser(
        description="Sign in to Ultimaker Digital Factory"
    )
    p.add_argument(
        "--timeout-s",
        type=int,
        default=None,
        help="HTTP timeout seconds (default: env DIGITAL_FACTORY_TIMEOUT_S or 60)",
    )
    p.add_argument(
        "--force",
        action="store_true",
        help="Ignore the cached token and sign in again",
    )
    p.add_argument(
        "--open-browser",
        action="store_true",
        help="Open the sign-in URL in the default browser",
    )
    p.add_argument(
        "--json",
        action="store_true",
        help="Print the raw token JSON",
    )
    p.add_argument(
        "--state-file",
        default=None,
        help=(
            "State JSON path to update (default: env STATE_FILE or "
            ".digital_factory_state.json in repo root)"
        ),
    )
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
        token = manager.ensure_token(
            use_cache=not args.force, open_browser=args.open_browser
        )
    except (requests.RequestException, RuntimeError) as e:
        print(f"ERROR: sign in failed: {e}", file=sys.stderr)
        return 1

    if args.json:
        print(
            json.dumps(
                {"token": token.to_dict()},
                indent=2,
                sort_keys=True,
                ensure_ascii=False,
            )
        )
    else:
        expires = datetime.fromtimestamp(token.expires_at, timezone.utc)
        print(f"Signed in (scope: {token.scope or '-'})")
        print(f"Access token expires at {expires.isoformat()}")
        print(f"State updated: {manager.store.path}")

    return 0


if __name__ == "__main__":
    raise SystemExit(main(sys.argv[1:]))
