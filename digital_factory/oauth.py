#!/usr/bin/env python3
"""OAuth2 Authorization Code + PKCE sign-in against the Ultimaker account server.

Flow:
1) generate a random `state` and PKCE verifier, derive the challenge
2) send the user to `<oauth root>/authorize` with both
3) receive the redirect on a one-shot local listener
   (`http://localhost:<port>/callback`), check `state`
4) exchange the code + verifier at `<oauth root>/token`

The account server expects the SHA-512 challenge method, sent as `S512`.
"""

from __future__ import annotations

import base64
import hashlib
import logging
import os
import secrets
import time
import webbrowser
from dataclasses import asdict, dataclass, field
from http.server import BaseHTTPRequestHandler, HTTPServer
from typing import Any, Callable, Dict, Optional
from urllib.parse import parse_qs, urlencode, urlsplit

import requests


logger = logging.getLogger("digital-factory")

DEFAULT_OAUTH_ROOT = "https://account.ultimaker.com"
DEFAULT_CALLBACK_PORT = 32118
CALLBACK_PATH = "/callback"
CODE_CHALLENGE_METHOD = "S512"

SIGN_IN_FINISHED = "Sign in finished, you can now close this window."


class SignInError(RuntimeError):
    """Raised when the sign-in flow or a token request fails."""


@dataclass
class TokenResponse:
    access_token: str
    expires_in: int = 0
    refresh_token: Optional[str] = None
    scope: Optional[str] = None
    token_type: str = "Bearer"
    obtained_at: float = field(default_factory=time.time)

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "TokenResponse":
        if not isinstance(data, dict) or not data.get("access_token"):
            raise SignInError("Token response did not contain an access_token")
        return cls(
            access_token=data["access_token"],
            expires_in=int(data.get("expires_in") or 0),
            refresh_token=data.get("refresh_token"),
            scope=data.get("scope"),
            token_type=data.get("token_type") or "Bearer",
            obtained_at=float(data.get("obtained_at") or time.time()),
        )

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)

    @property
    def expires_at(self) -> float:
        return self.obtained_at + self.expires_in

    def is_expired(
        self, now: Optional[float] = None, leeway_s: float = 60.0
    ) -> bool:
        """True when the token is (about to be) unusable.

        A token without `expires_in` is treated as non-expiring.
        """
        if not self.expires_in:
            return False
        now = time.time() if now is None else now
        return now >= self.expires_at - leeway_s


def generate_state() -> str:
    return base64.b64encode(secrets.token_bytes(16)).decode("ascii")


def generate_pkce_verifier() -> str:
    return base64.urlsafe_b64encode(secrets.token_bytes(32)).decode("ascii")


def generate_pkce_challenge(verifier: str) -> str:
    digest = hashlib.sha512(verifier.encode("ascii")).digest()
    return base64.urlsafe_b64encode(digest).decode("ascii")


class _CallbackHandler(BaseHTTPRequestHandler):
    """Forwards every GET to the owning flow."""

    def do_GET(self) -> None:  # noqa: N802 - http.server naming
        flow: AuthorizationFlow = self.server.flow  # type: ignore[attr-defined]
        try:
            token = flow.handle_callback(self.path)
        except Exception as e:
            # sign_in stops waiting as soon as flow.error is set.
            flow.error = e
            self._reply(500, f"Sign in failed: {e}")
            return

        if token is None:
            self._reply(400, "Not a valid sign-in callback.")
            return
        self._reply(200, SIGN_IN_FINISHED)

    def _reply(self, status: int, body: str) -> None:
        payload = body.encode("utf-8")
        self.send_response(status)
        self.send_header("Content-Type", "text/plain; charset=utf-8")
        self.send_header("Content-Length", str(len(payload)))
        self.end_headers()
        self.wfile.write(payload)

    def log_message(self, format: str, *args: Any) -> None:  # noqa: A002
        logger.debug("callback listener: " + format, *args)


class AuthorizationFlow:
    """Authorization Code + PKCE flow with a one-shot local callback listener."""

    def __init__(
        self,
        client_id: str,
        scopes: str = "",
        oauth_root: Optional[str] = None,
        callback_port: Optional[int] = None,
        timeout_s: int = 60,
        session: Optional[requests.Session] = None,
    ):
        """Initialize the flow.

        Args:
            client_id: OAuth2 client id registered with the account server
            scopes: Space separated scopes to request
            oauth_root: Account server root (default: env
                DIGITAL_FACTORY_OAUTH_ROOT or https://account.ultimaker.com)
            callback_port: Local listener port (default: env
                DIGITAL_FACTORY_CALLBACK_PORT or 32118). 0 binds any free port.
            timeout_s: Timeout for token requests
            session: Optional requests session (mainly for tests)
        """
        if not client_id:
            raise SignInError("CLIENT_ID is required for sign in")
        self.client_id = client_id
        self.scopes = scopes or ""
        self.oauth_root = (
            oauth_root
            or os.getenv("DIGITAL_FACTORY_OAUTH_ROOT")
            or DEFAULT_OAUTH_ROOT
        ).rstrip("/")
        if callback_port is None:
            callback_port = int(
                os.getenv(
                    "DIGITAL_FACTORY_CALLBACK_PORT", str(DEFAULT_CALLBACK_PORT)
                )
            )
        self.callback_port = callback_port
        self.timeout_s = timeout_s
        self.session = session or requests.Session()

        self.authorization_url = f"{self.oauth_root}/authorize"
        self.token_url = f"{self.oauth_root}/token"

        self.state: Optional[str] = None
        self.pkce_verifier: Optional[str] = None
        self.token: Optional[TokenResponse] = None
        self.error: Optional[BaseException] = None

    @property
    def redirect_uri(self) -> str:
        return f"http://localhost:{self.callback_port}{CALLBACK_PATH}"

    def build_authorization_url(self) -> str:
        """Start a new sign-in attempt and return the URL the user must open."""
        self.state = generate_state()
        self.pkce_verifier = generate_pkce_verifier()
        self.token = None
        self.error = None
        query = urlencode(
            {
                "client_id": self.client_id,
                "redirect_uri": self.redirect_uri,
                "scope": self.scopes,
                "state": self.state,
                "response_type": "code",
                "code_challenge": generate_pkce_challenge(self.pkce_verifier),
                "code_challenge_method": CODE_CHALLENGE_METHOD,
            }
        )
        return f"{self.authorization_url}?{query}"

    def handle_callback(self, path: str) -> Optional[TokenResponse]:
        """Process a request that reached the callback listener.

        Returns None (and leaves the pending sign-in untouched) for anything
        that is not a valid redirect for the current attempt.
        """
        if not path or not self.pkce_verifier:
            return None

        query = parse_qs(urlsplit(path).query)
        code = (query.get("code") or [None])[0]
        if not code:
            return None

        state = (query.get("state") or [None])[0]
        if not state or state != self.state:
            logger.warning("Ignoring sign-in callback with mismatched state")
            return None

        verifier = self.pkce_verifier
        # One-shot: a replayed redirect is ignored from here on.
        self.state = None
        self.pkce_verifier = None

        self.token = self.request_access_token(code, verifier)
        return self.token

    def request_access_token(self, code: str, pkce_verifier: str) -> TokenResponse:
        return self._token_request(
            {
                "client_id": self.client_id,
                "redirect_uri": self.redirect_uri,
                "grant_type": "authorization_code",
                "scope": self.scopes,
                "code": code,
                "code_verifier": pkce_verifier,
            }
        )

    def refresh_access_token(self, refresh_token: str) -> TokenResponse:
        if not refresh_token:
            raise SignInError("No refresh token available")
        return self._token_request(
            {
                "client_id": self.client_id,
                "redirect_uri": self.redirect_uri,
                "grant_type": "refresh_token",
                "scope": self.scopes,
                "refresh_token": refresh_token,
            }
        )

    def _token_request(self, form: Dict[str, str]) -> TokenResponse:
        response = self.session.post(
            self.token_url, data=form, timeout=self.timeout_s
        )
        try:
            data = response.json()
        except ValueError:
            data = None

        if not response.ok:
            err = None
            if isinstance(data, dict):
                err = data.get("error_description") or data.get("error")
            raise SignInError(
                f"Token request ({form.get('grant_type')}) failed with "
                f"{response.status_code}: {err or response.text}"
            )
        return TokenResponse.from_dict(data)

    def sign_in(
        self,
        url_handler: Optional[Callable[[str], None]] = None,
        open_browser: bool = False,
        timeout_s: float = 300.0,
    ) -> TokenResponse:
        """Run the full interactive sign-in and return the token.

        Args:
            url_handler: Receives the sign-in URL (default: print it)
            open_browser: Also open the URL in the default browser
            timeout_s: Give up after this many seconds without a valid callback
        """
        server = HTTPServer(("localhost", self.callback_port), _CallbackHandler)
        server.flow = self  # type: ignore[attr-defined]
        server.timeout = 1.0
        # Port 0 binds any free port; the redirect must use the bound one.
        self.callback_port = server.server_address[1]

        try:
            sign_in_url = self.build_authorization_url()
            (url_handler or _print_sign_in_url)(sign_in_url)
            if open_browser:
                webbrowser.open(sign_in_url)

            deadline = time.monotonic() + timeout_s
            while self.token is None and self.error is None:
                if time.monotonic() >= deadline:
                    raise SignInError(
                        f"No sign-in callback received within {timeout_s:.0f}s"
                    )
                server.handle_request()
        finally:
            server.server_close()
            self.state = None
            self.pkce_verifier = None

        if self.error is not None:
            raise SignInError(f"Sign in failed: {self.error}") from self.error
        logger.info("Sign in completed")
        return self.token


def _print_sign_in_url(url: str) -> None:
    print(
        "Open the following URL in your browser and log in to "
        "Ultimaker Digital Factory:"
    )
    print("")
    print(f"    {url}")
    print("")


__all__ = [
    "AuthorizationFlow",
    "SignInError",
    "TokenResponse",
    "generate_pkce_challenge",
    "generate_pkce_verifier",
    "generate_state",
]
