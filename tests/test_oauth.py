"""Tests for the OAuth2 PKCE sign-in flow."""

import base64
import hashlib
import threading
import time
from unittest.mock import MagicMock
from urllib.parse import parse_qs, urlsplit

import pytest
import requests

from digital_factory.oauth import (
    AuthorizationFlow,
    SignInError,
    TokenResponse,
    generate_pkce_challenge,
    generate_pkce_verifier,
    generate_state,
)


TOKEN_JSON = {
    "access_token": "access-1",
    "expires_in": 3600,
    "refresh_token": "refresh-1",
    "scope": "openid",
    "token_type": "Bearer",
}


@pytest.fixture
def flow(make_response) -> AuthorizationFlow:
    session = MagicMock()
    session.post.return_value = make_response(json_data=TOKEN_JSON)
    return AuthorizationFlow(
        "client-1",
        scopes="openid connect.cluster.read",
        oauth_root="https://account.example.test",
        callback_port=32118,
        session=session,
    )


def _query(url: str) -> dict:
    return {k: v[0] for k, v in parse_qs(urlsplit(url).query).items()}


class TestPkce:
    def test_challenge_is_sha512_of_verifier(self) -> None:
        verifier = "verifier"
        expected = base64.urlsafe_b64encode(
            hashlib.sha512(b"verifier").digest()
        ).decode("ascii")
        assert generate_pkce_challenge(verifier) == expected

    def test_random_values_differ(self) -> None:
        assert generate_state() != generate_state()
        assert generate_pkce_verifier() != generate_pkce_verifier()

    def test_verifier_length(self) -> None:
        # 32 random bytes -> 44 base64 characters
        assert len(generate_pkce_verifier()) == 44


class TestTokenResponse:
    def test_from_dict_requires_access_token(self) -> None:
        with pytest.raises(SignInError):
            TokenResponse.from_dict({"expires_in": 10})

    def test_is_expired_with_leeway(self) -> None:
        token = TokenResponse.from_dict({**TOKEN_JSON, "obtained_at": 1000})
        assert not token.is_expired(now=1000 + 3000)
        assert token.is_expired(now=1000 + 3550)

    def test_without_expiry_never_expires(self) -> None:
        token = TokenResponse(access_token="x")
        assert not token.is_expired(now=time.time() + 10**9)


class TestAuthorizationFlow:
    def test_requires_client_id(self) -> None:
        with pytest.raises(SignInError):
            AuthorizationFlow("")

    def test_authorization_url(self, flow: AuthorizationFlow) -> None:
        url = flow.build_authorization_url()

        assert url.startswith("https://account.example.test/authorize?")
        query = _query(url)
        assert query["client_id"] == "client-1"
        assert query["redirect_uri"] == "http://localhost:32118/callback"
        assert query["scope"] == "openid connect.cluster.read"
        assert query["state"] == flow.state
        assert query["response_type"] == "code"
        assert query["code_challenge"] == generate_pkce_challenge(
            flow.pkce_verifier
        )
        assert query["code_challenge_method"] == "S512"

    def test_callback_ignored_without_pending_sign_in(
        self, flow: AuthorizationFlow
    ) -> None:
        assert flow.handle_callback("/callback?code=abc&state=x") is None
        flow.session.post.assert_not_called()

    def test_callback_ignored_without_code(self, flow: AuthorizationFlow) -> None:
        flow.build_authorization_url()
        assert flow.handle_callback(f"/callback?state={flow.state}") is None
        assert flow.pkce_verifier is not None

    def test_callback_ignored_on_state_mismatch(
        self, flow: AuthorizationFlow
    ) -> None:
        flow.build_authorization_url()
        assert flow.handle_callback("/callback?code=abc&state=wrong") is None
        flow.session.post.assert_not_called()

    def test_callback_exchanges_code_once(self, flow: AuthorizationFlow) -> None:
        flow.build_authorization_url()
        state = flow.state
        verifier = flow.pkce_verifier

        token = flow.handle_callback(f"/callback?code=abc&state={state}")

        assert token.access_token == "access-1"
        assert token.refresh_token == "refresh-1"
        flow.session.post.assert_called_once_with(
            "https://account.example.test/token",
            data={
                "client_id": "client-1",
                "redirect_uri": "http://localhost:32118/callback",
                "grant_type": "authorization_code",
                "scope": "openid connect.cluster.read",
                "code": "abc",
                "code_verifier": verifier,
            },
            timeout=60,
        )
        # Replaying the redirect does nothing.
        assert flow.handle_callback(f"/callback?code=abc&state={state}") is None
        assert flow.session.post.call_count == 1

    def test_token_error_raises(self, flow: AuthorizationFlow, make_response) -> None:
        flow.session.post.return_value = make_response(
            400, json_data={"error": "invalid_grant"}
        )

        with pytest.raises(SignInError, match="invalid_grant"):
            flow.request_access_token("abc", "verifier")

    def test_refresh_access_token(self, flow: AuthorizationFlow) -> None:
        token = flow.refresh_access_token("refresh-1")

        assert token.access_token == "access-1"
        _, kwargs = flow.session.post.call_args
        assert kwargs["data"]["grant_type"] == "refresh_token"
        assert kwargs["data"]["refresh_token"] == "refresh-1"

    def test_refresh_requires_token(self, flow: AuthorizationFlow) -> None:
        with pytest.raises(SignInError):
            flow.refresh_access_token("")


class TestSignIn:
    """Drive the real local listener with a browser stand-in."""

    def _browser(self, flow: AuthorizationFlow, bad_first: bool = False):
        responses = []
        browser = requests.Session()
        browser.trust_env = False

        def handler(url: str) -> None:
            state = _query(url)["state"]

            def visit() -> None:
                if bad_first:
                    responses.append(
                        browser.get(
                            f"{flow.redirect_uri}?code=abc&state=bogus",
                            timeout=10,
                        )
                    )
                responses.append(
                    browser.get(
                        f"{flow.redirect_uri}?code=abc&state={state}",
                        timeout=10,
                    )
                )

            threading.Thread(target=visit, daemon=True).start()

        return handler, responses

    def test_sign_in_completes(self, flow: AuthorizationFlow) -> None:
        flow.callback_port = 0
        handler, responses = self._browser(flow, bad_first=True)

        token = flow.sign_in(url_handler=handler, timeout_s=10)

        assert token.access_token == "access-1"
        assert flow.callback_port != 0
        assert flow.state is None and flow.pkce_verifier is None
        for _ in range(50):
            if len(responses) == 2:
                break
            time.sleep(0.1)
        assert responses[0].status_code == 400
        assert responses[1].status_code == 200
        assert "Sign in finished" in responses[1].text

    def test_sign_in_times_out(self, flow: AuthorizationFlow) -> None:
        flow.callback_port = 0

        with pytest.raises(SignInError, match="No sign-in callback"):
            flow.sign_in(url_handler=lambda url: None, timeout_s=0.5)

    def _failed_sign_in(self, flow: AuthorizationFlow):
        flow.callback_port = 0
        handler, responses = self._browser(flow)

        with pytest.raises(SignInError, match="Sign in failed") as exc:
            flow.sign_in(url_handler=handler, timeout_s=10)

        for _ in range(50):
            if responses:
                break
            time.sleep(0.1)
        assert responses[0].status_code == 500
        assert "Sign in failed" in responses[0].text
        return exc.value

    def test_rejected_code_exchange_ends_sign_in(
        self, flow: AuthorizationFlow, make_response
    ) -> None:
        flow.session.post.return_value = make_response(
            400, json_data={"error": "invalid_grant"}
        )

        error = self._failed_sign_in(flow)

        assert isinstance(error.__cause__, SignInError)
        assert "invalid_grant" in str(error)

    def test_malformed_token_body_ends_sign_in(
        self, flow: AuthorizationFlow, make_response
    ) -> None:
        flow.session.post.return_value = make_response(
            json_data={**TOKEN_JSON, "expires_in": "soon"}
        )

        error = self._failed_sign_in(flow)

        assert isinstance(error.__cause__, ValueError)
