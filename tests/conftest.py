"""Shared fixtures for the Digital Factory client tests."""

from typing import Any, Optional
from unittest.mock import MagicMock

import pytest

from digital_factory.digital_factory_client import DigitalFactoryClient


def _make_response(
    status_code: int = 200,
    json_data: Any = None,
    text: str = "",
    headers: Optional[dict] = None,
) -> MagicMock:
    """Build a stand-in for requests.Response."""
    response = MagicMock()
    response.status_code = status_code
    response.ok = 200 <= status_code < 400
    response.text = text
    response.headers = headers or {}
    if json_data is None:
        response.json.side_effect = ValueError("no json")
    else:
        response.json.return_value = json_data
    return response


@pytest.fixture
def make_response():
    """Factory for requests.Response stand-ins."""
    return _make_response


@pytest.fixture
def client() -> DigitalFactoryClient:
    """Client with mocked sessions and no retry backoff."""
    c = DigitalFactoryClient(
        access_token="token-123",
        api_root="https://api.example.test",
        retry_backoff_s=0,
    )
    c.session = MagicMock()
    c.session.headers = {}
    c.set_access_token("token-123")
    c.upload_session = MagicMock()
    return c
