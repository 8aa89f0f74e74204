import json
from unittest.mock import Mock

import pytest
import requests
from fastapi.testclient import TestClient

from config import Settings
from main import create_app


def mock_http_response(json_data, status_code: int = 200) -> Mock:
    """Return a mock requests.Response whose .json() returns json_data."""
    resp = Mock()
    resp.ok = 200 <= status_code < 400
    resp.status_code = status_code
    resp.json.return_value = json_data
    resp.text = json.dumps(json_data)
    if status_code >= 400:
        resp.raise_for_status.side_effect = requests.exceptions.HTTPError(
            f"{status_code} Client Error", response=resp
        )
    else:
        resp.raise_for_status.return_value = None
    return resp


@pytest.fixture
def settings():
    return Settings(
        environment="development",
        consumer_key="test_consumer_key",
        consumer_secret="test_consumer_secret",
        passkey="test_passkey",
        shortcode="174379",
        callback_url="https://example.com/api/mpesa/callback",
    )


@pytest.fixture
def production_settings(settings):
    return settings.model_copy(
        update={"environment": "production", "allowed_origin": "https://shop.example.com"}
    )


@pytest.fixture
def client(settings):
    return TestClient(create_app(settings))


@pytest.fixture
def production_client(production_settings):
    return TestClient(create_app(production_settings))
