import logging

from fastapi.testclient import TestClient

from main import create_app
from middleware import RATE_LIMIT_MESSAGE, SECURITY_HEADERS


def test_security_headers_present(client):
    response = client.get("/")
    for name, value in SECURITY_HEADERS.items():
        assert response.headers[name] == value


def test_security_headers_on_errors(client):
    response = client.get("/missing")
    assert response.status_code == 404
    assert response.headers["X-Content-Type-Options"] == "nosniff"


def test_cors_allows_any_origin_outside_production(client):
    response = client.get("/", headers={"Origin": "https://anywhere.example.org"})
    assert response.headers["access-control-allow-origin"] == "*"


def test_cors_restricted_to_allowed_origin_in_production(production_client):
    allowed = production_client.get("/", headers={"Origin": "https://shop.example.com"})
    assert allowed.headers["access-control-allow-origin"] == "https://shop.example.com"

    other = production_client.get("/", headers={"Origin": "https://evil.example.org"})
    assert "access-control-allow-origin" not in other.headers


def test_cors_preflight(client):
    response = client.options(
        "/api/mpesa/stk-push",
        headers={
            "Origin": "https://anywhere.example.org",
            "Access-Control-Request-Method": "POST",
            "Access-Control-Request-Headers": "Content-Type",
        },
    )
    assert response.status_code == 200
    assert "POST" in response.headers["access-control-allow-methods"]


def test_rate_limit_headers(client):
    response = client.get("/")
    assert response.headers["RateLimit-Limit"] == "100"
    assert response.headers["RateLimit-Remaining"] == "99"
    assert int(response.headers["RateLimit-Reset"]) <= 15 * 60


def test_rate_limit_blocks_101st_request(client):
    for _ in range(100):
        assert client.get("/").status_code == 200

    response = client.post("/api/mpesa/callback", json={})
    assert response.status_code == 429
    assert response.json() == {"message": RATE_LIMIT_MESSAGE}
    assert response.headers["RateLimit-Remaining"] == "0"
    assert "Retry-After" in response.headers


def test_rate_limit_applies_to_unknown_routes(settings):
    client = TestClient(create_app(settings.model_copy(update={"rate_limit": "2 per 15 minutes"})))
    assert client.get("/nowhere").status_code == 404
    assert client.get("/nowhere").status_code == 404
    assert client.get("/nowhere").status_code == 429


def test_rate_limit_is_per_app(settings):
    first = TestClient(create_app(settings.model_copy(update={"rate_limit": "1 per 15 minutes"})))
    second = TestClient(create_app(settings.model_copy(update={"rate_limit": "1 per 15 minutes"})))
    assert first.get("/").status_code == 200
    assert first.get("/").status_code == 429
    assert second.get("/").status_code == 200


def test_request_is_logged(client, caplog):
    with caplog.at_level(logging.INFO, logger="middleware"):
        client.get("/?probe=1")
    assert "GET /?probe=1 200" in caplog.text


def test_combined_log_format_in_production(production_client, caplog):
    with caplog.at_level(logging.INFO, logger="middleware"):
        production_client.get("/", headers={"User-Agent": "pytest-agent"})
    assert '"GET / HTTP/1.1" 200' in caplog.text
    assert '"pytest-agent"' in caplog.text
