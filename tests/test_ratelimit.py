from starlette.requests import Request

from codepods.services.ratelimit import auth_key, client_ip, search_limiter
from conftest import auth_headers, make_user


def make_request(headers=None, host="10.0.0.1"):
    scope = {
        "type": "http",
        "headers": [(k.lower().encode(), v.encode()) for k, v in (headers or {}).items()],
        "client": (host, 1234),
    }
    return Request(scope)


def test_client_ip_prefers_forwarded_header():
    assert client_ip(make_request()) == "10.0.0.1"
    assert client_ip(make_request({"X-Forwarded-For": "1.2.3.4, 10.0.0.1"})) == "1.2.3.4"


def test_auth_key_normalizes_email():
    assert auth_key(make_request(), "  Ada@Example.COM ") == "ada@example.com"
    assert auth_key(make_request(), None) == "10.0.0.1"


def test_api_routes_send_rate_limit_headers(client, db):
    user = make_user(db)

    response = client.get("/api/notifications", headers=auth_headers(user))

    assert response.headers["RateLimit-Limit"] == "100"
    assert int(response.headers["RateLimit-Remaining"]) == 99


def test_search_limit(client, db):
    user = make_user(db)
    headers = auth_headers(user)

    for _ in range(search_limiter.limit.amount):
        assert client.get("/api/users/search", params={"q": "x"}, headers=headers).status_code == 200

    response = client.get("/api/users/search", params={"q": "x"}, headers=headers)
    assert response.status_code == 429
    assert response.json()["detail"] == "Too many search requests. Please slow down."


def test_limits_can_be_disabled(client, db, monkeypatch):
    monkeypatch.setenv("RATE_LIMIT_ENABLED", "false")
    user = make_user(db)
    headers = auth_headers(user)

    for _ in range(search_limiter.limit.amount + 5):
        assert client.get("/api/users/search", params={"q": "x"}, headers=headers).status_code == 200
