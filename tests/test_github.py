from datetime import datetime, timedelta, timezone
from urllib.parse import parse_qs, urlparse

import pytest
import requests

from codepods.services import github as github_service
from codepods.services.auth import create_token, decode_token
from codepods.services.encryption import decrypt, encrypt, is_encrypted
from codepods.services.github import infer_role, store_activity, sync_github_activity, sync_repo_activity
from conftest import add_member, auth_headers, make_pod, make_user

NOW = datetime.now(timezone.utc)


def iso(moment: datetime) -> str:
    return moment.strftime("%Y-%m-%dT%H:%M:%SZ")


class FakeResponse:
    def __init__(self, payload, status_code=200):
        self.payload = payload
        self.status_code = status_code

    def json(self):
        return self.payload

    def raise_for_status(self):
        if self.status_code >= 400:
            raise requests.exceptions.HTTPError(f"{self.status_code} error")


def commit(sha, login, when):
    return {
        "sha": sha,
        "html_url": f"https://github.com/ada/rocket/commit/{sha}",
        "author": {"login": login, "avatar_url": None},
        "commit": {"message": f"commit {sha}", "author": {"name": login, "email": f"{login}@x.io", "date": iso(when)}},
    }


def pull(number, login, created, merged=None):
    return {
        "number": number,
        "title": f"PR {number}",
        "html_url": f"https://github.com/ada/rocket/pull/{number}",
        "user": {"login": login},
        "created_at": iso(created),
        "updated_at": iso(merged or created),
        "merged_at": iso(merged) if merged else None,
    }


REPO = {
    "id": 7,
    "name": "rocket",
    "full_name": "ada/rocket",
    "html_url": "https://github.com/ada/rocket",
    "created_at": iso(NOW - timedelta(days=2)),
    "updated_at": iso(NOW),
    "language": "Python",
    "owner": {"login": "ada", "avatar_url": None},
}

PAYLOADS = {
    "/user": {"id": 42, "login": "ada"},
    "/user/repos": [REPO, {**REPO, "id": 8, "name": "site", "full_name": "ada/site",
                           "language": "TypeScript", "created_at": iso(NOW - timedelta(days=90))}],
    "/repos/ada/rocket/commits": [commit("a1", "ada", NOW - timedelta(days=1)),
                                  commit("b2", "bob", NOW - timedelta(days=1))],
    "/repos/ada/rocket/pulls": [pull(1, "ada", NOW - timedelta(days=3), merged=NOW - timedelta(days=1))],
    "/repos/ada/site/commits": [],
    "/repos/ada/site/pulls": [],
}


@pytest.fixture
def github_api(monkeypatch):
    calls = []

    def fake_get(url, headers=None, params=None, timeout=None):
        path = url.replace(github_service.API_URL, "")
        calls.append({"path": path, "headers": headers, "params": params})
        if path not in PAYLOADS:
            return FakeResponse({"message": "Not Found"}, status_code=404)
        return FakeResponse(PAYLOADS[path])

    monkeypatch.setattr(github_service.requests, "get", fake_get)
    return calls


@pytest.mark.parametrize(
    "languages,role",
    [
        ([], "Developer"),
        (["JavaScript", "TypeScript", "CSS"], "Frontend Developer"),
        (["Python", "Go"], "Backend Developer"),
        (["Python", "TypeScript"], "Fullstack Developer"),
    ],
)
def test_infer_role(languages, role):
    assert infer_role(languages) == role


def test_store_activity_uses_event_time(db):
    user = make_user(db)
    when = NOW - timedelta(days=4)

    activity = store_activity(db, user["id"], "commit", {"sha": "abc", "created_at": iso(when)})

    assert activity["value"] == 10
    assert activity["created_at"] == when.replace(microsecond=0)


def test_store_activity_repairs_duplicate_commit_time(db):
    user = make_user(db)
    existing = db.add_item("activities", {
        "user_id": user["id"], "type": "commit", "meta": {"sha": "abc"},
        "created_at": NOW - timedelta(hours=1),
    })
    real_time = NOW - timedelta(days=3)

    assert store_activity(db, user["id"], "commit", {"sha": "abc", "created_at": iso(real_time)}) is None
    assert db.get_item_by_id("activities", existing["id"])["created_at"] == real_time.replace(microsecond=0)
    assert len(db.rows("activities")) == 1


def test_store_activity_skips_duplicate_pr(db):
    user = make_user(db)
    meta = {"pr_url": "https://github.com/ada/rocket/pull/1", "created_at": iso(NOW)}

    assert store_activity(db, user["id"], "pr_opened", meta) is not None
    assert store_activity(db, user["id"], "pr_opened", meta) is None
    assert store_activity(db, user["id"], "pr_merged", meta) is not None


def test_sync_github_activity_creates_activities_and_reward(db, github_api):
    user = make_user(db)

    results = sync_github_activity(db, user["id"], "gh-token")

    assert results["repos_fetched"] == 2
    assert results["commits_fetched"] == 2
    assert results["activities_created"] == 4
    assert results["rewards_created"] == 1
    types = sorted(a["type"] for a in db.rows("activities"))
    assert types == ["commit", "pr_merged", "pr_opened", "repo_created"]
    reward = db.rows("rewards")[0]
    assert reward["points"] == 135
    assert reward["badges"] == ["repo-creator"]
    assert github_api[0]["headers"]["Authorization"] == "Bearer gh-token"


def test_sync_github_activity_is_idempotent(db, github_api):
    user = make_user(db)
    sync_github_activity(db, user["id"], "gh-token")

    results = sync_github_activity(db, user["id"], "gh-token")

    assert results["activities_created"] == 0
    assert results["rewards_created"] == 0
    assert len(db.rows("activities")) == 4


def test_sync_collects_repo_errors(db, github_api, monkeypatch):
    user = make_user(db)
    monkeypatch.delitem(PAYLOADS, "/repos/ada/site/commits")

    results = sync_github_activity(db, user["id"], "gh-token")

    assert len(results["errors"]) == 1
    assert "ada/site" in results["errors"][0]
    assert results["activities_created"] == 4


def test_sync_repo_activity_attributes_to_members(db, github_api):
    admin = make_user(db, github_username="ada")
    bob = make_user(db, name="bob")
    pod = make_pod(db, admin, repo_owner="ada", repo_name="rocket")
    add_member(db, pod, bob)

    results = sync_repo_activity(db, pod["id"], "ada", "rocket", None)

    assert results["commits_fetched"] == 2
    assert results["activities_created"] == 4
    assert results["errors"]
    by_user = {}
    for activity in db.rows("activities"):
        assert activity["pod_id"] == pod["id"]
        by_user.setdefault(activity["user_id"], []).append(activity["type"])
    assert sorted(by_user[admin["id"]]) == ["commit", "pr_merged", "pr_opened"]
    assert by_user[bob["id"]] == ["commit"]


def test_repos_route_requires_linked_github(client, db):
    user = make_user(db)

    response = client.get("/api/github/repos", headers=auth_headers(user))

    assert response.status_code == 403


def test_repos_route_decrypts_token(client, db, github_api):
    user = make_user(db, github_token=encrypt("gh-token"))

    response = client.get("/api/github/repos", headers=auth_headers(user))

    assert response.status_code == 200
    assert response.json()["count"] == 2
    assert response.json()["repos"][0]["full_name"] == "ada/rocket"
    assert github_api[0]["headers"]["Authorization"] == "Bearer gh-token"


def test_commits_route_validation(client, db):
    user = make_user(db, github_token="gh-token")

    missing = client.get("/api/github/commits", params={"owner": "ada"}, headers=auth_headers(user))
    bad_since = client.get(
        "/api/github/commits",
        params={"owner": "ada", "repo": "rocket", "since": "yesterday"},
        headers=auth_headers(user),
    )

    assert missing.status_code == 400
    assert bad_since.status_code == 400


def test_commits_route(client, db, github_api):
    user = make_user(db, github_token="gh-token")

    response = client.get(
        "/api/github/commits", params={"owner": "ada", "repo": "rocket"}, headers=auth_headers(user)
    )

    data = response.json()
    assert data["count"] == 2
    assert data["commits"][0]["repo"] == {"name": "rocket", "full_name": "ada/rocket"}
    assert data["since"]


def test_sync_route(client, db, github_api):
    user = make_user(db, github_token=encrypt("gh-token"))

    response = client.post("/api/github/sync", headers=auth_headers(user))

    assert response.status_code == 200
    assert response.json()["results"]["activities_created"] == 4
    assert "errors" not in response.json()["results"]


def test_analyze_route_saves_tech_stack(client, db, github_api):
    user = make_user(db, github_token="gh-token")

    response = client.post("/api/github/analyze", headers=auth_headers(user))

    assert response.status_code == 200
    stored = db.get_item_by_id("users", user["id"])
    assert stored["tech_stack"] == ["Python", "TypeScript"]
    assert stored["inferred_role"] == "Fullstack Developer"


@pytest.fixture
def oauth(monkeypatch, github_api):
    monkeypatch.setenv("GITHUB_CLIENT_ID", "client-123")
    monkeypatch.setenv("GITHUB_CLIENT_SECRET", "secret")

    def fake_post(url, json=None, headers=None, timeout=None):
        if json["code"] == "bad":
            return FakeResponse({"error_description": "bad verification code"})
        return FakeResponse({"access_token": "gh-token"})

    monkeypatch.setattr(github_service.requests, "post", fake_post)


def test_github_login_redirect(client, db, oauth):
    response = client.get("/api/auth/github/login", params={"token": "app-token"}, follow_redirects=False)

    assert response.status_code == 307
    query = parse_qs(urlparse(response.headers["location"]).query)
    assert query["client_id"] == ["client-123"]
    assert query["scope"] == ["read:user user:email"]
    assert query["state"] == ["app-token"]


def callback_token(response) -> dict:
    assert response.status_code == 307
    location = urlparse(response.headers["location"])
    assert f"{location.scheme}://{location.netloc}{location.path}" == "http://frontend.test/auth/callback"
    return decode_token(parse_qs(location.query)["token"][0])


def test_callback_creates_user(client, db, oauth):
    response = client.get("/api/auth/github/callback", params={"code": "ok"}, follow_redirects=False)

    payload = callback_token(response)
    user = db.get_item_by_id("users", payload["id"])
    assert user["github_id"] == "42"
    assert user["name"] == "ada"
    assert is_encrypted(user["github_token"])
    assert decrypt(user["github_token"]) == "gh-token"


def test_callback_links_logged_in_account(client, db, oauth):
    user = make_user(db, name="Ada Lovelace")

    response = client.get(
        "/api/auth/github/callback",
        params={"code": "ok", "state": create_token(user)},
        follow_redirects=False,
    )

    assert callback_token(response)["id"] == user["id"]
    stored = db.get_item_by_id("users", user["id"])
    assert stored["github_username"] == "ada"
    assert stored["name"] == "Ada Lovelace"


def test_callback_signs_into_already_linked_account(client, db, oauth):
    linked = make_user(db, github_id="42")
    other = make_user(db)

    response = client.get(
        "/api/auth/github/callback",
        params={"code": "ok", "state": create_token(other)},
        follow_redirects=False,
    )

    assert callback_token(response)["id"] == linked["id"]
    assert db.get_item_by_id("users", other["id"])["github_id"] is None


def test_callback_with_invalid_state_falls_back_to_login(client, db, oauth):
    linked = make_user(db, github_id="42")

    response = client.get(
        "/api/auth/github/callback",
        params={"code": "ok", "state": "garbage"},
        follow_redirects=False,
    )

    assert callback_token(response)["id"] == linked["id"]


def test_callback_failure(client, db, oauth):
    response = client.get("/api/auth/github/callback", params={"code": "bad"}, follow_redirects=False)

    assert response.status_code == 500
    assert response.json()["detail"] == "GitHub OAuth failed"


def test_store_activity_by_keyword(db):
    user = make_user(db)

    activity = store_activity(
        db, user["id"], activity_type="review", meta={"created_at": iso(NOW)}, pod_id="pod-1"
    )

    assert activity["type"] == "review"
    assert activity["value"] == 5
    assert activity["pod_id"] == "pod-1"
