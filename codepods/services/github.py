"""GitHub REST API client and activity syncing."""

import logging
from collections import Counter
from datetime import datetime, timedelta, timezone
from urllib.parse import urlencode

import requests

from codepods.config import github_client_id, github_client_secret
from codepods.db import (
    PostgresDatabase,
    add_item,
    get_item_by_id,
    get_items_by_filter,
    update_item,
)
from codepods.services.rewards import activity_points, convert_activities_to_reward

logger = logging.getLogger(__name__)

API_URL = "https://api.github.com"
AUTHORIZE_URL = "https://github.com/login/oauth/authorize"
TOKEN_URL = "https://github.com/login/oauth/access_token"
OAUTH_SCOPE = "read:user user:email"
REQUEST_TIMEOUT = 30

USER_SYNC_DAYS = 30
NEW_REPO_DAYS = 7
POD_SYNC_DAYS = 365
DUPLICATE_WINDOW_DAYS = 365

FRONTEND_LANGUAGES = {
    "JavaScript", "TypeScript", "HTML", "CSS", "Vue", "Svelte",
    "Dart", "Swift", "Kotlin", "Objective-C",
}
BACKEND_LANGUAGES = {
    "Python", "Java", "Go", "Ruby", "PHP", "C#", "C++", "Rust", "Shell", "C",
}


class GitHubError(Exception):
    """Raised when a GitHub API call fails."""


def parse_time(value: str | datetime | None) -> datetime | None:
    """Parse GitHub's ISO-8601 timestamps ('...Z') into aware datetimes."""
    if value is None or isinstance(value, datetime):
        return value
    parsed = datetime.fromisoformat(value.replace("Z", "+00:00"))
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed


def _headers(access_token: str | None) -> dict:
    headers = {"Accept": "application/vnd.github.v3+json"}
    if access_token:
        headers["Authorization"] = f"Bearer {access_token}"
    return headers


def _get(path: str, access_token: str | None, params: dict | None = None):
    response = requests.get(
        f"{API_URL}{path}",
        headers=_headers(access_token),
        params=params,
        timeout=REQUEST_TIMEOUT,
    )
    response.raise_for_status()
    return response.json()


# ============================================================================
# OAuth
# ============================================================================


def authorize_url(state: str = "") -> str:
    params = urlencode(
        {"client_id": github_client_id() or "", "scope": OAUTH_SCOPE, "state": state}
    )
    return f"{AUTHORIZE_URL}?{params}"


def exchange_code(code: str) -> str:
    """Trade an OAuth callback code for an access token."""
    try:
        response = requests.post(
            TOKEN_URL,
            json={
                "client_id": github_client_id(),
                "client_secret": github_client_secret(),
                "code": code,
            },
            headers={"Accept": "application/json"},
            timeout=REQUEST_TIMEOUT,
        )
        response.raise_for_status()
    except requests.exceptions.RequestException as e:
        raise GitHubError(f"Token exchange failed: {e}") from e

    data = response.json()
    token = data.get("access_token")
    if not token:
        raise GitHubError(data.get("error_description") or "No access token returned")
    return token


# ============================================================================
# REST API
# ============================================================================


def get_github_user(access_token: str) -> dict:
    try:
        return _get("/user", access_token)
    except requests.exceptions.RequestException as e:
        logger.error(f"Error fetching GitHub user: {e}")
        raise GitHubError("Failed to fetch GitHub user info") from e


def fetch_user_repos(access_token: str) -> list[dict]:
    try:
        return _get(
            "/user/repos",
            access_token,
            params={"sort": "created", "direction": "desc", "per_page": 100},
        )
    except requests.exceptions.RequestException as e:
        logger.error(f"Error fetching user repos: {e}")
        raise GitHubError("Failed to fetch GitHub repositories") from e


def fetch_repo_commits(
    access_token: str | None, owner: str, repo: str, since: datetime | None = None
) -> list[dict]:
    params = {"per_page": 100}
    if since is not None:
        params["since"] = since.isoformat()
    try:
        return _get(f"/repos/{owner}/{repo}/commits", access_token, params=params)
    except requests.exceptions.RequestException as e:
        logger.error(f"Error fetching commits for {owner}/{repo}: {e}")
        raise GitHubError(f"Failed to fetch commits for {owner}/{repo}") from e


def fetch_pull_requests(
    access_token: str | None, owner: str, repo: str, since: datetime | None = None
) -> list[dict]:
    """Pull requests created or updated since `since` (default: last 7 days).

    The pulls endpoint has no 'since' parameter, so filtering happens here.
    Failures are logged and yield an empty list.
    """
    if since is None:
        since = datetime.now(timezone.utc) - timedelta(days=7)
    try:
        prs = _get(
            f"/repos/{owner}/{repo}/pulls",
            access_token,
            params={"state": "all", "sort": "created", "direction": "desc", "per_page": 100},
        )
    except requests.exceptions.RequestException as e:
        logger.error(f"Error fetching PRs for {owner}/{repo}: {e}")
        return []

    return [
        pr for pr in prs
        if parse_time(pr["created_at"]) >= since or parse_time(pr["updated_at"]) >= since
    ]


def format_repo(repo: dict) -> dict:
    return {
        "id": repo["id"],
        "name": repo["name"],
        "full_name": repo["full_name"],
        "description": repo.get("description"),
        "url": repo.get("html_url"),
        "private": repo.get("private", False),
        "created_at": repo.get("created_at"),
        "updated_at": repo.get("updated_at"),
        "language": repo.get("language"),
        "stars": repo.get("stargazers_count", 0),
        "forks": repo.get("forks_count", 0),
        "owner": {
            "login": repo["owner"]["login"],
            "avatar_url": repo["owner"].get("avatar_url"),
        },
    }


def format_commit(commit: dict, owner: str, repo: str) -> dict:
    author = commit.get("author") or {}
    return {
        "sha": commit["sha"],
        "message": commit["commit"]["message"],
        "author": {
            "name": commit["commit"]["author"]["name"],
            "email": commit["commit"]["author"]["email"],
            "date": commit["commit"]["author"]["date"],
            "login": author.get("login"),
            "avatar_url": author.get("avatar_url"),
        },
        "url": commit.get("html_url"),
        "repo": {"name": repo, "full_name": f"{owner}/{repo}"},
    }


def _commit_login(commit: dict) -> str | None:
    return (commit.get("author") or {}).get("login") or (commit.get("committer") or {}).get("login")


# ============================================================================
# Activity storage
# ============================================================================


def _find_duplicate(
    db: PostgresDatabase, user_id: str, activity_type: str, meta: dict, when: datetime, now: datetime
) -> tuple[dict | None, bool]:
    """Look for an already stored copy of an activity.

    Returns (existing, repairable): repairable duplicates get their
    timestamp corrected to the real event time.
    """
    if activity_type == "commit" and meta.get("sha"):
        candidates = get_items_by_filter(
            db, "activities",
            {"user_id": user_id, "type": activity_type,
             "created_at": {"$gte": now - timedelta(days=DUPLICATE_WINDOW_DAYS)}},
        )
        match = next((a for a in candidates if (a.get("meta") or {}).get("sha") == meta["sha"]), None)
        return match, True

    if activity_type == "repo_created" and meta.get("repo_full_name"):
        candidates = get_items_by_filter(
            db, "activities",
            {"user_id": user_id, "type": activity_type,
             "created_at": {"$gte": when, "$lte": when + timedelta(days=1)}},
        )
        match = next(
            (a for a in candidates
             if (a.get("meta") or {}).get("repo_full_name") == meta["repo_full_name"]),
            None,
        )
        return match, True

    if activity_type in ("pr_opened", "pr_merged") and meta.get("pr_url"):
        candidates = get_items_by_filter(
            db, "activities",
            {"user_id": user_id, "type": activity_type,
             "created_at": {"$gte": now - timedelta(days=DUPLICATE_WINDOW_DAYS)}},
        )
        match = next(
            (a for a in candidates if (a.get("meta") or {}).get("pr_url") == meta["pr_url"]),
            None,
        )
        return match, False

    return None, False


def store_activity(
    db: PostgresDatabase,
    user_id: str,
    activity_type: str,
    meta: dict,
    pod_id: str | None = None,
    now: datetime | None = None,
) -> dict | None:
    """Store an activity unless it was already recorded.

    The row is stamped with the real event time from meta["created_at"].

    Returns:
        The new activity, or None for a duplicate
    """
    now = now or datetime.now(timezone.utc)
    when = parse_time(meta.get("created_at")) or now

    existing, repairable = _find_duplicate(db, user_id, activity_type, meta, when, now)
    if existing is not None:
        if repairable and existing["created_at"] != when:
            update_item(db, "activities", existing["id"], {"created_at": when})
        return None

    return add_item(
        db,
        "activities",
        {
            "user_id": user_id,
            "pod_id": pod_id,
            "type": activity_type,
            "meta": meta,
            "value": activity_points(activity_type),
            "created_at": when,
        },
    )


def _pr_meta(pr: dict, repo_name: str, repo_full_name: str, created_at: str) -> dict:
    return {
        "pr_number": pr["number"],
        "title": pr.get("title"),
        "repo_name": repo_name,
        "repo_full_name": repo_full_name,
        "pr_url": pr["html_url"],
        "created_at": created_at,
    }


def _commit_meta(commit: dict, login: str, repo_name: str, repo_full_name: str, repo_url: str) -> dict:
    return {
        "sha": commit["sha"],
        "message": commit["commit"]["message"],
        "repo_name": repo_name,
        "repo_full_name": repo_full_name,
        "repo_url": repo_url,
        "commit_url": commit.get("html_url"),
        "author": login,
        "created_at": commit["commit"]["author"]["date"],
    }


def sync_github_activity(db: PostgresDatabase, user_id: str, access_token: str) -> dict:
    """Sync a user's own GitHub activity and reward what is new.

    Repos created in the last 7 days, and commits and PRs by the user from
    the last 30 days, become activities. A failing repo is recorded in
    results["errors"] and the sync moves on.
    """
    results = {
        "repos_fetched": 0,
        "commits_fetched": 0,
        "prs_fetched": 0,
        "activities_created": 0,
        "rewards_created": 0,
        "errors": [],
    }

    login = get_github_user(access_token)["login"]
    repos = fetch_user_repos(access_token)
    results["repos_fetched"] = len(repos)

    now = datetime.now(timezone.utc)
    sync_since = now - timedelta(days=USER_SYNC_DAYS)
    new_repo_since = now - timedelta(days=NEW_REPO_DAYS)
    new_activities = []

    def keep(activity):
        if activity is not None:
            new_activities.append(activity)
            results["activities_created"] += 1

    for repo in repos:
        try:
            if parse_time(repo["created_at"]) >= new_repo_since:
                keep(store_activity(db, user_id, "repo_created", {
                    "repo_name": repo["name"],
                    "repo_full_name": repo["full_name"],
                    "repo_url": repo.get("html_url"),
                    "created_at": repo["created_at"],
                }, now=now))

            owner = repo["owner"]["login"]
            commits = fetch_repo_commits(access_token, owner, repo["name"], sync_since)
            results["commits_fetched"] += len(commits)

            for commit in commits:
                if _commit_login(commit) != login:
                    continue
                keep(store_activity(
                    db, user_id, "commit",
                    _commit_meta(commit, login, repo["name"], repo["full_name"], repo.get("html_url")),
                    now=now,
                ))

            prs = fetch_pull_requests(access_token, owner, repo["name"], sync_since)
            results["prs_fetched"] += len(prs)

            for pr in prs:
                if (pr.get("user") or {}).get("login") != login:
                    continue
                if parse_time(pr["created_at"]) >= sync_since:
                    keep(store_activity(
                        db, user_id, "pr_opened",
                        _pr_meta(pr, repo["name"], repo["full_name"], pr["created_at"]),
                        now=now,
                    ))
                merged_at = parse_time(pr.get("merged_at"))
                if merged_at is not None and merged_at >= sync_since:
                    keep(store_activity(
                        db, user_id, "pr_merged",
                        _pr_meta(pr, repo["name"], repo["full_name"], pr["merged_at"]),
                        now=now,
                    ))
        except GitHubError as e:
            results["errors"].append(f"Error processing repo {repo['full_name']}: {e}")

    if convert_activities_to_reward(db, user_id, new_activities):
        results["rewards_created"] = 1

    logger.info(
        f"Synced GitHub activity for user {user_id}: "
        f"{results['activities_created']} new activities"
    )
    return results


def _member_for_login(members: list[dict], users: dict[str, dict], login: str) -> dict | None:
    for member in members:
        user = users.get(member["user_id"], {})
        if user.get("github_username") == login:
            return member
        if not user.get("github_username") and user.get("name") == login:
            return member
    return None


def sync_repo_activity(
    db: PostgresDatabase,
    pod_id: str,
    owner: str,
    repo_name: str,
    access_token: str | None,
) -> dict:
    """Attribute a pod repository's commits and PRs to pod members.

    Authors are matched to members by GitHub username (or by name for
    members without one). Without a token only public repos can be read.
    Errors are collected rather than raised.
    """
    results = {
        "commits_fetched": 0,
        "prs_fetched": 0,
        "activities_created": 0,
        "errors": [],
    }
    if not access_token:
        results["errors"].append(
            "No admin with GitHub token found to sync private repos. Trying public fetch."
        )

    members = get_items_by_filter(db, "pod_members", {"pod_id": pod_id})
    users = {
        user["id"]: user
        for user in get_items_by_filter(
            db, "users", {"id": {"$in": [m["user_id"] for m in members]}}
        )
    }

    now = datetime.now(timezone.utc)
    window = now - timedelta(days=POD_SYNC_DAYS)
    full_name = f"{owner}/{repo_name}"

    try:
        commits = fetch_repo_commits(access_token, owner, repo_name, window)
    except GitHubError as e:
        logger.error(f"Error syncing repo activity for {full_name}: {e}")
        results["errors"].append(str(e))
        return results

    results["commits_fetched"] = len(commits)
    for commit in commits:
        login = _commit_login(commit)
        member = _member_for_login(members, users, login) if login else None
        if member is None:
            continue
        repo_url = (commit.get("html_url") or "").split("/commit/")[0]
        activity = store_activity(
            db, member["user_id"], "commit",
            _commit_meta(commit, login, repo_name, full_name, repo_url),
            pod_id=pod_id, now=now,
        )
        if activity:
            results["activities_created"] += 1

    prs = fetch_pull_requests(access_token, owner, repo_name, window)
    results["prs_fetched"] = len(prs)
    for pr in prs:
        login = (pr.get("user") or {}).get("login")
        member = _member_for_login(members, users, login) if login else None
        if member is None:
            continue
        if parse_time(pr["created_at"]) >= window:
            if store_activity(
                db, member["user_id"], "pr_opened",
                _pr_meta(pr, repo_name, full_name, pr["created_at"]),
                pod_id=pod_id, now=now,
            ):
                results["activities_created"] += 1
        merged_at = parse_time(pr.get("merged_at"))
        if merged_at is not None and merged_at >= window:
            if store_activity(
                db, member["user_id"], "pr_merged",
                _pr_meta(pr, repo_name, full_name, pr["merged_at"]),
                pod_id=pod_id, now=now,
            ):
                results["activities_created"] += 1

    logger.info(f"Synced {full_name} into pod {pod_id}: {results['activities_created']} new activities")
    return results


# ============================================================================
# Profile analysis
# ============================================================================


def infer_role(languages: list[str]) -> str:
    if not languages:
        return "Developer"

    frontend = sum(1 for lang in languages if lang in FRONTEND_LANGUAGES)
    backend = sum(1 for lang in languages if lang in BACKEND_LANGUAGES)

    if frontend > backend * 1.5:
        return "Frontend Developer"
    if backend > frontend * 1.5:
        return "Backend Developer"
    return "Fullstack Developer"


def analyze_and_save_profile(db: PostgresDatabase, user_id: str, access_token: str) -> dict:
    """Derive a tech stack and role from repo languages and save them."""
    repos = fetch_user_repos(access_token)
    counts = Counter(repo["language"] for repo in repos if repo.get("language"))
    tech_stack = [lang for lang, _ in counts.most_common(10)]
    role = infer_role(tech_stack)

    update_item(db, "users", user_id, {"tech_stack": tech_stack, "inferred_role": role})
    logger.info(f"Analyzed GitHub profile for user {user_id}: {role}")
    return {"tech_stack": tech_stack, "inferred_role": role}


def admin_token(db: PostgresDatabase, pod_id: str) -> str | None:
    """Stored (still encrypted) GitHub token of any pod admin that has one."""
    admins = get_items_by_filter(
        db, "pod_members", {"pod_id": pod_id, "role": "admin", "status": "accepted"}
    )
    for admin in admins:
        user = get_item_by_id(db, "users", admin["user_id"])
        if user and user.get("github_token"):
            return user["github_token"]
    return None
