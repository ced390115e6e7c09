import logging
from datetime import datetime, timedelta, timezone
from typing import Annotated

from fastapi import APIRouter, Depends, HTTPException, Query

from codepods.config import ConfigError
from codepods.dependencies import CurrentUserDep, DbDep
from codepods.services.encryption import EncryptionError, reveal_token
from codepods.services.github import (
    GitHubError,
    analyze_and_save_profile,
    fetch_repo_commits,
    fetch_user_repos,
    format_commit,
    format_repo,
    parse_time,
    sync_github_activity,
)
from codepods.services.ratelimit import sync_limit

logger = logging.getLogger(__name__)
router = APIRouter(prefix="/github", tags=["github"])

COMMITS_DEFAULT_DAYS = 90


def github_token(current_user: CurrentUserDep) -> str:
    """The caller's decrypted GitHub token, or 403 when none is linked."""
    stored = current_user.get("github_token")
    if not stored:
        raise HTTPException(
            status_code=403,
            detail="GitHub account not linked. Please connect your GitHub account first.",
        )
    try:
        return reveal_token(stored)
    except (EncryptionError, ConfigError) as e:
        logger.error(f"Could not decrypt GitHub token for user {current_user['id']}: {e}")
        raise HTTPException(status_code=500, detail="Failed to read GitHub credentials")


GitHubTokenDep = Annotated[str, Depends(github_token)]


@router.get("/repos")
def get_user_repos(token: GitHubTokenDep):
    try:
        repos = fetch_user_repos(token)
    except GitHubError as e:
        raise HTTPException(status_code=502, detail=str(e))

    formatted = [format_repo(repo) for repo in repos]
    return {"repos": formatted, "count": len(formatted)}


@router.get("/commits")
def get_commits(
    current_user: CurrentUserDep,
    owner: Annotated[str | None, Query()] = None,
    repo: Annotated[str | None, Query()] = None,
    since: Annotated[str | None, Query()] = None,
):
    """Commits of one repository, optionally since an ISO-8601 time."""
    if not owner or not repo:
        raise HTTPException(status_code=400, detail="owner and repo query parameters are required")

    token = github_token(current_user)

    since_time = None
    if since:
        try:
            since_time = parse_time(since)
        except ValueError:
            raise HTTPException(
                status_code=400,
                detail="Invalid 'since' date format. Use ISO 8601 format (e.g., 2024-01-01T00:00:00Z)",
            )

    try:
        commits = fetch_repo_commits(token, owner, repo, since_time)
    except GitHubError as e:
        raise HTTPException(status_code=502, detail=str(e))

    formatted = [format_commit(commit, owner, repo) for commit in commits]
    if since_time is None:
        since_time = datetime.now(timezone.utc) - timedelta(days=COMMITS_DEFAULT_DAYS)
    return {
        "commits": formatted,
        "count": len(formatted),
        "owner": owner,
        "repo": repo,
        "since": since_time.isoformat(),
    }


@router.post("/sync", dependencies=[Depends(sync_limit)])
def sync_activity(current_user: CurrentUserDep, token: GitHubTokenDep, db: DbDep):
    """Turn the caller's recent GitHub work into activities and a reward."""
    try:
        results = sync_github_activity(db, current_user["id"], token)
    except GitHubError as e:
        logger.error(f"Error syncing GitHub activity for user {current_user['id']}: {e}")
        raise HTTPException(status_code=502, detail=str(e))

    if not results["errors"]:
        results.pop("errors")
    return {"message": "GitHub activity synced successfully", "results": results}


@router.post("/analyze")
def analyze_profile(current_user: CurrentUserDep, token: GitHubTokenDep, db: DbDep):
    try:
        analysis = analyze_and_save_profile(db, current_user["id"], token)
    except GitHubError as e:
        raise HTTPException(status_code=502, detail=str(e))
    return {"message": "Profile analyzed successfully", **analysis}
