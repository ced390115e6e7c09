import logging
from typing import Annotated

from fastapi import APIRouter, HTTPException, Query
from fastapi.responses import RedirectResponse

from codepods.config import ConfigError, frontend_url
from codepods.db import PostgresDatabase, add_item, get_item_by_filter, get_item_by_id, update_item
from codepods.dependencies import DbDep
from codepods.services.auth import AuthError, create_token, decode_token
from codepods.services.encryption import EncryptionError, encrypt
from codepods.services.github import GitHubError, authorize_url, exchange_code, get_github_user

logger = logging.getLogger(__name__)
router = APIRouter(prefix="/auth/github", tags=["github-auth"])


def _linking_user_id(state: str | None) -> str | None:
    """User id carried in the OAuth state, if it holds a valid app token."""
    if not state:
        return None
    try:
        return decode_token(state)["id"]
    except AuthError as e:
        logger.warning(f"Invalid token in state, falling back to normal login: {e}")
        return None


def _link_or_login(
    db: PostgresDatabase, github_user: dict, stored_token: str, state: str | None
) -> dict:
    github_id = str(github_user["id"])
    login = github_user["login"]
    linked = get_item_by_filter(db, "users", {"github_id": github_id})

    user_id = _linking_user_id(state)
    if user_id:
        current = get_item_by_id(db, "users", user_id)
        if linked is not None and linked["id"] != user_id:
            # GitHub already belongs to another account: sign in as that one
            logger.info(f"GitHub {login} already linked to {linked['id']}, not {user_id}")
            return update_item(db, "users", linked["id"], {"github_token": stored_token})
        if current is not None:
            return update_item(
                db,
                "users",
                user_id,
                {
                    "github_id": github_id,
                    "github_username": login,
                    "github_token": stored_token,
                    "name": current.get("name") or login,
                },
            )

    if linked is not None:
        return update_item(
            db, "users", linked["id"], {"github_token": stored_token, "github_username": login}
        )

    user = add_item(
        db,
        "users",
        {
            "github_id": github_id,
            "github_username": login,
            "name": login,
            "github_token": stored_token,
        },
    )
    logger.info(f"Created user {user['id']} from GitHub account {login}")
    return user


@router.get("/login")
def github_login(token: Annotated[str | None, Query()] = None):
    """Send the browser to GitHub. An app token, if given, rides along as state."""
    return RedirectResponse(authorize_url(state=token or ""))


@router.get("/callback")
def github_callback(
    db: DbDep,
    code: Annotated[str | None, Query()] = None,
    state: Annotated[str | None, Query()] = None,
):
    """Finish OAuth: link or create the account, then hand a JWT to the frontend."""
    if not code:
        raise HTTPException(status_code=400, detail="Missing OAuth code")

    try:
        access_token = exchange_code(code)
        github_user = get_github_user(access_token)
        user = _link_or_login(db, github_user, encrypt(access_token), state)
        jwt_token = create_token(user)
    except (GitHubError, EncryptionError, ConfigError) as e:
        logger.error(f"GitHub OAuth error: {e}")
        raise HTTPException(status_code=500, detail="GitHub OAuth failed")

    return RedirectResponse(f"{frontend_url()}/auth/callback?token={jwt_token}")
