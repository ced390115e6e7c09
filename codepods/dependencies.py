"""FastAPI dependencies for authentication and pod membership."""

import logging
from typing import Annotated

from fastapi import Depends, Header, HTTPException

from codepods.config import ConfigError
from codepods.db import PostgresDatabase, get_db_dependency, get_item_by_filter, get_item_by_id
from codepods.services.auth import AuthError, decode_token

logger = logging.getLogger(__name__)

DbDep = Annotated[PostgresDatabase, Depends(get_db_dependency)]


def get_current_user(
    db: DbDep,
    authorization: Annotated[str | None, Header()] = None,
) -> dict:
    """Resolve the bearer token to a user row.

    Raises:
        HTTPException: 401 if the header is missing or malformed, the token
            is invalid, or the user no longer exists
    """
    if not authorization or not authorization.lower().startswith("bearer "):
        raise HTTPException(status_code=401, detail="Not authenticated")

    token = authorization.split(" ", 1)[1].strip()
    try:
        payload = decode_token(token)
    except ConfigError as e:
        logger.error(str(e))
        raise HTTPException(status_code=500, detail="Server configuration error")
    except AuthError:
        raise HTTPException(status_code=401, detail="Invalid token")

    user = get_item_by_id(db, "users", payload["id"])
    if user is None:
        raise HTTPException(status_code=401, detail="User not found")
    return user


CurrentUserDep = Annotated[dict, Depends(get_current_user)]


def get_membership(db: PostgresDatabase, user_id: str, pod_id: str) -> dict | None:
    return get_item_by_filter(db, "pod_members", {"user_id": user_id, "pod_id": pod_id})


def require_member(db: PostgresDatabase, user_id: str, pod_id: str) -> dict:
    """Return the caller's accepted membership or raise 403."""
    membership = get_membership(db, user_id, pod_id)
    if membership is None or membership["status"] != "accepted":
        raise HTTPException(status_code=403, detail="You are not a member of this pod")
    return membership


def require_manager(db: PostgresDatabase, user_id: str, pod_id: str, action: str) -> dict:
    """Return the membership if the caller is an admin or maintainer, else 403."""
    membership = get_membership(db, user_id, pod_id)
    if (
        membership is None
        or membership["status"] != "accepted"
        or membership["role"] not in ("admin", "maintainer")
    ):
        raise HTTPException(
            status_code=403, detail=f"Only admins and maintainers can {action}"
        )
    return membership


def require_pod(db: PostgresDatabase, pod_id: str) -> dict:
    pod = get_item_by_id(db, "pods", pod_id)
    if pod is None:
        raise HTTPException(status_code=404, detail="Pod not found")
    return pod
