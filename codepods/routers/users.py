import logging
from typing import Annotated

from fastapi import APIRouter, Depends, HTTPException, Query, Request

from codepods.config import ConfigError
from codepods.db import (
    PostgresDatabase,
    add_item,
    get_item_by_filter,
    get_item_by_id,
    get_items_by_filter,
    update_item,
)
from codepods.dependencies import CurrentUserDep, DbDep
from codepods.models.schemas import (
    AuthResponse,
    LoginRequest,
    ProfileUpdate,
    SignupRequest,
    UserPublic,
    UserSummary,
)
from codepods.services.auth import create_token, hash_password, verify_password
from codepods.services.ratelimit import (
    auth_key,
    check_auth_attempts,
    record_failed_attempt,
    search_limit,
)
from codepods.services.rewards import unique_badges

logger = logging.getLogger(__name__)
router = APIRouter(prefix="/users", tags=["users"])

COLLECTION = "users"


def _auth_response(user: dict) -> dict:
    try:
        token = create_token(user)
    except ConfigError as e:
        logger.error(str(e))
        raise HTTPException(status_code=500, detail="Server configuration error")
    return {"token": token, "user": UserPublic.model_validate(user)}


def _user_rewards(db: PostgresDatabase, user_id: str) -> list[dict]:
    return get_items_by_filter(db, "rewards", {"user_id": user_id}, order_by="-created_at")


@router.post("/signup", response_model=AuthResponse)
def signup(payload: SignupRequest, request: Request, db: DbDep):
    """Create a password account and return a token for it."""
    key = auth_key(request, payload.email)
    check_auth_attempts(key)

    if get_item_by_filter(db, COLLECTION, {"email": payload.email}):
        record_failed_attempt(key)
        raise HTTPException(status_code=400, detail="Email already in use")

    user = add_item(
        db,
        COLLECTION,
        {
            "email": payload.email,
            "password": hash_password(payload.password),
            "name": payload.name,
        },
    )
    logger.info(f"Created user {user['id']}")
    return _auth_response(user)


@router.post("/login", response_model=AuthResponse)
def login(payload: LoginRequest, request: Request, db: DbDep):
    """Log in with email and password. Only failed attempts are rate limited."""
    key = auth_key(request, payload.email)
    check_auth_attempts(key)

    user = get_item_by_filter(db, COLLECTION, {"email": payload.email})
    if user is None:
        record_failed_attempt(key)
        raise HTTPException(status_code=400, detail="Invalid credentials")

    if not user.get("password"):
        record_failed_attempt(key)
        raise HTTPException(
            status_code=400,
            detail="This account was created with GitHub. Please use GitHub login.",
        )

    if not verify_password(payload.password, user["password"]):
        record_failed_attempt(key)
        raise HTTPException(status_code=400, detail="Invalid credentials")

    return _auth_response(user)


@router.get("/profile")
def get_profile(current_user: CurrentUserDep, db: DbDep):
    """Profile with pods, rewards, points and recent activity."""
    user_id = current_user["id"]

    memberships = get_items_by_filter(db, "pod_members", {"user_id": user_id})
    pods_by_id = {
        pod["id"]: pod
        for pod in get_items_by_filter(
            db, "pods", {"id": {"$in": [m["pod_id"] for m in memberships]}}
        )
    }
    pods = [
        {**pods_by_id[m["pod_id"]], "role": m["role"], "status": m["status"]}
        for m in memberships
        if m["pod_id"] in pods_by_id
    ]

    rewards = _user_rewards(db, user_id)
    activities = get_items_by_filter(
        db, "activities", {"user_id": user_id}, order_by="-created_at", limit=20
    )

    return {
        "user": UserPublic.model_validate(current_user),
        "pods": pods,
        "rewards": rewards,
        "total_points": sum(r["points"] or 0 for r in rewards),
        "activities": activities,
        "badge_count": len(unique_badges(rewards)),
    }


@router.patch("/profile")
def update_profile(updates: ProfileUpdate, current_user: CurrentUserDep, db: DbDep):
    """Update the caller's name and/or GitHub username."""
    update_data = {k: v for k, v in updates.model_dump(exclude_unset=True).items() if v}
    if not update_data:
        raise HTTPException(status_code=400, detail="No update data provided")

    user = update_item(db, COLLECTION, current_user["id"], update_data)
    return {"message": "Profile updated successfully", "user": UserPublic.model_validate(user)}


@router.get(
    "/search",
    response_model=dict[str, list[UserSummary]],
    dependencies=[Depends(search_limit)],
)
def search_users(
    current_user: CurrentUserDep,
    db: DbDep,
    q: Annotated[str | None, Query()] = None,
):
    """Find up to 10 users by name or email substring."""
    if not q or not q.strip():
        return {"users": []}

    term = q.strip()
    users = get_items_by_filter(
        db,
        COLLECTION,
        {"$or": [{"name": {"$ilike": term}}, {"email": {"$ilike": term}}]},
        limit=10,
    )
    return {"users": users}


@router.get("/{user_id}/rewards")
def get_user_rewards(user_id: str, current_user: CurrentUserDep, db: DbDep):
    """A user's rewards. Only the user themself or a global admin may look."""
    if user_id != current_user["id"] and current_user.get("role") != "admin":
        raise HTTPException(status_code=403, detail="You can only view your own rewards")

    if get_item_by_id(db, COLLECTION, user_id) is None:
        raise HTTPException(status_code=404, detail="User not found")

    rewards = _user_rewards(db, user_id)
    return {
        "user_id": user_id,
        "total_points": sum(r["points"] for r in rewards),
        "rewards": rewards,
        "count": len(rewards),
    }
