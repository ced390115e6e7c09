import logging

from fastapi import APIRouter, HTTPException

from codepods.db import add_item, get_item_by_id, get_items_by_filter
from codepods.dependencies import CurrentUserDep, DbDep
from codepods.models.schemas import RewardCreate
from codepods.services.notifications import notify

logger = logging.getLogger(__name__)
router = APIRouter(prefix="/rewards", tags=["rewards"])


@router.post("", status_code=201)
def create_reward(payload: RewardCreate, current_user: CurrentUserDep, db: DbDep):
    """Grant points and badges by hand. Global admins only."""
    if current_user.get("role") != "admin":
        raise HTTPException(status_code=403, detail="Only admins can create rewards")

    if get_item_by_id(db, "users", payload.user_id) is None:
        raise HTTPException(status_code=404, detail="User not found")

    if payload.points < 0:
        raise HTTPException(status_code=400, detail="Points must be a non-negative number")

    badges = list(dict.fromkeys(payload.badges))
    if badges:
        known = {b["slug"] for b in get_items_by_filter(db, "badges", {"slug": {"$in": badges}})}
        missing = [slug for slug in badges if slug not in known]
        if missing:
            raise HTTPException(status_code=400, detail=f"Unknown badges: {', '.join(missing)}")

    reward = add_item(
        db,
        "rewards",
        {
            "user_id": payload.user_id,
            "points": payload.points,
            "reason": payload.reason,
            "badges": badges,
        },
    )
    logger.info(f"Admin {current_user['id']} rewarded {payload.points} points to {payload.user_id}")

    notify(
        db,
        payload.user_id,
        "New reward",
        f"You earned {payload.points} points" + (f": {payload.reason}" if payload.reason else ""),
        kind="success",
    )
    return {"message": "Reward created successfully", "reward": reward}
