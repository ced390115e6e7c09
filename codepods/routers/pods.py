import logging
from datetime import datetime, timedelta, timezone

from fastapi import APIRouter, Depends, HTTPException

from codepods.config import ConfigError
from codepods.db import (
    PostgresDatabase,
    add_item,
    count_items,
    get_item_by_id,
    get_items_by_filter,
    update_item,
)
from codepods.dependencies import (
    CurrentUserDep,
    DbDep,
    get_membership,
    require_manager,
    require_member,
    require_pod,
)
from codepods.models.schemas import MemberAdd, MemberUpdate, PodCreate, PodUpdate
from codepods.services.encryption import EncryptionError, reveal_token
from codepods.services.github import admin_token, sync_repo_activity
from codepods.services.notifications import notify
from codepods.services.ratelimit import search_limit, sync_limit
from codepods.services.rewards import (
    build_leaderboard,
    evaluate_health,
    evaluate_validity,
    format_achievements,
    round_half_up,
)

logger = logging.getLogger(__name__)
router = APIRouter(prefix="/pods", tags=["pods"])

COLLECTION = "pods"
RECENT_DAYS = 30


def user_map(db: PostgresDatabase, user_ids) -> dict[str, dict]:
    ids = list(set(user_ids))
    if not ids:
        return {}
    return {u["id"]: u for u in get_items_by_filter(db, "users", {"id": {"$in": ids}})}


def _user_summary(user: dict | None) -> dict | None:
    if user is None:
        return None
    return {
        "id": user["id"],
        "name": user.get("name"),
        "email": user.get("email"),
        "github_username": user.get("github_username"),
        "reliability_score": user.get("reliability_score"),
        "dynamics_metrics": user.get("dynamics_metrics") or {},
    }


def members_with_users(db: PostgresDatabase, pod_id: str) -> list[dict]:
    members = get_items_by_filter(db, "pod_members", {"pod_id": pod_id}, order_by="created_at")
    users = user_map(db, [m["user_id"] for m in members])
    return [{**m, "user": _user_summary(users.get(m["user_id"]))} for m in members]


def tasks_with_users(db: PostgresDatabase, pod_id: str) -> list[dict]:
    tasks = get_items_by_filter(db, "tasks", {"pod_id": pod_id}, order_by="-created_at")
    users = user_map(db, [t["assigned_to"] for t in tasks if t.get("assigned_to")])
    return [
        {**t, "user": _user_summary(users.get(t["assigned_to"])) if t.get("assigned_to") else None}
        for t in tasks
    ]


def _notify_admins(db: PostgresDatabase, pod: dict, title: str, message: str, kind: str) -> None:
    admins = get_items_by_filter(
        db, "pod_members", {"pod_id": pod["id"], "role": "admin", "status": "accepted"}
    )
    for admin in admins:
        notify(db, admin["user_id"], title, message, kind=kind, link=f"/pods/{pod['id']}")


@router.get("")
def list_user_pods(current_user: CurrentUserDep, db: DbDep):
    """Pods the caller belongs to, with members and the caller's role."""
    memberships = get_items_by_filter(db, "pod_members", {"user_id": current_user["id"]})
    pods = []
    for membership in memberships:
        pod = get_item_by_id(db, COLLECTION, membership["pod_id"])
        if pod is None:
            continue
        pods.append({
            **pod,
            "members": members_with_users(db, pod["id"]),
            "role": membership["role"],
            "status": membership["status"],
        })
    return {"pods": pods}


@router.post("", status_code=201)
@router.post("/create", status_code=201, include_in_schema=False)
def create_pod(payload: PodCreate, current_user: CurrentUserDep, db: DbDep):
    """Create a pod. The creator must have GitHub linked and becomes its admin."""
    if not current_user.get("github_id"):
        raise HTTPException(
            status_code=403,
            detail="GitHub account not linked. Please connect your GitHub before creating a pod.",
        )

    pod = add_item(db, COLLECTION, {"name": payload.name, "description": payload.description})
    member = add_item(
        db,
        "pod_members",
        {"user_id": current_user["id"], "pod_id": pod["id"], "role": "admin", "status": "accepted"},
    )
    logger.info(f"User {current_user['id']} created pod {pod['id']}")
    return {"message": "Pod created successfully", "pod": {**pod, "members": [member]}}


@router.get("/explore", dependencies=[Depends(search_limit)])
def explore_pods(current_user: CurrentUserDep, db: DbDep):
    """Every pod with its member count and the caller's membership status."""
    pods = get_items_by_filter(db, COLLECTION, order_by="-created_at")
    result = []
    for pod in pods:
        membership = get_membership(db, current_user["id"], pod["id"])
        result.append({
            **pod,
            "member_count": count_items(db, "pod_members", {"pod_id": pod["id"], "status": "accepted"}),
            "membership_status": membership["status"] if membership else None,
        })
    return {"pods": result}


@router.get("/{pod_id}")
def get_pod(pod_id: str, current_user: CurrentUserDep, db: DbDep):
    """Pod details with members and tasks (newest first)."""
    require_member(db, current_user["id"], pod_id)
    pod = require_pod(db, pod_id)
    return {
        "pod": {
            **pod,
            "members": members_with_users(db, pod_id),
            "tasks": tasks_with_users(db, pod_id),
        }
    }


@router.patch("/{pod_id}")
def update_pod(pod_id: str, updates: PodUpdate, current_user: CurrentUserDep, db: DbDep):
    require_manager(db, current_user["id"], pod_id, "update the pod")
    require_pod(db, pod_id)

    update_data = updates.model_dump(exclude_unset=True)
    if not update_data:
        raise HTTPException(status_code=400, detail="No update data provided")

    pod = update_item(db, COLLECTION, pod_id, update_data)
    return {"message": "Pod updated successfully", "pod": pod}


@router.post("/{pod_id}/members", status_code=201)
def add_member(pod_id: str, payload: MemberAdd, current_user: CurrentUserDep, db: DbDep):
    """Invite a user. The membership stays pending until they accept."""
    require_manager(db, current_user["id"], pod_id, "add members")
    pod = require_pod(db, pod_id)

    user = get_item_by_id(db, "users", payload.user_id)
    if user is None:
        raise HTTPException(status_code=404, detail="User not found")

    if get_membership(db, payload.user_id, pod_id):
        raise HTTPException(status_code=400, detail="User is already a member of this pod")

    member = add_item(
        db,
        "pod_members",
        {"user_id": payload.user_id, "pod_id": pod_id, "role": payload.role, "status": "pending"},
    )
    notify(
        db,
        payload.user_id,
        "Pod invitation",
        f"{current_user.get('name') or 'A teammate'} invited you to join {pod['name']}",
        kind="invite",
        link=f"/pods/{pod_id}",
    )
    return {
        "message": "Member added successfully",
        "member": {**member, "user": _user_summary(user)},
    }


@router.patch("/{pod_id}/members/{member_id}")
def update_member(
    pod_id: str, member_id: str, payload: MemberUpdate, current_user: CurrentUserDep, db: DbDep
):
    """Change a member's role or approve a join request. Admins only."""
    membership = require_member(db, current_user["id"], pod_id)
    if membership["role"] != "admin":
        raise HTTPException(status_code=403, detail="Only admins can manage members")

    member = get_item_by_id(db, "pod_members", member_id)
    if member is None or member["pod_id"] != pod_id:
        raise HTTPException(status_code=404, detail="Member not found")

    update_data = payload.model_dump(exclude_unset=True, exclude_none=True)
    if not update_data:
        raise HTTPException(status_code=400, detail="No update data provided")

    if member["user_id"] == current_user["id"] and update_data.get("role", "admin") != "admin":
        raise HTTPException(status_code=400, detail="Admins cannot demote themselves")

    updated = update_item(db, "pod_members", member_id, update_data)
    if update_data.get("status") == "accepted" and member["status"] != "accepted":
        pod = require_pod(db, pod_id)
        notify(
            db, member["user_id"], "Request approved",
            f"You are now a member of {pod['name']}",
            kind="success", link=f"/pods/{pod_id}",
        )
    return {"message": "Member updated successfully", "member": updated}


@router.post("/{pod_id}/join", status_code=201)
def request_to_join(pod_id: str, current_user: CurrentUserDep, db: DbDep):
    pod = require_pod(db, pod_id)
    if get_membership(db, current_user["id"], pod_id):
        raise HTTPException(status_code=400, detail="You are already a member of this pod")

    member = add_item(
        db,
        "pod_members",
        {"user_id": current_user["id"], "pod_id": pod_id, "role": "member", "status": "requested"},
    )
    _notify_admins(
        db, pod, "Join request",
        f"{current_user.get('name') or 'Someone'} asked to join {pod['name']}",
        kind="request",
    )
    return {"message": "Join request sent", "member": member}


@router.post("/{pod_id}/accept")
def accept_invite(pod_id: str, current_user: CurrentUserDep, db: DbDep):
    membership = get_membership(db, current_user["id"], pod_id)
    if membership is None or membership["status"] != "pending":
        raise HTTPException(status_code=404, detail="No pending invitation for this pod")

    member = update_item(db, "pod_members", membership["id"], {"status": "accepted"})
    return {"message": "Invitation accepted", "member": member}


@router.get("/{pod_id}/stats")
def get_pod_stats(pod_id: str, current_user: CurrentUserDep, db: DbDep):
    """Commit, PR and task-completion figures for the pod dashboard."""
    require_member(db, current_user["id"], pod_id)

    tasks = get_items_by_filter(db, "tasks", {"pod_id": pod_id})
    completed = sum(1 for t in tasks if t["status"] == "done")
    completion_rate = round_half_up(completed / len(tasks) * 100) if tasks else 0

    week_ago = datetime.now(timezone.utc) - timedelta(days=7)
    commits = count_items(db, "activities", {"pod_id": pod_id, "type": "commit"})
    weekly_commits = count_items(
        db, "activities", {"pod_id": pod_id, "type": "commit", "created_at": {"$gte": week_ago}}
    )
    prs = count_items(db, "activities", {"pod_id": pod_id, "type": "pr_opened"})

    return {
        "stats": {
            "commits": {"value": str(commits), "trend": "", "trend_up": True, "unit": ""},
            "weekly_commits": {"value": str(weekly_commits), "unit": "this week"},
            "prs": {"value": str(prs), "trend": "", "trend_up": True, "unit": ""},
            "health": completion_rate,
        }
    }


@router.get("/{pod_id}/leaderboard")
def get_pod_leaderboard(pod_id: str, current_user: CurrentUserDep, db: DbDep):
    """Ranking, competitive validity and health of the pod."""
    require_member(db, current_user["id"], pod_id)

    members = get_items_by_filter(db, "pod_members", {"pod_id": pod_id})
    member_ids = [m["user_id"] for m in members]
    users = user_map(db, member_ids)

    pod_points: dict[str, int] = {}
    for activity in get_items_by_filter(db, "activities", {"pod_id": pod_id}):
        pod_points[activity["user_id"]] = pod_points.get(activity["user_id"], 0) + (activity["value"] or 0)

    rewards_by_user: dict[str, list[dict]] = {}
    if member_ids:
        for reward in get_items_by_filter(db, "rewards", {"user_id": {"$in": member_ids}}):
            rewards_by_user.setdefault(reward["user_id"], []).append(reward)

    since = datetime.now(timezone.utc) - timedelta(days=RECENT_DAYS)
    recent = count_items(db, "activities", {"pod_id": pod_id, "created_at": {"$gte": since}})
    active = sum(1 for m in members if m["status"] == "accepted")

    tasks = get_items_by_filter(db, "tasks", {"pod_id": pod_id})
    completed = sum(1 for t in tasks if t["status"] == "done")

    return {
        "leaderboard": build_leaderboard(members, users, pod_points, rewards_by_user),
        "validity": evaluate_validity(active, recent),
        "health": evaluate_health(recent, active, len(members), len(tasks), completed),
    }


@router.get("/{pod_id}/achievements")
def get_pod_achievements(pod_id: str, current_user: CurrentUserDep, db: DbDep):
    """Recent rewards of members and point-earning pod activity, merged."""
    require_member(db, current_user["id"], pod_id)

    members = get_items_by_filter(db, "pod_members", {"pod_id": pod_id})
    member_ids = [m["user_id"] for m in members]

    rewards = []
    if member_ids:
        candidates = get_items_by_filter(
            db, "rewards", {"user_id": {"$in": member_ids}}, order_by="-created_at"
        )
        rewards = [r for r in candidates if r.get("badges") or r["points"] > 0][:10]

    activities = get_items_by_filter(
        db, "activities", {"pod_id": pod_id, "value": {"$gt": 0}},
        order_by="-created_at", limit=20,
    )

    users = user_map(db, [r["user_id"] for r in rewards] + [a["user_id"] for a in activities])
    names = {user_id: user.get("name") for user_id, user in users.items()}
    return {"achievements": format_achievements(rewards, activities, names)}


@router.get("/{pod_id}/activities")
def get_pod_activities(pod_id: str, current_user: CurrentUserDep, db: DbDep):
    require_member(db, current_user["id"], pod_id)

    activities = get_items_by_filter(
        db, "activities", {"pod_id": pod_id}, order_by="-created_at", limit=50
    )
    users = user_map(db, [a["user_id"] for a in activities])
    return {
        "activities": [
            {**a, "user": {"id": a["user_id"], "name": users.get(a["user_id"], {}).get("name")}}
            for a in activities
        ]
    }


@router.post("/{pod_id}/sync", dependencies=[Depends(sync_limit)])
def sync_pod(pod_id: str, current_user: CurrentUserDep, db: DbDep):
    """Pull the linked repository's commits and PRs into pod activity."""
    require_manager(db, current_user["id"], pod_id, "sync the pod")
    pod = require_pod(db, pod_id)

    if not pod.get("repo_owner") or not pod.get("repo_name"):
        raise HTTPException(status_code=400, detail="Pod has no linked repository")

    try:
        token = reveal_token(admin_token(db, pod_id))
    except (EncryptionError, ConfigError) as e:
        logger.error(f"Could not read admin token for pod {pod_id}: {e}")
        token = None

    results = sync_repo_activity(db, pod_id, pod["repo_owner"], pod["repo_name"], token)
    return {"message": "Pod activity synced", "results": results}
