import logging

from fastapi import APIRouter, Depends
from fastapi.concurrency import run_in_threadpool

from codepods.db import PostgresDatabase, get_items_by_filter
from codepods.dependencies import CurrentUserDep, DbDep, require_member, require_pod
from codepods.models.schemas import ChatReply, ChatRequest, SuggestionsResponse
from codepods.routers.pods import user_map
from codepods.services import planner
from codepods.services.ratelimit import ai_limit

logger = logging.getLogger(__name__)
router = APIRouter(prefix="/ai", tags=["ai"], dependencies=[Depends(ai_limit)])

CONTEXT_TASKS = 10
CONTEXT_ACTIVITIES = 20


def _pod_context(db: PostgresDatabase, pod_id: str, user_id: str) -> tuple[dict, list[dict], list[dict], list[dict]]:
    """Pod, members, latest tasks and latest activities for the planner."""
    pod = require_pod(db, pod_id)
    require_member(db, user_id, pod_id)

    memberships = get_items_by_filter(db, "pod_members", {"pod_id": pod_id}, order_by="created_at")
    tasks = get_items_by_filter(
        db, "tasks", {"pod_id": pod_id}, order_by="-created_at", limit=CONTEXT_TASKS
    )
    activities = get_items_by_filter(
        db, "activities", {"pod_id": pod_id}, order_by="-created_at", limit=CONTEXT_ACTIVITIES
    )

    users = user_map(db, [m["user_id"] for m in memberships] + [a["user_id"] for a in activities])
    members = [
        {
            "user_id": m["user_id"],
            "name": users.get(m["user_id"], {}).get("name"),
            "role": m["role"],
            "reliability_score": users.get(m["user_id"], {}).get("reliability_score"),
        }
        for m in memberships
    ]
    activities = [
        {**a, "user_name": users.get(a["user_id"], {}).get("name")} for a in activities
    ]
    return pod, members, tasks, activities


@router.get("/pods/{pod_id}/plan")
async def get_pod_roadmap(pod_id: str, current_user: CurrentUserDep, db: DbDep):
    """Seven-day roadmap with team allocation."""
    pod, members, tasks, activities = await run_in_threadpool(
        _pod_context, db, pod_id, current_user["id"]
    )
    return await planner.generate_roadmap(pod, members, tasks, activities)


@router.post("/pods/{pod_id}/suggest-tasks", response_model=SuggestionsResponse)
async def suggest_tasks(pod_id: str, current_user: CurrentUserDep, db: DbDep):
    pod, _, tasks, _ = await run_in_threadpool(_pod_context, db, pod_id, current_user["id"])
    return {"suggestions": await planner.suggest_tasks(pod, tasks)}


@router.post("/pods/{pod_id}/chat", response_model=ChatReply)
async def chat(pod_id: str, payload: ChatRequest, current_user: CurrentUserDep, db: DbDep):
    pod, _, tasks, activities = await run_in_threadpool(
        _pod_context, db, pod_id, current_user["id"]
    )
    return await planner.chat(pod, tasks, activities, payload.message)
