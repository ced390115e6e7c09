import logging
from datetime import datetime, timezone
from typing import get_args

from fastapi import APIRouter, HTTPException

from codepods.db import add_item, get_item_by_id, get_items_by_filter, update_item
from codepods.dependencies import (
    CurrentUserDep,
    DbDep,
    get_membership,
    require_member,
    require_pod,
)
from codepods.models.schemas import TaskCreate, TaskStatus, TaskStatusUpdate
from codepods.services.notifications import notify
from codepods.services.rewards import record_task_completion

logger = logging.getLogger(__name__)
router = APIRouter(tags=["tasks"])

COLLECTION = "tasks"
TASK_STATUSES = get_args(TaskStatus)


@router.post("/pods/{pod_id}/tasks", status_code=201)
def create_task(pod_id: str, payload: TaskCreate, current_user: CurrentUserDep, db: DbDep):
    """Create a pending task, optionally assigned to an accepted member."""
    pod = require_pod(db, pod_id)
    require_member(db, current_user["id"], pod_id)

    if payload.assigned_to:
        assignee = get_membership(db, payload.assigned_to, pod_id)
        if assignee is None or assignee["status"] != "accepted":
            raise HTTPException(status_code=400, detail="Assigned user is not a member of this pod")

    task = add_item(
        db,
        COLLECTION,
        {
            "pod_id": pod_id,
            "title": payload.title,
            "description": payload.description,
            "assigned_to": payload.assigned_to,
            "due_at": payload.due_at,
            "status": "pending",
        },
    )
    logger.info(f"Created task {task['id']} in pod {pod_id}")

    if payload.assigned_to and payload.assigned_to != current_user["id"]:
        notify(
            db,
            payload.assigned_to,
            "New task assigned",
            f"You were assigned \"{task['title']}\" in {pod['name']}",
            link=f"/pods/{pod_id}",
        )

    return {"message": "Task created successfully", "task": task}


@router.get("/pods/{pod_id}/tasks")
def list_tasks(pod_id: str, current_user: CurrentUserDep, db: DbDep):
    require_member(db, current_user["id"], pod_id)
    tasks = get_items_by_filter(db, COLLECTION, {"pod_id": pod_id}, order_by="-created_at")
    return {"tasks": tasks}


@router.patch("/tasks/{task_id}/status")
@router.patch("/tasks/{task_id}", include_in_schema=False)
def update_task_status(
    task_id: str, payload: TaskStatusUpdate, current_user: CurrentUserDep, db: DbDep
):
    """Move a task between statuses.

    Finishing a task stamps completed_at and feeds the assignee's
    reliability score.
    """
    if payload.status not in TASK_STATUSES:
        raise HTTPException(
            status_code=400,
            detail=f"Invalid status. Must be one of: {', '.join(TASK_STATUSES)}",
        )

    task = get_item_by_id(db, COLLECTION, task_id)
    if task is None:
        raise HTTPException(status_code=404, detail="Task not found")

    require_member(db, current_user["id"], task["pod_id"])

    updates = {"status": payload.status}
    finishing = payload.status == "done" and task["status"] != "done"
    if finishing:
        updates["completed_at"] = datetime.now(timezone.utc)
    elif payload.status != "done":
        updates["completed_at"] = None

    updated = update_item(db, COLLECTION, task_id, updates)
    if finishing:
        record_task_completion(db, task, current_user["id"], now=updates["completed_at"])

    return {"message": "Task updated successfully", "task": updated}
