"""Pod planning: AI roadmaps, task suggestions and chat, with fallbacks."""

import logging
from datetime import datetime

from codepods.config import ai_enabled
from codepods.services.agent import ask, ask_json
from codepods.services.prompts import prompts

logger = logging.getLogger(__name__)

ALLOCATION_ROLES = ["Lead Engineer", "Product Manager"]

DEFAULT_SUGGESTIONS = [
    {"title": "Implement Unit Tests for Auth", "description": "Bulletproof JWT validation.", "priority": "high"},
    {"title": "Setup CI/CD Pipeline", "description": "Automate builds.", "priority": "medium"},
    {"title": "Dynamic Dashboard Scaling", "description": "Optimize frontend.", "priority": "medium"},
]

DEFAULT_REPLY = (
    "I see. I've analyzed your project roadmap. Adding a testing sprint is a wise decision."
)


def _team_context(members: list[dict]) -> str:
    lines = []
    for index, member in enumerate(members):
        role = member.get("role") or ("Lead" if index == 0 else "Member")
        lines.append(f"{member.get('name')} (Role: {role})")
    return ", ".join(lines) or "No members"


def _activity_context(activities: list[dict]) -> str:
    lines = []
    for activity in activities:
        repo = (activity.get("meta") or {}).get("repo_name")
        where = f" in {repo}" if repo else ""
        lines.append(
            f"{activity.get('user_name')} did {activity['type']}{where} at {activity['created_at']}"
        )
    return "\n".join(lines) or "No recent activity recorded."


def _task_context(tasks: list[dict]) -> str:
    if not tasks:
        return "No manual tasks yet"
    return ", ".join(f"{t['title']} ({t['status']})" for t in tasks)


def _prompt_fields(pod: dict, members: list[dict], tasks: list[dict], activities: list[dict]) -> dict:
    return {
        "pod_name": pod["name"],
        "pod_description": pod.get("description") or "No description",
        "team": _team_context(members),
        "activity": _activity_context(activities),
        "tasks": _task_context(tasks),
    }


def fallback_roadmap(pod: dict, members: list[dict], tasks: list[dict]) -> list[dict]:
    """Deterministic three-phase plan used when AI is off or fails."""
    auth_done = any("auth" in t["title"].lower() and t["status"] == "done" for t in tasks)
    lead = members[0]["name"] if members else "Lead"
    second = members[1]["name"] if len(members) > 1 else lead

    return [
        {
            "id": 1,
            "title": "Strategic Foundation (Days 1-2)",
            "description": f"Core architecture setup for {pod['name']}.",
            "status": "COMPLETED" if auth_done else "IN PROGRESS",
            "tasks": [
                {"name": "Architecture Review", "status": "done" if auth_done else "progress",
                 "progress": 80, "assignee": lead},
                {"name": "Schema Finalization", "status": "done", "progress": 100, "assignee": second},
            ],
        },
        {
            "id": 2,
            "title": "Weekly Feature Sprint (Days 3-5)",
            "description": "Accelerated development of primary user stories.",
            "status": "IN PROGRESS",
            "tasks": [
                {"name": "API Implementation", "status": "progress", "progress": 40, "assignee": lead},
                {"name": "Frontend Skeleton", "status": "pending", "progress": 0, "assignee": second},
            ],
        },
        {
            "id": 3,
            "title": "Deployment Prep (Days 6-7)",
            "description": "Testing and staging environment provisioning.",
            "status": "UPCOMING",
            "tasks": [],
        },
    ]


def team_allocation(members: list[dict]) -> list[dict]:
    """Assign planning roles in membership order, with a skill-match score."""
    allocation = []
    for index, member in enumerate(members):
        role = ALLOCATION_ROLES[index] if index < len(ALLOCATION_ROLES) else "Developer"
        score = member.get("reliability_score")
        allocation.append({
            "id": member["user_id"],
            "name": member.get("name"),
            "role": role,
            "match": min(99, 85 + (score if score is not None else 100) // 10 - 1),
        })
    return allocation


async def generate_roadmap(
    pod: dict, members: list[dict], tasks: list[dict], activities: list[dict]
) -> dict:
    """Roadmap for the next 7 days.

    Args:
        pod: The pod row
        members: Member dicts with user_id, name, role, reliability_score
        tasks: Latest pod tasks
        activities: Latest pod activities with user_name added

    Returns:
        Dict with stage, roadmap, members, confidence, duration, efficiency
    """
    plan = {
        "stage": "Inception",
        "roadmap": None,
        "confidence": 0.92,
        "duration": "1 Week",
        "efficiency": "+15%",
    }

    if ai_enabled():
        prompt_config = prompts["roadmap"]
        try:
            result = await ask_json(
                prompt_config["prompt_template"].format(
                    **_prompt_fields(pod, members, tasks, activities)
                ),
                prompt_config["schema"],
            )
            plan.update(result.model_dump())
        except Exception as e:
            # Fall back to the deterministic plan below
            logger.error(f"Roadmap generation failed for pod {pod['id']}: {e}")

    if not plan["roadmap"]:
        plan["roadmap"] = fallback_roadmap(pod, members, tasks)

    plan["members"] = team_allocation(members)
    return plan


async def suggest_tasks(pod: dict, tasks: list[dict]) -> list[dict]:
    if ai_enabled():
        prompt_config = prompts["suggest_tasks"]
        try:
            result = await ask_json(
                prompt_config["prompt_template"].format(**_prompt_fields(pod, [], tasks, [])),
                prompt_config["schema"],
            )
            if result.suggestions:
                return [s.model_dump() for s in result.suggestions]
        except Exception as e:
            logger.error(f"Task suggestion failed for pod {pod['id']}: {e}")
    return [dict(s) for s in DEFAULT_SUGGESTIONS]


async def chat(pod: dict, tasks: list[dict], activities: list[dict], message: str) -> dict:
    reply = ""
    if ai_enabled():
        prompt_config = prompts["chat"]
        try:
            reply = await ask(
                prompt_config["prompt_template"].format(
                    message=message, **_prompt_fields(pod, [], tasks, activities)
                )
            )
        except Exception as e:
            logger.error(f"Chat failed for pod {pod['id']}: {e}")

    return {
        "reply": reply.strip() or DEFAULT_REPLY,
        "timestamp": datetime.now().strftime("%H:%M"),
    }
