"""Points, badges, leaderboards and pod health scoring."""

import logging
import math
from datetime import datetime, timezone

from codepods.db import PostgresDatabase, add_item, get_item_by_id, update_item

logger = logging.getLogger(__name__)

ACTIVITY_POINTS = {
    "commit": 10,
    "repo_created": 50,
    "pr_opened": 25,
    "pr_merged": 50,
    "issue_opened": 15,
    "issue_closed": 20,
}
DEFAULT_ACTIVITY_POINTS = 5

POINTS_PER_LEVEL = 500

# Competitive ranking needs this much recent life in a pod
MIN_ACTIVE_MEMBERS = 3
MIN_RECENT_ACTIVITIES = 10
VELOCITY_TARGET = 20


def round_half_up(value: float) -> int:
    """Round halves up (2.5 -> 3), unlike the builtin round()."""
    return math.floor(value + 0.5)


# Badge shown for an activity in the achievements feed, with its title
ACTIVITY_BADGES = {
    "commit": ("committer", "Commit Author"),
    "pr_opened": ("pr-open", "PR Creator"),
    "pr_merged": ("super-committer", "Code Merger"),
}


def activity_points(activity_type: str) -> int:
    return ACTIVITY_POINTS.get(activity_type, DEFAULT_ACTIVITY_POINTS)


def badges_for(activities: list[dict]) -> list[str]:
    """Badges earned by a batch of freshly synced activities."""
    types = [a["type"] for a in activities]
    commits = types.count("commit")

    badges = []
    if "repo_created" in types:
        badges.append("repo-creator")
    if commits >= 10:
        badges.append("committer")
    if commits >= 50:
        badges.append("super-committer")
    return badges


def convert_activities_to_reward(
    db: PostgresDatabase, user_id: str, activities: list[dict]
) -> dict | None:
    """Turn newly stored activities into a single reward row."""
    if not activities:
        return None

    reward = add_item(
        db,
        "rewards",
        {
            "user_id": user_id,
            "points": sum(a["value"] for a in activities),
            "badges": badges_for(activities),
            "reason": f"GitHub activity sync: {len(activities)} activities",
        },
    )
    logger.info(f"Created reward of {reward['points']} points for user {user_id}")
    return reward


def unique_badges(rewards: list[dict]) -> list[str]:
    """Distinct badges across rewards, in first-seen order."""
    seen: dict[str, None] = {}
    for reward in rewards:
        for badge in reward.get("badges") or []:
            seen.setdefault(badge, None)
    return list(seen)


def level_for(points: int) -> int:
    return points // POINTS_PER_LEVEL + 1


def build_leaderboard(
    members: list[dict],
    users: dict[str, dict],
    pod_points: dict[str, int],
    rewards_by_user: dict[str, list[dict]],
) -> list[dict]:
    """Rank pod members by the points they earned inside the pod.

    Badges stay global; points only count activity linked to this pod.
    """
    leaderboard = []
    for member in members:
        user = users.get(member["user_id"], {})
        points = pod_points.get(member["user_id"], 0)
        leaderboard.append(
            {
                "id": member["user_id"],
                "name": user.get("name"),
                "email": user.get("email"),
                "github_username": user.get("github_username"),
                "role": member["role"],
                "status": member["status"],
                "total_points": points,
                "badges": unique_badges(rewards_by_user.get(member["user_id"], [])),
                "level": level_for(points),
            }
        )
    leaderboard.sort(key=lambda entry: entry["total_points"], reverse=True)
    return leaderboard


def evaluate_validity(active_members: int, recent_activities: int) -> dict:
    """Whether a pod is lively enough for competitive ranking."""
    reasons = []
    if active_members < MIN_ACTIVE_MEMBERS:
        reasons.append(
            "Minimum 3 ACTIVE (Accepted) members required for competitive ranking"
        )
    if recent_activities < MIN_RECENT_ACTIVITIES:
        reasons.append(
            f"Insufficient recent activity ({recent_activities}/{MIN_RECENT_ACTIVITIES} events in 30 days)"
        )
    return {
        "is_valid": not reasons,
        "reasons": reasons,
        "active_member_count": active_members,
        "pod_activity_count": recent_activities,
    }


def _health_tag(score: int) -> str:
    if score > 85:
        return "Excellent"
    if score > 65:
        return "Good"
    if score > 40:
        return "Neutral"
    return "Critical"


def evaluate_health(
    recent_activities: int,
    active_members: int,
    total_members: int,
    total_tasks: int,
    completed_tasks: int,
) -> dict:
    """Score a pod 0-100.

    Weights: velocity 40 (target 20 activities a month), stability 30
    (accepted members over all members), efficiency 30 (task completion).
    """
    completion_rate = completed_tasks / total_tasks if total_tasks else 0.0

    velocity = min(40.0, recent_activities / VELOCITY_TARGET * 40)
    stability = min(30.0, active_members / max(1, total_members) * 30)
    efficiency = min(30.0, completion_rate * 30)
    score = round_half_up(velocity + stability + efficiency)

    metrics = {
        "velocity": round_half_up(velocity / 40 * 100),
        "stability": round_half_up(stability / 30 * 100),
        "efficiency": round_half_up(efficiency / 30 * 100),
    }

    trends = []
    if recent_activities > 15:
        trends.append("Highly Active")
    if completion_rate > 0.7:
        trends.append("Burndown Active")
    if active_members < 2:
        trends.append("Team Bottleneck")
    if recent_activities < 5:
        trends.append("Low Engagement")

    quick_solves = []
    if active_members < MIN_ACTIVE_MEMBERS:
        quick_solves.append({
            "id": "recruit",
            "title": "Recruit Team",
            "action": "Invite 3+ members and ensure they ACCEPT to unlock full XP.",
            "priority": "high",
        })
    elif active_members < total_members:
        quick_solves.append({
            "id": "activate",
            "title": "Activate Pending",
            "action": "Your teammates have pending invites. Remind them to accept!",
            "priority": "medium",
        })

    if recent_activities < VELOCITY_TARGET:
        needed = VELOCITY_TARGET - recent_activities
        quick_solves.append({
            "id": "velocity",
            "title": "Boost Velocity",
            "action": f"Push {min(5, needed)}+ commits or open a PR to improve pod vitals.",
            "priority": "high" if recent_activities < MIN_RECENT_ACTIVITIES else "medium",
        })

    if total_tasks and completion_rate < 0.3:
        quick_solves.append({
            "id": "cleanup",
            "title": "Task Cleanup",
            "action": "Complete or archive stale tasks to improve efficiency score.",
            "priority": "medium",
        })

    if metrics["stability"] < 100:
        quick_solves.append({
            "id": "verify",
            "title": "Verify IDs",
            "action": "Ensure all members have verified their GitHub usernames in profile.",
            "priority": "low",
        })

    if score < 50 and not quick_solves:
        quick_solves.append({
            "id": "strategic-audit",
            "title": "Strategic Audit",
            "action": "Your pod health is low despite active members. Review roadmap and task alignment.",
            "priority": "medium",
        })

    return {
        "score": score,
        "tag": _health_tag(score),
        "metrics": metrics,
        "trends": trends,
        "quick_solves": quick_solves,
    }


def format_achievements(
    rewards: list[dict],
    activities: list[dict],
    names: dict[str, str | None],
    limit: int = 15,
) -> list[dict]:
    """Merge rewards and pod activities into one feed, newest first."""
    feed = []
    for reward in rewards:
        badges = reward.get("badges") or []
        feed.append({
            "id": reward["id"],
            "user": names.get(reward["user_id"]),
            "badge": badges[0] if badges else ("milestone" if reward["points"] >= 100 else "reward"),
            "points": reward["points"],
            "reason": reward.get("reason") or "Awarded points",
            "time": reward["created_at"],
            "type": "reward",
        })

    for activity in activities:
        badge, title = ACTIVITY_BADGES.get(activity["type"], ("activity", activity["type"]))
        repo = (activity.get("meta") or {}).get("repo_name") or "Repo"
        feed.append({
            "id": activity["id"],
            "user": names.get(activity["user_id"]),
            "badge": badge,
            "points": activity["value"],
            "reason": f"{title} ({repo})",
            "time": activity["created_at"],
            "type": "activity",
        })

    feed.sort(key=lambda item: item["time"], reverse=True)
    return feed[:limit]


def record_task_completion(
    db: PostgresDatabase, task: dict, completed_by: str, now: datetime | None = None
) -> None:
    """Update the assignee's delivery metrics once a task is done.

    Late completion costs 5 reliability points, on-time completion gives one
    back (capped at 100). Finishing someone else's task counts as a rescue
    for whoever finished it.
    """
    assignee_id = task.get("assigned_to")
    if not assignee_id:
        return

    now = now or datetime.now(timezone.utc)
    assignee = get_item_by_id(db, "users", assignee_id)
    if assignee is None:
        return

    metrics = dict(assignee.get("dynamics_metrics") or {})
    score = assignee.get("reliability_score")
    score = 100 if score is None else score

    metrics["total_completed"] = metrics.get("total_completed", 0) + 1
    due_at = task.get("due_at")
    if due_at is not None and now > due_at:
        metrics["missed_deadlines"] = metrics.get("missed_deadlines", 0) + 1
        score = max(0, score - 5)
    else:
        metrics["on_time_count"] = metrics.get("on_time_count", 0) + 1
        score = min(100, score + 1)
    metrics["on_time_rate"] = round_half_up(
        metrics.get("on_time_count", 0) / metrics["total_completed"] * 100
    )

    update_item(
        db, "users", assignee_id,
        {"dynamics_metrics": metrics, "reliability_score": score},
    )

    if completed_by != assignee_id:
        rescuer = get_item_by_id(db, "users", completed_by)
        if rescuer is not None:
            rescuer_metrics = dict(rescuer.get("dynamics_metrics") or {})
            rescuer_metrics["rescue_count"] = rescuer_metrics.get("rescue_count", 0) + 1
            update_item(db, "users", completed_by, {"dynamics_metrics": rescuer_metrics})
