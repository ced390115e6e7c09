"""Print every user with pod and task counts as JSON."""

import json
import logging
import sys
from pathlib import Path

# Add parent directory to path to import codepods modules
sys.path.insert(0, str(Path(__file__).parent.parent))

from codepods.db import count_items, get_db, get_items_by_filter


def list_users(db) -> list[dict]:
    users = get_items_by_filter(db, "users", order_by="created_at")
    return [
        {
            "id": user["id"],
            "email": user["email"],
            "name": user["name"],
            "github_username": user["github_username"],
            "github_id": user["github_id"],
            "pod_count": count_items(db, "pod_members", {"user_id": user["id"]}),
            "task_count": count_items(db, "tasks", {"assigned_to": user["id"]}),
        }
        for user in users
    ]


if __name__ == "__main__":
    logging.basicConfig(level=logging.INFO)
    try:
        with get_db() as db:
            print(json.dumps(list_users(db), indent=2))
    except Exception as e:
        print(f"✗ Error: {e}")
        sys.exit(1)
