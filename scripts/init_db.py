"""Create the CodePods tables and seed the default badges."""

import logging
import sys
from pathlib import Path

# Add parent directory to path to import codepods modules
sys.path.insert(0, str(Path(__file__).parent.parent))

from codepods.db import add_item, get_db, get_item_by_filter

SCHEMA_FILE = Path(__file__).parent.parent / "sql" / "init_db.sql"

DEFAULT_BADGES = [
    {"slug": "repo-creator", "name": "Repo Creator", "description": "Created a new repository"},
    {"slug": "committer", "name": "Committer", "description": "Pushed 10 or more commits in one sync"},
    {"slug": "super-committer", "name": "Super Committer", "description": "Pushed 50 or more commits in one sync"},
    {"slug": "pr-open", "name": "PR Creator", "description": "Opened a pull request"},
    {"slug": "milestone", "name": "Milestone", "description": "Earned 100 points in a single reward"},
]


def apply_schema(db) -> None:
    with db.cursor() as cur:
        cur.execute(SCHEMA_FILE.read_text())


def seed_badges(db) -> int:
    """Insert missing default badges. Returns how many were added."""
    added = 0
    for badge in DEFAULT_BADGES:
        if get_item_by_filter(db, "badges", {"slug": badge["slug"]}):
            continue
        add_item(db, "badges", badge)
        added += 1
    return added


def init_db() -> None:
    with get_db() as db:
        apply_schema(db)
        print(f"✓ Applied schema from {SCHEMA_FILE.name}")

        added = seed_badges(db)
        print(f"✓ Seeded {added} badge(s)")


if __name__ == "__main__":
    logging.basicConfig(level=logging.INFO)
    try:
        init_db()
    except Exception as e:
        print(f"✗ Error: {e}")
        sys.exit(1)
