import logging

from codepods.db import PostgresDatabase, add_item

logger = logging.getLogger(__name__)


def notify(
    db: PostgresDatabase,
    user_id: str,
    title: str,
    message: str,
    kind: str = "info",
    link: str | None = None,
) -> dict:
    """Queue an in-app notification for a user."""
    notification = add_item(
        db,
        "notifications",
        {
            "user_id": user_id,
            "type": kind,
            "title": title,
            "message": message,
            "link": link,
            "read": False,
        },
    )
    logger.info(f"Notified user {user_id}: {title}")
    return notification
