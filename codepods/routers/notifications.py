from fastapi import APIRouter, HTTPException

from codepods.db import count_items, get_item_by_id, get_items_by_filter, update_item, update_items_by_filter
from codepods.dependencies import CurrentUserDep, DbDep

router = APIRouter(prefix="/notifications", tags=["notifications"])

COLLECTION = "notifications"


@router.get("")
def list_notifications(current_user: CurrentUserDep, db: DbDep):
    """Latest 50 notifications and the unread count."""
    notifications = get_items_by_filter(
        db, COLLECTION, {"user_id": current_user["id"]}, order_by="-created_at", limit=50
    )
    unread = count_items(db, COLLECTION, {"user_id": current_user["id"], "read": False})
    return {"notifications": notifications, "unread_count": unread}


@router.patch("/read-all")
def mark_all_read(current_user: CurrentUserDep, db: DbDep):
    updated = update_items_by_filter(
        db, COLLECTION, {"user_id": current_user["id"], "read": False}, {"read": True}
    )
    return {"message": "All notifications marked as read", "updated": updated}


@router.patch("/{notification_id}/read")
def mark_read(notification_id: str, current_user: CurrentUserDep, db: DbDep):
    notification = get_item_by_id(db, COLLECTION, notification_id)
    if notification is None or notification["user_id"] != current_user["id"]:
        raise HTTPException(status_code=404, detail="Notification not found")

    notification = update_item(db, COLLECTION, notification_id, {"read": True})
    return {"notification": notification}
