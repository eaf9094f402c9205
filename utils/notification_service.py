"""Notification persistence, read-state tracking, and realtime fan-out."""
from dataclasses import asdict
from datetime import datetime
from typing import Iterable, List, Optional, Tuple

from flask import current_app
from sqlalchemy import func, or_

from extensions import db
from models import NOTIFICATION_CATEGORIES, Notification, Role, User
from utils.connection_registry import get_registry
from utils.errors import NotFoundError, ValidationError
from utils.notification_payloads import NotificationPayload, dump_payload, load_payload

EVENT_CREATED = "notification-created"
EVENT_UPDATED = "notifications-updated"
EVENT_DELETED = "notifications-deleted"


def notification_to_dict(notification: Notification) -> dict:
    payload = load_payload(notification.category, notification.payload)
    return {
        "id": notification.id,
        "type": notification.category,
        "title": notification.title,
        "message": notification.message,
        "read": notification.read,
        "readAt": notification.read_at.isoformat() if notification.read_at else None,
        "createdAt": notification.created_at.isoformat() if notification.created_at else None,
        "data": asdict(payload) if payload is not None else None,
    }


def unread_count(user_id: str) -> int:
    return (
        db.session.query(func.count(Notification.id))
        .filter(Notification.user_id == user_id, Notification.read.is_(False))
        .scalar()
        or 0
    )


def _push(user_id: str, event: str, data: dict) -> int:
    """Best effort: nobody listening is the normal case, the row is still there for polling."""
    try:
        delivered = get_registry().publish(user_id, event, data)
    except Exception:
        current_app.logger.exception("Realtime push failed", extra={"user_id": user_id, "event": event})
        return 0
    return delivered


def _build(recipient_id: str, category: str, title: str, message: str, payload) -> Notification:
    if category not in NOTIFICATION_CATEGORIES:
        raise ValidationError(f"Unknown notification category: {category}")
    if not title or not message:
        raise ValidationError("Notification title and message are required")
    return Notification(
        user_id=recipient_id,
        category=category,
        title=title[:255],
        message=message[:2000],
        payload=dump_payload(category, payload),
    )


def _announce(notifications: List[Notification]) -> None:
    for notification in notifications:
        _push(
            notification.user_id,
            EVENT_CREATED,
            {"notification": notification_to_dict(notification), "unreadCount": unread_count(notification.user_id)},
        )


def notify(
    recipient_id: str,
    category: str,
    title: str,
    message: str,
    payload: Optional[NotificationPayload] = None,
) -> Notification:
    """Persist one notification, then attempt one push to the recipient's live connections."""
    notification = _build(recipient_id, category, title, message, payload)
    db.session.add(notification)
    db.session.commit()
    current_app.logger.info(
        "notification_created",
        extra={"notification_id": notification.id, "user_id": recipient_id, "category": category},
    )
    _announce([notification])
    return notification


def notify_role(
    role_name: str,
    category: str,
    title: str,
    message: str,
    payload: Optional[NotificationPayload] = None,
) -> List[Notification]:
    """One notification per active user holding ``role_name``."""
    recipients = (
        User.query.join(Role)
        .filter(func.lower(Role.name) == role_name.lower(), User.is_active.is_(True))
        .all()
    )
    notifications = [_build(user.id, category, title, message, payload) for user in recipients]
    if not notifications:
        return []
    db.session.add_all(notifications)
    db.session.commit()
    current_app.logger.info(
        "role_notification_created", extra={"role": role_name, "category": category, "count": len(notifications)}
    )
    _announce(notifications)
    return notifications


def list_notifications(
    user_id: str,
    page: int = 1,
    limit: int = 20,
    search: Optional[str] = None,
    category: Optional[str] = None,
    unread_only: bool = False,
) -> Tuple[List[Notification], int]:
    page = max(int(page or 1), 1)
    limit = min(max(int(limit or 20), 1), 100)
    query = Notification.query.filter(Notification.user_id == user_id)
    if category:
        if category not in NOTIFICATION_CATEGORIES:
            raise ValidationError(f"Unknown notification category: {category}")
        query = query.filter(Notification.category == category)
    if unread_only:
        query = query.filter(Notification.read.is_(False))
    if search:
        pattern = f"%{search.strip()}%"
        query = query.filter(or_(Notification.title.ilike(pattern), Notification.message.ilike(pattern)))
    total = query.count()
    items = (
        query.order_by(Notification.created_at.desc(), Notification.id)
        .offset((page - 1) * limit)
        .limit(limit)
        .all()
    )
    return items, total


def mark_read(user_id: str, notification_id: str) -> Notification:
    """Idempotent: an already-read notification is returned unchanged."""
    notification = Notification.query.filter_by(id=notification_id, user_id=user_id).first()
    if not notification:
        raise NotFoundError("Notification not found")
    if notification.read:
        return notification
    notification.read = True
    notification.read_at = datetime.utcnow()
    db.session.commit()
    _push(user_id, EVENT_UPDATED, {"ids": [notification.id], "unreadCount": unread_count(user_id)})
    return notification


def mark_many_read(user_id: str, notification_ids: Optional[Iterable[str]] = None) -> int:
    """Mark the caller's notifications read (all of them when ``notification_ids`` is None)."""
    ids = None if notification_ids is None else [str(i) for i in notification_ids]
    query = Notification.query.filter(Notification.user_id == user_id, Notification.read.is_(False))
    if ids is not None:
        if not ids:
            return 0
        query = query.filter(Notification.id.in_(ids))
    updated = query.update({"read": True, "read_at": datetime.utcnow()}, synchronize_session=False)
    db.session.commit()
    if updated:
        _push(user_id, EVENT_UPDATED, {"ids": ids, "unreadCount": unread_count(user_id)})
    return updated


def delete_notification(user_id: str, notification_id: str) -> None:
    notification = Notification.query.filter_by(id=notification_id, user_id=user_id).first()
    if not notification:
        raise NotFoundError("Notification not found")
    db.session.delete(notification)
    db.session.commit()
    _push(user_id, EVENT_DELETED, {"ids": [notification_id], "unreadCount": unread_count(user_id)})


def delete_many(user_id: str, notification_ids: Iterable[str]) -> int:
    ids = [str(i) for i in notification_ids]
    if not ids:
        return 0
    deleted = (
        Notification.query.filter(Notification.user_id == user_id, Notification.id.in_(ids))
        .delete(synchronize_session=False)
    )
    db.session.commit()
    if deleted:
        _push(user_id, EVENT_DELETED, {"ids": ids, "unreadCount": unread_count(user_id)})
    return deleted
