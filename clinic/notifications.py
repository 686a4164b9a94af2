from __future__ import annotations

from sqlalchemy import func, select, update

from .auth_models import Role, User
from .db import db_session, utcnow
from .exceptions import NotFoundError
from .models import Notification, NotificationType


# =========================
# Helpers (inside an open session)
# =========================
def _notify(
    s,
    user_id: str,
    type_: NotificationType,
    title: str,
    message: str,
    related_type: str | None = None,
    related_id: str | None = None,
) -> Notification:
    n = Notification(
        user_id=user_id,
        type=type_,
        title=title,
        message=message,
        related_type=related_type,
        related_id=related_id,
    )
    s.add(n)
    return n


def _notify_role(
    s,
    role: Role,
    type_: NotificationType,
    title: str,
    message: str,
    related_type: str | None = None,
    related_id: str | None = None,
) -> int:
    """Notify every active user with the given role; returns how many."""
    user_ids = s.scalars(select(User.id).where(User.role == role, User.is_active.is_(True))).all()
    for uid in user_ids:
        _notify(s, uid, type_, title, message, related_type, related_id)
    return len(user_ids)


def notification_flat(n: Notification) -> dict:
    return {
        "id": n.id,
        "type": n.type.value,
        "title": n.title,
        "message": n.message,
        "related_type": n.related_type,
        "related_id": n.related_id,
        "is_read": n.is_read,
        "read_at": n.read_at,
        "created_at": n.created_at,
    }


# =========================
# In-app notifications
# =========================
def list_notifications(user_id: str, unread_only: bool = False, limit: int = 50) -> list[dict]:
    with db_session() as s:
        q = select(Notification).where(Notification.user_id == user_id)
        if unread_only:
            q = q.where(Notification.is_read.is_(False))
        q = q.order_by(Notification.created_at.desc(), Notification.id.desc()).limit(limit)
        return [notification_flat(n) for n in s.scalars(q)]


def unread_count(user_id: str) -> int:
    with db_session() as s:
        return s.scalar(
            select(func.count(Notification.id)).where(
                Notification.user_id == user_id, Notification.is_read.is_(False)
            )
        ) or 0


def mark_read(user_id: str, notification_id: int) -> dict:
    with db_session() as s:
        n = s.get(Notification, notification_id)
        if not n or n.user_id != user_id:
            raise NotFoundError("Notification not found.")
        if not n.is_read:
            n.is_read = True
            n.read_at = utcnow()
        return notification_flat(n)


def mark_all_read(user_id: str) -> int:
    with db_session() as s:
        result = s.execute(
            update(Notification)
            .where(Notification.user_id == user_id, Notification.is_read.is_(False))
            .values(is_read=True, read_at=utcnow())
        )
        return result.rowcount or 0


# =========================
# Outbox (simulated e-mail delivery)
# =========================
def pending_deliveries(limit: int = 50) -> list[dict]:
    """Notifications not yet delivered externally (sent_at is NULL)."""
    with db_session() as s:
        rows = s.execute(
            select(Notification, User.email)
            .join(User, User.id == Notification.user_id)
            .where(Notification.sent_at.is_(None))
            .order_by(Notification.created_at.asc(), Notification.id.asc())
            .limit(limit)
        ).all()
        return [{**notification_flat(n), "email": email} for n, email in rows]


def mark_sent(notification_id: int) -> bool:
    with db_session() as s:
        n = s.get(Notification, notification_id)
        if not n or n.sent_at is not None:
            return False
        n.sent_at = utcnow()
        return True
