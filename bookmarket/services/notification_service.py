"""
In-app notification inbox.

Notifications are independent of email delivery: a failed email never
prevents the notification row, and vice versa.
"""
from __future__ import annotations

import logging
from typing import Any, Dict, List, Optional

from sqlalchemy import desc
from sqlalchemy.orm import Session

from bookmarket.models import Notification, utcnow
from bookmarket.observability import increment_counter


class NotificationService:
    """Database-backed notification inbox for buyers and sellers."""

    def __init__(self, db_session: Session) -> None:
        self.db = db_session
        self.logger = logging.getLogger(__name__)

    def add_notification(
        self,
        user_id: str,
        notification_type: str,
        title: str,
        message: str,
        order_id: Optional[str] = None,
        action_required: bool = False,
        commit: bool = True,
    ) -> Notification:
        """
        Add a new notification for a user.

        Args:
            user_id: The user to notify
            notification_type: info, success, warning, or error
            title: Short title for the notification
            message: Full notification message
            order_id: Optional related order
            action_required: Whether the user has to act (e.g. commit to a sale)
            commit: Commit the session; pass False to batch with other writes

        Returns:
            The created Notification row
        """
        notification = Notification(
            user_id=user_id,
            order_id=order_id,
            type=notification_type,
            title=title,
            message=message,
            action_required=action_required,
        )
        self.db.add(notification)
        if commit:
            self.db.commit()
        else:
            self.db.flush()

        increment_counter("notifications_created_total", labels={"type": notification_type})
        self.logger.info("Notification created for user %s: %s", user_id, title)
        return notification

    def get_notifications(
        self,
        user_id: str,
        unread_only: bool = False,
        limit: int = 20,
    ) -> List[Dict[str, Any]]:
        query = self.db.query(Notification).filter(Notification.user_id == user_id)
        if unread_only:
            query = query.filter(Notification.read.is_(False))
        rows = query.order_by(desc(Notification.created_at), desc(Notification.id)).limit(limit).all()
        return [row.to_dict() for row in rows]

    def get_unread_count(self, user_id: str) -> int:
        return (
            self.db.query(Notification)
            .filter(Notification.user_id == user_id, Notification.read.is_(False))
            .count()
        )

    def mark_as_read(self, user_id: str, notification_id: int) -> bool:
        """True if the notification belonged to the user and was unread."""
        updated = (
            self.db.query(Notification)
            .filter(
                Notification.id == notification_id,
                Notification.user_id == user_id,
                Notification.read.is_(False),
            )
            .update({"read": True, "read_at": utcnow()}, synchronize_session=False)
        )
        self.db.commit()
        return updated == 1

    def mark_all_as_read(self, user_id: str) -> int:
        updated = (
            self.db.query(Notification)
            .filter(Notification.user_id == user_id, Notification.read.is_(False))
            .update({"read": True, "read_at": utcnow()}, synchronize_session=False)
        )
        self.db.commit()
        return updated
