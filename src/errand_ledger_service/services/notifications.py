"""Outbox of user notifications. Delivery happens outside this service."""

from __future__ import annotations

import uuid
from typing import TYPE_CHECKING, Any

from errand_ledger_service.logging import get_logger

if TYPE_CHECKING:
    from errand_ledger_service.services.ledger_store import LedgerStore

NOTIFICATIONS = "notifications"

NOTIFICATION_TYPES = frozenset(
    {
        "task_accepted",
        "task_started",
        "task_completed",
        "task_cancelled",
        "task_disputed",
        "deposit_completed",
        "deposit_failed",
    }
)


class NotificationOutbox:
    """Stores notification records for a delivery worker to pick up."""

    def __init__(self, store: LedgerStore) -> None:
        self._store = store
        self._logger = get_logger(__name__)

    def notify(
        self,
        user_id: str,
        notification_type: str,
        title: str,
        message: str,
        data: dict[str, Any] | None = None,
    ) -> dict[str, Any]:
        if notification_type not in NOTIFICATION_TYPES:
            msg = f"Unknown notification type: {notification_type}"
            raise ValueError(msg)
        notification_id = f"ntf-{uuid.uuid4()}"
        record = self._store.insert(
            NOTIFICATIONS,
            notification_id,
            {
                "notification_id": notification_id,
                "user_id": user_id,
                "type": notification_type,
                "title": title,
                "message": message,
                "data": data or {},
                "read": False,
            },
        )
        self._logger.debug(
            "Notification queued",
            extra={"user_id": user_id, "type": notification_type},
        )
        return record

    def list_for_user(self, user_id: str, *, limit: int = 50) -> list[dict[str, Any]]:
        return self._store.query(
            NOTIFICATIONS,
            [("user_id", "==", user_id)],
            order_by="created_at",
            descending=True,
            limit=limit,
        )
