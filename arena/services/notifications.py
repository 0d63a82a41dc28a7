"""Entrant notification dispatch.

Publishes notification payloads on a per-user Redis Pub/Sub channel.
Delivery (push, email, in-app) is handled by subscribers. Dispatch is
fire-and-forget: failures are logged and never propagate to the caller,
which has already committed its transaction.
"""

import json
from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Any

from redis.asyncio import Redis

from arena.config import get_settings
from arena.logging_config import get_logger
from arena.utils.clock import utcnow
from arena.utils.redis_client import get_redis

logger = get_logger(__name__)


class NotificationType(str, Enum):
    REGISTRATION = "registration"
    WAITLIST = "waitlist"
    REMINDER = "reminder"
    TOURNAMENT_UPDATE = "tournament_update"


class NotificationCategory(str, Enum):
    INFO = "info"
    SUCCESS = "success"
    WARNING = "warning"


@dataclass
class Notification:
    user_id: str
    title: str
    message: str
    type: NotificationType
    category: NotificationCategory
    tournament_id: str | None = None
    tournament_name: str | None = None
    action_url: str | None = None
    created_at: datetime = field(default_factory=utcnow)

    def to_dict(self) -> dict[str, Any]:
        return {
            "user_id": self.user_id,
            "title": self.title,
            "message": self.message,
            "type": self.type.value,
            "category": self.category.value,
            "tournament_id": self.tournament_id,
            "tournament_name": self.tournament_name,
            "action_url": self.action_url,
            "created_at": self.created_at.isoformat(),
        }


def tournament_url(tournament_id: str) -> str:
    return f"/tournament/{tournament_id}"


class NotificationDispatcher:
    """Best-effort notification publisher."""

    def __init__(self, redis: Redis | None = None, channel_prefix: str | None = None):
        self._redis = redis
        self.channel_prefix = channel_prefix or get_settings().notification_channel_prefix

    @property
    def redis(self) -> Redis:
        if self._redis is None:
            self._redis = get_redis()
        return self._redis

    def channel_for(self, user_id: str) -> str:
        return f"{self.channel_prefix}:{user_id}"

    async def send(self, notification: Notification) -> bool:
        """Publish one notification.

        Returns:
            True if published, False if dispatch failed (already logged)
        """
        try:
            await self.redis.publish(
                self.channel_for(notification.user_id),
                json.dumps(notification.to_dict()),
            )
        except Exception as exc:
            logger.warning(
                "notification_dispatch_failed",
                user_id=notification.user_id,
                title=notification.title,
                error=str(exc),
                exc_info=True,
            )
            return False

        logger.debug(
            "notification_sent",
            user_id=notification.user_id,
            type=notification.type.value,
        )
        return True

    # =========================================================================
    # Registration
    # =========================================================================

    async def registration_confirmed(
        self, user_id: str, tournament_id: str, tournament_name: str, slot_number: int
    ) -> bool:
        return await self.send(
            Notification(
                user_id=user_id,
                title="Registration confirmed",
                message=f"You're in! Slot #{slot_number} in {tournament_name} is yours.",
                type=NotificationType.REGISTRATION,
                category=NotificationCategory.SUCCESS,
                tournament_id=tournament_id,
                tournament_name=tournament_name,
                action_url=tournament_url(tournament_id),
            )
        )

    async def waitlist_joined(
        self,
        user_id: str,
        tournament_id: str,
        tournament_name: str,
        position: int,
        amount_held: int,
    ) -> bool:
        held = f" {amount_held:,} is on hold until then." if amount_held else ""
        return await self.send(
            Notification(
                user_id=user_id,
                title="Added to waitlist",
                message=(
                    f"You're #{position} on the waitlist for {tournament_name}. "
                    f"Check in when the window opens to be considered for promotion.{held}"
                ),
                type=NotificationType.WAITLIST,
                category=NotificationCategory.INFO,
                tournament_id=tournament_id,
                tournament_name=tournament_name,
                action_url=tournament_url(tournament_id),
            )
        )

    # =========================================================================
    # Check-in
    # =========================================================================

    async def checkin_open(
        self,
        user_id: str,
        tournament_id: str,
        tournament_name: str,
        window_minutes: int,
        is_waitlisted: bool,
    ) -> bool:
        if is_waitlisted:
            title = "Waitlist check-in open"
            message = (
                f"Check-in for {tournament_name} is open! Check in now - if "
                "registered teams don't check in, you may get promoted!"
            )
        else:
            title = "Check-in now open"
            message = (
                f"Check-in for {tournament_name} is now open! "
                f"You have {window_minutes} minutes to check in."
            )
        return await self.send(
            Notification(
                user_id=user_id,
                title=title,
                message=message,
                type=NotificationType.REMINDER,
                category=NotificationCategory.INFO,
                tournament_id=tournament_id,
                tournament_name=tournament_name,
                action_url=tournament_url(tournament_id),
            )
        )

    async def promoted(
        self, user_id: str, tournament_id: str, tournament_name: str, slot_number: int
    ) -> bool:
        return await self.send(
            Notification(
                user_id=user_id,
                title="You've been promoted!",
                message=(
                    f"You've been moved from the waitlist to slot #{slot_number} "
                    f"in {tournament_name}!"
                ),
                type=NotificationType.WAITLIST,
                category=NotificationCategory.SUCCESS,
                tournament_id=tournament_id,
                tournament_name=tournament_name,
                action_url=tournament_url(tournament_id),
            )
        )

    async def slot_forfeited(
        self, user_id: str, tournament_id: str, tournament_name: str
    ) -> bool:
        return await self.send(
            Notification(
                user_id=user_id,
                title="Check-in missed",
                message=(
                    f"You missed the check-in for {tournament_name} "
                    "and your slot has been forfeited."
                ),
                type=NotificationType.TOURNAMENT_UPDATE,
                category=NotificationCategory.WARNING,
                tournament_id=tournament_id,
                tournament_name=tournament_name,
                action_url=tournament_url(tournament_id),
            )
        )
