import logging
from enum import Enum
from typing import Optional

import httpx

from fediprofile.core.activitypub.announce import AnnounceCoordinator
from fediprofile.core.activitypub.follow import FollowCoordinator
from fediprofile.core.database import TenantStore
from fediprofile.models.activitypub import Activity, NestedFollow

logger = logging.getLogger(__name__)


class ActivityKind(str, Enum):
    FOLLOW = "Follow"
    UNDO_FOLLOW = "UndoFollow"
    CREATE = "Create"
    ANNOUNCE = "Announce"
    UNKNOWN = "Unknown"


def classify(activity: Activity) -> ActivityKind:
    """Follow -> Undo(Follow) -> Create -> Announce -> Unknown"""
    activity_type = (activity.type or "").lower()
    if activity_type == "follow":
        return ActivityKind.FOLLOW
    if activity_type == "undo":
        # 只有包著 Follow 的 Undo 需要處理
        if isinstance(activity.payload, NestedFollow):
            return ActivityKind.UNDO_FOLLOW
        return ActivityKind.UNKNOWN
    if activity_type == "create":
        return ActivityKind.CREATE
    if activity_type == "announce":
        return ActivityKind.ANNOUNCE
    return ActivityKind.UNKNOWN


class ActivityDispatcher:
    """Routes one inbound activity to its handler. Holds no state of its own."""

    def __init__(self, follow: FollowCoordinator, announce: AnnounceCoordinator):
        self.follow = follow
        self.announce = announce

    @classmethod
    def create(cls, client: Optional[httpx.AsyncClient] = None) -> "ActivityDispatcher":
        follow = FollowCoordinator(client)
        return cls(follow, AnnounceCoordinator(follow))

    async def dispatch(self, activity: Activity, store: TenantStore, local_actor_uri: str) -> ActivityKind:
        kind = classify(activity)
        if kind is ActivityKind.FOLLOW:
            await self.follow.handle_follow(activity, store, local_actor_uri)
        elif kind is ActivityKind.UNDO_FOLLOW:
            await self.follow.handle_unfollow(activity, store)
        elif kind is ActivityKind.CREATE:
            await self.announce.handle_create(activity, store, local_actor_uri)
        elif kind is ActivityKind.ANNOUNCE:
            # 收到的 Announce 不再轉發
            logger.info("Ignoring Announce %s from %s", activity.id, activity.actor)
        else:
            logger.info("Ignoring %s activity %s from %s", activity.type or "untyped", activity.id, activity.actor)
        return kind
