"""
Auto-boost relay and badge ingestion for inbound Create activities
"""

import logging
import re
from datetime import datetime, timezone
from typing import Any, List, Optional

from fediprofile.core.activitypub.follow import FollowCoordinator
from fediprofile.core.activitypub.utils import AS_CONTEXT, generate_activity_id
from fediprofile.core.database import TenantStore
from fediprofile.core.exceptions import DeliveryError
from fediprofile.models.activitypub import PUBLIC_COLLECTION, Activity, StructuredNote, as_list
from fediprofile.models.tables import Link

logger = logging.getLogger(__name__)

BADGE_ASSERTION_KEY = "openbadges:assertion"
# 網址後面不能再接路徑字元，避免 /alice 吃到 /alicent
URL_END = r"/?(?![\w\-~/%]|\.\w)"


def _strip(url: str) -> str:
    return url.strip().rstrip("/")


def _url_of(value: Any) -> Optional[str]:
    # image / icon 可能是字串、Image 物件或陣列
    if isinstance(value, list):
        value = value[0] if value else None
    if isinstance(value, dict):
        value = value.get("url") or value.get("href")
    return value if isinstance(value, str) else None


def _id_of(value: Any) -> Optional[str]:
    if isinstance(value, dict):
        value = value.get("id")
    return value if isinstance(value, str) else None


def mentions_any(note: StructuredNote, targets: List[str]) -> bool:
    """True if to / cc / tag[].href / content reference one of ``targets``"""
    wanted = {_strip(t) for t in targets if t}
    if not wanted:
        return False
    for field in ("to", "cc"):
        for recipient in as_list(note.get(field)):
            if isinstance(recipient, str) and _strip(recipient) in wanted:
                return True
    for tag in as_list(note.get("tag")):
        href = tag.get("href") if isinstance(tag, dict) else None
        if isinstance(href, str) and _strip(href) in wanted:
            return True
    content = note.get("content")
    if isinstance(content, str):
        return any(re.search(re.escape(target) + URL_END, content) for target in wanted)
    return False


def find_auto_boost_link(links: List[Link], actor_url: str) -> Optional[Link]:
    actor = _strip(actor_url)
    for link in links:
        if not link.auto_boost:
            continue
        if _strip(link.url) == actor or (link.actor_ap_uri and _strip(link.actor_ap_uri) == actor):
            return link
    return None


class AnnounceCoordinator:
    def __init__(self, follow: FollowCoordinator):
        self.follow = follow

    async def handle_create(self, activity: Activity, store: TenantStore, local_actor_uri: str) -> None:
        """Badge ingestion, then auto-boost relay. The two run independently."""
        if not activity.actor:
            logger.warning("Create %s has no actor, ignoring", activity.id)
            return

        try:
            await self.process_badges(activity, store, local_actor_uri)
        except Exception:
            logger.exception("Badge ingestion failed for %s", activity.id)

        link = find_auto_boost_link(await store.get_auto_boost_links(), activity.actor)
        if link is None:
            return
        if not link.following:
            ok, error = await self.follow.follow_actor(store, local_actor_uri, activity.actor)
            if not ok:
                logger.warning("Auto-follow of %s failed: %s", activity.actor, error)
        await self.send_announce(activity, store, local_actor_uri)

    async def process_badges(self, activity: Activity, store: TenantStore, local_actor_uri: str) -> bool:
        """Store an embedded open-badge assertion addressed to this profile.

        Returns True when a badge was stored (and relayed).
        """
        note = activity.payload
        if not isinstance(note, StructuredNote) or BADGE_ASSERTION_KEY not in note.data:
            return False
        links = await store.get_links()
        if not mentions_any(note, [local_actor_uri] + [link.url for link in links]):
            logger.debug("Badge in %s is not addressed to %s", activity.id, local_actor_uri)
            return False

        note_id = activity.id or note.id
        if not note_id:
            logger.warning("Badge from %s has no note id, ignoring", activity.actor)
            return False

        assertion = note.get(BADGE_ASSERTION_KEY)
        issued_on = assertion.get("issuedOn") if isinstance(assertion, dict) else None

        issuer_id = await store.upsert_badge_issuer(
            activity.actor,
            name=_id_of(note.get("attributedTo")) or activity.actor,
            avatar=_url_of(note.get("icon")),
        )
        await store.upsert_received_badge(
            note_id,
            issuer_id,
            title=note.get("name") or "Unknown Badge",
            image=_url_of(note.get("image")),
            description=note.get("content"),
            issued_on=issued_on,
        )
        logger.info("Stored badge %s from %s", note_id, activity.actor)

        await self.send_announce(activity, store, local_actor_uri)
        return True

    async def send_announce(self, create: Activity, store: TenantStore, local_actor_uri: str) -> int:
        """Relay ``create`` to every follower inbox; returns successful deliveries"""
        if not create.id:
            logger.warning("Create from %s has no id, nothing to announce", create.actor)
            return 0
        signed = await self.follow.signed_client(store, local_actor_uri)
        if signed is None:
            logger.warning("No private key for %s, announce skipped", local_actor_uri)
            return 0

        announce = {
            "@context": AS_CONTEXT,
            "id": generate_activity_id(local_actor_uri, "announces"),
            "type": "Announce",
            "actor": local_actor_uri,
            "published": datetime.now(timezone.utc).strftime("%Y-%m-%dT%H:%M:%SZ"),
            "to": [PUBLIC_COLLECTION],
            "cc": [f"{local_actor_uri}/followers"],
            "object": create.id,
        }

        inboxes = []
        for follower in await store.get_followers():
            if not follower.inbox:
                logger.debug("Follower %s has no inbox, skipped", follower.follower_uri)
            elif follower.inbox not in inboxes:
                inboxes.append(follower.inbox)

        delivered = 0
        for inbox in inboxes:
            try:
                await signed.post(inbox, announce)
                delivered += 1
            except DeliveryError as e:
                logger.warning("Announce to %s failed: %s", inbox, e)
            except Exception:
                logger.exception("Announce to %s failed", inbox)
        logger.info("Announced %s to %d of %d inboxes", create.id, delivered, len(inboxes))
        return delivered
