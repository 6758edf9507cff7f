"""
Follow / Accept / Undo exchange for one local profile
"""

import logging
from typing import Any, Dict, Optional, Tuple
from urllib.parse import urlparse

import httpx

from fediprofile.core.activitypub.signatures import SignedClient
from fediprofile.core.activitypub.utils import AS_CONTEXT, generate_activity_id, generate_key_id
from fediprofile.core.database import TenantStore
from fediprofile.core.exceptions import DeliveryError
from fediprofile.core.follow_index import FollowIndex
from fediprofile.models.activitypub import Activity, NestedFollow

logger = logging.getLogger(__name__)

MISSING_TARGET = "Missing actor URL or inbox URL."
MISSING_KEY = "Missing private key. Please initialize your profile keys first."


class FollowCoordinator:
    def __init__(self, client: Optional[httpx.AsyncClient] = None):
        self.client = client

    async def signed_client(self, store: TenantStore, local_actor_uri: str) -> Optional[SignedClient]:
        """SignedClient for the profile, or None when it has no keypair"""
        keys = await store.get_actor_keys()
        if keys is None or not keys.private_key_pem:
            return None
        return SignedClient(keys.private_key_pem, generate_key_id(local_actor_uri), self.client)

    async def handle_follow(self, activity: Activity, store: TenantStore, local_actor_uri: str) -> bool:
        """Record the follower and answer with a signed Accept.

        The follower row is written even when the remote actor cannot be
        fetched; the Accept is only sent when both a local key and a remote
        inbox are known. Returns whether an Accept was delivered.
        """
        if not activity.actor:
            logger.warning("Follow %s has no actor, ignoring", activity.id)
            return False

        signed = await self.signed_client(store, local_actor_uri)
        remote = await signed.fetch_actor(activity.actor) if signed else None

        await store.upsert_follower(
            activity.actor,
            urlparse(activity.actor).hostname,
            avatar_uri=remote.avatar_url if remote else None,
            display_name=remote.display_name if remote else None,
            inbox=remote.inbox if remote else None,
        )

        if signed is None:
            logger.warning("No private key for %s, Accept not sent to %s", local_actor_uri, activity.actor)
            return False
        if remote is None or not remote.inbox:
            logger.warning("No inbox known for %s, Accept not sent", activity.actor)
            return False

        accept = {
            "@context": AS_CONTEXT,
            "id": generate_activity_id(local_actor_uri, "accepts/follows"),
            "type": "Accept",
            "actor": local_actor_uri,
            "object": {
                "id": activity.id,
                "type": "Follow",
                "actor": activity.actor,
                "object": local_actor_uri,
            },
            "to": [activity.actor],
        }
        try:
            await signed.post(remote.inbox, accept)
        except DeliveryError as e:
            logger.warning("Accept to %s failed: %s", remote.inbox, e)
            return False
        logger.info("Accepted follow from %s for %s", activity.actor, local_actor_uri)
        return True

    async def handle_unfollow(self, activity: Activity, store: TenantStore) -> bool:
        payload = activity.payload
        if not isinstance(payload, NestedFollow) or not payload.actor:
            logger.warning("Undo %s does not wrap a Follow with an actor, ignoring", activity.id)
            return False
        if activity.actor and activity.actor != payload.actor:
            logger.warning("Undo by %s for a Follow made by %s, ignoring", activity.actor, payload.actor)
            return False
        removed = await store.remove_follower(payload.actor)
        if removed:
            logger.info("Removed follower %s", payload.actor)
        return removed

    async def send_follow_request(
        self,
        remote_actor_url: Optional[str],
        remote_inbox_url: Optional[str],
        store: TenantStore,
        local_actor_uri: str,
    ) -> Tuple[bool, Optional[str]]:
        if not remote_actor_url or not remote_inbox_url:
            return False, MISSING_TARGET
        signed = await self.signed_client(store, local_actor_uri)
        if signed is None:
            return False, MISSING_KEY

        follow = {
            "@context": AS_CONTEXT,
            "id": generate_activity_id(local_actor_uri, "follow"),
            "type": "Follow",
            "actor": local_actor_uri,
            "object": remote_actor_url,
        }
        return await self._deliver(signed, remote_inbox_url, follow)

    async def send_unfollow(
        self,
        remote_actor_url: Optional[str],
        remote_inbox_url: Optional[str],
        store: TenantStore,
        local_actor_uri: str,
    ) -> Tuple[bool, Optional[str]]:
        if not remote_actor_url or not remote_inbox_url:
            return False, MISSING_TARGET
        signed = await self.signed_client(store, local_actor_uri)
        if signed is None:
            return False, MISSING_KEY

        undo = {
            "@context": AS_CONTEXT,
            "id": generate_activity_id(local_actor_uri, "undo/follow"),
            "type": "Undo",
            "actor": local_actor_uri,
            "object": {
                "id": generate_activity_id(local_actor_uri, "follow"),
                "type": "Follow",
                "actor": local_actor_uri,
                "object": remote_actor_url,
            },
        }
        return await self._deliver(signed, remote_inbox_url, undo)

    async def _deliver(self, signed: SignedClient, inbox: str, document: Dict[str, Any]) -> Tuple[bool, Optional[str]]:
        try:
            await signed.post(inbox, document)
        except DeliveryError as e:
            logger.warning("%s to %s failed: %s", document["type"], inbox, e)
            return False, str(e)
        return True, None

    async def follow_actor(
        self, store: TenantStore, local_actor_uri: str, actor_url: str
    ) -> Tuple[bool, Optional[str]]:
        """Resolve the remote inbox, send Follow, then record it locally"""
        signed = await self.signed_client(store, local_actor_uri)
        if signed is None:
            return False, MISSING_KEY
        remote = await signed.fetch_actor(actor_url)
        if remote is None:
            return False, f"Could not fetch remote actor {actor_url}."

        ok, error = await self.send_follow_request(actor_url, remote.inbox, store, local_actor_uri)
        if ok:
            await FollowIndex(store.domain_store).add(store.slug, actor_url)
            await store.set_link_following(actor_url, True)
            logger.info("%s now follows %s", local_actor_uri, actor_url)
        return ok, error

    async def unfollow_actor(
        self, store: TenantStore, local_actor_uri: str, actor_url: str
    ) -> Tuple[bool, Optional[str]]:
        """Forget the follow locally and send Undo(Follow)"""
        await FollowIndex(store.domain_store).remove(store.slug, actor_url)
        await store.set_link_following(actor_url, False)

        signed = await self.signed_client(store, local_actor_uri)
        if signed is None:
            return False, MISSING_KEY
        remote = await signed.fetch_actor(actor_url)
        if remote is None:
            return False, f"Could not fetch remote actor {actor_url}."
        return await self.send_unfollow(actor_url, remote.inbox, store, local_actor_uri)
