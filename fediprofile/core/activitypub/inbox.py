from fastapi import APIRouter, Depends, HTTPException, Request
from pydantic import ValidationError
from typing import Optional
from urllib.parse import urlparse
import json
import logging

from fediprofile.core.activitypub.processor import ActivityDispatcher, ActivityKind, classify
from fediprofile.core.activitypub.signatures import HttpSignature, SignedClient
from fediprofile.core.activitypub.utils import generate_actor_id
from fediprofile.core.config import settings
from fediprofile.core.database import TenantResolver, TenantStore, normalize_domain
from fediprofile.core.dependencies import get_dispatcher, get_resolver, request_origin
from fediprofile.core.exceptions import VerificationError
from fediprofile.core.follow_index import FollowIndex
from fediprofile.models.activitypub import Activity, NestedFollow

logger = logging.getLogger(__name__)

inbox_router = APIRouter()

ACCEPTED = {"status": "accepted"}


def parse_activity(body: bytes) -> Activity:
    """Malformed input is rejected here with 400"""
    if not body or not body.strip():
        raise HTTPException(status_code=400, detail="Empty body")
    try:
        data = json.loads(body)
    except ValueError:
        raise HTTPException(status_code=400, detail="Invalid JSON")
    if not isinstance(data, dict):
        raise HTTPException(status_code=400, detail="Activity must be a JSON object")
    try:
        return Activity.model_validate(data)
    except ValidationError as e:
        raise HTTPException(status_code=400, detail=f"Invalid activity: {e.error_count()} error(s)")


async def verify_inbound(request: Request, body: bytes, activity: Activity, signed: SignedClient) -> None:
    """Check the request signature against the key owner's published key"""
    signature = request.headers.get("signature")
    if not signature:
        raise HTTPException(status_code=401, detail="Missing signature")
    try:
        details = HttpSignature.parse_signature(signature)
        owner_url = details["keyid"].split("#", 1)[0]
        remote = await signed.fetch_actor(owner_url)
        if remote is None or remote.public_key is None or not remote.public_key.public_key_pem:
            raise VerificationError(f"No public key published at {owner_url}")
        if activity.actor and remote.id != activity.actor:
            raise VerificationError(f"Key {details['keyid']} does not belong to {activity.actor}")
        path = request.url.path
        if request.url.query:
            path = f"{path}?{request.url.query}"
        HttpSignature.verify_request(
            request.method, path, request.headers, body, remote.public_key.public_key_pem
        )
    except VerificationError as e:
        logger.warning("Rejected inbox delivery from %s: %s", activity.actor, e)
        raise HTTPException(status_code=401, detail="Invalid signature")


async def deliver(
    activity: Activity,
    body: bytes,
    store: TenantStore,
    local_actor_uri: str,
    dispatcher: ActivityDispatcher,
) -> ActivityKind:
    """Log the activity in the tenant's inbox table, then dispatch it"""
    if activity.id:
        await store.record_inbox_message(
            activity.id, activity.type, activity.actor, body.decode("utf-8", "replace")
        )
    kind = await dispatcher.dispatch(activity, store, local_actor_uri)
    if activity.id:
        await store.mark_inbox_message_processed(activity.id)
    return kind


def target_slug(target: Optional[str], host: str) -> Optional[str]:
    """First path segment of ``target`` when it points at ``host``"""
    if not target:
        return None
    parts = urlparse(target)
    if not parts.hostname or parts.hostname.lower() != normalize_domain(host):
        return None
    segments = [segment for segment in parts.path.split("/") if segment]
    return segments[0] if segments else None


@inbox_router.post("/{slug}/inbox")
async def receive_activity(
    slug: str,
    request: Request,
    resolver: TenantResolver = Depends(get_resolver),
    dispatcher: ActivityDispatcher = Depends(get_dispatcher),
):
    """接收 ActivityPub 活動（個人 inbox）"""
    body = await request.body()
    activity = parse_activity(body)
    scheme, host = request_origin(request)

    try:
        resolution = await resolver.resolve(host, slug, auto_create=False)
        if not resolution.has_user_scope:
            logger.warning("Inbox delivery for unknown profile '%s' on %s ignored", slug, host)
            return ACCEPTED

        store = resolution.store
        local_actor_uri = generate_actor_id(scheme, host, resolution.slug)
        if settings.VERIFY_INBOX_SIGNATURES:
            signed = await dispatcher.follow.signed_client(store, local_actor_uri)
            await verify_inbound(request, body, activity, signed or SignedClient())
        await deliver(activity, body, store, local_actor_uri, dispatcher)
    except HTTPException:
        raise
    except Exception:
        logger.exception("Error processing %s activity %s for '%s'", activity.type, activity.id, slug)
        raise HTTPException(status_code=500, detail="Error processing activity")

    return ACCEPTED


@inbox_router.post("/sharedInbox")
async def receive_shared_activity(
    request: Request,
    resolver: TenantResolver = Depends(get_resolver),
    dispatcher: ActivityDispatcher = Depends(get_dispatcher),
):
    """接收 ActivityPub 活動（shared inbox）"""
    body = await request.body()
    activity = parse_activity(body)
    scheme, host = request_origin(request)

    try:
        if settings.VERIFY_INBOX_SIGNATURES:
            await verify_inbound(request, body, activity, SignedClient())

        kind = classify(activity)
        if kind is ActivityKind.FOLLOW or kind is ActivityKind.UNDO_FOLLOW:
            if kind is ActivityKind.FOLLOW:
                target = activity.object_id
            else:
                payload = activity.payload
                target = payload.object if isinstance(payload, NestedFollow) else None
            slug = target_slug(target, host)
            resolution = await resolver.resolve(host, slug, auto_create=False) if slug else None
            if resolution is None or not resolution.has_user_scope:
                logger.warning("Shared inbox %s for unknown target %s ignored", activity.type, target)
                return ACCEPTED
            local_actor_uri = generate_actor_id(scheme, host, resolution.slug)
            await deliver(activity, body, resolution.store, local_actor_uri, dispatcher)

        elif kind is ActivityKind.CREATE:
            await fan_out_create(activity, scheme, host, resolver, dispatcher)

        else:
            logger.info("Shared inbox ignoring %s activity %s", activity.type or "untyped", activity.id)
    except HTTPException:
        raise
    except Exception:
        logger.exception("Error processing shared %s activity %s", activity.type, activity.id)
        raise HTTPException(status_code=500, detail="Error processing activity")

    return ACCEPTED


async def fan_out_create(
    activity: Activity,
    scheme: str,
    host: str,
    resolver: TenantResolver,
    dispatcher: ActivityDispatcher,
) -> int:
    """Announce a Create for every local profile following its actor"""
    if not activity.actor:
        logger.warning("Shared Create %s has no actor, ignoring", activity.id)
        return 0
    slugs = await FollowIndex(resolver.domain_store(host)).followers_of_actor(activity.actor)
    relayed = 0
    for slug in slugs:
        try:
            resolution = await resolver.resolve(host, slug, auto_create=False)
            if not resolution.has_user_scope:
                logger.warning("Following entry for missing profile '%s' on %s", slug, host)
                continue
            local_actor_uri = generate_actor_id(scheme, host, resolution.slug)
            await dispatcher.announce.send_announce(activity, resolution.store, local_actor_uri)
            relayed += 1
        except Exception:
            logger.exception("Relaying %s for '%s' failed", activity.id, slug)
    logger.info("Shared Create %s relayed for %d of %d profiles", activity.id, relayed, len(slugs))
    return relayed
