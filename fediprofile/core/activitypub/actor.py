from fastapi import APIRouter, Depends, HTTPException, Request
from fastapi.responses import ORJSONResponse
from typing import Any, Dict, List, Tuple

from fediprofile.core.activitypub.signatures import ACTIVITY_JSON
from fediprofile.core.activitypub.utils import AS_CONTEXT, build_actor, generate_actor_id
from fediprofile.core.database import TenantResolver, TenantStore
from fediprofile.core.dependencies import get_resolver, request_origin
from fediprofile.core.follow_index import FollowIndex

actor_router = APIRouter()


def activity_response(data: Dict[str, Any], max_age: int = 60) -> ORJSONResponse:
    return ORJSONResponse(
        data,
        media_type=ACTIVITY_JSON,
        headers={"Cache-Control": f"public, max-age={max_age}"},
    )


async def tenant_or_404(slug: str, request: Request, resolver: TenantResolver) -> Tuple[TenantStore, str, str]:
    """(store, scheme, host) for a registered profile"""
    scheme, host = request_origin(request)
    resolution = await resolver.resolve(host, slug, auto_create=False)
    if not resolution.has_user_scope:
        raise HTTPException(status_code=404, detail="Actor not found")
    return resolution.store, scheme, host


def collection(collection_id: str, items: List[str], ordered: bool = False) -> Dict[str, Any]:
    return {
        "@context": AS_CONTEXT,
        "id": collection_id,
        "type": "OrderedCollection" if ordered else "Collection",
        "totalItems": len(items),
        "orderedItems" if ordered else "items": items,
    }


@actor_router.get("/{slug}")
async def get_actor(slug: str, request: Request, resolver: TenantResolver = Depends(get_resolver)):
    """Get Actor information"""
    store, scheme, host = await tenant_or_404(slug, request, resolver)
    return activity_response(await build_actor(store, host, store.slug, scheme), max_age=300)


@actor_router.get("/{slug}/followers")
async def get_followers(slug: str, request: Request, resolver: TenantResolver = Depends(get_resolver)):
    """Get followers list"""
    store, scheme, host = await tenant_or_404(slug, request, resolver)
    followers = [follower.follower_uri for follower in await store.get_followers()]
    actor_id = generate_actor_id(scheme, host, store.slug)
    return activity_response(collection(f"{actor_id}/followers", followers))


@actor_router.get("/{slug}/following")
async def get_following(slug: str, request: Request, resolver: TenantResolver = Depends(get_resolver)):
    """Get following list（來自 domain 的 following index）"""
    store, scheme, host = await tenant_or_404(slug, request, resolver)
    following = await FollowIndex(store.domain_store).following_of(store.slug)
    actor_id = generate_actor_id(scheme, host, store.slug)
    return activity_response(collection(f"{actor_id}/following", following))


@actor_router.get("/{slug}/outbox")
async def get_outbox(slug: str, request: Request, resolver: TenantResolver = Depends(get_resolver)):
    # 不發佈原創貼文，outbox 永遠是空的
    store, scheme, host = await tenant_or_404(slug, request, resolver)
    actor_id = generate_actor_id(scheme, host, store.slug)
    return activity_response(collection(f"{actor_id}/outbox", [], ordered=True))


@actor_router.get("/{slug}/links")
async def get_links(slug: str, request: Request, resolver: TenantResolver = Depends(get_resolver)):
    store, _, _ = await tenant_or_404(slug, request, resolver)
    return [
        {
            "id": link.id,
            "name": link.name,
            "url": link.url,
            "icon": link.icon,
            "description": link.description,
            "category": link.category,
            "type": link.type,
            "autoBoost": link.auto_boost,
            "isActivityPub": link.is_activitypub,
            "following": link.following,
        }
        for link in await store.get_links(include_hidden=False)
    ]


@actor_router.get("/{slug}/badges")
async def get_badges(slug: str, request: Request, resolver: TenantResolver = Depends(get_resolver)):
    store, _, _ = await tenant_or_404(slug, request, resolver)
    return [
        {
            "noteId": badge.note_id,
            "issuerId": badge.issuer_id,
            "title": badge.title,
            "image": badge.image,
            "description": badge.description,
            "issuedOn": badge.issued_on,
            "receivedUtc": badge.received_utc.isoformat() if badge.received_utc else None,
        }
        for badge in await store.get_received_badges()
    ]


@actor_router.get("/{slug}/badge-issuers")
async def get_badge_issuers(slug: str, request: Request, resolver: TenantResolver = Depends(get_resolver)):
    store, _, _ = await tenant_or_404(slug, request, resolver)
    return [
        {
            "id": issuer.id,
            "name": issuer.name,
            "actorUrl": issuer.actor_url,
            "avatar": issuer.avatar,
            "bio": issuer.bio,
            "following": issuer.following,
        }
        for issuer in await store.get_badge_issuers()
    ]
