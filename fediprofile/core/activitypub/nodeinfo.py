from fastapi import APIRouter, Depends, Request
from typing import Any, Dict

from fediprofile.core.database import TenantResolver
from fediprofile.core.dependencies import get_resolver, request_origin

nodeinfo_router = APIRouter()

NODEINFO_SCHEMA = "http://nodeinfo.diaspora.software/ns/schema/2.0"


@nodeinfo_router.get("")
def get_nodeinfo(request: Request) -> Dict[str, Any]:
    """取得 NodeInfo 資訊"""
    scheme, host = request_origin(request)
    return {
        "links": [
            {
                "rel": NODEINFO_SCHEMA,
                "href": f"{scheme}://{host}/.well-known/nodeinfo/2.0"
            }
        ]
    }


@nodeinfo_router.get("/2.0")
async def get_nodeinfo_2_0(request: Request, resolver: TenantResolver = Depends(get_resolver)) -> Dict[str, Any]:
    """取得 NodeInfo 2.0 資訊"""
    _, host = request_origin(request)
    users = await resolver.domain_store(host).count_users()
    return {
        "version": "2.0",
        "software": {
            "name": "fediprofile",
            "version": "1.0.0",
        },
        "protocols": [
            "activitypub"
        ],
        "services": {
            "inbound": [],
            "outbound": []
        },
        "openRegistrations": False,
        "usage": {
            "users": {
                "total": users,
            },
            "localPosts": 0,
        },
        "metadata": {
            "nodeName": host,
            "nodeDescription": "Link-in-bio profiles on the fediverse",
        }
    }
