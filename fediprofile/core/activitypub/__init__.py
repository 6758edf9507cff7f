from fastapi import APIRouter
from fediprofile.core.activitypub.actor import actor_router
from fediprofile.core.activitypub.inbox import inbox_router
from fediprofile.core.activitypub.login import login_router
from fediprofile.core.activitypub.webfinger import webfinger_router
from fediprofile.core.activitypub.nodeinfo import nodeinfo_router

# routers
users_router = APIRouter()
well_known_router = APIRouter()

# /sharedInbox 與 /{slug}/... 都置於站台根目錄
# inbox 先於 actor 註冊，避免 /{slug} 吃掉 /sharedInbox
users_router.include_router(inbox_router)
users_router.include_router(login_router, prefix="/login")
users_router.include_router(actor_router)

# 僅在 .well-known 底下提供標準發現端點
well_known_router.include_router(webfinger_router)
well_known_router.include_router(nodeinfo_router, prefix="/nodeinfo")
