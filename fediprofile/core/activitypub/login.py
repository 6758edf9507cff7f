from fastapi import APIRouter, Depends, HTTPException, Request
from fastapi.responses import RedirectResponse
import logging
import secrets

from fediprofile.core.dependencies import get_app_registrations, request_origin
from fediprofile.core.exceptions import AppRegistrationError
from fediprofile.core.oauth import AppRegistrationCache

logger = logging.getLogger(__name__)

login_router = APIRouter()

# callback 用來換 token 的 PKCE verifier 與 state
PKCE_VERIFIER_COOKIE = "fediprofile_pkce_verifier"
OAUTH_STATE_COOKIE = "fediprofile_oauth_state"
LOGIN_COOKIE_MAX_AGE = 600


@login_router.get("/oauth/{server}")
async def start_oauth_login(
    server: str,
    request: Request,
    registrations: AppRegistrationCache = Depends(get_app_registrations),
):
    """Redirect to the remote instance's authorization page"""
    _, host = request_origin(request)
    # Mastodon 只接受註冊時給的 redirect_uri
    redirect_uri = registrations.redirect_uri_for(host)
    if redirect_uri is None:
        logger.warning("OAuth login requested on unconfigured host %s", host)
        raise HTTPException(status_code=400, detail="Mastodon sign-in is not configured for this host")

    try:
        registration = await registrations.get_or_register(server)
    except AppRegistrationError as e:
        logger.warning("OAuth registration for %s failed: %s", server, e)
        raise HTTPException(status_code=502, detail="Could not register with the remote instance")

    verifier, challenge = registrations.service.generate_pkce_codes()
    state = secrets.token_urlsafe(16)
    url = registrations.service.authorization_url(
        server,
        registration.client_id,
        redirect_uri,
        state=state,
        code_challenge=challenge,
    )
    response = RedirectResponse(url, status_code=302)
    for name, value in ((PKCE_VERIFIER_COOKIE, verifier), (OAUTH_STATE_COOKIE, state)):
        response.set_cookie(
            name, value, max_age=LOGIN_COOKIE_MAX_AGE, httponly=True, secure=True, samesite="lax"
        )
    return response
