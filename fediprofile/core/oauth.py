"""
Mastodon OAuth app registration, cached per remote host
"""

import asyncio
import base64
import hashlib
import logging
import secrets
from typing import Dict, List, NamedTuple, Optional, Tuple
from urllib.parse import urlencode, urlsplit

import httpx

from fediprofile.core.config import settings
from fediprofile.core.database import normalize_server
from fediprofile.core.exceptions import AppRegistrationError

logger = logging.getLogger(__name__)


class AppRegistration(NamedTuple):
    client_id: str
    client_secret: str


class MastodonRegistrationService:
    def __init__(
        self,
        client: Optional[httpx.AsyncClient] = None,
        client_name: Optional[str] = None,
        website: Optional[str] = None,
        scopes: Optional[List[str]] = None,
    ):
        self.client = client
        self.client_name = client_name or settings.OAUTH_CLIENT_NAME
        self.website = website or settings.OAUTH_WEBSITE
        self.scopes = scopes or settings.OAUTH_SCOPES

    async def _post(self, url: str, data: Dict[str, str]) -> httpx.Response:
        if self.client is not None:
            return await self.client.post(url, data=data)
        async with httpx.AsyncClient(
            timeout=httpx.Timeout(settings.REMOTE_CONNECT_TIMEOUT, read=settings.REMOTE_READ_TIMEOUT),
            headers={"User-Agent": settings.USER_AGENT},
        ) as temp_client:
            return await temp_client.post(url, data=data)

    async def register_application(self, instance_host: str, redirect_uris: List[str]) -> AppRegistration:
        """POST /api/v1/apps on the remote instance"""
        host = normalize_server(instance_host)
        if not host:
            raise AppRegistrationError("Instance host is required.")
        url = f"https://{host}/api/v1/apps"
        data = {
            "client_name": self.client_name,
            "redirect_uris": "\n".join(redirect_uris),
            "scopes": " ".join(self.scopes),
        }
        if self.website:
            data["website"] = self.website

        try:
            response = await self._post(url, data)
        except httpx.HTTPError as e:
            raise AppRegistrationError(f"App registration on {host} failed: {e}") from e
        if not response.is_success:
            raise AppRegistrationError(
                f"App registration on {host} returned {response.status_code}: {response.text[:200]}"
            )
        try:
            payload = response.json()
        except ValueError as e:
            raise AppRegistrationError(f"App registration on {host} returned invalid JSON") from e

        client_id = payload.get("client_id") if isinstance(payload, dict) else None
        client_secret = payload.get("client_secret") if isinstance(payload, dict) else None
        if not client_id or not client_secret:
            raise AppRegistrationError(f"App registration on {host} did not return client credentials")
        logger.info("Registered OAuth app on %s", host)
        return AppRegistration(client_id, client_secret)

    @staticmethod
    def generate_pkce_codes() -> Tuple[str, str]:
        """(code_verifier, S256 code_challenge)"""
        verifier = secrets.token_urlsafe(64)[:128]
        digest = hashlib.sha256(verifier.encode("ascii")).digest()
        challenge = base64.urlsafe_b64encode(digest).decode("ascii").rstrip("=")
        return verifier, challenge

    def authorization_url(
        self,
        instance_host: str,
        client_id: str,
        redirect_uri: str,
        state: str,
        code_challenge: Optional[str] = None,
    ) -> str:
        params = {
            "client_id": client_id,
            "redirect_uri": redirect_uri,
            "response_type": "code",
            "scope": " ".join(self.scopes),
            "state": state,
        }
        if code_challenge:
            params["code_challenge"] = code_challenge
            params["code_challenge_method"] = "S256"
        return f"https://{normalize_server(instance_host)}/oauth/authorize?{urlencode(params)}"


class AppRegistrationCache:
    """Registers at most once per remote host, even under concurrent first access.

    One lock covers every host: registrations for different hosts wait for
    each other.
    """

    def __init__(self, service: MastodonRegistrationService, redirect_uris: List[str]):
        self.service = service
        self.redirect_uris = redirect_uris
        self._registrations: Dict[str, AppRegistration] = {}
        self._lock = asyncio.Lock()

    def redirect_uri_for(self, host: str) -> Optional[str]:
        """The registered redirect URI served from ``host`` (host[:port])"""
        wanted = (host or "").strip().lower()
        for uri in self.redirect_uris:
            if urlsplit(uri).netloc.lower() == wanted:
                return uri
        return None

    async def get_or_register(self, remote_host: str) -> AppRegistration:
        host = normalize_server(remote_host)
        if not host:
            raise AppRegistrationError("Instance host is required.")

        registration = self._registrations.get(host)
        if registration is not None:
            return registration

        async with self._lock:
            registration = self._registrations.get(host)
            if registration is None:
                registration = await self.service.register_application(host, self.redirect_uris)
                self._registrations[host] = registration
            return registration
