"""
HTTP Signatures (draft-cavage, rsa-sha256) for outbound and inbound federation traffic
"""

import base64
import json
import logging
from datetime import datetime, timezone
from email.utils import formatdate, parsedate_to_datetime
from typing import Any, Dict, List, Mapping, Optional, Tuple, TypedDict, cast
from urllib.parse import urlparse

import httpx
from cryptography.exceptions import InvalidSignature
from cryptography.hazmat.primitives import hashes, serialization
from cryptography.hazmat.primitives.asymmetric import padding, rsa

from fediprofile.core.config import settings
from fediprofile.core.exceptions import DeliveryError, VerificationError, VerificationFormatError
from fediprofile.models.activitypub import RemoteActor

logger = logging.getLogger(__name__)

ACTIVITY_JSON = "application/activity+json"
ACCEPT_ACTIVITY = "application/activity+json, application/ld+json, application/json"
DEFAULT_PORTS = {"http": 80, "https": 443}


class HttpSignatureDetails(TypedDict):
    algorithm: str
    headers: List[str]
    signature: bytes
    keyid: str


def host_header(url: str) -> str:
    """Host value as sent on the wire (port kept only when non-default)"""
    parts = urlparse(url)
    host = (parts.hostname or "").lower()
    if parts.port and parts.port != DEFAULT_PORTS.get(parts.scheme):
        host = f"{host}:{parts.port}"
    return host


def request_target(method: str, url: str) -> str:
    parts = urlparse(url)
    path = parts.path or "/"
    if parts.query:
        path = f"{path}?{parts.query}"
    return f"{method.lower()} {path}"


class HttpSignature:
    """
    Calculation and verification of HTTP signatures
    """

    @classmethod
    def calculate_digest(cls, data: bytes) -> str:
        digest = hashes.Hash(hashes.SHA256())
        digest.update(data)
        return "SHA-256=" + base64.b64encode(digest.finalize()).decode("ascii")

    @classmethod
    def signing_string(cls, headers: Mapping[str, str]) -> str:
        return "\n".join(f"{name.lower()}: {value}" for name, value in headers.items())

    @classmethod
    def sign(
        cls,
        method: str,
        url: str,
        body: Optional[bytes],
        private_key: str,
        key_id: str,
    ) -> Dict[str, str]:
        """
        Returns the Host / Date / (Digest) / Signature headers for a request.

        The Date is generated here, so every attempt must call ``sign`` again.
        """
        if "://" not in url:
            raise ValueError("URL does not contain a scheme")
        signed: Dict[str, str] = {
            "(request-target)": request_target(method, url),
            "host": host_header(url),
            "date": formatdate(usegmt=True),
        }
        if body is not None:
            signed["digest"] = cls.calculate_digest(body)

        private_key_instance = cast(
            rsa.RSAPrivateKey,
            serialization.load_pem_private_key(private_key.encode("ascii"), password=None),
        )
        signature = private_key_instance.sign(
            cls.signing_string(signed).encode("ascii"),
            padding.PKCS1v15(),
            hashes.SHA256(),
        )
        headers = {
            "Host": signed["host"],
            "Date": signed["date"],
        }
        if "digest" in signed:
            headers["Digest"] = signed["digest"]
        headers["Signature"] = cls.compile_signature({
            "keyid": key_id,
            "headers": list(signed.keys()),
            "signature": signature,
            "algorithm": "rsa-sha256",
        })
        return headers

    @classmethod
    def parse_signature(cls, signature: str) -> HttpSignatureDetails:
        bits = {}
        for item in signature.split(","):
            if "=" not in item:
                raise VerificationFormatError(f"Malformed signature item: {item!r}")
            name, value = item.split("=", 1)
            bits[name.strip().lower()] = value.strip().strip('"')
        try:
            return {
                "headers": bits["headers"].split(),
                "signature": base64.b64decode(bits["signature"]),
                "algorithm": bits["algorithm"],
                "keyid": bits["keyid"],
            }
        except KeyError as e:
            key_names = " ".join(bits.keys())
            raise VerificationFormatError(
                f"Missing item from details (have: {key_names}, error: {e})"
            )
        except ValueError as e:
            raise VerificationFormatError(f"Signature is not valid base64: {e}")

    @classmethod
    def compile_signature(cls, details: HttpSignatureDetails) -> str:
        value = f'keyId="{details["keyid"]}",headers="'
        value += " ".join(h.lower() for h in details["headers"])
        value += '",signature="'
        value += base64.b64encode(details["signature"]).decode("ascii")
        value += f'",algorithm="{details["algorithm"]}"'
        return value

    @classmethod
    def verify_signature(cls, signature: bytes, cleartext: str, public_key: str) -> None:
        public_key_instance = cast(
            rsa.RSAPublicKey,
            serialization.load_pem_public_key(public_key.encode("ascii")),
        )
        try:
            public_key_instance.verify(
                signature,
                cleartext.encode("utf8"),
                padding.PKCS1v15(),
                hashes.SHA256(),
            )
        except InvalidSignature:
            raise VerificationError("Signature mismatch")

    @classmethod
    def headers_from_request(
        cls, method: str, path: str, headers: httpx.Headers, header_names: List[str]
    ) -> str:
        values = {}
        for header_name in header_names:
            name = header_name.lower()
            if name == "(request-target)":
                values[name] = f"{method.lower()} {path}"
            elif name in headers:
                values[name] = headers[name]
            else:
                raise VerificationFormatError(f"Signed header {name} is missing")
        return cls.signing_string(values)

    @classmethod
    def verify_request(
        cls,
        method: str,
        path: str,
        headers: Mapping[str, str],
        body: Optional[bytes],
        public_key: str,
        skip_date: bool = False,
    ) -> HttpSignatureDetails:
        """
        Verifies that a request carries a valid signature for its body.
        ``path`` includes the query string, if any.
        """
        headers = httpx.Headers(headers)
        if "signature" not in headers:
            raise VerificationFormatError("No signature header present")
        details = cls.parse_signature(headers["signature"])
        # hs2019 hides the real algorithm; we only speak RSA
        if details["algorithm"] not in ("rsa-sha256", "hs2019"):
            raise VerificationFormatError("Unknown signature algorithm")

        if body:
            if "digest" not in details["headers"]:
                raise VerificationFormatError("Body present but digest is not signed")
            if headers.get("digest") != cls.calculate_digest(body):
                raise VerificationFormatError("Digest is incorrect")

        if "date" in headers and not skip_date:
            try:
                header_date = parsedate_to_datetime(headers["date"])
            except (TypeError, ValueError):
                raise VerificationFormatError("Date header is malformed")
            if header_date.tzinfo is None:
                header_date = header_date.replace(tzinfo=timezone.utc)
            skew = abs((datetime.now(timezone.utc) - header_date).total_seconds())
            if skew > settings.SIGNATURE_MAX_SKEW:
                raise VerificationFormatError("Date is too far away")

        cleartext = cls.headers_from_request(method, path, headers, details["headers"])
        cls.verify_signature(details["signature"], cleartext, public_key)
        return details


def default_timeout() -> httpx.Timeout:
    return httpx.Timeout(settings.REMOTE_CONNECT_TIMEOUT, read=settings.REMOTE_READ_TIMEOUT)


class SignedClient:
    """Signed ActivityPub requests made on behalf of one local actor"""
    # 共享 httpx AsyncClient（由應用啟動時注入）
    shared_client: Optional[httpx.AsyncClient] = None

    @classmethod
    def set_shared_client(cls, client: Optional[httpx.AsyncClient]) -> None:
        cls.shared_client = client

    def __init__(
        self,
        private_key: Optional[str] = None,
        key_id: Optional[str] = None,
        client: Optional[httpx.AsyncClient] = None,
    ):
        self.private_key = private_key
        self.key_id = key_id
        self.client = client or SignedClient.shared_client

    async def _request(self, method: str, url: str, content: Optional[bytes], headers: Dict[str, str]) -> httpx.Response:
        follow = method.upper() == "GET"
        if self.client is not None:
            return await self.client.request(
                method, url, content=content, headers=headers, follow_redirects=follow
            )
        # 回退到臨時 client
        async with httpx.AsyncClient(
            timeout=default_timeout(), headers={"User-Agent": settings.USER_AGENT}
        ) as temp_client:
            return await temp_client.request(
                method, url, content=content, headers=headers, follow_redirects=follow
            )

    async def send(self, method: str, url: str, document: Optional[Dict[str, Any]] = None) -> Tuple[int, str]:
        """
        Signs (when a key is configured) and sends one request.

        Raises ``DeliveryError`` on transport errors and non-2xx responses;
        never retries.
        """
        method = method.upper()
        body = json.dumps(document).encode("utf8") if document is not None else None
        headers: Dict[str, str] = {}
        if method == "GET":
            headers["Accept"] = ACCEPT_ACTIVITY
        if body is not None:
            headers["Content-Type"] = ACTIVITY_JSON
        try:
            if self.private_key and self.key_id:
                headers.update(HttpSignature.sign(method, url, body, self.private_key, self.key_id))
            response = await self._request(method, url, body, headers)
        except (httpx.HTTPError, httpx.InvalidURL) as e:
            raise DeliveryError(url, f"{method} {url} failed: {e}") from e
        except ValueError as e:
            # 無 scheme 的 URL
            raise DeliveryError(url, f"{method} {url} rejected: {e}") from e
        if not response.is_success:
            raise DeliveryError(
                url,
                f"{method} {url} returned {response.status_code}: {response.text[:200]}",
                response.status_code,
            )
        return response.status_code, response.text

    async def post(self, url: str, document: Dict[str, Any]) -> Tuple[int, str]:
        return await self.send("POST", url, document)

    async def fetch_actor(self, actor_url: str) -> Optional[RemoteActor]:
        """Signed GET of a remote actor document; None on any failure"""
        try:
            _, text = await self.send("GET", actor_url)
            return RemoteActor.model_validate(json.loads(text))
        except (DeliveryError, ValueError) as e:
            logger.warning("Could not fetch actor %s: %s", actor_url, e)
            return None
