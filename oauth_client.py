"""
POS OAuth client

Authorization URL and state handling plus the token endpoint calls
(authorization_code and refresh_token grants, revoke).
"""

import asyncio
import base64
import hashlib
import hmac
import logging
import secrets
import time
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Dict, List, Optional
from urllib.parse import urlencode

import aiohttp

from catalog_transform import parse_timestamp
from exceptions import AuthError, OAuthStateError, TransientRemoteError, ValidationError
from pos_catalog_client import error_from_response

logger = logging.getLogger(__name__)

STATE_MAX_AGE_SECONDS = 600  # 10 minutes


@dataclass
class TokenResponse:
    """Fields consumed from the token endpoint."""
    access_token: str
    refresh_token: Optional[str] = None
    expires_at: Optional[datetime] = None
    merchant_id: Optional[str] = None
    scopes: List[str] = field(default_factory=list)

    @classmethod
    def from_payload(cls, payload: Dict[str, Any]) -> 'TokenResponse':
        if not payload.get('access_token'):
            raise AuthError("Token response did not include an access token")
        scopes = payload.get('scopes') or payload.get('scope') or []
        if isinstance(scopes, str):
            scopes = scopes.split()
        return cls(
            access_token=payload['access_token'],
            refresh_token=payload.get('refresh_token'),
            expires_at=parse_timestamp(payload.get('expires_at')),
            merchant_id=payload.get('merchant_id'),
            scopes=list(scopes)
        )


def _sign(message: str, secret: str) -> str:
    return hmac.new(secret.encode(), message.encode(), hashlib.sha256).hexdigest()[:32]


def generate_state(tenant_id: str, secret: str, now: Optional[float] = None) -> str:
    """Opaque CSRF state bound to a tenant."""
    timestamp = int(now if now is not None else time.time())
    nonce = secrets.token_hex(8)
    message = f"{tenant_id}:{timestamp}:{nonce}"
    raw = f"{message}:{_sign(message, secret)}"
    return base64.urlsafe_b64encode(raw.encode()).decode().rstrip('=')


def verify_state(state: str, secret: str, max_age: int = STATE_MAX_AGE_SECONDS,
                 now: Optional[float] = None) -> str:
    """Return the tenant id carried by ``state`` or raise OAuthStateError."""
    try:
        padded = state + '=' * (-len(state) % 4)
        raw = base64.urlsafe_b64decode(padded.encode()).decode()
        tenant_id, timestamp, nonce, signature = raw.rsplit(':', 3)
        issued_at = int(timestamp)
    except (ValueError, UnicodeDecodeError) as e:
        raise OAuthStateError(f"Malformed OAuth state: {e}")

    expected = _sign(f"{tenant_id}:{timestamp}:{nonce}", secret)
    if not hmac.compare_digest(signature, expected):
        raise OAuthStateError("OAuth state signature mismatch")

    age = (now if now is not None else time.time()) - issued_at
    if age > max_age or age < 0:
        raise OAuthStateError("OAuth state expired")

    return tenant_id


class PosOAuthClient:
    """Token endpoint client for one POS application."""

    def __init__(self, client_id: Optional[str], client_secret: Optional[str], redirect_uri: Optional[str],
                 base_url: str, scopes: str = '', timeout: int = 30, api_version: str = '2024-01-18'):
        self.client_id = client_id or ''
        self.client_secret = client_secret or ''
        self.redirect_uri = redirect_uri or ''
        self.base_url = base_url.rstrip('/')
        self.scopes = scopes
        self.timeout = timeout
        self.api_version = api_version

        if not self.is_configured():
            logger.warning("POS OAuth client is missing client id, secret or redirect URI")

    @classmethod
    def from_config(cls, config) -> 'PosOAuthClient':
        return cls(
            client_id=config.POS_CLIENT_ID,
            client_secret=config.POS_CLIENT_SECRET,
            redirect_uri=config.POS_REDIRECT_URI,
            base_url=config.pos_base_url(),
            scopes=config.POS_OAUTH_SCOPES,
            timeout=config.POS_REQUEST_TIMEOUT
        )

    def is_configured(self) -> bool:
        return bool(self.client_id and self.client_secret and self.redirect_uri)

    def build_authorization_url(self, tenant_id: str, state: Optional[str] = None) -> str:
        params = {
            'client_id': self.client_id,
            'scope': self.scopes,
            'session': 'false',
            'state': state or generate_state(tenant_id, self.client_secret),
            'redirect_uri': self.redirect_uri,
        }
        return f"{self.base_url}/oauth2/authorize?{urlencode(params)}"

    def verify_state(self, state: str) -> str:
        return verify_state(state, self.client_secret)

    async def _post(self, path: str, body: Dict[str, Any],
                    headers: Optional[Dict[str, str]] = None) -> Dict[str, Any]:
        request_headers = {'Content-Type': 'application/json', 'Square-Version': self.api_version}
        request_headers.update(headers or {})
        try:
            async with aiohttp.ClientSession(timeout=aiohttp.ClientTimeout(total=self.timeout)) as session:
                async with session.post(f"{self.base_url}{path}", json=body, headers=request_headers) as response:
                    try:
                        payload = await response.json(content_type=None)
                    except ValueError:
                        payload = await response.text()

                    if response.status >= 400:
                        error = error_from_response(response.status, payload, response.headers)
                        # A rejected grant means the credential is unusable
                        if isinstance(error, ValidationError):
                            error = AuthError(f"OAuth request rejected: {error.message}",
                                              details={'status': response.status})
                        raise error

                    return payload if isinstance(payload, dict) else {}

        except (aiohttp.ClientError, asyncio.TimeoutError) as e:
            raise TransientRemoteError(f"OAuth request to {path} failed: {e}") from e

    async def exchange_code(self, code: str) -> TokenResponse:
        payload = await self._post('/oauth2/token', {
            'client_id': self.client_id,
            'client_secret': self.client_secret,
            'code': code,
            'grant_type': 'authorization_code',
            'redirect_uri': self.redirect_uri,
        })
        return TokenResponse.from_payload(payload)

    async def refresh_token(self, refresh_token: str) -> TokenResponse:
        payload = await self._post('/oauth2/token', {
            'client_id': self.client_id,
            'client_secret': self.client_secret,
            'grant_type': 'refresh_token',
            'refresh_token': refresh_token,
        })
        return TokenResponse.from_payload(payload)

    async def revoke_token(self, access_token: str) -> None:
        await self._post(
            '/oauth2/revoke',
            {'client_id': self.client_id, 'access_token': access_token},
            headers={'Authorization': f'Client {self.client_secret}'}
        )
