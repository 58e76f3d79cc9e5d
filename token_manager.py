"""
Token Manager

Owns the OAuth credential lifecycle of a tenant's POS integration: code
exchange, refresh ahead of expiry, revocation and encrypted persistence.
Concurrent callers share one in-flight refresh per tenant.
"""

import asyncio
import logging
from datetime import datetime, timedelta
from typing import Any, Callable, Dict, Optional

from sqlalchemy.orm import Session

from exceptions import AuthError, OAuthStateError, PosSyncError
from models import Integration
from oauth_client import PosOAuthClient
from repositories import IntegrationRepository
from token_encryption import TokenEncryptionService

logger = logging.getLogger(__name__)


class TokenManager:
    """Credential lifecycle for POS integrations."""

    def __init__(self, session: Session, oauth_client: PosOAuthClient, encryption: TokenEncryptionService,
                 refresh_buffer: timedelta = timedelta(days=1), vendor: str = 'square',
                 mode: str = 'sandbox', now: Callable[[], datetime] = datetime.utcnow):
        self.integrations = IntegrationRepository(session)
        self.oauth_client = oauth_client
        self.encryption = encryption
        self.refresh_buffer = refresh_buffer
        self.vendor = vendor
        self.mode = mode
        self._now = now
        self._inflight: Dict[str, asyncio.Future] = {}

    @classmethod
    def from_config(cls, session: Session, config) -> 'TokenManager':
        return cls(
            session=session,
            oauth_client=PosOAuthClient.from_config(config),
            encryption=TokenEncryptionService.from_config(config),
            refresh_buffer=timedelta(seconds=config.POS_TOKEN_REFRESH_BUFFER_SECONDS),
            mode='production' if config.POS_ENVIRONMENT == 'production' else 'sandbox'
        )

    def get_integration(self, tenant_id: str) -> Integration:
        integration = self.integrations.get_enabled(tenant_id, self.vendor)
        if integration is None:
            raise AuthError(f"No enabled POS integration for tenant {tenant_id}")
        return integration

    def needs_refresh(self, integration: Integration) -> bool:
        if integration.token_expires_at is None:
            return False
        return self._now() >= integration.token_expires_at - self.refresh_buffer

    async def get_valid_token(self, tenant_id: str) -> str:
        """Decrypted access token, refreshed first when it is inside the refresh buffer."""
        integration = self.get_integration(tenant_id)
        if not integration.access_token_encrypted:
            raise AuthError(f"POS integration for tenant {tenant_id} has no access token")

        if self.needs_refresh(integration):
            logger.info(f"Access token for tenant {tenant_id} expires at "
                        f"{integration.token_expires_at.isoformat()}, refreshing")
            integration = await self.refresh(tenant_id)

        return self.encryption.decrypt(integration.access_token_encrypted)

    async def refresh(self, tenant_id: str) -> Integration:
        """Refresh the tenant's tokens, joining a refresh already in flight."""
        task = self._inflight.get(tenant_id)
        if task is None:
            task = asyncio.ensure_future(self._refresh(tenant_id))
            self._inflight[tenant_id] = task

            def _clear(done, tenant_id=tenant_id):
                if self._inflight.get(tenant_id) is done:
                    del self._inflight[tenant_id]

            task.add_done_callback(_clear)
        else:
            logger.debug(f"Joining in-flight token refresh for tenant {tenant_id}")

        return await asyncio.shield(task)

    async def _refresh(self, tenant_id: str) -> Integration:
        integration = self.get_integration(tenant_id)
        refresh_token = self.encryption.decrypt(integration.refresh_token_encrypted)
        if not refresh_token:
            self.integrations.disable(integration, error="No refresh token available")
            self.integrations.commit()
            raise AuthError(f"No refresh token available for tenant {tenant_id}")

        try:
            response = await self.oauth_client.refresh_token(refresh_token)
        except AuthError as e:
            logger.error(f"Token refresh rejected for tenant {tenant_id}: {e}")
            self.integrations.disable(integration, error=f"Token refresh failed: {e}")
            self.integrations.commit()
            raise

        self.integrations.update_tokens(
            integration,
            access_token_encrypted=self.encryption.encrypt(response.access_token),
            refresh_token_encrypted=self.encryption.encrypt(response.refresh_token),
            token_expires_at=response.expires_at
        )
        self.integrations.commit()
        logger.info(f"Refreshed POS token for tenant {tenant_id}, new expiry {response.expires_at}")
        return integration

    async def exchange_code(self, code: str, tenant_id: str, state: Optional[str] = None) -> Integration:
        """Complete the OAuth callback and store the tenant's credentials."""
        if state is not None:
            state_tenant = self.oauth_client.verify_state(state)
            if state_tenant != tenant_id:
                raise OAuthStateError("OAuth state was issued for a different tenant")

        response = await self.oauth_client.exchange_code(code)
        integration = self.integrations.upsert_credentials(
            tenant_id=tenant_id,
            access_token_encrypted=self.encryption.encrypt(response.access_token),
            refresh_token_encrypted=self.encryption.encrypt(response.refresh_token),
            token_expires_at=response.expires_at,
            merchant_id=response.merchant_id,
            scopes=response.scopes,
            mode=self.mode,
            vendor=self.vendor
        )
        self.integrations.commit()
        logger.info(f"Connected POS merchant {response.merchant_id} for tenant {tenant_id}")
        return integration

    async def revoke(self, tenant_id: str) -> None:
        """Revoke remotely when possible, then always clear local credentials."""
        integration = self.integrations.get_enabled(tenant_id, self.vendor) \
            or self.integrations.get_latest(tenant_id, self.vendor)
        if integration is None:
            logger.info(f"No POS integration to revoke for tenant {tenant_id}")
            return

        try:
            access_token = self.encryption.decrypt(integration.access_token_encrypted)
            if access_token:
                await self.oauth_client.revoke_token(access_token)
        except PosSyncError as e:
            logger.warning(f"Remote revoke failed for tenant {tenant_id}, clearing local credentials anyway: {e}")

        self.integrations.disable(integration, clear_credentials=True)
        self.integrations.commit()
        logger.info(f"Disconnected POS integration {integration.id} for tenant {tenant_id}")

    def get_status(self, tenant_id: str) -> Dict[str, Any]:
        integration = self.integrations.get_enabled(tenant_id, self.vendor)
        if integration is None:
            latest = self.integrations.get_latest(tenant_id, self.vendor)
            return {
                'connected': False,
                'last_error': latest.last_error if latest else None
            }

        status = integration.to_dict()
        status['connected'] = True
        status['needs_refresh'] = self.needs_refresh(integration)
        return status
