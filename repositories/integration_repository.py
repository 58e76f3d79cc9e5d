"""
Integration Repository for tenant POS links.
"""

import logging
from typing import List, Optional
from sqlalchemy.orm import Session
from datetime import datetime

from models import Integration
from .base import BaseRepository

logger = logging.getLogger(__name__)

class IntegrationRepository(BaseRepository):
    """Repository for Integration model operations."""

    def __init__(self, session: Session):
        super().__init__(Integration, session)

    def get_enabled(self, tenant_id: str, vendor: str = 'square') -> Optional[Integration]:
        """The enabled integration for a tenant, if any."""
        return self.session.query(Integration).filter(
            Integration.tenant_id == tenant_id,
            Integration.vendor == vendor,
            Integration.enabled.is_(True)
        ).order_by(Integration.updated_at.desc()).first()

    def get_latest(self, tenant_id: str, vendor: str = 'square') -> Optional[Integration]:
        """Most recently touched integration for a tenant, enabled or not."""
        return self.session.query(Integration).filter(
            Integration.tenant_id == tenant_id,
            Integration.vendor == vendor
        ).order_by(Integration.updated_at.desc(), Integration.id.desc()).first()

    def list_for_tenant(self, tenant_id: str) -> List[Integration]:
        return self.filter({'tenant_id': tenant_id}, order_by=Integration.id)

    def upsert_credentials(self, tenant_id: str, access_token_encrypted: str,
                           refresh_token_encrypted: Optional[str], token_expires_at: Optional[datetime],
                           merchant_id: Optional[str], scopes: Optional[List[str]] = None,
                           mode: str = 'sandbox', vendor: str = 'square') -> Integration:
        """Store fresh credentials and enable the tenant's integration.

        Reuses the latest row for (tenant, vendor) and disables any other
        enabled rows, so at most one integration stays enabled.
        """
        integration = self.get_latest(tenant_id, vendor)
        if integration is None:
            integration = self.create(tenant_id=tenant_id, vendor=vendor, mode=mode)

        integration.access_token_encrypted = access_token_encrypted
        integration.refresh_token_encrypted = refresh_token_encrypted
        integration.token_expires_at = token_expires_at
        integration.merchant_id = merchant_id
        integration.scopes = scopes or []
        integration.mode = mode
        integration.enabled = True
        integration.last_error = None

        others = self.session.query(Integration).filter(
            Integration.tenant_id == tenant_id,
            Integration.vendor == vendor,
            Integration.enabled.is_(True),
            Integration.id != integration.id
        ).all()
        for other in others:
            logger.info(f"Disabling superseded integration {other.id} for tenant {tenant_id}")
            other.enabled = False

        self.session.flush()
        return integration

    def update_tokens(self, integration: Integration, access_token_encrypted: str,
                      refresh_token_encrypted: Optional[str], token_expires_at: Optional[datetime]) -> Integration:
        integration.access_token_encrypted = access_token_encrypted
        if refresh_token_encrypted is not None:
            integration.refresh_token_encrypted = refresh_token_encrypted
        integration.token_expires_at = token_expires_at
        integration.last_error = None
        self.session.flush()
        return integration

    def disable(self, integration: Integration, error: Optional[str] = None,
                clear_credentials: bool = False) -> Integration:
        """Soft-disable an integration. The row is kept for audit."""
        integration.enabled = False
        if error is not None:
            integration.last_error = error
        if clear_credentials:
            integration.access_token_encrypted = None
            integration.refresh_token_encrypted = None
            integration.token_expires_at = None
        self.session.flush()
        return integration

    def record_sync(self, integration: Integration, succeeded: bool, error: Optional[str] = None) -> Integration:
        """Record the outcome of a sync attempt."""
        if succeeded:
            integration.last_sync_at = datetime.utcnow()
            integration.last_error = None
        else:
            integration.last_error = error
        self.session.flush()
        return integration
