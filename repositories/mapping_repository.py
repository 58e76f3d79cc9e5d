"""
Identity Mapping Repository linking local items to remote catalog objects.
"""

import logging
from typing import List, Optional
from sqlalchemy.orm import Session
from datetime import datetime

from models import ConflictReview, IdentityMapping, MappingStatus, SyncDirection
from .base import BaseRepository

logger = logging.getLogger(__name__)

class MappingRepository(BaseRepository):
    """Repository for IdentityMapping model operations."""

    def __init__(self, session: Session):
        super().__init__(IdentityMapping, session)

    def create_mapping(self, tenant_id: str, integration_id: int, local_item_id: str,
                       remote_object_id: str, remote_variation_id: Optional[str] = None,
                       remote_version: Optional[int] = None,
                       sync_direction: str = SyncDirection.BIDIRECTIONAL.value,
                       conflict_policy: str = 'default',
                       last_local_update: Optional[datetime] = None,
                       last_remote_update: Optional[datetime] = None) -> IdentityMapping:
        """Create a mapping, or update the existing one for the same pair.

        Idempotent on both (integration, remote object id) and
        (tenant, integration, local item id).
        """
        mapping = self.get_mapping_by_remote_id(integration_id, remote_object_id)
        if mapping is None:
            mapping = self.get_mapping_by_local_id(tenant_id, local_item_id, integration_id)

        if mapping is not None:
            if mapping.local_item_id != local_item_id or mapping.remote_object_id != remote_object_id:
                logger.warning(
                    f"Re-pointing mapping {mapping.id}: local {mapping.local_item_id} -> {local_item_id}, "
                    f"remote {mapping.remote_object_id} -> {remote_object_id}"
                )
            mapping.local_item_id = local_item_id
            mapping.remote_object_id = remote_object_id
            if remote_variation_id is not None:
                mapping.remote_variation_id = remote_variation_id
            if remote_version is not None:
                mapping.remote_version = remote_version
            mapping.sync_status = MappingStatus.ACTIVE.value
            mapping.last_error = None
            mapping.last_local_update = last_local_update or mapping.last_local_update
            mapping.last_remote_update = last_remote_update or mapping.last_remote_update
            self.session.flush()
            return mapping

        return self.create(
            tenant_id=tenant_id,
            integration_id=integration_id,
            local_item_id=local_item_id,
            remote_object_id=remote_object_id,
            remote_variation_id=remote_variation_id,
            remote_version=remote_version,
            sync_status=MappingStatus.ACTIVE.value,
            sync_direction=sync_direction,
            conflict_policy=conflict_policy,
            last_local_update=last_local_update,
            last_remote_update=last_remote_update
        )

    def get_mapping(self, mapping_id: int) -> Optional[IdentityMapping]:
        return self.get(mapping_id)

    def get_mapping_by_local_id(self, tenant_id: str, local_item_id: str,
                                integration_id: Optional[int] = None) -> Optional[IdentityMapping]:
        """Find the mapping for a local item, optionally within one integration."""
        filters = {'tenant_id': tenant_id, 'local_item_id': local_item_id}
        if integration_id is not None:
            filters['integration_id'] = integration_id
        return self.get_by(**filters)

    def get_mapping_by_remote_id(self, integration_id: int, remote_object_id: str) -> Optional[IdentityMapping]:
        return self.get_by(integration_id=integration_id, remote_object_id=remote_object_id)

    def list_mappings(self, integration_id: int, status: Optional[str] = None) -> List[IdentityMapping]:
        filters = {'integration_id': integration_id}
        if status:
            filters['sync_status'] = status
        return self.filter(filters, order_by=IdentityMapping.id)

    def set_status(self, mapping: IdentityMapping, status: str, error: Optional[str] = None) -> IdentityMapping:
        mapping.sync_status = status
        mapping.last_error = error
        self.session.flush()
        return mapping

    def touch(self, mapping: IdentityMapping, last_local_update: Optional[datetime] = None,
              last_remote_update: Optional[datetime] = None,
              remote_version: Optional[int] = None) -> IdentityMapping:
        """Record that a sync reached this mapping."""
        if last_local_update is not None:
            mapping.last_local_update = last_local_update
        if last_remote_update is not None:
            mapping.last_remote_update = last_remote_update
        if remote_version is not None:
            mapping.remote_version = remote_version
        mapping.updated_at = datetime.utcnow()
        self.session.flush()
        return mapping

    def delete_mapping(self, mapping_id: int) -> bool:
        """Delete a mapping together with its review queue rows."""
        self.session.query(ConflictReview).filter(
            ConflictReview.mapping_id == mapping_id
        ).delete(synchronize_session=False)
        return self.delete(mapping_id)
