"""
Database Models for the POS Catalog Sync Engine

This module contains SQLAlchemy models for POS integrations, identity mappings,
the append-only sync log, the manual review queue and the local inventory store.
"""

from sqlalchemy import Column, Integer, String, Text, Boolean, DateTime, ForeignKey, Float, JSON, Index, UniqueConstraint
from sqlalchemy.orm import declarative_base, relationship, validates
from datetime import datetime
import enum
import uuid

Base = declarative_base()

# Enums for type safety
class IntegrationMode(enum.Enum):
    SANDBOX = "sandbox"
    PRODUCTION = "production"

class MappingStatus(enum.Enum):
    ACTIVE = "active"
    PAUSED = "paused"
    ERROR = "error"

class SyncDirection(enum.Enum):
    TO_REMOTE = "to_remote"
    FROM_REMOTE = "from_remote"
    BIDIRECTIONAL = "bidirectional"

class SyncType(enum.Enum):
    CATALOG = "catalog"
    INVENTORY = "inventory"
    WEBHOOK = "webhook"
    MANUAL = "manual"

class SyncOperation(enum.Enum):
    CREATE = "create"
    UPDATE = "update"
    DELETE = "delete"
    SYNC = "sync"

class SyncLogStatus(enum.Enum):
    PENDING = "pending"
    SUCCESS = "success"
    ERROR = "error"
    SKIPPED = "skipped"

class ReviewStatus(enum.Enum):
    PENDING = "pending"
    RESOLVED = "resolved"
    DISMISSED = "dismissed"


class Integration(Base):
    """A tenant's authorized link to one POS account."""
    __tablename__ = 'pos_integrations'

    id = Column(Integer, primary_key=True)
    tenant_id = Column(String(100), nullable=False, index=True)
    vendor = Column(String(50), default='square', nullable=False)

    # Credentials, stored encrypted only
    access_token_encrypted = Column(Text)
    refresh_token_encrypted = Column(Text)
    token_expires_at = Column(DateTime)
    scopes = Column(JSON)  # Array of granted scopes

    merchant_id = Column(String(100))
    location_id = Column(String(100))
    mode = Column(String(20), default=IntegrationMode.SANDBOX.value, nullable=False)
    currency = Column(String(3), default='USD', nullable=False)

    enabled = Column(Boolean, default=True, nullable=False)
    last_sync_at = Column(DateTime)
    last_error = Column(Text)

    created_at = Column(DateTime, default=datetime.utcnow, nullable=False)
    updated_at = Column(DateTime, default=datetime.utcnow, onupdate=datetime.utcnow, nullable=False)

    # Relationships
    mappings = relationship("IdentityMapping", back_populates="integration", cascade="all, delete-orphan")

    __table_args__ = (
        Index('idx_integration_tenant_vendor', 'tenant_id', 'vendor'),
        Index('idx_integration_enabled', 'enabled'),
    )

    @validates('mode')
    def validate_mode(self, key, value):
        if value not in [m.value for m in IntegrationMode]:
            raise ValueError(f"Invalid integration mode: {value}")
        return value

    def to_dict(self):
        """Public view of the integration. Never includes credentials."""
        return {
            'id': self.id,
            'tenant_id': self.tenant_id,
            'vendor': self.vendor,
            'merchant_id': self.merchant_id,
            'location_id': self.location_id,
            'mode': self.mode,
            'enabled': self.enabled,
            'scopes': self.scopes or [],
            'token_expires_at': self.token_expires_at.isoformat() if self.token_expires_at else None,
            'last_sync_at': self.last_sync_at.isoformat() if self.last_sync_at else None,
            'last_error': self.last_error
        }

    def __repr__(self):
        return f"<Integration(id={self.id}, tenant_id='{self.tenant_id}', enabled={self.enabled})>"


class IdentityMapping(Base):
    """Durable correspondence between one local item and one remote catalog object."""
    __tablename__ = 'pos_identity_mappings'

    id = Column(Integer, primary_key=True)
    tenant_id = Column(String(100), nullable=False, index=True)
    integration_id = Column(Integer, ForeignKey('pos_integrations.id'), nullable=False, index=True)
    local_item_id = Column(String(100), nullable=False)
    remote_object_id = Column(String(255), nullable=False)
    remote_variation_id = Column(String(255))
    remote_version = Column(Integer)

    sync_status = Column(String(20), default=MappingStatus.ACTIVE.value, nullable=False)
    sync_direction = Column(String(20), default=SyncDirection.BIDIRECTIONAL.value, nullable=False)
    conflict_policy = Column(String(50), default='default', nullable=False)

    last_local_update = Column(DateTime)
    last_remote_update = Column(DateTime)
    last_error = Column(Text)

    created_at = Column(DateTime, default=datetime.utcnow, nullable=False)
    updated_at = Column(DateTime, default=datetime.utcnow, onupdate=datetime.utcnow, nullable=False)

    integration = relationship("Integration", back_populates="mappings")

    __table_args__ = (
        UniqueConstraint('integration_id', 'remote_object_id', name='uq_mapping_integration_remote'),
        UniqueConstraint('tenant_id', 'integration_id', 'local_item_id', name='uq_mapping_tenant_local'),
        Index('idx_mapping_status', 'sync_status'),
    )

    @validates('sync_status')
    def validate_sync_status(self, key, value):
        if value not in [s.value for s in MappingStatus]:
            raise ValueError(f"Invalid mapping status: {value}")
        return value

    @validates('sync_direction')
    def validate_sync_direction(self, key, value):
        if value not in [d.value for d in SyncDirection]:
            raise ValueError(f"Invalid sync direction: {value}")
        return value

    def allows(self, direction: str) -> bool:
        """Whether this mapping takes part in a phase running in the given direction."""
        return self.sync_direction in (direction, SyncDirection.BIDIRECTIONAL.value)

    def to_dict(self):
        return {
            'id': self.id,
            'tenant_id': self.tenant_id,
            'integration_id': self.integration_id,
            'local_item_id': self.local_item_id,
            'remote_object_id': self.remote_object_id,
            'remote_variation_id': self.remote_variation_id,
            'sync_status': self.sync_status,
            'sync_direction': self.sync_direction,
            'conflict_policy': self.conflict_policy,
            'last_local_update': self.last_local_update.isoformat() if self.last_local_update else None,
            'last_remote_update': self.last_remote_update.isoformat() if self.last_remote_update else None
        }

    def __repr__(self):
        return f"<IdentityMapping(local='{self.local_item_id}', remote='{self.remote_object_id}')>"


class SyncLogEntry(Base):
    """Append-only audit record of one attempted sync operation."""
    __tablename__ = 'pos_sync_logs'

    id = Column(Integer, primary_key=True)
    tenant_id = Column(String(100), nullable=False, index=True)
    integration_id = Column(Integer, ForeignKey('pos_integrations.id'), index=True)
    mapping_id = Column(Integer)  # Absent for catalog-level operations

    sync_type = Column(String(20), default=SyncType.CATALOG.value, nullable=False)
    direction = Column(String(20), nullable=False)
    operation = Column(String(20), default=SyncOperation.SYNC.value, nullable=False)
    status = Column(String(20), default=SyncLogStatus.PENDING.value, nullable=False)

    error_code = Column(String(50))
    error_message = Column(Text)
    request_payload = Column(JSON)
    response_payload = Column(JSON)
    items_affected = Column(Integer, default=0)
    duration_ms = Column(Integer)

    created_at = Column(DateTime, default=datetime.utcnow, nullable=False)
    finalized_at = Column(DateTime)

    __table_args__ = (
        Index('idx_sync_log_tenant_created', 'tenant_id', 'created_at'),
        Index('idx_sync_log_status', 'status'),
    )

    @property
    def is_finalized(self) -> bool:
        return self.status != SyncLogStatus.PENDING.value

    def to_dict(self):
        return {
            'id': self.id,
            'tenant_id': self.tenant_id,
            'integration_id': self.integration_id,
            'mapping_id': self.mapping_id,
            'sync_type': self.sync_type,
            'direction': self.direction,
            'operation': self.operation,
            'status': self.status,
            'error_code': self.error_code,
            'error_message': self.error_message,
            'request_payload': self.request_payload,
            'response_payload': self.response_payload,
            'items_affected': self.items_affected,
            'duration_ms': self.duration_ms,
            'created_at': self.created_at.isoformat() if self.created_at else None,
            'finalized_at': self.finalized_at.isoformat() if self.finalized_at else None
        }


class ConflictReview(Base):
    """Field conflict waiting for a human decision."""
    __tablename__ = 'pos_conflict_reviews'

    id = Column(Integer, primary_key=True)
    tenant_id = Column(String(100), nullable=False, index=True)
    mapping_id = Column(Integer, ForeignKey('pos_identity_mappings.id'), nullable=False, index=True)
    field_name = Column(String(100), nullable=False)

    remote_value = Column(JSON)
    local_value = Column(JSON)
    interim_value = Column(JSON)
    remote_updated_at = Column(DateTime)
    local_updated_at = Column(DateTime)
    reason = Column(Text)

    status = Column(String(20), default=ReviewStatus.PENDING.value, nullable=False)
    resolved_value = Column(JSON)
    resolved_by = Column(String(100))
    resolved_at = Column(DateTime)

    created_at = Column(DateTime, default=datetime.utcnow, nullable=False)
    updated_at = Column(DateTime, default=datetime.utcnow, onupdate=datetime.utcnow, nullable=False)

    mapping = relationship("IdentityMapping")

    __table_args__ = (
        Index('idx_review_tenant_mapping_field', 'tenant_id', 'mapping_id', 'field_name'),
        Index('idx_review_status', 'status'),
    )

    def to_dict(self):
        return {
            'id': self.id,
            'tenant_id': self.tenant_id,
            'mapping_id': self.mapping_id,
            'field': self.field_name,
            'remote_value': self.remote_value,
            'local_value': self.local_value,
            'interim_value': self.interim_value,
            'reason': self.reason,
            'status': self.status,
            'resolved_value': self.resolved_value,
            'resolved_by': self.resolved_by,
            'resolved_at': self.resolved_at.isoformat() if self.resolved_at else None,
            'created_at': self.created_at.isoformat() if self.created_at else None
        }


class InventoryItem(Base):
    """Local catalog item."""
    __tablename__ = 'inventory_items'

    id = Column(String(36), primary_key=True, default=lambda: str(uuid.uuid4()))
    tenant_id = Column(String(100), nullable=False, index=True)
    name = Column(String(500), nullable=False)
    description = Column(Text)
    sku = Column(String(100), index=True)
    price = Column(Float)
    category_id = Column(String(100))
    quantity = Column(Integer, default=0)
    is_active = Column(Boolean, default=True, nullable=False)

    created_at = Column(DateTime, default=datetime.utcnow, nullable=False)
    updated_at = Column(DateTime, default=datetime.utcnow, nullable=False)

    def to_dict(self):
        return {
            'id': self.id,
            'tenant_id': self.tenant_id,
            'name': self.name,
            'description': self.description,
            'sku': self.sku,
            'price': self.price,
            'category_id': self.category_id,
            'quantity': self.quantity,
            'is_active': self.is_active,
            'created_at': self.created_at.isoformat() if self.created_at else None,
            'updated_at': self.updated_at.isoformat() if self.updated_at else None
        }

    def __repr__(self):
        return f"<InventoryItem(id='{self.id}', name='{self.name}')>"
