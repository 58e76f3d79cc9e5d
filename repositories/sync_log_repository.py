"""
Sync Log Repository for the append-only POS sync audit trail.
"""

from typing import List, Optional, Dict, Any
from sqlalchemy.orm import Session
from sqlalchemy import func
from datetime import datetime, timedelta

from models import SyncLogEntry, SyncLogStatus, SyncOperation, SyncType
from .base import BaseRepository

class SyncLogRepository(BaseRepository):
    """Repository for SyncLogEntry model operations.

    Entries are created as ``pending`` and finalized exactly once. There is no
    update or delete path for a finalized entry.
    """

    def __init__(self, session: Session):
        super().__init__(SyncLogEntry, session)

    def create_sync_log(self, tenant_id: str, direction: str, integration_id: Optional[int] = None,
                        sync_type: str = SyncType.CATALOG.value,
                        operation: str = SyncOperation.SYNC.value,
                        mapping_id: Optional[int] = None,
                        request_payload: Optional[Dict[str, Any]] = None) -> SyncLogEntry:
        """Create a pending sync log entry."""
        return self.create(
            tenant_id=tenant_id,
            integration_id=integration_id,
            mapping_id=mapping_id,
            sync_type=sync_type,
            direction=direction,
            operation=operation,
            status=SyncLogStatus.PENDING.value,
            request_payload=request_payload,
            created_at=datetime.utcnow()
        )

    def finalize_sync_log(self, log_id: int, status: str, items_affected: int = 0,
                          duration_ms: Optional[int] = None,
                          response_payload: Optional[Dict[str, Any]] = None,
                          error_code: Optional[str] = None,
                          error_message: Optional[str] = None) -> SyncLogEntry:
        """Finalize a pending entry. Raises ValueError if it was already finalized."""
        if status == SyncLogStatus.PENDING.value:
            raise ValueError("Cannot finalize a sync log with status 'pending'")

        entry = self.get(log_id)
        if entry is None:
            raise ValueError(f"Sync log {log_id} not found")
        if entry.is_finalized:
            raise ValueError(f"Sync log {log_id} is already finalized with status '{entry.status}'")

        entry.status = status
        entry.items_affected = items_affected
        entry.duration_ms = duration_ms
        entry.response_payload = response_payload
        entry.error_code = error_code
        entry.error_message = error_message
        entry.finalized_at = datetime.utcnow()
        self.session.flush()
        return entry

    def get_sync_logs_by_tenant(self, tenant_id: str, limit: int = 50) -> List[SyncLogEntry]:
        """Most recent sync logs for a tenant."""
        return self.session.query(SyncLogEntry).filter(
            SyncLogEntry.tenant_id == tenant_id
        ).order_by(SyncLogEntry.created_at.desc(), SyncLogEntry.id.desc()).limit(limit).all()

    def get_sync_logs_by_status(self, tenant_id: str, status: str, limit: int = 50) -> List[SyncLogEntry]:
        """Most recent sync logs for a tenant with the given status."""
        return self.session.query(SyncLogEntry).filter(
            SyncLogEntry.tenant_id == tenant_id,
            SyncLogEntry.status == status
        ).order_by(SyncLogEntry.created_at.desc(), SyncLogEntry.id.desc()).limit(limit).all()

    def get_recent_failures(self, tenant_id: str, days: int = 7, limit: int = 20) -> List[SyncLogEntry]:
        """Failed sync logs within the last `days` days."""
        since_date = datetime.utcnow() - timedelta(days=days)
        return self.session.query(SyncLogEntry).filter(
            SyncLogEntry.tenant_id == tenant_id,
            SyncLogEntry.status == SyncLogStatus.ERROR.value,
            SyncLogEntry.created_at >= since_date
        ).order_by(SyncLogEntry.created_at.desc()).limit(limit).all()

    def get_sync_stats(self, tenant_id: str, days: int = 30) -> Dict[str, Any]:
        """Counts by status and average duration over a period."""
        since_date = datetime.utcnow() - timedelta(days=days)
        query = self.session.query(SyncLogEntry).filter(
            SyncLogEntry.tenant_id == tenant_id,
            SyncLogEntry.created_at >= since_date
        )

        status_counts = query.with_entities(
            SyncLogEntry.status,
            func.count(SyncLogEntry.id)
        ).group_by(SyncLogEntry.status).all()

        avg_duration = query.filter(
            SyncLogEntry.duration_ms.isnot(None)
        ).with_entities(func.avg(SyncLogEntry.duration_ms)).scalar()

        by_status = {status: count for status, count in status_counts}
        total = sum(by_status.values())
        finished = total - by_status.get(SyncLogStatus.PENDING.value, 0)

        return {
            'period_days': days,
            'total': total,
            'by_status': by_status,
            'success_rate': (by_status.get(SyncLogStatus.SUCCESS.value, 0) / finished * 100) if finished else 0,
            'avg_duration_ms': float(avg_duration) if avg_duration is not None else None
        }
