"""
Conflict Review Repository for the persisted manual review queue.
"""

from typing import Any, List, Optional
from sqlalchemy.orm import Session
from datetime import datetime

from models import ConflictReview, ReviewStatus
from .base import BaseRepository

class ConflictReviewRepository(BaseRepository):
    """Repository for ConflictReview model operations."""

    def __init__(self, session: Session):
        super().__init__(ConflictReview, session)

    def enqueue(self, tenant_id: str, mapping_id: int, field_name: str, remote_value: Any,
                local_value: Any, interim_value: Any, reason: str,
                remote_updated_at: Optional[datetime] = None,
                local_updated_at: Optional[datetime] = None) -> ConflictReview:
        """Queue a conflict, refreshing the pending entry for the same (tenant, mapping, field)."""
        review = self.session.query(ConflictReview).filter(
            ConflictReview.tenant_id == tenant_id,
            ConflictReview.mapping_id == mapping_id,
            ConflictReview.field_name == field_name,
            ConflictReview.status == ReviewStatus.PENDING.value
        ).first()

        if review is None:
            return self.create(
                tenant_id=tenant_id,
                mapping_id=mapping_id,
                field_name=field_name,
                remote_value=remote_value,
                local_value=local_value,
                interim_value=interim_value,
                reason=reason,
                remote_updated_at=remote_updated_at,
                local_updated_at=local_updated_at,
                status=ReviewStatus.PENDING.value
            )

        review.remote_value = remote_value
        review.local_value = local_value
        review.interim_value = interim_value
        review.reason = reason
        review.remote_updated_at = remote_updated_at
        review.local_updated_at = local_updated_at
        self.session.flush()
        return review

    def get_pending(self, tenant_id: str, limit: Optional[int] = None) -> List[ConflictReview]:
        return self.filter(
            {'tenant_id': tenant_id, 'status': ReviewStatus.PENDING.value},
            limit=limit,
            order_by=ConflictReview.created_at
        )

    def resolve(self, review_id: int, value: Any, resolved_by: Optional[str] = None) -> Optional[ConflictReview]:
        """Record the operator's decision. Returns None if not found or not pending."""
        review = self.get(review_id)
        if review is None or review.status != ReviewStatus.PENDING.value:
            return None

        review.status = ReviewStatus.RESOLVED.value
        review.resolved_value = value
        review.resolved_by = resolved_by
        review.resolved_at = datetime.utcnow()
        self.session.flush()
        return review

    def dismiss_all(self, tenant_id: str, resolved_by: Optional[str] = None) -> int:
        """Clear the tenant's pending queue. Returns the number of dismissed entries."""
        pending = self.get_pending(tenant_id)
        now = datetime.utcnow()
        for review in pending:
            review.status = ReviewStatus.DISMISSED.value
            review.resolved_by = resolved_by
            review.resolved_at = now
        self.session.flush()
        return len(pending)
