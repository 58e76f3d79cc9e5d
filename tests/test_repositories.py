"""Tests for the sync log, mapping, review and integration repositories."""
import pytest
from datetime import datetime

from models import ConflictReview, IdentityMapping, MappingStatus, ReviewStatus, SyncLogStatus


class TestSyncLogRepository:
    """Test the append-only sync log."""

    def test_created_pending_then_finalized_once(self, sync_log_repo, integration):
        entry = sync_log_repo.create_sync_log('tenant-1', 'from_remote', integration_id=integration.id,
                                              request_payload={'dry_run': False})
        assert entry.status == SyncLogStatus.PENDING.value
        assert not entry.is_finalized

        finalized = sync_log_repo.finalize_sync_log(entry.id, SyncLogStatus.SUCCESS.value,
                                                    items_affected=3, duration_ms=120)
        assert finalized.status == 'success'
        assert finalized.items_affected == 3
        assert finalized.finalized_at is not None

        with pytest.raises(ValueError):
            sync_log_repo.finalize_sync_log(entry.id, SyncLogStatus.ERROR.value)
        assert sync_log_repo.get(entry.id).status == 'success'

    def test_cannot_finalize_as_pending_or_missing(self, sync_log_repo):
        entry = sync_log_repo.create_sync_log('tenant-1', 'to_remote')
        with pytest.raises(ValueError):
            sync_log_repo.finalize_sync_log(entry.id, SyncLogStatus.PENDING.value)
        with pytest.raises(ValueError):
            sync_log_repo.finalize_sync_log(9999, SyncLogStatus.SUCCESS.value)

    def test_queries_and_stats(self, sync_log_repo):
        for status in ('success', 'error', 'success'):
            entry = sync_log_repo.create_sync_log('tenant-1', 'from_remote')
            sync_log_repo.finalize_sync_log(entry.id, status, duration_ms=100)
        sync_log_repo.create_sync_log('tenant-2', 'from_remote')

        logs = sync_log_repo.get_sync_logs_by_tenant('tenant-1')
        assert len(logs) == 3
        assert logs[0].id > logs[-1].id
        assert len(sync_log_repo.get_sync_logs_by_status('tenant-1', 'error')) == 1
        assert len(sync_log_repo.get_recent_failures('tenant-1')) == 1

        stats = sync_log_repo.get_sync_stats('tenant-1')
        assert stats['total'] == 3
        assert stats['by_status'] == {'success': 2, 'error': 1}
        assert stats['success_rate'] == pytest.approx(200 / 3)
        assert stats['avg_duration_ms'] == pytest.approx(100.0)


class TestMappingRepository:
    """Test identity mapping persistence."""

    def test_create_mapping_is_idempotent(self, mapping_repo, integration, db_session):
        first = mapping_repo.create_mapping('tenant-1', integration.id, 'local-1', 'REMOTE-1', remote_version=1)
        second = mapping_repo.create_mapping('tenant-1', integration.id, 'local-1', 'REMOTE-1', remote_version=2)

        assert first.id == second.id
        assert second.remote_version == 2
        assert db_session.query(IdentityMapping).count() == 1

    def test_existing_mapping_is_reactivated(self, mapping_repo, integration):
        mapping = mapping_repo.create_mapping('tenant-1', integration.id, 'local-1', 'REMOTE-1')
        mapping_repo.set_status(mapping, MappingStatus.ERROR.value, 'remote object missing')

        again = mapping_repo.create_mapping('tenant-1', integration.id, 'local-1', 'REMOTE-2')

        assert again.id == mapping.id
        assert again.remote_object_id == 'REMOTE-2'
        assert again.sync_status == 'active'
        assert again.last_error is None

    def test_lookups(self, mapping_repo, integration):
        mapping = mapping_repo.create_mapping('tenant-1', integration.id, 'local-1', 'REMOTE-1')

        assert mapping_repo.get_mapping_by_local_id('tenant-1', 'local-1').id == mapping.id
        assert mapping_repo.get_mapping_by_local_id('tenant-2', 'local-1') is None
        assert mapping_repo.get_mapping_by_remote_id(integration.id, 'REMOTE-1').id == mapping.id
        assert mapping_repo.list_mappings(integration.id, status='active') == [mapping]
        assert mapping_repo.list_mappings(integration.id, status='paused') == []

    def test_touch_and_allows(self, mapping_repo, integration):
        mapping = mapping_repo.create_mapping('tenant-1', integration.id, 'local-1', 'REMOTE-1',
                                              sync_direction='from_remote')
        mapping_repo.touch(mapping, last_remote_update=datetime(2024, 1, 2), remote_version=5)

        assert mapping.remote_version == 5
        assert mapping.last_remote_update == datetime(2024, 1, 2)
        assert mapping.allows('from_remote')
        assert not mapping.allows('to_remote')

    def test_invalid_status_rejected(self, mapping_repo, integration):
        mapping = mapping_repo.create_mapping('tenant-1', integration.id, 'local-1', 'REMOTE-1')
        with pytest.raises(ValueError):
            mapping.sync_status = 'broken'

    def test_delete_removes_reviews(self, mapping_repo, review_repo, integration, db_session):
        mapping = mapping_repo.create_mapping('tenant-1', integration.id, 'local-1', 'REMOTE-1')
        review_repo.enqueue('tenant-1', mapping.id, 'price', 50.0, 10.0, 50.0, 'too far apart')

        assert mapping_repo.delete_mapping(mapping.id)
        assert db_session.query(ConflictReview).count() == 0
        assert mapping_repo.get_mapping(mapping.id) is None


class TestConflictReviewRepository:
    """Test the persisted manual review queue."""

    @pytest.fixture
    def mapping(self, mapping_repo, integration):
        return mapping_repo.create_mapping('tenant-1', integration.id, 'local-1', 'REMOTE-1')

    def test_enqueue_upserts_pending_entry(self, review_repo, mapping, db_session):
        first = review_repo.enqueue('tenant-1', mapping.id, 'price', 50.0, 10.0, 50.0, 'first')
        second = review_repo.enqueue('tenant-1', mapping.id, 'price', 60.0, 10.0, 60.0, 'second')

        assert first.id == second.id
        assert second.remote_value == 60.0
        assert second.reason == 'second'
        assert db_session.query(ConflictReview).count() == 1

    def test_resolve_and_requeue(self, review_repo, mapping):
        review = review_repo.enqueue('tenant-1', mapping.id, 'price', 50.0, 10.0, 50.0, 'first')

        resolved = review_repo.resolve(review.id, 45.0, resolved_by='ops')
        assert resolved.status == ReviewStatus.RESOLVED.value
        assert resolved.resolved_value == 45.0
        assert review_repo.resolve(review.id, 1.0) is None

        fresh = review_repo.enqueue('tenant-1', mapping.id, 'price', 70.0, 10.0, 70.0, 'again')
        assert fresh.id != review.id
        assert [r.id for r in review_repo.get_pending('tenant-1')] == [fresh.id]

    def test_dismiss_all(self, review_repo, mapping):
        review_repo.enqueue('tenant-1', mapping.id, 'price', 50.0, 10.0, 50.0, 'r')
        review_repo.enqueue('tenant-1', mapping.id, 'name', 'A', 'B', 'A', 'r')

        assert review_repo.dismiss_all('tenant-1', resolved_by='ops') == 2
        assert review_repo.get_pending('tenant-1') == []


class TestIntegrationRepository:
    """Test integration bookkeeping."""

    def test_upsert_keeps_single_enabled(self, integration_repo, integration):
        updated = integration_repo.upsert_credentials('tenant-1', 'enc-a', 'enc-r', None, 'MERCHANT-2')

        assert updated.id == integration.id
        assert updated.merchant_id == 'MERCHANT-2'
        assert integration_repo.get_enabled('tenant-1').id == integration.id

    def test_disable_and_record_sync(self, integration_repo, integration):
        integration_repo.record_sync(integration, succeeded=False, error='boom')
        assert integration.last_error == 'boom'
        assert integration.last_sync_at is None

        integration_repo.record_sync(integration, succeeded=True)
        assert integration.last_error is None
        assert integration.last_sync_at is not None

        integration_repo.disable(integration, error='revoked', clear_credentials=True)
        assert integration_repo.get_enabled('tenant-1') is None
        assert integration.access_token_encrypted is None
        assert integration_repo.get_latest('tenant-1').id == integration.id
