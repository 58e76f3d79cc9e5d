"""Pytest configuration and fixtures for the test suite."""
import copy
from datetime import datetime, timedelta

import pytest
from sqlalchemy import create_engine
from sqlalchemy.orm import sessionmaker
from sqlalchemy.pool import StaticPool

from batch_executor import BatchConfig
from catalog_sync import CatalogSyncOrchestrator
from conflict_resolver import ConflictResolver
from models import Base, Integration, InventoryItem
from pos_catalog_client import CatalogPage
from repositories import (
    ConflictReviewRepository, IntegrationRepository, InventoryRepository,
    MappingRepository, SyncLogRepository
)
from token_encryption import TokenEncryptionService


class FakeClock:
    """Monotonic clock that only moves when something sleeps on it."""

    def __init__(self, start=1000.0):
        self.now = start
        self.sleeps = []

    def __call__(self):
        return self.now

    def advance(self, seconds):
        self.now += seconds

    async def sleep(self, seconds):
        self.sleeps.append(seconds)
        self.now += seconds


class FakeCatalogClient:
    """In-memory remote catalog with failure injection."""

    def __init__(self, page_size=100):
        self.page_size = page_size
        self.objects = {}
        self.upserts = []
        self.deleted = []
        self.list_calls = 0
        self.list_errors = []
        self.upsert_errors = {}
        self._next_id = 1

    def add_item(self, remote_id, name, price=None, sku=None, description=None,
                 category_id=None, updated_at=None, version=1, is_deleted=False):
        variation_data = {'name': 'Regular', 'pricing_type': 'FIXED_PRICING'}
        if sku:
            variation_data['sku'] = sku
        if price is not None:
            variation_data['price_money'] = {'amount': int(round(price * 100)), 'currency': 'USD'}
        item_data = {
            'name': name,
            'variations': [{
                'type': 'ITEM_VARIATION',
                'id': f'{remote_id}-VAR',
                'item_variation_data': variation_data
            }]
        }
        if description is not None:
            item_data['description'] = description
        if category_id is not None:
            item_data['category_id'] = category_id

        self.objects[remote_id] = {
            'type': 'ITEM',
            'id': remote_id,
            'version': version,
            'is_deleted': is_deleted,
            'updated_at': (updated_at or datetime(2024, 1, 1)).isoformat() + 'Z',
            'item_data': item_data
        }
        return self.objects[remote_id]

    async def list_catalog_objects(self, cursor=None, types='ITEM'):
        self.list_calls += 1
        if self.list_errors:
            raise self.list_errors.pop(0)
        ids = sorted(self.objects)
        start = int(cursor) if cursor else 0
        page = [copy.deepcopy(self.objects[i]) for i in ids[start:start + self.page_size]]
        next_start = start + self.page_size
        return CatalogPage(objects=page, next_cursor=str(next_start) if next_start < len(ids) else None)

    async def upsert_catalog_object(self, catalog_object, idempotency_key):
        self.upserts.append((copy.deepcopy(catalog_object), idempotency_key))
        name = catalog_object['item_data']['name']
        if name in self.upsert_errors:
            raise self.upsert_errors[name]

        saved = copy.deepcopy(catalog_object)
        if saved['id'].startswith('#'):
            saved['id'] = f'REMOTE-{self._next_id}'
            self._next_id += 1
        previous = self.objects.get(saved['id'])
        saved['version'] = (previous or {}).get('version', 0) + 1
        saved['updated_at'] = '2024-06-01T00:00:00Z'
        for variation in saved['item_data']['variations']:
            if variation['id'].startswith('#'):
                variation['id'] = f"{saved['id']}-VAR"
            variation['item_variation_data']['item_id'] = saved['id']
        self.objects[saved['id']] = saved
        return copy.deepcopy(saved)

    async def delete_catalog_object(self, object_id):
        self.deleted.append(object_id)
        self.objects.pop(object_id, None)


@pytest.fixture
def db_engine():
    """In-memory SQLite engine with all tables."""
    engine = create_engine(
        'sqlite:///:memory:',
        connect_args={'check_same_thread': False},
        poolclass=StaticPool
    )
    Base.metadata.create_all(engine)
    yield engine
    engine.dispose()


@pytest.fixture
def db_session(db_engine):
    """Database session for a test."""
    session = sessionmaker(bind=db_engine)()
    try:
        yield session
    finally:
        session.rollback()
        session.close()


@pytest.fixture
def sync_log_repo(db_session):
    return SyncLogRepository(db_session)


@pytest.fixture
def mapping_repo(db_session):
    return MappingRepository(db_session)


@pytest.fixture
def integration_repo(db_session):
    return IntegrationRepository(db_session)


@pytest.fixture
def review_repo(db_session):
    return ConflictReviewRepository(db_session)


@pytest.fixture
def inventory_repo(db_session):
    return InventoryRepository(db_session)


@pytest.fixture
def encryption():
    return TokenEncryptionService(key=TokenEncryptionService.generate_key())


@pytest.fixture
def integration(db_session, encryption):
    """An enabled integration for tenant-1 with a token valid for 30 days."""
    record = Integration(
        tenant_id='tenant-1',
        vendor='square',
        access_token_encrypted=encryption.encrypt('access-token'),
        refresh_token_encrypted=encryption.encrypt('refresh-token'),
        token_expires_at=datetime.utcnow() + timedelta(days=30),
        merchant_id='MERCHANT-1',
        mode='sandbox',
        enabled=True
    )
    db_session.add(record)
    db_session.commit()
    return record


@pytest.fixture
def fake_clock():
    return FakeClock()


@pytest.fixture
def fake_client():
    return FakeCatalogClient()


@pytest.fixture
def batch_config():
    """Small batches and no artificial rate cap."""
    return BatchConfig(
        batch_size=10,
        max_concurrent=2,
        retry_attempts=3,
        retry_delay=1.0,
        requests_per_minute=None,
        requests_per_second=None
    )


@pytest.fixture
def resolver():
    return ConflictResolver(price_threshold=10.0)


@pytest.fixture
def make_orchestrator(db_session, integration, fake_client, batch_config, fake_clock):
    """Factory for orchestrators wired to the fake catalog and clock."""
    def factory(**overrides):
        options = dict(
            tenant_id='tenant-1',
            integration=integration,
            session=db_session,
            client=fake_client,
            resolver=ConflictResolver(price_threshold=10.0),
            batch_config=copy.copy(batch_config),
            clock=fake_clock,
            sleep=fake_clock.sleep
        )
        options.update(overrides)
        return CatalogSyncOrchestrator(**options)
    return factory


@pytest.fixture
def local_item(inventory_repo, db_session):
    """Factory for local inventory items."""
    def factory(name, price=None, sku=None, description=None, updated_at=None, tenant_id='tenant-1'):
        item = InventoryItem(
            tenant_id=tenant_id,
            name=name,
            price=price,
            sku=sku,
            description=description,
            updated_at=updated_at or datetime(2024, 1, 1)
        )
        db_session.add(item)
        db_session.commit()
        return item
    return factory


@pytest.fixture
def app():
    """Flask app on a fresh in-memory database."""
    from app import create_app
    from database import close_database

    flask_app = create_app('testing')
    yield flask_app
    close_database()


@pytest.fixture
def client(app):
    return app.test_client()


@pytest.fixture
def auth_headers(app):
    """Create authentication headers for API testing."""
    with app.app_context():
        from flask_jwt_extended import create_access_token
        access_token = create_access_token(identity="test-user")
        return {"Authorization": f"Bearer {access_token}"}
