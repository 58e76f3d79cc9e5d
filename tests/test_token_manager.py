"""Tests for the token manager and OAuth helpers."""
import asyncio
import pytest
from datetime import datetime, timedelta
from unittest.mock import AsyncMock
from urllib.parse import parse_qs, urlparse

from exceptions import AuthError, OAuthStateError, TransientRemoteError
from models import Integration
from oauth_client import PosOAuthClient, TokenResponse, generate_state, verify_state
from token_encryption import TokenEncryptionService
from token_manager import TokenManager


NOW = datetime(2024, 5, 1, 12, 0, 0)


@pytest.fixture
def oauth_client():
    return PosOAuthClient('client-id', 'client-secret', 'https://app.example.com/callback',
                          'https://connect.squareupsandbox.com', scopes='ITEMS_READ ITEMS_WRITE')


@pytest.fixture
def manager(db_session, oauth_client, encryption):
    return TokenManager(db_session, oauth_client, encryption, refresh_buffer=timedelta(days=1), now=lambda: NOW)


def token_response(access='new-access', refresh='new-refresh', days=30):
    return TokenResponse(access_token=access, refresh_token=refresh,
                         expires_at=NOW + timedelta(days=days), merchant_id='MERCHANT-1',
                         scopes=['ITEMS_READ'])


class TestTokenEncryption:
    """Test credential encryption."""

    def test_round_trip_and_none(self, encryption):
        secret = encryption.encrypt('abc')
        assert secret != 'abc'
        assert encryption.decrypt(secret) == 'abc'
        assert encryption.encrypt(None) is None
        assert encryption.decrypt(None) is None

    def test_foreign_ciphertext_is_auth_error(self, encryption):
        other = TokenEncryptionService(secret='another-secret')
        with pytest.raises(AuthError):
            encryption.decrypt(other.encrypt('abc'))


class TestOAuthState:
    """Test signed OAuth state values."""

    def test_round_trip(self):
        state = generate_state('tenant-1', 'secret', now=1000)
        assert verify_state(state, 'secret', now=1100) == 'tenant-1'

    def test_tampered_or_foreign_secret(self):
        state = generate_state('tenant-1', 'secret', now=1000)
        with pytest.raises(OAuthStateError):
            verify_state(state, 'other-secret', now=1000)
        with pytest.raises(OAuthStateError):
            verify_state('not-a-state', 'secret', now=1000)

    def test_expired(self):
        state = generate_state('tenant-1', 'secret', now=1000)
        with pytest.raises(OAuthStateError):
            verify_state(state, 'secret', now=1000 + 601)

    def test_authorization_url(self, oauth_client):
        url = oauth_client.build_authorization_url('tenant-1')
        parsed = urlparse(url)
        query = parse_qs(parsed.query)

        assert parsed.path == '/oauth2/authorize'
        assert query['client_id'] == ['client-id']
        assert query['session'] == ['false']
        assert query['scope'] == ['ITEMS_READ ITEMS_WRITE']
        assert oauth_client.verify_state(query['state'][0]) == 'tenant-1'

    def test_token_response_payload(self):
        response = TokenResponse.from_payload({
            'access_token': 'a', 'refresh_token': 'r', 'expires_at': '2024-06-01T00:00:00Z',
            'merchant_id': 'M', 'scope': 'ITEMS_READ ITEMS_WRITE'
        })
        assert response.expires_at == datetime(2024, 6, 1)
        assert response.scopes == ['ITEMS_READ', 'ITEMS_WRITE']
        with pytest.raises(AuthError):
            TokenResponse.from_payload({'refresh_token': 'r'})


class TestGetValidToken:
    """Test token retrieval and refresh."""

    @pytest.mark.asyncio
    async def test_returns_current_token_outside_buffer(self, manager, integration, oauth_client):
        integration.token_expires_at = NOW + timedelta(days=10)
        oauth_client.refresh_token = AsyncMock()

        assert await manager.get_valid_token('tenant-1') == 'access-token'
        oauth_client.refresh_token.assert_not_called()

    @pytest.mark.asyncio
    async def test_refreshes_inside_buffer(self, manager, integration, oauth_client, encryption):
        integration.token_expires_at = NOW + timedelta(hours=2)
        oauth_client.refresh_token = AsyncMock(return_value=token_response())

        assert await manager.get_valid_token('tenant-1') == 'new-access'
        oauth_client.refresh_token.assert_awaited_once_with('refresh-token')
        assert integration.token_expires_at == NOW + timedelta(days=30)
        assert encryption.decrypt(integration.refresh_token_encrypted) == 'new-refresh'

    @pytest.mark.asyncio
    async def test_concurrent_callers_share_one_refresh(self, manager, integration, oauth_client):
        integration.token_expires_at = NOW + timedelta(hours=2)
        gate = asyncio.Event()
        calls = []

        async def refresh_token(token):
            calls.append(token)
            await gate.wait()
            return token_response()

        oauth_client.refresh_token = refresh_token

        first = asyncio.ensure_future(manager.get_valid_token('tenant-1'))
        second = asyncio.ensure_future(manager.get_valid_token('tenant-1'))
        await asyncio.sleep(0)
        gate.set()
        tokens = await asyncio.gather(first, second)

        assert tokens == ['new-access', 'new-access']
        assert calls == ['refresh-token']

    @pytest.mark.asyncio
    async def test_refresh_rejected_disables_integration(self, manager, integration, oauth_client):
        integration.token_expires_at = NOW - timedelta(hours=1)
        oauth_client.refresh_token = AsyncMock(side_effect=AuthError("invalid_grant"))

        with pytest.raises(AuthError):
            await manager.get_valid_token('tenant-1')

        assert integration.enabled is False
        assert 'Token refresh failed' in integration.last_error
        with pytest.raises(AuthError):
            await manager.get_valid_token('tenant-1')

    @pytest.mark.asyncio
    async def test_missing_refresh_token(self, manager, integration):
        integration.token_expires_at = NOW
        integration.refresh_token_encrypted = None

        with pytest.raises(AuthError):
            await manager.refresh('tenant-1')
        assert integration.enabled is False

    @pytest.mark.asyncio
    async def test_no_integration(self, manager):
        with pytest.raises(AuthError):
            await manager.get_valid_token('unknown-tenant')

    def test_needs_refresh_without_expiry(self, manager, integration):
        integration.token_expires_at = None
        assert manager.needs_refresh(integration) is False


class TestConnectAndRevoke:
    """Test code exchange and revocation."""

    @pytest.mark.asyncio
    async def test_exchange_code_stores_encrypted_tokens(self, manager, oauth_client, encryption, db_session):
        oauth_client.exchange_code = AsyncMock(return_value=token_response('fresh-access', 'fresh-refresh'))
        state = generate_state('tenant-2', 'client-secret')

        integration = await manager.exchange_code('auth-code', 'tenant-2', state=state)

        assert integration.enabled is True
        assert integration.merchant_id == 'MERCHANT-1'
        assert integration.access_token_encrypted != 'fresh-access'
        assert encryption.decrypt(integration.access_token_encrypted) == 'fresh-access'
        assert db_session.query(Integration).filter_by(tenant_id='tenant-2').count() == 1

    @pytest.mark.asyncio
    async def test_exchange_code_rejects_state_for_other_tenant(self, manager, oauth_client):
        oauth_client.exchange_code = AsyncMock()
        state = generate_state('tenant-1', 'client-secret')

        with pytest.raises(OAuthStateError):
            await manager.exchange_code('auth-code', 'tenant-2', state=state)
        oauth_client.exchange_code.assert_not_called()

    @pytest.mark.asyncio
    async def test_reconnect_reuses_integration(self, manager, integration, oauth_client):
        oauth_client.exchange_code = AsyncMock(return_value=token_response())

        reconnected = await manager.exchange_code('auth-code', 'tenant-1')

        assert reconnected.id == integration.id

    @pytest.mark.asyncio
    async def test_revoke_clears_credentials(self, manager, integration, oauth_client):
        oauth_client.revoke_token = AsyncMock()

        await manager.revoke('tenant-1')

        oauth_client.revoke_token.assert_awaited_once_with('access-token')
        assert integration.enabled is False
        assert integration.access_token_encrypted is None
        assert integration.refresh_token_encrypted is None

    @pytest.mark.asyncio
    async def test_revoke_is_best_effort(self, manager, integration, oauth_client):
        oauth_client.revoke_token = AsyncMock(side_effect=TransientRemoteError("connection reset"))

        await manager.revoke('tenant-1')

        assert integration.enabled is False
        assert integration.access_token_encrypted is None

    def test_status_never_exposes_tokens(self, manager, integration):
        status = manager.get_status('tenant-1')

        assert status['connected'] is True
        assert status['merchant_id'] == 'MERCHANT-1'
        assert 'access_token_encrypted' not in status
        assert 'refresh_token_encrypted' not in status
        assert manager.get_status('tenant-9') == {'connected': False, 'last_error': None}
