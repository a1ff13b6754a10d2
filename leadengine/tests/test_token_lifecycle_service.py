"""
Unit tests for the Reddit token lifecycle manager
"""
import asyncio

import httpx
import pytest
from unittest.mock import AsyncMock
from cryptography.fernet import Fernet

from leadengine.core.config import Settings
from leadengine.core.encryption import TokenEncryption
from leadengine.core.http_client import HTTPClient
from leadengine.db.models import RedditAccount
from leadengine.integrations.reddit_client import RedditAPIClient, TokenGrant, TokenRefreshError
from leadengine.services.token_lifecycle_service import TokenLifecycleManager

NOW = 1_000_000.0


@pytest.fixture
def encryption():
    return TokenEncryption(key=Fernet.generate_key().decode())


@pytest.fixture
def reddit_client():
    client = AsyncMock()
    client.refresh_access_token.return_value = TokenGrant(
        access_token="new-access", refresh_token="new-refresh", expires_in=3600
    )
    return client


@pytest.fixture
def manager(db_session, reddit_client, encryption):
    return TokenLifecycleManager(db_session, reddit_client=reddit_client, encryption=encryption, clock=lambda: NOW)


def store_account(manager, expires_in):
    return manager.store_tokens("user-1", "old-access", "old-refresh", expires_in, reddit_username="agent_bot")


class TestTokenLifecycle:
    """Test access token refresh"""

    @pytest.mark.asyncio
    async def test_fresh_token_needs_no_network(self, manager, reddit_client):
        """Test a token valid beyond the margin is returned as stored"""
        store_account(manager, expires_in=3600)

        assert await manager.get_valid_access_token("user-1") == "old-access"
        reddit_client.refresh_access_token.assert_not_awaited()

    @pytest.mark.asyncio
    async def test_expiring_token_is_refreshed_and_persisted(self, manager, db_session, reddit_client, encryption):
        """Test a token inside the refresh margin is exchanged and stored encrypted"""
        account = store_account(manager, expires_in=120)

        assert await manager.get_valid_access_token("user-1") == "new-access"

        reddit_client.refresh_access_token.assert_awaited_once_with("old-refresh")
        db_session.refresh(account)
        assert account.expires_at == NOW + 3600
        assert encryption.decrypt(account.access_token_encrypted) == "new-access"
        assert encryption.decrypt(account.refresh_token_encrypted) == "new-refresh"
        assert account.access_token_encrypted != "new-access"

    @pytest.mark.asyncio
    async def test_concurrent_callers_refresh_once(self, manager, reddit_client):
        """Test racing callers share a single refresh"""
        store_account(manager, expires_in=0)

        async def slow_refresh(refresh_token):
            await asyncio.sleep(0)
            return TokenGrant(access_token="new-access", refresh_token="new-refresh", expires_in=3600)

        reddit_client.refresh_access_token.side_effect = slow_refresh

        tokens = await asyncio.gather(
            manager.get_valid_access_token("user-1"),
            manager.get_valid_access_token("user-1"),
        )

        assert tokens == ["new-access", "new-access"]
        reddit_client.refresh_access_token.assert_awaited_once()

    @pytest.mark.asyncio
    async def test_failed_refresh_returns_none(self, manager, reddit_client):
        """Test a rejected refresh token is reported as no token"""
        store_account(manager, expires_in=0)
        reddit_client.refresh_access_token.side_effect = TokenRefreshError("invalid_grant", 400)

        assert await manager.get_valid_access_token("user-1") is None

    @pytest.mark.asyncio
    async def test_html_refresh_answer_returns_none(self, db_session, encryption):
        """Test an HTML page from the token endpoint is reported as no token"""
        client = RedditAPIClient(http_client=HTTPClient(transport=httpx.MockTransport(
            lambda request: httpx.Response(200, text="<html>servers busy</html>")
        )))
        client.settings = Settings(reddit_client_id="client-id")
        manager = TokenLifecycleManager(db_session, reddit_client=client, encryption=encryption, clock=lambda: NOW)
        account = store_account(manager, expires_in=0)

        assert await manager.get_valid_access_token("user-1") is None
        db_session.refresh(account)
        assert encryption.decrypt(account.access_token_encrypted) == "old-access"

    @pytest.mark.asyncio
    async def test_missing_account_returns_none(self, manager, reddit_client):
        """Test a user without a connected account"""
        assert await manager.get_valid_access_token("nobody") is None
        reddit_client.refresh_access_token.assert_not_awaited()

    @pytest.mark.asyncio
    async def test_inactive_account_returns_none(self, manager, db_session):
        """Test a disconnected account yields no token"""
        account = store_account(manager, expires_in=3600)
        account.is_active = False
        db_session.commit()

        assert await manager.get_valid_access_token("user-1") is None


class TestStoreTokens:
    """Test storing tokens after an OAuth connect"""

    def test_store_replaces_existing_record(self, manager, db_session, encryption):
        """Test reconnecting updates the single account record"""
        store_account(manager, expires_in=3600)
        manager.store_tokens("user-1", "second-access", "second-refresh", 60, scopes=["privatemessages"])

        account = db_session.query(RedditAccount).one()
        assert encryption.decrypt(account.access_token_encrypted) == "second-access"
        assert account.expires_at == NOW + 60
        assert account.scopes == ["privatemessages"]
        assert account.reddit_username == "agent_bot"
        assert manager.needs_refresh(account) is True
