"""
Token Lifecycle Service

Hands out Reddit access tokens that stay valid for at least the configured
refresh margin, refreshing and persisting them first when they are about to
expire. Refreshes are serialised per user within the process.
"""
import logging
import time
from typing import Callable, List, Optional

from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from leadengine.core.config import get_settings
from leadengine.core.locks import KeyedLocks
from leadengine.core.encryption import EncryptionError, TokenEncryption, get_encryption
from leadengine.core.metrics import TOKEN_REFRESHES
from leadengine.db.models import RedditAccount
from leadengine.integrations.reddit_client import RedditAPIClient, TokenRefreshError, get_reddit_client
from leadengine.services.interfaces import TokenProvider

logger = logging.getLogger(__name__)

_refresh_locks = KeyedLocks()


class TokenLifecycleManager(TokenProvider):
    """
    Reddit OAuth token lifecycle for one database session

    Args:
        db: Database session
        reddit_client: Client used for the refresh-token exchange
        encryption: Token encryption helper
        clock: Returns the current time in epoch seconds
    """

    def __init__(
        self,
        db: Session,
        reddit_client: Optional[RedditAPIClient] = None,
        encryption: Optional[TokenEncryption] = None,
        clock: Callable[[], float] = time.time
    ):
        self.db = db
        self.reddit_client = reddit_client or get_reddit_client()
        self.encryption = encryption or get_encryption()
        self.clock = clock
        self.refresh_margin = get_settings().token_refresh_margin_seconds

    def _load(self, user_id: str) -> Optional[RedditAccount]:
        return self.db.query(RedditAccount).filter(
            RedditAccount.user_id == user_id,
            RedditAccount.is_active.is_(True)
        ).first()

    def needs_refresh(self, account: RedditAccount) -> bool:
        return self.clock() >= account.expires_at - self.refresh_margin

    async def get_valid_access_token(self, user_id: str) -> Optional[str]:
        """
        Get an access token valid for at least the refresh margin.

        Performs no network call while the stored token is fresh, and exactly
        one refresh-token exchange otherwise.

        Args:
            user_id: Owner of the Reddit account

        Returns:
            Access token, or None when the user has no account or the refresh
            failed. Callers treat None as an authentication failure.
        """
        account = self._load(user_id)
        if account is None:
            logger.info(f"No connected Reddit account for user {user_id}")
            return None

        if not self.needs_refresh(account):
            return self._decrypt(account.access_token_encrypted, user_id)

        async with _refresh_locks.get(user_id):
            # Another coroutine may have refreshed while we waited
            self.db.refresh(account)
            if not self.needs_refresh(account):
                TOKEN_REFRESHES.labels(outcome="already_refreshed").inc()
                return self._decrypt(account.access_token_encrypted, user_id)
            return await self._refresh(account)

    async def _refresh(self, account: RedditAccount) -> Optional[str]:
        user_id = account.user_id
        try:
            refresh_token = self.encryption.decrypt(account.refresh_token_encrypted)
            grant = await self.reddit_client.refresh_access_token(refresh_token)
        except (TokenRefreshError, EncryptionError) as e:
            TOKEN_REFRESHES.labels(outcome="failed").inc()
            logger.warning(f"Token refresh failed for user {user_id}: {e}", extra={"user_id": user_id})
            return None

        try:
            account.access_token_encrypted = self.encryption.encrypt(grant.access_token)
            account.refresh_token_encrypted = self.encryption.encrypt(grant.refresh_token)
            account.expires_at = self.clock() + grant.expires_in
            self.db.commit()
        except SQLAlchemyError as e:
            self.db.rollback()
            TOKEN_REFRESHES.labels(outcome="persist_failed").inc()
            logger.error(f"Failed to persist refreshed token for user {user_id}: {e}", extra={"user_id": user_id})
            return None

        TOKEN_REFRESHES.labels(outcome="refreshed").inc()
        logger.info(f"Refreshed Reddit access token for user {user_id}", extra={"user_id": user_id})
        return grant.access_token

    def _decrypt(self, value: str, user_id: str) -> Optional[str]:
        try:
            return self.encryption.decrypt(value)
        except EncryptionError as e:
            logger.error(f"Stored access token unreadable for user {user_id}: {e}", extra={"user_id": user_id})
            return None

    def store_tokens(
        self,
        user_id: str,
        access_token: str,
        refresh_token: str,
        expires_in: int,
        reddit_username: Optional[str] = None,
        scopes: Optional[List[str]] = None
    ) -> RedditAccount:
        """
        Create or replace the token record after an OAuth connect.

        Args:
            user_id: Owner of the account
            access_token: Raw access token
            refresh_token: Raw refresh token
            expires_in: Lifetime of the access token in seconds
            reddit_username: Connected Reddit username
            scopes: Granted OAuth scopes

        Returns:
            The stored RedditAccount
        """
        account = self.db.query(RedditAccount).filter(RedditAccount.user_id == user_id).first()
        if account is None:
            account = RedditAccount(user_id=user_id)
            self.db.add(account)

        account.access_token_encrypted = self.encryption.encrypt(access_token)
        account.refresh_token_encrypted = self.encryption.encrypt(refresh_token)
        account.expires_at = self.clock() + expires_in
        account.is_active = True
        if reddit_username:
            account.reddit_username = reddit_username
        if scopes is not None:
            account.scopes = scopes

        self.db.commit()
        self.db.refresh(account)
        logger.info(f"Stored Reddit tokens for user {user_id}", extra={"user_id": user_id})
        return account
