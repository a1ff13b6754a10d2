"""
Reddit direct-message transport bound to one user
"""
import logging
from typing import List

import httpx

from leadengine.integrations.reddit_client import RedditAPIClient, RedditAPIError
from leadengine.services.interfaces import InboundItem, MessagingTransport, TokenProvider, TransportResult

logger = logging.getLogger(__name__)

NOT_AUTHENTICATED = "Not authenticated with Reddit"


class RedditMessagingTransport(MessagingTransport):
    """
    Sends and receives Reddit private messages for ``user_id``.

    A fresh access token is requested from the token provider for every
    call, so refreshes happen transparently between polls.
    """

    def __init__(self, user_id: str, tokens: TokenProvider, reddit_client: RedditAPIClient):
        self.user_id = user_id
        self.tokens = tokens
        self.reddit_client = reddit_client

    async def _token(self) -> str:
        token = await self.tokens.get_valid_access_token(self.user_id)
        if not token:
            raise RedditAPIError(NOT_AUTHENTICATED, 401)
        return token

    async def send(self, recipient: str, subject: str, body: str) -> TransportResult:
        try:
            await self.reddit_client.compose(await self._token(), recipient, subject, body)
        except (RedditAPIError, httpx.HTTPError) as e:
            logger.warning(f"DM to {recipient} failed for user {self.user_id}: {e}")
            return TransportResult(success=False, error=str(e))
        return TransportResult(success=True)

    async def reply(self, parent_id: str, body: str) -> TransportResult:
        try:
            await self.reddit_client.reply(await self._token(), parent_id, body)
        except (RedditAPIError, httpx.HTTPError) as e:
            logger.warning(f"Reply to {parent_id} failed for user {self.user_id}: {e}")
            return TransportResult(success=False, error=str(e))
        return TransportResult(success=True)

    async def fetch_unread(self) -> List[InboundItem]:
        messages = await self.reddit_client.fetch_unread(await self._token())
        return [
            InboundItem(
                id=message.name,
                type=message.kind,
                author=message.author,
                body=message.body,
                extra={"subject": message.subject, "parent_id": message.parent_id},
            )
            for message in messages
        ]

    async def acknowledge(self, item_id: str) -> None:
        await self.reddit_client.mark_read(await self._token(), item_id)
