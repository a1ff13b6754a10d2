"""
Reddit API Integration Client

Thin async client over the Reddit OAuth API used by the lead engagement
pipeline: refresh-token exchange, comment posting, private messages and the
unread inbox. Every call is made exactly once with a bounded timeout;
failures are raised as typed errors for the caller to record.
"""
import logging
from dataclasses import dataclass
from enum import Enum
from typing import Dict, Any, List, Optional

import httpx

from leadengine.core.config import get_settings
from leadengine.core.http_client import HTTPClient, get_http_client

logger = logging.getLogger(__name__)


class RedditAPIError(Exception):
    """Non-success answer from the Reddit API"""

    def __init__(self, message: str, status_code: Optional[int] = None):
        super().__init__(message)
        self.status_code = status_code


class TokenRefreshError(RedditAPIError):
    """Refresh-token exchange failed"""
    pass


class PostingErrorKind(str, Enum):
    UNAUTHORIZED = "unauthorized"
    FORBIDDEN = "forbidden"
    RATE_LIMITED = "rate_limited"
    OTHER = "other"


POSTING_ERROR_REASONS = {
    PostingErrorKind.UNAUTHORIZED: "Reddit authentication expired - user needs to reconnect",
    PostingErrorKind.FORBIDDEN: "Not allowed to post in this subreddit - may be banned or restricted",
    PostingErrorKind.RATE_LIMITED: "Rate limited by Reddit - try again later",
}


class PostingError(RedditAPIError):
    """Comment could not be posted; ``kind`` classifies the HTTP failure"""

    def __init__(self, kind: PostingErrorKind, message: str, status_code: Optional[int] = None):
        super().__init__(message, status_code)
        self.kind = kind

    @property
    def reason(self) -> str:
        """Human readable failure reason stored on the moderation item"""
        return POSTING_ERROR_REASONS.get(self.kind, self.args[0])

    @classmethod
    def from_status(cls, status_code: int) -> "PostingError":
        kind = {
            401: PostingErrorKind.UNAUTHORIZED,
            403: PostingErrorKind.FORBIDDEN,
            429: PostingErrorKind.RATE_LIMITED,
        }.get(status_code, PostingErrorKind.OTHER)
        return cls(kind, f"Reddit API error: {status_code}", status_code)


@dataclass
class TokenGrant:
    """Answer of the refresh-token exchange"""
    access_token: str
    refresh_token: str
    expires_in: int
    scope: Optional[str] = None


@dataclass
class PostedComment:
    remote_id: str
    permalink: Optional[str]


@dataclass
class RedditInboxMessage:
    id: str
    name: str  # fullname, e.g. t4_abc
    kind: str  # private_message, comment_reply
    author: Optional[str]
    body: str
    subject: Optional[str] = None
    parent_id: Optional[str] = None
    created_utc: Optional[float] = None


MESSAGE_KINDS = {
    "t4": "private_message",
    "t1": "comment_reply",
}


def normalize_thing_id(target_id: str, is_comment: bool) -> str:
    """Prefix a bare id with t1_ (comment) or t3_ (post)"""
    if target_id.startswith(("t1_", "t3_", "t4_")):
        return target_id
    return f"t1_{target_id}" if is_comment else f"t3_{target_id}"


def _payload(response: httpx.Response) -> Dict[str, Any]:
    """JSON object body; ValueError when Reddit answered with something else (e.g. an HTML error page)"""
    payload = response.json()
    if not isinstance(payload, dict):
        raise ValueError(f"Expected a JSON object, got {type(payload).__name__}")
    return payload


def _json_errors(payload: Dict[str, Any]) -> List[str]:
    errors = (payload.get("json") or {}).get("errors") or []
    messages = []
    for error in errors:
        if isinstance(error, (list, tuple)) and error:
            messages.append(str(error[1] if len(error) > 1 and error[1] else error[0]))
        else:
            messages.append(str(error))
    return messages


class RedditAPIClient:
    """
    Reddit OAuth API client

    Args:
        http_client: Shared HTTP client; tests pass one built on httpx.MockTransport
    """

    def __init__(self, http_client: Optional[HTTPClient] = None):
        self.settings = get_settings()
        self.http = http_client or get_http_client()
        self.api_base = self.settings.reddit_api_base.rstrip("/")

    def _auth_headers(self, access_token: str) -> Dict[str, str]:
        return {
            "Authorization": f"Bearer {access_token}",
            "User-Agent": self.settings.reddit_user_agent,
        }

    async def refresh_access_token(self, refresh_token: str) -> TokenGrant:
        """
        Exchange a refresh token for a new access token.

        Args:
            refresh_token: Current (decrypted) refresh token

        Returns:
            TokenGrant; when Reddit does not rotate the refresh token the
            previous one is carried over

        Raises:
            TokenRefreshError: On transport failure or non-200 answer
        """
        if not self.settings.reddit_client_id:
            raise TokenRefreshError("REDDIT_CLIENT_ID is not configured")

        try:
            response = await self.http.post(
                self.settings.reddit_token_url,
                auth=(self.settings.reddit_client_id, ""),
                data={"grant_type": "refresh_token", "refresh_token": refresh_token},
                headers={"User-Agent": self.settings.reddit_user_agent},
            )
        except httpx.HTTPError as e:
            raise TokenRefreshError(f"Token refresh request failed: {e}")

        if response.status_code != 200:
            raise TokenRefreshError(f"Token refresh failed: {response.status_code}", response.status_code)

        try:
            payload = _payload(response)
        except ValueError as e:
            raise TokenRefreshError(f"Token refresh answer was not JSON: {e}", response.status_code)

        access_token = payload.get("access_token")
        if not access_token:
            raise TokenRefreshError("Token refresh answer did not contain an access token")

        return TokenGrant(
            access_token=access_token,
            refresh_token=payload.get("refresh_token") or refresh_token,
            expires_in=int(payload.get("expires_in", 3600)),
            scope=payload.get("scope"),
        )

    async def post_comment(self, access_token: str, thing_id: str, text: str) -> PostedComment:
        """
        Post a comment under a post (t3_) or another comment (t1_).

        Raises:
            PostingError: kind reflects 401/403/429; API-level errors are kind=other
        """
        try:
            response = await self.http.post(
                f"{self.api_base}/api/comment",
                data={"thing_id": thing_id, "text": text, "api_type": "json"},
                headers=self._auth_headers(access_token),
            )
        except httpx.HTTPError as e:
            raise PostingError(PostingErrorKind.OTHER, f"Reddit request failed: {e}")

        if response.status_code != 200:
            raise PostingError.from_status(response.status_code)

        try:
            payload = _payload(response)
        except ValueError as e:
            raise PostingError(PostingErrorKind.OTHER, f"Reddit answer was not JSON: {e}", response.status_code)

        errors = _json_errors(payload)
        if errors:
            raise PostingError(PostingErrorKind.OTHER, ", ".join(errors), response.status_code)

        things = ((payload.get("json") or {}).get("data") or {}).get("things") or []
        data = things[0].get("data", {}) if things else {}
        comment_id = data.get("id", "")
        remote_id = data.get("name") or (f"t1_{comment_id}" if comment_id else "")
        permalink = f"https://reddit.com{data['permalink']}" if data.get("permalink") else None
        return PostedComment(remote_id=remote_id, permalink=permalink)

    async def compose(self, access_token: str, recipient: str, subject: str, body: str) -> None:
        """Send a new private message"""
        response = await self.http.post(
            f"{self.api_base}/api/compose",
            data={"to": recipient, "subject": subject, "text": body, "api_type": "json"},
            headers=self._auth_headers(access_token),
        )
        self._raise_for_answer(response, "compose")

    async def reply(self, access_token: str, parent_id: str, body: str) -> None:
        """Reply to a private message or comment; bare ids are treated as private messages"""
        if not parent_id.startswith(("t1_", "t3_", "t4_")):
            parent_id = f"t4_{parent_id}"
        response = await self.http.post(
            f"{self.api_base}/api/comment",
            data={"thing_id": parent_id, "text": body, "api_type": "json"},
            headers=self._auth_headers(access_token),
        )
        self._raise_for_answer(response, "reply")

    async def fetch_unread(self, access_token: str) -> List[RedditInboxMessage]:
        """Fetch unread private messages and comment replies"""
        response = await self.http.get(
            f"{self.api_base}/message/unread",
            headers=self._auth_headers(access_token),
        )
        if response.status_code != 200:
            raise RedditAPIError(f"Reddit API error: {response.status_code}", response.status_code)

        try:
            payload = _payload(response)
        except ValueError as e:
            raise RedditAPIError(f"Reddit inbox answer was not JSON: {e}", response.status_code)

        children = (payload.get("data") or {}).get("children") or []
        messages = []
        for child in children:
            data = child.get("data") or {}
            kind = child.get("kind", "t4")
            messages.append(RedditInboxMessage(
                id=data.get("id", ""),
                name=data.get("name") or f"{kind}_{data.get('id', '')}",
                kind=MESSAGE_KINDS.get(kind, "private_message"),
                author=data.get("author"),
                body=data.get("body", ""),
                subject=data.get("subject"),
                parent_id=data.get("parent_id"),
                created_utc=data.get("created_utc"),
            ))
        return messages

    async def mark_read(self, access_token: str, message_id: str) -> None:
        """Mark an inbox item as read"""
        if not message_id.startswith(("t1_", "t4_")):
            message_id = f"t4_{message_id}"
        response = await self.http.post(
            f"{self.api_base}/api/read_message",
            data={"id": message_id},
            headers=self._auth_headers(access_token),
        )
        if response.status_code != 200:
            raise RedditAPIError(f"Reddit API error: {response.status_code}", response.status_code)

    def _raise_for_answer(self, response: httpx.Response, operation: str) -> None:
        if response.status_code != 200:
            raise RedditAPIError(f"Reddit {operation} failed: {response.status_code}", response.status_code)
        try:
            payload = _payload(response)
        except ValueError as e:
            raise RedditAPIError(f"Reddit {operation} answer was not JSON: {e}", response.status_code)

        errors = _json_errors(payload)
        if errors:
            raise RedditAPIError(f"Reddit {operation} failed: {', '.join(errors)}", response.status_code)


_reddit_client: Optional[RedditAPIClient] = None


def get_reddit_client() -> RedditAPIClient:
    """Get the process-wide Reddit API client"""
    global _reddit_client
    if _reddit_client is None:
        _reddit_client = RedditAPIClient()
    return _reddit_client
