"""
Unit tests for the Reddit API client using httpx.MockTransport
"""
import base64
from urllib.parse import parse_qs

import httpx
import pytest
from unittest.mock import AsyncMock

from leadengine.core.config import Settings
from leadengine.core.http_client import HTTPClient
from leadengine.integrations.reddit_client import (
    PostingError,
    PostingErrorKind,
    RedditAPIClient,
    RedditAPIError,
    TokenRefreshError,
    normalize_thing_id,
)
from leadengine.services.reddit_messaging import RedditMessagingTransport

BUSY_PAGE = "<html><body>all of our servers are busy right now</body></html>"


def make_client(handler):
    client = RedditAPIClient(http_client=HTTPClient(transport=httpx.MockTransport(handler)))
    client.settings = Settings(reddit_client_id="client-id")
    return client


def form(request: httpx.Request):
    return {key: values[0] for key, values in parse_qs(request.content.decode()).items()}


class TestThingIds:
    """Test fullname normalization"""

    def test_bare_ids_get_prefix(self):
        """Test bare ids are prefixed by kind"""
        assert normalize_thing_id("abc", is_comment=False) == "t3_abc"
        assert normalize_thing_id("abc", is_comment=True) == "t1_abc"

    def test_fullnames_are_kept(self):
        """Test prefixed ids pass through"""
        assert normalize_thing_id("t3_abc", is_comment=True) == "t3_abc"


class TestTokenRefresh:
    """Test the refresh-token exchange"""

    @pytest.mark.asyncio
    async def test_refresh_uses_basic_auth(self):
        """Test the exchange sends client credentials and keeps the refresh token"""
        seen = {}

        def handler(request):
            seen["auth"] = request.headers["authorization"]
            seen["form"] = form(request)
            return httpx.Response(200, json={"access_token": "new-access", "expires_in": 3600, "scope": "*"})

        grant = await make_client(handler).refresh_access_token("old-refresh")

        assert seen["auth"] == "Basic " + base64.b64encode(b"client-id:").decode()
        assert seen["form"] == {"grant_type": "refresh_token", "refresh_token": "old-refresh"}
        assert grant.access_token == "new-access"
        assert grant.refresh_token == "old-refresh"
        assert grant.expires_in == 3600

    @pytest.mark.asyncio
    async def test_refresh_rejected(self):
        """Test a non-200 answer raises TokenRefreshError"""
        client = make_client(lambda request: httpx.Response(400, json={"error": "invalid_grant"}))

        with pytest.raises(TokenRefreshError) as exc_info:
            await client.refresh_access_token("old-refresh")
        assert exc_info.value.status_code == 400

    @pytest.mark.asyncio
    async def test_refresh_transport_error(self):
        """Test network failures surface as TokenRefreshError"""
        def handler(request):
            raise httpx.ConnectError("connection refused", request=request)

        with pytest.raises(TokenRefreshError):
            await make_client(handler).refresh_access_token("old-refresh")

    @pytest.mark.asyncio
    async def test_refresh_html_answer(self):
        """Test an HTML error page with status 200 raises TokenRefreshError"""
        client = make_client(lambda request: httpx.Response(200, text=BUSY_PAGE))

        with pytest.raises(TokenRefreshError, match="not JSON"):
            await client.refresh_access_token("old-refresh")


class TestPostComment:
    """Test comment posting"""

    @pytest.mark.asyncio
    async def test_post_comment_success(self):
        """Test the remote id and permalink are read from the answer"""
        seen = {}

        def handler(request):
            seen["path"] = request.url.path
            seen["auth"] = request.headers["authorization"]
            seen["form"] = form(request)
            return httpx.Response(200, json={"json": {"errors": [], "data": {"things": [
                {"kind": "t1", "data": {"id": "abc123", "name": "t1_abc123", "permalink": "/r/python/comments/x/_/abc123/"}}
            ]}}})

        posted = await make_client(handler).post_comment("token", "t3_post1", "Nice post")

        assert seen["path"] == "/api/comment"
        assert seen["auth"] == "Bearer token"
        assert seen["form"] == {"thing_id": "t3_post1", "text": "Nice post", "api_type": "json"}
        assert posted.remote_id == "t1_abc123"
        assert posted.permalink == "https://reddit.com/r/python/comments/x/_/abc123/"

    @pytest.mark.asyncio
    @pytest.mark.parametrize("status,kind", [
        (401, PostingErrorKind.UNAUTHORIZED),
        (403, PostingErrorKind.FORBIDDEN),
        (429, PostingErrorKind.RATE_LIMITED),
        (500, PostingErrorKind.OTHER),
    ])
    async def test_post_comment_http_errors(self, status, kind):
        """Test HTTP failures are classified"""
        client = make_client(lambda request: httpx.Response(status, json={}))

        with pytest.raises(PostingError) as exc_info:
            await client.post_comment("token", "t3_post1", "Nice post")
        assert exc_info.value.kind == kind
        assert exc_info.value.status_code == status

    @pytest.mark.asyncio
    async def test_post_comment_api_errors(self):
        """Test errors inside a 200 answer are raised with their message"""
        client = make_client(lambda request: httpx.Response(200, json={"json": {"errors": [
            ["THREAD_LOCKED", "that thread is locked", "parent"]
        ]}}))

        with pytest.raises(PostingError) as exc_info:
            await client.post_comment("token", "t3_post1", "Nice post")
        assert exc_info.value.kind == PostingErrorKind.OTHER
        assert exc_info.value.reason == "that thread is locked"

    @pytest.mark.asyncio
    async def test_post_comment_html_answer(self):
        """Test an HTML answer with status 200 is a posting error of kind other"""
        client = make_client(lambda request: httpx.Response(200, text=BUSY_PAGE))

        with pytest.raises(PostingError) as exc_info:
            await client.post_comment("token", "t3_post1", "Nice post")
        assert exc_info.value.kind == PostingErrorKind.OTHER
        assert exc_info.value.status_code == 200


class TestInbox:
    """Test private messages and the unread inbox"""

    @pytest.mark.asyncio
    async def test_fetch_unread_maps_kinds(self):
        """Test inbox children are mapped to messages"""
        client = make_client(lambda request: httpx.Response(200, json={"data": {"children": [
            {"kind": "t4", "data": {"id": "m1", "name": "t4_m1", "author": "lead_user", "body": "hi", "subject": "Quick question"}},
            {"kind": "t1", "data": {"id": "c1", "name": "t1_c1", "author": "someone", "body": "nice"}},
        ]}}))

        messages = await client.fetch_unread("token")

        assert [(m.name, m.kind, m.author) for m in messages] == [
            ("t4_m1", "private_message", "lead_user"),
            ("t1_c1", "comment_reply", "someone"),
        ]

    @pytest.mark.asyncio
    async def test_mark_read_prefixes_bare_ids(self):
        """Test a bare message id is marked read as a private message"""
        seen = {}

        def handler(request):
            seen["form"] = form(request)
            return httpx.Response(200, json={})

        await make_client(handler).mark_read("token", "m1")

        assert seen["form"] == {"id": "t4_m1"}

    @pytest.mark.asyncio
    async def test_compose_sends_private_message(self):
        """Test a new DM carries recipient and subject"""
        seen = {}

        def handler(request):
            seen["path"] = request.url.path
            seen["form"] = form(request)
            return httpx.Response(200, json={"json": {"errors": []}})

        await make_client(handler).compose("token", "lead_user", "Quick question", "Hey!")

        assert seen["path"] == "/api/compose"
        assert seen["form"]["to"] == "lead_user"
        assert seen["form"]["subject"] == "Quick question"

    @pytest.mark.asyncio
    async def test_html_answers_raise_api_errors(self):
        """Test HTML answers to inbox calls raise RedditAPIError"""
        client = make_client(lambda request: httpx.Response(200, text=BUSY_PAGE))

        with pytest.raises(RedditAPIError):
            await client.fetch_unread("token")
        with pytest.raises(RedditAPIError):
            await client.compose("token", "lead_user", "Quick question", "Hey!")
        with pytest.raises(RedditAPIError):
            await client.reply("token", "t4_m1", "Thanks!")


class TestMessagingTransport:
    """Test the per-user messaging transport over the client"""

    @pytest.mark.asyncio
    async def test_html_answers_are_failed_sends(self):
        """Test an HTML answer is reported as a failed send instead of raising"""
        tokens = AsyncMock()
        tokens.get_valid_access_token.return_value = "token"
        client = make_client(lambda request: httpx.Response(200, text=BUSY_PAGE))
        transport = RedditMessagingTransport("user-1", tokens, client)

        reply = await transport.reply("t4_m1", "Thanks!")
        sent = await transport.send("lead_user", "Quick question", "Hey!")

        assert reply.success is False
        assert "not JSON" in reply.error
        assert sent.success is False
