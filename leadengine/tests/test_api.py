"""
API tests for moderation, conversations and link tracking routes
"""
import pytest
from unittest.mock import AsyncMock, Mock
from fastapi.testclient import TestClient

from leadengine.api.conversations import get_state_machine
from leadengine.api.moderation import get_pipeline
from leadengine.api.tracking import get_ledger
from leadengine.auth.jwt_handler import JWTHandler
from leadengine.core.app_factory import AppConfig, create_app
from leadengine.core.errors import FailedPreconditionError, NotFoundError
from leadengine.db.models import ModerationItem

app = create_app(AppConfig(environment="test"))


@pytest.fixture
def client():
    yield TestClient(app)
    app.dependency_overrides.clear()


@pytest.fixture
def auth_headers():
    return {"Authorization": f"Bearer {JWTHandler().create_access_token('user-1')}"}


def posted_item():
    return ModerationItem(
        id="item-1",
        user_id="user-1",
        post_id="post1",
        comment_text="Have you tried batching?",
        status="posted",
        ai_approved=True,
        ai_score=0.9,
        ai_reason="Helpful",
        remote_id="t1_abc123",
        permalink="https://reddit.com/r/python/comments/post1/_/abc123/",
    )


class TestModerationAPI:
    """Test the moderation routes"""

    def setup_method(self):
        """Set up test fixtures"""
        self.pipeline = Mock()
        self.pipeline.approve = AsyncMock(return_value=posted_item())
        app.dependency_overrides[get_pipeline] = lambda: self.pipeline

    def test_requires_authentication(self, client):
        """Test calls without a bearer token are rejected"""
        response = client.post("/api/v1/moderation/item-1/approve")

        assert response.status_code == 401
        assert response.json()["error"]["code"] == "unauthenticated"

    def test_invalid_token_rejected(self, client):
        """Test a forged token is rejected"""
        response = client.post(
            "/api/v1/moderation/item-1/approve", headers={"Authorization": "Bearer not-a-jwt"}
        )

        assert response.status_code == 401

    def test_approve_returns_posted_item(self, client, auth_headers):
        """Test approval returns the final item state"""
        response = client.post("/api/v1/moderation/item-1/approve", headers=auth_headers)

        assert response.status_code == 200
        body = response.json()
        assert body["status"] == "posted"
        assert body["remote_id"] == "t1_abc123"
        assert body["ai_verdict"]["score"] == 0.9
        self.pipeline.approve.assert_awaited_once_with("item-1", "user-1")

    def test_precondition_maps_to_conflict(self, client, auth_headers):
        """Test pipeline error codes become HTTP statuses"""
        self.pipeline.approve.side_effect = FailedPreconditionError("Comment already posted or approved")

        response = client.post("/api/v1/moderation/item-1/approve", headers=auth_headers)

        assert response.status_code == 409
        assert response.json()["error"] == {
            "code": "failed-precondition",
            "message": "Comment already posted or approved",
            "details": {},
        }

    def test_not_found(self, client, auth_headers):
        """Test a missing item is a 404"""
        self.pipeline.get_item.side_effect = NotFoundError("Pending comment not found")

        response = client.get("/api/v1/moderation/missing", headers=auth_headers)

        assert response.status_code == 404

    def test_pending_list(self, client, auth_headers):
        """Test the pending approvals listing"""
        self.pipeline.list_pending_approvals.return_value = [{"inbox_item_id": "inbox-1"}]

        response = client.get("/api/v1/moderation/pending", headers=auth_headers)

        assert response.status_code == 200
        assert response.json() == [{"inbox_item_id": "inbox-1"}]
        self.pipeline.list_pending_approvals.assert_called_once_with("user-1")


class TestConversationsAPI:
    """Test the conversation routes"""

    def setup_method(self):
        """Set up test fixtures"""
        self.machine = Mock()
        self.machine.start_conversation = AsyncMock(return_value="conv-1")
        app.dependency_overrides[get_state_machine] = lambda: self.machine

    def test_start_conversation(self, client, auth_headers):
        """Test starting a conversation returns its id"""
        response = client.post(
            "/api/v1/conversations",
            json={"lead_username": "lead_user", "initial_message": "Hey!"},
            headers=auth_headers,
        )

        assert response.status_code == 200
        assert response.json() == {"conversation_id": "conv-1"}
        self.machine.start_conversation.assert_awaited_once_with(
            "user-1", "lead_user", "Hey!", {"lead_id": None}
        )

    def test_failed_start_is_bad_gateway(self, client, auth_headers):
        """Test an unsent opening message is reported"""
        self.machine.start_conversation.return_value = None

        response = client.post(
            "/api/v1/conversations",
            json={"lead_username": "lead_user", "initial_message": "Hey!"},
            headers=auth_headers,
        )

        assert response.status_code == 502

    def test_send_to_unknown_conversation(self, client, auth_headers):
        """Test a message to another user's conversation is a 404"""
        self.machine.get_conversation.return_value = None

        response = client.post(
            "/api/v1/conversations/conv-9/messages", json={"text": "Hello"}, headers=auth_headers
        )

        assert response.status_code == 404


class TestTrackingAPI:
    """Test tracked link redirects"""

    def setup_method(self):
        """Set up test fixtures"""
        self.ledger = Mock()
        self.ledger.track_link_click = AsyncMock()
        app.dependency_overrides[get_ledger] = lambda: self.ledger

    def test_click_redirects_to_destination(self, client):
        """Test a click is recorded and redirected"""
        response = client.get(
            "/api/v1/track/lead-1", params={"url": "https://example.com/pricing"}, follow_redirects=False
        )

        assert response.status_code == 302
        assert response.headers["location"] == "https://example.com/pricing"
        self.ledger.track_link_click.assert_awaited_once()
        assert self.ledger.track_link_click.await_args.args == ("lead-1", "https://example.com/pricing")

    def test_invalid_destination_uses_fallback(self, client):
        """Test non-http destinations are not followed"""
        response = client.get(
            "/api/v1/track/lead-1", params={"url": "javascript:alert(1)"}, follow_redirects=False
        )

        assert response.status_code == 302
        assert response.headers["location"] == "https://www.reddit.com"
        self.ledger.track_link_click.assert_not_awaited()

    def test_unknown_lead_still_redirects(self, client):
        """Test an unknown lead does not break the redirect"""
        self.ledger.track_link_click.side_effect = NotFoundError("Lead lead-9 not found")

        response = client.get(
            "/api/v1/track/lead-9", params={"url": "https://example.com"}, follow_redirects=False
        )

        assert response.status_code == 302


class TestHealth:
    """Test health and metrics endpoints"""

    def test_health(self, client):
        """Test the health check lists the loaded routers"""
        response = client.get("/health")

        assert response.status_code == 200
        assert set(response.json()["routers"]) == {"moderation", "conversations", "track"}

    def test_metrics(self, client):
        """Test the Prometheus endpoint exposes pipeline metrics"""
        response = client.get("/metrics")

        assert response.status_code == 200
        assert "leadengine_" in response.text
