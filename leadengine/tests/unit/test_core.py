"""
Unit tests for core helpers: transition tables, errors, locks and encryption
"""
import asyncio

import pytest
from cryptography.fernet import Fernet

from leadengine.core.encryption import EncryptionError, TokenEncryption
from leadengine.core.errors import FailedPreconditionError, PipelineError
from leadengine.core.locks import KeyedLocks
from leadengine.core.metrics import record_side_channel_failure, side_channel_failure_count
from leadengine.db.models import (
    MODERATION_TRANSITIONS,
    ConversationStage,
    ModerationItem,
    ModerationStatus,
    moderation_sources,
)


class TestTransitionTables:
    """Test the status transition tables"""

    def test_terminal_moderation_states(self):
        """Test terminal states have no outgoing transitions"""
        for status in (ModerationStatus.AI_REJECTED, ModerationStatus.USER_REJECTED, ModerationStatus.POSTED):
            assert MODERATION_TRANSITIONS[status] == set()

    def test_posting_only_after_user_approval(self):
        """Test posting can only start from user_approved"""
        assert moderation_sources(ModerationStatus.POSTING) == {ModerationStatus.USER_APPROVED}
        assert moderation_sources(ModerationStatus.FAILED) == {
            ModerationStatus.PENDING, ModerationStatus.REVIEWING, ModerationStatus.POSTING
        }

    def test_can_transition_to(self):
        """Test the item-level transition check"""
        item = ModerationItem(status=ModerationStatus.AI_APPROVED.value)

        assert item.can_transition_to("user_approved") is True
        assert item.can_transition_to("posted") is False

    def test_terminal_conversation_stages(self):
        """Test collected and not_interested are terminal"""
        assert ConversationStage.COLLECTED.is_terminal
        assert ConversationStage.NOT_INTERESTED.is_terminal
        assert not ConversationStage.ASKED.is_terminal


class TestErrors:
    """Test caller-visible errors"""

    def test_error_payload(self):
        """Test errors carry a stable code and status"""
        error = FailedPreconditionError("Comment already posted or approved", {"item_id": "item-1"})

        assert isinstance(error, PipelineError)
        assert error.http_status == 409
        assert error.to_dict() == {
            "code": "failed-precondition",
            "message": "Comment already posted or approved",
            "details": {"item_id": "item-1"},
        }


class TestKeyedLocks:
    """Test per-key asyncio locks"""

    @pytest.mark.asyncio
    async def test_same_key_same_lock(self):
        """Test a key maps to one lock within a loop"""
        locks = KeyedLocks()

        assert locks.get("user-1") is locks.get("user-1")
        assert locks.get("user-1") is not locks.get("user-2")

    def test_locks_are_per_event_loop(self):
        """Test a new event loop gets fresh locks"""
        locks = KeyedLocks()

        async def grab():
            return locks.get("user-1")

        assert asyncio.run(grab()) is not asyncio.run(grab())


class TestEncryption:
    """Test token encryption at rest"""

    def test_round_trip(self):
        """Test a token decrypts to its original value"""
        encryption = TokenEncryption(key=Fernet.generate_key().decode())

        encrypted = encryption.encrypt("access-token")

        assert encrypted != "access-token"
        assert encryption.decrypt(encrypted) == "access-token"

    def test_wrong_key_fails(self):
        """Test a token from another key is rejected"""
        encrypted = TokenEncryption(key=Fernet.generate_key().decode()).encrypt("access-token")

        with pytest.raises(EncryptionError):
            TokenEncryption(key=Fernet.generate_key().decode()).decrypt(encrypted)


class TestSideChannels:
    """Test side channel failure accounting"""

    def test_failures_are_counted_per_channel(self):
        """Test failures are counted separately per channel"""
        before = side_channel_failure_count("delivery_status")
        other_before = side_channel_failure_count("untracked_outreach")

        record_side_channel_failure("delivery_status", RuntimeError("db down"))

        assert side_channel_failure_count("delivery_status") == before + 1
        assert side_channel_failure_count("untracked_outreach") == other_before
