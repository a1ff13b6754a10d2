"""
Unit tests for the Celery tasks
"""
from contextlib import contextmanager

import pytest
from unittest.mock import AsyncMock, Mock, patch

from leadengine.services.token_lifecycle_service import TokenLifecycleManager
from leadengine.tasks import conversation_tasks, moderation_tasks


def session_scope(db):
    @contextmanager
    def scope():
        yield db
    return scope


class TestModerationTasks:
    """Test the review task"""

    def test_review_runs_pipeline(self, db_session):
        """Test the task drives the pipeline for the item"""
        pipeline = Mock()
        pipeline.on_draft_created = AsyncMock(return_value=Mock(status="ai_approved"))

        with patch.object(moderation_tasks, "get_celery_db_session", session_scope(db_session)), \
                patch.object(moderation_tasks, "get_moderation_pipeline", return_value=pipeline):
            result = moderation_tasks.review_moderation_item("item-1")

        assert result == {"item_id": "item-1", "status": "ai_approved"}
        pipeline.on_draft_created.assert_awaited_once_with("item-1")

    def test_review_of_missing_item(self, db_session):
        """Test a missing item is reported, not raised"""
        pipeline = Mock()
        pipeline.on_draft_created = AsyncMock(return_value=None)

        with patch.object(moderation_tasks, "get_celery_db_session", session_scope(db_session)), \
                patch.object(moderation_tasks, "get_moderation_pipeline", return_value=pipeline):
            result = moderation_tasks.review_moderation_item("missing")

        assert result["status"] == "not_found"


class TestConversationTasks:
    """Test conversation polling tasks"""

    def test_poll_all_fans_out_per_active_account(self, db_session):
        """Test one polling task is queued per connected account"""
        manager = TokenLifecycleManager(db_session, reddit_client=Mock(), encryption=Mock(encrypt=lambda v: f"enc:{v}"))
        manager.store_tokens("user-1", "a", "r", 3600)
        manager.store_tokens("user-2", "a", "r", 3600)
        inactive = manager.store_tokens("user-3", "a", "r", 3600)
        inactive.is_active = False
        db_session.commit()

        with patch.object(conversation_tasks, "get_celery_db_session", session_scope(db_session)), \
                patch.object(conversation_tasks.poll_conversations, "delay") as delay:
            result = conversation_tasks.poll_all_conversations()

        assert result == {"scheduled": 2}
        assert sorted(call.args[0] for call in delay.call_args_list) == ["user-1", "user-2"]

    def test_poll_conversations_processes_inbox(self, db_session):
        """Test the per-user task polls with the user's knowledge context"""
        machine = Mock()
        machine.check_and_process_new_messages = AsyncMock(return_value=3)

        with patch.object(conversation_tasks, "get_celery_db_session", session_scope(db_session)), \
                patch.object(conversation_tasks, "get_conversation_state_machine", return_value=machine):
            result = conversation_tasks.poll_conversations("user-1")

        assert result == {"user_id": "user-1", "processed": 3}
        machine.check_and_process_new_messages.assert_awaited_once_with("user-1", "")


class TestBeatSchedule:
    """Test Celery configuration"""

    def test_polling_is_scheduled(self):
        """Test conversation polling runs on the configured interval"""
        from leadengine.tasks.celery_app import celery_app, settings

        schedule = celery_app.conf.beat_schedule["poll-all-conversations"]
        assert schedule["task"] == "poll_all_conversations"
        assert schedule["schedule"] == float(settings.conversation_poll_seconds)
        assert celery_app.conf.task_acks_late is True

    def test_tasks_are_registered(self):
        """Test task names used by the schedule exist"""
        from leadengine.tasks.celery_app import celery_app

        for name in ("review_moderation_item", "poll_conversations", "poll_all_conversations"):
            assert name in celery_app.tasks
