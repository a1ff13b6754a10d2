"""
Conversation polling Celery tasks

The beat schedule fans out one polling task per connected Reddit account.
"""
import asyncio
import logging
from typing import Any, Dict

from leadengine.core.http_client import close_http_client
from leadengine.db.models import RedditAccount
from leadengine.services.conversation_state_machine import ConversationStateMachine, get_conversation_state_machine
from leadengine.services.knowledge_service import KnowledgeService
from leadengine.tasks.celery_app import celery_app
from leadengine.tasks.db_session_manager import get_celery_db_session

logger = logging.getLogger(__name__)


async def _poll(state_machine: ConversationStateMachine, user_id: str, knowledge_context: str) -> int:
    try:
        return await state_machine.check_and_process_new_messages(user_id, knowledge_context)
    finally:
        await close_http_client()


@celery_app.task(name='poll_conversations')
def poll_conversations(user_id: str) -> Dict[str, Any]:
    """Answer new DMs in the active conversations of ``user_id``"""
    with get_celery_db_session() as db:
        knowledge_context = KnowledgeService(db).build_context(user_id)
        state_machine = get_conversation_state_machine(db, user_id)
        processed = asyncio.run(_poll(state_machine, user_id, knowledge_context))
        return {"user_id": user_id, "processed": processed}


@celery_app.task(name='poll_all_conversations')
def poll_all_conversations() -> Dict[str, Any]:
    with get_celery_db_session() as db:
        user_ids = [
            row.user_id for row in
            db.query(RedditAccount.user_id).filter(RedditAccount.is_active.is_(True)).all()
        ]

    for user_id in user_ids:
        poll_conversations.delay(user_id)

    logger.info(f"Scheduled conversation polling for {len(user_ids)} accounts")
    return {"scheduled": len(user_ids)}
