"""
Moderation Celery tasks

Runs the AI review of a drafted comment outside the request that created it.
Delivery is at-least-once; the pipeline ignores duplicate triggers.
"""
import asyncio
import logging
from typing import Any, Dict

from leadengine.core.http_client import close_http_client
from leadengine.services.moderation_pipeline import ModerationPipeline, get_moderation_pipeline
from leadengine.tasks.celery_app import celery_app
from leadengine.tasks.db_session_manager import get_celery_db_session

logger = logging.getLogger(__name__)


async def _review(pipeline: ModerationPipeline, item_id: str):
    # Each task runs in a fresh event loop; pooled connections must not outlive it
    try:
        return await pipeline.on_draft_created(item_id)
    finally:
        await close_http_client()


@celery_app.task(name='review_moderation_item')
def review_moderation_item(item_id: str) -> Dict[str, Any]:
    """
    Review a newly drafted comment.

    Args:
        item_id: Moderation item id

    Returns:
        Resulting status of the item
    """
    with get_celery_db_session() as db:
        pipeline = get_moderation_pipeline(db)
        item = asyncio.run(_review(pipeline, item_id))

        if item is None:
            return {"item_id": item_id, "status": "not_found"}

        logger.info(f"Moderation item {item_id} reviewed: {item.status}", extra={"item_id": item_id})
        return {"item_id": item_id, "status": item.status}
