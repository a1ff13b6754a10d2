"""
Comment moderation API

Human approval and rejection of AI-reviewed comments.
"""
import logging
from datetime import datetime
from typing import Any, Dict, List, Optional

from fastapi import APIRouter, Depends, Path
from pydantic import BaseModel, ConfigDict
from sqlalchemy.orm import Session

from leadengine.auth.dependencies import get_current_user_id
from leadengine.db.database import get_db
from leadengine.services.moderation_pipeline import ModerationPipeline, get_moderation_pipeline

logger = logging.getLogger(__name__)
router = APIRouter(prefix="/api/v1/moderation", tags=["Moderation"])


class AIVerdictResponse(BaseModel):
    approved: bool
    score: float
    reason: Optional[str] = None


class ModerationItemResponse(BaseModel):
    """Moderation item state"""
    model_config = ConfigDict(from_attributes=True)

    id: str
    post_id: Optional[str]
    parent_id: Optional[str]
    comment_text: Optional[str]
    subreddit: Optional[str]
    status: str
    ai_verdict: Optional[AIVerdictResponse] = None
    remote_id: Optional[str] = None
    permalink: Optional[str] = None
    failure_reason: Optional[str] = None
    updated_at: Optional[datetime] = None

    @classmethod
    def from_item(cls, item) -> "ModerationItemResponse":
        verdict = None
        if item.ai_approved is not None:
            verdict = AIVerdictResponse(approved=item.ai_approved, score=item.ai_score or 0.0, reason=item.ai_reason)
        return cls(
            id=item.id,
            post_id=item.post_id,
            parent_id=item.parent_id,
            comment_text=item.comment_text,
            subreddit=item.subreddit,
            status=item.status,
            ai_verdict=verdict,
            remote_id=item.remote_id,
            permalink=item.permalink,
            failure_reason=item.failure_reason,
            updated_at=item.updated_at,
        )


def get_pipeline(db: Session = Depends(get_db)) -> ModerationPipeline:
    return get_moderation_pipeline(db)


@router.get("/pending", response_model=List[Dict[str, Any]])
async def list_pending_approvals(
    user_id: str = Depends(get_current_user_id),
    pipeline: ModerationPipeline = Depends(get_pipeline)
):
    """Comments awaiting the caller's approval"""
    return pipeline.list_pending_approvals(user_id)


@router.get("/{item_id}", response_model=ModerationItemResponse)
async def get_moderation_item(
    item_id: str = Path(..., description="Moderation item ID"),
    user_id: str = Depends(get_current_user_id),
    pipeline: ModerationPipeline = Depends(get_pipeline)
):
    return ModerationItemResponse.from_item(pipeline.get_item(item_id, user_id))


@router.post("/{item_id}/approve", response_model=ModerationItemResponse)
async def approve_comment(
    item_id: str = Path(..., description="Moderation item ID"),
    user_id: str = Depends(get_current_user_id),
    pipeline: ModerationPipeline = Depends(get_pipeline)
):
    """
    Approve a comment and post it to Reddit.

    The response carries the final status: ``posted`` or ``failed`` with a reason.
    """
    item = await pipeline.approve(item_id, user_id)
    logger.info(f"User {user_id} approved moderation item {item_id}: {item.status}")
    return ModerationItemResponse.from_item(item)


@router.post("/{item_id}/reject", response_model=ModerationItemResponse)
async def reject_comment(
    item_id: str = Path(..., description="Moderation item ID"),
    user_id: str = Depends(get_current_user_id),
    pipeline: ModerationPipeline = Depends(get_pipeline)
):
    item = pipeline.reject(item_id, user_id)
    logger.info(f"User {user_id} rejected moderation item {item_id}")
    return ModerationItemResponse.from_item(item)
