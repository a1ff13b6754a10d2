"""
Agent inbox: human review queue for AI-approved comments
"""
import logging

from sqlalchemy.orm import Session

from leadengine.db.models import AgentInboxItem, ModerationItem
from leadengine.services.interfaces import ReviewInbox, Verdict

logger = logging.getLogger(__name__)

COMMENT_APPROVAL = "comment_approval"


class InboxService(ReviewInbox):

    def __init__(self, db: Session):
        self.db = db

    def deliver(self, item: ModerationItem, verdict: Verdict) -> None:
        """
        Queue an AI-approved draft for human approval.

        The row is added to the caller's session; it is committed together
        with the item's status change.
        """
        inbox_item = AgentInboxItem(
            user_id=item.user_id,
            item_type=COMMENT_APPROVAL,
            moderation_item_id=item.id,
            title=item.post_title or "Unknown Post",
            payload={
                "post": {
                    "title": item.post_title or "Unknown Post",
                    "content": item.post_content or "",
                    "subreddit": item.subreddit,
                    "post_id": item.post_id,
                },
                "comment": {
                    "text": item.comment_text,
                    "parent_id": item.parent_id,
                },
                "ai_quality_check": {
                    "approved": verdict.approved,
                    "score": verdict.score,
                    "reason": verdict.reason,
                },
            },
        )
        self.db.add(inbox_item)
        logger.info(f"Queued moderation item {item.id} for approval", extra={"item_id": item.id, "user_id": item.user_id})

