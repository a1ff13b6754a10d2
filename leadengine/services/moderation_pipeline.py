"""
Comment Moderation Pipeline

Moves a drafted comment through AI review, human approval and posting to
Reddit. Every status change is a conditional UPDATE that only succeeds from
the states the transition table allows, so duplicate triggers and racing
approvals cannot move an item backwards or post it twice.
"""
import logging
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional

from sqlalchemy.orm import Session

from leadengine.core.config import get_settings
from leadengine.core.errors import (
    FailedPreconditionError,
    InvalidArgumentError,
    NotFoundError,
    PermissionDeniedError,
    UnauthenticatedError,
)
from leadengine.core.metrics import JUDGE_SCORES, JUDGE_VERDICTS, MODERATION_STATUS_WRITES, POSTING_ATTEMPTS
from leadengine.db.models import AgentInboxItem, ModerationItem, ModerationStatus, moderation_sources
from leadengine.integrations.reddit_client import (
    PostingError,
    PostingErrorKind,
    RedditAPIClient,
    get_reddit_client,
    normalize_thing_id,
)
from leadengine.services.ai_service import JudgeUnavailableError, OpenAIQualityJudge
from leadengine.services.inbox_service import InboxService
from leadengine.services.interfaces import KnowledgeSource, QualityJudge, ReviewInbox, TokenProvider, Verdict
from leadengine.services.knowledge_service import KnowledgeService
from leadengine.services.token_lifecycle_service import TokenLifecycleManager

logger = logging.getLogger(__name__)

MISSING_FIELDS_REASON = "Missing required fields (userId, postId, or commentText)"
JUDGE_SKIPPED_REASON = "AI quality check skipped - no API key configured"
JUDGE_ERROR_REASON = "AI quality check error - requires manual review"
NO_TOKEN_REASON = "Could not get valid Reddit access token - user may need to reconnect"
UNEXPECTED_POSTING_REASON = "Posting failed"

ALREADY_HANDLED = {
    ModerationStatus.POSTED,
    ModerationStatus.POSTING,
    ModerationStatus.USER_APPROVED,
}


class ModerationPipeline:
    """
    AI review, human approval and posting of drafted comments

    Args:
        db: Database session
        judge: AI quality judge
        knowledge: Knowledge snippets for the judge
        inbox: Human review inbox
        tokens: Supplies Reddit access tokens for posting
        reddit_client: Posts the approved comment
    """

    def __init__(
        self,
        db: Session,
        judge: QualityJudge,
        knowledge: KnowledgeSource,
        inbox: ReviewInbox,
        tokens: TokenProvider,
        reddit_client: RedditAPIClient
    ):
        self.db = db
        self.judge = judge
        self.knowledge = knowledge
        self.inbox = inbox
        self.tokens = tokens
        self.reddit_client = reddit_client
        self.snippet_limit = get_settings().knowledge_snippet_limit

    def _transition(self, item_id: str, target: ModerationStatus, **values: Any) -> bool:
        """
        Write ``target`` only if the stored status may move there.

        Pending session changes (such as an inbox row) are committed together
        with the status write, or rolled back when the guard fails.
        """
        sources = [status.value for status in moderation_sources(target)]
        values["status"] = target.value
        values["updated_at"] = datetime.now(timezone.utc)
        updated = self.db.query(ModerationItem).filter(
            ModerationItem.id == item_id,
            ModerationItem.status.in_(sources)
        ).update(values, synchronize_session=False)

        if updated != 1:
            self.db.rollback()
            logger.info(f"Moderation item {item_id} not moved to {target.value}: status changed", extra={"item_id": item_id})
            return False

        self.db.commit()
        MODERATION_STATUS_WRITES.labels(status=target.value).inc()
        logger.info(f"Moderation item {item_id} -> {target.value}", extra={"item_id": item_id})
        return True

    async def on_draft_created(self, item_id: str) -> Optional[ModerationItem]:
        """
        React to a newly drafted comment.

        Safe under at-least-once delivery: only the trigger that moves the
        item from pending to reviewing runs the review.

        Args:
            item_id: Moderation item id

        Returns:
            The item in its resulting state, or None when it does not exist
        """
        item = self.db.get(ModerationItem, item_id)
        if item is None:
            logger.warning(f"Moderation item {item_id} not found", extra={"item_id": item_id})
            return None

        if not (item.user_id and item.post_id and item.comment_text):
            logger.error(f"Invalid moderation item {item_id}: missing required fields", extra={"item_id": item_id})
            self._transition(item_id, ModerationStatus.FAILED, failure_reason=MISSING_FIELDS_REASON)
            return self._reload(item)

        if not self._transition(item_id, ModerationStatus.REVIEWING):
            logger.info(f"Moderation item {item_id} is not pending (status: {item.status}), skipping", extra={"item_id": item_id})
            return self._reload(item)

        try:
            snippets = self.knowledge.fetch_snippets(item.user_id, limit=self.snippet_limit)
            verdict = await self._review(item, snippets)
            verdict_values = {
                "ai_approved": verdict.approved,
                "ai_score": verdict.score,
                "ai_reason": verdict.reason,
                "ai_reviewed_at": datetime.now(timezone.utc),
            }
            if verdict.approved:
                self.inbox.deliver(item, verdict)
                self._transition(item_id, ModerationStatus.AI_APPROVED, **verdict_values)
            else:
                logger.info(f"Comment {item_id} rejected by AI: {verdict.reason}", extra={"item_id": item_id})
                self._transition(item_id, ModerationStatus.AI_REJECTED, **verdict_values)
        except Exception as e:
            self.db.rollback()
            logger.exception(f"Review of moderation item {item_id} failed: {e}", extra={"item_id": item_id})
            self._transition(item_id, ModerationStatus.FAILED, failure_reason=f"Review failed: {e}")

        return self._reload(item)

    async def _review(self, item: ModerationItem, snippets: List[str]) -> Verdict:
        """Run the judge and apply the fail-open / fail-closed policy"""
        post_context = {
            "title": item.post_title,
            "content": item.post_content,
            "subreddit": item.subreddit,
        }
        try:
            verdict = await self.judge.judge(item.comment_text, post_context, snippets)
        except JudgeUnavailableError:
            JUDGE_VERDICTS.labels(policy="fail_open").inc()
            logger.warning(f"Judge unavailable for item {item.id}, approving for human review", extra={"item_id": item.id})
            return Verdict(approved=True, score=0.5, reason=JUDGE_SKIPPED_REASON)
        except Exception as e:
            JUDGE_VERDICTS.labels(policy="fail_closed").inc()
            logger.error(f"Judge error for item {item.id}: {e}", extra={"item_id": item.id})
            return Verdict(approved=False, score=0.0, reason=JUDGE_ERROR_REASON)

        JUDGE_VERDICTS.labels(policy="approved" if verdict.approved else "rejected").inc()
        JUDGE_SCORES.observe(verdict.score)
        return verdict

    def _owned_item(self, item_id: str, caller_id: Optional[str]) -> ModerationItem:
        if not caller_id:
            raise UnauthenticatedError("Must be authenticated")
        if not item_id:
            raise InvalidArgumentError("item id is required")
        item = self.db.get(ModerationItem, item_id)
        if item is None:
            raise NotFoundError("Pending comment not found")
        if item.user_id != caller_id:
            raise PermissionDeniedError("Not authorized to modify this comment")
        return item

    def _reload(self, item: ModerationItem) -> ModerationItem:
        self.db.refresh(item)
        return item

    async def approve(self, item_id: str, caller_id: str) -> ModerationItem:
        """
        Approve an AI-approved comment and post it.

        Args:
            item_id: Moderation item id
            caller_id: Authenticated user; must own the item

        Returns:
            The item, ``posted`` with remote id and permalink, or ``failed``
            with a reason derived from the posting error

        Raises:
            NotFoundError, PermissionDeniedError: Ownership checks
            FailedPreconditionError: Already approved/posted, not awaiting
                approval, or no valid Reddit token
        """
        item = self._owned_item(item_id, caller_id)

        if ModerationStatus(item.status) in ALREADY_HANDLED:
            raise FailedPreconditionError("Comment already posted or approved")

        if not self._transition(
            item_id, ModerationStatus.USER_APPROVED,
            user_approved=True, user_decided_at=datetime.now(timezone.utc)
        ):
            raise FailedPreconditionError(f"Comment is not awaiting approval (status: {self._reload(item).status})")

        if not self._transition(item_id, ModerationStatus.POSTING):
            raise FailedPreconditionError("Comment already posted or approved")

        # From here on the item must leave posting for a terminal status
        try:
            token = await self.tokens.get_valid_access_token(item.user_id)
        except Exception as e:
            logger.exception(f"Token lookup for item {item_id} failed: {e}", extra={"item_id": item_id})
            token = None
        if not token:
            POSTING_ATTEMPTS.labels(outcome="no_token").inc()
            self._transition(item_id, ModerationStatus.FAILED, failure_reason=NO_TOKEN_REASON)
            raise FailedPreconditionError("Reddit authentication required")

        self._reload(item)
        thing_id = normalize_thing_id(item.parent_id, is_comment=True) if item.parent_id \
            else normalize_thing_id(item.post_id, is_comment=False)

        try:
            posted = await self.reddit_client.post_comment(token, thing_id, item.comment_text)
        except PostingError as e:
            POSTING_ATTEMPTS.labels(outcome=e.kind.value).inc()
            logger.warning(f"Posting item {item_id} failed ({e.kind.value}): {e}", extra={"item_id": item_id})
            self._transition(item_id, ModerationStatus.FAILED, failure_reason=e.reason)
            return self._reload(item)
        except Exception as e:
            POSTING_ATTEMPTS.labels(outcome=PostingErrorKind.OTHER.value).inc()
            logger.exception(f"Posting item {item_id} failed unexpectedly: {e}", extra={"item_id": item_id})
            self._transition(item_id, ModerationStatus.FAILED, failure_reason=f"{UNEXPECTED_POSTING_REASON}: {e}")
            return self._reload(item)

        POSTING_ATTEMPTS.labels(outcome="posted").inc()
        self._transition(
            item_id, ModerationStatus.POSTED,
            remote_id=posted.remote_id,
            permalink=posted.permalink,
            posted_at=datetime.now(timezone.utc),
        )
        return self._reload(item)

    def reject(self, item_id: str, caller_id: str) -> ModerationItem:
        """
        Reject an AI-approved comment.

        Raises:
            NotFoundError, PermissionDeniedError: Ownership checks
            FailedPreconditionError: Item is not awaiting approval
        """
        item = self._owned_item(item_id, caller_id)
        if not self._transition(
            item_id, ModerationStatus.USER_REJECTED,
            user_approved=False, user_decided_at=datetime.now(timezone.utc)
        ):
            raise FailedPreconditionError(f"Comment cannot be rejected (status: {self._reload(item).status})")
        return self._reload(item)

    def get_item(self, item_id: str, caller_id: str) -> ModerationItem:
        return self._owned_item(item_id, caller_id)

    def list_pending_approvals(self, user_id: str) -> List[Dict[str, Any]]:
        """Inbox entries whose comment still awaits a human decision"""
        entries = self.db.query(AgentInboxItem).join(
            ModerationItem, AgentInboxItem.moderation_item_id == ModerationItem.id
        ).filter(
            AgentInboxItem.user_id == user_id,
            ModerationItem.status == ModerationStatus.AI_APPROVED.value
        ).order_by(AgentInboxItem.created_at.desc()).all()
        return [
            {
                "inbox_item_id": entry.id,
                "type": entry.item_type,
                "item": entry.moderation_item.to_dict(),
                "payload": entry.payload,
                "created_at": entry.created_at.isoformat() if entry.created_at else None,
            }
            for entry in entries
        ]


def get_moderation_pipeline(db: Session) -> ModerationPipeline:
    """Pipeline wired with the production collaborators"""
    reddit_client = get_reddit_client()
    return ModerationPipeline(
        db,
        judge=OpenAIQualityJudge(),
        knowledge=KnowledgeService(db),
        inbox=InboxService(db),
        tokens=TokenLifecycleManager(db, reddit_client=reddit_client),
        reddit_client=reddit_client,
    )
