"""
Test doubles and row builders
"""
from datetime import datetime, timezone
from typing import List, Optional, Tuple

from leadengine.db.models import (
    Conversation,
    ConversationMessage,
    ConversationStage,
    Lead,
    MessageSender,
    ModerationItem,
    ModerationStatus,
)
from leadengine.services.interfaces import InboundItem, MessagingTransport, TransportResult


class FakeTransport(MessagingTransport):
    """Records every call; sends fail while ``fail_sends`` is set"""

    def __init__(self, unread: Optional[List[InboundItem]] = None):
        self.unread = unread or []
        self.fail_sends = False
        self.sent: List[Tuple[str, str, str]] = []
        self.replies: List[Tuple[str, str]] = []
        self.acknowledged: List[str] = []

    async def send(self, recipient: str, subject: str, body: str) -> TransportResult:
        if self.fail_sends:
            return TransportResult(success=False, error="send failed")
        self.sent.append((recipient, subject, body))
        return TransportResult(success=True)

    async def reply(self, parent_id: str, body: str) -> TransportResult:
        if self.fail_sends:
            return TransportResult(success=False, error="reply failed")
        self.replies.append((parent_id, body))
        return TransportResult(success=True)

    async def fetch_unread(self) -> List[InboundItem]:
        return list(self.unread)

    async def acknowledge(self, item_id: str) -> None:
        self.acknowledged.append(item_id)


def create_lead(db, user_id="user-1", username="lead_user", agent_id="agent-1") -> Lead:
    lead = Lead(user_id=user_id, username=username, agent_id=agent_id, platform="reddit")
    db.add(lead)
    db.commit()
    return lead


def create_conversation(
    db,
    user_id="user-1",
    lead_username="lead_user",
    stage=ConversationStage.BUILDING_RAPPORT,
    lead_id=None,
    inbound_texts=()
) -> Conversation:
    conversation = Conversation(
        user_id=user_id,
        lead_id=lead_id,
        lead_username=lead_username,
        stage=stage.value,
        last_message_at=datetime.now(timezone.utc),
    )
    conversation.messages.append(ConversationMessage(
        sequence=0, sender=MessageSender.OUTBOUND.value, text="Hey, saw your post!", delivered=True
    ))
    for index, text in enumerate(inbound_texts, start=1):
        conversation.messages.append(ConversationMessage(
            sequence=index, sender=MessageSender.INBOUND.value, text=text, platform_message_id=f"t4_in{index}"
        ))
    db.add(conversation)
    db.commit()
    return conversation


def create_moderation_item(db, status=ModerationStatus.PENDING, **fields) -> ModerationItem:
    values = {
        "user_id": "user-1",
        "post_id": "post1",
        "comment_text": "Have you tried batching the writes?",
        "subreddit": "python",
        "post_title": "Slow inserts",
        "post_content": "My inserts take forever",
    }
    values.update(fields)
    item = ModerationItem(status=status.value, **values)
    db.add(item)
    db.commit()
    return item
