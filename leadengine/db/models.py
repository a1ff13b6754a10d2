from sqlalchemy import Column, Integer, String, DateTime, Float, Boolean, Text, JSON, ForeignKey, Index, UniqueConstraint
from sqlalchemy.orm import relationship
from sqlalchemy.sql import func
from leadengine.db.database import Base
from enum import Enum
from typing import Dict, Any, Set
import uuid


def _uuid() -> str:
    return str(uuid.uuid4())


def _check_transition_table(states, table) -> None:
    """Every state must have an entry and every target must be a known state"""
    missing = set(states) - set(table)
    if missing:
        raise RuntimeError(f"{states.__name__} transition table missing states: {sorted(s.value for s in missing)}")
    for source, targets in table.items():
        unknown = set(targets) - set(states)
        if unknown:
            raise RuntimeError(f"{states.__name__}.{source.name} has unknown targets: {unknown}")


class ConversationStage(str, Enum):
    NOT_STARTED = "not_started"
    BUILDING_RAPPORT = "building_rapport"
    READY_TO_ASK = "ready_to_ask"
    ASKED = "asked"
    COLLECTED = "collected"
    NOT_INTERESTED = "not_interested"

    @property
    def is_terminal(self) -> bool:
        return self in TERMINAL_CONVERSATION_STAGES


TERMINAL_CONVERSATION_STAGES = frozenset({ConversationStage.COLLECTED, ConversationStage.NOT_INTERESTED})

# Forward by one step, or straight to a terminal outcome
CONVERSATION_TRANSITIONS: Dict[ConversationStage, Set[ConversationStage]] = {
    ConversationStage.NOT_STARTED: {
        ConversationStage.BUILDING_RAPPORT, ConversationStage.COLLECTED, ConversationStage.NOT_INTERESTED
    },
    ConversationStage.BUILDING_RAPPORT: {
        ConversationStage.READY_TO_ASK, ConversationStage.COLLECTED, ConversationStage.NOT_INTERESTED
    },
    ConversationStage.READY_TO_ASK: {
        ConversationStage.ASKED, ConversationStage.COLLECTED, ConversationStage.NOT_INTERESTED
    },
    ConversationStage.ASKED: {
        ConversationStage.COLLECTED, ConversationStage.NOT_INTERESTED
    },
    ConversationStage.COLLECTED: set(),  # Terminal state
    ConversationStage.NOT_INTERESTED: set(),  # Terminal state
}

CONVERSATION_STAGE_ORDER = [
    ConversationStage.NOT_STARTED,
    ConversationStage.BUILDING_RAPPORT,
    ConversationStage.READY_TO_ASK,
    ConversationStage.ASKED,
]


class ModerationStatus(str, Enum):
    PENDING = "pending"
    REVIEWING = "reviewing"
    AI_APPROVED = "ai_approved"
    AI_REJECTED = "ai_rejected"
    USER_APPROVED = "user_approved"
    USER_REJECTED = "user_rejected"
    POSTING = "posting"
    POSTED = "posted"
    FAILED = "failed"


MODERATION_TRANSITIONS: Dict[ModerationStatus, Set[ModerationStatus]] = {
    ModerationStatus.PENDING: {ModerationStatus.REVIEWING, ModerationStatus.FAILED},
    ModerationStatus.REVIEWING: {ModerationStatus.AI_APPROVED, ModerationStatus.AI_REJECTED, ModerationStatus.FAILED},
    ModerationStatus.AI_APPROVED: {ModerationStatus.USER_APPROVED, ModerationStatus.USER_REJECTED},
    ModerationStatus.USER_APPROVED: {ModerationStatus.POSTING},
    ModerationStatus.POSTING: {ModerationStatus.POSTED, ModerationStatus.FAILED},
    ModerationStatus.AI_REJECTED: set(),  # Terminal state
    ModerationStatus.USER_REJECTED: set(),  # Terminal state
    ModerationStatus.POSTED: set(),  # Terminal state
    ModerationStatus.FAILED: set(),  # Terminal until reset externally
}


def moderation_sources(target: ModerationStatus) -> Set[ModerationStatus]:
    """States from which ``target`` may be written"""
    return {source for source, targets in MODERATION_TRANSITIONS.items() if target in targets}


class MessageSender(str, Enum):
    OUTBOUND = "outbound"
    INBOUND = "inbound"


class QualificationType(str, Enum):
    INTEREST_EXPRESSED = "interest_expressed"
    TARGET_MATCH = "target_match"
    LINK_CLICKED = "link_clicked"


class BillingStatus(str, Enum):
    UNBILLED = "unbilled"
    BILLED = "billed"
    INVOICED = "invoiced"
    PAID = "paid"


_check_transition_table(ConversationStage, CONVERSATION_TRANSITIONS)
_check_transition_table(ModerationStatus, MODERATION_TRANSITIONS)


class RedditAccount(Base):
    """
    Connected Reddit account holding the user's OAuth token record.
    Tokens are stored Fernet-encrypted; expires_at is epoch seconds.
    """
    __tablename__ = "reddit_accounts"

    id = Column(String, primary_key=True, default=_uuid)
    user_id = Column(String, nullable=False, unique=True, index=True)
    reddit_username = Column(String, nullable=True)

    access_token_encrypted = Column(Text, nullable=False)
    refresh_token_encrypted = Column(Text, nullable=False)
    expires_at = Column(Float, nullable=False)
    scopes = Column(JSON, nullable=True)
    is_active = Column(Boolean, default=True, nullable=False)

    created_at = Column(DateTime(timezone=True), server_default=func.now())
    updated_at = Column(DateTime(timezone=True), onupdate=func.now())


class Lead(Base):
    """Reddit user being engaged on behalf of a customer"""
    __tablename__ = "leads"

    id = Column(String, primary_key=True, default=_uuid)
    user_id = Column(String, nullable=False, index=True)
    username = Column(String, nullable=False)
    agent_id = Column(String, nullable=True)
    platform = Column(String, nullable=False, default="reddit")
    source_post_id = Column(String, nullable=True)
    subreddit = Column(String, nullable=True)
    qualification_score = Column(Float, nullable=True)

    created_at = Column(DateTime(timezone=True), server_default=func.now())
    updated_at = Column(DateTime(timezone=True), onupdate=func.now())

    __table_args__ = (
        Index('idx_lead_user_username', 'user_id', 'username'),
    )


class Conversation(Base):
    """
    Automated DM exchange with one lead.
    The version column makes every UPDATE conditional on the version that was read.
    """
    __tablename__ = "conversations"

    id = Column(String, primary_key=True, default=_uuid)
    user_id = Column(String, nullable=False, index=True)
    lead_id = Column(String, ForeignKey("leads.id", ondelete="SET NULL"), nullable=True, index=True)
    lead_username = Column(String, nullable=False)
    stage = Column(String(32), nullable=False, default=ConversationStage.BUILDING_RAPPORT.value, index=True)
    collected_email = Column(String, nullable=True)
    version = Column(Integer, nullable=False)

    created_at = Column(DateTime(timezone=True), server_default=func.now())
    updated_at = Column(DateTime(timezone=True), server_default=func.now(), onupdate=func.now())
    last_message_at = Column(DateTime(timezone=True), nullable=True)

    messages = relationship(
        "ConversationMessage",
        back_populates="conversation",
        order_by="ConversationMessage.sequence",
        cascade="all, delete-orphan",
    )
    lead = relationship("Lead")

    __mapper_args__ = {"version_id_col": version}

    __table_args__ = (
        Index('idx_conversation_user_lead_username', 'user_id', 'lead_username'),
        Index('idx_conversation_user_stage', 'user_id', 'stage'),
    )

    @property
    def current_stage(self) -> ConversationStage:
        return ConversationStage(self.stage)

    @property
    def is_terminal(self) -> bool:
        return self.current_stage.is_terminal

    @property
    def has_inbound(self) -> bool:
        return any(m.sender == MessageSender.INBOUND.value for m in self.messages)

    def last_inbound(self):
        inbound = [m for m in self.messages if m.sender == MessageSender.INBOUND.value]
        return inbound[-1] if inbound else None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "user_id": self.user_id,
            "lead_id": self.lead_id,
            "lead_username": self.lead_username,
            "stage": self.stage,
            "collected_email": self.collected_email,
            "messages": [m.to_dict() for m in self.messages],
            "created_at": self.created_at.isoformat() if self.created_at else None,
            "last_message_at": self.last_message_at.isoformat() if self.last_message_at else None,
        }


class ConversationMessage(Base):
    """Append-only message in a conversation log"""
    __tablename__ = "conversation_messages"

    id = Column(String, primary_key=True, default=_uuid)
    conversation_id = Column(String, ForeignKey("conversations.id", ondelete="CASCADE"), nullable=False, index=True)
    sequence = Column(Integer, nullable=False)
    sender = Column(String(16), nullable=False)  # outbound, inbound
    text = Column(Text, nullable=False)
    sentiment = Column(String(32), nullable=True)
    platform_message_id = Column(String, nullable=True, index=True)  # inbound: remote id of the message
    in_reply_to = Column(String, nullable=True)  # outbound: inbound platform id this answers
    delivered = Column(Boolean, nullable=False, default=True)

    created_at = Column(DateTime(timezone=True), server_default=func.now())

    conversation = relationship("Conversation", back_populates="messages")

    __table_args__ = (
        UniqueConstraint('conversation_id', 'sequence', name='uq_conversation_message_sequence'),
    )

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "sender": self.sender,
            "text": self.text,
            "sentiment": self.sentiment,
            "delivered": self.delivered,
            "created_at": self.created_at.isoformat() if self.created_at else None,
        }


class ModerationItem(Base):
    """Drafted comment moving through AI review, human approval and posting"""
    __tablename__ = "moderation_items"

    id = Column(String, primary_key=True, default=_uuid)
    user_id = Column(String, nullable=True, index=True)
    post_id = Column(String, nullable=True)
    parent_id = Column(String, nullable=True)  # set when replying to a comment
    comment_text = Column(Text, nullable=True)

    # Post context for the judge
    subreddit = Column(String, nullable=True)
    post_title = Column(Text, nullable=True)
    post_content = Column(Text, nullable=True)

    status = Column(String(20), nullable=False, default=ModerationStatus.PENDING.value, index=True)

    # AI verdict
    ai_approved = Column(Boolean, nullable=True)
    ai_score = Column(Float, nullable=True)
    ai_reason = Column(String(200), nullable=True)
    ai_reviewed_at = Column(DateTime(timezone=True), nullable=True)

    # Human decision
    user_approved = Column(Boolean, nullable=True)
    user_decided_at = Column(DateTime(timezone=True), nullable=True)

    # Remote result
    remote_id = Column(String, nullable=True)
    permalink = Column(String, nullable=True)
    posted_at = Column(DateTime(timezone=True), nullable=True)
    failure_reason = Column(Text, nullable=True)

    created_at = Column(DateTime(timezone=True), server_default=func.now())
    updated_at = Column(DateTime(timezone=True), server_default=func.now(), onupdate=func.now())

    __table_args__ = (
        Index('idx_moderation_user_status', 'user_id', 'status'),
    )

    def can_transition_to(self, new_status: str) -> bool:
        """Check if status transition is allowed"""
        return ModerationStatus(new_status) in MODERATION_TRANSITIONS[ModerationStatus(self.status)]

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "user_id": self.user_id,
            "post_id": self.post_id,
            "parent_id": self.parent_id,
            "comment_text": self.comment_text,
            "subreddit": self.subreddit,
            "status": self.status,
            "ai_verdict": {
                "approved": self.ai_approved,
                "score": self.ai_score,
                "reason": self.ai_reason,
            } if self.ai_approved is not None else None,
            "user_approval": {
                "approved": self.user_approved,
                "at": self.user_decided_at.isoformat() if self.user_decided_at else None,
            } if self.user_approved is not None else None,
            "remote_id": self.remote_id,
            "permalink": self.permalink,
            "failure_reason": self.failure_reason,
        }


class AgentInboxItem(Base):
    """Human review inbox entry"""
    __tablename__ = "agent_inbox_items"

    id = Column(String, primary_key=True, default=_uuid)
    user_id = Column(String, nullable=False, index=True)
    item_type = Column(String(32), nullable=False)  # comment_approval
    moderation_item_id = Column(String, ForeignKey("moderation_items.id", ondelete="CASCADE"), nullable=True, index=True)
    title = Column(String, nullable=True)
    payload = Column(JSON, nullable=True)
    is_read = Column(Boolean, default=False, nullable=False)

    created_at = Column(DateTime(timezone=True), server_default=func.now())

    moderation_item = relationship("ModerationItem")


class KnowledgeItem(Base):
    """Customer-provided knowledge used as context for drafting and review"""
    __tablename__ = "knowledge_items"

    id = Column(String, primary_key=True, default=_uuid)
    user_id = Column(String, nullable=False, index=True)
    title = Column(String, nullable=True)
    content = Column(Text, nullable=False)

    created_at = Column(DateTime(timezone=True), server_default=func.now())


class QualifiedLeadEvent(Base):
    """
    Billable qualification of a lead. At most one per (user_id, lead_id):
    the unique constraint is the create-if-absent primitive.
    """
    __tablename__ = "qualified_lead_events"

    id = Column(String, primary_key=True, default=_uuid)
    user_id = Column(String, nullable=False, index=True)
    lead_id = Column(String, nullable=False, index=True)
    agent_id = Column(String, nullable=True)
    qualification_type = Column(String(32), nullable=False)
    billing_status = Column(String(16), nullable=False, default=BillingStatus.UNBILLED.value, index=True)
    billing_cycle_id = Column(String, ForeignKey("billing_cycles.id"), nullable=True, index=True)
    invoice_id = Column(String, nullable=True)
    details = Column("metadata", JSON, nullable=True)

    qualified_at = Column(DateTime(timezone=True), server_default=func.now())
    updated_at = Column(DateTime(timezone=True), onupdate=func.now())

    __table_args__ = (
        UniqueConstraint('user_id', 'lead_id', name='uq_qualified_lead_user_lead'),
    )

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "user_id": self.user_id,
            "lead_id": self.lead_id,
            "agent_id": self.agent_id,
            "qualification_type": self.qualification_type,
            "billing_status": self.billing_status,
            "billing_cycle_id": self.billing_cycle_id,
            "metadata": self.details,
            "qualified_at": self.qualified_at.isoformat() if self.qualified_at else None,
        }


class BillingCycle(Base):
    """Calendar-month accumulation window for qualified leads"""
    __tablename__ = "billing_cycles"

    id = Column(String, primary_key=True, default=_uuid)
    user_id = Column(String, nullable=False, index=True)
    period_start = Column(DateTime(timezone=True), nullable=False)
    period_end = Column(DateTime(timezone=True), nullable=False)
    status = Column(String(16), nullable=False, default="active")  # active, closed, invoiced

    qualified_lead_count = Column(Integer, nullable=False, default=0)
    interest_expressed_count = Column(Integer, nullable=False, default=0)
    target_match_count = Column(Integer, nullable=False, default=0)
    link_clicked_count = Column(Integer, nullable=False, default=0)
    amount_cents = Column(Integer, nullable=False, default=0)

    created_at = Column(DateTime(timezone=True), server_default=func.now())
    updated_at = Column(DateTime(timezone=True), onupdate=func.now())

    __table_args__ = (
        UniqueConstraint('user_id', 'period_start', name='uq_billing_cycle_user_period'),
    )


class BillingEvent(Base):
    """Audit row written for each qualification"""
    __tablename__ = "billing_events"

    id = Column(String, primary_key=True, default=_uuid)
    user_id = Column(String, nullable=False, index=True)
    billing_cycle_id = Column(String, nullable=True)
    qualified_lead_event_id = Column(String, nullable=True)
    lead_id = Column(String, nullable=True)
    event_type = Column(String(32), nullable=False)  # lead_qualified
    amount_cents = Column(Integer, nullable=False, default=0)
    details = Column("metadata", JSON, nullable=True)

    created_at = Column(DateTime(timezone=True), server_default=func.now())


class LinkClickEvent(Base):
    """Audit row for every tracked link click"""
    __tablename__ = "link_click_events"

    id = Column(String, primary_key=True, default=_uuid)
    lead_id = Column(String, nullable=False, index=True)
    user_id = Column(String, nullable=True, index=True)
    url = Column(Text, nullable=False)
    tracking_url = Column(Text, nullable=True)
    ip_address = Column(String, nullable=True)
    user_agent = Column(Text, nullable=True)
    referrer = Column(Text, nullable=True)
    tracked = Column(Boolean, nullable=False, default=False)  # True for the click that qualified the lead
    qualification_event_id = Column(String, nullable=True)

    clicked_at = Column(DateTime(timezone=True), server_default=func.now())
