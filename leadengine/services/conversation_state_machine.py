"""
Conversation State Machine

Drives automated DM conversations with leads from rapport building to an
email-collection or disengagement outcome. A turn (inbound message, reply and
stage change) is committed as one optimistic-locked write of the
conversation; the reply is delivered afterwards and only then is the inbound
message acknowledged on Reddit.
"""
import logging
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional

from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from leadengine.core.errors import InvalidArgumentError
from leadengine.core.metrics import CONVERSATION_TURNS, record_side_channel_failure
from leadengine.db.models import (
    CONVERSATION_STAGE_ORDER,
    CONVERSATION_TRANSITIONS,
    TERMINAL_CONVERSATION_STAGES,
    Conversation,
    ConversationMessage,
    ConversationStage,
    Lead,
    MessageSender,
)
from leadengine.integrations.reddit_client import get_reddit_client
from leadengine.services.ai_service import OpenAIConversationModel
from leadengine.services.interfaces import ContentGenerator, MessageAnalyzer, MessagingTransport
from leadengine.services.qualification_ledger import QualificationLedger
from leadengine.services.reddit_messaging import RedditMessagingTransport
from leadengine.services.token_lifecycle_service import TokenLifecycleManager

logger = logging.getLogger(__name__)

EMAIL_ACKNOWLEDGEMENT = "Thanks for sharing your email! I'll send you some helpful information shortly."
NOT_INTERESTED_REPLY = "No problem at all! Feel free to reach out if you ever have questions. Best of luck!"

OUTREACH_SUBJECT = "Quick question"
FOLLOW_UP_SUBJECT = "Re: Quick question"

ACTIVE_CONVERSATIONS_LIMIT = 50


@dataclass
class TurnResult:
    response: str
    new_stage: ConversationStage
    extracted_email: Optional[str] = None
    committed: bool = False


def resolve_generated_stage(current: ConversationStage, proposed: ConversationStage) -> ConversationStage:
    """
    Clamp the generator's proposed stage to a legal move.

    Terminal outcomes and the next step forward are accepted, a jump of more
    than one step advances a single step, and anything backwards keeps the
    current stage.
    """
    if proposed == current or proposed in CONVERSATION_TRANSITIONS[current]:
        return proposed
    if proposed in TERMINAL_CONVERSATION_STAGES or current in TERMINAL_CONVERSATION_STAGES:
        return current
    if CONVERSATION_STAGE_ORDER.index(proposed) > CONVERSATION_STAGE_ORDER.index(current):
        return CONVERSATION_STAGE_ORDER[CONVERSATION_STAGE_ORDER.index(current) + 1]
    return current


class ConversationStateMachine:
    """
    Automated DM conversations for one user

    Args:
        db: Database session
        generator: Drafts replies and opening messages
        analyzer: Reads sentiment and intent of inbound messages
        transport: Messaging transport bound to the conversations' user
        ledger: Optional qualification ledger notified when a lead replies
    """

    def __init__(
        self,
        db: Session,
        generator: ContentGenerator,
        analyzer: MessageAnalyzer,
        transport: Optional[MessagingTransport] = None,
        ledger: Optional[QualificationLedger] = None
    ):
        self.db = db
        self.generator = generator
        self.analyzer = analyzer
        self.transport = transport
        self.ledger = ledger

    def _append(
        self,
        conversation: Conversation,
        sender: MessageSender,
        text: str,
        **fields: Any
    ) -> ConversationMessage:
        message = ConversationMessage(
            sequence=len(conversation.messages),
            sender=sender.value,
            text=text,
            **fields
        )
        conversation.messages.append(message)
        conversation.last_message_at = datetime.now(timezone.utc)
        return message

    async def process_incoming_message(
        self,
        conversation: Conversation,
        text: str,
        knowledge_context: str = "",
        options: Optional[Dict[str, Any]] = None,
        platform_message_id: Optional[str] = None
    ) -> TurnResult:
        """
        Apply one inbound message to a conversation.

        The inbound message, the reply (recorded as not yet delivered) and the
        stage change are committed together. Nothing is committed when a
        collaborator fails; the message should be retried later.

        Args:
            conversation: Conversation the message belongs to
            text: Inbound message body
            knowledge_context: Knowledge base context for the generator
            options: Extra lead context (e.g. original_post)
            platform_message_id: Remote id of the inbound message

        Returns:
            TurnResult; ``committed`` is False when nothing was written
        """
        current = conversation.current_stage
        # Terminal conversations never reach the analyzer or the generator
        if current.is_terminal:
            logger.info(f"Conversation {conversation.id} is {current.value}, ignoring message", extra={"conversation_id": conversation.id})
            CONVERSATION_TURNS.labels(outcome="ignored_terminal").inc()
            return TurnResult(response="", new_stage=current)

        try:
            analysis = await self.analyzer.analyze(text)
            inbound = {"sentiment": analysis.sentiment, "platform_message_id": platform_message_id}
            reply_fields = {"delivered": False, "in_reply_to": platform_message_id}

            if analysis.has_email and analysis.extracted_email:
                self._append(conversation, MessageSender.INBOUND, text, **inbound)
                self._append(conversation, MessageSender.OUTBOUND, EMAIL_ACKNOWLEDGEMENT, **reply_fields)
                conversation.stage = ConversationStage.COLLECTED.value
                conversation.collected_email = analysis.extracted_email
                result = TurnResult(EMAIL_ACKNOWLEDGEMENT, ConversationStage.COLLECTED, analysis.extracted_email)

            elif analysis.not_interested:
                self._append(conversation, MessageSender.INBOUND, text, **inbound)
                self._append(conversation, MessageSender.OUTBOUND, NOT_INTERESTED_REPLY, **reply_fields)
                conversation.stage = ConversationStage.NOT_INTERESTED.value
                result = TurnResult(NOT_INTERESTED_REPLY, ConversationStage.NOT_INTERESTED)

            else:
                history = [{"sender": m.sender, "text": m.text} for m in conversation.messages]
                history.append({"sender": MessageSender.INBOUND.value, "text": text})
                lead_context = {"username": conversation.lead_username, **(options or {})}
                reply = await self.generator.generate(
                    history, lead_context, knowledge_context, current
                )
                new_stage = resolve_generated_stage(current, reply.next_stage)
                self._append(conversation, MessageSender.INBOUND, text, **inbound)
                self._append(conversation, MessageSender.OUTBOUND, reply.text, **reply_fields)
                conversation.stage = new_stage.value
                if reply.extracted_email:
                    conversation.collected_email = reply.extracted_email
                result = TurnResult(reply.text, new_stage, reply.extracted_email)

            self.db.commit()
        except Exception as e:
            self.db.rollback()
            CONVERSATION_TURNS.labels(outcome="failed").inc()
            logger.error(f"Processing message for conversation {conversation.id} failed: {e}", extra={"conversation_id": conversation.id})
            return TurnResult(response="", new_stage=ConversationStage.BUILDING_RAPPORT)

        result.committed = True
        CONVERSATION_TURNS.labels(outcome=result.new_stage.value).inc()
        logger.info(
            f"Conversation {conversation.id}: {current.value} -> {result.new_stage.value}",
            extra={"conversation_id": conversation.id}
        )

        if result.new_stage != ConversationStage.NOT_INTERESTED:
            await self._qualify_interest(conversation)
        return result

    async def _qualify_interest(self, conversation: Conversation) -> None:
        """A reply from the lead qualifies it; never fails the turn"""
        if self.ledger is None or not conversation.lead_id:
            return
        try:
            lead = self.db.get(Lead, conversation.lead_id)
            await self.ledger.mark_lead_as_expressed_interest(
                conversation.user_id, conversation.lead_id, lead.agent_id if lead else None, conversation.id
            )
        except Exception as e:
            record_side_channel_failure("qualification", e)

    async def _send_to_lead(self, conversation: Conversation, text: str) -> bool:
        """DM the lead, or reply in thread to their latest message"""
        last_inbound = conversation.last_inbound()
        if last_inbound is not None and last_inbound.platform_message_id:
            result = await self.transport.reply(last_inbound.platform_message_id, text)
        else:
            subject = FOLLOW_UP_SUBJECT if conversation.messages else OUTREACH_SUBJECT
            result = await self.transport.send(conversation.lead_username, subject, text)

        if not result.success:
            logger.warning(
                f"Send to {conversation.lead_username} failed for conversation {conversation.id}: {result.error}",
                extra={"conversation_id": conversation.id}
            )
        return result.success

    async def send_response(self, conversation: Conversation, text: str) -> bool:
        """
        Send a message to the lead and record it once the send succeeded.

        Returns:
            True when the message was sent
        """
        if conversation.is_terminal:
            logger.info(f"Conversation {conversation.id} is {conversation.stage}, not sending", extra={"conversation_id": conversation.id})
            return False

        if not await self._send_to_lead(conversation, text):
            return False

        try:
            self._append(conversation, MessageSender.OUTBOUND, text, delivered=True)
            self.db.commit()
        except SQLAlchemyError as e:
            self.db.rollback()
            record_side_channel_failure("untracked_outreach", e)
        return True

    async def _deliver(self, conversation: Conversation, message: ConversationMessage) -> bool:
        """Send a recorded reply and mark it delivered"""
        if not await self._send_to_lead(conversation, message.text):
            return False
        try:
            message.delivered = True
            conversation.last_message_at = datetime.now(timezone.utc)
            self.db.commit()
        except SQLAlchemyError as e:
            self.db.rollback()
            record_side_channel_failure("delivery_status", e)
        return True

    async def _acknowledge(self, item_id: str) -> None:
        try:
            await self.transport.acknowledge(item_id)
        except Exception as e:
            # Left unread: the next poll recognises it by id and only acknowledges it
            logger.warning(f"Could not mark message {item_id} as read: {e}")

    def _latest_conversation(self, user_id: str, lead_username: str) -> Optional[Conversation]:
        return self.db.query(Conversation).filter(
            Conversation.user_id == user_id,
            Conversation.lead_username == lead_username
        ).order_by(Conversation.created_at.desc()).first()

    @staticmethod
    def _pending_reply(conversation: Conversation, inbound_id: str) -> Optional[ConversationMessage]:
        for message in conversation.messages:
            if (message.sender == MessageSender.OUTBOUND.value
                    and message.in_reply_to == inbound_id
                    and not message.delivered):
                return message
        return None

    async def check_and_process_new_messages(
        self,
        user_id: str,
        knowledge_context: str = "",
        options: Optional[Dict[str, Any]] = None
    ) -> int:
        """
        Poll unread private messages and answer those from active conversations.

        An inbound message is acknowledged only after its reply was sent. A
        message seen before (same platform id) is not processed again; only
        its undelivered reply is re-sent.

        Returns:
            Number of inbound messages answered and acknowledged
        """
        try:
            unread = await self.transport.fetch_unread()
        except Exception as e:
            logger.error(f"Fetching unread messages for user {user_id} failed: {e}", extra={"user_id": user_id})
            return 0

        processed = 0
        for item in unread:
            if item.type != "private_message" or not item.author:
                continue

            conversation = self._latest_conversation(user_id, item.author)
            if conversation is None:
                continue

            already_seen = any(m.platform_message_id == item.id for m in conversation.messages)
            if already_seen:
                pending = self._pending_reply(conversation, item.id)
                if pending is not None and not await self._deliver(conversation, pending):
                    continue
                await self._acknowledge(item.id)
                processed += 1
                continue

            if conversation.is_terminal:
                continue

            result = await self.process_incoming_message(
                conversation, item.body, knowledge_context, options, platform_message_id=item.id
            )
            if not result.committed:
                continue

            pending = self._pending_reply(conversation, item.id)
            if pending is not None and not await self._deliver(conversation, pending):
                continue

            await self._acknowledge(item.id)
            processed += 1

        if processed:
            logger.info(f"Processed {processed} new messages for user {user_id}", extra={"user_id": user_id})
        return processed

    async def start_conversation(
        self,
        user_id: str,
        lead_username: str,
        initial_message: str,
        context: Optional[Dict[str, Any]] = None
    ) -> Optional[str]:
        """
        Send the first DM to a lead and record the conversation.

        The conversation is recorded only after the send succeeded. If that
        write fails the DM exists on Reddit without a local record; this is
        logged and counted on the ``untracked_outreach`` side channel.

        Returns:
            Conversation id, or None when the send or the write failed
        """
        if not user_id or not lead_username or not initial_message:
            raise InvalidArgumentError("user_id, lead_username and initial_message are required")

        result = await self.transport.send(lead_username, OUTREACH_SUBJECT, initial_message)
        if not result.success:
            logger.error(f"Failed to send initial DM to {lead_username}: {result.error}", extra={"user_id": user_id})
            return None

        context = context or {}
        try:
            conversation = Conversation(
                user_id=user_id,
                lead_id=context.get("lead_id"),
                lead_username=lead_username,
                stage=ConversationStage.BUILDING_RAPPORT.value,
            )
            self._append(conversation, MessageSender.OUTBOUND, initial_message, delivered=True)
            self.db.add(conversation)
            self.db.commit()
        except SQLAlchemyError as e:
            self.db.rollback()
            logger.error(f"DM sent to {lead_username} but conversation could not be recorded: {e}", extra={"user_id": user_id})
            record_side_channel_failure("untracked_outreach", e)
            return None

        logger.info(f"Started conversation {conversation.id} with {lead_username}", extra={"conversation_id": conversation.id})
        return conversation.id

    def get_active_conversations(self, user_id: str, limit: int = ACTIVE_CONVERSATIONS_LIMIT) -> List[Conversation]:
        """Non-terminal conversations, most recently active first"""
        return self.db.query(Conversation).filter(
            Conversation.user_id == user_id,
            Conversation.stage.notin_([stage.value for stage in TERMINAL_CONVERSATION_STAGES])
        ).order_by(Conversation.last_message_at.desc()).limit(limit).all()

    def get_conversation(self, conversation_id: str, user_id: Optional[str] = None) -> Optional[Conversation]:
        conversation = self.db.get(Conversation, conversation_id)
        if conversation is None or (user_id is not None and conversation.user_id != user_id):
            return None
        return conversation

    async def generate_initial_message(self, post: Dict[str, Any], knowledge_context: str = "") -> str:
        """Opening DM for a lead's post; empty string when generation fails"""
        try:
            return await self.generator.generate_opening(post, knowledge_context)
        except Exception as e:
            logger.error(f"Error generating initial message: {e}")
            return ""


def get_conversation_state_machine(db: Session, user_id: str) -> ConversationStateMachine:
    """State machine wired with the production collaborators for ``user_id``"""
    reddit_client = get_reddit_client()
    model = OpenAIConversationModel()
    tokens = TokenLifecycleManager(db, reddit_client=reddit_client)
    return ConversationStateMachine(
        db,
        generator=model,
        analyzer=model,
        transport=RedditMessagingTransport(user_id, tokens, reddit_client),
        ledger=QualificationLedger(db),
    )
