"""
Collaborator interfaces for the lead engagement pipeline

The pipeline services receive these collaborators through their constructors
so every network-facing dependency can be replaced with a fake in tests.
"""
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional

from leadengine.db.models import ConversationStage, ModerationItem


@dataclass
class MessageAnalysis:
    """Sentiment and intent read from one inbound message"""
    sentiment: str = "neutral"  # positive, neutral, negative
    intent: str = "other"  # interested, not_interested, question, other
    has_email: bool = False
    extracted_email: Optional[str] = None

    @property
    def not_interested(self) -> bool:
        return self.intent == "not_interested"


@dataclass
class GeneratedReply:
    text: str
    next_stage: ConversationStage
    extracted_email: Optional[str] = None


@dataclass
class Verdict:
    approved: bool
    score: float
    reason: str


@dataclass
class TransportResult:
    success: bool
    error: Optional[str] = None


@dataclass
class InboundItem:
    """Unread inbound message; ``id`` is what acknowledge() expects"""
    id: str
    type: str  # private_message, comment_reply
    author: Optional[str]
    body: str
    extra: Dict[str, Any] = field(default_factory=dict)


class ContentGenerator(ABC):
    """Drafts the next outbound message of a conversation"""

    @abstractmethod
    async def generate(
        self,
        history: List[Dict[str, str]],
        lead_context: Dict[str, Any],
        knowledge: str,
        stage: ConversationStage
    ) -> GeneratedReply:
        pass

    @abstractmethod
    async def generate_opening(self, post: Dict[str, Any], knowledge: str) -> str:
        pass


class MessageAnalyzer(ABC):

    @abstractmethod
    async def analyze(self, text: str) -> MessageAnalysis:
        pass


class QualityJudge(ABC):
    """Scores a drafted comment before it reaches a human"""

    @abstractmethod
    async def judge(
        self,
        draft: str,
        post_context: Dict[str, Any],
        knowledge_snippets: List[str]
    ) -> Verdict:
        """
        Raises:
            JudgeUnavailableError: Judge credentials are not configured
            Exception: Any other failure, including unparseable output
        """
        pass


class MessagingTransport(ABC):
    """Direct message transport bound to one user account"""

    @abstractmethod
    async def send(self, recipient: str, subject: str, body: str) -> TransportResult:
        pass

    @abstractmethod
    async def reply(self, parent_id: str, body: str) -> TransportResult:
        pass

    @abstractmethod
    async def fetch_unread(self) -> List[InboundItem]:
        pass

    @abstractmethod
    async def acknowledge(self, item_id: str) -> None:
        pass


class TokenProvider(ABC):

    @abstractmethod
    async def get_valid_access_token(self, user_id: str) -> Optional[str]:
        pass


class KnowledgeSource(ABC):

    @abstractmethod
    def fetch_snippets(self, user_id: str, limit: int = 20) -> List[str]:
        pass


class ReviewInbox(ABC):
    """Human review queue receiving AI-approved drafts"""

    @abstractmethod
    def deliver(self, item: ModerationItem, verdict: Verdict) -> None:
        pass
