"""
Knowledge snippets used as context for drafting and review
"""
import logging
from typing import List

from sqlalchemy.orm import Session

from leadengine.core.config import get_settings
from leadengine.db.models import KnowledgeItem
from leadengine.services.interfaces import KnowledgeSource

logger = logging.getLogger(__name__)


class KnowledgeService(KnowledgeSource):
    """Reads a user's knowledge items, newest first"""

    def __init__(self, db: Session):
        self.db = db
        self.max_snippets = get_settings().knowledge_snippet_limit

    def fetch_snippets(self, user_id: str, limit: int = 20) -> List[str]:
        limit = max(0, min(limit, self.max_snippets))
        items = self.db.query(KnowledgeItem).filter(
            KnowledgeItem.user_id == user_id
        ).order_by(KnowledgeItem.created_at.desc()).limit(limit).all()
        return [f"{item.title or 'Knowledge'}: {item.content}" for item in items]

    def build_context(self, user_id: str, limit: int = 20) -> str:
        """Snippets joined into one prompt block"""
        return "\n\n".join(self.fetch_snippets(user_id, limit))
