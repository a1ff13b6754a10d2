"""
OpenAI-backed conversation model and comment quality judge

Both talk to the chat completions API in JSON mode and parse the first
{...} object in the answer. Calls are made once with a bounded timeout;
every failure is raised to the caller, which decides the policy.
"""
import json
import logging
import re
from typing import Any, Dict, List, Optional

from openai import AsyncOpenAI

from leadengine.core.config import get_settings
from leadengine.db.models import ConversationStage
from leadengine.services.interfaces import (
    ContentGenerator,
    GeneratedReply,
    MessageAnalysis,
    MessageAnalyzer,
    QualityJudge,
    Verdict,
)

logger = logging.getLogger(__name__)

JSON_OBJECT_PATTERN = re.compile(r"\{[\s\S]*\}")

MAX_REASON_LENGTH = 100


class AIServiceError(Exception):
    """AI call failed or returned output that could not be used"""
    pass


class JudgeUnavailableError(AIServiceError):
    """No credentials configured for the quality judge"""
    pass


def _extract_json(text: Optional[str]) -> Dict[str, Any]:
    """Parse the first JSON object embedded in a model answer"""
    match = JSON_OBJECT_PATTERN.search(text or "")
    if not match:
        raise AIServiceError("AI response did not contain a JSON object")
    try:
        parsed = json.loads(match.group(0))
    except json.JSONDecodeError as e:
        raise AIServiceError(f"AI response JSON could not be parsed: {e}")
    if not isinstance(parsed, dict):
        raise AIServiceError("AI response JSON is not an object")
    return parsed


def _build_client(api_key: Optional[str]) -> Optional[AsyncOpenAI]:
    settings = get_settings()
    if not api_key:
        return None
    return AsyncOpenAI(api_key=api_key, timeout=settings.ai_timeout_seconds, max_retries=0)


class _OpenAIJSONService:
    """Shared chat-completions plumbing"""

    def __init__(self, client: Optional[AsyncOpenAI] = None, model: Optional[str] = None):
        self.settings = get_settings()
        self.client = client if client is not None else _build_client(self.settings.openai_api_key)
        self.model = model or self.settings.openai_model

    async def _complete_json(self, system_prompt: str, user_prompt: str, temperature: float = 0.7) -> Dict[str, Any]:
        if self.client is None:
            raise AIServiceError("OpenAI API key not configured")
        try:
            response = await self.client.chat.completions.create(
                model=self.model,
                messages=[
                    {"role": "system", "content": system_prompt},
                    {"role": "user", "content": user_prompt},
                ],
                temperature=temperature,
                response_format={"type": "json_object"},
            )
        except Exception as e:
            raise AIServiceError(f"OpenAI request failed: {e}") from e

        content = response.choices[0].message.content if response.choices else None
        return _extract_json(content)


class OpenAIConversationModel(_OpenAIJSONService, ContentGenerator, MessageAnalyzer):
    """Generates DM replies and analyzes inbound messages"""

    async def analyze(self, text: str) -> MessageAnalysis:
        prompt = f"""Analyze this message for sentiment and intent.

MESSAGE: "{text}"

Respond in JSON format only:
{{
  "sentiment": "<positive|negative|neutral>",
  "intent": "<question|interest|objection|not_interested|other>",
  "hasEmail": <true|false>,
  "extractedEmail": "<email if found, null otherwise>"
}}"""
        parsed = await self._complete_json("You classify direct messages.", prompt, temperature=0.0)
        extracted = parsed.get("extractedEmail") or None
        return MessageAnalysis(
            sentiment=parsed.get("sentiment") or "neutral",
            intent=parsed.get("intent") or "other",
            has_email=bool(parsed.get("hasEmail")) and bool(extracted),
            extracted_email=extracted,
        )

    async def generate(
        self,
        history: List[Dict[str, str]],
        lead_context: Dict[str, Any],
        knowledge: str,
        stage: ConversationStage
    ) -> GeneratedReply:
        """
        Generate the next DM in a conversation.

        Args:
            history: Messages as {"sender": "outbound"|"inbound", "text": ...}
            lead_context: username and optional original_post
            knowledge: Knowledge base context
            stage: Current (non-terminal) conversation stage

        Returns:
            GeneratedReply; an unknown next stage falls back to ``stage``
        """
        username = lead_context.get("username", "lead")
        transcript = "\n".join(
            f"{'You' if m['sender'] == 'outbound' else username}: {m['text']}" for m in history
        )
        original_post = lead_context.get("original_post")
        prompt = f"""You are having a DM conversation on Reddit with a potential lead. Be helpful and build genuine rapport.

KNOWLEDGE ABOUT OUR PRODUCT/SERVICE:
{knowledge or 'No knowledge base provided.'}

CONVERSATION HISTORY:
{transcript}

LEAD CONTEXT:
Username: {username}
{f'Original post they made: {original_post}' if original_post else ''}

EMAIL COLLECTION STRATEGY:
Current stage: {stage.value}
- If building_rapport: Focus on being helpful, don't mention email yet
- If ready_to_ask: Naturally transition to offering valuable resource that requires email
- If asked: If they seem hesitant, offer alternative value; if positive, get the email

RULES:
1. Be conversational and genuine
2. Provide actual value in every message
3. Don't be pushy or salesy
4. Keep responses concise (1-3 sentences)

Respond in JSON format:
{{
  "response": "<your DM response>",
  "nextStage": "<building_rapport|ready_to_ask|asked|collected|not_interested>",
  "extractedEmail": "<email if found in conversation, null otherwise>"
}}"""
        parsed = await self._complete_json("You write short, genuine Reddit direct messages.", prompt)

        text = (parsed.get("response") or "").strip()
        if not text:
            raise AIServiceError("AI response contained no message text")
        try:
            next_stage = ConversationStage(parsed.get("nextStage"))
        except ValueError:
            logger.warning(f"Unknown nextStage {parsed.get('nextStage')!r} from model, keeping {stage.value}")
            next_stage = stage
        return GeneratedReply(
            text=text,
            next_stage=next_stage,
            extracted_email=parsed.get("extractedEmail") or None,
        )

    async def generate_opening(self, post: Dict[str, Any], knowledge: str) -> str:
        """First outreach DM referencing the lead's post"""
        prompt = f"""Write a short, friendly first direct message to the author of this Reddit post.

KNOWLEDGE ABOUT OUR PRODUCT/SERVICE:
{knowledge or 'No knowledge base provided.'}

POST:
Title: {post.get('title', 'N/A')}
Content: {post.get('content', 'N/A')}
Subreddit: r/{post.get('subreddit', 'unknown')}

Mention something specific from their post, offer genuine help and do not pitch.

Respond in JSON format:
{{
  "message": "<your DM>"
}}"""
        parsed = await self._complete_json("You write short, genuine Reddit direct messages.", prompt)
        message = (parsed.get("message") or "").strip()
        if not message:
            raise AIServiceError("AI response contained no opening message")
        return message


class OpenAIQualityJudge(_OpenAIJSONService, QualityJudge):
    """Scores drafted comments against a fixed rubric"""

    async def judge(
        self,
        draft: str,
        post_context: Dict[str, Any],
        knowledge_snippets: List[str]
    ) -> Verdict:
        if self.client is None:
            raise JudgeUnavailableError("OpenAI API key not configured")

        knowledge = "\n\n".join(
            f"{index}. {snippet}" for index, snippet in enumerate(knowledge_snippets, start=1)
        ) or "No knowledge base provided."
        prompt = f"""You are a Reddit comment quality checker. Analyze this AI-generated comment to determine if it should be posted.

KNOWLEDGE BASE (Company/Product Information):
{knowledge}

REDDIT POST:
Title: {post_context.get('title') or 'N/A'}
Content: {post_context.get('content') or 'N/A'}
Subreddit: r/{post_context.get('subreddit') or 'unknown'}

AI-GENERATED COMMENT:
{draft}

QUALITY CRITERIA:
1. Relevance: Does the comment directly address the post content?
2. Accuracy: Is the information accurate based on the knowledge base?
3. Tone: Is the tone appropriate, helpful, and not overly promotional?
4. Value: Does it provide genuine value to the discussion?
5. Natural: Does it sound natural and human-like (not robotic/spammy)?

Respond in this EXACT JSON format:
{{
  "approved": true/false,
  "score": 0.0-1.0,
  "reason": "Brief explanation (max 100 chars)"
}}"""
        parsed = await self._complete_json("You are a strict content reviewer.", prompt, temperature=0.0)

        try:
            score = float(parsed.get("score", 0))
        except (TypeError, ValueError):
            score = 0.0
        return Verdict(
            approved=parsed.get("approved") is True,
            score=min(max(score, 0.0), 1.0),
            reason=str(parsed.get("reason") or "No reason provided")[:MAX_REASON_LENGTH],
        )
