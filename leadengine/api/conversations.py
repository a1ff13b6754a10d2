"""
Conversations API

Start DM conversations with leads, list active ones and send manual messages.
"""
import logging
from typing import Any, Dict, List, Optional

from fastapi import APIRouter, Depends, HTTPException, Path
from pydantic import BaseModel, Field
from sqlalchemy.orm import Session

from leadengine.auth.dependencies import get_current_user_id
from leadengine.core.errors import NotFoundError
from leadengine.db.database import get_db
from leadengine.services.conversation_state_machine import (
    ConversationStateMachine,
    get_conversation_state_machine,
)

logger = logging.getLogger(__name__)
router = APIRouter(prefix="/api/v1/conversations", tags=["Conversations"])


class StartConversationRequest(BaseModel):
    lead_username: str = Field(..., min_length=1, description="Reddit username of the lead")
    initial_message: str = Field(..., min_length=1, description="First direct message")
    lead_id: Optional[str] = Field(None, description="Lead record this conversation belongs to")


class StartConversationResponse(BaseModel):
    conversation_id: str


class SendMessageRequest(BaseModel):
    text: str = Field(..., min_length=1)


class SendMessageResponse(BaseModel):
    sent: bool


def get_state_machine(
    user_id: str = Depends(get_current_user_id),
    db: Session = Depends(get_db)
) -> ConversationStateMachine:
    return get_conversation_state_machine(db, user_id)


@router.post("", response_model=StartConversationResponse)
async def start_conversation(
    request: StartConversationRequest,
    user_id: str = Depends(get_current_user_id),
    machine: ConversationStateMachine = Depends(get_state_machine)
):
    """Send the first DM to a lead and record the conversation"""
    conversation_id = await machine.start_conversation(
        user_id, request.lead_username, request.initial_message, {"lead_id": request.lead_id}
    )
    if conversation_id is None:
        raise HTTPException(status_code=502, detail="Initial message could not be sent or recorded")
    return StartConversationResponse(conversation_id=conversation_id)


@router.get("/active", response_model=List[Dict[str, Any]])
async def list_active_conversations(
    user_id: str = Depends(get_current_user_id),
    machine: ConversationStateMachine = Depends(get_state_machine)
):
    return [conversation.to_dict() for conversation in machine.get_active_conversations(user_id)]


@router.post("/{conversation_id}/messages", response_model=SendMessageResponse)
async def send_message(
    request: SendMessageRequest,
    conversation_id: str = Path(..., description="Conversation ID"),
    user_id: str = Depends(get_current_user_id),
    machine: ConversationStateMachine = Depends(get_state_machine)
):
    """Send a manual message within a conversation"""
    conversation = machine.get_conversation(conversation_id, user_id)
    if conversation is None:
        raise NotFoundError("Conversation not found")
    return SendMessageResponse(sent=await machine.send_response(conversation, request.text))
