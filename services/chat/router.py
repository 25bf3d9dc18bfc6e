"""
services/chat/router.py
Booking chats. A message and the chat's last-message summary are written in
the same transaction; the recipient push is queued after commit.
"""

import uuid
from typing import List, Optional

from fastapi import APIRouter, Depends, HTTPException, Query, status
from sqlalchemy import or_, select, update
from sqlalchemy.ext.asyncio import AsyncSession

from config.database import get_db
from shared.exceptions import NotFound
from shared.middleware.auth import get_current_user
from shared.models.models import Booking, Chat, ChatMessage, JobProposal, User, utcnow
from shared.schemas.schemas import (
    ChatMessageResponse,
    ChatResponse,
    MarkReadResponse,
    MessageCreateRequest,
)
from shared.utils.background import notify_new_message

router = APIRouter(prefix="/chats", tags=["Chat"])

SUMMARY_MAX_CHARS = 120


# ── Helpers (used by bookings and jobs) ───────────────────────

async def create_chat(
    db: AsyncSession,
    booking_id: uuid.UUID,
    participant_ids: List[uuid.UUID],
) -> Chat:
    chat = Chat(
        booking_id=booking_id,
        participant_ids=[str(p) for p in dict.fromkeys(participant_ids) if p is not None],
    )
    db.add(chat)
    await db.flush()
    return chat


def append_message(
    db: AsyncSession,
    chat: Chat,
    sender_id: Optional[uuid.UUID],
    text: str,
) -> ChatMessage:
    """
    Stage a message and the summary update on the same session.
    Nothing is persisted until the caller commits, so both land or neither does.
    """
    now = utcnow()
    message = ChatMessage(
        id=uuid.uuid4(),
        chat_id=chat.id,
        sender_id=sender_id,
        text=text,
        created_at=now,
    )
    db.add(message)
    chat.last_message = text[:SUMMARY_MAX_CHARS]
    chat.last_message_at = now
    chat.last_sender_id = sender_id
    return message


async def _get_chat_for(chat_id: uuid.UUID, user: User, db: AsyncSession) -> Chat:
    chat = await db.get(Chat, chat_id)
    if not chat:
        raise NotFound("Chat not found", {"chat_id": str(chat_id)})
    if not chat.has_participant(user.id):
        raise HTTPException(status_code=status.HTTP_403_FORBIDDEN, detail="Not a participant of this chat")
    return chat


# ── Routes ────────────────────────────────────────────────────

@router.get("", response_model=List[ChatResponse])
async def list_chats(
    current_user: User = Depends(get_current_user),
    db: AsyncSession = Depends(get_db),
):
    """Chats the current user takes part in, most recent activity first."""
    proposed_jobs = select(JobProposal.job_id).where(JobProposal.pro_user_id == current_user.id)
    result = await db.execute(
        select(Chat)
        .join(Booking, Booking.id == Chat.booking_id)
        .where(
            or_(
                Booking.client_id == current_user.id,
                Booking.host_id == current_user.id,
                Booking.id.in_(proposed_jobs),
            )
        )
        .order_by(Chat.updated_at.desc())
    )
    return [c for c in result.scalars().all() if c.has_participant(current_user.id)]


@router.get("/{chat_id}/messages", response_model=List[ChatMessageResponse])
async def list_messages(
    chat_id: uuid.UUID,
    limit: int = Query(100, ge=1, le=500),
    current_user: User = Depends(get_current_user),
    db: AsyncSession = Depends(get_db),
):
    await _get_chat_for(chat_id, current_user, db)
    result = await db.execute(
        select(ChatMessage)
        .where(ChatMessage.chat_id == chat_id)
        .order_by(ChatMessage.created_at.asc())
        .limit(limit)
    )
    return result.scalars().all()


@router.post("/{chat_id}/messages", response_model=ChatMessageResponse, status_code=status.HTTP_201_CREATED)
async def send_message(
    chat_id: uuid.UUID,
    data: MessageCreateRequest,
    current_user: User = Depends(get_current_user),
    db: AsyncSession = Depends(get_db),
):
    chat = await _get_chat_for(chat_id, current_user, db)
    message = append_message(db, chat, current_user.id, data.text)
    await db.commit()

    notify_new_message(chat.id, message.id)
    return message


@router.post("/{chat_id}/read", response_model=MarkReadResponse)
async def mark_read(
    chat_id: uuid.UUID,
    current_user: User = Depends(get_current_user),
    db: AsyncSession = Depends(get_db),
):
    """Mark the other participants' messages as read."""
    await _get_chat_for(chat_id, current_user, db)
    result = await db.execute(
        update(ChatMessage)
        .where(
            ChatMessage.chat_id == chat_id,
            ChatMessage.is_read.is_(False),
            or_(ChatMessage.sender_id.is_(None), ChatMessage.sender_id != current_user.id),
        )
        .values(is_read=True)
        .execution_options(synchronize_session=False)
    )
    await db.commit()
    return MarkReadResponse(updated=result.rowcount or 0)
