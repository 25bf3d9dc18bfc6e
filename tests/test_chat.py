"""
tests/test_chat.py
Tests for booking chats: messaging, read receipts, participant checks
and the message/summary pairing.
"""

import uuid

import pytest
from httpx import AsyncClient
from sqlalchemy import func, select
from sqlalchemy.ext.asyncio import AsyncSession

from services.chat.router import SUMMARY_MAX_CHARS, append_message, create_chat
from shared.models.models import Booking, Chat, ChatMessage, Provider, User
from tests.conftest import POZNAN, auth_headers


async def booking_chat(client: AsyncClient, user: User, provider: Provider) -> str:
    response = await client.post(
        "/bookings",
        headers=auth_headers(user),
        json={"provider_id": str(provider.id), "service_location": {"lat": POZNAN[0], "lng": POZNAN[1]}},
    )
    assert response.status_code == 201, response.text
    return response.json()["chat_id"]


@pytest.mark.asyncio
async def test_send_and_list_messages(
    client: AsyncClient, client_user: User, pro_user: User, provider: Provider, sent_tasks
):
    """Both participants can write; the other side is notified and the summary follows the last message."""
    chat_id = await booking_chat(client, client_user, provider)

    sent = await client.post(
        f"/chats/{chat_id}/messages", headers=auth_headers(client_user), json={"text": "Dzień dobry, kiedy Pan będzie?"}
    )
    assert sent.status_code == 201
    assert sent.json()["sender_id"] == str(client_user.id)
    sent_tasks.assert_called_with(
        "tasks.notification_tasks.send_new_message_push", args=[chat_id, sent.json()["id"]], kwargs={}
    )

    await client.post(f"/chats/{chat_id}/messages", headers=auth_headers(pro_user), json={"text": "Za godzinę"})

    messages = await client.get(f"/chats/{chat_id}/messages", headers=auth_headers(pro_user))
    assert [m["text"] for m in messages.json()] == ["Dzień dobry, kiedy Pan będzie?", "Za godzinę"]

    chats = await client.get("/chats", headers=auth_headers(client_user))
    assert chats.json()[0]["id"] == chat_id
    assert chats.json()[0]["last_message"] == "Za godzinę"


@pytest.mark.asyncio
async def test_non_participant_is_forbidden(
    client: AsyncClient, client_user: User, other_user: User, provider: Provider
):
    """Outsiders can neither read, write nor see the chat."""
    chat_id = await booking_chat(client, client_user, provider)

    read = await client.get(f"/chats/{chat_id}/messages", headers=auth_headers(other_user))
    write = await client.post(f"/chats/{chat_id}/messages", headers=auth_headers(other_user), json={"text": "hej"})
    listed = await client.get("/chats", headers=auth_headers(other_user))

    assert read.status_code == 403
    assert write.status_code == 403
    assert listed.json() == []


@pytest.mark.asyncio
async def test_unknown_chat_returns_404(client: AsyncClient, client_user: User):
    """Unknown chat ids return 404."""
    response = await client.get(f"/chats/{uuid.uuid4()}/messages", headers=auth_headers(client_user))
    assert response.status_code == 404


@pytest.mark.asyncio
async def test_mark_read_only_touches_other_side(
    client: AsyncClient, db: AsyncSession, client_user: User, pro_user: User, provider: Provider
):
    """Marking read flags only messages sent by the other participant."""
    chat_id = await booking_chat(client, client_user, provider)
    url = f"/chats/{chat_id}/messages"
    await client.post(url, headers=auth_headers(client_user), json={"text": "Pierwsza"})
    await client.post(url, headers=auth_headers(client_user), json={"text": "Druga"})
    await client.post(url, headers=auth_headers(pro_user), json={"text": "Odpowiedź"})

    response = await client.post(f"/chats/{chat_id}/read", headers=auth_headers(pro_user))
    assert response.json()["updated"] == 2

    unread = await db.scalar(
        select(func.count(ChatMessage.id)).where(
            ChatMessage.chat_id == uuid.UUID(chat_id), ChatMessage.is_read.is_(False)
        )
    )
    assert unread == 1


@pytest.mark.asyncio
async def test_empty_message_rejected(
    client: AsyncClient, client_user: User, provider: Provider
):
    """Empty messages are rejected."""
    chat_id = await booking_chat(client, client_user, provider)
    response = await client.post(f"/chats/{chat_id}/messages", headers=auth_headers(client_user), json={"text": ""})
    assert response.status_code == 422


@pytest.mark.asyncio
async def test_message_and_summary_roll_back_together(
    db: AsyncSession, client_user: User, provider: Provider
):
    """A message and its chat summary are written in one transaction."""
    booking_id = uuid.uuid4()
    chat = await create_chat(db, booking_id, [client_user.id, provider.user_id])
    await db.commit()

    append_message(db, chat, client_user.id, "x" * (SUMMARY_MAX_CHARS + 30))
    assert len(chat.last_message) == SUMMARY_MAX_CHARS
    await db.rollback()

    stored = await db.scalar(select(Chat).where(Chat.id == chat.id).execution_options(populate_existing=True))
    count = await db.scalar(select(func.count(ChatMessage.id)).where(ChatMessage.chat_id == chat.id))
    assert stored.last_message is None
    assert count == 0


@pytest.mark.asyncio
async def test_booking_chat_links_back_to_booking(
    client: AsyncClient, db: AsyncSession, client_user: User, provider: Provider
):
    """The booking and its chat reference each other."""
    chat_id = await booking_chat(client, client_user, provider)
    chat = await db.get(Chat, uuid.UUID(chat_id))
    booking = await db.get(Booking, chat.booking_id)
    assert booking.chat_id == chat.id
