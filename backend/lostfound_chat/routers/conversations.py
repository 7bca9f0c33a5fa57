from typing import List, Optional

from fastapi import APIRouter, Depends, Query

from lostfound_chat import config
from lostfound_chat.models.conversation import ConversationDocument, ConversationStatus
from lostfound_chat.schemas import events
from lostfound_chat.schemas.conversation import (
    AddParticipantRequest,
    ConversationOut,
    MarkReadRequest,
    MessageOut,
    UpdateConversationRequest,
)
from lostfound_chat.schemas.user import Principal
from lostfound_chat.utils.dependencies import ChatServices, get_current_user, get_services


router = APIRouter(prefix="/conversations", tags=["chat"])


async def render(services: ChatServices, conversations: List[ConversationDocument], viewer_id: Optional[str] = None) -> List[dict]:
    # one users query per response, however many conversations it lists
    ids = {p["principal_id"] for c in conversations for p in c.get("participants", [])}
    people = await services.identity.display_attributes(ids)
    return [ConversationOut.from_document(c, viewer_id, people).dump() for c in conversations]


@router.get("")
async def list_conversations(
    status: ConversationStatus = ConversationStatus.ACTIVE,
    current_user: Principal = Depends(get_current_user),
    services: ChatServices = Depends(get_services),
):
    items = await services.conversations.find_for_principal(current_user.id, status.value)
    return {"items": await render(services, items, current_user.id)}


@router.get("/{conversation_id}")
async def get_conversation(conversation_id: str, current_user: Principal = Depends(get_current_user), services: ChatServices = Depends(get_services)):
    conversation = await services.conversations.get_for_member(conversation_id, current_user.id)
    [item] = await render(services, [conversation], current_user.id)
    return item


@router.patch("/{conversation_id}")
async def update_conversation(
    conversation_id: str,
    body: UpdateConversationRequest,
    current_user: Principal = Depends(get_current_user),
    services: ChatServices = Depends(get_services),
):
    await services.conversations.get_for_member(conversation_id, current_user.id, with_messages=False)
    conversation = await services.conversations.update_details(
        conversation_id,
        title=body.title,
        chat_type=body.chat_type.value if body.chat_type else None,
        priority=body.priority.value if body.priority else None,
        metadata=body.metadata.model_dump(exclude_unset=True) if body.metadata else None,
        notifications=body.notifications.model_dump(exclude_unset=True) if body.notifications else None,
    )
    if body.model_fields_set:
        await services.broadcaster.publish_room(conversation_id, events.conversation_updated(ConversationOut.from_document(conversation)))
    [item] = await render(services, [conversation])
    return item


@router.get("/{conversation_id}/messages")
async def list_messages(
    conversation_id: str,
    limit: int = Query(50, ge=1, le=config.HISTORY_PAGE_MAX),
    before: Optional[str] = None,
    current_user: Principal = Depends(get_current_user),
    services: ChatServices = Depends(get_services),
):
    await services.conversations.get_for_member(conversation_id, current_user.id, with_messages=False)
    messages = await services.ledger.get_history(conversation_id, limit=limit, before=before)
    items = [MessageOut.from_document(m).dump() for m in messages]
    next_cursor = items[0]["id"] if len(items) == limit else None
    return {"items": items, "next_cursor": next_cursor}


@router.get("/{conversation_id}/unread")
async def unread_count(conversation_id: str, current_user: Principal = Depends(get_current_user), services: ChatServices = Depends(get_services)):
    await services.conversations.get_for_member(conversation_id, current_user.id, with_messages=False)
    count = await services.ledger.unread_count_for(conversation_id, current_user.id)
    return {"conversationId": conversation_id, "unreadCount": count}


@router.post("/{conversation_id}/read")
async def mark_read(
    conversation_id: str,
    body: Optional[MarkReadRequest] = None,
    current_user: Principal = Depends(get_current_user),
    services: ChatServices = Depends(get_services),
):
    await services.conversations.get_for_member(conversation_id, current_user.id, with_messages=False)

    async def fan_out(marked):
        if marked:
            await services.broadcaster.publish_room(conversation_id, events.messages_read(conversation_id, current_user.id, marked))

    message_ids = body.message_ids if body else None
    marked = await services.ledger.mark_read(conversation_id, current_user.id, message_ids, on_commit=fan_out)
    return {"updated": len(marked), "messageIds": marked}


@router.post("/{conversation_id}/close")
async def close_conversation(conversation_id: str, current_user: Principal = Depends(get_current_user), services: ChatServices = Depends(get_services)):
    await services.conversations.get_for_member(conversation_id, current_user.id, with_messages=False)
    conversation = await services.conversations.close(conversation_id, closed_by=current_user.id)
    [item] = await render(services, [conversation])
    return item


@router.post("/{conversation_id}/participants")
async def add_participant(
    conversation_id: str,
    body: AddParticipantRequest,
    current_user: Principal = Depends(get_current_user),
    services: ChatServices = Depends(get_services),
):
    await services.conversations.get_for_member(conversation_id, current_user.id, with_messages=False)
    conversation = await services.conversations.add_participant(conversation_id, body.principal_id)
    [item] = await render(services, [conversation])
    return item


@router.delete("/{conversation_id}/participants/me")
async def leave_conversation(conversation_id: str, current_user: Principal = Depends(get_current_user), services: ChatServices = Depends(get_services)):
    await services.conversations.get_for_member(conversation_id, current_user.id, with_messages=False)
    conversation = await services.conversations.remove_participant(conversation_id, current_user.id)
    [item] = await render(services, [conversation])
    return item
