from fastapi import APIRouter, Depends

from lostfound_chat.schemas.user import Principal
from lostfound_chat.utils.dependencies import ChatServices, get_current_user, get_services


router = APIRouter(prefix="/presence", tags=["chat"])


@router.get("/{conversation_id}")
async def presence(conversation_id: str, current_user: Principal = Depends(get_current_user), services: ChatServices = Depends(get_services)):
    """
    Online principals of a room as seen by this process. Presence is in-memory
    only, so with several processes the answer covers local connections.
    """
    await services.conversations.get_for_member(conversation_id, current_user.id, with_messages=False)
    return {
        "conversationId": conversation_id,
        "online": services.registry.online_principals(conversation_id),
    }
