import asyncio
import json
from typing import Set

import structlog

from lostfound_chat.models.conversation import ConversationDocument, participant_ids
from lostfound_chat.utils.time import isoformat


logger = structlog.get_logger(__name__)

RESOLVED_CHANNEL = "reputation:conversation_resolved"


class ReputationNotifier:
    """Fire-and-forget notification to the reputation service.

    Publishing happens in a background task; failures are logged and never
    reach the code that closed the conversation.
    """

    def __init__(self, bus) -> None:
        self._bus = bus
        self._pending: Set[asyncio.Task] = set()

    def conversation_resolved(self, conversation: ConversationDocument) -> None:
        payload = json.dumps({
            "conversationId": conversation["_id"],
            "itemRef": conversation["item_ref"],
            "resolvedAt": isoformat(conversation.get("resolved_at")),
            "resolvedBy": conversation.get("resolved_by"),
            "participants": participant_ids(conversation, active_only=False),
        })
        task = asyncio.create_task(self._publish(conversation["_id"], payload))
        self._pending.add(task)
        task.add_done_callback(self._pending.discard)

    async def _publish(self, conversation_id: str, payload: str) -> None:
        try:
            await self._bus.publish(RESOLVED_CHANNEL, payload)
        except Exception:
            logger.warning("reputation_notify_failed", conversation_id=conversation_id, exc_info=True)

    async def drain(self) -> None:
        if self._pending:
            await asyncio.gather(*list(self._pending), return_exceptions=True)
