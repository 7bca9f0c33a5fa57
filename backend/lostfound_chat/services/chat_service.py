from typing import Any, Awaitable, Callable, Dict, List, Optional, Tuple

from bson import ObjectId

from lostfound_chat import config
from lostfound_chat.errors import (
    ConversationNotActive,
    ConversationNotFound,
    MessageDeleted,
    MessageNotFound,
    NotAuthorized,
    ValidationFailed,
)
from lostfound_chat.models.conversation import ConversationDocument, count_unread
from lostfound_chat.models.message import TOMBSTONE, MessageDocument, MessageType
from lostfound_chat.repositories.conversation_repository import ConversationRepository
from lostfound_chat.repositories.message_repository import MessageRepository
from lostfound_chat.utils.locks import KeyedLock
from lostfound_chat.utils.time import Clock, utcnow


OnCommit = Callable[[Any], Awaitable[None]]


class ChatService:
    """Append-only message ledger of a conversation.

    Every mutation runs under the conversation's lock and is a single document
    update, so a message write and its ``last_message`` / ``last_activity`` /
    ``auto_close_at`` bookkeeping land together or not at all. ``on_commit``
    runs after the write while the lock is still held, which keeps whatever it
    publishes in commit order.
    """

    def __init__(
        self,
        message_repo: MessageRepository,
        conversation_repo: ConversationRepository,
        locks: Optional[KeyedLock] = None,
        clock: Clock = utcnow,
        max_length: int = config.MESSAGE_MAX_LENGTH,
    ) -> None:
        self._message_repo = message_repo
        self._conversation_repo = conversation_repo
        self._locks = locks if locks is not None else KeyedLock()
        self._clock = clock
        self._max_length = max_length

    async def append(
        self,
        conversation_id: str,
        sender_id: str,
        content: str,
        message_type: str = MessageType.TEXT.value,
        attachment: Optional[Dict[str, Any]] = None,
        on_commit: Optional[OnCommit] = None,
    ) -> MessageDocument:
        text = self.clean_content(content)
        message_type = self._message_type(message_type)
        async with self._locks(conversation_id):
            now = self._clock()
            message: Dict[str, Any] = {
                "_id": ObjectId(),
                "sender_id": sender_id,
                "content": text,
                "message_type": message_type,
                "attachment": attachment,
                "created_at": now,
                "is_read": False,
                "read_at": None,
                "is_edited": False,
                "edited_at": None,
                "original_content": None,
                "is_deleted": False,
                "deleted_at": None,
            }
            last_message = {"content": text, "sender_id": sender_id, "timestamp": now, "message_type": message_type}
            stored = await self._message_repo.append(
                conversation_id, message, last_message, now, now + config.auto_close_window()
            )
            if not stored:
                if await self._conversation_repo.get(conversation_id, with_messages=False) is None:
                    raise ConversationNotFound()
                raise ConversationNotActive()
            result = dict(message, _id=str(message["_id"]))
            if on_commit is not None:
                await on_commit(result)
            return result  # type: ignore[return-value]

    async def edit(
        self,
        conversation_id: str,
        message_id: str,
        new_content: str,
        requester_id: str,
        on_commit: Optional[OnCommit] = None,
    ) -> MessageDocument:
        async with self._locks(conversation_id):
            conversation = await self._load(conversation_id)
            index, message = self._find_message(conversation, message_id)
            if message["sender_id"] != requester_id:
                raise NotAuthorized("Not authorized to edit this message")
            if message.get("is_deleted"):
                raise MessageDeleted()
            text = self.clean_content(new_content)
            now = self._clock()
            fields: Dict[str, Any] = {"content": text, "is_edited": True, "edited_at": now}
            if not message.get("is_edited"):
                fields["original_content"] = message["content"]
            await self._message_repo.update_message(conversation_id, index, fields, now)
            message.update(fields)
            if on_commit is not None:
                await on_commit(message)
            return message

    async def delete(
        self,
        conversation_id: str,
        message_id: str,
        requester_id: str,
        on_commit: Optional[OnCommit] = None,
    ) -> MessageDocument:
        async with self._locks(conversation_id):
            conversation = await self._load(conversation_id)
            index, message = self._find_message(conversation, message_id)
            if message["sender_id"] != requester_id:
                raise NotAuthorized("Not authorized to delete this message")
            if not message.get("is_deleted"):
                now = self._clock()
                fields = {"is_deleted": True, "deleted_at": now, "content": TOMBSTONE}
                await self._message_repo.update_message(conversation_id, index, fields, now)
                message.update(fields)
            if on_commit is not None:
                await on_commit(message)
            return message

    async def mark_read(
        self,
        conversation_id: str,
        reader_id: str,
        message_ids: Optional[List[str]] = None,
        on_commit: Optional[OnCommit] = None,
    ) -> List[str]:
        """Marks messages not written by ``reader_id`` as read.

        Without ``message_ids`` every unread message qualifies; otherwise only
        the listed ones that belong to this conversation. Returns the ids that
        changed state.
        """
        wanted = set(message_ids) if message_ids is not None else None
        async with self._locks(conversation_id):
            conversation = await self._load(conversation_id)
            indexes: List[int] = []
            marked: List[str] = []
            for i, message in enumerate(conversation.get("messages", [])):
                if message["sender_id"] == reader_id or message.get("is_read"):
                    continue
                if wanted is not None and message["_id"] not in wanted:
                    continue
                indexes.append(i)
                marked.append(message["_id"])
            participant_index = next(
                (i for i, p in enumerate(conversation.get("participants", [])) if p["principal_id"] == reader_id),
                None,
            )
            await self._message_repo.mark_read(conversation_id, indexes, participant_index, self._clock())
            if on_commit is not None:
                await on_commit(marked)
            return marked

    async def unread_count_for(self, conversation_id: str, principal_id: str) -> int:
        return count_unread(await self._load(conversation_id), principal_id)

    async def get_history(self, conversation_id: str, limit: int = 50, before: Optional[str] = None) -> List[MessageDocument]:
        return await self._message_repo.get_messages(conversation_id, limit=limit, before=before)

    async def _load(self, conversation_id: str) -> ConversationDocument:
        conversation = await self._conversation_repo.get(conversation_id)
        if conversation is None:
            raise ConversationNotFound()
        return conversation

    @staticmethod
    def _find_message(conversation: ConversationDocument, message_id: str) -> Tuple[int, MessageDocument]:
        for i, message in enumerate(conversation.get("messages", [])):
            if message["_id"] == message_id:
                return i, message
        raise MessageNotFound()

    def clean_content(self, content: Optional[str]) -> str:
        text = (content or "").strip()
        if not text:
            raise ValidationFailed("Message content cannot be empty")
        if len(text) > self._max_length:
            raise ValidationFailed(f"Message cannot exceed {self._max_length} characters")
        return text

    @staticmethod
    def _message_type(value: str) -> str:
        try:
            return MessageType(value).value
        except ValueError:
            raise ValidationFailed("Unknown message type") from None
