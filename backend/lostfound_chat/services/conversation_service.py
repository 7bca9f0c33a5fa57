from typing import Any, Dict, List, Optional, Tuple

import structlog

from lostfound_chat import config
from lostfound_chat.errors import (
    ConversationNotFound,
    DuplicateConversation,
    NotAuthorized,
    NotFound,
    ValidationFailed,
)
from lostfound_chat.models.conversation import (
    ChatType,
    ConversationDocument,
    ConversationStatus,
    Priority,
    default_metadata,
    default_notifications,
    is_active_participant,
)
from lostfound_chat.repositories.conversation_repository import ConversationRepository
from lostfound_chat.repositories.listing_repository import ListingRepository
from lostfound_chat.services.reputation import ReputationNotifier
from lostfound_chat.utils.locks import KeyedLock
from lostfound_chat.utils.time import Clock, utcnow


logger = structlog.get_logger(__name__)

DEFAULT_TITLE = "Discussion about item"


class ConversationService:
    """Conversation lifecycle: creation, membership and closing.

    Participant writes share the per-conversation lock with the message ledger,
    so membership changes never interleave with message writes.
    """

    def __init__(
        self,
        conversation_repo: ConversationRepository,
        listing_repo: Optional[ListingRepository] = None,
        reputation: Optional[ReputationNotifier] = None,
        locks: Optional[KeyedLock] = None,
        clock: Clock = utcnow,
    ) -> None:
        self._conversation_repo = conversation_repo
        self._listing_repo = listing_repo
        self._reputation = reputation
        self._locks = locks if locks is not None else KeyedLock()
        self._create_locks = KeyedLock()
        self._clock = clock

    async def create(self, item_ref: str, participant_ids: List[str], title: Optional[str] = None) -> ConversationDocument:
        ids = self._validate_participants(item_ref, participant_ids)
        async with self._create_locks(self._pair_key(item_ref, ids)):
            if await self._conversation_repo.find_open_for_participants(item_ref, ids):
                raise DuplicateConversation()
            return await self._insert(item_ref, ids, title)

    async def get_or_create(self, item_ref: str, creator_id: str, counterparty_id: str) -> Tuple[ConversationDocument, bool]:
        ids = self._validate_participants(item_ref, [creator_id, counterparty_id])
        async with self._create_locks(self._pair_key(item_ref, ids)):
            existing = await self._conversation_repo.find_open_for_participants(item_ref, ids)
            if existing:
                return existing, False
            return await self._insert(item_ref, ids, None), True

    async def get(self, conversation_id: str, with_messages: bool = True) -> ConversationDocument:
        conversation = await self._conversation_repo.get(conversation_id, with_messages=with_messages)
        if conversation is None:
            raise ConversationNotFound()
        return conversation

    async def get_for_member(self, conversation_id: str, principal_id: str, with_messages: bool = True) -> ConversationDocument:
        # missing and foreign conversations look the same to the caller
        conversation = await self._conversation_repo.get(conversation_id, with_messages=with_messages)
        if conversation is None or not is_active_participant(conversation, principal_id):
            raise NotAuthorized()
        return conversation

    async def find_for_principal(self, principal_id: str, status: str = ConversationStatus.ACTIVE.value) -> List[ConversationDocument]:
        return await self._conversation_repo.list_for_principal(principal_id, status)

    async def add_participant(self, conversation_id: str, principal_id: str) -> ConversationDocument:
        if not principal_id:
            raise ValidationFailed("Participant id is required")
        async with self._locks(conversation_id):
            conversation = await self.get(conversation_id, with_messages=False)
            now = self._clock()
            index = self._participant_index(conversation, principal_id)
            if index is None:
                await self._conversation_repo.push_participant(
                    conversation_id,
                    {"principal_id": principal_id, "joined_at": now, "last_seen": now, "is_active": True},
                    now,
                )
            elif not conversation["participants"][index].get("is_active"):
                await self._conversation_repo.set_participant_active(conversation_id, index, True, now)
            return await self.get(conversation_id, with_messages=False)

    async def remove_participant(self, conversation_id: str, principal_id: str) -> ConversationDocument:
        async with self._locks(conversation_id):
            conversation = await self.get(conversation_id, with_messages=False)
            index = self._participant_index(conversation, principal_id)
            if index is not None and conversation["participants"][index].get("is_active"):
                await self._conversation_repo.set_participant_active(conversation_id, index, False, self._clock())
            return await self.get(conversation_id, with_messages=False)

    async def close(self, conversation_id: str, closed_by: Optional[str] = None) -> ConversationDocument:
        async with self._locks(conversation_id):
            now = self._clock()
            changed = await self._conversation_repo.close(conversation_id, now, closed_by)
            conversation = await self.get(conversation_id, with_messages=False)
        if changed:
            logger.info("conversation_closed", conversation_id=conversation_id, closed_by=closed_by)
            if self._reputation is not None:
                self._reputation.conversation_resolved(conversation)
        return conversation

    async def update_details(
        self,
        conversation_id: str,
        title: Optional[str] = None,
        chat_type: Optional[str] = None,
        priority: Optional[str] = None,
        metadata: Optional[Dict[str, Any]] = None,
        notifications: Optional[Dict[str, Any]] = None,
    ) -> ConversationDocument:
        """Partially updates the descriptive fields; ``metadata`` and
        ``notifications`` merge key by key into what is stored."""
        fields = self._detail_fields(title, chat_type, priority, metadata, notifications)
        async with self._locks(conversation_id):
            if fields and await self._conversation_repo.set_details(conversation_id, fields, self._clock()):
                logger.info("conversation_updated", conversation_id=conversation_id, fields=sorted(fields))
            return await self.get(conversation_id, with_messages=False)

    async def find_expired(self, now=None) -> List[ConversationDocument]:
        return await self._conversation_repo.find_expired(now or self._clock())

    async def _insert(self, item_ref: str, ids: List[str], title: Optional[str]) -> ConversationDocument:
        if self._listing_repo is not None and not await self._listing_repo.exists(item_ref):
            raise NotFound("Item not found")
        now = self._clock()
        doc = {
            "item_ref": item_ref,
            "title": title or DEFAULT_TITLE,
            "chat_type": ChatType.INQUIRY.value,
            "priority": Priority.MEDIUM.value,
            "participants": [
                {"principal_id": pid, "joined_at": now, "last_seen": now, "is_active": True} for pid in ids
            ],
            "messages": [],
            "status": ConversationStatus.ACTIVE.value,
            "is_resolved": False,
            "resolved_at": None,
            "resolved_by": None,
            "last_message": {"content": None, "sender_id": None, "timestamp": None, "message_type": "text"},
            "last_activity": now,
            "auto_close_at": now + config.auto_close_window(),
            "metadata": default_metadata(),
            "notifications": default_notifications(),
            "created_at": now,
            "updated_at": now,
        }
        conversation = await self._conversation_repo.insert(doc)
        logger.info("conversation_created", conversation_id=conversation["_id"], item_ref=item_ref)
        return conversation

    def _validate_participants(self, item_ref: str, participant_ids: List[str]) -> List[str]:
        if not item_ref:
            raise ValidationFailed("Item reference is required")
        ids: List[str] = []
        for pid in participant_ids:
            if pid and pid not in ids:
                ids.append(pid)
        if len(ids) < 2:
            raise ValidationFailed("A conversation needs two distinct participants")
        return ids

    @staticmethod
    def _detail_fields(title, chat_type, priority, metadata, notifications) -> Dict[str, Any]:
        fields: Dict[str, Any] = {}
        if title is not None:
            title = title.strip()
            if not title or len(title) > config.TITLE_MAX_LENGTH:
                raise ValidationFailed(f"Title must be between 1 and {config.TITLE_MAX_LENGTH} characters")
            fields["title"] = title
        try:
            if chat_type is not None:
                fields["chat_type"] = ChatType(chat_type).value
            if priority is not None:
                fields["priority"] = Priority(priority).value
        except ValueError as exc:
            raise ValidationFailed(str(exc)) from exc
        for group, values, known in (
            ("metadata", metadata, default_metadata()),
            ("notifications", notifications, default_notifications()),
        ):
            for key, value in (values or {}).items():
                if key not in known:
                    raise ValidationFailed(f"Unknown {group} field: {key}")
                fields[f"{group}.{key}"] = value
        return fields

    @staticmethod
    def _pair_key(item_ref: str, ids: List[str]) -> Tuple[str, frozenset]:
        return item_ref, frozenset(ids)

    @staticmethod
    def _participant_index(conversation: ConversationDocument, principal_id: str) -> Optional[int]:
        for i, participant in enumerate(conversation.get("participants", [])):
            if participant["principal_id"] == principal_id:
                return i
        return None
