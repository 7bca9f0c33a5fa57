from typing import Optional

from fastapi import Depends, HTTPException, status
from fastapi.requests import HTTPConnection
from fastapi.security import HTTPAuthorizationCredentials, HTTPBearer
from motor.motor_asyncio import AsyncIOMotorDatabase

from lostfound_chat import config
from lostfound_chat.errors import NotAuthenticated
from lostfound_chat.repositories.conversation_repository import ConversationRepository
from lostfound_chat.repositories.listing_repository import ListingRepository
from lostfound_chat.repositories.message_repository import MessageRepository
from lostfound_chat.repositories.user_repository import UserRepository
from lostfound_chat.schemas.user import Principal
from lostfound_chat.services.chat_service import ChatService
from lostfound_chat.services.conversation_service import ConversationService
from lostfound_chat.services.dispatcher import Dispatcher
from lostfound_chat.services.reputation import ReputationNotifier
from lostfound_chat.services.sweeper import LifecycleSweeper
from lostfound_chat.utils.locks import KeyedLock
from lostfound_chat.utils.rate_limiter import SlidingWindowRateLimiter
from lostfound_chat.utils.realtime_bus import NoopBus, RoomBroadcaster
from lostfound_chat.utils.security import IdentityService
from lostfound_chat.utils.time import Clock, utcnow
from lostfound_chat.utils.websocket_manager import ConnectionManager


http_bearer = HTTPBearer(auto_error=False)


class ChatServices:
    """Process-wide service graph, built once per application."""

    def __init__(
        self,
        db: AsyncIOMotorDatabase,
        bus=None,
        clock: Clock = utcnow,
        limiter: Optional[SlidingWindowRateLimiter] = None,
        jwt_secret: Optional[str] = None,
        check_listings: bool = True,
    ) -> None:
        bus = bus if bus is not None else NoopBus()
        self.locks = locks = KeyedLock()
        self.bus = bus
        self.conversation_repo = ConversationRepository(db)
        self.message_repo = MessageRepository(db)
        self.identity = IdentityService(UserRepository(db), secret=jwt_secret)
        self.registry = ConnectionManager()
        self.broadcaster = RoomBroadcaster(self.registry, bus)
        self.reputation = ReputationNotifier(bus)
        self.conversations = ConversationService(
            self.conversation_repo,
            listing_repo=ListingRepository(db) if check_listings else None,
            reputation=self.reputation,
            locks=locks,
            clock=clock,
        )
        self.ledger = ChatService(self.message_repo, self.conversation_repo, locks=locks, clock=clock)
        if limiter is None:
            limiter = SlidingWindowRateLimiter(config.RATE_LIMIT_MAX_EVENTS, config.RATE_LIMIT_WINDOW_SECONDS)
        self.limiter = limiter
        self.dispatcher = Dispatcher(
            self.conversations,
            self.ledger,
            self.registry,
            self.broadcaster,
            identity=self.identity,
            limiter=self.limiter,
        )
        self.sweeper = LifecycleSweeper(self.conversations, clock=clock)

    async def start(self) -> None:
        await self.conversation_repo.ensure_indexes()
        await self.broadcaster.start()
        self.sweeper.start()

    async def stop(self) -> None:
        await self.sweeper.stop()
        await self.broadcaster.stop()
        await self.reputation.drain()


def get_services(conn: HTTPConnection) -> ChatServices:
    return conn.app.state.services


async def get_current_user(
    credentials: Optional[HTTPAuthorizationCredentials] = Depends(http_bearer),
    services: ChatServices = Depends(get_services),
) -> Principal:
    try:
        return await services.identity.authenticate(credentials.credentials if credentials else None)
    except NotAuthenticated as exc:
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail=exc.message,
            headers={"WWW-Authenticate": "Bearer"},
        ) from exc
