import asyncio
from datetime import datetime
from typing import Optional

import structlog

from lostfound_chat import config
from lostfound_chat.errors import ChatError
from lostfound_chat.services.conversation_service import ConversationService
from lostfound_chat.utils.time import Clock, utcnow


logger = structlog.get_logger(__name__)


class LifecycleSweeper:
    """Closes active conversations whose inactivity deadline has passed.

    A conversation may stay nominally active past its deadline until the next
    sweep. One conversation failing to close never stops the rest of the sweep.
    """

    def __init__(
        self,
        conversations: ConversationService,
        interval_seconds: float = config.SWEEP_INTERVAL_SECONDS,
        clock: Clock = utcnow,
    ) -> None:
        self._conversations = conversations
        self._interval = interval_seconds
        self._clock = clock
        self._task: Optional[asyncio.Task] = None

    async def sweep_once(self, now: Optional[datetime] = None) -> int:
        now = now or self._clock()
        try:
            expired = await self._conversations.find_expired(now)
        except ChatError:
            logger.warning("sweep_scan_failed", exc_info=True)
            return 0
        closed = 0
        for conversation in expired:
            try:
                await self._conversations.close(conversation["_id"])
                closed += 1
            except Exception:
                logger.warning("sweep_close_failed", conversation_id=conversation["_id"], exc_info=True)
        if closed:
            logger.info("sweep_finished", closed=closed, expired=len(expired))
        return closed

    async def run(self) -> None:
        while True:
            try:
                await self.sweep_once()
            except Exception:
                logger.exception("sweep_failed")
            await asyncio.sleep(self._interval)

    def start(self) -> None:
        if self._task is None:
            self._task = asyncio.create_task(self.run())

    async def stop(self) -> None:
        if self._task is None:
            return
        self._task.cancel()
        try:
            await self._task
        except asyncio.CancelledError:
            pass
        self._task = None
