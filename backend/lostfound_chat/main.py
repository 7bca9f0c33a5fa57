from contextlib import asynccontextmanager

import structlog
from fastapi import FastAPI, Request
from fastapi.responses import JSONResponse

from lostfound_chat.database.connection import close_mongo_connection, connect_to_mongo, get_database
from lostfound_chat.errors import ChatError
from lostfound_chat.routers.chat import router as chat_router
from lostfound_chat.routers.conversations import router as conversations_router
from lostfound_chat.routers.presence import router as presence_router
from lostfound_chat.utils.dependencies import ChatServices
from lostfound_chat.utils.logging_config import setup_logging
from lostfound_chat.utils.realtime_bus import get_bus


logger = structlog.get_logger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI):

    setup_logging()
    await connect_to_mongo()
    bus = await get_bus()
    services = ChatServices(get_database(), bus=bus)
    app.state.services = services
    await services.start()
    logger.info("service_started", realtime_bus=bus.enabled)
    try:
        yield
    finally:
        await services.stop()
        await bus.close()
        await close_mongo_connection()


app = FastAPI(title="Lost & Found conversations", lifespan=lifespan)


@app.exception_handler(ChatError)
async def chat_error_handler(request: Request, exc: ChatError):
    return JSONResponse(status_code=exc.status_code, content={"detail": exc.message, **exc.to_payload()})


app.include_router(chat_router)
app.include_router(conversations_router)
app.include_router(presence_router)


@app.get("/health")
async def health():

    return {"status": "ok"}
