import json

from fastapi import APIRouter, Depends, WebSocket, WebSocketDisconnect

from lostfound_chat.errors import NotAuthenticated, TransientStoreFailure, ValidationFailed
from lostfound_chat.schemas import events
from lostfound_chat.utils.dependencies import ChatServices, get_services
from lostfound_chat.utils.security import bearer_token
from lostfound_chat.utils.websocket_manager import Connection


router = APIRouter(prefix="/chat", tags=["chat"])


@router.websocket("/ws")
async def chat_socket(websocket: WebSocket, services: ChatServices = Depends(get_services)):
    # bearer credential via ?token=... or the Authorization header
    token = websocket.query_params.get("token") or bearer_token(websocket.headers.get("authorization"))
    try:
        principal = await services.identity.authenticate(token)
    except NotAuthenticated:
        await websocket.close(code=4401)
        return
    except TransientStoreFailure:
        await websocket.close(code=1013)
        return

    await websocket.accept()
    conn = Connection(websocket, principal)
    services.dispatcher.connect(conn)
    try:
        while True:
            data = await websocket.receive_text()
            try:
                payload = json.loads(data)
            except ValueError:
                conn.push(events.error(ValidationFailed("Malformed JSON frame").to_payload()))
                continue
            await services.dispatcher.handle(conn, payload)
    except WebSocketDisconnect:
        pass
    finally:
        await services.dispatcher.disconnect(conn)
