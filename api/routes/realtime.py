"""WebSocket endpoint for realtime messaging."""

from fastapi import APIRouter, Query, WebSocket

from messaging.realtime.gateway import get_gateway

router = APIRouter(tags=["realtime"])


@router.websocket("/ws/messaging")
async def messaging_socket(websocket: WebSocket, token: str | None = Query(default=None)):
    """
    Realtime messaging socket.

    The access token is read from the `token` query parameter (browsers cannot
    set headers on WebSocket handshakes) or from an `Authorization: Bearer`
    header. Invalid tokens are closed with code 1008.
    """
    if token is None:
        auth_header = websocket.headers.get("authorization", "")
        if auth_header.startswith("Bearer "):
            token = auth_header.split(" ", 1)[1]

    await get_gateway().serve(websocket, token)
