"""
WebSocket route for live order and location pushes.

Connect with one of:
- /ws?tags=sasha,night   courier channel for a tag set
- /ws?tag=sasha          same, single tag
- /ws?login=sasha        courier channel, tags looked up in the roster
- /ws?type=map           map dashboard (locations + couriers)
"""
from fastapi import APIRouter, Query, Request, WebSocket, WebSocketDisconnect
from starlette.status import WS_1008_POLICY_VIOLATION

from relay.exceptions import MalformedSubscription
from relay.observability import get_logger

router = APIRouter(tags=["websocket"])
logger = get_logger(__name__)


@router.websocket("/ws")
async def relay_websocket(
    websocket: WebSocket,
    tags: str = Query(default=None),
    tag: str = Query(default=None),
    login: str = Query(default=None),
    type: str = Query(default=None),
):
    """
    Courier or map-observer channel.

    The current state is pushed right after the handshake. Clients can send:
    - "ping" or {"type": "ping"} for keep-alive (answered with {"type": "pong"})
    - {"type": "location", "data": {"lat": .., "lng": ..}} from courier channels
    """
    registry = websocket.app.state.services.registry

    try:
        key = registry.resolve_key(tags=tags or tag, login=login, kind=type)
    except MalformedSubscription as e:
        logger.info(f"Rejected WebSocket subscription: {e}")
        await websocket.close(code=WS_1008_POLICY_VIOLATION, reason=str(e))
        return

    channel = await registry.subscribe(websocket, key)

    try:
        while not channel.closed:
            try:
                raw = await websocket.receive_text()
            except WebSocketDisconnect:
                logger.debug(f"Channel {channel.id} disconnected normally")
                break
            await registry.handle_message(channel, raw)

    except Exception as e:
        logger.error(f"WebSocket error on channel {channel.id}: {e}")
    finally:
        await registry.unsubscribe(channel)


@router.get("/ws/stats")
async def get_websocket_stats(request: Request):
    """Active channels, per-tag counts and message totals."""
    return request.app.state.services.registry.get_stats()
