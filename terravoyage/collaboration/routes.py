"""Collaboration websocket and presence routes."""

from typing import Any, List
from uuid import uuid4

import structlog
from fastapi import APIRouter, Request, WebSocket, WebSocketDisconnect

from terravoyage.collaboration.events import (
    RoomBroadcast,
    decode_frame,
    encode_frame,
)
from terravoyage.collaboration.exceptions import InvalidEventError
from terravoyage.collaboration.hub import CollaborationHub, HubConnection
from terravoyage.config import settings

logger = structlog.get_logger()

router = APIRouter(tags=["collaboration"])

# Close code sent when the auth layer supplied no user identity
UNAUTHORIZED_CLOSE_CODE = 4401


def get_hub(request: Request) -> CollaborationHub:
    """Hub owned by the running application."""
    return request.app.state.collaboration_hub


async def collaboration_socket(websocket: WebSocket):
    """Trip room websocket carrying ``{"event", "data"}`` JSON frames."""
    user_id = websocket.query_params.get("userId")
    if not user_id:
        await websocket.close(code=UNAUTHORIZED_CLOSE_CODE)
        logger.warning("Rejected collaboration socket without user identity")
        return

    hub: CollaborationHub = websocket.app.state.collaboration_hub
    await websocket.accept()

    async def send(event: str, data: Any) -> None:
        await websocket.send_text(encode_frame(event, data))

    connection = HubConnection(
        connection_id=str(uuid4()),
        user_id=user_id,
        send=send,
        user_name=websocket.query_params.get("userName"),
        user_image=websocket.query_params.get("userImage"),
    )
    await hub.connect(connection)

    try:
        while True:
            text = await websocket.receive_text()
            try:
                event, data = decode_frame(text)
            except InvalidEventError as e:
                await send(RoomBroadcast.ERROR.value, {"message": str(e)})
                continue
            await hub.handle(connection.connection_id, event, data)

    except WebSocketDisconnect:
        logger.info("Collaboration socket disconnected", connection_id=connection.connection_id)
    except Exception as e:
        logger.error(
            "Collaboration socket error",
            connection_id=connection.connection_id,
            error=str(e),
        )
    finally:
        await hub.disconnect(connection.connection_id)


router.add_api_websocket_route(settings.socket_path, collaboration_socket)


@router.get("/api/trips/{trip_id}/online-users")
async def list_online_users(trip_id: str, request: Request) -> List[dict]:
    """Users currently online in a trip room."""
    hub = get_hub(request)
    return [user.to_wire() for user in hub.get_online_users(trip_id)]
