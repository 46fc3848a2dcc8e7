import logging

from fastapi import APIRouter, WebSocket, WebSocketDisconnect

from ...core.container import ApplicationContainer
from ...services.change_stream import ChangeStreamManager

router = APIRouter()

logger = logging.getLogger(__name__)


@router.websocket("/ws/subscriptions")
async def websocket_subscriptions(websocket: WebSocket) -> None:
    container: ApplicationContainer = getattr(websocket.app.state, "container", None)  # type: ignore[attr-defined]
    if not container:
        logger.error("Application container not initialised for websocket connection.")
        await websocket.close(code=1011)
        return

    manager: ChangeStreamManager = container.stream_manager

    await manager.connect(websocket)
    try:
        while True:
            await websocket.receive_text()
    except WebSocketDisconnect:
        await manager.disconnect(websocket)
    except Exception:
        await manager.disconnect(websocket)
        logger.exception("Unexpected WebSocket error")
