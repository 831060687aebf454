"""FastAPI app: room lookup routes plus the game WebSocket."""

import logging
from contextlib import asynccontextmanager
from typing import Optional

import uvicorn
from fastapi import APIRouter, FastAPI, HTTPException, Request, WebSocket, WebSocketDisconnect
from fastapi.middleware.cors import CORSMiddleware

from api.config import Settings, settings as default_settings
from api.gateway import Gateway
from api.models import RoomInfo, RoomSummary
from api.registry import RoomRegistry

logger = logging.getLogger(__name__)

router = APIRouter()


@router.get("/health", tags=["System"], summary="Health check")
def health():
    return {"status": "ok"}


@router.get("/rooms", response_model=list[RoomSummary], tags=["Rooms"], summary="List rooms")
def list_rooms(request: Request):
    """Phase and occupancy of every room."""
    return request.app.state.registry.list_available_rooms()


@router.get("/rooms/{code}", response_model=RoomInfo, tags=["Rooms"], summary="Get room")
def get_room(code: str, request: Request):
    """Public room info; roles are never included."""
    info = request.app.state.registry.get_room_info(code)
    if info is None:
        raise HTTPException(404, "Room not found")
    return info


async def game_socket(ws: WebSocket):
    gateway: Gateway = ws.app.state.gateway
    connection_id = await gateway.connect(ws)
    try:
        while True:
            text = await ws.receive_text()
            await gateway.handle_text(connection_id, text)
    except WebSocketDisconnect:
        pass
    finally:
        await gateway.disconnect(connection_id)


def create_app(settings: Optional[Settings] = None) -> FastAPI:
    settings = settings or default_settings
    logging.basicConfig(
        level=settings.log_level.upper(),
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )

    registry = RoomRegistry(settings)
    gateway = Gateway(registry, settings)

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        logger.info("Mafia server ready (websocket path %s)", settings.ws_path)
        yield
        await gateway.close()

    app = FastAPI(title="Mafia Party API", version="0.1.0", lifespan=lifespan)
    app.add_middleware(
        CORSMiddleware,
        allow_origins=settings.allowed_origins,
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )
    app.state.settings = settings
    app.state.registry = registry
    app.state.gateway = gateway

    app.include_router(router)
    app.add_api_websocket_route(settings.ws_path, game_socket)
    return app


app = create_app()


def run() -> None:
    """Serve the module-level app; uvicorn exits non-zero if the port is taken."""
    uvicorn.run(app, host=default_settings.host, port=default_settings.port)


if __name__ == "__main__":
    run()
