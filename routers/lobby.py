from fastapi import APIRouter, HTTPException, Request
from schemas.lobby import CategoryStatus, LobbyStatusResponse, RoomDetailsResponse
from logging_config import get_logger

logger = get_logger(__name__)

lobby_router = APIRouter(prefix="/lobby", tags=["lobby"])


@lobby_router.get("/", response_model=LobbyStatusResponse)
async def get_lobby_status(request: Request):
    """
    Live lobby counters.

    Returns:
    - online_count: Number of connected sessions
    - categories: Waiting pool size for each chat category
    """
    session_router = request.app.state.session_router
    backend = request.app.state.backend
    categories = [
        CategoryStatus(category=category, waiting_count=session_router.matchmaker.waiting_count(category))
        for category in session_router.categories
    ]
    online_count = backend.session_count()
    logger.debug(f"Lobby status: {online_count} online")
    return LobbyStatusResponse(online_count=online_count, categories=categories)


@lobby_router.get("/rooms/{room_id}", response_model=RoomDetailsResponse)
async def get_room_details(room_id: str, request: Request):
    members = request.app.state.backend.room_members(room_id)
    if not members:
        logger.info(f"Room details failed: Room {room_id} not found")
        raise HTTPException(status_code=404, detail="Room not found")

    return RoomDetailsResponse(
        room_id=room_id,
        members_count=len(members),
        is_active=len(members) == 2,
    )
