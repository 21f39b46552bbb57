from pydantic import BaseModel


class CategoryStatus(BaseModel):
    category: str
    waiting_count: int

class LobbyStatusResponse(BaseModel):
    online_count: int
    categories: list[CategoryStatus]

class RoomDetailsResponse(BaseModel):
    room_id: str
    members_count: int
    is_active: bool
