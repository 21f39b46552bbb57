from pydantic import BaseModel
from typing import Optional


class Session(BaseModel):
    connection_id: str
    connected_at: str
    category: Optional[str] = None
    room: Optional[str] = None
