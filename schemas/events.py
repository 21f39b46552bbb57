from pydantic import BaseModel
from typing import Any, Optional


class InboundEvent(BaseModel):
    event: str
    data: Optional[dict] = None

class JoinCategoryRequest(BaseModel):
    category: Optional[str] = None

class NextRequest(BaseModel):
    category: Optional[str] = None

class RelayRequest(BaseModel):
    room: str
    payload: Any = None

class OutboundEvent(BaseModel):
    event: str
    data: Any = None
