from pydantic import BaseModel
from typing import Optional


class CreateRoomRequest(BaseModel):
    password: Optional[str] = None

class CreateRoomResponse(BaseModel):
    success: bool = True
    roomId: str

class ErrorResponse(BaseModel):
    error: str

class HealthResponse(BaseModel):
    status: str
    rooms: int
    memberships: int
