from typing import Any, Optional, Union

from pydantic import BaseModel, ConfigDict, Field


class ClientFrame(BaseModel):
    """A frame sent by a client over the session websocket.

    ``id`` is echoed back on the matching ``ack`` frame so the client can pair
    replies with requests.
    """
    event: str
    id: Optional[Union[int, str]] = None
    data: Any = None


class JoinPayload(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    room_id: str = Field(alias="roomId", min_length=1)
    password: Optional[str] = None
    display_name: Any = Field(default=None, alias="displayName")


class RelayPayload(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    room_id: str = Field(alias="roomId", min_length=1)
    data: Any = None
    target: Optional[str] = None


class ChatPayload(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    room_id: str = Field(alias="roomId", min_length=1)
    message: Any = None
    target: Optional[str] = None
