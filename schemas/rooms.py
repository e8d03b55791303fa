from pydantic import BaseModel
from typing import Optional


class RoomMember(BaseModel):
    connection_id: str
    identity_id: str
    display_name: str

class RoomSummary(BaseModel):
    room_id: str
    display_name: str
    member_count: int
    created_at: str
    last_activity_at: str

class RoomDetailsResponse(RoomSummary):
    members: list[RoomMember]

class RoomListResponse(BaseModel):
    rooms: list[RoomSummary]

class MessageRecord(BaseModel):
    message_id: str
    kind: str
    from_identity: str
    from_display_name: str
    body: str
    sent_at: str
    room_id: Optional[str] = None
    to_identity: Optional[str] = None
    delivered: Optional[bool] = None

class HistoryResponse(BaseModel):
    messages: list[MessageRecord]
    offset: int
    limit: int
