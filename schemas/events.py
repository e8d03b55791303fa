"""Wire events exchanged over the chat WebSocket.

Every frame is a JSON object with a ``type`` tag. Inbound frames are parsed
into one variant of :data:`InboundEvent`; anything that does not match a
variant is rejected at the boundary. Outbound frames are the models below,
serialized with ``model_dump_json(exclude_none=True)``.
"""
from typing import Annotated, Literal, Optional, Union

from pydantic import BaseModel, Field, StringConstraints, TypeAdapter, field_validator

from schemas.rooms import RoomMember
from schemas.users import Identity

IdentityId = Annotated[str, StringConstraints(strip_whitespace=True, min_length=1, max_length=64)]
RoomId = Annotated[str, StringConstraints(strip_whitespace=True, min_length=1, max_length=64)]
DisplayName = Annotated[str, StringConstraints(strip_whitespace=True, min_length=1, max_length=100)]

MAX_BODY_LENGTH = 4000

DestinationKind = Literal["private", "room"]
MessageKind = Literal["private", "room"]


# Client -> Server

class AnnounceEvent(BaseModel):
    type: Literal["announce"]
    identity_id: IdentityId

class JoinRoomEvent(BaseModel):
    type: Literal["join-room"]
    room_id: RoomId
    room_display_name: Optional[DisplayName] = None

class LeaveRoomEvent(BaseModel):
    type: Literal["leave-room"]

class _BodyEvent(BaseModel):
    body: str = Field(max_length=MAX_BODY_LENGTH)

    @field_validator("body")
    @classmethod
    def body_not_blank(cls, value: str) -> str:
        if not value.strip():
            raise ValueError("body must not be blank")
        return value

class SendPrivateEvent(_BodyEvent):
    type: Literal["send-private"]
    to_identity_id: IdentityId

class SendRoomEvent(_BodyEvent):
    type: Literal["send-room"]

class TypingStartEvent(BaseModel):
    type: Literal["typing-start"]
    destination: IdentityId
    destination_kind: DestinationKind

class TypingStopEvent(BaseModel):
    type: Literal["typing-stop"]
    destination: IdentityId
    destination_kind: DestinationKind

class ListOnlineEvent(BaseModel):
    type: Literal["list-online"]

class PingEvent(BaseModel):
    type: Literal["ping"]

class HeartbeatReplyEvent(BaseModel):
    """Answer to the server's heartbeat ``ping``."""
    type: Literal["pong"]


InboundEvent = Annotated[
    Union[
        AnnounceEvent,
        JoinRoomEvent,
        LeaveRoomEvent,
        SendPrivateEvent,
        SendRoomEvent,
        TypingStartEvent,
        TypingStopEvent,
        ListOnlineEvent,
        PingEvent,
        HeartbeatReplyEvent,
    ],
    Field(discriminator="type"),
]

inbound_adapter = TypeAdapter(InboundEvent)


def parse_inbound(frame: Union[str, bytes, dict]) -> InboundEvent:
    """Validate a raw frame. Raises ``pydantic.ValidationError`` on bad input."""
    if isinstance(frame, dict):
        return inbound_adapter.validate_python(frame)
    return inbound_adapter.validate_json(frame)


# Server -> Client

class OutboundEvent(BaseModel):
    type: str

class ConnectedEvent(OutboundEvent):
    type: Literal["connected"] = "connected"
    connection_id: str
    identity_id: str
    display_name: str
    online_users: list[Identity]

class PresenceEvent(OutboundEvent):
    type: Literal["presence-online", "presence-offline"]
    identity_id: str
    display_name: str

class OnlineUsersEvent(OutboundEvent):
    type: Literal["online-users"] = "online-users"
    users: list[Identity]

class RoomJoinedEvent(OutboundEvent):
    type: Literal["room-joined"] = "room-joined"
    room_id: str
    display_name: str
    members: list[RoomMember]

class RoomLeftEvent(OutboundEvent):
    type: Literal["room-left"] = "room-left"
    room_id: str

class MemberEvent(OutboundEvent):
    type: Literal["member-joined", "member-left"]
    identity_id: str
    display_name: str
    room_id: str

class MessageEvent(OutboundEvent):
    type: Literal["receive-message", "message-sent"]
    message_id: str
    kind: MessageKind
    from_identity: str
    from_display_name: str
    body: str
    sent_at: str
    room_id: Optional[str] = None
    to_identity: Optional[str] = None
    # Only set on message-sent acknowledgments
    delivered: Optional[bool] = None
    reason: Optional[str] = None

class TypingEvent(OutboundEvent):
    type: Literal["typing-started", "typing-stopped"]
    identity_id: str
    destination: str
    destination_kind: DestinationKind

class PongEvent(OutboundEvent):
    type: Literal["pong"] = "pong"
    timestamp: str

class HeartbeatEvent(OutboundEvent):
    type: Literal["ping"] = "ping"
    timestamp: str

class ErrorEvent(OutboundEvent):
    type: Literal["error"] = "error"
    code: str
    message: str
