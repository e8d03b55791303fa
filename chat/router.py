import uuid
from dataclasses import dataclass, field
from datetime import datetime
from typing import Optional

from chat.connections import Connection, ConnectionRegistry
from chat.errors import ChatError, ErrorCode
from chat.rooms import RoomManager
from logging_config import get_logger
from schemas.events import MessageEvent

logger = get_logger(__name__)

PRIVATE = "private"
ROOM = "room"


@dataclass(frozen=True)
class MessageEnvelope:
    """In-flight message. The engine never stores it; the message store gets ``to_record()``."""

    kind: str
    from_identity: str
    from_display_name: str
    body: str
    to_identity: Optional[str] = None
    room_id: Optional[str] = None
    message_id: str = field(default_factory=lambda: uuid.uuid4().hex)
    sent_at: datetime = field(default_factory=datetime.now)

    def to_event(self, event_type: str, delivered: Optional[bool] = None, reason: Optional[ErrorCode] = None) -> MessageEvent:
        return MessageEvent(
            type=event_type,
            message_id=self.message_id,
            kind=self.kind,
            from_identity=self.from_identity,
            from_display_name=self.from_display_name,
            body=self.body,
            sent_at=self.sent_at.isoformat(),
            room_id=self.room_id,
            to_identity=self.to_identity,
            delivered=delivered,
            reason=reason.value if reason else None,
        )

    def to_record(self, delivered: Optional[bool] = None) -> dict:
        record = {
            "message_id": self.message_id,
            "kind": self.kind,
            "from_identity": self.from_identity,
            "from_display_name": self.from_display_name,
            "body": self.body,
            "sent_at": self.sent_at.isoformat(),
        }
        if self.kind == PRIVATE:
            record["to_identity"] = self.to_identity
            record["delivered"] = bool(delivered)
        else:
            record["room_id"] = self.room_id
        return record


@dataclass(frozen=True)
class DeliveryResult:
    delivered: bool
    envelope: MessageEnvelope
    reason: Optional[ErrorCode] = None
    recipients: int = 0


class MessageRouter:
    """Resolves a destination to live connections and delivers to them.

    The sender is always told what happened: private sends are acknowledged
    with ``message-sent`` whatever the outcome; room sends echo the message
    back through the room fan-out and are acknowledged only on failure.
    """

    def __init__(self, registry: ConnectionRegistry, rooms: RoomManager):
        self._registry = registry
        self._rooms = rooms

    async def send_private(self, sender: Connection, to_identity: str, body: str) -> DeliveryResult:
        envelope = MessageEnvelope(
            kind=PRIVATE,
            from_identity=sender.identity_id,
            from_display_name=sender.display_name,
            body=body,
            to_identity=to_identity,
        )
        recipient = self._registry.lookup(to_identity)
        if recipient is None:
            logger.info(f"Private message {envelope.message_id} from {sender.identity_id}: {to_identity} is offline")
            result = DeliveryResult(False, envelope, ErrorCode.RECIPIENT_OFFLINE)
        elif await recipient.send(envelope.to_event("receive-message")):
            logger.debug(f"Private message {envelope.message_id} delivered from {sender.identity_id} to {to_identity}")
            result = DeliveryResult(True, envelope, recipients=1)
        else:
            result = DeliveryResult(False, envelope, ErrorCode.TRANSPORT_FAILURE)

        await sender.send(envelope.to_event("message-sent", delivered=result.delivered, reason=result.reason))
        return result

    async def send_room(self, sender: Connection, body: str) -> DeliveryResult:
        room_id = self._rooms.room_of(sender.connection_id)
        envelope = MessageEnvelope(
            kind=ROOM,
            from_identity=sender.identity_id,
            from_display_name=sender.display_name,
            body=body,
            room_id=room_id,
        )
        if room_id is None:
            result = DeliveryResult(False, envelope, ErrorCode.NOT_IN_ROOM)
        else:
            try:
                # The sender is a member, so it receives its own copy in room order
                recipients = await self._rooms.broadcast(
                    room_id,
                    envelope.to_event("receive-message"),
                    require_member=sender.connection_id,
                    touch=True,
                )
                result = DeliveryResult(True, envelope, recipients=recipients)
            except ChatError as e:
                result = DeliveryResult(False, envelope, e.code)

        if result.delivered:
            logger.debug(f"Room message {envelope.message_id} in {room_id} from {sender.identity_id} reached {result.recipients} members")
        else:
            logger.info(f"Room message {envelope.message_id} from {sender.identity_id} rejected: {result.reason.value}")
            await sender.send(envelope.to_event("message-sent", delivered=False, reason=result.reason))
        return result
