from enum import Enum
from typing import Optional


class ErrorCode(str, Enum):
    RECIPIENT_OFFLINE = "recipient-offline"
    NOT_IN_ROOM = "not-in-room"
    ROOM_NOT_FOUND = "room-not-found"
    NOT_A_MEMBER = "not-a-member"
    DUPLICATE_CONNECTION_SUPERSEDED = "duplicate-connection-superseded"
    TRANSPORT_FAILURE = "transport-failure"
    # Boundary errors reported back to the client
    INVALID_PAYLOAD = "invalid-payload"
    NOT_ANNOUNCED = "not-announced"
    # Announce of an identity the directory rejects, or send-private to an identity
    # the directory does not know. The latter gets this error and no message-sent ack.
    UNKNOWN_IDENTITY = "unknown-identity"
    INTERNAL_ERROR = "internal-error"


class ChatError(Exception):
    """Failure scoped to one connection, room or message."""

    code = ErrorCode.INTERNAL_ERROR

    def __init__(self, message: str, code: Optional[ErrorCode] = None):
        super().__init__(message)
        self.message = message
        if code is not None:
            self.code = code


class RoomNotFound(ChatError):
    code = ErrorCode.ROOM_NOT_FOUND


class NotAMember(ChatError):
    code = ErrorCode.NOT_A_MEMBER


class NotInRoom(ChatError):
    code = ErrorCode.NOT_IN_ROOM


class NotAnnounced(ChatError):
    code = ErrorCode.NOT_ANNOUNCED


class UnknownIdentity(ChatError):
    code = ErrorCode.UNKNOWN_IDENTITY


class InvalidPayload(ChatError):
    code = ErrorCode.INVALID_PAYLOAD


class TransportFailure(ChatError):
    code = ErrorCode.TRANSPORT_FAILURE
