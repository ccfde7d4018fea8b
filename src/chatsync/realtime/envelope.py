"""Frame format for the realtime channel."""

from __future__ import annotations

from enum import Enum
from typing import Any

from pydantic import Field
from pydantic import ValidationError as PydanticValidationError

from chatsync.api.models import WireModel
from chatsync.errors import ApiErrorCode, ProtocolError


class RealtimeEvent(str, Enum):
    """Event types carried on the realtime channel."""

    NEW_MESSAGE = "new_message"
    MESSAGE_READ = "message_read"
    USER_STATUS = "user_status"
    TYPING = "typing"
    HEARTBEAT = "heartbeat"
    ERROR = "error"


class Envelope(WireModel):
    """
    One JSON frame: {type, event, data, requestId?, error?}.

    Frames answering a correlated request carry the requestId of the
    outbound frame and may omit the event.
    """

    type: str = "event"
    event: RealtimeEvent | str | None = None
    data: Any = None
    request_id: str | None = None
    error: dict[str, Any] | None = Field(default=None)

    @property
    def known_event(self) -> RealtimeEvent | None:
        if isinstance(self.event, RealtimeEvent):
            return self.event
        try:
            return RealtimeEvent(self.event)
        except ValueError:
            return None

    @property
    def is_error(self) -> bool:
        return self.error is not None or self.known_event == RealtimeEvent.ERROR

    def encode(self) -> str:
        return self.model_dump_json(by_alias=True, exclude_none=True)

    @classmethod
    def decode(cls, raw: str | bytes) -> Envelope:
        """
        Parse an inbound frame.

        Raises:
            ProtocolError: The frame is not JSON, not an object, or has
                neither an event nor a requestId.
        """
        try:
            envelope = cls.model_validate_json(raw)
        except PydanticValidationError as e:
            raise ProtocolError(
                "Malformed realtime frame",
                code=ApiErrorCode.INVALID_REQUEST,
                details=[err["msg"] for err in e.errors()],
            ) from e
        if envelope.event is None and envelope.request_id is None:
            raise ProtocolError("Realtime frame has neither event nor requestId")
        return envelope
