from __future__ import annotations

from datetime import datetime
from enum import Enum
from typing import Any, Dict, List, Optional

from pydantic import BaseModel, ConfigDict, Field, field_validator
from pydantic.alias_generators import to_camel

from arang_chat.shared.clock import ensure_utc


class ChatModel(BaseModel):
    model_config = ConfigDict(populate_by_name=True, alias_generator=to_camel, extra="ignore")


class SessionStatus(str, Enum):
    open = "open"
    pending = "pending"
    active = "active"
    closed = "closed"


LIVE_SESSION_STATUSES = (SessionStatus.open.value, SessionStatus.active.value, SessionStatus.pending.value)


class ChatRole(str, Enum):
    customer = "customer"
    admin = "admin"

    @property
    def other(self) -> "ChatRole":
        return ChatRole.admin if self is ChatRole.customer else ChatRole.customer


class ConnectionState(str, Enum):
    idle = "idle"
    loading = "loading"
    ready = "ready"
    no_session = "no_session"
    error = "error"


class OrderInfo(ChatModel):
    model_config = ConfigDict(populate_by_name=True, alias_generator=to_camel, extra="allow")

    order_id: str
    order_total: float | int | None = None
    order_status: Optional[str] = None
    order_date: Optional[str] = None

    def to_row(self) -> Dict[str, Any]:
        return self.model_dump(by_alias=True, mode="json")


class _TimestampedRecord(ChatModel):
    @field_validator("created_at", "updated_at", "last_message_at", mode="after", check_fields=False)
    @classmethod
    def _normalize_timestamp(cls, value: datetime | None) -> datetime | None:
        return ensure_utc(value)


class ChatSessionRecord(_TimestampedRecord):
    id: str
    customer_id: str
    admin_id: Optional[str] = None
    status: SessionStatus
    topic: Optional[str] = None
    created_at: datetime
    updated_at: Optional[datetime] = None
    last_message_at: Optional[datetime] = None

    @classmethod
    def from_row(cls, row: Dict[str, Any]) -> "ChatSessionRecord":
        return cls.model_validate(row)


class MessageRecord(_TimestampedRecord):
    id: str
    session_id: str
    sender_id: str
    sender_type: ChatRole
    content: str
    order_info: Optional[OrderInfo] = None
    read: Optional[bool] = None
    created_at: datetime

    @classmethod
    def from_row(cls, row: Dict[str, Any]) -> "MessageRecord":
        return cls.model_validate(row)

    @property
    def is_unread(self) -> bool:
        # Legacy rows without a read flag count as unread.
        return self.read is not True


class DisplayMessage(ChatModel):
    id: str
    session_id: str
    sender_id: str
    sender_type: ChatRole
    sender_name: str
    content: str
    created_at: datetime
    is_admin: bool
    order_info: Optional[OrderInfo] = None
    read: Optional[bool] = None
    pending: bool = False


class ChatUserSummary(ChatModel):
    customer_id: str
    display_name: str
    last_message: str
    last_message_at: Optional[datetime] = None
    last_message_id: Optional[str] = None
    last_message_sender_name: Optional[str] = None
    from_customer: bool = False
    unread: bool = False
    is_most_recent_globally: bool = False
    last_customer_message_at: Optional[datetime] = None


class SendMessageRequest(ChatModel):
    model_config = ConfigDict(populate_by_name=True, alias_generator=to_camel, extra="forbid")

    content: str = Field(min_length=1, max_length=4000)
    pinned_order_id: Optional[str] = None

    @field_validator("content")
    @classmethod
    def _reject_blank(cls, value: str) -> str:
        if not value.strip():
            raise ValueError("content must not be blank")
        return value


class MarkReadRequest(ChatModel):
    message_id: str


class ChatRoomSnapshot(ChatModel):
    session: Optional[ChatSessionRecord] = None
    partner_name: str
    connection_state: ConnectionState
    messages: List[DisplayMessage] = Field(default_factory=list)


class InboxResponse(ChatModel):
    items: List[ChatUserSummary] = Field(default_factory=list)
    new_message_count: int = 0


class MarkReadResponse(ChatModel):
    updated: bool


class MarkAllReadResponse(ChatModel):
    updated: int
