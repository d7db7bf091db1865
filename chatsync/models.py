"""Domain models for the chat delivery core.

Messages travel in three shapes: the in-process ``Message`` dataclass, the
snake_case dict persisted by stores and the spool queue, and the camelCase
wire dict carried inside a ``WireMessage`` frame.
"""
import json
import time
import uuid
from dataclasses import dataclass, field, replace
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Dict, List, Optional, Tuple

from chatsync.errors import SerializationError


class SenderType(str, Enum):
    AGENT = "agent"
    CUSTOMER = "customer"
    SYSTEM = "system"


class DeliveryStatus(str, Enum):
    PENDING = "pending"
    SENDING = "sending"
    SENT = "sent"
    DELIVERED = "delivered"
    READ = "read"
    FAILED = "failed"

    @property
    def rank(self) -> int:
        """Position along pending -> sending -> sent -> delivered -> read."""
        return _DELIVERY_RANK.get(self, -1)

    def can_advance_to(self, other: "DeliveryStatus") -> bool:
        """True if moving to ``other`` is forward progress.

        ``failed`` is never reached or left through this check; entering it is
        a terminal decision and leaving it takes an explicit resend.
        """
        if self is DeliveryStatus.FAILED or other is DeliveryStatus.FAILED:
            return False
        return other.rank > self.rank


_DELIVERY_RANK = {
    DeliveryStatus.PENDING: 0,
    DeliveryStatus.SENDING: 1,
    DeliveryStatus.SENT: 2,
    DeliveryStatus.DELIVERED: 3,
    DeliveryStatus.READ: 4,
}


class SyncStatus(str, Enum):
    SYNCED = "synced"
    SYNCING = "syncing"
    PENDING = "pending"
    FAILED = "failed"


class ConnectionStatus(str, Enum):
    DISCONNECTED = "disconnected"
    CONNECTING = "connecting"
    CONNECTED = "connected"


class ConnectionQuality(str, Enum):
    UNKNOWN = "unknown"
    POOR = "poor"
    FAIR = "fair"
    GOOD = "good"
    EXCELLENT = "excellent"


def utc_now() -> datetime:
    return datetime.now(timezone.utc)


def now_ms() -> int:
    return int(time.time() * 1000)


def new_message_id() -> str:
    return f"msg_{uuid.uuid4().hex[:10]}"


def parse_timestamp(value: Any) -> datetime:
    """Parse an ISO-8601 string (``Z`` suffix allowed) or epoch milliseconds."""
    if isinstance(value, datetime):
        parsed = value
    elif isinstance(value, (int, float)):
        parsed = datetime.fromtimestamp(value / 1000, tz=timezone.utc)
    elif isinstance(value, str) and value:
        text = value[:-1] + "+00:00" if value.endswith("Z") else value
        parsed = datetime.fromisoformat(text)
    else:
        raise ValueError(f"Unsupported timestamp: {value!r}")
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed


@dataclass(frozen=True)
class Message:
    """A chat message. Identity is fixed at creation; status changes produce copies."""

    conversation_id: str
    content: str
    id: str = field(default_factory=new_message_id)
    content_type: str = "text"
    sender_type: SenderType = SenderType.AGENT
    timestamp: datetime = field(default_factory=utc_now)
    delivery_status: DeliveryStatus = DeliveryStatus.SENDING
    sync_status: SyncStatus = SyncStatus.PENDING
    attachments: List[Any] = field(default_factory=list)
    metadata: Dict[str, Any] = field(default_factory=dict)

    def with_changes(self, **changes) -> "Message":
        if "id" in changes and changes["id"] != self.id:
            raise ValueError("Message id is immutable")
        return replace(self, **changes)

    def to_dict(self) -> Dict[str, Any]:
        """Convert message to dictionary for storage."""
        return {
            "id": self.id,
            "conversation_id": self.conversation_id,
            "content": self.content,
            "content_type": self.content_type,
            "sender_type": self.sender_type.value,
            "timestamp": self.timestamp.isoformat(),
            "delivery_status": self.delivery_status.value,
            "sync_status": self.sync_status.value,
            "attachments": list(self.attachments),
            "metadata": dict(self.metadata),
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "Message":
        """Create message from a storage dictionary."""
        return cls(
            id=data["id"],
            conversation_id=data["conversation_id"],
            content=data.get("content", ""),
            content_type=data.get("content_type", "text"),
            sender_type=SenderType(data.get("sender_type", "agent")),
            timestamp=parse_timestamp(data["timestamp"]),
            delivery_status=DeliveryStatus(data.get("delivery_status", "pending")),
            sync_status=SyncStatus(data.get("sync_status", "pending")),
            attachments=list(data.get("attachments") or []),
            metadata=dict(data.get("metadata") or {}),
        )

    def to_wire(self) -> Dict[str, Any]:
        """Camel-cased payload carried inside a ``message`` frame."""
        return {
            "id": self.id,
            "sessionId": self.conversation_id,
            "content": self.content,
            "contentType": self.content_type,
            "senderType": self.sender_type.value,
            "timestamp": self.timestamp.isoformat().replace("+00:00", "Z"),
            "status": self.delivery_status.value,
            "attachments": list(self.attachments),
            "metadata": dict(self.metadata),
        }

    @classmethod
    def from_wire(cls, data: Dict[str, Any]) -> "Message":
        try:
            return cls(
                id=str(data["id"]),
                conversation_id=str(data["sessionId"]),
                content=data.get("content", ""),
                content_type=data.get("contentType", "text"),
                sender_type=SenderType(data.get("senderType", "customer")),
                timestamp=parse_timestamp(data.get("timestamp") or now_ms()),
                delivery_status=DeliveryStatus(data.get("status", "sent")),
                sync_status=SyncStatus.SYNCED,
                attachments=list(data.get("attachments") or []),
                metadata=dict(data.get("metadata") or {}),
            )
        except (KeyError, TypeError, ValueError) as e:
            raise SerializationError(f"Invalid message payload: {e}") from e


FRAME_TYPES = ("message", "ping", "pong", "status", "error")


@dataclass
class WireMessage:
    """One JSON frame on the realtime channel."""

    type: str
    payload: Optional[Message] = None
    timestamp: int = field(default_factory=now_ms)
    metadata: Dict[str, Any] = field(default_factory=dict)

    def to_json(self) -> str:
        frame: Dict[str, Any] = {"type": self.type, "timestamp": self.timestamp}
        if self.payload is not None:
            frame["payload"] = self.payload.to_wire()
        if self.metadata:
            frame["metadata"] = self.metadata
        return json.dumps(frame)

    @classmethod
    def from_json(cls, raw) -> "WireMessage":
        """Decode one inbound frame.

        Raises:
            SerializationError: the frame is not a JSON object of a known type
        """
        if isinstance(raw, (bytes, bytearray)):
            try:
                raw = raw.decode("utf-8")
            except UnicodeDecodeError as e:
                raise SerializationError(f"Frame is not UTF-8: {e}") from e
        try:
            data = json.loads(raw)
        except (TypeError, ValueError) as e:
            raise SerializationError(f"Frame is not valid JSON: {e}") from e

        if not isinstance(data, dict):
            raise SerializationError("Frame must be a JSON object")
        frame_type = data.get("type")
        if frame_type not in FRAME_TYPES:
            raise SerializationError(f"Unknown frame type: {frame_type!r}")

        payload = data.get("payload")
        metadata = data.get("metadata") or {}
        if not isinstance(metadata, dict):
            raise SerializationError("Frame metadata must be an object")
        timestamp = data.get("timestamp")
        if not isinstance(timestamp, (int, float)):
            timestamp = now_ms()

        return cls(
            type=frame_type,
            payload=Message.from_wire(payload) if isinstance(payload, dict) else None,
            timestamp=int(timestamp),
            metadata=metadata,
        )


@dataclass(frozen=True)
class ConnectionState:
    status: ConnectionStatus = ConnectionStatus.DISCONNECTED
    quality: ConnectionQuality = ConnectionQuality.UNKNOWN
    latency_ms: float = 0.0
    packet_loss_ratio: float = 0.0
    reconnect_attempt: int = 0
    degraded: bool = False
    auth_paused: bool = False


@dataclass(frozen=True)
class SyncError:
    """A recorded delivery problem shown to the user with a retry affordance."""

    details: str
    message_id: Optional[str] = None
    attempts: int = 0
    timestamp: datetime = field(default_factory=utc_now)


@dataclass(frozen=True)
class SyncState:
    """Immutable snapshot handed to sync observers."""

    is_syncing: bool = False
    last_sync_time: Optional[datetime] = None
    queue_size: int = 0
    errors: Tuple[SyncError, ...] = ()
    network_status: ConnectionStatus = ConnectionStatus.DISCONNECTED
    network_quality: ConnectionQuality = ConnectionQuality.UNKNOWN
    is_initial_sync_complete: bool = False
