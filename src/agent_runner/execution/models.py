"""Domain models for executions, stream messages and target status."""

from __future__ import annotations

from dataclasses import dataclass, field, replace
from datetime import datetime
from enum import Enum
from typing import Any

from agent_runner.common import from_iso, to_iso


class ExecutionType(str, Enum):
    """Kind of logical target an execution belongs to."""

    AGENT = "agent"
    TODO = "todo"


class ExecutionStatus(str, Enum):
    """Durable execution lifecycle states."""

    RUNNING = "running"
    SUCCESS = "success"
    FAILED = "failed"
    STOPPED = "stopped"
    PAUSED = "paused"


TERMINAL_STATUSES = frozenset(
    {
        ExecutionStatus.SUCCESS,
        ExecutionStatus.FAILED,
        ExecutionStatus.STOPPED,
        ExecutionStatus.PAUSED,
    },
)


class TargetState(str, Enum):
    """In-memory state of one logical target."""

    IDLE = "idle"
    RUNNING = "running"
    ERROR = "error"
    PAUSED = "paused"


class MessageKind(str, Enum):
    """Classification of one line of agent output."""

    SYSTEM = "system"
    ASSISTANT = "assistant"
    USER = "user"
    RESULT = "result"
    ERROR = "error"


_BADGES = {
    MessageKind.SYSTEM: "System",
    MessageKind.ASSISTANT: "Assistant",
    MessageKind.USER: "User",
    MessageKind.RESULT: "Result",
    MessageKind.ERROR: "Error",
}


@dataclass(slots=True)
class ContentBlock:
    """One content item of an assistant/user/system message."""

    type: str
    text: str | None = None
    name: str | None = None
    input: Any = None
    content: Any = None


@dataclass(slots=True)
class PayloadSegment:
    """Rendering-ready chunk of message payload."""

    text: str
    is_code: bool = False


@dataclass(slots=True)
class StreamMessage:
    """Classified unit of agent output, always carrying a non-empty payload."""

    kind: MessageKind
    data: dict[str, Any]
    raw: str
    segments: list[PayloadSegment]
    blocks: list[ContentBlock] = field(default_factory=list)
    subtype: str | None = None
    result: str | None = None
    error: str | None = None
    tokens: int | None = None
    timestamp: datetime | None = None

    @property
    def badge(self) -> str:
        return _BADGES[self.kind]

    def stamped(self, timestamp: datetime) -> StreamMessage:
        """Copy of the message with the receipt timestamp assigned."""

        return replace(self, timestamp=timestamp)

    def to_record(self) -> dict[str, Any]:
        """JSON object persisted as one log line."""

        record = dict(self.data)
        if self.timestamp is not None:
            record["timestamp"] = to_iso(self.timestamp)
        return record

    def text_fragments(self) -> list[str]:
        """Human-readable text used for failure diagnostics."""

        if self.kind is MessageKind.ERROR:
            return [self.error] if self.error else []
        if self.kind in (MessageKind.ASSISTANT, MessageKind.SYSTEM):
            return [block.text for block in self.blocks if block.type == "text" and block.text]
        return []


@dataclass(slots=True)
class ExecutionStart:
    """Input payload for opening an execution record."""

    type: ExecutionType
    target_id: str
    label: str
    log_file: str
    source_file: str | None = None
    version_hash: str | None = None
    metadata: dict[str, Any] | None = None


@dataclass(slots=True)
class ExecutionCompletion:
    """Terminal transition applied to an execution record."""

    status: ExecutionStatus
    metadata: dict[str, Any] | None = None
    end_time: datetime | None = None


@dataclass(slots=True)
class ExecutionRecord:
    """Durable metadata of one physical run."""

    id: str
    type: ExecutionType
    target_id: str
    label: str
    log_file: str
    status: ExecutionStatus
    start_time: datetime
    source_file: str | None = None
    version_hash: str | None = None
    end_time: datetime | None = None
    metadata: dict[str, Any] | None = None

    @property
    def is_running(self) -> bool:
        return self.status is ExecutionStatus.RUNNING

    def to_dict(self) -> dict[str, Any]:
        """Serialize using the history document field names."""

        payload: dict[str, Any] = {
            "id": self.id,
            "type": self.type.value,
            "targetId": self.target_id,
            "label": self.label,
        }
        if self.source_file is not None:
            payload["sourceFile"] = self.source_file
        payload["logFile"] = self.log_file
        if self.version_hash is not None:
            payload["versionHash"] = self.version_hash
        payload["status"] = self.status.value
        payload["startTime"] = to_iso(self.start_time)
        if self.end_time is not None:
            payload["endTime"] = to_iso(self.end_time)
        if self.metadata is not None:
            payload["metadata"] = dict(self.metadata)
        return payload

    @classmethod
    def from_dict(cls, raw: dict[str, Any]) -> ExecutionRecord:
        """Deserialize one history document entry; raises on malformed input."""

        record_id = raw["id"]
        target_id = raw["targetId"]
        log_file = raw["logFile"]
        if not isinstance(record_id, str) or not record_id:
            raise ValueError("history record id must be a non-empty string")
        if not isinstance(target_id, str) or not isinstance(log_file, str):
            raise TypeError("history record targetId/logFile must be strings")
        metadata = raw.get("metadata")
        if metadata is not None and not isinstance(metadata, dict):
            raise TypeError("history record metadata must be an object")
        end_time = raw.get("endTime")
        return cls(
            id=record_id,
            type=ExecutionType(raw["type"]),
            target_id=target_id,
            label=str(raw.get("label", target_id)),
            log_file=log_file,
            status=ExecutionStatus(raw["status"]),
            start_time=from_iso(raw["startTime"]),
            source_file=raw.get("sourceFile"),
            version_hash=raw.get("versionHash"),
            end_time=from_iso(end_time) if end_time else None,
            metadata=metadata,
        )


@dataclass(slots=True)
class TargetStatus:
    """In-memory status cache for one logical target."""

    target_id: str
    state: TargetState = TargetState.IDLE
    start_time: datetime | None = None
    error: str | None = None
    log_file: str | None = None
    last_completed: datetime | None = None
    history_id: str | None = None
