"""Task contracts v1 - worker payload definitions.

Each task has a route on the worker and a deterministic task_id so a
redelivered webhook or a repeated enqueue is deduplicated by the backend.
"""

from __future__ import annotations

import hashlib
import json
from dataclasses import asdict, dataclass, field
from typing import Any, ClassVar, Literal

HANDLE_EVENT_PATH = "/tasks/whatsapp/handle-event"
STABILIZE_MEDIA_PATH = "/tasks/media/stabilize"
MEDIA_BACKFILL_PATH = "/tasks/media/backfill"
MERGE_LINKED_PATH = "/tasks/conversations/merge-linked"


def _payload_digest(payload: dict[str, Any]) -> str:
    canonical = json.dumps(payload, sort_keys=True, separators=(",", ":"), default=str)
    return hashlib.sha256(canonical.encode()).hexdigest()[:32]


@dataclass(frozen=True)
class HandleEventTask:
    """Raw gateway payload, already known to normalize cleanly."""

    path: ClassVar[str] = HANDLE_EVENT_PATH

    instance_id: str
    event: dict[str, Any]
    message_id: str | None = None
    version: Literal["v1"] = field(default="v1")

    @property
    def task_id(self) -> str:
        # Message events dedupe on the gateway id; everything else on content
        if self.message_id:
            return f"whatsapp-event:{self.instance_id}:{self.message_id}"
        return f"whatsapp-event:{self.instance_id}:{_payload_digest(self.event)}"

    def to_dict(self) -> dict[str, Any]:
        return asdict(self)

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "HandleEventTask":
        _check_version(data)
        instance_id = data.get("instance_id")
        event = data.get("event")
        if not instance_id or not isinstance(event, dict):
            raise ValueError("instance_id and event are required")
        return cls(instance_id=instance_id, event=event, message_id=data.get("message_id"))


@dataclass(frozen=True)
class StabilizeMediaTask:
    path: ClassVar[str] = STABILIZE_MEDIA_PATH

    instance_id: str
    message_id: str
    version: Literal["v1"] = field(default="v1")

    @property
    def task_id(self) -> str:
        return f"media-stabilize:{self.instance_id}:{self.message_id}"

    def to_dict(self) -> dict[str, Any]:
        return asdict(self)

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "StabilizeMediaTask":
        _check_version(data)
        instance_id = data.get("instance_id")
        message_id = data.get("message_id")
        if not instance_id or not message_id:
            raise ValueError("instance_id and message_id are required")
        return cls(instance_id=instance_id, message_id=message_id)


@dataclass(frozen=True)
class InstanceSweepTask:
    """Backfill sweep over one instance (media or conversation merges)."""

    instance_id: str
    limit: int = 100
    version: Literal["v1"] = field(default="v1")

    def to_dict(self) -> dict[str, Any]:
        return asdict(self)

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "InstanceSweepTask":
        _check_version(data)
        instance_id = data.get("instance_id")
        if not instance_id:
            raise ValueError("instance_id is required")
        limit = int(data.get("limit", 100))
        if limit <= 0:
            raise ValueError("limit must be positive")
        return cls(instance_id=instance_id, limit=limit)


def _check_version(data: dict[str, Any]) -> None:
    if data.get("version", "v1") != "v1":
        raise ValueError(f"Unsupported version: {data.get('version')}")
