# src/itodo_sync/storage/models.py

from __future__ import annotations

from dataclasses import asdict, dataclass, field
from enum import IntEnum, StrEnum
from typing import Any


class EntityType(StrEnum):
    TASK = "task"
    TASK_LIST = "taskList"


class SyncAction(StrEnum):
    ADD = "add"
    UPDATE = "update"
    DELETE = "delete"


class QueueStatus(StrEnum):
    """
    Queue item lifecycle.

    pending -> processing -> completed
                          -> pending  (retryable failure, retry budget left)
                          -> failed   (non-retryable, or budget exhausted)
    """

    PENDING = "pending"
    PROCESSING = "processing"
    COMPLETED = "completed"
    FAILED = "failed"

    @classmethod
    def from_db(cls, raw: str | None) -> QueueStatus:
        if not raw:
            return cls.PENDING
        try:
            return cls(raw)
        except ValueError:
            return cls.PENDING


class DeleteState(IntEnum):
    ACTIVE = 0
    SOFT_DELETED = 1
    TOMBSTONED = 2


DEFAULT_LAYOUT_MODE = "FOUR"


@dataclass(slots=True)
class Task:
    id: str
    text: str
    list_id: str
    quadrant: int = 1
    completed: int = 0
    deleted: int = 0
    estimate: str = ""
    sort_order: int = 0
    owner_id: str | None = None
    created_at: int = 0
    updated_at: int = 0

    entity_type = EntityType.TASK

    def to_dict(self) -> dict[str, Any]:
        return asdict(self)


@dataclass(slots=True)
class TaskList:
    id: str
    name: str
    is_active: int = 0
    deleted: int = 0
    layout_mode: str = DEFAULT_LAYOUT_MODE
    show_eta: bool = True
    owner_id: str | None = None
    created_at: int = 0
    updated_at: int = 0

    entity_type = EntityType.TASK_LIST

    def to_dict(self) -> dict[str, Any]:
        return asdict(self)


Entity = Task | TaskList

ENTITY_CLASSES: dict[EntityType, type[Task] | type[TaskList]] = {
    EntityType.TASK: Task,
    EntityType.TASK_LIST: TaskList,
}

# Fields a caller may change through update(); id/owner/timestamps are managed by the store.
MUTABLE_FIELDS: dict[EntityType, frozenset[str]] = {
    EntityType.TASK: frozenset(
        {"text", "list_id", "quadrant", "completed", "deleted", "estimate", "sort_order"}
    ),
    EntityType.TASK_LIST: frozenset({"name", "is_active", "deleted", "layout_mode", "show_eta"}),
}


def entity_from_dict(entity_type: EntityType, data: dict[str, Any]) -> Entity:
    cls = ENTITY_CLASSES[EntityType(entity_type)]
    known = {k: v for k, v in data.items() if k in cls.__dataclass_fields__}
    return cls(**known)


@dataclass(slots=True)
class Operation:
    """A local mutation that must reach the remote backend."""

    action: SyncAction
    entity_type: EntityType
    entity_id: str
    payload: dict[str, Any] = field(default_factory=dict)


@dataclass(slots=True)
class QueueItem:
    id: str
    seq: int
    status: QueueStatus
    action: SyncAction
    entity_type: EntityType
    entity_id: str
    payload: dict[str, Any]
    created_at: int
    completed_at: int | None = None
    retry_count: int = 0
    last_error: str | None = None

    def to_dict(self) -> dict[str, Any]:
        return asdict(self)


@dataclass(slots=True, frozen=True)
class SyncStatus:
    pending: list[QueueItem]
    processing: list[QueueItem]
    failed: list[QueueItem]
    completed: list[QueueItem]


@dataclass(slots=True, frozen=True)
class QueueStats:
    pending: int
    processing: int
    failed: int
    completed: int

    @property
    def total(self) -> int:
        return self.pending + self.processing + self.failed + self.completed
