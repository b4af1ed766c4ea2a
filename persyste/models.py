"""
Wire models for the task API using Pydantic models.
"""

from datetime import datetime, timezone
from typing import Any, Literal

from pydantic import BaseModel, ConfigDict, Field, model_validator

from persyste.services.deduplicator import canonical_params

TEMP_ID_PREFIX = "temp_"

RepeatType = Literal["none", "daily"]
CreatedVia = Literal["text", "voice"]
TaskFilter = Literal["all", "today", "completed"]
SortBy = Literal["createdAt", "dueDate", "title"]
SortOrder = Literal["asc", "desc"]


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def is_temporary_id(task_id: str) -> bool:
    """Check if an id belongs to a speculative, not yet confirmed task."""
    return task_id.startswith(TEMP_ID_PREFIX)


class WireModel(BaseModel):
    """Base model accepting both field names and camelCase wire aliases."""

    model_config = ConfigDict(populate_by_name=True)

    def to_wire(self) -> dict[str, Any]:
        return self.model_dump(mode="json", by_alias=True, exclude_none=True)


class UserPreferences(WireModel):
    """User interface preferences (partial updates allowed)."""

    theme: Literal["light", "dark"] | None = None
    default_view: Literal["today", "all"] | None = Field(
        default=None, alias="defaultView"
    )


class User(WireModel):
    id: str
    email: str
    preferences: UserPreferences = Field(default_factory=UserPreferences)


class Task(WireModel):
    """A single task record."""

    id: str = Field(alias="_id")
    owner: str = Field(alias="userId")
    title: str
    description: str | None = None
    due_date: datetime = Field(alias="dueDate")
    repeat_type: RepeatType = Field(default="none", alias="repeatType")
    completed: bool = False
    completed_at: datetime | None = Field(default=None, alias="completedAt")
    created_via: CreatedVia = Field(default="text", alias="createdVia")
    created_at: datetime = Field(alias="createdAt")
    updated_at: datetime = Field(alias="updatedAt")

    @model_validator(mode="after")
    def _check_completion(self) -> "Task":
        if self.completed != (self.completed_at is not None):
            raise ValueError("completedAt must be set if and only if completed")
        return self

    @property
    def is_temporary(self) -> bool:
        return is_temporary_id(self.id)


class CreateTaskRequest(WireModel):
    title: str
    description: str | None = None
    due_date: datetime | None = Field(default=None, alias="dueDate")
    repeat_type: RepeatType | None = Field(default=None, alias="repeatType")
    created_via: CreatedVia | None = Field(default=None, alias="createdVia")

    def placeholder(self, temp_id: str, now: datetime | None = None) -> Task:
        """Synthesize the speculative Task shown until the server confirms."""
        now = now or utcnow()
        return Task(
            id=temp_id,
            owner="temp",
            title=self.title,
            description=self.description,
            due_date=self.due_date or now,
            repeat_type=self.repeat_type or "none",
            completed=False,
            created_via=self.created_via or "text",
            created_at=now,
            updated_at=now,
        )


class UpdateTaskRequest(WireModel):
    title: str | None = None
    description: str | None = None
    due_date: datetime | None = Field(default=None, alias="dueDate")
    repeat_type: RepeatType | None = Field(default=None, alias="repeatType")

    def changes(self) -> dict[str, Any]:
        """Field-level delta keyed by field name (unset fields excluded)."""
        return self.model_dump(exclude_unset=True, exclude_none=True)


class Credentials(WireModel):
    email: str
    password: str


class LoginRequest(Credentials):
    pass


class RegisterRequest(Credentials):
    pass


class AuthResult(WireModel):
    user: User
    token: str


class TaskQuery(WireModel):
    """Structured query for the task list."""

    model_config = ConfigDict(populate_by_name=True, frozen=True)

    filter: TaskFilter | None = None
    page: int | None = None
    limit: int | None = None
    sort_by: SortBy | None = Field(default=None, alias="sortBy")
    sort_order: SortOrder | None = Field(default=None, alias="sortOrder")

    def to_params(self) -> dict[str, Any]:
        """Query-string parameters (camelCase, unset values dropped)."""
        return self.model_dump(by_alias=True, exclude_none=True)

    def canonical(self) -> str:
        """Deterministic encoding: identical queries give identical strings."""
        return canonical_params(self.to_params())


class TaskList(WireModel):
    tasks: list[Task] = Field(default_factory=list)
    count: int = 0
