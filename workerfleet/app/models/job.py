import json
import uuid
from datetime import datetime, timezone
from enum import Enum
from typing import Any, List, Optional

from sqlmodel import Field, Relationship, SQLModel


class JobType(str, Enum):
    create = "create"
    update = "update"
    delete = "delete"
    query = "query"
    list = "list"
    health_check = "health_check"
    batch_update = "batch_update"
    batch_delete = "batch_delete"


class JobStatus(str, Enum):
    pending = "pending"
    running = "running"
    completed = "completed"
    partial = "partial"
    failed = "failed"


class TaskStatus(str, Enum):
    pending = "pending"
    running = "running"
    success = "success"
    failed = "failed"
    skipped = "skipped"  # reserved, no workflow produces it


TERMINAL_TASK_STATUSES = (TaskStatus.success, TaskStatus.failed, TaskStatus.skipped)


def utc_now() -> datetime:
    return datetime.now(timezone.utc)


def new_id() -> str:
    return uuid.uuid4().hex


def _loads(value: Optional[str]) -> Any:
    return json.loads(value) if value else None


class Job(SQLModel, table=True):
    id: str = Field(default_factory=new_id, primary_key=True)
    type: JobType
    status: JobStatus = Field(default=JobStatus.pending, index=True)
    config: str  # JSON string of the type-specific JobConfig
    total_tasks: int = Field(default=0)
    completed_tasks: int = Field(default=0)
    failed_tasks: int = Field(default=0)
    created_at: datetime = Field(default_factory=utc_now, index=True)
    started_at: Optional[datetime] = Field(default=None)
    completed_at: Optional[datetime] = Field(default=None)

    tasks: List["Task"] = Relationship(
        back_populates="job",
        sa_relationship_kwargs={"cascade": "all, delete-orphan"},
    )

    def to_read(self) -> "JobRead":
        return JobRead(
            id=self.id,
            type=self.type,
            status=self.status,
            config=_loads(self.config) or {},
            total_tasks=self.total_tasks,
            completed_tasks=self.completed_tasks,
            failed_tasks=self.failed_tasks,
            created_at=self.created_at,
            started_at=self.started_at,
            completed_at=self.completed_at,
        )


class Task(SQLModel, table=True):
    id: str = Field(default_factory=new_id, primary_key=True)
    job_id: str = Field(foreign_key="job.id", index=True, ondelete="CASCADE")
    position: int = Field(default=0)  # index in the submitted target set
    account_id: str = Field(index=True)
    worker_name: Optional[str] = Field(default=None)  # batch job types only
    status: TaskStatus = Field(default=TaskStatus.pending, index=True)
    progress: Optional[str] = Field(default=None)  # JSON string of TaskProgress
    result: Optional[str] = Field(default=None)  # JSON string
    error: Optional[str] = Field(default=None)
    retry_count: int = Field(default=0)
    created_at: datetime = Field(default_factory=utc_now)
    started_at: Optional[datetime] = Field(default=None)
    completed_at: Optional[datetime] = Field(default=None)

    job: Optional[Job] = Relationship(back_populates="tasks")

    def to_read(self) -> "TaskRead":
        return TaskRead(
            id=self.id,
            job_id=self.job_id,
            position=self.position,
            account_id=self.account_id,
            worker_name=self.worker_name,
            status=self.status,
            progress=_loads(self.progress),
            result=_loads(self.result),
            error=self.error,
            retry_count=self.retry_count,
            created_at=self.created_at,
            started_at=self.started_at,
            completed_at=self.completed_at,
        )


class TaskProgress(SQLModel):
    step: str
    current: int
    total: int
    message: Optional[str] = None


class JobRead(SQLModel):
    id: str
    type: JobType
    status: JobStatus
    config: dict
    total_tasks: int
    completed_tasks: int
    failed_tasks: int
    created_at: datetime
    started_at: Optional[datetime] = None
    completed_at: Optional[datetime] = None


class TaskRead(SQLModel):
    id: str
    job_id: str
    position: int
    account_id: str
    worker_name: Optional[str] = None
    status: TaskStatus
    progress: Optional[TaskProgress] = None
    result: Optional[Any] = None
    error: Optional[str] = None
    retry_count: int
    created_at: datetime
    started_at: Optional[datetime] = None
    completed_at: Optional[datetime] = None
