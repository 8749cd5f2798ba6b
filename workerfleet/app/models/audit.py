from typing import Optional
from sqlmodel import Field, SQLModel
from datetime import datetime
from workerfleet.app.models.job import utc_now

class AuditLog(SQLModel, table=True):
    id: Optional[int] = Field(default=None, primary_key=True)
    user_id: str = Field(default="system")
    action: str = Field(index=True)  # submit_job, retry_job, delete_job
    resource_type: str = Field(default="job")
    resource_id: str = Field(index=True)
    details: Optional[str] = None
    ip_address: Optional[str] = None
    timestamp: datetime = Field(default_factory=utc_now, index=True)
