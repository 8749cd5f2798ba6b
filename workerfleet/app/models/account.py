from typing import Optional
from sqlmodel import Field, SQLModel
from datetime import datetime
from workerfleet.app.models.job import utc_now

class Account(SQLModel, table=True):
    id: str = Field(primary_key=True)
    name: str = Field(index=True)
    auth_type: str  # token, email-key
    cf_account_id: str
    api_token: Optional[str] = None
    auth_email: Optional[str] = None
    auth_key: Optional[str] = None
    subdomain: Optional[str] = None  # cached workers.dev subdomain
    status: str = Field(default="active")  # active, inactive, error
    created_at: datetime = Field(default_factory=utc_now)
