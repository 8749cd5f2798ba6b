"""
Type-specific job configuration.

A job's config is a tagged union keyed by ``type``. Each variant knows its
target set: plain variants fan out one task per account, batch variants
fan out one task per (account, worker) pair.
"""

from typing import Annotated, List, Literal, Optional, Tuple, Union

from pydantic import BaseModel, Field, TypeAdapter

Target = Tuple[str, Optional[str]]


class Binding(BaseModel):
    type: Literal["plain_text", "secret_text", "kv_namespace", "d1", "r2_bucket"]
    name: str
    text: Optional[str] = None
    namespace_id: Optional[str] = None
    database_id: Optional[str] = None
    bucket_name: Optional[str] = None

    def to_cloudflare(self) -> dict:
        """Render the binding in the shape the Workers API expects."""
        if self.type in ("plain_text", "secret_text"):
            return {"type": self.type, "name": self.name, "text": self.text or ""}
        if self.type == "kv_namespace":
            return {"type": self.type, "name": self.name, "namespace_id": self.namespace_id}
        if self.type == "d1":
            return {"type": self.type, "name": self.name, "id": self.database_id}
        return {"type": self.type, "name": self.name, "bucket_name": self.bucket_name}


class WorkerTarget(BaseModel):
    account_id: str = Field(min_length=1)
    worker_name: str = Field(min_length=1)


class _AccountFanout(BaseModel):
    account_ids: List[str] = Field(min_length=1)

    def targets(self) -> List[Target]:
        return [(account_id, None) for account_id in self.account_ids]


class _WorkerFanout(BaseModel):
    workers: List[WorkerTarget] = Field(min_length=1)

    def targets(self) -> List[Target]:
        return [(w.account_id, w.worker_name) for w in self.workers]


class _ScriptFields(BaseModel):
    script: str = Field(min_length=1)
    compatibility_date: Optional[str] = None
    bindings: Optional[List[Binding]] = None


class CreateConfig(_AccountFanout, _ScriptFields):
    type: Literal["create"] = "create"
    worker_name: str = Field(min_length=1)


class UpdateConfig(_AccountFanout, _ScriptFields):
    type: Literal["update"] = "update"
    worker_name: str = Field(min_length=1)


class DeleteConfig(_AccountFanout):
    type: Literal["delete"] = "delete"
    worker_name: str = Field(min_length=1)


class QueryConfig(_AccountFanout):
    type: Literal["query"] = "query"
    worker_name: str = Field(min_length=1)


class ListConfig(_AccountFanout):
    type: Literal["list"] = "list"


class HealthCheckConfig(_AccountFanout):
    type: Literal["health_check"] = "health_check"


class BatchUpdateConfig(_WorkerFanout, _ScriptFields):
    type: Literal["batch_update"] = "batch_update"


class BatchDeleteConfig(_WorkerFanout):
    type: Literal["batch_delete"] = "batch_delete"


JobConfig = Annotated[
    Union[
        CreateConfig,
        UpdateConfig,
        DeleteConfig,
        QueryConfig,
        ListConfig,
        HealthCheckConfig,
        BatchUpdateConfig,
        BatchDeleteConfig,
    ],
    Field(discriminator="type"),
]

job_config_adapter = TypeAdapter(JobConfig)
