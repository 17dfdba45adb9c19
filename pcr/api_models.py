from __future__ import annotations

from pydantic import BaseModel, Field


class TargetOut(BaseModel):
    kind: str = Field(..., description="Service or Deployment")
    namespace: str
    name: str
    experiment: str = Field(..., description="Owning experiment key (namespace/name)")
    found: bool


class EventOut(BaseModel):
    id: int
    ts: str
    level: str
    namespace: str | None = None
    experiment: str | None = None
    message: str


class ReconcileAccepted(BaseModel):
    key: str
    queued: bool = True


class Health(BaseModel):
    status: str = "healthy"
    workers: int = Field(..., ge=0)
    queue_depth: int = Field(..., ge=0)
