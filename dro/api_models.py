from __future__ import annotations

from pydantic import BaseModel, Field


class RunOut(BaseModel):
    id: int
    kind: str = Field(..., description="deploy|rollback")
    image: str | None = Field(None, description="Image reference the run deployed")
    state: str = Field(..., description="Last DeploymentState reached")
    snapshot_id: str | None = None
    warnings: list[str] = Field(default_factory=list)
    error: str | None = None
    started_at: str
    finished_at: str | None = None


class EventOut(BaseModel):
    id: int
    ts: str
    level: str
    run_id: int | None = None
    stage: str | None = None
    image: str | None = None
    message: str


class SnapshotOut(BaseModel):
    id: str
    created_at: str
    image: str | None = None
    topology: str
    artifact: str | None = Field(None, description="Data artifact file name, if data was captured")
