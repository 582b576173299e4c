"""Read-only status API for the release orchestrator.

Run with ``uvicorn main:app``. Deployments themselves are driven by ``cli.py``.
"""
from __future__ import annotations

import secrets

from fastapi import Depends, FastAPI, HTTPException, Query, status
from fastapi.security import HTTPBasic, HTTPBasicCredentials

from dro.api_models import EventOut, RunOut, SnapshotOut
from dro.context import DeploymentContext
from dro.db import Journal
from dro.docker_ops import DockerRuntime
from dro.errors import NoSnapshotError
from dro.settings import settings
from dro.snapshots import SnapshotStore


app = FastAPI(title="Deployment Release Orchestrator")
security = HTTPBasic(auto_error=False)


def get_context() -> DeploymentContext:
    return DeploymentContext.from_settings(settings)


def get_journal(ctx: DeploymentContext = Depends(get_context)) -> Journal:
    return Journal(ctx.db_path)


def require_user(credentials: HTTPBasicCredentials | None = Depends(security)) -> str | None:
    if not settings.api_password:
        return None
    if credentials is None or not (
        secrets.compare_digest(credentials.username, settings.api_user)
        and secrets.compare_digest(credentials.password, settings.api_password)
    ):
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Invalid credentials",
            headers={"WWW-Authenticate": "Basic"},
        )
    return credentials.username


def _run_out(row) -> RunOut:
    return RunOut(
        id=row.id,
        kind=row.kind,
        image=row.image,
        state=row.state,
        snapshot_id=row.snapshot_id,
        warnings=row.warning_list,
        error=row.error,
        started_at=row.started_at,
        finished_at=row.finished_at,
    )


@app.get("/runs", response_model=list[RunOut])
def list_runs(
    limit: int = Query(20, ge=1, le=500),
    journal: Journal = Depends(get_journal),
    _user: str | None = Depends(require_user),
):
    return [_run_out(r) for r in journal.list_runs(limit)]


@app.get("/runs/latest", response_model=RunOut)
def latest_run(journal: Journal = Depends(get_journal), _user: str | None = Depends(require_user)):
    row = journal.latest_run()
    if row is None:
        raise HTTPException(status_code=404, detail="No runs recorded yet")
    return _run_out(row)


@app.get("/events", response_model=list[EventOut])
def events(
    limit: int = Query(100, ge=1, le=1000),
    run_id: int | None = None,
    journal: Journal = Depends(get_journal),
    _user: str | None = Depends(require_user),
):
    return journal.latest_events(limit, run_id=run_id)


@app.get("/snapshots", response_model=list[SnapshotOut])
def snapshots(ctx: DeploymentContext = Depends(get_context), _user: str | None = Depends(require_user)):
    store = SnapshotStore(ctx, DockerRuntime())
    out = []
    for snapshot_id in reversed(store.list_ids()):
        try:
            info = store.info(snapshot_id)
        except NoSnapshotError:
            continue
        out.append(SnapshotOut(**info.model_dump(mode="json")))
    return out
