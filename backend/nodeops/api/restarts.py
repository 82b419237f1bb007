"""Selective restart endpoints."""
from fastapi import APIRouter, Depends, HTTPException
from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy import select
from pydantic import BaseModel, Field
from typing import Dict, List, Optional
from datetime import datetime, timezone
import logging

from nodeops.database import get_db
from nodeops.errors import CycleError
from nodeops.models.restart_run import RestartRun
from nodeops.api.dependencies import get_orchestrator
from nodeops.utils.restart import ProfileAction, ProfileChange, RestartOrchestrator

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/v1/restarts", tags=["Restarts"])


class ProfileChangeRequest(BaseModel):
    action: ProfileAction
    services: Optional[List[str]] = None


class RestartRequest(BaseModel):
    changed_services: List[str]
    profile_changes: Dict[str, ProfileChangeRequest] = Field(default_factory=dict)


@router.post("")
async def restart_changed_services(
    data: RestartRequest,
    orchestrator: RestartOrchestrator = Depends(get_orchestrator),
    db: AsyncSession = Depends(get_db),
):
    """Restart changed services in dependency order and record the run."""
    profile_changes = {
        profile_id: ProfileChange(
            action=change.action,
            services=tuple(change.services) if change.services is not None else None,
        )
        for profile_id, change in data.profile_changes.items()
    }

    try:
        plan = orchestrator.plan_restart(data.changed_services, profile_changes)
    except CycleError as e:
        logger.warning(f"Restart rejected: {e.message}")
        raise HTTPException(status_code=409, detail=e.to_dict())

    started_at = datetime.now(timezone.utc)
    result = await orchestrator.execute(plan)

    run = RestartRun(
        requested=list(plan.requested),
        order=list(plan.order),
        restarted=list(result.restarted),
        failed=[f.to_dict() for f in result.failed],
        skipped=[s.to_dict() for s in result.skipped],
        success=result.success,
        started_at=started_at,
        finished_at=datetime.now(timezone.utc),
    )
    db.add(run)
    await db.commit()
    await db.refresh(run)

    response = result.to_dict()
    response.update({"id": run.id, "order": list(plan.order), "success": result.success})
    return response


@router.get("")
async def list_restart_runs(limit: int = 20, db: AsyncSession = Depends(get_db)):
    """Most recent restart runs, newest first."""
    if limit < 1:
        raise HTTPException(status_code=400, detail="limit must be positive")

    stmt = select(RestartRun).order_by(RestartRun.id.desc()).limit(limit)
    result = await db.execute(stmt)
    return [run.to_dict() for run in result.scalars().all()]
