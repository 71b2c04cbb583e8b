"""Milestone and phase API endpoints."""

from __future__ import annotations

from typing import Any, Callable, Optional

from fastapi import APIRouter, Depends, Query, Request
from pydantic import BaseModel

from ..constants import UserRole
from ..services import Services
from .auth import Identity, current_identity, guard


class CreateMilestoneRequest(BaseModel):
    name: str
    due_date: Optional[str] = None
    description: str = ""
    start_date: Optional[str] = None
    color: Optional[str] = None
    owner: Optional[str] = None


class UpdateMilestoneRequest(BaseModel):
    name: Optional[str] = None
    description: Optional[str] = None
    due_date: Optional[str] = None
    start_date: Optional[str] = None
    status: Optional[str] = None
    color: Optional[str] = None
    owner: Optional[str] = None
    version: Optional[int] = None


class MilestoneOrder(BaseModel):
    id: str
    order: int


class ReorderMilestonesRequest(BaseModel):
    milestones: list[MilestoneOrder]


class CreatePhaseRequest(BaseModel):
    name: str
    description: str = ""
    start_date: Optional[str] = None
    end_date: Optional[str] = None
    color: Optional[str] = None


class UpdatePhaseRequest(BaseModel):
    name: Optional[str] = None
    description: Optional[str] = None
    start_date: Optional[str] = None
    end_date: Optional[str] = None
    color: Optional[str] = None


class ReorderPhasesRequest(BaseModel):
    phase_ids: list[str]


class DuplicatePhaseRequest(BaseModel):
    name: Optional[str] = None
    include_tasks: bool = True


def create_milestone_router(get_services: Callable[[], Services]) -> APIRouter:
    router = APIRouter(prefix="/api", tags=["milestones"])

    @router.post("/projects/{project_id}/milestones", status_code=201)
    async def create_milestone(
        project_id: str,
        body: CreateMilestoneRequest,
        request: Request,
        identity: Identity = Depends(current_identity),
    ) -> dict[str, Any]:
        guard(request, identity, "milestone.create", min_role=UserRole.PROJECT_MANAGER)
        milestone = get_services().milestones.create(project_id, created_by=identity.user_id, **body.model_dump())
        return {"milestone": get_services().milestones.view(milestone)}

    @router.get("/projects/{project_id}/milestones")
    async def list_milestones(project_id: str, identity: Identity = Depends(current_identity)) -> dict[str, Any]:
        items = get_services().milestones.list(project_id)
        return {"milestones": items, "total": len(items)}

    @router.get("/projects/{project_id}/milestones/upcoming")
    async def upcoming_milestones(
        project_id: str,
        days: int = Query(7, ge=0, le=365),
        identity: Identity = Depends(current_identity),
    ) -> dict[str, Any]:
        return {"milestones": get_services().milestones.upcoming(project_id, days=days)}

    @router.put("/projects/{project_id}/milestones/order")
    async def reorder_milestones(
        project_id: str,
        body: ReorderMilestonesRequest,
        request: Request,
        identity: Identity = Depends(current_identity),
    ) -> dict[str, Any]:
        guard(request, identity, "milestone.reorder", min_role=UserRole.PROJECT_MANAGER)
        items = get_services().milestones.reorder(project_id, [m.model_dump() for m in body.milestones])
        return {"milestones": items}

    @router.get("/milestones/{milestone_id}")
    async def get_milestone(milestone_id: str, identity: Identity = Depends(current_identity)) -> dict[str, Any]:
        service = get_services().milestones
        return {"milestone": service.view(service.get(milestone_id), include_tasks=True)}

    @router.get("/milestones/{milestone_id}/tasks")
    async def milestone_tasks(milestone_id: str, identity: Identity = Depends(current_identity)) -> dict[str, Any]:
        service = get_services().milestones
        service.get(milestone_id)
        tasks = service.tasks_of(milestone_id)
        return {"tasks": [t.to_dict() for t in tasks], "total": len(tasks)}

    @router.patch("/milestones/{milestone_id}")
    async def update_milestone(
        milestone_id: str,
        body: UpdateMilestoneRequest,
        request: Request,
        identity: Identity = Depends(current_identity),
    ) -> dict[str, Any]:
        guard(request, identity, "milestone.update", min_role=UserRole.PROJECT_MANAGER)
        changes = body.model_dump(exclude_unset=True)
        version = changes.pop("version", None)
        service = get_services().milestones
        milestone = service.update(milestone_id, changes, expected_version=version)
        return {"milestone": service.view(milestone)}

    @router.post("/milestones/{milestone_id}/refresh")
    async def refresh_milestone(milestone_id: str, identity: Identity = Depends(current_identity)) -> dict[str, Any]:
        service = get_services().milestones
        return {"milestone": service.view(service.refresh_status(milestone_id))}

    @router.delete("/milestones/{milestone_id}")
    async def delete_milestone(milestone_id: str, request: Request, identity: Identity = Depends(current_identity)) -> dict[str, Any]:
        guard(request, identity, "milestone.delete", min_role=UserRole.PROJECT_MANAGER)
        detached = get_services().milestones.delete(milestone_id)
        return {"deleted": milestone_id, "detached_tasks": detached}

    return router


def create_phase_router(get_services: Callable[[], Services]) -> APIRouter:
    router = APIRouter(prefix="/api", tags=["phases"])

    @router.post("/projects/{project_id}/phases", status_code=201)
    async def create_phase(
        project_id: str,
        body: CreatePhaseRequest,
        request: Request,
        identity: Identity = Depends(current_identity),
    ) -> dict[str, Any]:
        guard(request, identity, "phase.create", min_role=UserRole.PROJECT_MANAGER)
        phase = get_services().phases.create(project_id, created_by=identity.user_id, **body.model_dump())
        return {"phase": phase.to_dict()}

    @router.get("/projects/{project_id}/phases")
    async def list_phases(project_id: str, identity: Identity = Depends(current_identity)) -> dict[str, Any]:
        items = get_services().phases.list(project_id)
        return {"phases": items, "total": len(items)}

    @router.put("/projects/{project_id}/phases/order")
    async def reorder_phases(
        project_id: str,
        body: ReorderPhasesRequest,
        request: Request,
        identity: Identity = Depends(current_identity),
    ) -> dict[str, Any]:
        guard(request, identity, "phase.reorder", min_role=UserRole.PROJECT_MANAGER)
        return {"phases": get_services().phases.reorder(project_id, body.phase_ids)}

    @router.get("/phases/{phase_id}")
    async def get_phase(phase_id: str, identity: Identity = Depends(current_identity)) -> dict[str, Any]:
        return {"phase": get_services().phases.detail(phase_id)}

    @router.get("/phases/{phase_id}/progress")
    async def phase_progress(phase_id: str, identity: Identity = Depends(current_identity)) -> dict[str, Any]:
        return {"progress": get_services().phases.progress(phase_id)}

    @router.patch("/phases/{phase_id}")
    async def update_phase(
        phase_id: str,
        body: UpdatePhaseRequest,
        request: Request,
        identity: Identity = Depends(current_identity),
    ) -> dict[str, Any]:
        guard(request, identity, "phase.update", min_role=UserRole.PROJECT_MANAGER)
        phase = get_services().phases.update(phase_id, body.model_dump(exclude_unset=True))
        return {"phase": phase.to_dict()}

    @router.delete("/phases/{phase_id}")
    async def delete_phase(phase_id: str, request: Request, identity: Identity = Depends(current_identity)) -> dict[str, Any]:
        guard(request, identity, "phase.delete", min_role=UserRole.PROJECT_MANAGER)
        unassigned = get_services().phases.delete(phase_id)
        return {"deleted": phase_id, "unassigned_tasks": unassigned}

    @router.post("/phases/{phase_id}/duplicate", status_code=201)
    async def duplicate_phase(
        phase_id: str,
        body: DuplicatePhaseRequest,
        request: Request,
        identity: Identity = Depends(current_identity),
    ) -> dict[str, Any]:
        guard(request, identity, "phase.duplicate", min_role=UserRole.PROJECT_MANAGER)
        return get_services().phases.duplicate(
            phase_id, name=body.name, include_tasks=body.include_tasks, created_by=identity.user_id
        )

    return router
