"""Task API endpoints.

This module provides a FastAPI router with task CRUD, subtask hierarchy,
dependency management and status transitions.  It is mounted under ``/api``
by the main ``create_app`` factory.
"""

from __future__ import annotations

from typing import Any, Callable, Optional

from fastapi import APIRouter, Depends, Query, Request
from pydantic import BaseModel, Field

from ..constants import UserRole
from ..services import Services
from .auth import Identity, current_identity, guard


# ---------------------------------------------------------------------------
# Pydantic request models
# ---------------------------------------------------------------------------

class CreateTaskRequest(BaseModel):
    title: str
    description: str = ""
    priority: str = "medium"
    status: str = "open"
    assignee_ids: list[str] = Field(default_factory=list)
    milestone_id: Optional[str] = None
    phase_id: Optional[str] = None
    parent_task_id: Optional[str] = None
    due_date: Optional[str] = None
    start_date: Optional[str] = None
    estimated_hours: Optional[float] = None
    labels: list[str] = Field(default_factory=list)


class UpdateTaskRequest(BaseModel):
    title: Optional[str] = None
    description: Optional[str] = None
    priority: Optional[str] = None
    status: Optional[str] = None
    milestone_id: Optional[str] = None
    phase_id: Optional[str] = None
    parent_task_id: Optional[str] = None
    due_date: Optional[str] = None
    start_date: Optional[str] = None
    estimated_hours: Optional[float] = None
    actual_hours: Optional[float] = None
    progress: Optional[int] = None
    labels: Optional[list[str]] = None
    order: Optional[int] = None
    version: Optional[int] = None


class StatusRequest(BaseModel):
    status: str


class AddDependencyRequest(BaseModel):
    depends_on: str
    type: str = "finish_to_start"


class AssignRequest(BaseModel):
    assignee_ids: list[str]


class ReorderRequest(BaseModel):
    task_ids: list[str]


class LogTimeRequest(BaseModel):
    hours: float


class CommentRequest(BaseModel):
    content: str
    mentions: list[str] = Field(default_factory=list)


# ---------------------------------------------------------------------------
# Router factory
# ---------------------------------------------------------------------------

def create_task_router(get_services: Callable[[], Services]) -> APIRouter:
    """Create the task API router.

    Parameters
    ----------
    get_services:
        A callable returning the :class:`Services` bundle for the app.
    """
    router = APIRouter(prefix="/api", tags=["tasks"])

    @router.post("/projects/{project_id}/tasks", status_code=201)
    async def create_task(
        project_id: str,
        body: CreateTaskRequest,
        request: Request,
        identity: Identity = Depends(current_identity),
    ) -> dict[str, Any]:
        guard(request, identity, "task.create")
        task = get_services().tasks.create_task(project_id, created_by=identity.user_id, **body.model_dump())
        return {"task": task.to_dict()}

    @router.get("/projects/{project_id}/tasks")
    async def list_tasks(
        project_id: str,
        status: Optional[str] = Query(None),
        priority: Optional[str] = Query(None),
        assignee_id: Optional[str] = Query(None),
        milestone_id: Optional[str] = Query(None),
        phase_id: Optional[str] = Query(None),
        parent_task_id: Optional[str] = Query(None),
        top_level_only: bool = Query(False),
        search: Optional[str] = Query(None),
        identity: Identity = Depends(current_identity),
    ) -> dict[str, Any]:
        tasks = get_services().tasks.list_tasks(
            project_id,
            status=status,
            priority=priority,
            assignee_id=assignee_id,
            milestone_id=milestone_id,
            phase_id=phase_id,
            parent_task_id=parent_task_id,
            top_level_only=top_level_only,
            search=search,
        )
        return {"tasks": [t.to_dict() for t in tasks], "total": len(tasks)}

    @router.get("/projects/{project_id}/tasks/overdue")
    async def overdue_tasks(project_id: str, identity: Identity = Depends(current_identity)) -> dict[str, Any]:
        tasks = get_services().tasks.overdue_tasks(project_id)
        return {"tasks": [t.to_dict() for t in tasks], "total": len(tasks)}

    @router.get("/projects/{project_id}/dependency-graph")
    async def dependency_graph(project_id: str, identity: Identity = Depends(current_identity)) -> dict[str, Any]:
        return {"graph": get_services().tasks.get_dependency_graph(project_id)}

    @router.get("/tasks/mine")
    async def my_tasks(
        include_done: bool = Query(False),
        identity: Identity = Depends(current_identity),
    ) -> dict[str, Any]:
        tasks = get_services().tasks.my_tasks(identity.user_id, include_done=include_done)
        return {"tasks": [t.to_dict() for t in tasks], "total": len(tasks)}

    @router.get("/tasks/{task_id}")
    async def get_task(task_id: str, identity: Identity = Depends(current_identity)) -> dict[str, Any]:
        return get_services().tasks.get_task_detail(task_id)

    @router.patch("/tasks/{task_id}")
    async def update_task(
        task_id: str,
        body: UpdateTaskRequest,
        request: Request,
        identity: Identity = Depends(current_identity),
    ) -> dict[str, Any]:
        guard(request, identity, "task.update")
        changes = body.model_dump(exclude_unset=True)
        version = changes.pop("version", None)
        task = get_services().tasks.update_task(task_id, changes, actor_id=identity.user_id, expected_version=version)
        return {"task": task.to_dict()}

    @router.delete("/tasks/{task_id}")
    async def delete_task(task_id: str, request: Request, identity: Identity = Depends(current_identity)) -> dict[str, Any]:
        guard(request, identity, "task.delete", min_role=UserRole.TEAM_MEMBER)
        deleted = get_services().tasks.delete_task(task_id, actor_id=identity.user_id)
        return {"deleted": deleted}

    @router.post("/tasks/{task_id}/status")
    async def update_status(
        task_id: str,
        body: StatusRequest,
        request: Request,
        identity: Identity = Depends(current_identity),
    ) -> dict[str, Any]:
        guard(request, identity, "task.status")
        task = get_services().tasks.update_status(task_id, body.status, actor_id=identity.user_id)
        return {"task": task.to_dict()}

    @router.get("/tasks/{task_id}/can-transition")
    async def can_transition(
        task_id: str,
        status: str = Query(...),
        identity: Identity = Depends(current_identity),
    ) -> dict[str, Any]:
        return get_services().tasks.can_transition(task_id, status)

    @router.post("/tasks/{task_id}/progress/recompute")
    async def recompute_progress(task_id: str, identity: Identity = Depends(current_identity)) -> dict[str, Any]:
        return {"task": get_services().tasks.recompute_progress(task_id).to_dict()}

    # -- hierarchy -------------------------------------------------------

    @router.post("/tasks/{task_id}/subtasks", status_code=201)
    async def create_subtask(
        task_id: str,
        body: CreateTaskRequest,
        request: Request,
        identity: Identity = Depends(current_identity),
    ) -> dict[str, Any]:
        guard(request, identity, "task.create")
        fields = body.model_dump()
        fields.pop("parent_task_id", None)
        title = fields.pop("title")
        task = get_services().tasks.create_subtask(task_id, title, created_by=identity.user_id, **fields)
        return {"task": task.to_dict()}

    @router.get("/tasks/{task_id}/subtasks")
    async def list_subtasks(task_id: str, identity: Identity = Depends(current_identity)) -> dict[str, Any]:
        tasks = get_services().tasks
        tasks.get_task(task_id)
        subtasks = tasks.list_subtasks(task_id)
        return {"tasks": [t.to_dict() for t in subtasks], "total": len(subtasks)}

    @router.put("/tasks/{task_id}/subtasks/order")
    async def reorder_subtasks(task_id: str, body: ReorderRequest, identity: Identity = Depends(current_identity)) -> dict[str, Any]:
        subtasks = get_services().tasks.reorder_subtasks(task_id, body.task_ids)
        return {"tasks": [t.to_dict() for t in subtasks]}

    # -- dependencies ----------------------------------------------------

    @router.post("/tasks/{task_id}/dependencies")
    async def add_dependency(
        task_id: str,
        body: AddDependencyRequest,
        request: Request,
        identity: Identity = Depends(current_identity),
    ) -> dict[str, Any]:
        guard(request, identity, "task.dependency")
        task = get_services().tasks.add_dependency(task_id, body.depends_on, body.type)
        return {"task": task.to_dict()}

    @router.delete("/tasks/{task_id}/dependencies/{depends_on_id}")
    async def remove_dependency(
        task_id: str,
        depends_on_id: str,
        request: Request,
        identity: Identity = Depends(current_identity),
    ) -> dict[str, Any]:
        guard(request, identity, "task.dependency")
        task = get_services().tasks.remove_dependency(task_id, depends_on_id)
        return {"task": task.to_dict()}

    @router.get("/tasks/{task_id}/dependents")
    async def get_dependents(task_id: str, identity: Identity = Depends(current_identity)) -> dict[str, Any]:
        tasks = get_services().tasks.get_dependents(task_id)
        return {"tasks": [t.to_dict() for t in tasks]}

    # -- people and time -------------------------------------------------

    @router.put("/tasks/{task_id}/assignees")
    async def assign_task(
        task_id: str,
        body: AssignRequest,
        request: Request,
        identity: Identity = Depends(current_identity),
    ) -> dict[str, Any]:
        guard(request, identity, "task.assign")
        task = get_services().tasks.assign_task(task_id, body.assignee_ids, actor_id=identity.user_id)
        return {"task": task.to_dict()}

    @router.post("/tasks/{task_id}/watch")
    async def watch(task_id: str, identity: Identity = Depends(current_identity)) -> dict[str, Any]:
        return {"task": get_services().tasks.watch(task_id, identity.user_id).to_dict()}

    @router.delete("/tasks/{task_id}/watch")
    async def unwatch(task_id: str, identity: Identity = Depends(current_identity)) -> dict[str, Any]:
        return {"task": get_services().tasks.unwatch(task_id, identity.user_id).to_dict()}

    @router.post("/tasks/{task_id}/time")
    async def log_time(task_id: str, body: LogTimeRequest, identity: Identity = Depends(current_identity)) -> dict[str, Any]:
        return {"task": get_services().tasks.log_time(task_id, body.hours).to_dict()}

    @router.post("/tasks/{task_id}/comments", status_code=201)
    async def add_comment(task_id: str, body: CommentRequest, identity: Identity = Depends(current_identity)) -> dict[str, Any]:
        event = get_services().tasks.add_comment(task_id, identity.user_id, body.content, body.mentions)
        return {"comment": {"id": event["id"], **event["payload"]}}

    return router
