"""Minimal project and user endpoints.

Projects and users are owned by other parts of the platform; these routes
exist so the task, milestone and notification APIs have something to hang
off of.
"""

from __future__ import annotations

from typing import Any, Callable, Optional

from fastapi import APIRouter, Depends, Request
from pydantic import BaseModel, Field

from ..constants import UserRole
from ..domain.models import Project, User
from ..errors import InvalidOperation, NotFound
from ..services import Services
from .auth import Identity, current_identity, guard


class CreateProjectRequest(BaseModel):
    name: str
    key: str
    members: list[str] = Field(default_factory=list)


class AddMemberRequest(BaseModel):
    user_id: str


class CreateUserRequest(BaseModel):
    email: str
    full_name: str = ""
    role: str = "team_member"
    id: Optional[str] = None


def create_project_router(get_services: Callable[[], Services]) -> APIRouter:
    router = APIRouter(prefix="/api", tags=["projects"])

    @router.post("/projects", status_code=201)
    async def create_project(body: CreateProjectRequest, request: Request, identity: Identity = Depends(current_identity)) -> dict[str, Any]:
        guard(request, identity, "project.create", min_role=UserRole.PROJECT_ADMIN)
        if not body.name.strip() or not body.key.strip():
            raise InvalidOperation("Project name and key are required")
        members = list(dict.fromkeys([identity.user_id, *body.members]))
        project = Project(name=body.name.strip(), key=body.key.strip().upper(), members=members, created_by=identity.user_id)
        get_services().container.projects.upsert(project)
        return {"project": project.to_dict()}

    @router.get("/projects")
    async def list_projects(identity: Identity = Depends(current_identity)) -> dict[str, Any]:
        projects = get_services().container.projects.list()
        return {"projects": [p.to_dict() for p in projects]}

    @router.get("/projects/{project_id}")
    async def get_project(project_id: str, identity: Identity = Depends(current_identity)) -> dict[str, Any]:
        project = get_services().container.projects.get(project_id)
        if project is None:
            raise NotFound("Project", project_id)
        return {"project": project.to_dict()}

    @router.post("/projects/{project_id}/members")
    async def add_member(
        project_id: str,
        body: AddMemberRequest,
        request: Request,
        identity: Identity = Depends(current_identity),
    ) -> dict[str, Any]:
        guard(request, identity, "project.members", min_role=UserRole.PROJECT_MANAGER)
        repo = get_services().container.projects
        project = repo.get(project_id)
        if project is None:
            raise NotFound("Project", project_id)
        if body.user_id not in project.members:
            project.members.append(body.user_id)
            repo.upsert(project)
        return {"project": project.to_dict()}

    @router.post("/users", status_code=201)
    async def create_user(body: CreateUserRequest, request: Request, identity: Identity = Depends(current_identity)) -> dict[str, Any]:
        guard(request, identity, "user.create", roles=[UserRole.SUPER_ADMIN, UserRole.PROJECT_ADMIN])
        try:
            role = UserRole(body.role)
        except ValueError:
            raise InvalidOperation(f"Invalid role '{body.role}'") from None
        user = User(email=body.email, full_name=body.full_name, role=role)
        if body.id:
            user.id = body.id
        get_services().container.users.upsert(user)
        return {"user": user.to_dict()}

    @router.get("/users")
    async def list_users(identity: Identity = Depends(current_identity)) -> dict[str, Any]:
        return {"users": [u.to_dict() for u in get_services().container.users.list()]}

    @router.get("/me")
    async def me(identity: Identity = Depends(current_identity)) -> dict[str, Any]:
        return {"user_id": identity.user_id, "role": identity.role.value}

    return router
