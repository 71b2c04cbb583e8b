"""Error kinds raised by workboard services.

Each error carries a short ``kind`` string and the HTTP status the API layer
maps it to.  Services raise these; nothing below the API layer deals in HTTP.
"""

from __future__ import annotations

from typing import Any, Optional


class WorkboardError(Exception):
    kind = "error"
    status_code = 500

    def __init__(self, message: str) -> None:
        super().__init__(message)
        self.message = message

    def to_dict(self) -> dict[str, Any]:
        return {"success": False, "error": self.kind, "message": self.message}


class NotFound(WorkboardError):
    kind = "not_found"
    status_code = 404

    def __init__(self, entity: str, entity_id: Optional[str] = None) -> None:
        message = f"{entity} not found" if entity_id is None else f"{entity} not found: {entity_id}"
        super().__init__(message)
        self.entity = entity
        self.entity_id = entity_id


class InvalidOperation(WorkboardError):
    kind = "invalid_operation"
    status_code = 400


class CycleDetected(WorkboardError):
    kind = "cycle_detected"
    status_code = 409

    def __init__(self, task_id: str, depends_on_id: str) -> None:
        super().__init__(f"Adding dependency {task_id} -> {depends_on_id} would create a circular dependency")
        self.task_id = task_id
        self.depends_on_id = depends_on_id


class BlockedByDependency(WorkboardError):
    kind = "blocked_by_dependency"
    status_code = 409

    def __init__(self, blocking: list[dict[str, str]]) -> None:
        titles = ", ".join(item["title"] for item in blocking)
        super().__init__(f"Blocked by incomplete dependencies: {titles}")
        self.blocking = blocking

    def to_dict(self) -> dict[str, Any]:
        data = super().to_dict()
        data["blocking"] = list(self.blocking)
        return data


class ConcurrencyConflict(WorkboardError):
    kind = "concurrency_conflict"
    status_code = 409

    def __init__(self, entity: str, entity_id: str, expected: int, actual: int) -> None:
        super().__init__(f"{entity} {entity_id} was modified concurrently (expected version {expected}, found {actual})")
        self.entity_id = entity_id
        self.expected = expected
        self.actual = actual


class Unauthorized(WorkboardError):
    kind = "unauthorized"
    status_code = 401


class Forbidden(WorkboardError):
    kind = "forbidden"
    status_code = 403
