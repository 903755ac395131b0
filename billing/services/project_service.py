from __future__ import annotations
from typing import Dict, List, Optional

from pydantic import ValidationError as PydanticValidationError

from billing.errors import NotFoundError
from billing.models.project import Project, Recipient
from billing.storage.store import Store


class ProjectDirectory:
    """Read-only lookup of project_id -> {id, name}."""

    def __init__(self, store: Store):
        self.repo = store.projects

    def get(self, project_id: str) -> Optional[Project]:
        d = self.repo.get_by_id(project_id)
        if not d:
            return None
        try:
            return Project(**d)
        except PydanticValidationError:
            return None

    def get_project(self, project_id: str) -> Dict[str, str]:
        p = self.get(project_id)
        if p is None:
            raise NotFoundError(f"project {project_id} not found")
        return {"id": p.id, "name": p.name}

    def require(self, project_id: Optional[str]) -> Project:
        if not project_id:
            raise NotFoundError("project_id is required")
        p = self.get(project_id)
        if p is None:
            raise NotFoundError(f"project {project_id} not found")
        return p

    def name_of(self, project_id: str) -> str:
        p = self.get(project_id)
        return p.name if p else "Projekt"

    def recipients(self, project_id: str) -> List[Recipient]:
        p = self.get(project_id)
        return list(p.recipients) if p else []
