"""Project bootstrap and milestone plan endpoints."""
from fastapi import APIRouter, Depends, status
from sqlalchemy.orm import Session

from app.db import get_db
from app.models.api_key import ApiKey, ApiScope
from app.models.project import Project
from app.models.user import User
from app.schemas.milestone import MilestonePlan, MilestoneRead, ProjectMilestonesRead
from app.schemas.project import ProjectCreate, ProjectRead
from app.security import require_scope, require_user
from app.services import milestones as milestones_service
from app.services import projects as projects_service
from app.utils.audit import actor_from_api_key

router = APIRouter(prefix="/projects", tags=["projects"])


@router.post("", response_model=ProjectRead, status_code=status.HTTP_201_CREATED)
def create_project(
    payload: ProjectCreate,
    db: Session = Depends(get_db),
    api_key: ApiKey = Depends(require_scope({ApiScope.admin})),
) -> Project:
    """Create the project of an accepted proposal."""

    return projects_service.create_project(
        db,
        title=payload.title,
        customer_id=payload.customer_id,
        provider_id=payload.provider_id,
        approved_price=payload.approved_price,
        currency=payload.currency,
        actor=actor_from_api_key(api_key, fallback="apikey:unknown"),
    )


@router.get("/{project_id}/milestones", response_model=ProjectMilestonesRead)
def read_milestone_plan(
    project_id: int,
    db: Session = Depends(get_db),
    user: User = Depends(require_user),
) -> ProjectMilestonesRead:
    project, milestones = milestones_service.get_project_milestones(db, project_id, user)
    return ProjectMilestonesRead(
        project=ProjectRead.model_validate(project),
        milestones=[MilestoneRead.model_validate(m) for m in milestones],
    )


@router.put(
    "/{project_id}/milestones",
    response_model=list[MilestoneRead],
    dependencies=[Depends(require_scope({ApiScope.company, ApiScope.provider}))],
)
def replace_milestone_plan(
    project_id: int,
    payload: MilestonePlan,
    db: Session = Depends(get_db),
    user: User = Depends(require_user),
):
    drafts = [milestones_service.MilestoneDraft(**item.model_dump()) for item in payload.milestones]
    return milestones_service.replace_milestones(db, project_id, user, drafts)


@router.post(
    "/{project_id}/milestones/approve",
    response_model=ProjectRead,
    dependencies=[Depends(require_scope({ApiScope.company, ApiScope.provider}))],
)
def approve_milestone_plan(
    project_id: int,
    db: Session = Depends(get_db),
    user: User = Depends(require_user),
) -> Project:
    """Record the caller's approval of the plan; both approvals lock it."""

    return milestones_service.approve_milestones(db, project_id, user)
