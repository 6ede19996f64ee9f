"""Project roster: the clients whose signatures gate agreement completion."""
from fastapi import APIRouter, Depends
from sqlalchemy.orm import Session

from contractdesk.database import get_db
from contractdesk.dependencies import Principal, get_principal
from contractdesk.models.agreement import Agreement
from contractdesk.schemas.projects import RosterResponse, RosterUpdate
from contractdesk.services.clock import Clock, get_clock
from contractdesk.services.status import current_status
from contractdesk.services.projects import get_owned_project, replace_roster, roster_client_ids

router = APIRouter(prefix="/projects", tags=["projects"])


def _agreement_status(db: Session, project_id: int, now) -> str | None:
    agreement = db.query(Agreement).filter(Agreement.project_id == project_id).first()
    return current_status(db, agreement, now).agreement.value if agreement else None


@router.get("/{project_id}/clients", response_model=RosterResponse)
def get_roster(
    project_id: int,
    principal: Principal = Depends(get_principal),
    db: Session = Depends(get_db),
    clock: Clock = Depends(get_clock),
):
    get_owned_project(db, principal.user_id, project_id)
    return RosterResponse(
        project_id=project_id,
        client_ids=roster_client_ids(db, project_id),
        agreement_status=_agreement_status(db, project_id, clock.now()),
    )


@router.put("/{project_id}/clients", response_model=RosterResponse)
def update_roster(
    project_id: int,
    data: RosterUpdate,
    principal: Principal = Depends(get_principal),
    db: Session = Depends(get_db),
    clock: Clock = Depends(get_clock),
):
    client_ids = replace_roster(db, principal.user_id, project_id, data.client_ids, clock.now())
    return RosterResponse(
        project_id=project_id,
        client_ids=client_ids,
        agreement_status=_agreement_status(db, project_id, clock.now()),
    )
