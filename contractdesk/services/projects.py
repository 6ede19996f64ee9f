"""Project store and client directory lookups, plus roster replacement."""
from __future__ import annotations

from datetime import datetime

from sqlalchemy.orm import Session

from contractdesk.exceptions import AgreementValidationError, FieldError, NotFoundError
from contractdesk.models.project import Client, Project, ProjectClient


def get_owned_project(db: Session, owner_id: int, project_id: int, *, lock: bool = False) -> Project:
    q = db.query(Project).filter(Project.id == project_id, Project.user_id == owner_id)
    if lock:
        q = q.with_for_update()
    project = q.first()
    if not project:
        raise NotFoundError("Project")
    return project


def roster_client_ids(db: Session, project_id: int) -> list[int]:
    rows = (
        db.query(ProjectClient.client_id)
        .filter(ProjectClient.project_id == project_id)
        .order_by(ProjectClient.client_id)
        .all()
    )
    return [r[0] for r in rows]


def clients_by_id(db: Session, client_ids) -> dict[int, Client]:
    ids = sorted(set(client_ids))
    if not ids:
        return {}
    return {c.id: c for c in db.query(Client).filter(Client.id.in_(ids)).all()}


def replace_roster(db: Session, owner_id: int, project_id: int, client_ids: list[int], now: datetime) -> list[int]:
    """Set the project's client roster and re-derive the status of the project's agreement."""
    from contractdesk.models.agreement import Agreement
    from contractdesk.services.status import refresh_statuses

    try:
        project = get_owned_project(db, owner_id, project_id, lock=True)
        wanted = set(client_ids)
        owned = {
            c.id
            for c in db.query(Client).filter(Client.id.in_(wanted), Client.user_id == owner_id).all()
        } if wanted else set()
        unknown = sorted(wanted - owned)
        if unknown:
            raise AgreementValidationError([FieldError("client_ids", f"unknown clients: {unknown}")])

        current = {pc.client_id: pc for pc in project.roster}
        for client_id, row in current.items():
            if client_id not in wanted:
                db.delete(row)
        for client_id in sorted(wanted - set(current)):
            db.add(ProjectClient(project_id=project.id, client_id=client_id))
        db.flush()

        agreement = (
            db.query(Agreement).filter(Agreement.project_id == project.id).with_for_update().first()
        )
        if agreement:
            refresh_statuses(db, agreement, now, reason="roster change")
        db.commit()
    except Exception:
        db.rollback()
        raise
    return roster_client_ids(db, project_id)
