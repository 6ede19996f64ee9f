"""Periodic sweep: re-derive statuses of agreements whose pending links have lapsed."""
import logging

from sqlalchemy.orm import Session

from contractdesk.database import SessionLocal
from contractdesk.models.agreement import Agreement
from contractdesk.models.client_link import ClientLink, LinkStatus
from contractdesk.services.clock import Clock, get_clock
from contractdesk.services.status import refresh_statuses

log = logging.getLogger("uvicorn.error")


def sweep_expired_links(db: Session, clock: Clock) -> int:
    """Rewrite cached statuses for every agreement holding a pending link past expiry. Returns agreements touched."""
    now = clock.now()
    agreement_ids = [
        row[0]
        for row in db.query(ClientLink.agreement_id)
        .filter(ClientLink.status == LinkStatus.pending.value, ClientLink.expires_at < now)
        .distinct()
        .all()
    ]
    touched = 0
    for agreement_id in agreement_ids:
        try:
            agreement = db.query(Agreement).filter(Agreement.id == agreement_id).with_for_update().first()
            if agreement is None:
                db.rollback()
                continue
            refresh_statuses(db, agreement, now, reason="link expiry sweep")
            db.commit()
            touched += 1
        except Exception:
            db.rollback()
            log.exception("Link expiry sweep failed for agreement %s", agreement_id)
    return touched


def run_link_expiry_job() -> None:
    db: Session = SessionLocal()
    try:
        touched = sweep_expired_links(db, get_clock())
        if touched:
            log.info("Link expiry sweep: refreshed %d agreement(s).", touched)
    finally:
        db.close()
