"""Status derivation for agreements and their client links.

Status columns are caches. Every mutation calls refresh_statuses() in the same
transaction, and read paths use derive() directly, so the stored value is never
the source of truth.
"""
from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import datetime

from sqlalchemy.orm import Session

from contractdesk.database import as_utc
from contractdesk.models.agreement import Agreement, AgreementStatus
from contractdesk.models.agreement_signature import SignerType
from contractdesk.models.client_link import LinkStatus
from contractdesk.services.audit_log import create_log, CATEGORY_STATUS_CHANGE
from contractdesk.services.projects import roster_client_ids

log = logging.getLogger("uvicorn.error")


@dataclass(frozen=True)
class LinkFact:
    client_id: int
    expires_at: datetime


@dataclass(frozen=True)
class StatusFacts:
    roster: frozenset[int]
    provider_signed: bool
    signed_client_ids: frozenset[int]
    links: tuple[LinkFact, ...]


@dataclass(frozen=True)
class DerivedStatus:
    agreement: AgreementStatus
    links: dict[int, LinkStatus]


def derive_link_status(expires_at: datetime, signed: bool, now: datetime) -> LinkStatus:
    if signed:
        return LinkStatus.client_signed
    if as_utc(now) > as_utc(expires_at):
        return LinkStatus.expired
    return LinkStatus.pending


def derive(facts: StatusFacts, now: datetime) -> DerivedStatus:
    links = {
        link.client_id: derive_link_status(link.expires_at, link.client_id in facts.signed_client_ids, now)
        for link in facts.links
    }
    # Clients dropped from the roster keep their link but no longer gate completion.
    # An empty roster never completes: an agreement needs at least one counter-party.
    roster_signed = bool(facts.roster) and all(
        links.get(client_id) == LinkStatus.client_signed for client_id in facts.roster
    )
    if facts.provider_signed and roster_signed:
        status = AgreementStatus.completed
    elif facts.provider_signed or facts.signed_client_ids or facts.links:
        status = AgreementStatus.pending
    else:
        status = AgreementStatus.draft
    return DerivedStatus(agreement=status, links=links)


def facts_for(db: Session, agreement: Agreement) -> StatusFacts:
    signatures = agreement.signatures
    return StatusFacts(
        roster=frozenset(roster_client_ids(db, agreement.project_id)),
        provider_signed=any(s.signer_type == SignerType.service_provider.value for s in signatures),
        signed_client_ids=frozenset(
            s.client_id for s in signatures if s.signer_type == SignerType.client.value and s.client_id is not None
        ),
        links=tuple(LinkFact(client_id=l.client_id, expires_at=l.expires_at) for l in agreement.client_links),
    )


def current_status(db: Session, agreement: Agreement, now: datetime) -> DerivedStatus:
    """Read path: derive from facts without writing."""
    return derive(facts_for(db, agreement), now)


def refresh_statuses(db: Session, agreement: Agreement, now: datetime, *, reason: str = "") -> DerivedStatus:
    """Recompute and rewrite agreement and link status columns. Caller owns the transaction."""
    db.flush()
    db.expire(agreement, ["signatures", "client_links"])
    derived = derive(facts_for(db, agreement), now)

    for link in agreement.client_links:
        new = derived.links[link.client_id].value
        if link.status != new:
            link.status = new

    old = agreement.status
    new = derived.agreement.value
    if old != new:
        agreement.status = new
        log.info("Agreement %s status %s -> %s (%s)", agreement.id, old, new, reason or "refresh")
        create_log(
            db,
            CATEGORY_STATUS_CHANGE,
            "Agreement status changed",
            f"Agreement {agreement.id} moved from {old} to {new}.",
            agreement_id=agreement.id,
            meta={"old_status": old, "new_status": new, "reason": reason},
        )
    db.flush()
    return derived
