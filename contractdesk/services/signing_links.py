"""Signing-link issuer.

One ClientLink row per (agreement, client). Issuing to a client that already
has a link rotates the token in place, so the previous token stops resolving
the moment the transaction commits.
"""
from __future__ import annotations

import logging
import secrets
from dataclasses import dataclass, field
from datetime import datetime, timedelta

from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from contractdesk.dependencies import Principal
from contractdesk.exceptions import AgreementValidationError, FieldError
from contractdesk.models.client_link import ClientLink, LinkStatus
from contractdesk.services.agreement_store import ensure_mutable, load_agreement
from contractdesk.services.audit_log import create_log, CATEGORY_LINK_ISSUED
from contractdesk.services.notifications import LinkReadyEvent
from contractdesk.services.projects import clients_by_id, roster_client_ids
from contractdesk.services.status import refresh_statuses

log = logging.getLogger("uvicorn.error")

TOKEN_BYTES = 32


def generate_token() -> str:
    """256-bit random token, hex encoded."""
    return secrets.token_hex(TOKEN_BYTES)


@dataclass
class IssueResult:
    agreement_id: int
    links: list[ClientLink] = field(default_factory=list)
    events: list[LinkReadyEvent] = field(default_factory=list)
    warnings: list[str] = field(default_factory=list)


def issue_links(
    db: Session,
    principal: Principal,
    agreement_id: int,
    client_ids: list[int],
    ttl: timedelta,
    now: datetime,
) -> IssueResult:
    """Mint or rotate links for the given roster clients. Clients who already signed are skipped."""
    wanted = sorted(set(client_ids))
    if not wanted:
        raise AgreementValidationError([FieldError("client_ids", "at least one client is required")])
    try:
        agreement = load_agreement(db, principal.user_id, agreement_id, lock=True)
        ensure_mutable(db, agreement, now)

        roster = set(roster_client_ids(db, agreement.project_id))
        outside = [cid for cid in wanted if cid not in roster]
        if outside:
            raise AgreementValidationError([FieldError("client_ids", f"clients not on the project roster: {outside}")])

        result = IssueResult(agreement_id=agreement.id)
        existing = {link.client_id: link for link in agreement.client_links}
        directory = clients_by_id(db, wanted)
        expires_at = now + ttl

        for client_id in wanted:
            link = existing.get(client_id)
            if link is not None and link.signed_at is not None:
                result.warnings.append(f"{directory[client_id].full_name} has already signed; no new link was issued")
                continue
            token = generate_token()
            if link is None:
                link = ClientLink(
                    agreement_id=agreement.id,
                    client_id=client_id,
                    token=token,
                    expires_at=expires_at,
                    issued_at=now,
                    status=LinkStatus.pending.value,
                    reissue_count=0,
                )
                agreement.client_links.append(link)
            else:
                link.token = token
                link.expires_at = expires_at
                link.issued_at = now
                link.email_sent_at = None
                link.reissue_count = (link.reissue_count or 0) + 1
            db.flush()
            result.links.append(link)

            create_log(
                db,
                CATEGORY_LINK_ISSUED,
                "Signing link issued" if link.reissue_count == 0 else "Signing link reissued",
                f"Signing link for client {client_id} on agreement {agreement.id}, expires {expires_at.isoformat()}.",
                agreement_id=agreement.id,
                client_id=client_id,
                actor_user_id=principal.user_id,
                actor_email=principal.email,
                meta={"link_id": link.id, "reissue_count": link.reissue_count, "expires_at": expires_at},
            )

        refresh_statuses(db, agreement, now, reason="links issued")
        project = agreement.project
        for link in result.links:
            client = directory[link.client_id]
            result.events.append(
                LinkReadyEvent(
                    link_id=link.id,
                    agreement_id=agreement.id,
                    client_id=link.client_id,
                    client_name=client.full_name,
                    client_email=client.email,
                    token=link.token,
                    expires_at=expires_at,
                    project_name=project.name if project else "",
                    provider_name=agreement.service_provider_name,
                    owner_email=principal.email,
                    owner_mobile=principal.mobile_number,
                )
            )
        db.commit()
    except Exception:
        db.rollback()
        raise
    log.info("Agreement %s: issued %d signing link(s)", agreement_id, len(result.links))
    return result


def issue_link(
    db: Session,
    principal: Principal,
    agreement_id: int,
    client_id: int,
    ttl: timedelta,
    now: datetime,
) -> str:
    """Single-client form of issue_links; returns the new token."""
    result = issue_links(db, principal, agreement_id, [client_id], ttl, now)
    if not result.links:
        raise AgreementValidationError([FieldError("client_id", "client has already signed")])
    return result.links[0].token


def mark_emails_sent(db: Session, tokens: list[str], now: datetime) -> bool:
    """Stamp email_sent_at on links whose token is still the active one. Runs after delivery, so it never raises."""
    if not tokens:
        return True
    try:
        db.query(ClientLink).filter(ClientLink.token.in_(tokens)).update(
            {ClientLink.email_sent_at: now}, synchronize_session=False
        )
        db.commit()
    except SQLAlchemyError as e:
        db.rollback()
        log.warning("Could not record email_sent_at for %d link(s): %s", len(tokens), e)
        return False
    return True
