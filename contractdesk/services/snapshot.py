"""Immutable read model of a committed agreement, consumed by the renderer and the API."""
from __future__ import annotations

from dataclasses import dataclass
from datetime import date, datetime
from decimal import Decimal

from sqlalchemy.orm import Session

from contractdesk.database import as_utc
from contractdesk.models.agreement import Agreement
from contractdesk.models.agreement_signature import SignerType
from contractdesk.services.projects import clients_by_id, roster_client_ids
from contractdesk.services.status import current_status


@dataclass(frozen=True)
class MilestoneView:
    id: int
    description: str
    amount: Decimal
    order: int
    due_date: date | None


@dataclass(frozen=True)
class PartyView:
    client_id: int
    full_name: str
    organization: str | None
    email: str | None
    in_roster: bool


@dataclass(frozen=True)
class SignatureView:
    id: int
    signer_type: str
    client_id: int | None
    signer_name: str
    signature_image_name: str
    signature_image_path: str
    timestamp: datetime


@dataclass(frozen=True)
class LinkView:
    id: int
    client_id: int
    status: str
    expires_at: datetime
    issued_at: datetime
    email_sent_at: datetime | None
    signed_at: datetime | None


@dataclass(frozen=True)
class AgreementSnapshot:
    id: int
    project_id: int
    project_name: str
    owner_id: int
    status: str
    service_provider_name: str
    agreement_date: date
    service_type: str
    start_date: date | None
    end_date: date | None
    duration: int | None
    duration_unit: str | None
    number_of_revisions: int
    jurisdiction: str | None
    deliverables: tuple[str, ...]
    payment_structure: str
    payment_method: str | None
    milestones: tuple[MilestoneView, ...]
    currency: str
    parties: tuple[PartyView, ...]
    signatures: tuple[SignatureView, ...]
    links: tuple[LinkView, ...]

    def provider_signature(self) -> SignatureView | None:
        return next((s for s in self.signatures if s.signer_type == SignerType.service_provider.value), None)

    def client_signature(self, client_id: int) -> SignatureView | None:
        return next(
            (s for s in self.signatures if s.signer_type == SignerType.client.value and s.client_id == client_id),
            None,
        )

    def link_for(self, client_id: int) -> LinkView | None:
        return next((l for l in self.links if l.client_id == client_id), None)

    def party(self, client_id: int) -> PartyView | None:
        return next((p for p in self.parties if p.client_id == client_id), None)


def snapshot_of(db: Session, agreement: Agreement, now: datetime, currency: str) -> AgreementSnapshot:
    derived = current_status(db, agreement, now)
    roster = set(roster_client_ids(db, agreement.project_id))
    signer_ids = {s.client_id for s in agreement.signatures if s.client_id is not None}
    party_ids = sorted(roster | signer_ids)
    directory = clients_by_id(db, party_ids)
    parties = tuple(
        PartyView(
            client_id=cid,
            full_name=directory[cid].full_name,
            organization=directory[cid].organization,
            email=directory[cid].email,
            in_roster=cid in roster,
        )
        for cid in party_ids
        if cid in directory
    )

    terms = agreement.payment_terms
    milestones = ()
    if terms is not None:
        milestones = tuple(
            MilestoneView(id=m.id, description=m.description, amount=Decimal(m.amount), order=m.order, due_date=m.due_date)
            for m in sorted(terms.milestones, key=lambda m: (m.order, m.id))
        )

    return AgreementSnapshot(
        id=agreement.id,
        project_id=agreement.project_id,
        project_name=agreement.project.name if agreement.project else "",
        owner_id=agreement.owner_id,
        status=derived.agreement.value,
        service_provider_name=agreement.service_provider_name,
        agreement_date=agreement.agreement_date,
        service_type=agreement.service_type,
        start_date=agreement.start_date,
        end_date=agreement.end_date,
        duration=agreement.duration,
        duration_unit=agreement.duration_unit,
        number_of_revisions=agreement.number_of_revisions or 0,
        jurisdiction=agreement.jurisdiction,
        deliverables=tuple(d.description for d in sorted(agreement.deliverables, key=lambda d: (d.order, d.id))),
        payment_structure=terms.payment_structure if terms else "",
        payment_method=terms.payment_method if terms else None,
        milestones=milestones,
        currency=currency,
        parties=parties,
        signatures=tuple(
            SignatureView(
                id=s.id,
                signer_type=s.signer_type,
                client_id=s.client_id,
                signer_name=s.signer_name,
                signature_image_name=s.signature_image_name,
                signature_image_path=s.signature_image_path,
                timestamp=as_utc(s.timestamp),
            )
            for s in sorted(agreement.signatures, key=lambda s: s.id)
        ),
        links=tuple(
            LinkView(
                id=l.id,
                client_id=l.client_id,
                status=derived.links[l.client_id].value,
                expires_at=as_utc(l.expires_at),
                issued_at=as_utc(l.issued_at),
                email_sent_at=as_utc(l.email_sent_at),
                signed_at=as_utc(l.signed_at),
            )
            for l in sorted(agreement.client_links, key=lambda l: l.id)
        ),
    )
