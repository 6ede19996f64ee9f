"""Aggregate store: the agreement and its owned children persisted as one unit.

Every mutation here runs validate + persist + refresh_statuses in a single
transaction holding a row lock on the agreement (or on the project while the
agreement does not exist yet). Blob writes are returned to the caller and run
only after commit.
"""
from __future__ import annotations

import logging
from dataclasses import dataclass, field
from datetime import datetime
from decimal import Decimal

from sqlalchemy.orm import Session

from contractdesk.dependencies import Principal
from contractdesk.exceptions import AgreementValidationError, FieldError, ImmutableAgreementError, NotFoundError
from contractdesk.models.agreement import (
    Agreement,
    AgreementDeliverable,
    AgreementPaymentMilestone,
    AgreementPaymentTerms,
    AgreementStatus,
)
from contractdesk.models.agreement_signature import AgreementSignature, SignerType
from contractdesk.services.audit_log import create_log, CATEGORY_PROVIDER_SIGNATURE
from contractdesk.services.blob_storage import SignatureImage, prepare_signature_image
from contractdesk.services.projects import get_owned_project
from contractdesk.services.status import current_status, refresh_statuses
from contractdesk.services.validator import (
    AgreementDraft,
    AgreementDraftBuilder,
    MilestoneDraft,
    PersistedMilestone,
    ValidatedAgreement,
    ValidationContext,
)

log = logging.getLogger("uvicorn.error")

PROVIDER_SIGNER_KEY = 0


@dataclass(frozen=True)
class ProviderSignatureInput:
    signer_name: str
    signature_image: str
    ip_address: str | None = None
    user_agent: str | None = None


@dataclass
class StoreResult:
    """A committed agreement plus the blob effects queued for after commit."""
    agreement: Agreement
    uploads: list[SignatureImage] = field(default_factory=list)
    deletes: list[str] = field(default_factory=list)


def load_agreement(db: Session, owner_id: int, agreement_id: int, *, lock: bool = False) -> Agreement:
    if lock:
        # Rows this session read before the lock may be stale
        db.expire_all()
    q = db.query(Agreement).filter(Agreement.id == agreement_id, Agreement.owner_id == owner_id)
    if lock:
        q = q.with_for_update()
    agreement = q.first()
    if not agreement:
        raise NotFoundError("Agreement")
    return agreement


def get_by_project(db: Session, owner_id: int, project_id: int) -> Agreement:
    get_owned_project(db, owner_id, project_id)
    agreement = (
        db.query(Agreement).filter(Agreement.project_id == project_id, Agreement.owner_id == owner_id).first()
    )
    if not agreement:
        raise NotFoundError("Agreement")
    return agreement


def persisted_milestones(agreement: Agreement) -> tuple[PersistedMilestone, ...]:
    terms = agreement.payment_terms
    if terms is None:
        return ()
    return tuple(
        PersistedMilestone(
            id=m.id,
            description=m.description,
            amount=Decimal(m.amount),
            due_date=m.due_date,
            order=m.order,
        )
        for m in sorted(terms.milestones, key=lambda m: (m.order, m.id))
    )


def draft_from_agreement(agreement: Agreement) -> AgreementDraft:
    terms = agreement.payment_terms
    return AgreementDraft(
        service_provider_name=agreement.service_provider_name,
        agreement_date=agreement.agreement_date,
        service_type=agreement.service_type,
        start_date=agreement.start_date,
        end_date=agreement.end_date,
        duration=agreement.duration,
        duration_unit=agreement.duration_unit,
        number_of_revisions=agreement.number_of_revisions,
        jurisdiction=agreement.jurisdiction,
        deliverables=tuple(d.description for d in sorted(agreement.deliverables, key=lambda d: (d.order, d.id))),
        payment_structure=terms.payment_structure if terms else None,
        payment_method=terms.payment_method if terms else None,
        milestones=tuple(MilestoneDraft(id=m.id) for m in persisted_milestones(agreement)),
    )


def _write_fields(db: Session, agreement: Agreement, validated: ValidatedAgreement) -> None:
    agreement.service_provider_name = validated.service_provider_name
    agreement.agreement_date = validated.agreement_date
    agreement.service_type = validated.service_type
    agreement.start_date = validated.start_date
    agreement.end_date = validated.end_date
    agreement.duration = validated.duration
    agreement.duration_unit = validated.duration_unit
    agreement.number_of_revisions = validated.number_of_revisions
    agreement.jurisdiction = validated.jurisdiction

    agreement.deliverables = [
        AgreementDeliverable(description=text, order=i) for i, text in enumerate(validated.deliverables)
    ]

    terms = agreement.payment_terms
    if terms is None:
        terms = AgreementPaymentTerms(payment_structure=validated.payment_structure)
        agreement.payment_terms = terms
    terms.payment_structure = validated.payment_structure
    terms.payment_method = validated.payment_method

    existing = {m.id: m for m in terms.milestones}
    kept: list[AgreementPaymentMilestone] = []
    for item in validated.milestones:
        row = existing.get(item.id) if item.id is not None else None
        if row is None:
            row = AgreementPaymentMilestone()
        row.description = item.description
        row.amount = item.amount
        row.due_date = item.due_date
        row.order = item.order
        kept.append(row)
    # Unlisted persisted milestones are orphaned and deleted by the cascade
    terms.milestones = kept
    db.flush()


def _effective_status(db: Session, agreement: Agreement, now: datetime) -> str:
    return current_status(db, agreement, now).agreement.value


def ensure_mutable(db: Session, agreement: Agreement, now: datetime) -> None:
    if _effective_status(db, agreement, now) == AgreementStatus.completed.value:
        raise ImmutableAgreementError(agreement.id)


def _put_provider_signature(
    db: Session,
    principal: Principal,
    agreement: Agreement,
    signature: ProviderSignatureInput,
    now: datetime,
    result: StoreResult,
) -> AgreementSignature:
    signer_name = (signature.signer_name or "").strip()
    errors = []
    if not signer_name:
        errors.append(FieldError("signer_name", "must not be empty"))
    image = None
    try:
        image = prepare_signature_image(agreement.project_id, agreement.id, "provider", signature.signature_image)
    except ValueError as e:
        errors.append(FieldError("signature_image", str(e)))
    if errors:
        raise AgreementValidationError(errors)

    sig = (
        db.query(AgreementSignature)
        .filter(
            AgreementSignature.agreement_id == agreement.id,
            AgreementSignature.signer_type == SignerType.service_provider.value,
        )
        .first()
    )
    if sig is None:
        sig = AgreementSignature(
            agreement_id=agreement.id,
            signer_type=SignerType.service_provider.value,
            client_id=None,
            signer_key=PROVIDER_SIGNER_KEY,
        )
        db.add(sig)
    elif sig.signature_image_path != image.path:
        result.deletes.append(sig.signature_image_path)

    sig.signer_name = signer_name
    sig.signature_image_name = image.name
    sig.signature_image_path = image.path
    sig.signature_image_sha256 = image.sha256
    sig.ip_address = signature.ip_address
    sig.user_agent = signature.user_agent[:400] if signature.user_agent else None
    sig.timestamp = now
    db.flush()
    result.uploads.append(image)

    create_log(
        db,
        CATEGORY_PROVIDER_SIGNATURE,
        "Provider signed agreement",
        f"{signer_name} signed agreement {agreement.id} as service provider.",
        agreement_id=agreement.id,
        actor_user_id=principal.user_id,
        actor_email=principal.email,
        ip_address=signature.ip_address,
        user_agent=signature.user_agent,
        meta={"signature_id": sig.id, "image_sha256": image.sha256},
    )
    return sig


def create_agreement(
    db: Session,
    principal: Principal,
    project_id: int,
    builder: AgreementDraftBuilder,
    now: datetime,
    provider_signature: ProviderSignatureInput | None = None,
) -> StoreResult:
    try:
        project = get_owned_project(db, principal.user_id, project_id, lock=True)
        if db.query(Agreement.id).filter(Agreement.project_id == project.id).first():
            raise AgreementValidationError([FieldError("project_id", "project already has an agreement")])

        validated = builder.build(
            ValidationContext(
                principal_id=principal.user_id,
                project_owner_id=project.user_id,
                project_budget=project.budget,
            )
        )
        agreement = Agreement(project_id=project.id, owner_id=principal.user_id, status=AgreementStatus.draft.value)
        db.add(agreement)
        _write_fields(db, agreement, validated)

        result = StoreResult(agreement=agreement)
        if provider_signature is not None:
            _put_provider_signature(db, principal, agreement, provider_signature, now, result)
        refresh_statuses(db, agreement, now, reason="created")
        db.commit()
    except Exception:
        db.rollback()
        raise
    db.refresh(agreement)
    log.info("Agreement %s created for project %s by user %s", agreement.id, project_id, principal.user_id)
    return result


def update_agreement(
    db: Session,
    principal: Principal,
    agreement_id: int,
    changes: dict,
    now: datetime,
) -> StoreResult:
    """Partial update: fields absent from `changes` keep their stored values."""
    try:
        agreement = load_agreement(db, principal.user_id, agreement_id, lock=True)
        project = get_owned_project(db, principal.user_id, agreement.project_id)
        builder = AgreementDraftBuilder.from_draft(draft_from_agreement(agreement)).apply(changes)
        validated = builder.build(
            ValidationContext(
                principal_id=principal.user_id,
                project_owner_id=project.user_id,
                project_budget=project.budget,
                status=_effective_status(db, agreement, now),
                agreement_id=agreement.id,
                persisted_milestones=persisted_milestones(agreement),
            )
        )
        _write_fields(db, agreement, validated)
        refresh_statuses(db, agreement, now, reason="updated")
        db.commit()
    except Exception:
        db.rollback()
        raise
    db.refresh(agreement)
    return StoreResult(agreement=agreement)


def delete_agreement(db: Session, principal: Principal, agreement_id: int, now: datetime) -> StoreResult:
    """Delete the aggregate. Returned deletes are the stored signature images."""
    try:
        agreement = load_agreement(db, principal.user_id, agreement_id, lock=True)
        ensure_mutable(db, agreement, now)
        paths = [s.signature_image_path for s in agreement.signatures if s.signature_image_path]
        db.delete(agreement)
        db.commit()
    except Exception:
        db.rollback()
        raise
    log.info("Agreement %s deleted by user %s", agreement_id, principal.user_id)
    return StoreResult(agreement=agreement, deletes=paths)


def sign_as_provider(
    db: Session,
    principal: Principal,
    agreement_id: int,
    signature: ProviderSignatureInput,
    now: datetime,
) -> StoreResult:
    """Record or replace the service provider's signature."""
    try:
        agreement = load_agreement(db, principal.user_id, agreement_id, lock=True)
        ensure_mutable(db, agreement, now)
        result = StoreResult(agreement=agreement)
        _put_provider_signature(db, principal, agreement, signature, now, result)
        refresh_statuses(db, agreement, now, reason="provider signature")
        db.commit()
    except Exception:
        db.rollback()
        raise
    db.refresh(agreement)
    return result
