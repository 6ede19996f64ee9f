"""Agreement lifecycle endpoints: owner CRUD, link issuance, PDF, and the public signing page."""
import logging
from datetime import timedelta
from decimal import Decimal

from fastapi import APIRouter, Depends, HTTPException, Request
from fastapi.responses import Response
from sqlalchemy.orm import Session

from contractdesk.config import get_settings
from contractdesk.database import get_db
from contractdesk.dependencies import Principal, get_principal
from contractdesk.schemas.agreements import (
    AgreementCreate,
    AgreementDeleteResponse,
    AgreementResponse,
    AgreementUpdate,
    ClientLinkResponse,
    ClientSignRequest,
    ClientSignResponse,
    DocumentResponse,
    IssuedLinkResponse,
    MilestoneResponse,
    PartyResponse,
    PaymentTermsResponse,
    SectionResponse,
    SendLinksRequest,
    SendLinksResponse,
    SignatureBlockResponse,
    SignatureImageIn,
    SignatureResponse,
    SigningPageResponse,
)
from contractdesk.services import agreement_store, signature_collector
from contractdesk.services.blob_storage import BlobStore, apply_blob_effects, get_blob_store
from contractdesk.services.clock import Clock, get_clock
from contractdesk.services.documents import agreement_pdf, render_pdf, pdf_filename, send_signed_copies
from contractdesk.services.notifications import dispatch_link_ready, signing_url
from contractdesk.services.pdf import PdfRenderError
from contractdesk.services.renderer import CanonicalDocument, render
from contractdesk.services.signing_links import issue_links, mark_emails_sent
from contractdesk.services.snapshot import AgreementSnapshot, snapshot_of
from contractdesk.services.validator import AgreementDraftBuilder, MilestoneDraft

log = logging.getLogger("uvicorn.error")

router = APIRouter(prefix="/agreements", tags=["agreements"])


def _client_meta(req: Request) -> tuple[str | None, str | None]:
    ip = (req.client.host if req.client else None) or None
    ua = (req.headers.get("user-agent") or "").strip() or None
    return ip, ua


def _milestones(items) -> list[MilestoneDraft]:
    return [MilestoneDraft(id=m.id, description=m.description, amount=m.amount, due_date=m.date) for m in items]


def _agreement_response(s: AgreementSnapshot, warnings: list[str] | None = None) -> AgreementResponse:
    return AgreementResponse(
        id=s.id,
        project_id=s.project_id,
        project_name=s.project_name,
        owner_id=s.owner_id,
        status=s.status,
        service_provider_name=s.service_provider_name,
        agreement_date=s.agreement_date,
        service_type=s.service_type,
        start_date=s.start_date,
        end_date=s.end_date,
        duration=s.duration,
        duration_unit=s.duration_unit,
        number_of_revisions=s.number_of_revisions,
        jurisdiction=s.jurisdiction,
        deliverables=list(s.deliverables),
        payment_terms=PaymentTermsResponse(
            payment_structure=s.payment_structure,
            payment_method=s.payment_method,
            milestones=[
                MilestoneResponse(id=m.id, description=m.description, amount=m.amount, order=m.order, date=m.due_date)
                for m in s.milestones
            ],
            milestone_total=sum((m.amount for m in s.milestones), Decimal("0.00")),
        ),
        currency=s.currency,
        parties=[PartyResponse(**p.__dict__) for p in s.parties],
        signatures=[SignatureResponse(**sig.__dict__) for sig in s.signatures],
        client_links=[ClientLinkResponse(**l.__dict__) for l in s.links],
        warnings=warnings or [],
    )


def _document_response(doc: CanonicalDocument) -> DocumentResponse:
    return DocumentResponse(
        title=doc.title,
        preamble=doc.preamble,
        sections=[SectionResponse(number=s.number, heading=s.heading, paragraphs=list(s.paragraphs)) for s in doc.sections],
        signature_blocks=[
            SignatureBlockResponse(label=b.label, signer_name=b.signer_name, signed_on=b.signed_on)
            for b in doc.signature_blocks
        ],
        document_hash=doc.document_hash,
        text=doc.full_text(),
    )


def _pdf_response(pdf: bytes, filename: str, warnings: list[str]) -> Response:
    headers = {"Content-Disposition": f'attachment; filename="{filename}"'}
    if warnings:
        # Header values must be latin-1; warnings carry party names
        headers["X-Warnings"] = "; ".join(warnings).encode("ascii", "backslashreplace").decode("ascii")
    return Response(content=pdf, media_type="application/pdf", headers=headers)


# --- Public, token-authenticated ---


@router.get("/sign/{token}", response_model=SigningPageResponse)
def get_signing_page(token: str, db: Session = Depends(get_db), clock: Clock = Depends(get_clock)):
    settings = get_settings()
    ctx = signature_collector.resolve(
        db,
        token,
        clock.now(),
        settings.currency_code,
        timedelta(days=settings.signature_edit_window_days),
    )
    signature = ctx.signature
    return SigningPageResponse(
        link_status=ctx.link_status.value,
        client_id=ctx.client_id,
        expires_at=ctx.expires_at,
        signed=ctx.signed,
        signed_at=ctx.signed_at,
        can_edit=ctx.can_edit,
        edit_deadline=ctx.edit_deadline,
        signer_name=signature.signer_name if signature else None,
        agreement=_agreement_response(ctx.snapshot),
        document=_document_response(ctx.document),
    )


def _after_client_signature(db: Session, outcome, store: BlobStore, clock: Clock) -> list[str]:
    warnings = apply_blob_effects(store, outcome.uploads, outcome.deletes)
    if outcome.changed:
        warnings += send_signed_copies(
            db, outcome.agreement_id, outcome.client_id, clock.now(), get_settings().currency_code, store
        )
    return warnings


def _sign_response(outcome, warnings: list[str]) -> ClientSignResponse:
    return ClientSignResponse(
        signature_id=outcome.signature_id,
        agreement_id=outcome.agreement_id,
        agreement_status=outcome.agreement_status,
        created=outcome.created,
        changed=outcome.changed,
        warnings=warnings,
    )


@router.post("/sign/{token}", response_model=ClientSignResponse)
def submit_client_signature(
    token: str,
    data: ClientSignRequest,
    req: Request,
    db: Session = Depends(get_db),
    clock: Clock = Depends(get_clock),
    store: BlobStore = Depends(get_blob_store),
):
    settings = get_settings()
    ip, ua = _client_meta(req)
    outcome = signature_collector.submit(
        db,
        token,
        signature_collector.SignatureInput(
            signer_name=data.signer_name,
            signature_image=data.signature_image,
            document_hash=data.document_hash,
            ip_address=ip,
            user_agent=ua,
        ),
        clock.now(),
        settings.currency_code,
        timedelta(days=settings.signature_edit_window_days),
    )
    return _sign_response(outcome, _after_client_signature(db, outcome, store, clock))


@router.put("/sign/{token}", response_model=ClientSignResponse)
def update_client_signature(
    token: str,
    data: ClientSignRequest,
    req: Request,
    db: Session = Depends(get_db),
    clock: Clock = Depends(get_clock),
    store: BlobStore = Depends(get_blob_store),
):
    settings = get_settings()
    ip, ua = _client_meta(req)
    outcome = signature_collector.update(
        db,
        token,
        signature_collector.SignatureInput(
            signer_name=data.signer_name,
            signature_image=data.signature_image,
            document_hash=data.document_hash,
            ip_address=ip,
            user_agent=ua,
        ),
        clock.now(),
        settings.currency_code,
        timedelta(days=settings.signature_edit_window_days),
    )
    return _sign_response(outcome, _after_client_signature(db, outcome, store, clock))


@router.get("/sign/{token}/pdf")
def get_signing_pdf(
    token: str,
    db: Session = Depends(get_db),
    clock: Clock = Depends(get_clock),
    store: BlobStore = Depends(get_blob_store),
):
    settings = get_settings()
    ctx = signature_collector.resolve(
        db, token, clock.now(), settings.currency_code, timedelta(days=settings.signature_edit_window_days)
    )
    try:
        pdf, warnings = render_pdf(ctx.document, store)
    except PdfRenderError as e:
        log.warning("PDF for signing link failed: %s", e)
        raise HTTPException(status_code=500, detail="PDF generation failed")
    return _pdf_response(pdf, pdf_filename(ctx.agreement_id, ctx.snapshot.project_name), warnings)


# --- Owner-authenticated ---


@router.post("", response_model=AgreementResponse, status_code=201)
def create_agreement(
    data: AgreementCreate,
    req: Request,
    principal: Principal = Depends(get_principal),
    db: Session = Depends(get_db),
    clock: Clock = Depends(get_clock),
    store: BlobStore = Depends(get_blob_store),
):
    builder = (
        AgreementDraftBuilder()
        .basics(
            service_provider_name=data.service_provider_name,
            agreement_date=data.agreement_date,
            service_type=data.service_type,
        )
        .scope(deliverables=data.deliverables)
        .timeline(
            start_date=data.start_date,
            end_date=data.end_date,
            duration=data.duration,
            duration_unit=data.duration_unit.value if data.duration_unit else None,
        )
        .payment(
            payment_structure=data.payment_structure.value,
            payment_method=data.payment_method,
            milestones=_milestones(data.payment_milestones),
        )
        .terms(number_of_revisions=data.number_of_revisions, jurisdiction=data.jurisdiction)
    )
    provider_signature = None
    if data.service_provider_signature is not None:
        ip, ua = _client_meta(req)
        provider_signature = agreement_store.ProviderSignatureInput(
            signer_name=data.service_provider_signature.signer_name,
            signature_image=data.service_provider_signature.signature_image,
            ip_address=ip,
            user_agent=ua,
        )
    now = clock.now()
    result = agreement_store.create_agreement(db, principal, data.project_id, builder, now, provider_signature)
    warnings = apply_blob_effects(store, result.uploads, result.deletes)
    snapshot = snapshot_of(db, result.agreement, now, get_settings().currency_code)
    return _agreement_response(snapshot, warnings)


@router.get("/project/{project_id}", response_model=AgreementResponse)
def get_agreement_by_project(
    project_id: int,
    principal: Principal = Depends(get_principal),
    db: Session = Depends(get_db),
    clock: Clock = Depends(get_clock),
):
    agreement = agreement_store.get_by_project(db, principal.user_id, project_id)
    return _agreement_response(snapshot_of(db, agreement, clock.now(), get_settings().currency_code))


@router.get("/{agreement_id}", response_model=AgreementResponse)
def get_agreement(
    agreement_id: int,
    principal: Principal = Depends(get_principal),
    db: Session = Depends(get_db),
    clock: Clock = Depends(get_clock),
):
    agreement = agreement_store.load_agreement(db, principal.user_id, agreement_id)
    return _agreement_response(snapshot_of(db, agreement, clock.now(), get_settings().currency_code))


@router.put("/{agreement_id}", response_model=AgreementResponse)
def update_agreement(
    agreement_id: int,
    data: AgreementUpdate,
    principal: Principal = Depends(get_principal),
    db: Session = Depends(get_db),
    clock: Clock = Depends(get_clock),
):
    changes = data.model_dump(exclude_unset=True)
    if "payment_milestones" in changes:
        changes.pop("payment_milestones")
        changes["milestones"] = _milestones(data.payment_milestones or [])
    for key in ("duration_unit", "payment_structure"):
        if changes.get(key) is not None:
            changes[key] = getattr(data, key).value
    now = clock.now()
    result = agreement_store.update_agreement(db, principal, agreement_id, changes, now)
    return _agreement_response(snapshot_of(db, result.agreement, now, get_settings().currency_code))


@router.delete("/{agreement_id}", response_model=AgreementDeleteResponse)
def delete_agreement(
    agreement_id: int,
    principal: Principal = Depends(get_principal),
    db: Session = Depends(get_db),
    clock: Clock = Depends(get_clock),
    store: BlobStore = Depends(get_blob_store),
):
    result = agreement_store.delete_agreement(db, principal, agreement_id, clock.now())
    warnings = apply_blob_effects(store, [], result.deletes)
    return AgreementDeleteResponse(agreement_id=agreement_id, warnings=warnings)


@router.post("/{agreement_id}/signature", response_model=AgreementResponse)
def sign_as_provider(
    agreement_id: int,
    data: SignatureImageIn,
    req: Request,
    principal: Principal = Depends(get_principal),
    db: Session = Depends(get_db),
    clock: Clock = Depends(get_clock),
    store: BlobStore = Depends(get_blob_store),
):
    ip, ua = _client_meta(req)
    now = clock.now()
    result = agreement_store.sign_as_provider(
        db,
        principal,
        agreement_id,
        agreement_store.ProviderSignatureInput(
            signer_name=data.signer_name,
            signature_image=data.signature_image,
            ip_address=ip,
            user_agent=ua,
        ),
        now,
    )
    warnings = apply_blob_effects(store, result.uploads, result.deletes)
    return _agreement_response(snapshot_of(db, result.agreement, now, get_settings().currency_code), warnings)


@router.post("/{agreement_id}/send", response_model=SendLinksResponse)
def send_signing_links(
    agreement_id: int,
    data: SendLinksRequest,
    principal: Principal = Depends(get_principal),
    db: Session = Depends(get_db),
    clock: Clock = Depends(get_clock),
):
    settings = get_settings()
    now = clock.now()
    result = issue_links(
        db, principal, agreement_id, data.client_ids, timedelta(days=settings.client_link_ttl_days), now
    )
    links = [
        IssuedLinkResponse(
            client_id=event.client_id,
            token=event.token,
            url=signing_url(event.token),
            expires_at=event.expires_at,
            reissue_count=link.reissue_count,
        )
        for event, link in zip(result.events, result.links)
    ]
    delivered, email_warnings = dispatch_link_ready(result.events)
    if not mark_emails_sent(db, delivered, clock.now()):
        email_warnings.append("Email delivery could not be recorded")
    agreement = agreement_store.load_agreement(db, principal.user_id, agreement_id)
    return SendLinksResponse(
        agreement_id=agreement_id,
        status=snapshot_of(db, agreement, now, settings.currency_code).status,
        links=links,
        warnings=result.warnings + email_warnings,
    )


@router.get("/{agreement_id}/preview", response_model=DocumentResponse)
def preview_agreement(
    agreement_id: int,
    principal: Principal = Depends(get_principal),
    db: Session = Depends(get_db),
    clock: Clock = Depends(get_clock),
):
    agreement = agreement_store.load_agreement(db, principal.user_id, agreement_id)
    return _document_response(render(snapshot_of(db, agreement, clock.now(), get_settings().currency_code)))


@router.get("/{agreement_id}/pdf")
def get_agreement_pdf(
    agreement_id: int,
    principal: Principal = Depends(get_principal),
    db: Session = Depends(get_db),
    clock: Clock = Depends(get_clock),
    store: BlobStore = Depends(get_blob_store),
):
    agreement = agreement_store.load_agreement(db, principal.user_id, agreement_id)
    try:
        pdf, filename, warnings = agreement_pdf(db, agreement, clock.now(), get_settings().currency_code, store)
    except PdfRenderError as e:
        log.warning("PDF for agreement %s failed: %s", agreement_id, e)
        raise HTTPException(status_code=500, detail="PDF generation failed")
    return _pdf_response(pdf, filename, warnings)
