"""Post-commit document work: PDF generation and signed-copy delivery.

Everything here runs after the signing or owner transaction has committed.
Failures are logged and reported as warnings; they never undo a signature.
"""
from __future__ import annotations

import logging
from datetime import datetime

from sqlalchemy.orm import Session

from contractdesk.models.agreement import Agreement
from contractdesk.models.user import User
from contractdesk.services.blob_storage import FOLDER_AGREEMENTS, BlobStorageError, BlobStore, blob_path
from contractdesk.services.notifications import send_signed_copy
from contractdesk.services.pdf import PdfRenderError, document_to_pdf
from contractdesk.services.renderer import CanonicalDocument, render
from contractdesk.services.snapshot import snapshot_of

log = logging.getLogger("uvicorn.error")


def pdf_filename(agreement_id: int, project_name: str = "") -> str:
    slug = "".join(c if c.isascii() and c.isalnum() else "_" for c in project_name.strip()).strip("_")[:60]
    return f"agreement_{agreement_id}{'_' + slug if slug else ''}.pdf"


def load_signature_images(store: BlobStore, document: CanonicalDocument) -> tuple[dict[str, bytes], list[str]]:
    images: dict[str, bytes] = {}
    warnings: list[str] = []
    for block in document.signature_blocks:
        if not block.image_path or block.image_path in images:
            continue
        try:
            images[block.image_path] = store.download(block.image_path)
        except BlobStorageError as e:
            log.warning("Signature image unavailable for PDF: %s", e)
            warnings.append(f"Signature image for {block.label} is unavailable; the typed name is shown instead")
    return images, warnings


def render_pdf(document: CanonicalDocument, store: BlobStore) -> tuple[bytes, list[str]]:
    """Raises PdfRenderError when the engine fails; missing images only warn."""
    images, warnings = load_signature_images(store, document)
    return document_to_pdf(document, images), warnings


def agreement_pdf(db: Session, agreement: Agreement, now: datetime, currency: str, store: BlobStore) -> tuple[bytes, str, list[str]]:
    snapshot = snapshot_of(db, agreement, now, currency)
    pdf, warnings = render_pdf(render(snapshot), store)
    return pdf, pdf_filename(agreement.id, snapshot.project_name), warnings


def send_signed_copies(
    db: Session,
    agreement_id: int,
    client_id: int,
    now: datetime,
    currency: str,
    store: BlobStore,
) -> list[str]:
    """Archive the freshly signed PDF and email it to the signing client and the provider."""
    agreement = db.query(Agreement).filter(Agreement.id == agreement_id).first()
    if agreement is None:
        return []
    snapshot = snapshot_of(db, agreement, now, currency)
    signature = snapshot.client_signature(client_id)
    if signature is None:
        return []

    try:
        pdf, warnings = render_pdf(render(snapshot), store)
    except PdfRenderError as e:
        log.warning("Signed copy for agreement %s not generated: %s", agreement_id, e)
        return ["Signed PDF could not be generated"]

    filename = pdf_filename(agreement.id, snapshot.project_name)
    try:
        store.upload(blob_path(FOLDER_AGREEMENTS, agreement.project_id, filename), pdf, content_type="application/pdf")
    except BlobStorageError as e:
        log.warning("Signed PDF not archived: %s", e)
        warnings.append("Signed PDF could not be archived")

    party = snapshot.party(client_id)
    if party and party.email:
        if not send_signed_copy(party.email, party.full_name, signature.signer_name, snapshot.project_name, pdf, filename):
            warnings.append(f"Signed copy email to {party.email} could not be sent")
    owner = db.query(User).filter(User.id == agreement.owner_id).first()
    if owner and owner.email and (not party or (party.email or "").lower() != owner.email.lower()):
        if not send_signed_copy(owner.email, owner.full_name, signature.signer_name, snapshot.project_name, pdf, filename):
            warnings.append(f"Signed copy email to {owner.email} could not be sent")
    return warnings
