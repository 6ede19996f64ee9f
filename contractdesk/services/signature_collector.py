"""Signature collector for the public signing page.

The token is the only credential. resolve() tells the three public states
apart (unknown token, expired and unsigned, signed) and submit()/update()
record the client's signature under the agreement row lock.
"""
from __future__ import annotations

import logging
from dataclasses import dataclass, field
from datetime import datetime, timedelta

from sqlalchemy.orm import Session

from contractdesk.database import as_utc
from contractdesk.exceptions import (
    AgreementValidationError,
    DocumentChangedError,
    FieldError,
    NotFoundError,
    SignatureLocked,
    TokenExpired,
)
from contractdesk.models.agreement import Agreement, AgreementStatus
from contractdesk.models.agreement_signature import AgreementSignature, SignerType
from contractdesk.models.client_link import ClientLink, LinkStatus
from contractdesk.services.audit_log import create_log, CATEGORY_CLIENT_SIGNATURE, CATEGORY_FAILED_ATTEMPT
from contractdesk.services.blob_storage import SignatureImage, prepare_signature_image
from contractdesk.services.projects import roster_client_ids
from contractdesk.services.renderer import CanonicalDocument, render
from contractdesk.services.snapshot import AgreementSnapshot, snapshot_of
from contractdesk.services.status import current_status, derive_link_status, refresh_statuses

log = logging.getLogger("uvicorn.error")


@dataclass(frozen=True)
class SignerContext:
    """What the holder of a valid token may see."""
    link_id: int
    agreement_id: int
    client_id: int
    link_status: LinkStatus
    expires_at: datetime
    signed_at: datetime | None
    edit_deadline: datetime | None
    can_edit: bool
    snapshot: AgreementSnapshot
    document: CanonicalDocument

    @property
    def signed(self) -> bool:
        return self.link_status == LinkStatus.client_signed

    @property
    def signature(self):
        return self.snapshot.client_signature(self.client_id)


@dataclass(frozen=True)
class SignatureInput:
    signer_name: str
    signature_image: str
    document_hash: str | None = None
    ip_address: str | None = None
    user_agent: str | None = None


@dataclass
class SignOutcome:
    signature_id: int
    agreement_id: int
    client_id: int
    created: bool
    changed: bool
    agreement_status: str
    uploads: list[SignatureImage] = field(default_factory=list)
    deletes: list[str] = field(default_factory=list)


def _find_link(db: Session, token: str) -> ClientLink | None:
    token = (token or "").strip()
    if not token:
        return None
    return db.query(ClientLink).filter(ClientLink.token == token).first()


def _client_signature(db: Session, link: ClientLink) -> AgreementSignature | None:
    return (
        db.query(AgreementSignature)
        .filter(
            AgreementSignature.agreement_id == link.agreement_id,
            AgreementSignature.signer_type == SignerType.client.value,
            AgreementSignature.signer_key == link.client_id,
        )
        .first()
    )


def _log_failed(db: Session, title: str, message: str, sig: SignatureInput | None, **kwargs) -> None:
    create_log(
        db,
        CATEGORY_FAILED_ATTEMPT,
        title,
        message,
        ip_address=sig.ip_address if sig else None,
        user_agent=sig.user_agent if sig else None,
        **kwargs,
    )
    db.commit()


def resolve(db: Session, token: str, now: datetime, currency: str, edit_window: timedelta) -> SignerContext:
    """Raises NotFoundError for unknown tokens and TokenExpired for expired unsigned links."""
    link = _find_link(db, token)
    if link is None:
        raise NotFoundError("Signing link")
    signature = _client_signature(db, link)
    status = derive_link_status(link.expires_at, signature is not None, now)
    if status == LinkStatus.expired:
        raise TokenExpired(as_utc(link.expires_at))

    agreement = link.agreement
    snapshot = snapshot_of(db, agreement, now, currency)
    signed_at = as_utc(link.signed_at)
    deadline = signed_at + edit_window if signed_at else None
    can_edit = (
        signature is not None
        and deadline is not None
        and as_utc(now) <= deadline
        and snapshot.status != AgreementStatus.completed.value
    )
    return SignerContext(
        link_id=link.id,
        agreement_id=agreement.id,
        client_id=link.client_id,
        link_status=status,
        expires_at=as_utc(link.expires_at),
        signed_at=signed_at,
        edit_deadline=deadline,
        can_edit=can_edit,
        snapshot=snapshot,
        document=render(snapshot),
    )


def _lock_link(db: Session, token: str) -> tuple[ClientLink | None, Agreement | None]:
    link = _find_link(db, token)
    if link is None:
        return None, None
    agreement_id = link.agreement_id
    # Anything read before the lock may be stale, the token included: a reissue can rotate it in between
    db.expire_all()
    agreement = db.query(Agreement).filter(Agreement.id == agreement_id).with_for_update().first()
    link = db.query(ClientLink).filter(ClientLink.token == token.strip()).with_for_update().first()
    if link is None or agreement is None or link.agreement_id != agreement.id:
        return None, None
    return link, agreement


def _ensure_on_roster(db: Session, link: ClientLink, agreement: Agreement, sig: SignatureInput) -> None:
    """A link kept for a client who left the project roster can no longer sign."""
    if link.client_id in roster_client_ids(db, agreement.project_id):
        return
    _log_failed(
        db,
        "Agreement sign: client not on roster",
        f"Client {link.client_id} tried to sign agreement {agreement.id} after leaving the project.",
        sig,
        agreement_id=agreement.id,
        client_id=link.client_id,
    )
    raise NotFoundError("Signing link")


def _checked_input(project_id: int, agreement_id: int, client_id: int, sig: SignatureInput) -> tuple[str, SignatureImage]:
    errors = []
    signer_name = (sig.signer_name or "").strip()
    if not signer_name:
        errors.append(FieldError("signer_name", "must not be empty"))
    elif len(signer_name) > 255:
        errors.append(FieldError("signer_name", "must be at most 255 characters"))
    image = None
    try:
        image = prepare_signature_image(project_id, agreement_id, f"client_{client_id}", sig.signature_image)
    except ValueError as e:
        errors.append(FieldError("signature_image", str(e)))
    if errors:
        raise AgreementValidationError(errors)
    return signer_name, image


def _check_document_hash(db: Session, agreement: Agreement, link: ClientLink, sig: SignatureInput, now, currency) -> str:
    document = render(snapshot_of(db, agreement, now, currency))
    expected = document.document_hash
    if sig.document_hash and sig.document_hash.strip().lower() != expected:
        _log_failed(
            db,
            "Agreement sign: document hash mismatch",
            f"Client {link.client_id} tried to sign agreement {agreement.id} with an outdated copy.",
            sig,
            agreement_id=agreement.id,
            client_id=link.client_id,
            meta={"expected_hash": expected, "submitted_hash": sig.document_hash},
        )
        raise DocumentChangedError(expected)
    return expected


def submit(
    db: Session,
    token: str,
    sig: SignatureInput,
    now: datetime,
    currency: str,
    edit_window: timedelta,
) -> SignOutcome:
    """First signature for a link. On an already-signed link this is an update."""
    try:
        link, agreement = _lock_link(db, token)
        if link is None:
            _log_failed(
                db,
                "Agreement sign: unknown link",
                "Sign attempt with an unknown signing token.",
                sig,
                meta={"token_prefix": (token or "")[:8]},
            )
            raise NotFoundError("Signing link")

        _ensure_on_roster(db, link, agreement, sig)
        existing = _client_signature(db, link)
        if existing is not None:
            return _update_locked(db, link, agreement, existing, sig, now, currency, edit_window)

        if as_utc(now) > as_utc(link.expires_at):
            _log_failed(
                db,
                "Agreement sign: expired link",
                f"Client {link.client_id} tried to sign agreement {agreement.id} after the link expired.",
                sig,
                agreement_id=agreement.id,
                client_id=link.client_id,
                meta={"expires_at": as_utc(link.expires_at)},
            )
            raise TokenExpired(as_utc(link.expires_at))

        if current_status(db, agreement, now).agreement == AgreementStatus.completed:
            raise SignatureLocked("Agreement is already completed")

        document_hash = _check_document_hash(db, agreement, link, sig, now, currency)
        signer_name, image = _checked_input(agreement.project_id, agreement.id, link.client_id, sig)

        signature = AgreementSignature(
            agreement_id=agreement.id,
            signer_type=SignerType.client.value,
            client_id=link.client_id,
            signer_key=link.client_id,
            signer_name=signer_name,
            signature_image_name=image.name,
            signature_image_path=image.path,
            signature_image_sha256=image.sha256,
            document_id=f"agreement-{agreement.id}",
            document_hash=document_hash,
            ip_address=sig.ip_address,
            user_agent=sig.user_agent[:400] if sig.user_agent else None,
            timestamp=now,
        )
        db.add(signature)
        link.signed_at = now
        db.flush()

        create_log(
            db,
            CATEGORY_CLIENT_SIGNATURE,
            "Agreement signed",
            f"Client {link.client_id} signed agreement {agreement.id} as {signer_name}.",
            agreement_id=agreement.id,
            client_id=link.client_id,
            ip_address=sig.ip_address,
            user_agent=sig.user_agent,
            meta={"signature_id": signature.id, "document_hash": document_hash, "image_sha256": image.sha256},
        )
        derived = refresh_statuses(db, agreement, now, reason="client signature")
        db.commit()
    except Exception:
        db.rollback()
        raise
    log.info("Agreement %s signed by client %s", agreement.id, link.client_id)
    return SignOutcome(
        signature_id=signature.id,
        agreement_id=agreement.id,
        client_id=link.client_id,
        created=True,
        changed=True,
        agreement_status=derived.agreement.value,
        uploads=[image],
    )


def update(
    db: Session,
    token: str,
    sig: SignatureInput,
    now: datetime,
    currency: str,
    edit_window: timedelta,
) -> SignOutcome:
    """Replace the client's signature inside the edit window. Raises SignatureLocked outside it."""
    try:
        link, agreement = _lock_link(db, token)
        if link is None:
            raise NotFoundError("Signing link")
        _ensure_on_roster(db, link, agreement, sig)
        existing = _client_signature(db, link)
        if existing is None:
            raise NotFoundError("Signature")
        return _update_locked(db, link, agreement, existing, sig, now, currency, edit_window)
    except Exception:
        db.rollback()
        raise


def _update_locked(
    db: Session,
    link: ClientLink,
    agreement: Agreement,
    existing: AgreementSignature,
    sig: SignatureInput,
    now: datetime,
    currency: str,
    edit_window: timedelta,
) -> SignOutcome:
    signed_at = as_utc(link.signed_at or existing.timestamp)
    if as_utc(now) > signed_at + edit_window:
        raise SignatureLocked("The edit window for this signature has closed")
    if current_status(db, agreement, now).agreement == AgreementStatus.completed:
        raise SignatureLocked("Agreement is completed; signatures can no longer be changed")

    document_hash = _check_document_hash(db, agreement, link, sig, now, currency)
    signer_name, image = _checked_input(agreement.project_id, agreement.id, link.client_id, sig)

    changed = signer_name != existing.signer_name or image.sha256 != existing.signature_image_sha256
    deletes = []
    if existing.signature_image_path != image.path:
        deletes.append(existing.signature_image_path)

    existing.signer_name = signer_name
    existing.signature_image_name = image.name
    existing.signature_image_path = image.path
    existing.signature_image_sha256 = image.sha256
    existing.document_hash = document_hash
    existing.ip_address = sig.ip_address
    existing.user_agent = sig.user_agent[:400] if sig.user_agent else None
    # Identical resubmission only refreshes the timestamp; signed_at anchors the edit window and never moves
    existing.timestamp = now
    db.flush()

    if changed:
        create_log(
            db,
            CATEGORY_CLIENT_SIGNATURE,
            "Agreement signature updated",
            f"Client {link.client_id} updated their signature on agreement {agreement.id}.",
            agreement_id=agreement.id,
            client_id=link.client_id,
            ip_address=sig.ip_address,
            user_agent=sig.user_agent,
            meta={"signature_id": existing.id, "image_sha256": image.sha256},
        )
    derived = refresh_statuses(db, agreement, now, reason="client signature update")
    db.commit()
    return SignOutcome(
        signature_id=existing.id,
        agreement_id=agreement.id,
        client_id=link.client_id,
        created=False,
        changed=changed,
        agreement_status=derived.agreement.value,
        uploads=[image] if changed else [],
        deletes=deletes,
    )
