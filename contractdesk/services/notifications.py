"""Notifier: transactional email through Mailgun.

Every sender returns True when Mailgun accepted the message and False otherwise
(including when Mailgun is not configured). Callers run after commit and turn
False into a warning; nothing here raises.
"""
from __future__ import annotations

import html
import logging
from dataclasses import dataclass
from datetime import datetime

import httpx

from contractdesk.config import get_settings
from contractdesk.services.renderer import format_date

log = logging.getLogger("uvicorn.error")

MAILGUN_US_BASE = "https://api.mailgun.net"
MAILGUN_EU_BASE = "https://api.eu.mailgun.net"


@dataclass(frozen=True)
class Attachment:
    filename: str
    content: bytes
    content_type: str = "application/pdf"


def send_email(
    to_email: str,
    subject: str,
    html_content: str,
    text_content: str | None = None,
    attachments: list[Attachment] | None = None,
) -> bool:
    settings = get_settings()
    if not (settings.mailgun_api_key and settings.mailgun_domain):
        log.warning(
            "[Email] NOT SENT: to=%s subject=%s. MAILGUN_API_KEY and MAILGUN_DOMAIN must both be set.",
            to_email,
            subject,
        )
        return False
    return _send_email_mailgun(to_email, subject, html_content, text_content, attachments or [], settings)


def _send_email_mailgun(to_email, subject, html_content, text_content, attachments, settings) -> bool:
    base = (settings.mailgun_base_url or MAILGUN_US_BASE).strip().rstrip("/")
    domain = (settings.mailgun_domain or "").strip().lower()
    from_addr = (settings.mailgun_from_email or "").strip()
    from_domain = from_addr.split("@")[-1].lower() if "@" in from_addr else ""
    if domain and from_domain != domain:
        from_addr = f"noreply@{domain}"
        log.info("[Mailgun] Using from=%s (must match domain %s for delivery)", from_addr, domain)
    data = {
        "from": f"{settings.mailgun_from_name} <{from_addr}>",
        "to": to_email,
        "subject": subject,
        "text": text_content or "",
        "html": html_content or "",
    }
    files = [("attachment", (a.filename, a.content, a.content_type)) for a in attachments] or None
    try:
        with httpx.Client(timeout=10.0) as client:
            r = client.post(f"{base}/v3/{domain}/messages", auth=("api", settings.mailgun_api_key), data=data, files=files)
            if 200 <= r.status_code < 300:
                log.info("[Mailgun] API success: to=%s status=%s", to_email, r.status_code)
                return True
            if r.status_code == 401 and base == MAILGUN_US_BASE:
                log.info("[Mailgun] 401 with US endpoint. Retrying with EU endpoint...")
                r2 = client.post(
                    f"{MAILGUN_EU_BASE}/v3/{domain}/messages",
                    auth=("api", settings.mailgun_api_key),
                    data=data,
                    files=files,
                )
                if 200 <= r2.status_code < 300:
                    log.info("[Mailgun] API success (EU): to=%s", to_email)
                    return True
                log.warning("[Mailgun] EU request failed: status=%s body=%s", r2.status_code, r2.text[:500])
                return False
            log.warning("[Mailgun] API failed: status=%s to=%s body=%s", r.status_code, to_email, r.text[:500])
            return False
    except httpx.HTTPError as e:
        log.warning("[Mailgun] Exception: to=%s error=%s: %s", to_email, type(e).__name__, e)
        return False


def signing_url(token: str) -> str:
    return f"{get_settings().frontend_url.rstrip('/')}/agreement/sign/{token}"


@dataclass(frozen=True)
class LinkReadyEvent:
    """Emitted by the link issuer; consumed after commit."""
    link_id: int
    agreement_id: int
    client_id: int
    client_name: str
    client_email: str | None
    token: str
    expires_at: datetime
    project_name: str
    provider_name: str
    owner_email: str | None = None
    owner_mobile: str | None = None


def send_signing_link(event: LinkReadyEvent) -> bool:
    if not event.client_email:
        return False
    url = signing_url(event.token)
    name = html.escape(event.client_name or "there")
    project = html.escape(event.project_name)
    provider = html.escape(event.provider_name)
    expires = format_date(event.expires_at)
    contact_lines = []
    if event.owner_email:
        contact_lines.append(f"Email: {event.owner_email}")
    if event.owner_mobile:
        contact_lines.append(f"Phone: {event.owner_mobile}")
    contact_text = "\n".join(contact_lines)
    contact_html = "<br/>".join(html.escape(c) for c in contact_lines)

    subject = f"Agreement ready for your signature - {event.project_name}"
    text = (
        f"Hi {event.client_name or 'there'},\n\n"
        f"{event.provider_name} has shared the service agreement for {event.project_name}.\n"
        f"Review and sign it here: {url}\n\n"
        f"This link expires on {expires}.\n\n"
        + (f"Questions? Contact {event.provider_name}:\n{contact_text}\n" if contact_text else "")
    )
    body = f"""
    <p>Hi {name},</p>
    <p><strong>{provider}</strong> has shared the service agreement for <strong>{project}</strong>.</p>
    <p><a href="{html.escape(url)}">Review and sign the agreement</a></p>
    <p>This link expires on <strong>{expires}</strong>.</p>
    {f"<p>Questions? Contact {provider}:<br/>{contact_html}</p>" if contact_html else ""}
    """
    return send_email(event.client_email, subject, body, text_content=text)


def send_signed_copy(
    to_email: str,
    recipient_name: str | None,
    signer_name: str,
    project_name: str,
    pdf_bytes: bytes,
    filename: str,
) -> bool:
    """Signed agreement PDF, sent to the client who signed and to the provider."""
    name = (recipient_name or "").strip() or "there"
    subject = f"Signed agreement - {project_name}"
    text = (
        f"Hi {name},\n\n"
        f"{signer_name} has signed the service agreement for {project_name}. "
        f"A copy of the signed agreement is attached.\n"
    )
    body = f"""
    <p>Hi {html.escape(name)},</p>
    <p><strong>{html.escape(signer_name)}</strong> has signed the service agreement for
    <strong>{html.escape(project_name)}</strong>. A copy of the signed agreement is attached.</p>
    """
    return send_email(
        to_email,
        subject,
        body,
        text_content=text,
        attachments=[Attachment(filename=filename, content=pdf_bytes)],
    )


def dispatch_link_ready(events: list[LinkReadyEvent]) -> tuple[list[str], list[str]]:
    """Send one invitation per event. Returns (tokens delivered, warnings)."""
    delivered: list[str] = []
    warnings: list[str] = []
    for event in events:
        if not event.client_email:
            warnings.append(f"Client {event.client_id} has no email address; signing link was not emailed")
            continue
        if send_signing_link(event):
            delivered.append(event.token)
        else:
            warnings.append(f"Signing link email to {event.client_email} could not be sent")
    return delivered, warnings
