"""Canonical agreement text.

render() is a pure function of the snapshot: no clock, no locale, no I/O. The
same CanonicalDocument feeds the in-app preview, the public signing page and
the PDF engine, and its terms hash is what a signer confirms when signing.
"""
from __future__ import annotations

import hashlib
from dataclasses import dataclass
from datetime import date, datetime
from decimal import Decimal

from contractdesk.models.agreement import DurationUnit, PaymentStructure
from contractdesk.services.snapshot import AgreementSnapshot, PartyView, SignatureView

TITLE = "SERVICE AGREEMENT"

_MONTHS = (
    "January", "February", "March", "April", "May", "June",
    "July", "August", "September", "October", "November", "December",
)

_STRUCTURE_TEXT = {
    PaymentStructure.fifty_fifty.value: "50% Upfront & 50% Upon Completion",
    PaymentStructure.upfront.value: "100% Upfront",
    PaymentStructure.completion.value: "100% Upon Completion",
    PaymentStructure.milestone_based.value: "Milestone-Based Payments",
}

_UNIT_TEXT = {
    DurationUnit.days.value: "Days",
    DurationUnit.weeks.value: "Weeks",
    DurationUnit.months.value: "Months",
}

BLANK_LINE = "________________________"


@dataclass(frozen=True)
class Section:
    number: int
    heading: str
    paragraphs: tuple[str, ...]

    def text(self) -> str:
        return "\n".join((f"{self.number}. {self.heading}",) + self.paragraphs)


@dataclass(frozen=True)
class SignatureBlock:
    label: str
    signer_name: str | None
    signed_on: str | None
    image_path: str | None

    def text(self) -> str:
        if self.signer_name is None:
            return "\n".join((f"{self.label}:", BLANK_LINE, "Date: ________"))
        return "\n".join((f"{self.label}:", f"Signed by: {self.signer_name}", f"Date: {self.signed_on}"))


@dataclass(frozen=True)
class CanonicalDocument:
    title: str
    preamble: str
    sections: tuple[Section, ...]
    signature_blocks: tuple[SignatureBlock, ...]

    def terms_text(self) -> str:
        """Everything a signer agrees to, without the signature lines."""
        parts = [self.title, self.preamble] + [s.text() for s in self.sections]
        return "\n\n".join(parts) + "\n"

    def full_text(self) -> str:
        blocks = "\n\n".join(b.text() for b in self.signature_blocks)
        return self.terms_text() + "\n" + blocks + "\n"

    @property
    def document_hash(self) -> str:
        return hashlib.sha256(self.terms_text().encode("utf-8")).hexdigest()


def format_date(value: date | datetime | None) -> str:
    if value is None:
        return ""
    return f"{_MONTHS[value.month - 1]} {value.day}, {value.year}"


def format_money(amount: Decimal, currency: str) -> str:
    return f"{currency} {Decimal(amount).quantize(Decimal('0.01')):,}"


def _party_name(party: PartyView) -> str:
    if party.organization:
        return f"{party.full_name} ({party.organization})"
    return party.full_name


def _join_names(names: list[str]) -> str:
    if not names:
        return "[Client Name]"
    if len(names) == 1:
        return names[0]
    return ", ".join(names[:-1]) + " and " + names[-1]


def _client_parties(snapshot: AgreementSnapshot) -> list[PartyView]:
    # Roster clients plus anyone who already signed, ordered by client id
    return [p for p in snapshot.parties if p.in_roster or snapshot.client_signature(p.client_id) is not None]


def _scope(s: AgreementSnapshot) -> tuple[str, ...]:
    lines = [
        "The Service Provider agrees to deliver the following services:",
        "Service Type:",
        s.service_type,
    ]
    if s.deliverables:
        lines.append("Deliverables Include:")
        lines.extend(f"• {d}" for d in s.deliverables)
    lines.append(
        "Any additional features, integrations, or changes not explicitly listed above are outside the scope of "
        "this Agreement and may require a separate quotation or amendment."
    )
    return tuple(lines)


def _timeline(s: AgreementSnapshot) -> tuple[str, ...]:
    lines = []
    if s.start_date:
        lines.append(f"• Project Start Date: {format_date(s.start_date)}")
    if s.end_date:
        lines.append(f"• Estimated Completion Date: {format_date(s.end_date)}")
    if s.duration:
        lines.append(f"• Total Duration: {s.duration} {_UNIT_TEXT.get(s.duration_unit or 'days', 'Days')}")
    if not lines:
        lines.append("• Timeline to be agreed between the parties in writing.")
    lines.append(
        "Timelines are dependent on timely feedback, approvals, and content provided by the Client. Delays caused "
        "by the Client may extend the project timeline accordingly."
    )
    return tuple(lines)


def _payment(s: AgreementSnapshot) -> tuple[str, ...]:
    lines = [
        "The Client agrees to pay the Service Provider as per the selected payment structure:",
        f"Selected Structure: {_STRUCTURE_TEXT.get(s.payment_structure, s.payment_structure)}",
    ]
    if s.payment_structure == PaymentStructure.milestone_based.value:
        for m in s.milestones:
            due = f" (Due: {format_date(m.due_date)})" if m.due_date else ""
            lines.append(f"• {m.description} - {format_money(m.amount, s.currency)}{due}")
        total = sum((m.amount for m in s.milestones), Decimal("0"))
        lines.append(f"Total: {format_money(total, s.currency)}")
    if s.payment_method:
        lines.append(f"Payments must be made via: {s.payment_method}")
    lines.append(
        "Work will commence only after receipt of any applicable upfront payment. Late payments may result in work "
        "being paused until payment is received."
    )
    return tuple(lines)


def _revisions(s: AgreementSnapshot) -> tuple[str, ...]:
    return (
        f"The Agreement includes up to {s.number_of_revisions} revisions.",
        'A "revision" refers to minor design or content adjustments within the agreed scope. Major changes, '
        "redesigns, or scope expansions will be treated as additional work and billed separately.",
    )


_RESPONSIBILITIES = (
    "The Client agrees to:",
    "• Provide all required content, assets, and feedback in a timely manner",
    "• Review and approve deliverables within a reasonable timeframe",
    "• Ensure that any provided content does not infringe third-party rights",
    "Delays in client input may affect delivery timelines.",
)

_OWNERSHIP = (
    "Upon full payment, the Client will receive ownership rights to the final approved deliverables.",
    "The Service Provider retains the right to showcase the work in portfolios, case studies, or marketing "
    "materials unless otherwise agreed in writing.",
)

_CONFIDENTIALITY = (
    "Both parties agree to keep any confidential or sensitive information shared during the project strictly "
    "confidential and not disclose it to third parties without prior consent.",
)

_TERMINATION = (
    "Either party may terminate this Agreement with written notice.",
    "• Payments already made are non-refundable for work completed up to the termination date.",
    "• Any completed work up to termination will be handed over to the Client upon settlement of dues.",
)

_LIABILITY = (
    "The Service Provider shall not be liable for:",
    "• Loss of business, revenue, or profits",
    "• Issues arising from third-party tools, hosting providers, or platforms",
    "• Delays caused by client actions or external dependencies",
)

_ACCEPTANCE = (
    "By signing, both parties confirm that they have read, understood, and agreed to the terms of this Agreement.",
)


def _governing_law(s: AgreementSnapshot) -> tuple[str, ...]:
    place = s.jurisdiction or "[Jurisdiction / Country]"
    return (
        f"This Agreement shall be governed by and interpreted in accordance with the laws applicable in {place}, "
        "unless otherwise agreed.",
    )


def _signature_block(label: str, sig: SignatureView | None) -> SignatureBlock:
    if sig is None:
        return SignatureBlock(label=label, signer_name=None, signed_on=None, image_path=None)
    return SignatureBlock(
        label=label,
        signer_name=sig.signer_name,
        signed_on=format_date(sig.timestamp),
        image_path=sig.signature_image_path,
    )


def render(snapshot: AgreementSnapshot) -> CanonicalDocument:
    clients = _client_parties(snapshot)
    preamble = (
        f"This Agreement is entered into between {snapshot.service_provider_name} (\"Service Provider\") and "
        f"{_join_names([_party_name(p) for p in clients])} (\"Client\") on {format_date(snapshot.agreement_date)}."
    )
    bodies = (
        ("Scope of Work", _scope(snapshot)),
        ("Timeline & Milestones", _timeline(snapshot)),
        ("Payment Terms", _payment(snapshot)),
        ("Revisions", _revisions(snapshot)),
        ("Client Responsibilities", _RESPONSIBILITIES),
        ("Ownership & Usage Rights", _OWNERSHIP),
        ("Confidentiality", _CONFIDENTIALITY),
        ("Termination", _TERMINATION),
        ("Limitation of Liability", _LIABILITY),
        ("Governing Law", _governing_law(snapshot)),
        ("Acceptance & E-Signature", _ACCEPTANCE),
    )
    sections = tuple(Section(number=i, heading=h, paragraphs=p) for i, (h, p) in enumerate(bodies, start=1))

    blocks = [
        _signature_block(f"Client Signature ({_party_name(p)})", snapshot.client_signature(p.client_id))
        for p in clients
    ]
    blocks.append(_signature_block("Service Provider Signature", snapshot.provider_signature()))

    return CanonicalDocument(title=TITLE, preamble=preamble, sections=sections, signature_blocks=tuple(blocks))
