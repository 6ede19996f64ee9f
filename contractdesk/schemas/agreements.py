"""Agreement aggregate, signing-link and public signing schemas."""
from datetime import date, datetime
from datetime import date as _date
from decimal import Decimal

from pydantic import BaseModel, ConfigDict, Field

from contractdesk.models.agreement import DurationUnit, PaymentStructure


class SignatureImageIn(BaseModel):
    signer_name: str = Field(..., min_length=1, max_length=255)
    signature_image: str = Field(..., min_length=1)  # base64, data: URL prefix optional


class MilestoneIn(BaseModel):
    """With `id` set, edits a persisted milestone; omitted fields keep their stored values."""
    id: int | None = None
    description: str | None = None
    amount: Decimal | None = None
    date: _date | None = None


class AgreementCreate(BaseModel):
    project_id: int
    service_provider_name: str
    agreement_date: date
    service_type: str
    start_date: date | None = None
    end_date: date | None = None
    duration: int | None = None
    duration_unit: DurationUnit | None = None
    number_of_revisions: int = 0
    jurisdiction: str | None = None
    deliverables: list[str] = []
    payment_structure: PaymentStructure
    payment_method: str | None = None
    payment_milestones: list[MilestoneIn] = []
    service_provider_signature: SignatureImageIn | None = None


class AgreementUpdate(BaseModel):
    """All optional; only provided fields are updated."""
    service_provider_name: str | None = None
    agreement_date: date | None = None
    service_type: str | None = None
    start_date: date | None = None
    end_date: date | None = None
    duration: int | None = None
    duration_unit: DurationUnit | None = None
    number_of_revisions: int | None = None
    jurisdiction: str | None = None
    deliverables: list[str] | None = None
    payment_structure: PaymentStructure | None = None
    payment_method: str | None = None
    payment_milestones: list[MilestoneIn] | None = None


class MilestoneResponse(BaseModel):
    id: int
    description: str
    amount: Decimal
    order: int
    date: _date | None = None


class PaymentTermsResponse(BaseModel):
    payment_structure: str
    payment_method: str | None = None
    milestones: list[MilestoneResponse] = []
    milestone_total: Decimal


class PartyResponse(BaseModel):
    client_id: int
    full_name: str
    organization: str | None = None
    email: str | None = None
    in_roster: bool


class SignatureResponse(BaseModel):
    id: int
    signer_type: str
    client_id: int | None = None
    signer_name: str
    signature_image_name: str
    signature_image_path: str
    timestamp: datetime


class ClientLinkResponse(BaseModel):
    id: int
    client_id: int
    status: str
    expires_at: datetime
    issued_at: datetime
    email_sent_at: datetime | None = None
    signed_at: datetime | None = None


class AgreementResponse(BaseModel):
    id: int
    project_id: int
    project_name: str
    owner_id: int
    status: str
    service_provider_name: str
    agreement_date: date
    service_type: str
    start_date: date | None = None
    end_date: date | None = None
    duration: int | None = None
    duration_unit: str | None = None
    number_of_revisions: int
    jurisdiction: str | None = None
    deliverables: list[str] = []
    payment_terms: PaymentTermsResponse
    currency: str
    parties: list[PartyResponse] = []
    signatures: list[SignatureResponse] = []
    client_links: list[ClientLinkResponse] = []
    warnings: list[str] = []


class AgreementDeleteResponse(BaseModel):
    deleted: bool = True
    agreement_id: int
    warnings: list[str] = []


class SendLinksRequest(BaseModel):
    client_ids: list[int] = Field(..., min_length=1)


class IssuedLinkResponse(BaseModel):
    client_id: int
    token: str
    url: str
    expires_at: datetime
    reissue_count: int


class SendLinksResponse(BaseModel):
    agreement_id: int
    status: str
    links: list[IssuedLinkResponse] = []
    warnings: list[str] = []


class SectionResponse(BaseModel):
    number: int
    heading: str
    paragraphs: list[str]


class SignatureBlockResponse(BaseModel):
    label: str
    signer_name: str | None = None
    signed_on: str | None = None


class DocumentResponse(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    title: str
    preamble: str
    sections: list[SectionResponse]
    signature_blocks: list[SignatureBlockResponse]
    document_hash: str
    text: str


# --- Public signing page ---


class SigningPageResponse(BaseModel):
    """Link metadata plus the agreement as the signer sees it."""
    expired: bool = False
    link_status: str
    client_id: int
    expires_at: datetime
    signed: bool
    signed_at: datetime | None = None
    can_edit: bool
    edit_deadline: datetime | None = None
    signer_name: str | None = None
    agreement: AgreementResponse
    document: DocumentResponse


class ClientSignRequest(SignatureImageIn):
    document_hash: str | None = Field(None, max_length=128)


class ClientSignResponse(BaseModel):
    signature_id: int
    agreement_id: int
    agreement_status: str
    created: bool
    changed: bool
    warnings: list[str] = []
