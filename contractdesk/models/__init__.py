"""
All SQLAlchemy models. Schema is the source of truth for new DBs.
Base.metadata.create_all() creates every table; no migration scripts needed for fresh installs.
"""
from contractdesk.models.user import User
from contractdesk.models.project import Project, Client, ProjectClient
from contractdesk.models.agreement import (
    Agreement,
    AgreementDeliverable,
    AgreementPaymentTerms,
    AgreementPaymentMilestone,
    AgreementStatus,
    DurationUnit,
    PaymentStructure,
)
from contractdesk.models.agreement_signature import AgreementSignature, SignerType
from contractdesk.models.client_link import ClientLink, LinkStatus
from contractdesk.models.audit_log import AuditLog

__all__ = [
    "User",
    "Project",
    "Client",
    "ProjectClient",
    "Agreement",
    "AgreementDeliverable",
    "AgreementPaymentTerms",
    "AgreementPaymentMilestone",
    "AgreementStatus",
    "DurationUnit",
    "PaymentStructure",
    "AgreementSignature",
    "SignerType",
    "ClientLink",
    "LinkStatus",
    "AuditLog",
]
