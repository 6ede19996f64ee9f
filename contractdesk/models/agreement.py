"""Agreement aggregate: agreement, deliverables, payment terms and milestones."""
import enum

from sqlalchemy import Column, Integer, String, Text, Date, DateTime, Numeric, ForeignKey
from sqlalchemy.orm import relationship
from sqlalchemy.sql import func
from contractdesk.database import Base


class AgreementStatus(str, enum.Enum):
    draft = "draft"
    pending = "pending"
    completed = "completed"


class DurationUnit(str, enum.Enum):
    days = "days"
    weeks = "weeks"
    months = "months"


class PaymentStructure(str, enum.Enum):
    fifty_fifty = "50-50"
    upfront = "100-upfront"
    completion = "100-completion"
    milestone_based = "milestone-based"


class Agreement(Base):
    __tablename__ = "agreements"

    id = Column(Integer, primary_key=True, index=True)
    # One agreement per project
    project_id = Column(Integer, ForeignKey("projects.id", ondelete="CASCADE"), nullable=False, unique=True, index=True)
    owner_id = Column(Integer, ForeignKey("users.id", ondelete="CASCADE"), nullable=False, index=True)

    service_provider_name = Column(String(255), nullable=False)
    agreement_date = Column(Date, nullable=False)
    service_type = Column(String(255), nullable=False)
    start_date = Column(Date, nullable=True)
    end_date = Column(Date, nullable=True)
    duration = Column(Integer, nullable=True)
    duration_unit = Column(String(20), nullable=True)  # days, weeks, months
    number_of_revisions = Column(Integer, nullable=False, default=0)
    jurisdiction = Column(String(255), nullable=True)

    # Derived from signatures, links and the project roster; rewritten by services.status on every mutation
    status = Column(String(20), nullable=False, default=AgreementStatus.draft.value, index=True)

    created_at = Column(DateTime(timezone=True), server_default=func.now())
    updated_at = Column(DateTime(timezone=True), server_default=func.now(), onupdate=func.now())

    project = relationship("Project")
    deliverables = relationship(
        "AgreementDeliverable",
        back_populates="agreement",
        cascade="all, delete-orphan",
        order_by="AgreementDeliverable.order",
    )
    payment_terms = relationship(
        "AgreementPaymentTerms",
        back_populates="agreement",
        cascade="all, delete-orphan",
        uselist=False,
    )
    signatures = relationship(
        "AgreementSignature",
        back_populates="agreement",
        cascade="all, delete-orphan",
        order_by="AgreementSignature.id",
    )
    client_links = relationship(
        "ClientLink",
        back_populates="agreement",
        cascade="all, delete-orphan",
        order_by="ClientLink.id",
    )


class AgreementDeliverable(Base):
    __tablename__ = "agreement_deliverables"

    id = Column(Integer, primary_key=True, index=True)
    agreement_id = Column(Integer, ForeignKey("agreements.id", ondelete="CASCADE"), nullable=False, index=True)
    description = Column(Text, nullable=False)
    order = Column(Integer, nullable=False, default=0)

    created_at = Column(DateTime(timezone=True), server_default=func.now())

    agreement = relationship("Agreement", back_populates="deliverables")


class AgreementPaymentTerms(Base):
    __tablename__ = "agreement_payment_terms"

    id = Column(Integer, primary_key=True, index=True)
    # Exactly one payment terms row per agreement
    agreement_id = Column(Integer, ForeignKey("agreements.id", ondelete="CASCADE"), nullable=False, unique=True, index=True)
    payment_structure = Column(String(50), nullable=False)
    payment_method = Column(String(255), nullable=True)

    created_at = Column(DateTime(timezone=True), server_default=func.now())

    agreement = relationship("Agreement", back_populates="payment_terms")
    milestones = relationship(
        "AgreementPaymentMilestone",
        back_populates="payment_terms",
        cascade="all, delete-orphan",
        order_by="AgreementPaymentMilestone.order",
    )


class AgreementPaymentMilestone(Base):
    __tablename__ = "agreement_payment_milestones"

    id = Column(Integer, primary_key=True, index=True)
    payment_terms_id = Column(
        Integer, ForeignKey("agreement_payment_terms.id", ondelete="CASCADE"), nullable=False, index=True
    )
    description = Column(String(255), nullable=False)
    amount = Column(Numeric(15, 2), nullable=False)
    order = Column(Integer, nullable=False, default=0)
    due_date = Column(Date, nullable=True)

    created_at = Column(DateTime(timezone=True), server_default=func.now())

    payment_terms = relationship("AgreementPaymentTerms", back_populates="milestones")
