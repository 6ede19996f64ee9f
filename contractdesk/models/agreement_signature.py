"""Signatures on an agreement: one by the service provider, one per signing client."""
import enum

from sqlalchemy import Column, Integer, String, DateTime, ForeignKey, UniqueConstraint
from sqlalchemy.orm import relationship
from sqlalchemy.sql import func

from contractdesk.database import Base


class SignerType(str, enum.Enum):
    service_provider = "service_provider"
    client = "client"


class AgreementSignature(Base):
    __tablename__ = "agreement_signatures"
    # signer_key is client_id for clients and 0 for the provider, so one constraint covers both signer types
    __table_args__ = (
        UniqueConstraint("agreement_id", "signer_type", "signer_key", name="uq_agreement_signatures_signer"),
    )

    id = Column(Integer, primary_key=True, index=True)
    agreement_id = Column(Integer, ForeignKey("agreements.id", ondelete="CASCADE"), nullable=False, index=True)

    signer_type = Column(String(20), nullable=False, index=True)
    client_id = Column(Integer, ForeignKey("master_clients.id", ondelete="SET NULL"), nullable=True, index=True)
    signer_key = Column(Integer, nullable=False, default=0)

    signer_name = Column(String(255), nullable=False)

    signature_image_name = Column(String(255), nullable=False)
    signature_image_path = Column(String(500), nullable=False)
    signature_image_sha256 = Column(String(64), nullable=False)

    document_id = Column(String(100), nullable=True)
    document_hash = Column(String(64), nullable=True)

    ip_address = Column(String(64), nullable=True)
    user_agent = Column(String(400), nullable=True)

    timestamp = Column(DateTime(timezone=True), nullable=False)
    created_at = Column(DateTime(timezone=True), server_default=func.now())

    agreement = relationship("Agreement", back_populates="signatures")
    client = relationship("Client")
