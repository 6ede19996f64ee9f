"""Token-bound signing invitation for one client on one agreement."""
import enum

from sqlalchemy import Column, Integer, String, DateTime, ForeignKey, UniqueConstraint
from sqlalchemy.orm import relationship
from sqlalchemy.sql import func
from contractdesk.database import Base


class LinkStatus(str, enum.Enum):
    pending = "pending"
    client_signed = "client_signed"
    expired = "expired"


class ClientLink(Base):
    __tablename__ = "agreement_client_links"
    # One row per (agreement, client); reissue rotates the token in place so a single token is ever active
    __table_args__ = (UniqueConstraint("agreement_id", "client_id", name="uq_agreement_client_links_pair"),)

    id = Column(Integer, primary_key=True, index=True)
    agreement_id = Column(Integer, ForeignKey("agreements.id", ondelete="CASCADE"), nullable=False, index=True)
    client_id = Column(Integer, ForeignKey("master_clients.id", ondelete="CASCADE"), nullable=False, index=True)

    token = Column(String(128), unique=True, nullable=False, index=True)
    expires_at = Column(DateTime(timezone=True), nullable=False, index=True)

    # Derived: see services.status.derive_link_status
    status = Column(String(20), nullable=False, default=LinkStatus.pending.value, index=True)

    issued_at = Column(DateTime(timezone=True), nullable=False)
    email_sent_at = Column(DateTime(timezone=True), nullable=True)
    signed_at = Column(DateTime(timezone=True), nullable=True)
    reissue_count = Column(Integer, nullable=False, default=0)

    created_at = Column(DateTime(timezone=True), server_default=func.now())

    agreement = relationship("Agreement", back_populates="client_links")
    client = relationship("Client")
