"""Append-only audit log for the signing workflow.
No updates or deletes - every record is permanent."""
from sqlalchemy import Column, Integer, String, Text, DateTime, JSON
from sqlalchemy.sql import func
from contractdesk.database import Base


class AuditLog(Base):
    __tablename__ = "audit_logs"

    id = Column(Integer, primary_key=True, index=True)

    # Plain ids (no FK) so deleting an agreement keeps its trail
    agreement_id = Column(Integer, nullable=True, index=True)
    client_id = Column(Integer, nullable=True, index=True)

    # category: status_change | client_signature | provider_signature | link_issued | failed_attempt
    category = Column(String(32), nullable=False, index=True)
    title = Column(String(255), nullable=False)
    message = Column(Text, nullable=False)

    meta = Column(JSON, nullable=True)

    actor_user_id = Column(Integer, nullable=True)
    actor_email = Column(String(255), nullable=True)

    ip_address = Column(String(64), nullable=True)
    user_agent = Column(String(500), nullable=True)

    created_at = Column(DateTime(timezone=True), server_default=func.now(), nullable=False)
