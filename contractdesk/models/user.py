"""Service provider accounts. Sign-up and login live outside this service."""
from sqlalchemy import Column, Integer, String, DateTime
from sqlalchemy.sql import func
from contractdesk.database import Base


class User(Base):
    __tablename__ = "users"

    id = Column(Integer, primary_key=True, index=True)
    email = Column(String(255), unique=True, index=True, nullable=False)

    full_name = Column(String(255), nullable=True)
    mobile_number = Column(String(20), nullable=True)

    created_at = Column(DateTime(timezone=True), server_default=func.now())
    updated_at = Column(DateTime(timezone=True), onupdate=func.now())
