"""
SQLAlchemy ORM model for the Central System audit log.

Rows are inserted, never updated or deleted.  The subject columns are plain
identifiers rather than foreign keys so that entries outlive the entities
they describe (e.g. a hard-deleted appointment).
"""

from __future__ import annotations

from sqlalchemy import Column, DateTime, Integer, String, Text

from ereferral.models.database import Base, status_enum, utcnow
from ereferral.models.schemas import MessageDirection, MessageStatus, MessageType


class AuditMessage(Base):
    __tablename__ = "audit_messages"

    # Autoincrement id doubles as insertion order for timeline ties.
    id = Column(Integer, primary_key=True, index=True)
    type = Column(status_enum(MessageType), nullable=False, index=True)
    direction = Column(status_enum(MessageDirection), nullable=False)
    status = Column(status_enum(MessageStatus), nullable=False)
    payload = Column(Text, nullable=False)
    response = Column(Text, nullable=True)
    error_message = Column(Text, nullable=True)

    patient_mbo = Column(String(20), nullable=True, index=True)
    referral_id = Column(String(32), nullable=True, index=True)
    invoice_id = Column(String(32), nullable=True, index=True)
    appointment_id = Column(String(32), nullable=True, index=True)

    created_at = Column(DateTime, default=utcnow, nullable=False, index=True)
