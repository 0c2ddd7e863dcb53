"""
SQLAlchemy ORM models for referrals.

A referral's external id is assigned once, from the submission
acknowledgment.  The ownership columns (`is_taken_over`, `taken_over_by`,
`taken_over_at`) are written only by takeover and cleared only by release.
"""

from __future__ import annotations

from sqlalchemy import Boolean, Column, DateTime, ForeignKey, String, Text
from sqlalchemy.orm import relationship

from ereferral.models.database import Base, new_id, status_enum, utcnow
from ereferral.models.schemas import ReferralCategory, ReferralStatus


class Referral(Base):
    __tablename__ = "referrals"

    id = Column(String(32), primary_key=True, default=new_id)
    external_id = Column(String(64), unique=True, index=True, nullable=True)
    patient_id = Column(String(32), ForeignKey("patients.id"), nullable=False, index=True)

    diagnosis_code = Column(String(16), nullable=False)
    diagnosis_name = Column(String, nullable=True)
    procedure_code = Column(String(32), nullable=False)
    procedure_name = Column(String, nullable=True)
    target_department = Column(String, nullable=False, index=True)
    category = Column(status_enum(ReferralCategory), nullable=False, default=ReferralCategory.CONSULTATIVE)
    note = Column(Text, nullable=True)

    status = Column(status_enum(ReferralStatus), nullable=False, default=ReferralStatus.SENT, index=True)

    is_taken_over = Column(Boolean, nullable=False, default=False)
    taken_over_by = Column(String, nullable=True)
    taken_over_at = Column(DateTime, nullable=True)

    created_at = Column(DateTime, default=utcnow, nullable=False)
    updated_at = Column(DateTime, default=utcnow, onupdate=utcnow, nullable=False)

    patient = relationship("Patient")
    appointments = relationship("Appointment", back_populates="referral")
    invoices = relationship("Invoice", back_populates="referral")
    internal_referrals = relationship("InternalReferral", back_populates="original_referral")


class InternalReferral(Base):
    """Referral issued by the specialist on the basis of an incoming one."""

    __tablename__ = "internal_referrals"

    id = Column(String(32), primary_key=True, default=new_id)
    original_referral_id = Column(String(32), ForeignKey("referrals.id"), nullable=False, index=True)
    patient_id = Column(String(32), ForeignKey("patients.id"), nullable=False)
    category = Column(status_enum(ReferralCategory), nullable=False)
    procedure_code = Column(String(32), nullable=False)
    procedure_name = Column(String, nullable=True)
    diagnosis_code = Column(String(16), nullable=False)
    diagnosis_name = Column(String, nullable=True)
    department = Column(String, nullable=False)
    note = Column(Text, nullable=True)
    created_at = Column(DateTime, default=utcnow, nullable=False)

    original_referral = relationship("Referral", back_populates="internal_referrals")
