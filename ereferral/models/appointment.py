"""
SQLAlchemy ORM models for appointments, clinical findings and therapy
recommendations.

The `referral_*` and insurance columns on Appointment are snapshots taken at
booking time; later edits to the referral or the patient never touch them.
"""

from __future__ import annotations

from sqlalchemy import Boolean, Column, DateTime, ForeignKey, String, Text, UniqueConstraint
from sqlalchemy.orm import relationship

from ereferral.models.database import Base, new_id, status_enum, utcnow
from ereferral.models.schemas import AppointmentStatus, ReferralCategory


class Appointment(Base):
    __tablename__ = "appointments"

    id = Column(String(32), primary_key=True, default=new_id)
    patient_id = Column(String(32), ForeignKey("patients.id"), nullable=False, index=True)
    referral_id = Column(String(32), ForeignKey("referrals.id"), nullable=True, index=True)
    start_time = Column(DateTime, nullable=False)
    end_time = Column(DateTime, nullable=False)
    status = Column(status_enum(AppointmentStatus), nullable=False, default=AppointmentStatus.SCHEDULED)

    # Central calendar
    calendar_id = Column(String(64), nullable=True)
    calendar_synced_at = Column(DateTime, nullable=True)

    # Referral snapshot
    referral_diagnosis = Column(String, nullable=True)
    referral_procedure = Column(String, nullable=True)
    referral_category = Column(status_enum(ReferralCategory), nullable=True)
    referral_note = Column(Text, nullable=True)

    # Insurance snapshot
    insurance_status = Column(String(20), nullable=True)
    insurance_category = Column(String(10), nullable=True)
    has_supplemental = Column(Boolean, nullable=True)

    created_at = Column(DateTime, default=utcnow, nullable=False)
    updated_at = Column(DateTime, default=utcnow, onupdate=utcnow, nullable=False)

    patient = relationship("Patient")
    referral = relationship("Referral", back_populates="appointments")
    finding = relationship(
        "ClinicalFinding", back_populates="appointment", uselist=False, cascade="all, delete-orphan"
    )
    recommendations = relationship(
        "TherapyRecommendation", back_populates="appointment", cascade="all, delete-orphan"
    )
    invoices = relationship("Invoice", back_populates="appointment")


class ClinicalFinding(Base):
    __tablename__ = "clinical_findings"

    id = Column(String(32), primary_key=True, default=new_id)
    appointment_id = Column(String(32), ForeignKey("appointments.id"), unique=True, nullable=False)
    anamnesis = Column(Text, nullable=True)
    status_praesens = Column(Text, nullable=True)
    therapy = Column(Text, nullable=True)
    external_id = Column(String(64), nullable=True)
    # NULL means draft
    signed_at = Column(DateTime, nullable=True)
    created_at = Column(DateTime, default=utcnow, nullable=False)
    updated_at = Column(DateTime, default=utcnow, onupdate=utcnow, nullable=False)

    appointment = relationship("Appointment", back_populates="finding")

    @property
    def is_signed(self) -> bool:
        return self.signed_at is not None


class TherapyRecommendation(Base):
    __tablename__ = "therapy_recommendations"
    __table_args__ = (UniqueConstraint("appointment_id", "medicine_code"),)

    id = Column(String(32), primary_key=True, default=new_id)
    appointment_id = Column(String(32), ForeignKey("appointments.id"), nullable=False, index=True)
    patient_id = Column(String(32), ForeignKey("patients.id"), nullable=False)
    medicine_code = Column(String(32), nullable=False)
    dosage = Column(String, nullable=False)
    duration = Column(String, nullable=True)
    note = Column(Text, nullable=True)
    external_id = Column(String(64), nullable=True)
    created_at = Column(DateTime, default=utcnow, nullable=False)

    appointment = relationship("Appointment", back_populates="recommendations")
