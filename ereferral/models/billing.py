"""
SQLAlchemy ORM models for invoices and submission batches.

An invoice's amount and payer never change after issuance; only status,
batch linkage and send time do.
"""

from __future__ import annotations

from sqlalchemy import Column, DateTime, ForeignKey, Numeric, String
from sqlalchemy.orm import relationship

from ereferral.models.database import Base, new_id, status_enum, utcnow
from ereferral.models.schemas import BatchStatus, InvoicePayer, InvoiceStatus, InvoiceType


class InvoiceBatch(Base):
    __tablename__ = "invoice_batches"

    id = Column(String(32), primary_key=True, default=new_id)
    type = Column(String(20), nullable=False, default="HZZO_F1")
    status = Column(status_enum(BatchStatus), nullable=False, default=BatchStatus.PROCESSING)
    external_id = Column(String(64), nullable=True)
    sent_at = Column(DateTime, nullable=True)
    created_at = Column(DateTime, default=utcnow, nullable=False)

    invoices = relationship("Invoice", back_populates="batch")


class Invoice(Base):
    __tablename__ = "invoices"

    id = Column(String(32), primary_key=True, default=new_id)
    referral_id = Column(String(32), ForeignKey("referrals.id"), nullable=True, index=True)
    appointment_id = Column(String(32), ForeignKey("appointments.id"), nullable=True, index=True)
    patient_id = Column(String(32), ForeignKey("patients.id"), nullable=True)
    amount = Column(Numeric(10, 2), nullable=False)
    payer = Column(status_enum(InvoicePayer), nullable=False)
    payer_name = Column(String, nullable=True)
    type = Column(status_enum(InvoiceType), nullable=False)
    description = Column(String, nullable=True)
    status = Column(status_enum(InvoiceStatus), nullable=False, default=InvoiceStatus.ISSUED)
    batch_id = Column(String(32), ForeignKey("invoice_batches.id"), nullable=True, index=True)
    external_id = Column(String(64), nullable=True)
    sent_at = Column(DateTime, nullable=True)
    created_at = Column(DateTime, default=utcnow, nullable=False)

    referral = relationship("Referral", back_populates="invoices")
    appointment = relationship("Appointment", back_populates="invoices")
    patient = relationship("Patient")
    batch = relationship("InvoiceBatch", back_populates="invoices")
