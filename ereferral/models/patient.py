"""
SQLAlchemy ORM model for patients.

The row is a local cache of the Central System's insurance record; it is
refreshed on every insurance lookup.
"""

from __future__ import annotations

from sqlalchemy import Boolean, Column, Date, DateTime, String

from ereferral.models.database import Base, new_id, utcnow


class Patient(Base):
    __tablename__ = "patients"

    id = Column(String(32), primary_key=True, default=new_id)
    mbo = Column(String(20), unique=True, index=True, nullable=False)
    first_name = Column(String, nullable=False)
    last_name = Column(String, nullable=False)
    birth_date = Column(Date, nullable=True)
    gender = Column(String(1), nullable=True)

    # Insurance cache
    policy_status = Column(String(20), nullable=True)
    policy_number = Column(String, nullable=True)
    insurance_category = Column(String(10), nullable=True)
    has_supplemental = Column(Boolean, nullable=False, default=False)
    valid_until = Column(Date, nullable=True)

    created_at = Column(DateTime, default=utcnow, nullable=False)
    updated_at = Column(DateTime, default=utcnow, onupdate=utcnow, nullable=False)

    @property
    def full_name(self) -> str:
        return f"{self.first_name} {self.last_name}".strip()
