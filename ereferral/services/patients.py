"""
Patient lookup and insurance cache.

The Central System is the source of truth for insurance; every lookup
refreshes the local patient row and leaves an incoming audit entry.
"""

from __future__ import annotations

import logging
from dataclasses import asdict
from datetime import date
from typing import Optional

from sqlalchemy.orm import Session

from ereferral.enterprise.audit import record_message
from ereferral.exceptions import TransientFailure
from ereferral.models.patient import Patient
from ereferral.models.schemas import MessageDirection, MessageStatus, MessageType
from ereferral.services.integration import CentralSystemClient, CentralSystemError, InsuranceInfo

logger = logging.getLogger(__name__)


def get_patient_by_mbo(db: Session, mbo: str) -> Optional[Patient]:
    return db.query(Patient).filter(Patient.mbo == mbo.strip()).first()


def find_or_create_patient(
    db: Session, mbo: str, full_name: str, birth_date: Optional[date] = None
) -> Patient:
    """Return the patient with this MBO, creating a minimal record if absent.

    The new row is flushed, not committed.
    """
    patient = get_patient_by_mbo(db, mbo)
    if patient is not None:
        return patient
    first_name, _, last_name = full_name.strip().partition(" ")
    patient = Patient(mbo=mbo.strip(), first_name=first_name, last_name=last_name, birth_date=birth_date)
    db.add(patient)
    db.flush()
    return patient


def refresh_insurance(db: Session, central: CentralSystemClient, mbo: str) -> InsuranceInfo:
    """Look up insurance, upsert it into the patient cache and commit."""
    mbo = mbo.strip()
    logger.info("Insurance lookup for MBO %s", mbo)
    try:
        info = central.lookup_insurance(mbo)
    except CentralSystemError as exc:
        record_message(
            db,
            type=MessageType.CHECK_INSURANCE,
            direction=MessageDirection.INCOMING,
            status=MessageStatus.FAILED,
            payload={"mbo": mbo},
            error_message=str(exc),
            patient_mbo=mbo,
        )
        db.commit()
        raise TransientFailure(
            f"Insurance lookup failed: {exc}. The Central System could not be reached, retry.",
            detail={"mbo": mbo},
        ) from exc

    patient = get_patient_by_mbo(db, mbo)
    if patient is None:
        patient = Patient(mbo=mbo)
        db.add(patient)
    patient.first_name = info.first_name
    patient.last_name = info.last_name
    patient.birth_date = info.birth_date
    patient.gender = info.gender
    patient.policy_status = info.policy_status
    patient.policy_number = info.policy_number
    patient.insurance_category = info.insurance_category
    patient.has_supplemental = info.has_supplemental
    patient.valid_until = info.valid_until

    record_message(
        db,
        type=MessageType.CHECK_INSURANCE,
        direction=MessageDirection.INCOMING,
        status=MessageStatus.SENT,
        payload={"mbo": mbo},
        response=asdict(info),
        patient_mbo=mbo,
    )
    db.commit()
    return info
