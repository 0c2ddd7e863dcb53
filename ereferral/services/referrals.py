"""
Referral lifecycle engine.

Referral status only changes through `next_status`, which accepts the
(current status, event) pairs of the lifecycle graph and rejects everything
else.  Appointment and finding services do not touch referral status
directly; they emit events handled here (`on_calendar_synced`,
`on_appointment_completed`, `on_appointment_cancelled`, `on_finding_sent`).

Every Central System interaction writes exactly one audit entry, committed
in the same transaction as the status change it describes.
"""

from __future__ import annotations

import logging
from enum import Enum
from typing import Dict, List, Optional, Tuple

from sqlalchemy import or_
from sqlalchemy.orm import Session

from ereferral.config import get_settings
from ereferral.enterprise.audit import record_message
from ereferral.exceptions import Conflict, InvalidTransition, NotFound, TransientFailure
from ereferral.models.appointment import Appointment
from ereferral.models.database import utcnow
from ereferral.models.referral import InternalReferral, Referral
from ereferral.models.schemas import (
    InternalReferralCreate,
    MessageDirection,
    MessageStatus,
    MessageType,
    ReferralCreate,
    ReferralStatus,
)
from ereferral.services import guards
from ereferral.services.integration import CentralSystemClient, CentralSystemError
from ereferral.services.patients import find_or_create_patient
from ereferral.services.templates import hl7_timestamp, message_id, render_template

logger = logging.getLogger(__name__)


class ReferralEvent(str, Enum):
    CALENDAR_SYNCED = "calendar_synced"
    TAKEN_OVER = "taken_over"
    FINDING_SENT = "finding_sent"
    RELEASED = "released"
    STORNO_ACCEPTED = "storno_accepted"
    STORNO_REJECTED = "storno_rejected"


S = ReferralStatus
E = ReferralEvent

TRANSITIONS: Dict[Tuple[ReferralStatus, ReferralEvent], ReferralStatus] = {
    (S.SENT, E.CALENDAR_SYNCED): S.RESERVED,
    (S.SENT, E.TAKEN_OVER): S.IN_PROGRESS,
    (S.RESERVED, E.TAKEN_OVER): S.IN_PROGRESS,
    (S.SENT, E.FINDING_SENT): S.REALIZED,
    (S.RESERVED, E.FINDING_SENT): S.REALIZED,
    (S.IN_PROGRESS, E.FINDING_SENT): S.REALIZED,
    (S.REALIZED, E.FINDING_SENT): S.REALIZED,
    (S.CANCEL_FAILED, E.FINDING_SENT): S.REALIZED,
    (S.SENT, E.RELEASED): S.SENT,
    (S.RESERVED, E.RELEASED): S.SENT,
    (S.IN_PROGRESS, E.RELEASED): S.SENT,
}
for _source in (S.SENT, S.RESERVED, S.IN_PROGRESS, S.CANCEL_FAILED):
    TRANSITIONS[(_source, E.STORNO_ACCEPTED)] = S.CANCELLED
    TRANSITIONS[(_source, E.STORNO_REJECTED)] = S.CANCEL_FAILED

# Events accepted without a status change.  Calendar sync may be retried long
# after the referral advanced and must never regress it; releasing a referral
# whose storno failed keeps the retry marker.
IGNORED = frozenset(
    [(status, E.CALENDAR_SYNCED) for status in S if status != S.SENT]
    + [(S.CANCEL_FAILED, E.RELEASED)]
)

TERMINAL = frozenset([S.REALIZED, S.CANCELLED, S.EXPIRED])


def next_status(current: ReferralStatus, event: ReferralEvent) -> ReferralStatus:
    """Status after ``event``; raises InvalidTransition for pairs outside the graph."""
    target = TRANSITIONS.get((current, event))
    if target is not None:
        return target
    if (current, event) in IGNORED:
        return current
    raise InvalidTransition(
        f"Referral in status {current.value} does not accept event '{event.value}'.",
        detail={"status": current.value, "event": event.value},
    )


# ---------------------------------------------------------------------------
# Queries
# ---------------------------------------------------------------------------

def find_referral(db: Session, reference: str, for_update: bool = False) -> Optional[Referral]:
    """Find a referral by internal id or Central-assigned id."""
    query = db.query(Referral).filter(or_(Referral.id == reference, Referral.external_id == reference))
    if for_update:
        query = query.with_for_update()
    return query.first()


def get_referral(db: Session, reference: str, for_update: bool = False) -> Referral:
    referral = find_referral(db, reference, for_update=for_update)
    if referral is None:
        raise NotFound(f"Referral {reference} not found.", code="REFERRAL_NOT_FOUND")
    return referral


def list_referrals(db: Session, department: Optional[str] = None) -> List[Referral]:
    query = db.query(Referral)
    if department and department != "ALL":
        query = query.filter(Referral.target_department == department)
    return query.order_by(Referral.created_at.desc()).all()


def _patient_mbo(referral: Referral) -> Optional[str]:
    return referral.patient.mbo if referral.patient is not None else None


# ---------------------------------------------------------------------------
# Submission
# ---------------------------------------------------------------------------

def submit_referral(db: Session, central: CentralSystemClient, referral_in: ReferralCreate) -> Referral:
    """Send a referral to the Central System and store it as SENT.

    The referral row exists only once the Central System acknowledged it;
    a rejected submission leaves just a FAILED audit entry.
    """
    settings = get_settings()
    patient = find_or_create_patient(db, referral_in.patient_mbo, referral_in.patient_name, referral_in.birth_date)
    payload = render_template(
        "SEND_REFERRAL",
        {
            "messageId": message_id("MSG"),
            "timestamp": hl7_timestamp(),
            "senderId": settings.system_id,
            "referralType": referral_in.category.value,
            "patientMbo": patient.mbo,
            "patientName": referral_in.patient_name,
            "doctorId": referral_in.doctor_id or settings.default_doctor_id,
            "diagnosisCode": referral_in.diagnosis_code,
            "procedureCode": referral_in.procedure_code,
            "targetDepartment": referral_in.target_department,
        },
    )
    logger.info("Submitting referral for MBO %s to the Central System", patient.mbo)
    try:
        external_id = central.submit_referral(payload)
    except CentralSystemError as exc:
        record_message(
            db,
            type=MessageType.SEND_REFERRAL,
            direction=MessageDirection.OUTGOING,
            status=MessageStatus.FAILED,
            payload=payload,
            error_message=str(exc),
            patient_mbo=patient.mbo,
        )
        db.commit()
        raise TransientFailure(
            f"Referral submission failed: {exc}. Nothing was stored; you may retry.",
            detail={"patient_mbo": patient.mbo},
        ) from exc

    referral = Referral(
        external_id=external_id,
        patient_id=patient.id,
        diagnosis_code=referral_in.diagnosis_code,
        diagnosis_name=referral_in.diagnosis_name,
        procedure_code=referral_in.procedure_code,
        procedure_name=referral_in.procedure_name,
        target_department=referral_in.target_department,
        category=referral_in.category,
        note=referral_in.note,
        status=ReferralStatus.SENT,
    )
    db.add(referral)
    db.flush()
    record_message(
        db,
        type=MessageType.SEND_REFERRAL,
        direction=MessageDirection.OUTGOING,
        status=MessageStatus.SENT,
        payload=payload,
        response={"externalId": external_id},
        patient_mbo=patient.mbo,
        referral_id=referral.id,
    )
    db.commit()
    db.refresh(referral)
    logger.info("Referral %s submitted as %s", referral.id, external_id)
    return referral


# ---------------------------------------------------------------------------
# Takeover
# ---------------------------------------------------------------------------

def takeover_referral(
    db: Session,
    central: CentralSystemClient,
    reference: str,
    doctor_id: str,
    institution_code: Optional[str] = None,
) -> Referral:
    """Claim ownership of a referral and move it to IN_PROGRESS.

    The ownership check and write are a single conditional UPDATE inside
    the transaction that also carries the audit entry, so two concurrent
    takeovers of the same referral yield exactly one success.
    """
    settings = get_settings()
    referral = get_referral(db, reference, for_update=True)
    if referral.is_taken_over:
        db.rollback()
        raise Conflict(
            f"Referral {reference} is already taken over by {referral.taken_over_by}.",
            detail={"referral_id": referral.id, "taken_over_by": referral.taken_over_by},
        )
    target = next_status(referral.status, ReferralEvent.TAKEN_OVER)

    referral_id = referral.id
    mbo = _patient_mbo(referral)
    payload = render_template(
        "TAKEOVER_REFERRAL",
        {
            "messageId": message_id("MSG-TKO"),
            "timestamp": hl7_timestamp(),
            "referralId": referral.external_id or referral.id,
            "doctorId": doctor_id,
            "institutionCode": institution_code or settings.institution_code,
        },
    )

    now = utcnow()
    claimed = (
        db.query(Referral)
        .filter(Referral.id == referral_id, Referral.is_taken_over.is_(False))
        .update(
            {
                Referral.is_taken_over: True,
                Referral.taken_over_by: doctor_id,
                Referral.taken_over_at: now,
                Referral.status: target,
                Referral.updated_at: now,
            },
            synchronize_session=False,
        )
    )
    if claimed != 1:
        db.rollback()
        raise Conflict(f"Referral {reference} was taken over concurrently.", detail={"referral_id": referral_id})

    logger.info("Takeover of referral %s by %s", referral_id, doctor_id)
    try:
        ack = central.takeover_referral(payload)
    except CentralSystemError as exc:
        db.rollback()
        record_message(
            db,
            type=MessageType.TAKEOVER,
            direction=MessageDirection.OUTGOING,
            status=MessageStatus.FAILED,
            payload=payload,
            error_message=str(exc),
            patient_mbo=mbo,
            referral_id=referral_id,
        )
        db.commit()
        raise TransientFailure(
            f"Takeover of referral {reference} failed: {exc}. Re-read the referral before retrying.",
            detail={"referral_id": referral_id},
        ) from exc

    record_message(
        db,
        type=MessageType.TAKEOVER,
        direction=MessageDirection.OUTGOING,
        status=MessageStatus.SENT,
        payload=payload,
        response={"ack": ack},
        patient_mbo=mbo,
        referral_id=referral_id,
    )
    db.commit()
    db.refresh(referral)
    return referral


# ---------------------------------------------------------------------------
# Events emitted by appointments and findings
# ---------------------------------------------------------------------------

def on_calendar_synced(db: Session, referral: Referral) -> bool:
    """Reserve the referral after its appointment got a central calendar slot.

    Returns True when the status changed.  Does not commit.
    """
    target = next_status(referral.status, ReferralEvent.CALENDAR_SYNCED)
    if target == referral.status:
        logger.info("Calendar sync left referral %s in %s", referral.id, referral.status.value)
        return False
    referral.status = target
    logger.info("Referral %s reserved", referral.id)
    return True


def on_appointment_completed(db: Session, central: CentralSystemClient, appointment: Appointment) -> Referral:
    """Auto-takeover by the staff identity configured for the referral's department."""
    referral = get_referral(db, appointment.referral_id)
    doctor_id = get_settings().doctor_for_department(referral.target_department)
    logger.info("Appointment %s completed, taking over referral %s", appointment.id, referral.id)
    return takeover_referral(db, central, referral.id, doctor_id)


def on_finding_sent(db: Session, referral: Referral) -> None:
    """Mark the referral realized.  Does not commit.

    A referral that was reversed or expired keeps its status; the finding of
    the visit is still valid.
    """
    if referral.status in (ReferralStatus.CANCELLED, ReferralStatus.EXPIRED):
        logger.info("Referral %s is %s, finding recorded without realizing it", referral.id, referral.status.value)
        return
    referral.status = next_status(referral.status, ReferralEvent.FINDING_SENT)


def _apply_release(db: Session, referral: Referral, reason: str) -> None:
    target = next_status(referral.status, ReferralEvent.RELEASED)
    if target == referral.status and referral.status == ReferralStatus.CANCEL_FAILED:
        logger.info("Referral %s awaits storno retry, release skipped", referral.id)
        return
    referral.status = target
    referral.is_taken_over = False
    referral.taken_over_by = None
    referral.taken_over_at = None
    record_message(
        db,
        type=MessageType.RELEASE_RESERVATION,
        direction=MessageDirection.OUTGOING,
        status=MessageStatus.SENT,
        payload={"referralId": referral.id, "action": "REVERT_TO_POSLANA", "reason": reason},
        patient_mbo=_patient_mbo(referral),
        referral_id=referral.id,
    )


def on_appointment_cancelled(db: Session, appointment: Appointment) -> None:
    """Release the referral of a cancelled appointment.  Does not commit."""
    referral = get_referral(db, appointment.referral_id)
    if referral.status in TERMINAL:
        logger.info("Referral %s is %s, nothing to release", referral.id, referral.status.value)
        return
    logger.info("Appointment %s cancelled, releasing referral %s", appointment.id, referral.id)
    _apply_release(db, referral, reason=f"appointment {appointment.id} cancelled")


def release_reservation(db: Session, reference: str) -> Referral:
    """Make the referral available for booking again (status SENT, no owner)."""
    referral = get_referral(db, reference, for_update=True)
    _apply_release(db, referral, reason="manual release")
    db.commit()
    db.refresh(referral)
    return referral


# ---------------------------------------------------------------------------
# Derived referrals
# ---------------------------------------------------------------------------

def create_internal_referral(db: Session, reference: str, referral_in: InternalReferralCreate) -> InternalReferral:
    original = get_referral(db, reference)
    guards.enforce(guards.can_derive_referral(original))
    internal = InternalReferral(
        original_referral_id=original.id,
        patient_id=original.patient_id,
        category=referral_in.category,
        procedure_code=referral_in.procedure_code,
        procedure_name=referral_in.procedure_name,
        diagnosis_code=original.diagnosis_code,
        diagnosis_name=original.diagnosis_name,
        department=referral_in.department,
        note=referral_in.note,
    )
    db.add(internal)
    db.commit()
    db.refresh(internal)
    return internal


def list_internal_referrals(db: Session, reference: str) -> List[InternalReferral]:
    original = get_referral(db, reference)
    return (
        db.query(InternalReferral)
        .filter(InternalReferral.original_referral_id == original.id)
        .order_by(InternalReferral.created_at.desc())
        .all()
    )
