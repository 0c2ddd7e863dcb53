"""
Appointment, clinical finding and therapy recommendation services.

Appointments emit lifecycle events to the referral engine instead of editing
referral status themselves:

- calendar sync      -> referrals.on_calendar_synced
- status "completed" -> referrals.on_appointment_completed (auto-takeover, non-blocking)
- cancellation       -> referrals.on_appointment_cancelled (release)
- finding sent       -> referrals.on_finding_sent
"""

from __future__ import annotations

import json
import logging
from typing import Dict, FrozenSet, List, Optional, Tuple

from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from ereferral.enterprise.audit import record_message
from ereferral.exceptions import BaseAppException, InvalidTransition, NotFound, PolicyViolation, TransientFailure
from ereferral.models.appointment import Appointment, ClinicalFinding, TherapyRecommendation
from ereferral.models.database import utcnow
from ereferral.models.schemas import (
    AppointmentCreate,
    AppointmentStatus,
    FindingUpsert,
    MessageDirection,
    MessageStatus,
    MessageType,
    ReferralStatus,
    TherapyRecommendationCreate,
)
from ereferral.services import guards, referrals
from ereferral.services.integration import CentralSystemClient, CentralSystemError
from ereferral.services.patients import get_patient_by_mbo, refresh_insurance
from ereferral.services.templates import hl7_timestamp, message_id, render_template

logger = logging.getLogger(__name__)

A = AppointmentStatus

APPOINTMENT_TRANSITIONS: Dict[AppointmentStatus, FrozenSet[AppointmentStatus]] = {
    A.SCHEDULED: frozenset({A.CONFIRMED, A.COMPLETED, A.CANCELLED}),
    A.CONFIRMED: frozenset({A.COMPLETED, A.CANCELLED}),
    A.COMPLETED: frozenset({A.CANCELLED}),
    A.CANCELLED: frozenset(),
}


def get_appointment(db: Session, appointment_id: str) -> Appointment:
    appointment = db.query(Appointment).filter(Appointment.id == appointment_id).first()
    if appointment is None:
        raise NotFound(f"Appointment {appointment_id} not found.", code="APPOINTMENT_NOT_FOUND")
    return appointment


def list_appointments(db: Session) -> List[Appointment]:
    return db.query(Appointment).order_by(Appointment.start_time.asc()).all()


def book_appointment(db: Session, central: CentralSystemClient, appointment_in: AppointmentCreate) -> Appointment:
    """Book an appointment after a fresh insurance check.

    Inactive insurance rejects the booking before any appointment row exists.
    The referral and insurance data are copied onto the appointment so later
    edits do not rewrite history.
    """
    if appointment_in.end_time <= appointment_in.start_time:
        raise PolicyViolation("Appointment must end after it starts.", code="INVALID_TIME_RANGE")

    insurance = refresh_insurance(db, central, appointment_in.patient_mbo)
    guards.enforce(guards.insurance_allows_booking(insurance))
    patient = get_patient_by_mbo(db, insurance.mbo)

    referral = None
    if appointment_in.referral_id and appointment_in.referral_id.strip():
        referral = referrals.get_referral(db, appointment_in.referral_id.strip())
        if referral.patient_id != patient.id:
            raise PolicyViolation(
                f"Referral {referral.id} belongs to a different patient.", code="REFERRAL_PATIENT_MISMATCH"
            )
        if referral.status in (ReferralStatus.CANCELLED, ReferralStatus.EXPIRED, ReferralStatus.REALIZED):
            raise PolicyViolation(
                f"Referral {referral.id} is {referral.status.value} and cannot be booked.",
                code="REFERRAL_NOT_BOOKABLE",
            )

    appointment = Appointment(
        patient_id=patient.id,
        referral_id=referral.id if referral else None,
        start_time=appointment_in.start_time,
        end_time=appointment_in.end_time,
        status=AppointmentStatus.SCHEDULED,
        insurance_status=insurance.policy_status,
        insurance_category=insurance.insurance_category,
        has_supplemental=insurance.has_supplemental,
    )
    if referral is not None:
        appointment.referral_diagnosis = f"{referral.diagnosis_code} | {referral.diagnosis_name or ''}"
        appointment.referral_procedure = f"{referral.procedure_code} | {referral.procedure_name or ''}"
        appointment.referral_category = referral.category
        appointment.referral_note = referral.note
    db.add(appointment)
    db.commit()
    db.refresh(appointment)
    logger.info("Appointment %s booked for MBO %s", appointment.id, patient.mbo)
    return appointment


def sync_calendar(db: Session, central: CentralSystemClient, appointment_id: str) -> Appointment:
    """Register the appointment with the central calendar and reserve its referral."""
    appointment = get_appointment(db, appointment_id)
    if appointment.status == AppointmentStatus.CANCELLED:
        raise InvalidTransition(f"Appointment {appointment_id} is cancelled and cannot be synced.")
    mbo = appointment.patient.mbo
    try:
        calendar_id = central.sync_calendar(appointment.id)
    except CentralSystemError as exc:
        record_message(
            db,
            type=MessageType.CALENDAR_SYNC,
            direction=MessageDirection.OUTGOING,
            status=MessageStatus.FAILED,
            payload={"appointmentId": appointment_id},
            error_message=str(exc),
            patient_mbo=mbo,
            referral_id=appointment.referral_id,
            appointment_id=appointment_id,
        )
        db.commit()
        raise TransientFailure(
            f"Calendar sync failed: {exc}. You may retry.", detail={"appointment_id": appointment_id}
        ) from exc

    appointment.calendar_id = calendar_id
    appointment.calendar_synced_at = utcnow()
    if appointment.referral is not None:
        referrals.on_calendar_synced(db, appointment.referral)
    record_message(
        db,
        type=MessageType.CALENDAR_SYNC,
        direction=MessageDirection.OUTGOING,
        status=MessageStatus.SENT,
        payload={"appointmentId": appointment_id, "calendarId": calendar_id},
        patient_mbo=mbo,
        referral_id=appointment.referral_id,
        appointment_id=appointment_id,
    )
    db.commit()
    db.refresh(appointment)
    return appointment


def _check_transition(appointment: Appointment, new_status: AppointmentStatus) -> None:
    if new_status not in APPOINTMENT_TRANSITIONS[appointment.status]:
        raise InvalidTransition(
            f"Appointment in status {appointment.status.value} cannot become {new_status.value}.",
            detail={"status": appointment.status.value, "requested": new_status.value},
        )


def update_status(
    db: Session, central: CentralSystemClient, appointment_id: str, new_status: AppointmentStatus
) -> Tuple[Appointment, List[str]]:
    """Change appointment status; returns the appointment and non-fatal warnings.

    Completion is saved before the referral takeover runs; a failing takeover
    is logged and reported as a warning only.
    """
    if new_status == AppointmentStatus.CANCELLED:
        return cancel_appointment(db, appointment_id), []

    appointment = get_appointment(db, appointment_id)
    _check_transition(appointment, new_status)
    appointment.status = new_status
    db.commit()

    warnings: List[str] = []
    if new_status == AppointmentStatus.COMPLETED and appointment.referral_id:
        try:
            referrals.on_appointment_completed(db, central, appointment)
        except BaseAppException as exc:
            db.rollback()
            logger.warning("Auto-takeover for appointment %s failed (non-blocking): %s", appointment_id, exc.message)
            warnings.append(f"Referral takeover failed: {exc.message}")
        except SQLAlchemyError as exc:
            db.rollback()
            logger.warning("Auto-takeover for appointment %s could not be stored (non-blocking): %s", appointment_id, exc)
            warnings.append("Referral takeover failed: the referral could not be updated; take it over manually.")
    db.refresh(appointment)
    return appointment, warnings


def cancel_appointment(db: Session, appointment_id: str) -> Appointment:
    """Soft-cancel an appointment and release its referral in one transaction."""
    appointment = get_appointment(db, appointment_id)
    _check_transition(appointment, AppointmentStatus.CANCELLED)
    guards.enforce(guards.appointment_is_cancellable(appointment))

    appointment.status = AppointmentStatus.CANCELLED
    if appointment.referral_id:
        referrals.on_appointment_cancelled(db, appointment)
    db.commit()
    db.refresh(appointment)
    return appointment


def delete_appointment(db: Session, appointment_id: str) -> None:
    """Physically delete an appointment (administrative path)."""
    appointment = get_appointment(db, appointment_id)
    guards.enforce(guards.appointment_is_cancellable(appointment))
    if appointment.invoices:
        raise PolicyViolation(
            f"Appointment {appointment_id} has invoices and cannot be deleted.", code="APPOINTMENT_HAS_INVOICES"
        )
    db.delete(appointment)
    db.commit()
    logger.info("Appointment %s deleted", appointment_id)


# ---------------------------------------------------------------------------
# Clinical findings
# ---------------------------------------------------------------------------

def get_finding(db: Session, finding_id: str) -> ClinicalFinding:
    finding = db.query(ClinicalFinding).filter(ClinicalFinding.id == finding_id).first()
    if finding is None:
        raise NotFound(f"Clinical finding {finding_id} not found.", code="FINDING_NOT_FOUND")
    return finding


def upsert_finding(db: Session, finding_in: FindingUpsert) -> ClinicalFinding:
    """Create or update the draft finding of a completed appointment."""
    appointment = get_appointment(db, finding_in.appointment_id)
    if appointment.status != AppointmentStatus.COMPLETED:
        raise PolicyViolation(
            "Clinical findings can only be written for completed appointments.", code="APPOINTMENT_NOT_COMPLETED"
        )
    finding = appointment.finding
    guards.enforce(guards.finding_is_mutable(finding))

    if finding is None:
        finding = ClinicalFinding(appointment_id=appointment.id)
        db.add(finding)
    finding.anamnesis = finding_in.anamnesis
    finding.status_praesens = finding_in.status_praesens
    finding.therapy = finding_in.therapy
    db.commit()
    db.refresh(finding)
    return finding


def send_finding(db: Session, central: CentralSystemClient, finding_id: str) -> ClinicalFinding:
    """Transmit and sign a finding; its referral becomes REALIZED in the same commit."""
    finding = get_finding(db, finding_id)
    guards.enforce(guards.finding_is_mutable(finding))
    appointment = finding.appointment
    referral = appointment.referral

    mbo = appointment.patient.mbo
    payload = render_template(
        "SEND_FINDING",
        {
            "messageId": message_id("MSG-NAL"),
            "timestamp": hl7_timestamp(),
            "findingId": finding.id,
            "patientMbo": mbo,
            "referralId": (referral.external_id or referral.id) if referral else "DIRECT",
            "anamnesis": finding.anamnesis,
            "statusPraesens": finding.status_praesens,
            "therapy": finding.therapy,
        },
    )
    logger.info("Sending finding %s to the Central System", finding.id)
    try:
        external_id = central.send_finding(payload)
    except CentralSystemError as exc:
        record_message(
            db,
            type=MessageType.SEND_FINDING,
            direction=MessageDirection.OUTGOING,
            status=MessageStatus.FAILED,
            payload=payload,
            error_message=str(exc),
            patient_mbo=mbo,
            referral_id=appointment.referral_id,
            appointment_id=appointment.id,
        )
        db.commit()
        raise TransientFailure(
            f"Sending finding {finding_id} failed: {exc}. The finding stays a draft; you may retry.",
            detail={"finding_id": finding_id},
        ) from exc

    finding.external_id = external_id
    finding.signed_at = utcnow()
    if referral is not None:
        referrals.on_finding_sent(db, referral)
    record_message(
        db,
        type=MessageType.SEND_FINDING,
        direction=MessageDirection.OUTGOING,
        status=MessageStatus.SENT,
        payload=payload,
        response={"externalId": external_id},
        patient_mbo=mbo,
        referral_id=appointment.referral_id,
        appointment_id=appointment.id,
    )
    db.commit()
    db.refresh(finding)
    return finding


# ---------------------------------------------------------------------------
# Therapy recommendations
# ---------------------------------------------------------------------------

def issue_therapy_recommendation(
    db: Session,
    central: CentralSystemClient,
    appointment_id: str,
    recommendation_in: TherapyRecommendationCreate,
) -> TherapyRecommendation:
    appointment = get_appointment(db, appointment_id)
    guards.enforce(guards.can_recommend_therapy(appointment))

    recommendation: Optional[TherapyRecommendation] = (
        db.query(TherapyRecommendation)
        .filter(
            TherapyRecommendation.appointment_id == appointment.id,
            TherapyRecommendation.medicine_code == recommendation_in.medicine_code,
        )
        .first()
    )
    payload = json.dumps(
        {
            "appointmentId": appointment.id,
            "medicineCode": recommendation_in.medicine_code,
            "dosage": recommendation_in.dosage,
            "duration": recommendation_in.duration,
        }
    )
    if recommendation is None:
        try:
            external_id = central.issue_recommendation(payload)
        except CentralSystemError as exc:
            record_message(
                db,
                type=MessageType.THERAPY_RECOMMENDATION,
                direction=MessageDirection.OUTGOING,
                status=MessageStatus.FAILED,
                payload=payload,
                error_message=str(exc),
                patient_mbo=appointment.patient.mbo,
                referral_id=appointment.referral_id,
                appointment_id=appointment.id,
            )
            db.commit()
            raise TransientFailure(
                f"Therapy recommendation failed: {exc}. You may retry.", detail={"appointment_id": appointment_id}
            ) from exc
        recommendation = TherapyRecommendation(
            appointment_id=appointment.id,
            patient_id=appointment.patient_id,
            medicine_code=recommendation_in.medicine_code,
            external_id=external_id,
        )
        db.add(recommendation)
    recommendation.dosage = recommendation_in.dosage
    recommendation.duration = recommendation_in.duration
    recommendation.note = recommendation_in.note
    record_message(
        db,
        type=MessageType.THERAPY_RECOMMENDATION,
        direction=MessageDirection.OUTGOING,
        status=MessageStatus.SENT,
        payload=payload,
        patient_mbo=appointment.patient.mbo,
        referral_id=appointment.referral_id,
        appointment_id=appointment.id,
    )
    db.commit()
    db.refresh(recommendation)
    return recommendation
