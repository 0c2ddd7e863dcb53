"""
Storno (reversal) engine for referrals, invoices and clinical reports.

Two kinds of refusal:

- hard: the document is too old, already reversed or not signed.  Nothing
  changes and nothing is logged.
- soft: the Central System rejected or did not answer.  The document gets
  a STORNO_FAILED marker (referrals and invoices) and a FAILED audit entry,
  and the caller is told the storno may be retried.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Optional, Union

from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from ereferral.enterprise.audit import record_message
from ereferral.exceptions import InvalidTransition, NotFound, PolicyViolation, TransientFailure, UnsignedDependency
from ereferral.models.appointment import ClinicalFinding
from ereferral.models.billing import Invoice
from ereferral.models.database import utcnow
from ereferral.models.referral import Referral
from ereferral.models.schemas import DocumentType, InvoiceStatus, MessageDirection, MessageStatus, MessageType
from ereferral.services import referrals
from ereferral.services.integration import CentralSystemClient, CentralSystemError
from ereferral.services.templates import hl7_timestamp, message_id, render_template

logger = logging.getLogger(__name__)

# Referrals are billing-class (SKZZ) documents: 3 days.  Everything else: 8.
STORNO_WINDOW_DAYS = {
    DocumentType.REFERRAL: 3,
    DocumentType.INVOICE: 8,
    DocumentType.REPORT: 8,
}

Document = Union[Referral, Invoice, ClinicalFinding]


@dataclass
class StornoOutcome:
    document_type: DocumentType
    document_id: str
    message: str


@dataclass
class _Subject:
    """Audit linkage of a document."""
    patient_mbo: Optional[str] = None
    referral_id: Optional[str] = None
    invoice_id: Optional[str] = None
    appointment_id: Optional[str] = None


def _load(db: Session, document_type: DocumentType, document_id: str) -> Document:
    model = {
        DocumentType.REFERRAL: Referral,
        DocumentType.INVOICE: Invoice,
        DocumentType.REPORT: ClinicalFinding,
    }[document_type]
    document = db.query(model).filter(model.id == document_id).with_for_update().first()
    if document is None:
        raise NotFound(f"{document_type.value} {document_id} not found.", code=f"{document_type.value}_NOT_FOUND")
    return document


def _subject(document_type: DocumentType, document: Document) -> _Subject:
    if document_type == DocumentType.REFERRAL:
        return _Subject(patient_mbo=document.patient.mbo, referral_id=document.id)
    if document_type == DocumentType.INVOICE:
        return _Subject(
            patient_mbo=document.patient.mbo if document.patient else None,
            referral_id=document.referral_id,
            invoice_id=document.id,
            appointment_id=document.appointment_id,
        )
    appointment = document.appointment
    return _Subject(
        patient_mbo=appointment.patient.mbo,
        referral_id=appointment.referral_id,
        appointment_id=appointment.id,
    )


def check_window(document_type: DocumentType, created_at: datetime, now: Optional[datetime] = None) -> None:
    """Raise PolicyViolation when the document is older than its storno window."""
    limit = STORNO_WINDOW_DAYS[document_type]
    age = (now or utcnow()) - created_at
    if age > timedelta(days=limit):
        raise PolicyViolation(
            f"Storno rejected: document is {age.days} days old. Max allowed is {limit} days.",
            code="STORNO_WINDOW_EXCEEDED",
            detail={"age_days": age.days, "limit_days": limit},
        )


def _check_reversible(document_type: DocumentType, document: Document) -> None:
    if document_type == DocumentType.REFERRAL:
        referrals.next_status(document.status, referrals.ReferralEvent.STORNO_ACCEPTED)
    elif document_type == DocumentType.INVOICE:
        if document.status == InvoiceStatus.CANCELLED:
            raise InvalidTransition(f"Invoice {document.id} is already reversed.")
    elif not document.is_signed or not document.external_id:
        raise UnsignedDependency(
            f"Report {document.id} was never sent to the Central System; there is nothing to reverse.",
            code="REPORT_NOT_SIGNED",
        )


def _external_id(document_type: DocumentType, document: Document) -> str:
    return document.external_id or f"CEZIH-ID-{document.id}"


def _apply_success(document_type: DocumentType, document: Document) -> None:
    if document_type == DocumentType.REFERRAL:
        document.status = referrals.next_status(document.status, referrals.ReferralEvent.STORNO_ACCEPTED)
    elif document_type == DocumentType.INVOICE:
        document.status = InvoiceStatus.CANCELLED
    else:
        # Reports have no cancelled status; they reopen as drafts.
        document.external_id = None
        document.signed_at = None


def _mark_failed(db: Session, document_type: DocumentType, document_id: str) -> None:
    if document_type == DocumentType.REFERRAL:
        referral = db.query(Referral).filter(Referral.id == document_id).one()
        referral.status = referrals.next_status(referral.status, referrals.ReferralEvent.STORNO_REJECTED)
    elif document_type == DocumentType.INVOICE:
        invoice = db.query(Invoice).filter(Invoice.id == document_id).one()
        invoice.status = InvoiceStatus.CANCEL_FAILED


def storno_document(
    db: Session,
    central: CentralSystemClient,
    document_type: DocumentType,
    document_id: str,
    reason_code: str = "CANCELLATION",
    now: Optional[datetime] = None,
) -> StornoOutcome:
    document_type = DocumentType(document_type)
    logger.info("Storno request for %s %s", document_type.value, document_id)

    document = _load(db, document_type, document_id)
    check_window(document_type, document.created_at, now)
    _check_reversible(document_type, document)

    subject = _subject(document_type, document)
    payload = render_template(
        "STORNO_MESSAGE",
        {
            "messageId": message_id("MSG-STORNO"),
            "timestamp": hl7_timestamp(now),
            "targetMessageId": _external_id(document_type, document),
            "reasonCode": reason_code,
        },
    )

    try:
        ack = central.send_storno(payload)
        _apply_success(document_type, document)
        record_message(
            db,
            type=MessageType.STORNO_REQUEST,
            direction=MessageDirection.OUTGOING,
            status=MessageStatus.SENT,
            payload=payload,
            response={"ack": ack},
            patient_mbo=subject.patient_mbo,
            referral_id=subject.referral_id,
            invoice_id=subject.invoice_id,
            appointment_id=subject.appointment_id,
        )
        db.commit()
    except (CentralSystemError, SQLAlchemyError) as exc:
        logger.error("Storno of %s %s failed: %s", document_type.value, document_id, exc)
        db.rollback()
        _mark_failed(db, document_type, document_id)
        record_message(
            db,
            type=MessageType.STORNO_REQUEST,
            direction=MessageDirection.OUTGOING,
            status=MessageStatus.FAILED,
            payload=payload,
            error_message=str(exc),
            patient_mbo=subject.patient_mbo,
            referral_id=subject.referral_id,
            invoice_id=subject.invoice_id,
            appointment_id=subject.appointment_id,
        )
        db.commit()
        raise TransientFailure(
            f"Central System communication failure: {exc}. You can retry the storno.",
            code="STORNO_FAILED",
            detail={"document_type": document_type.value, "document_id": document_id},
        ) from exc

    logger.info("Storno of %s %s accepted", document_type.value, document_id)
    return StornoOutcome(document_type, document_id, f"{document_type.value} {document_id} reversed successfully.")
